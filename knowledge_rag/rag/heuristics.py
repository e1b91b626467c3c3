"""
Lightweight content heuristics used to tag metadata.

These are approximations for labelling and display. Do not branch on them
where correctness matters.
"""

import math
import re
from typing import List

# Hangul jamo and syllables
_HANGUL = re.compile(r"[ㄱ-ㅎ가-힣]")
_CELL_REFERENCE = re.compile(r"\b[A-Z]+\d+(?::[A-Z]+\d+)?\b")
_NESTED_CALL = re.compile(r"\w+\(\w+\(")

EXCEL_FUNCTIONS = [
    "SUM", "AVERAGE", "COUNT", "MAX", "MIN", "IF", "VLOOKUP", "HLOOKUP", "INDEX", "MATCH",
    "SUMIF", "SUMIFS", "COUNTIF", "COUNTIFS", "ROUND", "ABS", "AND", "OR", "NOT", "IFERROR",
    "XLOOKUP", "FILTER", "SORT", "UNIQUE", "TEXTJOIN", "CONCATENATE", "LEFT", "RIGHT",
    "MID", "LEN", "DATE", "TODAY", "NOW", "YEAR", "MONTH", "DAY", "WEEKDAY", "PIVOT",
]

COMPLEX_FUNCTIONS = ["VLOOKUP", "HLOOKUP", "INDEX", "MATCH", "SUMIFS", "COUNTIFS", "XLOOKUP"]


def detect_language(text: str) -> str:
    """'ko' if the text contains any Hangul character, else 'en'"""
    return "ko" if _HANGUL.search(text or "") else "en"


def extract_excel_functions(text: str) -> List[str]:
    """
    Spreadsheet function names mentioned in the text, in list order.

    Matches whole words case-insensitively, so "sum" counts but "summary" does not.
    """
    upper = (text or "").upper()
    found = []
    for name in EXCEL_FUNCTIONS:
        if re.search(rf"\b{name}\b", upper):
            found.append(name)
    return found


def extract_cell_references(text: str) -> List[str]:
    """Cell references like A1 or B2:C10, first occurrence order"""
    seen = {}
    for match in _CELL_REFERENCE.findall(text or ""):
        seen.setdefault(match, None)
    return list(seen)


def detect_difficulty(text: str) -> str:
    """Rough complexity label: simple, medium, complex or expert"""
    text = text or ""
    upper = text.upper()
    score = 0

    if len(text) > 500:
        score += 1
    if len(text) > 1000:
        score += 1

    score += sum(1 for name in COMPLEX_FUNCTIONS if name in upper)

    if _NESTED_CALL.search(text):
        score += 1
    if "AND" in text or "OR" in text:
        score += 1

    if score <= 1:
        return "simple"
    if score <= 3:
        return "medium"
    if score <= 5:
        return "complex"
    return "expert"


def estimate_tokens(text: str) -> int:
    """
    Approximate token count: one token per four characters, rounded up, minimum 1.
    Not a tokenizer; cost accounting downstream relies on this exact rule.
    """
    return max(1, math.ceil(len(text or "") / 4))
