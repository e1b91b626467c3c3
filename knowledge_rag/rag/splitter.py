"""
Text preprocessing and chunking for embedding provider calls
Splits on sentence boundaries first, then on whitespace, so no chunk exceeds the provider limit
"""

import re
from typing import List

import structlog

logger = structlog.get_logger()

_WHITESPACE = re.compile(r"\s+")
# Anything outside word characters, whitespace and - . , ! ?
_DISALLOWED = re.compile(r"[^\w\s\-.,!?]")
# Split after sentence-ending punctuation, keeping it with the sentence
_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")


def preprocess_text(text: str, max_length: int) -> str:
    """
    Normalize text before embedding.

    Args:
        text: Raw text
        max_length: Truncation length

    Returns:
        Text with disallowed characters removed, whitespace collapsed, and truncated
    """
    text = _DISALLOWED.sub(" ", text or "")
    text = _WHITESPACE.sub(" ", text).strip()
    return text[:max_length].rstrip()


def split_into_chunks(text: str, max_chunk_size: int) -> List[str]:
    """
    Split text into chunks no longer than max_chunk_size.

    Sentences are packed greedily. A sentence over the limit is packed word by
    word, and a single word over the limit is hard-sliced. For whitespace-
    normalized input, " ".join(chunks) reproduces the text.

    Args:
        text: Preprocessed text
        max_chunk_size: Maximum characters per chunk

    Returns:
        List of chunks (empty for blank text)
    """
    if max_chunk_size <= 0:
        raise ValueError("max_chunk_size must be positive")

    if not text or not text.strip():
        return []

    if len(text) <= max_chunk_size:
        return [text]

    packer = _ChunkPacker(max_chunk_size)

    for sentence in _SENTENCE_BOUNDARY.split(text):
        sentence = sentence.strip()
        if not sentence:
            continue

        if len(sentence) <= max_chunk_size:
            packer.add(sentence)
            continue

        for word in sentence.split():
            if len(word) <= max_chunk_size:
                packer.add(word)
            else:
                for start in range(0, len(word), max_chunk_size):
                    packer.add(word[start:start + max_chunk_size])

    chunks = packer.finish()

    logger.debug(
        "splitter.split_complete",
        input_length=len(text),
        num_chunks=len(chunks),
        max_chunk_size=max_chunk_size,
    )

    return chunks


class _ChunkPacker:
    """Greedy accumulator: pieces joined by single spaces up to a size limit"""

    def __init__(self, limit: int):
        self.limit = limit
        self.chunks: List[str] = []
        self.current = ""

    def add(self, piece: str) -> None:
        candidate = f"{self.current} {piece}" if self.current else piece
        if len(candidate) <= self.limit:
            self.current = candidate
            return

        if self.current:
            self.chunks.append(self.current)
        self.current = piece

    def finish(self) -> List[str]:
        if self.current:
            self.chunks.append(self.current)
            self.current = ""
        return self.chunks
