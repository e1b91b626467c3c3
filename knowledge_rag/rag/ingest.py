"""
Bulk import of Q&A knowledge from JSON Lines files
Each line holds one record with 'question' and 'answer'; records are indexed in batches
"""

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field
import structlog

from knowledge_rag.models.schemas import BatchFailure
from .heuristics import detect_difficulty, extract_excel_functions

if TYPE_CHECKING:
    from knowledge_rag.services.rag_orchestrator import RetrievalOrchestrator

logger = structlog.get_logger()

# Optional record fields copied into metadata
_PASSTHROUGH_FIELDS = ("url", "category", "language", "difficulty")


class ImportSummary(BaseModel):
    """Outcome of one file import"""

    path: str
    lines_read: int = 0
    records_indexed: int = 0
    skipped_lines: List[int] = Field(default_factory=list)
    failures: List[BatchFailure] = Field(default_factory=list)


def build_qa_content(question: str, answer: str) -> str:
    return f"Q: {question.strip()}\n\nA: {answer.strip()}"


def record_to_document(record: Dict[str, Any], source: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Turn one Q&A record into a document mapping.

    Args:
        record: Parsed JSON object
        source: Source tag overriding the record's own

    Returns:
        {'content', 'metadata'} or None if question/answer is missing
    """
    question = record.get("question")
    answer = record.get("answer")
    if not isinstance(question, str) or not isinstance(answer, str):
        return None
    if not question.strip() or not answer.strip():
        return None

    content = build_qa_content(question, answer)
    metadata: Dict[str, Any] = {
        key: record[key] for key in _PASSTHROUGH_FIELDS if record.get(key) is not None
    }
    metadata["functions"] = extract_excel_functions(content)
    metadata.setdefault("difficulty", detect_difficulty(question))

    record_source = source or record.get("source")
    if record_source:
        metadata["source"] = record_source

    return {"content": content, "metadata": metadata}


def import_jsonl(
    path: Union[str, Path],
    orchestrator: "RetrievalOrchestrator",
    batch_size: int = 100,
    source: Optional[str] = None,
) -> ImportSummary:
    """
    Index a JSON Lines file of Q&A records.

    Blank lines are ignored. Malformed lines and records without question/answer
    are skipped with a warning. Failed documents are reported, not raised.

    Args:
        path: File to read
        orchestrator: Orchestrator used for batch indexing
        batch_size: Documents per indexing call
        source: Source tag for every record (default: the record's own)

    Returns:
        Import summary
    """
    path = Path(path)
    summary = ImportSummary(path=str(path))
    pending: List[Dict[str, Any]] = []
    pending_offset = 0

    logger.info("ingest.starting", path=str(path), batch_size=batch_size)

    def flush() -> None:
        nonlocal pending_offset
        if not pending:
            return
        result = orchestrator.batch_index_excel_knowledge(pending)
        summary.records_indexed += result.succeeded
        for failure in result.failures:
            summary.failures.append(failure.model_copy(update={"index": pending_offset + failure.index}))
        pending_offset += len(pending)
        pending.clear()
        logger.info("ingest.batch_indexed", line=summary.lines_read, indexed=summary.records_indexed)

    with path.open("r", encoding="utf-8") as handle:
        for line_number, line in enumerate(handle, start=1):
            summary.lines_read = line_number
            if not line.strip():
                continue

            try:
                record = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning("ingest.invalid_json", line=line_number, error=str(e))
                summary.skipped_lines.append(line_number)
                continue

            document = record_to_document(record, source=source) if isinstance(record, dict) else None
            if document is None:
                logger.warning("ingest.incomplete_record", line=line_number)
                summary.skipped_lines.append(line_number)
                continue

            pending.append(document)
            if len(pending) >= batch_size:
                flush()

    flush()

    logger.info(
        "ingest.complete",
        path=str(path),
        lines_read=summary.lines_read,
        records_indexed=summary.records_indexed,
        skipped=len(summary.skipped_lines),
        failed=len(summary.failures),
    )

    return summary
