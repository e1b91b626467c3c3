"""
SQLAlchemy-backed document store for knowledge documents
Semantic, keyword and hybrid search plus maintenance operations
"""

import hashlib
import html
import re
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
from sqlalchemy import Select, delete, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
import structlog

from knowledge_rag.config import settings
from knowledge_rag.database import KnowledgeDocument, build_engine, build_session_factory, init_db, utcnow
from knowledge_rag.models.exceptions import (
    ContractViolation,
    NotFoundError,
    ProviderError,
    StoreError,
    ValidationError,
)
from knowledge_rag.models.schemas import (
    BatchFailure,
    BatchResult,
    Document,
    DocumentMetadata,
    SearchFilters,
    SearchResult,
    SearchType,
)
from .embedder import EmbeddingEngine
from .heuristics import (
    detect_difficulty,
    detect_language,
    estimate_tokens,
    extract_cell_references,
    extract_excel_functions,
)
from .pacing import FixedDelayPacer, Pacer

logger = structlog.get_logger()

SEMANTIC_WEIGHT = 0.7
KEYWORD_WEIGHT = 0.3

# Writes to one id serialize on one of a fixed pool of locks
LOCK_STRIPES = 64

STOPWORDS = frozenset(["the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by"])

_TAGS = re.compile(r"<[^>]*>")
_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"\W+")

DocumentId = Union[uuid.UUID, str]
FiltersArg = Optional[Union[SearchFilters, Mapping[str, Any]]]


def sanitize_content(content: str, max_length: int) -> str:
    """Strip HTML tags, unescape entities, collapse whitespace, truncate"""
    cleaned = _TAGS.sub(" ", content or "")
    cleaned = html.unescape(cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()
    return cleaned[:max_length].rstrip()


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def extract_search_terms(query: str) -> List[str]:
    """Lower-cased query words minus stopwords and 1-char terms, first occurrence order"""
    terms: Dict[str, None] = {}
    for term in _NON_WORD.split((query or "").lower()):
        if len(term) < 2 or term in STOPWORDS:
            continue
        terms.setdefault(term, None)
    return list(terms)


class DocumentStore:
    """
    Persists knowledge documents and answers similarity and keyword queries.

    Vectors live in a JSON column; nearest-neighbour ranking is done in-process
    with numpy over the (optionally filtered) candidate rows.
    """

    def __init__(
        self,
        engine: EmbeddingEngine,
        session_factory: Optional[sessionmaker] = None,
        min_length: Optional[int] = None,
        max_length: Optional[int] = None,
        batch_size: Optional[int] = None,
        pacer: Optional[Pacer] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize document store.

        Args:
            engine: Embedding engine used at ingestion and query time
            session_factory: SQLAlchemy session factory (default: built from settings)
            min_length: Minimum content length after sanitizing (default from settings)
            max_length: Content is truncated to this length (default from settings)
            batch_size: Documents per batch group (default from settings)
            pacer: Backpressure between batch groups (default: fixed delay from settings)
            clock: Returns naive UTC now; used for created_at and age cutoffs
        """
        self.engine = engine

        if session_factory is None:
            db_engine = build_engine()
            init_db(db_engine)
            session_factory = build_session_factory(db_engine)

        self._session_factory = session_factory
        self.min_length = settings.DOCUMENT_MIN_LENGTH if min_length is None else min_length
        self.max_length = settings.DOCUMENT_MAX_LENGTH if max_length is None else max_length
        self.batch_size = settings.STORE_BATCH_SIZE if batch_size is None else batch_size
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.pacer = pacer if pacer is not None else FixedDelayPacer(
            delay=settings.STORE_PACING_DELAY,
            min_group_size=settings.STORE_PACING_THRESHOLD,
        )
        self._clock = clock

        self._id_locks = [threading.Lock() for _ in range(LOCK_STRIPES)]

        logger.info(
            "store.initialized",
            min_length=self.min_length,
            max_length=self.max_length,
            batch_size=self.batch_size,
        )

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def store_document(
        self,
        content: str,
        metadata: Optional[Union[DocumentMetadata, Mapping[str, Any]]] = None,
    ) -> Document:
        """
        Sanitize, embed and persist one document.

        Args:
            content: Raw document text (HTML allowed; tags are stripped)
            metadata: Known fields plus any extension keys

        Returns:
            The stored document

        Raises:
            ValidationError: Content shorter than min_length after sanitizing
            ProviderError: Embedding failed
            ContractViolation: Provider returned the wrong dimension
            StoreError: Persisting failed
        """
        cleaned, doc_metadata = self._prepare(content, metadata)
        embedding = self.engine.generate_embedding(cleaned)

        row = KnowledgeDocument(
            id=uuid.uuid4(),
            content=cleaned,
            content_hash=content_hash(cleaned),
            doc_metadata=doc_metadata.to_mapping(),
            embedding=embedding,
            token_count=estimate_tokens(cleaned),
            created_at=self._clock(),
        )

        with self._session("store_document") as session:
            session.add(row)

        logger.info(
            "store.document_stored",
            document_id=str(row.id),
            token_count=row.token_count,
            source=doc_metadata.source,
        )

        return self._to_document(row)

    def batch_store_documents(
        self,
        documents: Iterable[Mapping[str, Any]],
        fail_fast: bool = False,
        prepare_metadata: Optional[Callable[[str, Any], Any]] = None,
    ) -> BatchResult:
        """
        Store documents in paced groups, in input order.

        A per-item ProviderError, ValidationError or StoreError is recorded and
        skipped unless fail_fast is set. ContractViolation always aborts.

        Args:
            documents: Mappings with 'content' and optional 'metadata'
            fail_fast: Raise on the first failed item instead of continuing
            prepare_metadata: Called with (content, metadata) per item before storing

        Returns:
            Stored documents and recorded failures
        """
        documents = list(documents)
        result = BatchResult()

        for start in range(0, len(documents), self.batch_size):
            group = documents[start:start + self.batch_size]

            for offset, doc in enumerate(group):
                index = start + offset
                try:
                    if not isinstance(doc, Mapping):
                        raise ValidationError(
                            message="Batch item must be a mapping",
                            context={"type": type(doc).__name__},
                        )
                    content = doc.get("content") or ""
                    metadata = doc.get("metadata")
                    if prepare_metadata is not None:
                        metadata = prepare_metadata(content, metadata)
                    stored = self.store_document(content=content, metadata=metadata)
                except ContractViolation:
                    logger.error("store.batch_aborted", index=index, reason="contract_violation")
                    raise
                except (ProviderError, ValidationError, StoreError) as e:
                    if fail_fast:
                        raise
                    logger.warning(
                        "store.batch_item_failed",
                        index=index,
                        error_code=e.error_code,
                        error=e.message,
                    )
                    result.failures.append(BatchFailure(
                        index=index,
                        error_code=e.error_code,
                        message=e.message,
                        context=e.context,
                    ))
                    continue

                result.documents.append(stored)

            self.pacer.after_group(len(group))

        logger.info(
            "store.batch_complete",
            total=len(documents),
            stored=result.succeeded,
            failed=result.failed,
        )

        return result

    def replace_document(
        self,
        document_id: DocumentId,
        content: str,
        metadata: Optional[Union[DocumentMetadata, Mapping[str, Any]]] = None,
    ) -> Document:
        """
        Replace a document's content, metadata and embedding. Id and created_at are kept.

        Raises:
            NotFoundError: The id does not exist (including when deleted concurrently)
        """
        doc_id = self._coerce_id(document_id)
        cleaned, doc_metadata = self._prepare(content, metadata)
        embedding = self.engine.generate_embedding(cleaned)

        with self._locked(doc_id), self._session("replace_document") as session:
            row = session.get(KnowledgeDocument, doc_id)
            if row is None:
                raise NotFoundError(document_id=doc_id)

            row.content = cleaned
            row.content_hash = content_hash(cleaned)
            row.doc_metadata = doc_metadata.to_mapping()
            row.embedding = embedding
            row.token_count = estimate_tokens(cleaned)

        logger.info("store.document_replaced", document_id=str(doc_id))

        return self._to_document(row)

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    def semantic_search(
        self,
        query: str,
        limit: int = 5,
        threshold: Optional[float] = None,
        filters: FiltersArg = None,
    ) -> List[SearchResult]:
        """
        Rank documents by cosine similarity to the query.

        Args:
            query: Search query
            limit: Maximum results
            threshold: Minimum similarity (default from settings)
            filters: Optional metadata filters narrowing the candidates

        Returns:
            Results with similarity >= threshold, highest first
        """
        threshold = settings.SIMILARITY_THRESHOLD if threshold is None else threshold
        query_embedding = self.engine.embed_query(query)

        with self._session("semantic_search") as session:
            stmt = self._apply_filters(
                select(KnowledgeDocument.id, KnowledgeDocument.embedding),
                SearchFilters.coerce(filters),
            )
            candidates = session.execute(stmt).all()

            ranked = [
                (doc_id, similarity)
                for doc_id, similarity in self._rank_by_similarity(query_embedding, candidates)
                if similarity >= threshold
            ][:limit]

            rows = self._fetch_rows(session, [doc_id for doc_id, _ in ranked])

        results = [
            self._to_result(rows[doc_id], SearchType.SEMANTIC, score=similarity, similarity=similarity)
            for doc_id, similarity in ranked
        ]

        logger.debug(
            "store.semantic_search_complete",
            num_candidates=len(candidates),
            num_results=len(results),
            threshold=threshold,
        )

        return results

    def keyword_search(
        self,
        query: str,
        limit: int = 5,
        filters: FiltersArg = None,
    ) -> List[SearchResult]:
        """
        Filter by metadata and require every query term in the content.

        Args:
            query: Search query
            limit: Maximum results
            filters: Metadata equality filters and/or function names

        Returns:
            Matching documents, newest first, without scores
        """
        terms = extract_search_terms(query)
        content_lower = func.lower(KnowledgeDocument.content)

        stmt = self._apply_filters(select(KnowledgeDocument), SearchFilters.coerce(filters))
        for term in terms:
            stmt = stmt.where(content_lower.contains(term, autoescape=True))
        stmt = stmt.order_by(KnowledgeDocument.created_at.desc(), KnowledgeDocument.id).limit(limit)

        with self._session("keyword_search") as session:
            rows = session.scalars(stmt).all()

        results = [self._to_result(row, SearchType.KEYWORD) for row in rows]

        logger.debug(
            "store.keyword_search_complete",
            terms=terms,
            num_results=len(results),
        )

        return results

    def hybrid_search(
        self,
        query: str,
        limit: int = 5,
        filters: FiltersArg = None,
        threshold: Optional[float] = None,
    ) -> List[SearchResult]:
        """
        Fuse semantic and keyword results.

        Semantic hits score 0.7 x similarity, keyword hits a flat 0.3; a document
        found by both sums the two and is tagged hybrid.

        Args:
            query: Search query
            limit: Maximum results
            filters: Metadata filters applied to both sides
            threshold: Minimum similarity for the semantic side

        Returns:
            Fused results, highest combined score first
        """
        semantic_results = self.semantic_search(query, limit=limit * 2, threshold=threshold, filters=filters)
        keyword_results = self.keyword_search(query, limit=limit * 2, filters=filters)

        fused = fuse_results(semantic_results, keyword_results)[:limit]

        logger.info(
            "store.hybrid_search_complete",
            query_length=len(query),
            semantic_hits=len(semantic_results),
            keyword_hits=len(keyword_results),
            num_results=len(fused),
        )

        return fused

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def get_document(self, document_id: DocumentId) -> Document:
        doc_id = self._coerce_id(document_id)
        with self._session("get_document") as session:
            row = session.get(KnowledgeDocument, doc_id)
            if row is None:
                raise NotFoundError(document_id=doc_id)
        return self._to_document(row)

    def delete_document(self, document_id: DocumentId) -> bool:
        """
        Hard delete one document.

        Raises:
            NotFoundError: The id does not exist
        """
        doc_id = self._coerce_id(document_id)

        with self._locked(doc_id), self._session("delete_document") as session:
            row = session.get(KnowledgeDocument, doc_id)
            if row is None:
                raise NotFoundError(document_id=doc_id)
            session.delete(row)

        logger.info("store.document_deleted", document_id=str(doc_id))

        return True

    def cleanup_old_documents(self, age_threshold: Optional[timedelta] = None) -> int:
        """
        Hard delete documents created at or before now - age_threshold.

        Args:
            age_threshold: Age threshold (default CLEANUP_AGE_DAYS); zero removes everything up to now

        Returns:
            Number of documents removed
        """
        if age_threshold is None:
            age_threshold = timedelta(days=settings.CLEANUP_AGE_DAYS)
        cutoff = self._clock() - age_threshold

        with self._session("cleanup_old_documents") as session:
            result = session.execute(
                delete(KnowledgeDocument).where(KnowledgeDocument.created_at <= cutoff)
            )
            deleted_count = result.rowcount or 0

        logger.info(
            "store.old_documents_cleaned",
            deleted=deleted_count,
            cutoff=cutoff.isoformat(),
        )

        return deleted_count

    def cleanup_duplicates(self) -> int:
        """
        Remove exact duplicates (same sanitized content), keeping the oldest copy.

        Returns:
            Number of documents removed
        """
        removed = 0

        with self._session("cleanup_duplicates") as session:
            duplicate_hashes = session.scalars(
                select(KnowledgeDocument.content_hash)
                .group_by(KnowledgeDocument.content_hash)
                .having(func.count() > 1)
            ).all()

            for digest in duplicate_hashes:
                ids = session.scalars(
                    select(KnowledgeDocument.id)
                    .where(KnowledgeDocument.content_hash == digest)
                    .order_by(KnowledgeDocument.created_at, KnowledgeDocument.id)
                ).all()
                extra_ids = list(ids[1:])
                session.execute(delete(KnowledgeDocument).where(KnowledgeDocument.id.in_(extra_ids)))
                removed += len(extra_ids)

        logger.info(
            "store.duplicates_cleaned",
            duplicate_groups=len(duplicate_hashes),
            deleted=removed,
        )

        return removed

    def count(self) -> int:
        with self._session("count") as session:
            return session.scalar(select(func.count()).select_from(KnowledgeDocument)) or 0

    def get_statistics(self) -> Dict[str, Any]:
        """
        Aggregate corpus statistics.

        Returns:
            Counts, token totals, recent documents and distinct metadata values
        """
        recent_cutoff = self._clock() - timedelta(weeks=1)
        tokens = KnowledgeDocument.token_count

        with self._session("get_statistics") as session:
            total = session.scalar(select(func.count()).select_from(KnowledgeDocument)) or 0
            total_tokens = session.scalar(select(func.coalesce(func.sum(tokens), 0))) or 0
            average_tokens = session.scalar(select(func.avg(tokens)))
            recent = session.scalar(
                select(func.count())
                .select_from(KnowledgeDocument)
                .where(KnowledgeDocument.created_at >= recent_cutoff)
            ) or 0

            stats = {
                "total_documents": total,
                "total_tokens": int(total_tokens),
                "average_tokens": round(float(average_tokens), 2) if average_tokens is not None else None,
                "recent_documents": recent,
                "sources": self._distinct_metadata(session, "source"),
                "languages": self._distinct_metadata(session, "language"),
                "difficulties": self._distinct_metadata(session, "difficulty"),
                "size_distribution": {
                    "small": self._count_tokens_between(session, 0, 100),
                    "medium": self._count_tokens_between(session, 101, 500),
                    "large": self._count_tokens_between(session, 501, 1000),
                    "xlarge": self._count_tokens_between(session, 1001, None),
                },
            }

        return stats

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @contextmanager
    def _session(self, operation: str) -> Iterator[Session]:
        """Session scope: commit on success, map SQLAlchemy errors to StoreError"""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(
                "store.operation_failed",
                operation=operation,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise StoreError(
                message=f"Document store {operation} failed",
                operation=operation,
                context={"error": str(e)},
            ) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def _locked(self, doc_id: uuid.UUID) -> Iterator[None]:
        """Serialize writes to the same document id"""
        with self._id_locks[hash(doc_id) % LOCK_STRIPES]:
            yield

    def _prepare(
        self,
        content: str,
        metadata: Optional[Union[DocumentMetadata, Mapping[str, Any]]],
    ) -> Tuple[str, DocumentMetadata]:
        cleaned = sanitize_content(content, self.max_length)

        if len(cleaned) < self.min_length:
            logger.warning(
                "store.validation_failed",
                length=len(cleaned),
                min_length=self.min_length,
            )
            raise ValidationError(
                message=f"Content must be at least {self.min_length} characters",
                length=len(cleaned),
                min_length=self.min_length,
                max_length=self.max_length,
            )

        return cleaned, self._enrich_metadata(cleaned, DocumentMetadata.from_mapping(metadata))

    @staticmethod
    def _enrich_metadata(content: str, metadata: DocumentMetadata) -> DocumentMetadata:
        """Fill derived fields the caller left unset"""
        updates: Dict[str, Any] = {}
        if not metadata.functions:
            updates["functions"] = extract_excel_functions(content)
        if not metadata.excel_elements:
            updates["excel_elements"] = extract_cell_references(content)
        if not metadata.language:
            updates["language"] = detect_language(content)
        if not metadata.difficulty:
            updates["difficulty"] = detect_difficulty(content)
        return metadata.model_copy(update=updates)

    @staticmethod
    def _apply_filters(stmt: Select, filters: SearchFilters) -> Select:
        for key, value in filters.equality_filters().items():
            stmt = stmt.where(KnowledgeDocument.doc_metadata[key].as_string() == value)

        if filters.functions:
            content_lower = func.lower(KnowledgeDocument.content)
            stmt = stmt.where(or_(*[
                content_lower.contains(name.lower(), autoescape=True)
                for name in filters.functions
            ]))

        return stmt

    @staticmethod
    def _rank_by_similarity(
        query_embedding: Sequence[float],
        candidates: Sequence[Tuple[uuid.UUID, List[float]]],
    ) -> List[Tuple[uuid.UUID, float]]:
        """Cosine similarity of every candidate to the query, highest first"""
        query = np.asarray(query_embedding, dtype=np.float64)
        usable = [(doc_id, vector) for doc_id, vector in candidates if vector and len(vector) == len(query)]

        if len(usable) != len(candidates):
            logger.warning(
                "store.malformed_embeddings_skipped",
                skipped=len(candidates) - len(usable),
            )

        if not usable:
            return []

        matrix = np.asarray([vector for _, vector in usable], dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        dots = matrix @ query
        similarities = np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0)

        order = np.argsort(-similarities, kind="stable")
        return [(usable[i][0], float(similarities[i])) for i in order]

    @staticmethod
    def _fetch_rows(session: Session, ids: List[uuid.UUID]) -> Dict[uuid.UUID, KnowledgeDocument]:
        if not ids:
            return {}
        rows = session.scalars(select(KnowledgeDocument).where(KnowledgeDocument.id.in_(ids))).all()
        return {row.id: row for row in rows}

    @staticmethod
    def _distinct_metadata(session: Session, key: str) -> List[str]:
        column = KnowledgeDocument.doc_metadata[key].as_string()
        values = session.scalars(select(column).distinct()).all()
        return sorted(value for value in values if value is not None)

    @staticmethod
    def _count_tokens_between(session: Session, low: int, high: Optional[int]) -> int:
        stmt = select(func.count()).select_from(KnowledgeDocument).where(KnowledgeDocument.token_count >= low)
        if high is not None:
            stmt = stmt.where(KnowledgeDocument.token_count <= high)
        return session.scalar(stmt) or 0

    @staticmethod
    def _coerce_id(document_id: DocumentId) -> uuid.UUID:
        if isinstance(document_id, uuid.UUID):
            return document_id
        try:
            return uuid.UUID(str(document_id))
        except ValueError:
            raise NotFoundError(
                message="Document not found (malformed id)",
                document_id=document_id,
            )

    @staticmethod
    def _to_document(row: KnowledgeDocument) -> Document:
        return Document(
            id=row.id,
            content=row.content,
            metadata=DocumentMetadata.from_mapping(row.doc_metadata),
            embedding=list(row.embedding),
            token_count=row.token_count,
            created_at=row.created_at,
        )

    @staticmethod
    def _to_result(
        row: KnowledgeDocument,
        search_type: SearchType,
        score: Optional[float] = None,
        similarity: Optional[float] = None,
    ) -> SearchResult:
        return SearchResult(
            document_id=row.id,
            content=row.content,
            metadata=DocumentMetadata.from_mapping(row.doc_metadata),
            score=score,
            similarity=similarity,
            search_type=search_type,
            token_count=row.token_count,
            created_at=row.created_at,
        )


def fuse_results(
    semantic_results: List[SearchResult],
    keyword_results: List[SearchResult],
    semantic_weight: float = SEMANTIC_WEIGHT,
    keyword_weight: float = KEYWORD_WEIGHT,
) -> List[SearchResult]:
    """
    Merge two result lists by document id.

    Semantic score: semantic_weight x similarity. Keyword score: keyword_weight flat.
    A document in both lists sums both and is tagged hybrid.

    Returns:
        Fused results sorted by combined score, descending
    """
    combined: Dict[uuid.UUID, SearchResult] = {}

    for result in semantic_results:
        combined[result.document_id] = result.model_copy(update={
            "score": semantic_weight * (result.similarity or 0.0),
            "search_type": SearchType.SEMANTIC,
        })

    for result in keyword_results:
        existing = combined.get(result.document_id)
        if existing is not None:
            combined[result.document_id] = existing.model_copy(update={
                "score": existing.score + keyword_weight,
                "search_type": SearchType.HYBRID,
            })
        else:
            combined[result.document_id] = result.model_copy(update={
                "score": keyword_weight,
                "search_type": SearchType.KEYWORD,
            })

    return sorted(combined.values(), key=lambda r: r.score, reverse=True)
