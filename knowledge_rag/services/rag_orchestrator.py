"""
Retrieval orchestrator: RAG context, tiered prompts, ingestion entry points and maintenance
"""

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import structlog

from knowledge_rag.models.exceptions import KnowledgeBaseException
from knowledge_rag.models.schemas import (
    BatchResult,
    Document,
    DocumentMetadata,
    RagEnhancement,
    RagPrompt,
    SearchFilters,
    SearchResult,
    SearchType,
    Tier,
)
from knowledge_rag.rag.embedder import EmbeddingEngine
from knowledge_rag.rag.heuristics import detect_language, estimate_tokens
from knowledge_rag.rag.store import DocumentStore

logger = structlog.get_logger()

EXCEL_SOURCE = "excel_knowledge"
EXCEL_CONTENT_TYPE = "excel_qa"
PREVIEW_LENGTH = 300
EXCEL_SEARCH_LIMIT = 10

BASE_SYSTEM_PROMPT = (
    "You are an expert Excel assistant with access to a comprehensive knowledge base of Excel Q&A examples."
)

# Each tier adds to everything below it
TIER_GUIDANCE = {
    Tier.TIER1: "You provide clear, helpful Excel guidance for common tasks and formulas.",
    Tier.TIER2: "You have intermediate to advanced Excel knowledge and can handle complex formulas and analysis.",
    Tier.TIER3: "You have advanced expertise in complex Excel scenarios, VBA, Power Query, and enterprise-level solutions.",
}

ANSWER_INSTRUCTIONS = """Please provide a comprehensive answer that:
1. Addresses the specific question
2. Includes relevant Excel formulas if applicable
3. Provides step-by-step instructions when helpful
4. References the knowledge base examples when relevant
5. Considers the context and any attachments provided"""


def build_system_prompt(tier: Union[Tier, str] = Tier.TIER1) -> str:
    """System prompt for a tier: the base prompt plus guidance of every tier up to it"""
    tier = Tier(tier)
    tiers = list(Tier)
    guidance = [TIER_GUIDANCE[t] for t in tiers[:tiers.index(tier) + 1]]
    return " ".join([BASE_SYSTEM_PROMPT, *guidance])


def _truncate(text: str, length: int) -> str:
    if len(text) <= length:
        return text
    return text[:length - 3].rstrip() + "..."


class RetrievalOrchestrator:
    """
    Façade over the document store and embedding engine.
    Holds no state beyond references to its two collaborators.
    """

    def __init__(self, store: DocumentStore, engine: Optional[EmbeddingEngine] = None):
        self.store = store
        self.engine = engine or store.engine

    def enhance_query_with_rag(
        self,
        query: str,
        context: str = "",
        limit: int = 5,
        mode: Union[SearchType, str] = SearchType.HYBRID,
    ) -> RagEnhancement:
        """
        Retrieve documents for a query and render them as a context block.

        Args:
            query: User question
            context: Extra caller context appended to the search string
            limit: Maximum documents
            mode: semantic, keyword or hybrid

        Returns:
            Enhancement with the retrieved documents and the rendered block

        Raises:
            KnowledgeBaseException: The search failed (never reported as "no matches")
        """
        mode = SearchType(mode)
        search_query = " ".join(part for part in (query, context) if part and part.strip())

        logger.info(
            "orchestrator.enhance_started",
            query_preview=_truncate(query, 100),
            mode=mode.value,
            limit=limit,
        )

        try:
            if mode is SearchType.SEMANTIC:
                documents = self.store.semantic_search(search_query, limit=limit)
            elif mode is SearchType.KEYWORD:
                documents = self.store.keyword_search(search_query, limit=limit)
            else:
                documents = self.store.hybrid_search(search_query, limit=limit)
        except KnowledgeBaseException as e:
            logger.error(
                "orchestrator.search_failed",
                mode=mode.value,
                error_code=e.error_code,
                error=e.message,
            )
            raise

        return RagEnhancement(
            original_query=query,
            enhanced_context=self._build_enhanced_context(documents),
            relevant_documents=documents,
            search_type=mode,
            documents_found=len(documents),
        )

    def build_rag_prompt(
        self,
        query: str,
        context: str = "",
        attachments: Optional[Sequence[Any]] = None,
        tier: Union[Tier, str] = Tier.TIER1,
    ) -> RagPrompt:
        """
        Build system and user prompts enriched with retrieved knowledge.

        Args:
            query: User question
            context: Caller-supplied context
            attachments: Attachments sent alongside the question (only counted)
            tier: Prompt specialization level

        Returns:
            Prompts, the retrieval data and a chars/4 token estimate
        """
        rag_data = self.enhance_query_with_rag(query, context=context)
        system_prompt = build_system_prompt(tier)
        user_prompt = self._build_user_prompt(query, context, rag_data, attachments)

        prompt = RagPrompt(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            rag_data=rag_data,
            total_context_tokens=estimate_tokens(system_prompt + user_prompt),
        )

        logger.info(
            "orchestrator.prompt_built",
            tier=Tier(tier).value,
            documents_found=rag_data.documents_found,
            total_context_tokens=prompt.total_context_tokens,
        )

        return prompt

    def index_excel_knowledge(
        self,
        content: str,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Document:
        """Stamp standard metadata and store one document"""
        document = self.store.store_document(
            content=content,
            metadata=self._stamp_metadata(content, metadata),
        )

        logger.info("orchestrator.indexed", document_id=str(document.id))

        return document

    def batch_index_excel_knowledge(
        self,
        documents: Iterable[Mapping[str, Any]],
        fail_fast: bool = False,
    ) -> BatchResult:
        """Store documents as a batch, stamping standard metadata on each item as it is stored"""
        result = self.store.batch_store_documents(
            documents,
            fail_fast=fail_fast,
            prepare_metadata=self._stamp_metadata,
        )

        logger.info(
            "orchestrator.batch_indexed",
            stored=result.succeeded,
            failed=result.failed,
        )

        return result

    def search_excel_knowledge(
        self,
        query: str,
        filters: Optional[Union[SearchFilters, Mapping[str, Any]]] = None,
    ) -> List[SearchResult]:
        """Hybrid search restricted to the Excel knowledge corpus"""
        excel_filters = SearchFilters.coerce(filters).model_copy(update={
            "source": EXCEL_SOURCE,
            "content_type": EXCEL_CONTENT_TYPE,
        })
        return self.store.hybrid_search(query, limit=EXCEL_SEARCH_LIMIT, filters=excel_filters)

    def get_rag_statistics(self) -> Dict[str, Any]:
        return {
            "vector_database": self.store.get_statistics(),
            "embedding_service": self.engine.get_embedding_stats(),
            "system_status": {
                "operational": True,
                "last_check": datetime.now(timezone.utc).isoformat(),
            },
        }

    def optimize_rag_performance(self) -> Dict[str, Any]:
        """
        Age-based cleanup followed by duplicate removal.

        Returns:
            Removal counts and statistics before and after
        """
        before = self.get_rag_statistics()
        old_removed = self.store.cleanup_old_documents()
        duplicates_removed = self.store.cleanup_duplicates()
        after = self.get_rag_statistics()

        logger.info(
            "orchestrator.optimized",
            old_documents_removed=old_removed,
            duplicates_removed=duplicates_removed,
        )

        return {
            "cleanup_results": {
                "old_documents_removed": old_removed,
                "duplicates_removed": duplicates_removed,
            },
            "statistics_before": before,
            "statistics_after": after,
        }

    @staticmethod
    def _stamp_metadata(content: str, metadata: Optional[Mapping[str, Any]]) -> DocumentMetadata:
        metadata = DocumentMetadata.from_mapping(metadata)
        return metadata.model_copy(update={
            "indexed_at": datetime.now(timezone.utc).isoformat(),
            "source": metadata.source or EXCEL_SOURCE,
            "language": detect_language(content),
            "content_type": EXCEL_CONTENT_TYPE,
        })

    @staticmethod
    def _build_enhanced_context(documents: List[SearchResult]) -> str:
        if not documents:
            return ""

        parts = []
        for index, doc in enumerate(documents, start=1):
            similarity = f"{doc.similarity:.2f}" if doc.similarity is not None else "N/A"
            functions = ", ".join(doc.metadata.functions) or "None"
            parts.append(
                f"Reference {index} (Similarity: {similarity}):\n"
                f"Source: {doc.metadata.source or 'Unknown'}\n"
                f"Functions: {functions}\n"
                f"Content: {_truncate(doc.content, PREVIEW_LENGTH)}"
            )

        return "\n---\n".join(parts)

    @staticmethod
    def _build_user_prompt(
        query: str,
        context: str,
        rag_data: RagEnhancement,
        attachments: Optional[Sequence[Any]],
    ) -> str:
        parts = []

        if rag_data.relevant_documents:
            parts.append("Based on the following relevant Excel knowledge:")
            parts.append(rag_data.enhanced_context)
            parts.append("---")

        if context and context.strip():
            parts.append(f"Context: {context}")

        if attachments:
            parts.append(f"Note: {len(attachments)} attachment(s) provided for additional context.")

        parts.append(f"Question: {query}")
        parts.append(ANSWER_INSTRUCTIONS)

        return "\n\n".join(parts)
