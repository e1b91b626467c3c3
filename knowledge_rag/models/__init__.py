"""Models package - Custom exceptions and data models"""

from .exceptions import (
    KnowledgeBaseException,
    ProviderError,
    ContractViolation,
    ValidationError,
    NotFoundError,
    StoreError,
)
from .schemas import (
    SearchType,
    Tier,
    DocumentMetadata,
    Document,
    SearchFilters,
    SearchResult,
    BatchFailure,
    BatchResult,
    RagEnhancement,
    RagPrompt,
)

__all__ = [
    "KnowledgeBaseException",
    "ProviderError",
    "ContractViolation",
    "ValidationError",
    "NotFoundError",
    "StoreError",
    "SearchType",
    "Tier",
    "DocumentMetadata",
    "Document",
    "SearchFilters",
    "SearchResult",
    "BatchFailure",
    "BatchResult",
    "RagEnhancement",
    "RagPrompt",
]
