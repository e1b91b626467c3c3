"""
Pydantic data models shared by the engine, store and orchestrator
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from knowledge_rag.models.exceptions import ValidationError


_SCALARS = (str, int, float, bool)
_LIST_FIELDS = frozenset(["functions", "excel_elements"])


def _as_text(value: Any) -> Any:
    """Scalars become strings; anything else is left for validation to reject"""
    if isinstance(value, _SCALARS):
        return str(value)
    return value


def _as_text_list(value: Any) -> Any:
    if isinstance(value, _SCALARS):
        return [str(value)]
    if isinstance(value, (list, tuple, set)):
        return [str(item) for item in value if isinstance(item, _SCALARS)]
    return value


def _invalid(model: str, error: PydanticValidationError) -> ValidationError:
    fields = [".".join(str(part) for part in err["loc"]) for err in error.errors()]
    return ValidationError(
        message=f"Invalid {model}: " + ", ".join(fields),
        context={"fields": fields},
    )


class SearchType(str, Enum):
    """Retrieval strategy. Also tags where a search result came from."""

    SEMANTIC = "semantic"
    KEYWORD = "keyword"
    HYBRID = "hybrid"


class Tier(str, Enum):
    """Prompt specialization level, ordered tier1 < tier2 < tier3"""

    TIER1 = "tier1"
    TIER2 = "tier2"
    TIER3 = "tier3"


class DocumentMetadata(BaseModel):
    """
    Well-known document metadata plus a free-form extension map.

    Persisted as one flat JSON object: known fields at the top level,
    extension keys merged alongside them.
    """

    source: Optional[str] = None
    language: Optional[str] = None
    category: Optional[str] = None
    difficulty: Optional[str] = None
    content_type: Optional[str] = None
    functions: List[str] = Field(default_factory=list)
    excel_elements: List[str] = Field(default_factory=list)
    indexed_at: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def known_fields(cls) -> List[str]:
        return [name for name in cls.model_fields if name != "extra"]

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "DocumentMetadata":
        """
        Split a flat mapping into known fields and extension keys.

        Scalar values of known fields are stored as strings.

        Raises:
            ValidationError: A known field holds a value that cannot be coerced
        """
        if data is None:
            return cls()
        if isinstance(data, DocumentMetadata):
            return data.model_copy(deep=True)
        if not isinstance(data, Mapping):
            raise ValidationError(
                message="Invalid metadata: expected a mapping",
                context={"type": type(data).__name__},
            )

        known = set(cls.known_fields())
        values: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in data.items():
            key = str(key)
            if key in known:
                if value is None:
                    continue
                values[key] = _as_text_list(value) if key in _LIST_FIELDS else _as_text(value)
            elif key == "extra" and isinstance(value, Mapping):
                extra.update(value)
            else:
                extra[key] = value

        try:
            return cls(**values, extra=extra)
        except PydanticValidationError as e:
            raise _invalid("metadata", e) from e

    def to_mapping(self) -> Dict[str, Any]:
        """Flatten to a JSON-ready dict, dropping unset optional fields"""
        data: Dict[str, Any] = dict(self.extra)
        for name in self.known_fields():
            value = getattr(self, name)
            if value is None or value == []:
                continue
            data[name] = list(value) if isinstance(value, list) else value
        return data


class Document(BaseModel):
    """A stored knowledge document"""

    model_config = ConfigDict(frozen=True)

    id: uuid.UUID
    content: str
    metadata: DocumentMetadata
    embedding: List[float]
    token_count: int
    created_at: datetime


class SearchFilters(BaseModel):
    """
    Metadata-equality filters plus a function-name containment filter.
    Keys other than the named fields filter on extension metadata.
    """

    source: Optional[str] = None
    language: Optional[str] = None
    category: Optional[str] = None
    difficulty: Optional[str] = None
    content_type: Optional[str] = None
    functions: List[str] = Field(default_factory=list)
    extra: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def coerce(cls, filters: Any) -> "SearchFilters":
        if filters is None:
            return cls()
        if isinstance(filters, SearchFilters):
            return filters

        named = set(cls.model_fields) - {"extra"}
        values: Dict[str, Any] = {}
        extra: Dict[str, Any] = {}
        for key, value in dict(filters).items():
            if value is None:
                continue
            if key == "functions":
                values[key] = _as_text_list(value)
            elif key in named:
                values[key] = _as_text(value)
            elif key == "extra" and isinstance(value, Mapping):
                extra.update({k: _as_text(v) for k, v in value.items() if v is not None})
            else:
                extra[str(key)] = _as_text(value)

        try:
            return cls(**values, extra=extra)
        except PydanticValidationError as e:
            raise _invalid("search filters", e) from e

    def equality_filters(self) -> Dict[str, str]:
        named = {
            key: value
            for key, value in self.model_dump(exclude={"functions", "extra"}).items()
            if value is not None
        }
        return {**self.extra, **named}


class SearchResult(BaseModel):
    """One ranked hit"""

    document_id: uuid.UUID
    content: str
    metadata: DocumentMetadata
    score: Optional[float] = None
    similarity: Optional[float] = None
    search_type: SearchType
    token_count: int
    created_at: datetime


class BatchFailure(BaseModel):
    """A single item that a batch skipped"""

    index: int
    error_code: str
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)


class BatchResult(BaseModel):
    """Outcome of a skip-and-continue batch"""

    documents: List[Document] = Field(default_factory=list)
    failures: List[BatchFailure] = Field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.documents)

    @property
    def failed(self) -> int:
        return len(self.failures)


class RagEnhancement(BaseModel):
    """Retrieved documents and the context block built from them"""

    original_query: str
    enhanced_context: str
    relevant_documents: List[SearchResult]
    search_type: SearchType
    documents_found: int


class RagPrompt(BaseModel):
    """System and user prompt ready for a downstream language model"""

    system_prompt: str
    user_prompt: str
    rag_data: RagEnhancement
    total_context_tokens: int
