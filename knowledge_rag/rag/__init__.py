"""RAG (Retrieval-Augmented Generation) core: embedding engine and document store"""

from .splitter import preprocess_text, split_into_chunks
from .cache import EmbeddingCache
from .pacing import Pacer, NoopPacer, FixedDelayPacer, TokenBucketPacer
from .providers import EmbeddingProvider, OpenAIEmbeddingProvider, SentenceTransformerProvider, build_provider
from .embedder import EmbeddingEngine, cosine_similarity, average_embeddings
from .store import DocumentStore, fuse_results
from .ingest import import_jsonl, ImportSummary

__all__ = [
    "preprocess_text",
    "split_into_chunks",
    "EmbeddingCache",
    "Pacer",
    "NoopPacer",
    "FixedDelayPacer",
    "TokenBucketPacer",
    "EmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "SentenceTransformerProvider",
    "build_provider",
    "EmbeddingEngine",
    "cosine_similarity",
    "average_embeddings",
    "DocumentStore",
    "fuse_results",
    "import_jsonl",
    "ImportSummary",
]
