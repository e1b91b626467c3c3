"""
Embedding engine: preprocessing, chunking, caching and batched provider calls
"""

from typing import Dict, List, Optional, Sequence, Union

import numpy as np
import structlog

from knowledge_rag.config import settings
from knowledge_rag.models.exceptions import (
    ContractViolation,
    KnowledgeBaseException,
    ProviderError,
)
from .cache import EmbeddingCache, cache_key
from .pacing import FixedDelayPacer, Pacer
from .providers import EmbeddingProvider, build_provider
from .splitter import preprocess_text, split_into_chunks

logger = structlog.get_logger()

Vector = Union[Sequence[float], np.ndarray]


def cosine_similarity(a: Vector, b: Vector) -> float:
    """
    Cosine similarity of two equal-length vectors.

    Returns 0.0 when either vector has zero magnitude.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        raise ValueError(f"Vector length mismatch: {a.shape} vs {b.shape}")

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


def average_embeddings(embeddings: List[List[float]]) -> List[float]:
    """Element-wise mean of equal-length vectors"""
    if not embeddings:
        raise ValueError("Cannot average zero embeddings")
    if len(embeddings) == 1:
        return list(embeddings[0])
    return np.mean(np.asarray(embeddings, dtype=np.float64), axis=0).tolist()


class EmbeddingEngine:
    """
    Converts text to fixed-dimension vectors through an external provider.
    Owns the cache, so cached vectors live as long as the engine.
    """

    def __init__(
        self,
        provider: Optional[EmbeddingProvider] = None,
        dimension: Optional[int] = None,
        max_chunk_size: Optional[int] = None,
        max_input_chars: Optional[int] = None,
        cache: Optional[EmbeddingCache] = None,
        batch_size: Optional[int] = None,
        pacer: Optional[Pacer] = None,
    ):
        """
        Initialize engine.

        Args:
            provider: Embedding backend (default from settings)
            dimension: Expected vector length D (default from settings)
            max_chunk_size: Max characters per provider call (default from settings)
            max_input_chars: Truncation length after preprocessing (default max_chunk_size)
            cache: Embedding cache (default: new cache sized from settings)
            batch_size: Texts per batch group (default from settings)
            pacer: Backpressure between batch groups (default: fixed delay from settings)
        """
        self.provider = provider if provider is not None else build_provider()
        self.dimension = settings.EMBED_DIM if dimension is None else dimension
        self.max_chunk_size = settings.MAX_CHUNK_SIZE if max_chunk_size is None else max_chunk_size
        if max_input_chars is None:
            max_input_chars = settings.MAX_INPUT_CHARS
        self.max_input_chars = self.max_chunk_size if max_input_chars is None else max_input_chars
        self.cache = cache if cache is not None else EmbeddingCache(settings.EMBED_CACHE_SIZE)
        self.batch_size = settings.EMBED_BATCH_SIZE if batch_size is None else batch_size
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.pacer = pacer if pacer is not None else FixedDelayPacer(
            delay=settings.EMBED_PACING_DELAY,
            min_group_size=settings.EMBED_PACING_THRESHOLD,
        )

        logger.info(
            "embedder.initialized",
            provider=self.provider.name,
            embed_dim=self.dimension,
            max_chunk_size=self.max_chunk_size,
        )

    def generate_embedding(self, text: str) -> List[float]:
        """
        Generate the embedding for one text.

        Args:
            text: Raw text

        Returns:
            Vector of length `dimension`

        Raises:
            ProviderError: Provider call failed
            ContractViolation: Provider returned the wrong dimension
        """
        cleaned = preprocess_text(text, self.max_input_chars)
        key = cache_key(cleaned)

        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("embedder.cache_hit", text_length=len(cleaned))
            return cached

        chunks = split_into_chunks(cleaned, self.max_chunk_size) or [cleaned]

        if len(chunks) == 1:
            embedding = self._embed_chunk(chunks[0])
        else:
            embedding = average_embeddings([self._embed_chunk(chunk) for chunk in chunks])

        self.cache.set(key, embedding)

        logger.debug(
            "embedder.generated",
            text_length=len(cleaned),
            num_chunks=len(chunks),
        )

        return list(embedding)

    def generate_batch_embeddings(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Generate embeddings for many texts, in input order.
        Groups of `batch_size` are paced to stay under provider rate limits.

        Args:
            texts: Texts to embed

        Returns:
            One vector per input text
        """
        results: List[List[float]] = []

        for start in range(0, len(texts), self.batch_size):
            group = texts[start:start + self.batch_size]
            results.extend(self.generate_embedding(text) for text in group)
            self.pacer.after_group(len(group))

        logger.info(
            "embedder.batch_complete",
            num_texts=len(texts),
            batch_size=self.batch_size,
        )

        return results

    def embed_query(self, query: str) -> List[float]:
        """
        Generate embedding for a search query.
        Same as generate_embedding but kept separate for clarity.
        """
        return self.generate_embedding(query)

    def calculate_similarity(self, embedding1: Vector, embedding2: Vector) -> float:
        return cosine_similarity(embedding1, embedding2)

    def get_embedding_stats(self) -> Dict[str, object]:
        return {
            "provider": self.provider.name,
            "model": getattr(self.provider, "model", None) or getattr(self.provider, "model_name", None),
            "dimension": self.dimension,
            "max_chunk_size": self.max_chunk_size,
            **self.cache.stats(),
        }

    def _embed_chunk(self, chunk: str) -> List[float]:
        """Single provider call with dimension check"""
        try:
            embedding = self.provider.embed(chunk)
        except KnowledgeBaseException:
            raise
        except Exception as e:
            logger.error(
                "embedder.provider_failed",
                provider=self.provider.name,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise ProviderError(
                message="Embedding generation failed",
                provider=self.provider.name,
                cause=e,
            ) from e

        if len(embedding) != self.dimension:
            logger.error(
                "embedder.dimension_mismatch",
                provider=self.provider.name,
                expected=self.dimension,
                actual=len(embedding),
            )
            raise ContractViolation(
                message=f"Unexpected embedding dimension: {len(embedding)}, expected {self.dimension}",
                expected=self.dimension,
                actual=len(embedding),
                context={"provider": self.provider.name},
            )

        return [float(x) for x in embedding]
