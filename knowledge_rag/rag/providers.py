"""
Embedding provider backends
An OpenAI-compatible HTTP API (default) or a local sentence-transformers model
"""

from abc import ABC, abstractmethod
from typing import List, Optional

import httpx
import structlog

from knowledge_rag.config import settings
from knowledge_rag.models.exceptions import ProviderError

logger = structlog.get_logger()


class EmbeddingProvider(ABC):
    """Turns one piece of text into one vector."""

    name: str = "provider"

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """Return the embedding for text. Failures raise ProviderError."""

    def close(self) -> None:
        """Release resources. Override if needed."""
        pass


class OpenAIEmbeddingProvider(EmbeddingProvider):
    """
    Calls POST {base_url}/embeddings on an OpenAI-compatible API.
    Default model text-embedding-3-small (1536-dim).
    """

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.Client] = None,
    ):
        """
        Initialize provider.

        Args:
            api_key: API key (default from settings)
            model: Embedding model (default from settings)
            base_url: API base URL (default from settings)
            timeout: Request timeout in seconds (default from settings)
            client: Pre-built httpx client, mainly for tests
        """
        self.model = model or settings.EMBEDDING_MODEL
        self.base_url = (base_url or settings.EMBEDDING_BASE_URL).rstrip("/")
        api_key = api_key or settings.EMBEDDING_API_KEY

        if client is None:
            if not api_key:
                raise ProviderError(
                    message="EMBEDDING_API_KEY not set",
                    provider=self.name,
                    context={"required_env": "EMBEDDING_API_KEY"},
                )
            client = httpx.Client(
                base_url=self.base_url,
                timeout=timeout or settings.EMBEDDING_TIMEOUT,
                headers={"Authorization": f"Bearer {api_key}"},
            )

        self.client = client

        logger.info("provider.initialized", provider=self.name, model=self.model)

    def embed(self, text: str) -> List[float]:
        try:
            response = self.client.post(
                "/embeddings",
                json={"model": self.model, "input": text},
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPStatusError as e:
            raise ProviderError(
                message=f"Embedding API returned {e.response.status_code}",
                provider=self.name,
                cause=e,
                context={"status_code": e.response.status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            raise ProviderError(
                message="Embedding API request failed",
                provider=self.name,
                cause=e,
            ) from e

        try:
            embedding = payload["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(
                message="Embedding API response missing data[0].embedding",
                provider=self.name,
                cause=e,
            ) from e

        logger.debug("provider.embedded", provider=self.name, text_length=len(text))

        return [float(x) for x in embedding]

    def close(self) -> None:
        self.client.close()


class SentenceTransformerProvider(EmbeddingProvider):
    """
    Local embeddings via sentence-transformers (install the `local` extra).
    """

    name = "sentence-transformers"

    def __init__(self, model_name: Optional[str] = None):
        """
        Initialize provider.

        Args:
            model_name: Model to use (default from settings)
        """
        from sentence_transformers import SentenceTransformer

        self.model_name = model_name or settings.EMBEDDING_MODEL

        logger.info("provider.loading", provider=self.name, model=self.model_name)

        # Downloads on first run
        self.model = SentenceTransformer(self.model_name)

        logger.info(
            "provider.loaded",
            provider=self.name,
            model=self.model_name,
            embed_dim=self.model.get_sentence_embedding_dimension(),
        )

    def embed(self, text: str) -> List[float]:
        try:
            embedding = self.model.encode(text, convert_to_numpy=True, show_progress_bar=False)
        except Exception as e:
            raise ProviderError(
                message="Local embedding model failed",
                provider=self.name,
                cause=e,
            ) from e
        return embedding.tolist()


def build_provider() -> EmbeddingProvider:
    """Create the provider selected by EMBEDDING_PROVIDER"""
    if settings.EMBEDDING_PROVIDER == "sentence-transformers":
        return SentenceTransformerProvider()
    return OpenAIEmbeddingProvider()
