"""
Environment configuration with Pydantic validation.
Every tunable of the embedding engine, document store and orchestrator lives here.
"""

from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator


class Settings(BaseSettings):
    """
    Knowledge subsystem settings.

    Defaults match the reference deployment, so the package imports and runs
    with no environment set (SQLite file, OpenAI-compatible provider).
    """

    # Application
    ENVIRONMENT: str = Field(default="production", description="Environment: development, staging, production, test")
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    # Database
    DATABASE_URL: str = Field(default="sqlite:///./knowledge.db", description="SQLAlchemy database URL")

    # Embedding provider
    EMBEDDING_PROVIDER: str = Field(default="openai", description="Provider backend: openai, sentence-transformers")
    EMBEDDING_MODEL: str = Field(default="text-embedding-3-small", description="Embedding model name")
    EMBEDDING_API_KEY: Optional[str] = Field(None, description="API key for the embedding provider")
    EMBEDDING_BASE_URL: str = Field(default="https://api.openai.com/v1", description="OpenAI-compatible API base URL")
    EMBEDDING_TIMEOUT: float = Field(default=30.0, description="Provider request timeout in seconds")
    EMBED_DIM: int = Field(default=1536, gt=0, description="Embedding dimension")

    # Embedding engine
    MAX_CHUNK_SIZE: int = Field(default=8000, gt=0, description="Max characters per provider call")
    MAX_INPUT_CHARS: Optional[int] = Field(None, description="Truncation length after preprocessing (default MAX_CHUNK_SIZE)")
    EMBED_CACHE_SIZE: int = Field(default=1000, gt=1, description="Embedding cache capacity")
    EMBED_BATCH_SIZE: int = Field(default=20, gt=0, description="Texts per embedding batch group")
    EMBED_PACING_DELAY: float = Field(default=0.1, ge=0, description="Seconds to pause after a large group")
    EMBED_PACING_THRESHOLD: int = Field(default=10, ge=0, description="Groups larger than this are paced")

    # Document store
    DOCUMENT_MIN_LENGTH: int = Field(default=10, ge=1, description="Minimum document length after sanitizing")
    DOCUMENT_MAX_LENGTH: int = Field(default=5000, gt=0, description="Documents are truncated to this length")
    STORE_BATCH_SIZE: int = Field(default=10, gt=0, description="Documents per store batch group")
    STORE_PACING_DELAY: float = Field(default=0.1, ge=0, description="Seconds to pause after a large store group")
    STORE_PACING_THRESHOLD: int = Field(default=5, ge=0, description="Store groups larger than this are paced")
    SIMILARITY_THRESHOLD: float = Field(default=0.7, ge=-1.0, le=1.0, description="Default semantic threshold")
    CLEANUP_AGE_DAYS: int = Field(default=180, gt=0, description="Age-based cleanup threshold in days")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("ENVIRONMENT")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "test"]
        if v not in allowed:
            raise ValueError(f"ENVIRONMENT must be one of {allowed}")
        return v

    @field_validator("DATABASE_URL")
    @classmethod
    def validate_database_url(cls, v: str) -> str:
        """Heroku-style postgres:// URLs need the SQLAlchemy dialect name"""
        if v.startswith("postgres://"):
            v = v.replace("postgres://", "postgresql://", 1)
        return v

    @field_validator("EMBEDDING_PROVIDER")
    @classmethod
    def validate_embedding_provider(cls, v: str) -> str:
        """Validate provider backend name"""
        allowed = ["openai", "sentence-transformers"]
        v = v.strip().lower()
        if v not in allowed:
            raise ValueError(f"EMBEDDING_PROVIDER must be one of {allowed}")
        return v

    @model_validator(mode="after")
    def validate_lengths(self) -> "Settings":
        """Length bounds must be ordered"""
        if self.DOCUMENT_MIN_LENGTH > self.DOCUMENT_MAX_LENGTH:
            raise ValueError("DOCUMENT_MIN_LENGTH must not exceed DOCUMENT_MAX_LENGTH")
        return self


# Global settings instance
settings = Settings()
