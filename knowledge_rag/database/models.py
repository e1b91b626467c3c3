"""
Database models for the knowledge document store
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    DateTime,
    Integer,
    String,
    Text,
    Index,
    Uuid,
    CheckConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable across SQLite and PostgreSQL"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models"""
    pass


class KnowledgeDocument(Base):
    """
    One knowledge document with its embedding and token estimate.
    Embedding is stored as a JSON float array; ranking happens in-process.
    """
    __tablename__ = "rag_documents"

    # Primary Key
    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    # Content
    content: Mapped[str] = mapped_column(Text, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False, index=True)  # SHA256, for duplicate cleanup

    # "metadata" is reserved on declarative classes
    doc_metadata: Mapped[dict] = mapped_column("metadata", JSON, nullable=False, default=dict)

    # Vector
    embedding: Mapped[list] = mapped_column(JSON, nullable=False)
    token_count: Mapped[int] = mapped_column(Integer, nullable=False)

    # Audit
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, index=True)

    # Indexes
    __table_args__ = (
        Index("idx_rag_documents_token_count", "token_count"),
        CheckConstraint("token_count > 0", name="tokens_positive"),
    )

    def __repr__(self) -> str:
        return f"<KnowledgeDocument id={self.id} tokens={self.token_count}>"
