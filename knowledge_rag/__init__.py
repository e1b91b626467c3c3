"""Retrieval-augmented knowledge subsystem: embeddings, hybrid search and prompt assembly"""

from typing import Optional

from knowledge_rag.config import settings
from knowledge_rag.database import build_engine, build_session_factory, init_db
from knowledge_rag.logging_config import setup_logging
from knowledge_rag.rag.embedder import EmbeddingEngine
from knowledge_rag.rag.store import DocumentStore
from knowledge_rag.services.rag_orchestrator import RetrievalOrchestrator

__version__ = "1.0.0"


def create_orchestrator(database_url: Optional[str] = None) -> RetrievalOrchestrator:
    """
    Wire engine, store and orchestrator from settings.

    Args:
        database_url: Database URL (default from settings)
    """
    setup_logging()

    db_engine = build_engine(database_url or settings.DATABASE_URL)
    init_db(db_engine)

    engine = EmbeddingEngine()
    store = DocumentStore(engine, session_factory=build_session_factory(db_engine))
    return RetrievalOrchestrator(store, engine)


__all__ = ["create_orchestrator", "RetrievalOrchestrator", "DocumentStore", "EmbeddingEngine", "__version__"]
