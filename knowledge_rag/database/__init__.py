"""Database package - SQLAlchemy configuration and models"""

from .connection import build_engine, build_session_factory, init_db
from .models import Base, KnowledgeDocument, utcnow

__all__ = [
    "build_engine",
    "build_session_factory",
    "init_db",
    "Base",
    "KnowledgeDocument",
    "utcnow",
]
