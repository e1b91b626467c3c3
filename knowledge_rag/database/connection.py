"""
Database connection configuration using SQLAlchemy 2.0
Supports PostgreSQL in production and SQLite for local use and tests
"""

from typing import Optional

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
import structlog

from knowledge_rag.config import settings
from .models import Base

logger = structlog.get_logger()


def build_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> Engine:
    """
    Create a SQLAlchemy engine.

    Args:
        database_url: Database URL (default from settings)
        echo: Log SQL statements (default: development only)

    Returns:
        Configured engine
    """
    database_url = database_url or settings.DATABASE_URL
    if echo is None:
        echo = settings.ENVIRONMENT == "development"

    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        # In-memory SQLite must share one connection or every session sees an empty database
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    else:
        kwargs = {
            "pool_pre_ping": True,  # Verify connections before using
            "pool_recycle": 3600,   # Recycle connections after 1 hour
            "pool_size": 10,
            "max_overflow": 20,
        }

    engine = create_engine(database_url, echo=echo, **kwargs)

    logger.info("database.engine_created", dialect=engine.dialect.name)

    return engine


def build_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the engine"""
    return sessionmaker(
        engine,
        class_=Session,
        expire_on_commit=False,
        autoflush=False,
    )


def init_db(engine: Engine) -> None:
    """Create tables that do not exist yet"""
    Base.metadata.create_all(engine)
    logger.info("database.tables_ready", tables=sorted(Base.metadata.tables))
