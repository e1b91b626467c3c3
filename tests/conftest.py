"""
Pytest configuration and fixtures for testing
"""

import os
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

# Set test environment before the package reads settings
os.environ["ENVIRONMENT"] = "test"
os.environ.setdefault("DATABASE_URL", "sqlite://")

from knowledge_rag.database import build_engine, build_session_factory, init_db  # noqa: E402
from knowledge_rag.rag.cache import EmbeddingCache  # noqa: E402
from knowledge_rag.rag.embedder import EmbeddingEngine  # noqa: E402
from knowledge_rag.rag.pacing import Pacer  # noqa: E402
from knowledge_rag.rag.providers import EmbeddingProvider  # noqa: E402
from knowledge_rag.rag.store import DocumentStore  # noqa: E402
from knowledge_rag.services.rag_orchestrator import RetrievalOrchestrator  # noqa: E402

DIMENSION = 4


class FakeEmbeddingProvider(EmbeddingProvider):
    """
    Deterministic provider: the first marker found in the lower-cased text picks
    the vector; text with no marker gets the zero vector.
    """

    name = "fake"

    def __init__(
        self,
        rules: Optional[Sequence[Tuple[str, List[float]]]] = None,
        dimension: int = DIMENSION,
    ):
        self.rules = list(rules or [])
        self.dimension = dimension
        self.model = "fake-embedding"
        self.calls: List[str] = []
        self.fail_with: Optional[Exception] = None

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail_with is not None:
            raise self.fail_with
        lower = text.lower()
        for marker, vector in self.rules:
            if marker in lower:
                return list(vector)
        return [0.0] * self.dimension


class RecordingPacer(Pacer):
    """Records group sizes instead of sleeping"""

    def __init__(self):
        self.groups: List[int] = []

    def after_group(self, group_size: int) -> None:
        self.groups.append(group_size)


class FakeClock:
    """Controllable naive-UTC clock"""

    def __init__(self, now: Optional[datetime] = None):
        self.now = now or datetime(2025, 7, 18, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)

    def rewind(self, **kwargs) -> None:
        self.now -= timedelta(**kwargs)


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    """Provider with three orthogonal topics"""
    return FakeEmbeddingProvider(rules=[
        ("alpha", [1.0, 0.0, 0.0, 0.0]),
        ("beta", [0.9, 0.1, 0.0, 0.0]),
        ("gamma", [0.0, 0.0, 1.0, 0.0]),
        ("vlookup", [1.0, 0.0, 0.0, 0.0]),
        ("sum", [0.0, 1.0, 0.0, 0.0]),
    ])


@pytest.fixture
def embed_pacer() -> RecordingPacer:
    return RecordingPacer()


@pytest.fixture
def store_pacer() -> RecordingPacer:
    return RecordingPacer()


@pytest.fixture
def engine(provider: FakeEmbeddingProvider, embed_pacer: RecordingPacer) -> EmbeddingEngine:
    return EmbeddingEngine(
        provider=provider,
        dimension=DIMENSION,
        max_chunk_size=8000,
        cache=EmbeddingCache(max_entries=100),
        batch_size=20,
        pacer=embed_pacer,
    )


@pytest.fixture
def session_factory():
    """Fresh in-memory SQLite database per test"""
    db_engine = build_engine("sqlite://", echo=False)
    init_db(db_engine)
    yield build_session_factory(db_engine)
    db_engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(engine, session_factory, store_pacer, clock) -> DocumentStore:
    return DocumentStore(
        engine,
        session_factory=session_factory,
        min_length=10,
        max_length=5000,
        batch_size=10,
        pacer=store_pacer,
        clock=clock,
    )


@pytest.fixture
def orchestrator(store, engine) -> RetrievalOrchestrator:
    return RetrievalOrchestrator(store, engine)


@pytest.fixture
def make_store(engine, session_factory, clock):
    """Build a store with custom limits on the shared database"""

    def _make(**overrides) -> DocumentStore:
        options: Dict = {
            "session_factory": session_factory,
            "min_length": 10,
            "max_length": 5000,
            "batch_size": 10,
            "pacer": RecordingPacer(),
            "clock": clock,
        }
        options.update(overrides)
        return DocumentStore(engine, **options)

    return _make
