"""
Tests for the document store
"""

import threading
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import text

from knowledge_rag.models.exceptions import (
    ContractViolation,
    NotFoundError,
    ProviderError,
    StoreError,
    ValidationError,
)
from knowledge_rag.models.schemas import DocumentMetadata, SearchResult, SearchType
from knowledge_rag.rag.cache import EmbeddingCache
from knowledge_rag.rag.embedder import EmbeddingEngine
from knowledge_rag.rag.pacing import NoopPacer
from knowledge_rag.rag.store import (
    LOCK_STRIPES,
    DocumentStore,
    extract_search_terms,
    fuse_results,
    sanitize_content,
)

from conftest import FakeEmbeddingProvider


# ----------------------------------------------------------------------
# Ingestion
# ----------------------------------------------------------------------

def test_store_document_persists_and_returns(store):
    """Stored document carries sanitized content, tokens and the embedding"""
    doc = store.store_document(
        "<p>VLOOKUP finds a value in the first column &amp; returns a match.</p>",
        {"source": "manual", "topic": "lookups"},
    )

    assert doc.content == "VLOOKUP finds a value in the first column & returns a match."
    assert doc.token_count == -(-len(doc.content) // 4)
    assert doc.embedding == [1.0, 0.0, 0.0, 0.0]
    assert doc.metadata.source == "manual"
    assert doc.metadata.extra == {"topic": "lookups"}
    assert store.count() == 1
    assert store.get_document(doc.id) == doc


def test_store_document_fills_derived_metadata(store):
    doc = store.store_document("Use =SUM(A1:A10) with VLOOKUP(B2, C1:D9, 2) to combine totals.")

    assert doc.metadata.functions == ["SUM", "VLOOKUP"]
    assert doc.metadata.excel_elements == ["A1:A10", "B2", "C1:D9"]
    assert doc.metadata.language == "en"
    assert doc.metadata.difficulty in {"simple", "medium", "complex", "expert"}


def test_caller_metadata_wins_over_detection(store):
    doc = store.store_document(
        "Use SUM to add a column of numbers quickly.",
        {"language": "ko", "difficulty": "expert", "functions": ["CUSTOM"]},
    )

    assert doc.metadata.language == "ko"
    assert doc.metadata.difficulty == "expert"
    assert doc.metadata.functions == ["CUSTOM"]


def test_short_content_is_rejected(store, provider):
    """Four characters with MIN_LEN=10 raise ValidationError and persist nothing"""
    with pytest.raises(ValidationError) as exc_info:
        store.store_document("abcd")

    assert exc_info.value.context["length"] == 4
    assert store.count() == 0
    assert provider.calls == []


def test_content_is_truncated_to_max_length(make_store):
    store = make_store(max_length=20)
    doc = store.store_document("alpha " * 20)

    assert len(doc.content) <= 20
    assert doc.content == "alpha alpha alpha al"


def test_batch_stores_in_order_and_paces(store, store_pacer):
    docs = [{"content": f"alpha knowledge document {i}", "metadata": {"source": "batch"}} for i in range(23)]

    result = store.batch_store_documents(docs)

    assert result.succeeded == 23
    assert result.failed == 0
    assert [d.content for d in result.documents] == [d["content"] for d in docs]
    assert store_pacer.groups == [10, 10, 3]


def test_batch_skips_failed_items(store):
    """Per-item failures are recorded; the rest of the batch continues"""
    docs = [
        {"content": "alpha first valid document"},
        {"content": "tiny"},
        {"metadata": {"source": "no-content"}},
        {"content": "gamma third valid document"},
    ]

    result = store.batch_store_documents(docs)

    assert [d.content for d in result.documents] == [
        "alpha first valid document",
        "gamma third valid document",
    ]
    assert [(f.index, f.error_code) for f in result.failures] == [
        (1, "VALIDATION_ERROR"),
        (2, "VALIDATION_ERROR"),
    ]
    assert store.count() == 2


def test_batch_fail_fast_raises(store):
    docs = [{"content": "alpha valid document"}, {"content": "tiny"}, {"content": "gamma never stored"}]

    with pytest.raises(ValidationError):
        store.batch_store_documents(docs, fail_fast=True)

    assert store.count() == 1


def test_batch_records_provider_errors(store, provider):
    provider.fail_with = ProviderError(message="quota exceeded", provider="fake")

    result = store.batch_store_documents([{"content": "alpha will fail to embed"}])

    assert result.succeeded == 0
    assert result.failures[0].error_code == "PROVIDER_ERROR"


def test_batch_aborts_on_contract_violation(store, provider):
    """A wrong-dimension vector stops the whole batch"""
    provider.rules.insert(0, ("broken", [1.0]))
    docs = [
        {"content": "alpha stored before the failure"},
        {"content": "broken provider response here"},
        {"content": "gamma never reached"},
    ]

    with pytest.raises(ContractViolation):
        store.batch_store_documents(docs)

    assert store.count() == 1


def test_store_error_on_database_failure(store, session_factory):
    """Persistence failures surface as StoreError"""
    with session_factory() as session:
        session.execute(text("DROP TABLE rag_documents"))
        session.commit()

    with pytest.raises(StoreError) as exc_info:
        store.store_document("alpha document with no table")

    assert exc_info.value.operation == "store_document"


# ----------------------------------------------------------------------
# Search
# ----------------------------------------------------------------------

def test_semantic_search_respects_threshold(store):
    """No result below the threshold; highest similarity first"""
    store.store_document("alpha exact topic match")
    store.store_document("beta close topic match")
    store.store_document("gamma unrelated topic")
    store.store_document("nothing matches this one")

    results = store.semantic_search("alpha query", limit=10, threshold=0.7)

    assert [r.content for r in results] == ["alpha exact topic match", "beta close topic match"]
    assert all(r.similarity >= 0.7 for r in results)
    assert all(r.search_type == SearchType.SEMANTIC for r in results)
    assert results[0].similarity == pytest.approx(1.0)
    assert results[0].score == results[0].similarity


def test_semantic_search_limit(store):
    for i in range(5):
        store.store_document(f"alpha document number {i}")

    assert len(store.semantic_search("alpha", limit=3, threshold=0.5)) == 3


def test_semantic_search_with_filters(store):
    store.store_document("alpha from the manual", {"source": "manual"})
    store.store_document("alpha from the forum", {"source": "forum"})

    results = store.semantic_search("alpha", limit=5, threshold=0.5, filters={"source": "forum"})

    assert [r.content for r in results] == ["alpha from the forum"]


def test_keyword_search_requires_all_terms_newest_first(store, clock):
    store.store_document("VLOOKUP error when the value is missing")
    clock.advance(minutes=1)
    store.store_document("Fixing a vlookup #N/A error quickly")
    clock.advance(minutes=1)
    store.store_document("VLOOKUP basics without problems")

    results = store.keyword_search("the vlookup error", limit=5)

    assert [r.content for r in results] == [
        "Fixing a vlookup #N/A error quickly",
        "VLOOKUP error when the value is missing",
    ]
    assert all(r.score is None for r in results)
    assert all(r.search_type == SearchType.KEYWORD for r in results)


def test_keyword_search_metadata_filters(store):
    store.store_document("SUM totals for beginners", {"difficulty": "simple", "source": "manual"})
    store.store_document("SUM totals with arrays", {"difficulty": "complex", "source": "manual"})
    store.store_document("SUM totals from forum", {"difficulty": "simple", "source": "forum"})

    results = store.keyword_search("totals", filters={"difficulty": "simple", "source": "manual"})

    assert [r.content for r in results] == ["SUM totals for beginners"]


def test_keyword_search_function_filter(store):
    store.store_document("Use INDEX with MATCH for lookups")
    store.store_document("Use XLOOKUP for lookups")
    store.store_document("Use SUM for totals")

    results = store.keyword_search("", limit=10, filters={"functions": ["xlookup", "match"]})

    assert sorted(r.content for r in results) == [
        "Use INDEX with MATCH for lookups",
        "Use XLOOKUP for lookups",
    ]


def test_keyword_search_escapes_wildcards(store):
    store.store_document("Progress reached 100 percent today")

    assert store.keyword_search("100_percent") == []


def test_hybrid_search_ranks_overlap_first(store):
    """2 keyword-only, 3 semantic-only and 1 overlapping document"""
    both = store.store_document("Fixing a VLOOKUP error with exact match alpha")
    for i in range(3):
        store.store_document(f"Lookup mistakes from trailing spaces beta {i}")
    for i in range(2):
        store.store_document(f"VLOOKUP error codes explained gamma {i}")

    results = store.hybrid_search("vlookup error", limit=5)

    assert len(results) <= 5
    assert results[0].document_id == both.id
    assert results[0].search_type == SearchType.HYBRID
    assert results[0].score == pytest.approx(0.7 * 1.0 + 0.3)
    assert [r.search_type for r in results[1:4]] == [SearchType.SEMANTIC] * 3
    assert results[4].search_type == SearchType.KEYWORD
    assert results[4].score == pytest.approx(0.3)


def _result(doc_id, similarity=None):
    from datetime import datetime

    return SearchResult(
        document_id=doc_id,
        content="content",
        metadata=DocumentMetadata(),
        score=similarity,
        similarity=similarity,
        search_type=SearchType.SEMANTIC if similarity is not None else SearchType.KEYWORD,
        token_count=2,
        created_at=datetime(2025, 1, 1),
    )


def test_fusion_rewards_presence_in_both_lists():
    """Same similarity, but found by both searches, scores strictly higher"""
    in_both, semantic_only, keyword_only = uuid.uuid4(), uuid.uuid4(), uuid.uuid4()

    fused = fuse_results(
        [_result(semantic_only, 0.8), _result(in_both, 0.8)],
        [_result(in_both), _result(keyword_only)],
    )
    scores = {r.document_id: r.score for r in fused}

    assert fused[0].document_id == in_both
    assert scores[in_both] > scores[semantic_only]
    assert scores[in_both] > scores[keyword_only]
    assert scores[semantic_only] == pytest.approx(0.56)
    assert scores[keyword_only] == pytest.approx(0.3)


def test_extract_search_terms():
    assert extract_search_terms("The VLOOKUP error, in a #N/A cell!") == ["vlookup", "error", "cell"]


def test_sanitize_content():
    assert sanitize_content("<b>Bold</b>\n\n  text &lt;tag&gt;", 100) == "Bold text <tag>"


# ----------------------------------------------------------------------
# Maintenance
# ----------------------------------------------------------------------

def test_delete_document(store):
    doc = store.store_document("alpha to be deleted")

    assert store.delete_document(doc.id) is True
    assert store.count() == 0

    with pytest.raises(NotFoundError):
        store.get_document(doc.id)


def test_delete_missing_document(store):
    with pytest.raises(NotFoundError) as exc_info:
        store.delete_document(uuid.uuid4())
    assert exc_info.value.status_code == 404


def test_delete_malformed_id(store):
    with pytest.raises(NotFoundError):
        store.delete_document("not-a-uuid")


def test_replace_document_keeps_id_and_created_at(store, clock):
    original = store.store_document("alpha original content", {"source": "v1"})
    clock.advance(days=1)

    replaced = store.replace_document(str(original.id), "gamma replaced content", {"source": "v2"})

    assert replaced.id == original.id
    assert replaced.created_at == original.created_at
    assert replaced.content == "gamma replaced content"
    assert replaced.embedding == [0.0, 0.0, 1.0, 0.0]
    assert store.get_document(original.id).metadata.source == "v2"


def test_replace_after_delete_is_not_found(store):
    """A replace that loses the race to a delete reports NotFoundError"""
    doc = store.store_document("alpha racing document")
    store.delete_document(doc.id)

    with pytest.raises(NotFoundError):
        store.replace_document(doc.id, "gamma new content")

    assert store.count() == 0


def test_cleanup_old_documents(store, clock):
    """2 documents older than six months are removed, 3 newer remain"""
    clock.rewind(days=200)
    store.store_document("alpha old document one")
    store.store_document("alpha old document two")
    clock.advance(days=200)
    for i in range(3):
        store.store_document(f"alpha new document {i}")

    removed = store.cleanup_old_documents(age_threshold=timedelta(days=180))

    assert removed == 2
    assert store.get_statistics()["total_documents"] == 3


def test_cleanup_duplicates_keeps_oldest(store, clock):
    first = store.store_document("alpha duplicated content")
    clock.advance(hours=1)
    store.store_document("<i>alpha duplicated content</i>")
    clock.advance(hours=1)
    store.store_document("alpha duplicated content")
    store.store_document("gamma unique content")

    removed = store.cleanup_duplicates()

    assert removed == 2
    assert store.count() == 2
    assert store.get_document(first.id).content == "alpha duplicated content"


def test_statistics(store, clock):
    clock.rewind(days=30)
    store.store_document("alpha older manual entry", {"source": "manual", "language": "en"})
    clock.advance(days=30)
    store.store_document("엑셀 합계 함수 사용법 alpha", {"source": "forum"})
    store.store_document("gamma " * 100, {"source": "forum"})

    stats = store.get_statistics()

    assert stats["total_documents"] == 3
    assert stats["recent_documents"] == 2
    assert stats["sources"] == ["forum", "manual"]
    assert stats["languages"] == ["en", "ko"]
    assert stats["total_tokens"] == sum([6, 5, 150])
    assert stats["average_tokens"] == round((6 + 5 + 150) / 3, 2)
    assert stats["size_distribution"] == {"small": 2, "medium": 1, "large": 0, "xlarge": 0}


def test_statistics_empty_store(store):
    stats = store.get_statistics()

    assert stats["total_documents"] == 0
    assert stats["total_tokens"] == 0
    assert stats["average_tokens"] is None
    assert stats["sources"] == []


def test_batch_coerces_scalar_metadata_and_skips_invalid(store):
    """Open metadata: scalars are stored as text, unusable values fail only their item"""
    docs = [
        {"content": "alpha first valid document"},
        {"content": "alpha numeric difficulty", "metadata": {"difficulty": 3, "category": 5}},
        {"content": "alpha nested category", "metadata": {"category": {"name": "lookup"}}},
        {"content": "alpha metadata is not a mapping", "metadata": "lookup"},
        {"content": "gamma last valid document"},
    ]

    result = store.batch_store_documents(docs)

    assert result.succeeded == 3
    assert [(f.index, f.error_code) for f in result.failures] == [
        (2, "VALIDATION_ERROR"),
        (3, "VALIDATION_ERROR"),
    ]
    assert result.failures[0].context["fields"] == ["category"]
    assert result.documents[1].metadata.difficulty == "3"
    assert result.documents[1].metadata.category == "5"
    assert store.count() == 3


def test_batch_skips_items_that_are_not_mappings(store):
    result = store.batch_store_documents([{"content": "alpha valid document"}, "alpha bare string"])

    assert result.succeeded == 1
    assert result.failures[0].index == 1


def test_batch_prepare_metadata_failure_is_per_item(store):
    def prepare(content, metadata):
        if "reject" in content:
            raise ValidationError(message="rejected")
        return metadata

    result = store.batch_store_documents(
        [{"content": "alpha keep this one"}, {"content": "alpha reject this one"}],
        prepare_metadata=prepare,
    )

    assert [d.content for d in result.documents] == ["alpha keep this one"]
    assert result.failures[0].message == "rejected"


def test_zero_min_length_is_honoured(make_store):
    store = make_store(min_length=0)

    doc = store.store_document("abc")

    assert doc.content == "abc"
    assert doc.token_count == 1


def test_hybrid_search_accepts_positional_filters(store):
    store.store_document("VLOOKUP error in manual alpha", {"source": "manual"})
    store.store_document("VLOOKUP error in forum alpha", {"source": "forum"})

    results = store.hybrid_search("vlookup error", 5, {"source": "forum"})

    assert [r.content for r in results] == ["VLOOKUP error in forum alpha"]


def test_filters_on_extension_metadata(store):
    """Keys outside the named fields narrow results instead of being dropped"""
    store.store_document("alpha answer from thread one", {"url": "https://example.com/1"})
    store.store_document("alpha answer from thread two", {"url": "https://example.com/2"})

    keyword = store.keyword_search("answer", filters={"url": "https://example.com/2"})
    semantic = store.semantic_search("alpha", threshold=0.5, filters={"url": "https://example.com/1"})

    assert [r.content for r in keyword] == ["alpha answer from thread two"]
    assert [r.content for r in semantic] == ["alpha answer from thread one"]


def test_invalid_filters_raise_validation_error(store):
    with pytest.raises(ValidationError):
        store.keyword_search("alpha", filters={"source": {"nested": "value"}})


def test_cleanup_with_zero_age_removes_everything_up_to_now(store, clock):
    clock.rewind(days=1)
    store.store_document("alpha from yesterday")
    clock.advance(days=1)

    assert store.cleanup_old_documents(timedelta(0)) == 1
    assert store.count() == 0


def test_cleanup_defaults_to_configured_age(store, clock):
    clock.rewind(days=181)
    store.store_document("alpha half a year old")
    clock.advance(days=181)
    store.store_document("alpha fresh document")

    assert store.cleanup_old_documents() == 1


# ----------------------------------------------------------------------
# Concurrency
# ----------------------------------------------------------------------

class GatedProvider(FakeEmbeddingProvider):
    """Blocks inside embed() for texts containing 'blocking' until released"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def embed(self, text):
        if "blocking" in text.lower():
            self.entered.set()
            self.release.wait(timeout=5)
        return super().embed(text)


@pytest.fixture
def gated_store(session_factory, clock):
    provider = GatedProvider(rules=[
        ("alpha", [1.0, 0.0, 0.0, 0.0]),
        ("gamma", [0.0, 0.0, 1.0, 0.0]),
    ])
    engine = EmbeddingEngine(
        provider=provider,
        dimension=4,
        max_chunk_size=8000,
        cache=EmbeddingCache(max_entries=100),
        batch_size=20,
        pacer=NoopPacer(),
    )
    store = DocumentStore(
        engine,
        session_factory=session_factory,
        min_length=10,
        max_length=5000,
        batch_size=10,
        pacer=NoopPacer(),
        clock=clock,
    )
    return store, provider


def test_delete_during_replace_resolves_to_not_found(gated_store):
    """Replace is embedding when a delete commits; the replace must not resurrect the row"""
    store, provider = gated_store
    doc = store.store_document("alpha document under contention")
    errors = []

    def replace():
        try:
            store.replace_document(doc.id, "gamma blocking replacement")
        except NotFoundError as e:
            errors.append(e)

    worker = threading.Thread(target=replace)
    worker.start()
    assert provider.entered.wait(timeout=5)

    store.delete_document(doc.id)
    provider.release.set()
    worker.join(timeout=5)

    assert not worker.is_alive()
    assert len(errors) == 1
    assert store.count() == 0


def test_concurrent_replaces_leave_one_consistent_row(gated_store):
    store, _ = gated_store
    doc = store.store_document("alpha original content")
    payloads = [f"gamma replacement number {i}" for i in range(8)]
    errors = []

    def replace(content):
        try:
            store.replace_document(doc.id, content)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=replace, args=(p,)) for p in payloads]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert errors == []
    assert store.count() == 1
    final = store.get_document(doc.id)
    assert final.content in payloads
    assert final.created_at == doc.created_at


def test_id_locks_stay_bounded(store):
    """Locks for missing or deleted ids do not accumulate"""
    for _ in range(200):
        with pytest.raises(NotFoundError):
            store.delete_document(uuid.uuid4())

    assert len(store._id_locks) == LOCK_STRIPES
