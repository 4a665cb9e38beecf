"""Tests for memingest.ingestion.retry: retry queue state machine."""

from unittest.mock import MagicMock

import pytest

from memingest.core.errors import EmbeddingError, RetryPassInProgressError
from memingest.core.types import MemoryRecord, RetryState
from memingest.ingestion.models import FailureRecord
from memingest.ingestion.pipeline import IngestionPipeline
from memingest.ingestion.retry import RetryQueue
from memingest.store.lock import get_store_lock
from memingest.store.sqlite_store import RelationalStore


def _record(memory_id, content=None):
    return MemoryRecord(
        id=memory_id,
        persona_id="persona-1",
        source_system_id="pers-1",
        content=content or f"content for {memory_id}",
        context_id="ch-1",
        created_at=100.0,
        provenance="relational",
    )


class _Embedder:
    dimensions = 4

    def __init__(self, failing=()):
        self.failing = set(failing)
        self.calls = []

    def embed(self, text):
        self.calls.append(text)
        if text in self.failing:
            raise EmbeddingError("service unavailable", provider="stub", status_code=503)
        return [0.1, 0.2, 0.3, 0.4]


def _pipeline(embedder, vectors=None, **kwargs):
    if vectors is None:
        vectors = MagicMock()
        vectors.exists.return_value = False
    return IngestionPipeline(embedder, vectors, batch_delay_seconds=0, **kwargs)


@pytest.fixture
def store(tmp_path):
    s = RelationalStore(tmp_path / "retry.db")
    yield s
    s.close()


def test_enqueue_failures_counts_new_entries(store):
    queue = RetryQueue(store)
    failures = [FailureRecord(candidate=_record("m1"), error="boom"), FailureRecord(candidate=_record("m2"), error="boom")]
    assert queue.enqueue_failures(failures) == 2
    assert queue.enqueue_failures(failures[:1]) == 0
    assert queue.counts() == {"pending": 2, "exhausted": 0}


def test_successful_retry_deletes_entry(store):
    queue = RetryQueue(store, max_attempts=3)
    queue.enqueue(FailureRecord(candidate=_record("m1"), error="timeout"))
    vectors = MagicMock()
    vectors.exists.return_value = False

    result = queue.run_pass(_pipeline(_Embedder(), vectors))

    assert (result.selected, result.succeeded, result.failed) == (1, 1, 0)
    assert queue.get("m1") is None
    stored = vectors.upsert.call_args[0][0]
    assert stored.id == "m1"
    assert stored.embedding == [0.1, 0.2, 0.3, 0.4]


def test_failed_retry_increments_attempts(store):
    queue = RetryQueue(store, max_attempts=3)
    queue.enqueue(FailureRecord(candidate=_record("m1", "bad"), error="first"))

    result = queue.run_pass(_pipeline(_Embedder(failing={"bad"})))

    assert result.failed == 1
    entry = queue.get("m1")
    assert entry.attempts == 1
    assert entry.state == RetryState.PENDING
    assert "service unavailable" in entry.last_error


def test_entry_exhausts_after_max_attempts_and_is_excluded(store):
    queue = RetryQueue(store, max_attempts=3)
    queue.enqueue(FailureRecord(candidate=_record("m1", "bad"), error="first"))
    embedder = _Embedder(failing={"bad"})
    pipeline = _pipeline(embedder)

    exhausted = [queue.run_pass(pipeline).exhausted for _ in range(3)]
    assert exhausted == [0, 0, 1]
    entry = queue.get("m1")
    assert entry.state == RetryState.EXHAUSTED
    assert entry.attempts == 3

    fourth = queue.run_pass(pipeline)
    assert fourth.selected == 0
    assert len(embedder.calls) == 3
    assert [e.record.id for e in queue.exhausted()] == ["m1"]


def test_attempts_never_decrease(store):
    queue = RetryQueue(store, max_attempts=5)
    queue.enqueue(FailureRecord(candidate=_record("m1", "bad"), error="first"))
    pipeline = _pipeline(_Embedder(failing={"bad"}))
    seen = []
    for _ in range(4):
        queue.run_pass(pipeline)
        seen.append(queue.get("m1").attempts)
    assert seen == sorted(seen) == [1, 2, 3, 4]


def test_pass_bound_override(store):
    queue = RetryQueue(store, max_attempts=5)
    queue.enqueue(FailureRecord(candidate=_record("m1", "bad"), error="first"))
    result = queue.run_pass(_pipeline(_Embedder(failing={"bad"})), max_attempts=1)
    assert result.exhausted == 1
    assert queue.retryable() == []


def test_mixed_batch_isolates_failures(store):
    queue = RetryQueue(store)
    for memory_id, content in [("m1", "ok-1"), ("m2", "bad"), ("m3", "ok-3")]:
        queue.enqueue(FailureRecord(candidate=_record(memory_id, content), error="first"))

    result = queue.run_pass(_pipeline(_Embedder(failing={"bad"}), batch_size=2))

    assert (result.succeeded, result.failed) == (2, 1)
    assert [e.record.id for e in queue.retryable()] == ["m2"]


def test_already_stored_memory_counts_as_success(store):
    queue = RetryQueue(store)
    queue.enqueue(FailureRecord(candidate=_record("m1"), error="first"))
    vectors = MagicMock()
    vectors.exists.return_value = True
    embedder = _Embedder()

    result = queue.run_pass(_pipeline(embedder, vectors))

    assert result.succeeded == 1
    assert embedder.calls == []
    assert queue.get("m1") is None


def test_dry_run_pass_changes_nothing(store):
    queue = RetryQueue(store)
    queue.enqueue(FailureRecord(candidate=_record("m1"), error="first"))
    queue.enqueue(FailureRecord(candidate=_record("m2", "bad"), error="first"))

    result = queue.run_pass(_pipeline(_Embedder(failing={"bad"}), dry_run=True))

    assert (result.succeeded, result.failed) == (1, 1)
    assert queue.get("m1").attempts == 0
    assert queue.get("m2").attempts == 0


def test_requeue_restores_exhausted_entry(store):
    queue = RetryQueue(store, max_attempts=1)
    queue.enqueue(FailureRecord(candidate=_record("m1", "bad"), error="first"))
    queue.run_pass(_pipeline(_Embedder(failing={"bad"})))
    assert queue.requeue("m1") is True
    assert queue.run_pass(_pipeline(_Embedder())).succeeded == 1


def test_resolve_clears_entries(store):
    queue = RetryQueue(store)
    queue.enqueue(FailureRecord(candidate=_record("m1"), error="first"))
    assert queue.resolve(["m1", "m9"]) == 1
    assert queue.resolve([]) == 0


def test_overlapping_pass_is_rejected(store, tmp_path):
    lock = get_store_lock(tmp_path)
    queue = RetryQueue(store, lock=lock)
    queue.enqueue(FailureRecord(candidate=_record("m1"), error="first"))
    with get_store_lock(tmp_path).acquire():
        with pytest.raises(RetryPassInProgressError):
            queue.run_pass(_pipeline(_Embedder()))
    assert queue.get("m1") is not None
    assert queue.run_pass(_pipeline(_Embedder())).succeeded == 1


def test_rejects_non_positive_bound(store):
    with pytest.raises(ValueError, match="max_attempts"):
        RetryQueue(store, max_attempts=0)


def test_lower_bound_exhausts_entries_already_over_it(store):
    queue = RetryQueue(store, max_attempts=5)
    queue.enqueue(FailureRecord(candidate=_record("m1", "bad"), error="first"))
    queue.enqueue(FailureRecord(candidate=_record("m2"), error="first"))
    failing = _pipeline(_Embedder(failing={"bad"}))
    queue.run_pass(failing)
    queue.run_pass(failing)
    assert queue.get("m1").attempts == 2

    result = queue.run_pass(_pipeline(_Embedder()), max_attempts=2)

    assert result.exhausted == 1
    assert result.selected == 0
    assert queue.get("m1").state == RetryState.EXHAUSTED
    assert queue.counts() == {"pending": 0, "exhausted": 1}


def test_dry_run_leaves_over_bound_entries_pending(store):
    queue = RetryQueue(store, max_attempts=5)
    queue.enqueue(FailureRecord(candidate=_record("m1", "bad"), error="first"))
    queue.run_pass(_pipeline(_Embedder(failing={"bad"})))

    result = queue.run_pass(_pipeline(_Embedder(), dry_run=True), max_attempts=1)

    assert result.exhausted == 0
    assert queue.get("m1").state == RetryState.PENDING
