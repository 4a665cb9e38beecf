"""
Fail-open embedding and storage pipeline.

Candidates are processed in fixed-size batches with a pause between
batches. Each candidate is embedded and upserted on its own, so a failure
is recorded against that candidate and the rest of the batch carries on.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple, TypeVar

from memingest.core.errors import MalformedRecordError
from memingest.core.types import MemoryRecord
from memingest.ingestion.models import FailureRecord, IngestResult

logger = logging.getLogger("Memingest.Pipeline")

MAX_WORKERS = 8  # Cap intra-batch concurrency; the embedding service is the bottleneck

ITEM_STORED = "stored"
ITEM_EXISTING = "existing"
ITEM_DRY_RUN = "dry_run"

T = TypeVar("T")
Outcome = Tuple[MemoryRecord, Optional[str], Optional[str]]


def describe_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {exc}"


class IngestionPipeline:
    def __init__(
        self,
        embedder,
        vector_store,
        *,
        batch_size: int = 10,
        batch_delay_seconds: float = 1.0,
        dry_run: bool = False,
        skip_existing: bool = True,
        max_workers: int = 1,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        if batch_delay_seconds < 0:
            raise ValueError("batch_delay_seconds must be >= 0")
        self.embedder = embedder
        self.vector_store = vector_store
        self.batch_size = batch_size
        self.batch_delay_seconds = batch_delay_seconds
        self.dry_run = dry_run
        self.skip_existing = skip_existing
        self.max_workers = max(1, min(max_workers, MAX_WORKERS))
        self._sleep = sleep
        # Embeddings run in parallel; store calls are serialised (local Qdrant is not thread-safe).
        self._store_lock = threading.Lock()

    def iter_batches(self, items: Iterable[T]) -> Iterator[List[T]]:
        """Yield fixed-size batches, pausing between (never before the first or after the last)."""
        batch: List[T] = []
        started = False
        for item in items:
            batch.append(item)
            if len(batch) >= self.batch_size:
                if started and self.batch_delay_seconds > 0:
                    self._sleep(self.batch_delay_seconds)
                started = True
                yield batch
                batch = []
        if batch:
            if started and self.batch_delay_seconds > 0:
                self._sleep(self.batch_delay_seconds)
            yield batch

    def ingest_one(self, candidate: MemoryRecord) -> str:
        """
        Embed and store a single candidate.

        Returns one of ITEM_STORED, ITEM_EXISTING, ITEM_DRY_RUN. Raises on
        failure; callers decide whether that becomes a batch failure or a
        retry-queue transition.
        """
        if not candidate.content or not candidate.content.strip():
            raise MalformedRecordError(f"Memory {candidate.id} has empty content")

        if self.skip_existing:
            try:
                with self._store_lock:
                    exists = self.vector_store.exists(candidate.id)
                if exists:
                    return ITEM_EXISTING
            except Exception as e:
                # The upsert is idempotent, so an unknown answer just means "write it".
                logger.debug("Existence check failed for %s (%s); proceeding", candidate.id, e)

        vector = self.embedder.embed(candidate.content)
        if self.dry_run:
            return ITEM_DRY_RUN

        with self._store_lock:
            self.vector_store.upsert(candidate.model_copy(update={"embedding": vector}))
        return ITEM_STORED

    def _process(self, candidate: MemoryRecord) -> Outcome:
        try:
            return candidate, self.ingest_one(candidate), None
        except Exception as exc:
            return candidate, None, describe_error(exc)

    def _run_batch(self, batch: Sequence[MemoryRecord]) -> List[Outcome]:
        if self.max_workers == 1 or len(batch) == 1:
            return [self._process(candidate) for candidate in batch]
        with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            return list(executor.map(self._process, batch))

    def ingest(self, candidates: Iterable[MemoryRecord]) -> IngestResult:
        result = IngestResult()
        for batch_number, batch in enumerate(self.iter_batches(candidates), start=1):
            failed_before = len(result.failed)
            for candidate, outcome, error in self._run_batch(batch):
                if error is not None:
                    result.failed.append(FailureRecord(candidate=candidate, error=error))
                    logger.warning("Failed to ingest memory %s: %s", candidate.id, error)
                elif outcome == ITEM_EXISTING:
                    result.already_existing += 1
                    result.settled_ids.append(candidate.id)
                else:
                    result.succeeded += 1
                    result.settled_ids.append(candidate.id)
            logger.info(
                "Batch %d: %d candidates, %d failed%s",
                batch_number,
                len(batch),
                len(result.failed) - failed_before,
                " (dry run)" if self.dry_run else "",
            )
        return result
