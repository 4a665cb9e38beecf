"""
Retry queue.

Failed ingestions are parked in the relational store with an attempt count
and the last error. A retry pass re-drives every pending entry under the
attempt bound through the pipeline's single-item path:

    pending --success--> (deleted)
    pending --failure--> pending, attempts + 1
    pending --failure at bound--> exhausted (kept for operators, never auto-retried)

Passes are serialised with a file lock so no entry is claimed twice.
"""

import contextlib
import logging
from typing import Dict, Iterable, List, Optional

from memingest.core.types import RetryEntry, RetryState
from memingest.ingestion.models import FailureRecord, RetryPassResult, MAX_SUMMARY_ERRORS
from memingest.ingestion.pipeline import ITEM_DRY_RUN, describe_error

logger = logging.getLogger("Memingest.Retry")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_PASS_LIMIT = 10_000


class RetryQueue:
    def __init__(self, store, lock=None, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.store = store
        self.lock = lock
        self.max_attempts = max_attempts

    def enqueue(self, failure: FailureRecord) -> bool:
        """Park a failed candidate. Returns True for a new entry."""
        return self.store.enqueue_pending(failure.candidate, failure.error)

    def enqueue_failures(self, failures: Iterable[FailureRecord]) -> int:
        created = 0
        for failure in failures:
            if self.enqueue(failure):
                created += 1
        return created

    def resolve(self, memory_ids: Iterable[str]) -> int:
        """Drop entries whose memories are now stored."""
        removed = self.store.delete_pending(memory_ids)
        if removed:
            logger.info("Cleared %d retry entries for memories now stored", removed)
        return removed

    def get(self, memory_id: str) -> Optional[RetryEntry]:
        return self.store.get_pending(memory_id)

    def retryable(self, max_attempts: Optional[int] = None, limit: int = DEFAULT_PASS_LIMIT) -> List[RetryEntry]:
        return self.store.fetch_retryable(max_attempts or self.max_attempts, limit)

    def exhausted(self, limit: int = 100) -> List[RetryEntry]:
        return self.store.list_pending(RetryState.EXHAUSTED, limit)

    def counts(self) -> Dict[str, int]:
        return self.store.count_pending_by_state()

    def requeue(self, memory_id: str) -> bool:
        requeued = self.store.requeue_pending(memory_id)
        if requeued:
            logger.info("Requeued exhausted entry %s", memory_id)
        return requeued

    def _claim(self):
        if self.lock is None:
            return contextlib.nullcontext()
        return self.lock.acquire()

    def run_pass(self, pipeline, max_attempts: Optional[int] = None) -> RetryPassResult:
        """
        Re-drive all pending entries with attempts below the bound.

        A dry-run pipeline reports outcomes without changing any entry.
        """
        bound = max_attempts or self.max_attempts
        result = RetryPassResult()
        with self._claim():
            if not pipeline.dry_run:
                # Entries left over from passes with a higher bound.
                stale = self.store.exhaust_over_bound(bound)
                if stale:
                    result.exhausted += stale
                    logger.warning("Exhausted %d entries already at max_attempts=%d", stale, bound)
            entries = self.store.fetch_retryable(bound, DEFAULT_PASS_LIMIT)
            result.selected = len(entries)
            if not entries:
                logger.info("Retry pass: nothing pending")
                return result
            logger.info("Retry pass: %d entries (max_attempts=%d)", len(entries), bound)

            for batch in pipeline.iter_batches(entries):
                for entry in batch:
                    memory_id = entry.record.id
                    try:
                        outcome = pipeline.ingest_one(entry.record)
                    except Exception as exc:
                        error = describe_error(exc)
                        result.failed += 1
                        if len(result.errors) < MAX_SUMMARY_ERRORS:
                            result.errors.append(f"{memory_id}: {error}")
                        if pipeline.dry_run:
                            continue
                        updated = self.store.record_retry_failure(memory_id, error, bound)
                        if updated is not None and updated.state == RetryState.EXHAUSTED:
                            result.exhausted += 1
                            logger.warning(
                                "Retry entry %s exhausted after %d attempts: %s",
                                memory_id,
                                updated.attempts,
                                error,
                            )
                        continue

                    result.succeeded += 1
                    if outcome != ITEM_DRY_RUN:
                        self.store.delete_pending([memory_id])

        logger.info(
            "Retry pass complete: %d succeeded, %d failed, %d exhausted",
            result.succeeded,
            result.failed,
            result.exhausted,
        )
        return result
