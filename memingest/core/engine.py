"""
Memingest ingestion engine.

Composes the stores, the embedder, identity resolution, pairing and the
pipeline into the two operations the application layer calls:
``run_ingestion`` and ``run_retry_pass``.
"""

import logging
import time
from typing import Dict, Iterable, List, Optional, Tuple

from memingest.core.config import IngestConfig, IngestOptions, PipelineConfig
from memingest.core.content_id import derive_memory_id
from memingest.core.embedding import build_embedder
from memingest.core.errors import StoreUnavailableError
from memingest.core.types import CanonScope, Exchange, IdentityResolution, MemoryRecord
from memingest.identity.resolver import IdentityCache, IdentityResolver
from memingest.ingestion.models import LegacySummary, RunSummary, SourceLoad
from memingest.ingestion.pairing import pair_threads
from memingest.ingestion.pipeline import IngestionPipeline
from memingest.ingestion.retry import RetryQueue
from memingest.store.lock import get_store_lock
from memingest.store.sqlite_store import RelationalStore

logger = logging.getLogger("Memingest.Engine")


def _scope(resolution: IdentityResolution) -> str:
    return CanonScope.ORPHAN.value if resolution.is_orphaned else CanonScope.PERSONAL.value


def exchange_to_record(
    exchange: Exchange,
    resolution: IdentityResolution,
    provenance: str,
) -> MemoryRecord:
    content = exchange.content
    return MemoryRecord(
        id=derive_memory_id(resolution.persona_id, exchange.source_system_id, content),
        persona_id=resolution.persona_id,
        source_system_id=exchange.source_system_id,
        content=content,
        context_id=exchange.context_id,
        created_at=exchange.created_at,
        provenance=provenance,
        metadata={
            "canon_scope": _scope(resolution),
            "source_user_id": exchange.initiator.source_user_id,
            "bridging_key": resolution.bridging_key,
            "guild_id": exchange.initiator.guild_id,
            "turn_ids": [
                t for t in (exchange.initiator.turn_id, exchange.responder.turn_id) if t
            ],
        },
    )


def summary_to_records(
    summary: LegacySummary,
    resolutions: Dict[str, IdentityResolution],
    provenance: str,
) -> List[MemoryRecord]:
    """One record per sender, each owned by that sender's persona."""
    records = []
    for sender_id in summary.sender_ids:
        resolution = resolutions[sender_id]
        metadata = dict(summary.metadata)
        metadata.update(
            {
                "canon_scope": _scope(resolution),
                "source_user_id": sender_id,
                "bridging_key": resolution.bridging_key,
            }
        )
        records.append(
            MemoryRecord(
                id=derive_memory_id(resolution.persona_id, summary.source_system_id, summary.content),
                persona_id=resolution.persona_id,
                source_system_id=summary.source_system_id,
                content=summary.content,
                context_id=summary.context_id,
                created_at=summary.created_at,
                provenance=provenance,
                metadata=metadata,
            )
        )
    return records


def dedupe_candidates(candidates: Iterable[MemoryRecord]) -> Tuple[List[MemoryRecord], int]:
    """Keep the first candidate per derived id."""
    seen = set()
    unique: List[MemoryRecord] = []
    duplicates = 0
    for candidate in candidates:
        if candidate.id in seen:
            duplicates += 1
            continue
        seen.add(candidate.id)
        unique.append(candidate)
    return unique, duplicates


class MemoryIngestor:
    """
    Batch ingestion engine.

    Usage:
        ingestor = MemoryIngestor(IngestConfig.from_env())
        ingestor.initialize()
        summary = ingestor.run_ingestion(RelationalTurnSource(ingestor.relational))
        summary = ingestor.run_retry_pass()
        ingestor.close()

    Stores and the embedder may be injected; anything not injected is built
    from config on ``initialize()``.
    """

    def __init__(
        self,
        config: Optional[IngestConfig] = None,
        *,
        relational=None,
        vectors=None,
        embedder=None,
        sleep=time.sleep,
    ):
        self.config = config or IngestConfig.from_env()
        self.relational = relational
        self.vectors = vectors
        self.embedder = embedder
        self._sleep = sleep
        self._initialized = False

    def initialize(self) -> None:
        if self._initialized:
            return
        logger.info("Initializing ingestion engine...")
        needs_local_dirs = self.relational is None or (self.vectors is None and not self.config.vector.url)
        if needs_local_dirs:
            try:
                self.config.ensure_directories()
            except OSError as e:
                raise StoreUnavailableError(f"Cannot create data directories: {e}") from e
        if self.relational is None:
            self.relational = RelationalStore(self.config.relational.path)
        if self.vectors is None:
            from memingest.store.vector_store import VectorStore
            try:
                self.vectors = VectorStore(
                    data_path=None if self.config.vector.url else self.config.vector.path,
                    collection_name=self.config.vector.collection,
                    embedding_dims=self.config.vector.dimensions,
                    url=self.config.vector.url,
                    api_key=self.config.vector.api_key,
                    on_disk=self.config.vector.on_disk,
                )
            except Exception as e:
                raise StoreUnavailableError(f"Cannot open vector store: {e}") from e
        if self.embedder is None:
            self.embedder = build_embedder(self.config.embedding)
        self._initialized = True

    def _pipeline(self, settings: PipelineConfig) -> IngestionPipeline:
        return IngestionPipeline(
            self.embedder,
            self.vectors,
            batch_size=settings.batch_size,
            batch_delay_seconds=settings.batch_delay_seconds,
            dry_run=settings.dry_run,
            skip_existing=settings.skip_existing,
            max_workers=settings.max_workers,
            sleep=self._sleep,
        )

    def _resolver(self) -> IdentityResolver:
        # Fresh cache per run; no identity state survives between runs.
        return IdentityResolver(
            self.relational,
            IdentityCache(),
            orphan_persona_name=self.config.identity.orphan_persona_name,
            orphan_persona_description=self.config.identity.orphan_persona_description,
        )

    def build_candidates(self, load: SourceLoad, summary: RunSummary) -> List[MemoryRecord]:
        """Pair, resolve and derive ids; fills the pairing counters on ``summary``."""
        paired, stats = pair_threads(load.turns)
        summary.threads = stats.threads
        summary.exchanges_paired = stats.exchanges
        summary.unmatched_initiators = stats.unmatched_initiators
        summary.duplicate_responders = stats.duplicate_responders

        user_ids = [user_id for (user_id, _, _) in paired]
        for legacy in load.summaries:
            user_ids.extend(legacy.sender_ids)
        resolutions = self._resolver().resolve_many(user_ids, load.hints)

        candidates: List[MemoryRecord] = []
        for (user_id, _, _), exchanges in paired.items():
            resolution = resolutions[user_id]
            candidates.extend(
                exchange_to_record(exchange, resolution, load.provenance) for exchange in exchanges
            )
        for legacy in load.summaries:
            candidates.extend(summary_to_records(legacy, resolutions, load.provenance))
        return candidates

    def run_ingestion(self, source, options: Optional[IngestOptions] = None) -> RunSummary:
        """
        Ingest everything ``source`` yields.

        Only configuration and store-connectivity errors propagate; item
        failures are counted and parked in the retry queue (unless dry-run).
        """
        self.initialize()
        t0 = time.time()
        settings = (options or IngestOptions()).apply(self.config.pipeline)
        summary = RunSummary(source=source.provenance, dry_run=settings.dry_run)

        load = source.load()
        summary.turns_seen = len(load.turns)
        summary.malformed = load.malformed
        summary.deleted = load.deleted

        candidates = self.build_candidates(load, summary)
        summary.candidates_seen = len(candidates)
        summary.orphaned = sum(
            1 for c in candidates if c.metadata.get("canon_scope") == CanonScope.ORPHAN.value
        )
        candidates, summary.duplicates_in_run = dedupe_candidates(candidates)

        result = self._pipeline(settings).ingest(candidates)
        summary.succeeded = result.succeeded
        summary.already_existing = result.already_existing
        summary.failed = len(result.failed)
        for failure in result.failed:
            summary.add_error(f"{failure.candidate.id}: {failure.error}")

        if not settings.dry_run:
            queue = RetryQueue(self.relational, max_attempts=settings.max_attempts)
            queue.enqueue_failures(result.failed)
            queue.resolve(result.settled_ids)

        summary.duration_seconds = round(time.time() - t0, 3)
        summary.log(logger)
        return summary

    def retry_queue(self, max_attempts: Optional[int] = None) -> RetryQueue:
        self.initialize()
        return RetryQueue(
            self.relational,
            lock=get_store_lock(self.config.data_dir),
            max_attempts=max_attempts or self.config.pipeline.max_attempts,
        )

    def run_retry_pass(self, max_attempts: Optional[int] = None, dry_run: bool = False) -> RunSummary:
        """Re-drive pending retry entries. Raises RetryPassInProgressError on overlap."""
        self.initialize()
        t0 = time.time()
        bound = max_attempts or self.config.pipeline.max_attempts
        settings = self.config.pipeline.model_copy(update={"dry_run": dry_run, "max_attempts": bound})
        queue = self.retry_queue(bound)

        outcome = queue.run_pass(self._pipeline(settings), bound)
        summary = RunSummary(
            source="retry-queue",
            dry_run=dry_run,
            candidates_seen=outcome.selected,
            retried=outcome.selected,
            retry_succeeded=outcome.succeeded,
            succeeded=outcome.succeeded,
            failed=outcome.failed,
            exhausted=outcome.exhausted,
            errors=outcome.errors,
        )
        summary.duration_seconds = round(time.time() - t0, 3)
        summary.log(logger)
        return summary

    def status(self) -> Dict[str, object]:
        self.initialize()
        counts = self.relational.count_pending_by_state()
        return {
            "retry_pending": counts.get("pending", 0),
            "retry_exhausted": counts.get("exhausted", 0),
            "vector_count": self.vectors.count(),
            "turns": self.relational.count_turns(),
        }

    def close(self) -> None:
        if self.vectors is not None and hasattr(self.vectors, "close"):
            self.vectors.close()
        if self.relational is not None and hasattr(self.relational, "close"):
            self.relational.close()
        if self.embedder is not None and hasattr(self.embedder, "close"):
            self.embedder.close()
        self._initialized = False
