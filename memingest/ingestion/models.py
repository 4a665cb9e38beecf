"""
Data models for ingestion runs.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from memingest.core.types import IdentityHint, MemoryRecord, Turn

MAX_SUMMARY_ERRORS = 20


@dataclass
class FailureRecord:
    candidate: MemoryRecord
    error: str


@dataclass
class PairingStats:
    threads: int = 0
    exchanges: int = 0
    unmatched_initiators: int = 0
    duplicate_responders: int = 0
    noise_turns: int = 0


@dataclass
class LegacySummary:
    """A pre-summarised legacy memory with one or more senders."""
    legacy_id: str
    content: str
    sender_ids: List[str]
    source_system_id: str
    context_id: str
    created_at: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SourceLoad:
    """Everything a source yields for one run, already validated."""
    provenance: str
    turns: List[Turn] = field(default_factory=list)
    summaries: List[LegacySummary] = field(default_factory=list)
    hints: Dict[str, IdentityHint] = field(default_factory=dict)
    malformed: int = 0
    deleted: int = 0


@dataclass
class IngestResult:
    succeeded: int = 0
    failed: List[FailureRecord] = field(default_factory=list)
    already_existing: int = 0
    settled_ids: List[str] = field(default_factory=list)


@dataclass
class RunSummary:
    source: str
    dry_run: bool = False
    turns_seen: int = 0
    threads: int = 0
    candidates_seen: int = 0
    exchanges_paired: int = 0
    unmatched_initiators: int = 0
    duplicate_responders: int = 0
    malformed: int = 0
    deleted: int = 0
    orphaned: int = 0
    duplicates_in_run: int = 0
    already_existing: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    retry_succeeded: int = 0
    exhausted: int = 0
    duration_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)

    def add_error(self, message: str) -> None:
        if len(self.errors) < MAX_SUMMARY_ERRORS:
            self.errors.append(message)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def log(self, logger: Optional[logging.Logger] = None) -> None:
        log = logger or logging.getLogger("Memingest.Run")
        log.info(
            "Run complete [%s]%s: seen=%d paired=%d existing=%d succeeded=%d failed=%d "
            "retried=%d exhausted=%d orphaned=%d malformed=%d (%.1fs)",
            self.source,
            " (dry run)" if self.dry_run else "",
            self.candidates_seen,
            self.exchanges_paired,
            self.already_existing,
            self.succeeded,
            self.failed,
            self.retried,
            self.exhausted,
            self.orphaned,
            self.malformed,
            self.duration_seconds,
        )
        if self.unmatched_initiators or self.duplicate_responders:
            log.info(
                "Pairing anomalies: %d unmatched initiators, %d duplicate responders",
                self.unmatched_initiators,
                self.duplicate_responders,
            )


@dataclass
class RetryPassResult:
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    exhausted: int = 0
    errors: List[str] = field(default_factory=list)
