"""
Pairing, sources, pipeline and retry queue.
"""

from memingest.ingestion.models import FailureRecord, IngestResult, PairingStats, RunSummary
from memingest.ingestion.pairing import pair_threads, pair_turns, sort_turns
from memingest.ingestion.pipeline import IngestionPipeline
from memingest.ingestion.retry import RetryQueue
from memingest.ingestion.sources import LegacyExportSource, RelationalTurnSource

__all__ = [
    "FailureRecord",
    "IngestResult",
    "PairingStats",
    "RunSummary",
    "pair_turns",
    "pair_threads",
    "sort_turns",
    "IngestionPipeline",
    "RetryQueue",
    "LegacyExportSource",
    "RelationalTurnSource",
]
