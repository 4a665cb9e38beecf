# Lazy import: MemoryIngestor pulls in qdrant_client and httpx
from memingest.core.types import Exchange, MemoryRecord, Turn, TurnRole

__all__ = ["MemoryIngestor", "Exchange", "MemoryRecord", "Turn", "TurnRole"]


def __getattr__(name):
    if name == "MemoryIngestor":
        from memingest.core.engine import MemoryIngestor
        return MemoryIngestor
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
