"""
Memingest: conversational history into long-term vector memory.
"""

from memingest.core.content_id import derive_memory_id
from memingest.core.errors import (
    ConfigurationError,
    EmbeddingError,
    MemingestError,
    RetryPassInProgressError,
    StoreUnavailableError,
    VectorStoreError,
)
from memingest.version import __version__

__all__ = [
    "__version__",
    "MemoryIngestor",
    "derive_memory_id",
    "MemingestError",
    "ConfigurationError",
    "StoreUnavailableError",
    "EmbeddingError",
    "VectorStoreError",
    "RetryPassInProgressError",
]


def __getattr__(name):
    if name == "MemoryIngestor":
        from memingest.core.engine import MemoryIngestor
        return MemoryIngestor
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
