# Lazy import: VectorStore needs qdrant_client
from memingest.store.sqlite_store import RelationalStore

__all__ = ["RelationalStore", "VectorStore"]


def __getattr__(name):
    if name == "VectorStore":
        from memingest.store.vector_store import VectorStore
        return VectorStore
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
