"""
Memingest exceptions.

Only ConfigurationError and StoreUnavailableError abort a run. Everything
else is captured per item and folded into the failure list or retry queue.
"""

from __future__ import annotations

from typing import Optional


class MemingestError(RuntimeError):
    """Base class for ingestion errors."""


class ConfigurationError(MemingestError):
    """Raised when configuration prevents any progress."""


class StoreUnavailableError(MemingestError):
    """Raised when the relational store cannot be opened or queried."""


class EmbeddingError(MemingestError):
    """Raised when the embedding service fails for a single text."""

    def __init__(
        self,
        detail: str,
        *,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        provider_hint = f" [{provider}]" if provider else ""
        status_hint = f" (status={status_code})" if status_code is not None else ""
        super().__init__(f"{detail}{status_hint}{provider_hint}")


class VectorStoreError(MemingestError):
    """Raised when a vector store operation fails."""

    def __init__(self, detail: str, *, operation: Optional[str] = None) -> None:
        self.operation = operation
        op_hint = f" during {operation}" if operation else ""
        super().__init__(f"{detail}{op_hint}")


class MalformedRecordError(MemingestError):
    """Raised at the source boundary for records that fail validation."""


class RetryPassInProgressError(MemingestError):
    """Raised when another retry pass already holds the queue lock."""
