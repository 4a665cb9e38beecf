"""
Memingest Core Types
--------------------
Pydantic models and enums shared across identity resolution, pairing,
ingestion and the retry queue.
"""

import time
from enum import Enum
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field

from memingest.core.content_id import format_exchange_content

_INITIATOR_ROLES = frozenset({"user", "human", "initiator"})
_RESPONDER_ROLES = frozenset({"assistant", "bot", "ai", "responder"})


class TurnRole(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"
    OTHER = "other"

    @classmethod
    def from_source(cls, raw: Optional[str]) -> "TurnRole":
        """Map a source-system role label onto the pairing roles."""
        label = (raw or "").strip().lower()
        if label in _INITIATOR_ROLES:
            return cls.INITIATOR
        if label in _RESPONDER_ROLES:
            return cls.RESPONDER
        return cls.OTHER


class CanonScope(str, Enum):
    PERSONAL = "personal"
    ORPHAN = "orphan"


class Turn(BaseModel):
    """A single conversational message as read from a source system."""
    model_config = ConfigDict(frozen=True)

    role: TurnRole
    content: str
    created_at: float = Field(allow_inf_nan=False)
    context_id: str = Field(min_length=1)
    source_user_id: str = Field(min_length=1)
    source_system_id: str = Field(min_length=1)
    turn_id: Optional[str] = None
    guild_id: Optional[str] = None


class Exchange(BaseModel):
    """A paired initiator/responder turn, in flight between pairing and ingestion."""
    model_config = ConfigDict(frozen=True)

    initiator: Turn
    responder: Turn
    source_system_id: str
    context_id: str
    created_at: float
    persona_id: Optional[str] = None

    @property
    def content(self) -> str:
        return format_exchange_content(self.initiator.content, self.responder.content)


class IdentityHint(BaseModel):
    """Source-provided payload that may carry the bridging key for a user."""
    source_user_id: str
    bridging_key: Optional[str] = None
    note: Optional[str] = None


class IdentityResolution(BaseModel):
    resolved: bool
    persona_id: str
    is_orphaned: bool
    bridging_key: Optional[str] = None


class MemoryRecord(BaseModel):
    """The unit of long-term storage, keyed by a content-addressed id."""
    id: str
    persona_id: str
    source_system_id: str
    content: str
    context_id: str
    created_at: float = Field(default_factory=time.time)
    provenance: str
    embedding: Optional[List[float]] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def payload(self) -> Dict[str, Any]:
        """Vector store payload: provenance fields plus source extras."""
        payload = dict(self.metadata)
        payload.update(
            {
                "memory_id": self.id,
                "persona_id": self.persona_id,
                "source_system_id": self.source_system_id,
                "context_id": self.context_id,
                "created_at": self.created_at,
                "provenance": self.provenance,
                "content": self.content,
            }
        )
        return payload


class RetryState(str, Enum):
    """Success deletes the entry, so only the two live states are stored."""
    PENDING = "pending"
    EXHAUSTED = "exhausted"


class RetryEntry(BaseModel):
    """A durable record of a failed ingestion awaiting re-drive."""
    record: MemoryRecord
    attempts: int = 0
    state: RetryState = RetryState.PENDING
    last_error: Optional[str] = None
    last_attempt_at: Optional[float] = None
    enqueued_at: float = Field(default_factory=time.time)
