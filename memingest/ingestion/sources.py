"""
Turn sources.

A source loads one run's worth of input and validates it at the boundary:
records that fail validation are counted as malformed and skipped, never
raised. Two sources exist: the live relational store and a legacy JSON
export (chat history, pre-summarised memories, user mappings).
"""

from __future__ import annotations

import json
import logging
import math
from datetime import datetime, timezone
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Protocol, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from memingest.core.errors import ConfigurationError
from memingest.core.types import IdentityHint, Turn, TurnRole
from memingest.ingestion.models import LegacySummary, SourceLoad

logger = logging.getLogger("Memingest.Sources")

# Values above this are unix milliseconds (year 5138 in seconds).
_MILLIS_THRESHOLD = 1e11


def coerce_timestamp(value: Any) -> float:
    """Unix seconds from unix seconds, unix millis, or an ISO-8601 string."""
    if isinstance(value, bool):
        raise ValueError("boolean is not a timestamp")
    if isinstance(value, (int, float)):
        try:
            ts = float(value)
        except OverflowError as e:
            raise ValueError(f"timestamp out of range: {value!r}") from e
    elif isinstance(value, str) and value.strip():
        raw = value.strip()
        try:
            ts = float(raw)
        except ValueError:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.timestamp()
    else:
        raise ValueError(f"unsupported timestamp: {value!r}")
    if not math.isfinite(ts):
        raise ValueError(f"timestamp must be finite, got {value!r}")
    if ts < 0:
        raise ValueError("timestamp must be non-negative")
    return ts / 1000.0 if ts > _MILLIS_THRESHOLD else ts


class TurnSource(Protocol):
    provenance: str

    def load(self) -> SourceLoad:
        ...


# ---------------------------------------------------------------------------
# Relational store
# ---------------------------------------------------------------------------

class RelationalTurnSource:
    """Conversation turns from the live relational store."""

    def __init__(
        self,
        store,
        since: Optional[float] = None,
        until: Optional[float] = None,
        source_system_id: Optional[str] = None,
        page_size: int = 500,
        provenance: str = "relational",
    ):
        self.store = store
        self.since = since
        self.until = until
        self.source_system_id = source_system_id
        self.page_size = page_size
        self.provenance = provenance

    def load(self) -> SourceLoad:
        result = SourceLoad(provenance=self.provenance)
        for row in self.store.iter_turns(
            since=self.since,
            until=self.until,
            source_system_id=self.source_system_id,
            page_size=self.page_size,
        ):
            try:
                turn = Turn(
                    role=TurnRole.from_source(row["role"]),
                    content=row["content"],
                    created_at=coerce_timestamp(row["created_at"]),
                    context_id=row["context_id"],
                    source_user_id=row["source_user_id"],
                    source_system_id=row["source_system_id"],
                    turn_id=row["id"],
                    guild_id=row["guild_id"],
                )
            except (ValidationError, ValueError) as e:
                result.malformed += 1
                logger.debug("Skipping malformed history row %s: %s", row["id"], e)
                continue
            if not turn.content.strip():
                result.malformed += 1
                continue
            result.turns.append(turn)

        user_ids = {turn.source_user_id for turn in result.turns}
        result.hints = self.store.get_identity_hints(user_ids)
        # Live-system user ids are platform account ids, i.e. already bridging keys.
        for user_id in user_ids:
            result.hints.setdefault(
                user_id, IdentityHint(source_user_id=user_id, bridging_key=user_id)
            )
        logger.info(
            "Loaded %d turns from relational store (%d malformed)",
            len(result.turns),
            result.malformed,
        )
        return result


# ---------------------------------------------------------------------------
# Legacy export
# ---------------------------------------------------------------------------

class LegacyTurnRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    kind: Literal["turn"] = "turn"
    id: Optional[str] = None
    role: str
    content: str = Field(validation_alias=AliasChoices("content", "text", "message"))
    created_at: float = Field(validation_alias=AliasChoices("ts", "created_at", "timestamp"))
    user_id: str = Field(min_length=1, validation_alias=AliasChoices("user_id", "sender_id", "author_id"))
    channel_id: Optional[str] = None
    guild_id: Optional[str] = None

    @field_validator("created_at", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> float:
        return coerce_timestamp(value)

    @field_validator("content")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("content is empty")
        return value


class LegacySummaryMetadata(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    created_at: float
    discord_channel_id: Optional[str] = None
    discord_guild_id: Optional[str] = None
    msg_ids: List[str] = Field(default_factory=list)

    @field_validator("created_at", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> float:
        return coerce_timestamp(value)


class LegacySummaryRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    kind: Literal["summary"] = "summary"
    id: str = Field(min_length=1)
    result: str
    senders: List[str] = Field(min_length=1)
    deleted: bool = False
    summary_type: Optional[str] = None
    metadata: LegacySummaryMetadata

    @field_validator("result")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("result is empty")
        return value


def _record_kind(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        if "kind" in value:
            return value["kind"]
        if "result" in value or "senders" in value:
            return "summary"
        if "role" in value:
            return "turn"
        return None
    return getattr(value, "kind", None)


LegacyRecord = Annotated[
    Union[
        Annotated[LegacyTurnRecord, Tag("turn")],
        Annotated[LegacySummaryRecord, Tag("summary")],
    ],
    Discriminator(_record_kind),
]

_RECORD_ADAPTER: TypeAdapter = TypeAdapter(LegacyRecord)


def parse_legacy_record(raw: Any) -> Union[LegacyTurnRecord, LegacySummaryRecord]:
    """Validate one loosely-shaped export record into its tagged variant."""
    return _RECORD_ADAPTER.validate_python(raw)


def _read_json(path: Path) -> Any:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Export file not found: {path}") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Export file is not valid JSON: {path}: {e}") from e


def load_user_mappings(path: Path) -> Dict[str, IdentityHint]:
    """
    Read ``{"mappings": {legacy_user_id: {"discordId": ..., "note": ...}}}``.

    Entries without a bridging key are kept so the user still resolves (to
    the orphan persona) without a second lookup.
    """
    data = _read_json(path)
    mappings = data.get("mappings", data) if isinstance(data, dict) else None
    if not isinstance(mappings, dict):
        raise ConfigurationError(f"Mappings file {path} must contain an object")
    hints: Dict[str, IdentityHint] = {}
    for legacy_user_id, entry in mappings.items():
        if isinstance(entry, str):
            hints[legacy_user_id] = IdentityHint(source_user_id=legacy_user_id, bridging_key=entry)
            continue
        if not isinstance(entry, dict):
            logger.debug("Ignoring mapping for %s: not an object", legacy_user_id)
            continue
        key = entry.get("discordId") or entry.get("bridging_key")
        hints[legacy_user_id] = IdentityHint(
            source_user_id=legacy_user_id,
            bridging_key=str(key) if key else None,
            note=entry.get("note"),
        )
    return hints


class LegacyExportSource:
    """Chat history and summarised memories from a legacy JSON export."""

    def __init__(
        self,
        source_system_id: str,
        chat_history: Optional[Union[str, Path]] = None,
        memories: Optional[Union[str, Path]] = None,
        mappings: Optional[Union[str, Path]] = None,
        provenance: str = "legacy-export",
    ):
        if not source_system_id:
            raise ConfigurationError("Legacy export requires a source_system_id")
        if chat_history is None and memories is None:
            raise ConfigurationError("Legacy export needs a chat history or memories file")
        self.source_system_id = source_system_id
        self.chat_history = Path(chat_history) if chat_history else None
        self.memories = Path(memories) if memories else None
        self.mappings = Path(mappings) if mappings else None
        self.provenance = provenance

    def _chat_records(self) -> tuple:
        data = _read_json(self.chat_history)
        default_context = f"legacy:{self.source_system_id}"
        if isinstance(data, dict):
            shape_id = data.get("shape_id")
            if shape_id:
                default_context = f"legacy:{shape_id}"
            records = data.get("messages", [])
        else:
            records = data
        if not isinstance(records, list):
            raise ConfigurationError(f"Chat history {self.chat_history} has no message list")
        return records, default_context

    def _memory_records(self) -> list:
        data = _read_json(self.memories)
        if isinstance(data, dict):
            data = data.get("memories", [])
        if not isinstance(data, list):
            raise ConfigurationError(f"Memories file {self.memories} must hold a list")
        return data

    def _accept(self, record, result: SourceLoad, default_context: str) -> None:
        if isinstance(record, LegacyTurnRecord):
            result.turns.append(
                Turn(
                    role=TurnRole.from_source(record.role),
                    content=record.content,
                    created_at=record.created_at,
                    context_id=record.channel_id or default_context,
                    source_user_id=record.user_id,
                    source_system_id=self.source_system_id,
                    turn_id=record.id,
                    guild_id=record.guild_id,
                )
            )
            return
        if record.deleted:
            result.deleted += 1
            return
        meta = record.metadata
        result.summaries.append(
            LegacySummary(
                legacy_id=record.id,
                content=record.result.strip(),
                sender_ids=list(dict.fromkeys(record.senders)),
                source_system_id=self.source_system_id,
                context_id=meta.discord_channel_id or default_context,
                created_at=meta.created_at,
                metadata={
                    "legacy_id": record.id,
                    "summary_type": record.summary_type,
                    "guild_id": meta.discord_guild_id,
                    "msg_ids": meta.msg_ids,
                },
            )
        )

    def load(self) -> SourceLoad:
        result = SourceLoad(provenance=self.provenance)
        batches = []
        if self.chat_history is not None:
            batches.append(self._chat_records())
        if self.memories is not None:
            batches.append((self._memory_records(), f"legacy:{self.source_system_id}"))

        for records, default_context in batches:
            for index, raw in enumerate(records):
                try:
                    record = parse_legacy_record(raw)
                except ValidationError as e:
                    result.malformed += 1
                    logger.debug("Skipping malformed export record #%d: %s", index, e.errors()[:1])
                    continue
                self._accept(record, result, default_context)

        if self.mappings is not None:
            result.hints = load_user_mappings(self.mappings)
        logger.info(
            "Loaded legacy export: %d turns, %d summaries (%d malformed, %d deleted, %d mappings)",
            len(result.turns),
            len(result.summaries),
            result.malformed,
            result.deleted,
            len(result.hints),
        )
        return result
