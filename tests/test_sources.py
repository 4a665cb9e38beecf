"""Tests for memingest.ingestion.sources: relational and legacy export sources."""

import json

import pytest
from pydantic import ValidationError

from memingest.core.errors import ConfigurationError
from memingest.core.types import Turn, TurnRole
from memingest.ingestion.sources import (
    LegacyExportSource,
    LegacySummaryRecord,
    LegacyTurnRecord,
    RelationalTurnSource,
    coerce_timestamp,
    load_user_mappings,
    parse_legacy_record,
)
from memingest.store.sqlite_store import RelationalStore


# ---------------------------------------------------------------------------
# Timestamps
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "value",
    [1700000000, 1700000000.0, 1700000000000, "1700000000", "2023-11-14T22:13:20Z", "2023-11-14T22:13:20"],
)
def test_coerce_timestamp_forms(value):
    assert coerce_timestamp(value) == pytest.approx(1700000000.0)


@pytest.mark.parametrize(
    "value", [None, True, "", "yesterday", -5, [1], "nan", "inf", "-inf", float("nan"), float("inf"), 10 ** 400]
)
def test_coerce_timestamp_rejects(value):
    with pytest.raises(ValueError):
        coerce_timestamp(value)


# ---------------------------------------------------------------------------
# Relational source
# ---------------------------------------------------------------------------

@pytest.fixture
def store(tmp_path):
    s = RelationalStore(tmp_path / "source.db")
    yield s
    s.close()


def _turn(ts, role, user="u1", content=None, system="pers-1", turn_id=None):
    return Turn(
        role=role,
        content=content if content is not None else f"{role.value} at {ts}",
        created_at=ts,
        context_id="ch-1",
        source_user_id=user,
        source_system_id=system,
        turn_id=turn_id,
    )


def test_relational_source_loads_turns_in_order(store):
    store.add_turns([
        _turn(20, TurnRole.RESPONDER, turn_id="b"),
        _turn(10, TurnRole.INITIATOR, turn_id="a"),
    ])
    load = RelationalTurnSource(store).load()
    assert load.provenance == "relational"
    assert [t.turn_id for t in load.turns] == ["a", "b"]
    assert load.turns[0].role == TurnRole.INITIATOR
    assert load.malformed == 0


def test_relational_source_counts_malformed_rows(store):
    store.add_turns([
        _turn(10, TurnRole.INITIATOR, turn_id="ok"),
        _turn(11, TurnRole.RESPONDER, content="   ", turn_id="blank"),
    ])
    conn = store._get_conn()
    with conn:
        conn.execute(
            "INSERT INTO conversation_history (id, context_id, source_system_id, source_user_id, "
            "role, content, created_at) VALUES ('bad-ts', 'ch-1', 'pers-1', 'u1', 'user', 'hi', 'garbage')"
        )
    load = RelationalTurnSource(store).load()
    assert [t.turn_id for t in load.turns] == ["ok"]
    assert load.malformed == 2


def test_relational_source_filters(store):
    store.add_turns([
        _turn(10, TurnRole.INITIATOR, turn_id="a"),
        _turn(20, TurnRole.INITIATOR, turn_id="b"),
        _turn(30, TurnRole.INITIATOR, turn_id="c", system="pers-2"),
    ])
    load = RelationalTurnSource(store, since=15, source_system_id="pers-1", page_size=1).load()
    assert [t.turn_id for t in load.turns] == ["b"]


def test_relational_source_hints(store):
    store.add_identity_hint("u1", "discord-1")
    store.add_turns([
        _turn(10, TurnRole.INITIATOR, user="u1"),
        _turn(11, TurnRole.INITIATOR, user="u2"),
    ])
    load = RelationalTurnSource(store).load()
    assert load.hints["u1"].bridging_key == "discord-1"
    # No hint row: the live user id is itself the bridging key.
    assert load.hints["u2"].bridging_key == "u2"


# ---------------------------------------------------------------------------
# Legacy records
# ---------------------------------------------------------------------------

def test_parse_turn_record_with_aliases():
    record = parse_legacy_record(
        {"id": 42, "role": "user", "text": "hello", "ts": 1700000000000, "sender_id": 7}
    )
    assert isinstance(record, LegacyTurnRecord)
    assert record.id == "42"
    assert record.user_id == "7"
    assert record.content == "hello"
    assert record.created_at == pytest.approx(1700000000.0)


def test_parse_summary_record_by_shape():
    record = parse_legacy_record(
        {
            "id": "mem-1",
            "result": "They talked about gardening.",
            "senders": ["legacy-1"],
            "metadata": {"created_at": "2023-11-14T22:13:20Z", "discord_channel_id": 555},
        }
    )
    assert isinstance(record, LegacySummaryRecord)
    assert record.metadata.discord_channel_id == "555"
    assert record.deleted is False


@pytest.mark.parametrize(
    "raw",
    [
        42,
        {"unrelated": True},
        {"role": "user", "content": "hi", "ts": 1},
        {"role": "user", "content": "   ", "ts": 1, "user_id": "u1"},
        {"id": "m", "result": "x", "senders": [], "metadata": {"created_at": 1}},
        {"id": "m", "result": "x", "senders": ["a"], "metadata": {}},
    ],
)
def test_parse_rejects_malformed(raw):
    with pytest.raises(ValidationError):
        parse_legacy_record(raw)


# ---------------------------------------------------------------------------
# Mappings
# ---------------------------------------------------------------------------

def _write(path, data):
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


def test_load_user_mappings(tmp_path):
    path = _write(
        tmp_path / "uuid-mappings.json",
        {
            "mappings": {
                "legacy-1": {"discordId": "discord-1", "note": "main account"},
                "legacy-2": {"note": "never linked"},
                "legacy-3": "discord-3",
                "legacy-4": 17,
            }
        },
    )
    hints = load_user_mappings(path)
    assert hints["legacy-1"].bridging_key == "discord-1"
    assert hints["legacy-1"].note == "main account"
    assert hints["legacy-2"].bridging_key is None
    assert hints["legacy-3"].bridging_key == "discord-3"
    assert "legacy-4" not in hints


def test_load_user_mappings_rejects_non_object(tmp_path):
    with pytest.raises(ConfigurationError):
        load_user_mappings(_write(tmp_path / "m.json", ["nope"]))


# ---------------------------------------------------------------------------
# Legacy export source
# ---------------------------------------------------------------------------

def test_legacy_source_requires_input():
    with pytest.raises(ConfigurationError):
        LegacyExportSource(source_system_id="lilith")
    with pytest.raises(ConfigurationError):
        LegacyExportSource(source_system_id="", memories="x.json")


def test_legacy_source_missing_file(tmp_path):
    source = LegacyExportSource(source_system_id="lilith", memories=tmp_path / "missing.json")
    with pytest.raises(ConfigurationError, match="not found"):
        source.load()


def test_legacy_source_invalid_json(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="not valid JSON"):
        LegacyExportSource(source_system_id="lilith", memories=path).load()


def test_legacy_source_chat_history(tmp_path):
    history = _write(
        tmp_path / "chat_history.json",
        {
            "shape_id": "shape-9",
            "messages": [
                {"id": "1", "role": "user", "content": "hi", "ts": 1700000000, "user_id": "legacy-1"},
                {"id": "2", "role": "assistant", "content": "hello", "ts": 1700000001, "user_id": "legacy-1"},
                {"id": "3", "role": "user", "content": "", "ts": 1700000002, "user_id": "legacy-1"},
                {"id": "4", "role": "user", "content": "in a channel", "ts": 1700000003,
                 "user_id": "legacy-1", "channel_id": "ch-7"},
            ],
        },
    )
    load = LegacyExportSource(source_system_id="lilith", chat_history=history).load()
    assert load.provenance == "legacy-export"
    assert len(load.turns) == 3
    assert load.malformed == 1
    assert load.turns[0].context_id == "legacy:shape-9"
    assert load.turns[1].role == TurnRole.RESPONDER
    assert load.turns[2].context_id == "ch-7"
    assert all(t.source_system_id == "lilith" for t in load.turns)


def test_legacy_source_memories_and_mappings(tmp_path):
    memories = _write(
        tmp_path / "memories.json",
        [
            {
                "id": "mem-1",
                "result": "  They planned a trip.  ",
                "senders": ["legacy-1", "legacy-2", "legacy-1"],
                "summary_type": "automatic",
                "metadata": {"created_at": 1700000000, "discord_guild_id": "g-1", "msg_ids": ["a", "b"]},
            },
            {
                "id": "mem-2",
                "result": "Removed.",
                "senders": ["legacy-1"],
                "deleted": True,
                "metadata": {"created_at": 1700000000},
            },
            {"id": "mem-3", "result": "No metadata", "senders": ["legacy-1"]},
        ],
    )
    mappings = _write(tmp_path / "uuid-mappings.json", {"mappings": {"legacy-1": {"discordId": "d-1"}}})

    load = LegacyExportSource(source_system_id="lilith", memories=memories, mappings=mappings).load()

    assert load.deleted == 1
    assert load.malformed == 1
    assert len(load.summaries) == 1
    summary = load.summaries[0]
    assert summary.content == "They planned a trip."
    assert summary.sender_ids == ["legacy-1", "legacy-2"]
    assert summary.context_id == "legacy:lilith"
    assert summary.metadata["guild_id"] == "g-1"
    assert summary.metadata["msg_ids"] == ["a", "b"]
    assert load.hints["legacy-1"].bridging_key == "d-1"


def _insert_raw(store, row_id, context_id="ch-1", source_system_id="pers-1", source_user_id="u1",
                role="user", content="hi", created_at=10.0):
    conn = store._get_conn()
    with conn:
        conn.execute(
            "INSERT INTO conversation_history (id, context_id, source_system_id, source_user_id, "
            "role, content, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
            (row_id, context_id, source_system_id, source_user_id, role, content, created_at),
        )


@pytest.mark.parametrize("column", ["context_id", "source_system_id", "source_user_id"])
def test_relational_source_rejects_blank_scoping_columns(store, column):
    _insert_raw(store, "good", created_at=10.0)
    _insert_raw(store, "blank", created_at=11.0, **{column: ""})
    load = RelationalTurnSource(store).load()
    assert [t.turn_id for t in load.turns] == ["good"]
    assert load.malformed == 1


def test_legacy_source_rejects_non_finite_timestamps(tmp_path):
    history = _write(
        tmp_path / "chat_history.json",
        [
            {"id": "1", "role": "user", "content": "hi", "ts": "nan", "user_id": "legacy-1"},
            {"id": "2", "role": "user", "content": "hi", "ts": "inf", "user_id": "legacy-1"},
            {"id": "3", "role": "user", "content": "hi", "ts": 1700000000, "user_id": "legacy-1"},
        ],
    )
    load = LegacyExportSource(source_system_id="lilith", chat_history=history).load()
    assert [t.turn_id for t in load.turns] == ["3"]
    assert load.malformed == 2
