"""Tests for memingest.identity.resolver: identity resolution and orphan fallback."""

from unittest.mock import MagicMock

import pytest

from memingest.core.types import IdentityHint
from memingest.identity.resolver import ORPHAN_PERSONA_ID, IdentityCache, IdentityResolver
from memingest.store.sqlite_store import RelationalStore


@pytest.fixture
def store(tmp_path):
    s = RelationalStore(tmp_path / "identity.db")
    yield s
    s.close()


def _seed_user(store, bridging_key, persona_name="Main"):
    user_id = store.add_user(bridging_key, username=f"user-{bridging_key}")
    persona_id = store.add_persona(persona_name, owner_id=user_id)
    store.set_default_persona(user_id, persona_id)
    return persona_id


class TestResolve:
    def test_resolves_via_bridging_key_hint(self, store):
        persona_id = _seed_user(store, "discord-111")
        resolver = IdentityResolver(store)
        result = resolver.resolve("legacy-uuid-1", IdentityHint(source_user_id="legacy-uuid-1", bridging_key="discord-111"))
        assert result.resolved is True
        assert result.is_orphaned is False
        assert result.persona_id == persona_id
        assert result.bridging_key == "discord-111"

    def test_plain_string_hint(self, store):
        persona_id = _seed_user(store, "discord-111")
        result = IdentityResolver(store).resolve("legacy-uuid-1", "discord-111")
        assert result.persona_id == persona_id

    def test_falls_back_to_first_owned_persona(self, store):
        user_id = store.add_user("discord-222")
        persona_id = store.add_persona("Only", owner_id=user_id)
        result = IdentityResolver(store).resolve("x", "discord-222")
        assert result.persona_id == persona_id

    def test_unknown_user_is_orphaned_never_raises(self, store):
        result = IdentityResolver(store).resolve("nobody", "discord-unknown")
        assert result.resolved is False
        assert result.is_orphaned is True
        assert result.persona_id == ORPHAN_PERSONA_ID
        assert store.get_persona(ORPHAN_PERSONA_ID)["is_orphan"] == 1

    def test_missing_hint_is_orphaned(self, store):
        result = IdentityResolver(store).resolve("no-hint")
        assert result.is_orphaned is True
        assert result.bridging_key is None

    def test_blank_hint_is_orphaned(self, store):
        result = IdentityResolver(store).resolve("blank", IdentityHint(source_user_id="blank", bridging_key="  "))
        assert result.is_orphaned is True

    def test_user_without_persona_is_orphaned(self, store):
        store.add_user("discord-333")
        result = IdentityResolver(store).resolve("x", "discord-333")
        assert result.is_orphaned is True
        assert result.bridging_key == "discord-333"


class TestOrphanPersona:
    def test_creation_is_idempotent_across_resolvers(self, store):
        first = IdentityResolver(store).orphan_persona_id()
        second = IdentityResolver(store).orphan_persona_id()
        assert first == second == ORPHAN_PERSONA_ID
        conn = store._get_conn()
        assert conn.execute("SELECT COUNT(*) FROM personas WHERE is_orphan = 1").fetchone()[0] == 1

    def test_created_lazily(self, store):
        _seed_user(store, "discord-111")
        IdentityResolver(store).resolve("x", "discord-111")
        assert store.get_persona(ORPHAN_PERSONA_ID) is None

    def test_store_failure_still_returns_orphan_id(self):
        store = MagicMock()
        store.get_or_create_persona.side_effect = RuntimeError("db locked")
        store.find_persona_by_bridging_key.return_value = None
        result = IdentityResolver(store).resolve("x", "k")
        assert result.is_orphaned is True
        assert result.persona_id == ORPHAN_PERSONA_ID

    def test_lookup_failure_is_orphaned_and_not_cached(self):
        store = MagicMock()
        store.get_or_create_persona.return_value = ORPHAN_PERSONA_ID
        store.find_persona_by_bridging_key.side_effect = [RuntimeError("boom"), "persona-9"]
        resolver = IdentityResolver(store)
        assert resolver.resolve("x", "k").is_orphaned is True
        assert resolver.resolve("y", "k").persona_id == "persona-9"


class TestCaching:
    def test_repeated_ids_cost_one_lookup(self):
        store = MagicMock()
        store.find_persona_by_bridging_key.return_value = "persona-1"
        cache = IdentityCache()
        resolver = IdentityResolver(store, cache)
        results = resolver.resolve_many(["a", "a", "a"], {"a": "key-a"})
        assert list(results) == ["a"]
        assert store.find_persona_by_bridging_key.call_count == 1
        assert cache.lookups == 1

    def test_shared_bridging_key_looked_up_once(self):
        store = MagicMock()
        store.find_persona_by_bridging_key.return_value = "persona-1"
        resolver = IdentityResolver(store)
        results = resolver.resolve_many(["snap1-user", "snap2-user"], {"snap1-user": "same", "snap2-user": "same"})
        assert {r.persona_id for r in results.values()} == {"persona-1"}
        store.find_persona_by_bridging_key.assert_called_once_with("same")

    def test_cache_keeps_bridging_key_per_source_user(self):
        store = MagicMock()
        store.find_persona_by_bridging_key.return_value = "persona-1"
        cache = IdentityCache()
        resolver = IdentityResolver(store, cache)
        resolver.resolve("a", "key-a")
        # Later calls for the same source id need no hint.
        assert resolver.resolve("a").persona_id == "persona-1"
        assert cache.bridging_keys == {"a": "key-a"}
        assert cache.personas == {"key-a": "persona-1"}

    def test_miss_is_cached(self):
        store = MagicMock()
        store.find_persona_by_bridging_key.return_value = None
        store.get_or_create_persona.return_value = ORPHAN_PERSONA_ID
        resolver = IdentityResolver(store)
        resolver.resolve("a", "k")
        resolver.resolve("b", "k")
        assert store.find_persona_by_bridging_key.call_count == 1
        assert store.get_or_create_persona.call_count == 1

    def test_separate_caches_do_not_share_state(self):
        store = MagicMock()
        store.find_persona_by_bridging_key.return_value = "persona-1"
        IdentityResolver(store, IdentityCache()).resolve("a", "k")
        IdentityResolver(store, IdentityCache()).resolve("a", "k")
        assert store.find_persona_by_bridging_key.call_count == 2

    def test_cache_clear(self):
        cache = IdentityCache(bridging_keys={"a": "k"}, personas={"k": "p"}, orphan_persona_id="o", lookups=3)
        cache.clear()
        assert cache == IdentityCache()
