"""
Identity resolution across source-system id spaces.

A source user id (legacy export uuid, platform account id, ...) is mapped
to a bridging key, and the bridging key to a canonical persona. Misses are
routed to a singleton orphan persona instead of failing, so every exchange
stays attributable and can be reassigned once the identity is known.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, Mapping, Optional, Union

from memingest.core.content_id import derive_scoped_id
from memingest.core.types import IdentityHint, IdentityResolution

logger = logging.getLogger("Memingest.Identity")

ORPHAN_PERSONA_ID = derive_scoped_id("persona", "orphan")
DEFAULT_ORPHAN_NAME = "Orphaned Memories"

HintLike = Union[IdentityHint, str, None]


@dataclass
class IdentityCache:
    """
    Resolution caches for one pipeline run.

    ``bridging_keys`` maps source user id -> bridging key (None: no key known).
    ``personas`` maps bridging key -> persona id (None: confirmed miss).
    Kept separate because many source ids can share one bridging key.
    """

    bridging_keys: Dict[str, Optional[str]] = field(default_factory=dict)
    personas: Dict[str, Optional[str]] = field(default_factory=dict)
    orphan_persona_id: Optional[str] = None
    lookups: int = 0

    def clear(self) -> None:
        self.bridging_keys.clear()
        self.personas.clear()
        self.orphan_persona_id = None
        self.lookups = 0


def _bridging_key_from_hint(hint: HintLike) -> Optional[str]:
    if hint is None:
        return None
    if isinstance(hint, str):
        key = hint
    else:
        key = hint.bridging_key
    key = (key or "").strip()
    return key or None


class IdentityResolver:
    """Maps source user ids to persona ids; never raises on a miss."""

    def __init__(
        self,
        store,
        cache: Optional[IdentityCache] = None,
        orphan_persona_name: str = DEFAULT_ORPHAN_NAME,
        orphan_persona_description: Optional[str] = None,
    ):
        self.store = store
        self.cache = cache if cache is not None else IdentityCache()
        self.orphan_persona_name = orphan_persona_name
        self.orphan_persona_description = orphan_persona_description

    def orphan_persona_id(self) -> str:
        """Get-or-create the orphan persona; idempotent across runs and processes."""
        if self.cache.orphan_persona_id is not None:
            return self.cache.orphan_persona_id
        try:
            persona_id = self.store.get_or_create_persona(
                ORPHAN_PERSONA_ID,
                self.orphan_persona_name,
                description=self.orphan_persona_description,
                is_orphan=True,
            )
        except Exception as e:
            # The id is deterministic, so attribution stays valid; creation is retried on next use.
            logger.error("Failed to create orphan persona %s: %s", ORPHAN_PERSONA_ID, e)
            return ORPHAN_PERSONA_ID
        self.cache.orphan_persona_id = persona_id
        logger.info("Orphan persona ready: %s", persona_id)
        return persona_id

    def _orphaned(self, bridging_key: Optional[str]) -> IdentityResolution:
        return IdentityResolution(
            resolved=False,
            persona_id=self.orphan_persona_id(),
            is_orphaned=True,
            bridging_key=bridging_key,
        )

    def _lookup_persona(self, bridging_key: str) -> Optional[str]:
        if bridging_key in self.cache.personas:
            return self.cache.personas[bridging_key]
        self.cache.lookups += 1
        try:
            persona_id = self.store.find_persona_by_bridging_key(bridging_key)
        except Exception as e:
            # Not cached: a transient failure must not pin this key to the orphan bucket.
            logger.warning("Persona lookup failed for bridging key %s: %s", bridging_key, e)
            return None
        self.cache.personas[bridging_key] = persona_id
        return persona_id

    def resolve(self, source_user_id: str, hint: HintLike = None) -> IdentityResolution:
        bridging_key = self.cache.bridging_keys.get(source_user_id)
        if bridging_key is None:
            bridging_key = _bridging_key_from_hint(hint)
            self.cache.bridging_keys[source_user_id] = bridging_key

        if bridging_key is None:
            logger.debug("No bridging key for %s; routing to orphan persona", source_user_id)
            return self._orphaned(None)

        persona_id = self._lookup_persona(bridging_key)
        if persona_id is None:
            logger.debug("No persona for bridging key %s (user %s)", bridging_key, source_user_id)
            return self._orphaned(bridging_key)

        return IdentityResolution(
            resolved=True,
            persona_id=persona_id,
            is_orphaned=False,
            bridging_key=bridging_key,
        )

    def resolve_many(
        self,
        source_user_ids: Iterable[str],
        hints: Optional[Mapping[str, HintLike]] = None,
    ) -> Dict[str, IdentityResolution]:
        hints = hints or {}
        results: Dict[str, IdentityResolution] = {}
        for source_user_id in source_user_ids:
            if source_user_id in results:
                continue
            results[source_user_id] = self.resolve(source_user_id, hints.get(source_user_id))
        orphaned = sum(1 for r in results.values() if r.is_orphaned)
        logger.debug("Resolved %d identities (%d orphaned)", len(results), orphaned)
        return results
