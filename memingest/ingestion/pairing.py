"""
Exchange pairing.

Turns from a single thread are sorted by timestamp and scanned once, left to
right. An initiator pairs with the first responder after it; noise turns in
between are skipped, a newer initiator supersedes an unanswered one, and
responders with no open initiator are dropped as duplicates.
"""

import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from memingest.core.types import Exchange, Turn, TurnRole
from memingest.ingestion.models import PairingStats

logger = logging.getLogger("Memingest.Pairing")

ThreadKey = Tuple[str, str, str]


def sort_turns(turns: Iterable[Turn]) -> List[Turn]:
    """Ascending by created_at; ties keep source order."""
    return sorted(turns, key=lambda t: t.created_at)


def pair_turns(turns: Sequence[Turn], stats: Optional[PairingStats] = None) -> List[Exchange]:
    """
    Pair a time-ordered turn sequence into exchanges. O(n).

    The caller must sort ``turns`` first (see ``sort_turns``).
    """
    stats = stats if stats is not None else PairingStats()
    exchanges: List[Exchange] = []
    n = len(turns)
    i = 0
    while i < n:
        turn = turns[i]
        if turn.role != TurnRole.INITIATOR:
            if turn.role == TurnRole.RESPONDER:
                stats.duplicate_responders += 1
            else:
                stats.noise_turns += 1
            i += 1
            continue

        j = i + 1
        while j < n and turns[j].role == TurnRole.OTHER:
            stats.noise_turns += 1
            j += 1

        if j < n and turns[j].role == TurnRole.RESPONDER:
            responder = turns[j]
            exchanges.append(
                Exchange(
                    initiator=turn,
                    responder=responder,
                    source_system_id=turn.source_system_id,
                    context_id=turn.context_id,
                    created_at=turn.created_at,
                )
            )
            stats.exchanges += 1
            i = j + 1
        else:
            # Unanswered: either the sequence ended or a newer initiator took over at j.
            stats.unmatched_initiators += 1
            i = j

    return exchanges


def group_threads(turns: Iterable[Turn]) -> "OrderedDict[ThreadKey, List[Turn]]":
    """Group turns by (source user, source system, context) in first-seen order."""
    threads: "OrderedDict[ThreadKey, List[Turn]]" = OrderedDict()
    for turn in turns:
        key = (turn.source_user_id, turn.source_system_id, turn.context_id)
        threads.setdefault(key, []).append(turn)
    return threads


def pair_threads(turns: Iterable[Turn]) -> Tuple[Dict[ThreadKey, List[Exchange]], PairingStats]:
    """Group, sort and pair every thread. A pair never crosses threads."""
    stats = PairingStats()
    paired: Dict[ThreadKey, List[Exchange]] = OrderedDict()
    for key, thread in group_threads(turns).items():
        stats.threads += 1
        exchanges = pair_turns(sort_turns(thread), stats)
        if exchanges:
            paired[key] = exchanges
    logger.debug(
        "Paired %d exchanges (%d unmatched initiators, %d duplicate responders, %d noise)",
        stats.exchanges,
        stats.unmatched_initiators,
        stats.duplicate_responders,
        stats.noise_turns,
    )
    return paired, stats
