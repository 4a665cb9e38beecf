"""
Memingest SQLite Relational Store
---------------------------------
Users, personas, identity hints and conversation turns, plus the durable
retry ledger (pending_memories). SQLite provides ACID guarantees and
zero-config operation for batch jobs.
"""

import sqlite3
import json
import time
import uuid
import logging
from pathlib import Path
from typing import Optional, List, Dict, Iterable, Iterator, Tuple

from memingest.core.errors import StoreUnavailableError
from memingest.core.types import IdentityHint, MemoryRecord, RetryEntry, RetryState, Turn

logger = logging.getLogger("Memingest.SQLite")

SCHEMA_VERSION = 1
MAX_ERROR_CHARS = 500

USERS = """
CREATE TABLE IF NOT EXISTS users (
    id                 TEXT PRIMARY KEY,
    bridging_key       TEXT NOT NULL UNIQUE,
    username           TEXT,
    default_persona_id TEXT,
    created_at         REAL NOT NULL
);
"""

PERSONAS = """
CREATE TABLE IF NOT EXISTS personas (
    id          TEXT PRIMARY KEY,
    name        TEXT NOT NULL,
    owner_id    TEXT,
    description TEXT,
    is_orphan   INTEGER NOT NULL DEFAULT 0,
    created_at  REAL NOT NULL
);
"""

IDENTITY_HINTS = """
CREATE TABLE IF NOT EXISTS identity_hints (
    source_user_id TEXT PRIMARY KEY,
    bridging_key   TEXT,
    note           TEXT
);
"""

CONVERSATION_HISTORY = """
CREATE TABLE IF NOT EXISTS conversation_history (
    id               TEXT PRIMARY KEY,
    context_id       TEXT NOT NULL,
    guild_id         TEXT,
    source_system_id TEXT NOT NULL,
    source_user_id   TEXT NOT NULL,
    role             TEXT NOT NULL,
    content          TEXT NOT NULL,
    created_at       REAL NOT NULL
);
"""

PENDING_MEMORIES = """
CREATE TABLE IF NOT EXISTS pending_memories (
    memory_id        TEXT PRIMARY KEY,
    persona_id       TEXT NOT NULL,
    source_system_id TEXT NOT NULL,
    context_id       TEXT NOT NULL,
    content          TEXT NOT NULL,
    provenance       TEXT NOT NULL,
    created_at       REAL NOT NULL,
    metadata_json    TEXT NOT NULL DEFAULT '{}',
    attempts         INTEGER NOT NULL DEFAULT 0,
    state            TEXT NOT NULL DEFAULT 'pending',
    last_error       TEXT,
    last_attempt_at  REAL,
    enqueued_at      REAL NOT NULL
);
"""

SCHEMA_META = """
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);
"""

CREATE_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_personas_owner ON personas(owner_id, created_at);",
    "CREATE INDEX IF NOT EXISTS idx_history_created ON conversation_history(created_at, id);",
    "CREATE INDEX IF NOT EXISTS idx_history_context ON conversation_history(context_id, source_user_id);",
    "CREATE INDEX IF NOT EXISTS idx_pending_state ON pending_memories(state, attempts, enqueued_at);",
]


class RelationalStore:
    """Relational side of ingestion: identity lookups, turn reads, retry ledger."""

    def __init__(self, db_path):
        self.db_path = Path(db_path) if not isinstance(db_path, Path) else db_path
        self._conn: Optional[sqlite3.Connection] = None
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._initialize()
        except (OSError, sqlite3.DatabaseError) as e:
            raise StoreUnavailableError(f"Cannot open relational store at {self.db_path}: {e}") from e

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn.execute("PRAGMA cache_size=10000;")
        return self._conn

    def _initialize(self):
        conn = self._get_conn()
        conn.execute(USERS)
        conn.execute(PERSONAS)
        conn.execute(IDENTITY_HINTS)
        conn.execute(CONVERSATION_HISTORY)
        conn.execute(PENDING_MEMORIES)
        conn.execute(SCHEMA_META)
        for idx in CREATE_INDEXES:
            conn.execute(idx)
        conn.execute(
            "INSERT OR IGNORE INTO schema_meta (key, value) VALUES (?, ?)",
            ("version", str(SCHEMA_VERSION))
        )
        conn.commit()
        logger.info("SQLite relational store initialized at %s", self.db_path)

    # ------------------------------------------------------------------
    # Users & personas
    # ------------------------------------------------------------------

    def add_user(
        self,
        bridging_key: str,
        username: Optional[str] = None,
        default_persona_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> str:
        user_id = user_id or str(uuid.uuid4())
        conn = self._get_conn()
        conn.execute(
            "INSERT INTO users (id, bridging_key, username, default_persona_id, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (user_id, bridging_key, username, default_persona_id, time.time()),
        )
        conn.commit()
        return user_id

    def add_persona(
        self,
        name: str,
        owner_id: Optional[str] = None,
        description: Optional[str] = None,
        persona_id: Optional[str] = None,
        is_orphan: bool = False,
    ) -> str:
        persona_id = persona_id or str(uuid.uuid4())
        conn = self._get_conn()
        conn.execute(
            "INSERT INTO personas (id, name, owner_id, description, is_orphan, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (persona_id, name, owner_id, description, int(is_orphan), time.time()),
        )
        conn.commit()
        return persona_id

    def set_default_persona(self, user_id: str, persona_id: str) -> None:
        conn = self._get_conn()
        conn.execute(
            "UPDATE users SET default_persona_id = ? WHERE id = ?",
            (persona_id, user_id),
        )
        conn.commit()

    def find_persona_by_bridging_key(self, bridging_key: str) -> Optional[str]:
        """
        Canonical persona for the user holding ``bridging_key``.

        The user's default persona wins; otherwise their oldest owned persona.
        """
        conn = self._get_conn()
        row = conn.execute(
            """
            SELECT u.default_persona_id AS default_persona_id,
                   (SELECT p.id FROM personas p
                    WHERE p.owner_id = u.id
                    ORDER BY p.created_at ASC, p.id ASC
                    LIMIT 1) AS first_persona_id
            FROM users u
            WHERE u.bridging_key = ?
            """,
            (bridging_key,),
        ).fetchone()
        if row is None:
            return None
        return row["default_persona_id"] or row["first_persona_id"]

    def get_or_create_persona(
        self,
        persona_id: str,
        name: str,
        description: Optional[str] = None,
        is_orphan: bool = False,
    ) -> str:
        """Idempotent create: a second caller gets the existing row back."""
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR IGNORE INTO personas (id, name, owner_id, description, is_orphan, created_at) "
                "VALUES (?, ?, NULL, ?, ?, ?)",
                (persona_id, name, description, int(is_orphan), time.time()),
            )
        row = conn.execute("SELECT id FROM personas WHERE id = ?", (persona_id,)).fetchone()
        return row["id"]

    def get_persona(self, persona_id: str) -> Optional[Dict[str, object]]:
        conn = self._get_conn()
        row = conn.execute("SELECT * FROM personas WHERE id = ?", (persona_id,)).fetchone()
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # Identity hints
    # ------------------------------------------------------------------

    def add_identity_hint(
        self,
        source_user_id: str,
        bridging_key: Optional[str],
        note: Optional[str] = None,
    ) -> None:
        conn = self._get_conn()
        conn.execute(
            """
            INSERT INTO identity_hints (source_user_id, bridging_key, note)
            VALUES (?, ?, ?)
            ON CONFLICT(source_user_id) DO UPDATE SET
                bridging_key = excluded.bridging_key,
                note = excluded.note
            """,
            (source_user_id, bridging_key, note),
        )
        conn.commit()

    def get_identity_hints(self, source_user_ids: Iterable[str]) -> Dict[str, IdentityHint]:
        ids = list(dict.fromkeys(source_user_ids))
        if not ids:
            return {}
        conn = self._get_conn()
        hints: Dict[str, IdentityHint] = {}
        # SQLite caps bound parameters; chunk conservatively.
        for start in range(0, len(ids), 500):
            chunk = ids[start:start + 500]
            placeholders = ",".join("?" for _ in chunk)
            rows = conn.execute(
                f"SELECT source_user_id, bridging_key, note FROM identity_hints "
                f"WHERE source_user_id IN ({placeholders})",
                chunk,
            ).fetchall()
            for row in rows:
                hints[row["source_user_id"]] = IdentityHint(
                    source_user_id=row["source_user_id"],
                    bridging_key=row["bridging_key"],
                    note=row["note"],
                )
        return hints

    # ------------------------------------------------------------------
    # Conversation history
    # ------------------------------------------------------------------

    def add_turn(self, turn: Turn) -> str:
        return self.add_turns([turn])[0]

    def add_turns(self, turns: Iterable[Turn]) -> List[str]:
        conn = self._get_conn()
        ids = []
        with conn:
            for turn in turns:
                turn_id = turn.turn_id or str(uuid.uuid4())
                conn.execute(
                    """
                    INSERT INTO conversation_history (
                        id, context_id, guild_id, source_system_id, source_user_id,
                        role, content, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        turn_id,
                        turn.context_id,
                        turn.guild_id,
                        turn.source_system_id,
                        turn.source_user_id,
                        turn.role.value,
                        turn.content,
                        turn.created_at,
                    ),
                )
                ids.append(turn_id)
        return ids

    def iter_turns(
        self,
        since: Optional[float] = None,
        until: Optional[float] = None,
        source_system_id: Optional[str] = None,
        page_size: int = 500,
    ) -> Iterator[sqlite3.Row]:
        """
        Yield raw history rows ordered by (created_at, id).

        Keyset pagination keeps each query bounded; rows are validated by
        the caller so one bad row never hides the rest of the page.
        """
        if page_size < 1:
            raise ValueError("page_size must be >= 1")
        conn = self._get_conn()
        cursor: Optional[Tuple[float, str]] = None
        while True:
            conditions = []
            params: list = []
            if since is not None:
                conditions.append("created_at >= ?")
                params.append(since)
            if until is not None:
                conditions.append("created_at <= ?")
                params.append(until)
            if source_system_id is not None:
                conditions.append("source_system_id = ?")
                params.append(source_system_id)
            if cursor is not None:
                conditions.append("(created_at > ? OR (created_at = ? AND id > ?))")
                params.extend([cursor[0], cursor[0], cursor[1]])
            where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            try:
                rows = conn.execute(
                    f"SELECT * FROM conversation_history {where} "
                    f"ORDER BY created_at ASC, id ASC LIMIT ?",
                    (*params, page_size),
                ).fetchall()
            except sqlite3.DatabaseError as e:
                raise StoreUnavailableError(f"Failed to read conversation history: {e}") from e
            if not rows:
                return
            yield from rows
            if len(rows) < page_size:
                return
            last = rows[-1]
            cursor = (last["created_at"], last["id"])

    def count_turns(self) -> int:
        conn = self._get_conn()
        row = conn.execute("SELECT COUNT(*) FROM conversation_history").fetchone()
        return row[0] if row else 0

    # ------------------------------------------------------------------
    # Retry ledger
    # ------------------------------------------------------------------

    def enqueue_pending(self, record: MemoryRecord, error: str) -> bool:
        """
        Record a failed ingestion. Returns True when a new entry was created.

        An existing entry keeps its attempt count and state; only the last
        error and attempt time are refreshed.
        """
        now = time.time()
        conn = self._get_conn()
        with conn:
            existed = conn.execute(
                "SELECT 1 FROM pending_memories WHERE memory_id = ?", (record.id,)
            ).fetchone() is not None
            conn.execute(
                """
                INSERT INTO pending_memories (
                    memory_id, persona_id, source_system_id, context_id, content,
                    provenance, created_at, metadata_json, attempts, state,
                    last_error, last_attempt_at, enqueued_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, 'pending', ?, ?, ?)
                ON CONFLICT(memory_id) DO UPDATE SET
                    last_error = excluded.last_error,
                    last_attempt_at = excluded.last_attempt_at
                """,
                (
                    record.id,
                    record.persona_id,
                    record.source_system_id,
                    record.context_id,
                    record.content,
                    record.provenance,
                    record.created_at,
                    json.dumps(record.metadata, default=str),
                    error[:MAX_ERROR_CHARS],
                    now,
                    now,
                ),
            )
        return not existed

    def get_pending(self, memory_id: str) -> Optional[RetryEntry]:
        conn = self._get_conn()
        row = conn.execute(
            "SELECT * FROM pending_memories WHERE memory_id = ?", (memory_id,)
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def fetch_retryable(self, max_attempts: int, limit: int = 1000) -> List[RetryEntry]:
        conn = self._get_conn()
        rows = conn.execute(
            """
            SELECT * FROM pending_memories
            WHERE state = 'pending' AND attempts < ?
            ORDER BY enqueued_at ASC, memory_id ASC
            LIMIT ?
            """,
            (max_attempts, limit),
        ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def exhaust_over_bound(self, max_attempts: int) -> int:
        """Exhaust pending entries whose attempts already meet the bound."""
        conn = self._get_conn()
        with conn:
            cur = conn.execute(
                "UPDATE pending_memories SET state = 'exhausted' "
                "WHERE state = 'pending' AND attempts >= ?",
                (max_attempts,),
            )
        return cur.rowcount

    def record_retry_failure(
        self,
        memory_id: str,
        error: str,
        max_attempts: int,
    ) -> Optional[RetryEntry]:
        """Increment attempts for a failed retry; exhaust the entry at the bound."""
        conn = self._get_conn()
        with conn:
            conn.execute(
                """
                UPDATE pending_memories SET
                    attempts = attempts + 1,
                    last_error = ?,
                    last_attempt_at = ?,
                    state = CASE WHEN attempts + 1 >= ? THEN 'exhausted' ELSE state END
                WHERE memory_id = ? AND state = 'pending'
                """,
                (error[:MAX_ERROR_CHARS], time.time(), max_attempts, memory_id),
            )
        return self.get_pending(memory_id)

    def delete_pending(self, memory_ids: Iterable[str]) -> int:
        ids = list(memory_ids)
        if not ids:
            return 0
        conn = self._get_conn()
        deleted = 0
        with conn:
            for start in range(0, len(ids), 500):
                chunk = ids[start:start + 500]
                placeholders = ",".join("?" for _ in chunk)
                cur = conn.execute(
                    f"DELETE FROM pending_memories WHERE memory_id IN ({placeholders})",
                    chunk,
                )
                deleted += cur.rowcount
        return deleted

    def list_pending(self, state: Optional[RetryState] = None, limit: int = 100) -> List[RetryEntry]:
        conn = self._get_conn()
        if state is None:
            rows = conn.execute(
                "SELECT * FROM pending_memories ORDER BY enqueued_at ASC LIMIT ?",
                (limit,),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM pending_memories WHERE state = ? ORDER BY enqueued_at ASC LIMIT ?",
                (state.value, limit),
            ).fetchall()
        return [self._row_to_entry(row) for row in rows]

    def count_pending_by_state(self) -> Dict[str, int]:
        conn = self._get_conn()
        rows = conn.execute(
            "SELECT state, COUNT(*) AS n FROM pending_memories GROUP BY state"
        ).fetchall()
        counts = {RetryState.PENDING.value: 0, RetryState.EXHAUSTED.value: 0}
        for row in rows:
            counts[row["state"]] = row["n"]
        return counts

    def requeue_pending(self, memory_id: str) -> bool:
        """Operator action: give an exhausted entry a fresh attempt budget."""
        conn = self._get_conn()
        with conn:
            cur = conn.execute(
                "UPDATE pending_memories SET state = 'pending', attempts = 0 "
                "WHERE memory_id = ? AND state = 'exhausted'",
                (memory_id,),
            )
        return cur.rowcount > 0

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> RetryEntry:
        record = MemoryRecord(
            id=row["memory_id"],
            persona_id=row["persona_id"],
            source_system_id=row["source_system_id"],
            context_id=row["context_id"],
            content=row["content"],
            provenance=row["provenance"],
            created_at=row["created_at"],
            metadata=json.loads(row["metadata_json"] or "{}"),
        )
        return RetryEntry(
            record=record,
            attempts=row["attempts"],
            state=RetryState(row["state"]),
            last_error=row["last_error"],
            last_attempt_at=row["last_attempt_at"],
            enqueued_at=row["enqueued_at"],
        )

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None
