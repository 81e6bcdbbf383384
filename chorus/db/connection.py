#  Chorus - Database Connection
#
#  Async SQLite manager with WAL mode and transaction support.
#  Production uses Alembic migrations; tests use inline schema for speed.
#
#  Depends on: chorus/db/migrate.py (optional, for production migrations)
#  Used by:    container.py (via DI), tests

import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path

import aiosqlite

logger = logging.getLogger("chorus.db")


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_SCHEMA = """
CREATE TABLE IF NOT EXISTS orchestration_sessions (
    id TEXT PRIMARY KEY,
    owner_id TEXT NOT NULL,
    thread_id TEXT,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending', 'running', 'completed', 'failed')),
    execution_count INTEGER NOT NULL DEFAULT 0,
    error_count INTEGER NOT NULL DEFAULT 0,
    final_response TEXT,
    error TEXT,
    tool_state_json TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL,
    started_at REAL,
    completed_at REAL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS orchestration_events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    session_id TEXT NOT NULL REFERENCES orchestration_sessions(id) ON DELETE CASCADE,
    event_type TEXT NOT NULL
        CHECK (event_type IN ('status_update', 'tool_call', 'tool_result', 'thinking',
                              'discussion_turn', 'message', 'error')),
    event_data_json TEXT NOT NULL DEFAULT '{}',
    metadata_json TEXT,
    created_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS task_messages (
    id TEXT PRIMARY KEY,
    body_json TEXT NOT NULL,
    receive_count INTEGER NOT NULL DEFAULT 0,
    visible_at REAL NOT NULL,
    dead INTEGER NOT NULL DEFAULT 0,
    created_at REAL NOT NULL
);

-- Indexes
CREATE INDEX IF NOT EXISTS idx_sessions_owner ON orchestration_sessions(owner_id);
CREATE INDEX IF NOT EXISTS idx_sessions_thread ON orchestration_sessions(thread_id);
CREATE INDEX IF NOT EXISTS idx_sessions_status ON orchestration_sessions(status);
CREATE INDEX IF NOT EXISTS idx_events_session_seq ON orchestration_events(session_id, seq);
CREATE INDEX IF NOT EXISTS idx_messages_visible ON task_messages(dead, visible_at);
"""


# ---------------------------------------------------------------------------
# Database class
# ---------------------------------------------------------------------------

class Database:
    """Async SQLite database with WAL mode.

    Uses aiosqlite which runs SQLite on a dedicated background thread,
    so no threading.Lock is needed on our side.
    """

    def __init__(self):
        self._conn: aiosqlite.Connection | None = None
        self._path: Path | None = None
        self._in_transaction: bool = False
        self._tx_lock: asyncio.Lock = asyncio.Lock()
        self._tx_owner: asyncio.Task | None = None

    async def init(self, db_path: str | Path, *, run_migrations: bool = False):
        """Open or create the database and apply schema.

        Args:
            db_path: Path to the SQLite database file.
            run_migrations: If True, use Alembic migrations (production).
                            If False, use inline schema (tests, faster).
        """
        self._path = Path(db_path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

        if run_migrations:
            from chorus.db.migrate import run_migrations as _migrate
            await asyncio.to_thread(_migrate, self._path)

        self._conn = await aiosqlite.connect(str(self._path))
        self._conn.row_factory = sqlite3.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")

        if not run_migrations:
            await self._conn.executescript(_SCHEMA)
            await self._conn.commit()

        logger.info("Database initialized at %s", self._path)

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Database not initialized. Call await db.init() first.")
        return self._conn

    def _owns_transaction(self) -> bool:
        return self._in_transaction and self._tx_owner is asyncio.current_task()

    @asynccontextmanager
    async def transaction(self):
        """Atomic read+write transaction. Rolls back on exception.

        Uses BEGIN IMMEDIATE to acquire a write lock upfront. An asyncio.Lock
        serializes concurrent coroutines sharing the same connection, so a
        second coroutine waits until the first transaction commits or rolls back.

        Nesting within the same task is a no-op (SQLite has no true nested
        transactions without SAVEPOINTs). Different tasks wait on the lock.
        """
        if self._owns_transaction():
            yield self.conn
            return

        async with self._tx_lock:
            self._in_transaction = True
            self._tx_owner = asyncio.current_task()
            try:
                await self.conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self.conn
                    await self.conn.commit()
                except BaseException:
                    await self.conn.rollback()
                    raise
            finally:
                self._in_transaction = False
                self._tx_owner = None

    async def execute_write(self, sql: str, params: tuple | list = ()) -> aiosqlite.Cursor:
        """Execute a single write statement.

        Inside this task's transaction() block, participates in the outer
        transaction. Otherwise runs in its own transaction, so it never joins
        a transaction owned by another coroutine.
        """
        if self._owns_transaction():
            return await self.conn.execute(sql, params)
        async with self.transaction() as conn:
            return await conn.execute(sql, params)

    async def fetchone(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        cursor = await self.conn.execute(sql, params)
        return await cursor.fetchone()

    async def fetchall(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        cursor = await self.conn.execute(sql, params)
        return await cursor.fetchall()

    async def close(self):
        """Close the database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None
