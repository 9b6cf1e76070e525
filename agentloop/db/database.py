"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
import weakref
from contextlib import asynccontextmanager
from pathlib import Path

from agentloop.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection pool (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()
# One write lock per connection, see `transaction`
_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
                _db = await aiosqlite.connect(DB_PATH)
                _db.row_factory = aiosqlite.Row
                # WAL mode: allows concurrent reads while writing
                await _db.execute("PRAGMA journal_mode=WAL")
                await _db.execute("PRAGMA foreign_keys=ON")
                await init_schema(_db)
                logger.info(f"Database initialized at {DB_PATH}")
    return _db


def _write_lock(db: aiosqlite.Connection) -> asyncio.Lock:
    lock = _write_locks.get(db)
    if lock is None:
        lock = _write_locks[db] = asyncio.Lock()
    return lock


@asynccontextmanager
async def transaction(db: aiosqlite.Connection):
    """Run a group of writes as one unit on a shared connection.

    sqlite has one transaction per connection, so every task sharing `db`
    writes into the same one. The write lock is held from the first write
    until this block's own commit or rollback: a rollback here only discards
    this block's writes, and nobody else's commit can publish them half done.
    Not reentrant; never emit events or call another committing helper inside.
    """
    async with _write_lock(db):
        try:
            yield db
        except BaseException:
            await db.rollback()
            raise
        await db.commit()


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent).

    All timestamps are INTEGER milliseconds since the epoch (UTC).
    """
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Agent registry: resolves recipient ids to names for identity checks
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS agents (
            id              TEXT PRIMARY KEY,
            name            TEXT NOT NULL COLLATE NOCASE UNIQUE,
            description     TEXT,
            registered_at   INTEGER NOT NULL
        );

        -- ----------------------------------------------------------------
        -- Message: one inter-agent message and its loop lifecycle.
        -- status_code only ever increases; stage timestamps and deadlines
        -- are written once by the transition into their stage.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS messages (
            id                  TEXT PRIMARY KEY,
            from_agent          TEXT NOT NULL,
            to_agent            TEXT NOT NULL,
            msg_type            TEXT NOT NULL,
            content             TEXT NOT NULL,
            status_code         INTEGER NOT NULL DEFAULT 1,
            created_at          INTEGER NOT NULL,
            seen_at             INTEGER,
            replied_at          INTEGER,
            acted_at            INTEGER,
            reported_at         INTEGER,
            expected_reply_by   INTEGER,
            expected_action_by  INTEGER,
            expected_report_by  INTEGER,
            loop_broken         INTEGER NOT NULL DEFAULT 0,
            loop_broken_reason  TEXT,
            linked_task_id      TEXT,
            final_report        TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_messages_open
            ON messages(loop_broken, status_code);
        CREATE INDEX IF NOT EXISTS idx_messages_to
            ON messages(to_agent, created_at);

        -- ----------------------------------------------------------------
        -- Loop alerts: SLA breaches and broken loops
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS alerts (
            id              TEXT PRIMARY KEY,
            message_id      TEXT NOT NULL REFERENCES messages(id),
            agent_name      TEXT NOT NULL,
            alert_type      TEXT NOT NULL,
            severity        TEXT NOT NULL,
            status          TEXT NOT NULL,
            escalated_to    TEXT,
            created_at      INTEGER NOT NULL,
            resolved_at     INTEGER
        );

        -- Dedup key: at most one open alert per (message, alert type)
        CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_open_key
            ON alerts(message_id, alert_type)
            WHERE status IN ('active', 'escalated');
        CREATE INDEX IF NOT EXISTS idx_alerts_status
            ON alerts(status, created_at);

        -- ----------------------------------------------------------------
        -- Events: transient fan-out table for SSE notifications.
        -- Rows are written after committed mutations; pruned by the scan loop.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS events (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type  TEXT NOT NULL,
            message_id  TEXT,
            payload     TEXT NOT NULL,
            created_at  INTEGER NOT NULL
        );
    """)
    await db.commit()

    logger.info("Schema initialized.")
