"""
SQLite database connection management and schema initialization.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
import sqlite3
from pathlib import Path

from valuation_desk import config

logger = logging.getLogger(__name__)

# Module-level connection (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                db_path = config.DB_PATH
                if db_path != ":memory:":
                    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
                _db = await open_db(db_path)
                logger.info(f"Database initialized at {db_path}")
    return _db


async def open_db(path: str) -> aiosqlite.Connection:
    """Open a standalone connection with the standard pragmas and schema applied."""
    db = await aiosqlite.connect(path)
    db.row_factory = aiosqlite.Row
    # WAL mode: allows concurrent reads while writing
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA foreign_keys=ON")
    await init_schema(db)
    return db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Thread: one resumable conversation scoped to a project
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS conversation_threads (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            project_id      INTEGER NOT NULL,
            title           TEXT,
            started_at      TEXT NOT NULL,
            last_message_at TEXT NOT NULL,
            status          TEXT NOT NULL DEFAULT 'active'
        );

        CREATE INDEX IF NOT EXISTS idx_thread_project
            ON conversation_threads(project_id, status, last_message_at);

        -- ----------------------------------------------------------------
        -- Message: one logged event within a thread.
        -- `sequence_number` is monotonic per thread.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS conversation_messages (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            thread_id       INTEGER NOT NULL
                            REFERENCES conversation_threads(id) ON DELETE CASCADE,
            type            TEXT NOT NULL,
            content         TEXT NOT NULL,
            metadata        TEXT,
            created_at      TEXT NOT NULL,
            sequence_number INTEGER NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_message_thread
            ON conversation_messages(thread_id);

        -- ----------------------------------------------------------------
        -- Events: transient fan-out table for SSE notifications.
        -- Rows are written by mutating ops and pruned by age.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS events (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            event_type  TEXT NOT NULL,
            thread_id   INTEGER,
            payload     TEXT NOT NULL,
            created_at  TEXT NOT NULL
        );
    """)
    await db.commit()

    # ── Safe migration: enforce per-thread sequence uniqueness on existing DBs ──
    try:
        await db.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_message_sequence "
            "ON conversation_messages(thread_id, sequence_number)"
        )
        await db.commit()
    except sqlite3.IntegrityError as e:
        # Older databases may hold duplicate sequence numbers; keep them readable.
        logger.error(f"UNIQUE INDEX on conversation_messages(thread_id, sequence_number) conflicts: {e}")

    logger.info("Schema initialized.")
