"""
CRUD operations for the ValuationDesk message log.
All functions are async and receive the aiosqlite connection from the caller.

Every write runs as one explicit transaction (BEGIN IMMEDIATE ... COMMIT)
under a per-connection lock, together with the event row it emits. A failed
write rolls back only its own statements and surfaces as PersistenceError.
"""
import asyncio
import json
import logging
import sqlite3
import weakref
from contextlib import asynccontextmanager
from datetime import datetime, timezone, timedelta
from typing import Any, AsyncIterator, Optional

import aiosqlite

from valuation_desk.db.models import (
    Thread,
    Message,
    Event,
    MESSAGE_TYPES,
    THREAD_ACTIVE,
    THREAD_ARCHIVED,
)

logger = logging.getLogger(__name__)


class PersistenceError(Exception):
    """Raised when a write to the log fails; nothing of that write is kept."""

    def __init__(
        self,
        action: str,
        cause: Exception,
        thread_id: Optional[int] = None,
        msg_type: Optional[str] = None,
    ) -> None:
        self.action = action
        self.cause = cause
        self.thread_id = thread_id
        self.msg_type = msg_type
        super().__init__(f"Failed to {action}: {cause}")


# One writer at a time per connection; connections share nothing.
_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


def _write_lock(db: aiosqlite.Connection) -> asyncio.Lock:
    lock = _write_locks.get(db)
    if lock is None:
        lock = _write_locks[db] = asyncio.Lock()
    return lock


@asynccontextmanager
async def _write(
    db: aiosqlite.Connection,
    action: str,
    thread_id: Optional[int] = None,
    msg_type: Optional[str] = None,
) -> AsyncIterator[None]:
    async with _write_lock(db):
        try:
            await db.execute("BEGIN IMMEDIATE")
            yield
            await db.commit()
        except BaseException as e:
            if db.in_transaction:
                await db.rollback()
            if isinstance(e, sqlite3.Error):
                raise PersistenceError(action, e, thread_id, msg_type) from e
            raise


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_dt(s: str) -> datetime:
    return datetime.fromisoformat(s)


# ─────────────────────────────────────────────
# Thread CRUD
# ─────────────────────────────────────────────

async def thread_create(db: aiosqlite.Connection, project_id: int, title: Optional[str] = None) -> Thread:
    now = _now()
    async with _write(db, f"create thread for project {project_id}"):
        async with db.execute(
            "INSERT INTO conversation_threads (project_id, title, started_at, last_message_at, status) "
            "VALUES (?, ?, ?, ?, ?)",
            (project_id, title, now, now, THREAD_ACTIVE),
        ) as cur:
            tid = cur.lastrowid
        await _emit_event(db, "thread.new", tid, {"thread_id": tid, "project_id": project_id, "title": title})
    logger.info(f"Thread created: {tid} for project {project_id} '{title}'")
    return Thread(id=tid, project_id=project_id, title=title, status=THREAD_ACTIVE,
                  started_at=_parse_dt(now), last_message_at=_parse_dt(now))


async def thread_get(db: aiosqlite.Connection, thread_id: int) -> Optional[Thread]:
    async with db.execute("SELECT * FROM conversation_threads WHERE id = ?", (thread_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_thread(row)


async def thread_list_by_project(
    db: aiosqlite.Connection,
    project_id: int,
    include_archived: bool = True,
) -> list[Thread]:
    if include_archived:
        async with db.execute(
            "SELECT * FROM conversation_threads WHERE project_id = ? "
            "ORDER BY last_message_at DESC, id DESC",
            (project_id,),
        ) as cur:
            rows = await cur.fetchall()
    else:
        async with db.execute(
            "SELECT * FROM conversation_threads WHERE project_id = ? AND status = ? "
            "ORDER BY last_message_at DESC, id DESC",
            (project_id, THREAD_ACTIVE),
        ) as cur:
            rows = await cur.fetchall()
    return [_row_to_thread(r) for r in rows]


async def thread_get_active_by_project(db: aiosqlite.Connection, project_id: int) -> Optional[Thread]:
    """Return the most recently active non-archived thread for a project, if any."""
    async with db.execute(
        "SELECT * FROM conversation_threads WHERE project_id = ? AND status = ? "
        "ORDER BY last_message_at DESC, id DESC LIMIT 1",
        (project_id, THREAD_ACTIVE),
    ) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_thread(row)


async def thread_update_title(db: aiosqlite.Connection, thread_id: int, title: str) -> Optional[Thread]:
    async with _write(db, f"rename thread {thread_id}", thread_id):
        async with db.execute(
            "UPDATE conversation_threads SET title = ? WHERE id = ?", (title, thread_id)
        ) as cur:
            updated = cur.rowcount
    if updated == 0:
        return None
    return await thread_get(db, thread_id)


async def thread_archive(db: aiosqlite.Connection, thread_id: int) -> Optional[Thread]:
    async with _write(db, f"archive thread {thread_id}", thread_id):
        thread = await thread_get(db, thread_id)
        if thread is None or thread.status == THREAD_ARCHIVED:
            return thread
        await db.execute("UPDATE conversation_threads SET status = ? WHERE id = ?", (THREAD_ARCHIVED, thread_id))
        await _emit_event(
            db,
            "thread.archived",
            thread_id,
            {"thread_id": thread_id, "project_id": thread.project_id, "previous_state": thread.status},
        )
    logger.info(f"Thread archived: {thread_id}")
    thread.status = THREAD_ARCHIVED
    return thread


async def thread_delete(db: aiosqlite.Connection, thread_id: int) -> bool:
    # Messages go with the thread via ON DELETE CASCADE
    async with _write(db, f"delete thread {thread_id}", thread_id):
        async with db.execute("DELETE FROM conversation_threads WHERE id = ?", (thread_id,)) as cur:
            deleted = cur.rowcount
        if deleted:
            await _emit_event(db, "thread.deleted", thread_id, {"thread_id": thread_id})
    return deleted > 0


def _row_to_thread(row: aiosqlite.Row) -> Thread:
    return Thread(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        status=row["status"],
        started_at=_parse_dt(row["started_at"]),
        last_message_at=_parse_dt(row["last_message_at"]),
    )


# ─────────────────────────────────────────────
# Message CRUD
# ─────────────────────────────────────────────

async def msg_create(
    db: aiosqlite.Connection,
    thread_id: int,
    msg_type: str,
    content: str,
    metadata: Optional[dict[str, Any]] = None,
) -> Message:
    """Append a message to a thread.

    The next sequence number is computed inside the INSERT itself, and the
    INSERT, the thread's last_message_at refresh and the msg.new event row
    commit together.

    Raises ValueError for a type outside the closed set and
    PersistenceError for any SQLite failure (unknown thread included).
    """
    if msg_type not in MESSAGE_TYPES:
        raise ValueError(f"Invalid message type '{msg_type}'. Must be one of {sorted(MESSAGE_TYPES)}")

    now = _now()
    meta_json = json.dumps(metadata) if metadata else None
    async with _write(db, f"persist {msg_type} message in thread {thread_id}", thread_id, msg_type):
        async with db.execute(
            "INSERT INTO conversation_messages "
            "(thread_id, type, content, metadata, created_at, sequence_number) "
            "SELECT ?, ?, ?, ?, ?, COALESCE(MAX(sequence_number), 0) + 1 "
            "FROM conversation_messages WHERE thread_id = ? "
            "RETURNING id, sequence_number",
            (thread_id, msg_type, content, meta_json, now, thread_id),
        ) as cur:
            row = await cur.fetchone()
        mid, seq = row["id"], row["sequence_number"]
        await db.execute(
            "UPDATE conversation_threads SET last_message_at = ? WHERE id = ?", (now, thread_id)
        )
        await _emit_event(db, "msg.new", thread_id, {
            "msg_id": mid, "thread_id": thread_id, "type": msg_type,
            "seq": seq, "content": content[:200],  # truncate for event payload
        })

    logger.debug(f"Message created: seq={seq} type={msg_type} thread={thread_id}")
    return Message(
        id=mid, thread_id=thread_id, type=msg_type, content=content,
        metadata=metadata or None, created_at=_parse_dt(now), sequence_number=seq,
    )


async def msg_get(db: aiosqlite.Connection, msg_id: int) -> Optional[Message]:
    async with db.execute("SELECT * FROM conversation_messages WHERE id = ?", (msg_id,)) as cur:
        row = await cur.fetchone()
    if row is None:
        return None
    return _row_to_message(row)


async def msg_list_by_thread(
    db: aiosqlite.Connection,
    thread_id: int,
    after_seq: int = 0,
    types: Optional[tuple[str, ...]] = None,
) -> list[Message]:
    """Return a thread's messages in sequence order, optionally filtered by type."""
    sql = "SELECT * FROM conversation_messages WHERE thread_id = ? AND sequence_number > ?"
    params: list[Any] = [thread_id, after_seq]
    if types:
        sql += f" AND type IN ({', '.join('?' for _ in types)})"
        params.extend(types)
    sql += " ORDER BY sequence_number ASC"
    async with db.execute(sql, params) as cur:
        rows = await cur.fetchall()
    return [_row_to_message(r) for r in rows]


def _row_to_message(row: aiosqlite.Row) -> Message:
    meta = row["metadata"]
    if meta:
        try:
            meta = json.loads(meta)
        except ValueError:
            logger.warning(f"Message {row['id']} has unreadable metadata, ignoring it")
            meta = None
    return Message(
        id=row["id"],
        thread_id=row["thread_id"],
        type=row["type"],
        content=row["content"],
        metadata=meta or None,
        created_at=_parse_dt(row["created_at"]),
        sequence_number=row["sequence_number"],
    )


# ─────────────────────────────────────────────
# Event fan-out (for SSE)
# ─────────────────────────────────────────────

async def _emit_event(db: aiosqlite.Connection, event_type: str, thread_id: Optional[int], payload: dict) -> None:
    """Insert an event row; callers run this inside their own _write transaction."""
    await db.execute(
        "INSERT INTO events (event_type, thread_id, payload, created_at) VALUES (?, ?, ?, ?)",
        (event_type, thread_id, json.dumps(payload), _now()),
    )


async def events_since(db: aiosqlite.Connection, after_id: int = 0, limit: int = 50) -> list[Event]:
    """Fetch events newer than `after_id` for the SSE pump to deliver."""
    async with db.execute(
        "SELECT * FROM events WHERE id > ? ORDER BY id ASC LIMIT ?",
        (after_id, limit),
    ) as cur:
        rows = await cur.fetchall()
    return [Event(
        id=row["id"],
        event_type=row["event_type"],
        thread_id=row["thread_id"],
        payload=row["payload"],
        created_at=_parse_dt(row["created_at"]),
    ) for row in rows]


async def events_delete_old(db: aiosqlite.Connection, max_age_seconds: int = 600) -> int:
    """Prune delivered events older than max_age_seconds to keep the table small."""
    cutoff = (datetime.now(timezone.utc) - timedelta(seconds=max_age_seconds)).isoformat()
    async with _write(db, "prune events"):
        async with db.execute("DELETE FROM events WHERE created_at < ?", (cutoff,)) as cur:
            deleted = cur.rowcount
    if deleted > 0:
        logger.debug(f"Pruned {deleted} old events.")
    return deleted
