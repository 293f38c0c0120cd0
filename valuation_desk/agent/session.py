"""
Conversation sessions.

SessionStore holds the in-memory ConversationState per project. It is a cache
over the message log: any state can be rebuilt from the project's active
thread. SessionManager drives turns against the agent collaborator and keeps
at most one turn in flight per project.
"""
import asyncio
import logging
import sqlite3
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional

import aiosqlite

from valuation_desk import config
from valuation_desk.agent.collaborator import AgentCollaborator
from valuation_desk.agent.events import AgentEvent, AgentRequest
from valuation_desk.agent.normalizer import AgentMessage, TurnResult, run_turn
from valuation_desk.agent.prompts import (
    OPENING_PROMPT,
    assistant_line,
    build_system_prompt,
    compose_prompt,
    user_line,
)
from valuation_desk.db import crud
from valuation_desk.db.crud import PersistenceError
from valuation_desk.db.models import (
    CONVERSATIONAL_TYPES,
    Message,
    MSG_ASSISTANT_TEXT,
    MSG_ERROR,
    MSG_USER,
)

logger = logging.getLogger(__name__)

NEW_THREAD_TITLE = "New Valuation Session"


@dataclass
class ConversationState:
    project_id: int
    thread_id: Optional[int]
    project: dict[str, Any]
    history: list[str] = field(default_factory=list)


class SessionStore:
    """Per-project conversation states, owned by the application."""

    def __init__(self) -> None:
        self._states: dict[int, ConversationState] = {}

    def get(self, project_id: int) -> Optional[ConversationState]:
        return self._states.get(project_id)

    def create(
        self,
        project_id: int,
        thread_id: Optional[int],
        project: dict[str, Any],
        history: Optional[list[str]] = None,
    ) -> ConversationState:
        state = ConversationState(project_id, thread_id, project, list(history or []))
        self._states[project_id] = state
        return state

    def drop(self, project_id: int) -> bool:
        return self._states.pop(project_id, None) is not None

    def drop_thread(self, thread_id: int) -> list[int]:
        """Drop every state bound to a thread; returns the affected project ids."""
        stale = [pid for pid, s in self._states.items() if s.thread_id == thread_id]
        for pid in stale:
            del self._states[pid]
        return stale

    def __contains__(self, project_id: object) -> bool:
        return project_id in self._states


def rebuild_history(messages: list[Message]) -> list[str]:
    """
    Replay conversational messages (in sequence order) as prompt history.

    Consecutive assistant_text messages belong to one agent turn and collapse
    into a single "Assistant:" entry, matching what a live session appends.
    """
    history: list[str] = []
    pending: list[str] = []
    for m in messages:
        if m.type == MSG_ASSISTANT_TEXT:
            pending.append(m.content)
            continue
        if m.type == MSG_USER:
            if pending:
                history.append(assistant_line("\n".join(pending)))
                pending = []
            history.append(user_line(m.content))
    if pending:
        history.append(assistant_line("\n".join(pending)))
    return history


async def _failed_stream(exc: Exception) -> AsyncIterator[AgentEvent]:
    raise exc
    yield  # pragma: no cover


@dataclass
class _ProjectLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class SessionManager:
    def __init__(
        self,
        db: aiosqlite.Connection,
        collaborator: AgentCollaborator,
        store: Optional[SessionStore] = None,
        *,
        allowed_tools: Optional[list[str]] = None,
        permission_mode: Optional[str] = None,
        stall_timeout: Optional[float] = None,
    ) -> None:
        self._db = db
        self._collaborator = collaborator
        self.store = store if store is not None else SessionStore()
        self._allowed_tools = list(allowed_tools if allowed_tools is not None else config.AGENT_ALLOWED_TOOLS)
        self._permission_mode = permission_mode or config.AGENT_PERMISSION_MODE
        self._stall_timeout = config.TURN_STALL_TIMEOUT if stall_timeout is None else stall_timeout
        self._locks: dict[int, _ProjectLock] = {}
        self._cancels: dict[int, asyncio.Event] = {}

    @asynccontextmanager
    async def _turn(self, project_id: int):
        """Hold the project's turn lock; the entry is dropped once nobody holds or waits on it."""
        entry = self._locks.get(project_id)
        if entry is None:
            entry = self._locks[project_id] = _ProjectLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[project_id]

    # ─────────────────────────────────────────────
    # Caller-facing operations
    # ─────────────────────────────────────────────

    async def start_conversation(self, project_id: int, project: dict[str, Any]) -> TurnResult:
        """
        Open the conversation for a project.

        Live state or a restorable thread means the caller already has the
        messages: returns an empty, done batch. Otherwise a thread is created
        and the agent is asked to open the conversation.
        """
        async with self._turn(project_id):
            if project_id in self.store:
                logger.info(f"Conversation for project {project_id} already live")
                return TurnResult(messages=[], done=True)

            if await self.restore(project_id, project) is not None:
                return TurnResult(messages=[], done=True)

            logger.info(f"Starting valuation for project {project_id}")
            state = await self._new_state(project_id, project)
            result = await self._run_turn(state, OPENING_PROMPT)
            texts = result.assistant_texts()
            if texts:
                state.history.append(assistant_line("\n".join(texts)))
            return result

    async def send_message(
        self,
        project_id: int,
        text: str,
        project: Optional[dict[str, Any]] = None,
    ) -> TurnResult:
        async with self._turn(project_id):
            state = self.store.get(project_id)
            if state is None:
                state = await self.restore(project_id, project)
            if state is None:
                if project is None:
                    logger.warning(f"send_message for project {project_id} with no conversation and no project data")
                    return TurnResult(
                        messages=[AgentMessage(
                            MSG_ERROR,
                            f"No conversation for project {project_id}. Start one with the project data first.",
                        )],
                        done=False,
                        user_message_saved=False,
                    )
                state = await self._new_state(project_id, project)
            elif project is not None:
                state.project = project

            logger.info(f"Sending message to project {project_id}: {text[:100]}")
            saved = await self._persist_user_message(state, text)

            result = await self._run_turn(state, compose_prompt(state.history, text))
            result.user_message_saved = saved

            state.history.append(user_line(text))
            texts = result.assistant_texts()
            if texts:
                state.history.append(assistant_line("\n".join(texts)))
            return result

    def clear_conversation(self, project_id: int) -> None:
        """Forget the in-memory conversation; the log and thread are untouched."""
        self.store.drop(project_id)
        logger.info(f"Cleared conversation for project {project_id}")

    def cancel_turn(self, project_id: int) -> bool:
        """Ask the in-flight turn for a project to stop at the next event boundary."""
        cancel = self._cancels.get(project_id)
        if cancel is None:
            return False
        cancel.set()
        logger.info(f"Cancellation requested for project {project_id}")
        return True

    async def archive_thread(self, thread_id: int):
        thread = await crud.thread_archive(self._db, thread_id)
        if thread is not None:
            for pid in self.store.drop_thread(thread_id):
                logger.info(f"Dropped live conversation for project {pid} (thread {thread_id} archived)")
        return thread

    async def delete_thread(self, thread_id: int) -> bool:
        deleted = await crud.thread_delete(self._db, thread_id)
        if deleted:
            self.store.drop_thread(thread_id)
        return deleted

    # ─────────────────────────────────────────────
    # Restoration
    # ─────────────────────────────────────────────

    async def restore(self, project_id: int, project: Optional[dict[str, Any]] = None) -> Optional[ConversationState]:
        """Rebuild state from the project's active thread, if there is one."""
        try:
            thread = await crud.thread_get_active_by_project(self._db, project_id)
            if thread is None:
                return None
            messages = await crud.msg_list_by_thread(self._db, thread.id, types=CONVERSATIONAL_TYPES)
        except sqlite3.Error as e:
            logger.warning(f"Could not restore conversation for project {project_id}: {e}")
            return None

        history = rebuild_history(messages)
        logger.info(f"Restored thread {thread.id} for project {project_id} ({len(history)} history entries)")
        return self.store.create(project_id, thread.id, project or {}, history)

    # ─────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────

    async def _new_state(self, project_id: int, project: dict[str, Any]) -> ConversationState:
        thread_id = None
        try:
            thread = await crud.thread_create(self._db, project_id, NEW_THREAD_TITLE)
            thread_id = thread.id
        except PersistenceError as e:
            logger.error(f"Failed to create thread for project {project_id}, conversation will not be saved: {e}")
        return self.store.create(project_id, thread_id, project)

    async def _persist_user_message(self, state: ConversationState, text: str) -> bool:
        if state.thread_id is None:
            logger.error(f"User message for project {state.project_id} not saved: no thread")
            return False
        try:
            await crud.msg_create(self._db, state.thread_id, MSG_USER, text)
        except PersistenceError as e:
            # The conversation can continue, but it will not resume with this turn.
            logger.error(f"User message for project {state.project_id} not saved: {e}")
            return False
        return True

    async def _run_turn(self, state: ConversationState, prompt: str) -> TurnResult:
        request = AgentRequest(
            prompt=prompt,
            system_prompt=build_system_prompt(state.project),
            allowed_tools=self._allowed_tools,
            permission_mode=self._permission_mode,
        )

        async def persist(msg: AgentMessage) -> None:
            if state.thread_id is None:
                return
            stored = await crud.msg_create(self._db, state.thread_id, msg.type, msg.content, msg.metadata)
            msg.mark_persisted(stored)

        cancel = asyncio.Event()
        self._cancels[state.project_id] = cancel
        try:
            try:
                events = self._collaborator.run(request)
            except Exception as e:
                logger.error(f"Agent collaborator failed to start: {e}")
                events = _failed_stream(e)
            return await run_turn(events, persist, cancel=cancel, stall_timeout=self._stall_timeout)
        finally:
            self._cancels.pop(state.project_id, None)
