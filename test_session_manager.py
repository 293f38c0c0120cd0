import asyncio
import sqlite3

import pytest

from conftest import GREETING, FakeCollaborator, say
from valuation_desk.agent.events import AssistantEvent, ResultEvent, TextBlock, ToolUseBlock
from valuation_desk.agent.normalizer import CANCELLED_TEXT
from valuation_desk.agent.prompts import OPENING_PROMPT
from valuation_desk.agent.session import NEW_THREAD_TITLE, SessionManager, rebuild_history
from valuation_desk.db import crud
from valuation_desk.db.crud import PersistenceError
from valuation_desk.db.models import CONVERSATIONAL_TYPES

PROJECT = {"id": 1, "name": "Acme Corp", "revenue": 12000000, "ebitda": 2400000}


@pytest.fixture
def manager(db, collaborator):
    return SessionManager(db, collaborator, stall_timeout=0)


async def _log(db, thread_id):
    return [(m.type, m.content) for m in await crud.msg_list_by_thread(db, thread_id)]


@pytest.mark.asyncio
async def test_start_creates_thread_and_runs_opening_turn(db, manager, collaborator):
    result = await manager.start_conversation(1, PROJECT)

    assert result.done is True
    assert [(m.type, m.content) for m in result.messages] == [("assistant_text", GREETING)]
    assert result.messages[0].sequence_number == 1

    request = collaborator.requests[0]
    assert request.prompt == OPENING_PROMPT
    assert "Acme Corp" in request.system_prompt
    assert "DCF_VALUE: $<amount>" in request.system_prompt
    assert request.permission_mode == "bypassPermissions"

    threads = await crud.thread_list_by_project(db, 1)
    assert len(threads) == 1
    assert threads[0].title == NEW_THREAD_TITLE
    assert manager.store.get(1).history == [f"Assistant: {GREETING}"]


@pytest.mark.asyncio
async def test_start_twice_does_not_create_second_thread(db, manager, collaborator):
    await manager.start_conversation(1, PROJECT)
    again = await manager.start_conversation(1, PROJECT)

    assert again.messages == []
    assert again.done is True
    assert len(collaborator.requests) == 1
    assert len(await crud.thread_list_by_project(db, 1)) == 1


@pytest.mark.asyncio
async def test_send_persists_user_message_before_agent_messages(db, manager, collaborator):
    await manager.start_conversation(1, PROJECT)
    collaborator.queue(
        AssistantEvent([TextBlock("Running it."), ToolUseBlock("Bash", {"command": "python dcf.py"})]),
        AssistantEvent([TextBlock("DCF_VALUE: $2,500,000")]),
        ResultEvent("DCF_VALUE: $2,500,000"),
    )

    result = await manager.send_message(1, "Please proceed")

    assert result.done is True
    assert result.user_message_saved is True
    thread_id = manager.store.get(1).thread_id
    log = await _log(db, thread_id)
    assert log == [
        ("assistant_text", GREETING),
        ("user", "Please proceed"),
        ("assistant_text", "Running it."),
        ("tool_call_start", "Using Bash tool"),
        ("code_block", "python dcf.py"),
        ("executing", "Executing Bash..."),
        ("assistant_text", "DCF_VALUE: $2,500,000"),
        ("method_valuation_result", "Valuation result detected. Would you like to save it to the project?"),
    ]
    # Returned messages carry their log positions
    assert [m.sequence_number for m in result.messages] == list(range(3, 9))


@pytest.mark.asyncio
async def test_prompt_carries_previous_conversation(manager, collaborator):
    await manager.start_conversation(1, PROJECT)
    collaborator.queue(*say("Here is the plan."))
    await manager.send_message(1, "Yes, make a plan")
    await manager.send_message(1, "Go ahead")

    assert collaborator.requests[1].prompt == (
        f"Previous conversation:\nAssistant: {GREETING}\n\nUser: Yes, make a plan"
    )
    assert collaborator.requests[2].prompt == (
        "Previous conversation:\n"
        f"Assistant: {GREETING}\n\n"
        "User: Yes, make a plan\n\n"
        "Assistant: Here is the plan.\n\n"
        "User: Go ahead"
    )


@pytest.mark.asyncio
async def test_history_round_trips_through_the_log(db, manager, collaborator):
    await manager.start_conversation(1, PROJECT)
    collaborator.queue(
        AssistantEvent([TextBlock("First part."), TextBlock("Second part.")]),
        ResultEvent("Second part."),
    )
    await manager.send_message(1, "Continue")
    collaborator.queue(AssistantEvent([ToolUseBlock("Read", {"file_path": "model.xlsx"})]))
    await manager.send_message(1, "Check the model")

    state = manager.store.get(1)
    conversational = await crud.msg_list_by_thread(db, state.thread_id, types=CONVERSATIONAL_TYPES)
    assert rebuild_history(conversational) == state.history


@pytest.mark.asyncio
async def test_restart_restores_without_opening_turn(db, manager):
    await manager.start_conversation(1, PROJECT)
    await manager.send_message(1, "Proceed")
    live = manager.store.get(1)

    # New process: fresh store and collaborator, same database
    fresh_agent = FakeCollaborator()
    restarted = SessionManager(db, fresh_agent)
    result = await restarted.start_conversation(1, PROJECT)

    assert result.messages == []
    assert result.done is True
    assert fresh_agent.requests == []
    restored = restarted.store.get(1)
    assert restored.thread_id == live.thread_id
    assert restored.history == live.history

    await restarted.send_message(1, "Next step")
    assert fresh_agent.requests[0].prompt.startswith(f"Previous conversation:\nAssistant: {GREETING}")


@pytest.mark.asyncio
async def test_send_after_clear_resumes_same_thread(db, manager):
    await manager.start_conversation(1, PROJECT)
    thread_id = manager.store.get(1).thread_id

    manager.clear_conversation(1)
    assert 1 not in manager.store

    await manager.send_message(1, "Still there?")
    assert manager.store.get(1).thread_id == thread_id
    assert len(await crud.thread_list_by_project(db, 1)) == 1


@pytest.mark.asyncio
async def test_archive_then_start_opens_new_thread(db, manager, collaborator):
    await manager.start_conversation(1, PROJECT)
    await manager.send_message(1, "Proceed")
    old_id = manager.store.get(1).thread_id
    old_log = await _log(db, old_id)

    archived = await manager.archive_thread(old_id)
    assert archived.status == "archived"
    assert 1 not in manager.store

    result = await manager.start_conversation(1, PROJECT)
    new_id = manager.store.get(1).thread_id

    assert new_id != old_id
    assert [m.type for m in result.messages] == ["assistant_text"]
    assert await _log(db, old_id) == old_log
    assert (await crud.thread_get(db, old_id)).status == "archived"


@pytest.mark.asyncio
async def test_delete_thread_drops_live_state(db, manager):
    await manager.start_conversation(1, PROJECT)
    thread_id = manager.store.get(1).thread_id

    assert await manager.delete_thread(thread_id) is True
    assert 1 not in manager.store
    assert await crud.msg_list_by_thread(db, thread_id) == []
    assert await manager.delete_thread(thread_id) is False


@pytest.mark.asyncio
async def test_send_without_conversation_or_project_is_an_error(db, manager, collaborator):
    result = await manager.send_message(99, "hello?")

    assert result.done is False
    assert result.user_message_saved is False
    assert [m.type for m in result.messages] == ["error"]
    assert collaborator.requests == []
    assert await crud.thread_list_by_project(db, 99) == []


@pytest.mark.asyncio
async def test_send_with_project_and_no_thread_starts_logging(db, manager, collaborator):
    result = await manager.send_message(5, "Value this company", {"id": 5, "name": "Beta"})

    assert result.done is True
    assert collaborator.requests[0].prompt == "Value this company"
    thread = await crud.thread_get_active_by_project(db, 5)
    assert (await _log(db, thread.id))[0] == ("user", "Value this company")


@pytest.mark.asyncio
async def test_user_message_persistence_failure_is_reported(db, manager, monkeypatch):
    await manager.start_conversation(1, PROJECT)
    original = crud.msg_create

    async def flaky_msg_create(conn, thread_id, msg_type, content, metadata=None):
        if msg_type == "user":
            raise PersistenceError("persist user message", sqlite3.OperationalError("database is locked"), thread_id, msg_type)
        return await original(conn, thread_id, msg_type, content, metadata)

    monkeypatch.setattr(crud, "msg_create", flaky_msg_create)
    result = await manager.send_message(1, "Proceed")

    assert result.user_message_saved is False
    assert result.done is True
    log = await _log(db, manager.store.get(1).thread_id)
    assert [t for t, _ in log] == ["assistant_text", "assistant_text"]


@pytest.mark.asyncio
async def test_concurrent_sends_are_serialized(db):
    agent = FakeCollaborator(delay=0.01)
    manager = SessionManager(db, agent)
    await manager.start_conversation(1, PROJECT)
    agent.queue(*say("Answer A"))
    agent.queue(*say("Answer B"))

    await asyncio.gather(
        manager.send_message(1, "Question A"),
        manager.send_message(1, "Question B"),
    )

    log = await _log(db, manager.store.get(1).thread_id)
    assert log == [
        ("assistant_text", GREETING),
        ("user", "Question A"),
        ("assistant_text", "Answer A"),
        ("user", "Question B"),
        ("assistant_text", "Answer B"),
    ]


@pytest.mark.asyncio
async def test_cancel_turn(db):
    agent = FakeCollaborator(delay=0.05)
    manager = SessionManager(db, agent)
    assert manager.cancel_turn(1) is False

    await manager.start_conversation(1, PROJECT)
    agent.queue(
        AssistantEvent([TextBlock("Step 1")]),
        AssistantEvent([TextBlock("Step 2")]),
        AssistantEvent([TextBlock("Step 3")]),
        ResultEvent("Step 3"),
    )
    task = asyncio.create_task(manager.send_message(1, "Run everything"))

    for _ in range(100):
        if manager.cancel_turn(1):
            break
        await asyncio.sleep(0.01)
    result = await task

    assert result.done is False
    assert result.messages[-1].type == "error"
    assert result.messages[-1].content == CANCELLED_TEXT
    assert "Step 3" not in result.assistant_texts()
    assert manager.cancel_turn(1) is False


def _failing_events(monkeypatch, should_fail):
    original = crud._emit_event

    async def emit(conn, event_type, thread_id, payload):
        if should_fail(event_type, payload):
            raise sqlite3.OperationalError("disk I/O error")
        return await original(conn, event_type, thread_id, payload)

    monkeypatch.setattr(crud, "_emit_event", emit)


@pytest.mark.asyncio
async def test_user_message_event_failure_still_runs_turn(db, manager, collaborator, monkeypatch):
    await manager.start_conversation(1, PROJECT)
    _failing_events(monkeypatch, lambda event_type, payload: payload.get("type") == "user")

    result = await manager.send_message(1, "Proceed")

    assert result.user_message_saved is False
    assert result.done is True
    assert [m.type for m in result.messages] == ["assistant_text"]
    assert len(collaborator.requests) == 2
    state = manager.store.get(1)
    assert state.history[-2:] == ["User: Proceed", f"Assistant: {GREETING}"]
    # The user row went down with its event row
    assert [t for t, _ in await _log(db, state.thread_id)] == ["assistant_text", "assistant_text"]


@pytest.mark.asyncio
async def test_thread_event_failure_leaves_no_orphan_thread(db, manager, monkeypatch):
    _failing_events(monkeypatch, lambda event_type, payload: event_type == "thread.new")

    result = await manager.start_conversation(1, PROJECT)

    assert [m.type for m in result.messages] == ["assistant_text"]
    assert manager.store.get(1).thread_id is None
    assert await crud.thread_list_by_project(db, 1) == []


@pytest.mark.asyncio
async def test_turn_locks_are_released(db):
    agent = FakeCollaborator(delay=0.01)
    manager = SessionManager(db, agent)

    await manager.start_conversation(1, PROJECT)
    await asyncio.gather(
        manager.send_message(1, "Question A"),
        manager.send_message(1, "Question B"),
        manager.send_message(2, "Other project", {"id": 2}),
    )
    manager.clear_conversation(1)

    assert manager._locks == {}
