"""
ValuationDesk main entry point.

Starts a FastAPI HTTP server that:
  1. Exposes the conversation API (start / send / clear / cancel) per project
  2. Serves the message log (threads, messages, archive, delete)
  3. Computes the weighted composite valuation on demand
  4. Provides an SSE broadcast endpoint at /events for live clients
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable

import uvicorn
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from valuation_desk import config
from valuation_desk.agent.collaborator import ClaudeCollaborator
from valuation_desk.agent.normalizer import AgentMessage, TurnResult
from valuation_desk.agent.session import SessionManager
from valuation_desk.db import crud
from valuation_desk.db.database import close_db, get_db
from valuation_desk.valuation import CANONICAL_LABELS, MethodInput, composite_valuation, method_breakdown

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("valuationdesk")

EVENT_PRUNE_INTERVAL = 60


async def _event_prune_loop() -> None:
    while True:
        await asyncio.sleep(EVENT_PRUNE_INTERVAL)
        try:
            db = await get_db()
            await crud.events_delete_old(db, config.EVENT_RETENTION_SECONDS)
        except Exception as e:
            logger.warning(f"Event prune failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: collaborator first so a missing credential fails fast
    collaborator = getattr(app.state, "collaborator", None)
    if collaborator is None:
        collaborator = ClaudeCollaborator.from_config()
        app.state.collaborator = collaborator
    db = await get_db()
    app.state.sessions = SessionManager(db, collaborator)
    pruner = asyncio.create_task(_event_prune_loop())
    logger.info(f"ValuationDesk running at http://{config.HOST}:{config.PORT} (agent: {collaborator.name})")
    yield
    # Shutdown: stop background work, close DB
    pruner.cancel()
    try:
        await pruner
    except asyncio.CancelledError:
        pass
    await close_db()


app = FastAPI(
    title="ValuationDesk",
    description="Conversational, agent-assisted financial valuation with a durable message log.",
    version=config.APP_VERSION,
    lifespan=lifespan,
)


async def _db_call(awaitable: Awaitable[Any]) -> Any:
    try:
        return await asyncio.wait_for(awaitable, timeout=config.DB_TIMEOUT)
    except asyncio.TimeoutError:
        raise HTTPException(status_code=503, detail="Database operation timeout")


async def _conversation_call(name: str, awaitable: Awaitable[TurnResult]) -> dict[str, Any]:
    """Per-turn failures never escape as exceptions; they become {success: false}."""
    try:
        result = await awaitable
    except Exception as e:
        logger.error(f"Failed to {name}: {type(e).__name__}: {e}", exc_info=True)
        return {"success": False, "error": str(e)}
    return {"success": True, "response": result.to_dict()}


# ─────────────────────────────────────────────
# Conversation API
# ─────────────────────────────────────────────

class ConversationStart(BaseModel):
    project: dict[str, Any] = {}

class ConversationMessage(BaseModel):
    text: str
    project: dict[str, Any] | None = None


@app.post("/api/projects/{project_id}/conversation/start")
async def api_conversation_start(project_id: int, body: ConversationStart, request: Request):
    sessions: SessionManager = request.app.state.sessions
    project = {"id": project_id, **body.project}
    return await _conversation_call("start conversation", sessions.start_conversation(project_id, project))


@app.post("/api/projects/{project_id}/conversation/messages")
async def api_conversation_send(project_id: int, body: ConversationMessage, request: Request):
    if not body.text.strip():
        return {"success": False, "error": "Message text is empty"}
    sessions: SessionManager = request.app.state.sessions
    project = {"id": project_id, **body.project} if body.project is not None else None
    return await _conversation_call("send message", sessions.send_message(project_id, body.text.strip(), project))


@app.post("/api/projects/{project_id}/conversation/clear")
async def api_conversation_clear(project_id: int, request: Request):
    sessions: SessionManager = request.app.state.sessions
    sessions.clear_conversation(project_id)
    return {"success": True}


@app.post("/api/projects/{project_id}/conversation/cancel")
async def api_conversation_cancel(project_id: int, request: Request):
    sessions: SessionManager = request.app.state.sessions
    return {"success": True, "cancelled": sessions.cancel_turn(project_id)}


# ─────────────────────────────────────────────
# Message log API
# ─────────────────────────────────────────────

@app.get("/api/projects/{project_id}/threads")
async def api_threads(project_id: int, include_archived: bool = True):
    db = await _db_call(get_db())
    threads = await _db_call(crud.thread_list_by_project(db, project_id, include_archived=include_archived))
    return [t.to_dict() for t in threads]


@app.get("/api/projects/{project_id}/threads/active")
async def api_active_thread(project_id: int):
    db = await _db_call(get_db())
    thread = await _db_call(crud.thread_get_active_by_project(db, project_id))
    return thread.to_dict() if thread else None


@app.get("/api/threads/{thread_id}/messages")
async def api_messages(thread_id: int, after_seq: int = 0):
    db = await _db_call(get_db())
    if await _db_call(crud.thread_get(db, thread_id)) is None:
        raise HTTPException(status_code=404, detail=f"Thread {thread_id} not found")
    msgs = await _db_call(crud.msg_list_by_thread(db, thread_id, after_seq=after_seq))
    return [AgentMessage.from_message(m).to_dict() for m in msgs]


@app.post("/api/threads/{thread_id}/archive")
async def api_archive_thread(thread_id: int, request: Request):
    sessions: SessionManager = request.app.state.sessions
    thread = await _db_call(sessions.archive_thread(thread_id))
    if thread is None:
        raise HTTPException(status_code=404, detail=f"Thread {thread_id} not found")
    return thread.to_dict()


@app.delete("/api/threads/{thread_id}")
async def api_delete_thread(thread_id: int, request: Request):
    sessions: SessionManager = request.app.state.sessions
    ok = await _db_call(sessions.delete_thread(thread_id))
    if not ok:
        raise HTTPException(status_code=404, detail=f"Thread {thread_id} not found")
    return {"ok": True}


# ─────────────────────────────────────────────
# Composite valuation
# ─────────────────────────────────────────────

class MethodModel(BaseModel):
    method_type: str
    weight: float = 0.0
    calculated_value: float | None = None

class CompositeRequest(BaseModel):
    methods: list[MethodModel]
    labels: list[str] | None = None


@app.post("/api/valuation/composite")
async def api_composite(body: CompositeRequest):
    methods = [MethodInput.from_dict(m.model_dump()) for m in body.methods]
    labels = tuple(body.labels) if body.labels else CANONICAL_LABELS
    return {
        "composite": composite_valuation(methods, labels),
        "breakdown": [vars(row) for row in method_breakdown(methods, labels)],
    }


# ─────────────────────────────────────────────
# Settings (data/config.json overlay, applied on restart)
# ─────────────────────────────────────────────

class SettingsUpdate(BaseModel):
    HOST: str | None = None
    PORT: int | None = None
    AGENT_MODEL: str | None = None
    AGENT_ALLOWED_TOOLS: str | None = None
    AGENT_PERMISSION_MODE: str | None = None
    TURN_STALL_TIMEOUT: float | None = None


@app.get("/api/settings")
async def api_get_settings():
    return config.get_config_dict()


@app.put("/api/settings")
async def api_update_settings(body: SettingsUpdate):
    changes = body.model_dump(exclude_none=True)
    config.save_config_dict(changes)
    return {"ok": True, "updated": sorted(changes), "restart_required": True}


# ─────────────────────────────────────────────
# Public SSE broadcast
# ─────────────────────────────────────────────

@app.get("/events")
async def global_sse_stream(request: Request):
    """
    SSE broadcast stream consumed by live clients.
    Polls the `events` table and fans out new rows as SSE messages.
    """
    async def event_generator():
        db = await get_db()
        last_id = 0
        while True:
            if await request.is_disconnected():
                break
            events = await crud.events_since(db, after_id=last_id)
            for ev in events:
                last_id = ev.id
                data = json.dumps({"type": ev.event_type, "payload": json.loads(ev.payload)})
                yield f"id: {ev.id}\nevent: {ev.event_type}\ndata: {data}\n\n"
            await asyncio.sleep(0.5)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


# ─────────────────────────────────────────────
# Health check
# ─────────────────────────────────────────────

@app.get("/health")
async def health(request: Request):
    collaborator = getattr(request.app.state, "collaborator", None)
    agent_ok = bool(collaborator and collaborator.is_available())
    try:
        db = await _db_call(get_db())
        async with db.execute("SELECT 1") as cur:
            await cur.fetchone()
        db_ok = True
    except Exception as e:
        logger.warning(f"Health check: database unavailable: {e}")
        db_ok = False
    return {
        "status": "ok" if agent_ok and db_ok else "degraded",
        "service": "ValuationDesk",
        "agent": agent_ok,
        "database": db_ok,
    }


# ─────────────────────────────────────────────
# Entry point
# ─────────────────────────────────────────────

if __name__ == "__main__":
    uvicorn.run("valuation_desk.main:app", host=config.HOST, port=config.PORT, reload=True)
