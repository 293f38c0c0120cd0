"""
Stream normalization: agent events -> ordered, typed messages.

Two stages:
  * normalize_event() maps one event to zero or more AgentMessages. It is pure
    apart from the per-turn TurnState it updates (final-result de-duplication).
  * run_turn() drains the event stream, persists each message through the
    supplied callback in arrival order, and assembles the TurnResult.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from valuation_desk.agent.events import (
    AgentEvent,
    AssistantEvent,
    ResultEvent,
    SystemEvent,
    TextBlock,
    ToolResultEvent,
    ToolUseBlock,
)
from valuation_desk.agent.extractor import SAVE_PROMPT, Extraction, extract_valuations, method_type_for
from valuation_desk.db.models import (
    Message,
    MSG_ASSISTANT_TEXT,
    MSG_CODE_BLOCK,
    MSG_ERROR,
    MSG_EXECUTING,
    MSG_METHOD_VALUATION_RESULT,
    MSG_RESULT,
    MSG_TOOL_CALL_START,
    MSG_VALUATION_RESULT,
)

logger = logging.getLogger(__name__)

SHELL_TOOL = "Bash"
REPORT_TOOL_NAME = "report_method_value"

FALLBACK_TEXT = "Response received but could not parse message content."
CANCELLED_TEXT = "Turn cancelled"
STREAM_ERROR_HINT = "Please check that the Claude Code CLI is properly configured with your API key."


class StreamStalled(Exception):
    """No event arrived from the agent within the stall timeout."""

    def __init__(self, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(f"No response from the agent for {timeout:g}s")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class AgentMessage:
    """A message as returned to callers; id/sequence_number are set once persisted."""
    type: str
    content: str
    metadata: Optional[dict[str, Any]] = None
    timestamp: datetime = field(default_factory=_utcnow)
    id: Optional[int] = None
    sequence_number: Optional[int] = None

    def mark_persisted(self, stored: Message) -> None:
        self.id = stored.id
        self.sequence_number = stored.sequence_number
        self.timestamp = stored.created_at

    @classmethod
    def from_message(cls, stored: Message) -> "AgentMessage":
        return cls(
            type=stored.type,
            content=stored.content,
            metadata=stored.metadata,
            timestamp=stored.created_at,
            id=stored.id,
            sequence_number=stored.sequence_number,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "content": self.content,
            "metadata": self.metadata,
            "timestamp": self.timestamp.isoformat(),
            "sequence_number": self.sequence_number,
        }


@dataclass
class TurnState:
    emitted_texts: set[str] = field(default_factory=set)
    done: bool = False


@dataclass
class TurnResult:
    messages: list[AgentMessage]
    done: bool
    user_message_saved: bool = True

    def assistant_texts(self) -> list[str]:
        return [m.content for m in self.messages if m.type == MSG_ASSISTANT_TEXT]

    def to_dict(self) -> dict[str, Any]:
        return {
            "messages": [m.to_dict() for m in self.messages],
            "done": self.done,
            "user_message_saved": self.user_message_saved,
        }


# ─────────────────────────────────────────────
# Stage 1: event -> messages
# ─────────────────────────────────────────────

def extraction_message(ex: Extraction) -> AgentMessage:
    if ex.is_combined:
        return AgentMessage(MSG_VALUATION_RESULT, SAVE_PROMPT, {"valuationValue": ex.value})
    return AgentMessage(
        MSG_METHOD_VALUATION_RESULT,
        SAVE_PROMPT,
        {"valuationValue": ex.value, "methodType": ex.method_type},
    )


def text_messages(text: str, turn: TurnState) -> list[AgentMessage]:
    """An assistant_text message followed by one message per result marker found."""
    turn.emitted_texts.add(text)
    out = [AgentMessage(MSG_ASSISTANT_TEXT, text)]
    out.extend(extraction_message(ex) for ex in extract_valuations(text))
    return out


def is_report_tool(name: str) -> bool:
    # SDK MCP tools arrive namespaced, e.g. mcp__valuation__report_method_value
    return name == REPORT_TOOL_NAME or name.endswith(f"__{REPORT_TOOL_NAME}")


def reported_extraction(tool_input: dict[str, Any]) -> Optional[Extraction]:
    """Validate a report_method_value payload."""
    method_type = method_type_for(str(tool_input.get("method_type") or ""))
    raw_value = tool_input.get("value")
    if method_type is None:
        logger.warning(f"report_method_value with unknown method_type: {tool_input.get('method_type')!r}")
        return None
    try:
        value = float(str(raw_value).replace(",", "").lstrip("$"))
    except (TypeError, ValueError):
        logger.warning(f"report_method_value with non-numeric value: {raw_value!r}")
        return None
    return Extraction(method_type=method_type, value=value, label=method_type.upper())


def tool_use_messages(block: ToolUseBlock) -> list[AgentMessage]:
    out = [AgentMessage(MSG_TOOL_CALL_START, f"Using {block.name} tool", {"tool": block.name})]

    command = block.input.get("command") if isinstance(block.input, dict) else None
    if block.name == SHELL_TOOL and isinstance(command, str) and command:
        language = "python" if "python" in command else "bash"
        out.append(AgentMessage(MSG_CODE_BLOCK, command, {"tool": SHELL_TOOL, "language": language}))

    out.append(AgentMessage(MSG_EXECUTING, f"Executing {block.name}...", {"tool": block.name}))

    if is_report_tool(block.name) and isinstance(block.input, dict):
        ex = reported_extraction(block.input)
        if ex is not None:
            out.append(extraction_message(ex))
    return out


def tool_result_message(event: ToolResultEvent) -> AgentMessage:
    metadata: dict[str, Any] = {"success": not event.is_error}
    if event.duration_ms is not None:
        metadata["executionTime"] = event.duration_ms / 1000
    return AgentMessage(MSG_RESULT, event.content or "(no output)", metadata)


def normalize_event(event: AgentEvent, turn: TurnState) -> list[AgentMessage]:
    if isinstance(event, AssistantEvent):
        out: list[AgentMessage] = []
        for block in event.blocks:
            if isinstance(block, TextBlock):
                out.extend(text_messages(block.text, turn))
            elif isinstance(block, ToolUseBlock):
                out.extend(tool_use_messages(block))
        return out

    if isinstance(event, ToolResultEvent):
        return [tool_result_message(event)]

    if isinstance(event, ResultEvent):
        turn.done = True
        if event.result and event.result not in turn.emitted_texts:
            return text_messages(event.result, turn)
        return []

    if isinstance(event, SystemEvent):
        logger.debug(f"System event: {event.subtype}")
    else:
        logger.debug(f"Ignoring unrecognized agent event {type(event).__name__}")
    return []


# ─────────────────────────────────────────────
# Stage 2: drain + persist
# ─────────────────────────────────────────────

PersistFn = Callable[[AgentMessage], Awaitable[None]]


def stream_error_text(exc: BaseException) -> str:
    detail = str(exc) or type(exc).__name__
    stderr = getattr(exc, "stderr", None)
    if stderr:
        detail += f"\nCLI Error: {stderr}"
    return f"Error: {detail}\n\n{STREAM_ERROR_HINT}"


async def _persist_quietly(persist: Optional[PersistFn], msg: AgentMessage) -> None:
    if persist is None:
        return
    try:
        await persist(msg)
    except Exception as e:
        # A failed write never aborts the turn.
        logger.error(f"Failed to persist {msg.type} message: {e}")


async def _next_event(iterator: AsyncIterator[AgentEvent], stall_timeout: float) -> AgentEvent:
    if stall_timeout <= 0:
        return await iterator.__anext__()
    try:
        return await asyncio.wait_for(iterator.__anext__(), timeout=stall_timeout)
    except asyncio.TimeoutError:
        raise StreamStalled(stall_timeout) from None


async def run_turn(
    events: AsyncIterator[AgentEvent],
    persist: Optional[PersistFn] = None,
    *,
    cancel: Optional[asyncio.Event] = None,
    stall_timeout: float = 0,
) -> TurnResult:
    """
    Drain one agent turn.

    Every message is persisted before the next event is awaited, so the log
    order is the arrival order. Stream failures become an `error` message and
    done=False; they are never raised to the caller.
    """
    turn = TurnState()
    messages: list[AgentMessage] = []
    iterator = events.__aiter__()
    failed = False

    async def emit(msg: AgentMessage) -> None:
        await _persist_quietly(persist, msg)
        messages.append(msg)

    try:
        while True:
            if cancel is not None and cancel.is_set():
                logger.info("Turn cancelled by caller")
                failed = True
                await emit(AgentMessage(MSG_ERROR, CANCELLED_TEXT))
                break
            try:
                event = await _next_event(iterator, stall_timeout)
            except StopAsyncIteration:
                break

            logger.debug(f"Received agent event: {type(event).__name__}")
            for msg in normalize_event(event, turn):
                await emit(msg)
    except Exception as e:
        logger.error(f"Error while draining agent stream: {type(e).__name__}: {e}", exc_info=True)
        failed = True
        await emit(AgentMessage(MSG_ERROR, stream_error_text(e)))
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as e:
                logger.debug(f"Agent stream did not close cleanly: {e}")

    if not messages:
        logger.info("No messages parsed from agent turn, using fallback response")
        await emit(AgentMessage(MSG_ASSISTANT_TEXT, FALLBACK_TEXT))

    return TurnResult(messages=messages, done=turn.done and not failed)
