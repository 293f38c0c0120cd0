"""
Agent collaborator backends.

A collaborator accepts an AgentRequest and yields AgentEvents. The default
backend wraps claude_agent_sdk.query() and registers an in-process MCP server
exposing the `report_method_value` tool, so the agent has a structured
channel for results besides the text markers.
"""
import abc
import logging
from typing import Any, AsyncIterator

from valuation_desk import config
from valuation_desk.agent.events import (
    AgentEvent,
    AgentRequest,
    AssistantEvent,
    ContentBlock,
    ResultEvent,
    SystemEvent,
    TextBlock,
    ToolResultEvent,
    ToolUseBlock,
)
from valuation_desk.agent.extractor import method_labels, method_type_for
from valuation_desk.agent.normalizer import REPORT_TOOL_NAME

logger = logging.getLogger(__name__)

REPORT_SERVER_NAME = "valuation"
REPORT_TOOL_QUALIFIED = f"mcp__{REPORT_SERVER_NAME}__{REPORT_TOOL_NAME}"


class CollaboratorUnavailable(Exception):
    """The agent backend is missing a credential or is not installed."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Agent collaborator unavailable: {reason}")


class AgentCollaborator(abc.ABC):
    """Abstract agent backend."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short backend name (e.g. 'claude')."""

    @abc.abstractmethod
    def run(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        """Start one agent turn and stream its events."""

    def is_available(self) -> bool:
        return True


# ─────────────────────────────────────────────
# SDK message translation
# ─────────────────────────────────────────────

def _field(obj: Any, key: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _flatten_tool_content(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            text = _field(item, "text")
            if isinstance(text, str):
                parts.append(text)
        return "\n".join(parts)
    return str(content)


def _translate_block(block: Any) -> ContentBlock | None:
    if _field(block, "thinking") is not None:
        return None
    kind = _field(block, "type")
    text = _field(block, "text")
    if kind == "text" or (kind is None and isinstance(text, str)):
        return TextBlock(text=text or "")
    name = _field(block, "name")
    if kind == "tool_use" or (kind is None and name is not None and _field(block, "input") is not None):
        tool_input = _field(block, "input") or {}
        return ToolUseBlock(name=name, input=tool_input if isinstance(tool_input, dict) else {}, id=_field(block, "id", "") or "")
    return None


def _tool_result_event(block: Any) -> ToolResultEvent:
    return ToolResultEvent(
        content=_flatten_tool_content(_field(block, "content")),
        is_error=bool(_field(block, "is_error", False)),
        duration_ms=_field(block, "duration_ms"),
        tool_use_id=_field(block, "tool_use_id", "") or "",
    )


def translate_sdk_message(message: Any) -> list[AgentEvent]:
    """
    Map one SDK message (typed object or raw stream-json dict) to events.

    AssistantMessage -> AssistantEvent (text + tool_use blocks)
    UserMessage with tool_result blocks -> one ToolResultEvent per block
    ResultMessage -> ResultEvent
    SystemMessage -> SystemEvent
    """
    if isinstance(message, dict):
        kind = message.get("type")
        body = message.get("message") or {}
        content = body.get("content") if isinstance(body, dict) else None
    else:
        kind = {
            "AssistantMessage": "assistant",
            "UserMessage": "user",
            "ResultMessage": "result",
            "SystemMessage": "system",
        }.get(type(message).__name__)
        content = getattr(message, "content", None)

    if kind == "assistant":
        blocks = [b for b in (_translate_block(x) for x in content or []) if b is not None]
        return [AssistantEvent(blocks=blocks)] if blocks else []

    if kind == "user":
        if not isinstance(content, list):
            return []
        return [_tool_result_event(b) for b in content if _field(b, "tool_use_id") is not None]

    if kind == "tool_result":
        return [_tool_result_event(message)]

    if kind == "result":
        return [ResultEvent(
            result=_field(message, "result") or "",
            is_error=bool(_field(message, "is_error", False)),
            duration_ms=_field(message, "duration_ms"),
        )]

    if kind == "system":
        data = _field(message, "data")
        return [SystemEvent(subtype=_field(message, "subtype", "") or "", data=data if isinstance(data, dict) else {})]

    logger.debug(f"Untranslated SDK message: {type(message).__name__}")
    return []


# ─────────────────────────────────────────────
# Claude Agent SDK backend
# ─────────────────────────────────────────────

async def _handle_report(args: dict[str, Any]) -> dict[str, Any]:
    method_type = method_type_for(str(args.get("method_type") or ""))
    if method_type is None:
        known = ", ".join(method_labels().values())
        return {
            "content": [{"type": "text", "text": f"Unknown method_type. Use one of: {known}"}],
            "is_error": True,
        }
    return {"content": [{"type": "text", "text": f"Recorded {method_type} value {args.get('value')}."}]}


def build_report_server() -> Any:
    """In-process MCP server config for ClaudeAgentOptions.mcp_servers."""
    from claude_agent_sdk import create_sdk_mcp_server, tool

    @tool(REPORT_TOOL_NAME, "Report the final value computed for one valuation method.", {
        "type": "object",
        "properties": {
            "method_type": {
                "type": "string",
                "enum": sorted(method_labels().values()),
                "description": "Valuation method the value belongs to",
            },
            "value": {"type": "number", "description": "Computed enterprise value in dollars"},
        },
        "required": ["method_type", "value"],
    })
    async def report_method_value(args: dict[str, Any]) -> dict[str, Any]:
        return await _handle_report(args)

    return create_sdk_mcp_server(name=REPORT_SERVER_NAME, version=config.APP_VERSION, tools=[report_method_value])


class ClaudeCollaborator(AgentCollaborator):
    """Collaborator backed by the Claude Agent SDK.

    Auth comes from ANTHROPIC_API_KEY; the SDK drives the claude CLI, which
    provides the Bash/Edit/Read/Write/Grep tools used for calculations.
    """

    def __init__(self, model: str | None = None, structured_reports: bool = True) -> None:
        self._model = model
        self._structured_reports = structured_reports

    @classmethod
    def from_config(cls) -> "ClaudeCollaborator":
        if not config.anthropic_api_key_present():
            raise CollaboratorUnavailable("ANTHROPIC_API_KEY is not set")
        return cls(model=config.AGENT_MODEL)

    @property
    def name(self) -> str:
        return "claude"

    def is_available(self) -> bool:
        return config.anthropic_api_key_present()

    async def run(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        from claude_agent_sdk import query, ClaudeAgentOptions

        allowed_tools = list(request.allowed_tools)
        options_kwargs: dict[str, Any] = dict(
            system_prompt=request.system_prompt,
            allowed_tools=allowed_tools,
            permission_mode=request.permission_mode,
        )
        if self._model:
            options_kwargs["model"] = self._model
        if self._structured_reports:
            options_kwargs["mcp_servers"] = {REPORT_SERVER_NAME: build_report_server()}
            allowed_tools.append(REPORT_TOOL_QUALIFIED)

        # SDK MCP servers need streaming input mode
        async def _prompt_stream():
            yield {
                "type": "user",
                "message": {"role": "user", "content": request.prompt},
            }

        logger.info(f"Starting agent query (system prompt {len(request.system_prompt)} chars)")
        logger.debug(f"Agent prompt: {request.prompt[:100]}")
        async for message in query(prompt=_prompt_stream(), options=ClaudeAgentOptions(**options_kwargs)):
            for event in translate_sdk_message(message):
                yield event
