"""
Agent event model.

The collaborator turns whatever its backend streams into this closed set of
events; the normalizer only ever sees these types.
"""
from dataclasses import dataclass, field
from typing import Any, Optional, Union


@dataclass
class TextBlock:
    text: str


@dataclass
class ToolUseBlock:
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    id: str = ""


ContentBlock = Union[TextBlock, ToolUseBlock]


@dataclass
class AssistantEvent:
    """One assistant turn fragment carrying text and/or tool invocations."""
    blocks: list[ContentBlock]


@dataclass
class ToolResultEvent:
    content: str
    is_error: bool = False
    duration_ms: Optional[float] = None
    tool_use_id: str = ""


@dataclass
class ResultEvent:
    """Terminal event of a turn."""
    result: str
    is_error: bool = False
    duration_ms: Optional[float] = None


@dataclass
class SystemEvent:
    subtype: str
    data: dict[str, Any] = field(default_factory=dict)


AgentEvent = Union[AssistantEvent, ToolResultEvent, ResultEvent, SystemEvent]


@dataclass
class AgentRequest:
    prompt: str
    system_prompt: str
    allowed_tools: list[str]
    permission_mode: str = "bypassPermissions"
