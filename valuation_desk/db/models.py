"""
Data models (dataclasses) for ValuationDesk.
These are plain Python objects used across the DB, agent, and API layers.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Any


# Message type tags. The set is closed: crud.msg_create rejects anything else.
MSG_USER = "user"
MSG_ASSISTANT_TEXT = "assistant_text"
MSG_TOOL_CALL_START = "tool_call_start"
MSG_CODE_BLOCK = "code_block"
MSG_EXECUTING = "executing"
MSG_RESULT = "result"
MSG_ERROR = "error"
MSG_METHOD_VALUATION_RESULT = "method_valuation_result"
MSG_VALUATION_RESULT = "valuation_result"

MESSAGE_TYPES = frozenset({
    MSG_USER,
    MSG_ASSISTANT_TEXT,
    MSG_TOOL_CALL_START,
    MSG_CODE_BLOCK,
    MSG_EXECUTING,
    MSG_RESULT,
    MSG_ERROR,
    MSG_METHOD_VALUATION_RESULT,
    MSG_VALUATION_RESULT,
})

# Only these types are replayed into the prompt when a conversation is restored.
CONVERSATIONAL_TYPES = (MSG_USER, MSG_ASSISTANT_TEXT)

THREAD_ACTIVE = "active"
THREAD_ARCHIVED = "archived"


@dataclass
class Thread:
    id: int
    project_id: int
    title: Optional[str]
    status: str              # active | archived
    started_at: datetime
    last_message_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "title": self.title,
            "status": self.status,
            "started_at": self.started_at.isoformat(),
            "last_message_at": self.last_message_at.isoformat(),
        }


@dataclass
class Message:
    id: int
    thread_id: int
    type: str
    content: str
    metadata: Optional[dict[str, Any]]
    created_at: datetime
    sequence_number: int     # strictly increasing per thread

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "thread_id": self.thread_id,
            "type": self.type,
            "content": self.content,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
            "sequence_number": self.sequence_number,
        }


@dataclass
class Event:
    """
    Transient notification row used to fan-out SSE events to subscribers.
    Rows are written by any mutating operation and pruned by age.
    """
    id: int
    event_type: str      # thread.new | thread.archived | thread.deleted | msg.new
    thread_id: Optional[int]
    payload: str         # JSON string
    created_at: datetime
