"""
Shared fixtures for ValuationDesk tests.

Everything runs in-process: databases are in-memory aiosqlite connections and
the agent is replaced by FakeCollaborator, which replays scripted event lists.
"""
import asyncio
from typing import AsyncIterator, Iterable, Union

import pytest
import pytest_asyncio

from valuation_desk.agent.collaborator import AgentCollaborator
from valuation_desk.agent.events import (
    AgentEvent,
    AgentRequest,
    AssistantEvent,
    ResultEvent,
    TextBlock,
)
from valuation_desk.db.database import open_db

GREETING = "Hello! I'm your valuation assistant. Shall I prepare a valuation plan?"

ScriptStep = Union[AgentEvent, Exception]


def say(text: str) -> list[AgentEvent]:
    """A minimal agent turn: one text block plus the final result echoing it."""
    return [AssistantEvent(blocks=[TextBlock(text)]), ResultEvent(result=text)]


class FakeCollaborator(AgentCollaborator):
    """Replays one scripted turn per run() call.

    A turn is a list of events; an Exception in the list is raised at that
    point of the stream. When the script runs out, every turn just greets.
    """

    def __init__(self, turns: Iterable[list[ScriptStep]] = (), delay: float = 0.0) -> None:
        self.turns = [list(t) for t in turns]
        self.delay = delay
        self.requests: list[AgentRequest] = []

    @property
    def name(self) -> str:
        return "fake"

    def queue(self, *steps: ScriptStep) -> None:
        self.turns.append(list(steps))

    async def run(self, request: AgentRequest) -> AsyncIterator[AgentEvent]:
        self.requests.append(request)
        steps = self.turns.pop(0) if self.turns else say(GREETING)
        for step in steps:
            if self.delay:
                await asyncio.sleep(self.delay)
            if isinstance(step, Exception):
                raise step
            yield step


@pytest_asyncio.fixture
async def db():
    conn = await open_db(":memory:")
    try:
        yield conn
    finally:
        await conn.close()


@pytest.fixture
def collaborator():
    return FakeCollaborator()
