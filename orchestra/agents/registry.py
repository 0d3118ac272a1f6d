"""In-memory registry of active agent definitions."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from orchestra.agents.schemas import AgentDefinition


class RWLock:
    """Async read-write lock: readers share, a writer is exclusive.

    Waiting writers block new readers so writes are not starved.
    """

    def __init__(self) -> None:
        self._cond = asyncio.Condition()
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @asynccontextmanager
    async def read(self) -> AsyncIterator[None]:
        async with self._cond:
            await self._cond.wait_for(lambda: not self._writer and self._writers_waiting == 0)
            self._readers += 1
        try:
            yield
        finally:
            async with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @asynccontextmanager
    async def write(self) -> AsyncIterator[None]:
        async with self._cond:
            self._writers_waiting += 1
            try:
                await self._cond.wait_for(lambda: not self._writer and self._readers == 0)
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            async with self._cond:
                self._writer = False
                self._cond.notify_all()


class AgentRegistry:
    def __init__(self) -> None:
        self._agents: dict[str, AgentDefinition] = {}
        self._lock = RWLock()

    async def register(self, agent: AgentDefinition) -> AgentDefinition | None:
        """Store ``agent``, returning the definition it replaced, if any."""
        async with self._lock.write():
            previous = self._agents.get(agent.id)
            self._agents[agent.id] = agent
            return previous

    async def unregister(self, agent_id: str) -> AgentDefinition | None:
        async with self._lock.write():
            return self._agents.pop(agent_id, None)

    async def get(self, agent_id: str) -> AgentDefinition | None:
        async with self._lock.read():
            return self._agents.get(agent_id)

    async def list(self) -> list[AgentDefinition]:
        async with self._lock.read():
            return sorted(self._agents.values(), key=lambda a: a.id)
