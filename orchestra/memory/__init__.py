"""Conversation memory: append-only, per-session message history.

Two backends share one contract:

- SqlMemory stores messages in the main database (``agent_messages``).
- KeyValueMemory stores them in an embedded SQLite key-value file.

Both return the most recent ``limit`` messages oldest first from ``load``
and make ``append`` durable before returning.
"""

from __future__ import annotations

from typing import Any, Protocol

from orchestra.agents.schemas import AgentDefinition, MemoryConfig, Message
from orchestra.errors import ConfigurationError


class Memory(Protocol):
    async def append(self, agent_id: str, session_id: str, message: Message) -> None: ...

    async def load(self, agent_id: str, session_id: str, limit: int) -> list[Message]: ...


def session_for(
    agent: AgentDefinition,
    kind: str,
    collection: str | None = None,
    item_id: Any = None,
) -> str:
    """Derive the session id for a run of ``agent`` triggered by ``kind``."""
    scope = agent.memory.session_scope
    if scope == "per-trigger":
        return f"{agent.id}:{kind}"
    if scope == "per-target" and kind == "collection_event" and collection:
        return f"{agent.id}:{collection}:{item_id}"
    return agent.id


def create_memory(config: MemoryConfig, database: Any, kv_store: Any = None) -> Memory:
    """Build the memory backend an agent's MemoryConfig asks for."""
    from orchestra.memory.kv import KeyValueMemory
    from orchestra.memory.sql import SqlMemory

    if config.backend == "sql":
        if database is None:
            raise ConfigurationError("sql memory requires a database")
        return SqlMemory(database)
    if config.backend == "kv":
        if kv_store is None:
            raise ConfigurationError("kv memory requires a key-value store")
        return KeyValueMemory(kv_store, namespace=config.namespace)
    raise ConfigurationError(f"unsupported memory backend: {config.backend}", {"memory.backend": "unsupported"})


__all__ = ["Memory", "create_memory", "session_for"]
