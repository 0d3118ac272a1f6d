"""Embedded key-value conversation memory.

Messages live in an SQLite file laid out as buckets of ordered keys.  Each
session is one bucket (``namespace/agent/session``, each part percent-encoded
so a '/' inside an id cannot collide) and each message is one
key: its sequence number zero-padded so lexicographic order is append order.
"""

from __future__ import annotations

import asyncio
import logging
import os
from urllib.parse import quote

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from orchestra.agents.schemas import Message
from orchestra.errors import UpstreamError
from orchestra.storage.models import KVBase, KVEntry

logger = logging.getLogger(__name__)

KEY_WIDTH = 20


def sequence_key(sequence: int) -> str:
    return str(sequence).zfill(KEY_WIDTH)


class KeyValueStore:
    """Bucketed byte store over an SQLite file."""

    def __init__(self, path: str = "data/memory.db") -> None:
        self.path = path
        if path != ":memory:":
            os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        self._engine = create_async_engine(f"sqlite+aiosqlite:///{path}", echo=False)
        self._session_factory = async_sessionmaker(self._engine, class_=AsyncSession, expire_on_commit=False)
        self._write_lock = asyncio.Lock()
        self._initialized = False

    async def initialize(self) -> None:
        if self._initialized:
            return
        async with self._engine.begin() as conn:
            await conn.run_sync(KVBase.metadata.create_all)
        self._initialized = True
        logger.info("Key-value memory initialized: %s", self.path)

    async def dispose(self) -> None:
        await self._engine.dispose()

    async def append(self, bucket: str, value: bytes) -> str:
        """Store ``value`` under the next key of ``bucket`` and return the key."""
        await self.initialize()
        async with self._write_lock:
            async with self._session_factory() as session:
                async with session.begin():
                    last = await session.scalar(
                        select(KVEntry.key).where(KVEntry.bucket == bucket).order_by(KVEntry.key.desc()).limit(1)
                    )
                    key = sequence_key(int(last) + 1 if last else 1)
                    session.add(KVEntry(bucket=bucket, key=key, value=value))
        return key

    async def scan(self, bucket: str, limit: int = 0) -> list[bytes]:
        """Values of ``bucket`` in key order; the last ``limit`` when positive."""
        await self.initialize()
        stmt = select(KVEntry.value).where(KVEntry.bucket == bucket).order_by(KVEntry.key.desc())
        if limit > 0:
            stmt = stmt.limit(limit)
        async with self._session_factory() as session:
            values = list((await session.execute(stmt)).scalars().all())
        values.reverse()
        return values


class KeyValueMemory:
    def __init__(self, store: KeyValueStore, namespace: str = "") -> None:
        self.store = store
        self.namespace = namespace or "default"

    def bucket(self, agent_id: str, session_id: str) -> str:
        parts = (self.namespace, agent_id, session_id)
        return "/".join(quote(p, safe=":") for p in parts)

    async def append(self, agent_id: str, session_id: str, message: Message) -> None:
        try:
            await self.store.append(self.bucket(agent_id, session_id), message.model_dump_json().encode())
        except SQLAlchemyError as e:
            raise UpstreamError(f"memory append failed: {e}") from e

    async def load(self, agent_id: str, session_id: str, limit: int) -> list[Message]:
        try:
            values = await self.store.scan(self.bucket(agent_id, session_id), limit)
        except SQLAlchemyError as e:
            raise UpstreamError(f"memory load failed: {e}") from e
        return [Message.model_validate_json(v) for v in values]
