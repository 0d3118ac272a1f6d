"""Relational conversation memory backed by the ``agent_messages`` table."""

from __future__ import annotations

import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from orchestra.agents.schemas import Message, ToolCall
from orchestra.errors import UpstreamError
from orchestra.storage.database import Database
from orchestra.storage.models import AgentMessage

logger = logging.getLogger(__name__)

_MAX_SEQUENCE_RETRIES = 5


def _to_message(row: AgentMessage) -> Message:
    return Message(
        role=row.role,
        content=row.content or "",
        name=row.name,
        tool_call=ToolCall.model_validate(row.tool_call) if row.tool_call else None,
        tool_call_id=row.tool_call_id,
    )


class SqlMemory:
    """Per-session message log.  Sequence numbers are assigned as max+1."""

    def __init__(self, database: Database) -> None:
        self.db = database

    async def append(self, agent_id: str, session_id: str, message: Message) -> None:
        for attempt in range(_MAX_SEQUENCE_RETRIES):
            try:
                async with self.db.session() as session:
                    async with session.begin():
                        current = await session.scalar(
                            select(func.max(AgentMessage.sequence)).where(
                                AgentMessage.agent_id == agent_id,
                                AgentMessage.session_id == session_id,
                            )
                        )
                        session.add(
                            AgentMessage(
                                agent_id=agent_id,
                                session_id=session_id,
                                sequence=(current or 0) + 1,
                                role=message.role,
                                name=message.name,
                                content=message.content,
                                tool_call=message.tool_call.model_dump() if message.tool_call else None,
                                tool_call_id=message.tool_call_id,
                            )
                        )
                return
            except IntegrityError:
                # Concurrent writer took the same sequence number
                logger.debug("Sequence collision for %s/%s (attempt %d)", agent_id, session_id, attempt + 1)
            except SQLAlchemyError as e:
                raise UpstreamError(f"memory append failed: {e}") from e
        raise UpstreamError(f"memory append failed: sequence contention on {agent_id}/{session_id}")

    async def load(self, agent_id: str, session_id: str, limit: int) -> list[Message]:
        stmt = (
            select(AgentMessage)
            .where(AgentMessage.agent_id == agent_id, AgentMessage.session_id == session_id)
            .order_by(AgentMessage.sequence.desc())
        )
        if limit > 0:
            stmt = stmt.limit(limit)
        try:
            async with self.db.session() as session:
                rows = list((await session.execute(stmt)).scalars().all())
        except SQLAlchemyError as e:
            raise UpstreamError(f"memory load failed: {e}") from e
        rows.reverse()
        return [_to_message(r) for r in rows]
