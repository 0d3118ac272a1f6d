"""Persisted agent definitions."""

import logging

from sqlalchemy import delete, select

from orchestra.agents.schemas import AgentDefinition
from orchestra.storage.database import Database
from orchestra.storage.models import AgentRecord, utcnow

logger = logging.getLogger(__name__)


class AgentStore:
    def __init__(self, database: Database) -> None:
        self._db = database

    async def upsert(self, agent: AgentDefinition) -> AgentDefinition:
        config = agent.model_dump(mode="json")
        async with self._db.session() as session:
            record = await session.get(AgentRecord, agent.id)
            if record is None:
                session.add(AgentRecord(id=agent.id, name=agent.name, enabled=agent.enabled, config=config))
                logger.info("Stored new agent %s", agent.id)
            else:
                record.name = agent.name
                record.enabled = agent.enabled
                record.config = config
                record.updated_at = utcnow()
                logger.info("Updated agent %s", agent.id)
            await session.commit()
        return agent

    async def get(self, agent_id: str) -> AgentDefinition | None:
        async with self._db.session() as session:
            record = await session.get(AgentRecord, agent_id)
            return AgentDefinition.model_validate(record.config) if record else None

    async def list(self, enabled_only: bool = False) -> list[AgentDefinition]:
        """All stored definitions.  Rows that no longer validate are skipped."""
        q = select(AgentRecord).order_by(AgentRecord.id)
        if enabled_only:
            q = q.where(AgentRecord.enabled.is_(True))
        async with self._db.session() as session:
            records = list((await session.execute(q)).scalars().all())
        agents = []
        for r in records:
            try:
                agents.append(AgentDefinition.model_validate(r.config))
            except ValueError:
                logger.exception("Stored agent %s is invalid, skipping", r.id)
        return agents

    async def delete(self, agent_id: str) -> bool:
        async with self._db.session() as session:
            result = await session.execute(delete(AgentRecord).where(AgentRecord.id == agent_id))
            await session.commit()
            return result.rowcount > 0
