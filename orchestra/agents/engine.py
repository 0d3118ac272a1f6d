"""Engine: wires agent definitions to triggers, the job queue and the runner.

Producers (cron schedules, webhooks, manual activation, collection events)
turn a trigger into a JobPayload and enqueue it.  Workers hand payloads back
to ``run_job``, which builds the per-run memory, completer and tool
registry and executes the turn loop.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime
from typing import Any

import httpx

from orchestra.agents.registry import AgentRegistry
from orchestra.agents.schemas import AgentDefinition, Event, is_valid_cron
from orchestra.api.collection_tools import DataBackend
from orchestra.api.implementations import is_available
from orchestra.api.providers import create_completer
from orchestra.api.runner import RunResult, TurnRunner
from orchestra.api.tools import ToolContext, ToolRegistry
from orchestra.config import Settings
from orchestra.errors import (
    AgentDisabled,
    AgentNotFound,
    ConfigurationError,
    DeliveryError,
    WebhookAuthError,
)
from orchestra.handlers.scheduler import TriggerManager
from orchestra.jobs.payload import CollectionEventData, JobPayload, TriggerEvent, contextual_input
from orchestra.jobs.queue import JobQueue
from orchestra.memory import create_memory, session_for
from orchestra.memory.kv import KeyValueStore
from orchestra.storage.agents import AgentStore
from orchestra.storage.database import Database

logger = logging.getLogger(__name__)


def _event_kind(payload: JobPayload) -> str:
    if payload.trigger_event is None:
        return "manual"
    if payload.trigger_event.type == "schedule":
        return "cron"
    return payload.trigger_event.type


class Engine:
    def __init__(
        self,
        settings: Settings,
        database: Database,
        queue: JobQueue,
        triggers: TriggerManager,
        store: AgentStore,
        backend: DataBackend | None = None,
        http: httpx.AsyncClient | None = None,
        registry: AgentRegistry | None = None,
        kv_store: KeyValueStore | None = None,
    ) -> None:
        self.settings = settings
        self.db = database
        self.queue = queue
        self.triggers = triggers
        self.store = store
        self.backend = backend
        self.registry = registry or AgentRegistry()
        self._kv_store = kv_store
        self._owns_http = http is None
        self.http = http or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=settings.api_timeout_connect,
                read=settings.api_timeout_read,
                write=30.0,
                pool=10.0,
            ),
            limits=httpx.Limits(max_connections=50, max_keepalive_connections=20),
        )

    async def close(self) -> None:
        if self._owns_http:
            await self.http.aclose()
        if self._kv_store is not None:
            await self._kv_store.dispose()

    @property
    def kv_store(self) -> KeyValueStore:
        if self._kv_store is None:
            self._kv_store = KeyValueStore(self.settings.kv_memory_path)
        return self._kv_store

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def validate(self, agent: AgentDefinition) -> AgentDefinition:
        """Check wiring the schema alone cannot: impl keys, cron grammar, provider keys."""
        if not agent.id:
            raise ConfigurationError("agent ID is required", {"id": "required"})
        # Only reachable through model_copy or model_construct; the schema rejects <= 0.
        if agent.max_turns <= 0:
            agent = agent.model_copy(update={"max_turns": self.settings.default_max_turns})
        for i, spec in enumerate(agent.functions):
            if not is_available(spec.impl_key):
                raise ConfigurationError(
                    f"function implementation not found: {spec.impl_key}",
                    {f"functions.{i}.impl_key": f"unknown implementation key '{spec.impl_key}'"},
                )
        if agent.trigger.cron and not is_valid_cron(agent.trigger.cron):
            raise ConfigurationError(
                f"invalid cron expression: {agent.trigger.cron!r}",
                {"trigger.cron": "invalid cron expression"},
            )
        # Raises ConfigurationError for an unknown provider or an unresolvable key.
        create_completer(agent.provider, self.settings, self.http)
        return agent

    async def register_agent(self, agent: AgentDefinition, persist: bool = False) -> AgentDefinition:
        agent = self.validate(agent)
        if persist:
            await self.store.upsert(agent)
        await self.registry.register(agent)

        self.triggers.remove(agent.id)
        if agent.enabled and agent.trigger.cron:
            self.triggers.add_cron(agent.id, agent.trigger.cron, self._fire_cron)
        logger.info("Registered agent %s (%s)", agent.id, agent.name)
        return agent

    async def unregister_agent(self, agent_id: str, delete: bool = False) -> bool:
        removed = await self.registry.unregister(agent_id) is not None
        self.triggers.remove(agent_id)
        if delete:
            removed = await self.store.delete(agent_id) or removed
        if removed:
            logger.info("Unregistered agent %s", agent_id)
        return removed

    async def load_agents(self) -> int:
        """Register every stored definition.  Invalid ones are logged and skipped."""
        loaded = 0
        for agent in await self.store.list():
            try:
                await self.register_agent(agent)
                loaded += 1
            except ConfigurationError as e:
                logger.error("Skipping stored agent %s: %s", agent.id, e)
        logger.info("Loaded %d agent(s)", loaded)
        return loaded

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    async def _active_agent(self, agent_id: str) -> AgentDefinition:
        agent = await self.registry.get(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        if not agent.enabled:
            raise AgentDisabled(agent_id)
        return agent

    async def _enqueue(
        self,
        agent: AgentDefinition,
        event: Event,
        trigger_event: TriggerEvent | None = None,
        initial_input: str = "",
    ) -> str:
        ce = trigger_event.collection_event if trigger_event else None
        session_id = session_for(
            agent,
            event.kind,
            collection=ce.collection if ce else None,
            item_id=ce.item_id if ce else None,
        )
        payload = JobPayload(
            agent_id=agent.id,
            initial_input=initial_input,
            session_id=session_id,
            trigger_event=trigger_event,
            created_at=event.timestamp,
        )
        logger.debug("Trigger %s for agent %s -> session %s", event.kind, agent.id, session_id)
        return await self.queue.enqueue(payload)

    async def _fire_cron(self, agent_id: str, now: datetime) -> str | None:
        agent = await self.registry.get(agent_id)
        if agent is None or not agent.enabled:
            logger.warning("Cron fired for inactive agent %s, skipping", agent_id)
            return None
        event = TriggerEvent(
            type="schedule",
            schedule_data={"cron": agent.trigger.cron, "fired_at": now.isoformat()},
        )
        return await self._enqueue(agent, Event(agent_id=agent_id, kind="cron", timestamp=now), event)

    async def handle_webhook(self, agent_id: str, payload: Any, token: str | None) -> str:
        """Authenticate a webhook call and enqueue a run.  Returns the job id."""
        agent = await self._active_agent(agent_id)
        expected = agent.trigger.webhook_token
        if not expected or not token or not hmac.compare_digest(expected.encode(), token.encode()):
            logger.warning("Rejected webhook for agent %s: bad token", agent_id)
            raise WebhookAuthError(f"invalid webhook token for agent {agent_id}")
        data = payload if payload is not None else {}
        event = TriggerEvent(type="webhook", webhook_data=data)
        return await self._enqueue(agent, Event(agent_id=agent_id, kind="webhook", payload=data), event)

    async def trigger_manual(self, agent_id: str, initial_input: str = "") -> str:
        agent = await self._active_agent(agent_id)
        return await self._enqueue(
            agent, Event(agent_id=agent_id, kind="manual"), TriggerEvent(type="manual"), initial_input=initial_input
        )

    async def handle_collection_event(
        self,
        collection: str,
        event: str,
        item_id: Any = "",
        item_data: dict[str, Any] | None = None,
    ) -> list[str]:
        """Enqueue a run for every enabled agent subscribed to this event."""
        subscribed = [a for a in await self.registry.list() if a.enabled and a.trigger.subscribes_to(collection, event)]
        if not subscribed:
            logger.info("No agents subscribed to %s on collection %s", event, collection)
            return []

        data = CollectionEventData(
            collection=collection,
            event=event,
            item_id=str(item_id) if item_id is not None else "",
            item_data=item_data or {},
        )
        job_ids = []
        for agent in subscribed:
            try:
                job_ids.append(
                    await self._enqueue(
                        agent,
                        Event(agent_id=agent.id, kind="collection_event", payload=data.item_data),
                        TriggerEvent(type="collection_event", collection_event=data),
                    )
                )
            except DeliveryError:
                logger.exception("Failed to enqueue collection event job for agent %s", agent.id)
        logger.info("Dispatched %s on %s to %d agent(s)", event, collection, len(job_ids))
        return job_ids

    # ------------------------------------------------------------------
    # Worker entry point
    # ------------------------------------------------------------------

    async def run_job(self, payload: JobPayload) -> RunResult | None:
        """Execute one queued run.  Errors propagate so the queue can retry.

        ConfigurationError is not retried; the worker fails the job at once.
        """
        agent = await self.registry.get(payload.agent_id)
        if agent is None:
            raise AgentNotFound(payload.agent_id)
        if not agent.enabled:
            logger.info("Agent %s is disabled, dropping job", agent.id)
            return None

        session_id = payload.session_id or session_for(agent, _event_kind(payload))

        memory = create_memory(
            agent.memory,
            self.db,
            self.kv_store if agent.memory.backend == "kv" else None,
        )
        completer = create_completer(agent.provider, self.settings, self.http)
        tools = ToolRegistry.from_specs(
            agent.functions,
            ToolContext(agent_id=agent.id, session_id=session_id, backend=self.backend, completer=completer),
            timeout=self.settings.tool_timeout,
        )
        runner = TurnRunner(memory, completer, tools, self.settings)
        return await runner.run(agent, session_id, contextual_input(payload))

    async def history(self, agent_id: str, session_id: str | None = None, limit: int = 0):
        agent = await self.registry.get(agent_id)
        if agent is None:
            raise AgentNotFound(agent_id)
        memory = create_memory(agent.memory, self.db, self.kv_store if agent.memory.backend == "kv" else None)
        return await memory.load(agent.id, session_id or agent.id, limit)
