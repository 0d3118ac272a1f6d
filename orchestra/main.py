"""Orchestra entry point.

Initializes all components and starts the server:
  Settings -> Database -> JobQueue -> TriggerManager -> Engine -> Workers -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same event
loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from orchestra.agents.engine import Engine
from orchestra.api.collection_tools import InMemoryDataBackend
from orchestra.config import Settings
from orchestra.events import JOB_FAILED, BusEvent, EventBus
from orchestra.handlers.collection_dispatcher import CollectionEventDispatcher
from orchestra.handlers.scheduler import TriggerManager
from orchestra.handlers.worker import AgentWorkerPool
from orchestra.jobs.queue import JobQueue
from orchestra.storage.agents import AgentStore
from orchestra.storage.database import Database

logger = logging.getLogger(__name__)


async def create_components(settings: Settings, bus: EventBus | None = None) -> dict:
    """Initialize all components in dependency order.

    1. Database - connection pool + schema
    2. JobQueue, TriggerManager, AgentStore
    3. Engine - loads persisted agents and their cron schedules
    4. Event bus handlers, worker pool, scheduler loop
    """
    database = Database(settings)
    await database.connect()

    queue = JobQueue(database, settings)
    triggers = TriggerManager(settings)
    store = AgentStore(database)
    engine = Engine(
        settings=settings,
        database=database,
        queue=queue,
        triggers=triggers,
        store=store,
        backend=InMemoryDataBackend(),
    )
    await engine.load_agents()

    if bus is not None:
        CollectionEventDispatcher(engine, bus)

        async def log_failure(event: BusEvent) -> None:
            logger.warning(
                "Job %s for agent %s failed (status=%s): %s",
                event.data.get("job_id", "?")[:8],
                event.agent_id,
                event.data.get("status"),
                event.data.get("error"),
            )

        bus.on(JOB_FAILED, log_failure)
        await bus.start()

    worker_pool = None
    if settings.run_workers:
        worker_pool = AgentWorkerPool(queue, engine.run_job, settings, bus=bus)
        await worker_pool.start()

    if settings.run_scheduler:
        await triggers.start()

    return {
        "database": database,
        "queue": queue,
        "triggers": triggers,
        "store": store,
        "engine": engine,
        "bus": bus,
        "worker_pool": worker_pool,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down orchestra...")

    triggers = components.get("triggers")
    if triggers:
        await triggers.stop()

    worker_pool = components.get("worker_pool")
    if worker_pool:
        await worker_pool.stop()

    bus = components.get("bus")
    if bus:
        await bus.stop()

    engine = components.get("engine")
    if engine:
        await engine.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Orchestra shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    components: dict = {}
    bus = EventBus() if settings.event_bus_enabled else None

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings, bus))
        app.state.components = components
        logger.info(
            "Orchestra started: workers=%s scheduler=%s",
            settings.worker_concurrency if settings.run_workers else 0,
            "on" if settings.run_scheduler else "off",
        )
        yield
        await shutdown_components(components)

    from orchestra.api.rest import create_app

    return create_app(
        engine=_LazyProxy(components, "engine"),
        queue=_LazyProxy(components, "queue"),
        database=_LazyProxy(components, "database"),
        settings=settings,
        bus=bus,
        lifespan=lifespan,
    )


class _LazyProxy:
    """Forwards attribute access to a component created later in lifespan."""

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not yet initialized; lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def main() -> None:
    """Entry point -- parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting orchestra on %s:%d", settings.host, settings.port)
    logger.info("Database: %s", settings.db_url.split("://", 1)[0])
    if not settings.openai_api_key and not settings.anthropic_api_key:
        logger.warning("Neither OPENAI_API_KEY nor ANTHROPIC_API_KEY is set; agents need explicit api_key_ref")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
