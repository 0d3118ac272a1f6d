"""In-process async event bus.

Carries job lifecycle events (``job_completed``, ``job_failed``) and
content-layer collection events (``collection_event``).  Handlers run
concurrently with errors isolated: one broken handler never crashes the bus
or blocks the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

JOB_COMPLETED = "job_completed"
JOB_FAILED = "job_failed"
COLLECTION_EVENT = "collection_event"

BusHandler = Callable[["BusEvent"], Awaitable[None]]


@dataclass
class BusEvent:
    type: str
    data: dict[str, Any] = field(default_factory=dict)
    agent_id: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


class EventBus:
    """Queue-backed bus processed by a background task.

    ``emit`` never blocks the caller; when the queue is full the event is
    dropped with a warning.
    """

    def __init__(self, max_queue: int = 1000):
        self._handlers: dict[str, list[BusHandler]] = defaultdict(list)
        self._queue: asyncio.Queue[BusEvent] = asyncio.Queue(maxsize=max_queue)
        self._task: asyncio.Task | None = None
        self._running = False

    def on(self, event_type: str, handler: BusHandler) -> None:
        self._handlers[event_type].append(handler)
        logger.debug("Registered handler for '%s': %s", event_type, getattr(handler, "__qualname__", handler))

    async def emit(self, event: BusEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning("Event bus queue full, dropping event: %s", event.type)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._process_loop(), name="event-bus")
        logger.info("Event bus started")

    async def stop(self) -> None:
        """Stop the loop, then dispatch whatever is still queued."""
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            while not self._queue.empty():
                try:
                    event = self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                await self._dispatch(event)
        logger.info("Event bus stopped")

    async def _process_loop(self) -> None:
        while self._running:
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=1.0)
                await self._dispatch(event)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Unexpected error in event bus loop")

    async def _dispatch(self, event: BusEvent) -> None:
        handlers = self._handlers.get(event.type, [])
        if not handlers:
            return
        await asyncio.gather(*(self._safe_handle(h, event) for h in handlers))

    async def _safe_handle(self, handler: BusHandler, event: BusEvent) -> None:
        try:
            await handler(event)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Handler %s failed for event %s",
                getattr(handler, "__qualname__", handler),
                event.type,
            )

    @property
    def pending(self) -> int:
        return self._queue.qsize()
