"""Collection event dispatcher -- fans content-layer events out to agents.

Listens for ``collection_event`` on the bus and enqueues a run for every
agent whose trigger subscribes to the event's collection and type.
"""

from __future__ import annotations

import logging

from orchestra.events import COLLECTION_EVENT, BusEvent, EventBus

logger = logging.getLogger(__name__)


class CollectionEventDispatcher:
    def __init__(self, engine, bus: EventBus) -> None:
        self._engine = engine
        bus.on(COLLECTION_EVENT, self.handle)

    async def handle(self, event: BusEvent) -> None:
        data = event.data
        collection = data.get("collection")
        event_type = data.get("event")
        if not collection or not event_type:
            logger.warning("Ignoring collection event without collection/event: %r", data)
            return
        job_ids = await self._engine.handle_collection_event(
            collection,
            event_type,
            item_id=data.get("item_id", ""),
            item_data=data.get("item_data") or {},
        )
        logger.debug("Collection event %s/%s -> %d job(s)", collection, event_type, len(job_ids))
