"""Trigger manager: fires agents on their cron schedules.

Schedules live in memory, one per agent id, and are rebuilt from agent
definitions at startup.  A background loop wakes every
``schedule_check_interval`` seconds and fires whatever is due.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

from croniter import croniter

from orchestra.agents.schemas import is_valid_cron
from orchestra.config import Settings
from orchestra.errors import ConfigurationError

logger = logging.getLogger(__name__)

CronCallback = Callable[[str, datetime], Awaitable[object]]


@dataclass
class Schedule:
    agent_id: str
    expression: str
    callback: CronCallback
    next_fire_at: datetime

    def advance(self, now: datetime) -> None:
        self.next_fire_at = croniter(self.expression, now).get_next(datetime)


class TriggerManager:
    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._schedules: dict[str, Schedule] = {}
        self._lock = asyncio.Lock()
        self._task: asyncio.Task | None = None
        self._running = False

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def add_cron(self, agent_id: str, expression: str, callback: CronCallback, now: datetime | None = None) -> Schedule:
        """Schedule ``callback`` for ``agent_id``, replacing any existing schedule."""
        if not is_valid_cron(expression):
            raise ConfigurationError(
                f"invalid cron expression for agent {agent_id}: {expression!r}",
                {"trigger.cron": "invalid cron expression"},
            )
        start = now or datetime.now(UTC)
        schedule = Schedule(
            agent_id=agent_id,
            expression=expression,
            callback=callback,
            next_fire_at=croniter(expression, start).get_next(datetime),
        )
        replaced = self._schedules.get(agent_id) is not None
        self._schedules[agent_id] = schedule
        logger.info(
            "%s cron schedule for agent %s: %s (next: %s)",
            "Replaced" if replaced else "Added",
            agent_id,
            expression,
            schedule.next_fire_at.isoformat(),
        )
        return schedule

    def remove(self, agent_id: str) -> bool:
        removed = self._schedules.pop(agent_id, None) is not None
        if removed:
            logger.info("Removed cron schedule for agent %s", agent_id)
        return removed

    def scheduled(self) -> dict[str, Schedule]:
        return dict(self._schedules)

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def fire_due(self, now: datetime | None = None) -> int:
        """Fire every schedule due at ``now`` once and advance it.

        Callback failures are logged and do not stop other schedules.
        Returns the number of schedules fired.
        """
        now = now or datetime.now(UTC)
        async with self._lock:
            due = [s for s in self._schedules.values() if s.next_fire_at <= now]
            fired = 0
            for schedule in due:
                schedule.advance(now)
                try:
                    await schedule.callback(schedule.agent_id, now)
                    fired += 1
                    logger.debug("Fired schedule for agent %s", schedule.agent_id)
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Failed to fire schedule for agent %s", schedule.agent_id)
        return fired

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._check_loop(), name="trigger-manager")
        logger.info(
            "Trigger manager started (%d schedules, check_interval=%.1fs)",
            len(self._schedules),
            self._settings.schedule_check_interval,
        )

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Trigger manager stopped")

    async def _check_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._settings.schedule_check_interval)
                fired = await self.fire_due()
                if fired:
                    logger.info("Fired %d due schedule(s)", fired)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Schedule check failed")
