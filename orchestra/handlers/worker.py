"""Agent worker pool: executes queued agent runs.

Workers are asyncio tasks that loop: dequeue -> decode -> run -> ack/nack.
Any exception from the handler, including a timeout, counts as a failed
attempt and goes back to the queue for retry.  A ConfigurationError fails
the job outright.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from orchestra.config import Settings
from orchestra.errors import ConfigurationError
from orchestra.events import JOB_COMPLETED, JOB_FAILED, BusEvent, EventBus
from orchestra.jobs.payload import JobPayload
from orchestra.jobs.queue import JobQueue
from orchestra.storage.models import AgentJob

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobPayload], Awaitable[Any]]


class AgentWorkerPool:
    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        settings: Settings,
        bus: EventBus | None = None,
    ) -> None:
        self._queue = queue
        self._handler = handler
        self._settings = settings
        self._bus = bus
        self._workers: list[asyncio.Task] = []
        self._reaper: asyncio.Task | None = None
        self._running = False

    @property
    def size(self) -> int:
        return len(self._workers)

    async def start(self) -> None:
        """Reclaim leases left by a previous process, then spawn workers."""
        reclaimed = await self._queue.reclaim_stale()
        if reclaimed:
            logger.info("Reclaimed %d stale jobs on startup", reclaimed)

        self._running = True
        for i in range(self._settings.worker_concurrency):
            worker_id = f"worker-{i}"
            self._workers.append(asyncio.create_task(self._worker_loop(worker_id), name=f"agent-{worker_id}"))
        self._reaper = asyncio.create_task(self._reaper_loop(), name="agent-job-reaper")
        logger.info(
            "Agent worker pool started (%d workers, poll=%.1fs)",
            self._settings.worker_concurrency,
            self._settings.worker_poll_interval,
        )

    async def stop(self) -> None:
        self._running = False
        tasks = [*self._workers, *([self._reaper] if self._reaper else [])]
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._workers.clear()
        self._reaper = None
        logger.info("Agent worker pool stopped")

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------

    async def _worker_loop(self, worker_id: str) -> None:
        while self._running:
            try:
                job = await self._queue.dequeue(worker_id)
                if job is None:
                    await asyncio.sleep(self._settings.worker_poll_interval)
                    continue
                await self.process(job)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Worker %s encountered unexpected error", worker_id)
                await asyncio.sleep(self._settings.worker_poll_interval)

    async def _reaper_loop(self) -> None:
        interval = max(self._settings.job_timeout / 2, self._settings.worker_poll_interval)
        while self._running:
            try:
                await asyncio.sleep(interval)
                await self._queue.reclaim_stale()
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Stale job reclaim failed")

    # ------------------------------------------------------------------
    # Job processing
    # ------------------------------------------------------------------

    async def process(self, job: AgentJob) -> bool:
        """Run one claimed job.  Returns True when it was acknowledged."""
        try:
            payload = JobPayload.decode(job.payload)
        except ValueError as exc:
            logger.error("Job %s has an undecodable payload: %s", job.id[:8], exc)
            await self._queue.nack(job.id, str(exc))
            await self._emit(JOB_FAILED, job, None, error=str(exc))
            return False

        timeout = job.timeout_seconds or self._settings.job_timeout
        retry = True
        try:
            result = await asyncio.wait_for(self._handler(payload), timeout=timeout)
        except asyncio.TimeoutError:
            error = f"job timed out after {timeout}s"
            logger.warning("Job %s for agent %s timed out after %ds", job.id[:8], payload.agent_id, timeout)
        except asyncio.CancelledError:
            raise
        except ConfigurationError as exc:
            error = f"{type(exc).__name__}: {exc}"
            retry = False
            logger.error("Job %s for agent %s is misconfigured: %s", job.id[:8], payload.agent_id, exc)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("Job %s for agent %s failed", job.id[:8], payload.agent_id)
        else:
            await self._queue.ack(job.id)
            outcome = getattr(result, "outcome", None)
            await self._emit(JOB_COMPLETED, job, payload, outcome=str(outcome) if outcome else None)
            logger.info("Job %s for agent %s completed", job.id[:8], payload.agent_id)
            return True

        status = await self._queue.nack(job.id, error, retry=retry)
        await self._emit(JOB_FAILED, job, payload, error=error, status=status)
        return False

    async def _emit(self, event_type: str, job: AgentJob, payload: JobPayload | None, **extra: Any) -> None:
        if self._bus is None:
            return
        data: dict[str, Any] = {"job_id": job.id, "attempts": job.attempts}
        if payload is not None:
            data["session_id"] = payload.session_id
        data.update({k: (v[:500] if isinstance(v, str) else v) for k, v in extra.items() if v is not None})
        await self._bus.emit(
            BusEvent(type=event_type, agent_id=payload.agent_id if payload else None, data=data)
        )
