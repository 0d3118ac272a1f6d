"""Durable job queue over the ``agent_jobs`` table.

Delivery is at-least-once: a claimed job carries a lease, and a job whose
lease expires before it is acknowledged goes back to pending.
"""

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError

from orchestra.config import Settings
from orchestra.errors import DeliveryError
from orchestra.jobs.payload import JobPayload
from orchestra.storage.database import Database
from orchestra.storage.models import AgentJob

logger = logging.getLogger(__name__)

TASK_TYPE = "agent:run"
_CLAIM_ATTEMPTS = 3


class JobQueue:
    def __init__(self, database: Database, settings: Settings) -> None:
        self._db = database
        self._settings = settings
        self.queue = settings.queue_name

    async def enqueue(self, payload: JobPayload) -> str:
        """Store a pending job and return its id.  Raises DeliveryError."""
        data = payload.encode()
        key = payload.session_id or None
        job = AgentJob(
            queue=self.queue,
            task_type=TASK_TYPE,
            payload=data,
            concurrency_key=f"{payload.agent_id}/{key}" if key and self._settings.serialize_sessions else None,
            max_retries=self._settings.job_max_retries,
            timeout_seconds=self._settings.job_timeout,
            run_after=datetime.now(UTC),
        )
        try:
            async with self._db.session() as session:
                session.add(job)
                await session.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to enqueue job for agent %s: %s", payload.agent_id, e)
            raise DeliveryError(f"could not enqueue job: {e}") from e
        logger.info("Enqueued job %s for agent %s", job.id[:8], payload.agent_id)
        return job.id

    async def dequeue(self, worker_id: str) -> AgentJob | None:
        """Claim the oldest due pending job whose session has nothing running."""
        for _ in range(_CLAIM_ATTEMPTS):
            now = datetime.now(UTC)
            busy = select(AgentJob.concurrency_key).where(
                AgentJob.status == "running",
                AgentJob.concurrency_key.is_not(None),
            )
            async with self._db.session() as session:
                candidate = await session.scalar(
                    select(AgentJob.id)
                    .where(AgentJob.queue == self.queue)
                    .where(AgentJob.status == "pending")
                    .where(AgentJob.run_after <= now)
                    .where(AgentJob.concurrency_key.is_(None) | AgentJob.concurrency_key.not_in(busy))
                    .order_by(AgentJob.run_after, AgentJob.created_at)
                    .limit(1)
                    .with_for_update(skip_locked=True)
                )
                if candidate is None:
                    return None

                result = await session.execute(
                    update(AgentJob)
                    .where(AgentJob.id == candidate, AgentJob.status == "pending")
                    .values(
                        status="running",
                        worker_id=worker_id,
                        started_at=now,
                        lease_expires_at=now + timedelta(seconds=self._settings.job_timeout),
                    )
                )
                await session.commit()
                if result.rowcount != 1:
                    # Another worker claimed it between select and update
                    continue
                job = await session.get(AgentJob, candidate, populate_existing=True)
            logger.info("Dequeued job %s -> %s", candidate[:8], worker_id)
            return job
        return None

    async def ack(self, job_id: str) -> None:
        """Acknowledge a finished job by deleting it."""
        async with self._db.session() as session:
            await session.execute(delete(AgentJob).where(AgentJob.id == job_id))
            await session.commit()
        logger.debug("Acked job %s", job_id[:8])

    def retry_delay(self, attempts: int) -> float:
        delay = self._settings.job_retry_base_delay * (2 ** max(attempts - 1, 0))
        return min(delay, self._settings.job_retry_max_delay)

    async def nack(self, job_id: str, error: str, retry: bool = True) -> str | None:
        """Record a failed attempt.  Returns the job's new status.

        With ``retry=False`` the job fails immediately whatever its budget.
        """
        async with self._db.session() as session:
            job = await session.get(AgentJob, job_id)
            if job is None:
                return None
            job.attempts += 1
            job.last_error = error[:4000]
            job.worker_id = None
            job.lease_expires_at = None
            now = datetime.now(UTC)
            if retry and job.attempts <= job.max_retries:
                job.status = "pending"
                job.run_after = now + timedelta(seconds=self.retry_delay(job.attempts))
                logger.warning(
                    "Job %s failed (attempt %d/%d), retrying: %s",
                    job_id[:8], job.attempts, job.max_retries + 1, error,
                )
            else:
                job.status = "failed"
                job.failed_at = now
                logger.error("Job %s failed permanently after %d attempts: %s", job_id[:8], job.attempts, error)
            status = job.status
            await session.commit()
            return status

    async def reclaim_stale(self) -> int:
        """Return running jobs whose lease expired to pending.

        An expired lease counts as a failed attempt; jobs out of retries are
        marked failed instead.
        """
        now = datetime.now(UTC)
        expired = (AgentJob.status == "running") & (AgentJob.lease_expires_at < now)
        async with self._db.session() as session:
            exhausted = await session.execute(
                update(AgentJob)
                .where(expired)
                .where(AgentJob.attempts + 1 > AgentJob.max_retries)
                .values(
                    status="failed",
                    worker_id=None,
                    lease_expires_at=None,
                    attempts=AgentJob.attempts + 1,
                    last_error="lease expired",
                    failed_at=now,
                )
            )
            result = await session.execute(
                update(AgentJob)
                .where(expired)
                .values(
                    status="pending",
                    worker_id=None,
                    started_at=None,
                    lease_expires_at=None,
                    attempts=AgentJob.attempts + 1,
                    last_error="lease expired",
                )
            )
            await session.commit()
            if exhausted.rowcount > 0:
                logger.error("Failed %d stale jobs out of retries", exhausted.rowcount)
            if result.rowcount > 0:
                logger.warning("Reclaimed %d stale jobs", result.rowcount)
            return result.rowcount

    async def get(self, job_id: str) -> AgentJob | None:
        async with self._db.session() as session:
            return await session.get(AgentJob, job_id)

    async def list(self, status: str | None = None, limit: int = 50) -> list[AgentJob]:
        """List jobs, newest first, optionally filtered by status."""
        async with self._db.session() as session:
            q = select(AgentJob).where(AgentJob.queue == self.queue).order_by(AgentJob.created_at.desc()).limit(limit)
            if status:
                q = q.where(AgentJob.status == status)
            result = await session.execute(q)
            return list(result.scalars().all())

    async def count_by_status(self) -> dict[str, int]:
        async with self._db.session() as session:
            result = await session.execute(
                select(AgentJob.status, func.count()).where(AgentJob.queue == self.queue).group_by(AgentJob.status)
            )
            return dict(result.all())
