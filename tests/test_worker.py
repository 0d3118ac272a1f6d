"""Tests for the agent worker pool."""

from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from orchestra.errors import ConfigurationError
from orchestra.events import JOB_COMPLETED, JOB_FAILED
from orchestra.handlers.worker import AgentWorkerPool
from orchestra.jobs import JobPayload, JobQueue


@pytest.fixture
def queue(db, settings):
    return JobQueue(db, settings)


@pytest.fixture
def bus():
    mock = MagicMock()
    mock.emit = AsyncMock()
    return mock


def _payload() -> JobPayload:
    return JobPayload(agent_id="agent-1", session_id="agent-1", initial_input="go")


def _emitted(bus) -> list:
    return [c.args[0] for c in bus.emit.await_args_list]


# ---------------------------------------------------------------------------
# process()
# ---------------------------------------------------------------------------


class TestProcess:
    async def test_success_acks_and_emits(self, queue, settings, bus):
        handler = AsyncMock(return_value=SimpleNamespace(outcome="done"))
        pool = AgentWorkerPool(queue, handler, settings, bus=bus)
        job_id = await queue.enqueue(_payload())

        assert await pool.process(await queue.dequeue("w1")) is True

        handler.assert_awaited_once()
        assert handler.await_args.args[0].agent_id == "agent-1"
        assert await queue.get(job_id) is None
        (event,) = _emitted(bus)
        assert event.type == JOB_COMPLETED
        assert event.agent_id == "agent-1"
        assert event.data["job_id"] == job_id
        assert event.data["outcome"] == "done"

    async def test_dropped_run_still_acks(self, queue, settings):
        pool = AgentWorkerPool(queue, AsyncMock(return_value=None), settings)
        job_id = await queue.enqueue(_payload())
        assert await pool.process(await queue.dequeue("w1")) is True
        assert await queue.get(job_id) is None

    async def test_failure_nacks_and_emits(self, queue, settings, bus):
        handler = AsyncMock(side_effect=RuntimeError("provider down"))
        pool = AgentWorkerPool(queue, handler, settings, bus=bus)
        job_id = await queue.enqueue(_payload())

        assert await pool.process(await queue.dequeue("w1")) is False

        job = await queue.get(job_id)
        assert job.status == "pending"
        assert job.attempts == 1
        assert "provider down" in job.last_error
        (event,) = _emitted(bus)
        assert event.type == JOB_FAILED
        assert event.data["status"] == "pending"
        assert "RuntimeError" in event.data["error"]

    async def test_timeout_counts_as_failure(self, queue, settings):
        async def slow(payload):
            await asyncio.sleep(5)

        pool = AgentWorkerPool(queue, slow, settings)
        job_id = await queue.enqueue(_payload())
        job = await queue.dequeue("w1")
        job.timeout_seconds = 0.05

        assert await pool.process(job) is False
        assert "timed out" in (await queue.get(job_id)).last_error

    async def test_configuration_error_is_not_retried(self, queue, settings, bus):
        handler = AsyncMock(side_effect=ConfigurationError("no OpenAI API key configured"))
        pool = AgentWorkerPool(queue, handler, settings, bus=bus)
        job_id = await queue.enqueue(_payload())

        assert await pool.process(await queue.dequeue("w1")) is False

        job = await queue.get(job_id)
        assert job.status == "failed"
        assert job.attempts == 1
        (event,) = _emitted(bus)
        assert event.data["status"] == "failed"

    async def test_undecodable_payload(self, queue, settings, bus):
        handler = AsyncMock()
        pool = AgentWorkerPool(queue, handler, settings, bus=bus)
        job_id = await queue.enqueue(_payload())
        job = await queue.dequeue("w1")
        job.payload = b"not json"

        assert await pool.process(job) is False
        handler.assert_not_awaited()
        assert "malformed job payload" in (await queue.get(job_id)).last_error
        (event,) = _emitted(bus)
        assert event.type == JOB_FAILED
        assert event.agent_id is None


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_start_processes_queue_and_stop(self, queue, settings):
        done = asyncio.Event()
        seen: list[str] = []

        async def handler(payload):
            seen.append(payload.initial_input)
            if len(seen) == 2:
                done.set()

        pool = AgentWorkerPool(queue, handler, settings)
        await queue.enqueue(JobPayload(agent_id="a", session_id="a", initial_input="one"))
        await queue.enqueue(JobPayload(agent_id="b", session_id="b", initial_input="two"))

        await pool.start()
        assert pool.size == settings.worker_concurrency
        await asyncio.wait_for(done.wait(), timeout=5)
        for _ in range(100):
            if await queue.count_by_status() == {}:
                break
            await asyncio.sleep(0.01)
        await pool.stop()

        assert sorted(seen) == ["one", "two"]
        assert pool.size == 0
        assert await queue.count_by_status() == {}

    async def test_worker_survives_queue_errors(self, settings):
        queue = MagicMock()
        queue.reclaim_stale = AsyncMock(return_value=0)
        calls = 0
        recovered = asyncio.Event()

        async def dequeue(worker_id):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("db hiccup")
            recovered.set()
            return None

        queue.dequeue = dequeue
        settings.worker_concurrency = 1
        pool = AgentWorkerPool(queue, AsyncMock(), settings)
        await pool.start()
        await asyncio.wait_for(recovered.wait(), timeout=5)
        await pool.stop()
