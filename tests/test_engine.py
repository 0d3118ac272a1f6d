"""Tests for the Engine: registration, trigger producers and run_job."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime

import pytest
import pytest_asyncio

from orchestra.agents.engine import Engine
from orchestra.agents.registry import AgentRegistry, RWLock
from orchestra.agents.schemas import ToolCall
from orchestra.api.collection_tools import InMemoryDataBackend
from orchestra.api.providers import TextResponse, ToolCallResponse
from orchestra.api.runner import RunOutcome
from orchestra.errors import AgentDisabled, AgentNotFound, ConfigurationError, WebhookAuthError
from orchestra.handlers.scheduler import TriggerManager
from orchestra.jobs import JobPayload, JobQueue, TriggerEvent
from orchestra.storage.agents import AgentStore

_PARAMS = {"type": "object", "properties": {"message": {"type": "string"}}}


@pytest_asyncio.fixture
async def engine(db, settings):
    eng = Engine(
        settings=settings,
        database=db,
        queue=JobQueue(db, settings),
        triggers=TriggerManager(settings),
        store=AgentStore(db),
        backend=InMemoryDataBackend({"posts": {}}),
    )
    yield eng
    await eng.close()


async def _payloads(engine) -> list[JobPayload]:
    jobs = await engine.queue.list()
    return [JobPayload.decode(j.payload) for j in sorted(jobs, key=lambda j: j.created_at)]


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    async def test_register_and_lookup(self, engine, make_agent):
        agent = await engine.register_agent(make_agent())
        assert await engine.registry.get("agent-1") == agent
        assert engine.triggers.scheduled() == {}

    async def test_cron_agent_gets_schedule(self, engine, make_agent):
        await engine.register_agent(make_agent(trigger={"type": "cron", "cron": "*/5 * * * *"}))
        assert list(engine.triggers.scheduled()) == ["agent-1"]

    async def test_reregister_replaces_schedule(self, engine, make_agent):
        await engine.register_agent(make_agent(trigger={"type": "cron", "cron": "*/5 * * * *"}))
        await engine.register_agent(make_agent(trigger={"type": "cron", "cron": "0 9 * * *"}))
        scheduled = engine.triggers.scheduled()
        assert len(scheduled) == 1
        assert scheduled["agent-1"].expression == "0 9 * * *"

    async def test_disabled_agent_not_scheduled(self, engine, make_agent):
        await engine.register_agent(make_agent(enabled=False, trigger={"type": "cron", "cron": "*/5 * * * *"}))
        assert engine.triggers.scheduled() == {}

    async def test_switching_away_from_cron_removes_schedule(self, engine, make_agent):
        await engine.register_agent(make_agent(trigger={"type": "cron", "cron": "*/5 * * * *"}))
        await engine.register_agent(make_agent(trigger={"type": "manual"}))
        assert engine.triggers.scheduled() == {}

    async def test_unknown_impl_key_rejected(self, engine, make_agent):
        agent = make_agent(functions=[{"name": "x", "parameters": _PARAMS, "impl_key": "shell.exec"}])
        with pytest.raises(ConfigurationError, match="function implementation not found: shell.exec"):
            await engine.register_agent(agent)
        assert await engine.registry.get("agent-1") is None

    async def test_unset_key_env_rejected(self, engine, make_agent, monkeypatch):
        monkeypatch.delenv("AGENT_ONE_KEY", raising=False)
        agent = make_agent(provider={"type": "openai", "api_key_ref": "env:AGENT_ONE_KEY"})
        with pytest.raises(ConfigurationError, match="AGENT_ONE_KEY") as exc:
            await engine.register_agent(agent)
        assert exc.value.errors == {"provider.api_key_ref": "AGENT_ONE_KEY is not set"}
        assert await engine.registry.get("agent-1") is None

    async def test_missing_anthropic_key_rejected(self, engine, make_agent):
        engine.settings.anthropic_api_key = ""
        with pytest.raises(ConfigurationError, match="no Anthropic API key configured"):
            await engine.register_agent(make_agent(provider={"type": "anthropic"}))

    async def test_non_positive_max_turns_defaulted(self, engine, make_agent):
        agent = make_agent().model_copy(update={"max_turns": 0})
        registered = await engine.register_agent(agent)
        assert registered.max_turns == engine.settings.default_max_turns

    async def test_persist_and_reload(self, engine, db, settings, make_agent):
        await engine.register_agent(make_agent(trigger={"type": "cron", "cron": "*/5 * * * *"}), persist=True)

        fresh = Engine(settings, db, engine.queue, TriggerManager(settings), AgentStore(db))
        try:
            assert await fresh.load_agents() == 1
            assert (await fresh.registry.get("agent-1")).name == "Test Agent"
            assert list(fresh.triggers.scheduled()) == ["agent-1"]
        finally:
            await fresh.close()

    async def test_unregister(self, engine, make_agent):
        await engine.register_agent(make_agent(trigger={"type": "cron", "cron": "*/5 * * * *"}), persist=True)
        assert await engine.unregister_agent("agent-1", delete=True) is True
        assert await engine.registry.get("agent-1") is None
        assert await engine.store.get("agent-1") is None
        assert engine.triggers.scheduled() == {}
        assert await engine.unregister_agent("agent-1") is False


# ---------------------------------------------------------------------------
# Producers
# ---------------------------------------------------------------------------


class TestWebhook:
    async def test_valid_token_enqueues(self, engine, make_agent):
        await engine.register_agent(make_agent(trigger={"type": "webhook", "webhook_token": "s3cret"}))
        job_id = await engine.handle_webhook("agent-1", {"order": 7}, "s3cret")

        assert job_id
        (payload,) = await _payloads(engine)
        assert payload.trigger_event.type == "webhook"
        assert payload.trigger_event.webhook_data == {"order": 7}
        assert payload.session_id == "agent-1"

    @pytest.mark.parametrize("token", [None, "", "wrong"])
    async def test_bad_token(self, engine, make_agent, token):
        await engine.register_agent(make_agent(trigger={"type": "webhook", "webhook_token": "s3cret"}))
        with pytest.raises(WebhookAuthError):
            await engine.handle_webhook("agent-1", {}, token)
        assert await engine.queue.list() == []

    async def test_agent_without_token_rejects(self, engine, make_agent):
        await engine.register_agent(make_agent())
        with pytest.raises(WebhookAuthError):
            await engine.handle_webhook("agent-1", {}, "anything")

    async def test_unknown_agent(self, engine):
        with pytest.raises(AgentNotFound):
            await engine.handle_webhook("ghost", {}, "x")

    async def test_disabled_agent(self, engine, make_agent):
        await engine.register_agent(make_agent(enabled=False, trigger={"type": "webhook", "webhook_token": "t"}))
        with pytest.raises(AgentDisabled):
            await engine.handle_webhook("agent-1", {}, "t")


class TestProducers:
    async def test_manual(self, engine, make_agent):
        await engine.register_agent(make_agent(memory={"session_scope": "per-trigger"}))
        await engine.trigger_manual("agent-1", "summarize today")
        (payload,) = await _payloads(engine)
        assert payload.initial_input == "summarize today"
        assert payload.session_id == "agent-1:manual"

    async def test_cron_firing(self, engine, make_agent):
        await engine.register_agent(
            make_agent(trigger={"type": "cron", "cron": "0 * * * *"}, memory={"session_scope": "per-trigger"})
        )
        fired_at = datetime(2026, 3, 1, 10, 0, tzinfo=UTC)
        await engine._fire_cron("agent-1", fired_at)

        (payload,) = await _payloads(engine)
        assert payload.session_id == "agent-1:cron"
        assert payload.trigger_event.type == "schedule"
        assert payload.trigger_event.schedule_data["fired_at"] == fired_at.isoformat()

    async def test_cron_for_disabled_agent_skipped(self, engine, make_agent):
        await engine.register_agent(make_agent(enabled=False))
        assert await engine._fire_cron("agent-1", datetime.now(UTC)) is None
        assert await engine.queue.list() == []

    async def test_collection_fanout(self, engine, make_agent):
        sub = {"type": "collection_event", "collection": "posts", "events": ["item:created"]}
        await engine.register_agent(make_agent(id="a", trigger=sub, memory={"session_scope": "per-target"}))
        await engine.register_agent(make_agent(id="b", trigger={**sub, "collection": "*"}))
        await engine.register_agent(make_agent(id="c", trigger={**sub, "events": ["item:deleted"]}))
        await engine.register_agent(make_agent(id="d", enabled=False, trigger=sub))

        job_ids = await engine.handle_collection_event("posts", "item:created", item_id=42, item_data={"t": 1})

        assert len(job_ids) == 2
        payloads = {p.agent_id: p for p in await _payloads(engine)}
        assert set(payloads) == {"a", "b"}
        assert payloads["a"].session_id == "a:posts:42"
        assert payloads["a"].trigger_event.collection_event.item_id == "42"
        assert payloads["b"].session_id == "b"

    async def test_collection_event_without_subscribers(self, engine):
        assert await engine.handle_collection_event("posts", "item:created") == []


# ---------------------------------------------------------------------------
# run_job
# ---------------------------------------------------------------------------


class TestRunJob:
    @pytest.fixture
    def scripted(self, monkeypatch, make_completer):
        """Replace provider construction with a scripted completer."""

        def install(*responses):
            completer = make_completer(*responses)
            monkeypatch.setattr("orchestra.agents.engine.create_completer", lambda config, settings, http: completer)
            return completer

        return install

    async def test_runs_with_contextual_input(self, engine, make_agent, scripted):
        completer = scripted(TextResponse(text="Noted."))
        await engine.register_agent(make_agent(trigger={"type": "webhook", "webhook_token": "t"}))
        payload = JobPayload(
            agent_id="agent-1",
            session_id="agent-1",
            trigger_event=TriggerEvent(type="webhook", webhook_data={"x": 1}),
        )

        result = await engine.run_job(payload)

        assert result.outcome == RunOutcome.DONE
        user_msg = completer.calls[0][0][-1]
        assert user_msg.content.startswith("A webhook has been received.")
        history = await engine.history("agent-1")
        assert [m.role for m in history] == ["user", "assistant"]

    async def test_tools_reach_data_backend(self, engine, make_agent, scripted):
        call = ToolCall(id="c1", name="save", arguments={"collection_name": "posts", "data": {"title": "Hi"}})
        scripted(ToolCallResponse(call=call), TextResponse(text="Saved."))
        await engine.register_agent(
            make_agent(functions=[{"name": "save", "parameters": _PARAMS, "impl_key": "collections.upsert_item"}])
        )

        await engine.run_job(JobPayload(agent_id="agent-1", session_id="agent-1"))

        items, total = await engine.backend.list_items("posts", 1, 10)
        assert total == 1
        assert items[0]["data"] == {"title": "Hi"}

    async def test_kv_memory_backend(self, engine, make_agent, scripted):
        scripted(TextResponse(text="ok"))
        await engine.register_agent(make_agent(memory={"backend": "kv", "namespace": "t"}))
        await engine.run_job(JobPayload(agent_id="agent-1", session_id="agent-1", initial_input="hi"))
        assert [m.content for m in await engine.history("agent-1")] == ["hi", "ok"]

    async def test_unknown_agent(self, engine):
        with pytest.raises(AgentNotFound):
            await engine.run_job(JobPayload(agent_id="ghost"))

    async def test_disabled_agent_dropped(self, engine, make_agent, scripted):
        completer = scripted(TextResponse(text="never"))
        await engine.register_agent(make_agent(enabled=False))
        assert await engine.run_job(JobPayload(agent_id="agent-1")) is None
        assert completer.calls == []


# ---------------------------------------------------------------------------
# Registry locking
# ---------------------------------------------------------------------------


class TestRegistry:
    async def test_register_returns_previous(self, make_agent):
        registry = AgentRegistry()
        first = make_agent()
        assert await registry.register(first) is None
        assert await registry.register(make_agent(name="Renamed")) == first
        assert [a.name for a in await registry.list()] == ["Renamed"]

    async def test_writer_excludes_readers(self):
        lock = RWLock()
        order: list[str] = []

        async def reader():
            async with lock.read():
                order.append("read")

        async with lock.write():
            task = asyncio.create_task(reader())
            await asyncio.sleep(0.01)
            order.append("write")
        await task
        assert order == ["write", "read"]

    async def test_readers_share(self):
        lock = RWLock()
        async with lock.read():
            await asyncio.wait_for(_enter_read(lock), timeout=1)


async def _enter_read(lock: RWLock) -> None:
    async with lock.read():
        pass
