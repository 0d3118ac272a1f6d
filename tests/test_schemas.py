"""Tests for agent definition validation, session derivation and run input."""

from __future__ import annotations

import json

import pytest

from orchestra.agents.schemas import AgentDefinition, MemoryConfig, TriggerConfig, is_valid_cron, parse_agent
from orchestra.errors import ConfigurationError
from orchestra.jobs.payload import (
    DEFAULT_INPUT,
    CollectionEventData,
    JobPayload,
    TriggerEvent,
    contextual_input,
)
from orchestra.memory import session_for

_PARAMS = {"type": "object", "properties": {"message": {"type": "string"}}}


def _agent_data(**overrides) -> dict:
    data = {
        "id": "writer",
        "name": "Writer",
        "system_prompt": "Write things.",
        "functions": [
            {"name": "log", "description": "Log it", "parameters": _PARAMS, "impl_key": "system.log"},
        ],
    }
    data.update(overrides)
    return data


class TestParseAgent:
    def test_valid_definition(self):
        agent = parse_agent(_agent_data())
        assert agent.id == "writer"
        assert agent.max_turns == 4
        assert agent.enabled is True
        assert agent.memory.backend == "sql"
        assert agent.memory.session_scope == "per-agent"
        assert agent.functions[0].parameters == _PARAMS

    def test_parameters_accept_json_string(self):
        data = _agent_data(
            functions=[{"name": "log", "parameters": json.dumps(_PARAMS), "impl_key": "system.log"}]
        )
        assert parse_agent(data).functions[0].parameters == _PARAMS

    def test_invalid_parameter_json(self):
        data = _agent_data(functions=[{"name": "log", "parameters": "{not json", "impl_key": "system.log"}])
        with pytest.raises(ConfigurationError) as exc:
            parse_agent(data)
        assert "functions.0.parameters" in exc.value.errors
        assert "invalid JSON" in exc.value.errors["functions.0.parameters"]

    def test_empty_parameters_rejected(self):
        data = _agent_data(functions=[{"name": "log", "parameters": {}, "impl_key": "system.log"}])
        with pytest.raises(ConfigurationError, match="cannot be empty"):
            parse_agent(data)

    def test_duplicate_impl_key_reported_before_missing_fields(self):
        data = _agent_data(
            name="",
            functions=[
                {"name": "a", "parameters": _PARAMS, "impl_key": "system.log"},
                {"name": "b", "parameters": _PARAMS, "impl_key": "system.log"},
            ],
        )
        with pytest.raises(ConfigurationError, match="duplicate function implementation key: system.log"):
            parse_agent(data)

    def test_duplicate_function_name(self):
        data = _agent_data(
            functions=[
                {"name": "a", "parameters": _PARAMS, "impl_key": "system.log"},
                {"name": "a", "parameters": _PARAMS, "impl_key": "collections.list"},
            ]
        )
        with pytest.raises(ConfigurationError, match="duplicate function name: a"):
            parse_agent(data)

    def test_missing_name(self):
        with pytest.raises(ConfigurationError) as exc:
            parse_agent(_agent_data(name=""))
        assert "name" in exc.value.errors

    @pytest.mark.parametrize("turns", [0, -3])
    def test_non_positive_max_turns_rejected(self, turns):
        with pytest.raises(ConfigurationError) as exc:
            parse_agent(_agent_data(max_turns=turns))
        assert "max_turns" in exc.value.errors

    def test_definition_is_frozen(self):
        agent = parse_agent(_agent_data())
        with pytest.raises(ValueError):
            agent.name = "other"


class TestMemoryConfig:
    @pytest.mark.parametrize(
        "raw,expected",
        [("", "sql"), ("gorm", "sql"), ("postgres", "sql"), ("bbolt", "kv"), ("KV", "kv"), (None, "sql")],
    )
    def test_backend_aliases(self, raw, expected):
        assert MemoryConfig(backend=raw).backend == expected

    def test_unknown_backend(self):
        with pytest.raises(ConfigurationError) as exc:
            parse_agent(_agent_data(memory={"backend": "redis"}))
        assert "memory.backend" in exc.value.errors


class TestTriggerConfig:
    def test_cron_validation(self):
        assert is_valid_cron("*/5 * * * *")
        assert not is_valid_cron("*/5 * * * * *")  # seconds field
        assert not is_valid_cron("@hourly")
        assert not is_valid_cron("not a cron")

    def test_cron_trigger_requires_valid_expression(self):
        with pytest.raises(ValueError, match="invalid cron"):
            TriggerConfig(type="cron", cron="61 * * * *")
        with pytest.raises(ValueError, match="requires a cron"):
            TriggerConfig(type="cron")

    def test_webhook_trigger_requires_token(self):
        with pytest.raises(ValueError, match="webhook_token"):
            TriggerConfig(type="webhook")

    def test_cron_trigger_may_carry_webhook_token(self):
        t = TriggerConfig(type="cron", cron="0 * * * *", webhook_token="s3cret")
        assert t.webhook_token == "s3cret"

    def test_collection_subscription(self):
        t = TriggerConfig(type="collection_event", collection="posts", events=["item:created"])
        assert t.subscribes_to("posts", "item:created")
        assert not t.subscribes_to("posts", "item:deleted")
        assert not t.subscribes_to("pages", "item:created")

    def test_wildcard_collection(self):
        t = TriggerConfig(type="collection_event", collection="*", events=["item:updated"])
        assert t.subscribes_to("anything", "item:updated")

    def test_non_collection_trigger_never_subscribes(self):
        assert not TriggerConfig(type="manual").subscribes_to("posts", "item:created")


class TestSessionFor:
    def _agent(self, scope: str) -> AgentDefinition:
        return parse_agent(_agent_data(memory={"session_scope": scope}))

    def test_per_agent(self):
        agent = self._agent("per-agent")
        assert session_for(agent, "cron") == "writer"
        assert session_for(agent, "webhook") == "writer"

    def test_per_trigger(self):
        agent = self._agent("per-trigger")
        assert session_for(agent, "cron") == "writer:cron"
        assert session_for(agent, "webhook") == "writer:webhook"

    def test_per_target(self):
        agent = self._agent("per-target")
        assert session_for(agent, "collection_event", "posts", "42") == "writer:posts:42"
        assert session_for(agent, "manual") == "writer"

    def test_deterministic(self):
        agent = self._agent("per-target")
        assert session_for(agent, "collection_event", "posts", 7) == session_for(agent, "collection_event", "posts", 7)


class TestContextualInput:
    def test_collection_event(self):
        payload = JobPayload(
            agent_id="a",
            trigger_event=TriggerEvent(
                type="collection_event",
                collection_event=CollectionEventData(
                    collection="posts", event="item:created", item_id="9", item_data={"title": "Hi"}
                ),
            ),
        )
        rendered = contextual_input(payload)
        assert rendered.startswith("An event has occurred.")
        assert "Event Type: item:created" in rendered
        assert "Collection: posts" in rendered
        assert "Item ID: 9" in rendered
        assert '"title": "Hi"' in rendered

    def test_webhook(self):
        payload = JobPayload(agent_id="a", trigger_event=TriggerEvent(type="webhook", webhook_data={"x": 1}))
        rendered = contextual_input(payload)
        assert rendered.startswith("A webhook has been received.")
        assert '"x": 1' in rendered

    def test_schedule_uses_initial_input(self):
        payload = JobPayload(agent_id="a", initial_input="Daily digest", trigger_event=TriggerEvent(type="schedule"))
        assert contextual_input(payload) == "Daily digest"

    def test_fallback(self):
        assert contextual_input(JobPayload(agent_id="a")) == DEFAULT_INPUT
        assert contextual_input(JobPayload(agent_id="a", trigger_event=TriggerEvent(type="schedule"))) == DEFAULT_INPUT


class TestJobPayload:
    def test_encode_decode(self):
        payload = JobPayload(agent_id="a", session_id="a:cron", trigger_event=TriggerEvent(type="webhook", webhook_data=[1, 2]))
        decoded = JobPayload.decode(payload.encode())
        assert decoded.agent_id == "a"
        assert decoded.session_id == "a:cron"
        assert decoded.trigger_event.webhook_data == [1, 2]

    def test_decode_malformed(self):
        with pytest.raises(ValueError, match="malformed job payload"):
            JobPayload.decode(b"{not json")
        with pytest.raises(ValueError):
            JobPayload.decode(b'{"initial_input": "missing agent"}')
