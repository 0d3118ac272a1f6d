"""Test fixtures using throwaway SQLite databases (aiosqlite)."""

from __future__ import annotations

import pytest
import pytest_asyncio

from orchestra.agents.schemas import AgentDefinition, Message, ToolSpec
from orchestra.config import Settings
from orchestra.storage.database import Database

# ---------------------------------------------------------------------------
# Scripted chat completer
# ---------------------------------------------------------------------------


class ScriptedCompleter:
    """Returns queued responses in order; records every request.

    A queued exception is raised instead of returned.  When the script runs
    out, the last entry repeats.
    """

    def __init__(self, responses: list) -> None:
        self.responses = list(responses)
        self.calls: list[tuple[list[Message], list[ToolSpec], str]] = []

    async def chat(self, messages, tools, tool_choice="auto"):
        self.calls.append((list(messages), list(tools), tool_choice))
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        response = self.responses[index]
        if isinstance(response, BaseException):
            raise response
        return response


# ---------------------------------------------------------------------------
# Settings and database
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a per-test SQLite file with fast loops."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orchestra.db'}",
        kv_memory_path=str(tmp_path / "memory.db"),
        openai_api_key="sk-test",
        anthropic_api_key="sk-ant-test",
        worker_concurrency=2,
        worker_poll_interval=0.01,
        schedule_check_interval=0.01,
        job_timeout=5,
        job_max_retries=2,
        job_retry_base_delay=10.0,
        job_retry_max_delay=60.0,
        chat_timeout=5.0,
        tool_timeout=5.0,
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings)
    await database.connect()
    yield database
    await database.disconnect()


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


@pytest.fixture
def make_agent():
    """Build a valid AgentDefinition; keyword overrides replace top-level fields."""

    def _make(**overrides) -> AgentDefinition:
        data = {
            "id": "agent-1",
            "name": "Test Agent",
            "system_prompt": "You are a test agent.",
            "max_turns": 4,
            "provider": {"type": "openai", "model": "gpt-4o"},
            "functions": [],
        }
        data.update(overrides)
        return AgentDefinition.model_validate(data)

    return _make


@pytest.fixture
def make_completer():
    def _make(*responses) -> ScriptedCompleter:
        return ScriptedCompleter(list(responses))

    return _make
