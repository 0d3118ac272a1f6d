"""Turn executor: one bounded, tool-calling conversation for one agent.

A run loads recent history, stores the new user message, then alternates
model calls and tool dispatches until the model answers with text or the
agent's turn budget is spent.  Messages produced during the run are only
persisted when the run finishes without error.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import StrEnum

from orchestra.agents.schemas import AgentDefinition, Message
from orchestra.api.providers import ChatCompleter, ToolCallResponse
from orchestra.api.tools import ToolRegistry
from orchestra.config import Settings
from orchestra.errors import UpstreamError
from orchestra.memory import Memory

logger = logging.getLogger(__name__)


class RunOutcome(StrEnum):
    DONE = "done"
    MAX_TURNS_REACHED = "max_turns_reached"
    ABORTED = "aborted"


@dataclass
class RunResult:
    outcome: RunOutcome
    response_text: str = ""
    turns: int = 0
    new_messages: list[Message] = field(default_factory=list)


def _trim_to_user_turn(history: list[Message]) -> list[Message]:
    """Drop leading messages until the window opens on a user turn.

    A count-limited window can start on a tool result whose assistant
    call was cut off, which providers reject.
    """
    for i, m in enumerate(history):
        if m.role == "user":
            return history[i:]
    return []


class TurnRunner:
    """Drives the model <-> tool loop for a single run."""

    def __init__(
        self,
        memory: Memory,
        completer: ChatCompleter,
        tools: ToolRegistry,
        settings: Settings,
    ) -> None:
        self.memory = memory
        self.completer = completer
        self.tools = tools
        self.settings = settings

    async def _call_model(self, messages: list[Message], tool_choice: str):
        try:
            return await asyncio.wait_for(
                self.completer.chat(messages, self.tools.specs(), tool_choice),
                timeout=self.settings.chat_timeout,
            )
        except TimeoutError as e:
            raise UpstreamError(f"model call timed out after {self.settings.chat_timeout}s") from e

    async def _persist(self, agent_id: str, session_id: str, messages: list[Message]) -> None:
        for m in messages:
            await self.memory.append(agent_id, session_id, m)

    async def run(self, agent: AgentDefinition, session_id: str, user_input: str) -> RunResult:
        """Execute one run.

        Raises DispatchError, ToolExecutionError or UpstreamError when the
        run aborts; nothing beyond the user message is persisted then.
        """
        history = _trim_to_user_turn(await self.memory.load(agent.id, session_id, self.settings.history_limit))

        messages: list[Message] = []
        if agent.system_prompt:
            messages.append(Message(role="system", content=agent.system_prompt))
        messages.extend(history)

        user = Message(role="user", content=user_input)
        messages.append(user)
        await asyncio.shield(self.memory.append(agent.id, session_id, user))

        new_messages: list[Message] = []
        max_turns = agent.max_turns if agent.max_turns > 0 else self.settings.default_max_turns
        tool_choice = agent.provider.tool_choice if len(self.tools) else "auto"

        logger.info("Run started: agent=%s session=%s max_turns=%d", agent.id, session_id, max_turns)

        for turn in range(1, max_turns + 1):
            response = await self._call_model(messages, tool_choice)

            if isinstance(response, ToolCallResponse):
                call = response.call
                if not call.id:
                    call = call.model_copy(update={"id": f"call_{uuid.uuid4().hex[:12]}"})
                placeholder = Message(role="assistant", content="", tool_call=call)
                messages.append(placeholder)
                new_messages.append(placeholder)

                logger.info("Agent %s turn %d: tool call %s", agent.id, turn, call.name)
                result = await self.tools.dispatch(call.name, call.arguments)

                tool_msg = Message(role="tool", name=call.name, content=result, tool_call_id=call.id)
                messages.append(tool_msg)
                new_messages.append(tool_msg)
                continue

            reply = Message(role="assistant", content=response.text)
            messages.append(reply)
            new_messages.append(reply)
            await asyncio.shield(self._persist(agent.id, session_id, new_messages))
            logger.info("Run done: agent=%s session=%s turns=%d", agent.id, session_id, turn)
            return RunResult(RunOutcome.DONE, response.text, turn, new_messages)

        await asyncio.shield(self._persist(agent.id, session_id, new_messages))
        logger.warning("Run reached max turns: agent=%s session=%s turns=%d", agent.id, session_id, max_turns)
        return RunResult(RunOutcome.MAX_TURNS_REACHED, "", max_turns, new_messages)
