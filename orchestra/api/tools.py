"""Per-agent tool registry and the tool implementation contract.

An agent declares tools as ToolSpecs; each spec's ``impl_key`` names a host
function in a static implementation table.  The registry built for a run
exposes exactly the declared tools and dispatches model tool calls to them.

Implementations are ``async (ToolContext, arguments) -> str``.  Expected
failures (bad arguments, missing items) are returned in-band as
``{"status": "error", "message": ...}`` so the model can react; an
implementation that raises aborts the run.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import best_match

from orchestra.agents.schemas import ToolSpec
from orchestra.errors import ConfigurationError, DispatchError, ToolExecutionError

if TYPE_CHECKING:
    from orchestra.api.collection_tools import DataBackend
    from orchestra.api.providers import ChatCompleter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolContext:
    """What a tool implementation may touch during a run."""

    agent_id: str
    session_id: str
    backend: DataBackend | None = None
    completer: ChatCompleter | None = None


ToolFunc = Callable[[ToolContext, dict[str, Any]], Awaitable[str]]


# ---------------------------------------------------------------------------
# Helpers shared by implementations
# ---------------------------------------------------------------------------


def tool_result(data: Any) -> str:
    return json.dumps(data, default=str)


def tool_error(message: str) -> str:
    return json.dumps({"status": "error", "message": message})


def check_arguments(arguments: dict[str, Any], schema: dict[str, Any]) -> str | None:
    """Validate against a JSON schema.  Returns an error message or None."""
    error = best_match(Draft202012Validator(schema).iter_errors(arguments))
    if error is None:
        return None
    where = ".".join(str(p) for p in error.absolute_path)
    return f"invalid arguments: {where + ': ' if where else ''}{error.message}"


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """The tools one agent may call in one run."""

    def __init__(self, context: ToolContext, timeout: float | None = None) -> None:
        self.context = context
        self.timeout = timeout
        self._funcs: dict[str, ToolFunc] = {}
        self._specs: list[ToolSpec] = []

    @classmethod
    def from_specs(
        cls,
        specs: list[ToolSpec],
        context: ToolContext,
        implementations: Mapping[str, ToolFunc] | None = None,
        timeout: float | None = None,
    ) -> ToolRegistry:
        """Resolve every spec's impl_key.  Raises ConfigurationError on the first miss."""
        if implementations is None:
            from orchestra.api.implementations import IMPLEMENTATIONS

            implementations = IMPLEMENTATIONS
        registry = cls(context, timeout=timeout)
        for i, spec in enumerate(specs):
            func = implementations.get(spec.impl_key)
            if func is None:
                raise ConfigurationError(
                    f"function implementation not found: {spec.impl_key}",
                    {f"functions.{i}.impl_key": f"unknown implementation key '{spec.impl_key}'"},
                )
            registry._funcs[spec.name] = func
            registry._specs.append(spec)
        logger.debug("Tool registry for %s: %s", context.agent_id, registry.names())
        return registry

    def get(self, name: str) -> ToolFunc | None:
        return self._funcs.get(name)

    def specs(self) -> list[ToolSpec]:
        return list(self._specs)

    def names(self) -> list[str]:
        return [s.name for s in self._specs]

    def __len__(self) -> int:
        return len(self._specs)

    async def dispatch(self, name: str, arguments: Any) -> str:
        """Run a tool by name and return its (JSON) result string.

        Raises DispatchError for an unknown name and ToolExecutionError when
        the implementation raises or exceeds the tool deadline.
        """
        func = self._funcs.get(name)
        if func is None:
            raise DispatchError(f"unknown tool: {name}")

        if isinstance(arguments, (str, bytes)):
            try:
                arguments = json.loads(arguments) if arguments else {}
            except json.JSONDecodeError:
                return tool_error("invalid JSON format in arguments")
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            return tool_error("invalid arguments format, expected a JSON object")

        try:
            if self.timeout:
                return await asyncio.wait_for(func(self.context, arguments), timeout=self.timeout)
            return await func(self.context, arguments)
        except TimeoutError as e:
            raise ToolExecutionError(f"tool {name} timed out after {self.timeout}s") from e
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Tool %s raised", name)
            raise ToolExecutionError(f"tool {name} failed: {e}") from e
