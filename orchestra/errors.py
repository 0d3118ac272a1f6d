"""Error taxonomy for the orchestration engine.

Configuration errors are raised before a run starts.  Dispatch, tool
execution and upstream errors abort a run and surface to the job queue as
a failed attempt.  Delivery errors are reported to whoever tried to enqueue.
"""

from __future__ import annotations


class ConfigurationError(ValueError):
    """Invalid agent definition or unresolvable wiring.

    ``errors`` maps a field path (``"functions.1.impl_key"``) to a message
    when the failure can be attributed to a field.
    """

    def __init__(self, message: str, errors: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or {}


class AgentNotFound(LookupError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"agent {agent_id} not found")
        self.agent_id = agent_id


class AgentDisabled(RuntimeError):
    def __init__(self, agent_id: str) -> None:
        super().__init__(f"agent {agent_id} is disabled")
        self.agent_id = agent_id


class WebhookAuthError(PermissionError):
    pass


class DispatchError(RuntimeError):
    """The model asked for a tool the registry does not have."""


class ToolExecutionError(RuntimeError):
    """A tool implementation raised instead of returning an in-band error."""


class UpstreamError(RuntimeError):
    """Chat completer or memory store failure."""


class DeliveryError(RuntimeError):
    """A job could not be serialized or written to the queue."""
