"""Pydantic DTOs for agent definitions, trigger firings and conversation messages.

These models define the contract between the administrative path that
writes agent definitions and the engine that runs them.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Literal

from croniter import croniter
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from orchestra.errors import ConfigurationError

ProviderType = Literal["openai", "anthropic", "ollama"]
ToolChoice = Literal["auto", "none", "required"]
MemoryBackend = Literal["sql", "kv"]
SessionScope = Literal["per-agent", "per-trigger", "per-target"]
TriggerType = Literal["manual", "cron", "webhook", "collection_event"]
EventKind = Literal["cron", "webhook", "manual", "collection_event"]
Role = Literal["system", "user", "assistant", "tool"]

_BACKEND_ALIASES = {
    "": "sql",
    "sql": "sql",
    "gorm": "sql",
    "postgres": "sql",
    "sqlite": "sql",
    "kv": "kv",
    "bbolt": "kv",
}


def is_valid_cron(expr: str) -> bool:
    """Standard 5-field cron grammar (no seconds field, no @-macros)."""
    return len(expr.split()) == 5 and croniter.is_valid(expr)


class ProviderConfig(BaseModel):
    """Which model to call and how."""

    type: ProviderType = "openai"
    model: str = ""
    api_key_ref: str = ""  # literal key, or "env:NAME"
    base_url: str = ""
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    top_p: float | None = Field(default=None, ge=0.0, le=1.0)
    max_tokens: int | None = Field(default=None, gt=0)
    tool_choice: ToolChoice = "auto"


class MemoryConfig(BaseModel):
    backend: MemoryBackend = "sql"
    namespace: str = ""
    session_scope: SessionScope = "per-agent"

    @field_validator("backend", mode="before")
    @classmethod
    def _alias_backend(cls, v: Any) -> Any:
        if v is None:
            return "sql"
        if isinstance(v, str) and v.lower() in _BACKEND_ALIASES:
            return _BACKEND_ALIASES[v.lower()]
        return v


class TriggerConfig(BaseModel):
    """What starts a run.  ``type`` selects which other fields are required.

    A webhook token may be set on any trigger type; when present the
    webhook endpoint accepts calls for the agent.
    """

    type: TriggerType = "manual"
    cron: str = ""
    webhook_token: str = ""
    collection: str = ""
    events: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_type_fields(self) -> TriggerConfig:
        if self.type == "cron":
            if not self.cron:
                raise ValueError("cron trigger requires a cron expression")
            if not is_valid_cron(self.cron):
                raise ValueError(f"invalid cron expression: {self.cron!r}")
        elif self.cron and not is_valid_cron(self.cron):
            raise ValueError(f"invalid cron expression: {self.cron!r}")
        if self.type == "webhook" and not self.webhook_token:
            raise ValueError("webhook trigger requires a 'webhook_token'")
        if self.type == "collection_event":
            if not self.collection:
                raise ValueError("collection_event trigger requires a 'collection'")
            if not self.events:
                raise ValueError("collection_event trigger requires at least one event type")
        return self

    def subscribes_to(self, collection: str, event_type: str) -> bool:
        if self.type != "collection_event":
            return False
        if self.collection not in (collection, "*"):
            return False
        return event_type in self.events


class ToolSpec(BaseModel):
    """A function the model may call, bound to a host implementation key."""

    name: str = Field(min_length=1)
    description: str = ""
    parameters: dict[str, Any]
    impl_key: str = Field(min_length=1)

    @field_validator("parameters", mode="before")
    @classmethod
    def _parse_parameters(cls, v: Any) -> Any:
        if isinstance(v, (str, bytes)):
            if not v:
                raise ValueError("function parameters cannot be empty")
            try:
                v = json.loads(v)
            except json.JSONDecodeError as e:
                raise ValueError(f"invalid JSON in function parameters: {e.msg}") from e
        if v is None or (isinstance(v, dict) and not v):
            raise ValueError("function parameters cannot be empty")
        if not isinstance(v, dict):
            raise ValueError("function parameters must be a JSON object")
        return v


class AgentDefinition(BaseModel):
    """Immutable configuration of one agent."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1, max_length=128)
    name: str = Field(min_length=1, max_length=256)
    description: str = ""
    enabled: bool = True
    system_prompt: str = ""
    max_turns: int = 4
    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    trigger: TriggerConfig = Field(default_factory=TriggerConfig)
    functions: list[ToolSpec] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _reject_duplicate_functions(cls, data: Any) -> Any:
        # Runs before field validation so duplicates are reported first.
        if not isinstance(data, dict):
            return data
        seen_names: set[str] = set()
        seen_keys: set[str] = set()
        for spec in data.get("functions") or []:
            if isinstance(spec, ToolSpec):
                name, key = spec.name, spec.impl_key
            elif isinstance(spec, dict):
                name, key = spec.get("name"), spec.get("impl_key")
            else:
                continue
            if key:
                if key in seen_keys:
                    raise ValueError(f"duplicate function implementation key: {key}")
                seen_keys.add(key)
            if name:
                if name in seen_names:
                    raise ValueError(f"duplicate function name: {name}")
                seen_names.add(name)
        return data

    @field_validator("max_turns")
    @classmethod
    def _positive_turns(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("max_turns must be a positive integer")
        return v

    @property
    def cron(self) -> str:
        return self.trigger.cron


def parse_agent(data: dict[str, Any]) -> AgentDefinition:
    """Validate raw input into an AgentDefinition.

    Raises ConfigurationError with field-level messages.
    """
    try:
        return AgentDefinition.model_validate(data)
    except ValidationError as e:
        errors: dict[str, str] = {}
        for err in e.errors():
            loc = ".".join(str(p) for p in err["loc"]) or "__root__"
            msg = err["msg"]
            if msg.startswith("Value error, "):
                msg = msg[len("Value error, "):]
            errors.setdefault(loc, msg)
        summary = "; ".join(f"{k}: {v}" for k, v in errors.items())
        raise ConfigurationError(f"invalid agent definition: {summary}", errors) from e


# ---------------------------------------------------------------------------
# Runtime records
# ---------------------------------------------------------------------------


class Event(BaseModel):
    """A trigger firing for one agent."""

    agent_id: str
    kind: EventKind
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    payload: Any = None


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str = ""
    name: str
    arguments: Any = None

    def arguments_json(self) -> str:
        if isinstance(self.arguments, str):
            return self.arguments
        return json.dumps(self.arguments if self.arguments is not None else {})


class Message(BaseModel):
    """One turn of a conversation.  Tool results carry JSON-encoded content."""

    role: Role
    content: str = ""
    name: str | None = None
    tool_call: ToolCall | None = None
    tool_call_id: str | None = None
