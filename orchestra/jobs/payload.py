"""Job payload: the contract between trigger producers and queue workers."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from orchestra.errors import DeliveryError

TriggerEventType = Literal["collection_event", "webhook", "schedule", "manual"]

DEFAULT_INPUT = "You have been activated. Please execute your task according to your system prompt."


class CollectionEventData(BaseModel):
    collection: str
    event: str  # "item:created", "item:updated", ...
    item_id: str = ""
    item_data: dict[str, Any] = Field(default_factory=dict)


class TriggerEvent(BaseModel):
    """Structured data about what started a run."""

    type: TriggerEventType
    collection_event: CollectionEventData | None = None
    webhook_data: Any = None
    schedule_data: dict[str, Any] | None = None


class JobPayload(BaseModel):
    agent_id: str
    initial_input: str = ""
    session_id: str = ""
    trigger_event: TriggerEvent | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def encode(self) -> bytes:
        try:
            return self.model_dump_json(exclude_none=True).encode()
        except (TypeError, ValueError) as e:
            raise DeliveryError(f"could not serialize payload: {e}") from e

    @classmethod
    def decode(cls, raw: bytes | str) -> JobPayload:
        """Parse a payload.  Raises ValueError on malformed input."""
        try:
            return cls.model_validate_json(raw)
        except ValidationError as e:
            raise ValueError(f"malformed job payload: {e}") from e


def _pretty(data: Any) -> str:
    return json.dumps(data, indent=2, default=str)


def contextual_input(payload: JobPayload) -> str:
    """Build the first user message of a run from its trigger data."""
    event = payload.trigger_event
    if event is not None:
        if event.type == "collection_event" and event.collection_event is not None:
            ce = event.collection_event
            return (
                "An event has occurred. Here is the data:\n\n"
                f"Event Type: {ce.event}\n"
                f"Collection: {ce.collection}\n"
                f"Item ID: {ce.item_id}\n\n"
                "Item Data:\n"
                f"```json\n{_pretty(ce.item_data)}\n```\n\n"
                "Based on your instructions, you must now call the appropriate function to handle this event."
            )
        if event.type == "webhook" and event.webhook_data is not None:
            return (
                "A webhook has been received. Here is the payload:\n\n"
                f"```json\n{_pretty(event.webhook_data)}\n```\n\n"
                "Based on your instructions, you must now call the appropriate function to process this webhook."
            )
    if payload.initial_input:
        return payload.initial_input
    return DEFAULT_INPUT
