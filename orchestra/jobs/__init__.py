"""Durable job queue carrying agent runs from triggers to workers."""

from orchestra.jobs.payload import CollectionEventData, JobPayload, TriggerEvent, contextual_input
from orchestra.jobs.queue import TASK_TYPE, JobQueue

__all__ = [
    "TASK_TYPE",
    "CollectionEventData",
    "JobPayload",
    "JobQueue",
    "TriggerEvent",
    "contextual_input",
]
