"""Pydantic data models shared across all components."""

from core.models.aggregates import Aggregate
from core.models.batches import Batch, BatchPayload, BatchStatus
from core.models.events import (
    Event,
    EventCategory,
    EventContext,
    EventSeverity,
    EventSource,
    create_event,
)

__all__ = [
    "Aggregate",
    "Batch",
    "BatchPayload",
    "BatchStatus",
    "Event",
    "EventCategory",
    "EventContext",
    "EventSeverity",
    "EventSource",
    "create_event",
]
