"""Batch models -- delivery units and the payload posted to the collector."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, Field

from core.models.events import Event, now_ms

BatchStatus = Literal["pending", "sending", "complete", "failed"]

OUTSTANDING_STATUSES: tuple[str, ...] = ("pending", "sending")


class Batch(BaseModel):
    """A group of event ids bundled for delivery.

    The batch references events by id; the events themselves stay in the
    events table until the batch is delivered.
    """

    batch_id: str = Field(default_factory=lambda: f"batch_{uuid4().hex}")
    event_ids: list[str] = Field(default_factory=list)
    status: BatchStatus = "pending"
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    attempts: int = 0
    sent_at: datetime | None = None
    last_error: str | None = None
    next_attempt_at: datetime | None = None

    @property
    def is_outstanding(self) -> bool:
        return self.status in OUTSTANDING_STATUSES


class BatchPayload(BaseModel):
    """JSON body posted to the remote collector."""

    batch_id: str
    timestamp: int = Field(default_factory=now_ms)
    events: list[Event] = Field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.events)

    def to_wire(self) -> dict[str, Any]:
        return {
            "batchId": self.batch_id,
            "timestamp": self.timestamp,
            "count": self.count,
            "events": [e.to_wire() for e in self.events],
        }
