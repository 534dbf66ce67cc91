"""Event model -- the immutable instrumentation record handed in by producers."""

from __future__ import annotations

import time
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

DATA_VERSION = "1.0"


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class EventCategory(str, Enum):
    IMPRESSION = "impression"
    ENGAGEMENT = "engagement"
    PERFORMANCE = "performance"
    CONTEXT = "context"
    USER_JOURNEY = "user_journey"
    CONTENT = "content"
    INTERACTION = "interaction"
    CONVERSION = "conversion"
    VISIBILITY = "visibility"
    ERROR = "error"


class EventSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class _WireModel(BaseModel):
    """Snake_case in Python, camelCase on the wire."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
    )


class EventSource(_WireModel):
    """Where in the client the event originated."""

    page: str = "unknown"
    section: str | None = None
    component: str | None = None
    placement: str | None = None
    version: str | None = None


class EventContext(_WireModel):
    """Session and device hints captured alongside the event."""

    session_id: str = Field(default_factory=lambda: uuid4().hex)
    timestamp: int = Field(default_factory=now_ms)  # epoch ms
    device_type: str | None = None
    browser: str | None = None
    user_agent: str | None = None
    viewport_width: int | None = None
    viewport_height: int | None = None
    time_zone: str | None = None
    locale: str | None = None


class Event(_WireModel):
    """A single observed occurrence.

    Events are frozen: the store never mutates them, it only deletes them
    after delivery. Sanitization produces a new Event via model_copy().
    """

    id: str = Field(default_factory=lambda: uuid4().hex)
    event_type: str
    event_category: EventCategory
    source: EventSource = Field(default_factory=EventSource)
    context: EventContext = Field(default_factory=EventContext)
    metadata: dict[str, Any] = Field(default_factory=dict)
    severity: EventSeverity = EventSeverity.INFO
    related_event_ids: list[str] = Field(default_factory=list)
    data_version: str = DATA_VERSION

    def to_wire(self) -> dict[str, Any]:
        """JSON-ready dict using the collector's camelCase field names."""
        return self.model_dump(mode="json", by_alias=True)


def create_event(
    event_type: str,
    event_category: EventCategory | str,
    source: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
    context: dict[str, Any] | None = None,
    severity: EventSeverity | str = EventSeverity.INFO,
    version: str | None = None,
) -> Event:
    """Build an Event with sensible defaults for the fields a producer omits."""
    source_fields = dict(source or {})
    if version and not source_fields.get("version"):
        source_fields["version"] = version

    return Event(
        event_type=event_type,
        event_category=EventCategory(event_category),
        source=EventSource(**source_fields),
        context=EventContext(**(context or {})),
        metadata=metadata or {},
        severity=EventSeverity(severity),
    )
