"""Shared fixtures for the pipeline test suite."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable

import pytest

from core.config import PipelineConfig
from core.data.store import Store
from core.models.batches import BatchPayload
from core.models.events import Event, EventCategory, EventContext, EventSource
from core.protocols import DeliveryError
from pipeline.service import AnalyticsPipeline


class ScriptedTransport:
    """Transport whose outcomes are scripted: None succeeds, an exception is raised."""

    def __init__(self, outcomes: list[Exception | None] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.payloads: list[BatchPayload] = []
        self.closed = False

    @property
    def name(self) -> str:
        return "scripted"

    async def send(self, payload: BatchPayload) -> None:
        self.payloads.append(payload)
        outcome = self.outcomes.pop(0) if self.outcomes else None
        if outcome is not None:
            raise outcome

    async def close(self) -> None:
        self.closed = True


def fail(message: str = "collector returned status 503") -> DeliveryError:
    return DeliveryError(message, status_code=503)


@pytest.fixture
def make_event() -> Callable[..., Event]:
    counter = {"n": 0}

    def _make(
        category: EventCategory | str = EventCategory.IMPRESSION,
        event_type: str = "ad_impression",
        metadata: dict[str, Any] | None = None,
        **context: Any,
    ) -> Event:
        counter["n"] += 1
        return Event(
            event_type=event_type,
            event_category=EventCategory(category),
            source=EventSource(page="answer", component="ad_slot"),
            context=EventContext(session_id="sess-1", **context),
            metadata=metadata if metadata is not None else {"adId": f"ad-{counter['n']}"},
        )

    return _make


@pytest.fixture
def store(tmp_path: Path):
    s = Store(tmp_path)
    yield s
    s.close()


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def pipeline_factory(tmp_path: Path):
    created: list[AnalyticsPipeline] = []

    def _make(transport=None, **options: Any) -> AnalyticsPipeline:
        pipeline = AnalyticsPipeline(PipelineConfig(**options), home=tmp_path, transport=transport)
        created.append(pipeline)
        return pipeline

    yield _make

    for pipeline in created:
        if pipeline.store.is_open:
            pipeline.store.close()
