"""Pipeline instance -- the producer-facing API that wires every component.

    producer -> sanitize -> Store.events -> BatchScheduler -> Store.batches
             -> SyncEngine -> Transport -> remote collector
    producer -> AggregateEngine -> Store.aggregates -> dashboards

Nothing here is process-global: every pipeline owns its config, store,
transport and periodic jobs, and close() releases all of them.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, TypeVar
from uuid import uuid4

from core.config import PipelineConfig
from core.data.store import Store, StoreError
from core.duration import parse_duration, parse_seconds
from core.models.aggregates import Aggregate
from core.models.batches import Batch, BatchPayload
from core.models.events import Event
from core.privacy import sanitize
from core.protocols import DeliveryError, Transport
from pipeline.aggregates import AggregateEngine
from pipeline.batching import BatchScheduler
from pipeline.retention import RetentionSweeper
from pipeline.sync import SyncEngine, SyncResult
from scheduler.runner import PeriodicJob

logger = logging.getLogger(__name__)

T = TypeVar("T")


def build_transport(config: PipelineConfig, home: Path) -> Transport | None:
    """Pick the delivery transport the config asks for, if any."""
    if config.capture_dir:
        from plugins.transports.capture import CaptureTransport

        capture_dir = Path(config.capture_dir).expanduser()
        if not capture_dir.is_absolute():
            capture_dir = home / capture_dir
        return CaptureTransport(output_dir=capture_dir)

    if config.api_endpoint:
        from plugins.transports.http import HttpCollectorTransport

        return HttpCollectorTransport(
            endpoint=config.api_endpoint,
            timeout=parse_seconds(config.request_timeout),
            headers=config.headers,
        )

    return None


class AnalyticsPipeline:
    """Durable event pipeline for one on-device writer.

    Usage:
        pipeline = AnalyticsPipeline(config, home=Path("~/.beacon").expanduser())
        await pipeline.start()
        event_id = await pipeline.store_event(event)
        ...
        await pipeline.close()
    """

    def __init__(
        self,
        config: PipelineConfig,
        home: Path,
        transport: Transport | None = None,
        store: Store | None = None,
    ) -> None:
        self._config = config
        self._home = home
        self._store = store or Store(home, database_name=config.database_name)
        self._transport = transport if transport is not None else build_transport(config, home)

        self._scheduler = BatchScheduler(
            self._store,
            batch_size=config.batch_size,
            max_batch_age=config.max_batch_age_delta,
        )
        self._aggregates = AggregateEngine(self._store)
        self._sweeper = RetentionSweeper(self._store, retention_days=config.retention_days)
        self._sync_engine: SyncEngine | None = None
        if self._transport is not None:
            self._sync_engine = SyncEngine(
                self._store,
                self._transport,
                max_retries=config.max_retries,
                retry_backoff=parse_duration(config.retry_backoff),
                retry_backoff_max=parse_duration(config.retry_backoff_max),
            )

        self._jobs: list[PeriodicJob] = []
        self._started = False
        self._closed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def config(self) -> PipelineConfig:
        return self._config

    @property
    def store(self) -> Store:
        return self._store

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def scheduler(self) -> BatchScheduler:
        return self._scheduler

    @property
    def sync_engine(self) -> SyncEngine | None:
        return self._sync_engine

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Start the sync tick (immediately, then every sync_interval) and the daily sweep."""
        if self._started:
            logger.warning("Pipeline already started")
            return
        if self._closed:
            raise RuntimeError("Pipeline is closed")

        self.recover_in_flight()

        if self._sync_engine is not None:
            self._jobs.append(PeriodicJob(
                "sync",
                self._sync_tick,
                interval=self._config.sync_interval,
                run_immediately=True,
            ))
        else:
            logger.info("No transport configured; running local-only (no sync timer)")

        self._jobs.append(PeriodicJob(
            "retention",
            self._sweeper.run,
            interval=parse_seconds(self._config.sweep_interval),
        ))

        for job in self._jobs:
            await job.start()

        self._started = True
        logger.info(
            "Pipeline started (batch_size=%d, privacy=%s, transport=%s)",
            self._config.batch_size,
            self._config.privacy_mode,
            self._transport.name if self._transport else "none",
        )

    async def close(self) -> None:
        """Cancel timers, let an in-flight delivery finish, release the store."""
        if self._closed:
            return
        self._closed = True

        for job in self._jobs:
            await job.stop()
        self._jobs.clear()

        if self._sync_engine is not None:
            await self._sync_engine.drain()

        if self._transport is not None:
            try:
                await self._transport.close()
            except Exception:
                logger.exception("Error closing transport %s", self._transport.name)

        self._store.close()
        self._started = False
        logger.info("Pipeline closed")

    async def __aenter__(self) -> AnalyticsPipeline:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def _sync_tick(self) -> SyncResult:
        self._scheduler.run_safely()
        return await self._sync_engine.sync()

    # ------------------------------------------------------------------
    # Producer API
    # ------------------------------------------------------------------

    async def store_event(self, event: Event) -> str | None:
        """Sanitize and persist one event. Returns its id, or None if it was lost.

        Never raises for storage or delivery problems.
        """
        ids = await self.store_events([event])
        return ids[0] if ids else None

    async def store_events(self, events: list[Event]) -> list[str]:
        """Sanitize and persist events in one transaction. Returns stored ids."""
        if not events:
            return []

        sanitized: list[Event] = []
        for event in events:
            try:
                sanitized.append(sanitize(event, self._config.privacy_mode))
            except Exception:
                # Fail closed: an event we can't sanitize is never stored or sent.
                logger.exception("Dropping event %s: sanitization failed", getattr(event, "id", "?"))
        if not sanitized:
            return []

        if not self._closed:
            try:
                ids = self._store.put_many(sanitized)
            except StoreError:
                logger.exception("Failed to store %d event(s) locally", len(sanitized))
            else:
                self._scheduler.run_safely()
                return ids

        return await self._send_direct(sanitized)

    async def _send_direct(self, events: list[Event]) -> list[str]:
        """Fallback when local storage is unavailable: deliver right away."""
        if self._transport is None or self._closed:
            logger.error("Dropped %d event(s): no local storage and no transport", len(events))
            return []

        payload = BatchPayload(batch_id=f"direct_{uuid4().hex}", events=events)
        try:
            await self._transport.send(payload)
        except DeliveryError as exc:
            logger.error("Direct delivery of %d event(s) failed: %s", len(events), exc)
            return []
        except Exception:
            logger.exception("Direct delivery of %d event(s) failed", len(events))
            return []

        logger.info("Delivered %d event(s) directly, bypassing local storage", len(events))
        return [e.id for e in events]

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def update_aggregate_data(
        self,
        aggregate_id: str,
        aggregate_type: str,
        update_fn: Callable[[T | None], T],
    ) -> bool:
        """Atomically replace an aggregate with update_fn(previous)."""
        return self._aggregates.update(aggregate_id, aggregate_type, update_fn)

    def get_aggregate_data(self, aggregate_id: str) -> Any | None:
        """Read-only view for dashboards. None if absent or unreadable."""
        try:
            return self._aggregates.get(aggregate_id)
        except StoreError:
            logger.exception("Failed to read aggregate %s", aggregate_id)
            return None

    def list_aggregates(self, aggregate_type: str | None = None) -> list[Aggregate]:
        return self._aggregates.list_all(aggregate_type)

    # ------------------------------------------------------------------
    # Operational controls
    # ------------------------------------------------------------------

    async def force_sync(self) -> bool:
        """Out-of-band delivery attempt, ignoring retry backoff.

        Returns False when there is nothing to sync with or the run failed.
        """
        if self._sync_engine is None or self._closed:
            return False
        try:
            self._scheduler.run_safely()
            await self._sync_engine.sync(force=True)
        except Exception:
            logger.exception("Force sync failed")
            return False
        return True

    def recover_in_flight(self) -> int:
        """Reset batches stranded in 'sending' by an earlier process back to 'pending'.

        Only safe while no delivery is running, so it runs once at start().
        """
        try:
            recovered = self._store.recover_in_flight()
        except StoreError:
            logger.exception("Failed to recover in-flight batches")
            return 0
        if recovered:
            logger.warning("Recovered %d batch(es) left in 'sending'", recovered)
        return recovered

    def sweep(self) -> int:
        """Run the retention sweep now."""
        return self._sweeper.sweep()

    def requeue_batch(self, batch_id: str) -> Batch | None:
        """Reset a failed batch to pending with a fresh retry budget."""
        batch = self._store.requeue_batch(batch_id)
        if batch:
            logger.info("Requeued failed batch %s", batch_id)
        return batch

    def stats(self) -> dict[str, Any]:
        stats = self._store.stats()
        stats["transport"] = self._transport.name if self._transport else None
        stats["privacy_mode"] = self._config.privacy_mode
        stats["started"] = self._started
        return stats
