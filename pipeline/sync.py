"""Sync engine -- delivers pending batches to the remote collector.

Per-batch state machine:

    pending  --(tick)-------------------------------> sending
    sending  --(acknowledged)-----------------------> complete  (events deleted)
    sending  --(failure, attempts < max_retries)----> pending
    sending  --(failure, attempts >= max_retries)---> failed    (terminal)

`attempts` counts observed outcomes. It is incremented only after the
collector answered (or the transport raised), never before the call, so an
interrupted delivery does not use up a retry.

A run only picks up `pending` batches. A batch in `sending` belongs to a
delivery in progress and is left alone; batches stranded in `sending` by a
crash are reset once, when the pipeline starts.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from pydantic import BaseModel

from core.data.store import Store, StoreError
from core.models.batches import Batch, BatchPayload
from core.protocols import DeliveryError, Transport

logger = logging.getLogger(__name__)


class SyncResult(BaseModel):
    """Outcome counts for one sync run."""

    delivered: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def attempted(self) -> int:
        return self.delivered + self.retried + self.failed


class SyncEngine:
    """Moves pending batches through delivery via a Transport.

    Only one sync run is active at a time; concurrent callers share it.
    A run in progress is shielded from cancellation so the network call can
    finish and its outcome is recorded even while the pipeline shuts down.
    """

    def __init__(
        self,
        store: Store,
        transport: Transport,
        max_retries: int = 3,
        retry_backoff: timedelta = timedelta(0),
        retry_backoff_max: timedelta = timedelta(hours=1),
    ) -> None:
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        self._store = store
        self._transport = transport
        self._max_retries = max_retries
        self._retry_backoff = retry_backoff
        self._retry_backoff_max = retry_backoff_max
        self._current: asyncio.Task[SyncResult] | None = None

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def in_flight(self) -> bool:
        return self._current is not None and not self._current.done()

    async def sync(self, force: bool = False) -> SyncResult:
        """Deliver every pending batch found now.

        `force` ignores retry backoff (used by out-of-band force_sync).
        """
        if self._current is None or self._current.done():
            self._current = asyncio.create_task(self._sync_pending(force))
            self._current.add_done_callback(self._log_run_failure)
        return await asyncio.shield(self._current)

    async def drain(self) -> None:
        """Wait for an in-flight sync run to finish. Never raises."""
        if self._current is not None and not self._current.done():
            await asyncio.wait([self._current])

    def _log_run_failure(self, task: asyncio.Task[SyncResult]) -> None:
        # Retrieve the exception even when every caller was cancelled.
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Sync run failed: %s", exc, exc_info=exc)

    async def _sync_pending(self, force: bool) -> SyncResult:
        result = SyncResult()

        now = datetime.now(timezone.utc)
        for batch in self._store.list_batches(status="pending"):
            if not force and batch.next_attempt_at and batch.next_attempt_at > now:
                result.skipped += 1
                continue
            try:
                outcome = await self._deliver(batch)
            except StoreError:
                logger.exception("Storage failure while syncing batch %s", batch.batch_id)
                continue

            if outcome == "complete":
                result.delivered += 1
            elif outcome == "failed":
                result.failed += 1
            else:
                result.retried += 1

        if result.attempted or result.skipped:
            logger.info(
                "Sync finished: %d delivered, %d retrying, %d failed, %d waiting",
                result.delivered, result.retried, result.failed, result.skipped,
            )
        return result

    async def _deliver(self, batch: Batch) -> str:
        """Attempt one batch. Returns its resulting status."""
        batch.status = "sending"
        self._store.update_batch(batch)

        events = self._store.get_events(batch.event_ids)
        if not events:
            # Nothing left to send; close the batch out without a network call.
            batch.status = "complete"
            batch.sent_at = datetime.now(timezone.utc)
            self._store.complete_batch(batch)
            logger.warning("Batch %s had no stored events; marked complete", batch.batch_id)
            return batch.status

        if len(events) < len(batch.event_ids):
            logger.warning(
                "Batch %s: %d of %d events missing from the store",
                batch.batch_id, len(batch.event_ids) - len(events), len(batch.event_ids),
            )

        payload = BatchPayload(batch_id=batch.batch_id, events=events)
        try:
            await self._transport.send(payload)
        except DeliveryError as exc:
            return self._record_failure(batch, str(exc))
        except Exception as exc:
            logger.exception("Transport %s raised unexpectedly", self._transport.name)
            return self._record_failure(batch, f"{type(exc).__name__}: {exc}")

        batch.attempts += 1
        batch.status = "complete"
        batch.sent_at = datetime.now(timezone.utc)
        batch.last_error = None
        batch.next_attempt_at = None
        self._store.complete_batch(batch)
        logger.info(
            "Delivered batch %s (%d events, attempt %d)",
            batch.batch_id, len(events), batch.attempts,
        )
        return batch.status

    def _record_failure(self, batch: Batch, error: str) -> str:
        batch.attempts += 1
        batch.last_error = error

        if batch.attempts >= self._max_retries:
            batch.status = "failed"
            batch.next_attempt_at = None
            self._store.update_batch(batch)
            logger.error(
                "Batch %s failed after %d attempts: %s",
                batch.batch_id, batch.attempts, error,
            )
            return batch.status

        batch.status = "pending"
        batch.next_attempt_at = self._next_attempt_at(batch.attempts)
        self._store.update_batch(batch)
        logger.warning(
            "Batch %s sync failed, will retry (%d/%d): %s",
            batch.batch_id, batch.attempts, self._max_retries, error,
        )
        return batch.status

    def _next_attempt_at(self, attempts: int) -> datetime | None:
        if self._retry_backoff <= timedelta(0):
            return None
        delay = min(self._retry_backoff * (2 ** (attempts - 1)), self._retry_backoff_max)
        return datetime.now(timezone.utc) + delay
