"""Retention sweeper -- deletes delivered batch records past the retention window.

Only 'complete' batches are ever removed. Pending, sending and failed
batches are kept; failed ones stay for operator inspection.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from core.data.store import Store

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """Deletes complete batches whose sent_at is older than retention_days."""

    def __init__(self, store: Store, retention_days: int = 90) -> None:
        if retention_days < 0:
            raise ValueError(f"retention_days must not be negative, got {retention_days}")
        self._store = store
        self._retention = timedelta(days=retention_days)

    def cutoff(self, now: datetime | None = None) -> datetime:
        return (now or datetime.now(timezone.utc)) - self._retention

    def sweep(self, now: datetime | None = None) -> int:
        """Delete expired complete batches. Returns how many were removed."""
        removed = self._store.delete_completed_before(self.cutoff(now))
        if removed:
            logger.info("Retention sweep removed %d batch(es)", removed)
        return removed

    async def run(self) -> int:
        """Coroutine entrypoint for the daily periodic job."""
        return self.sweep()
