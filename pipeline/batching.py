"""Batch scheduler -- forms delivery batches from pending events.

Runs after every successful insertion. At most one batch is outstanding
(pending or sending) at a time, so no event can be claimed twice.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from core.data.store import Store, StoreError
from core.models.batches import Batch
from core.models.events import now_ms

logger = logging.getLogger(__name__)


class BatchScheduler:
    """Creates a pending batch once enough unbatched events have piled up.

    If `max_batch_age` is set, a partial batch is also formed when the
    oldest unbatched event has waited longer than that.
    """

    def __init__(
        self,
        store: Store,
        batch_size: int = 20,
        max_batch_age: timedelta | None = None,
    ) -> None:
        if batch_size < 1:
            raise ValueError(f"batch_size must be at least 1, got {batch_size}")
        self._store = store
        self._batch_size = batch_size
        self._max_batch_age = max_batch_age

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def maybe_create_batch(self) -> Batch | None:
        """Form a batch if the rules allow it. Returns the new batch, if any.

        Check and creation share one transaction.
        """
        with self._store.transaction():
            if self._store.has_outstanding_batch():
                return None

            pending = self._store.count_unbatched_events()
            if pending == 0:
                return None
            if pending < self._batch_size and not self._oldest_is_stale():
                return None

            event_ids = self._store.oldest_unbatched_event_ids(self._batch_size)
            batch = self._store.create_batch(event_ids)

        logger.debug("Created batch %s with %d events", batch.batch_id, len(batch.event_ids))
        return batch

    def run_safely(self) -> Batch | None:
        """maybe_create_batch() for callers that must not see storage errors."""
        try:
            return self.maybe_create_batch()
        except StoreError:
            logger.exception("Failed to prepare batch")
            return None

    def _oldest_is_stale(self) -> bool:
        if self._max_batch_age is None:
            return False
        oldest = self._store.oldest_unbatched_timestamp()
        if oldest is None:
            return False
        age_ms = now_ms() - oldest
        return age_ms >= self._max_batch_age.total_seconds() * 1000
