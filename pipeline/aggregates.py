"""Aggregate engine -- keeps running statistics without rescanning events.

Callers hand in a reducer `(previous | None) -> new`. It runs inside the
storage transaction, so it must be pure and fast. Each aggregate id is an
independent unit of consistency; there is no cross-key transaction.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from core.data.store import Store
from core.models.aggregates import Aggregate

logger = logging.getLogger(__name__)

T = TypeVar("T")


class AggregateEngine:
    """Read-modify-write over the aggregates collection."""

    def __init__(self, store: Store) -> None:
        self._store = store

    def update(
        self,
        aggregate_id: str,
        aggregate_type: str,
        update_fn: Callable[[T | None], T],
    ) -> bool:
        """Apply update_fn to the stored value atomically.

        Returns False (and leaves the stored value untouched) if the store
        fails or update_fn raises.
        """
        try:
            self._store.update_aggregate(aggregate_id, aggregate_type, update_fn)
        except Exception:
            logger.exception("Aggregate update failed for %s", aggregate_id)
            return False
        return True

    def get(self, aggregate_id: str) -> Any | None:
        """Current data for an aggregate, or None if it was never written."""
        aggregate = self._store.get_aggregate(aggregate_id)
        return aggregate.data if aggregate else None

    def get_record(self, aggregate_id: str) -> Aggregate | None:
        return self._store.get_aggregate(aggregate_id)

    def list_all(self, aggregate_type: str | None = None) -> list[Aggregate]:
        return self._store.list_aggregates(aggregate_type)


def increment(field: str, by: int | float = 1) -> Callable[[dict | None], dict]:
    """Reducer that bumps one counter in a dict-shaped aggregate."""

    def reducer(current: dict | None) -> dict:
        data = dict(current or {})
        data[field] = data.get(field, 0) + by
        return data

    return reducer
