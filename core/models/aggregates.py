"""Aggregate model -- keyed rollups maintained by read-modify-write."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


class Aggregate(BaseModel):
    """A running summary keyed by a caller-chosen id like 'impressions_2024-05-01'."""

    id: str
    type: str
    data: Any = None
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
