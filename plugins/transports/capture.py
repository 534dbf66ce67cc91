"""Capture transport -- writes batch payloads to JSON files instead of sending them.

Used for offline runs and demos, so no real collector is needed.
Implements the Transport protocol.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from core.models.batches import BatchPayload
from core.protocols import DeliveryError

logger = logging.getLogger(__name__)


class CaptureTransport:
    """Captures each delivered payload to <output_dir>/<batch_id>.json."""

    def __init__(self, output_dir: Path) -> None:
        self._output_dir = output_dir
        self._output_dir.mkdir(parents=True, exist_ok=True)
        self._batch_count = 0

    @property
    def name(self) -> str:
        return "capture"

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    async def send(self, payload: BatchPayload) -> None:
        filepath = self._output_dir / f"{payload.batch_id}.json"
        try:
            filepath.write_text(json.dumps(payload.to_wire(), indent=2))
        except OSError as exc:
            raise DeliveryError(f"Failed to capture batch to {filepath}: {exc}") from exc

        self._batch_count += 1
        logger.debug("Captured batch %s (%d events)", payload.batch_id, payload.count)

    async def close(self) -> None:
        return None

    @property
    def batch_count(self) -> int:
        return self._batch_count
