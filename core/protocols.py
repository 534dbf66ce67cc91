"""Core protocols -- the extension points the pipeline depends on.

The core imports these protocols. Plugins implement them.
The core never imports concrete implementations.

All protocols use Python's structural subtyping (typing.Protocol):
if your class has the right methods, it implements the protocol.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from core.models.batches import BatchPayload


class DeliveryError(Exception):
    """A batch could not be delivered (non-2xx response or transport failure).

    Delivery errors are retryable up to the pipeline's max_retries.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


# ---------------------------------------------------------------------------
# Transport -- moves a batch payload to the remote collector
# ---------------------------------------------------------------------------

@runtime_checkable
class Transport(Protocol):
    """Delivers batch payloads to a remote collector.

    Default implementation: HttpCollectorTransport (JSON POST via httpx).
    A successful return means the collector acknowledged the batch; any
    failure must be raised as DeliveryError.
    """

    @property
    def name(self) -> str:
        """Unique transport name, e.g. 'http', 'capture'."""
        ...

    async def send(self, payload: BatchPayload) -> None:
        """Deliver the payload or raise DeliveryError."""
        ...

    async def close(self) -> None:
        """Release connections and other resources."""
        ...
