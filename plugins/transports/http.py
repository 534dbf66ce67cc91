"""HTTP collector transport -- POSTs batch payloads as JSON via httpx.

Any 2xx response is an acknowledgement. Every other status, and every
transport-level error (connect, timeout, protocol), is a DeliveryError.
"""

from __future__ import annotations

import logging

import httpx

from core.models.batches import BatchPayload
from core.protocols import DeliveryError

logger = logging.getLogger(__name__)


class HttpCollectorTransport:
    """Delivers batches to the remote collector endpoint.

    Implements the Transport protocol.
    """

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=timeout,
            headers={
                "Content-Type": "application/json",
                **(headers or {}),
            },
        )

    @property
    def name(self) -> str:
        return "http"

    @property
    def endpoint(self) -> str:
        return self._endpoint

    async def send(self, payload: BatchPayload) -> None:
        """POST the payload; raise DeliveryError unless the collector answers 2xx."""
        try:
            response = await self._client.post(self._endpoint, json=payload.to_wire())
        except httpx.HTTPError as exc:
            raise DeliveryError(f"{type(exc).__name__}: {exc}") from exc

        if not response.is_success:
            raise DeliveryError(
                f"Collector returned status {response.status_code}",
                status_code=response.status_code,
            )

        logger.debug(
            "Delivered %s (%d events) -> %s [%d]",
            payload.batch_id, payload.count, self._endpoint, response.status_code,
        )

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
