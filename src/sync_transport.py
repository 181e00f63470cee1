"""Transports that deliver sync batches to the remote endpoint.

A batch payload has the shape::

    {"items": [{"id", "type", "data", "timestamp", "deviceId"}, ...],
     "batchId": "...", "timestamp": "..."}

and the endpoint answers ``{"success": bool, "error": str | None}``.
Transport-level failures raise :class:`SyncTransportError` so the
synchronizer can retry them; a well-formed negative answer is returned as a
failed :class:`SyncResponse` and is retried the same way.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from src.errors import SyncTransportError
from src.mqtt_publisher import MQTTPublisher

logger = logging.getLogger(__name__)


@dataclass
class SyncResponse:
    """Answer of the remote endpoint for one batch."""

    success: bool
    error: str | None = None


class SyncTransport(ABC):
    """Delivery channel for sync batches."""

    name: str = "transport"

    @abstractmethod
    async def send_batch(self, payload: dict) -> SyncResponse:
        """Submit one batch.

        Raises:
            SyncTransportError: On timeouts, connection or server errors
        """
        raise NotImplementedError

    async def ping(self) -> bool:
        """Check whether the endpoint is reachable."""
        return True

    async def close(self) -> None:
        """Release connections."""


class NullSyncTransport(SyncTransport):
    """Acknowledges every batch. Used for local-only operation."""

    name = "none"

    async def send_batch(self, payload: dict) -> SyncResponse:
        logger.debug(f"Dropping batch {payload.get('batchId')} ({len(payload.get('items', []))} items)")
        return SyncResponse(success=True)


class HttpSyncTransport(SyncTransport):
    """POST batches as JSON to an HTTP endpoint."""

    name = "http"

    def __init__(
        self,
        endpoint: str,
        api_key: str | None = None,
        timeout: float = 10.0,
        ping_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize HTTP transport.

        Args:
            endpoint: Sync endpoint URL
            api_key: Optional bearer token
            timeout: Request timeout in seconds
            ping_url: URL used for reachability checks (defaults to endpoint)
            client: Pre-configured client, mainly for tests
        """
        self.endpoint = endpoint
        self.ping_url = ping_url or endpoint
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout, headers=headers)
        if client is not None and headers:
            self._client.headers.update(headers)

    async def send_batch(self, payload: dict) -> SyncResponse:
        batch_id = payload.get("batchId")
        try:
            response = await self._client.post(self.endpoint, json=payload)
        except httpx.TimeoutException as e:
            raise SyncTransportError(
                f"Timeout sending batch {batch_id}",
                component="HttpSyncTransport",
                action="send_batch",
                metadata={"batch_id": batch_id, "endpoint": self.endpoint},
                cause=e,
            ) from e
        except httpx.RequestError as e:
            raise SyncTransportError(
                f"Request error sending batch {batch_id}: {e}",
                component="HttpSyncTransport",
                action="send_batch",
                metadata={"batch_id": batch_id, "endpoint": self.endpoint},
                cause=e,
            ) from e

        if response.status_code >= 500:
            raise SyncTransportError(
                f"Server error {response.status_code} for batch {batch_id}",
                component="HttpSyncTransport",
                action="send_batch",
                metadata={"batch_id": batch_id, "status_code": response.status_code},
            )
        if response.status_code >= 400:
            logger.warning(f"Batch {batch_id} rejected with HTTP {response.status_code}")
            return SyncResponse(success=False, error=f"HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            return SyncResponse(success=False, error="Malformed response body")

        if isinstance(body, dict) and body.get("success") is True:
            return SyncResponse(success=True)
        error = body.get("error") if isinstance(body, dict) else None
        return SyncResponse(success=False, error=error or "Sync API call failed")

    async def ping(self) -> bool:
        try:
            response = await self._client.head(self.ping_url)
        except httpx.RequestError as e:
            logger.debug(f"Ping to {self.ping_url} failed: {e}")
            return False
        return response.status_code < 500

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class MqttSyncTransport(SyncTransport):
    """Publish batches to ``<base_topic>/sync`` with QoS 1.

    A successful publish is treated as the acknowledgement.
    """

    name = "mqtt"

    def __init__(self, publisher: MQTTPublisher, connect_timeout: float = 10.0):
        self.publisher = publisher
        self.connect_timeout = connect_timeout

    async def _ensure_connected(self) -> bool:
        if self.publisher.is_connected:
            return True
        return await asyncio.to_thread(self.publisher.connect, self.connect_timeout)

    async def send_batch(self, payload: dict) -> SyncResponse:
        if not await self._ensure_connected():
            raise SyncTransportError(
                f"MQTT broker {self.publisher.host}:{self.publisher.port} unavailable",
                component="MqttSyncTransport",
                action="send_batch",
                metadata={"batch_id": payload.get("batchId"), "last_error": self.publisher.last_error},
            )

        if await asyncio.to_thread(self.publisher.publish_batch, payload):
            return SyncResponse(success=True)
        return SyncResponse(success=False, error="MQTT publish failed")

    async def ping(self) -> bool:
        return await self._ensure_connected()

    async def close(self) -> None:
        if self.publisher.is_connected:
            await asyncio.to_thread(self.publisher.publish_status, "offline")
        await asyncio.to_thread(self.publisher.disconnect)
