"""Push-delivery transports.

A transport delivers already-serialized bytes to one connection. It reports
failure by raising DeliveryError; ConnectionGone is the distinguished
variant meaning the remote end no longer exists and its registry record
should be deleted.

Implementations:
    - LocalWebSocketTransport: sockets accepted by this process
    - HttpPushTransport: an API-Gateway-style management endpoint
      (POST {endpoint}/@connections/{id}, 410 when the connection is gone)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

import httpx
from fastapi.websockets import WebSocketDisconnect, WebSocketState

if TYPE_CHECKING:
    from fastapi import WebSocket

logger = logging.getLogger(__name__)


class DeliveryError(Exception):
    """Push to a connection failed."""

    def __init__(self, connection_id: str, reason: str):
        self.connection_id = connection_id
        self.reason = reason
        super().__init__(f"Delivery to {connection_id} failed: {reason}")


class ConnectionGone(DeliveryError):
    """The connection no longer exists on the remote end (410-class)."""


class PushTransport(ABC):
    @abstractmethod
    async def post_to_connection(self, connection_id: str, data: bytes) -> None:
        """Deliver bytes to one connection.

        Raises:
            ConnectionGone: the connection is gone for good
            DeliveryError: any other delivery failure
        """

    async def close(self) -> None:
        """Release transport resources."""


class LocalWebSocketTransport(PushTransport):
    """Delivers to WebSockets held open by this process."""

    def __init__(self) -> None:
        self._sockets: dict[str, WebSocket] = {}

    def register(self, connection_id: str, websocket: "WebSocket") -> None:
        self._sockets[connection_id] = websocket

    def unregister(self, connection_id: str) -> None:
        self._sockets.pop(connection_id, None)

    def is_registered(self, connection_id: str) -> bool:
        return connection_id in self._sockets

    async def post_to_connection(self, connection_id: str, data: bytes) -> None:
        websocket = self._sockets.get(connection_id)
        if websocket is None:
            raise ConnectionGone(connection_id, "no socket for connection in this process")

        if websocket.application_state != WebSocketState.CONNECTED:
            self.unregister(connection_id)
            raise ConnectionGone(connection_id, "socket closed")

        try:
            await websocket.send_text(data.decode())
        except WebSocketDisconnect as e:
            self.unregister(connection_id)
            raise ConnectionGone(connection_id, f"client disconnected ({e.code})") from e
        except RuntimeError as e:
            # Starlette raises RuntimeError when sending after close
            raise DeliveryError(connection_id, str(e)) from e


class HttpPushTransport(PushTransport):
    """Posts payloads to a push gateway's connection management API."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._endpoint = endpoint.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    def connection_url(self, connection_id: str) -> str:
        return f"{self._endpoint}/@connections/{connection_id}"

    async def post_to_connection(self, connection_id: str, data: bytes) -> None:
        try:
            response = await self._client.post(
                self.connection_url(connection_id),
                content=data,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as e:
            raise DeliveryError(connection_id, f"{type(e).__name__}: {e}") from e

        if response.status_code == 410:
            raise ConnectionGone(connection_id, "410 Gone")
        if response.status_code >= 400:
            raise DeliveryError(connection_id, f"HTTP {response.status_code}: {response.text}")

    async def close(self) -> None:
        await self._client.aclose()


# --- Global singleton ---

_transport: PushTransport | None = None


def get_transport() -> PushTransport:
    """Get the global push transport.

    Uses HttpPushTransport when a push endpoint is configured, otherwise a
    LocalWebSocketTransport.
    """
    global _transport
    if _transport is None:
        from .config import get_settings

        settings = get_settings()
        if settings.push_endpoint:
            _transport = HttpPushTransport(settings.push_endpoint, timeout=settings.push_timeout)
        else:
            _transport = LocalWebSocketTransport()
        logger.info(f"Using {type(_transport).__name__}")
    return _transport


def set_transport(transport: PushTransport) -> None:
    global _transport
    _transport = transport


def reset_transport() -> None:
    """Reset the global transport (for testing)."""
    global _transport
    _transport = None
