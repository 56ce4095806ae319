"""WebSocket client wrapper for the WhatsApp bridge."""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

import websockets
from websockets.asyncio.client import ClientConnection
from websockets.exceptions import (
    ConnectionClosed,
    InvalidHandshake,
    InvalidStatus,
    InvalidURI,
    WebSocketException,
)

from ..errors import (
    TransportConnectionError,
    TransportError,
    TransportHandshakeError,
    TransportTimeout,
)

if TYPE_CHECKING:
    from collections.abc import AsyncIterator


class BridgeWsMessageType(Enum):
    """Normalized WebSocket message types."""

    TEXT = "text"
    CLOSED = "closed"
    ERROR = "error"


@dataclass(frozen=True)
class BridgeWsMessage:
    """Normalized WebSocket message payload."""

    type: BridgeWsMessageType
    data: str | None = None


class BridgeWsClient:
    """Wrapper around the websockets library for the bridge event channel."""

    def __init__(self) -> None:
        self._ws: ClientConnection | None = None

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(
        self,
        host: str,
        port: int,
        *,
        path: str = "/ws",
        token: str | None = None,
        ping_interval: int = 20,
        timeout: float = 15.0,
    ) -> None:
        """Open the bridge event channel.

        Args:
            host: Bridge host
            port: Bridge port
            path: Event channel path (default: /ws)
            token: Bridge access token, sent as a bearer header
            ping_interval: Interval for ping frames
            timeout: Connection timeout

        Raises:
            TransportTimeout: The bridge did not accept the connection in time.
            TransportHandshakeError: The upgrade was rejected, including a
                rejected access token.
            TransportConnectionError: Any other socket-level failure.
        """
        url = f"ws://{host}:{port}{path}"
        headers = {"Authorization": f"Bearer {token}"} if token else None
        try:
            self._ws = await asyncio.wait_for(
                websockets.connect(
                    url,
                    additional_headers=headers,
                    ping_interval=ping_interval,
                    close_timeout=5,
                    max_size=None,
                ),
                timeout=timeout,
            )
        except TimeoutError as err:
            raise TransportTimeout(f"Bridge at {url} did not answer in time") from err
        except InvalidStatus as err:
            status = err.response.status_code
            if status in (401, 403):
                raise TransportHandshakeError(
                    f"Bridge rejected the access token (HTTP {status})"
                ) from err
            raise TransportHandshakeError(
                f"Bridge refused the event channel (HTTP {status})"
            ) from err
        except (InvalidHandshake, InvalidURI) as err:
            raise TransportHandshakeError(f"Bridge handshake failed: {err}") from err
        except (OSError, WebSocketException) as err:
            raise TransportConnectionError(f"Cannot reach bridge at {url}") from err

    async def close(self) -> None:
        """Close the websocket connection."""
        if self._ws is not None:
            await self._ws.close()

    async def send_json(self, payload: dict[str, Any]) -> None:
        """Send a JSON payload to the websocket."""
        if self._ws is None:
            raise TransportConnectionError("WebSocket is not connected")
        try:
            await self._ws.send(json.dumps(payload))
        except ConnectionClosed as err:
            raise TransportConnectionError("WebSocket closed while sending") from err

    def __aiter__(self) -> AsyncIterator[BridgeWsMessage]:
        if self._ws is None:
            raise TransportConnectionError("WebSocket is not connected")
        return self._iter_messages()

    async def _iter_messages(self) -> AsyncIterator[BridgeWsMessage]:
        if self._ws is None:
            raise TransportConnectionError("WebSocket is not connected")

        try:
            async for msg in self._ws:
                if isinstance(msg, bytes):
                    continue
                yield BridgeWsMessage(BridgeWsMessageType.TEXT, msg)
        except ConnectionClosed:
            yield BridgeWsMessage(type=BridgeWsMessageType.CLOSED)
        except Exception:
            yield BridgeWsMessage(type=BridgeWsMessageType.ERROR)
        else:
            # Normal iteration completion means the peer closed gracefully.
            yield BridgeWsMessage(type=BridgeWsMessageType.CLOSED)

    @staticmethod
    def decode_json(message: BridgeWsMessage) -> dict[str, Any]:
        """Decode a TEXT message payload into a JSON object."""
        if message.type is not BridgeWsMessageType.TEXT:
            raise TransportError("Only TEXT messages can be decoded")
        if not isinstance(message.data, str):
            raise TransportError("Message data is not a string")
        try:
            result = json.loads(message.data)
        except json.JSONDecodeError as err:
            raise TransportError("Message is not valid JSON") from err
        if not isinstance(result, dict):
            raise TransportError("Message is not a JSON object")
        return result
