"""Transport adapter for the WhatsApp bridge.

The bridge is a sidecar that speaks the WhatsApp Web protocol. This adapter
owns the single WebSocket to it and turns its frames into a small set of
connection events:

- ``PairingChallenge``: the bridge wants the phone to scan a QR
- ``Opened``: the WhatsApp session is live
- ``Closed``: the session dropped; ``recoverable`` is False after a logout
- ``FatalError``: the bridge cannot continue with this session

Events are delivered synchronously to subscribers from the listener task.
Subscribers must not block; the session controller only enqueues them.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import aiohttp

from ..errors import (
    GatewayTimeout,
    NotConnected,
    SendError,
    TransportError,
)
from .auth_store import FileAuthStore
from .http import BridgeHttpClient
from .protocol import (
    FRAME_AUTH_INVALID,
    FRAME_CLOSE,
    FRAME_CREDS_UPDATE,
    FRAME_FATAL,
    FRAME_OPEN,
    FRAME_QR,
    FRAME_SEND_ACK,
    FRAME_SEND_ERROR,
    Frame,
    build_auth,
    build_send,
    parse_close,
    parse_frame,
)
from .ws_client import BridgeWsClient, BridgeWsMessageType

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PairingChallenge:
    raw: str
    epoch: int = 0


@dataclass(frozen=True, slots=True)
class Opened:
    epoch: int = 0


@dataclass(frozen=True, slots=True)
class Closed:
    cause: str
    recoverable: bool
    epoch: int = 0


@dataclass(frozen=True, slots=True)
class FatalError:
    detail: str
    epoch: int = 0


TransportEvent = PairingChallenge | Opened | Closed | FatalError
TransportListener = Callable[[TransportEvent], None]


class Transport(Protocol):
    """What the session controller needs from a transport."""

    @property
    def epoch(self) -> int: ...

    @property
    def has_stored_credentials(self) -> bool: ...

    def subscribe(self, listener: TransportListener) -> None: ...

    def unsubscribe(self, listener: TransportListener) -> None: ...

    async def connect(self) -> None: ...

    async def disconnect(self, reason: str = "requested") -> None: ...

    async def restart_pairing(self) -> None: ...

    async def send(self, destination: str, text: str) -> str: ...

    def clear_stored_credentials(self) -> None: ...


class BridgeTransport:
    """Single WebSocket session to the WhatsApp bridge.

    Usage:
        transport = BridgeTransport("127.0.0.1", 5112, auth_store=FileAuthStore("auth_info"))
        transport.subscribe(handle_event)
        await transport.connect()
        message_id = await transport.send("51987654321@s.whatsapp.net", "hola")
        await transport.close()
    """

    def __init__(
        self,
        host: str,
        port: int,
        *,
        auth_store: FileAuthStore,
        http_session: aiohttp.ClientSession | None = None,
        ws_path: str = "/ws",
        token: str | None = None,
        ping_interval: int = 20,
        connect_timeout: float = 15.0,
        send_timeout: float = 60.0,
    ) -> None:
        self.host = host
        self.port = port
        self._auth_store = auth_store
        self._http_session = http_session
        self._owns_http_session = http_session is None
        self._ws_path = ws_path
        self._token = token
        self._ping_interval = ping_interval
        self._connect_timeout = connect_timeout
        self._send_timeout = send_timeout

        self._ws: BridgeWsClient | None = None
        self._listen_task: asyncio.Task[None] | None = None
        self._open = False
        self._epoch = 0
        self._listeners: list[TransportListener] = []
        self._pending_sends: dict[str, asyncio.Future[str]] = {}

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def epoch(self) -> int:
        """Counter bumped on every new bridge connection."""
        return self._epoch

    @property
    def has_session(self) -> bool:
        return self._ws is not None

    @property
    def is_open(self) -> bool:
        return self._ws is not None and self._open

    @property
    def has_stored_credentials(self) -> bool:
        return self._auth_store.exists()

    def subscribe(self, listener: TransportListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: TransportListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def connect(self) -> None:
        """Open a bridge session from the persisted credentials.

        Does nothing when a session already exists.

        Raises:
            TransportError: Socket or handshake failure.
        """
        if self._ws is not None:
            _LOGGER.debug("[bridge] Connect skipped: session already exists")
            return

        _LOGGER.info(
            "[bridge] Connecting to ws://%s:%s%s", self.host, self.port, self._ws_path
        )
        ws_client = BridgeWsClient()
        await ws_client.connect(
            self.host,
            self.port,
            path=self._ws_path,
            token=self._token,
            ping_interval=self._ping_interval,
            timeout=self._connect_timeout,
        )

        try:
            await ws_client.send_json(build_auth(self._auth_store.load()))
        except TransportError:
            await self._close_ws(ws_client)
            raise

        self._epoch += 1
        self._ws = ws_client
        self._open = False
        self._listen_task = asyncio.create_task(self._listen(ws_client, self._epoch))
        _LOGGER.debug("[bridge] Session %d started", self._epoch)

    async def disconnect(self, reason: str = "requested") -> None:
        """Tear down the bridge session. Safe to call with none active."""
        ws_client = self._ws
        listen_task = self._listen_task
        self._ws = None
        self._listen_task = None
        self._open = False

        if listen_task is not None and listen_task is not asyncio.current_task():
            listen_task.cancel()
            try:
                await listen_task
            except asyncio.CancelledError:
                pass

        if ws_client is not None:
            _LOGGER.info("[bridge] Disconnecting (%s)", reason)
            await self._close_ws(ws_client)

        self._fail_pending_sends(NotConnected("WhatsApp session closed"))

    async def restart_pairing(self) -> None:
        """Drop the current pairing and start a fresh handshake.

        The bridge is asked to log out first; if that control call fails the
        fresh connect still forces a new pairing challenge because the local
        credentials are cleared.
        """
        try:
            await self._http().logout()
        except TransportError as err:
            _LOGGER.warning("[bridge] Logout before re-pairing failed: %s", err)
        self._auth_store.clear()
        await self.disconnect("restart_pairing")
        await self.connect()

    async def send(self, destination: str, text: str) -> str:
        """Deliver a text message and return the bridge's message id.

        Raises:
            NotConnected: No open WhatsApp session.
            SendError: The bridge reported a delivery failure.
            GatewayTimeout: No acknowledgement within the send timeout.
        """
        ws_client = self._ws
        if ws_client is None or not self._open:
            raise NotConnected("WhatsApp is not connected")

        ref = str(uuid.uuid4())
        future: asyncio.Future[str] = asyncio.get_running_loop().create_future()
        self._pending_sends[ref] = future
        try:
            try:
                await ws_client.send_json(build_send(ref, destination, text))
            except TransportError as err:
                raise SendError(f"Failed to send message: {err}") from err
            try:
                return await asyncio.wait_for(future, timeout=self._send_timeout)
            except TimeoutError as err:
                raise GatewayTimeout("Timed out waiting for send acknowledgement") from err
        finally:
            self._pending_sends.pop(ref, None)

    def clear_stored_credentials(self) -> None:
        self._auth_store.clear()

    async def fetch_info(self) -> dict[str, Any] | None:
        """Bridge health/status from its control API."""
        return await self._http().fetch_info()

    async def close(self) -> None:
        """Disconnect and release the HTTP session if we created it."""
        await self.disconnect("shutdown")
        if self._owns_http_session and self._http_session is not None:
            await self._http_session.close()
            self._http_session = None

    # -------------------------------------------------------------------------
    # Internal: Message Listener
    # -------------------------------------------------------------------------

    async def _listen(self, ws_client: BridgeWsClient, epoch: int) -> None:
        """Read frames until the session ends, then report why."""
        terminal: TransportEvent | None = None

        try:
            async for msg in ws_client:
                if msg.type is BridgeWsMessageType.TEXT:
                    try:
                        frame = parse_frame(BridgeWsClient.decode_json(msg))
                    except (TransportError, ValueError) as err:
                        _LOGGER.warning("[bridge] Invalid frame: %s", err)
                        continue
                    terminal = self._handle_frame(frame, epoch)
                    if terminal is not None:
                        break
                else:
                    _LOGGER.info("[bridge] WebSocket %s", msg.type.value)
                    terminal = Closed("connection_lost", True, epoch)
                    break
        except asyncio.CancelledError:
            _LOGGER.debug("[bridge] Listener %d cancelled", epoch)
            raise
        except Exception as err:
            _LOGGER.exception("[bridge] Unexpected listener error: %s", err)
            terminal = Closed("listener_error", True, epoch)

        if terminal is None:
            terminal = Closed("connection_lost", True, epoch)

        if self._ws is ws_client:
            self._ws = None
            self._listen_task = None
            self._open = False
            self._fail_pending_sends(NotConnected("WhatsApp session closed"))
        await self._close_ws(ws_client)
        self._emit(terminal)

    def _handle_frame(self, frame: Frame, epoch: int) -> TransportEvent | None:
        """Dispatch one frame; return an event only when it ends the session."""
        body = frame.body

        if frame.type == FRAME_QR:
            raw = body.get("qr")
            if isinstance(raw, str) and raw:
                self._emit(PairingChallenge(raw, epoch))
            else:
                _LOGGER.warning("[bridge] QR frame without payload")
        elif frame.type == FRAME_OPEN:
            self._open = True
            _LOGGER.info("[bridge] WhatsApp session open")
            self._emit(Opened(epoch))
        elif frame.type == FRAME_CREDS_UPDATE:
            creds = body.get("creds")
            if isinstance(creds, dict):
                self._auth_store.save(creds)
            else:
                _LOGGER.warning("[bridge] creds_update without credentials")
        elif frame.type == FRAME_SEND_ACK:
            self._resolve_send(body.get("ref"), message_id=body.get("message_id"))
        elif frame.type == FRAME_SEND_ERROR:
            self._resolve_send(body.get("ref"), error=str(body.get("error", "unknown")))
        elif frame.type == FRAME_CLOSE:
            cause, recoverable = parse_close(body)
            _LOGGER.info(
                "[bridge] Session closed: %s (recoverable=%s)", cause, recoverable
            )
            if not recoverable:
                self._auth_store.clear()
            return Closed(cause, recoverable, epoch)
        elif frame.type == FRAME_AUTH_INVALID:
            _LOGGER.error("[bridge] Stored credentials rejected")
            self._auth_store.clear()
            return FatalError("authentication rejected", epoch)
        elif frame.type == FRAME_FATAL:
            detail = str(body.get("detail", "unknown"))
            _LOGGER.error("[bridge] Fatal error: %s", detail)
            return FatalError(detail, epoch)
        else:
            _LOGGER.debug("[bridge] Unknown frame type: %s", frame.type)
        return None

    def _resolve_send(
        self, ref: Any, *, message_id: Any = None, error: str | None = None
    ) -> None:
        future = self._pending_sends.get(ref) if isinstance(ref, str) else None
        if future is None or future.done():
            _LOGGER.debug("[bridge] Unmatched send result: %s", ref)
            return
        if error is not None:
            future.set_exception(SendError(f"Bridge failed to send message: {error}"))
        elif not isinstance(message_id, str) or not message_id:
            future.set_exception(SendError("Bridge acknowledged send without message id"))
        else:
            future.set_result(message_id)

    def _fail_pending_sends(self, error: Exception) -> None:
        for future in self._pending_sends.values():
            if not future.done():
                future.set_exception(error)

    def _emit(self, event: TransportEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as err:
                _LOGGER.exception("[bridge] Event listener error: %s", err)

    def _http(self) -> BridgeHttpClient:
        if self._http_session is None:
            self._http_session = aiohttp.ClientSession()
        return BridgeHttpClient(
            self._http_session, self.host, self.port, token=self._token
        )

    @staticmethod
    async def _close_ws(ws_client: BridgeWsClient) -> None:
        try:
            await asyncio.wait_for(ws_client.close(), timeout=2.0)
        except TimeoutError:
            _LOGGER.warning("[bridge] WebSocket close timed out")
        except Exception as err:
            _LOGGER.debug("[bridge] WebSocket close failed: %s", err)
