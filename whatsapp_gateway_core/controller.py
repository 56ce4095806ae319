"""Session controller for the single WhatsApp connection.

This module owns the connection lifecycle. It handles:
- Connection state machine (disconnected → connecting → awaiting_scan → connected)
- QR credential issuance, expiry and rate limiting
- Reconnection with jittered exponential backoff
- Status publication to observers

Caller commands and transport events are serialized behind one lock.
Transport events are queued and applied in arrival order by a single task,
so a transition never interleaves with another one.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from .config import GatewayConfig
from .credential_store import Credential, CredentialStore
from .errors import (
    AlreadyConnected,
    CredentialInvalidated,
    FatalTransportError,
    GatewayError,
    GatewayTimeout,
    InvalidRequest,
    MaxRetriesExceeded,
    NotConnected,
    RequestInProgress,
    TransportError,
)
from .qr import render_qr_data_url
from .rate_limiter import RateLimiter, RequesterStats
from .status import SessionState, StatusPublisher, StatusSnapshot
from .templates import normalize_destination, parse_template_kind, render_template
from .transport.adapter import (
    Closed,
    FatalError,
    Opened,
    PairingChallenge,
    Transport,
    TransportEvent,
)

_LOGGER = logging.getLogger(__name__)

LOGGED_OUT = "LOGGED_OUT"

# Slack added to the expiry sweep so it fires after the wall-clock deadline.
_SWEEP_SLACK = 0.05


@dataclass(frozen=True, slots=True)
class SendReceipt:
    """Result of a delivered message."""

    message_id: str
    destination: str
    template: str

    def to_dict(self) -> dict[str, str]:
        return {
            "message_id": self.message_id,
            "destination": self.destination,
            "template": self.template,
        }


@dataclass(frozen=True, slots=True)
class ReconnectionStatus:
    """Automatic reconnection bookkeeping."""

    retry_count: int
    max_retries: int
    reconnecting: bool
    next_attempt_in: int | None
    gave_up: bool
    last_error: str | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "reconnecting": self.reconnecting,
            "next_attempt_in": self.next_attempt_in,
            "gave_up": self.gave_up,
            "last_error": self.last_error,
        }


class SessionController:
    """Single owner of the WhatsApp session state.

    Usage:
        controller = SessionController(transport, config=GatewayConfig())
        await controller.start_connection()
        credential = await controller.request_new_qr("u1")
        receipt = await controller.send_message("51987654321", "cita_gratis", params)
        await controller.close()
    """

    def __init__(
        self,
        transport: Transport,
        *,
        config: GatewayConfig | None = None,
        credentials: CredentialStore | None = None,
        rate_limiter: RateLimiter | None = None,
        publisher: StatusPublisher | None = None,
        renderer: Callable[[str], str] = render_qr_data_url,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ) -> None:
        self._config = config or GatewayConfig()
        self._transport = transport
        self._renderer = renderer
        self._clock = clock
        self._rng = rng or random.Random()

        self.credentials = credentials or CredentialStore(
            self._config.credential_lifetime, clock=clock
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            self.credentials,
            min_interval=self._config.qr_min_interval,
            max_per_hour=self._config.qr_max_per_hour,
            history_cap=self._config.qr_history_cap,
            clock=clock,
        )
        self.publisher = publisher or StatusPublisher()

        # Session state
        self._state = SessionState.DISCONNECTED
        self._retry_count = 0
        self._last_error: str | None = None
        self._generation = 0
        self._closed = False

        # Serialization
        self._lock = asyncio.Lock()
        self._events: asyncio.Queue[TransportEvent] = asyncio.Queue()
        self._event_task: asyncio.Task[None] | None = None

        # Timers
        self._retry_handle: asyncio.TimerHandle | None = None
        self._retry_at: float | None = None
        self._retry_task: asyncio.Task[None] | None = None
        self._expiry_handle: asyncio.TimerHandle | None = None

        # Pending QR request
        self._qr_waiter: asyncio.Future[Credential] | None = None
        self._qr_requester: str | None = None
        self._qr_deadline = 0.0

        transport.subscribe(self._on_transport_event)

    # -------------------------------------------------------------------------
    # Public API: Read-only views
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def retry_count(self) -> int:
        return self._retry_count

    @property
    def is_connected(self) -> bool:
        return self._state is SessionState.CONNECTED

    def status(self) -> StatusSnapshot:
        """Current session snapshot."""
        credential = self.credentials.get()
        return StatusSnapshot(
            state=self._state,
            has_active_credential=credential is not None,
            credential_time_remaining=self.credentials.time_remaining(),
            retry_count=self._retry_count,
            last_error=self._last_error,
            timestamp=self._clock(),
        )

    def current_credential(self) -> Credential | None:
        """Live QR credential, if any. Publishes when it just expired."""
        had_credential = self.credentials.peek() is not None
        credential = self.credentials.get()
        if had_credential and credential is None:
            self._publish()
        return credential

    def requester_stats(self, requester_id: str) -> RequesterStats:
        return self.rate_limiter.stats(requester_id)

    def reconnection_status(self) -> ReconnectionStatus:
        next_attempt_in = None
        if self._retry_at is not None:
            next_attempt_in = max(0, round(self._retry_at - self._clock()))
        return ReconnectionStatus(
            retry_count=self._retry_count,
            max_retries=self._config.max_retries,
            reconnecting=self._retry_handle is not None,
            next_attempt_in=next_attempt_in,
            gave_up=self._last_error == MaxRetriesExceeded.code,
            last_error=self._last_error,
        )

    def auth_status(self) -> dict[str, Any]:
        return {
            "has_stored_credentials": self._transport.has_stored_credentials,
            "connected": self.is_connected,
            "state": self._state.value,
        }

    # -------------------------------------------------------------------------
    # Public API: Commands
    # -------------------------------------------------------------------------

    async def start_connection(self) -> StatusSnapshot:
        """Open the transport session unless one is already under way.

        Raises:
            TransportError: The bridge could not be reached. No retry is
                scheduled for caller-initiated connects.
        """
        async with self._lock:
            if self._state is not SessionState.DISCONNECTED:
                _LOGGER.debug(
                    "[session] start_connection ignored in state %s", self._state.value
                )
                return self.status()
            self._retry_count = 0
            try:
                await self._begin_connection()
            finally:
                self._publish()
            return self.status()

    async def request_new_qr(self, requester_id: str) -> Credential:
        """Produce a fresh QR credential for the requester.

        Raises:
            AlreadyConnected: The session is already paired.
            RequestInProgress: Another request is waiting for a QR.
            RateLimited: Denied by the rate limiter.
            TransportError: The pairing handshake could not be started.
            GatewayTimeout: The bridge produced no QR in time.
            CredentialInvalidated: Expired or reset while waiting.
        """
        if not requester_id:
            raise InvalidRequest("Requester id is required")

        timeout = self._config.qr_wait_timeout
        async with self._lock:
            if self._state is SessionState.CONNECTED:
                raise AlreadyConnected("WhatsApp is already connected")
            if self._qr_waiter is not None and not self._qr_waiter.done():
                raise RequestInProgress(
                    "A QR request is already in progress",
                    retry_after=max(1.0, self._qr_deadline - self._clock()),
                )

            decision = self.rate_limiter.check_and_reserve(requester_id)
            if not decision.allowed:
                raise decision.to_error()

            waiter: asyncio.Future[Credential] = (
                asyncio.get_running_loop().create_future()
            )
            self._qr_waiter = waiter
            self._qr_requester = requester_id
            self._qr_deadline = self._clock() + timeout

            try:
                if self._state is SessionState.DISCONNECTED:
                    self._retry_count = 0
                    await self._begin_connection()
                elif self._state is SessionState.AWAITING_SCAN:
                    await self._restart_pairing()
                else:
                    _LOGGER.debug("[session] Handshake in flight, waiting for its QR")
            except BaseException:
                self._abandon_qr_request(waiter, requester_id)
                self._publish()
                raise
            self._publish()

        try:
            credential = await asyncio.wait_for(waiter, timeout=timeout)
        except TimeoutError as err:
            self._abandon_qr_request(waiter, requester_id)
            async with self._lock:
                # Nothing newer is waiting on this handshake, so drop it and
                # let the next request start over.
                if self._qr_waiter is None and self._state is SessionState.CONNECTING:
                    _LOGGER.warning("[session] Handshake produced no QR; dropping it")
                    self._last_error = GatewayTimeout.code
                    await self._drop_handshake("qr_timeout")
                    self._publish()
            raise GatewayTimeout(f"No QR code received within {timeout:g}s") from err
        except BaseException:
            self._abandon_qr_request(waiter, requester_id)
            raise

        async with self._lock:
            self._clear_waiter(waiter)
            self.rate_limiter.record(requester_id)
        _LOGGER.info("[session] QR issued for %s", requester_id)
        return credential

    async def force_expire_qr(
        self, reason: str = "manual", requester_id: str | None = None
    ) -> bool:
        """Invalidate the QR credential regardless of state.

        Returns:
            True if a credential was removed.
        """
        async with self._lock:
            removed = self._invalidate_credential(f"forced: {reason}")
            self._fail_waiter(CredentialInvalidated("QR code was expired by request"))

            charged = (
                self._config.count_forced_expiry
                and requester_id is not None
                and requester_id not in self._config.admin_requesters
            )
            if charged:
                self.rate_limiter.record(requester_id)
            _LOGGER.info(
                "[session] QR force-expired by %s (%s, removed=%s, charged=%s)",
                requester_id or "anonymous",
                reason,
                removed,
                charged,
            )
            self._publish()
            return removed

    async def send_message(
        self,
        destination: str,
        template_kind: str,
        params: Mapping[str, Any],
    ) -> SendReceipt:
        """Render a template and deliver it through the open session.

        Raises:
            InvalidRequest: Bad destination, template or parameters.
            NotConnected: The session is not connected.
            SendError: The bridge failed to deliver.
        """
        kind = parse_template_kind(template_kind)
        text = render_template(kind, params)
        jid = normalize_destination(destination)

        if self._state is not SessionState.CONNECTED:
            raise NotConnected("WhatsApp is not connected")

        message_id = await self._transport.send(jid, text)
        _LOGGER.info("[session] Message %s sent (%s)", message_id, kind.value)
        return SendReceipt(message_id=message_id, destination=jid, template=kind.value)

    async def reset(self, *, clear_credentials: bool = False) -> StatusSnapshot:
        """Tear everything down and return to disconnected.

        Args:
            clear_credentials: Also forget the persisted transport
                credentials so the next connection has to pair again.
        """
        async with self._lock:
            self._cancel_retry()
            self._generation += 1
            self._fail_waiter(CredentialInvalidated("Connection was reset"))
            self._invalidate_credential("reset")
            await self._transport.disconnect("reset")
            if clear_credentials:
                self._transport.clear_stored_credentials()
            self._retry_count = 0
            self._last_error = None
            self._set_state(SessionState.DISCONNECTED)
            self._publish()
            _LOGGER.info("[session] Reset (clear_credentials=%s)", clear_credentials)
            return self.status()

    async def force_reconnect(self) -> StatusSnapshot:
        """Drop the current session and connect again immediately."""
        async with self._lock:
            self._cancel_retry()
            self._fail_waiter(CredentialInvalidated("Reconnection forced"))
            self._invalidate_credential("reconnect")
            await self._transport.disconnect("force_reconnect")
            self._set_state(SessionState.DISCONNECTED)
            self._retry_count = 0
            self._last_error = None
            try:
                await self._begin_connection()
            finally:
                self._publish()
            return self.status()

    async def flush_events(self) -> None:
        """Wait until every queued transport event has been applied."""
        await self._events.join()

    async def close(self) -> None:
        """Shut down: cancel timers, drop the session, end subscriptions."""
        async with self._lock:
            self._closed = True
            self._cancel_retry()
            self._cancel_expiry_sweep()
            self._fail_waiter(CredentialInvalidated("Gateway shutting down"))
            self._invalidate_credential("shutdown")
            await self._transport.disconnect("shutdown")
            self._set_state(SessionState.DISCONNECTED)
            self._publish()

        self._transport.unsubscribe(self._on_transport_event)
        for task in (self._event_task, self._retry_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self.publisher.close()

    # -------------------------------------------------------------------------
    # Internal: Connection State Machine
    # -------------------------------------------------------------------------

    def _set_state(self, state: SessionState) -> None:
        if self._state is not state:
            _LOGGER.debug(
                "[session] State: %s → %s", self._state.value, state.value
            )
            self._state = state

    async def _begin_connection(self) -> None:
        """Move to connecting and open the transport. Lock must be held."""
        self._cancel_retry()
        self._generation += 1
        self._set_state(SessionState.CONNECTING)
        self._publish()
        try:
            await self._transport.connect()
        except TransportError as err:
            _LOGGER.warning("[session] Connection failed: %s", err)
            self._last_error = err.code
            self._set_state(SessionState.DISCONNECTED)
            raise
        except BaseException:
            _LOGGER.warning("[session] Connection attempt abandoned")
            await self._drop_handshake("abandoned")
            raise

    async def _restart_pairing(self) -> None:
        """Force the bridge to issue a new pairing challenge. Lock must be held."""
        self._cancel_retry()
        self._generation += 1
        self._invalidate_credential("regenerating")
        self._set_state(SessionState.CONNECTING)
        self._publish()
        try:
            await self._transport.restart_pairing()
        except TransportError as err:
            _LOGGER.warning("[session] Pairing restart failed: %s", err)
            self._last_error = err.code
            self._set_state(SessionState.DISCONNECTED)
            raise
        except BaseException:
            _LOGGER.warning("[session] Pairing restart abandoned")
            await self._drop_handshake("abandoned")
            raise

    async def _drop_handshake(self, reason: str) -> None:
        """Close a half-open transport session. Lock must be held."""
        self._generation += 1
        try:
            await self._transport.disconnect(reason)
        finally:
            self._set_state(SessionState.DISCONNECTED)

    def _backoff_delay(self, attempt: int) -> float:
        delay = min(
            self._config.retry_base_delay * (2 ** (attempt - 1)),
            self._config.retry_max_delay,
        )
        jitter = self._config.retry_jitter
        return delay * (1 + self._rng.uniform(-jitter, jitter))

    def _schedule_retry(self, cause: str) -> None:
        """Schedule a reconnection attempt, or give up past the retry budget."""
        self._retry_count += 1
        if self._retry_count > self._config.max_retries:
            self._last_error = MaxRetriesExceeded.code
            self._retry_at = None
            _LOGGER.error(
                "[session] Giving up after %d reconnection attempts (last cause: %s)",
                self._config.max_retries,
                cause,
            )
            return

        delay = self._backoff_delay(self._retry_count)
        self._last_error = cause
        self._retry_at = self._clock() + delay
        self._retry_handle = asyncio.get_running_loop().call_later(
            delay, self._fire_retry, self._generation
        )
        _LOGGER.info(
            "[session] Reconnecting in %.1fs (attempt %d/%d, cause: %s)",
            delay,
            self._retry_count,
            self._config.max_retries,
            cause,
        )

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        self._retry_at = None

    def _fire_retry(self, generation: int) -> None:
        self._retry_handle = None
        self._retry_task = asyncio.create_task(self._reconnect(generation))

    async def _reconnect(self, generation: int) -> None:
        async with self._lock:
            if (
                self._closed
                or generation != self._generation
                or self._state is not SessionState.DISCONNECTED
            ):
                _LOGGER.debug("[session] Stale reconnect timer ignored")
                return
            self._retry_at = None
            try:
                await self._begin_connection()
            except TransportError as err:
                self._schedule_retry(err.code)
            self._publish()

    # -------------------------------------------------------------------------
    # Internal: Transport Events
    # -------------------------------------------------------------------------

    def _on_transport_event(self, event: TransportEvent) -> None:
        self._events.put_nowait(event)
        if self._event_task is None or self._event_task.done():
            self._event_task = asyncio.create_task(self._drain_events())

    async def _drain_events(self) -> None:
        while True:
            event = await self._events.get()
            try:
                async with self._lock:
                    await self._apply_event(event)
            except Exception as err:
                _LOGGER.exception(
                    "[session] Failed to apply %s: %s", type(event).__name__, err
                )
            finally:
                self._events.task_done()

    async def _apply_event(self, event: TransportEvent) -> None:
        if self._closed:
            return
        if event.epoch != self._transport.epoch:
            _LOGGER.debug("[session] Stale %s ignored", type(event).__name__)
            return

        if isinstance(event, PairingChallenge):
            self._on_pairing_challenge(event)
        elif isinstance(event, Opened):
            self._on_opened()
        elif isinstance(event, Closed):
            self._on_closed(event)
        elif isinstance(event, FatalError):
            await self._on_fatal(event)
        self._publish()

    def _on_pairing_challenge(self, event: PairingChallenge) -> None:
        if self._state in (SessionState.DISCONNECTED, SessionState.CONNECTED):
            _LOGGER.debug("[session] QR ignored in state %s", self._state.value)
            return
        try:
            image = self._renderer(event.raw)
        except ValueError as err:
            _LOGGER.warning("[session] Could not render QR: %s", err)
            return

        credential = self.credentials.put(image, issued_for=self._qr_requester)
        self._set_state(SessionState.AWAITING_SCAN)
        self._schedule_expiry_sweep()
        if self._qr_waiter is not None and not self._qr_waiter.done():
            self._qr_waiter.set_result(credential)
        _LOGGER.info(
            "[session] QR ready (valid %ds)", credential.time_remaining(self._clock())
        )

    def _on_opened(self) -> None:
        self._cancel_retry()
        self._invalidate_credential("connected")
        self._fail_waiter(
            AlreadyConnected("WhatsApp connected while waiting for a QR code")
        )
        self._retry_count = 0
        self._last_error = None
        self._set_state(SessionState.CONNECTED)
        _LOGGER.info("[session] WhatsApp connected")

    def _on_closed(self, event: Closed) -> None:
        self._invalidate_credential("closed")
        self._fail_waiter(
            CredentialInvalidated("Session closed while waiting for a QR code")
        )
        self._set_state(SessionState.DISCONNECTED)

        if not event.recoverable:
            _LOGGER.warning("[session] Logged out (%s); not reconnecting", event.cause)
            self._cancel_retry()
            self._retry_count = 0
            self._last_error = LOGGED_OUT
            return

        self._schedule_retry(event.cause)

    async def _on_fatal(self, event: FatalError) -> None:
        _LOGGER.error("[session] Fatal transport error: %s", event.detail)
        self._cancel_retry()
        self._invalidate_credential("fatal")
        self._fail_waiter(FatalTransportError(f"Transport failed: {event.detail}"))
        await self._transport.disconnect("fatal")
        self._last_error = FatalTransportError.code
        self._set_state(SessionState.DISCONNECTED)

    # -------------------------------------------------------------------------
    # Internal: Credential bookkeeping
    # -------------------------------------------------------------------------

    def _invalidate_credential(self, reason: str) -> bool:
        self._cancel_expiry_sweep()
        return self.credentials.invalidate(reason)

    def _schedule_expiry_sweep(self) -> None:
        self._cancel_expiry_sweep()
        credential = self.credentials.peek()
        if credential is None:
            return
        delay = max(0.0, credential.expires_at - self._clock()) + _SWEEP_SLACK
        self._expiry_handle = asyncio.get_running_loop().call_later(
            delay, self._sweep_expired
        )

    def _cancel_expiry_sweep(self) -> None:
        if self._expiry_handle is not None:
            self._expiry_handle.cancel()
            self._expiry_handle = None

    def _sweep_expired(self) -> None:
        self._expiry_handle = None
        self.current_credential()

    def _fail_waiter(self, error: GatewayError) -> None:
        waiter = self._qr_waiter
        if waiter is not None and not waiter.done():
            waiter.set_exception(error)

    def _clear_waiter(self, waiter: asyncio.Future[Credential]) -> None:
        if self._qr_waiter is waiter:
            self._qr_waiter = None
            self._qr_requester = None

    def _abandon_qr_request(
        self, waiter: asyncio.Future[Credential], requester_id: str
    ) -> None:
        self._clear_waiter(waiter)
        self.rate_limiter.release(requester_id)

    def _publish(self) -> None:
        self.publisher.publish(self.status())
