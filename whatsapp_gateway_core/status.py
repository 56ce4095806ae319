"""Session status snapshots and their fan-out to observers.

Publishing never blocks the session controller. Each subscriber gets its own
FIFO queue; when a slow subscriber falls behind, its oldest snapshots are
dropped so it still never sees an older snapshot after a newer one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import asdict, dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

_LOGGER = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle states of the single WhatsApp session."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_SCAN = "awaiting_scan"
    CONNECTED = "connected"


@dataclass(frozen=True, slots=True)
class StatusSnapshot:
    """Point-in-time view of the session published to observers."""

    state: SessionState
    has_active_credential: bool
    credential_time_remaining: int
    retry_count: int = 0
    last_error: str | None = None
    timestamp: float = 0.0

    @property
    def connected(self) -> bool:
        return self.state is SessionState.CONNECTED

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["connected"] = self.connected
        return data


class StatusSubscription:
    """Async iterator over snapshots delivered to one subscriber."""

    def __init__(self, publisher: StatusPublisher, max_queue: int) -> None:
        self._publisher = publisher
        self._queue: asyncio.Queue[StatusSnapshot | None] = asyncio.Queue(
            maxsize=max_queue
        )
        self.dropped = 0

    def _offer(self, snapshot: StatusSnapshot | None) -> None:
        while True:
            try:
                self._queue.put_nowait(snapshot)
                return
            except asyncio.QueueFull:
                self._queue.get_nowait()
                self.dropped += 1

    async def get(self) -> StatusSnapshot | None:
        """Wait for the next snapshot; None once the subscription is closed."""
        return await self._queue.get()

    def close(self) -> None:
        """Stop receiving snapshots."""
        self._publisher.unsubscribe(self)

    def __aiter__(self) -> AsyncIterator[StatusSnapshot]:
        return self._iter_snapshots()

    async def _iter_snapshots(self) -> AsyncIterator[StatusSnapshot]:
        while True:
            snapshot = await self._queue.get()
            if snapshot is None:
                return
            yield snapshot


class StatusPublisher:
    """Best-effort fan-out of status snapshots."""

    def __init__(self) -> None:
        self._subscriptions: list[StatusSubscription] = []
        self._callbacks: list[Callable[[StatusSnapshot], None]] = []
        self._last: StatusSnapshot | None = None

    @property
    def last(self) -> StatusSnapshot | None:
        """Most recently published snapshot."""
        return self._last

    def subscribe(self, *, max_queue: int = 32) -> StatusSubscription:
        """Open a queue-backed subscription.

        The last published snapshot, if any, is delivered first.
        """
        subscription = StatusSubscription(self, max_queue)
        if self._last is not None:
            subscription._offer(self._last)
        self._subscriptions.append(subscription)
        return subscription

    def add_listener(self, callback: Callable[[StatusSnapshot], None]) -> None:
        """Register a synchronous callback invoked on every snapshot."""
        self._callbacks.append(callback)

    def remove_listener(self, callback: Callable[[StatusSnapshot], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def unsubscribe(self, subscription: StatusSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
            subscription._offer(None)

    def publish(self, snapshot: StatusSnapshot) -> None:
        """Deliver a snapshot to every subscriber without blocking."""
        self._last = snapshot
        for subscription in list(self._subscriptions):
            subscription._offer(snapshot)
        for callback in list(self._callbacks):
            try:
                callback(snapshot)
            except Exception as err:
                _LOGGER.exception("Status listener error: %s", err)

    def close(self) -> None:
        """End every open subscription."""
        for subscription in list(self._subscriptions):
            self.unsubscribe(subscription)
