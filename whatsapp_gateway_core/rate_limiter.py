"""Per-requester throttling of QR credential issuance.

Denial reasons are evaluated in priority order:

1. ``CREDENTIAL_ACTIVE``: a live credential already exists (global check).
2. ``HOURLY_LIMIT_EXCEEDED``: the requester hit the hourly ceiling.
3. ``TOO_FREQUENT``: the requester's last issuance is too recent.

``check_and_reserve`` is atomic: an allowed check leaves a reservation behind
that blocks the same requester until it is either recorded or released.
"""

from __future__ import annotations

import logging
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

from .credential_store import CredentialStore
from .errors import RateLimited

_LOGGER = logging.getLogger(__name__)

CREDENTIAL_ACTIVE = "CREDENTIAL_ACTIVE"
HOURLY_LIMIT_EXCEEDED = "HOURLY_LIMIT_EXCEEDED"
TOO_FREQUENT = "TOO_FREQUENT"

DEFAULT_MIN_INTERVAL = 30.0
DEFAULT_MAX_PER_HOUR = 10
DEFAULT_WINDOW = 3600.0
DEFAULT_HISTORY_CAP = 20

_MESSAGES = {
    CREDENTIAL_ACTIVE: "A QR code is already active",
    HOURLY_LIMIT_EXCEEDED: "Hourly QR request limit reached",
    TOO_FREQUENT: "QR requested too frequently",
}


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    """Outcome of a rate-limit check."""

    allowed: bool
    reason: str | None = None
    retry_after: int = 0

    @classmethod
    def allow(cls) -> RateLimitDecision:
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: str, retry_after: float) -> RateLimitDecision:
        return cls(allowed=False, reason=reason, retry_after=max(1, math.ceil(retry_after)))

    @property
    def message(self) -> str:
        if self.allowed or self.reason is None:
            return "Allowed"
        return f"{_MESSAGES[self.reason]}; retry in {self.retry_after}s"

    def to_error(self) -> RateLimited:
        """Convert a denial into the matching error."""
        if self.allowed or self.reason is None:
            raise ValueError("Allowed decisions have no error")
        return RateLimited(self.reason, self.message, retry_after=self.retry_after)


@dataclass(frozen=True, slots=True)
class RequesterStats:
    """Read-only view of one requester's issuance history."""

    total_issued: int
    issued_last_hour: int
    can_issue_now: bool
    retry_after: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "total_issued": self.total_issued,
            "issued_last_hour": self.issued_last_hour,
            "can_issue_now": self.can_issue_now,
            "retry_after": self.retry_after,
        }


class RateLimiter:
    """Sliding-window limiter keyed by requester id."""

    def __init__(
        self,
        credentials: CredentialStore,
        *,
        min_interval: float = DEFAULT_MIN_INTERVAL,
        max_per_hour: int = DEFAULT_MAX_PER_HOUR,
        window: float = DEFAULT_WINDOW,
        history_cap: int = DEFAULT_HISTORY_CAP,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._credentials = credentials
        self._min_interval = min_interval
        self._max_per_hour = max_per_hour
        self._window = window
        self._history_cap = history_cap
        self._clock = clock

        self._history: dict[str, deque[float]] = {}
        self._totals: dict[str, int] = {}
        self._reservations: dict[str, float] = {}

    def check_and_reserve(self, requester_id: str) -> RateLimitDecision:
        """Check whether the requester may get a new QR and reserve the slot."""
        now = self._clock()
        decision = self._evaluate(requester_id, now)
        if decision.allowed:
            self._reservations[requester_id] = now
        else:
            _LOGGER.info(
                "[%s] QR request denied: %s (retry in %ds)",
                requester_id,
                decision.reason,
                decision.retry_after,
            )
        return decision

    def record(self, requester_id: str) -> None:
        """Record a successful issuance for the requester."""
        now = self._clock()
        self._reservations.pop(requester_id, None)
        history = self._history.setdefault(
            requester_id, deque(maxlen=self._history_cap)
        )
        history.append(now)
        self._trim(history, now)
        self._totals[requester_id] = self._totals.get(requester_id, 0) + 1
        _LOGGER.debug(
            "[%s] QR issuance recorded (%d in window)", requester_id, len(history)
        )

    def release(self, requester_id: str) -> None:
        """Drop an outstanding reservation without recording an issuance."""
        if self._reservations.pop(requester_id, None) is not None:
            _LOGGER.debug("[%s] QR reservation released", requester_id)

    def stats(self, requester_id: str) -> RequesterStats:
        now = self._clock()
        decision = self._evaluate(requester_id, now)
        return RequesterStats(
            total_issued=self._totals.get(requester_id, 0),
            issued_last_hour=len(self._recent(requester_id, now)),
            can_issue_now=decision.allowed,
            retry_after=decision.retry_after,
        )

    def _evaluate(self, requester_id: str, now: float) -> RateLimitDecision:
        remaining = self._credentials.time_remaining()
        if remaining > 0:
            return RateLimitDecision.deny(CREDENTIAL_ACTIVE, remaining)

        recent = self._recent(requester_id, now)
        if len(recent) >= self._max_per_hour:
            # Enough entries must leave the window to drop below the ceiling.
            oldest_counted = recent[len(recent) - self._max_per_hour]
            return RateLimitDecision.deny(
                HOURLY_LIMIT_EXCEEDED, oldest_counted + self._window - now
            )

        latest = recent[-1] if recent else None
        reserved_at = self._reservations.get(requester_id)
        if reserved_at is not None and (latest is None or reserved_at > latest):
            latest = reserved_at
        if latest is not None:
            elapsed = now - latest
            if elapsed < self._min_interval:
                return RateLimitDecision.deny(
                    TOO_FREQUENT, self._min_interval - elapsed
                )

        return RateLimitDecision.allow()

    def _recent(self, requester_id: str, now: float) -> list[float]:
        history = self._history.get(requester_id)
        if not history:
            return []
        return [ts for ts in history if now - ts < self._window]

    def _trim(self, history: deque[float], now: float) -> None:
        while history and now - history[0] >= self._window:
            history.popleft()
