"""Single-slot store for the active QR pairing credential.

Expiry is computed from wall-clock time on read; nothing needs to run in the
background for a stale credential to disappear.
"""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass

_LOGGER = logging.getLogger(__name__)

DEFAULT_CREDENTIAL_LIFETIME = 60.0


@dataclass(frozen=True, slots=True)
class Credential:
    """A QR pairing credential.

    Attributes:
        image: Displayable payload (data URL).
        created_at: Epoch seconds at issuance.
        expires_at: Epoch seconds after which the credential is dead.
        issued_for: Requester the credential was produced for, if any.
    """

    image: str
    created_at: float
    expires_at: float
    issued_for: str | None = None

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def time_remaining(self, now: float) -> int:
        return max(0, math.ceil(self.expires_at - now))


@dataclass(frozen=True, slots=True)
class Invalidation:
    """Why and when the slot was last cleared."""

    reason: str
    at: float


class CredentialStore:
    """Holds at most one live credential."""

    def __init__(
        self,
        lifetime: float = DEFAULT_CREDENTIAL_LIFETIME,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._lifetime = lifetime
        self._clock = clock
        self._credential: Credential | None = None
        self._last_invalidation: Invalidation | None = None

    @property
    def lifetime(self) -> float:
        return self._lifetime

    @property
    def last_invalidation(self) -> Invalidation | None:
        return self._last_invalidation

    def put(self, image: str, issued_for: str | None = None) -> Credential:
        """Store a new credential, superseding any previous one."""
        now = self._clock()
        if self._credential is not None and not self._credential.is_expired(now):
            self._last_invalidation = Invalidation("superseded", now)
            _LOGGER.debug("Credential superseded")
        self._credential = Credential(
            image=image,
            created_at=now,
            expires_at=now + self._lifetime,
            issued_for=issued_for,
        )
        return self._credential

    def get(self) -> Credential | None:
        """Return the live credential, clearing the slot if it has expired."""
        credential = self._credential
        if credential is None:
            return None
        now = self._clock()
        if credential.is_expired(now):
            self._credential = None
            self._last_invalidation = Invalidation("expired", now)
            _LOGGER.info("QR credential expired")
            return None
        return credential

    def peek(self) -> Credential | None:
        """Return whatever occupies the slot without applying expiry."""
        return self._credential

    def invalidate(self, reason: str) -> bool:
        """Clear the slot unconditionally.

        Returns:
            True if a credential was removed.
        """
        removed = self._credential is not None
        self._credential = None
        if removed:
            self._last_invalidation = Invalidation(reason, self._clock())
            _LOGGER.info("QR credential invalidated: %s", reason)
        return removed

    def time_remaining(self) -> int:
        """Seconds until the live credential expires, 0 when none."""
        credential = self.get()
        if credential is None:
            return 0
        return credential.time_remaining(self._clock())

    def has_active(self) -> bool:
        return self.get() is not None
