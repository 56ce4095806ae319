"""Error types for the WhatsApp gateway core.

Every error carries a stable ``code`` so the request layer can map it to a
transport-facing status without inspecting messages.
"""

from __future__ import annotations

import math


class GatewayError(Exception):
    """Base error for gateway failures."""

    code = "INTERNAL_ERROR"

    def __init__(self, message: str, *, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.retry_after = (
            None if retry_after is None else max(0, math.ceil(retry_after))
        )

    def to_dict(self) -> dict[str, object]:
        """Serialize the error for the request layer."""
        data: dict[str, object] = {"code": self.code, "message": self.message}
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


class TransportError(GatewayError):
    """Bridge I/O or protocol setup failure."""

    code = "TRANSPORT_ERROR"


class TransportTimeout(TransportError):
    """Timeout while talking to the bridge."""


class TransportConnectionError(TransportError):
    """Network connection to the bridge failed."""


class TransportHandshakeError(TransportError):
    """WebSocket handshake with the bridge failed."""


class TransportResponseError(TransportError):
    """HTTP response error from the bridge control API."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message)
        self.status = status


class SendError(TransportError):
    """The bridge rejected or failed to deliver an outbound message."""

    code = "SEND_ERROR"


class NotConnected(GatewayError):
    """Operation requires an open WhatsApp session."""

    code = "NOT_CONNECTED"


class AlreadyConnected(GatewayError):
    """A QR was requested while the session is already paired."""

    code = "ALREADY_CONNECTED"


class RateLimited(GatewayError):
    """QR request denied by the rate limiter.

    ``code`` is one of ``CREDENTIAL_ACTIVE``, ``HOURLY_LIMIT_EXCEEDED`` or
    ``TOO_FREQUENT``.
    """

    def __init__(self, code: str, message: str, *, retry_after: float) -> None:
        super().__init__(message, retry_after=retry_after)
        self.code = code


class RequestInProgress(GatewayError):
    """Another QR request is already waiting for a pairing challenge."""

    code = "REQUEST_IN_PROGRESS"


class GatewayTimeout(GatewayError):
    """A bounded wait was exceeded."""

    code = "TIMEOUT"


class CredentialInvalidated(GatewayError):
    """The pending QR wait was aborted by an expiry or reset."""

    code = "CREDENTIAL_INVALIDATED"


class MaxRetriesExceeded(GatewayError):
    """Automatic reconnection gave up."""

    code = "MAX_RETRIES_EXCEEDED"


class FatalTransportError(GatewayError):
    """Unrecoverable transport condition (e.g. logged out from the phone)."""

    code = "FATAL_ERROR"


class InvalidRequest(GatewayError):
    """Caller supplied an unusable destination, template or parameter."""

    code = "INVALID_REQUEST"
