"""Frame helpers for the WhatsApp bridge event channel.

Every frame in both directions is an envelope::

    {"v": 1, "type": "...", "msg_id": "...", "ts": <epoch ms>, "body": {...}}

Inbound types: ``qr``, ``open``, ``close``, ``fatal``, ``auth_invalid``,
``creds_update``, ``send_ack``, ``send_error``.
Outbound types: ``auth``, ``send``.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any

PROTOCOL_VERSION = 1

# Close code the bridge reports when the phone unlinked the device.
LOGGED_OUT_CODE = 401

FRAME_AUTH = "auth"
FRAME_SEND = "send"
FRAME_QR = "qr"
FRAME_OPEN = "open"
FRAME_CLOSE = "close"
FRAME_FATAL = "fatal"
FRAME_AUTH_INVALID = "auth_invalid"
FRAME_CREDS_UPDATE = "creds_update"
FRAME_SEND_ACK = "send_ack"
FRAME_SEND_ERROR = "send_error"


@dataclass(frozen=True, slots=True)
class Frame:
    """A decoded inbound envelope."""

    type: str
    body: dict[str, Any]
    msg_id: str | None = None


def build_envelope(
    *,
    msg_type: str,
    body: dict[str, Any],
    msg_id: str | None = None,
    timestamp_ms: int | None = None,
) -> dict[str, Any]:
    """Build a canonical envelope for bridge messages.

    Args:
        msg_type: Frame type (e.g., "auth", "send").
        body: JSON-serializable body.
        msg_id: Optional caller-supplied identifier. Generated when omitted.
        timestamp_ms: Optional epoch milliseconds override.
    """
    return {
        "v": PROTOCOL_VERSION,
        "type": msg_type,
        "msg_id": msg_id or str(uuid.uuid4()),
        "ts": timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
        "body": body,
    }


def build_auth(creds: dict[str, Any] | None) -> dict[str, Any]:
    """Open a bridge session; ``None`` creds ask the bridge to start pairing."""
    return build_envelope(msg_type=FRAME_AUTH, body={"creds": creds})


def build_send(ref: str, jid: str, text: str) -> dict[str, Any]:
    """Ask the bridge to deliver a text message; ``ref`` correlates the ack."""
    return build_envelope(
        msg_type=FRAME_SEND,
        msg_id=ref,
        body={"ref": ref, "jid": jid, "message": {"text": text}},
    )


def parse_frame(data: dict[str, Any]) -> Frame:
    """Validate and unpack an inbound envelope.

    Raises:
        ValueError: The envelope is missing its type or has a non-object body.
    """
    msg_type = data.get("type")
    if not isinstance(msg_type, str) or not msg_type:
        raise ValueError("Frame has no type")
    body = data.get("body", {})
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise ValueError(f"Frame body for {msg_type} is not an object")
    msg_id = data.get("msg_id")
    return Frame(type=msg_type, body=body, msg_id=msg_id if isinstance(msg_id, str) else None)


def parse_close(body: dict[str, Any]) -> tuple[str, bool]:
    """Return ``(cause, recoverable)`` for a close frame body."""
    code = body.get("code")
    reason = body.get("reason")
    cause = str(reason) if reason else str(code if code is not None else "closed")
    try:
        recoverable = int(code) != LOGGED_OUT_CODE
    except (TypeError, ValueError):
        recoverable = True
    return cause, recoverable
