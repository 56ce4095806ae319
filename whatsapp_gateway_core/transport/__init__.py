"""Transport layer for the WhatsApp gateway.

This package contains all IO, wire framing, and network handling.

Components:
- adapter: single bridge session and its connection events
- http: bridge control API client
- ws_client: WebSocket event channel (connect, send, message iteration)
- protocol: envelope builders and frame parsing
- auth_store: persisted transport credentials
"""

from .adapter import (
    BridgeTransport,
    Closed,
    FatalError,
    Opened,
    PairingChallenge,
    Transport,
    TransportEvent,
)
from .auth_store import FileAuthStore
from .http import BridgeHttpClient
from .protocol import build_auth, build_envelope, build_send, parse_close, parse_frame
from .ws_client import BridgeWsClient, BridgeWsMessage, BridgeWsMessageType

__all__ = [
    "BridgeHttpClient",
    "BridgeTransport",
    "BridgeWsClient",
    "BridgeWsMessage",
    "BridgeWsMessageType",
    "Closed",
    "FatalError",
    "FileAuthStore",
    "Opened",
    "PairingChallenge",
    "Transport",
    "TransportEvent",
    "build_auth",
    "build_envelope",
    "build_send",
    "parse_close",
    "parse_frame",
]
