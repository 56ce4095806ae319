"""Connection-session core for the WhatsApp messaging gateway.

One WhatsApp session per process, paired by QR and reconnected on failure.
"""

__version__ = "0.1.0"

from .commands import HTTP_STATUS_BY_CODE, CommandResult, WhatsAppGateway
from .config import GatewayConfig, load_config
from .controller import SendReceipt, SessionController
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
    RateLimited,
    RequestInProgress,
    SendError,
    TransportConnectionError,
    TransportError,
    TransportHandshakeError,
    TransportTimeout,
)
from .rate_limiter import RateLimitDecision, RateLimiter, RequesterStats
from .status import SessionState, StatusPublisher, StatusSnapshot, StatusSubscription
from .templates import TemplateKind, normalize_destination, render_template
from .transport import BridgeTransport, FileAuthStore

__all__ = [
    "HTTP_STATUS_BY_CODE",
    "AlreadyConnected",
    "BridgeTransport",
    "CommandResult",
    "Credential",
    "CredentialInvalidated",
    "CredentialStore",
    "FatalTransportError",
    "FileAuthStore",
    "GatewayConfig",
    "GatewayError",
    "GatewayTimeout",
    "InvalidRequest",
    "MaxRetriesExceeded",
    "NotConnected",
    "RateLimitDecision",
    "RateLimited",
    "RateLimiter",
    "RequestInProgress",
    "RequesterStats",
    "SendError",
    "SendReceipt",
    "SessionController",
    "SessionState",
    "StatusPublisher",
    "StatusSnapshot",
    "StatusSubscription",
    "TemplateKind",
    "TransportConnectionError",
    "TransportError",
    "TransportHandshakeError",
    "TransportTimeout",
    "WhatsAppGateway",
    "__version__",
    "load_config",
    "normalize_destination",
    "render_template",
]
