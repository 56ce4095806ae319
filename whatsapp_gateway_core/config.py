"""Gateway configuration.

Settings are plain data. A YAML file supplies the baseline and
``WA_GATEWAY_*`` environment variables override individual keys, e.g.
``WA_GATEWAY_BRIDGE_HOST=bridge.internal``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

ENV_PREFIX = "WA_GATEWAY_"


@dataclass
class GatewayConfig:
    """Configuration for the session controller and its collaborators.

    Attributes:
        bridge_host: Host of the WhatsApp Web bridge sidecar.
        bridge_port: Port of the bridge (WebSocket and HTTP control API).
        bridge_ws_path: WebSocket event channel path.
        bridge_token: Access token for the bridge, sent as a bearer header
            on the event channel and the control API. None disables it.
        auth_dir: Directory holding persisted transport credentials.
        credential_lifetime: Seconds a QR credential stays valid.
        qr_min_interval: Minimum seconds between issuances per requester.
        qr_max_per_hour: Issuance ceiling per requester per hour.
        qr_history_cap: Stored history entries per requester.
        qr_wait_timeout: Seconds to wait for the bridge to emit a QR.
        max_retries: Automatic reconnection attempts before giving up.
        retry_base_delay: Backoff base (seconds).
        retry_max_delay: Backoff cap (seconds).
        retry_jitter: Fractional jitter applied to each backoff delay.
        connect_timeout: WebSocket connect timeout (seconds).
        send_timeout: Seconds to wait for a send acknowledgement.
        count_forced_expiry: Whether a forced QR expiry counts toward the
            requester's rate-limit history.
        admin_requesters: Requester ids never charged for forced expiry.
    """

    bridge_host: str = "127.0.0.1"
    bridge_port: int = 5112
    bridge_ws_path: str = "/ws"
    bridge_token: str | None = None
    auth_dir: str = "auth_info"
    credential_lifetime: float = 60.0
    qr_min_interval: float = 30.0
    qr_max_per_hour: int = 10
    qr_history_cap: int = 20
    qr_wait_timeout: float = 25.0
    max_retries: int = 3
    retry_base_delay: float = 2.0
    retry_max_delay: float = 30.0
    retry_jitter: float = 0.2
    connect_timeout: float = 15.0
    send_timeout: float = 60.0
    count_forced_expiry: bool = False
    admin_requesters: tuple[str, ...] = field(default_factory=lambda: ("admin",))

    def __post_init__(self) -> None:
        """Validate config invariants."""
        if self.credential_lifetime <= 0:
            raise ValueError(
                f"credential_lifetime must be positive, got {self.credential_lifetime}"
            )
        if self.qr_max_per_hour < 1:
            raise ValueError(
                f"qr_max_per_hour must be >= 1, got {self.qr_max_per_hour}"
            )
        if self.qr_history_cap < self.qr_max_per_hour:
            raise ValueError("qr_history_cap must be >= qr_max_per_hour")
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if not 0.0 <= self.retry_jitter < 1.0:
            raise ValueError(f"retry_jitter must be 0.0-1.0, got {self.retry_jitter}")
        if self.retry_base_delay > self.retry_max_delay:
            raise ValueError("retry_base_delay must not exceed retry_max_delay")
        self.admin_requesters = tuple(self.admin_requesters)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> GatewayConfig:
        """Build a config from a mapping, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**dict(data))


def _coerce(raw: str, default: Any) -> Any:
    if isinstance(default, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, tuple):
        return tuple(item.strip() for item in raw.split(",") if item.strip())
    return raw


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    defaults = GatewayConfig()
    overrides: dict[str, Any] = {}
    for f in fields(GatewayConfig):
        raw = environ.get(ENV_PREFIX + f.name.upper())
        if raw is None:
            continue
        try:
            overrides[f.name] = _coerce(raw, getattr(defaults, f.name))
        except ValueError as err:
            raise ValueError(f"Invalid value for {ENV_PREFIX}{f.name.upper()}") from err
    return overrides


def load_config(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> GatewayConfig:
    """Load configuration from an optional YAML file plus the environment.

    Args:
        path: YAML file with a top-level mapping of config keys.
        environ: Environment mapping (defaults to ``os.environ``).

    Returns:
        Validated GatewayConfig.
    """
    data: dict[str, Any] = {}
    if path is not None:
        with Path(path).open(encoding="utf-8") as fh:
            loaded = yaml.safe_load(fh) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        data.update(loaded)

    data.update(_env_overrides(os.environ if environ is None else environ))
    return GatewayConfig.from_mapping(data)
