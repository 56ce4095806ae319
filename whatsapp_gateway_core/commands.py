"""Command façade consumed by the request layer.

Each inbound command maps 1:1 onto a session controller operation and always
returns a ``CommandResult``; errors never escape as exceptions.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import aiohttp

from .config import GatewayConfig
from .controller import SessionController
from .errors import GatewayError
from .status import StatusSubscription
from .transport.adapter import BridgeTransport
from .transport.auth_store import FileAuthStore

_LOGGER = logging.getLogger(__name__)

HTTP_STATUS_BY_CODE: dict[str, int] = {
    "CREDENTIAL_ACTIVE": 409,
    "ALREADY_CONNECTED": 409,
    "REQUEST_IN_PROGRESS": 409,
    "HOURLY_LIMIT_EXCEEDED": 429,
    "TOO_FREQUENT": 429,
    "NOT_CONNECTED": 503,
    "INVALID_REQUEST": 400,
    "TIMEOUT": 504,
    "CREDENTIAL_INVALIDATED": 410,
    "TRANSPORT_ERROR": 502,
    "SEND_ERROR": 502,
}


@dataclass(frozen=True, slots=True)
class CommandError:
    code: str
    message: str
    retry_after: int | None = None


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Success with a payload, or failure with a stable error code."""

    ok: bool
    payload: dict[str, Any] = field(default_factory=lambda: {})
    error: CommandError | None = None

    @classmethod
    def success(cls, payload: dict[str, Any] | None = None) -> CommandResult:
        return cls(ok=True, payload=payload or {})

    @classmethod
    def failure(cls, err: GatewayError) -> CommandResult:
        return cls(
            ok=False,
            error=CommandError(err.code, err.message, err.retry_after),
        )

    @property
    def http_status(self) -> int:
        if self.ok:
            return 200
        if self.error is None:
            return 500
        return HTTP_STATUS_BY_CODE.get(self.error.code, 500)

    def to_dict(self) -> dict[str, Any]:
        if self.ok:
            return {"success": True, **self.payload}
        error = self.error or CommandError(GatewayError.code, "Internal gateway error")
        data: dict[str, Any] = {
            "success": False,
            "code": error.code,
            "message": error.message,
        }
        if error.retry_after is not None:
            data["retry_after"] = error.retry_after
        return data


class WhatsAppGateway:
    """Entry point for the request layer."""

    def __init__(
        self,
        controller: SessionController,
        *,
        transport: BridgeTransport | None = None,
    ) -> None:
        self.controller = controller
        self._transport = transport

    @classmethod
    def from_config(
        cls,
        config: GatewayConfig,
        *,
        http_session: aiohttp.ClientSession | None = None,
    ) -> WhatsAppGateway:
        """Wire a bridge transport and controller from configuration."""
        transport = BridgeTransport(
            config.bridge_host,
            config.bridge_port,
            auth_store=FileAuthStore(Path(config.auth_dir)),
            http_session=http_session,
            ws_path=config.bridge_ws_path,
            token=config.bridge_token,
            connect_timeout=config.connect_timeout,
            send_timeout=config.send_timeout,
        )
        return cls(SessionController(transport, config=config), transport=transport)

    async def _run(
        self, command: str, operation: Callable[[], Awaitable[dict[str, Any]]]
    ) -> CommandResult:
        try:
            payload = await operation()
        except GatewayError as err:
            _LOGGER.info("Command %s failed: %s (%s)", command, err.code, err.message)
            return CommandResult.failure(err)
        except Exception as err:
            _LOGGER.exception("Command %s crashed: %s", command, err)
            return CommandResult.failure(GatewayError("Internal gateway error"))
        return CommandResult.success(payload)

    async def start_connection(self) -> CommandResult:
        async def operation() -> dict[str, Any]:
            snapshot = await self.controller.start_connection()
            return {"status": snapshot.to_dict()}

        return await self._run("start_connection", operation)

    async def request_qr(self, requester_id: str) -> CommandResult:
        async def operation() -> dict[str, Any]:
            credential = await self.controller.request_new_qr(requester_id)
            return {
                "qr": credential.image,
                "expires_at": credential.expires_at,
                "time_remaining": self.controller.credentials.time_remaining(),
            }

        return await self._run("request_qr", operation)

    async def get_status(self) -> CommandResult:
        async def operation() -> dict[str, Any]:
            return {"status": self.controller.status().to_dict()}

        return await self._run("get_status", operation)

    async def get_qr(self) -> CommandResult:
        async def operation() -> dict[str, Any]:
            credential = self.controller.current_credential()
            if credential is None:
                last = self.controller.credentials.last_invalidation
                return {
                    "qr": None,
                    "time_remaining": 0,
                    "state": self.controller.state.value,
                    "last_invalidation": last.reason if last else None,
                }
            return {
                "qr": credential.image,
                "expires_at": credential.expires_at,
                "time_remaining": self.controller.credentials.time_remaining(),
                "state": self.controller.state.value,
            }

        return await self._run("get_qr", operation)

    async def get_requester_stats(self, requester_id: str) -> CommandResult:
        async def operation() -> dict[str, Any]:
            return {"stats": self.controller.requester_stats(requester_id).to_dict()}

        return await self._run("get_requester_stats", operation)

    async def force_expire_qr(
        self, requester_id: str | None = None, reason: str = "manual"
    ) -> CommandResult:
        async def operation() -> dict[str, Any]:
            removed = await self.controller.force_expire_qr(reason, requester_id)
            return {"expired": removed}

        return await self._run("force_expire_qr", operation)

    async def send_message(
        self,
        destination: str,
        template_kind: str,
        params: Mapping[str, Any],
    ) -> CommandResult:
        async def operation() -> dict[str, Any]:
            receipt = await self.controller.send_message(
                destination, template_kind, params
            )
            return receipt.to_dict()

        return await self._run("send_message", operation)

    async def reset_connection(self, *, clear_credentials: bool = False) -> CommandResult:
        async def operation() -> dict[str, Any]:
            snapshot = await self.controller.reset(clear_credentials=clear_credentials)
            return {"status": snapshot.to_dict()}

        return await self._run("reset_connection", operation)

    async def force_reconnect(self) -> CommandResult:
        async def operation() -> dict[str, Any]:
            snapshot = await self.controller.force_reconnect()
            return {"status": snapshot.to_dict()}

        return await self._run("force_reconnect", operation)

    async def get_reconnection_status(self) -> CommandResult:
        async def operation() -> dict[str, Any]:
            return {"reconnection": self.controller.reconnection_status().to_dict()}

        return await self._run("get_reconnection_status", operation)

    async def get_auth_status(self) -> CommandResult:
        async def operation() -> dict[str, Any]:
            return {"auth": self.controller.auth_status()}

        return await self._run("get_auth_status", operation)

    def subscribe_status(self, *, max_queue: int = 32) -> StatusSubscription:
        """Real-time status feed for push channels."""
        return self.controller.publisher.subscribe(max_queue=max_queue)

    async def close(self) -> None:
        await self.controller.close()
        if self._transport is not None:
            await self._transport.close()
