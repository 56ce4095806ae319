"""Tests for the WhatsAppGateway command façade."""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from whatsapp_gateway_core.commands import CommandResult, WhatsAppGateway
from whatsapp_gateway_core.config import GatewayConfig
from whatsapp_gateway_core.errors import (
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
)
from whatsapp_gateway_core.status import SessionState
from whatsapp_gateway_core.transport.adapter import BridgeTransport

from .conftest import START_TIME, wait_until

PARAMS = {"psicologo": "Dra. Rivas", "fecha": "2024-05-10", "hora": "15:00"}


@pytest.fixture
def gateway(controller) -> WhatsAppGateway:
    return WhatsAppGateway(controller)


class TestCommandResult:
    """Tests for CommandResult status mapping."""

    @pytest.mark.parametrize(
        ("error", "status"),
        [
            (RateLimited("CREDENTIAL_ACTIVE", "active", retry_after=30), 409),
            (AlreadyConnected("connected"), 409),
            (RequestInProgress("busy", retry_after=5), 409),
            (RateLimited("HOURLY_LIMIT_EXCEEDED", "hourly", retry_after=600), 429),
            (RateLimited("TOO_FREQUENT", "frequent", retry_after=20), 429),
            (NotConnected("down"), 503),
            (InvalidRequest("bad"), 400),
            (GatewayTimeout("slow"), 504),
            (CredentialInvalidated("gone"), 410),
            (TransportConnectionError("refused"), 502),
            (SendError("failed"), 502),
            (FatalTransportError("fatal"), 500),
            (MaxRetriesExceeded("gave up"), 500),
            (GatewayError("boom"), 500),
        ],
    )
    def test_http_status(self, error, status):
        """Test each error code maps to its HTTP status."""
        assert CommandResult.failure(error).http_status == status

    def test_failure_dict(self):
        """Test failures serialize the code, message and retry hint."""
        result = CommandResult.failure(
            RateLimited("TOO_FREQUENT", "QR requested too frequently", retry_after=19.5)
        )

        assert result.to_dict() == {
            "success": False,
            "code": "TOO_FREQUENT",
            "message": "QR requested too frequently",
            "retry_after": 20,
        }

    def test_failure_without_error(self):
        """Test a failed result with no error details reads as internal."""
        result = CommandResult(ok=False)

        assert result.http_status == 500
        assert result.to_dict() == {
            "success": False,
            "code": "INTERNAL_ERROR",
            "message": "Internal gateway error",
        }

    def test_success_dict(self):
        """Test successes flatten their payload."""
        result = CommandResult.success({"expired": True})

        assert result.http_status == 200
        assert result.to_dict() == {"success": True, "expired": True}


class TestGatewayCommands:
    """Tests for WhatsAppGateway commands."""

    async def test_start_connection(self, gateway):
        """Test start reports the connecting status."""
        result = await gateway.start_connection()

        assert result.ok
        assert result.payload["status"]["state"] == "connecting"

    async def test_start_connection_failure(self, gateway, transport):
        """Test a bridge failure becomes a 502 result."""
        transport.connect_error = TransportConnectionError("refused")

        result = await gateway.start_connection()

        assert not result.ok
        assert result.error.code == "TRANSPORT_ERROR"
        assert result.http_status == 502

    async def test_request_qr(self, gateway, controller, transport):
        """Test a QR request returns the image and its lifetime."""
        await gateway.start_connection()
        pending = gateway.request_qr("u1")

        async def answer():
            await wait_until(lambda: not controller.requester_stats("u1").can_issue_now)
            transport.emit_qr("2@abc")

        result, _ = await asyncio.gather(pending, answer())

        assert result.ok
        assert result.payload == {
            "qr": "data:image/svg+xml;base64,2@abc",
            "expires_at": START_TIME + 60,
            "time_remaining": 60,
        }

    async def test_request_qr_rate_limited(self, gateway, controller, transport):
        """Test an active QR yields a 409 with a retry hint."""
        await controller.start_connection()
        transport.emit_qr()
        await controller.flush_events()

        result = await gateway.request_qr("u1")

        assert result.http_status == 409
        assert result.to_dict()["code"] == "CREDENTIAL_ACTIVE"
        assert result.to_dict()["retry_after"] == 60

    async def test_get_qr_without_credential(self, gateway):
        """Test polling with no QR reports the state."""
        result = await gateway.get_qr()

        assert result.payload == {
            "qr": None,
            "time_remaining": 0,
            "state": "disconnected",
            "last_invalidation": None,
        }

    async def test_get_qr_with_credential(self, gateway, controller, transport, clock):
        """Test polling returns the live QR and remaining time."""
        await controller.start_connection()
        transport.emit_qr("2@abc")
        await controller.flush_events()
        clock.advance(12)

        result = await gateway.get_qr()

        assert result.payload["qr"] == "data:image/svg+xml;base64,2@abc"
        assert result.payload["time_remaining"] == 48
        assert result.payload["state"] == "awaiting_scan"

    async def test_get_qr_after_expiry(self, gateway, controller, transport, clock):
        """Test an expired QR reports why it is gone."""
        await controller.start_connection()
        transport.emit_qr()
        await controller.flush_events()
        clock.advance(60)

        result = await gateway.get_qr()

        assert result.payload["qr"] is None
        assert result.payload["last_invalidation"] == "expired"

    async def test_get_status(self, gateway):
        """Test the status snapshot is returned."""
        result = await gateway.get_status()

        status = result.payload["status"]
        assert status["state"] == "disconnected"
        assert status["connected"] is False
        assert status["timestamp"] == START_TIME

    async def test_requester_stats(self, gateway):
        """Test requester stats are exposed."""
        result = await gateway.get_requester_stats("u1")

        assert result.payload["stats"]["can_issue_now"] is True
        assert result.payload["stats"]["total_issued"] == 0

    async def test_force_expire(self, gateway, controller, transport):
        """Test forced expiry reports whether a QR was removed."""
        await controller.start_connection()
        transport.emit_qr()
        await controller.flush_events()

        first = await gateway.force_expire_qr("admin", reason="support")
        second = await gateway.force_expire_qr()

        assert first.payload == {"expired": True}
        assert second.payload == {"expired": False}

    async def test_send_message(self, gateway, controller, transport):
        """Test a message is delivered once connected."""
        await controller.start_connection()
        transport.emit_open()
        await controller.flush_events()

        result = await gateway.send_message("+51 987 654 321", "cita_pagada", PARAMS)

        assert result.ok
        assert result.payload == {
            "message_id": "3EB0C767D71D",
            "destination": "51987654321@s.whatsapp.net",
            "template": "cita_pagada",
        }

    async def test_send_message_not_connected(self, gateway):
        """Test sending while disconnected is a 503."""
        result = await gateway.send_message("51987654321", "cita_gratis", PARAMS)

        assert result.http_status == 503
        assert result.error.code == "NOT_CONNECTED"

    async def test_send_message_invalid(self, gateway):
        """Test a bad template is a 400."""
        result = await gateway.send_message("51987654321", "cita_urgente", PARAMS)

        assert result.http_status == 400

    async def test_unexpected_error_is_internal(self, gateway, controller, transport):
        """Test unexpected failures never escape the façade."""
        await controller.start_connection()
        transport.emit_open()
        await controller.flush_events()
        transport.send_error = RuntimeError("boom")

        result = await gateway.send_message("51987654321", "cita_gratis", PARAMS)

        assert result.error.code == "INTERNAL_ERROR"
        assert result.error.message == "Internal gateway error"
        assert result.http_status == 500

    async def test_reset_and_reconnect(self, gateway, controller, transport):
        """Test reset and force_reconnect report the resulting state."""
        await gateway.start_connection()

        reset = await gateway.reset_connection(clear_credentials=True)
        reconnect = await gateway.force_reconnect()

        assert reset.payload["status"]["state"] == "disconnected"
        assert transport.credentials_cleared
        assert reconnect.payload["status"]["state"] == "connecting"
        assert controller.state is SessionState.CONNECTING

    async def test_reconnection_and_auth_status(self, gateway, transport):
        """Test the reconnection and auth views."""
        transport.has_stored_credentials = True

        reconnection = await gateway.get_reconnection_status()
        auth = await gateway.get_auth_status()

        assert reconnection.payload["reconnection"] == {
            "retry_count": 0,
            "max_retries": 3,
            "reconnecting": False,
            "next_attempt_in": None,
            "gave_up": False,
            "last_error": None,
        }
        assert auth.payload["auth"] == {
            "has_stored_credentials": True,
            "connected": False,
            "state": "disconnected",
        }

    async def test_subscribe_status(self, gateway):
        """Test the status feed delivers published snapshots."""
        subscription = gateway.subscribe_status()

        await gateway.start_connection()

        snapshot = await subscription.get()
        assert snapshot.state is SessionState.CONNECTING
        subscription.close()


class TestFromConfig:
    """Tests for WhatsAppGateway.from_config()."""

    async def test_wires_bridge_transport(self, tmp_path, mock_session: MagicMock):
        """Test configuration reaches the bridge transport."""
        config = GatewayConfig(
            bridge_host="bridge.internal",
            bridge_port=6000,
            bridge_token="s3cret",
            auth_dir=str(tmp_path),
        )

        gateway = WhatsAppGateway.from_config(config, http_session=mock_session)
        try:
            transport = gateway._transport
            assert isinstance(transport, BridgeTransport)
            assert transport.host == "bridge.internal"
            assert transport.port == 6000
            assert transport._token == "s3cret"
            assert gateway.controller.state is SessionState.DISCONNECTED
            result = await gateway.get_auth_status()
            assert result.payload["auth"]["has_stored_credentials"] is False
        finally:
            await gateway.close()
