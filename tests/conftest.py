"""Pytest configuration and fixtures for whatsapp_gateway_core tests."""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

from whatsapp_gateway_core.config import GatewayConfig
from whatsapp_gateway_core.controller import SessionController
from whatsapp_gateway_core.errors import NotConnected
from whatsapp_gateway_core.transport.adapter import (
    Closed,
    FatalError,
    Opened,
    PairingChallenge,
    TransportEvent,
)

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """In-memory transport that records calls and emits scripted events."""

    def __init__(self) -> None:
        self.epoch = 0
        self.has_stored_credentials = False
        self.has_session = False
        self.listeners: list[Callable[[TransportEvent], None]] = []
        self.connect_calls = 0
        self.sessions_created = 0
        self.disconnect_calls = 0
        self.restart_calls = 0
        self.connect_error: Exception | None = None
        self.restart_error: Exception | None = None
        self.send_error: Exception | None = None
        self.connect_gate: asyncio.Event | None = None
        self.send_result = "3EB0C767D71D"
        self.sent: list[tuple[str, str]] = []
        self.credentials_cleared = False

    def subscribe(self, listener: Callable[[TransportEvent], None]) -> None:
        self.listeners.append(listener)

    def unsubscribe(self, listener: Callable[[TransportEvent], None]) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.has_session:
            return
        self.epoch += 1
        self.sessions_created += 1
        self.has_session = True

    async def disconnect(self, reason: str = "requested") -> None:
        self.disconnect_calls += 1
        self.has_session = False

    async def restart_pairing(self) -> None:
        self.restart_calls += 1
        if self.restart_error is not None:
            raise self.restart_error
        self.has_session = False
        await self.connect()

    async def send(self, destination: str, text: str) -> str:
        if not self.has_session:
            raise NotConnected("WhatsApp is not connected")
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((destination, text))
        return self.send_result

    def clear_stored_credentials(self) -> None:
        self.has_stored_credentials = False
        self.credentials_cleared = True

    def emit(self, event: TransportEvent) -> None:
        for listener in list(self.listeners):
            listener(event)

    def emit_qr(self, raw: str = "2@pairing-ref") -> None:
        self.emit(PairingChallenge(raw, self.epoch))

    def emit_open(self) -> None:
        self.emit(Opened(self.epoch))

    def emit_closed(self, cause: str = "ETIMEDOUT", recoverable: bool = True) -> None:
        self.has_session = False
        self.emit(Closed(cause, recoverable, self.epoch))

    def emit_fatal(self, detail: str = "bad session") -> None:
        self.has_session = False
        self.emit(FatalError(detail, self.epoch))


def fake_renderer(raw: str) -> str:
    return f"data:image/svg+xml;base64,{raw}"


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Poll until predicate is true or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(0.001)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def config() -> GatewayConfig:
    return GatewayConfig(
        retry_base_delay=0.01,
        retry_max_delay=0.04,
        retry_jitter=0.0,
        qr_wait_timeout=0.5,
    )


@pytest.fixture
async def controller(
    transport: FakeTransport, config: GatewayConfig, clock: FakeClock
) -> Any:
    ctrl = SessionController(
        transport,
        config=config,
        renderer=fake_renderer,
        clock=clock,
        rng=random.Random(0),
    )
    yield ctrl
    await ctrl.close()


@pytest.fixture
def mock_session() -> MagicMock:
    """Create a mock aiohttp ClientSession."""
    import aiohttp

    return MagicMock(spec=aiohttp.ClientSession)


def create_mock_response(
    status: int = 200,
    json_data: dict[str, Any] | None = None,
    text_data: str | None = None,
) -> AsyncMock:
    """Create a configured mock response.

    Args:
        status: HTTP status code
        json_data: Data to return from json() call
        text_data: Data to return from text() call

    Returns:
        Configured AsyncMock response
    """
    response = AsyncMock()
    response.status = status

    if json_data is not None:
        response.json.return_value = json_data
    if text_data is not None:
        response.text.return_value = text_data

    response.__aenter__.return_value = response
    response.__aexit__.return_value = None

    return response
