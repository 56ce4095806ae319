"""Tests for CredentialStore expiry and invalidation."""

from __future__ import annotations

import pytest

from whatsapp_gateway_core.credential_store import Credential, CredentialStore

from .conftest import START_TIME, FakeClock


@pytest.fixture
def store(clock: FakeClock) -> CredentialStore:
    return CredentialStore(60.0, clock=clock)


class TestCredential:
    """Tests for the Credential value type."""

    def test_time_remaining_rounds_up(self):
        """Test partial seconds count as a full second."""
        credential = Credential("img", created_at=0.0, expires_at=60.0)
        assert credential.time_remaining(0.5) == 60
        assert credential.time_remaining(59.1) == 1

    def test_expired_at_deadline(self):
        """Test a credential is dead exactly at its expiry time."""
        credential = Credential("img", created_at=0.0, expires_at=60.0)
        assert not credential.is_expired(59.999)
        assert credential.is_expired(60.0)
        assert credential.time_remaining(75.0) == 0


class TestCredentialStore:
    """Tests for CredentialStore."""

    def test_empty(self, store):
        """Test a fresh store holds nothing."""
        assert store.get() is None
        assert store.time_remaining() == 0
        assert not store.has_active()
        assert store.last_invalidation is None

    def test_put_sets_expiry(self, store):
        """Test put stamps creation and expiry times."""
        credential = store.put("data:image/svg+xml;base64,AAAA", issued_for="u1")

        assert credential.created_at == START_TIME
        assert credential.expires_at == START_TIME + 60
        assert credential.issued_for == "u1"
        assert store.get() is credential
        assert store.time_remaining() == 60

    def test_lazy_expiry(self, store, clock):
        """Test the credential disappears on read once its time is up."""
        store.put("img")
        clock.advance(59)
        assert store.has_active()

        clock.advance(1)

        assert store.peek() is not None
        assert store.get() is None
        assert store.peek() is None
        assert store.last_invalidation.reason == "expired"
        assert store.last_invalidation.at == START_TIME + 60

    def test_put_supersedes_live_credential(self, store, clock):
        """Test replacing a live credential records why it went away."""
        store.put("first")
        clock.advance(10)

        second = store.put("second")

        assert store.get() is second
        assert store.last_invalidation.reason == "superseded"

    def test_put_after_expiry_is_not_superseded(self, store, clock):
        """Test replacing a dead credential does not report supersession."""
        store.put("first")
        clock.advance(61)

        store.put("second")

        assert store.last_invalidation is None

    def test_invalidate(self, store):
        """Test invalidate clears the slot and reports removal."""
        store.put("img")

        assert store.invalidate("connected") is True
        assert store.get() is None
        assert store.last_invalidation.reason == "connected"
        assert store.invalidate("again") is False
        assert store.last_invalidation.reason == "connected"

    def test_custom_lifetime(self, clock):
        """Test the lifetime is configurable."""
        store = CredentialStore(20.0, clock=clock)
        store.put("img")

        assert store.lifetime == 20.0
        assert store.time_remaining() == 20
