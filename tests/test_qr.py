"""Tests for QR rendering."""

from __future__ import annotations

import base64

import pytest

from whatsapp_gateway_core.qr import DATA_URL_PREFIX, render_qr_data_url


def test_renders_svg_data_url():
    """Test a challenge becomes a base64 SVG data URL."""
    url = render_qr_data_url("2@Xb1TkM0,Qm8kc+3sPRvA==,ref123")

    assert url.startswith(DATA_URL_PREFIX)
    svg = base64.b64decode(url[len(DATA_URL_PREFIX) :])
    assert b"<svg" in svg


def test_output_is_deterministic():
    """Test the same challenge always renders the same image."""
    assert render_qr_data_url("2@abc") == render_qr_data_url("2@abc")
    assert render_qr_data_url("2@abc") != render_qr_data_url("2@abd")


def test_empty_challenge_rejected():
    """Test an empty challenge cannot be rendered."""
    with pytest.raises(ValueError):
        render_qr_data_url("")


def test_oversized_challenge_rejected():
    """Test a challenge beyond QR capacity surfaces as ValueError."""
    with pytest.raises(ValueError, match="too long"):
        render_qr_data_url("2@" + "x" * 4000)
