"""Tests for message templates and destination normalization."""

from __future__ import annotations

import pytest

from whatsapp_gateway_core.errors import InvalidRequest
from whatsapp_gateway_core.templates import (
    TemplateKind,
    normalize_destination,
    parse_template_kind,
    render_template,
)

PARAMS = {"psicologo": "Dr. Quispe", "fecha": "12/06/2024", "hora": "10:30"}


class TestRenderTemplate:
    """Tests for render_template()."""

    @pytest.mark.parametrize("kind", list(TemplateKind))
    def test_every_template_includes_details(self, kind):
        """Test each template embeds the appointment fields."""
        text = render_template(kind, PARAMS)

        assert "Dr. Quispe" in text
        assert "12/06/2024" in text
        assert "10:30" in text

    def test_free_appointment_wording(self):
        """Test the free first appointment template text."""
        text = render_template("cita_gratis", PARAMS)
        assert "GRATUITA" in text

    def test_values_are_trimmed(self):
        """Test surrounding whitespace is dropped from parameters."""
        text = render_template("recordatorio_cita", {**PARAMS, "hora": "  10:30 "})
        assert "Hora: 10:30\n" in text

    def test_missing_parameters(self):
        """Test missing or blank parameters are all reported."""
        with pytest.raises(InvalidRequest, match="psicologo, hora"):
            render_template("cita_pagada", {"fecha": "12/06/2024", "hora": " "})

    def test_non_string_parameter(self):
        """Test non-string values are rejected."""
        with pytest.raises(InvalidRequest):
            render_template("cita_pagada", {**PARAMS, "fecha": 20240612})

    def test_unknown_template(self):
        """Test an unknown template name is rejected."""
        with pytest.raises(InvalidRequest, match="Unknown message template"):
            parse_template_kind("cita_urgente")


class TestNormalizeDestination:
    """Tests for normalize_destination()."""

    @pytest.mark.parametrize(
        ("phone", "expected"),
        [
            ("51987654321", "51987654321@s.whatsapp.net"),
            ("+51 987 654 321", "51987654321@s.whatsapp.net"),
            ("(51) 987-654-321", "51987654321@s.whatsapp.net"),
            ("51987654321@s.whatsapp.net", "51987654321@s.whatsapp.net"),
        ],
    )
    def test_normalizes(self, phone, expected):
        """Test formatting characters are stripped and the JID suffix added."""
        assert normalize_destination(phone) == expected

    @pytest.mark.parametrize("phone", ["", "   ", "12345", "abc"])
    def test_rejects_invalid(self, phone):
        """Test short or empty numbers are rejected."""
        with pytest.raises(InvalidRequest):
            normalize_destination(phone)
