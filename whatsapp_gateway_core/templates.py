"""Appointment message templates and destination normalization."""

from __future__ import annotations

import re
from collections.abc import Mapping
from enum import Enum
from typing import Any

from .errors import InvalidRequest

JID_SUFFIX = "@s.whatsapp.net"
MIN_PHONE_DIGITS = 8

REQUIRED_PARAMS: tuple[str, ...] = ("psicologo", "fecha", "hora")


class TemplateKind(Enum):
    """Supported outbound message templates."""

    CITA_GRATIS = "cita_gratis"
    CITA_PAGADA = "cita_pagada"
    RECORDATORIO_CITA = "recordatorio_cita"
    CONFIRMACION_ASISTENCIA = "confirmacion_asistencia"


_DETAILS = """📅 Fecha: {fecha}
🕐 Hora: {hora}
👨‍⚕️ Psicólogo: {psicologo}"""

_TEMPLATES: dict[TemplateKind, str] = {
    TemplateKind.CITA_GRATIS: (
        "¡Hola 👋\n\n"
        "✅ Tu primera cita GRATUITA ha sido confirmada:\n\n"
        f"{_DETAILS}\n\n"
        "🎉 ¡Recuerda que tu primera consulta es completamente GRATIS!\n\n"
        "Si tienes alguna consulta, no dudes en contactarnos.\n\n"
        "¡Te esperamos! 🌟"
    ),
    TemplateKind.CITA_PAGADA: (
        "¡Hola 👋\n\n"
        "✅ Tu cita ha sido confirmada:\n\n"
        f"{_DETAILS}\n\n"
        "Por favor, realiza el pago antes de la consulta para confirmar tu reserva.\n\n"
        "Si tienes dudas, contáctanos.\n\n"
        "¡Gracias por confiar en nosotros!"
    ),
    TemplateKind.RECORDATORIO_CITA: (
        "¡Hola 👋\n\n"
        "⏰ Te recordamos tu cita próxima:\n\n"
        f"{_DETAILS}\n\n"
        "Por favor, confirma tu asistencia respondiendo a este mensaje.\n\n"
        "¡Nos vemos pronto!"
    ),
    TemplateKind.CONFIRMACION_ASISTENCIA: (
        "¡Hola 👋\n\n"
        "✅ Hemos recibido tu confirmación de asistencia para la cita:\n\n"
        f"{_DETAILS}\n\n"
        "¡Gracias por avisarnos!"
    ),
}


def parse_template_kind(value: str | TemplateKind) -> TemplateKind:
    if isinstance(value, TemplateKind):
        return value
    try:
        return TemplateKind(value)
    except ValueError as err:
        raise InvalidRequest(f"Unknown message template: {value!r}") from err


def render_template(kind: str | TemplateKind, params: Mapping[str, Any]) -> str:
    """Render a template, requiring every appointment field to be present."""
    template_kind = parse_template_kind(kind)
    missing = [
        name
        for name in REQUIRED_PARAMS
        if not isinstance(params.get(name), str) or not params[name].strip()
    ]
    if missing:
        raise InvalidRequest(f"Missing template parameters: {', '.join(missing)}")
    return _TEMPLATES[template_kind].format(
        **{name: params[name].strip() for name in REQUIRED_PARAMS}
    )


def normalize_destination(phone: str) -> str:
    """Turn a phone number in international format into a WhatsApp JID."""
    if not isinstance(phone, str) or not phone.strip():
        raise InvalidRequest("Destination phone number is required")
    if phone.endswith(JID_SUFFIX):
        return phone
    digits = re.sub(r"\D", "", phone)
    if len(digits) < MIN_PHONE_DIGITS:
        raise InvalidRequest(
            "Destination phone number must be in international format"
        )
    return digits + JID_SUFFIX
