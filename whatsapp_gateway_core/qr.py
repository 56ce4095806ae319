"""Render raw pairing challenges into displayable QR images."""

from __future__ import annotations

import base64
import io

import qrcode
from qrcode.exceptions import DataOverflowError
from qrcode.image.svg import SvgPathImage

DATA_URL_PREFIX = "data:image/svg+xml;base64,"


def render_qr_data_url(raw_challenge: str, *, box_size: int = 10, border: int = 4) -> str:
    """Encode a pairing challenge as a base64 SVG data URL.

    Args:
        raw_challenge: The string the bridge emitted for the phone to scan.
        box_size: Size of each QR module.
        border: Quiet-zone width in modules.

    Returns:
        ``data:image/svg+xml;base64,...`` suitable for an ``<img>`` tag.

    Raises:
        ValueError: The challenge is empty or does not fit in a QR code.
    """
    if not raw_challenge:
        raise ValueError("Pairing challenge is empty")

    qr = qrcode.QRCode(
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=border,
    )
    qr.add_data(raw_challenge)
    try:
        qr.make(fit=True)
    except DataOverflowError as err:
        raise ValueError("Pairing challenge is too long for a QR code") from err
    image = qr.make_image(image_factory=SvgPathImage)

    buffer = io.BytesIO()
    image.save(buffer)
    return DATA_URL_PREFIX + base64.b64encode(buffer.getvalue()).decode("ascii")
