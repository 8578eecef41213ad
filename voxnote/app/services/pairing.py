# voxnote/app/services/pairing.py
"""
Render pairing codes as PNG QR images, base64 data URLs.
"""
from __future__ import annotations

import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_M

from voxnote.services.errors import QRRenderError

DATA_URL_PREFIX = "data:image/png;base64,"


def render_pairing_qr(code: str, box_size: int = 8, border: int = 2) -> str:
    if not code:
        raise QRRenderError("Empty pairing code")

    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_M, box_size=box_size, border=border)
    try:
        qr.add_data(code)
        qr.make(fit=True)
        image = qr.make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
    except (ValueError, OSError) as error:
        raise QRRenderError(f"Could not render pairing code: {error}") from error

    return DATA_URL_PREFIX + base64.b64encode(buffer.getvalue()).decode("ascii")
