"""
Secure QR payloads and PNG rendering.

The payload is ``{prefix}{qr_id}`` (default prefix ``doclock://secure-qr/``).
It holds only the opaque id; the documents are looked up when it is
resolved. Rendering uses the ``qrcode`` package with automatic version
selection, so any standard QR reader can decode the image.
"""

from __future__ import annotations

import io
import re
from typing import List

import qrcode
from qrcode.constants import ERROR_CORRECT_H, ERROR_CORRECT_L, ERROR_CORRECT_M, ERROR_CORRECT_Q
from qrcode.image.pil import PilImage

from doclock.engine.config import QRConfig
from doclock.engine.errors import DocLockTransportError, DocLockValidationError

ERROR_CORRECTION_LEVELS = {
    "L": ERROR_CORRECT_L,
    "M": ERROR_CORRECT_M,
    "Q": ERROR_CORRECT_Q,
    "H": ERROR_CORRECT_H,
}

_QR_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def build_payload(qr_id: str, prefix: str = QRConfig().payload_prefix) -> str:
    return f"{prefix}{qr_id}"


def decode_qr_payload(payload: str, prefix: str = QRConfig().payload_prefix) -> str:
    """Return the SecureQR id carried by a scanned payload."""
    text = (payload or "").strip()
    if not text.startswith(prefix):
        raise DocLockValidationError("Not a DocLock Secure QR code", field="payload")
    qr_id = text[len(prefix):].strip("/")
    if not _QR_ID_PATTERN.match(qr_id):
        raise DocLockValidationError("Malformed Secure QR code", field="payload")
    return qr_id


def _build_symbol(payload: str, config: QRConfig) -> qrcode.QRCode:
    qr = qrcode.QRCode(
        version=None,
        error_correction=ERROR_CORRECTION_LEVELS[config.error_correction],
        box_size=config.box_size,
        border=config.border,
        image_factory=PilImage,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    return qr


def qr_matrix(payload: str, config: QRConfig = QRConfig()) -> List[List[bool]]:
    """Module matrix of the symbol, quiet zone included (True = dark)."""
    return _build_symbol(payload, config).get_matrix()


def render_png(payload: str, config: QRConfig = QRConfig()) -> bytes:
    """Encode payload as a black-on-white PNG."""
    try:
        img = _build_symbol(payload, config).make_image(fill_color="black", back_color="white")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
    except (ValueError, OSError) as e:
        raise DocLockTransportError(f"Failed to render QR code: {e}") from e
    return buffer.getvalue()
