"""
Image upload checks shared by document uploads and profile images.

The file extension picks the expected format; the bytes must agree with it.
Raster formats are identified by Pillow. HEIC/HEIF have no Pillow decoder
in a default install, so their ISO-BMFF "ftyp" header is checked instead.
"""

from __future__ import annotations

import io
import os
from typing import Optional

from PIL import Image, UnidentifiedImageError

from doclock.engine.errors import DocLockValidationError

IMAGE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".heic": "image/heic",
    ".heif": "image/heif",
}

# Pillow format names accepted for each MIME type (MPO = multi-picture JPEG)
_PIL_FORMATS = {
    "image/png": {"PNG"},
    "image/jpeg": {"JPEG", "MPO"},
    "image/gif": {"GIF"},
    "image/webp": {"WEBP"},
    "image/bmp": {"BMP", "DIB"},
    "image/tiff": {"TIFF"},
}

_HEIF_BRANDS = {b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"mif1", b"msf1"}


def _is_heif(data: bytes) -> bool:
    return len(data) >= 12 and data[4:8] == b"ftyp" and data[8:12] in _HEIF_BRANDS


def _pillow_format(data: bytes) -> Optional[str]:
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = img.format
            img.verify()
            return fmt
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None


def check_image(data: bytes, file_name: str, user_id: Optional[str] = None) -> str:
    """
    Validate an image upload and return its MIME type.

    Raises DocLockValidationError for an unsupported extension or for bytes
    that are not an image of the format the extension names.
    """
    _, ext = os.path.splitext(file_name or "")
    mime_type = IMAGE_MIME_TYPES.get(ext.lower())
    if mime_type is None:
        raise DocLockValidationError(
            f"Unsupported image type '{ext or file_name}'. "
            f"Allowed: {', '.join(sorted(IMAGE_MIME_TYPES))}",
            user_id=user_id,
            field="file_name",
        )
    if not data:
        return mime_type

    if mime_type in ("image/heic", "image/heif"):
        valid = _is_heif(data)
    else:
        valid = _pillow_format(data) in _PIL_FORMATS[mime_type]
    if not valid:
        raise DocLockValidationError(
            f"'{os.path.basename(file_name)}' is not a valid {ext.lstrip('.').upper()} image",
            user_id=user_id,
            field="file_bytes",
        )
    return mime_type
