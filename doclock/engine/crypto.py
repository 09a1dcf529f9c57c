"""
DocLock Field Encryption — AES-256-GCM for sensitive card fields.

Provides:
    - FieldCipher: encrypt/decrypt single string fields
    - Key resolution: DOCLOCK_CARD_KEY env var > security.card_key >
      key file (security.card_key_file, created on first use)

Ciphertext format: base64(nonce[12] || ciphertext || tag[16]), one fresh
nonce per value. The field name is bound as associated data, so a value
copied into another column does not decrypt.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import os
import secrets
from pathlib import Path
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from doclock.engine.errors import DocLockConfigError, DocLockValidationError

logger = logging.getLogger("doclock.engine.crypto")

ENV_KEY = "DOCLOCK_CARD_KEY"
NONCE_SIZE = 12


class FieldCipher:
    """
    Usage:
        cipher = FieldCipher.from_config(get_platform_config().security)
        token = cipher.encrypt("4111111111111111", field="card_number")
        cipher.decrypt(token, field="card_number")
    """

    def __init__(self, key: bytes):
        if len(key) != 32:
            raise DocLockConfigError("Card encryption key must be 32 bytes", config_key="security.card_key")
        self._aesgcm = AESGCM(key)

    @classmethod
    def from_secret(cls, secret: str) -> "FieldCipher":
        """Derive the 256-bit key from an arbitrary secret string."""
        return cls(hashlib.sha256(secret.encode("utf-8")).digest())

    @classmethod
    def from_config(cls, security_config) -> "FieldCipher":
        secret = os.environ.get(ENV_KEY) or security_config.card_key
        if secret:
            return cls.from_secret(secret)
        return cls(load_or_create_key_file(security_config.card_key_file))

    def encrypt(self, plaintext: str, field: str = "") -> str:
        nonce = secrets.token_bytes(NONCE_SIZE)
        sealed = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), field.encode("utf-8") or None)
        return base64.b64encode(nonce + sealed).decode("ascii")

    def decrypt(self, token: str, field: str = "") -> str:
        try:
            raw = base64.b64decode(token, validate=True)
        except (ValueError, TypeError) as e:
            raise DocLockValidationError(f"Malformed encrypted {field or 'value'}", field=field) from e
        if len(raw) <= NONCE_SIZE:
            raise DocLockValidationError(f"Malformed encrypted {field or 'value'}", field=field)
        try:
            plain = self._aesgcm.decrypt(raw[:NONCE_SIZE], raw[NONCE_SIZE:], field.encode("utf-8") or None)
        except InvalidTag as e:
            raise DocLockConfigError(
                f"Failed to decrypt {field or 'value'}: encryption key may have changed",
                config_key="security.card_key",
            ) from e
        return plain.decode("utf-8")


def load_or_create_key_file(path: str) -> bytes:
    """Read a base64 key file, generating a random key the first time."""
    key_path = Path(path)
    if key_path.exists():
        try:
            key = base64.b64decode(key_path.read_text(encoding="ascii").strip(), validate=True)
        except (ValueError, OSError) as e:
            raise DocLockConfigError(f"Unreadable card key file {key_path}", config_key=str(key_path)) from e
        return key

    key = AESGCM.generate_key(bit_length=256)
    key_path.parent.mkdir(parents=True, exist_ok=True)
    key_path.write_text(base64.b64encode(key).decode("ascii"), encoding="ascii")
    try:
        key_path.chmod(0o600)
    except OSError:
        logger.warning(f"Could not restrict permissions on {key_path}")
    logger.info(f"Generated new card encryption key at {key_path}")
    return key


def mask_card_number(number: str, visible: int = 4) -> Optional[str]:
    digits = "".join(c for c in number if c.isdigit())
    if not digits:
        return None
    return "•" * max(len(digits) - visible, 0) + digits[-visible:]
