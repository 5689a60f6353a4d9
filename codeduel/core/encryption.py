"""
At-rest encryption for stored LeetCode sessions.

AES-256-GCM with a random 16-byte IV. Ciphertexts are stored as
"iv:tag:ciphertext", each part hex encoded.
"""

import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from codeduel.core.config import settings

logger = logging.getLogger("codeduel")

IV_LENGTH = 16
TAG_LENGTH = 16


class EncryptionConfigError(RuntimeError):
    pass


def _load_key(key_hex: Optional[str] = None) -> bytes:
    raw = key_hex if key_hex is not None else (os.getenv("ENCRYPTION_KEY") or settings.ENCRYPTION_KEY)
    if not raw:
        raise EncryptionConfigError("ENCRYPTION_KEY is not configured")
    try:
        key = bytes.fromhex(raw)
    except ValueError as exc:
        raise EncryptionConfigError("ENCRYPTION_KEY must be hex encoded") from exc
    if len(key) != 32:
        raise EncryptionConfigError("ENCRYPTION_KEY must be 64 hex characters (32 bytes)")
    return key


def encrypt(plaintext: str, key_hex: Optional[str] = None) -> str:
    """Encrypt text; raises EncryptionConfigError when the key is missing or malformed."""
    key = _load_key(key_hex)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt(payload: Optional[str], key_hex: Optional[str] = None) -> Optional[str]:
    """Decrypt an "iv:tag:ciphertext" string. Any failure returns None."""
    if not payload:
        return None
    try:
        key = _load_key(key_hex)
        iv_hex, tag_hex, ct_hex = payload.split(":")
        iv, tag, ciphertext = bytes.fromhex(iv_hex), bytes.fromhex(tag_hex), bytes.fromhex(ct_hex)
        plain = AESGCM(key).decrypt(iv, ciphertext + tag, None)
        return plain.decode("utf-8")
    except (EncryptionConfigError, InvalidTag, ValueError) as exc:
        logger.warning("encryption.decrypt_failed", extra={"error_code": type(exc).__name__})
        return None


def generate_key() -> str:
    """Fresh 64-hex-char key suitable for ENCRYPTION_KEY."""
    return os.urandom(32).hex()
