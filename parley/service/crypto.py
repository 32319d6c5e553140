from __future__ import annotations

import base64
import binascii
import hashlib
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from parley.logging import get_logger

logger = get_logger(__name__)

IV_LENGTH = 12
TAG_LENGTH = 16


class SecretBox:
    """AES-256-GCM sealing for per-user model credentials.

    The key is the SHA-256 digest of the configured key material, so any
    reasonably random string works. Sealed values are
    ``base64(iv | tag | ciphertext)``.
    """

    def __init__(self, key_material: Optional[str]) -> None:
        self._aead = (
            AESGCM(hashlib.sha256(key_material.encode()).digest()) if key_material else None
        )

    @property
    def is_configured(self) -> bool:
        return self._aead is not None

    def _require(self) -> AESGCM:
        if self._aead is None:
            raise RuntimeError("USER_KEY_ENCRYPTION_KEY is not set")
        return self._aead

    def encrypt(self, value: str) -> str:
        aead = self._require()
        iv = os.urandom(IV_LENGTH)
        sealed = aead.encrypt(iv, value.encode("utf-8"), None)
        # AESGCM appends the tag; store it ahead of the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, payload: Optional[str]) -> Optional[str]:
        """Return the plaintext, or None when absent, malformed or tampered."""
        if not payload or self._aead is None:
            return None
        try:
            raw = base64.b64decode(payload, validate=True)
            iv = raw[:IV_LENGTH]
            tag = raw[IV_LENGTH : IV_LENGTH + TAG_LENGTH]
            ciphertext = raw[IV_LENGTH + TAG_LENGTH :]
            return self._aead.decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except (binascii.Error, InvalidTag, ValueError) as exc:
            logger.warning("secret_decrypt_failed", error_type=type(exc).__name__)
            return None
