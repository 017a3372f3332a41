"""
core/encryption.py -- Symmetric encryption for secret material at rest.

TOTP shared secrets must be recoverable (the server recomputes codes from
them), so they cannot be hashed like passwords. They are stored encrypted
with Fernet (AES-128-CBC + HMAC-SHA256, from the cryptography package).

Key source:
  ENCRYPTION_KEY if set (a urlsafe base64 Fernet key, e.g. from
  Fernet.generate_key()); otherwise derived from SECRET_KEY via SHA-256.
  Rotating SECRET_KEY without setting ENCRYPTION_KEY makes existing TOTP
  secrets unreadable, so production deployments should set ENCRYPTION_KEY.
"""

from __future__ import annotations

import base64
import hashlib

from cryptography.fernet import Fernet, InvalidToken

from core.errors import InfrastructureError


def derive_key(secret_key: str) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(secret_key.encode("utf-8")).digest())


class SecretBox:
    """Encrypt/decrypt short strings with a single Fernet key."""

    def __init__(self, key: str | bytes) -> None:
        self._fernet = Fernet(key)

    @classmethod
    def from_settings(cls, settings) -> "SecretBox":
        if settings.encryption_key:
            return cls(settings.encryption_key)
        return cls(derive_key(settings.secret_key))

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise InfrastructureError(reason="stored secret could not be decrypted") from exc
