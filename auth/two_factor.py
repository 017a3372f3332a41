"""
auth/two_factor.py -- TOTP secrets, code verification, and backup codes.

TOTP uses pyotp with the RFC 6238 defaults (SHA-1, 6 digits, 30 s step).
verify_totp_code() accepts the current step plus one on either side to
absorb clock skew between server and phone, and rejects anything that is not
exactly six ASCII digits before touching the secret.

Backup codes are 8 upper-case alphanumerics drawn from `secrets`. Only their
SHA-256 digests are persisted, one row per code; AuthStore.consume_backup_code()
deletes the matching row so each code works once.
"""

from __future__ import annotations

import hashlib
import re
import secrets
import string
from datetime import datetime

import pyotp

from core.config import get_settings

BACKUP_CODE_COUNT = 10
BACKUP_CODE_LENGTH = 8
_BACKUP_ALPHABET = string.ascii_uppercase + string.digits

_TOTP_CODE_RE = re.compile(r"^[0-9]{6}$")


def generate_totp_secret(label: str) -> tuple[str, str]:
    """Return (base32 secret, otpauth:// provisioning URI) for an authenticator app."""
    secret = pyotp.random_base32()
    uri = pyotp.TOTP(secret).provisioning_uri(name=label, issuer_name=get_settings().totp_issuer)
    return secret, uri


def is_totp_code_format(code: str | None) -> bool:
    return bool(code) and bool(_TOTP_CODE_RE.match(code))


def verify_totp_code(secret: str, code: str | None, for_time: datetime | None = None) -> bool:
    if not is_totp_code_format(code):
        return False
    try:
        return pyotp.TOTP(secret).verify(code, for_time=for_time, valid_window=1)
    except (TypeError, ValueError):
        # A corrupt secret fails the same way a wrong code does.
        return False


def generate_backup_codes(count: int = BACKUP_CODE_COUNT) -> list[str]:
    return ["".join(secrets.choice(_BACKUP_ALPHABET) for _ in range(BACKUP_CODE_LENGTH)) for _ in range(count)]


def normalize_backup_code(code: str) -> str:
    return code.strip().replace("-", "").replace(" ", "").upper()


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode("utf-8")).hexdigest()

