"""
auth/credentials.py -- Password hashing, API key primitives, and cookie helpers.

Security design decisions:
  Passwords: bcrypt used directly with a fixed cost of 10 rounds. The
       _DUMMY_HASH constant enables timing equalization during login so
       response time does not reveal whether an email exists [C1].

  API keys: `ALWR_` + secrets.token_hex(24) -- 192 bits of entropy, 48 hex
       chars. The format is a public contract with integrators. Stored as a
       plain SHA-256 digest so lookup is O(1); brute force against a random
       192-bit value is infeasible, so bcrypt's slowness buys nothing here.
       Verification compares digests with hmac.compare_digest so the
       comparison takes the same time wherever the first mismatch falls.

  Failure semantics: every verification returns a plain bool. A malformed
       stored hash and a wrong password are indistinguishable to callers.

Layer rule: no imports from api/, audit/, or cache/. Import from core/ is
allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import re
import secrets

import bcrypt

from core.config import get_settings

BCRYPT_ROUNDS = 10

API_KEY_PREFIX = "ALWR_"
_API_KEY_RE = re.compile(r"^ALWR_[a-f0-9]{48}$", re.IGNORECASE)

API_KEY_FORMAT_HINT = "Expected: Authorization: Bearer ALWR_<48 hex chars>"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MIN_PASSWORD_LENGTH = 8
# bcrypt refuses input longer than this; the limit is on encoded bytes, not characters.
MAX_PASSWORD_BYTES = 72
PASSWORD_RULE = f"Password must be at least {MIN_PASSWORD_LENGTH} characters and at most {MAX_PASSWORD_BYTES} bytes."

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Callers must have passed the password through validate_password() first:
    bcrypt raises ValueError for input beyond MAX_PASSWORD_BYTES.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    encoded = plain.encode("utf-8")
    if not hashed or len(encoded) > MAX_PASSWORD_BYTES:
        return False
    try:
        return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1].
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("alwr_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a full bcrypt comparison against the dummy hash and discard the result."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------


def validate_email(email: str) -> bool:
    return bool(_EMAIL_RE.match(email or ""))


def validate_password(password: str) -> bool:
    if len(password or "") < MIN_PASSWORD_LENGTH:
        return False
    return len(password.encode("utf-8")) <= MAX_PASSWORD_BYTES


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# API key generation, hashing, and display
# ---------------------------------------------------------------------------


def generate_api_key() -> str:
    """Generate a new API key in the format: ALWR_<48 hex chars>."""
    return f"{API_KEY_PREFIX}{secrets.token_hex(24)}"


def hash_api_key(raw_key: str) -> str:
    """Return SHA-256(raw_key) as a lowercase hex string."""
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def verify_api_key(raw_key: str, stored_hash: str) -> bool:
    return hmac.compare_digest(hash_api_key(raw_key).encode("ascii"), stored_hash.encode("ascii"))


def mask_api_key(raw_key: str) -> str:
    """Return `ALWR..abcd` style display text. Never includes the middle of the key."""
    if len(raw_key) < 8:
        return "****"
    return f"{raw_key[:4]}..{raw_key[-4:]}"


def is_valid_api_key_format(raw_key: str) -> bool:
    return bool(_API_KEY_RE.match(raw_key or ""))


def parse_bearer_header(header: str | None) -> str | None:
    """Return the credential from an `Authorization: Bearer <value>` header, or None."""
    if not header or not header.startswith("Bearer "):
        return None
    value = header[len("Bearer ") :].strip()
    return value or None


# ---------------------------------------------------------------------------
# Session ids
# ---------------------------------------------------------------------------


def generate_session_id() -> str:
    return secrets.token_urlsafe(32)


def hash_session_id(session_id: str) -> str:
    return hashlib.sha256(session_id.encode("utf-8")).hexdigest()


# Password reset tokens share the session id shape: random, URL-safe, and
# persisted only as a SHA-256 digest.
generate_reset_token = generate_session_id
hash_reset_token = hash_session_id


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_session_cookie(response, session_id: str, max_age: int) -> None:
    """Write the opaque session id as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": not sent on cross-site POST -- CSRF mitigation.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    """
    settings = get_settings()
    response.set_cookie(
        settings.session_cookie_name,
        value=session_id,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=max_age,
    )


def clear_session_cookie(response) -> None:
    settings = get_settings()
    response.delete_cookie(
        settings.session_cookie_name,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
    )
