"""
auth/sessions.py -- Password and delegated login, session resolution, logout.

Per-request state machine:

  Unauthenticated --(valid cookie -> live session -> active identity)--> Authenticated
  Unauthenticated --(POST /api/auth/login, correct credentials)--------> Authenticated
  Unauthenticated --(OIDC callback with verified claims)----------------> Authenticated
  Authenticated   --(logout: session row deleted, cookie cleared)------> Unauthenticated

Password login order (each step short-circuits):
  1. Unknown email, or identity without a password: bcrypt still runs
     against a dummy hash [C1] and the generic invalid-credentials error is
     returned. Nothing distinguishes this from a wrong password.
  2. Locked identity: 429 and the counter is left alone.
  3. Wrong password: atomic increment in the store. Reaching the threshold
     persists locked_until in the same transaction and answers 429;
     otherwise the generic 401.
  4. Correct password but pending approval: 403. Deactivated: generic 401.
  5. Counter and lock reset. This happens before the second factor is
     checked, so a correct password alone clears the brute-force counter
     even if the TOTP step then fails.
  6. Second factor when enabled: a 6-digit TOTP code or a one-time backup code.
  7. New session row, last_login stamped, audit entry written.

Sessions:
  The cookie holds a random 256-bit id; the store keeps only its SHA-256.
  A session ends at the absolute expiry (system setting
  session_timeout_minutes) or after idle_timeout_minutes without a request,
  whichever comes first. Delegated sessions additionally carry the
  provider's token expiry; once it passes, resolve() performs a refresh-token
  grant and destroys the session if the provider refuses.

Every transition writes an audit entry after the outcome is decided.

Layer rule: no imports from api/. Imports from core/ and audit/ are allowed.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from audit.models import UNKNOWN_ACTOR, AuditAction
from auth.credentials import (
    burn_password_check,
    generate_session_id,
    hash_session_id,
    normalize_email,
    verify_password,
)
from auth.lockout import is_account_locked, seconds_remaining
from auth.models import AccountStatus, AuthSource, Identity, Principal, Session
from auth.oauth import DelegatedClaims, token_expiry
from auth.two_factor import hash_backup_code, is_totp_code_format, verify_totp_code
from core.errors import (
    AccountLocked,
    AccountPending,
    AuthenticationFailed,
    AuthorizationDenied,
    InfrastructureError,
)

if TYPE_CHECKING:
    from audit.trail import AuditTrail
    from auth.store import AuthStore
    from cache.store import SettingsCache
    from core.encryption import SecretBox
    from core.http import RequestMeta

logger = logging.getLogger("alwr.auth.sessions")

INVALID_CREDENTIALS = "Invalid email or password."

TokenRefresher = Callable[[str], dict | None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a successful login. session_id is the raw cookie value."""

    principal: Principal
    identity: Identity
    session_id: str
    max_age: int


class SessionAuthenticator:
    def __init__(
        self,
        store: AuthStore,
        audit: AuditTrail,
        settings_cache: SettingsCache,
        secret_box: SecretBox,
        token_refresher: TokenRefresher | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.settings_cache = settings_cache
        self.secret_box = secret_box
        self.token_refresher = token_refresher
        self.clock = clock

    # ------------------------------------------------------------------
    # Password login
    # ------------------------------------------------------------------

    def login_with_password(
        self,
        email: str,
        password: str,
        two_factor_code: str | None = None,
        meta: RequestMeta | None = None,
    ) -> LoginResult:
        """Authenticate email + password (+ second factor). Raises a RegistryError subclass on failure.

        Sync on purpose: bcrypt is CPU-bound, and FastAPI runs sync handlers
        in its worker thread pool, off the event loop.
        """
        email = normalize_email(email)
        now = self.clock()
        identity = self.store.get_by_email(email)

        if identity is None or not identity.hashed_password:
            burn_password_check(password)
            self._audit_login_failure(email, None, "unknown_identity", meta)
            raise AuthenticationFailed(INVALID_CREDENTIALS, code="invalid_credentials", reason="unknown_identity")

        if is_account_locked(identity.locked_until, now):
            self._audit_login_failure(email, identity, "locked", meta)
            raise AccountLocked(retry_after=seconds_remaining(identity.locked_until, now), reason="locked")

        if not verify_password(password, identity.hashed_password):
            attempts, locked_until = self.store.record_failed_login(identity.id, now)
            if locked_until is not None:
                logger.warning("Account %s locked until %s after %d failures", identity.id, locked_until, attempts)
                self.audit.record(
                    AuditAction.ACCOUNT_LOCKED,
                    success=False,
                    actor=identity,
                    resource_type="identity",
                    resource_id=identity.id,
                    details={"failed_attempts": attempts, "locked_until": locked_until.isoformat()},
                    meta=meta,
                )
                raise AccountLocked(retry_after=seconds_remaining(locked_until, now), reason="threshold_reached")
            self._audit_login_failure(email, identity, "bad_password", meta, attempts=attempts)
            raise AuthenticationFailed(INVALID_CREDENTIALS, code="invalid_credentials", reason="bad_password")

        if identity.status == AccountStatus.pending:
            self._audit_login_failure(email, identity, "pending_approval", meta)
            raise AccountPending(reason="pending_approval")
        if identity.status != AccountStatus.active:
            self._audit_login_failure(email, identity, "deactivated", meta)
            raise AuthenticationFailed(INVALID_CREDENTIALS, code="invalid_credentials", reason="deactivated")

        self.store.reset_failed_logins(identity.id)

        if identity.two_factor_enabled:
            if not two_factor_code:
                self._audit_login_failure(email, identity, "two_factor_required", meta)
                raise AuthenticationFailed(
                    "Two-factor authentication code required.", code="two_factor_required", reason="missing_code"
                )
            method = check_second_factor(self.store, self.secret_box, identity, two_factor_code)
            if method is None:
                self.audit.record(
                    AuditAction.TWO_FACTOR_FAILED,
                    success=False,
                    actor=identity,
                    resource_type="identity",
                    resource_id=identity.id,
                    meta=meta,
                )
                raise AuthenticationFailed(
                    "Invalid two-factor authentication code.", code="invalid_two_factor_code", reason="bad_code"
                )

        result = self._open_session(identity, AuthSource.local, now)
        self.store.update_last_login(identity.id, now)
        self.audit.record(
            AuditAction.LOGIN,
            success=True,
            actor=identity,
            resource_type="identity",
            resource_id=identity.id,
            details={"method": "password", "two_factor": identity.two_factor_enabled},
            meta=meta,
        )
        return result

    def _audit_login_failure(
        self, email: str, identity: Identity | None, reason: str, meta: RequestMeta | None, **extra
    ) -> None:
        self.audit.record(
            AuditAction.LOGIN_FAILED,
            success=False,
            actor=identity,
            actor_name=None if identity else UNKNOWN_ACTOR,
            resource_type="identity",
            resource_id=identity.id if identity else None,
            details={"reason": reason, "email": email, **extra},
            meta=meta,
        )

    # ------------------------------------------------------------------
    # Delegated login
    # ------------------------------------------------------------------

    def login_with_claims(self, claims: DelegatedClaims, token: dict, meta: RequestMeta | None = None) -> LoginResult:
        """Create a session from verified provider claims.

        The identity is resolved only from the provider's subject and email;
        nothing the browser sends is consulted.
        """
        now = self.clock()
        try:
            identity = self.store.upsert_from_claims(claims.subject, claims.email, claims.first_name, claims.last_name)
        except ValueError as exc:
            self.audit.record(
                AuditAction.DELEGATED_LOGIN_FAILED,
                success=False,
                actor_name=UNKNOWN_ACTOR,
                details={"reason": str(exc), "email": claims.email},
                meta=meta,
            )
            raise AuthenticationFailed("Delegated login failed.", code="delegated_login_failed", reason=str(exc)) from exc

        if identity.status == AccountStatus.deactivated:
            self.audit.record(
                AuditAction.DELEGATED_LOGIN_FAILED,
                success=False,
                actor=identity,
                details={"reason": "deactivated"},
                meta=meta,
            )
            raise AuthorizationDenied("Account is deactivated.", code="account_deactivated", reason="deactivated")
        if identity.status == AccountStatus.pending:
            self.audit.record(
                AuditAction.DELEGATED_LOGIN_FAILED,
                success=False,
                actor=identity,
                details={"reason": "pending_approval"},
                meta=meta,
            )
            raise AccountPending(reason="pending_approval")

        result = self._open_session(identity, AuthSource.delegated, now, token=token)
        self.store.update_last_login(identity.id, now)
        self.audit.record(
            AuditAction.DELEGATED_LOGIN,
            success=True,
            actor=identity,
            resource_type="identity",
            resource_id=identity.id,
            details={"method": "oidc"},
            meta=meta,
        )
        return result

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def _open_session(
        self, identity: Identity, source: AuthSource, now: datetime, token: dict | None = None
    ) -> LoginResult:
        timeout_minutes = int(self.settings_cache.get()["session_timeout_minutes"])
        session_id = generate_session_id()
        session = Session(
            sid_hash=hash_session_id(session_id),
            identity_id=identity.id,
            source=source,
            created_at=now,
            expires_at=now + timedelta(minutes=timeout_minutes),
            last_seen_at=now,
        )
        if token is not None:
            session.access_token = self._seal(token.get("access_token"))
            session.refresh_token = self._seal(token.get("refresh_token"))
            expiry = token_expiry(token)
            session.token_expires_at = datetime.fromtimestamp(expiry, timezone.utc) if expiry else None
        self.store.create_session(session)
        principal = Principal.from_identity(identity, source, session_id=session.sid_hash)
        return LoginResult(principal=principal, identity=identity, session_id=session_id, max_age=timeout_minutes * 60)

    def resolve(self, session_id: str | None, meta: RequestMeta | None = None) -> Principal | None:
        """Map a cookie value to a Principal. Never raises for bad input; returns None instead."""
        if not session_id or len(session_id) > 256:
            return None
        sid_hash = hash_session_id(session_id)
        session = self.store.get_session(sid_hash)
        if session is None:
            return None

        now = self.clock()
        idle_minutes = int(self.settings_cache.get()["idle_timeout_minutes"])
        if now >= session.expires_at:
            self._expire(session, "absolute_timeout", meta)
            return None
        if idle_minutes > 0 and now - session.last_seen_at > timedelta(minutes=idle_minutes):
            self._expire(session, "idle_timeout", meta)
            return None

        if (
            session.source == AuthSource.delegated
            and session.token_expires_at is not None
            and now >= session.token_expires_at
        ):
            if not self._refresh(session):
                self._expire(session, "refresh_failed", meta)
                return None

        identity = self.store.get_by_id(session.identity_id)
        if identity is None or identity.status != AccountStatus.active:
            self._expire(session, "identity_inactive", meta)
            return None

        self.store.touch_session(sid_hash, now)
        return Principal.from_identity(identity, session.source, session_id=sid_hash)

    def _refresh(self, session: Session) -> bool:
        if self.token_refresher is None or not session.refresh_token:
            return False
        try:
            refresh_token = self.secret_box.decrypt(session.refresh_token)
        except InfrastructureError:
            logger.warning("Stored refresh token for session of identity %s is unreadable", session.identity_id)
            return False
        token = self.token_refresher(refresh_token)
        if not token or not token.get("access_token"):
            return False
        expiry = token_expiry(token)
        self.store.update_session_tokens(
            session.sid_hash,
            access_token=self._seal(token.get("access_token")),
            refresh_token=self._seal(token.get("refresh_token") or refresh_token),
            token_expires_at=datetime.fromtimestamp(expiry, timezone.utc) if expiry else None,
        )
        return True

    def _expire(self, session: Session, reason: str, meta: RequestMeta | None) -> None:
        self.store.delete_session(session.sid_hash)
        self.audit.record(
            AuditAction.SESSION_EXPIRED,
            success=True,
            resource_type="identity",
            resource_id=session.identity_id,
            details={"reason": reason, "source": session.source.value},
            meta=meta,
        )

    def logout(self, session_id: str | None, principal: Principal | None = None, meta: RequestMeta | None = None) -> bool:
        """Destroy the session. Returns False when there was nothing to destroy; never raises."""
        if not session_id or len(session_id) > 256:
            return False
        removed = self.store.delete_session(hash_session_id(session_id))
        if removed:
            self.audit.record(AuditAction.LOGOUT, success=True, actor=principal, meta=meta)
        return removed

    def revoke_all_sessions(self, identity_id: int) -> int:
        return self.store.delete_sessions_for(identity_id)

    def _seal(self, value: str | None) -> str | None:
        return self.secret_box.encrypt(value) if value else None


def check_second_factor(store: AuthStore, secret_box: SecretBox, identity: Identity, code: str) -> str | None:
    """Verify a TOTP or backup code. Returns "totp", "backup_code", or None when neither matches.

    A 6-digit value is checked as TOTP only; anything else is tried as a
    backup code, which is consumed on success.
    """
    code = code.strip()
    if is_totp_code_format(code):
        if identity.totp_secret and verify_totp_code(secret_box.decrypt(identity.totp_secret), code):
            return "totp"
        return None
    if store.consume_backup_code(identity.id, hash_backup_code(code)):
        return "backup_code"
    return None
