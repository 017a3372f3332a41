"""
auth/passwords.py -- Forgotten-password reset and authenticated password change.

Reset, in two requests:
  1. request_reset(email) mints a random token for an active identity and
     stores only its SHA-256 with a one-hour expiry. Any earlier token for
     that identity is dropped. Unknown, pending and deactivated emails get
     None back; the HTTP layer answers both cases with the same body.
  2. reset(token, new_password) consumes the token with one atomic DELETE,
     so it works exactly once. It then sets the new hash, clears any lockout
     and ends every session of the identity.

Change:
  change(principal, current, new) re-checks the current password, sets the
  new one and ends every other session. The caller's own session survives.

Every outcome is audited, success or not.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from audit.models import UNKNOWN_ACTOR, AuditAction
from auth.credentials import (
    PASSWORD_RULE,
    generate_reset_token,
    hash_password,
    hash_reset_token,
    normalize_email,
    validate_password,
    verify_password,
)
from auth.models import AccountStatus
from core.errors import AuthenticationFailed, ValidationFailed

if TYPE_CHECKING:
    from audit.trail import AuditTrail
    from auth.models import Principal
    from auth.store import AuthStore
    from core.http import RequestMeta

logger = logging.getLogger("alwr.auth.passwords")

RESET_TOKEN_TTL = timedelta(hours=1)
INVALID_RESET_TOKEN = "Invalid or expired reset token."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ResetTicket:
    """A freshly minted reset token. The raw value exists only here."""

    token: str
    expires_at: datetime


class PasswordManager:
    def __init__(
        self,
        store: AuthStore,
        audit: AuditTrail,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock

    def request_reset(self, email: str, meta: RequestMeta | None = None) -> ResetTicket | None:
        email = normalize_email(email)
        now = self.clock()
        identity = self.store.get_by_email(email)
        if identity is None or identity.status != AccountStatus.active:
            self.audit.record(
                AuditAction.PASSWORD_RESET_REQUESTED,
                success=False,
                actor=identity,
                actor_name=None if identity else UNKNOWN_ACTOR,
                resource_type="identity",
                resource_id=identity.id if identity else None,
                details={"reason": identity.status.value if identity else "unknown_identity", "email": email},
                meta=meta,
            )
            return None

        token = generate_reset_token()
        expires_at = now + RESET_TOKEN_TTL
        self.store.create_password_reset(identity.id, hash_reset_token(token), expires_at, now)
        self.audit.record(
            AuditAction.PASSWORD_RESET_REQUESTED,
            success=True,
            actor=identity,
            resource_type="identity",
            resource_id=identity.id,
            details={"expires_at": expires_at.isoformat()},
            meta=meta,
        )
        return ResetTicket(token=token, expires_at=expires_at)

    def reset(self, token: str, new_password: str, meta: RequestMeta | None = None) -> int:
        """Redeem a reset token. Returns the identity id; raises ValidationFailed otherwise.

        The password is checked before the token is touched, so a rejected
        password does not burn a valid token.
        """
        if not validate_password(new_password):
            raise ValidationFailed(PASSWORD_RULE)

        identity_id = None
        if token and len(token) <= 256:
            identity_id = self.store.consume_password_reset(hash_reset_token(token), self.clock())
        identity = self.store.get_by_id(identity_id) if identity_id is not None else None
        if identity is None or identity.status != AccountStatus.active:
            self.audit.record(
                AuditAction.PASSWORD_RESET_FAILED,
                success=False,
                actor=identity,
                actor_name=None if identity else UNKNOWN_ACTOR,
                details={"reason": "invalid_token" if identity is None else identity.status.value},
                meta=meta,
            )
            raise ValidationFailed(INVALID_RESET_TOKEN, code="invalid_reset_token")

        self.store.set_password(identity.id, hash_password(new_password))
        ended = self.store.delete_sessions_for(identity.id)
        logger.info("Password reset for identity %s; %d session(s) ended", identity.id, ended)
        self.audit.record(
            AuditAction.PASSWORD_RESET,
            success=True,
            actor=identity,
            resource_type="identity",
            resource_id=identity.id,
            details={"sessions_ended": ended},
            meta=meta,
        )
        return identity.id

    def change(
        self, principal: Principal, current_password: str, new_password: str, meta: RequestMeta | None = None
    ) -> int:
        """Change the caller's password. Returns how many other sessions were ended."""
        identity = self.store.get_by_id(principal.subject_id)
        if identity is None:
            raise AuthenticationFailed("Authentication required.", reason="identity_missing")
        if not identity.hashed_password:
            raise ValidationFailed(
                "This account signs in through the identity provider and has no password.",
                code="no_local_password",
            )
        if not validate_password(new_password):
            raise ValidationFailed(PASSWORD_RULE)
        if new_password == current_password:
            raise ValidationFailed("New password must be different from the current password.")

        if not verify_password(current_password, identity.hashed_password):
            self.audit.record(
                AuditAction.PASSWORD_CHANGE_FAILED,
                success=False,
                actor=principal,
                resource_type="identity",
                resource_id=identity.id,
                details={"reason": "bad_current_password"},
                meta=meta,
            )
            raise ValidationFailed("Current password is incorrect.", code="invalid_current_password")

        self.store.set_password(identity.id, hash_password(new_password))
        ended = self.store.delete_sessions_for(identity.id, keep_sid_hash=principal.session_id)
        self.audit.record(
            AuditAction.PASSWORD_CHANGED,
            success=True,
            actor=principal,
            resource_type="identity",
            resource_id=identity.id,
            details={"sessions_ended": ended},
            meta=meta,
        )
        return ended
