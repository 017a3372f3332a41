"""
auth/api_keys.py -- API key issuance, verification, and revocation.

Integrators call /api/external/* with `Authorization: Bearer ALWR_<48 hex>`.
authenticate() is stateless apart from the usage counter:

  1. No header, or not a Bearer header  -> 401 with a format hint
  2. Value not shaped like a key        -> 401, audit reason "malformed"
  3. No stored key with that hash       -> 401, audit reason "not_found"
  4. Key revoked                        -> 401, audit reason "revoked"
  5. Key past expires_at                -> 401, audit reason "expired"
  6. Constant-time digest check fails   -> 401, audit reason "verification_failed"
  7. Success -> usage_count + 1, last_used_at stamped, audit success

Steps 2-6 all answer with the same external message, so a caller cannot
tell a revoked key from a mistyped one. The reason lives only in the audit
entry.

Permissions come from STANDARD_PERMISSIONS. A key's set is fixed at creation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from audit.models import UNKNOWN_ACTOR, AuditAction
from auth.credentials import (
    API_KEY_FORMAT_HINT,
    generate_api_key,
    hash_api_key,
    is_valid_api_key_format,
    mask_api_key,
    parse_bearer_header,
    verify_api_key,
)
from auth.models import ApiKey, Principal, Role
from core.errors import AuthenticationFailed, AuthorizationDenied, Conflict, NotFound, ValidationFailed

if TYPE_CHECKING:
    from audit.trail import AuditTrail
    from auth.store import AuthStore
    from core.http import RequestMeta

logger = logging.getLogger("alwr.auth.api_keys")

STANDARD_PERMISSIONS: dict[str, str] = {
    "read:customers": "List and view customer data",
    "read:documents": "View customer documents",
    "read:subscriptions": "View subscription information",
    "read:reports": "Access reporting data",
    "write:customers": "Create and update customer records",
    "write:documents": "Upload and manage documents",
    "write:subscriptions": "Create subscriptions",
    "admin:access": "Full admin access",
    "webhooks:receive": "Receive webhook events",
    "webhooks:manage": "Manage webhook subscriptions",
}

INVALID_KEY_MESSAGE = "Invalid API key."
MAX_EXPIRY_DAYS = 3650


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ApiKeyGateway:
    def __init__(self, store: AuthStore, audit: AuditTrail, clock=_utcnow) -> None:
        self.store = store
        self.audit = audit
        self.clock = clock

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def authenticate(self, authorization: str | None, meta: RequestMeta | None = None) -> Principal:
        raw_key = parse_bearer_header(authorization)
        if raw_key is None:
            self._audit_failure("missing_header", None, meta)
            raise AuthenticationFailed(
                f"Missing or invalid Authorization header. {API_KEY_FORMAT_HINT}",
                code="api_key_required",
                reason="missing_header",
            )

        if not is_valid_api_key_format(raw_key):
            self._fail("malformed", None, meta)

        stored = self.store.get_api_key_by_hash(hash_api_key(raw_key))
        if stored is None:
            self._fail("not_found", None, meta)
        if stored.revoked:
            self._fail("revoked", stored, meta)
        if stored.expires_at is not None and self.clock() >= stored.expires_at:
            self._fail("expired", stored, meta)
        if not verify_api_key(raw_key, stored.key_hash):
            self._fail("verification_failed", stored, meta)

        stored.usage_count = self.store.record_api_key_use(stored.id, self.clock())
        principal = Principal.from_api_key(stored)
        self.audit.record(
            AuditAction.API_KEY_AUTH_SUCCESS,
            success=True,
            actor=principal,
            resource_type="api_key",
            resource_id=stored.id,
            details={"permissions": sorted(stored.permissions)},
            meta=meta,
        )
        return principal

    def _fail(self, reason: str, key: ApiKey | None, meta: RequestMeta | None):
        self._audit_failure(reason, key, meta)
        raise AuthenticationFailed(INVALID_KEY_MESSAGE, code="invalid_api_key", reason=reason)

    def _audit_failure(self, reason: str, key: ApiKey | None, meta: RequestMeta | None) -> None:
        self.audit.record(
            AuditAction.API_KEY_AUTH_FAILURE,
            success=False,
            actor_name=key.name if key else UNKNOWN_ACTOR,
            resource_type="api_key",
            resource_id=key.id if key else None,
            details={"reason": reason},
            meta=meta,
        )

    def check_permission(self, principal: Principal, permission: str, meta: RequestMeta | None = None) -> None:
        """Raise AuthorizationDenied (and audit it) unless the key carries `permission`."""
        if principal.has_permission(permission):
            return
        self.audit.record(
            AuditAction.API_KEY_PERMISSION_DENIED,
            success=False,
            actor=principal,
            resource_type="api_key",
            resource_id=principal.api_key_id,
            details={"required_permission": permission},
            meta=meta,
        )
        raise AuthorizationDenied(
            f"API key lacks required permission: {permission}",
            code="permission_denied",
            reason=f"missing {permission}",
        )

    # ------------------------------------------------------------------
    # Management (admin routes)
    # ------------------------------------------------------------------

    def create_key(
        self,
        name: str,
        permissions: list[str],
        creator: Principal,
        expires_in_days: int | None = None,
        description: str | None = None,
        meta: RequestMeta | None = None,
    ) -> tuple[ApiKey, str]:
        """Issue a key. Returns (stored key, raw key); the raw key is never retrievable again."""
        name = (name or "").strip()
        if not name:
            raise ValidationFailed("API key name is required.")
        if not permissions:
            raise ValidationFailed("At least one permission is required.")
        unknown = sorted(set(permissions) - set(STANDARD_PERMISSIONS))
        if unknown:
            raise ValidationFailed(f"Unknown permissions: {', '.join(unknown)}")
        if expires_in_days is not None and not 0 < expires_in_days <= MAX_EXPIRY_DAYS:
            raise ValidationFailed(f"expiresIn must be between 1 and {MAX_EXPIRY_DAYS} days.")

        raw_key = generate_api_key()
        expires_at = self.clock() + timedelta(days=expires_in_days) if expires_in_days else None
        key = ApiKey(
            name=name,
            description=description,
            key_hash=hash_api_key(raw_key),
            masked_key=mask_api_key(raw_key),
            created_by=creator.subject_id,
            permissions=sorted(set(permissions)),
            expires_at=expires_at,
        )
        key_id = self.store.create_api_key(key)
        stored = self.store.get_api_key(key_id)
        self.audit.record(
            AuditAction.API_KEY_CREATED,
            success=True,
            actor=creator,
            resource_type="api_key",
            resource_id=key_id,
            details={"name": name, "permissions": stored.permissions, "expires_in_days": expires_in_days},
            meta=meta,
        )
        logger.info("API key %s (%s) created by identity %s", key_id, stored.masked_key, creator.subject_id)
        return stored, raw_key

    def list_keys(self, principal: Principal) -> list[ApiKey]:
        """Super admins see every key; admins see the keys they created."""
        if principal.role == Role.super_admin:
            return self.store.list_api_keys()
        return self.store.list_api_keys(created_by=principal.subject_id)

    def revoke_key(self, key_id: int, principal: Principal, meta: RequestMeta | None = None) -> ApiKey:
        key = self.store.get_api_key(key_id)
        if key is None:
            raise NotFound("API key not found.")
        if key.created_by != principal.subject_id and principal.role != Role.super_admin:
            raise AuthorizationDenied("You can only revoke API keys you created.", reason="not_owner")
        if not self.store.revoke_api_key(key_id, principal.subject_id, self.clock()):
            raise Conflict("API key is already revoked.", code="already_revoked")
        self.audit.record(
            AuditAction.API_KEY_REVOKED,
            success=True,
            actor=principal,
            resource_type="api_key",
            resource_id=key_id,
            details={"name": key.name},
            meta=meta,
        )
        return self.store.get_api_key(key_id)
