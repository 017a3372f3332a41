"""
audit/models.py -- Audit entry shape and the closed set of audit actions.

Layer rule: no imports from api/, auth/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum

UNKNOWN_ACTOR = "unknown"


class AuditAction(str, Enum):
    """Audit action types."""

    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    LOGOUT = "logout"
    REGISTER = "register"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_UNLOCKED = "account_unlocked"
    DELEGATED_LOGIN = "delegated_login"
    DELEGATED_LOGIN_FAILED = "delegated_login_failed"
    SESSION_EXPIRED = "session_expired"
    TWO_FACTOR_ENABLED = "two_factor_enabled"
    TWO_FACTOR_DISABLED = "two_factor_disabled"
    TWO_FACTOR_FAILED = "two_factor_failed"
    PASSWORD_RESET_REQUESTED = "password_reset_requested"
    PASSWORD_RESET = "password_reset"
    PASSWORD_RESET_FAILED = "password_reset_failed"
    PASSWORD_CHANGED = "password_changed"
    PASSWORD_CHANGE_FAILED = "password_change_failed"
    API_KEY_CREATED = "api_key_created"
    API_KEY_REVOKED = "api_key_revoked"
    API_KEY_AUTH_SUCCESS = "api_key_auth_success"
    API_KEY_AUTH_FAILURE = "api_key_auth_failure"
    API_KEY_PERMISSION_DENIED = "api_key_permission_denied"
    ACCESS_DENIED = "access_denied"
    USER_APPROVED = "user_approved"
    USER_ROLE_CHANGED = "user_role_changed"
    USER_DEACTIVATED = "user_deactivated"
    SETTINGS_CHANGED = "settings_changed"


@dataclass(frozen=True)
class AuditEntry:
    """One immutable audit record.

    actor_id is None for anonymous attempts; actor_name then carries the
    UNKNOWN_ACTOR placeholder (or the email that was tried, for failed logins).
    """

    action: AuditAction
    success: bool
    actor_id: int | None = None
    actor_name: str = UNKNOWN_ACTOR
    actor_role: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    details: dict = field(default_factory=dict)
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    created_at: datetime | None = None


@dataclass
class AuditFilter:
    """Criteria for AuditStore.list_filtered(). Every field is optional.

    date_to is inclusive of the whole day. search matches actor name or
    resource id, case-insensitively.
    """

    action: AuditAction | None = None
    success: bool | None = None
    resource_type: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    search: str | None = None
    limit: int = 100
    offset: int = 0
