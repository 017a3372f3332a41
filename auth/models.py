"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic beyond small derived
properties). Stores and services do the work; these own the domain shape.

Principal is the one value every downstream consumer sees after identity
resolution. A session login, a delegated login and an API key all normalize
into it, so route code never branches on which scheme authenticated the
request.

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    customer = "customer"
    agent = "agent"
    admin = "admin"
    super_admin = "super_admin"


ADMIN_ROLES = frozenset({Role.admin, Role.super_admin})


class AccountStatus(str, Enum):
    pending = "pending"
    active = "active"
    deactivated = "deactivated"


class AuthSource(str, Enum):
    local = "local"
    delegated = "delegated"
    api_key = "api_key"


@dataclass
class Identity:
    """A person who can sign in, either with a password or through the OIDC provider.

    hashed_password is None for delegated-only identities. oidc_subject is
    None until the first delegated login links the provider's stable id.
    totp_secret holds the Fernet-encrypted TOTP secret.
    """

    email: str
    role: Role = Role.customer
    status: AccountStatus = AccountStatus.pending
    id: int | None = None
    hashed_password: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    oidc_subject: str | None = None
    totp_secret: str | None = None
    two_factor_enabled: bool = False
    failed_login_attempts: int = 0
    locked_until: datetime | None = None
    last_login: datetime | None = None
    created_at: datetime | None = None

    @property
    def display_name(self) -> str:
        full = " ".join(part for part in (self.first_name, self.last_name) if part)
        return full or self.email

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


@dataclass
class Session:
    """Server-held login record. The client only ever holds the raw id.

    sid_hash is SHA-256 of the cookie value, so a leaked sessions table does
    not yield usable cookies. access_token / refresh_token / token_expires_at
    are set only for delegated sessions.
    """

    sid_hash: str
    identity_id: int
    source: AuthSource
    created_at: datetime
    expires_at: datetime
    last_seen_at: datetime
    access_token: str | None = None
    refresh_token: str | None = None
    token_expires_at: datetime | None = None


@dataclass
class ApiKey:
    """A long-lived bearer credential issued to an integrator.

    Only key_hash (SHA-256 hex) and masked_key are persisted. The raw
    `ALWR_<48 hex>` value is returned once at creation and is unrecoverable.
    Revocation is one-way: nothing flips `revoked` back to False.
    """

    name: str
    key_hash: str
    masked_key: str
    created_by: int
    permissions: list[str] = field(default_factory=list)
    id: int | None = None
    description: str | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None
    revoked: bool = False
    revoked_at: datetime | None = None
    revoked_by: int | None = None
    usage_count: int = 0
    last_used_at: datetime | None = None


@dataclass(frozen=True)
class Principal:
    """The authenticated caller of a request, whatever the scheme."""

    subject_id: int
    display_name: str
    source: AuthSource
    email: str | None = None
    role: Role | None = None
    session_id: str | None = None
    api_key_id: int | None = None
    permissions: frozenset[str] = frozenset()

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    @classmethod
    def from_identity(cls, identity: Identity, source: AuthSource, session_id: str | None = None) -> "Principal":
        return cls(
            subject_id=identity.id,
            display_name=identity.display_name,
            email=identity.email,
            role=identity.role,
            source=source,
            session_id=session_id,
        )

    @classmethod
    def from_api_key(cls, key: ApiKey) -> "Principal":
        return cls(
            subject_id=key.id,
            display_name=key.name,
            source=AuthSource.api_key,
            api_key_id=key.id,
            permissions=frozenset(key.permissions),
        )
