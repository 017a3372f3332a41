"""
API request and response models for the registry REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py and
audit/models.py, which own the internal domain representation. Route
handlers map between the two with the from_* factory methods below.

JSON field names are camelCase on the wire (firstName, expiresIn, ...) via
an alias generator; Python code uses snake_case. populate_by_name lets tests
and internal callers construct models with either spelling.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from audit.models import AuditEntry
from auth.models import ApiKey, AuthSource, Identity, Principal, Role

_REQUEST_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)
_RESPONSE_CONFIG = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/auth/register.

    Only length caps live here. Format and confirmation checks happen in the
    route so each failure gets a specific 400 message.
    """

    model_config = _REQUEST_CONFIG

    email: str = Field(max_length=255)
    password: str = Field(max_length=128)
    confirm_password: str = Field(max_length=128)
    first_name: Optional[str] = Field(default=None, max_length=100)
    last_name: Optional[str] = Field(default=None, max_length=100)


class LoginRequest(BaseModel):
    """Request body for POST /api/auth/login."""

    model_config = _REQUEST_CONFIG

    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=128)
    two_factor_code: Optional[str] = Field(default=None, max_length=32)


class ForgotPasswordRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    email: str = Field(min_length=1, max_length=255)


class ForgotPasswordResponse(BaseModel):
    """Same body whether or not the email exists.

    token and expiresAt are filled only when DEBUG is on; otherwise the
    token would go out by email, which this service does not send.
    """

    model_config = _RESPONSE_CONFIG

    message: str = "If the email is registered, a password reset link has been sent."
    token: Optional[str] = None
    expires_at: Optional[datetime] = None


class ResetPasswordRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    token: str = Field(min_length=1, max_length=256)
    password: str = Field(max_length=128)
    confirm_password: str = Field(max_length=128)


class ChangePasswordRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    current_password: str = Field(min_length=1, max_length=128)
    new_password: str = Field(max_length=128)
    confirm_password: str = Field(max_length=128)


class UserResponse(BaseModel):
    """Minimal identity view returned by login, registration and admin user routes."""

    model_config = _RESPONSE_CONFIG

    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    role: Role
    status: str
    two_factor_enabled: bool = False
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_identity(cls, identity: Identity) -> "UserResponse":
        return cls(
            id=identity.id,
            email=identity.email,
            first_name=identity.first_name,
            last_name=identity.last_name,
            role=identity.role,
            status=identity.status.value,
            two_factor_enabled=identity.two_factor_enabled,
            locked_until=identity.locked_until,
            last_login=identity.last_login,
            created_at=identity.created_at,
        )


class LoginResponse(BaseModel):
    model_config = _RESPONSE_CONFIG

    message: str
    user: UserResponse


class PrincipalResponse(BaseModel):
    """Response for GET /api/auth/user -- the caller as the server sees it."""

    model_config = _RESPONSE_CONFIG

    id: int
    display_name: str
    email: Optional[str] = None
    role: Optional[Role] = None
    source: AuthSource

    @classmethod
    def from_principal(cls, principal: Principal) -> "PrincipalResponse":
        return cls(
            id=principal.subject_id,
            display_name=principal.display_name,
            email=principal.email,
            role=principal.role,
            source=principal.source,
        )


# ---------------------------------------------------------------------------
# Two-factor
# ---------------------------------------------------------------------------


class TwoFactorSetupResponse(BaseModel):
    """The secret and backup codes are shown here once; nothing is stored until verify."""

    model_config = _RESPONSE_CONFIG

    secret: str
    provisioning_uri: str
    backup_codes: list[str]


class TwoFactorVerifyRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    token: str = Field(max_length=32)
    secret: str = Field(min_length=16, max_length=64)
    backup_codes: list[str] = Field(default_factory=list, max_length=20)


class TwoFactorCodeRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    token: str = Field(min_length=1, max_length=32)


class TwoFactorStatusResponse(BaseModel):
    model_config = _RESPONSE_CONFIG

    enabled: bool
    backup_codes_remaining: int = 0


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class ApiKeyCreateRequest(BaseModel):
    """Request body for POST /api/admin/apikeys/create. expiresIn is in days."""

    model_config = _REQUEST_CONFIG

    name: str = Field(min_length=1, max_length=100)
    permissions: list[str] = Field(min_length=1, max_length=20)
    expires_in: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)


class ApiKeyResponse(BaseModel):
    """Key metadata. The raw key never appears here, only the masked form."""

    model_config = _RESPONSE_CONFIG

    id: int
    name: str
    description: Optional[str] = None
    masked_key: str
    permissions: list[str]
    created_by: int
    created_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    revoked_by: Optional[int] = None
    usage_count: int = 0
    last_used_at: Optional[datetime] = None

    @classmethod
    def from_api_key(cls, api_key: ApiKey, **extra) -> "ApiKeyResponse":
        return cls(
            id=api_key.id,
            name=api_key.name,
            description=api_key.description,
            masked_key=api_key.masked_key,
            permissions=api_key.permissions,
            created_by=api_key.created_by,
            created_at=api_key.created_at,
            expires_at=api_key.expires_at,
            revoked=api_key.revoked,
            revoked_at=api_key.revoked_at,
            revoked_by=api_key.revoked_by,
            usage_count=api_key.usage_count,
            last_used_at=api_key.last_used_at,
            **extra,
        )


class ApiKeyCreatedResponse(ApiKeyResponse):
    """Creation response -- the only response that ever carries the raw key."""

    key: str
    message: str = "Store this key securely. It will not be shown again."


class PermissionInfo(BaseModel):
    model_config = ConfigDict(frozen=True)

    permission: str
    description: str


class ExternalKeyResponse(BaseModel):
    """Response for GET /api/external/me."""

    model_config = _RESPONSE_CONFIG

    key_id: int
    name: str
    permissions: list[str]


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------


class AuditEntryResponse(BaseModel):
    model_config = _RESPONSE_CONFIG

    id: int
    action: str
    success: bool
    actor_id: Optional[int] = None
    actor_name: str
    actor_role: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: dict = Field(default_factory=dict)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: AuditEntry) -> "AuditEntryResponse":
        return cls(
            id=entry.id,
            action=entry.action.value,
            success=entry.success,
            actor_id=entry.actor_id,
            actor_name=entry.actor_name,
            actor_role=entry.actor_role,
            resource_type=entry.resource_type,
            resource_id=entry.resource_id,
            details=entry.details,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            created_at=entry.created_at,
        )


# ---------------------------------------------------------------------------
# Admin: users and settings
# ---------------------------------------------------------------------------


class RoleUpdateRequest(BaseModel):
    model_config = _REQUEST_CONFIG

    role: Role


class SystemSettingsResponse(BaseModel):
    model_config = _RESPONSE_CONFIG

    session_timeout_minutes: int
    idle_timeout_minutes: int
    self_registration_enabled: bool


class SystemSettingsPatch(BaseModel):
    """Partial update; omitted fields keep their current value."""

    model_config = _REQUEST_CONFIG

    session_timeout_minutes: Optional[int] = Field(default=None, ge=5, le=43200)
    idle_timeout_minutes: Optional[int] = Field(default=None, ge=0, le=1440)
    self_registration_enabled: Optional[bool] = None
