"""
api/routes/admin.py -- Administrator endpoints: API keys, audit log, users, settings.

Routes:
  POST   /api/admin/apikeys/create                -- issue a key; raw value returned once
  GET    /api/admin/apikeys                       -- list keys (masked only)
  DELETE /api/admin/apikeys/{id}                  -- revoke a key (creator or super admin)
  GET    /api/admin/apikeys/permissions/available -- the permission vocabulary
  GET    /api/admin/audit-logs                    -- filtered audit listing
  GET    /api/admin/users                         -- list identities, optional ?status=
  POST   /api/admin/users/{id}/approve            -- pending -> active
  POST   /api/admin/users/{id}/unlock             -- clear lockout counter
  POST   /api/admin/users/{id}/deactivate         -- disable and end all sessions
  PATCH  /api/admin/users/{id}/role               -- change role (super admin only)
  GET    /api/admin/settings                      -- system settings
  PATCH  /api/admin/settings                      -- update system settings

Every route passes two router-level checks, in order:
  require_admin            session + admin/super_admin role
  require_whitelisted_ip   ADMIN_IPS allow-list [M8]

Security:
  [M4] Deactivation and role changes refuse to remove the last active admin
       and refuse to act on the caller's own account.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.models import (
    ApiKeyCreatedResponse,
    ApiKeyCreateRequest,
    ApiKeyResponse,
    AuditEntryResponse,
    PermissionInfo,
    RoleUpdateRequest,
    SystemSettingsPatch,
    SystemSettingsResponse,
    UserResponse,
)
from audit.models import AuditAction, AuditFilter
from auth.api_keys import STANDARD_PERMISSIONS, ApiKeyGateway
from auth.dependencies import require_admin, require_super_admin, require_whitelisted_ip
from auth.models import ADMIN_ROLES, AccountStatus, Identity, Principal
from auth.store import AuthStore
from core.errors import Conflict, NotFound, ValidationFailed
from core.http import request_meta

# Auth policy: admin role, then IP allow-list, on every route below.
router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin), Depends(require_whitelisted_ip)])


def _get_identity(store: AuthStore, identity_id: int) -> Identity:
    identity = store.get_by_id(identity_id)
    if identity is None:
        raise NotFound("User not found.")
    return identity


def _guard_admin_removal(store: AuthStore, target: Identity, principal: Principal) -> None:
    """[M4] Block self-targeting and removing the last active admin."""
    if target.id == principal.subject_id:
        raise ValidationFailed("You cannot change your own account this way.", code="self_modification")
    if target.is_admin and target.status == AccountStatus.active and store.count_active_admins() <= 1:
        raise ValidationFailed("Cannot remove the last active admin account.", code="last_admin")


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


@router.post("/apikeys/create", response_model=ApiKeyCreatedResponse, status_code=201)
def create_api_key(
    request: Request,
    body: ApiKeyCreateRequest,
    principal: Principal = Depends(require_admin),
) -> JSONResponse:
    """Issue an API key. The raw key is in this response and nowhere else, ever."""
    gateway: ApiKeyGateway = request.app.state.api_keys
    key, raw_key = gateway.create_key(
        body.name,
        body.permissions,
        principal,
        expires_in_days=body.expires_in,
        description=body.description,
        meta=request_meta(request),
    )
    payload = ApiKeyCreatedResponse.from_api_key(key, key=raw_key)
    response = JSONResponse(status_code=201, content=payload.model_dump(mode="json", by_alias=True))
    response.headers["Cache-Control"] = "no-store"
    return response


@router.get("/apikeys", response_model=list[ApiKeyResponse])
def list_api_keys(request: Request, principal: Principal = Depends(require_admin)) -> list[ApiKeyResponse]:
    gateway: ApiKeyGateway = request.app.state.api_keys
    return [ApiKeyResponse.from_api_key(k) for k in gateway.list_keys(principal)]


@router.get("/apikeys/permissions/available", response_model=list[PermissionInfo])
def available_permissions() -> list[PermissionInfo]:
    return [PermissionInfo(permission=p, description=d) for p, d in STANDARD_PERMISSIONS.items()]


@router.delete("/apikeys/{key_id}", response_model=ApiKeyResponse)
def revoke_api_key(
    request: Request, key_id: int, principal: Principal = Depends(require_admin)
) -> ApiKeyResponse:
    """Revoke a key permanently. Only its creator or a super admin may do this."""
    gateway: ApiKeyGateway = request.app.state.api_keys
    return ApiKeyResponse.from_api_key(gateway.revoke_key(key_id, principal, request_meta(request)))


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------


@router.get("/audit-logs", response_model=list[AuditEntryResponse])
def list_audit_logs(
    request: Request,
    action: Optional[AuditAction] = None,
    status: Optional[str] = Query(default=None, pattern="^(success|failed)$"),
    resource_type: Optional[str] = Query(default=None, alias="resourceType", max_length=50),
    date_from: Optional[date] = Query(default=None, alias="dateFrom"),
    date_to: Optional[date] = Query(default=None, alias="dateTo"),
    search: Optional[str] = Query(default=None, max_length=255),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
) -> list[AuditEntryResponse]:
    criteria = AuditFilter(
        action=action,
        success=None if status is None else status == "success",
        resource_type=resource_type,
        date_from=date_from,
        date_to=date_to,
        search=search,
        limit=limit,
        offset=offset,
    )
    return [AuditEntryResponse.from_entry(e) for e in request.app.state.audit_store.list_filtered(criteria)]


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@router.get("/users", response_model=list[UserResponse])
def list_users(request: Request, status: Optional[AccountStatus] = None) -> list[UserResponse]:
    store: AuthStore = request.app.state.store
    return [UserResponse.from_identity(i) for i in store.list_identities(status)]


@router.post("/users/{identity_id}/approve", response_model=UserResponse)
def approve_user(
    request: Request, identity_id: int, principal: Principal = Depends(require_admin)
) -> UserResponse:
    store: AuthStore = request.app.state.store
    target = _get_identity(store, identity_id)
    if target.status != AccountStatus.pending:
        raise Conflict("User is not pending approval.", code="not_pending")
    store.update_identity(identity_id, status=AccountStatus.active)
    request.app.state.audit.record(
        AuditAction.USER_APPROVED,
        success=True,
        actor=principal,
        resource_type="identity",
        resource_id=identity_id,
        meta=request_meta(request),
    )
    return UserResponse.from_identity(store.get_by_id(identity_id))


@router.post("/users/{identity_id}/unlock", response_model=UserResponse)
def unlock_user(
    request: Request, identity_id: int, principal: Principal = Depends(require_admin)
) -> UserResponse:
    store: AuthStore = request.app.state.store
    target = _get_identity(store, identity_id)
    store.reset_failed_logins(identity_id)
    request.app.state.audit.record(
        AuditAction.ACCOUNT_UNLOCKED,
        success=True,
        actor=principal,
        resource_type="identity",
        resource_id=identity_id,
        details={"previous_failed_attempts": target.failed_login_attempts},
        meta=request_meta(request),
    )
    return UserResponse.from_identity(store.get_by_id(identity_id))


@router.post("/users/{identity_id}/deactivate", response_model=UserResponse)
def deactivate_user(
    request: Request, identity_id: int, principal: Principal = Depends(require_admin)
) -> UserResponse:
    """Deactivate an identity and end every session it holds."""
    store: AuthStore = request.app.state.store
    target = _get_identity(store, identity_id)
    if target.status == AccountStatus.deactivated:
        raise Conflict("User is already deactivated.", code="already_deactivated")
    _guard_admin_removal(store, target, principal)
    store.update_identity(identity_id, status=AccountStatus.deactivated)
    ended = request.app.state.authenticator.revoke_all_sessions(identity_id)
    request.app.state.audit.record(
        AuditAction.USER_DEACTIVATED,
        success=True,
        actor=principal,
        resource_type="identity",
        resource_id=identity_id,
        details={"sessions_ended": ended},
        meta=request_meta(request),
    )
    return UserResponse.from_identity(store.get_by_id(identity_id))


@router.patch("/users/{identity_id}/role", response_model=UserResponse)
def change_role(
    request: Request,
    identity_id: int,
    body: RoleUpdateRequest,
    principal: Principal = Depends(require_super_admin),
) -> UserResponse:
    store: AuthStore = request.app.state.store
    target = _get_identity(store, identity_id)
    if target.role == body.role:
        return UserResponse.from_identity(target)
    if body.role not in ADMIN_ROLES:
        _guard_admin_removal(store, target, principal)
    store.update_identity(identity_id, role=body.role)
    request.app.state.audit.record(
        AuditAction.USER_ROLE_CHANGED,
        success=True,
        actor=principal,
        resource_type="identity",
        resource_id=identity_id,
        details={"from": target.role.value, "to": body.role.value},
        meta=request_meta(request),
    )
    return UserResponse.from_identity(store.get_by_id(identity_id))


# ---------------------------------------------------------------------------
# System settings
# ---------------------------------------------------------------------------


@router.get("/settings", response_model=SystemSettingsResponse)
def get_system_settings(request: Request) -> SystemSettingsResponse:
    return SystemSettingsResponse(**request.app.state.settings_cache.get())


@router.patch("/settings", response_model=SystemSettingsResponse)
def update_system_settings(
    request: Request, body: SystemSettingsPatch, principal: Principal = Depends(require_admin)
) -> SystemSettingsResponse:
    """Apply a partial update and drop the cached copy so it takes effect immediately."""
    changes = body.model_dump(exclude_none=True)
    if not changes:
        raise ValidationFailed("No fields to update.", code="no_changes")
    store: AuthStore = request.app.state.store
    store.update_system_settings(**changes)
    request.app.state.settings_cache.invalidate()
    request.app.state.audit.record(
        AuditAction.SETTINGS_CHANGED,
        success=True,
        actor=principal,
        resource_type="system_settings",
        details=changes,
        meta=request_meta(request),
    )
    return SystemSettingsResponse(**request.app.state.settings_cache.get())
