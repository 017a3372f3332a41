"""
auth/dependencies.py -- FastAPI Depends() helpers forming the authorization chain.

Checks run in this order and the first failure ends the request:
  1. load_principal()              cookie -> Principal | None (never raises)
  2. get_current_principal()       None -> 401
  3. require_role(...)             role not allowed -> 403
  4. require_api_key_permission()  API-key routes only; permission missing -> 403
  5. require_whitelisted_ip()      /api/admin/* only; address not allowed -> 403

Every rejection is audit-logged with its specific reason. The external
message says which kind of check failed, never what would have passed.

Components (authenticator, gateway, whitelist, audit) are read from
request.app.state, where the lifespan placed them.

Every dependency is a plain def: each one touches the store, and FastAPI runs
sync dependencies in its thread pool, away from the event loop.

Layer rule: may import from fastapi because this module is part of the
dependency injection system. No imports from api/.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Depends, Request

from audit.models import AuditAction
from auth.models import Principal, Role
from core.errors import AuthenticationFailed, AuthorizationDenied
from core.http import get_client_ip, request_meta

_UNSET = object()


def load_principal(request: Request) -> Principal | None:
    """Resolve the session cookie to a Principal, caching the result on request.state."""
    cached = getattr(request.state, "principal", _UNSET)
    if cached is not _UNSET:
        return cached
    authenticator = request.app.state.authenticator
    cookie_name = request.app.state.settings.session_cookie_name
    principal = authenticator.resolve(request.cookies.get(cookie_name), request_meta(request))
    request.state.principal = principal
    return principal


def get_current_principal(
    request: Request, principal: Principal | None = Depends(load_principal)
) -> Principal:
    """Require a signed-in user. Raises 401 if the request carries no live session."""
    if principal is None:
        request.app.state.audit.record(
            AuditAction.ACCESS_DENIED,
            success=False,
            details={"reason": "unauthenticated", "path": request.url.path},
            meta=request_meta(request),
        )
        raise AuthenticationFailed("Authentication required.", reason="unauthenticated")
    return principal


def require_role(*roles: Role) -> Callable:
    """Build a dependency admitting only principals whose role is in `roles`.

    Usage:
        @router.get("/agents-only")
        def route(principal: Principal = Depends(require_role(Role.agent, Role.admin))): ...
    """
    allowed = frozenset(roles)

    def dependency(request: Request, principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            request.app.state.audit.record(
                AuditAction.ACCESS_DENIED,
                success=False,
                actor=principal,
                details={
                    "reason": "role",
                    "path": request.url.path,
                    "role": principal.role.value if principal.role else None,
                },
                meta=request_meta(request),
            )
            raise AuthorizationDenied("Insufficient role for this resource.", code="forbidden_role", reason="role")
        return principal

    return dependency


require_admin = require_role(Role.admin, Role.super_admin)
require_super_admin = require_role(Role.super_admin)


def require_whitelisted_ip(request: Request) -> str:
    """Reject requests whose client address is not on the admin allow-list."""
    client_ip = get_client_ip(request)
    if not request.app.state.ip_whitelist.is_allowed(client_ip):
        request.app.state.audit.record(
            AuditAction.ACCESS_DENIED,
            success=False,
            actor=getattr(request.state, "principal", None),
            details={"reason": "ip", "path": request.url.path, "ip": client_ip},
            meta=request_meta(request),
        )
        raise AuthorizationDenied(
            "Access denied: your network address is not authorized for admin access.",
            code="forbidden_ip",
            reason="ip",
        )
    return client_ip


# ---------------------------------------------------------------------------
# API key routes
# ---------------------------------------------------------------------------


def require_api_key(request: Request) -> Principal:
    """Authenticate the Authorization: Bearer ALWR_... header. Raises 401 on failure."""
    principal = request.app.state.api_keys.authenticate(request.headers.get("authorization"), request_meta(request))
    request.state.principal = principal
    return principal


def require_api_key_permission(permission: str) -> Callable:
    """Build a dependency that authenticates the key and then demands `permission`."""

    def dependency(request: Request, principal: Principal = Depends(require_api_key)) -> Principal:
        request.app.state.api_keys.check_permission(principal, permission, request_meta(request))
        return principal

    return dependency
