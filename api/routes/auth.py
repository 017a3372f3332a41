"""
api/routes/auth.py -- Registration, login, logout, password reset and change, and two-factor endpoints.

Routes:
  POST /api/auth/register      -- self-registration; identity starts pending approval
  POST /api/auth/login         -- password (+ second factor) login; sets session cookie
  POST /api/auth/logout        -- destroys the session; idempotent
  GET  /api/auth/user          -- the current principal (requires session)
  POST /api/auth/2fa/setup     -- fresh TOTP secret + backup codes (requires session)
  POST /api/auth/2fa/verify    -- confirm a code and enable 2FA (requires session)
  POST /api/auth/2fa/disable   -- disable 2FA with a TOTP or backup code (requires session)
  GET  /api/auth/2fa/status    -- whether 2FA is on (requires session)
  POST /api/auth/forgot-password -- mint a one-hour reset token; same answer for unknown emails
  POST /api/auth/reset-password  -- redeem a reset token once; ends every session
  POST /api/auth/password        -- change password (requires session); ends other sessions

Security:
  [H2] login and register are rate-limited per client address (LOGIN_RATE_LIMIT);
       forgot-password and reset-password share it; the 2FA endpoints and
       password change use SENSITIVE_RATE_LIMIT.
  [C1] SessionAuthenticator.login_with_password() runs bcrypt even for unknown
       emails -- never inline a lookup-then-verify here.
  [M5] Cache-Control: no-store on every response that carries credentials.

Every handler is a plain def, so bcrypt and the store calls run in FastAPI's
thread pool rather than on the event loop.
"""

from __future__ import annotations

import re

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PrincipalResponse,
    RegisterRequest,
    ResetPasswordRequest,
    TwoFactorCodeRequest,
    TwoFactorSetupResponse,
    TwoFactorStatusResponse,
    TwoFactorVerifyRequest,
    UserResponse,
)
from audit.models import AuditAction
from auth.credentials import (
    PASSWORD_RULE,
    clear_session_cookie,
    hash_password,
    normalize_email,
    set_session_cookie,
    validate_email,
    validate_password,
)
from auth.dependencies import get_current_principal, load_principal
from auth.models import AccountStatus, Identity, Principal, Role
from auth.sessions import check_second_factor
from auth.store import AuthStore
from auth.two_factor import (
    BACKUP_CODE_LENGTH,
    generate_backup_codes,
    generate_totp_secret,
    hash_backup_code,
    is_totp_code_format,
    normalize_backup_code,
    verify_totp_code,
)
from core.config import get_settings
from core.errors import AuthenticationFailed, AuthorizationDenied, Conflict, ValidationFailed
from core.http import request_meta

_settings = get_settings()

_BACKUP_CODE_RE = re.compile(rf"^[A-Z0-9]{{{BACKUP_CODE_LENGTH}}}$")

# Auth policy:
# - POST /api/auth/register, /login, /logout, /forgot-password, /reset-password: public
# - everything else: requires a session (get_current_principal)
router = APIRouter()


def _no_store(response: JSONResponse) -> JSONResponse:
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response


def _current_identity(request: Request, principal: Principal) -> Identity:
    store: AuthStore = request.app.state.store
    identity = store.get_by_id(principal.subject_id)
    if identity is None:
        raise AuthenticationFailed("Authentication required.", reason="identity_missing")
    return identity


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=LoginResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a customer identity awaiting admin approval. No session is created."""
    store: AuthStore = request.app.state.store
    if not request.app.state.settings_cache.get()["self_registration_enabled"]:
        raise AuthorizationDenied("Self-registration is disabled.", code="registration_disabled")

    email = normalize_email(body.email)
    if not validate_email(email):
        raise ValidationFailed("Invalid email format.")
    if not validate_password(body.password):
        raise ValidationFailed(PASSWORD_RULE)
    if body.password != body.confirm_password:
        raise ValidationFailed("Passwords do not match.")

    identity = Identity(
        email=email,
        hashed_password=hash_password(body.password),
        first_name=body.first_name or None,
        last_name=body.last_name or None,
        role=Role.customer,
        status=AccountStatus.pending,
    )
    try:
        identity_id = store.create_identity(identity)
    except IntegrityError as exc:
        raise ValidationFailed("Email already registered.", code="email_taken") from exc

    created = store.get_by_id(identity_id)
    request.app.state.audit.record(
        AuditAction.REGISTER,
        success=True,
        actor=created,
        resource_type="identity",
        resource_id=identity_id,
        meta=request_meta(request),
    )
    payload = LoginResponse(
        message="Registration successful. Your account is pending approval.",
        user=UserResponse.from_identity(created),
    )
    return _no_store(JSONResponse(status_code=201, content=payload.model_dump(mode="json", by_alias=True)))


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/login", response_model=LoginResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Unknown email and wrong password produce the same 401 body. A locked
    account answers 429 with Retry-After; pending approval answers 403.
    """
    result = request.app.state.authenticator.login_with_password(
        body.email, body.password, body.two_factor_code, request_meta(request)
    )
    payload = LoginResponse(message="Login successful", user=UserResponse.from_identity(result.identity))
    response = JSONResponse(status_code=200, content=payload.model_dump(mode="json", by_alias=True))
    set_session_cookie(response, result.session_id, result.max_age)
    return _no_store(response)


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, principal: Principal | None = Depends(load_principal)) -> JSONResponse:
    """Destroy the session and clear the cookie. Calling it again is harmless."""
    session_id = request.cookies.get(request.app.state.settings.session_cookie_name)
    request.app.state.authenticator.logout(session_id, principal, request_meta(request))
    response = JSONResponse(content={"message": "Logged out."})
    clear_session_cookie(response)
    return _no_store(response)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/user", response_model=PrincipalResponse)
def current_user(principal: Principal = Depends(get_current_principal)) -> PrincipalResponse:
    """Return the identity behind the current session."""
    return PrincipalResponse.from_principal(principal)


@limiter.limit(_settings.sensitive_rate_limit)
@router.post("/auth/2fa/setup", response_model=TwoFactorSetupResponse)
def two_factor_setup(
    request: Request, principal: Principal = Depends(get_current_principal)
) -> TwoFactorSetupResponse:
    """Generate a TOTP secret and backup codes for the caller to confirm via /2fa/verify.

    Nothing is persisted here. The client echoes the secret and codes back
    to /2fa/verify together with a code from the authenticator app.
    """
    identity = _current_identity(request, principal)
    if identity.two_factor_enabled:
        raise Conflict("Two-factor authentication is already enabled.", code="two_factor_enabled")
    secret, uri = generate_totp_secret(identity.email)
    return TwoFactorSetupResponse(secret=secret, provisioning_uri=uri, backup_codes=generate_backup_codes())


@limiter.limit(_settings.sensitive_rate_limit)
@router.post("/auth/2fa/verify", response_model=TwoFactorStatusResponse)
def two_factor_verify(
    request: Request,
    body: TwoFactorVerifyRequest,
    principal: Principal = Depends(get_current_principal),
) -> TwoFactorStatusResponse:
    """Enable 2FA once the caller proves their authenticator produces valid codes."""
    identity = _current_identity(request, principal)
    if identity.two_factor_enabled:
        raise Conflict("Two-factor authentication is already enabled.", code="two_factor_enabled")
    if not is_totp_code_format(body.token):
        raise ValidationFailed("Code must be 6 digits.")

    backup_codes = [normalize_backup_code(c) for c in body.backup_codes] or generate_backup_codes()
    if any(not _BACKUP_CODE_RE.match(c) for c in backup_codes):
        raise ValidationFailed("Backup codes are malformed.")

    meta = request_meta(request)
    if not verify_totp_code(body.secret, body.token):
        request.app.state.audit.record(
            AuditAction.TWO_FACTOR_FAILED,
            success=False,
            actor=principal,
            resource_type="identity",
            resource_id=identity.id,
            details={"stage": "enrollment"},
            meta=meta,
        )
        raise ValidationFailed("Invalid verification code.", code="invalid_two_factor_code")

    store: AuthStore = request.app.state.store
    store.enable_two_factor(
        identity.id,
        request.app.state.secret_box.encrypt(body.secret),
        [hash_backup_code(c) for c in backup_codes],
    )
    request.app.state.audit.record(
        AuditAction.TWO_FACTOR_ENABLED,
        success=True,
        actor=principal,
        resource_type="identity",
        resource_id=identity.id,
        meta=meta,
    )
    return TwoFactorStatusResponse(enabled=True, backup_codes_remaining=len(backup_codes))


@limiter.limit(_settings.sensitive_rate_limit)
@router.post("/auth/2fa/disable", response_model=TwoFactorStatusResponse)
def two_factor_disable(
    request: Request,
    body: TwoFactorCodeRequest,
    principal: Principal = Depends(get_current_principal),
) -> TwoFactorStatusResponse:
    """Turn 2FA off. Requires a current TOTP code or an unused backup code."""
    identity = _current_identity(request, principal)
    if not identity.two_factor_enabled:
        raise Conflict("Two-factor authentication is not enabled.", code="two_factor_disabled")

    store: AuthStore = request.app.state.store
    meta = request_meta(request)
    method = check_second_factor(store, request.app.state.secret_box, identity, body.token)
    if method is None:
        request.app.state.audit.record(
            AuditAction.TWO_FACTOR_FAILED,
            success=False,
            actor=principal,
            resource_type="identity",
            resource_id=identity.id,
            details={"stage": "disable"},
            meta=meta,
        )
        raise ValidationFailed("Invalid verification code.", code="invalid_two_factor_code")

    store.disable_two_factor(identity.id)
    request.app.state.audit.record(
        AuditAction.TWO_FACTOR_DISABLED,
        success=True,
        actor=principal,
        resource_type="identity",
        resource_id=identity.id,
        details={"method": method},
        meta=meta,
    )
    return TwoFactorStatusResponse(enabled=False, backup_codes_remaining=0)


@router.get("/auth/2fa/status", response_model=TwoFactorStatusResponse)
def two_factor_status(
    request: Request, principal: Principal = Depends(get_current_principal)
) -> TwoFactorStatusResponse:
    identity = _current_identity(request, principal)
    store: AuthStore = request.app.state.store
    remaining = store.count_backup_codes(identity.id) if identity.two_factor_enabled else 0
    return TwoFactorStatusResponse(enabled=identity.two_factor_enabled, backup_codes_remaining=remaining)


# ---------------------------------------------------------------------------
# Password reset and change
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/forgot-password", response_model=ForgotPasswordResponse)
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    """Start a password reset. The body is the same whether or not the email is registered."""
    ticket = request.app.state.passwords.request_reset(body.email, request_meta(request))
    payload = ForgotPasswordResponse()
    if ticket is not None and request.app.state.settings.debug:
        payload = ForgotPasswordResponse(token=ticket.token, expires_at=ticket.expires_at)
    return _no_store(JSONResponse(content=payload.model_dump(mode="json", by_alias=True, exclude_none=True)))


@limiter.limit(_settings.login_rate_limit)  # [H2]
@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Redeem a reset token. Unknown, used and expired tokens all get the same 400."""
    if body.password != body.confirm_password:
        raise ValidationFailed("Passwords do not match.")
    request.app.state.passwords.reset(body.token, body.password, request_meta(request))
    return _no_store(JSONResponse(content={"message": "Password has been reset. Please sign in."}))


@limiter.limit(_settings.sensitive_rate_limit)
@router.post("/auth/password", response_model=MessageResponse)
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    principal: Principal = Depends(get_current_principal),
) -> JSONResponse:
    """Change the caller's password. Other sessions end; this one stays signed in."""
    if body.new_password != body.confirm_password:
        raise ValidationFailed("New password and confirmation do not match.")
    request.app.state.passwords.change(principal, body.current_password, body.new_password, request_meta(request))
    return _no_store(JSONResponse(content={"message": "Password changed."}))
