"""
api/main.py -- FastAPI application entry point for the ALWR registry.

Run with:  uvicorn asgi:app --reload

Middleware stack:
  TrustedHostMiddleware -- rejects requests with unexpected Host headers
  CORSMiddleware        -- adds CORS headers for allowed browser origins
  SlowAPIMiddleware     -- enforces per-route rate limits from api.limiter
  SessionMiddleware     -- holds the OIDC state between redirect and callback
  log_requests          -- one log line per request with latency

Lifespan builds every stateful component once and hangs it on app.state:
  store, audit_store      SQLAlchemy repositories
  audit                   AuditTrail (never raises)
  settings_cache          SettingsCache over the system_settings row
  secret_box              Fernet box for TOTP secrets and provider tokens
  authenticator           SessionAuthenticator
  api_keys                ApiKeyGateway
  passwords               PasswordManager (reset tokens, password change)
  ip_whitelist            IpWhitelist for /api/admin/*
wire_state() does the wiring so tests can reuse it with in-memory stores.

Errors: every core.errors.RegistryError renders as
{"error": {"code": ..., "message": ...}} with the class's status code. The
internal `reason` is logged, never returned.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import SQLAlchemyError
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException
from starlette.middleware.sessions import SessionMiddleware

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse
from api.routes.admin import router as admin_router
from api.routes.auth import router as auth_router
from api.routes.external import router as external_router
from api.routes.oidc import router as oidc_router
from audit.store import AuditStore
from audit.trail import AuditTrail
from auth.api_keys import ApiKeyGateway
from auth.ip_whitelist import IpWhitelist
from auth.oauth import is_oidc_enabled, refresh_delegated_token
from auth.oauth import oauth as oauth_client
from auth.passwords import PasswordManager
from auth.sessions import SessionAuthenticator
from auth.store import AuthStore
from cache.store import SettingsCache
from core.config import Settings, get_settings
from core.encryption import SecretBox
from core.errors import AccountLocked, RegistryError
from core.http import get_client_ip

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("alwr.api")

_settings = get_settings()

SESSION_PURGE_INTERVAL_SECONDS = 60 * 60

# ---------------------------------------------------------------------------
# Component wiring
# ---------------------------------------------------------------------------


def wire_state(app: FastAPI, store: AuthStore, audit_store: AuditStore, settings: Settings) -> None:
    """Build the auth components over the given stores and attach them to app.state."""
    audit = AuditTrail(audit_store)
    settings_cache = SettingsCache(store.get_system_settings, ttl=settings.settings_cache_ttl_seconds)
    secret_box = SecretBox.from_settings(settings)

    app.state.settings = settings
    app.state.store = store
    app.state.audit_store = audit_store
    app.state.audit = audit
    app.state.settings_cache = settings_cache
    app.state.secret_box = secret_box
    app.state.authenticator = SessionAuthenticator(
        store,
        audit,
        settings_cache,
        secret_box,
        token_refresher=refresh_delegated_token if is_oidc_enabled() else None,
    )
    app.state.api_keys = ApiKeyGateway(store, audit)
    app.state.passwords = PasswordManager(store, audit)
    app.state.ip_whitelist = IpWhitelist.from_settings(settings)
    app.state.oauth = oauth_client


async def _purge_loop(app: FastAPI) -> None:
    """Delete sessions and reset tokens past their expiry once an hour.

    Expired rows are already refused on use; this only keeps the tables from
    growing. The deletes run in the thread pool. CancelledError from shutdown
    unwinds the loop.
    """
    while True:
        await asyncio.sleep(SESSION_PURGE_INTERVAL_SECONDS)
        try:
            removed = await run_in_threadpool(app.state.store.purge_expired_sessions)
            await run_in_threadpool(app.state.store.purge_expired_password_resets)
        except SQLAlchemyError:
            logger.exception("Session purge failed")
            continue
        if removed:
            logger.info("Purged %d expired sessions", removed)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Create stores and components on startup; release them on shutdown."""
    logger.info("ALWR registry API starting up")
    store = AuthStore(_settings.database_url, _settings.db_timeout_seconds)
    audit_store = AuditStore(_settings.database_url, _settings.db_timeout_seconds)
    wire_state(app, store, audit_store, _settings)
    logger.info(
        "Auth initialized (oidc=%s, admin_ip_entries=%d, rate_limits=%s)",
        is_oidc_enabled(),
        len(app.state.ip_whitelist),
        _settings.rate_limit_enabled,
    )
    app.state.purge_task = asyncio.create_task(_purge_loop(app))

    yield

    app.state.purge_task.cancel()
    store.close()
    audit_store.close()
    logger.info("ALWR registry API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="ALWR Registry API",
    description="Authentication, access control and audit for the America Living Will Registry.",
    version=_settings.app_version,
    lifespan=lifespan,
    docs_url="/docs" if _settings.debug else None,
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
# ---------------------------------------------------------------------------

app.add_middleware(TrustedHostMiddleware, allowed_hosts=_settings.allowed_hosts)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization"],
    max_age=3600,
)

app.add_middleware(SlowAPIMiddleware)

# Authlib keeps the OIDC state and PKCE verifier in this signed cookie
# between /api/login and /api/callback. The login session itself is the
# separate server-side session cookie.
app.add_middleware(
    SessionMiddleware,
    secret_key=_settings.secret_key,
    session_cookie="alwr_oauth",
    same_site="lax",
    https_only=_settings.secure_cookies,
    max_age=600,
)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        get_client_ip(request),
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api", tags=["Auth"])
app.include_router(oidc_router, prefix="/api", tags=["Delegated login"])
app.include_router(admin_router, prefix="/api", tags=["Admin"])
app.include_router(external_router, prefix="/api", tags=["External"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


@app.exception_handler(RegistryError)
async def registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
    """Render a typed domain error. The internal reason goes to the log only."""
    if exc.status_code >= 500:
        logger.error(
            "%s on %s %s (reason=%s)", type(exc).__name__, request.method, request.url.path, exc.reason, exc_info=exc
        )
    else:
        logger.info("%s on %s %s (reason=%s)", exc.code, request.method, request.url.path, exc.reason)
    response = JSONResponse(status_code=exc.status_code, content={"error": exc.to_detail()})
    if isinstance(exc, AccountLocked) and exc.retry_after:
        response.headers["Retry-After"] = str(exc.retry_after)
    if request.url.path.startswith("/api/auth/"):
        response.headers["Cache-Control"] = "no-store"
    return response


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Return 429 with a structured error when a rate limit is exceeded."""
    retry_after = int(getattr(exc, "retry_after", 60))
    response = JSONResponse(
        status_code=429,
        content=ErrorResponse(
            error=ErrorDetail(
                code="rate_limited",
                message="Too many requests. Please try again later.",
                detail=str(exc.detail),
            )
        ).model_dump(),
    )
    response.headers["Retry-After"] = str(retry_after)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with a structured error when the body or query params fail validation."""
    return JSONResponse(
        status_code=400,
        content=ErrorResponse(
            error=ErrorDetail(
                code="validation_error",
                message="Request validation failed.",
                detail=str(exc.errors()),
            )
        ).model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Return a structured error for FastAPI/Starlette HTTP exceptions (404 routes, 405, ...)."""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            error=ErrorDetail(
                code=f"http_{exc.status_code}",
                message=str(exc.detail),
            )
        ).model_dump(),
    )


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """A store call failed or timed out. Details stay in the log."""
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(code="internal_error", message="An unexpected error occurred.")
        ).model_dump(),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception is written to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(
            error=ErrorDetail(
                code="internal_error",
                message="An unexpected error occurred.",
            )
        ).model_dump(),
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py so it is always reachable regardless of router
# registration state. Not rate limited: load balancers poll it.
# ---------------------------------------------------------------------------


@app.get("/api/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return liveness, version, and a database round-trip check."""
    components = {"app": "ok"}
    try:
        request.app.state.store.ping()
        components["database"] = "ok"
    except SQLAlchemyError:
        logger.exception("Health check database ping failed")
        components["database"] = "error"
    status = "healthy" if components["database"] == "ok" else "degraded"
    return HealthResponse(status=status, version=_settings.app_version, components=components)
