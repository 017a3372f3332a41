"""
api/routes/oidc.py -- Delegated (OpenID Connect) login.

Routes:
  GET /api/login     -- redirect the browser to the identity provider
  GET /api/callback  -- exchange the code, open a session, redirect into the app

Failures never render provider detail. The browser is sent to
/login?error=<code>, where <code> is one of:
  oidc_unavailable   provider not configured
  oidc_failed        token exchange failed or claims were unusable
  account_pending    identity exists but awaits admin approval
  account_disabled   identity is deactivated

Security:
  [H1] Claims are checked by auth.oauth.extract_claims(); an unverified email
       never reaches the identity store.
  [M5] Cache-Control: no-store on the callback response that sets the cookie.

The handlers are async because authlib's Starlette client is; store and
audit calls are pushed to the thread pool with run_in_threadpool.
"""

from __future__ import annotations

import logging

from authlib.integrations.base_client import OAuthError
from fastapi import APIRouter, Request
from fastapi.responses import RedirectResponse
from starlette.concurrency import run_in_threadpool

from auth.credentials import set_session_cookie
from auth.oauth import PROVIDER_NAME, extract_claims, is_oidc_enabled
from audit.models import UNKNOWN_ACTOR, AuditAction
from core.errors import AccountPending, AuthorizationDenied, RegistryError
from core.http import request_meta

logger = logging.getLogger("alwr.api.oidc")

# Auth policy: both routes are public; the provider does the authenticating.
router = APIRouter()


def _fail(error: str) -> RedirectResponse:
    return RedirectResponse(f"/login?error={error}", status_code=302)


@router.get("/login")
async def oidc_login(request: Request) -> RedirectResponse:
    """Start the authorization-code flow (PKCE S256, state kept in the oauth cookie)."""
    if not is_oidc_enabled():
        return _fail("oidc_unavailable")
    client = request.app.state.oauth.create_client(PROVIDER_NAME)
    redirect_uri = str(request.url_for("oidc_callback"))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/callback", name="oidc_callback")
async def oidc_callback(request: Request) -> RedirectResponse:
    """Finish delegated login.

    Flow:
      1. Exchange the authorization code (authlib checks state).
      2. Extract verified claims [H1].
      3. SessionAuthenticator.login_with_claims() upserts the identity and
         opens a server-side session holding the encrypted provider tokens.
      4. Set the session cookie and redirect to /.
    """
    if not is_oidc_enabled():
        return _fail("oidc_unavailable")

    meta = request_meta(request)
    client = request.app.state.oauth.create_client(PROVIDER_NAME)
    try:
        token = await client.authorize_access_token(request)
        claims = extract_claims(token)
    except (OAuthError, ValueError) as exc:
        logger.warning("Delegated login rejected: %s", exc)
        await run_in_threadpool(
            request.app.state.audit.record,
            AuditAction.DELEGATED_LOGIN_FAILED,
            success=False,
            actor_name=UNKNOWN_ACTOR,
            details={"reason": str(exc)},
            meta=meta,
        )
        return _fail("oidc_failed")

    try:
        result = await run_in_threadpool(request.app.state.authenticator.login_with_claims, claims, token, meta)
    except AccountPending:
        return _fail("account_pending")
    except AuthorizationDenied:
        return _fail("account_disabled")
    except RegistryError:
        return _fail("oidc_failed")

    response = RedirectResponse("/", status_code=302)
    set_session_cookie(response, result.session_id, result.max_age)
    response.headers["Cache-Control"] = "no-store"  # [M5]
    return response
