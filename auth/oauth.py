"""
auth/oauth.py -- Authlib OpenID Connect client for delegated login.

Reads configuration from core.config.get_settings() at module load. The
provider is registered only when OIDC_CLIENT_ID is set; otherwise the
/api/login route reports that delegated login is unavailable.

Discovery: <OIDC_ISSUER_URL>/.well-known/openid-configuration supplies the
authorize, token and JWKS endpoints. Scope includes offline_access so the
provider issues a refresh token, which keeps delegated sessions alive past
the access token's expiry without another redirect.

Security notes:
  [H1] Email verification is mandatory when the provider states it. A claim
       set with email_verified == False is rejected. A claim set with no email
       at all is rejected -- the registry keys identities by email.

  OAuth state (CSRF protection) is handled by authlib through Starlette
  SessionMiddleware, which stores it between the redirect and the callback.

Layer rule: no imports from api/, audit/, or cache/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx
from authlib.integrations.base_client import OAuthError
from authlib.integrations.httpx_client import OAuth2Client
from authlib.integrations.starlette_client import OAuth

from core.config import get_settings

logger = logging.getLogger("alwr.auth.oauth")

PROVIDER_NAME = "oidc"

# ---------------------------------------------------------------------------
# Authlib OAuth registry
# ---------------------------------------------------------------------------

oauth = OAuth()

_cfg = get_settings()

if _cfg.oidc_client_id:
    oauth.register(
        name=PROVIDER_NAME,
        client_id=_cfg.oidc_client_id,
        client_secret=_cfg.oidc_client_secret or None,
        server_metadata_url=f"{_cfg.oidc_issuer_url.rstrip('/')}/.well-known/openid-configuration",
        client_kwargs={"scope": _cfg.oidc_scope, "code_challenge_method": "S256"},
    )
    logger.info("OIDC provider registered (issuer: %s)", _cfg.oidc_issuer_url)


def is_oidc_enabled() -> bool:
    return bool(get_settings().oidc_client_id)


# ---------------------------------------------------------------------------
# Claims extraction [H1]
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DelegatedClaims:
    subject: str
    email: str
    first_name: str | None = None
    last_name: str | None = None


def extract_claims(token: dict) -> DelegatedClaims:
    """Pull the identity claims out of an authlib token response.

    Raises ValueError when the claims cannot safely identify a person; the
    caller treats that as a failed delegated login.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError("OIDC: no userinfo in token response")

    if userinfo.get("email_verified") is False:
        raise ValueError("OIDC: email is not verified")

    subject = userinfo.get("sub")
    email = userinfo.get("email")
    if not subject or not email:
        raise ValueError("OIDC: missing email or sub claim")

    return DelegatedClaims(
        subject=str(subject),
        email=email.strip().lower(),
        first_name=userinfo.get("first_name") or userinfo.get("given_name"),
        last_name=userinfo.get("last_name") or userinfo.get("family_name"),
    )


def token_expiry(token: dict) -> int | None:
    """Unix expiry of a token response: authlib's expires_at, else the id token's exp claim."""
    expires_at = token.get("expires_at")
    if expires_at is None:
        expires_at = (token.get("userinfo") or {}).get("exp")
    return int(expires_at) if expires_at is not None else None


# ---------------------------------------------------------------------------
# Refresh
# ---------------------------------------------------------------------------


REFRESH_TIMEOUT_SECONDS = 10

# Discovery document URL -> token endpoint, filled on the first refresh.
_token_endpoints: dict[str, str] = {}


def _metadata_url() -> str:
    return f"{get_settings().oidc_issuer_url.rstrip('/')}/.well-known/openid-configuration"


def _token_endpoint(client: OAuth2Client) -> str:
    url = _metadata_url()
    if url not in _token_endpoints:
        resp = client.get(url)
        resp.raise_for_status()
        _token_endpoints[url] = resp.json()["token_endpoint"]
    return _token_endpoints[url]


def refresh_delegated_token(refresh_token: str) -> dict | None:
    """Exchange a refresh token for a new token set. Returns None on any provider failure.

    A None result means the delegated session can no longer be vouched for
    by the provider; the session layer then expires it. Blocking: session
    resolution runs in FastAPI's worker threads, never on the event loop.
    """
    cfg = get_settings()
    if not cfg.oidc_client_id:
        return None
    try:
        with OAuth2Client(
            cfg.oidc_client_id, cfg.oidc_client_secret or None, timeout=REFRESH_TIMEOUT_SECONDS
        ) as client:
            token = client.refresh_token(_token_endpoint(client), refresh_token=refresh_token)
    except (OAuthError, httpx.HTTPError, KeyError, ValueError) as exc:
        logger.warning("OIDC token refresh failed: %s", exc)
        return None
    return dict(token)
