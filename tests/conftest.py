"""
tests/conftest.py -- Shared test fixtures for the ALWR registry tests.

This module provides:
  - make_stores(): isolated in-memory AuthStore + AuditStore
  - seed_identity(): insert an identity with a known password
  - FakeClock: a controllable clock for session and lockout tests
  - stores / components: per-test stores and wired auth components
  - api_client: module-scoped TestClient over the real app with seeded users
  - login_client(): a separate TestClient holding one user's session cookie

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

DEBUG must be set before any core import so get_settings() auto-generates
SECRET_KEY instead of raising. Rate limiting is switched off so lockout
tests can send more requests than LOGIN_RATE_LIMIT allows.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

# CRITICAL: Set before any api/auth/core import -- settings are cached at first use.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")

import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

from api.main import app, wire_state
from audit.store import AuditStore
from audit.trail import AuditTrail
from auth.api_keys import ApiKeyGateway
from auth.credentials import hash_password
from auth.ip_whitelist import IpWhitelist
from auth.models import AccountStatus, Identity, Role
from auth.passwords import PasswordManager
from auth.sessions import SessionAuthenticator
from auth.store import AuthStore
from cache.store import SettingsCache
from core.config import get_settings
from core.encryption import SecretBox

ADMIN_IP = "10.0.0.5"
ADMIN_HEADERS = {"X-Forwarded-For": ADMIN_IP}
PASSWORD = "correct-horse-42"

# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_stores(db_suffix: str) -> tuple[AuthStore, AuditStore]:
    """Create isolated named shared-memory SQLite stores.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   and test cases don't share state.
    """
    auth_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    audit_url = f"sqlite:///file:test_audit_{db_suffix}?mode=memory&cache=shared&uri=true"
    return AuthStore(db_url=auth_url), AuditStore(db_url=audit_url)


def seed_identity(
    store: AuthStore,
    email: str,
    password: str | None = PASSWORD,
    role: Role = Role.customer,
    status: AccountStatus = AccountStatus.active,
) -> int:
    return store.create_identity(
        Identity(
            email=email,
            hashed_password=hash_password(password) if password else None,
            role=role,
            status=status,
        )
    )


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class Components:
    """Auth components wired over per-test stores, without the HTTP layer."""

    store: AuthStore
    audit_store: AuditStore
    audit: AuditTrail
    settings_cache: SettingsCache
    secret_box: SecretBox
    clock: FakeClock
    authenticator: SessionAuthenticator
    api_keys: ApiKeyGateway
    passwords: PasswordManager

    def with_refresher(self, refresher) -> SessionAuthenticator:
        return SessionAuthenticator(
            self.store, self.audit, self.settings_cache, self.secret_box, token_refresher=refresher, clock=self.clock
        )


@pytest.fixture
def stores() -> Generator[tuple[AuthStore, AuditStore], None, None]:
    """Fresh, empty stores for one test."""
    store, audit_store = make_stores(uuid.uuid4().hex)
    yield store, audit_store
    store.close()
    audit_store.close()


@pytest.fixture
def components(stores) -> Components:
    store, audit_store = stores
    audit = AuditTrail(audit_store)
    settings_cache = SettingsCache(store.get_system_settings, ttl=0)
    secret_box = SecretBox(Fernet.generate_key())
    clock = FakeClock()
    return Components(
        store=store,
        audit_store=audit_store,
        audit=audit,
        settings_cache=settings_cache,
        secret_box=secret_box,
        clock=clock,
        authenticator=SessionAuthenticator(store, audit, settings_cache, secret_box, clock=clock),
        api_keys=ApiKeyGateway(store, audit, clock=clock),
        passwords=PasswordManager(store, audit, clock=clock),
    )


# ---------------------------------------------------------------------------
# HTTP fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, audit_store: AuditStore):
    """Return an async context manager that replaces the real lifespan.

    Wires the test stores through the same wire_state() the app uses, then
    swaps in a fixed admin allow-list and a mocked OAuth registry so no
    test reaches the network.

    The purge_task is a long-sleeping coroutine that keeps asyncio happy
    (a real asyncio.Task is required; MagicMock would fail on .cancel()).
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_state(app, store, audit_store, get_settings())
        app.state.ip_whitelist = IpWhitelist([ADMIN_IP])
        app.state.oauth = MagicMock()
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@dataclass
class ApiContext:
    client: TestClient
    store: AuthStore
    audit_store: AuditStore
    ids: dict[str, int] = field(default_factory=dict)


@pytest.fixture(scope="module")
def api_client(request) -> Generator[ApiContext, None, None]:
    """Yield an ApiContext for HTTP integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use isolated in-memory stores.
    Seeded identities (all with password PASSWORD):
      super@alwr.test   super_admin
      admin@alwr.test   admin
      agent@alwr.test   agent
      customer@alwr.test customer
      pending@alwr.test customer, pending approval
    """
    store, audit_store = make_stores(request.module.__name__.rsplit(".", 1)[-1])
    ids = {
        "super": seed_identity(store, "super@alwr.test", role=Role.super_admin),
        "admin": seed_identity(store, "admin@alwr.test", role=Role.admin),
        "agent": seed_identity(store, "agent@alwr.test", role=Role.agent),
        "customer": seed_identity(store, "customer@alwr.test"),
        "pending": seed_identity(store, "pending@alwr.test", status=AccountStatus.pending),
    }

    app.router.lifespan_context = _patch_lifespan(store, audit_store)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiContext(client=client, store=store, audit_store=audit_store, ids=ids)

    store.close()
    audit_store.close()


def login_client(email: str, password: str = PASSWORD, headers: dict | None = None) -> TestClient:
    """Log in through the API and return a TestClient carrying that session cookie.

    Each call gets its own cookie jar. The app's lifespan has already run
    under the module's api_client, so app.state is populated.
    """
    client = TestClient(app, headers=headers or {})
    resp = client.post("/api/auth/login", json={"email": email, "password": password})
    assert resp.status_code == 200, f"login for {email} failed: {resp.status_code} {resp.text}"
    return client


def anonymous_client(headers: dict | None = None) -> TestClient:
    """A TestClient with an empty cookie jar, for requests that must not share a session."""
    return TestClient(app, headers=headers or {})
