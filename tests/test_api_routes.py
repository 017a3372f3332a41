"""
tests/test_api_routes.py -- Integration tests for the /api/auth, /api/admin and
/api/external routes.

These tests exercise the full stack: FastAPI routing -> dependency chain
(session, role, IP allow-list, API key) -> AuthStore/AuditStore -> response
serialization and the error envelope.

Fixtures used (from conftest.py):
  - api_client: ApiContext with seeded super/admin/agent/customer/pending users
  - login_client(): a fresh TestClient holding one user's session cookie
"""

from __future__ import annotations

import inspect

import pyotp

from audit.models import AuditAction, AuditFilter
from auth.credentials import PASSWORD_RULE
from auth.models import AccountStatus
from conftest import ADMIN_HEADERS, PASSWORD, ApiContext, anonymous_client, login_client, seed_identity


def _error(resp) -> dict:
    return resp.json()["error"]


class TestRegistration:
    def test_register_creates_pending_customer(self, api_client: ApiContext) -> None:
        resp = api_client.client.post(
            "/api/auth/register",
            json={
                "email": "New.Person@Example.org",
                "password": "long-enough-1",
                "confirmPassword": "long-enough-1",
                "firstName": "New",
            },
        )
        assert resp.status_code == 201, resp.text
        assert resp.headers["cache-control"] == "no-store"
        user = resp.json()["user"]
        assert user["email"] == "new.person@example.org"
        assert user["status"] == "pending"
        assert user["role"] == "customer"
        assert "alwr_session" not in resp.cookies

    def test_pending_user_cannot_log_in(self, api_client: ApiContext) -> None:
        resp = api_client.client.post("/api/auth/login", json={"email": "pending@alwr.test", "password": PASSWORD})
        assert resp.status_code == 403
        assert _error(resp)["code"] == "account_pending"

    def test_duplicate_email(self, api_client: ApiContext) -> None:
        body = {"email": "customer@alwr.test", "password": "long-enough-1", "confirmPassword": "long-enough-1"}
        resp = api_client.client.post("/api/auth/register", json=body)
        assert resp.status_code == 400
        assert _error(resp)["message"] == "Email already registered."

    def test_short_password_and_mismatch(self, api_client: ApiContext) -> None:
        short = {"email": "s@example.org", "password": "short", "confirmPassword": "short"}
        assert api_client.client.post("/api/auth/register", json=short).status_code == 400
        mismatch = {"email": "m@example.org", "password": "long-enough-1", "confirmPassword": "long-enough-2"}
        resp = api_client.client.post("/api/auth/register", json=mismatch)
        assert resp.status_code == 400
        assert _error(resp)["message"] == "Passwords do not match."

    def test_missing_fields_is_400(self, api_client: ApiContext) -> None:
        resp = api_client.client.post("/api/auth/register", json={"email": "x@example.org"})
        assert resp.status_code == 400
        assert _error(resp)["code"] == "validation_error"

    def test_password_over_72_bytes_is_400(self, api_client: ApiContext) -> None:
        for i, password in enumerate(["a" * 80, "\u00e9" * 40]):
            body = {"email": f"long{i}@example.org", "password": password, "confirmPassword": password}
            resp = api_client.client.post("/api/auth/register", json=body)
            assert resp.status_code == 400, resp.text
            assert _error(resp)["message"] == PASSWORD_RULE
        assert api_client.store.get_by_email("long0@example.org") is None

    def test_password_of_exactly_72_bytes_registers(self, api_client: ApiContext) -> None:
        body = {"email": "edge72@example.org", "password": "b" * 72, "confirmPassword": "b" * 72}
        assert api_client.client.post("/api/auth/register", json=body).status_code == 201


class TestLoginLogout:
    def test_login_sets_cookie_and_user_endpoint_works(self, api_client: ApiContext) -> None:
        client = login_client("agent@alwr.test")
        resp = client.get("/api/auth/user")
        assert resp.status_code == 200
        data = resp.json()
        assert data["email"] == "agent@alwr.test"
        assert data["role"] == "agent"
        assert data["source"] == "local"

    def test_bad_credentials_are_uniform(self, api_client: ApiContext) -> None:
        unknown = api_client.client.post("/api/auth/login", json={"email": "ghost@alwr.test", "password": "x" * 10})
        wrong = api_client.client.post("/api/auth/login", json={"email": "agent@alwr.test", "password": "x" * 10})
        assert unknown.status_code == wrong.status_code == 401
        assert unknown.json() == wrong.json()
        assert unknown.headers["cache-control"] == "no-store"

    def test_unauthenticated_user_endpoint(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/auth/user")
        assert resp.status_code == 401
        assert _error(resp)["code"] == "unauthorized"

    def test_logout_twice(self, api_client: ApiContext) -> None:
        client = login_client("customer@alwr.test")
        assert client.post("/api/auth/logout").status_code == 200
        assert client.get("/api/auth/user").status_code == 401
        assert client.post("/api/auth/logout").status_code == 200

    def test_lockout_returns_429_with_retry_after(self, api_client: ApiContext) -> None:
        identity_id = seed_identity(api_client.store, "lockme@alwr.test")
        for _ in range(4):
            resp = api_client.client.post("/api/auth/login", json={"email": "lockme@alwr.test", "password": "nope-nope"})
            assert resp.status_code == 401
        resp = api_client.client.post("/api/auth/login", json={"email": "lockme@alwr.test", "password": "nope-nope"})
        assert resp.status_code == 429
        assert _error(resp)["code"] == "account_locked"
        assert 0 < int(resp.headers["retry-after"]) <= 900

        resp = api_client.client.post("/api/auth/login", json={"email": "lockme@alwr.test", "password": PASSWORD})
        assert resp.status_code == 429
        assert api_client.store.get_by_id(identity_id).failed_login_attempts == 5


class TestTwoFactorRoutes:
    def test_enroll_login_and_disable(self, api_client: ApiContext) -> None:
        seed_identity(api_client.store, "otp@alwr.test")
        client = login_client("otp@alwr.test")

        setup = client.post("/api/auth/2fa/setup")
        assert setup.status_code == 200
        secret = setup.json()["secret"]
        backup_codes = setup.json()["backupCodes"]
        assert setup.json()["provisioningUri"].startswith("otpauth://")

        bad = client.post("/api/auth/2fa/verify", json={"token": "12345", "secret": secret})
        assert bad.status_code == 400

        verify = client.post(
            "/api/auth/2fa/verify",
            json={"token": pyotp.TOTP(secret).now(), "secret": secret, "backupCodes": backup_codes},
        )
        assert verify.status_code == 200, verify.text
        assert verify.json() == {"enabled": True, "backupCodesRemaining": 10}

        no_code = api_client.client.post("/api/auth/login", json={"email": "otp@alwr.test", "password": PASSWORD})
        assert no_code.status_code == 401
        assert _error(no_code)["code"] == "two_factor_required"

        fresh = anonymous_client()
        with_backup = fresh.post(
            "/api/auth/login",
            json={"email": "otp@alwr.test", "password": PASSWORD, "twoFactorCode": backup_codes[0]},
        )
        assert with_backup.status_code == 200
        reused = anonymous_client().post(
            "/api/auth/login",
            json={"email": "otp@alwr.test", "password": PASSWORD, "twoFactorCode": backup_codes[0]},
        )
        assert reused.status_code == 401
        assert client.get("/api/auth/2fa/status").json()["backupCodesRemaining"] == 9

        disable = client.post("/api/auth/2fa/disable", json={"token": pyotp.TOTP(secret).now()})
        assert disable.status_code == 200
        assert client.get("/api/auth/2fa/status").json() == {"enabled": False, "backupCodesRemaining": 0}


class TestAdminAccess:
    def test_unauthenticated_is_401(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/admin/apikeys", headers=ADMIN_HEADERS)
        assert resp.status_code == 401

    def test_non_admin_role_is_403(self, api_client: ApiContext) -> None:
        client = login_client("agent@alwr.test", headers=ADMIN_HEADERS)
        resp = client.get("/api/admin/apikeys")
        assert resp.status_code == 403
        assert _error(resp)["code"] == "forbidden_role"

    def test_admin_from_unlisted_ip_is_403(self, api_client: ApiContext) -> None:
        client = login_client("admin@alwr.test", headers={"X-Forwarded-For": "203.0.113.99"})
        resp = client.get("/api/admin/apikeys")
        assert resp.status_code == 403
        assert _error(resp)["code"] == "forbidden_ip"
        denied = api_client.audit_store.list_filtered(AuditFilter(action=AuditAction.ACCESS_DENIED))
        assert any(e.details.get("reason") == "ip" for e in denied)

    def test_admin_from_listed_ip_is_allowed(self, api_client: ApiContext) -> None:
        client = login_client("admin@alwr.test", headers=ADMIN_HEADERS)
        assert client.get("/api/admin/apikeys").status_code == 200


class TestApiKeyLifecycle:
    def test_create_use_revoke(self, api_client: ApiContext) -> None:
        admin = login_client("admin@alwr.test", headers=ADMIN_HEADERS)
        created = admin.post(
            "/api/admin/apikeys/create",
            json={"name": "CRM sync", "permissions": ["read:customers"], "expiresIn": 90},
        )
        assert created.status_code == 201, created.text
        assert created.headers["cache-control"] == "no-store"
        body = created.json()
        raw_key = body["key"]
        assert raw_key.startswith("ALWR_")
        assert body["maskedKey"] == f"{raw_key[:4]}..{raw_key[-4:]}"

        listed = admin.get("/api/admin/apikeys").json()
        assert all("key" not in k for k in listed)
        assert any(k["id"] == body["id"] for k in listed)

        bearer = {"Authorization": f"Bearer {raw_key}"}
        me = api_client.client.get("/api/external/me", headers=bearer)
        assert me.status_code == 200
        assert me.json() == {"keyId": body["id"], "name": "CRM sync", "permissions": ["read:customers"]}

        forbidden = api_client.client.get("/api/external/audit-logs", headers=bearer)
        assert forbidden.status_code == 403
        assert _error(forbidden)["code"] == "permission_denied"

        revoked = admin.delete(f"/api/admin/apikeys/{body['id']}")
        assert revoked.status_code == 200
        assert revoked.json()["revoked"] is True
        assert admin.delete(f"/api/admin/apikeys/{body['id']}").status_code == 409

        after = api_client.client.get("/api/external/me", headers=bearer)
        assert after.status_code == 401
        assert _error(after)["message"] == "Invalid API key."

    def test_external_requires_bearer(self, api_client: ApiContext) -> None:
        resp = api_client.client.get("/api/external/me")
        assert resp.status_code == 401
        assert _error(resp)["code"] == "api_key_required"

    def test_reports_permission_reads_audit_log(self, api_client: ApiContext) -> None:
        admin = login_client("admin@alwr.test", headers=ADMIN_HEADERS)
        raw_key = admin.post(
            "/api/admin/apikeys/create", json={"name": "Reports", "permissions": ["read:reports"]}
        ).json()["key"]
        resp = api_client.client.get("/api/external/audit-logs?limit=5", headers={"Authorization": f"Bearer {raw_key}"})
        assert resp.status_code == 200
        assert 0 < len(resp.json()) <= 5

    def test_unknown_permission_rejected(self, api_client: ApiContext) -> None:
        admin = login_client("admin@alwr.test", headers=ADMIN_HEADERS)
        resp = admin.post("/api/admin/apikeys/create", json={"name": "Bad", "permissions": ["read:everything"]})
        assert resp.status_code == 400

    def test_permission_catalogue(self, api_client: ApiContext) -> None:
        admin = login_client("admin@alwr.test", headers=ADMIN_HEADERS)
        perms = {p["permission"] for p in admin.get("/api/admin/apikeys/permissions/available").json()}
        assert {"read:customers", "write:customers", "read:reports", "admin:access"} <= perms


class TestAdminUsersAndSettings:
    def test_approve_pending_user(self, api_client: ApiContext) -> None:
        admin = login_client("admin@alwr.test", headers=ADMIN_HEADERS)
        pending_id = seed_identity(api_client.store, "approve-me@alwr.test", status=AccountStatus.pending)
        listed = admin.get("/api/admin/users?status=pending").json()
        assert pending_id in [u["id"] for u in listed]

        resp = admin.post(f"/api/admin/users/{pending_id}/approve")
        assert resp.status_code == 200
        assert resp.json()["status"] == "active"
        assert admin.post(f"/api/admin/users/{pending_id}/approve").status_code == 409

    def test_unlock(self, api_client: ApiContext) -> None:
        admin = login_client("admin@alwr.test", headers=ADMIN_HEADERS)
        identity_id = seed_identity(api_client.store, "unlock-me@alwr.test")
        for _ in range(5):
            api_client.store.record_failed_login(identity_id)
        resp = admin.post(f"/api/admin/users/{identity_id}/unlock")
        assert resp.status_code == 200
        assert resp.json()["lockedUntil"] is None
        assert login_client("unlock-me@alwr.test").get("/api/auth/user").status_code == 200

    def test_deactivate_ends_sessions(self, api_client: ApiContext) -> None:
        admin = login_client("admin@alwr.test", headers=ADMIN_HEADERS)
        target_id = seed_identity(api_client.store, "deactivate-me@alwr.test")
        target = login_client("deactivate-me@alwr.test")
        assert target.get("/api/auth/user").status_code == 200

        resp = admin.post(f"/api/admin/users/{target_id}/deactivate")
        assert resp.status_code == 200
        assert resp.json()["status"] == "deactivated"
        assert target.get("/api/auth/user").status_code == 401

    def test_cannot_deactivate_self(self, api_client: ApiContext) -> None:
        admin = login_client("admin@alwr.test", headers=ADMIN_HEADERS)
        resp = admin.post(f"/api/admin/users/{api_client.ids['admin']}/deactivate")
        assert resp.status_code == 400

    def test_role_change_requires_super_admin(self, api_client: ApiContext) -> None:
        admin = login_client("admin@alwr.test", headers=ADMIN_HEADERS)
        customer_id = api_client.ids["customer"]
        assert admin.patch(f"/api/admin/users/{customer_id}/role", json={"role": "agent"}).status_code == 403

        root = login_client("super@alwr.test", headers=ADMIN_HEADERS)
        resp = root.patch(f"/api/admin/users/{customer_id}/role", json={"role": "agent"})
        assert resp.status_code == 200
        assert resp.json()["role"] == "agent"
        changes = api_client.audit_store.list_filtered(AuditFilter(action=AuditAction.USER_ROLE_CHANGED))
        assert changes[0].details == {"from": "customer", "to": "agent"}

    def test_settings_update_takes_effect(self, api_client: ApiContext) -> None:
        admin = login_client("admin@alwr.test", headers=ADMIN_HEADERS)
        current = admin.get("/api/admin/settings").json()
        assert current["selfRegistrationEnabled"] is True

        resp = admin.patch("/api/admin/settings", json={"selfRegistrationEnabled": False})
        assert resp.status_code == 200
        assert resp.json()["selfRegistrationEnabled"] is False

        blocked = api_client.client.post(
            "/api/auth/register",
            json={"email": "late@alwr.test", "password": "long-enough-1", "confirmPassword": "long-enough-1"},
        )
        assert blocked.status_code == 403
        assert _error(blocked)["code"] == "registration_disabled"

        admin.patch("/api/admin/settings", json={"selfRegistrationEnabled": True})

    def test_audit_log_filters(self, api_client: ApiContext) -> None:
        admin = login_client("admin@alwr.test", headers=ADMIN_HEADERS)
        resp = admin.get("/api/admin/audit-logs", params={"action": "login", "status": "success", "limit": 3})
        assert resp.status_code == 200
        entries = resp.json()
        assert 0 < len(entries) <= 3
        assert all(e["action"] == "login" and e["success"] for e in entries)
        assert admin.get("/api/admin/audit-logs", params={"status": "maybe"}).status_code == 400


class TestPasswordRoutes:
    def test_forgot_password_answers_the_same_for_unknown_email(self, api_client: ApiContext) -> None:
        seed_identity(api_client.store, "forgetful@alwr.test")
        known = anonymous_client().post("/api/auth/forgot-password", json={"email": "forgetful@alwr.test"})
        unknown = anonymous_client().post("/api/auth/forgot-password", json={"email": "nobody@alwr.test"})
        assert known.status_code == unknown.status_code == 200
        assert known.json()["message"] == unknown.json()["message"]
        assert known.headers["cache-control"] == "no-store"
        # DEBUG builds hand the token back since no email is sent.
        assert "token" in known.json()
        assert "token" not in unknown.json()

    def test_reset_then_login_and_token_is_single_use(self, api_client: ApiContext) -> None:
        seed_identity(api_client.store, "resetter@alwr.test")
        old_session = login_client("resetter@alwr.test")
        token = anonymous_client().post(
            "/api/auth/forgot-password", json={"email": "resetter@alwr.test"}
        ).json()["token"]

        body = {"token": token, "password": "brand-new-pass-1", "confirmPassword": "brand-new-pass-1"}
        resp = anonymous_client().post("/api/auth/reset-password", json=body)
        assert resp.status_code == 200, resp.text

        assert old_session.get("/api/auth/user").status_code == 401
        login_client("resetter@alwr.test", password="brand-new-pass-1")

        again = anonymous_client().post("/api/auth/reset-password", json=body)
        assert again.status_code == 400
        assert _error(again)["code"] == "invalid_reset_token"

    def test_reset_with_unknown_token(self, api_client: ApiContext) -> None:
        body = {"token": "not-a-real-token", "password": "brand-new-pass-1", "confirmPassword": "brand-new-pass-1"}
        resp = anonymous_client().post("/api/auth/reset-password", json=body)
        assert resp.status_code == 400
        assert _error(resp)["code"] == "invalid_reset_token"

    def test_change_password_ends_other_sessions(self, api_client: ApiContext) -> None:
        seed_identity(api_client.store, "changer@alwr.test")
        current = login_client("changer@alwr.test")
        other = login_client("changer@alwr.test")

        body = {"currentPassword": PASSWORD, "newPassword": "changed-pass-22", "confirmPassword": "changed-pass-22"}
        resp = current.post("/api/auth/password", json=body)
        assert resp.status_code == 200, resp.text

        assert current.get("/api/auth/user").status_code == 200
        assert other.get("/api/auth/user").status_code == 401
        login_client("changer@alwr.test", password="changed-pass-22")

    def test_change_password_requires_session_and_current_password(self, api_client: ApiContext) -> None:
        body = {"currentPassword": "wrong-pass-00", "newPassword": "changed-pass-22", "confirmPassword": "changed-pass-22"}
        assert anonymous_client().post("/api/auth/password", json=body).status_code == 401
        seed_identity(api_client.store, "careful@alwr.test")
        resp = login_client("careful@alwr.test").post("/api/auth/password", json=body)
        assert resp.status_code == 400
        assert _error(resp)["code"] == "invalid_current_password"


def test_store_backed_handlers_and_dependencies_run_in_thread_pool() -> None:
    """Only plain-def handlers and dependencies keep blocking store calls off the event loop."""
    from fastapi.routing import APIRoute

    from api.main import app
    from auth.dependencies import (
        get_current_principal,
        load_principal,
        require_admin,
        require_api_key,
        require_super_admin,
        require_whitelisted_ip,
    )

    checked = [
        route
        for route in app.routes
        if isinstance(route, APIRoute) and route.path.startswith(("/api/auth", "/api/admin", "/api/external"))
    ]
    assert checked
    for route in checked:
        assert not inspect.iscoroutinefunction(route.endpoint), route.path
    for dependency in (
        load_principal,
        get_current_principal,
        require_admin,
        require_super_admin,
        require_whitelisted_ip,
        require_api_key,
    ):
        assert not inspect.iscoroutinefunction(dependency), dependency.__name__
