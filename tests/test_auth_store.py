"""Unit tests for auth/store.py -- AuthStore persistence.

Covers:
- Identity create / lookup (case-insensitive email), duplicate email
- Atomic failed-login counter and lock timestamp
- Delegated upsert: link by email, refuse to merge a different subject
- Sessions: create, touch, delete idempotence, purge
- API keys: usage counter, one-way revocation
- System settings row defaults and validation
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import AccountStatus, ApiKey, AuthSource, Identity, Role, Session
from auth.store import DEFAULT_SYSTEM_SETTINGS
from conftest import seed_identity

NOW = datetime(2026, 2, 10, 8, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(stores):
    return stores[0]


class TestIdentities:
    def test_lookup_is_case_insensitive(self, store):
        identity_id = seed_identity(store, "Person@Example.org")
        found = store.get_by_email("PERSON@example.ORG")
        assert found is not None
        assert found.id == identity_id
        assert found.email == "person@example.org"
        assert found.role == Role.customer
        assert found.status == AccountStatus.active

    def test_duplicate_email_raises_integrity_error(self, store):
        seed_identity(store, "dup@example.org")
        with pytest.raises(IntegrityError):
            store.create_identity(Identity(email="DUP@example.org"))

    def test_update_rejects_unknown_fields(self, store):
        identity_id = seed_identity(store, "fields@example.org")
        with pytest.raises(ValueError):
            store.update_identity(identity_id, failed_login_attempts=0)

    def test_list_and_count_admins(self, store):
        seed_identity(store, "a1@example.org", role=Role.admin)
        seed_identity(store, "a2@example.org", role=Role.super_admin)
        seed_identity(store, "a3@example.org", role=Role.admin, status=AccountStatus.deactivated)
        seed_identity(store, "p1@example.org", status=AccountStatus.pending)
        assert store.count_active_admins() == 2
        pending = store.list_identities(AccountStatus.pending)
        assert [i.email for i in pending] == ["p1@example.org"]
        assert len(store.list_identities()) == 4


class TestFailedLogins:
    def test_counter_increments_and_locks_at_threshold(self, store):
        identity_id = seed_identity(store, "lock@example.org")
        for expected in range(1, 5):
            attempts, locked_until = store.record_failed_login(identity_id, NOW)
            assert attempts == expected
            assert locked_until is None

        attempts, locked_until = store.record_failed_login(identity_id, NOW)
        assert attempts == 5
        assert locked_until == NOW + timedelta(minutes=15)

        identity = store.get_by_id(identity_id)
        assert identity.failed_login_attempts == 5
        assert identity.locked_until == NOW + timedelta(minutes=15)

    def test_reset_clears_counter_and_lock(self, store):
        identity_id = seed_identity(store, "reset@example.org")
        for _ in range(6):
            store.record_failed_login(identity_id, NOW)
        store.reset_failed_logins(identity_id)
        identity = store.get_by_id(identity_id)
        assert identity.failed_login_attempts == 0
        assert identity.locked_until is None


class TestDelegatedUpsert:
    def test_new_subject_creates_active_customer(self, store):
        identity = store.upsert_from_claims("sub-1", "new@example.org", "Ada", "Lovelace")
        assert identity.status == AccountStatus.active
        assert identity.role == Role.customer
        assert identity.oidc_subject == "sub-1"
        assert identity.display_name == "Ada Lovelace"

    def test_existing_email_is_linked_once(self, store):
        identity_id = seed_identity(store, "linked@example.org", role=Role.agent)
        identity = store.upsert_from_claims("sub-2", "linked@example.org")
        assert identity.id == identity_id
        assert identity.role == Role.agent
        assert store.get_by_oidc_subject("sub-2").id == identity_id

        again = store.upsert_from_claims("sub-2", "linked@example.org", first_name="Grace")
        assert again.id == identity_id
        assert again.first_name == "Grace"

    def test_email_owned_by_other_subject_is_refused(self, store):
        store.upsert_from_claims("sub-3", "taken@example.org")
        with pytest.raises(ValueError):
            store.upsert_from_claims("sub-4", "taken@example.org")


class TestSessions:
    def _session(self, identity_id: int, sid_hash: str = "h" * 64, expires_in=timedelta(hours=24)) -> Session:
        return Session(
            sid_hash=sid_hash,
            identity_id=identity_id,
            source=AuthSource.local,
            created_at=NOW,
            expires_at=NOW + expires_in,
            last_seen_at=NOW,
        )

    def test_create_get_touch(self, store):
        identity_id = seed_identity(store, "sess@example.org")
        store.create_session(self._session(identity_id))
        store.touch_session("h" * 64, NOW + timedelta(minutes=5))
        session = store.get_session("h" * 64)
        assert session.identity_id == identity_id
        assert session.source == AuthSource.local
        assert session.last_seen_at == NOW + timedelta(minutes=5)

    def test_delete_is_idempotent(self, store):
        identity_id = seed_identity(store, "del@example.org")
        store.create_session(self._session(identity_id))
        assert store.delete_session("h" * 64) is True
        assert store.delete_session("h" * 64) is False
        assert store.get_session("h" * 64) is None

    def test_purge_and_delete_for_identity(self, store):
        identity_id = seed_identity(store, "purge@example.org")
        store.create_session(self._session(identity_id, "a" * 64, expires_in=timedelta(minutes=1)))
        store.create_session(self._session(identity_id, "b" * 64))
        store.create_session(self._session(identity_id, "c" * 64))
        assert store.purge_expired_sessions(NOW + timedelta(hours=1)) == 1
        assert store.delete_sessions_for(identity_id) == 2


class TestApiKeys:
    def _key(self, created_by: int) -> ApiKey:
        return ApiKey(
            name="Partner",
            key_hash="f" * 64,
            masked_key="ALWR..ffff",
            created_by=created_by,
            permissions=["read:customers"],
        )

    def test_usage_counter_is_incremented(self, store):
        creator = seed_identity(store, "keys@example.org", role=Role.admin)
        key_id = store.create_api_key(self._key(creator))
        assert store.record_api_key_use(key_id, NOW) == 1
        assert store.record_api_key_use(key_id, NOW) == 2
        key = store.get_api_key_by_hash("f" * 64)
        assert key.usage_count == 2
        assert key.last_used_at == NOW
        assert key.permissions == ["read:customers"]

    def test_revocation_is_one_way(self, store):
        creator = seed_identity(store, "revoker@example.org", role=Role.admin)
        key_id = store.create_api_key(self._key(creator))
        assert store.revoke_api_key(key_id, creator, NOW) is True
        assert store.revoke_api_key(key_id, creator, NOW) is False
        key = store.get_api_key(key_id)
        assert key.revoked is True
        assert key.revoked_by == creator


class TestSystemSettings:
    def test_defaults_seeded(self, store):
        assert store.get_system_settings() == DEFAULT_SYSTEM_SETTINGS

    def test_update_and_unknown_key(self, store):
        store.update_system_settings(idle_timeout_minutes=10, self_registration_enabled=False)
        current = store.get_system_settings()
        assert current["idle_timeout_minutes"] == 10
        assert current["self_registration_enabled"] is False
        with pytest.raises(ValueError):
            store.update_system_settings(max_sessions=3)
