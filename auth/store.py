"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the
_row_to_* functions are the mappers. Service and route code never touches
SQL directly.

Tables:
  identities       one row per person; email stored lower-cased and UNIQUE
  backup_codes     SHA-256 digests of one-time recovery codes, one row each
  password_resets  SHA-256 digests of one-hour password reset tokens
  sessions         keyed by SHA-256 of the cookie value, never the raw id
  api_keys         SHA-256 of the raw key; permissions as a JSON list
  system_settings  single row (id=1) of admin-editable settings

Concurrency:
  Counters (failed_login_attempts, usage_count) are only ever changed with
  a single `UPDATE ... SET col = col + 1 ... RETURNING` inside a transaction.
  Two concurrent wrong-password requests therefore always produce two
  distinct counts; a read-then-write would let them both see the same value
  and under-count the attack. Consuming a backup code is a DELETE whose
  rowcount decides the winner, so a code cannot be redeemed twice. Password
  reset tokens are consumed the same way, with DELETE ... RETURNING.

Timestamps are stored as ISO 8601 UTC strings with fixed microsecond
precision so that string comparison in SQL matches chronological order.

Security:
  All queries use bound parameters. No f-strings in SQL.

Layer rule: no imports from api/, audit/, or cache/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    CheckConstraint,
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    func,
    select,
)
from sqlalchemy.engine import Engine

from auth.lockout import calculate_lock_until
from auth.models import AccountStatus, ApiKey, AuthSource, Identity, Role, Session
from core.config import get_settings
from core.database import create_store_engine

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_identities = Table(
    "identities",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("hashed_password", Text),  # NULL for delegated-only identities
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("role", String(30), nullable=False, server_default="customer"),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("oidc_subject", String(255), unique=True),
    Column("totp_secret", Text),  # Fernet token
    Column("two_factor_enabled", Integer, nullable=False, server_default="0"),
    Column("failed_login_attempts", Integer, nullable=False, server_default="0"),
    Column("locked_until", String(40)),
    Column("last_login", String(40)),
    Column("created_at", String(40), nullable=False),
)

_backup_codes = Table(
    "backup_codes",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("identity_id", Integer, nullable=False, index=True),
    Column("code_hash", String(64), nullable=False),
)

_password_resets = Table(
    "password_resets",
    _metadata,
    Column("token_hash", String(64), primary_key=True),
    Column("identity_id", Integer, nullable=False, index=True),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("sid_hash", String(64), primary_key=True),
    Column("identity_id", Integer, nullable=False, index=True),
    Column("source", String(20), nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40), nullable=False),
    Column("last_seen_at", String(40), nullable=False),
    Column("access_token", Text),
    Column("refresh_token", Text),  # Fernet token
    Column("token_expires_at", String(40)),
)

_api_keys = Table(
    "api_keys",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("name", String(100), nullable=False),
    Column("description", Text),
    Column("key_hash", String(64), nullable=False, unique=True),
    Column("masked_key", String(20), nullable=False),
    Column("created_by", Integer, nullable=False),
    Column("permissions", JSON, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("expires_at", String(40)),
    Column("revoked", Integer, nullable=False, server_default="0"),
    Column("revoked_at", String(40)),
    Column("revoked_by", Integer),
    Column("usage_count", Integer, nullable=False, server_default="0"),
    Column("last_used_at", String(40)),
)

_system_settings = Table(
    "system_settings",
    _metadata,
    Column("id", Integer, primary_key=True),
    Column("session_timeout_minutes", Integer, nullable=False, server_default="1440"),
    Column("idle_timeout_minutes", Integer, nullable=False, server_default="30"),
    Column("self_registration_enabled", Integer, nullable=False, server_default="1"),
    CheckConstraint("id = 1", name="system_settings_single_row"),
)

DEFAULT_SYSTEM_SETTINGS = {
    "session_timeout_minutes": 1440,
    "idle_timeout_minutes": 30,
    "self_registration_enabled": True,
}

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for Identity, Session, ApiKey and system settings.

    Usage:
        store = AuthStore("sqlite:///registry.db")
        identity_id = store.create_identity(Identity(email="a@example.com", hashed_password=...))
        identity = store.get_by_email("A@example.com")
        store.close()
    """

    # Known keys for system_settings -- validated before any write so a
    # request body can never name an arbitrary column.
    _SYSTEM_SETTINGS_KEYS: set = set(DEFAULT_SYSTEM_SETTINGS)

    _IDENTITY_MUTABLE_FIELDS: set = {"role", "status", "first_name", "last_name", "hashed_password"}

    def __init__(self, db_url: str | None = None, timeout_seconds: int | None = None) -> None:
        settings = get_settings()
        self.engine: Engine = create_store_engine(
            db_url or settings.database_url,
            timeout_seconds if timeout_seconds is not None else settings.db_timeout_seconds,
        )
        _metadata.create_all(self.engine)
        self._ensure_system_settings()

    def _ensure_system_settings(self) -> None:
        """Seed the single system_settings row if it does not exist yet."""
        with self.engine.begin() as conn:
            exists = conn.execute(select(_system_settings.c.id).where(_system_settings.c.id == 1)).first()
            if exists is None:
                conn.execute(_system_settings.insert().values(id=1))

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            conn.execute(select(1))
        return True

    # ------------------------------------------------------------------
    # Identity queries
    # ------------------------------------------------------------------

    def create_identity(self, identity: Identity) -> int:
        """Insert a new identity and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email (or OIDC subject)
        is already taken. Callers treat that as a duplicate registration.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _identities.insert().values(
                    email=identity.email.strip().lower(),
                    hashed_password=identity.hashed_password,
                    first_name=identity.first_name,
                    last_name=identity.last_name,
                    role=Role(identity.role).value,
                    status=AccountStatus(identity.status).value,
                    oidc_subject=identity.oidc_subject,
                    created_at=_to_iso(_utcnow()),
                )
            )
            return result.inserted_primary_key[0]

    def get_by_email(self, email: str) -> Identity | None:
        """Case-insensitive lookup; emails are stored lower-cased."""
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.email == email.strip().lower())).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_id(self, identity_id: int) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.id == identity_id)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def get_by_oidc_subject(self, subject: str) -> Identity | None:
        with self.engine.connect() as conn:
            row = conn.execute(_identities.select().where(_identities.c.oidc_subject == subject)).fetchone()
        return _row_to_identity(row) if row is not None else None

    def list_identities(self, status: AccountStatus | None = None) -> list[Identity]:
        """Return identities ordered by creation time, newest first."""
        query = _identities.select().order_by(_identities.c.created_at.desc(), _identities.c.id.desc())
        if status is not None:
            query = query.where(_identities.c.status == AccountStatus(status).value)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_identity(r) for r in rows]

    def update_identity(self, identity_id: int, **fields) -> bool:
        """Update mutable identity fields. Returns False if the id does not exist."""
        unknown = set(fields) - self._IDENTITY_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown identity fields: {unknown!r}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        if "status" in fields:
            fields["status"] = AccountStatus(fields["status"]).value
        with self.engine.begin() as conn:
            result = conn.execute(_identities.update().where(_identities.c.id == identity_id).values(**fields))
        return result.rowcount > 0

    def count_active_admins(self) -> int:
        """Number of active admin and super_admin identities."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count())
                .select_from(_identities)
                .where(
                    _identities.c.role.in_([Role.admin.value, Role.super_admin.value])
                    & (_identities.c.status == AccountStatus.active.value)
                )
            ).scalar()
        return result or 0

    def link_oidc_subject(self, identity_id: int, subject: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_identities.update().where(_identities.c.id == identity_id).values(oidc_subject=subject))

    def upsert_from_claims(
        self, subject: str, email: str, first_name: str | None = None, last_name: str | None = None
    ) -> Identity:
        """Find or create the identity for verified OIDC claims.

        Resolution order:
          1. An identity already linked to this subject -- profile refreshed.
          2. An unlinked identity with the same email -- linked on first use.
          3. Otherwise a new active customer. The provider has already
             verified the email, so no approval step applies.
        """
        existing = self.get_by_oidc_subject(subject)
        if existing is None:
            existing = self.get_by_email(email)
            if existing is not None and existing.oidc_subject is None:
                self.link_oidc_subject(existing.id, subject)
            elif existing is not None:
                # Email belongs to a different provider subject; never merge.
                raise ValueError("email is already linked to another delegated identity")
        if existing is not None:
            updates = {}
            if first_name:
                updates["first_name"] = first_name
            if last_name:
                updates["last_name"] = last_name
            if updates:
                self.update_identity(existing.id, **updates)
            return self.get_by_id(existing.id)

        identity_id = self.create_identity(
            Identity(
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=Role.customer,
                status=AccountStatus.active,
                oidc_subject=subject,
            )
        )
        return self.get_by_id(identity_id)

    # ------------------------------------------------------------------
    # Lockout counters
    # ------------------------------------------------------------------

    def record_failed_login(self, identity_id: int, now: datetime | None = None) -> tuple[int, datetime | None]:
        """Atomically increment the failure counter and lock when the threshold is reached.

        Returns (new_attempt_count, locked_until). locked_until is None when
        the new count is still below the threshold.
        """
        now = now or _utcnow()
        with self.engine.begin() as conn:
            attempts = conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(failed_login_attempts=_identities.c.failed_login_attempts + 1)
                .returning(_identities.c.failed_login_attempts)
            ).scalar_one()
            locked_until = calculate_lock_until(attempts, now)
            if locked_until is not None:
                conn.execute(
                    _identities.update()
                    .where(_identities.c.id == identity_id)
                    .values(locked_until=_to_iso(locked_until))
                )
        return attempts, locked_until

    def reset_failed_logins(self, identity_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(failed_login_attempts=0, locked_until=None)
            )

    def update_last_login(self, identity_id: int, now: datetime | None = None) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(last_login=_to_iso(now or _utcnow()))
            )

    def set_password(self, identity_id: int, hashed_password: str) -> None:
        """Replace the password hash and clear any lockout in the same statement."""
        with self.engine.begin() as conn:
            conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(hashed_password=hashed_password, failed_login_attempts=0, locked_until=None)
            )

    # ------------------------------------------------------------------
    # Password reset tokens
    # ------------------------------------------------------------------

    def create_password_reset(self, identity_id: int, token_hash: str, expires_at: datetime, now: datetime) -> None:
        """Store a reset token digest. Earlier outstanding tokens for the identity are dropped."""
        with self.engine.begin() as conn:
            conn.execute(_password_resets.delete().where(_password_resets.c.identity_id == identity_id))
            conn.execute(
                _password_resets.insert().values(
                    token_hash=token_hash,
                    identity_id=identity_id,
                    created_at=_to_iso(now),
                    expires_at=_to_iso(expires_at),
                )
            )

    def consume_password_reset(self, token_hash: str, now: datetime | None = None) -> int | None:
        """Delete a live token and return its identity id, or None if unknown, used or expired.

        The DELETE ... RETURNING is the single point of truth: of two
        concurrent redemptions only one gets a row back.
        """
        with self.engine.begin() as conn:
            row = conn.execute(
                _password_resets.delete()
                .where(
                    (_password_resets.c.token_hash == token_hash)
                    & (_password_resets.c.expires_at > _to_iso(now or _utcnow()))
                )
                .returning(_password_resets.c.identity_id)
            ).first()
        return row.identity_id if row is not None else None

    def purge_expired_password_resets(self, now: datetime | None = None) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _password_resets.delete().where(_password_resets.c.expires_at <= _to_iso(now or _utcnow()))
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Two-factor
    # ------------------------------------------------------------------

    def enable_two_factor(self, identity_id: int, encrypted_secret: str, backup_code_hashes: list[str]) -> None:
        """Store the secret, replace all backup codes, and flip the flag in one transaction."""
        with self.engine.begin() as conn:
            conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(totp_secret=encrypted_secret, two_factor_enabled=1)
            )
            conn.execute(_backup_codes.delete().where(_backup_codes.c.identity_id == identity_id))
            if backup_code_hashes:
                conn.execute(
                    _backup_codes.insert(),
                    [{"identity_id": identity_id, "code_hash": h} for h in backup_code_hashes],
                )

    def disable_two_factor(self, identity_id: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _identities.update()
                .where(_identities.c.id == identity_id)
                .values(totp_secret=None, two_factor_enabled=0)
            )
            conn.execute(_backup_codes.delete().where(_backup_codes.c.identity_id == identity_id))

    def consume_backup_code(self, identity_id: int, code_hash: str) -> bool:
        """Delete one matching backup code. True only for the caller that removed it."""
        with self.engine.begin() as conn:
            row = conn.execute(
                select(_backup_codes.c.id)
                .where((_backup_codes.c.identity_id == identity_id) & (_backup_codes.c.code_hash == code_hash))
                .limit(1)
            ).first()
            if row is None:
                return False
            result = conn.execute(_backup_codes.delete().where(_backup_codes.c.id == row.id))
        return result.rowcount == 1

    def count_backup_codes(self, identity_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_backup_codes).where(_backup_codes.c.identity_id == identity_id)
            ).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, session: Session) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.insert().values(
                    sid_hash=session.sid_hash,
                    identity_id=session.identity_id,
                    source=AuthSource(session.source).value,
                    created_at=_to_iso(session.created_at),
                    expires_at=_to_iso(session.expires_at),
                    last_seen_at=_to_iso(session.last_seen_at),
                    access_token=session.access_token,
                    refresh_token=session.refresh_token,
                    token_expires_at=_to_iso(session.token_expires_at),
                )
            )

    def get_session(self, sid_hash: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.sid_hash == sid_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def touch_session(self, sid_hash: str, now: datetime | None = None) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.update()
                .where(_sessions.c.sid_hash == sid_hash)
                .values(last_seen_at=_to_iso(now or _utcnow()))
            )

    def update_session_tokens(
        self,
        sid_hash: str,
        access_token: str | None,
        refresh_token: str | None,
        token_expires_at: datetime | None,
    ) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.update()
                .where(_sessions.c.sid_hash == sid_hash)
                .values(
                    access_token=access_token,
                    refresh_token=refresh_token,
                    token_expires_at=_to_iso(token_expires_at),
                )
            )

    def delete_session(self, sid_hash: str) -> bool:
        """Delete a session. Returns False (not an error) if it was already gone."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.sid_hash == sid_hash))
        return result.rowcount > 0

    def delete_sessions_for(self, identity_id: int, keep_sid_hash: str | None = None) -> int:
        """Delete every session of an identity, optionally sparing one (the caller's own)."""
        condition = _sessions.c.identity_id == identity_id
        if keep_sid_hash is not None:
            condition = condition & (_sessions.c.sid_hash != keep_sid_hash)
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(condition))
        return result.rowcount

    def purge_expired_sessions(self, now: datetime | None = None) -> int:
        """Delete sessions past their absolute expiry. Returns the number removed."""
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= _to_iso(now or _utcnow())))
        return result.rowcount

    # ------------------------------------------------------------------
    # API keys
    # ------------------------------------------------------------------

    def create_api_key(self, api_key: ApiKey) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(
                _api_keys.insert().values(
                    name=api_key.name,
                    description=api_key.description,
                    key_hash=api_key.key_hash,
                    masked_key=api_key.masked_key,
                    created_by=api_key.created_by,
                    permissions=list(api_key.permissions),
                    created_at=_to_iso(_utcnow()),
                    expires_at=_to_iso(api_key.expires_at),
                )
            )
            return result.inserted_primary_key[0]

    def get_api_key(self, key_id: int) -> ApiKey | None:
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.id == key_id)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def get_api_key_by_hash(self, key_hash: str) -> ApiKey | None:
        """Look up a key (revoked or not) by its SHA-256 digest. O(1) via UNIQUE index."""
        with self.engine.connect() as conn:
            row = conn.execute(_api_keys.select().where(_api_keys.c.key_hash == key_hash)).fetchone()
        return _row_to_api_key(row) if row is not None else None

    def list_api_keys(self, created_by: int | None = None) -> list[ApiKey]:
        """Return keys newest first, optionally only those created by one identity."""
        query = _api_keys.select().order_by(_api_keys.c.created_at.desc(), _api_keys.c.id.desc())
        if created_by is not None:
            query = query.where(_api_keys.c.created_by == created_by)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_api_key(r) for r in rows]

    def record_api_key_use(self, key_id: int, now: datetime | None = None) -> int:
        """Atomically add one to usage_count and stamp last_used_at. Returns the new count."""
        with self.engine.begin() as conn:
            return conn.execute(
                _api_keys.update()
                .where(_api_keys.c.id == key_id)
                .values(usage_count=_api_keys.c.usage_count + 1, last_used_at=_to_iso(now or _utcnow()))
                .returning(_api_keys.c.usage_count)
            ).scalar_one()

    def revoke_api_key(self, key_id: int, revoked_by: int, now: datetime | None = None) -> bool:
        """Mark a key revoked. Returns False if it does not exist or was already revoked.

        No method un-revokes a key.
        """
        with self.engine.begin() as conn:
            result = conn.execute(
                _api_keys.update()
                .where((_api_keys.c.id == key_id) & (_api_keys.c.revoked == 0))
                .values(revoked=1, revoked_at=_to_iso(now or _utcnow()), revoked_by=revoked_by)
            )
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # System settings
    # ------------------------------------------------------------------

    def get_system_settings(self) -> dict:
        with self.engine.connect() as conn:
            row = conn.execute(_system_settings.select().where(_system_settings.c.id == 1)).fetchone()
        if row is None:
            return dict(DEFAULT_SYSTEM_SETTINGS)
        return {
            "session_timeout_minutes": row.session_timeout_minutes,
            "idle_timeout_minutes": row.idle_timeout_minutes,
            "self_registration_enabled": bool(row.self_registration_enabled),
        }

    def update_system_settings(self, **kwargs) -> None:
        """Update one or more system settings. Unknown keys raise ValueError."""
        unknown = set(kwargs) - self._SYSTEM_SETTINGS_KEYS
        if unknown:
            raise ValueError(f"Unknown system settings keys: {unknown!r}")
        if not kwargs:
            return
        if "self_registration_enabled" in kwargs:
            kwargs["self_registration_enabled"] = 1 if kwargs["self_registration_enabled"] else 0
        with self.engine.begin() as conn:
            conn.execute(_system_settings.update().where(_system_settings.c.id == 1).values(**kwargs))

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_identity(row) -> Identity:
    return Identity(
        id=row.id,
        email=row.email,
        hashed_password=row.hashed_password,
        first_name=row.first_name,
        last_name=row.last_name,
        role=Role(row.role),
        status=AccountStatus(row.status),
        oidc_subject=row.oidc_subject,
        totp_secret=row.totp_secret,
        two_factor_enabled=bool(row.two_factor_enabled),
        failed_login_attempts=row.failed_login_attempts,
        locked_until=_from_iso(row.locked_until),
        last_login=_from_iso(row.last_login),
        created_at=_from_iso(row.created_at),
    )


def _row_to_session(row) -> Session:
    return Session(
        sid_hash=row.sid_hash,
        identity_id=row.identity_id,
        source=AuthSource(row.source),
        created_at=_from_iso(row.created_at),
        expires_at=_from_iso(row.expires_at),
        last_seen_at=_from_iso(row.last_seen_at),
        access_token=row.access_token,
        refresh_token=row.refresh_token,
        token_expires_at=_from_iso(row.token_expires_at),
    )


def _row_to_api_key(row) -> ApiKey:
    return ApiKey(
        id=row.id,
        name=row.name,
        description=row.description,
        key_hash=row.key_hash,
        masked_key=row.masked_key,
        created_by=row.created_by,
        permissions=list(row.permissions or []),
        created_at=_from_iso(row.created_at),
        expires_at=_from_iso(row.expires_at),
        revoked=bool(row.revoked),
        revoked_at=_from_iso(row.revoked_at),
        revoked_by=row.revoked_by,
        usage_count=row.usage_count,
        last_used_at=_from_iso(row.last_used_at),
    )
