"""
audit/store.py -- SQLAlchemy Core persistence for audit entries.

Append-only: the public surface is append(), get() and list_filtered().
There is no update or delete method, and no caller should add one.

Date filtering compares ISO 8601 UTC strings. date_from starts at 00:00:00
of that day; date_to runs through 23:59:59.999999 of that day.

Layer rule: no imports from api/, auth/, or cache/.
"""

from __future__ import annotations

from datetime import datetime, time, timezone

from sqlalchemy import JSON, Column, Integer, MetaData, String, Table, Text, func, or_
from sqlalchemy.engine import Engine

from audit.models import AuditAction, AuditEntry, AuditFilter
from core.config import get_settings
from core.database import create_store_engine

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("actor_id", Integer),
    Column("actor_name", String(255), nullable=False),
    Column("actor_role", String(30)),
    Column("action", String(50), nullable=False, index=True),
    Column("resource_type", String(50)),
    Column("resource_id", String(255)),
    Column("success", Integer, nullable=False),
    Column("details", JSON),
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("created_at", String(40), nullable=False, index=True),
)

MAX_PAGE_SIZE = 500


def _iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


class AuditStore:
    """Repository for AuditEntry records."""

    def __init__(self, db_url: str | None = None, timeout_seconds: int | None = None) -> None:
        settings = get_settings()
        self.engine: Engine = create_store_engine(
            db_url or settings.database_url,
            timeout_seconds if timeout_seconds is not None else settings.db_timeout_seconds,
        )
        _metadata.create_all(self.engine)

    def append(self, entry: AuditEntry) -> int:
        created_at = entry.created_at or datetime.now(timezone.utc)
        with self.engine.begin() as conn:
            result = conn.execute(
                _audit_logs.insert().values(
                    actor_id=entry.actor_id,
                    actor_name=entry.actor_name,
                    actor_role=entry.actor_role,
                    action=AuditAction(entry.action).value,
                    resource_type=entry.resource_type,
                    resource_id=entry.resource_id,
                    success=1 if entry.success else 0,
                    details=entry.details or {},
                    ip_address=entry.ip_address,
                    user_agent=entry.user_agent,
                    created_at=_iso(created_at),
                )
            )
            return result.inserted_primary_key[0]

    def get(self, entry_id: int) -> AuditEntry | None:
        with self.engine.connect() as conn:
            row = conn.execute(_audit_logs.select().where(_audit_logs.c.id == entry_id)).fetchone()
        return _row_to_entry(row) if row is not None else None

    def list_filtered(self, criteria: AuditFilter | None = None) -> list[AuditEntry]:
        """Return entries matching every given criterion, newest first."""
        criteria = criteria or AuditFilter()
        query = _audit_logs.select()

        if criteria.action is not None:
            query = query.where(_audit_logs.c.action == AuditAction(criteria.action).value)
        if criteria.success is not None:
            query = query.where(_audit_logs.c.success == (1 if criteria.success else 0))
        if criteria.resource_type:
            query = query.where(_audit_logs.c.resource_type == criteria.resource_type)
        if criteria.date_from is not None:
            start = datetime.combine(criteria.date_from, time.min, tzinfo=timezone.utc)
            query = query.where(_audit_logs.c.created_at >= _iso(start))
        if criteria.date_to is not None:
            end = datetime.combine(criteria.date_to, time.max, tzinfo=timezone.utc)
            query = query.where(_audit_logs.c.created_at <= _iso(end))
        if criteria.search:
            pattern = f"%{criteria.search.lower()}%"
            query = query.where(
                or_(
                    func.lower(_audit_logs.c.actor_name).like(pattern),
                    func.lower(_audit_logs.c.resource_id).like(pattern),
                )
            )

        limit = max(1, min(criteria.limit, MAX_PAGE_SIZE))
        offset = max(0, criteria.offset)
        query = query.order_by(_audit_logs.c.created_at.desc(), _audit_logs.c.id.desc()).limit(limit).offset(offset)
        with self.engine.connect() as conn:
            rows = conn.execute(query).fetchall()
        return [_row_to_entry(r) for r in rows]

    def close(self) -> None:
        self.engine.dispose()


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        actor_id=row.actor_id,
        actor_name=row.actor_name,
        actor_role=row.actor_role,
        action=AuditAction(row.action),
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        success=bool(row.success),
        details=row.details or {},
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        created_at=datetime.fromisoformat(row.created_at),
    )
