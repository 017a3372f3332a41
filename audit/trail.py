"""
audit/trail.py -- The single entry point for writing audit entries.

record() never raises. The security decision an entry describes has already
been made by the time record() runs; a failing audit store must not turn a
correct 401 into a 500, nor undo a successful login. The failure is logged
at ERROR with a stack trace on "alwr.audit" so operators see it.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from audit.models import UNKNOWN_ACTOR, AuditAction, AuditEntry

if TYPE_CHECKING:
    from audit.store import AuditStore
    from auth.models import Identity, Principal
    from core.http import RequestMeta

logger = logging.getLogger("alwr.audit")


class AuditTrail:
    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(
        self,
        action: AuditAction,
        *,
        success: bool,
        actor: Principal | Identity | None = None,
        actor_name: str | None = None,
        resource_type: str | None = None,
        resource_id: str | int | None = None,
        details: dict | None = None,
        meta: RequestMeta | None = None,
    ) -> None:
        """Append one entry. Storage failures are logged and swallowed."""
        actor_id, name, role = _describe_actor(actor)
        entry = AuditEntry(
            action=action,
            success=success,
            actor_id=actor_id,
            actor_name=actor_name or name,
            actor_role=role,
            resource_type=resource_type,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details or {},
            ip_address=meta.ip_address if meta else None,
            user_agent=meta.user_agent if meta else None,
        )
        try:
            self.store.append(entry)
        except Exception:
            logger.exception(
                "Audit write failed (action=%s success=%s actor=%s)", entry.action.value, success, entry.actor_name
            )


def _describe_actor(actor) -> tuple[int | None, str, str | None]:
    if actor is None:
        return None, UNKNOWN_ACTOR, None
    # Principal carries subject_id; Identity carries id.
    actor_id = getattr(actor, "subject_id", None)
    if actor_id is None:
        actor_id = getattr(actor, "id", None)
    role = getattr(actor, "role", None)
    role_value = role.value if role is not None else None
    if getattr(actor, "source", None) is not None and actor.source.value == "api_key":
        role_value = "api_key"
    return actor_id, actor.display_name, role_value
