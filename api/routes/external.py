"""
api/routes/external.py -- Endpoints for integrators authenticating with an API key.

Routes:
  GET /api/external/me          -- the calling key's identity and permissions
  GET /api/external/audit-logs  -- recent audit entries (requires read:reports)

Every route authenticates `Authorization: Bearer ALWR_...` through
auth.dependencies.require_api_key; session cookies are ignored here.
"""

from __future__ import annotations

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from api.models import AuditEntryResponse, ExternalKeyResponse
from audit.models import AuditFilter
from auth.dependencies import require_api_key, require_api_key_permission
from auth.models import Principal

# Auth policy: API key on every route; per-route permission checks below.
router = APIRouter(prefix="/external")


@router.get("/me", response_model=ExternalKeyResponse)
def whoami(principal: Principal = Depends(require_api_key)) -> ExternalKeyResponse:
    return ExternalKeyResponse(
        key_id=principal.api_key_id,
        name=principal.display_name,
        permissions=sorted(principal.permissions),
    )


@router.get("/audit-logs", response_model=list[AuditEntryResponse])
def external_audit_logs(
    request: Request,
    date_from: Optional[date] = Query(default=None, alias="dateFrom"),
    date_to: Optional[date] = Query(default=None, alias="dateTo"),
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(require_api_key_permission("read:reports")),
) -> list[AuditEntryResponse]:
    criteria = AuditFilter(date_from=date_from, date_to=date_to, limit=limit, offset=offset)
    return [AuditEntryResponse.from_entry(e) for e in request.app.state.audit_store.list_filtered(criteria)]
