"""
api/routes/v1/audit.py -- Security audit log endpoints.

Routes:
  GET  /api/v1/audit/logs     -- filtered, paginated entries (newest first)
  GET  /api/v1/audit/stats    -- counts by type and severity (admin only)
  POST /api/v1/audit/verify   -- run the integrity check (admin only)

Scoping: admins see every entry; any other user sees only entries whose
user_id is their own. The scoping is enforced by
AuthOrchestrator.query_audit_log(), not by the query parameters.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from api.models import AuditEntryResponse, AuditPageResponse, ErrorDetail, ErrorResponse, IntegrityCheckResponse
from api.responses import error_response
from audit.models import AuditLogFilter, IntegrityViolation, SecurityAction, SecurityEventType, SecuritySeverity
from audit.store import MAX_PAGE_SIZE
from auth.dependencies import get_current_session, get_session_token, require_admin
from auth.models import SessionContext, User

logger = logging.getLogger("gatekeeper.api.audit")

router = APIRouter()


@router.get("/audit/logs", response_model=AuditPageResponse)
def query_logs(
    request: Request,
    ctx: SessionContext = Depends(get_current_session),
    user_id: Optional[int] = None,
    email: Optional[str] = None,
    event_type: Optional[SecurityEventType] = None,
    action: Optional[SecurityAction] = None,
    success: Optional[bool] = None,
    severity: Optional[SecuritySeverity] = None,
    ip_address: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(default=0, ge=0),
):
    flt = AuditLogFilter(
        user_id=user_id,
        email=email,
        event_type=event_type,
        action=action,
        success=success,
        severity=severity,
        ip_address=ip_address,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        offset=offset,
    )
    result = request.app.state.orchestrator.query_audit_log(get_session_token(request), flt)
    if not result.ok:
        return error_response(result)
    page = result.value
    return AuditPageResponse(
        items=[AuditEntryResponse.from_entry(e) for e in page.items],
        total=page.total,
        limit=page.limit,
        offset=page.offset,
        has_more=page.has_more,
    )


@router.get("/audit/stats")
def audit_stats(request: Request, current_user: User = Depends(require_admin)) -> dict:
    stats = request.app.state.orchestrator.audit.stats()
    return {
        "total": stats.total,
        "successful": stats.successful,
        "failed": stats.failed,
        "by_event_type": stats.by_event_type,
        "by_severity": stats.by_severity,
    }


@router.post("/audit/verify", response_model=IntegrityCheckResponse)
def verify_audit_log(request: Request, current_user: User = Depends(require_admin)):
    """Verify every entry's checksum. 409 with the corrupted ids on tampering."""
    try:
        verified = request.app.state.orchestrator.audit.run_integrity_check()
    except IntegrityViolation as exc:
        return JSONResponse(
            status_code=409,
            content=ErrorResponse(
                error=ErrorDetail(
                    code="integrity_violation",
                    message="Audit log integrity violation detected.",
                    detail=",".join(exc.entry_ids),
                )
            ).model_dump(),
        )
    return IntegrityCheckResponse(ok=True, verified=verified)
