from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy import desc, select
from sqlalchemy.orm import Session

from packages.access import Permission

from ..db import get_db
from ..models import AuditLog
from ..schemas import AuditLogResponse
from ..tenancy import RequestContext, account_scoped, get_request_context, require_permission

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("", response_model=list[AuditLogResponse])
def list_audit_logs(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    context: RequestContext = Depends(get_request_context),
) -> list[AuditLogResponse]:
    require_permission(context, Permission.VIEW_ACCOUNT_ANALYTICS)
    stmt = account_scoped(
        select(AuditLog).order_by(desc(AuditLog.created_at), AuditLog.id).limit(limit).offset(offset),
        context.current_account_id,
        AuditLog,
    )
    return [AuditLogResponse.model_validate(row) for row in db.scalars(stmt).all()]
