"""
Audit Log API Routes

Read access to the company audit log for admins and risk managers.
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..auth import require_approver
from ..database import get_db
from ..models.db_models import UserDB
from ..services.compliance.audit_recorder import AuditRecorder, serialize_audit_entry


router = APIRouter(prefix="/audit-logs", tags=["audit"])


@router.get("", response_model=dict)
async def list_audit_logs(
    entity_type: Optional[str] = Query(None, description="Filter by entity type"),
    entity_id: Optional[str] = Query(None, description="Filter by entity ID"),
    action: Optional[str] = Query(None, description="Filter by action"),
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(require_approver),
):
    """Newest-first page of the caller's company log."""
    page = AuditRecorder(db).list_for_company(
        current_user.company_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action=action,
        limit=limit,
        offset=offset,
    )
    return {**page, "logs": [serialize_audit_entry(e) for e in page["logs"]]}
