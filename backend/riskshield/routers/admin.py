"""
RiskShield - Admin Router
Company compliance overview, user activity and user removal.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session

from ..auth import require_admin
from ..database import get_db
from ..dependencies import get_compliance_service
from ..models.db_models import UserDB
from ..services.compliance import ComplianceService
from ..services.compliance.audit_recorder import serialize_audit_entry
from ..services.compliance.reporting import status_counts
from .common import ensure_company

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class ComplianceOverview(BaseModel):
    """Current assignment counts by status."""
    compliant: int
    non_compliant: int
    pending: int
    exception: int
    total: int
    stop_work_risks: int


@router.get("/compliance/overview", response_model=ComplianceOverview)
async def compliance_overview(
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    admin: UserDB = Depends(require_admin),
):
    counts = status_counts(db, admin.company_id)
    return ComplianceOverview(
        **counts,
        total=sum(counts.values()),
        stop_work_risks=len(service.stop_work_risks(admin.company_id)),
    )


@router.get("/users/{user_id}/activity", response_model=dict)
async def user_activity(
    user_id: str,
    limit: int = Query(100, ge=1, le=500),
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    admin: UserDB = Depends(require_admin),
):
    """Audit entries recorded for one user, newest first."""
    user = db.query(UserDB).filter(UserDB.id == user_id).first()
    ensure_company(user.company_id if user else None, admin, "User", user_id)

    entries = service.audit.list_for_user(user_id, limit=limit)
    return {
        "user_id": user_id,
        "entries": [serialize_audit_entry(e) for e in entries],
        "total": len(entries),
    }


@router.delete("/users/{user_id}", response_model=dict)
async def delete_user(
    user_id: str,
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    admin: UserDB = Depends(require_admin),
):
    """Remove a user. Their audit history stays, with the user reference nulled."""
    if user_id == admin.id:
        raise HTTPException(status_code=400, detail="Admins cannot delete themselves")
    user = db.query(UserDB).filter(UserDB.id == user_id).first()
    ensure_company(user.company_id if user else None, admin, "User", user_id)

    result = service.remove_user(user_id)
    db.commit()
    logger.info(f"User {user_id} removed by admin {admin.id}")
    return result
