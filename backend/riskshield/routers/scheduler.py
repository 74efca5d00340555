"""
Scheduler API Routes

Internal endpoints for system-automatic tasks: escalation sweeps, exception
expiry, expiration reminders, compliance snapshots and stop-work risk
listing. Called by cron with the internal API key.
"""
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import verify_internal_key
from ..database import get_db
from ..dependencies import get_compliance_service
from ..services.compliance import ComplianceService


router = APIRouter(prefix="/internal", tags=["scheduler"])


class EscalationSweepRequest(BaseModel):
    company_id: str = Field(..., description="Company to sweep")
    min_days_waiting: Optional[int] = Field(None, ge=0, description="Days between stages (default from settings)")
    max_followups: Optional[int] = Field(None, ge=0, description="Max assignments to advance this run")
    preview_only: bool = Field(default=False, description="Compute but do not send")


# =============================================================================
# SCHEDULER ENDPOINTS (SYSTEM-ONLY)
# =============================================================================

@router.post("/escalation-sweep", response_model=dict)
def run_escalation_sweep(
    request: EscalationSweepRequest,
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    _: bool = Depends(verify_internal_key),
):
    """
    Run (or preview) the escalation sweep for one company.

    System-automatic - no user confirmation required.
    """
    result = service.run_escalation_sweep(
        request.company_id,
        min_days_waiting=request.min_days_waiting,
        max_followups=request.max_followups,
        preview_only=request.preview_only,
    )
    if not request.preview_only:
        db.commit()
    return result.to_dict()


@router.get("/escalation-preview", response_model=dict)
def preview_escalation(
    company_id: str = Query(..., description="Company to preview"),
    min_days_waiting: Optional[int] = Query(None, ge=0),
    max_followups: Optional[int] = Query(None, ge=0),
    service: ComplianceService = Depends(get_compliance_service),
    _: bool = Depends(verify_internal_key),
):
    """Which assignments the next sweep would contact, and which are not yet due."""
    result = service.run_escalation_sweep(
        company_id,
        min_days_waiting=min_days_waiting,
        max_followups=max_followups,
        preview_only=True,
    )
    return result.to_dict()


@router.post("/exception-expiry", response_model=dict)
async def run_exception_expiry(
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    _: bool = Depends(verify_internal_key),
):
    """Expire every active exception past its expires_at."""
    result = service.expire_exceptions()
    db.commit()
    return result


@router.post("/compliance-snapshot", response_model=dict)
async def run_compliance_snapshot(
    company_id: str = Query(..., description="Company to snapshot"),
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    _: bool = Depends(verify_internal_key),
):
    result = service.compliance_snapshot(company_id)
    db.commit()
    return result


@router.post("/expiration-reminders", response_model=dict)
def run_expiration_reminders(
    company_id: str = Query(..., description="Company to remind"),
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    _: bool = Depends(verify_internal_key),
):
    """Email subcontractors whose passing certificate expires within 30, 14, 7 or 0 days."""
    result = service.run_expiration_reminders(company_id)
    db.commit()
    return result.to_dict()


@router.get("/stop-work-risks", response_model=dict)
async def get_stop_work_risks(
    company_id: str = Query(..., description="Company to check"),
    service: ComplianceService = Depends(get_compliance_service),
    _: bool = Depends(verify_internal_key),
):
    risks = service.stop_work_risks(company_id)
    return {"company_id": company_id, "risks": risks, "total": len(risks)}


@router.post("/run-all", response_model=dict)
def run_all_daily_jobs(
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    _: bool = Depends(verify_internal_key),
):
    """
    Run all daily jobs in sequence.

    Single endpoint for cron job to call:
    1. Exception expiry
    2. Escalation sweep per company
    3. Expiration reminders per company
    4. Compliance snapshot per company
    """
    result = service.run_daily_jobs()
    db.commit()
    return result
