"""
Verification API Routes

Verdict ingestion from the document pipeline (internal key) and manual
override by approvers.
"""
from datetime import date
from typing import Optional, List
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user, require_approver, verify_internal_key
from ..database import get_db
from ..dependencies import get_compliance_service
from ..models.db_models import UserDB, VerdictStatus
from ..services.compliance import ComplianceService, VerdictOutcome
from ..services.compliance.verdict_store import serialize_verification
from .common import ensure_company, verification_for_user


router = APIRouter(prefix="/verifications", tags=["verifications"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class SubmitVerdictRequest(BaseModel):
    """Verdict produced by the document-extraction pipeline."""
    document_id: str = Field(..., description="ID of the submitted certificate document")
    project_id: str = Field(..., description="Project the certificate was submitted for")
    subcontractor_id: str = Field(..., description="Subcontractor the certificate covers")
    status: str = Field(..., description="pass, fail or review")
    confidence_score: float = Field(..., description="Extraction confidence between 0 and 1")
    deficiencies: List[dict] = Field(default_factory=list, description="Ordered deficiency list")
    expiry_date: Optional[date] = Field(None, description="Policy expiry date read off the certificate")


class OverrideVerdictRequest(BaseModel):
    """Manual override of a verdict."""
    status: VerdictStatus = Field(..., description="New verdict status")


def _outcome_to_dict(outcome: VerdictOutcome) -> dict:
    return {
        "verification": serialize_verification(outcome.verification),
        "previous_status": outcome.previous_status.value,
        "status": outcome.status.value,
        "resolved_exception_ids": outcome.resolved_exception_ids,
        "communications": outcome.communications,
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict)
def submit_verdict(
    request: SubmitVerdictRequest,
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    _: bool = Depends(verify_internal_key),
):
    """
    Record a verdict and run the resulting status change.

    A fail/review verdict sends the stage-0 deficiency notice immediately;
    a pass verdict resolves active exceptions and sends a confirmation.
    """
    outcome = service.submit_verdict(
        document_id=request.document_id,
        project_id=request.project_id,
        subcontractor_id=request.subcontractor_id,
        status=request.status,
        confidence=request.confidence_score,
        deficiencies=request.deficiencies,
        expiry_date=request.expiry_date,
    )
    db.commit()
    return _outcome_to_dict(outcome)


@router.post("/{verification_id}/override", response_model=dict)
def override_verdict(
    verification_id: str,
    request: OverrideVerdictRequest,
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    current_user: UserDB = Depends(require_approver),
):
    """Replace a verdict's status. Admin and risk manager only."""
    verification_for_user(db, verification_id, current_user)
    outcome = service.override_verdict(verification_id, request.status, current_user.id)
    db.commit()
    return _outcome_to_dict(outcome)


@router.get("/{verification_id}", response_model=dict)
async def get_verification(
    verification_id: str,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    return serialize_verification(verification_for_user(db, verification_id, current_user))


@router.get("", response_model=dict)
async def list_verifications(
    project_id: str = Query(..., description="Project ID"),
    subcontractor_id: str = Query(..., description="Subcontractor ID"),
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    current_user: UserDB = Depends(get_current_user),
):
    """Verdict history of one assignment, newest first."""
    assignment = service.verdicts.get_assignment(project_id, subcontractor_id)
    company_id: Optional[str] = assignment.project.company_id if assignment else None
    ensure_company(company_id, current_user, "Assignment", f"{project_id}/{subcontractor_id}")

    verifications = service.verdicts.list_for_assignment(project_id, subcontractor_id)
    return {
        "verifications": [serialize_verification(v) for v in verifications],
        "total": len(verifications),
    }
