"""
Exception API Routes

Create, approve, reject, resolve and close compliance exceptions.
Role gating happens here; the lifecycle manager trusts its caller.
"""
from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import can_approve, get_current_user, require_approver, require_roles
from ..database import get_db
from ..dependencies import get_compliance_service
from ..models.db_models import ExpirationType, RiskLevel, UserDB, UserRole
from ..services.compliance import ComplianceService
from ..services.compliance.audit_recorder import serialize_audit_entry
from ..services.compliance.exception_lifecycle import serialize_exception
from .common import assignment_for_user, exception_for_user


router = APIRouter(prefix="/exceptions", tags=["exceptions"])

require_editor = require_roles(UserRole.ADMIN, UserRole.RISK_MANAGER, UserRole.PROJECT_MANAGER)


# =============================================================================
# REQUEST MODELS
# =============================================================================

class CreateExceptionRequest(BaseModel):
    """Request to create an exception for one assignment."""
    project_subcontractor_id: str = Field(..., description="Assignment the exception applies to")
    issue_summary: str = Field(..., description="What is wrong with the certificate")
    reason: str = Field(..., description="Why work may continue anyway")
    risk_level: RiskLevel = Field(..., description="low, medium or high")
    expiration_type: ExpirationType = Field(..., description="How the exception ends")
    expires_at: Optional[datetime] = Field(None, description="Required for specific_date")
    duration_days: Optional[int] = Field(None, description="For fixed_duration, instead of expires_at")
    verification_id: Optional[str] = Field(None, description="Verdict this exception overrides")
    supporting_document_url: Optional[str] = Field(None, description="Link to supporting evidence")
    auto_approve: bool = Field(default=False, description="Activate immediately (approvers only)")


class NotesRequest(BaseModel):
    notes: Optional[str] = Field(None, description="Free-text notes")


class ResolveExceptionRequest(BaseModel):
    resolution_type: str = Field(..., description="e.g. compliant_certificate, subcontractor_removed")
    notes: Optional[str] = Field(None, description="Free-text notes")


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("", response_model=dict)
def create_exception(
    request: CreateExceptionRequest,
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    current_user: UserDB = Depends(require_editor),
):
    """
    Create an exception.

    Approvers (admin, risk manager) may auto-approve; everyone else creates
    a pending_approval request.
    """
    assignment_for_user(db, request.project_subcontractor_id, current_user)
    if request.auto_approve and not can_approve(current_user):
        raise HTTPException(status_code=403, detail="Only admins and risk managers can auto-approve exceptions")

    exception = service.create_exception(
        actor_user_id=current_user.id,
        auto_approve=request.auto_approve,
        assignment_id=request.project_subcontractor_id,
        issue_summary=request.issue_summary,
        reason=request.reason,
        risk_level=request.risk_level,
        expiration_type=request.expiration_type,
        expires_at=request.expires_at,
        duration_days=request.duration_days,
        verification_id=request.verification_id,
        supporting_document_url=request.supporting_document_url,
    )
    db.commit()
    return serialize_exception(exception)


@router.post("/{exception_id}/approve", response_model=dict)
def approve_exception(
    exception_id: str,
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    current_user: UserDB = Depends(require_approver),
):
    exception_for_user(db, exception_id, current_user)
    exception = service.approve_exception(exception_id, current_user.id)
    db.commit()
    return serialize_exception(exception)


@router.post("/{exception_id}/reject", response_model=dict)
def reject_exception(
    exception_id: str,
    request: NotesRequest,
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    current_user: UserDB = Depends(require_approver),
):
    exception_for_user(db, exception_id, current_user)
    exception = service.reject_exception(exception_id, current_user.id, request.notes)
    db.commit()
    return serialize_exception(exception)


@router.post("/{exception_id}/resolve", response_model=dict)
def resolve_exception(
    exception_id: str,
    request: ResolveExceptionRequest,
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    current_user: UserDB = Depends(require_editor),
):
    exception_for_user(db, exception_id, current_user)
    exception = service.resolve_exception(exception_id, current_user.id, request.resolution_type, request.notes)
    db.commit()
    return serialize_exception(exception)


@router.post("/{exception_id}/close", response_model=dict)
def close_exception(
    exception_id: str,
    request: NotesRequest,
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    current_user: UserDB = Depends(require_approver),
):
    """Administrative close of an active or pending exception."""
    exception_for_user(db, exception_id, current_user)
    exception = service.close_exception(exception_id, current_user.id, request.notes)
    db.commit()
    return serialize_exception(exception)


@router.get("", response_model=dict)
async def list_exceptions(
    status: Optional[str] = Query(None, description="Filter by exception status"),
    project_subcontractor_id: Optional[str] = Query(None, description="Filter by assignment"),
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    current_user: UserDB = Depends(get_current_user),
):
    if project_subcontractor_id:
        assignment_for_user(db, project_subcontractor_id, current_user)
        exceptions = service.exceptions.list_for_assignment(project_subcontractor_id)
        if status:
            exceptions = [e for e in exceptions if e.status.value == status]
    else:
        exceptions = service.exceptions.list_for_company(current_user.company_id, status)
    return {"exceptions": [serialize_exception(e) for e in exceptions], "total": len(exceptions)}


@router.get("/{exception_id}", response_model=dict)
async def get_exception(
    exception_id: str,
    db: Session = Depends(get_db),
    current_user: UserDB = Depends(get_current_user),
):
    return serialize_exception(exception_for_user(db, exception_id, current_user))


@router.get("/{exception_id}/audit-trail", response_model=dict)
async def exception_audit_trail(
    exception_id: str,
    db: Session = Depends(get_db),
    service: ComplianceService = Depends(get_compliance_service),
    current_user: UserDB = Depends(get_current_user),
):
    """Chronological history of one exception."""
    exception = exception_for_user(db, exception_id, current_user)
    entries = service.exceptions.audit_trail(exception_id)
    return {
        "exception": serialize_exception(exception),
        "audit_trail": [serialize_audit_entry(e) for e in entries],
    }
