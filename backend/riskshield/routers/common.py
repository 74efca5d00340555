"""
Helpers shared by the API routers.
"""
from typing import Optional

from sqlalchemy.orm import Session

from ..errors import NotFound
from ..models.db_models import (
    ComplianceExceptionDB, ProjectDB, ProjectSubcontractorDB, UserDB, VerificationDB,
)


def ensure_company(company_id: Optional[str], user: UserDB, entity: str, entity_id: str) -> None:
    """Records of another company are reported as missing, never as forbidden."""
    if company_id != user.company_id:
        raise NotFound(entity, entity_id)


def assignment_for_user(db: Session, assignment_id: str, user: UserDB) -> ProjectSubcontractorDB:
    assignment = db.query(ProjectSubcontractorDB).filter(ProjectSubcontractorDB.id == assignment_id).first()
    if not assignment:
        raise NotFound("Assignment", assignment_id)
    ensure_company(assignment.project.company_id, user, "Assignment", assignment_id)
    return assignment


def exception_for_user(db: Session, exception_id: str, user: UserDB) -> ComplianceExceptionDB:
    exception = db.query(ComplianceExceptionDB).filter(ComplianceExceptionDB.id == exception_id).first()
    if not exception:
        raise NotFound("Exception", exception_id)
    ensure_company(exception.assignment.project.company_id, user, "Exception", exception_id)
    return exception


def verification_for_user(db: Session, verification_id: str, user: UserDB) -> VerificationDB:
    verification = db.query(VerificationDB).filter(VerificationDB.id == verification_id).first()
    if not verification:
        raise NotFound("Verification", verification_id)
    project = db.query(ProjectDB).filter(ProjectDB.id == verification.project_id).first()
    ensure_company(project.company_id if project else None, user, "Verification", verification_id)
    return verification
