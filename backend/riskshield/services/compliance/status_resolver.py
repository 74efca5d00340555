"""
Compliance Status Resolver

The single place assignment status is derived. Every caller (verdict
ingestion, exception transitions, sweeps) goes through `recompute` rather
than setting ProjectSubcontractorDB.status itself.

Priority:
1. ACTIVE exception      -> exception
2. No verdict            -> pending
3. Verdict pass          -> compliant
4. Verdict review        -> pending
5. Verdict fail          -> non_compliant
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ...models.db_models import (
    ComplianceStatus, VerdictStatus, ExceptionStatus,
    ProjectSubcontractorDB, VerificationDB, ComplianceExceptionDB, utcnow,
)
from .audit_recorder import AuditRecorder
from .verdict_store import VerdictStore


logger = logging.getLogger(__name__)


VERDICT_TO_STATUS = {
    VerdictStatus.PASS: ComplianceStatus.COMPLIANT,
    VerdictStatus.REVIEW: ComplianceStatus.PENDING,
    VerdictStatus.FAIL: ComplianceStatus.NON_COMPLIANT,
}


def resolve_status(
    latest_verdict: Optional[VerificationDB],
    active_exception: Optional[ComplianceExceptionDB],
) -> ComplianceStatus:
    """Pure derivation of assignment status."""
    if active_exception is not None:
        return ComplianceStatus.EXCEPTION
    if latest_verdict is None:
        return ComplianceStatus.PENDING
    return VERDICT_TO_STATUS[latest_verdict.status]


class ComplianceStatusResolver:
    """Recomputes and caches ProjectSubcontractorDB.status."""

    def __init__(self, db: Session, audit: Optional[AuditRecorder] = None):
        self.db = db
        self.audit = audit or AuditRecorder(db)
        self.verdicts = VerdictStore(db, self.audit)

    def active_exception_for(self, assignment_id: str) -> Optional[ComplianceExceptionDB]:
        return self.db.query(ComplianceExceptionDB).filter(
            ComplianceExceptionDB.project_subcontractor_id == assignment_id,
            ComplianceExceptionDB.status == ExceptionStatus.ACTIVE,
        ).first()

    def derive(self, assignment: ProjectSubcontractorDB) -> ComplianceStatus:
        latest = self.verdicts.latest_for(assignment.project_id, assignment.subcontractor_id)
        return resolve_status(latest, self.active_exception_for(assignment.id))

    def recompute(
        self,
        assignment: ProjectSubcontractorDB,
        user_id: Optional[str] = None,
        trigger: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Write the derived status onto the assignment.

        Idempotent: when the derived value equals the cached one nothing is
        written and no audit entry is produced.

        Returns {"changed", "previous_status", "status"}.
        """
        previous = assignment.status
        resolved = self.derive(assignment)

        if previous == resolved:
            return {"changed": False, "previous_status": previous, "status": resolved}

        now = now or utcnow()
        assignment.status = resolved
        assignment.updated_at = now
        self.db.flush()

        logger.info(
            f"Assignment {assignment.id} status {previous.value if previous else None} -> {resolved.value}"
            f" (trigger={trigger})"
        )
        self.audit.record(
            company_id=assignment.project.company_id,
            user_id=user_id,
            entity_type="project_subcontractor",
            entity_id=assignment.id,
            action="status_changed",
            details={
                "from_status": previous.value if previous else None,
                "to_status": resolved.value,
                "trigger": trigger,
            },
            created_at=now,
        )
        return {"changed": True, "previous_status": previous, "status": resolved}
