"""
Verdict Store

One verification row per submitted certificate document. Rows are
append-created and never deleted; a newer document supersedes by being
newer. The only in-place change is a manual override of status by a
privileged user.

Latest-verdict ordering is created_at DESC, then insertion sequence DESC,
so two verdicts landing in the same instant still have a defined winner.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Union
from uuid import uuid4

from sqlalchemy.orm import Session

from ...errors import NotFound, ValidationError
from ...models.db_models import (
    VerdictStatus, VerificationDB, ProjectSubcontractorDB, utcnow,
)
from ...models.deficiency import parse_deficiencies, dump_deficiencies, load_deficiencies
from .audit_recorder import AuditRecorder


logger = logging.getLogger(__name__)


def coerce_verdict_status(value: Union[str, VerdictStatus]) -> VerdictStatus:
    if isinstance(value, VerdictStatus):
        return value
    try:
        return VerdictStatus(str(value).lower())
    except ValueError:
        raise ValidationError(
            f"Invalid verdict status: {value}",
            {"allowed": [s.value for s in VerdictStatus]},
        )


def validate_confidence(confidence: Any) -> float:
    # bool is an int subclass; reject it explicitly
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        raise ValidationError("confidence must be a number between 0 and 1")
    if not 0.0 <= float(confidence) <= 1.0:
        raise ValidationError(
            f"confidence must be between 0 and 1, got {confidence}",
            {"confidence": confidence},
        )
    return float(confidence)


class VerdictStore:
    """Reads and writes VerificationDB rows."""

    def __init__(self, db: Session, audit: Optional[AuditRecorder] = None):
        self.db = db
        self.audit = audit or AuditRecorder(db)

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def get(self, verification_id: str) -> Optional[VerificationDB]:
        return self.db.query(VerificationDB).filter(VerificationDB.id == verification_id).first()

    def get_or_404(self, verification_id: str) -> VerificationDB:
        verification = self.get(verification_id)
        if not verification:
            raise NotFound("Verification", verification_id)
        return verification

    def get_assignment(self, project_id: str, subcontractor_id: str) -> Optional[ProjectSubcontractorDB]:
        return self.db.query(ProjectSubcontractorDB).filter(
            ProjectSubcontractorDB.project_id == project_id,
            ProjectSubcontractorDB.subcontractor_id == subcontractor_id,
        ).first()

    def latest_for(self, project_id: str, subcontractor_id: str) -> Optional[VerificationDB]:
        """Most recent verdict for the pairing, or None."""
        return (
            self.db.query(VerificationDB)
            .filter(
                VerificationDB.project_id == project_id,
                VerificationDB.subcontractor_id == subcontractor_id,
            )
            .order_by(VerificationDB.created_at.desc(), VerificationDB.seq.desc())
            .first()
        )

    def list_for_assignment(self, project_id: str, subcontractor_id: str) -> List[VerificationDB]:
        return (
            self.db.query(VerificationDB)
            .filter(
                VerificationDB.project_id == project_id,
                VerificationDB.subcontractor_id == subcontractor_id,
            )
            .order_by(VerificationDB.created_at.desc(), VerificationDB.seq.desc())
            .all()
        )

    # =========================================================================
    # WRITES
    # =========================================================================

    def submit(
        self,
        document_id: str,
        project_id: str,
        subcontractor_id: str,
        status: Union[str, VerdictStatus],
        confidence: float,
        deficiencies: Optional[Iterable[Any]] = None,
        expiry_date: Optional[date] = None,
        now: Optional[datetime] = None,
    ) -> VerificationDB:
        """
        Append a new verdict.

        Validation happens before anything is written; an unknown assignment
        raises NotFound.
        """
        if not document_id:
            raise ValidationError("document_id is required")
        verdict_status = coerce_verdict_status(status)
        confidence_score = validate_confidence(confidence)
        parsed = parse_deficiencies(deficiencies)

        assignment = self.get_assignment(project_id, subcontractor_id)
        if not assignment:
            raise NotFound("Assignment", f"{project_id}/{subcontractor_id}")

        now = now or utcnow()
        verification = VerificationDB(
            id=str(uuid4()),
            document_id=document_id,
            project_id=project_id,
            subcontractor_id=subcontractor_id,
            status=verdict_status,
            confidence_score=confidence_score,
            deficiencies=dump_deficiencies(parsed),
            expiry_date=expiry_date,
            verified_by_user_id=None,
            verified_at=now,
            created_at=now,
        )
        self.db.add(verification)
        self.db.flush()

        logger.info(
            f"Verdict {verification.id} recorded: document={document_id} "
            f"status={verdict_status.value} confidence={confidence_score:.2f}"
        )
        self.audit.record(
            company_id=assignment.project.company_id,
            user_id=None,
            entity_type="verification",
            entity_id=verification.id,
            action="verification_created",
            details={
                "document_id": document_id,
                "project_id": project_id,
                "subcontractor_id": subcontractor_id,
                "status": verdict_status.value,
                "confidence_score": confidence_score,
                "deficiency_count": len(parsed),
                "expiry_date": expiry_date.isoformat() if expiry_date else None,
            },
            created_at=now,
        )
        return verification

    def override(
        self,
        verification_id: str,
        new_status: Union[str, VerdictStatus],
        user_id: str,
        now: Optional[datetime] = None,
    ) -> VerificationDB:
        """Manual override: replaces status, verified_by_user_id and verified_at."""
        verdict_status = coerce_verdict_status(new_status)
        if not user_id:
            raise ValidationError("user_id is required for a manual override")
        verification = self.get_or_404(verification_id)

        now = now or utcnow()
        previous = verification.status
        verification.status = verdict_status
        verification.verified_by_user_id = user_id
        verification.verified_at = now
        self.db.flush()

        assignment = self.get_assignment(verification.project_id, verification.subcontractor_id)
        company_id = assignment.project.company_id if assignment else None
        self.audit.record(
            company_id=company_id,
            user_id=user_id,
            entity_type="verification",
            entity_id=verification.id,
            action="verification_overridden",
            details={"from_status": previous.value, "to_status": verdict_status.value},
            created_at=now,
        )
        return verification


def serialize_verification(verification: VerificationDB) -> Dict[str, Any]:
    return {
        "id": verification.id,
        "document_id": verification.document_id,
        "project_id": verification.project_id,
        "subcontractor_id": verification.subcontractor_id,
        "status": verification.status.value,
        "confidence_score": verification.confidence_score,
        "deficiencies": dump_deficiencies(load_deficiencies(verification.deficiencies)),
        "expiry_date": verification.expiry_date.isoformat() if verification.expiry_date else None,
        "verified_by_user_id": verification.verified_by_user_id,
        "verified_at": verification.verified_at.isoformat() if verification.verified_at else None,
        "created_at": verification.created_at.isoformat() if verification.created_at else None,
    }
