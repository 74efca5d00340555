"""
Compliance reporting: daily per-company snapshot of assignment statuses.
"""
import logging
from datetime import date
from typing import Any, Dict, Optional
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from ...models.db_models import (
    ComplianceStatus, ComplianceSnapshotDB, ProjectDB, ProjectSubcontractorDB, utcnow,
)


logger = logging.getLogger(__name__)


def status_counts(db: Session, company_id: str) -> Dict[str, int]:
    rows = (
        db.query(ProjectSubcontractorDB.status, func.count(ProjectSubcontractorDB.id))
        .join(ProjectDB, ProjectSubcontractorDB.project_id == ProjectDB.id)
        .filter(ProjectDB.company_id == company_id)
        .group_by(ProjectSubcontractorDB.status)
        .all()
    )
    counts = {status.value: 0 for status in ComplianceStatus}
    for status, count in rows:
        counts[status.value] = count
    return counts


def compliance_snapshot(db: Session, company_id: str, snapshot_date: Optional[date] = None) -> Dict[str, Any]:
    """
    Record today's rollup for a company. Idempotent per (company, date):
    a second call the same day returns the existing row untouched.
    """
    snapshot_date = snapshot_date or utcnow().date()
    existing = db.query(ComplianceSnapshotDB).filter(
        ComplianceSnapshotDB.company_id == company_id,
        ComplianceSnapshotDB.snapshot_date == snapshot_date,
    ).first()
    if existing:
        return {"created": False, "snapshot": serialize_snapshot(existing)}

    counts = status_counts(db, company_id)
    total = sum(counts.values())
    # Exceptions count as compliant for the rate
    covered = counts[ComplianceStatus.COMPLIANT.value] + counts[ComplianceStatus.EXCEPTION.value]
    rate = round(covered * 100 / total) if total else 0

    snapshot = ComplianceSnapshotDB(
        id=str(uuid4()),
        company_id=company_id,
        snapshot_date=snapshot_date,
        total_subcontractors=total,
        compliant=counts[ComplianceStatus.COMPLIANT.value],
        non_compliant=counts[ComplianceStatus.NON_COMPLIANT.value],
        pending=counts[ComplianceStatus.PENDING.value],
        exception=counts[ComplianceStatus.EXCEPTION.value],
        compliance_rate=rate,
    )
    db.add(snapshot)
    db.flush()
    logger.info(f"Compliance snapshot {snapshot_date} for company {company_id}: {rate}% of {total}")
    return {"created": True, "snapshot": serialize_snapshot(snapshot)}


def serialize_snapshot(snapshot: ComplianceSnapshotDB) -> Dict[str, Any]:
    return {
        "id": snapshot.id,
        "company_id": snapshot.company_id,
        "snapshot_date": snapshot.snapshot_date.isoformat(),
        "total_subcontractors": snapshot.total_subcontractors,
        "compliant": snapshot.compliant,
        "non_compliant": snapshot.non_compliant,
        "pending": snapshot.pending,
        "exception": snapshot.exception,
        "compliance_rate": snapshot.compliance_rate,
    }
