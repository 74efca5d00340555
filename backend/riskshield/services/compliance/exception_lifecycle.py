"""
Exception Lifecycle Manager

State machine for human-approved deviations from a non-compliant or pending
verdict.

    pending_approval --approve--> active --expire--> expired
           |                        |----resolve--> resolved
           |--reject/close--> closed <--close-------|

Core Principles:
1. Terminal states (expired, resolved, closed) never move again.
2. At most one ACTIVE exception per assignment. The partial unique index
   uq_exception_active_per_assignment is the guard; every write that can
   produce an ACTIVE row runs inside a SAVEPOINT and an IntegrityError
   becomes ConflictError.
3. Every transition is a compare-and-swap (UPDATE ... WHERE status IN ...),
   so two racing transitions cannot both win. The expiry sweep treats a
   lost race as "skip", never as an error.
4. Transitions that change whether an exception is active trigger the
   status resolver.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ...errors import ConflictError, InvalidTransition, NotFound, ValidationError
from ...models.db_models import (
    ExceptionStatus, ExpirationType, RiskLevel,
    ComplianceExceptionDB, ProjectDB, ProjectSubcontractorDB, VerificationDB, AuditLogDB, utcnow,
)
from .audit_recorder import AuditRecorder
from .status_resolver import ComplianceStatusResolver


logger = logging.getLogger(__name__)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================

STATE_CONFIG = {
    ExceptionStatus.PENDING_APPROVAL: {
        "description": "Requested, waiting for an approver",
        "allowed_transitions": [ExceptionStatus.ACTIVE, ExceptionStatus.CLOSED],
        "in_effect": False,
    },
    ExceptionStatus.ACTIVE: {
        "description": "Approved and overriding the verdict-derived status",
        "allowed_transitions": [
            ExceptionStatus.EXPIRED,
            ExceptionStatus.RESOLVED,
            ExceptionStatus.CLOSED,
        ],
        "in_effect": True,
    },
    ExceptionStatus.EXPIRED: {
        "description": "Time limit passed (system-driven)",
        "allowed_transitions": [],  # Terminal state
        "in_effect": False,
    },
    ExceptionStatus.RESOLVED: {
        "description": "Underlying issue fixed or resolved by a user",
        "allowed_transitions": [],  # Terminal state
        "in_effect": False,
    },
    ExceptionStatus.CLOSED: {
        "description": "Rejected or administratively closed",
        "allowed_transitions": [],  # Terminal state
        "in_effect": False,
    },
}

# Expiration types that require a concrete expires_at
TIMED_EXPIRATION_TYPES = (ExpirationType.FIXED_DURATION, ExpirationType.SPECIFIC_DATE)


def can_transition(from_state: ExceptionStatus, to_state: ExceptionStatus) -> Tuple[bool, str]:
    """
    Check if a state transition is allowed.

    Returns (allowed, reason)
    """
    allowed_transitions = STATE_CONFIG.get(from_state, {}).get("allowed_transitions", [])
    if to_state in allowed_transitions:
        return True, "Transition allowed"
    return False, f"Cannot transition from {from_state.value} to {to_state.value}"


def is_terminal_state(state: ExceptionStatus) -> bool:
    return len(STATE_CONFIG.get(state, {}).get("allowed_transitions", [])) == 0


def _coerce(enum_cls, value, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        raise ValidationError(
            f"Invalid {field}: {value}",
            {"field": field, "allowed": [m.value for m in enum_cls]},
        )


# =============================================================================
# LIFECYCLE MANAGER
# =============================================================================

class ExceptionLifecycleManager:
    """Creates exceptions and drives them through STATE_CONFIG."""

    def __init__(
        self,
        db: Session,
        resolver: Optional[ComplianceStatusResolver] = None,
        audit: Optional[AuditRecorder] = None,
    ):
        self.db = db
        self.audit = audit or AuditRecorder(db)
        self.resolver = resolver or ComplianceStatusResolver(db, self.audit)

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def get(self, exception_id: str) -> Optional[ComplianceExceptionDB]:
        return self.db.query(ComplianceExceptionDB).filter(ComplianceExceptionDB.id == exception_id).first()

    def get_or_404(self, exception_id: str) -> ComplianceExceptionDB:
        exception = self.get(exception_id)
        if not exception:
            raise NotFound("Exception", exception_id)
        return exception

    def active_for_assignment(self, assignment_id: str) -> Optional[ComplianceExceptionDB]:
        return self.resolver.active_exception_for(assignment_id)

    def list_for_assignment(self, assignment_id: str) -> List[ComplianceExceptionDB]:
        return (
            self.db.query(ComplianceExceptionDB)
            .filter(ComplianceExceptionDB.project_subcontractor_id == assignment_id)
            .order_by(ComplianceExceptionDB.created_at.desc())
            .all()
        )

    def list_for_company(
        self,
        company_id: str,
        status: Optional[Union[str, ExceptionStatus]] = None,
    ) -> List[ComplianceExceptionDB]:
        query = (
            self.db.query(ComplianceExceptionDB)
            .join(ProjectSubcontractorDB, ComplianceExceptionDB.project_subcontractor_id == ProjectSubcontractorDB.id)
            .join(ProjectDB, ProjectSubcontractorDB.project_id == ProjectDB.id)
            .filter(ProjectDB.company_id == company_id)
        )
        if status:
            query = query.filter(ComplianceExceptionDB.status == _coerce(ExceptionStatus, status, "status"))
        return query.order_by(ComplianceExceptionDB.created_at.desc()).all()

    def audit_trail(self, exception_id: str) -> List[AuditLogDB]:
        """Chronological audit entries of one exception."""
        self.get_or_404(exception_id)
        return self.audit.trail_for_entity("exception", exception_id)

    # =========================================================================
    # CREATE
    # =========================================================================

    def create(
        self,
        assignment_id: str,
        issue_summary: str,
        reason: str,
        risk_level: Union[str, RiskLevel],
        created_by_user_id: str,
        expiration_type: Union[str, ExpirationType],
        expires_at: Optional[datetime] = None,
        duration_days: Optional[int] = None,
        verification_id: Optional[str] = None,
        supporting_document_url: Optional[str] = None,
        auto_approve: bool = False,
        now: Optional[datetime] = None,
    ) -> ComplianceExceptionDB:
        """
        Create an exception as pending_approval, or active when auto_approve.

        The caller has already checked that the actor's role may auto-approve.
        Raises ValidationError, NotFound or ConflictError; nothing is written
        when any of them is raised.
        """
        now = now or utcnow()
        risk = _coerce(RiskLevel, risk_level, "risk_level")
        expiration = _coerce(ExpirationType, expiration_type, "expiration_type")

        if not issue_summary or not issue_summary.strip():
            raise ValidationError("issue_summary is required")
        if not reason or not reason.strip():
            raise ValidationError("reason is required")
        if not created_by_user_id:
            raise ValidationError("created_by_user_id is required")

        expires_at = self._resolve_expiry(expiration, expires_at, duration_days, now)

        assignment = self.db.query(ProjectSubcontractorDB).filter(ProjectSubcontractorDB.id == assignment_id).first()
        if not assignment:
            raise NotFound("Assignment", assignment_id)

        if verification_id:
            verification = self.db.query(VerificationDB).filter(VerificationDB.id == verification_id).first()
            if not verification:
                raise NotFound("Verification", verification_id)
            if (verification.project_id, verification.subcontractor_id) != (
                assignment.project_id, assignment.subcontractor_id
            ):
                raise ValidationError(
                    "verification_id belongs to a different assignment",
                    {"verification_id": verification_id},
                )

        # Fast path for a clear error message; the index below is the real guard
        existing = self.active_for_assignment(assignment.id)
        if existing:
            raise ConflictError(
                "An active exception already exists for this assignment",
                {"active_exception_id": existing.id},
            )

        status = ExceptionStatus.ACTIVE if auto_approve else ExceptionStatus.PENDING_APPROVAL
        exception = ComplianceExceptionDB(
            id=str(uuid4()),
            project_subcontractor_id=assignment.id,
            verification_id=verification_id,
            issue_summary=issue_summary.strip(),
            reason=reason.strip(),
            risk_level=risk,
            supporting_document_url=supporting_document_url,
            created_by_user_id=created_by_user_id,
            approved_by_user_id=created_by_user_id if auto_approve else None,
            approved_at=now if auto_approve else None,
            expiration_type=expiration,
            expires_at=expires_at,
            status=status,
            created_at=now,
            updated_at=now,
        )
        try:
            with self.db.begin_nested():
                self.db.add(exception)
                self.db.flush()
        except IntegrityError:
            logger.warning(f"Concurrent active exception rejected for assignment {assignment.id}")
            raise ConflictError(
                "An active exception already exists for this assignment",
                {"assignment_id": assignment.id},
            )

        self.audit.record(
            company_id=assignment.project.company_id,
            user_id=created_by_user_id,
            entity_type="exception",
            entity_id=exception.id,
            action="exception_created",
            details={
                "assignment_id": assignment.id,
                "status": status.value,
                "auto_approved": bool(auto_approve),
                "risk_level": risk.value,
                "expiration_type": expiration.value,
                "expires_at": expires_at.isoformat() if expires_at else None,
            },
            created_at=now,
        )

        if status == ExceptionStatus.ACTIVE:
            self.resolver.recompute(assignment, user_id=created_by_user_id, trigger="exception_created", now=now)

        logger.info(f"Exception {exception.id} created as {status.value} for assignment {assignment.id}")
        return exception

    def _resolve_expiry(
        self,
        expiration: ExpirationType,
        expires_at: Optional[datetime],
        duration_days: Optional[int],
        now: datetime,
    ) -> Optional[datetime]:
        if expiration not in TIMED_EXPIRATION_TYPES:
            if expires_at is not None or duration_days is not None:
                raise ValidationError(
                    f"{expiration.value} exceptions do not take an expiry",
                    {"expiration_type": expiration.value},
                )
            return None

        if expires_at is None and duration_days is not None and expiration == ExpirationType.FIXED_DURATION:
            if isinstance(duration_days, bool) or not isinstance(duration_days, int) or duration_days < 1:
                raise ValidationError("duration_days must be a positive integer")
            expires_at = now + timedelta(days=duration_days)

        if expires_at is None:
            raise ValidationError(
                f"expires_at is required for {expiration.value} exceptions",
                {"expiration_type": expiration.value},
            )
        if expires_at.tzinfo is not None:
            expires_at = expires_at.astimezone(timezone.utc).replace(tzinfo=None)
        if expires_at <= now:
            raise ValidationError("expires_at must be in the future", {"expires_at": expires_at.isoformat()})
        return expires_at

    # =========================================================================
    # TRANSITIONS
    # =========================================================================

    def _compare_and_set(
        self,
        exception_id: str,
        from_states: Sequence[ExceptionStatus],
        values: Dict[str, Any],
        extra_conditions: Sequence[Any] = (),
    ) -> bool:
        """UPDATE ... WHERE id = ? AND status IN (from_states). True if this caller won."""
        statement = (
            update(ComplianceExceptionDB)
            .where(
                ComplianceExceptionDB.id == exception_id,
                ComplianceExceptionDB.status.in_(list(from_states)),
                *extra_conditions,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.db.execute(statement)
        return (result.rowcount or 0) == 1

    def _transition(
        self,
        exception_id: str,
        from_states: Sequence[ExceptionStatus],
        to_state: ExceptionStatus,
        values: Dict[str, Any],
    ) -> ComplianceExceptionDB:
        exception = self.get_or_404(exception_id)
        current = exception.status
        allowed, _ = can_transition(current, to_state)
        if current not in from_states or not allowed:
            raise InvalidTransition("exception", current.value, to_state.value)

        try:
            with self.db.begin_nested():
                won = self._compare_and_set(exception_id, [current], {"status": to_state, **values})
        except IntegrityError:
            raise ConflictError(
                "An active exception already exists for this assignment",
                {"assignment_id": exception.project_subcontractor_id},
            )

        self.db.expire(exception)
        if not won:
            # Another caller moved it first
            raise InvalidTransition("exception", exception.status.value, to_state.value)
        return exception

    def approve(
        self,
        exception_id: str,
        approved_by_user_id: str,
        now: Optional[datetime] = None,
    ) -> ComplianceExceptionDB:
        """pending_approval -> active."""
        now = now or utcnow()
        exception = self._transition(
            exception_id,
            [ExceptionStatus.PENDING_APPROVAL],
            ExceptionStatus.ACTIVE,
            {"approved_by_user_id": approved_by_user_id, "approved_at": now, "updated_at": now},
        )
        if exception.expires_at is not None and exception.expires_at <= now:
            logger.warning(f"Exception {exception.id} approved after its expiry; next expiry sweep will expire it")

        self._after_transition(exception, approved_by_user_id, "exception_approved", {}, now)
        return exception

    def reject(
        self,
        exception_id: str,
        rejected_by_user_id: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ComplianceExceptionDB:
        """pending_approval -> closed."""
        now = now or utcnow()
        exception = self._transition(
            exception_id,
            [ExceptionStatus.PENDING_APPROVAL],
            ExceptionStatus.CLOSED,
            {
                "closed_by_user_id": rejected_by_user_id,
                "resolved_at": now,
                "resolution_type": "rejected",
                "resolution_notes": notes,
                "updated_at": now,
            },
        )
        self._after_transition(exception, rejected_by_user_id, "exception_rejected", {"notes": notes}, now)
        return exception

    def resolve(
        self,
        exception_id: str,
        resolution_type: str,
        notes: Optional[str] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ComplianceExceptionDB:
        """active -> resolved."""
        if not resolution_type:
            raise ValidationError("resolution_type is required")
        now = now or utcnow()
        exception = self._transition(
            exception_id,
            [ExceptionStatus.ACTIVE],
            ExceptionStatus.RESOLVED,
            {
                "resolved_at": now,
                "resolution_type": resolution_type,
                "resolution_notes": notes,
                "updated_at": now,
            },
        )
        self._after_transition(
            exception, user_id, "exception_resolved",
            {"resolution_type": resolution_type, "notes": notes}, now,
        )
        return exception

    def close(
        self,
        exception_id: str,
        user_id: str,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ComplianceExceptionDB:
        """active | pending_approval -> closed (administrative)."""
        now = now or utcnow()
        exception = self._transition(
            exception_id,
            [ExceptionStatus.ACTIVE, ExceptionStatus.PENDING_APPROVAL],
            ExceptionStatus.CLOSED,
            {
                "closed_by_user_id": user_id,
                "resolved_at": now,
                "resolution_type": "closed",
                "resolution_notes": notes,
                "updated_at": now,
            },
        )
        self._after_transition(exception, user_id, "exception_closed", {"notes": notes}, now)
        return exception

    def resolve_active_for_assignment(
        self,
        assignment_id: str,
        resolution_type: str,
        notes: Optional[str] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> List[ComplianceExceptionDB]:
        """
        Bulk active -> resolved for one assignment (a pass verdict arrived).

        Rows that another caller already moved are skipped. The resolver is
        run once at the end.
        """
        now = now or utcnow()
        candidates = (
            self.db.query(ComplianceExceptionDB)
            .filter(
                ComplianceExceptionDB.project_subcontractor_id == assignment_id,
                ComplianceExceptionDB.status == ExceptionStatus.ACTIVE,
            )
            .all()
        )
        resolved = []
        for exception in candidates:
            won = self._compare_and_set(
                exception.id,
                [ExceptionStatus.ACTIVE],
                {
                    "status": ExceptionStatus.RESOLVED,
                    "resolved_at": now,
                    "resolution_type": resolution_type,
                    "resolution_notes": notes,
                    "updated_at": now,
                },
            )
            self.db.expire(exception)
            if won:
                resolved.append(exception)

        if not resolved:
            return resolved

        assignment = resolved[0].assignment
        for exception in resolved:
            self.audit.record(
                company_id=assignment.project.company_id,
                user_id=user_id,
                entity_type="exception",
                entity_id=exception.id,
                action="exception_resolved",
                details={"resolution_type": resolution_type, "notes": notes, "bulk": True},
                created_at=now,
            )
        self.resolver.recompute(assignment, user_id=user_id, trigger="exception_resolved", now=now)
        logger.info(f"Resolved {len(resolved)} active exception(s) for assignment {assignment_id}")
        return resolved

    def expire_overdue(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Sweep: active -> expired for every exception with expires_at < now.

        Idempotent and safe to overlap with other transitions: a row that
        is no longer active when its UPDATE runs is counted as skipped.
        """
        now = now or utcnow()
        results = {
            "run_at": now.isoformat(),
            "checked": 0,
            "expired": [],
            "skipped": 0,
            "errors": [],
        }

        overdue = (
            self.db.query(ComplianceExceptionDB)
            .filter(
                ComplianceExceptionDB.status == ExceptionStatus.ACTIVE,
                ComplianceExceptionDB.expires_at.isnot(None),
                ComplianceExceptionDB.expires_at < now,
            )
            .all()
        )

        for exception in overdue:
            results["checked"] += 1
            try:
                with self.db.begin_nested():
                    won = self._compare_and_set(
                        exception.id,
                        [ExceptionStatus.ACTIVE],
                        {"status": ExceptionStatus.EXPIRED, "updated_at": now},
                        extra_conditions=[ComplianceExceptionDB.expires_at < now],
                    )
                    self.db.expire(exception)
                    if not won:
                        results["skipped"] += 1
                        continue
                    assignment = exception.assignment
                    self.audit.record(
                        company_id=assignment.project.company_id,
                        user_id=None,
                        entity_type="exception",
                        entity_id=exception.id,
                        action="exception_auto_expired",
                        details={
                            "expires_at": exception.expires_at.isoformat() if exception.expires_at else None,
                            "expiration_type": exception.expiration_type.value,
                        },
                        created_at=now,
                    )
                    self.resolver.recompute(assignment, trigger="exception_expired", now=now)
                results["expired"].append(exception.id)
            except OperationalError as e:
                logger.exception(f"Failed to expire exception {exception.id}")
                results["errors"].append({"exception_id": exception.id, "error": str(e.orig or e)})

        logger.info(
            f"Exception expiry sweep: {len(results['expired'])} expired, "
            f"{results['skipped']} skipped, {len(results['errors'])} errors"
        )
        return results

    def _after_transition(
        self,
        exception: ComplianceExceptionDB,
        user_id: Optional[str],
        action: str,
        details: Dict[str, Any],
        now: datetime,
    ) -> None:
        assignment = exception.assignment
        self.audit.record(
            company_id=assignment.project.company_id,
            user_id=user_id,
            entity_type="exception",
            entity_id=exception.id,
            action=action,
            details={"status": exception.status.value, **details},
            created_at=now,
        )
        self.resolver.recompute(assignment, user_id=user_id, trigger=action, now=now)


def serialize_exception(exception: ComplianceExceptionDB) -> Dict[str, Any]:
    def iso(value):
        return value.isoformat() if value else None

    return {
        "id": exception.id,
        "project_subcontractor_id": exception.project_subcontractor_id,
        "verification_id": exception.verification_id,
        "issue_summary": exception.issue_summary,
        "reason": exception.reason,
        "risk_level": exception.risk_level.value,
        "supporting_document_url": exception.supporting_document_url,
        "created_by_user_id": exception.created_by_user_id,
        "approved_by_user_id": exception.approved_by_user_id,
        "approved_at": iso(exception.approved_at),
        "closed_by_user_id": exception.closed_by_user_id,
        "expiration_type": exception.expiration_type.value,
        "expires_at": iso(exception.expires_at),
        "status": exception.status.value,
        "resolved_at": iso(exception.resolved_at),
        "resolution_type": exception.resolution_type,
        "resolution_notes": exception.resolution_notes,
        "created_at": iso(exception.created_at),
    }
