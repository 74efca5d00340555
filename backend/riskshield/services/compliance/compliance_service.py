"""
Compliance Service

Orchestration layer over the engine. Every entry point (API handlers and
scheduled sweeps) goes through here so the control flow is the same
everywhere:

    verdict change -> resolver -> (escalating?) scheduler -> dispatcher -> audit

Exception transitions run the resolver themselves.

Collaborators (session, settings, providers, clock) are passed in; nothing
here reads globals. Methods flush but never commit: the caller owns the
transaction.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from ...config import Settings, get_settings
from ...errors import NotFound
from ...models.db_models import (
    Channel, CommunicationType, ComplianceStatus, VerdictStatus,
    CompanyDB, ComplianceExceptionDB, ProjectSubcontractorDB, UserDB, VerificationDB, utcnow,
)
from ..notifications import build_providers
from ..notifications.base import EmailProvider, SmsProvider
from .audit_recorder import AuditRecorder
from .delivery_tracker import DeliveryTracker
from .escalation_scheduler import ESCALATING_STATUSES, EscalationScheduler, SweepResult
from .exception_lifecycle import ExceptionLifecycleManager
from .expiration_reminders import ExpirationReminderScheduler, ReminderResult
from .message_templates import MessageContext, render_confirmation_email
from .notification_dispatcher import NotificationDispatcher, OutboundMessage, subcontractor_recipients
from .reporting import compliance_snapshot
from .status_resolver import ComplianceStatusResolver
from .verdict_store import VerdictStore


logger = logging.getLogger(__name__)


@dataclass
class VerdictOutcome:
    """What a verdict submission or override set in motion."""
    verification: VerificationDB
    previous_status: ComplianceStatus
    status: ComplianceStatus
    resolved_exception_ids: List[str] = field(default_factory=list)
    communications: List[Dict[str, Any]] = field(default_factory=list)


class ComplianceService:
    """
    Main service for compliance management.

    Orchestrates:
    - Verdict ingestion and manual override
    - Status resolution
    - Exception lifecycle
    - Escalation sweeps and stop-work alerts
    - Delivery callbacks and reporting
    """

    def __init__(
        self,
        db_session: Session,
        settings: Optional[Settings] = None,
        email_provider: Optional[EmailProvider] = None,
        sms_provider: Optional[SmsProvider] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db_session
        self.settings = settings or get_settings()
        self.clock = clock or utcnow

        if email_provider is None or sms_provider is None:
            default_email, default_sms = build_providers(self.settings)
            email_provider = email_provider or default_email
            sms_provider = sms_provider or default_sms

        self.audit = AuditRecorder(db_session)
        self.verdicts = VerdictStore(db_session, self.audit)
        self.resolver = ComplianceStatusResolver(db_session, self.audit)
        self.exceptions = ExceptionLifecycleManager(db_session, self.resolver, self.audit)
        self.dispatcher = NotificationDispatcher(
            db_session,
            email_provider,
            sms_provider,
            audit=self.audit,
            max_workers=self.settings.dispatch_max_workers,
        )
        self.scheduler = EscalationScheduler(
            db_session, self.dispatcher, self.verdicts, app_url=self.settings.app_url,
        )
        self.reminders = ExpirationReminderScheduler(
            db_session, self.dispatcher, self.verdicts, app_url=self.settings.app_url,
        )
        self.tracker = DeliveryTracker(db_session)

    # =========================================================================
    # VERDICTS
    # =========================================================================

    def submit_verdict(
        self,
        document_id: str,
        project_id: str,
        subcontractor_id: str,
        status: Union[str, VerdictStatus],
        confidence: float,
        deficiencies: Optional[Iterable[Any]] = None,
        expiry_date: Optional[date] = None,
    ) -> VerdictOutcome:
        now = self.clock()
        verification = self.verdicts.submit(
            document_id, project_id, subcontractor_id, status, confidence, deficiencies,
            expiry_date=expiry_date, now=now,
        )
        assignment = self.verdicts.get_assignment(project_id, subcontractor_id)
        return self._after_verdict(verification, assignment, user_id=None, now=now)

    def override_verdict(
        self,
        verification_id: str,
        new_status: Union[str, VerdictStatus],
        user_id: str,
    ) -> VerdictOutcome:
        now = self.clock()
        verification = self.verdicts.override(verification_id, new_status, user_id, now=now)
        assignment = self.verdicts.get_assignment(verification.project_id, verification.subcontractor_id)
        if not assignment:
            raise NotFound("Assignment", f"{verification.project_id}/{verification.subcontractor_id}")
        return self._after_verdict(verification, assignment, user_id=user_id, now=now)

    def _after_verdict(
        self,
        verification: VerificationDB,
        assignment: ProjectSubcontractorDB,
        user_id: Optional[str],
        now: datetime,
    ) -> VerdictOutcome:
        previous = assignment.status
        outcome = VerdictOutcome(verification=verification, previous_status=previous, status=previous)

        latest = self.verdicts.latest_for(assignment.project_id, assignment.subcontractor_id)
        is_latest = latest is not None and latest.id == verification.id

        if is_latest and verification.status == VerdictStatus.PASS:
            resolved = self.exceptions.resolve_active_for_assignment(
                assignment.id,
                resolution_type="compliant_verdict",
                notes=f"Resolved by compliant verification {verification.id}",
                user_id=user_id,
                now=now,
            )
            outcome.resolved_exception_ids = [e.id for e in resolved]

        self.resolver.recompute(assignment, user_id=user_id, trigger="verdict", now=now)
        outcome.status = assignment.status

        if outcome.status == ComplianceStatus.COMPLIANT and previous in ESCALATING_STATUSES:
            outcome.communications = self._send_confirmation(assignment, verification, now)
        elif outcome.status in ESCALATING_STATUSES:
            outcome.communications = self.scheduler.process_assignment(
                assignment, now, self.settings.escalation_min_days_waiting,
            )
        return outcome

    def _send_confirmation(
        self,
        assignment: ProjectSubcontractorDB,
        verification: VerificationDB,
        now: datetime,
    ) -> List[Dict[str, Any]]:
        messages = []
        for recipient in subcontractor_recipients(assignment):
            if recipient.channel != Channel.EMAIL:
                continue
            ctx = MessageContext(
                recipient_name=recipient.name,
                subcontractor_name=assignment.subcontractor.name,
                subcontractor_abn=assignment.subcontractor.abn,
                project_name=assignment.project.name,
            )
            subject, body = render_confirmation_email(ctx)
            messages.append(OutboundMessage(recipient, subject, body))

        results = self.dispatcher.dispatch(
            assignment, CommunicationType.CONFIRMATION, messages,
            verification_id=verification.id, now=now,
        )
        return [{"action": "confirmation", "type": CommunicationType.CONFIRMATION.value,
                 "results": [r.to_dict() for r in results]}]

    # =========================================================================
    # EXCEPTIONS
    # =========================================================================

    def create_exception(self, actor_user_id: str, auto_approve: bool = False, **fields) -> ComplianceExceptionDB:
        return self.exceptions.create(
            created_by_user_id=actor_user_id, auto_approve=auto_approve, now=self.clock(), **fields
        )

    def approve_exception(self, exception_id: str, actor_user_id: str) -> ComplianceExceptionDB:
        return self.exceptions.approve(exception_id, actor_user_id, now=self.clock())

    def reject_exception(self, exception_id: str, actor_user_id: str, notes: Optional[str] = None) -> ComplianceExceptionDB:
        return self.exceptions.reject(exception_id, actor_user_id, notes, now=self.clock())

    def resolve_exception(
        self,
        exception_id: str,
        actor_user_id: str,
        resolution_type: str,
        notes: Optional[str] = None,
    ) -> ComplianceExceptionDB:
        return self.exceptions.resolve(exception_id, resolution_type, notes, actor_user_id, now=self.clock())

    def close_exception(self, exception_id: str, actor_user_id: str, notes: Optional[str] = None) -> ComplianceExceptionDB:
        return self.exceptions.close(exception_id, actor_user_id, notes, now=self.clock())

    def expire_exceptions(self) -> Dict[str, Any]:
        return self.exceptions.expire_overdue(self.clock())

    # =========================================================================
    # ESCALATION
    # =========================================================================

    def run_escalation_sweep(
        self,
        company_id: str,
        min_days_waiting: Optional[int] = None,
        max_followups: Optional[int] = None,
        preview_only: bool = False,
    ) -> SweepResult:
        if not self.db.query(CompanyDB).filter(CompanyDB.id == company_id).first():
            raise NotFound("Company", company_id)
        return self.scheduler.run_sweep(
            company_id,
            min_days_waiting=(
                self.settings.escalation_min_days_waiting if min_days_waiting is None else min_days_waiting
            ),
            max_followups=self.settings.escalation_max_followups if max_followups is None else max_followups,
            preview_only=preview_only,
            now=self.clock(),
        )

    def run_expiration_reminders(self, company_id: str) -> ReminderResult:
        if not self.db.query(CompanyDB).filter(CompanyDB.id == company_id).first():
            raise NotFound("Company", company_id)
        return self.reminders.run(company_id, now=self.clock())

    def stop_work_risks(self, company_id: str) -> List[Dict[str, Any]]:
        return self.scheduler.get_stop_work_risks(company_id, self.clock().date())

    def run_daily_jobs(self) -> Dict[str, Any]:
        """
        Exception expiry sweep, then escalation, expiration reminders and a
        snapshot for every company.
        One company's failure is reported and does not stop the others.
        """
        now = self.clock()
        results = {
            "run_at": now.isoformat(),
            "exceptions": self.expire_exceptions(),
            "companies": [],
            "errors": [],
        }
        for company in self.db.query(CompanyDB).order_by(CompanyDB.created_at).all():
            try:
                with self.db.begin_nested():
                    sweep = self.run_escalation_sweep(company.id)
                    reminders = self.reminders.run(company.id, now=now)
                    snapshot = compliance_snapshot(self.db, company.id, now.date())
                results["companies"].append({
                    "company_id": company.id,
                    "sent": len(sweep.sent),
                    "expiration_reminders": len(reminders.sent),
                    "errors": len(sweep.errors) + len(reminders.errors),
                    "compliance_rate": snapshot["snapshot"]["compliance_rate"],
                })
            except Exception as e:
                logger.exception(f"Daily jobs failed for company {company.id}")
                results["errors"].append({"company_id": company.id, "error": str(e)})
        return results

    # =========================================================================
    # DELIVERY / REPORTING / USERS
    # =========================================================================

    def on_delivery_event(self, communication_id: str, new_status: str, timestamp: Optional[datetime] = None,
                          error_message: Optional[str] = None) -> Dict[str, Any]:
        return self.tracker.on_delivery_event(communication_id, new_status, timestamp or self.clock(), error_message)

    def on_sendgrid_events(self, events: List[Dict[str, Any]]) -> Dict[str, int]:
        return self.tracker.on_sendgrid_events(events)

    def compliance_snapshot(self, company_id: str) -> Dict[str, Any]:
        return compliance_snapshot(self.db, company_id, self.clock().date())

    def remove_user(self, user_id: str) -> Dict[str, Any]:
        """Delete a user; their audit entries stay with user_id nulled."""
        user = self.db.query(UserDB).filter(UserDB.id == user_id).first()
        if not user:
            raise NotFound("User", user_id)
        anonymized = self.audit.anonymize_user(user_id)
        self.audit.record(
            company_id=user.company_id,
            user_id=None,
            entity_type="user",
            entity_id=user_id,
            action="user_deleted",
            details={"audit_entries_anonymized": anonymized},
            created_at=self.clock(),
        )
        self.db.delete(user)
        self.db.flush()
        return {"user_id": user_id, "audit_entries_anonymized": anonymized}
