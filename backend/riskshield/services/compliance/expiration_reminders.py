"""
Expiration Reminders

A compliant certificate still lapses. Once a day, every assignment whose
latest verdict is a pass with a known policy expiry is checked, and the
subcontractor (or their broker) is emailed as the expiry comes within 30,
14, 7 and 0 days.

RULES:
- The threshold due is the smallest one not below days_until_expiry, so a
  missed run sends the nearest threshold and skips the ones already passed.
- Each threshold goes out at most once per verdict. It is stored in
  Communication.stage on the expiration_reminder row; a row that reached
  sent (or later) blocks a repeat, a failed one is retried on the next run.
- Certificates that expired more than EXPIRED_GRACE_DAYS ago are left alone.
- A newer verdict starts over: reminders are keyed by verification_id.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ...errors import DependencyUnavailable
from ...models.db_models import (
    Channel, CommunicationType, ProjectStatus, VerdictStatus, SENT_STATUSES,
    CommunicationDB, ProjectDB, ProjectSubcontractorDB, VerificationDB, utcnow,
)
from .escalation_scheduler import NO_RECIPIENTS, upload_link
from .message_templates import MessageContext, render_expiration_reminder_email
from .notification_dispatcher import NotificationDispatcher, OutboundMessage, subcontractor_recipients
from .verdict_store import VerdictStore


logger = logging.getLogger(__name__)


REMINDER_THRESHOLDS = (30, 14, 7, 0)
EXPIRED_GRACE_DAYS = 7


def reminder_threshold(days_until_expiry: int) -> Optional[int]:
    """Threshold due for a certificate `days_until_expiry` days out, or None."""
    if days_until_expiry < -EXPIRED_GRACE_DAYS:
        return None
    due = [t for t in REMINDER_THRESHOLDS if days_until_expiry <= t]
    return min(due) if due else None


@dataclass
class ReminderResult:
    company_id: str
    today: date
    checked: int = 0
    sent: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company_id": self.company_id,
            "today": self.today.isoformat(),
            "checked": self.checked,
            "sent": self.sent,
            "errors": self.errors,
        }


class ExpirationReminderScheduler:
    """Sends expiration_reminder emails for passing certificates nearing expiry."""

    def __init__(
        self,
        db: Session,
        dispatcher: NotificationDispatcher,
        verdicts: Optional[VerdictStore] = None,
        app_url: str = "",
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.verdicts = verdicts or VerdictStore(db, dispatcher.audit)
        self.app_url = app_url.rstrip("/")

    def already_sent(self, verification_id: str, threshold: int) -> bool:
        return self.db.query(CommunicationDB).filter(
            CommunicationDB.verification_id == verification_id,
            CommunicationDB.type == CommunicationType.EXPIRATION_REMINDER,
            CommunicationDB.stage == threshold,
            CommunicationDB.status.in_(list(SENT_STATUSES)),
        ).first() is not None

    def build_messages(
        self,
        assignment: ProjectSubcontractorDB,
        verdict: VerificationDB,
        days_until_expiry: int,
    ) -> List[OutboundMessage]:
        messages = []
        for recipient in subcontractor_recipients(assignment):
            if recipient.channel != Channel.EMAIL:
                continue
            ctx = MessageContext(
                recipient_name=recipient.name,
                subcontractor_name=assignment.subcontractor.name,
                subcontractor_abn=assignment.subcontractor.abn,
                project_name=assignment.project.name,
                upload_link=upload_link(self.app_url, assignment),
            )
            subject, body = render_expiration_reminder_email(ctx, verdict.expiry_date, days_until_expiry)
            messages.append(OutboundMessage(recipient, subject, body))
        return messages

    def _send(self, assignment, verdict, threshold, days_until_expiry, now) -> Dict[str, Any]:
        messages = self.build_messages(assignment, verdict, days_until_expiry)
        if not messages:
            return {"error": NO_RECIPIENTS}
        try:
            with self.db.begin_nested():
                results = self.dispatcher.dispatch(
                    assignment,
                    CommunicationType.EXPIRATION_REMINDER,
                    messages,
                    verification_id=verdict.id,
                    stage=threshold,
                    now=now,
                )
        except OperationalError as e:
            logger.exception(f"Database error while sending expiration reminder for assignment {assignment.id}")
            raise DependencyUnavailable(f"Database unavailable: {e.orig or e}", {"assignment_id": assignment.id})
        return {"results": [r.to_dict() for r in results]}

    def run(self, company_id: str, today: Optional[date] = None, now: Optional[datetime] = None) -> ReminderResult:
        now = now or utcnow()
        today = today or now.date()
        result = ReminderResult(company_id=company_id, today=today)

        assignments = (
            self.db.query(ProjectSubcontractorDB)
            .join(ProjectDB, ProjectSubcontractorDB.project_id == ProjectDB.id)
            .filter(ProjectDB.company_id == company_id, ProjectDB.status == ProjectStatus.ACTIVE)
            .order_by(ProjectSubcontractorDB.created_at.asc())
            .all()
        )
        for assignment in assignments:
            verdict = self.verdicts.latest_for(assignment.project_id, assignment.subcontractor_id)
            if verdict is None or verdict.status != VerdictStatus.PASS or verdict.expiry_date is None:
                continue
            result.checked += 1

            days_until_expiry = (verdict.expiry_date - today).days
            threshold = reminder_threshold(days_until_expiry)
            if threshold is None or self.already_sent(verdict.id, threshold):
                continue

            entry = {
                "assignment_id": assignment.id,
                "project_id": assignment.project_id,
                "subcontractor_id": assignment.subcontractor_id,
                "verification_id": verdict.id,
                "expiry_date": verdict.expiry_date.isoformat(),
                "days_until_expiry": days_until_expiry,
                "threshold": threshold,
            }
            try:
                outcome = self._send(assignment, verdict, threshold, days_until_expiry, now)
            except DependencyUnavailable as e:
                result.errors.append({**entry, "error": e.message, "code": e.code})
                continue

            if outcome.get("error"):
                logger.warning(f"No reachable recipients for expiration reminder on assignment {assignment.id}")
                result.errors.append({**entry, "error": outcome["error"], "code": "no_recipients"})
            else:
                result.sent.append({**entry, **outcome})

        logger.info(
            f"Expiration reminders company={company_id} today={today}: checked={result.checked} "
            f"sent={len(result.sent)} errors={len(result.errors)}"
        )
        return result
