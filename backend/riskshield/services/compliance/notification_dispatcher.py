"""
Notification Dispatcher

Fans one escalation decision out to every recipient and channel, and
records one Communication row per (recipient, channel) pair.

Flow:
1. Insert every Communication row as `pending` and flush. The rows exist
   before any provider is called.
2. Send in a bounded thread pool. Provider calls never touch the session.
3. Back on the calling thread, mark each row `sent` or `failed`.

A failed send never stops the others; the caller gets a result list with
both outcomes. There is no retry here: a failed stage is retried by the
next scheduler pass. The dispatcher does not deduplicate.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy.orm import Session

from ...errors import DeliveryFailure
from ...models.db_models import (
    Channel, CommunicationStatus, CommunicationType, UserRole,
    CommunicationDB, ProjectSubcontractorDB, UserDB, utcnow,
)
from ..notifications.base import DeliveryResult, EmailProvider, SmsProvider
from .audit_recorder import AuditRecorder


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Recipient:
    address: str
    channel: Channel
    name: str
    role: str  # broker | subcontractor | project_manager | admin


@dataclass
class OutboundMessage:
    recipient: Recipient
    subject: Optional[str]
    body: str


@dataclass
class DispatchResult:
    communication_id: str
    recipient: str
    channel: Channel
    role: str
    success: bool
    message_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "communication_id": self.communication_id,
            "recipient": self.recipient,
            "channel": self.channel.value,
            "role": self.role,
            "success": self.success,
            "message_id": self.message_id,
            "error": self.error,
        }


# =============================================================================
# RECIPIENT RESOLUTION
# =============================================================================

def subcontractor_recipients(assignment: ProjectSubcontractorDB) -> List[Recipient]:
    """
    Who receives deficiency / follow-up / confirmation messages.

    The broker takes precedence over the subcontractor's own contact when a
    broker email is on file. SMS only when a phone number is present.
    """
    sub = assignment.subcontractor
    if sub.broker_email:
        email, phone = sub.broker_email, sub.broker_phone
        name, role = sub.broker_name or sub.name, "broker"
    else:
        email, phone = sub.contact_email, sub.contact_phone
        name, role = sub.contact_name or sub.name, "subcontractor"

    recipients = []
    if email:
        recipients.append(Recipient(address=email, channel=Channel.EMAIL, name=name, role=role))
    if phone:
        recipients.append(Recipient(address=phone, channel=Channel.SMS, name=name, role=role))
    return recipients


def _user_recipients(user: UserDB, role: str) -> List[Recipient]:
    name = user.name or user.email
    recipients = [Recipient(address=user.email, channel=Channel.EMAIL, name=name, role=role)]
    if user.phone:
        recipients.append(Recipient(address=user.phone, channel=Channel.SMS, name=name, role=role))
    return recipients


def project_manager_recipients(assignment: ProjectSubcontractorDB) -> List[Recipient]:
    manager = assignment.project.project_manager
    if not manager:
        return []
    return _user_recipients(manager, "project_manager")


def critical_alert_recipients(db: Session, assignment: ProjectSubcontractorDB) -> List[Recipient]:
    """Project manager plus every company admin, deduplicated by (address, channel)."""
    admins = (
        db.query(UserDB)
        .filter(UserDB.company_id == assignment.project.company_id, UserDB.role == UserRole.ADMIN)
        .order_by(UserDB.email)
        .all()
    )
    recipients = project_manager_recipients(assignment)
    for admin in admins:
        recipients.extend(_user_recipients(admin, "admin"))

    seen = set()
    unique = []
    for recipient in recipients:
        key = (recipient.address.lower(), recipient.channel)
        if key in seen:
            continue
        seen.add(key)
        unique.append(recipient)
    return unique


# =============================================================================
# DISPATCHER
# =============================================================================

class NotificationDispatcher:
    """Sends messages and records their Communication rows."""

    def __init__(
        self,
        db: Session,
        email_provider: EmailProvider,
        sms_provider: SmsProvider,
        audit: Optional[AuditRecorder] = None,
        max_workers: int = 4,
    ):
        self.db = db
        self.email_provider = email_provider
        self.sms_provider = sms_provider
        self.audit = audit or AuditRecorder(db)
        self.max_workers = max(1, max_workers)

    def dispatch(
        self,
        assignment: ProjectSubcontractorDB,
        comm_type: CommunicationType,
        messages: List[OutboundMessage],
        verification_id: Optional[str] = None,
        stage: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[DispatchResult]:
        """
        Send every message and return one DispatchResult per message.

        Never raises for a failed send.
        """
        if not messages:
            logger.warning(
                f"No recipients for {comm_type.value} on assignment {assignment.id}; nothing dispatched"
            )
            return []

        now = now or utcnow()
        rows = []
        for message in messages:
            row = CommunicationDB(
                id=str(uuid4()),
                subcontractor_id=assignment.subcontractor_id,
                project_id=assignment.project_id,
                verification_id=verification_id,
                type=comm_type,
                channel=message.recipient.channel,
                stage=stage,
                recipient=message.recipient.address,
                subject=message.subject,
                body=message.body,
                status=CommunicationStatus.PENDING,
                created_at=now,
                updated_at=now,
            )
            self.db.add(row)
            rows.append(row)
        self.db.flush()

        outcomes = self._send_all(messages)

        results = []
        for row, message, outcome in zip(rows, messages, outcomes):
            if outcome.success:
                row.status = CommunicationStatus.SENT
                row.sent_at = now
                row.provider_message_id = outcome.message_id
            else:
                row.status = CommunicationStatus.FAILED
                row.error_message = outcome.error
            row.updated_at = now
            results.append(DispatchResult(
                communication_id=row.id,
                recipient=row.recipient,
                channel=row.channel,
                role=message.recipient.role,
                success=outcome.success,
                message_id=outcome.message_id,
                error=outcome.error,
            ))
        self.db.flush()

        company_id = assignment.project.company_id
        for result in results:
            self.audit.record(
                company_id=company_id,
                user_id=None,
                entity_type="communication",
                entity_id=result.communication_id,
                action="communication_sent" if result.success else "communication_failed",
                details={
                    "type": comm_type.value,
                    "stage": stage,
                    "channel": result.channel.value,
                    "recipient": result.recipient,
                    "assignment_id": assignment.id,
                    "error": result.error,
                },
                created_at=now,
            )

        failed = sum(1 for r in results if not r.success)
        logger.info(
            f"Dispatched {comm_type.value} (stage={stage}) for assignment {assignment.id}: "
            f"{len(results) - failed} sent, {failed} failed"
        )
        return results

    def _send_one(self, message: OutboundMessage) -> DeliveryResult:
        recipient = message.recipient
        if recipient.channel == Channel.EMAIL:
            return self.email_provider.send_email(recipient.address, message.subject or "", message.body)
        return self.sms_provider.send_sms(recipient.address, message.body)

    def _send_all(self, messages: List[OutboundMessage]) -> List[DeliveryResult]:
        """
        Every message is attempted exactly once. Each provider call carries
        its own timeout, so a slow recipient only delays its own result.
        """
        outcomes = []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(messages))) as executor:
            futures = [executor.submit(self._send_one, message) for message in messages]
            for message, future in zip(messages, futures):
                try:
                    outcomes.append(future.result())
                except Exception as e:
                    failure = DeliveryFailure(
                        f"{message.recipient.channel.value} send to {message.recipient.address} failed: {e}"
                    )
                    logger.exception(failure.message)
                    outcomes.append(DeliveryResult(success=False, error=failure.message))
        return outcomes
