"""
Delivery status callbacks.

Status only moves forward: pending -> sent -> delivered -> opened.
`failed` may be set from any state and is terminal. An out-of-order
callback that would move a row backwards is ignored, so an `opened`
event arriving before `delivered` leaves the row at `opened`.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from ...errors import NotFound, ValidationError
from ...models.db_models import CommunicationDB, CommunicationStatus, utcnow


logger = logging.getLogger(__name__)


STATUS_PRIORITY = {
    CommunicationStatus.PENDING: 0,
    CommunicationStatus.SENT: 1,
    CommunicationStatus.DELIVERED: 2,
    CommunicationStatus.OPENED: 3,
}

# SendGrid event name -> our status; anything else is ignored
SENDGRID_EVENT_MAP = {
    "delivered": CommunicationStatus.DELIVERED,
    "open": CommunicationStatus.OPENED,
    "bounce": CommunicationStatus.FAILED,
    "dropped": CommunicationStatus.FAILED,
}


def replaceable_by(new: CommunicationStatus) -> List[CommunicationStatus]:
    """Statuses a row may hold for `new` to be applied over it."""
    if new == CommunicationStatus.FAILED:
        return list(STATUS_PRIORITY)
    return [s for s, priority in STATUS_PRIORITY.items() if priority < STATUS_PRIORITY[new]]


def should_apply(current: CommunicationStatus, new: CommunicationStatus) -> bool:
    """Monotonic upgrade rule."""
    return current in replaceable_by(new)


class DeliveryTracker:

    def __init__(self, db: Session):
        self.db = db

    def on_delivery_event(
        self,
        communication_id: str,
        new_status: Union[str, CommunicationStatus],
        timestamp: Optional[datetime] = None,
        error_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Apply one provider callback.

        Returns {"communication_id", "applied", "status"}.
        """
        try:
            status = CommunicationStatus(new_status)
        except ValueError:
            raise ValidationError(
                f"Invalid delivery status: {new_status}",
                {"allowed": [s.value for s in CommunicationStatus]},
            )

        communication = self.db.query(CommunicationDB).filter(CommunicationDB.id == communication_id).first()
        if not communication:
            raise NotFound("Communication", communication_id)
        return self._apply(communication, status, timestamp or utcnow(), error_message)

    def _apply(
        self,
        communication: CommunicationDB,
        status: CommunicationStatus,
        timestamp: datetime,
        error_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Conditional UPDATE guarded on the statuses `status` may replace, so a
        stale read can never write over a newer status committed meanwhile.
        """
        values = {"status": status, "updated_at": timestamp}
        if status == CommunicationStatus.SENT:
            values["sent_at"] = func.coalesce(CommunicationDB.sent_at, timestamp)
        elif status == CommunicationStatus.DELIVERED:
            values["delivered_at"] = timestamp
        elif status == CommunicationStatus.OPENED:
            values["opened_at"] = timestamp
            # Opened implies delivered
            values["delivered_at"] = func.coalesce(CommunicationDB.delivered_at, timestamp)
        elif status == CommunicationStatus.FAILED and error_message:
            values["error_message"] = error_message

        statement = (
            update(CommunicationDB)
            .where(
                CommunicationDB.id == communication.id,
                CommunicationDB.status.in_(replaceable_by(status)),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        applied = (self.db.execute(statement).rowcount or 0) == 1
        self.db.expire(communication)

        if not applied:
            logger.debug(
                f"Ignoring {status.value} callback for communication {communication.id} "
                f"(currently {communication.status.value})"
            )
            return {"communication_id": communication.id, "applied": False, "status": communication.status.value}

        logger.info(f"Communication {communication.id} -> {status.value}")
        return {"communication_id": communication.id, "applied": True, "status": status.value}

    def on_sendgrid_events(self, events: List[Dict[str, Any]]) -> Dict[str, int]:
        """
        Apply a SendGrid event webhook batch.

        Events are matched by sg_message_id; the part before the first "."
        is the X-Message-Id returned when the mail was sent.
        """
        summary = {"received": len(events), "applied": 0, "ignored": 0, "unmatched": 0}
        for event in events:
            status = SENDGRID_EVENT_MAP.get(event.get("event"))
            message_id = (event.get("sg_message_id") or "").split(".")[0]
            if status is None or not message_id:
                summary["ignored"] += 1
                continue

            communication = (
                self.db.query(CommunicationDB)
                .filter(CommunicationDB.provider_message_id == message_id)
                .first()
            )
            if not communication:
                summary["unmatched"] += 1
                continue

            timestamp = None
            if event.get("timestamp") is not None:
                try:
                    timestamp = datetime.fromtimestamp(int(event["timestamp"]), tz=timezone.utc).replace(tzinfo=None)
                except (TypeError, ValueError, OverflowError):
                    timestamp = None
            outcome = self._apply(
                communication,
                status,
                timestamp or utcnow(),
                error_message=event.get("reason") or event.get("response"),
            )
            summary["applied" if outcome["applied"] else "ignored"] += 1
        return summary
