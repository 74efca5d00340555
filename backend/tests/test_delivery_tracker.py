"""
Tests for delivery status callbacks.

Tests:
1. should_apply - monotonic upgrade, failed is terminal
2. Out-of-order callbacks never move a row backwards
3. SendGrid event batches are matched by message id
"""
from datetime import timedelta

import pytest
from sqlalchemy import update

from riskshield.errors import NotFound, ValidationError
from riskshield.models.db_models import CommunicationDB, CommunicationStatus
from riskshield.services.compliance.delivery_tracker import should_apply

from conftest import NOW, submit


S = CommunicationStatus


class TestShouldApply:

    @pytest.mark.parametrize("current,new,expected", [
        (S.PENDING, S.SENT, True),
        (S.SENT, S.DELIVERED, True),
        (S.SENT, S.OPENED, True),
        (S.DELIVERED, S.OPENED, True),
        (S.OPENED, S.DELIVERED, False),
        (S.DELIVERED, S.SENT, False),
        (S.SENT, S.SENT, False),
        (S.OPENED, S.FAILED, True),
        (S.PENDING, S.FAILED, True),
        (S.FAILED, S.SENT, False),
        (S.FAILED, S.OPENED, False),
        (S.FAILED, S.FAILED, False),
    ])
    def test_rule(self, current, new, expected):
        assert should_apply(current, new) is expected


@pytest.fixture
def sent_email(db, service, world):
    submit(service, world, "fail")
    return db.query(CommunicationDB).one()


class TestDeliveryEvents:

    def test_delivered_then_opened(self, service, sent_email):
        delivered_at = NOW + timedelta(minutes=1)
        opened_at = NOW + timedelta(minutes=30)

        assert service.on_delivery_event(sent_email.id, "delivered", delivered_at)["applied"] is True
        assert service.on_delivery_event(sent_email.id, "opened", opened_at)["applied"] is True

        assert sent_email.status == S.OPENED
        assert sent_email.delivered_at == delivered_at
        assert sent_email.opened_at == opened_at

    def test_opened_before_delivered_keeps_opened(self, service, sent_email):
        service.on_delivery_event(sent_email.id, "opened", NOW + timedelta(minutes=5))
        result = service.on_delivery_event(sent_email.id, "delivered", NOW + timedelta(minutes=6))

        assert result == {"communication_id": sent_email.id, "applied": False, "status": "opened"}
        assert sent_email.status == S.OPENED
        # Opened implies delivered
        assert sent_email.delivered_at == NOW + timedelta(minutes=5)

    def test_failed_is_terminal(self, service, sent_email):
        service.on_delivery_event(sent_email.id, "failed", error_message="mailbox full")
        result = service.on_delivery_event(sent_email.id, "delivered")

        assert result["applied"] is False
        assert sent_email.status == S.FAILED
        assert sent_email.error_message == "mailbox full"

    def test_stale_read_never_regresses(self, db, service, sent_email):
        # Another worker commits `opened` after this session loaded the row
        db.execute(
            update(CommunicationDB)
            .where(CommunicationDB.id == sent_email.id)
            .values(status=S.OPENED, opened_at=NOW)
            .execution_options(synchronize_session=False)
        )
        assert sent_email.status == S.SENT

        result = service.on_delivery_event(sent_email.id, "delivered", NOW + timedelta(minutes=1))

        assert result == {"communication_id": sent_email.id, "applied": False, "status": "opened"}
        db.refresh(sent_email)
        assert sent_email.status == S.OPENED
        assert sent_email.delivered_at is None

    def test_failed_overrides_stale_status(self, db, service, sent_email):
        db.execute(
            update(CommunicationDB)
            .where(CommunicationDB.id == sent_email.id)
            .values(status=S.DELIVERED)
            .execution_options(synchronize_session=False)
        )

        result = service.on_delivery_event(sent_email.id, "failed", error_message="hard bounce")

        assert result["applied"] is True
        assert sent_email.status == S.FAILED
        assert sent_email.error_message == "hard bounce"

    def test_unknown_status(self, service, sent_email):
        with pytest.raises(ValidationError):
            service.on_delivery_event(sent_email.id, "bounced")

    def test_unknown_communication(self, service, world):
        with pytest.raises(NotFound):
            service.on_delivery_event("missing", "delivered")


class TestSendGridEvents:

    def test_batch_summary(self, service, sent_email):
        message_id = sent_email.provider_message_id
        events = [
            {"event": "delivered", "sg_message_id": f"{message_id}.filter0001.1234", "timestamp": 1772442000},
            {"event": "open", "sg_message_id": f"{message_id}.filter0001.1234"},
            {"event": "delivered", "sg_message_id": f"{message_id}.filter0001.1234"},
            {"event": "processed", "sg_message_id": f"{message_id}.filter0001.1234"},
            {"event": "open", "sg_message_id": "unknown.filter"},
            {"event": "open"},
        ]

        summary = service.on_sendgrid_events(events)

        assert summary == {"received": 6, "applied": 2, "ignored": 3, "unmatched": 1}
        assert sent_email.status == S.OPENED

    def test_bounce_marks_failed_with_reason(self, service, sent_email):
        service.on_sendgrid_events([{
            "event": "bounce",
            "sg_message_id": sent_email.provider_message_id,
            "reason": "550 5.1.1 The email account does not exist",
        }])
        assert sent_email.status == S.FAILED
        assert sent_email.error_message.startswith("550")

    def test_event_timestamp_is_used(self, service, sent_email):
        service.on_sendgrid_events([{
            "event": "delivered",
            "sg_message_id": sent_email.provider_message_id,
            "timestamp": 1772442000,
        }])
        # 2026-03-02 09:00:00 UTC
        assert sent_email.delivered_at == NOW
