"""
Tests for the Escalation Scheduler.

Tests:
1. decide_next_action (pure) - stage gating, critical precedence, no-action reasons
2. derive_escalation_state - failed sends and other verdicts do not count
3. Full sequence: stage 0 on the verdict, then 1, 2, 3 every min_days_waiting
4. Failed stage is retried on the next pass instead of being skipped
5. Critical alert: once per verdict, recipients, issue wording
6. Sweep cap, ordering, preview parity and per-assignment error isolation
7. Message wording (URGENT marker)
"""
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from riskshield.models.db_models import (
    CommunicationDB, CommunicationStatus, CommunicationType, ComplianceStatus, ProjectStatus,
    VerdictStatus,
)
from riskshield.services.compliance.escalation_scheduler import (
    EscalationState, NoAction, SendCriticalAlert, SendStage,
    decide_next_action, derive_escalation_state,
)
from riskshield.services.compliance.message_templates import (
    ISSUE_NO_CERTIFICATE, ISSUE_NON_COMPLIANT, MessageContext, render_stage_email, render_stage_sms,
)

from conftest import NOW, submit


def _verdict(status=VerdictStatus.FAIL, verification_id="v-1"):
    verdict = MagicMock()
    verdict.status = status
    verdict.id = verification_id
    return verdict


def _state(highest=None, days_ago=None, critical=False):
    return EscalationState(
        highest_stage_sent=highest,
        last_sent_at=NOW - timedelta(days=days_ago) if days_ago is not None else None,
        critical_alert_sent=critical,
    )


def _quiet_verdict(service, assignment, status="fail"):
    """Record a verdict and recompute without dispatching anything."""
    verification = service.verdicts.submit(
        f"doc-{assignment.id[:8]}", assignment.project_id, assignment.subcontractor_id, status, 0.9,
        deficiencies=[{"type": "policy_expired", "description": "Policy expired 01/02/2026"}],
        now=service.clock(),
    )
    service.resolver.recompute(assignment, now=service.clock())
    return verification


def _stage_rows(db, assignment):
    return db.query(CommunicationDB).filter(
        CommunicationDB.project_id == assignment.project_id,
        CommunicationDB.subcontractor_id == assignment.subcontractor_id,
        CommunicationDB.type.in_([CommunicationType.DEFICIENCY, CommunicationType.FOLLOW_UP]),
    ).order_by(CommunicationDB.created_at).all()


# =============================================================================
# PURE DECISIONS
# =============================================================================

class TestDecideNextAction:

    def test_compliant_status_is_no_action(self):
        action = decide_next_action(ComplianceStatus.COMPLIANT, _verdict(), _state(), None, NOW)
        assert action == NoAction(reason="status is compliant")

    def test_exception_status_is_no_action(self):
        action = decide_next_action(ComplianceStatus.EXCEPTION, _verdict(), _state(), NOW.date(), NOW)
        assert isinstance(action, NoAction)

    def test_pass_verdict_is_no_action(self):
        action = decide_next_action(
            ComplianceStatus.NON_COMPLIANT, _verdict(VerdictStatus.PASS), _state(), NOW.date(), NOW,
        )
        assert action.reason == "superseded by pass verdict"

    def test_stage_zero_is_immediate(self):
        action = decide_next_action(ComplianceStatus.NON_COMPLIANT, _verdict(), _state(), None, NOW)
        assert action == SendStage(stage=0, days_waiting=0)
        assert action.communication_type == CommunicationType.DEFICIENCY

    def test_review_verdict_escalates_from_pending(self):
        action = decide_next_action(ComplianceStatus.PENDING, _verdict(VerdictStatus.REVIEW), _state(), None, NOW)
        assert action == SendStage(stage=0, days_waiting=0)

    def test_followup_not_yet_due(self):
        action = decide_next_action(ComplianceStatus.NON_COMPLIANT, _verdict(), _state(0, 1), None, NOW)
        assert action == NoAction(reason="not yet due", days_waiting=1, days_until_due=1, next_stage=1)

    def test_followup_due(self):
        action = decide_next_action(ComplianceStatus.NON_COMPLIANT, _verdict(), _state(0, 2), None, NOW)
        assert action == SendStage(stage=1, days_waiting=2)
        assert action.communication_type == CommunicationType.FOLLOW_UP

    def test_days_waiting_floors(self):
        state = EscalationState(0, NOW - timedelta(days=1, hours=23), False)
        assert state.days_waiting(NOW) == 1
        action = decide_next_action(ComplianceStatus.NON_COMPLIANT, _verdict(), state, None, NOW)
        assert isinstance(action, NoAction)

    def test_custom_min_days_waiting(self):
        action = decide_next_action(
            ComplianceStatus.NON_COMPLIANT, _verdict(), _state(1, 3), None, NOW, min_days_waiting=5,
        )
        assert action.days_until_due == 2

    def test_sequence_complete_after_final_stage(self):
        action = decide_next_action(ComplianceStatus.NON_COMPLIANT, _verdict(), _state(3, 30), None, NOW)
        assert action.reason == "escalation sequence complete"

    def test_critical_when_on_site_today(self):
        action = decide_next_action(ComplianceStatus.NON_COMPLIANT, _verdict(), _state(0, 1), NOW.date(), NOW)
        assert action == SendCriticalAlert(issue=ISSUE_NON_COMPLIANT)

    def test_critical_when_on_site_date_passed(self):
        on_site = NOW.date() - timedelta(days=3)
        action = decide_next_action(ComplianceStatus.NON_COMPLIANT, _verdict(), _state(3, 30), on_site, NOW)
        assert isinstance(action, SendCriticalAlert)

    def test_no_critical_for_future_on_site_date(self):
        on_site = NOW.date() + timedelta(days=1)
        action = decide_next_action(ComplianceStatus.NON_COMPLIANT, _verdict(), _state(), on_site, NOW)
        assert action == SendStage(stage=0, days_waiting=0)

    def test_critical_only_once(self):
        action = decide_next_action(
            ComplianceStatus.NON_COMPLIANT, _verdict(), _state(0, 1, critical=True), NOW.date(), NOW,
        )
        assert action.reason == "not yet due"

    def test_no_verdict_critical_wording(self):
        action = decide_next_action(ComplianceStatus.PENDING, None, _state(), NOW.date(), NOW)
        assert action == SendCriticalAlert(issue=ISSUE_NO_CERTIFICATE)

    def test_no_verdict_no_stage(self):
        action = decide_next_action(ComplianceStatus.PENDING, None, _state(), None, NOW)
        assert action.reason == "no verdict yet"

    def test_include_critical_false_returns_stage(self):
        action = decide_next_action(
            ComplianceStatus.NON_COMPLIANT, _verdict(), _state(), NOW.date(), NOW, include_critical=False,
        )
        assert action == SendStage(stage=0, days_waiting=0)


class TestDeriveEscalationState:

    def _comm(self, stage, status=CommunicationStatus.SENT, verification_id="v-1",
              comm_type=CommunicationType.FOLLOW_UP, days_ago=0):
        comm = MagicMock()
        comm.stage = stage
        comm.status = status
        comm.verification_id = verification_id
        comm.type = comm_type
        comm.sent_at = NOW - timedelta(days=days_ago)
        comm.created_at = comm.sent_at
        return comm

    def test_empty_history(self):
        state = derive_escalation_state([], "v-1")
        assert state.next_stage == 0
        assert state.last_sent_at is None
        assert state.critical_alert_sent is False

    def test_failed_sends_do_not_count(self):
        history = [
            self._comm(0, comm_type=CommunicationType.DEFICIENCY, days_ago=4),
            self._comm(1, status=CommunicationStatus.FAILED, days_ago=1),
        ]
        state = derive_escalation_state(history, "v-1")
        assert state.highest_stage_sent == 0
        assert state.next_stage == 1
        assert state.days_waiting(NOW) == 4

    def test_delivered_and_opened_count_as_sent(self):
        history = [
            self._comm(0, status=CommunicationStatus.OPENED, comm_type=CommunicationType.DEFICIENCY, days_ago=5),
            self._comm(1, status=CommunicationStatus.DELIVERED, days_ago=3),
        ]
        assert derive_escalation_state(history, "v-1").next_stage == 2

    def test_other_verdicts_ignored(self):
        history = [self._comm(2, verification_id="v-old", days_ago=1)]
        assert derive_escalation_state(history, "v-1").next_stage == 0

    def test_critical_alert_does_not_reset_clock(self):
        history = [
            self._comm(0, comm_type=CommunicationType.DEFICIENCY, days_ago=3),
            self._comm(None, comm_type=CommunicationType.CRITICAL_ALERT, days_ago=0),
        ]
        state = derive_escalation_state(history, "v-1")
        assert state.critical_alert_sent is True
        assert state.days_waiting(NOW) == 3

    def test_pending_rows_do_not_count(self):
        history = [self._comm(0, status=CommunicationStatus.PENDING, comm_type=CommunicationType.DEFICIENCY)]
        assert derive_escalation_state(history, "v-1").next_stage == 0


# =============================================================================
# FULL SEQUENCE
# =============================================================================

class TestEscalationSequence:

    def test_stages_follow_min_days_waiting(self, db, service, world, clock, email_provider):
        company_id = world["company"].id
        assignment = world["assignment"]
        submit(service, world, "fail")
        assert [r.stage for r in _stage_rows(db, assignment)] == [0]

        timeline = [(1, None), (1, 1), (1, None), (1, 2), (2, 3), (2, None), (5, None)]
        for days, expected_stage in timeline:
            clock.advance(days=days)
            result = service.run_escalation_sweep(company_id)
            stages = [entry["stage"] for entry in result.sent if entry["action"] == "stage"]
            assert stages == ([expected_stage] if expected_stage is not None else []), clock.now

        # stage 3 also carries the project manager copy
        assert sorted({r.stage for r in _stage_rows(db, assignment)}) == [0, 1, 2, 3]
        assert all(r.status == CommunicationStatus.SENT for r in _stage_rows(db, assignment))

    def test_not_yet_due_is_reported(self, service, world, clock):
        submit(service, world, "fail")
        clock.advance(days=1)
        result = service.run_escalation_sweep(world["company"].id)

        assert result.sent == []
        assert len(result.not_yet_due) == 1
        entry = result.not_yet_due[0]
        assert entry["next_stage"] == 1
        assert entry["days_waiting"] == 1
        assert entry["days_until_due"] == 1

    def test_final_notice_copies_project_manager(self, db, service, world, clock, email_provider):
        submit(service, world, "fail")
        for _ in range(3):
            clock.advance(days=2)
            service.run_escalation_sweep(world["company"].id)

        final = [m for m in email_provider.sent if m["subject"].startswith("FINAL NOTICE")]
        pm_copy = [m for m in email_provider.sent if m["subject"].startswith("Final notice sent")]
        assert [m["to"] for m in final] == ["office@sparky.test"]
        assert [m["to"] for m in pm_copy] == ["pm@acme.test"]

    def test_failed_stage_is_retried(self, db, service, world, clock, email_provider):
        email_provider.fail_for.add("office@sparky.test")
        outcome = submit(service, world, "fail")
        assert outcome.communications[0]["delivered_any"] is False

        email_provider.fail_for.clear()
        clock.advance(hours=1)
        result = service.run_escalation_sweep(world["company"].id)

        assert [entry["stage"] for entry in result.sent] == [0]
        rows = _stage_rows(db, world["assignment"])
        assert [(r.stage, r.status) for r in rows] == [
            (0, CommunicationStatus.FAILED),
            (0, CommunicationStatus.SENT),
        ]

    def test_new_verdict_restarts_sequence(self, db, service, world, clock):
        submit(service, world, "fail")
        clock.advance(days=2)
        service.run_escalation_sweep(world["company"].id)
        clock.advance(days=1)

        outcome = submit(service, world, "fail")

        assert [c["stage"] for c in outcome.communications] == [0]
        assert [r.stage for r in _stage_rows(db, world["assignment"])] == [0, 1, 0]

    def test_pass_verdict_stops_escalation(self, service, world, clock):
        submit(service, world, "fail")
        submit(service, world, "pass")
        clock.advance(days=10)
        result = service.run_escalation_sweep(world["company"].id)
        assert result.checked == 0
        assert result.sent == []

    def test_active_exception_stops_escalation(self, service, world, clock):
        submit(service, world, "fail")
        service.create_exception(
            world["admin"].id, auto_approve=True, assignment_id=world["assignment"].id,
            issue_summary="Short", reason="Approved by RM", risk_level="low", expiration_type="permanent",
        )
        clock.advance(days=10)
        assert service.run_escalation_sweep(world["company"].id).checked == 0

    def test_inactive_project_is_skipped(self, service, world, make, clock):
        project = make.project(world["company"], world["manager"], name="Paused", status=ProjectStatus.ON_HOLD)
        paused = make.assignment(project, make.subcontractor(world["company"], name="Paused Sub"))
        _quiet_verdict(service, paused)
        result = service.run_escalation_sweep(world["company"].id)

        # Only the world assignment (pending, no verdict) is considered
        assert result.checked == 1
        assert result.sent == []
        assert result.capped == []

    def test_broker_receives_stage_messages(self, db, service, world, make, email_provider, sms_provider):
        sub = make.subcontractor(
            world["company"], name="Brokered Roofing", contact_email="roof@roofing.test",
            broker_email="broker@insure.test", broker_phone="0411222333", broker_name="Bea Broker",
        )
        assignment = make.assignment(world["project"], sub)
        submit(service, world, "fail", assignment=assignment)

        assert [m["to"] for m in email_provider.sent] == ["broker@insure.test"]
        assert [m["to"] for m in sms_provider.sent] == ["0411222333"]
        assert email_provider.sent[0]["body"].startswith("Dear Bea Broker")


# =============================================================================
# CRITICAL ALERTS
# =============================================================================

class TestCriticalAlerts:

    def test_on_site_fail_sends_critical_and_stage_zero(self, db, service, world, make, email_provider, sms_provider):
        assignment = make.assignment(
            world["project"], make.subcontractor(world["company"], name="Onsite Concreting",
                                                 contact_email="site@concrete.test"),
            on_site_date=NOW.date(),
        )
        outcome = submit(service, world, "fail", assignment=assignment)

        assert [c["action"] for c in outcome.communications] == ["critical_alert", "stage"]
        alerts = db.query(CommunicationDB).filter(
            CommunicationDB.type == CommunicationType.CRITICAL_ALERT
        ).all()
        assert sorted(a.recipient for a in alerts) == sorted([
            "pm@acme.test", "0400000002", "admin@acme.test", "0400000001",
        ])
        assert all(a.verification_id == outcome.verification.id for a in alerts)
        assert all(a.stage is None for a in alerts)

        critical_emails = [m for m in email_provider.sent if m["subject"].startswith("[URGENT] Stop Work Risk")]
        assert len(critical_emails) == 2
        assert ISSUE_NON_COMPLIANT in critical_emails[0]["body"]
        assert any("STOP WORK RISK" in m["body"] for m in sms_provider.sent)

    def test_critical_sent_once_per_verdict(self, db, service, world, make, clock):
        assignment = make.assignment(
            world["project"], make.subcontractor(world["company"], name="Onsite"), on_site_date=NOW.date(),
        )
        submit(service, world, "fail", assignment=assignment)
        clock.advance(days=1)
        result = service.run_escalation_sweep(world["company"].id)

        assert [e["action"] for e in result.sent] == []
        alerts = db.query(CommunicationDB).filter(CommunicationDB.type == CommunicationType.CRITICAL_ALERT)
        assert alerts.count() == 4

    def test_new_verdict_gets_new_critical_alert(self, db, service, world, make, clock):
        assignment = make.assignment(
            world["project"], make.subcontractor(world["company"], name="Onsite"), on_site_date=NOW.date(),
        )
        submit(service, world, "fail", assignment=assignment)
        clock.advance(hours=3)
        submit(service, world, "fail", assignment=assignment)

        alerts = db.query(CommunicationDB).filter(CommunicationDB.type == CommunicationType.CRITICAL_ALERT)
        assert alerts.count() == 8

    def test_no_certificate_alert_without_verdict(self, db, service, world, make, email_provider):
        make.assignment(
            world["project"], make.subcontractor(world["company"], name="No Docs"), on_site_date=NOW.date(),
        )
        result = service.run_escalation_sweep(world["company"].id)

        assert [e["action"] for e in result.sent] == ["critical_alert"]
        assert result.sent[0]["issue"] == ISSUE_NO_CERTIFICATE
        assert all(ISSUE_NO_CERTIFICATE in m["body"] for m in email_provider.sent)
        assert db.query(CommunicationDB).filter(
            CommunicationDB.type != CommunicationType.CRITICAL_ALERT
        ).count() == 0

    def test_failed_critical_alert_is_retried(self, db, service, world, make, email_provider, sms_provider):
        make.assignment(
            world["project"], make.subcontractor(world["company"], name="No Docs"), on_site_date=NOW.date(),
        )
        for address in ("pm@acme.test", "admin@acme.test"):
            email_provider.fail_for.add(address)
        for phone in ("0400000001", "0400000002"):
            sms_provider.fail_for.add(phone)

        first = service.run_escalation_sweep(world["company"].id)
        assert first.sent[0]["delivered_any"] is False

        email_provider.fail_for.clear()
        sms_provider.fail_for.clear()
        second = service.run_escalation_sweep(world["company"].id)
        assert second.sent[0]["delivered_any"] is True

    def test_stop_work_risks(self, service, world, make, clock):
        yesterday = NOW.date() - timedelta(days=1)
        risky = make.assignment(
            world["project"], make.subcontractor(world["company"], name="Risky"), on_site_date=yesterday,
        )
        make.assignment(
            world["project"], make.subcontractor(world["company"], name="Later"),
            on_site_date=NOW.date() + timedelta(days=7),
        )
        risks = service.stop_work_risks(world["company"].id)

        assert [r["assignment_id"] for r in risks] == [risky.id]
        assert risks[0]["issue"] == ISSUE_NO_CERTIFICATE
        assert risks[0]["on_site_date"] == yesterday.isoformat()


# =============================================================================
# SWEEP
# =============================================================================

class TestSweep:

    def _three_fresh_failures(self, service, world, make):
        assignments = []
        for name in ("Alpha Electrical", "Bravo Plumbing", "Charlie Steel"):
            sub = make.subcontractor(world["company"], name=name, contact_email=f"{name.split()[0].lower()}@subs.test")
            assignment = make.assignment(world["project"], sub)
            _quiet_verdict(service, assignment)
            assignments.append(assignment)
        return assignments

    def test_cap_limits_stage_sends(self, service, world, make):
        self._three_fresh_failures(service, world, make)

        result = service.run_escalation_sweep(world["company"].id, max_followups=2)

        assert len(result.sent) == 2
        assert len(result.capped) == 1
        # The three failures plus the world assignment still waiting for a certificate
        assert result.checked == 4

    def test_critical_alerts_are_not_capped(self, service, world, make):
        assignment = make.assignment(
            world["project"], make.subcontractor(world["company"], name="Onsite"), on_site_date=NOW.date(),
        )
        _quiet_verdict(service, assignment)

        result = service.run_escalation_sweep(world["company"].id, max_followups=0)

        assert [e["action"] for e in result.sent] == ["critical_alert"]
        assert [e["stage"] for e in result.capped] == [0]

    def test_never_contacted_goes_first(self, service, world, make, clock):
        submit(service, world, "fail")
        clock.advance(days=4)
        newcomer = make.assignment(world["project"], make.subcontractor(world["company"], name="Newcomer"))
        _quiet_verdict(service, newcomer)

        result = service.run_escalation_sweep(world["company"].id, max_followups=1)

        assert [e["assignment_id"] for e in result.sent] == [newcomer.id]
        assert [e["assignment_id"] for e in result.capped] == [world["assignment"].id]

    def test_longest_waiting_goes_first(self, service, world, make, clock):
        submit(service, world, "fail")
        clock.advance(days=1)
        later = make.assignment(world["project"], make.subcontractor(world["company"], name="Later"))
        submit(service, world, "fail", assignment=later)
        clock.advance(days=3)

        result = service.run_escalation_sweep(world["company"].id, max_followups=1)

        assert [e["assignment_id"] for e in result.sent] == [world["assignment"].id]
        assert result.sent[0]["days_since_last_communication"] == 4

    def test_preview_matches_real_run(self, db, service, world, make, email_provider):
        self._three_fresh_failures(service, world, make)
        make.assignment(
            world["project"], make.subcontractor(world["company"], name="Onsite"), on_site_date=NOW.date(),
        )

        preview = service.run_escalation_sweep(world["company"].id, max_followups=2, preview_only=True)
        assert email_provider.sent == []
        assert db.query(CommunicationDB).count() == 0
        assert preview.sent == []

        real = service.run_escalation_sweep(world["company"].id, max_followups=2)

        def key(entries):
            return sorted((e["assignment_id"], e["action"], e.get("stage")) for e in entries)

        assert key(preview.would_send) == key(real.sent)
        assert key(preview.capped) == key(real.capped)

    def test_preview_matches_real_run_with_unreachable_subcontractor(self, db, service, world, make):
        ghost = make.assignment(
            world["project"], make.subcontractor(world["company"], name="Ghost Cladding", contact_email=None),
        )
        # ahead of the reachable assignment in candidate order
        ghost.created_at = NOW - timedelta(hours=1)
        db.flush()
        _quiet_verdict(service, ghost)
        reachable = make.assignment(
            world["project"], make.subcontractor(world["company"], name="Real Roofing", contact_email="real@subs.test"),
        )
        _quiet_verdict(service, reachable)

        preview = service.run_escalation_sweep(world["company"].id, max_followups=1, preview_only=True)
        real = service.run_escalation_sweep(world["company"].id, max_followups=1)

        def key(entries):
            return [(e["assignment_id"], e.get("stage")) for e in entries]

        assert key(preview.would_send) == key(real.sent) == [(reachable.id, 0)]
        assert preview.capped == real.capped == []
        assert [(e["assignment_id"], e["code"]) for e in preview.errors] == [(ghost.id, "no_recipients")]
        assert [(e["assignment_id"], e["code"]) for e in real.errors] == [(ghost.id, "no_recipients")]

    def test_database_error_isolated_to_one_assignment(self, service, world, make, monkeypatch):
        first, second, third = self._three_fresh_failures(service, world, make)
        original = service.scheduler.process_assignment

        def flaky(assignment, *args, **kwargs):
            if assignment.id == second.id:
                raise OperationalError("SELECT", {}, Exception("server closed the connection"))
            return original(assignment, *args, **kwargs)

        monkeypatch.setattr(service.scheduler, "process_assignment", flaky)
        result = service.run_escalation_sweep(world["company"].id)

        assert sorted(e["assignment_id"] for e in result.sent) == sorted([first.id, third.id])
        assert [e["assignment_id"] for e in result.errors] == [second.id]
        assert result.errors[0]["code"] == "dependency_unavailable"

    def test_unreachable_subcontractor_is_reported(self, service, world, make):
        sub = make.subcontractor(world["company"], name="Ghost Contracting", contact_email=None)
        ghost = make.assignment(world["project"], sub)
        _quiet_verdict(service, ghost)

        result = service.run_escalation_sweep(world["company"].id)

        assert result.sent == []
        assert result.errors[0]["assignment_id"] == ghost.id
        assert result.errors[0]["code"] == "no_recipients"

    def test_unknown_company(self, service):
        from riskshield.errors import NotFound
        with pytest.raises(NotFound):
            service.run_escalation_sweep("missing")

    def test_other_company_untouched(self, service, world, make, email_provider):
        other_company = make.company("Rival Builds")
        project = make.project(other_company)
        assignment = make.assignment(project, make.subcontractor(other_company, contact_email="x@rival.test"))
        _quiet_verdict(service, assignment)

        result = service.run_escalation_sweep(world["company"].id)

        assert assignment.id not in [e["assignment_id"] for e in result.capped + result.sent]
        assert email_provider.sent == []


# =============================================================================
# MESSAGE WORDING
# =============================================================================

class TestStageWording:

    def _ctx(self, days):
        return MessageContext(
            recipient_name="Sam",
            subcontractor_name="Sparky Electrical",
            project_name="Harbour Tower",
            days_waiting=days,
        )

    @pytest.mark.parametrize("stage", [1, 2])
    def test_urgent_from_seven_days(self, stage):
        subject, body = render_stage_email(stage, self._ctx(7))
        assert subject.startswith("URGENT: ")
        assert "Immediate action is required" in body
        assert render_stage_sms(stage, self._ctx(7)).startswith("URGENT ")

    @pytest.mark.parametrize("stage", [1, 2])
    def test_not_urgent_before_seven_days(self, stage):
        subject, body = render_stage_email(stage, self._ctx(6))
        assert not subject.startswith("URGENT")
        assert "Immediate action is required" not in body

    @pytest.mark.parametrize("stage", [0, 3])
    def test_first_and_final_never_marked_urgent(self, stage):
        subject, _ = render_stage_email(stage, self._ctx(30))
        assert not subject.startswith("URGENT")

    def test_missing_abn_and_deficiencies(self):
        _, body = render_stage_email(0, self._ctx(0))
        assert "(ABN: N/A)" in body
        assert "Please contact us for specific details." in body
