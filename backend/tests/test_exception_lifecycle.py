"""
Tests for ExceptionLifecycleManager.

Tests:
1. STATE_CONFIG transitions and terminal states
2. Creation validation (expiry rules, assignment/verification checks)
3. Approve / reject / resolve / close and their status effects
4. At most one active exception per assignment (fast path and index guard)
5. Lost compare-and-swap races
6. Expiry sweep
7. Audit trail
"""
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from riskshield.errors import ConflictError, InvalidTransition, NotFound, ValidationError
from riskshield.models.db_models import (
    ComplianceExceptionDB, ComplianceStatus, ExceptionStatus,
)
from riskshield.services.compliance.exception_lifecycle import (
    STATE_CONFIG, can_transition, is_terminal_state, serialize_exception,
)

from conftest import NOW, submit


def _create(service, world, actor=None, auto_approve=False, assignment=None, **overrides):
    fields = {
        "assignment_id": (assignment or world["assignment"]).id,
        "issue_summary": "Public liability cover below $20M",
        "reason": "Broker confirmed the renewal is being bound",
        "risk_level": "medium",
        "expiration_type": "until_resolved",
    }
    fields.update(overrides)
    actor = actor or world["risk_manager"]
    return service.create_exception(actor.id, auto_approve=auto_approve, **fields)


# =============================================================================
# STATE MACHINE
# =============================================================================

class TestStateConfig:

    @pytest.mark.parametrize("from_state,to_state", [
        (ExceptionStatus.PENDING_APPROVAL, ExceptionStatus.ACTIVE),
        (ExceptionStatus.PENDING_APPROVAL, ExceptionStatus.CLOSED),
        (ExceptionStatus.ACTIVE, ExceptionStatus.EXPIRED),
        (ExceptionStatus.ACTIVE, ExceptionStatus.RESOLVED),
        (ExceptionStatus.ACTIVE, ExceptionStatus.CLOSED),
    ])
    def test_allowed(self, from_state, to_state):
        allowed, _ = can_transition(from_state, to_state)
        assert allowed

    @pytest.mark.parametrize("from_state,to_state", [
        (ExceptionStatus.PENDING_APPROVAL, ExceptionStatus.RESOLVED),
        (ExceptionStatus.PENDING_APPROVAL, ExceptionStatus.EXPIRED),
        (ExceptionStatus.ACTIVE, ExceptionStatus.PENDING_APPROVAL),
        (ExceptionStatus.EXPIRED, ExceptionStatus.ACTIVE),
        (ExceptionStatus.RESOLVED, ExceptionStatus.ACTIVE),
        (ExceptionStatus.CLOSED, ExceptionStatus.ACTIVE),
    ])
    def test_forbidden(self, from_state, to_state):
        allowed, reason = can_transition(from_state, to_state)
        assert not allowed
        assert from_state.value in reason

    def test_terminal_states(self):
        terminal = {s for s in STATE_CONFIG if is_terminal_state(s)}
        assert terminal == {ExceptionStatus.EXPIRED, ExceptionStatus.RESOLVED, ExceptionStatus.CLOSED}

    def test_only_active_is_in_effect(self):
        assert [s for s, cfg in STATE_CONFIG.items() if cfg["in_effect"]] == [ExceptionStatus.ACTIVE]


# =============================================================================
# CREATE
# =============================================================================

class TestCreate:

    def test_create_pending_does_not_change_status(self, service, world):
        submit(service, world, "fail")
        exception = _create(service, world)

        assert exception.status == ExceptionStatus.PENDING_APPROVAL
        assert exception.approved_by_user_id is None
        assert world["assignment"].status == ComplianceStatus.NON_COMPLIANT

    def test_auto_approve_activates_and_recomputes(self, service, world):
        submit(service, world, "fail")
        exception = _create(service, world, auto_approve=True)

        assert exception.status == ExceptionStatus.ACTIVE
        assert exception.approved_by_user_id == world["risk_manager"].id
        assert exception.approved_at == NOW
        assert world["assignment"].status == ComplianceStatus.EXCEPTION

    def test_fixed_duration_from_days(self, service, world):
        exception = _create(service, world, expiration_type="fixed_duration", duration_days=14)
        assert exception.expires_at == NOW + timedelta(days=14)

    def test_specific_date_accepts_aware_datetime(self, service, world):
        expires = datetime(2026, 4, 1, 10, 0, tzinfo=timezone(timedelta(hours=10)))
        exception = _create(service, world, expiration_type="specific_date", expires_at=expires)
        assert exception.expires_at == datetime(2026, 4, 1, 0, 0)

    @pytest.mark.parametrize("overrides", [
        {"expiration_type": "specific_date"},
        {"expiration_type": "specific_date", "expires_at": NOW - timedelta(hours=1)},
        {"expiration_type": "specific_date", "expires_at": NOW},
        {"expiration_type": "fixed_duration", "duration_days": 0},
        {"expiration_type": "until_resolved", "expires_at": NOW + timedelta(days=5)},
        {"expiration_type": "permanent", "duration_days": 5},
        {"expiration_type": "forever"},
        {"risk_level": "extreme"},
        {"issue_summary": "   "},
        {"reason": ""},
    ])
    def test_validation_errors(self, db, service, world, overrides):
        with pytest.raises(ValidationError):
            _create(service, world, **overrides)
        assert db.query(ComplianceExceptionDB).count() == 0

    def test_unknown_assignment(self, service, world):
        with pytest.raises(NotFound):
            service.create_exception(
                world["admin"].id,
                assignment_id="missing",
                issue_summary="x",
                reason="y",
                risk_level="low",
                expiration_type="permanent",
            )

    def test_verification_must_belong_to_assignment(self, service, world, make):
        other_sub = make.subcontractor(world["company"], name="Other Plumbing", contact_email="o@plumb.test")
        other = make.assignment(world["project"], other_sub)
        outcome = submit(service, world, "fail", assignment=other)

        with pytest.raises(ValidationError):
            _create(service, world, verification_id=outcome.verification.id)

    def test_unknown_verification(self, service, world):
        with pytest.raises(NotFound):
            _create(service, world, verification_id="missing")

    def test_verification_link_is_kept(self, service, world):
        outcome = submit(service, world, "fail")
        exception = _create(service, world, verification_id=outcome.verification.id)
        assert exception.verification_id == outcome.verification.id


# =============================================================================
# EXCLUSIVITY
# =============================================================================

class TestSingleActiveException:

    def test_second_create_conflicts(self, service, world):
        first = _create(service, world, auto_approve=True)
        with pytest.raises(ConflictError) as exc:
            _create(service, world)
        assert exc.value.details["active_exception_id"] == first.id

    def test_index_guards_when_fast_path_misses(self, db, service, world, monkeypatch):
        _create(service, world, auto_approve=True)
        # Simulate a concurrent writer that passed the read check
        monkeypatch.setattr(service.exceptions, "active_for_assignment", lambda assignment_id: None)

        with pytest.raises(ConflictError):
            _create(service, world, auto_approve=True)

        active = db.query(ComplianceExceptionDB).filter(
            ComplianceExceptionDB.status == ExceptionStatus.ACTIVE
        ).count()
        assert active == 1
        # The session is still usable after the rolled-back savepoint
        assert world["assignment"].status == ComplianceStatus.EXCEPTION

    def test_approving_pending_while_another_active_conflicts(self, db, service, world):
        pending = _create(service, world)
        active = _create(service, world, auto_approve=True)

        with pytest.raises(ConflictError):
            service.approve_exception(pending.id, world["admin"].id)

        db.refresh(pending)
        db.refresh(active)
        assert pending.status == ExceptionStatus.PENDING_APPROVAL
        assert active.status == ExceptionStatus.ACTIVE

    def test_new_active_allowed_after_previous_closed(self, service, world):
        first = _create(service, world, auto_approve=True)
        service.close_exception(first.id, world["admin"].id)
        second = _create(service, world, auto_approve=True)
        assert second.status == ExceptionStatus.ACTIVE


# =============================================================================
# TRANSITIONS
# =============================================================================

class TestTransitions:

    def test_approve(self, service, world, clock):
        submit(service, world, "fail")
        exception = _create(service, world)
        clock.advance(hours=1)

        approved = service.approve_exception(exception.id, world["admin"].id)

        assert approved.status == ExceptionStatus.ACTIVE
        assert approved.approved_by_user_id == world["admin"].id
        assert approved.approved_at == clock.now
        assert world["assignment"].status == ComplianceStatus.EXCEPTION

    def test_reject(self, service, world):
        submit(service, world, "fail")
        exception = _create(service, world)

        rejected = service.reject_exception(exception.id, world["admin"].id, notes="Not acceptable")

        assert rejected.status == ExceptionStatus.CLOSED
        assert rejected.resolution_type == "rejected"
        assert rejected.closed_by_user_id == world["admin"].id
        assert rejected.resolution_notes == "Not acceptable"
        assert world["assignment"].status == ComplianceStatus.NON_COMPLIANT

    def test_resolve_reverts_to_verdict_status(self, service, world):
        submit(service, world, "fail")
        exception = _create(service, world, auto_approve=True)

        resolved = service.resolve_exception(exception.id, world["admin"].id, "certificate_received", "New CoC")

        assert resolved.status == ExceptionStatus.RESOLVED
        assert resolved.resolution_type == "certificate_received"
        assert world["assignment"].status == ComplianceStatus.NON_COMPLIANT

    def test_resolve_requires_resolution_type(self, service, world):
        exception = _create(service, world, auto_approve=True)
        with pytest.raises(ValidationError):
            service.resolve_exception(exception.id, world["admin"].id, "")

    def test_close_active_without_verdict_is_pending(self, service, world):
        exception = _create(service, world, auto_approve=True)
        assert world["assignment"].status == ComplianceStatus.EXCEPTION

        service.close_exception(exception.id, world["admin"].id)
        assert world["assignment"].status == ComplianceStatus.PENDING

    @pytest.mark.parametrize("action", ["approve", "reject"])
    def test_active_cannot_be_approved_or_rejected(self, service, world, action):
        exception = _create(service, world, auto_approve=True)
        with pytest.raises(InvalidTransition) as exc:
            getattr(service, f"{action}_exception")(exception.id, world["admin"].id)
        assert exc.value.from_state == "active"

    def test_pending_cannot_be_resolved(self, service, world):
        exception = _create(service, world)
        with pytest.raises(InvalidTransition):
            service.resolve_exception(exception.id, world["admin"].id, "fixed")

    @pytest.mark.parametrize("finish", ["close", "resolve"])
    def test_terminal_states_never_move(self, service, world, finish):
        exception = _create(service, world, auto_approve=True)
        if finish == "close":
            service.close_exception(exception.id, world["admin"].id)
        else:
            service.resolve_exception(exception.id, world["admin"].id, "fixed")

        for attempt in (
            lambda: service.approve_exception(exception.id, world["admin"].id),
            lambda: service.close_exception(exception.id, world["admin"].id),
            lambda: service.resolve_exception(exception.id, world["admin"].id, "again"),
            lambda: service.reject_exception(exception.id, world["admin"].id),
        ):
            with pytest.raises(InvalidTransition):
                attempt()

    def test_unknown_exception(self, service, world):
        with pytest.raises(NotFound):
            service.approve_exception("missing", world["admin"].id)

    def test_lost_race_is_invalid_transition(self, service, world, monkeypatch):
        exception = _create(service, world)
        monkeypatch.setattr(service.exceptions, "_compare_and_set", lambda *args, **kwargs: False)

        with pytest.raises(InvalidTransition):
            service.approve_exception(exception.id, world["admin"].id)


# =============================================================================
# EXPIRY SWEEP
# =============================================================================

class TestExpirySweep:

    def test_expires_overdue_and_recomputes(self, db, service, world, clock):
        submit(service, world, "fail")
        exception = _create(service, world, auto_approve=True, expiration_type="fixed_duration", duration_days=3)
        assert world["assignment"].status == ComplianceStatus.EXCEPTION

        clock.advance(days=3, hours=1)
        result = service.expire_exceptions()

        assert result["expired"] == [exception.id]
        assert result["checked"] == 1
        db.refresh(exception)
        assert exception.status == ExceptionStatus.EXPIRED
        assert world["assignment"].status == ComplianceStatus.NON_COMPLIANT

    def test_not_expired_at_exact_boundary(self, service, world, clock):
        _create(service, world, auto_approve=True, expiration_type="fixed_duration", duration_days=3)
        clock.advance(days=3)
        result = service.expire_exceptions()
        assert result["expired"] == []

    def test_sweep_is_idempotent(self, service, world, clock):
        _create(service, world, auto_approve=True, expiration_type="fixed_duration", duration_days=1)
        clock.advance(days=2)

        first = service.expire_exceptions()
        second = service.expire_exceptions()

        assert len(first["expired"]) == 1
        assert second["checked"] == 0
        assert second["expired"] == []

    def test_untimed_and_pending_never_expire(self, service, world, make, clock):
        _create(service, world, auto_approve=True, expiration_type="permanent")
        other = make.assignment(world["project"], make.subcontractor(world["company"], name="Other"))
        _create(service, world, assignment=other, expiration_type="fixed_duration", duration_days=1)

        clock.advance(days=30)
        result = service.expire_exceptions()
        assert result["checked"] == 0

    def test_lost_race_counts_as_skipped(self, service, world, clock, monkeypatch):
        _create(service, world, auto_approve=True, expiration_type="fixed_duration", duration_days=1)
        clock.advance(days=2)
        monkeypatch.setattr(service.exceptions, "_compare_and_set", lambda *args, **kwargs: False)

        result = service.expire_exceptions()

        assert result["skipped"] == 1
        assert result["expired"] == []
        assert result["errors"] == []

    def test_database_error_is_reported_and_sweep_continues(self, db, service, world, make, clock, monkeypatch):
        first = _create(service, world, auto_approve=True, expiration_type="fixed_duration", duration_days=1)
        other = make.assignment(world["project"], make.subcontractor(world["company"], name="Other"))
        second = _create(
            service, world, assignment=other, auto_approve=True,
            expiration_type="fixed_duration", duration_days=1,
        )
        clock.advance(days=2)

        original = service.exceptions._compare_and_set

        def flaky(exception_id, *args, **kwargs):
            if exception_id == first.id:
                raise OperationalError("UPDATE compliance_exceptions", {}, Exception("connection reset"))
            return original(exception_id, *args, **kwargs)

        monkeypatch.setattr(service.exceptions, "_compare_and_set", flaky)
        result = service.expire_exceptions()

        assert result["expired"] == [second.id]
        assert [e["exception_id"] for e in result["errors"]] == [first.id]
        db.refresh(first)
        assert first.status == ExceptionStatus.ACTIVE


# =============================================================================
# AUDIT
# =============================================================================

class TestAuditTrail:

    def test_trail_records_each_transition(self, service, world, clock):
        exception = _create(service, world)
        clock.advance(hours=1)
        service.approve_exception(exception.id, world["admin"].id)
        clock.advance(hours=1)
        service.resolve_exception(exception.id, world["admin"].id, "certificate_received")

        trail = service.exceptions.audit_trail(exception.id)

        assert [entry.action for entry in trail] == [
            "exception_created", "exception_approved", "exception_resolved",
        ]
        assert trail[0].user_id == world["risk_manager"].id
        assert trail[1].user_id == world["admin"].id
        assert trail[2].details["resolution_type"] == "certificate_received"

    def test_expiry_is_audited_as_system(self, db, service, world, clock):
        exception = _create(service, world, auto_approve=True, expiration_type="fixed_duration", duration_days=1)
        clock.advance(days=2)
        service.expire_exceptions()

        trail = service.exceptions.audit_trail(exception.id)
        assert trail[-1].action == "exception_auto_expired"
        assert trail[-1].user_id is None

    def test_serialize(self, service, world):
        exception = _create(service, world, expiration_type="fixed_duration", duration_days=7)
        data = serialize_exception(exception)
        assert data["status"] == "pending_approval"
        assert data["expiration_type"] == "fixed_duration"
        assert data["expires_at"] == (NOW + timedelta(days=7)).isoformat()
