"""
Escalation Scheduler

Decides, for one assignment, whether to send the next reminder stage, a
stop-work critical alert, or nothing, and runs that decision over a whole
company in a sweep.

STAGES:
- 0: deficiency notice, sent as soon as a fail/review verdict lands
- 1, 2: follow-ups
- 3: final notice (also copied to the project manager)
- beyond 3: nothing, except the critical alert path

RULES:
- The next stage is one past the highest stage already SENT for the current
  verdict. A failed send does not count, so the stage is retried on the next
  pass rather than skipped.
- days_waiting = whole days (floor) since the most recent sent stage message
  for the current verdict. Stage 0 is due immediately; later stages wait for
  days_waiting >= min_days_waiting.
- Critical alert: status non_compliant/pending, on_site_date today or
  earlier, and no critical alert already sent for this verdict. It takes
  precedence over the staged sequence.
- A pass verdict, a compliant status or an active exception means no action.

Escalation state is never stored. It is derived from Communication rows on
every pass, so overlapping sweeps read the same history.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from ...errors import DependencyUnavailable
from ...models.db_models import (
    Channel, CommunicationType, ComplianceStatus, ProjectStatus, VerdictStatus,
    ESCALATION_TYPES, SENT_STATUSES,
    CommunicationDB, ProjectDB, ProjectSubcontractorDB, VerificationDB, utcnow,
)
from ...models.deficiency import load_deficiencies
from .message_templates import (
    FINAL_STAGE, ISSUE_NO_CERTIFICATE, ISSUE_NON_COMPLIANT, MessageContext,
    render_critical_alert_email, render_critical_alert_sms,
    render_final_notice_pm, render_stage_email, render_stage_sms,
)
from .notification_dispatcher import (
    NotificationDispatcher, OutboundMessage,
    critical_alert_recipients, project_manager_recipients, subcontractor_recipients,
)
from .verdict_store import VerdictStore


logger = logging.getLogger(__name__)


DEFAULT_MIN_DAYS_WAITING = 2
DEFAULT_MAX_FOLLOWUPS = 10
NO_RECIPIENTS = "No reachable recipients"

ESCALATING_STATUSES = (ComplianceStatus.NON_COMPLIANT, ComplianceStatus.PENDING)
STAGE_TYPES = (CommunicationType.DEFICIENCY, CommunicationType.FOLLOW_UP)


# =============================================================================
# DECISIONS
# =============================================================================

@dataclass(frozen=True)
class NoAction:
    reason: str
    days_waiting: Optional[int] = None
    days_until_due: Optional[int] = None
    next_stage: Optional[int] = None


@dataclass(frozen=True)
class SendStage:
    stage: int
    days_waiting: int

    @property
    def communication_type(self) -> CommunicationType:
        return CommunicationType.DEFICIENCY if self.stage == 0 else CommunicationType.FOLLOW_UP


@dataclass(frozen=True)
class SendCriticalAlert:
    issue: str


EscalationAction = Union[NoAction, SendStage, SendCriticalAlert]


@dataclass
class EscalationState:
    """Derived view of one verdict's escalation history."""
    highest_stage_sent: Optional[int]
    last_sent_at: Optional[datetime]
    critical_alert_sent: bool

    @property
    def next_stage(self) -> int:
        return 0 if self.highest_stage_sent is None else self.highest_stage_sent + 1

    def days_waiting(self, now: datetime) -> int:
        if self.last_sent_at is None:
            return 0
        # timedelta.days floors, which is what we want
        return max(0, (now - self.last_sent_at).days)


def derive_escalation_state(
    history: List[CommunicationDB],
    verification_id: Optional[str],
) -> EscalationState:
    """
    Fold the communication history of one assignment into EscalationState
    for the verdict `verification_id` (None when no verdict exists yet).
    """
    highest = None
    last_sent_at = None
    critical_sent = False

    for comm in history:
        if comm.verification_id != verification_id or comm.status not in SENT_STATUSES:
            continue
        if comm.type == CommunicationType.CRITICAL_ALERT:
            critical_sent = True
            continue
        if comm.type not in STAGE_TYPES or comm.stage is None:
            continue
        if highest is None or comm.stage > highest:
            highest = comm.stage
        sent_at = comm.sent_at or comm.created_at
        if sent_at and (last_sent_at is None or sent_at > last_sent_at):
            last_sent_at = sent_at

    return EscalationState(
        highest_stage_sent=highest,
        last_sent_at=last_sent_at,
        critical_alert_sent=critical_sent,
    )


def decide_next_action(
    status: ComplianceStatus,
    verdict: Optional[VerificationDB],
    state: EscalationState,
    on_site_date: Optional[date],
    now: datetime,
    min_days_waiting: int = DEFAULT_MIN_DAYS_WAITING,
    include_critical: bool = True,
) -> EscalationAction:
    """Pure decision for one assignment. No I/O."""
    if status not in ESCALATING_STATUSES:
        return NoAction(reason=f"status is {status.value}")
    if verdict is not None and verdict.status == VerdictStatus.PASS:
        return NoAction(reason="superseded by pass verdict")

    if (
        include_critical
        and on_site_date is not None
        and on_site_date <= now.date()
        and not state.critical_alert_sent
    ):
        issue = ISSUE_NO_CERTIFICATE if verdict is None else ISSUE_NON_COMPLIANT
        return SendCriticalAlert(issue=issue)

    if verdict is None:
        return NoAction(reason="no verdict yet")

    next_stage = state.next_stage
    if next_stage > FINAL_STAGE:
        return NoAction(reason="escalation sequence complete", next_stage=None)

    if next_stage == 0:
        return SendStage(stage=0, days_waiting=0)

    days_waiting = state.days_waiting(now)
    if days_waiting >= min_days_waiting:
        return SendStage(stage=next_stage, days_waiting=days_waiting)

    return NoAction(
        reason="not yet due",
        days_waiting=days_waiting,
        days_until_due=min_days_waiting - days_waiting,
        next_stage=next_stage,
    )


# =============================================================================
# SWEEP RESULT
# =============================================================================

@dataclass
class Candidate:
    assignment: ProjectSubcontractorDB
    verdict: Optional[VerificationDB]
    state: EscalationState
    days_since_last: Optional[int]


@dataclass
class SweepResult:
    company_id: str
    run_at: datetime
    preview_only: bool
    min_days_waiting: int
    max_followups: int
    checked: int = 0
    sent: List[Dict[str, Any]] = field(default_factory=list)
    would_send: List[Dict[str, Any]] = field(default_factory=list)
    not_yet_due: List[Dict[str, Any]] = field(default_factory=list)
    capped: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "company_id": self.company_id,
            "run_at": self.run_at.isoformat(),
            "preview_only": self.preview_only,
            "min_days_waiting": self.min_days_waiting,
            "max_followups": self.max_followups,
            "checked": self.checked,
            "sent": self.sent,
            "would_send": self.would_send,
            "not_yet_due": self.not_yet_due,
            "capped": self.capped,
            "errors": self.errors,
        }


def upload_link(app_url: str, assignment: ProjectSubcontractorDB) -> Optional[str]:
    if not app_url:
        return None
    return f"{app_url}/portal/upload?project={assignment.project_id}&subcontractor={assignment.subcontractor_id}"


def _describe(candidate: Candidate) -> Dict[str, Any]:
    assignment = candidate.assignment
    return {
        "assignment_id": assignment.id,
        "project_id": assignment.project_id,
        "project_name": assignment.project.name,
        "subcontractor_id": assignment.subcontractor_id,
        "subcontractor_name": assignment.subcontractor.name,
        "status": assignment.status.value,
        "verification_id": candidate.verdict.id if candidate.verdict else None,
        "days_since_last_communication": candidate.days_since_last,
    }


def _describe_action(action: EscalationAction) -> Dict[str, Any]:
    if isinstance(action, SendCriticalAlert):
        return {"action": "critical_alert", "type": CommunicationType.CRITICAL_ALERT.value, "issue": action.issue}
    if isinstance(action, SendStage):
        return {
            "action": "stage",
            "type": action.communication_type.value,
            "stage": action.stage,
            "days_waiting": action.days_waiting,
        }
    return {"action": "none", "reason": action.reason}


# =============================================================================
# SCHEDULER
# =============================================================================

class EscalationScheduler:
    """
    Applies decide_next_action to persisted state and dispatches the result.

    Preview and real runs share `_select_candidates` and the decision code;
    only the final dispatch step differs.
    """

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

    # =========================================================================
    # STATE
    # =========================================================================

    def history_for(self, assignment: ProjectSubcontractorDB) -> List[CommunicationDB]:
        return (
            self.db.query(CommunicationDB)
            .filter(
                CommunicationDB.project_id == assignment.project_id,
                CommunicationDB.subcontractor_id == assignment.subcontractor_id,
                CommunicationDB.type.in_(list(ESCALATION_TYPES)),
            )
            .order_by(CommunicationDB.created_at.asc())
            .all()
        )

    def _candidate(self, assignment: ProjectSubcontractorDB, now: datetime) -> Candidate:
        verdict = self.verdicts.latest_for(assignment.project_id, assignment.subcontractor_id)
        state = derive_escalation_state(self.history_for(assignment), verdict.id if verdict else None)
        days_since_last = state.days_waiting(now) if state.last_sent_at else None
        return Candidate(assignment=assignment, verdict=verdict, state=state, days_since_last=days_since_last)

    def decide(
        self,
        assignment: ProjectSubcontractorDB,
        now: Optional[datetime] = None,
        min_days_waiting: int = DEFAULT_MIN_DAYS_WAITING,
    ) -> EscalationAction:
        now = now or utcnow()
        candidate = self._candidate(assignment, now)
        return decide_next_action(
            assignment.status, candidate.verdict, candidate.state,
            assignment.on_site_date, now, min_days_waiting,
        )

    def _select_candidates(self, company_id: str, now: datetime) -> List[Candidate]:
        """
        Escalating assignments on active projects, longest-waiting first.
        Never-contacted assignments sort ahead of everything else.
        """
        assignments = (
            self.db.query(ProjectSubcontractorDB)
            .join(ProjectDB, ProjectSubcontractorDB.project_id == ProjectDB.id)
            .filter(
                ProjectDB.company_id == company_id,
                ProjectDB.status == ProjectStatus.ACTIVE,
                ProjectSubcontractorDB.status.in_(list(ESCALATING_STATUSES)),
            )
            .order_by(ProjectSubcontractorDB.created_at.asc())
            .all()
        )
        candidates = [self._candidate(a, now) for a in assignments]
        candidates.sort(
            key=lambda c: float("inf") if c.days_since_last is None else c.days_since_last,
            reverse=True,
        )
        return candidates

    # =========================================================================
    # MESSAGES
    # =========================================================================

    def _context(self, assignment, verdict, recipient_name, days_waiting=0, issue=None) -> MessageContext:
        sub = assignment.subcontractor
        return MessageContext(
            recipient_name=recipient_name,
            subcontractor_name=sub.name,
            subcontractor_abn=sub.abn,
            project_name=assignment.project.name,
            deficiencies=load_deficiencies(verdict.deficiencies) if verdict else [],
            days_waiting=days_waiting,
            upload_link=upload_link(self.app_url, assignment),
            issue=issue,
        )

    def build_messages(
        self,
        assignment: ProjectSubcontractorDB,
        verdict: Optional[VerificationDB],
        action: EscalationAction,
    ) -> List[OutboundMessage]:
        messages = []
        if isinstance(action, SendCriticalAlert):
            for recipient in critical_alert_recipients(self.db, assignment):
                ctx = self._context(assignment, verdict, recipient.name, issue=action.issue)
                if recipient.channel == Channel.EMAIL:
                    subject, body = render_critical_alert_email(ctx)
                    messages.append(OutboundMessage(recipient, subject, body))
                else:
                    messages.append(OutboundMessage(recipient, None, render_critical_alert_sms(ctx)))
            return messages

        if isinstance(action, SendStage):
            for recipient in subcontractor_recipients(assignment):
                ctx = self._context(assignment, verdict, recipient.name, action.days_waiting)
                if recipient.channel == Channel.EMAIL:
                    subject, body = render_stage_email(action.stage, ctx)
                    messages.append(OutboundMessage(recipient, subject, body))
                else:
                    messages.append(OutboundMessage(recipient, None, render_stage_sms(action.stage, ctx)))

            if action.stage == FINAL_STAGE:
                for recipient in project_manager_recipients(assignment):
                    if recipient.channel != Channel.EMAIL:
                        continue
                    ctx = self._context(assignment, verdict, recipient.name, action.days_waiting)
                    subject, body = render_final_notice_pm(ctx)
                    messages.append(OutboundMessage(recipient, subject, body))
        return messages

    def _apply(self, candidate: Candidate, action: EscalationAction, now: datetime) -> Dict[str, Any]:
        assignment = candidate.assignment
        messages = self.build_messages(assignment, candidate.verdict, action)
        if not messages:
            logger.warning(f"No reachable recipients for assignment {assignment.id} ({_describe_action(action)})")
            return {
                **_describe(candidate),
                **_describe_action(action),
                "results": [],
                "delivered_any": False,
                "error": NO_RECIPIENTS,
            }

        if isinstance(action, SendCriticalAlert):
            comm_type, stage = CommunicationType.CRITICAL_ALERT, None
        else:
            comm_type, stage = action.communication_type, action.stage

        results = self.dispatcher.dispatch(
            assignment,
            comm_type,
            messages,
            verification_id=candidate.verdict.id if candidate.verdict else None,
            stage=stage,
            now=now,
        )
        return {
            **_describe(candidate),
            **_describe_action(action),
            "results": [r.to_dict() for r in results],
            "delivered_any": any(r.success for r in results),
        }

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================

    def process_assignment(
        self,
        assignment: ProjectSubcontractorDB,
        now: Optional[datetime] = None,
        min_days_waiting: int = DEFAULT_MIN_DAYS_WAITING,
        allow_stage: bool = True,
    ) -> List[Dict[str, Any]]:
        """
        Evaluate one assignment and send what is due.

        A critical alert is handled first; the staged sequence is then
        evaluated in the same pass so an on-site-today fail verdict still
        gets its stage-0 notice immediately.
        """
        now = now or utcnow()
        sent = []

        candidate = self._candidate(assignment, now)
        action = decide_next_action(
            assignment.status, candidate.verdict, candidate.state,
            assignment.on_site_date, now, min_days_waiting,
        )
        if isinstance(action, SendCriticalAlert):
            sent.append(self._apply(candidate, action, now))
            candidate = self._candidate(assignment, now)
            action = decide_next_action(
                assignment.status, candidate.verdict, candidate.state,
                assignment.on_site_date, now, min_days_waiting, include_critical=False,
            )

        if isinstance(action, SendStage) and allow_stage:
            sent.append(self._apply(candidate, action, now))
        return sent

    def _process_guarded(self, assignment, now, min_days_waiting, allow_stage) -> List[Dict[str, Any]]:
        """process_assignment inside a SAVEPOINT; database failures become DependencyUnavailable."""
        try:
            with self.db.begin_nested():
                return self.process_assignment(assignment, now, min_days_waiting, allow_stage=allow_stage)
        except OperationalError as e:
            logger.exception(f"Database error while escalating assignment {assignment.id}")
            raise DependencyUnavailable(f"Database unavailable: {e.orig or e}", {"assignment_id": assignment.id})

    def run_sweep(
        self,
        company_id: str,
        min_days_waiting: int = DEFAULT_MIN_DAYS_WAITING,
        max_followups: int = DEFAULT_MAX_FOLLOWUPS,
        preview_only: bool = False,
        now: Optional[datetime] = None,
    ) -> SweepResult:
        """
        Run (or preview) escalation over one company.

        `max_followups` caps how many assignments get a stage message in
        this run; an assignment with nobody to send to is reported in
        `errors` and does not use a slot. Critical alerts are not capped.
        An assignment that fails with DependencyUnavailable is reported in
        `errors` and the sweep moves on to the next one.
        """
        now = now or utcnow()
        result = SweepResult(
            company_id=company_id,
            run_at=now,
            preview_only=preview_only,
            min_days_waiting=min_days_waiting,
            max_followups=max_followups,
        )
        stage_budget = max_followups

        for candidate in self._select_candidates(company_id, now):
            result.checked += 1
            assignment = candidate.assignment
            action = decide_next_action(
                assignment.status, candidate.verdict, candidate.state,
                assignment.on_site_date, now, min_days_waiting,
            )
            stage_action = action
            if isinstance(action, SendCriticalAlert):
                # What the staged sequence would do once the alert is out
                stage_action = decide_next_action(
                    assignment.status, candidate.verdict, candidate.state,
                    assignment.on_site_date, now, min_days_waiting, include_critical=False,
                )

            if isinstance(stage_action, NoAction) and stage_action.reason == "not yet due":
                result.not_yet_due.append({
                    **_describe(candidate),
                    "next_stage": stage_action.next_stage,
                    "days_waiting": stage_action.days_waiting,
                    "days_until_due": stage_action.days_until_due,
                })

            allow_stage = isinstance(stage_action, SendStage) and stage_budget > 0
            if isinstance(stage_action, SendStage) and not allow_stage:
                result.capped.append({**_describe(candidate), **_describe_action(stage_action)})

            if not isinstance(action, SendCriticalAlert) and not allow_stage:
                continue

            # Only a stage that has someone to go to uses up a cap slot, in
            # preview and real runs alike.
            if allow_stage and self.build_messages(assignment, candidate.verdict, stage_action):
                stage_budget -= 1

            if preview_only:
                planned = [action] if isinstance(action, SendCriticalAlert) else []
                if allow_stage:
                    planned.append(stage_action)
                for planned_action in planned:
                    if self.build_messages(assignment, candidate.verdict, planned_action):
                        result.would_send.append({**_describe(candidate), **_describe_action(planned_action)})
                    else:
                        result.errors.append({
                            **_describe(candidate), "error": NO_RECIPIENTS, "code": "no_recipients",
                        })
                continue

            try:
                sent = self._process_guarded(assignment, now, min_days_waiting, allow_stage)
            except DependencyUnavailable as e:
                logger.error(f"Escalation skipped for assignment {assignment.id}: {e.message}")
                result.errors.append({**_describe(candidate), "error": e.message, "code": e.code})
                continue

            for entry in sent:
                if entry.get("error"):
                    result.errors.append({**_describe(candidate), "error": entry["error"], "code": "no_recipients"})
                else:
                    result.sent.append(entry)

        logger.info(
            f"Escalation sweep company={company_id} preview={preview_only}: checked={result.checked} "
            f"sent={len(result.sent)} would_send={len(result.would_send)} "
            f"not_yet_due={len(result.not_yet_due)} capped={len(result.capped)} errors={len(result.errors)}"
        )
        return result

    def get_stop_work_risks(self, company_id: str, today: Optional[date] = None) -> List[Dict[str, Any]]:
        """Non-compliant/pending assignments on active projects that are on site today or earlier."""
        today = today or utcnow().date()
        assignments = (
            self.db.query(ProjectSubcontractorDB)
            .join(ProjectDB, ProjectSubcontractorDB.project_id == ProjectDB.id)
            .filter(
                ProjectDB.company_id == company_id,
                ProjectDB.status == ProjectStatus.ACTIVE,
                ProjectSubcontractorDB.status.in_(list(ESCALATING_STATUSES)),
                ProjectSubcontractorDB.on_site_date.isnot(None),
                ProjectSubcontractorDB.on_site_date <= today,
            )
            .order_by(ProjectSubcontractorDB.on_site_date.asc())
            .all()
        )
        risks = []
        for assignment in assignments:
            verdict = self.verdicts.latest_for(assignment.project_id, assignment.subcontractor_id)
            risks.append({
                "assignment_id": assignment.id,
                "project_id": assignment.project_id,
                "project_name": assignment.project.name,
                "subcontractor_id": assignment.subcontractor_id,
                "subcontractor_name": assignment.subcontractor.name,
                "status": assignment.status.value,
                "on_site_date": assignment.on_site_date.isoformat(),
                "issue": ISSUE_NO_CERTIFICATE if verdict is None else ISSUE_NON_COMPLIANT,
            })
        return risks
