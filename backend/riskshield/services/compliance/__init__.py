"""
RiskShield - Compliance Verification & Escalation Engine

Components:
- VerdictStore: append-only verification verdicts
- ComplianceStatusResolver: derives assignment status
- ExceptionLifecycleManager: exception state machine
- EscalationScheduler: staged reminders and stop-work alerts
- ExpirationReminderScheduler: reminders ahead of policy expiry
- NotificationDispatcher: per-recipient, per-channel fan-out
- AuditRecorder: append-only audit log
- ComplianceService: orchestration over all of the above
"""
from .audit_recorder import AuditRecorder
from .verdict_store import VerdictStore
from .status_resolver import ComplianceStatusResolver, resolve_status
from .exception_lifecycle import ExceptionLifecycleManager, STATE_CONFIG
from .notification_dispatcher import NotificationDispatcher, DispatchResult, Recipient
from .escalation_scheduler import (
    EscalationScheduler, NoAction, SendStage, SendCriticalAlert, SweepResult, decide_next_action,
)
from .expiration_reminders import ExpirationReminderScheduler, ReminderResult
from .delivery_tracker import DeliveryTracker
from .compliance_service import ComplianceService, VerdictOutcome

__all__ = [
    "AuditRecorder",
    "VerdictStore",
    "ComplianceStatusResolver",
    "resolve_status",
    "ExceptionLifecycleManager",
    "STATE_CONFIG",
    "NotificationDispatcher",
    "DispatchResult",
    "Recipient",
    "EscalationScheduler",
    "NoAction",
    "SendStage",
    "SendCriticalAlert",
    "SweepResult",
    "decide_next_action",
    "ExpirationReminderScheduler",
    "ReminderResult",
    "DeliveryTracker",
    "ComplianceService",
    "VerdictOutcome",
]
