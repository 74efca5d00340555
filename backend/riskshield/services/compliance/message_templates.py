"""
Message copy for escalation stages, critical alerts, confirmations and
expiration reminders.

Wording only. Nothing here feeds back into escalation decisions; the
URGENT marker in particular is presentation and is never read by the
scheduler.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import List, Optional, Tuple

from ...models.deficiency import Deficiency


URGENT_AFTER_DAYS = 7

SIGNATURE = "Best regards,\nRiskShield AI Compliance Team"


@dataclass
class MessageContext:
    recipient_name: str
    subcontractor_name: str
    project_name: str
    subcontractor_abn: Optional[str] = None
    deficiencies: List[Deficiency] = field(default_factory=list)
    days_waiting: int = 0
    upload_link: Optional[str] = None
    issue: Optional[str] = None  # Critical alerts only

    @property
    def is_urgent(self) -> bool:
        return self.days_waiting >= URGENT_AFTER_DAYS

    @property
    def abn(self) -> str:
        return self.subcontractor_abn or "N/A"

    def deficiency_list(self) -> str:
        if not self.deficiencies:
            return "Please contact us for specific details."
        return "\n".join(f"- {d.description}" for d in self.deficiencies)


# =============================================================================
# ESCALATION STAGES (email)
# =============================================================================

STAGE_TEMPLATES = {
    0: {
        "name": "Deficiency Notice",
        "subject": "Certificate of Currency Deficiency Notice - {subcontractor} / {project}",
        "body": (
            "Dear {recipient},\n\n"
            "We have reviewed the Certificate of Currency submitted for {subcontractor} (ABN: {abn}) "
            "and found the following compliance issues for the {project} project:\n\n"
            "DEFICIENCIES FOUND:\n{deficiencies}\n\n"
            "ACTION REQUIRED:\n"
            "Please provide an updated Certificate of Currency that addresses the above deficiencies.\n\n"
            "{upload}"
            "If you have any questions or need clarification on the requirements, please contact us.\n\n"
        ),
    },
    1: {
        "name": "First Follow-up",
        "subject": "REMINDER: Certificate of Currency Required - {subcontractor} / {project}",
        "body": (
            "Dear {recipient},\n\n"
            "This is a reminder regarding the outstanding Certificate of Currency for {subcontractor} "
            "(ABN: {abn}) for the {project} project. We first contacted you {days} ago.\n\n"
            "{urgent}"
            "OUTSTANDING ISSUES:\n{deficiencies}\n\n"
            "Please provide the required documentation as soon as possible to maintain compliance.\n\n"
            "{upload}"
            "If you have already submitted an updated certificate, please disregard this message.\n\n"
        ),
    },
    2: {
        "name": "Second Follow-up",
        "subject": "Certificate of Currency Still Required - {subcontractor} / {project}",
        "body": (
            "Dear {recipient},\n\n"
            "We still haven't received an updated Certificate of Currency for {subcontractor} "
            "(ABN: {abn}) for the {project} project ({days} since our last message).\n\n"
            "{urgent}"
            "OUTSTANDING ISSUES:\n{deficiencies}\n\n"
            "Please address this matter immediately to avoid any impact on site access.\n\n"
            "{upload}"
        ),
    },
    3: {
        "name": "Final Notice",
        "subject": "FINAL NOTICE: Certificate of Currency Required - {subcontractor} / {project}",
        "body": (
            "Dear {recipient},\n\n"
            "FINAL NOTICE\n\n"
            "Despite multiple reminders, we have not received an updated Certificate of Currency for "
            "{subcontractor} (ABN: {abn}) for the {project} project.\n\n"
            "OUTSTANDING ISSUES:\n{deficiencies}\n\n"
            "This matter requires immediate attention. Failure to provide compliant documentation "
            "may result in restricted site access.\n\n"
            "{upload}"
        ),
    },
}

FINAL_STAGE = max(STAGE_TEMPLATES)


def _days(days: int) -> str:
    return f"{days} day{'s' if days != 1 else ''}"


def render_stage_email(stage: int, ctx: MessageContext) -> Tuple[str, str]:
    """Subject and plain-text body for escalation `stage`."""
    template = STAGE_TEMPLATES[stage]
    subject = template["subject"].format(subcontractor=ctx.subcontractor_name, project=ctx.project_name)
    if ctx.is_urgent and stage in (1, 2):
        subject = f"URGENT: {subject}"

    body = template["body"].format(
        recipient=ctx.recipient_name,
        subcontractor=ctx.subcontractor_name,
        abn=ctx.abn,
        project=ctx.project_name,
        deficiencies=ctx.deficiency_list(),
        days=_days(ctx.days_waiting),
        urgent=(
            "URGENT: Immediate action is required to maintain compliance on this project.\n\n"
            if ctx.is_urgent else ""
        ),
        upload=f"Upload your updated certificate here: {ctx.upload_link}\n\n" if ctx.upload_link else "",
    )
    return subject, body + SIGNATURE


def render_stage_sms(stage: int, ctx: MessageContext) -> str:
    name = STAGE_TEMPLATES[stage]["name"]
    prefix = "URGENT " if ctx.is_urgent and stage in (1, 2) else ""
    return (
        f"{prefix}{name}: Certificate of Currency for {ctx.subcontractor_name} on {ctx.project_name} "
        f"is not compliant. Please send an updated certificate. - RiskShield AI"
    )


# =============================================================================
# PROJECT MANAGER COPY OF THE FINAL NOTICE
# =============================================================================

def render_final_notice_pm(ctx: MessageContext) -> Tuple[str, str]:
    subject = f"Final notice sent: {ctx.subcontractor_name} / {ctx.project_name}"
    body = (
        f"Dear {ctx.recipient_name},\n\n"
        f"A final notice has been sent to {ctx.subcontractor_name} for the {ctx.project_name} project. "
        f"No compliant Certificate of Currency has been received after {_days(ctx.days_waiting)} of reminders.\n\n"
        f"OUTSTANDING ISSUES:\n{ctx.deficiency_list()}\n\n"
        f"Automated reminders stop here. Please follow up directly.\n\n"
        + SIGNATURE
    )
    return subject, body


# =============================================================================
# CRITICAL ALERT (stop work risk)
# =============================================================================

ISSUE_NON_COMPLIANT = "Non-compliant insurance coverage"
ISSUE_NO_CERTIFICATE = "No valid Certificate of Currency on file"


def render_critical_alert_email(ctx: MessageContext) -> Tuple[str, str]:
    subject = f"[URGENT] Stop Work Risk - {ctx.subcontractor_name}"
    body = (
        f"Dear {ctx.recipient_name},\n\n"
        f"STOP WORK RISK\n\n"
        f"{ctx.subcontractor_name} is scheduled on site for the {ctx.project_name} project "
        f"but is not insurance compliant.\n\n"
        f"Issue: {ctx.issue or ISSUE_NON_COMPLIANT}\n\n"
        f"Do not allow this subcontractor to start work until a compliant Certificate of Currency "
        f"is on file or an exception has been approved.\n\n"
        + SIGNATURE
    )
    return subject, body


def render_critical_alert_sms(ctx: MessageContext) -> str:
    return (
        f"STOP WORK RISK - {ctx.subcontractor_name} on {ctx.project_name}: "
        f"{ctx.issue or ISSUE_NON_COMPLIANT}. Immediate action required. - RiskShield AI"
    )


# =============================================================================
# CONFIRMATION
# =============================================================================

def render_confirmation_email(ctx: MessageContext) -> Tuple[str, str]:
    subject = f"Insurance Compliance Confirmed - {ctx.subcontractor_name} / {ctx.project_name}"
    body = (
        f"Dear {ctx.recipient_name},\n\n"
        f"The Certificate of Currency submitted for {ctx.subcontractor_name} (ABN: {ctx.abn}) has been "
        f"verified and meets all requirements for the {ctx.project_name} project.\n\n"
        f"VERIFICATION RESULT: APPROVED\n\n"
        f"{ctx.subcontractor_name} is now approved to work on the {ctx.project_name} project.\n\n"
        + SIGNATURE
    )
    return subject, body


# =============================================================================
# EXPIRATION REMINDER
# =============================================================================

def render_expiration_reminder_email(ctx: MessageContext, expiry_date: date, days_until_expiry: int) -> Tuple[str, str]:
    """Reminder that a compliant certificate is about to lapse (or has)."""
    urgent = days_until_expiry <= 7
    if days_until_expiry <= 0:
        subject = f"Your insurance certificate has expired - {ctx.project_name}"
        status = "has expired"
    else:
        subject = f"Your insurance certificate expires in {_days(days_until_expiry)} - {ctx.project_name}"
        status = f"expires on {expiry_date.strftime('%d %b %Y')}"
    if urgent:
        subject = f"URGENT: {subject}"

    upload = ctx.upload_link or "Contact the builder for upload instructions"
    body = (
        f"Dear {ctx.recipient_name},\n\n"
        f"The Certificate of Currency for {ctx.subcontractor_name} (ABN: {ctx.abn}) on the "
        f"{ctx.project_name} project {status}.\n\n"
        + ("A current certificate is required to keep working on site.\n\n" if urgent else "")
        + "WHAT TO DO:\n"
        "1. Contact your insurance broker or provider\n"
        "2. Get a new Certificate of Currency\n"
        f"3. Upload it here: {upload}\n\n"
        "If you have already sent a new certificate, please disregard this message.\n\n"
        + SIGNATURE
    )
    return subject, body
