"""
RiskShield - SQLAlchemy ORM Models
PostgreSQL database models for persistent storage
"""
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Float, DateTime, Text, JSON, ForeignKey, Enum as SQLEnum,
    Date, Index, UniqueConstraint, text,
)
from sqlalchemy.orm import relationship
from ..database import Base


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_column(enum_cls, name: str) -> SQLEnum:
    # Persist the lowercase values, not the member names
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda members: [m.value for m in members],
        validate_strings=True,
    )


# =============================================================================
# ENUMS
# =============================================================================

class UserRole(str, Enum):
    """Roles; admin and risk_manager may approve exceptions."""
    ADMIN = "admin"
    RISK_MANAGER = "risk_manager"
    PROJECT_MANAGER = "project_manager"
    READ_ONLY = "read_only"


APPROVER_ROLES = (UserRole.ADMIN, UserRole.RISK_MANAGER)


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    ON_HOLD = "on_hold"
    COMPLETED = "completed"


class VerdictStatus(str, Enum):
    """Outcome of certificate verification for one document."""
    PASS = "pass"
    FAIL = "fail"
    REVIEW = "review"


class ComplianceStatus(str, Enum):
    """Cached per-assignment projection of {latest verdict, active exception}."""
    COMPLIANT = "compliant"
    NON_COMPLIANT = "non_compliant"
    PENDING = "pending"
    EXCEPTION = "exception"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ExpirationType(str, Enum):
    UNTIL_RESOLVED = "until_resolved"
    FIXED_DURATION = "fixed_duration"
    SPECIFIC_DATE = "specific_date"
    PERMANENT = "permanent"


class ExceptionStatus(str, Enum):
    """States of the exception lifecycle."""
    PENDING_APPROVAL = "pending_approval"
    ACTIVE = "active"
    EXPIRED = "expired"
    RESOLVED = "resolved"
    CLOSED = "closed"


class CommunicationType(str, Enum):
    DEFICIENCY = "deficiency"
    FOLLOW_UP = "follow_up"
    CONFIRMATION = "confirmation"
    EXPIRATION_REMINDER = "expiration_reminder"
    CRITICAL_ALERT = "critical_alert"


ESCALATION_TYPES = (
    CommunicationType.DEFICIENCY,
    CommunicationType.FOLLOW_UP,
    CommunicationType.CRITICAL_ALERT,
)


class Channel(str, Enum):
    EMAIL = "email"
    SMS = "sms"


class CommunicationStatus(str, Enum):
    """Delivery status, upgraded monotonically by provider callbacks."""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    FAILED = "failed"


SENT_STATUSES = (
    CommunicationStatus.SENT,
    CommunicationStatus.DELIVERED,
    CommunicationStatus.OPENED,
)


# =============================================================================
# TENANCY / DIRECTORY
# =============================================================================

class CompanyDB(Base):
    """A builder company; the tenant every other record belongs to."""
    __tablename__ = "companies"

    id = Column(String(36), primary_key=True)  # UUID
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime, default=utcnow)

    users = relationship("UserDB", back_populates="company")
    projects = relationship("ProjectDB", back_populates="company")


class UserDB(Base):
    """Builder-side user. Role gating happens in the API layer."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True)  # UUID
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    phone = Column(String(32), nullable=True)
    role = Column(_enum_column(UserRole, "user_role"), nullable=False, default=UserRole.READ_ONLY)
    created_at = Column(DateTime, default=utcnow)

    company = relationship("CompanyDB", back_populates="users")


class ProjectDB(Base):
    __tablename__ = "projects"

    id = Column(String(36), primary_key=True)  # UUID
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    status = Column(_enum_column(ProjectStatus, "project_status"), nullable=False, default=ProjectStatus.ACTIVE)
    project_manager_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    created_at = Column(DateTime, default=utcnow)

    company = relationship("CompanyDB", back_populates="projects")
    project_manager = relationship("UserDB")
    assignments = relationship("ProjectSubcontractorDB", back_populates="project")


class SubcontractorDB(Base):
    """Subcontractor with its own contact and (optionally) its insurance broker."""
    __tablename__ = "subcontractors"

    id = Column(String(36), primary_key=True)  # UUID
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    abn = Column(String(20), nullable=True)

    contact_name = Column(String(255), nullable=True)
    contact_email = Column(String(255), nullable=True)
    contact_phone = Column(String(32), nullable=True)

    broker_name = Column(String(255), nullable=True)
    broker_email = Column(String(255), nullable=True)
    broker_phone = Column(String(32), nullable=True)

    created_at = Column(DateTime, default=utcnow)

    assignments = relationship("ProjectSubcontractorDB", back_populates="subcontractor")


# =============================================================================
# COMPLIANCE ENGINE
# =============================================================================

class ProjectSubcontractorDB(Base):
    """
    The compliance assignment: one subcontractor on one project.

    `status` is a cached projection owned by ComplianceStatusResolver.
    It must always be re-derivable from {latest verdict, active exception}.
    """
    __tablename__ = "project_subcontractors"
    __table_args__ = (
        UniqueConstraint("project_id", "subcontractor_id", name="uq_project_subcontractor"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    subcontractor_id = Column(String(36), ForeignKey("subcontractors.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(
        _enum_column(ComplianceStatus, "compliance_status"),
        nullable=False,
        default=ComplianceStatus.PENDING,
        index=True,
    )
    on_site_date = Column(Date, nullable=True, index=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    project = relationship("ProjectDB", back_populates="assignments")
    subcontractor = relationship("SubcontractorDB", back_populates="assignments")
    exceptions = relationship("ComplianceExceptionDB", back_populates="assignment")


class VerificationDB(Base):
    """
    One verdict per submitted certificate document.

    Append-create: a new document produces a new row. Only a manual override
    touches an existing row (status, verified_by_user_id, verified_at).
    `seq` is the insertion order used to break created_at ties.
    """
    __tablename__ = "verifications"
    __table_args__ = (
        Index("ix_verifications_assignment_latest", "project_id", "subcontractor_id", "created_at", "seq"),
    )

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String(36), unique=True, nullable=False, index=True)  # UUID
    document_id = Column(String(36), nullable=False, index=True)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    subcontractor_id = Column(String(36), ForeignKey("subcontractors.id", ondelete="CASCADE"), nullable=False, index=True)

    status = Column(_enum_column(VerdictStatus, "verdict_status"), nullable=False)
    confidence_score = Column(Float, nullable=False, default=0.0)
    # Policy expiry read off the certificate, when the pipeline found one
    expiry_date = Column(Date, nullable=True, index=True)

    # Versioned deficiency list, see models/deficiency.py
    deficiencies = Column(JSON, nullable=False, default=list)

    verified_by_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    verified_at = Column(DateTime, nullable=False, default=utcnow)

    created_at = Column(DateTime, nullable=False, default=utcnow)


class ComplianceExceptionDB(Base):
    """
    Human-approved deviation from a non-compliant/pending verdict.

    At most one ACTIVE exception per assignment; the partial unique index
    below is the guard, application code never read-then-writes it.
    """
    __tablename__ = "compliance_exceptions"
    __table_args__ = (
        Index(
            "uq_exception_active_per_assignment",
            "project_subcontractor_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        Index("ix_exceptions_status_expires", "status", "expires_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    project_subcontractor_id = Column(
        String(36), ForeignKey("project_subcontractors.id", ondelete="CASCADE"), nullable=False, index=True
    )
    verification_id = Column(String(36), ForeignKey("verifications.id", ondelete="SET NULL"), nullable=True)

    issue_summary = Column(Text, nullable=False)
    reason = Column(Text, nullable=False)
    risk_level = Column(_enum_column(RiskLevel, "risk_level"), nullable=False)
    supporting_document_url = Column(String(500), nullable=True)

    created_by_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_by_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    approved_at = Column(DateTime, nullable=True)
    closed_by_user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)

    expiration_type = Column(_enum_column(ExpirationType, "expiration_type"), nullable=False)
    expires_at = Column(DateTime, nullable=True)

    status = Column(
        _enum_column(ExceptionStatus, "exception_status"),
        nullable=False,
        default=ExceptionStatus.PENDING_APPROVAL,
    )
    resolved_at = Column(DateTime, nullable=True)
    resolution_type = Column(String(50), nullable=True)
    resolution_notes = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    assignment = relationship("ProjectSubcontractorDB", back_populates="exceptions")


class CommunicationDB(Base):
    """
    Append-only record of one message to one recipient on one channel.
    Only `status` (and its timestamps) moves, and only forward.
    """
    __tablename__ = "communications"
    __table_args__ = (
        Index("ix_communications_assignment", "project_id", "subcontractor_id", "sent_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    subcontractor_id = Column(String(36), ForeignKey("subcontractors.id", ondelete="CASCADE"), nullable=False, index=True)
    project_id = Column(String(36), ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True)
    verification_id = Column(String(36), ForeignKey("verifications.id", ondelete="SET NULL"), nullable=True, index=True)

    type = Column(_enum_column(CommunicationType, "communication_type"), nullable=False)
    channel = Column(_enum_column(Channel, "communication_channel"), nullable=False)
    # Escalation stage, or the days-before-expiry threshold of an expiration
    # reminder; NULL otherwise
    stage = Column(Integer, nullable=True)

    recipient = Column(String(255), nullable=False)
    subject = Column(String(500), nullable=True)
    body = Column(Text, nullable=True)

    status = Column(
        _enum_column(CommunicationStatus, "communication_status"),
        nullable=False,
        default=CommunicationStatus.PENDING,
    )
    provider_message_id = Column(String(255), nullable=True, index=True)
    error_message = Column(Text, nullable=True)

    sent_at = Column(DateTime, nullable=True)
    delivered_at = Column(DateTime, nullable=True)
    opened_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class AuditLogDB(Base):
    """
    Immutable record of every transition and dispatch outcome.
    Append-only; user_id is nulled (never cascaded) when a user is removed.
    """
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_entity", "entity_type", "entity_id", "created_at"),
        Index("ix_audit_logs_company_created", "company_id", "created_at"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), nullable=True)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)

    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(64), nullable=False)
    action = Column(String(100), nullable=False)
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)


class ComplianceSnapshotDB(Base):
    """Daily per-company rollup of assignment statuses."""
    __tablename__ = "compliance_snapshots"
    __table_args__ = (
        UniqueConstraint("company_id", "snapshot_date", name="uq_snapshot_company_date"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    company_id = Column(String(36), ForeignKey("companies.id", ondelete="CASCADE"), nullable=False, index=True)
    snapshot_date = Column(Date, nullable=False)

    total_subcontractors = Column(Integer, default=0)
    compliant = Column(Integer, default=0)
    non_compliant = Column(Integer, default=0)
    pending = Column(Integer, default=0)
    exception = Column(Integer, default=0)
    compliance_rate = Column(Integer, default=0)  # Percentage 0-100

    created_at = Column(DateTime, default=utcnow)
