"""RiskShield - Data Models"""
from .db_models import (
    # Enums
    UserRole, ProjectStatus, VerdictStatus, ComplianceStatus, RiskLevel,
    ExpirationType, ExceptionStatus, CommunicationType, Channel, CommunicationStatus,
    # Tables
    CompanyDB, UserDB, ProjectDB, SubcontractorDB, ProjectSubcontractorDB,
    VerificationDB, ComplianceExceptionDB, CommunicationDB, AuditLogDB,
    ComplianceSnapshotDB,
)
from .deficiency import Deficiency, DeficiencyType, DeficiencySeverity

__all__ = [
    "UserRole", "ProjectStatus", "VerdictStatus", "ComplianceStatus", "RiskLevel",
    "ExpirationType", "ExceptionStatus", "CommunicationType", "Channel", "CommunicationStatus",
    "CompanyDB", "UserDB", "ProjectDB", "SubcontractorDB", "ProjectSubcontractorDB",
    "VerificationDB", "ComplianceExceptionDB", "CommunicationDB", "AuditLogDB",
    "ComplianceSnapshotDB",
    "Deficiency", "DeficiencyType", "DeficiencySeverity",
]
