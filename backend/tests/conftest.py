"""
Shared fixtures for the compliance engine tests.

Engine tests run against an in-memory SQLite database. pysqlite's own
transaction handling is switched off so SAVEPOINTs behave as they do on
PostgreSQL.
"""
from datetime import date, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from riskshield.config import Settings
from riskshield.database import Base
from riskshield.models import db_models  # noqa: F401
from riskshield.models.db_models import (
    CompanyDB, ComplianceStatus, ProjectDB, ProjectStatus, ProjectSubcontractorDB,
    SubcontractorDB, UserDB, UserRole,
)
from riskshield.services.compliance import ComplianceService
from riskshield.services.notifications.base import DeliveryResult, EmailProvider, SmsProvider


# Monday morning, UTC
NOW = datetime(2026, 3, 2, 9, 0, 0)


# =============================================================================
# FAKES
# =============================================================================

class FakeEmailProvider(EmailProvider):
    """Records every email; addresses in `fail_for` are rejected."""

    name = "fake_email"

    def __init__(self):
        self.sent = []
        self.fail_for = set()

    def send_email(self, to, subject, body):
        self.sent.append({"to": to, "subject": subject, "body": body})
        if to in self.fail_for:
            return DeliveryResult(success=False, error=f"rejected {to}")
        return DeliveryResult(success=True, message_id=f"email-{uuid4().hex[:12]}")


class FakeSmsProvider(SmsProvider):
    name = "fake_sms"

    def __init__(self):
        self.sent = []
        self.fail_for = set()

    def send_sms(self, to, body):
        self.sent.append({"to": to, "body": body})
        if to in self.fail_for:
            return DeliveryResult(success=False, error=f"rejected {to}")
        return DeliveryResult(success=True, message_id=f"sms-{uuid4().hex[:12]}")


class FixedClock:
    """Test clock; advance() moves it forward."""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, days=0, hours=0):
        self.now = self.now + timedelta(days=days, hours=hours)
        return self.now


# =============================================================================
# DATABASE
# =============================================================================

@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


# =============================================================================
# SERVICES
# =============================================================================

@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        jwt_secret_key="test-secret",
        internal_api_key="test-internal-key",
        webhook_shared_secret="test-webhook-secret",
        app_url="https://app.riskshield.test",
        dispatch_max_workers=4,
        provider_timeout_seconds=5.0,
    )


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def email_provider():
    return FakeEmailProvider()


@pytest.fixture
def sms_provider():
    return FakeSmsProvider()


@pytest.fixture
def service(db, settings, email_provider, sms_provider, clock):
    return ComplianceService(
        db,
        settings=settings,
        email_provider=email_provider,
        sms_provider=sms_provider,
        clock=clock,
    )


# =============================================================================
# FACTORIES
# =============================================================================

class Factory:
    """Creates directory rows with sensible defaults."""

    def __init__(self, db):
        self.db = db

    def company(self, name="Acme Builders"):
        company = CompanyDB(id=str(uuid4()), name=name, created_at=NOW)
        self.db.add(company)
        self.db.flush()
        return company

    def user(self, company, role=UserRole.ADMIN, email=None, name=None, phone=None):
        user = UserDB(
            id=str(uuid4()),
            company_id=company.id,
            email=email or f"{role.value}-{uuid4().hex[:6]}@acme.test",
            name=name or role.value.replace("_", " ").title(),
            phone=phone,
            role=role,
        )
        self.db.add(user)
        self.db.flush()
        return user

    def project(self, company, manager=None, name="Harbour Tower", status=ProjectStatus.ACTIVE):
        project = ProjectDB(
            id=str(uuid4()),
            company_id=company.id,
            name=name,
            status=status,
            project_manager_id=manager.id if manager else None,
        )
        self.db.add(project)
        self.db.flush()
        return project

    def subcontractor(
        self,
        company,
        name="Sparky Electrical",
        contact_email="office@sparky.test",
        contact_phone=None,
        broker_email=None,
        broker_phone=None,
        broker_name=None,
    ):
        sub = SubcontractorDB(
            id=str(uuid4()),
            company_id=company.id,
            name=name,
            abn="51 824 753 556",
            contact_name="Sam Sparky",
            contact_email=contact_email,
            contact_phone=contact_phone,
            broker_name=broker_name,
            broker_email=broker_email,
            broker_phone=broker_phone,
        )
        self.db.add(sub)
        self.db.flush()
        return sub

    def assignment(self, project, subcontractor, on_site_date=None, status=ComplianceStatus.PENDING):
        assignment = ProjectSubcontractorDB(
            id=str(uuid4()),
            project_id=project.id,
            subcontractor_id=subcontractor.id,
            status=status,
            on_site_date=on_site_date,
            created_at=NOW,
        )
        self.db.add(assignment)
        self.db.flush()
        return assignment


@pytest.fixture
def make(db):
    return Factory(db)


@pytest.fixture
def world(make):
    """
    One company with an admin, a risk manager and a project manager,
    one active project and one subcontractor assigned to it.
    """
    company = make.company()
    admin = make.user(company, UserRole.ADMIN, email="admin@acme.test", phone="0400000001")
    risk_manager = make.user(company, UserRole.RISK_MANAGER, email="risk@acme.test")
    manager = make.user(company, UserRole.PROJECT_MANAGER, email="pm@acme.test", phone="0400000002")
    viewer = make.user(company, UserRole.READ_ONLY, email="viewer@acme.test")
    project = make.project(company, manager)
    sub = make.subcontractor(company)
    assignment = make.assignment(project, sub)
    return {
        "company": company,
        "admin": admin,
        "risk_manager": risk_manager,
        "manager": manager,
        "viewer": viewer,
        "project": project,
        "sub": sub,
        "assignment": assignment,
    }


def submit(service, world, status="fail", document_id=None, deficiencies=None, assignment=None, expiry_date=None):
    """Submit a verdict for the world's assignment (or `assignment`)."""
    assignment = assignment or world["assignment"]
    if deficiencies is None and status != "pass":
        deficiencies = [{"type": "coverage_below_minimum", "description": "Public liability below $20M"}]
    return service.submit_verdict(
        document_id=document_id or str(uuid4()),
        project_id=assignment.project_id,
        subcontractor_id=assignment.subcontractor_id,
        status=status,
        confidence=0.92,
        deficiencies=deficiencies or [],
        expiry_date=expiry_date,
    )


@pytest.fixture
def today():
    return NOW.date()


@pytest.fixture
def tomorrow():
    return NOW.date() + timedelta(days=1)


def days_ago(days: int) -> date:
    return (NOW - timedelta(days=days)).date()
