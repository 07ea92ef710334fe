"""
Shared pytest fixtures for the Compliance Training Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate, fresh collaborators (autouse)
    - client: Flask test client (function-scoped)
    - directory: InMemoryDirectoryGateway wired into the app
    - dispatcher: LoggingDispatcher wired into the app
    - policy: EngineSettings built from the testing config
"""

from datetime import date, datetime, timezone

import pytest

from compliance_engine import create_app
from compliance_engine.integrations.directory_gateway import EmployeeRecord, InMemoryDirectoryGateway
from compliance_engine.integrations.dispatch_gateway import LoggingDispatcher
from compliance_engine.models import db as _db
from compliance_engine.models.compliance import ComplianceAssignment, ComplianceRule
from compliance_engine.services.policy import EngineSettings

COMPANY = "acme"


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, fresh collaborators, rollback + recreate tables after."""
    app.extensions["directory_gateway"] = InMemoryDirectoryGateway()
    app.extensions["notification_dispatcher"] = LoggingDispatcher()
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


@pytest.fixture()
def directory(app) -> InMemoryDirectoryGateway:
    return app.extensions["directory_gateway"]


@pytest.fixture()
def dispatcher(app) -> LoggingDispatcher:
    return app.extensions["notification_dispatcher"]


@pytest.fixture()
def policy(app) -> EngineSettings:
    return EngineSettings.from_config(app.config)


# ── ORM helpers (shared) ─────────────────────────────────────────────────


def utc(*args) -> datetime:
    """datetime(*args) in UTC."""
    return datetime(*args, tzinfo=timezone.utc)


def emp(employee_id, department=None, position=None, manager=None, status="active",
        company_id=COMPANY) -> EmployeeRecord:
    return EmployeeRecord(
        employee_id=employee_id,
        company_id=company_id,
        department_id=department,
        position_id=position,
        manager_id=manager,
        status=status,
    )


def make_rule(**overrides) -> ComplianceRule:
    """Persist an active rule (annual, 30-day grace, 14-day reminder) and flush."""
    fields = dict(
        company_id=COMPANY,
        name="Annual Safety Training",
        description="",
        course_id="SAFETY-101",
        applies_to_all=True,
        target_departments=[],
        target_positions=[],
        frequency_months=12,
        grace_period_days=30,
        reminder_days_before=14,
        effective_date=date(2024, 1, 1),
        is_active=True,
        is_mandatory=True,
    )
    fields.update(overrides)
    rule = ComplianceRule(**fields)
    _db.session.add(rule)
    _db.session.flush()
    return rule


def make_assignment(rule: ComplianceRule, employee_id="e1", **overrides) -> ComplianceAssignment:
    fields = dict(
        company_id=rule.company_id,
        rule_id=rule.id,
        employee_id=employee_id,
        course_id=rule.course_id,
        cycle_start=date(2024, 1, 1),
        due_date=date(2025, 1, 1),
        status="assigned",
        escalation_tier=0,
        source="rule_based",
    )
    fields.update(overrides)
    assignment = ComplianceAssignment(**fields)
    _db.session.add(assignment)
    _db.session.flush()
    return assignment
