"""
Assignment repository.

Persistence primitives for assignments and their append-only companions.
Existence is decided by the database's unique constraints, never by a
preceding SELECT:

    create_if_absent         insert inside a savepoint; IntegrityError → skip
    compare_and_swap         single-row UPDATE guarded on (status, tier)
    record_escalation_event  idempotent append, unique (assignment, tier)
    record_intent            idempotent append, unique (assignment, template, tier)

Callers own the transaction; everything here flushes, nothing commits.
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from compliance_engine.models import db
from compliance_engine.models.base import utcnow
from compliance_engine.models.compliance import (
    OPEN_STATUSES,
    ComplianceAssignment,
    EscalationEvent,
    NotificationIntent,
    RecertificationIntent,
)

logger = logging.getLogger(__name__)


def _insert_or_skip(obj, *, label: str, log_extra: dict) -> bool:
    """Flush ``obj`` inside a savepoint. Returns False on a uniqueness violation."""
    try:
        with db.session.begin_nested():
            db.session.add(obj)
            db.session.flush()
    except IntegrityError:
        logger.debug("%s already exists, skipped", label, extra=log_extra)
        return False
    return True


# ── Writes ───────────────────────────────────────────────────────────────────

def create_if_absent(**fields) -> tuple[ComplianceAssignment | None, bool]:
    """Conditionally create an assignment.

    Returns ``(assignment, True)`` when inserted, ``(None, False)`` when the
    natural key or the open-slot index already holds a row.
    """
    assignment = ComplianceAssignment(**fields)
    created = _insert_or_skip(
        assignment,
        label="Assignment",
        log_extra={"rule_id": fields.get("rule_id"), "employee_id": fields.get("employee_id")},
    )
    return (assignment, True) if created else (None, False)


def compare_and_swap(assignment_id: int, expected_status: str, expected_tier: int,
                     **changes) -> bool:
    """Apply ``changes`` only if the row still has the expected status and tier."""
    changes.setdefault("updated_at", utcnow())
    result = db.session.execute(
        update(ComplianceAssignment)
        .where(
            ComplianceAssignment.id == assignment_id,
            ComplianceAssignment.status == expected_status,
            ComplianceAssignment.escalation_tier == expected_tier,
        )
        .values(**changes)
        .execution_options(synchronize_session="fetch")
    )
    return result.rowcount == 1


def record_escalation_event(*, assignment: ComplianceAssignment, tier: int, recipient,
                            triggered_at) -> EscalationEvent | None:
    event = EscalationEvent(
        company_id=assignment.company_id,
        assignment_id=assignment.id,
        rule_id=assignment.rule_id,
        tier=tier,
        recipient_kind=recipient.kind,
        recipient_ids=list(recipient.ids),
        is_fallback=recipient.is_fallback,
        triggered_at=triggered_at,
    )
    ok = _insert_or_skip(
        event, label="EscalationEvent",
        log_extra={"assignment_id": assignment.id, "tier": tier},
    )
    return event if ok else None


def record_intent(*, assignment: ComplianceAssignment, template: str, tier: int,
                  recipient, payload: dict) -> NotificationIntent | None:
    intent = NotificationIntent(
        company_id=assignment.company_id,
        assignment_id=assignment.id,
        template=template,
        tier=tier,
        recipient_kind=recipient.kind,
        recipient_ids=list(recipient.ids),
        payload=payload,
    )
    ok = _insert_or_skip(
        intent, label="NotificationIntent",
        log_extra={"assignment_id": assignment.id, "event_type": template, "tier": tier},
    )
    return intent if ok else None


def record_recertification_intent(**fields) -> tuple[RecertificationIntent | None, bool]:
    intent = RecertificationIntent(**fields)
    created = _insert_or_skip(
        intent, label="RecertificationIntent",
        log_extra={"rule_id": fields.get("rule_id"), "employee_id": fields.get("employee_id")},
    )
    return (intent, True) if created else (None, False)


# ── Queries ──────────────────────────────────────────────────────────────────

def get(assignment_id: int) -> ComplianceAssignment | None:
    return db.session.get(ComplianceAssignment, assignment_id)


def get_by_natural_key(rule_id: int, employee_id: str, cycle_start) -> ComplianceAssignment | None:
    return ComplianceAssignment.query.filter_by(
        rule_id=rule_id, employee_id=employee_id, cycle_start=cycle_start,
    ).first()


def open_for_rule(rule_id: int) -> list[ComplianceAssignment]:
    """Open assignments of a rule. Terminal rows are never loaded for the clock."""
    return (
        ComplianceAssignment.query
        .filter(
            ComplianceAssignment.rule_id == rule_id,
            ComplianceAssignment.status.in_(OPEN_STATUSES),
        )
        .order_by(ComplianceAssignment.id)
        .all()
    )


def open_for_employee_course(company_id: str, employee_id: str,
                             course_id: str) -> list[ComplianceAssignment]:
    return (
        ComplianceAssignment.query
        .filter(
            ComplianceAssignment.company_id == company_id,
            ComplianceAssignment.employee_id == employee_id,
            ComplianceAssignment.course_id == course_id,
            ComplianceAssignment.status.in_(OPEN_STATUSES),
        )
        .order_by(ComplianceAssignment.rule_id)
        .all()
    )


def open_employee_ids(rule_id: int) -> set[str]:
    rows = db.session.execute(
        select(ComplianceAssignment.employee_id).where(
            ComplianceAssignment.rule_id == rule_id,
            ComplianceAssignment.status.in_(OPEN_STATUSES),
        )
    ).scalars()
    return set(rows)


def employees_with_history(rule_id: int) -> set[str]:
    """Employees that have ever held an assignment under the rule, in any status."""
    rows = db.session.execute(
        select(ComplianceAssignment.employee_id)
        .where(ComplianceAssignment.rule_id == rule_id)
        .distinct()
    ).scalars()
    return set(rows)


def rules_with_open_assignments(company_id: str | None = None) -> set[int]:
    stmt = (
        select(ComplianceAssignment.rule_id)
        .where(ComplianceAssignment.status.in_(OPEN_STATUSES))
        .distinct()
    )
    if company_id is not None:
        stmt = stmt.where(ComplianceAssignment.company_id == company_id)
    return set(db.session.execute(stmt).scalars())


def latest_completion_at(rule_id: int, employee_id: str):
    return db.session.execute(
        select(ComplianceAssignment.completed_at)
        .where(
            ComplianceAssignment.rule_id == rule_id,
            ComplianceAssignment.employee_id == employee_id,
            ComplianceAssignment.status == "completed",
        )
        .order_by(ComplianceAssignment.completed_at.desc())
        .limit(1)
    ).scalar()


def pending_recertification_intents(rule_id: int) -> list[RecertificationIntent]:
    return (
        RecertificationIntent.query
        .filter_by(rule_id=rule_id, status="pending")
        .order_by(RecertificationIntent.cycle_start, RecertificationIntent.id)
        .all()
    )
