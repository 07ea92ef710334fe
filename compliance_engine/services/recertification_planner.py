"""
Recertification planner.

Turns a resolved assignment of a recurring rule into a RecertificationIntent
for the next cycle. The generator consumes the intent on its next pass for
the rule, re-applying targeting at that point.

Anchoring:
    completion  → next cycle starts on the completion date (never earlier
                  than cycle_start + 1 day, so the natural key cannot collide)
    exemption   → next cycle starts at exemption_end_date, else at the
                  exempted cycle's due_date
"""

import logging
from datetime import date, timedelta

from compliance_engine.models.audit import write_audit
from compliance_engine.models.base import as_utc
from compliance_engine.services import assignment_repository as repo

logger = logging.getLogger(__name__)


def next_cycle_start_after_completion(assignment) -> date:
    completed_on = as_utc(assignment.completed_at).date()
    return max(completed_on, assignment.cycle_start + timedelta(days=1))


def next_cycle_start_after_exemption(assignment) -> date:
    anchor = assignment.exemption_end_date or assignment.due_date
    return max(anchor, assignment.cycle_start + timedelta(days=1))


def _plan(assignment, cycle_start: date, *, reason: str, actor: str, now):
    intent, created = repo.record_recertification_intent(
        company_id=assignment.company_id,
        rule_id=assignment.rule_id,
        employee_id=assignment.employee_id,
        cycle_start=cycle_start,
        source_assignment_id=assignment.id,
    )
    if not created:
        logger.debug("Next cycle already planned", extra={
            "assignment_id": assignment.id, "rule_id": assignment.rule_id,
        })
        return None

    write_audit(
        company_id=assignment.company_id, entity_type="assignment", entity_id=assignment.id,
        event_type="recertification_planned", actor=actor,
        new_values={"cycle_start": cycle_start.isoformat(), "reason": reason},
        now=now,
    )
    logger.info("Next cycle planned for %s", cycle_start.isoformat(), extra={
        "assignment_id": assignment.id, "rule_id": assignment.rule_id,
        "employee_id": assignment.employee_id,
    })
    return intent


def on_completion(assignment, *, actor: str = "system", now=None):
    """Plan the next cycle after a completion. None for one-time rules."""
    if not assignment.rule.is_recurring:
        return None
    return _plan(assignment, next_cycle_start_after_completion(assignment),
                 reason="completion", actor=actor, now=now)


def on_exemption(assignment, *, actor: str = "system", now=None):
    """Plan the next cycle after an approved exemption. None for one-time rules."""
    if not assignment.rule.is_recurring:
        return None
    return _plan(assignment, next_cycle_start_after_exemption(assignment),
                 reason="exemption", actor=actor, now=now)
