"""
Completion event handling.

A completion event ``{employee_id, course_id, completed_at}`` closes every
open assignment of that employee whose rule references the course. Rules
are independent: one event may close several assignments.

Completion is dominant over the clock: the close is a compare-and-swap
from whatever open state the row is in, retried after losing a race
against a concurrent tick. If every retry loses, the event is rejected
with a conflict rather than reported as applied. Stale or redelivered
events (completed before the cycle started, or not newer than the last
recorded completion for the rule) are ignored.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime

from compliance_engine.core.exceptions import InvalidTransitionError, ValidationError
from compliance_engine.models import db
from compliance_engine.models.audit import write_audit
from compliance_engine.models.base import as_utc, utcnow
from compliance_engine.services import assignment_repository as repo
from compliance_engine.services import recertification_planner
from compliance_engine.services.lifecycle_clock import ensure_transition

logger = logging.getLogger(__name__)

_CAS_RETRIES = 3


@dataclass
class CompletionResult:
    completed: list = field(default_factory=list)
    ignored: list = field(default_factory=list)
    planned: list = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "completed": [a.to_dict() for a in self.completed],
            "ignored": self.ignored,
            "planned": [i.to_dict() for i in self.planned],
        }


def _is_stale(assignment, completed_at: datetime) -> str | None:
    if completed_at.date() < assignment.cycle_start:
        return "completed before cycle start"
    previous = as_utc(repo.latest_completion_at(assignment.rule_id, assignment.employee_id))
    if previous is not None and completed_at <= previous:
        return "not newer than last recorded completion"
    return None


def complete_assignment(assignment, completed_at: datetime, *, actor: str = "training_provider",
                        now: datetime | None = None) -> bool:
    """Close one open assignment. Returns False when it was already terminal.

    Raises InvalidTransitionError when the row kept changing under every
    attempt, so the event is rejected and can be redelivered.
    """
    for _ in range(_CAS_RETRIES):
        if not assignment.is_open:
            return False
        ensure_transition(assignment, "complete")
        prev_status, prev_tier = assignment.status, assignment.escalation_tier
        if repo.compare_and_swap(
            assignment.id, prev_status, prev_tier,
            status="completed", completed_at=completed_at,
        ):
            write_audit(
                company_id=assignment.company_id, entity_type="assignment",
                entity_id=assignment.id, event_type="assignment_completed", actor=actor,
                old_values={"status": prev_status, "escalation_tier": prev_tier},
                new_values={"status": "completed", "completed_at": completed_at.isoformat()},
                now=now,
            )
            return True
        logger.info("Completion lost a race; retrying",
                    extra={"assignment_id": assignment.id})
        db.session.refresh(assignment)
    logger.warning("Completion gave up after %d attempts", _CAS_RETRIES,
                   extra={"assignment_id": assignment.id})
    raise InvalidTransitionError(assignment.id, "complete", assignment.status,
                                 "assignment kept changing")


def record_completion(*, company_id: str, employee_id: str, course_id: str,
                      completed_at: datetime, actor: str = "training_provider",
                      now: datetime | None = None) -> CompletionResult:
    """Apply a completion event. Caller commits."""
    if not company_id or not employee_id or not course_id:
        raise ValidationError("company_id, employee_id and course_id are required")
    completed_at = as_utc(completed_at)
    now = now or utcnow()
    if completed_at > now:
        raise ValidationError("completed_at cannot be in the future",
                              details={"completed_at": completed_at.isoformat()})

    result = CompletionResult()
    for assignment in repo.open_for_employee_course(company_id, employee_id, course_id):
        reason = _is_stale(assignment, completed_at)
        if reason:
            result.ignored.append({"assignment_id": assignment.id, "reason": reason})
            logger.info("Completion ignored: %s", reason,
                        extra={"assignment_id": assignment.id, "rule_id": assignment.rule_id})
            continue
        if not complete_assignment(assignment, completed_at, actor=actor, now=now):
            result.ignored.append({"assignment_id": assignment.id, "reason": "no longer open"})
            continue
        result.completed.append(assignment)
        intent = recertification_planner.on_completion(assignment, actor=actor, now=now)
        if intent is not None:
            result.planned.append(intent)

    logger.info(
        "Completion event applied: closed=%d ignored=%d",
        len(result.completed), len(result.ignored),
        extra={"company_id": company_id, "employee_id": employee_id},
    )
    return result
