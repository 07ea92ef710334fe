"""
Lifecycle clock.

Drives open assignments along the time axis:

    assigned → reminder_due → due → overdue → escalated(1..max_tier)

``compute_target`` is a pure function of ``now`` and the row; ``tick``
applies it to every open assignment of a rule with a single compare-and-swap
per row and emits the side effect of the *final* state only:

    reminder_due        → reminder intent to the employee
    escalated(t)        → EscalationEvent + escalation intent for tier t

Thresholds compare ``now`` against UTC midnight of the stored dates:

    reminder_due  now >= due - reminder_days_before
    due           now >= due
    overdue       now >  due + grace
    escalated(t)  now >  due + grace + t * interval      (t <= max_tier)

Explicit transitions (completion, exemption) live in completion_service and
exemption_service; they share ``ensure_transition`` for validation.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone

from compliance_engine.core.exceptions import InvalidTransitionError
from compliance_engine.integrations.directory_gateway import DirectorySnapshot
from compliance_engine.models.audit import write_audit
from compliance_engine.models.compliance import (
    ASSIGNMENT_TRANSITIONS,
    STATUS_RANK,
    TERMINAL_STATUSES,
    ComplianceRule,
)
from compliance_engine.services import assignment_repository as repo
from compliance_engine.services.escalation_router import reminder_recipient, resolve_recipient
from compliance_engine.services.policy import EngineSettings

logger = logging.getLogger(__name__)


def utc_midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _escalation_tier(now: datetime, overdue_at: datetime, interval: timedelta, max_tier: int) -> int:
    """Largest t with now > overdue_at + t * interval, capped at max_tier."""
    elapsed = now - overdue_at
    if elapsed <= timedelta(0):
        return 0
    steps = elapsed // interval
    if elapsed % interval == timedelta(0):
        steps -= 1
    return max(0, min(steps, max_tier))


def _position(status: str, tier: int) -> tuple[int, int]:
    return STATUS_RANK[status], tier


def compute_target(now: datetime, due_date: date, grace_days: int, reminder_days: int,
                   current_status: str, current_tier: int,
                   policy: EngineSettings) -> tuple[str, int]:
    """Return the (status, tier) the assignment should hold at ``now``.

    Never behind the current state; terminal states are returned unchanged.
    """
    if current_status in TERMINAL_STATUSES:
        return current_status, current_tier

    due_at = utc_midnight(due_date)
    overdue_at = due_at + timedelta(days=grace_days)

    if now > overdue_at:
        tier = _escalation_tier(
            now, overdue_at, timedelta(days=policy.escalation_interval_days),
            policy.max_escalation_tier,
        )
        target = ("escalated", tier) if tier >= 1 else ("overdue", 0)
    elif now >= due_at:
        target = ("due", 0)
    elif now >= due_at - timedelta(days=reminder_days):
        target = ("reminder_due", 0)
    else:
        target = ("assigned", 0)

    if _position(*target) < _position(current_status, current_tier):
        return current_status, current_tier
    return target


def ensure_transition(assignment, action: str) -> str:
    """Validate an explicit transition and return its target status."""
    transition = ASSIGNMENT_TRANSITIONS.get(action)
    if transition is None:
        raise InvalidTransitionError(assignment.id, action, assignment.status, "unknown action")
    if assignment.status not in transition["from"]:
        raise InvalidTransitionError(
            assignment.id, action, assignment.status,
            f"allowed from: {', '.join(sorted(transition['from']))}",
        )
    return transition["to"]


# ═════════════════════════════════════════════════════════════════════════════
# Tick
# ═════════════════════════════════════════════════════════════════════════════

@dataclass
class TickResult:
    advanced: int = 0
    reminders: int = 0
    escalations: int = 0
    rejected: int = 0
    unchanged: int = 0
    transitions: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "advanced": self.advanced,
            "reminders": self.reminders,
            "escalations": self.escalations,
            "rejected": self.rejected,
            "unchanged": self.unchanged,
        }


def _emit_reminder(assignment, rule: ComplianceRule, now: datetime) -> bool:
    recipient = reminder_recipient(assignment)
    intent = repo.record_intent(
        assignment=assignment, template="reminder", tier=0, recipient=recipient,
        payload={
            "rule_id": rule.id,
            "rule_name": rule.name,
            "course_id": assignment.course_id,
            "employee_id": assignment.employee_id,
            "due_date": assignment.due_date.isoformat(),
        },
    )
    if intent is None:
        return False
    write_audit(
        company_id=assignment.company_id, entity_type="assignment", entity_id=assignment.id,
        event_type="reminder_emitted", new_values={"recipient": recipient.to_dict()}, now=now,
    )
    logger.info("Reminder emitted", extra={
        "assignment_id": assignment.id, "rule_id": rule.id, "event_type": "reminder",
    })
    return True


def _emit_escalation(assignment, rule: ComplianceRule, tier: int, snapshot: DirectorySnapshot,
                     now: datetime, policy: EngineSettings) -> bool:
    recipient = resolve_recipient(assignment, tier, snapshot, policy)
    event = repo.record_escalation_event(
        assignment=assignment, tier=tier, recipient=recipient, triggered_at=now,
    )
    if event is None:
        return False
    repo.record_intent(
        assignment=assignment, template="escalation", tier=tier, recipient=recipient,
        payload={
            "rule_id": rule.id,
            "rule_name": rule.name,
            "course_id": assignment.course_id,
            "employee_id": assignment.employee_id,
            "due_date": assignment.due_date.isoformat(),
            "is_fallback": recipient.is_fallback,
        },
    )
    write_audit(
        company_id=assignment.company_id, entity_type="assignment", entity_id=assignment.id,
        event_type="escalation_triggered",
        new_values={"tier": tier, "recipient": recipient.to_dict()}, now=now,
    )
    logger.info("Escalation tier %d → %s", tier, recipient.kind, extra={
        "assignment_id": assignment.id, "rule_id": rule.id,
        "event_type": "escalation", "tier": tier,
    })
    return True


def tick(rule: ComplianceRule, snapshot: DirectorySnapshot, now: datetime,
         policy: EngineSettings) -> TickResult:
    """Advance every open assignment of ``rule`` to its target state at ``now``."""
    result = TickResult()

    for assignment in repo.open_for_rule(rule.id):
        prev_status, prev_tier = assignment.status, assignment.escalation_tier
        target_status, target_tier = compute_target(
            now, assignment.due_date, rule.grace_period_days, rule.reminder_days_before,
            prev_status, prev_tier, policy,
        )
        if (target_status, target_tier) == (prev_status, prev_tier):
            result.unchanged += 1
            continue

        changes = {"status": target_status, "escalation_tier": target_tier}
        if target_status == "reminder_due":
            changes["reminder_sent_at"] = now
        if target_status == "escalated":
            changes["last_escalated_at"] = now

        if not repo.compare_and_swap(assignment.id, prev_status, prev_tier, **changes):
            result.rejected += 1
            logger.info(
                "Transition %s/%d → %s/%d rejected; row changed underneath",
                prev_status, prev_tier, target_status, target_tier,
                extra={"assignment_id": assignment.id, "rule_id": rule.id},
            )
            continue

        result.advanced += 1
        result.transitions.append({
            "assignment_id": assignment.id,
            "from": [prev_status, prev_tier],
            "to": [target_status, target_tier],
        })
        write_audit(
            company_id=assignment.company_id, entity_type="assignment", entity_id=assignment.id,
            event_type="status_changed",
            old_values={"status": prev_status, "escalation_tier": prev_tier},
            new_values={"status": target_status, "escalation_tier": target_tier},
            now=now,
        )

        if target_status == "reminder_due":
            if _emit_reminder(assignment, rule, now):
                result.reminders += 1
        elif target_status == "escalated" and target_tier > prev_tier:
            if _emit_escalation(assignment, rule, target_tier, snapshot, now, policy):
                result.escalations += 1

    return result
