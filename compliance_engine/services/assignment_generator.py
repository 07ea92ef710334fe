"""
Assignment generator.

Reconciles the resolved target set of a rule against its existing
assignments. Called once per rule pass after the directory snapshot has
been fetched and resolved, so no directory I/O happens between writes.

Per pass:
    1. pending RecertificationIntents: employee still matched → create the
       planned cycle (source=recertification) and consume the intent;
       otherwise leave it pending and stamp deferred_at. A deferred intent
       starts its cycle no earlier than the pass that sees the employee
       back in scope, never at the old completion anchor.
    2. matched employees with no assignment history for the rule → create
       the first cycle at max(today, effective_date)
    3. open assignments of employees no longer matched → reported as
       retired, never cancelled
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from dateutil.relativedelta import relativedelta

from compliance_engine.models.audit import write_audit
from compliance_engine.models.compliance import ComplianceRule
from compliance_engine.services import assignment_repository as repo
from compliance_engine.services.policy import EngineSettings

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    created: list[int] = field(default_factory=list)
    skipped_existing: int = 0
    retired: list[str] = field(default_factory=list)
    pending_intents: int = 0

    def to_dict(self) -> dict:
        return {
            "created": len(self.created),
            "created_ids": list(self.created),
            "skipped_existing": self.skipped_existing,
            "retired": list(self.retired),
            "pending_intents": self.pending_intents,
        }


def compute_due_date(rule: ComplianceRule, cycle_start: date, policy: EngineSettings) -> date:
    if rule.frequency_months:
        return cycle_start + relativedelta(months=rule.frequency_months)
    window = rule.one_time_window_days
    if window is None:
        window = policy.one_time_window_days
    return cycle_start + timedelta(days=window)


def _create(rule: ComplianceRule, employee_id: str, cycle_start: date, source: str,
            policy: EngineSettings, now: datetime):
    assignment, created = repo.create_if_absent(
        company_id=rule.company_id,
        rule_id=rule.id,
        employee_id=employee_id,
        course_id=rule.course_id,
        cycle_start=cycle_start,
        due_date=compute_due_date(rule, cycle_start, policy),
        status="assigned",
        escalation_tier=0,
        source=source,
    )
    if created:
        write_audit(
            company_id=rule.company_id, entity_type="assignment", entity_id=assignment.id,
            event_type="assignment_created",
            new_values={
                "rule_id": rule.id,
                "employee_id": employee_id,
                "cycle_start": cycle_start.isoformat(),
                "due_date": assignment.due_date.isoformat(),
                "source": source,
            },
            now=now,
        )
    return assignment, created


def _intent_cycle_start(intent, now: datetime) -> date:
    if intent.deferred_at is None:
        return intent.cycle_start
    return max(intent.cycle_start, now.date())


def reconcile(rule: ComplianceRule, matched: frozenset[str], now: datetime,
              policy: EngineSettings) -> ReconcileResult:
    result = ReconcileResult()
    log_extra = {"rule_id": rule.id, "company_id": rule.company_id}

    open_ids = repo.open_employee_ids(rule.id)
    history = repo.employees_with_history(rule.id)
    planned = set()

    # 1. Planned next cycles
    for intent in repo.pending_recertification_intents(rule.id):
        planned.add(intent.employee_id)
        if intent.employee_id not in matched:
            if intent.deferred_at is None:
                intent.deferred_at = now
            result.pending_intents += 1
            continue

        start = _intent_cycle_start(intent, now)
        assignment, created = _create(
            rule, intent.employee_id, start, "recertification", policy, now,
        )
        if not created:
            # Redelivered pass: the planned cycle may already exist.
            assignment = repo.get_by_natural_key(rule.id, intent.employee_id, start)
            if assignment is None:
                result.pending_intents += 1
                result.skipped_existing += 1
                continue
        else:
            result.created.append(assignment.id)
            open_ids.add(intent.employee_id)

        intent.status = "consumed"
        intent.consumed_assignment_id = assignment.id
        intent.consumed_at = now

    # 2. First cycles for newly matched employees
    cycle_start = max(now.date(), rule.effective_date)
    for employee_id in sorted(matched):
        if employee_id in history or employee_id in planned or employee_id in open_ids:
            result.skipped_existing += 1
            continue
        assignment, created = _create(rule, employee_id, cycle_start, "rule_based", policy, now)
        if created:
            result.created.append(assignment.id)
            open_ids.add(employee_id)
        else:
            result.skipped_existing += 1

    # 3. Out of scope but still open
    result.retired = sorted(open_ids - set(matched))
    if result.retired:
        logger.info("%d open assignment(s) no longer in scope; left open",
                    len(result.retired), extra=log_extra)

    logger.info(
        "Reconciled: created=%d skipped=%d retired=%d pending_intents=%d",
        len(result.created), result.skipped_existing, len(result.retired),
        result.pending_intents, extra=log_extra,
    )
    return result
