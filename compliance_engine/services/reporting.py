"""
Read model for the reporting dashboard.

    employee_rollups    assignment counts by status per employee
    manager_rollups     the same, aggregated over each manager's direct reports
                        (reporting lines from a fresh directory snapshot)
    evaluation_status   per-rule last successful evaluation timestamps
"""

import logging
from collections import defaultdict

from sqlalchemy import func

from compliance_engine.models import db
from compliance_engine.models.compliance import (
    ASSIGNMENT_STATUSES,
    OPEN_STATUSES,
    ComplianceAssignment,
    ComplianceRule,
)
from compliance_engine.models.scheduling import RuleEvaluation

logger = logging.getLogger(__name__)


def _empty_counts() -> dict:
    return {status: 0 for status in ASSIGNMENT_STATUSES}


def _with_totals(counts: dict) -> dict:
    return {
        "counts": counts,
        "total": sum(counts.values()),
        "open": sum(n for s, n in counts.items() if s in OPEN_STATUSES),
        "overdue_or_escalated": counts["overdue"] + counts["escalated"],
    }


def status_counts_by_employee(company_id: str, rule_id: int | None = None) -> dict[str, dict]:
    q = (
        db.session.query(
            ComplianceAssignment.employee_id,
            ComplianceAssignment.status,
            func.count(ComplianceAssignment.id),
        )
        .filter(ComplianceAssignment.company_id == company_id)
    )
    if rule_id is not None:
        q = q.filter(ComplianceAssignment.rule_id == rule_id)
    rows = q.group_by(ComplianceAssignment.employee_id, ComplianceAssignment.status).all()

    by_employee: dict[str, dict] = defaultdict(_empty_counts)
    for employee_id, status, count in rows:
        by_employee[employee_id][status] = count
    return dict(by_employee)


def employee_rollups(company_id: str, rule_id: int | None = None) -> list[dict]:
    counts = status_counts_by_employee(company_id, rule_id)
    return [
        {"employee_id": employee_id, **_with_totals(c)}
        for employee_id, c in sorted(counts.items())
    ]


def manager_rollups(company_id: str, snapshot, rule_id: int | None = None) -> list[dict]:
    """Aggregate direct reports' counts per current manager."""
    counts = status_counts_by_employee(company_id, rule_id)

    by_manager: dict[str, dict] = defaultdict(lambda: {"counts": _empty_counts(), "reports": set()})
    unmanaged = 0
    for employee_id, c in counts.items():
        manager_id = snapshot.manager_of(employee_id)
        if manager_id is None:
            unmanaged += 1
            continue
        bucket = by_manager[manager_id]
        bucket["reports"].add(employee_id)
        for status, n in c.items():
            bucket["counts"][status] += n

    if unmanaged:
        logger.info("%d employee(s) without a resolvable manager excluded from manager rollup",
                    unmanaged, extra={"company_id": company_id})

    return [
        {
            "manager_id": manager_id,
            "direct_reports": sorted(bucket["reports"]),
            **_with_totals(bucket["counts"]),
        }
        for manager_id, bucket in sorted(by_manager.items())
    ]


def evaluation_status(company_id: str) -> list[dict]:
    rows = (
        db.session.query(ComplianceRule, RuleEvaluation)
        .outerjoin(RuleEvaluation, RuleEvaluation.rule_id == ComplianceRule.id)
        .filter(ComplianceRule.company_id == company_id)
        .order_by(ComplianceRule.id)
        .all()
    )
    result = []
    for rule, evaluation in rows:
        entry = {
            "rule_id": rule.id,
            "rule_name": rule.name,
            "is_active": rule.is_active,
            "last_success_at": None,
            "last_attempt_at": None,
            "last_status": None,
            "consecutive_failures": 0,
        }
        if evaluation is not None:
            entry.update({
                "last_success_at": evaluation.to_dict()["last_success_at"],
                "last_attempt_at": evaluation.to_dict()["last_attempt_at"],
                "last_status": evaluation.last_status,
                "consecutive_failures": evaluation.consecutive_failures,
            })
        result.append(entry)
    return result
