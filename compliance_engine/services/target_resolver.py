"""
Target resolver.

Pure function from (rule, directory snapshot, now) to the set of employee
IDs the rule currently applies to. It never reads live directory state or
the database.

Matching:
    - rule not active, or ``now`` outside [effective_date, expiry_date] → ∅
    - applies_to_all → every active employee of the rule's company
    - otherwise → active employees whose department is in target_departments
      OR whose position is in target_positions
"""

import logging
from datetime import datetime

from compliance_engine.integrations.directory_gateway import DirectorySnapshot

logger = logging.getLogger(__name__)


def resolve(rule, snapshot: DirectorySnapshot, now: datetime) -> frozenset[str]:
    if not rule.is_in_effect(now.date()):
        return frozenset()

    if snapshot.company_id != rule.company_id:
        logger.warning(
            "Snapshot company %s does not match rule company", snapshot.company_id,
            extra={"rule_id": rule.id, "company_id": rule.company_id},
        )
        return frozenset()

    employees = [e for e in snapshot.active_employees() if e.company_id == rule.company_id]

    if rule.applies_to_all:
        return frozenset(e.employee_id for e in employees)

    departments = rule.departments
    positions = rule.positions
    if not departments and not positions:
        return frozenset()

    return frozenset(
        e.employee_id
        for e in employees
        if (e.department_id is not None and e.department_id in departments)
        or (e.position_id is not None and e.position_id in positions)
    )
