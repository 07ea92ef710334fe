"""
Escalation router.

Maps (assignment, tier) to a concrete recipient using the directory
snapshot taken at escalation time, so a manager change between tiers is
honoured.

    tier → route via EngineSettings.route_for_tier (default 1 → manager, ≥2 → hr)
    manager unresolvable → HR with a data-quality warning (is_fallback=True)
    no HR administrators listed → company HR group address ``hr:<company_id>``
"""

import logging
from dataclasses import dataclass

from compliance_engine.integrations.directory_gateway import DirectorySnapshot
from compliance_engine.services.policy import EngineSettings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RecipientRef:
    kind: str                  # employee | manager | hr
    ids: tuple[str, ...]
    is_fallback: bool = False

    def to_dict(self) -> dict:
        return {"kind": self.kind, "ids": list(self.ids), "is_fallback": self.is_fallback}


def hr_group_address(company_id: str) -> str:
    return f"hr:{company_id}"


def _hr_recipient(company_id: str, snapshot: DirectorySnapshot, *, is_fallback: bool) -> RecipientRef:
    admins = tuple(sorted(snapshot.hr_admin_ids))
    if not admins:
        logger.info("No HR administrators listed; using group address",
                    extra={"company_id": company_id})
        admins = (hr_group_address(company_id),)
    return RecipientRef(kind="hr", ids=admins, is_fallback=is_fallback)


def reminder_recipient(assignment) -> RecipientRef:
    return RecipientRef(kind="employee", ids=(assignment.employee_id,))


def resolve_recipient(assignment, tier: int, snapshot: DirectorySnapshot,
                      policy: EngineSettings) -> RecipientRef:
    route = policy.route_for_tier(tier)

    if route == "manager":
        manager_id = snapshot.manager_of(assignment.employee_id)
        if manager_id is not None:
            return RecipientRef(kind="manager", ids=(manager_id,))
        logger.warning(
            "Manager unresolvable for employee %s; escalating to HR",
            assignment.employee_id,
            extra={
                "assignment_id": assignment.id,
                "company_id": assignment.company_id,
                "employee_id": assignment.employee_id,
                "tier": tier,
            },
        )
        return _hr_recipient(assignment.company_id, snapshot, is_fallback=True)

    return _hr_recipient(assignment.company_id, snapshot, is_fallback=False)
