"""
Exemption workflow.

    request  → exemption_status=pending   (assignment stays in its open state)
    approve  → status=exempted (terminal), next cycle planned for recurring rules
    reject   → exemption_status=rejected  (assignment keeps running on the clock)

Approval is a compare-and-swap from any open state, retried after losing
a race against a tick. Once exempted, completion events and clock ticks
no longer touch the row.
"""

import logging

from compliance_engine.core.exceptions import InvalidTransitionError, NotFoundError, ValidationError
from compliance_engine.models import db
from compliance_engine.models.audit import write_audit
from compliance_engine.models.base import utcnow
from compliance_engine.models.compliance import EXEMPTION_TYPES
from compliance_engine.services import assignment_repository as repo
from compliance_engine.services import recertification_planner
from compliance_engine.services.lifecycle_clock import ensure_transition
from compliance_engine.utils.helpers import parse_date_input

logger = logging.getLogger(__name__)

_CAS_RETRIES = 3


def _load(assignment_id: int, company_id: str | None):
    assignment = repo.get(assignment_id)
    if assignment is None or (company_id is not None and assignment.company_id != company_id):
        raise NotFoundError(resource="ComplianceAssignment", resource_id=assignment_id,
                            company_id=company_id)
    return assignment


def request_exemption(assignment_id: int, data: dict, *, company_id: str | None = None,
                      now=None):
    """Open an exemption request on an open assignment. Caller commits."""
    now = now or utcnow()
    assignment = _load(assignment_id, company_id)
    ensure_transition(assignment, "exempt")

    if assignment.exemption_status == "pending":
        raise InvalidTransitionError(assignment.id, "request_exemption", assignment.status,
                                     "an exemption request is already pending")

    exemption_type = (data.get("exemption_type") or "").strip()
    reason = (data.get("reason") or "").strip()
    requested_by = (data.get("requested_by") or "").strip()
    errors = {}
    if exemption_type not in EXEMPTION_TYPES:
        errors["exemption_type"] = f"must be one of: {', '.join(sorted(EXEMPTION_TYPES))}"
    if not reason:
        errors["reason"] = "required"
    if not requested_by:
        errors["requested_by"] = "required"
    dates = {}
    for key in ("start_date", "end_date"):
        try:
            dates[key] = parse_date_input(data.get(key))
        except ValueError as exc:
            errors[key] = str(exc)
            dates[key] = None
    start_date, end_date = dates["start_date"], dates["end_date"]
    if end_date is not None and end_date <= assignment.cycle_start:
        errors["end_date"] = "must be after the cycle start"
    if start_date is not None and end_date is not None and start_date > end_date:
        errors["start_date"] = "must be on or before end_date"
    if errors:
        raise ValidationError("Invalid exemption request", details=errors)

    assignment.exemption_status = "pending"
    assignment.exemption_type = exemption_type
    assignment.exemption_reason = reason
    assignment.exemption_requested_by = requested_by
    assignment.exemption_requested_at = now
    assignment.exemption_start_date = start_date
    assignment.exemption_end_date = end_date
    assignment.exemption_approved_by = None
    assignment.exemption_approved_at = None
    db.session.flush()

    write_audit(
        company_id=assignment.company_id, entity_type="assignment", entity_id=assignment.id,
        event_type="exemption_requested", actor=requested_by,
        new_values={"exemption_type": exemption_type, "reason": reason,
                    "start_date": start_date.isoformat() if start_date else None,
                    "end_date": end_date.isoformat() if end_date else None},
        now=now,
    )
    logger.info("Exemption requested (%s)", exemption_type,
                extra={"assignment_id": assignment.id, "rule_id": assignment.rule_id})
    return assignment


def _require_pending(assignment, action: str):
    if assignment.exemption_status != "pending":
        raise InvalidTransitionError(assignment.id, action, assignment.status,
                                     f"exemption status is {assignment.exemption_status}")


def approve_exemption(assignment_id: int, *, approved_by: str, company_id: str | None = None,
                      now=None):
    """Approve a pending exemption; the assignment becomes terminal. Caller commits."""
    if not approved_by:
        raise ValidationError("approved_by is required")
    now = now or utcnow()
    assignment = _load(assignment_id, company_id)
    _require_pending(assignment, "approve_exemption")

    for _ in range(_CAS_RETRIES):
        ensure_transition(assignment, "exempt")
        prev_status, prev_tier = assignment.status, assignment.escalation_tier
        if repo.compare_and_swap(
            assignment.id, prev_status, prev_tier,
            status="exempted",
            exemption_status="approved",
            exemption_approved_by=approved_by,
            exemption_approved_at=now,
        ):
            break
        logger.info("Exemption approval lost a race; retrying",
                    extra={"assignment_id": assignment.id})
        db.session.refresh(assignment)
    else:
        raise InvalidTransitionError(assignment.id, "approve_exemption", assignment.status,
                                     "assignment kept changing")

    write_audit(
        company_id=assignment.company_id, entity_type="assignment", entity_id=assignment.id,
        event_type="exemption_approved", actor=approved_by,
        old_values={"status": prev_status, "escalation_tier": prev_tier},
        new_values={"status": "exempted", "exemption_type": assignment.exemption_type},
        now=now,
    )
    logger.info("Exemption approved", extra={"assignment_id": assignment.id,
                                              "rule_id": assignment.rule_id})
    recertification_planner.on_exemption(assignment, actor=approved_by, now=now)
    return assignment


def reject_exemption(assignment_id: int, *, rejected_by: str, reason: str | None = None,
                     company_id: str | None = None, now=None):
    """Reject a pending exemption; the assignment stays on the clock. Caller commits."""
    if not rejected_by:
        raise ValidationError("rejected_by is required")
    now = now or utcnow()
    assignment = _load(assignment_id, company_id)
    _require_pending(assignment, "reject_exemption")

    assignment.exemption_status = "rejected"
    db.session.flush()
    write_audit(
        company_id=assignment.company_id, entity_type="assignment", entity_id=assignment.id,
        event_type="exemption_rejected", actor=rejected_by,
        new_values={"reason": reason}, now=now,
    )
    logger.info("Exemption rejected", extra={"assignment_id": assignment.id,
                                              "rule_id": assignment.rule_id})
    return assignment
