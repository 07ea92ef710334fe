"""
Compliance API blueprint.

Rule authoring:
    GET    /api/v1/compliance/rules?company_id=...
    POST   /api/v1/compliance/rules
    GET    /api/v1/compliance/rules/<id>
    PUT    /api/v1/compliance/rules/<id>
    POST   /api/v1/compliance/rules/<id>/deactivate

Events:
    POST   /api/v1/compliance/completions
    POST   /api/v1/compliance/assignments/<id>/exemption
    POST   /api/v1/compliance/assignments/<id>/exemption/approve
    POST   /api/v1/compliance/assignments/<id>/exemption/reject

Read model:
    GET    /api/v1/compliance/assignments
    GET    /api/v1/compliance/assignments/<id>
    GET    /api/v1/compliance/assignments/<id>/audit
    GET    /api/v1/compliance/rollups/employees
    GET    /api/v1/compliance/rollups/managers
    GET    /api/v1/compliance/evaluations

Manual trigger:
    POST   /api/v1/compliance/evaluations/run
"""

import logging

from flask import Blueprint, jsonify, request

from compliance_engine.blueprints import actor_from_request, paginate_query, require_company_id
from compliance_engine.core.exceptions import NotFoundError, ValidationError
from compliance_engine.models import db
from compliance_engine.models.audit import ComplianceAuditLog, verify_chain
from compliance_engine.models.compliance import ASSIGNMENT_STATUSES, ComplianceAssignment
from compliance_engine.services import (
    completion_service,
    exemption_service,
    reporting,
    rule_service,
)
from compliance_engine.services.evaluation_engine import get_directory_gateway, run_evaluation
from compliance_engine.utils.errors import E, api_error, register_error_handlers
from compliance_engine.utils.helpers import parse_datetime_input

logger = logging.getLogger(__name__)

compliance_bp = Blueprint("compliance", __name__, url_prefix="/api/v1/compliance")
register_error_handlers(compliance_bp)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ═════════════════════════════════════════════════════════════════════════
# Rules
# ═════════════════════════════════════════════════════════════════════════

@compliance_bp.route("/rules", methods=["GET"])
def list_rules():
    company_id = require_company_id()
    active_param = request.args.get("active")
    active = None if active_param is None else active_param.lower() in ("1", "true", "yes")
    rules = rule_service.list_rules(company_id, active=active)
    return jsonify({"items": [r.to_dict() for r in rules], "total": len(rules)})


@compliance_bp.route("/rules", methods=["POST"])
def create_rule():
    data = _json_body()
    rule, warnings = rule_service.create_rule(data, actor=actor_from_request(data))
    db.session.commit()
    return jsonify({"rule": rule.to_dict(), "warnings": warnings}), 201


@compliance_bp.route("/rules/<int:rule_id>", methods=["GET"])
def get_rule(rule_id):
    rule = rule_service.get_rule(rule_id, request.args.get("company_id"))
    return jsonify(rule.to_dict())


@compliance_bp.route("/rules/<int:rule_id>", methods=["PUT"])
def update_rule(rule_id):
    data = _json_body()
    rule, warnings = rule_service.update_rule(
        rule_id, data, company_id=data.get("company_id") or request.args.get("company_id"),
        actor=actor_from_request(data),
    )
    db.session.commit()
    return jsonify({"rule": rule.to_dict(), "warnings": warnings})


@compliance_bp.route("/rules/<int:rule_id>/deactivate", methods=["POST"])
def deactivate_rule(rule_id):
    data = request.get_json(silent=True) or {}
    rule = rule_service.deactivate_rule(
        rule_id, company_id=data.get("company_id") or request.args.get("company_id"),
        actor=actor_from_request(data),
    )
    db.session.commit()
    return jsonify(rule.to_dict())


# ═════════════════════════════════════════════════════════════════════════
# Completion events & exemptions
# ═════════════════════════════════════════════════════════════════════════

@compliance_bp.route("/completions", methods=["POST"])
def record_completion():
    """Completion event from the training provider: {employee_id, course_id, completed_at}."""
    data = _json_body()
    company_id = require_company_id(data)
    try:
        completed_at = parse_datetime_input(data.get("completed_at"))
    except ValueError as exc:
        raise ValidationError(str(exc), details={"completed_at": str(exc)}) from exc
    if completed_at is None:
        raise ValidationError("completed_at is required", details={"completed_at": "required"})

    result = completion_service.record_completion(
        company_id=company_id,
        employee_id=str(data.get("employee_id") or "").strip(),
        course_id=str(data.get("course_id") or "").strip(),
        completed_at=completed_at,
        actor=actor_from_request(data, default="training_provider"),
    )
    db.session.commit()
    return jsonify(result.to_dict()), 200


@compliance_bp.route("/assignments/<int:assignment_id>/exemption", methods=["POST"])
def request_exemption(assignment_id):
    data = _json_body()
    assignment = exemption_service.request_exemption(
        assignment_id, data, company_id=data.get("company_id"),
    )
    db.session.commit()
    return jsonify(assignment.to_dict()), 201


@compliance_bp.route("/assignments/<int:assignment_id>/exemption/approve", methods=["POST"])
def approve_exemption(assignment_id):
    data = request.get_json(silent=True) or {}
    assignment = exemption_service.approve_exemption(
        assignment_id,
        approved_by=data.get("approved_by") or actor_from_request(data, default=""),
        company_id=data.get("company_id"),
    )
    db.session.commit()
    return jsonify(assignment.to_dict())


@compliance_bp.route("/assignments/<int:assignment_id>/exemption/reject", methods=["POST"])
def reject_exemption(assignment_id):
    data = request.get_json(silent=True) or {}
    assignment = exemption_service.reject_exemption(
        assignment_id,
        rejected_by=data.get("rejected_by") or actor_from_request(data, default=""),
        reason=data.get("reason"),
        company_id=data.get("company_id"),
    )
    db.session.commit()
    return jsonify(assignment.to_dict())


# ═════════════════════════════════════════════════════════════════════════
# Assignments (read model)
# ═════════════════════════════════════════════════════════════════════════

@compliance_bp.route("/assignments", methods=["GET"])
def list_assignments():
    company_id = require_company_id()
    q = ComplianceAssignment.query_for_company(company_id)

    rule_id = request.args.get("rule_id", type=int)
    if rule_id is not None:
        q = q.filter(ComplianceAssignment.rule_id == rule_id)
    employee_id = request.args.get("employee_id")
    if employee_id:
        q = q.filter(ComplianceAssignment.employee_id == employee_id)
    status = request.args.get("status")
    if status:
        if status not in ASSIGNMENT_STATUSES:
            return api_error(E.VALIDATION_INVALID,
                             f"status must be one of: {', '.join(ASSIGNMENT_STATUSES)}")
        q = q.filter(ComplianceAssignment.status == status)

    items, total, limit, offset = paginate_query(q.order_by(ComplianceAssignment.id))
    return jsonify({
        "items": [a.to_dict() for a in items],
        "total": total,
        "limit": limit,
        "offset": offset,
    })


def _assignment_or_404(assignment_id):
    assignment = db.session.get(ComplianceAssignment, assignment_id)
    company_id = request.args.get("company_id")
    if assignment is None or (company_id and assignment.company_id != company_id):
        raise NotFoundError(resource="ComplianceAssignment", resource_id=assignment_id)
    return assignment


@compliance_bp.route("/assignments/<int:assignment_id>", methods=["GET"])
def get_assignment(assignment_id):
    assignment = _assignment_or_404(assignment_id)
    return jsonify(assignment.to_dict(include_escalations=True))


@compliance_bp.route("/assignments/<int:assignment_id>/audit", methods=["GET"])
def assignment_audit(assignment_id):
    assignment = _assignment_or_404(assignment_id)
    entries = (
        ComplianceAuditLog.query
        .filter_by(entity_type="assignment", entity_id=str(assignment.id))
        .order_by(ComplianceAuditLog.id)
        .all()
    )
    return jsonify({
        "items": [e.to_dict() for e in entries],
        "chain": verify_chain("assignment", assignment.id),
    })


# ═════════════════════════════════════════════════════════════════════════
# Rollups & evaluation status
# ═════════════════════════════════════════════════════════════════════════

@compliance_bp.route("/rollups/employees", methods=["GET"])
def employee_rollups():
    company_id = require_company_id()
    items = reporting.employee_rollups(company_id, request.args.get("rule_id", type=int))
    return jsonify({"items": items, "total": len(items)})


@compliance_bp.route("/rollups/managers", methods=["GET"])
def manager_rollups():
    company_id = require_company_id()
    snapshot = get_directory_gateway().fetch_snapshot(company_id)
    items = reporting.manager_rollups(company_id, snapshot, request.args.get("rule_id", type=int))
    return jsonify({"items": items, "total": len(items)})


@compliance_bp.route("/evaluations", methods=["GET"])
def evaluation_status():
    company_id = require_company_id()
    items = reporting.evaluation_status(company_id)
    return jsonify({"items": items, "total": len(items)})


@compliance_bp.route("/evaluations/run", methods=["POST"])
def run_evaluation_now():
    """Manual evaluation trigger, optionally scoped to one company."""
    data = request.get_json(silent=True) or {}
    company_id = data.get("company_id") or request.args.get("company_id")
    summary = run_evaluation(company_id=company_id)
    return jsonify(summary)
