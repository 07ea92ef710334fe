"""
Rule authoring service.

Validates and persists ComplianceRule writes coming from the rule authoring
UI. Targeting arrays are validated into typed sets here, so the engine never
has to guess their shape at evaluation time.

Once a rule has been activated its definition is frozen; only ``is_active``,
``expiry_date``, ``name`` and ``description`` may change afterwards.
"""

import logging

from compliance_engine.core.exceptions import NotFoundError, ValidationError
from compliance_engine.models import db
from compliance_engine.models.audit import write_audit
from compliance_engine.models.base import utcnow
from compliance_engine.models.compliance import ComplianceRule
from compliance_engine.utils.helpers import parse_date_input, parse_id_list

logger = logging.getLogger(__name__)

MUTABLE_AFTER_ACTIVATION = frozenset({"is_active", "expiry_date", "name", "description"})

RULE_FIELDS = (
    "name", "description", "course_id", "applies_to_all",
    "target_departments", "target_positions",
    "frequency_months", "grace_period_days", "reminder_days_before", "one_time_window_days",
    "effective_date", "expiry_date", "is_active", "is_mandatory",
)

NO_OP_WARNING = "Rule targets nobody: applies_to_all is false and no departments or positions are set"


# ── Validation ───────────────────────────────────────────────────────────────

def _opt_int(data, key, errors, *, minimum, required=False):
    value = data.get(key)
    if value is None or value == "":
        if required:
            errors[key] = "required"
        return None
    if isinstance(value, bool):
        errors[key] = "must be an integer"
        return None
    try:
        number = int(value)
    except (TypeError, ValueError):
        errors[key] = "must be an integer"
        return None
    if number < minimum:
        errors[key] = f"must be >= {minimum}"
        return None
    return number


def _bool(data, key, errors, default):
    value = data.get(key, default)
    if not isinstance(value, bool):
        errors[key] = "must be a boolean"
        return default
    return value


def validate_rule_payload(data: dict) -> dict:
    """Normalise a full rule payload or raise ValidationError with field details."""
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    errors: dict[str, str] = {}
    clean: dict = {}

    name = (data.get("name") or "").strip()
    if not name:
        errors["name"] = "required"
    elif len(name) > 200:
        errors["name"] = "max 200 characters"
    clean["name"] = name
    clean["description"] = (data.get("description") or "").strip()

    course_id = str(data.get("course_id") or "").strip()
    if not course_id:
        errors["course_id"] = "required"
    clean["course_id"] = course_id

    clean["applies_to_all"] = _bool(data, "applies_to_all", errors, False)
    for key in ("target_departments", "target_positions"):
        try:
            clean[key] = sorted(parse_id_list(data.get(key), key))
        except ValueError as exc:
            errors[key] = str(exc)
            clean[key] = []

    clean["frequency_months"] = _opt_int(data, "frequency_months", errors, minimum=1)
    grace = _opt_int(data, "grace_period_days", errors, minimum=0)
    clean["grace_period_days"] = 0 if grace is None else grace
    reminder = _opt_int(data, "reminder_days_before", errors, minimum=1)
    clean["reminder_days_before"] = 14 if reminder is None else reminder
    clean["one_time_window_days"] = _opt_int(data, "one_time_window_days", errors, minimum=0)

    for key in ("effective_date", "expiry_date"):
        try:
            clean[key] = parse_date_input(data.get(key))
        except ValueError as exc:
            errors[key] = str(exc)
            clean[key] = None
    if clean["effective_date"] is None and "effective_date" not in errors:
        errors["effective_date"] = "required"
    if clean["effective_date"] and clean["expiry_date"] and clean["expiry_date"] < clean["effective_date"]:
        errors["expiry_date"] = "must be on or after effective_date"

    clean["is_active"] = _bool(data, "is_active", errors, True)
    clean["is_mandatory"] = _bool(data, "is_mandatory", errors, True)

    if errors:
        raise ValidationError("Invalid compliance rule", details=errors)
    return clean


def _warnings(rule: ComplianceRule) -> list[str]:
    return [NO_OP_WARNING] if rule.is_no_op else []


def _snapshot(rule: ComplianceRule) -> dict:
    return {key: getattr(rule, key) for key in RULE_FIELDS}


# ── Operations ───────────────────────────────────────────────────────────────

def get_rule(rule_id: int, company_id: str | None = None) -> ComplianceRule:
    rule = db.session.get(ComplianceRule, rule_id)
    if rule is None or (company_id is not None and rule.company_id != company_id):
        raise NotFoundError(resource="ComplianceRule", resource_id=rule_id, company_id=company_id)
    return rule


def list_rules(company_id: str, *, active: bool | None = None) -> list[ComplianceRule]:
    q = ComplianceRule.query_for_company(company_id)
    if active is not None:
        q = q.filter(ComplianceRule.is_active.is_(active))
    return q.order_by(ComplianceRule.id).all()


def create_rule(data: dict, *, actor: str = "system", now=None) -> tuple[ComplianceRule, list[str]]:
    """Create a rule. Returns ``(rule, warnings)``. Caller commits."""
    company_id = str((data or {}).get("company_id") or "").strip()
    if not company_id:
        raise ValidationError("company_id is required", details={"company_id": "required"})
    clean = validate_rule_payload(data)
    now = now or utcnow()

    rule = ComplianceRule(company_id=company_id, created_by=actor, **clean)
    if rule.is_active:
        rule.activated_at = now
    db.session.add(rule)
    db.session.flush()

    warnings = _warnings(rule)
    if warnings:
        logger.warning("No-op rule accepted", extra={"rule_id": rule.id, "company_id": company_id})
    write_audit(
        company_id=company_id, entity_type="rule", entity_id=rule.id,
        event_type="requirement_created", actor=actor,
        new_values=_snapshot(rule), metadata={"warnings": warnings} if warnings else None,
        now=now,
    )
    logger.info("Compliance rule created", extra={"rule_id": rule.id, "company_id": company_id})
    return rule, warnings


def update_rule(rule_id: int, data: dict, *, company_id: str | None = None,
                actor: str = "system", now=None) -> tuple[ComplianceRule, list[str]]:
    """Partial update. Frozen fields of an activated rule cannot change. Caller commits."""
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    rule = get_rule(rule_id, company_id)
    now = now or utcnow()

    before = _snapshot(rule)
    merged = dict(before)
    merged.update({k: v for k, v in data.items() if k in RULE_FIELDS})
    clean = validate_rule_payload(merged)

    changed = {k for k in RULE_FIELDS if clean[k] != before[k]}
    if rule.activated_at is not None:
        frozen = sorted(changed - MUTABLE_AFTER_ACTIVATION)
        if frozen:
            raise ValidationError(
                "Rule is activated; only is_active, expiry_date, name and description can change",
                details={field: "immutable after activation" for field in frozen},
            )

    if not changed:
        return rule, _warnings(rule)

    for key in changed:
        setattr(rule, key, clean[key])
    if rule.is_active and rule.activated_at is None:
        rule.activated_at = now
    db.session.flush()

    warnings = _warnings(rule)
    write_audit(
        company_id=rule.company_id, entity_type="rule", entity_id=rule.id,
        event_type="requirement_updated", actor=actor,
        old_values={k: before[k] for k in sorted(changed)},
        new_values={k: clean[k] for k in sorted(changed)},
        now=now,
    )
    logger.info("Compliance rule updated: %s", ", ".join(sorted(changed)),
                extra={"rule_id": rule.id, "company_id": rule.company_id})
    return rule, warnings


def deactivate_rule(rule_id: int, *, company_id: str | None = None, actor: str = "system",
                    now=None) -> ComplianceRule:
    """Stop new assignments and next cycles. Open assignments keep running."""
    rule, _ = update_rule(rule_id, {"is_active": False}, company_id=company_id,
                          actor=actor, now=now)
    return rule
