"""
Evaluation engine: one batch pass over all rules.

Per rule, in its own transaction:
    1. fetch the company's directory snapshot (no writes before this succeeds)
    2. resolve targets and reconcile assignments (in-effect rules only)
    3. tick the lifecycle clock for the rule's open assignments
    4. record the outcome in RuleEvaluation and commit

A failure in any step rolls back the rule's writes, records the failure,
and the batch moves on to the next rule. The failed rule is retried
wholesale on the next pass.

With COMPLIANCE_EVALUATION_WORKERS > 1 rules run in a ThreadPoolExecutor,
each worker inside its own app context (and therefore its own session).
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from flask import current_app
from sqlalchemy import or_

from compliance_engine.core.exceptions import DirectoryUnavailableError
from compliance_engine.models import db
from compliance_engine.models.base import utcnow
from compliance_engine.models.compliance import ComplianceRule
from compliance_engine.models.scheduling import RuleEvaluation
from compliance_engine.services import assignment_repository as repo
from compliance_engine.services.assignment_generator import reconcile
from compliance_engine.services.lifecycle_clock import tick
from compliance_engine.services.policy import EngineSettings
from compliance_engine.services.target_resolver import resolve

logger = logging.getLogger(__name__)


@dataclass
class RulePassResult:
    rule_id: int
    status: str
    reconcile: dict | None = None
    tick: dict | None = None
    error: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "status": self.status,
            "reconcile": self.reconcile,
            "tick": self.tick,
            "error": self.error,
            "duration_ms": self.duration_ms,
        }


def get_directory_gateway(app=None):
    return (app or current_app).extensions["directory_gateway"]


def _evaluation_row(rule: ComplianceRule) -> RuleEvaluation:
    row = RuleEvaluation.query.filter_by(rule_id=rule.id).first()
    if row is None:
        row = RuleEvaluation(rule_id=rule.id, company_id=rule.company_id)
        db.session.add(row)
    return row


def _record_failure(rule_id: int, now, error: Exception) -> None:
    rule = db.session.get(ComplianceRule, rule_id)
    if rule is None:
        return
    _evaluation_row(rule).record_failure(now, error)
    db.session.commit()


def evaluate_rule(rule_id: int, *, now, policy: EngineSettings, gateway) -> RulePassResult:
    """Reconcile and tick one rule in a single transaction."""
    start = time.monotonic()
    log_extra = {"rule_id": rule_id}
    try:
        rule = db.session.get(ComplianceRule, rule_id)
        if rule is None:
            return RulePassResult(rule_id=rule_id, status="skipped", error="rule not found")
        log_extra["company_id"] = rule.company_id

        snapshot = gateway.fetch_snapshot(rule.company_id, now)

        reconcile_result = None
        if rule.is_in_effect(now.date()):
            matched = resolve(rule, snapshot, now)
            reconcile_result = reconcile(rule, matched, now, policy).to_dict()
        tick_result = tick(rule, snapshot, now, policy).to_dict()

        _evaluation_row(rule).record_success(
            now, {"reconcile": reconcile_result, "tick": tick_result},
        )
        db.session.commit()
        return RulePassResult(
            rule_id=rule_id, status="success",
            reconcile=reconcile_result, tick=tick_result,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    except DirectoryUnavailableError as exc:
        db.session.rollback()
        logger.warning("Rule pass aborted: %s", exc, extra=log_extra)
        _record_failure(rule_id, now, exc)
        return RulePassResult(rule_id=rule_id, status="failed", error=str(exc),
                              duration_ms=int((time.monotonic() - start) * 1000))
    except Exception as exc:
        db.session.rollback()
        logger.exception("Rule pass failed", extra=log_extra)
        _record_failure(rule_id, now, exc)
        return RulePassResult(rule_id=rule_id, status="failed", error=str(exc),
                              duration_ms=int((time.monotonic() - start) * 1000))


def rules_to_evaluate(now, company_id: str | None = None) -> list[int]:
    """In-effect rules plus any rule that still has open assignments."""
    today = now.date()
    q = db.session.query(ComplianceRule.id).filter(
        ComplianceRule.is_active.is_(True),
        ComplianceRule.effective_date <= today,
        or_(ComplianceRule.expiry_date.is_(None), ComplianceRule.expiry_date >= today),
    )
    if company_id is not None:
        q = q.filter(ComplianceRule.company_id == company_id)
    ids = {row[0] for row in q.all()}
    ids |= repo.rules_with_open_assignments(company_id)
    return sorted(ids)


def _evaluate_in_worker(app, rule_id, now, policy, gateway) -> RulePassResult:
    with app.app_context():
        try:
            return evaluate_rule(rule_id, now=now, policy=policy, gateway=gateway)
        finally:
            db.session.remove()


def run_evaluation(*, now=None, company_id: str | None = None,
                   rule_ids: list[int] | None = None, app=None) -> dict:
    """Evaluate every relevant rule. Returns a batch summary."""
    app = app or current_app._get_current_object()
    now = now or utcnow()
    policy = EngineSettings.from_config(app.config)
    gateway = get_directory_gateway(app)

    ids = sorted(rule_ids) if rule_ids is not None else rules_to_evaluate(now, company_id)
    # Release the read transaction before the per-rule transactions start.
    db.session.commit()

    if policy.evaluation_workers > 1 and len(ids) > 1:
        with ThreadPoolExecutor(max_workers=policy.evaluation_workers) as pool:
            results = list(pool.map(
                lambda rid: _evaluate_in_worker(app, rid, now, policy, gateway), ids,
            ))
    else:
        results = [evaluate_rule(rid, now=now, policy=policy, gateway=gateway) for rid in ids]

    summary = {
        "evaluated_at": now.isoformat(),
        "rules": len(results),
        "succeeded": sum(1 for r in results if r.status == "success"),
        "failed": sum(1 for r in results if r.status == "failed"),
        "created": sum((r.reconcile or {}).get("created", 0) for r in results),
        "advanced": sum((r.tick or {}).get("advanced", 0) for r in results),
        "reminders": sum((r.tick or {}).get("reminders", 0) for r in results),
        "escalations": sum((r.tick or {}).get("escalations", 0) for r in results),
        "results": [r.to_dict() for r in results],
    }
    logger.info(
        "Evaluation pass: %d rules, %d failed, %d created, %d advanced",
        summary["rules"], summary["failed"], summary["created"], summary["advanced"],
        extra={"company_id": company_id},
    )
    return summary
