"""
Assignment generator + repository tests.

Covers:
  - create_if_absent idempotency on the natural key
  - at most one open assignment per (rule, employee), enforced by storage
  - compare_and_swap guards on (status, tier)
  - reconcile: first cycles, redelivered passes, targeting changes, recertification intents
  - due date computation for recurring and one-time rules
"""

from __future__ import annotations

from datetime import date

import pytest

from conftest import make_assignment, make_rule, utc
from compliance_engine.models import db as _db
from compliance_engine.models.audit import ComplianceAuditLog
from compliance_engine.models.compliance import ComplianceAssignment, RecertificationIntent
from compliance_engine.services import assignment_repository as repo
from compliance_engine.services.assignment_generator import compute_due_date, reconcile
from compliance_engine.services.policy import EngineSettings

POLICY = EngineSettings()


def _fields(rule, employee_id="e1", cycle_start=date(2024, 1, 1), **extra):
    fields = dict(
        company_id=rule.company_id,
        rule_id=rule.id,
        employee_id=employee_id,
        course_id=rule.course_id,
        cycle_start=cycle_start,
        due_date=date(2025, 1, 1),
        status="assigned",
        escalation_tier=0,
        source="rule_based",
    )
    fields.update(extra)
    return fields


# ═════════════════════════════════════════════════════════════════════════════
# Repository
# ═════════════════════════════════════════════════════════════════════════════


class TestRepository:
    def test_create_if_absent_is_idempotent(self):
        rule = make_rule()
        first, created = repo.create_if_absent(**_fields(rule))
        assert created is True
        assert first.id is not None

        again, created_again = repo.create_if_absent(**_fields(rule))
        assert created_again is False
        assert again is None
        assert ComplianceAssignment.query.count() == 1

    def test_second_open_cycle_rejected_by_storage(self):
        rule = make_rule()
        repo.create_if_absent(**_fields(rule))
        _, created = repo.create_if_absent(**_fields(rule, cycle_start=date(2024, 6, 1)))
        assert created is False
        assert ComplianceAssignment.query.count() == 1

    def test_new_cycle_allowed_once_previous_resolved(self):
        rule = make_rule()
        make_assignment(rule, status="completed")
        _, created = repo.create_if_absent(**_fields(rule, cycle_start=date(2025, 1, 1)))
        assert created is True
        assert repo.open_employee_ids(rule.id) == {"e1"}

    def test_open_slots_are_per_rule(self):
        rule_a = make_rule()
        rule_b = make_rule(name="Second rule")
        repo.create_if_absent(**_fields(rule_a))
        _, created = repo.create_if_absent(**_fields(rule_b))
        assert created is True

    def test_compare_and_swap_guards_status_and_tier(self):
        rule = make_rule()
        a = make_assignment(rule, status="overdue")

        assert repo.compare_and_swap(a.id, "due", 0, status="overdue") is False
        assert repo.compare_and_swap(a.id, "overdue", 1, status="escalated") is False
        assert repo.compare_and_swap(a.id, "overdue", 0, status="escalated", escalation_tier=1) is True
        assert (a.status, a.escalation_tier) == ("escalated", 1)
        # Stale expectation loses.
        assert repo.compare_and_swap(a.id, "overdue", 0, status="completed") is False

    def test_history_and_open_queries(self):
        rule = make_rule()
        make_assignment(rule, employee_id="e1", status="completed")
        make_assignment(rule, employee_id="e2")
        assert repo.employees_with_history(rule.id) == {"e1", "e2"}
        assert repo.open_employee_ids(rule.id) == {"e2"}
        assert repo.rules_with_open_assignments() == {rule.id}
        assert repo.rules_with_open_assignments("other-co") == set()


# ═════════════════════════════════════════════════════════════════════════════
# Due dates
# ═════════════════════════════════════════════════════════════════════════════


class TestComputeDueDate:
    def test_recurring_adds_calendar_months(self):
        rule = make_rule(frequency_months=12)
        assert compute_due_date(rule, date(2024, 1, 1), POLICY) == date(2025, 1, 1)

    def test_month_end_clamps(self):
        rule = make_rule(frequency_months=1)
        assert compute_due_date(rule, date(2024, 1, 31), POLICY) == date(2024, 2, 29)

    def test_one_time_uses_rule_window(self):
        rule = make_rule(frequency_months=None, one_time_window_days=30)
        assert compute_due_date(rule, date(2024, 1, 1), POLICY) == date(2024, 1, 31)

    def test_one_time_falls_back_to_policy_window(self):
        rule = make_rule(frequency_months=None)
        assert compute_due_date(rule, date(2024, 1, 1), EngineSettings(one_time_window_days=10)) \
            == date(2024, 1, 11)
        assert compute_due_date(rule, date(2024, 1, 1), POLICY) == date(2024, 1, 1)

    def test_zero_rule_window_overrides_policy(self):
        rule = make_rule(frequency_months=None, one_time_window_days=0)
        assert compute_due_date(rule, date(2024, 1, 1), EngineSettings(one_time_window_days=10)) \
            == date(2024, 1, 1)


# ═════════════════════════════════════════════════════════════════════════════
# reconcile
# ═════════════════════════════════════════════════════════════════════════════


class TestReconcile:
    def test_first_cycle_for_matched_employees(self):
        rule = make_rule(effective_date=date(2024, 1, 1))
        result = reconcile(rule, frozenset({"e1", "e2"}), utc(2024, 1, 1, 8), POLICY)

        assert len(result.created) == 2
        rows = ComplianceAssignment.query.order_by(ComplianceAssignment.employee_id).all()
        assert [r.employee_id for r in rows] == ["e1", "e2"]
        assert all(r.cycle_start == date(2024, 1, 1) for r in rows)
        assert all(r.due_date == date(2025, 1, 1) for r in rows)
        assert all(r.source == "rule_based" for r in rows)

    def test_cycle_starts_at_effective_date_when_later(self):
        rule = make_rule(effective_date=date(2024, 3, 1))
        reconcile(rule, frozenset({"e1"}), utc(2024, 1, 15), POLICY)
        assert ComplianceAssignment.query.one().cycle_start == date(2024, 3, 1)

    def test_redelivered_pass_creates_nothing(self):
        rule = make_rule()
        reconcile(rule, frozenset({"e1"}), utc(2024, 1, 1), POLICY)
        again = reconcile(rule, frozenset({"e1"}), utc(2024, 1, 1, 1), POLICY)
        later = reconcile(rule, frozenset({"e1"}), utc(2024, 2, 1), POLICY)

        assert again.created == []
        assert later.created == []
        assert ComplianceAssignment.query.count() == 1

    def test_history_blocks_new_first_cycle(self):
        rule = make_rule()
        make_assignment(rule, status="completed")
        result = reconcile(rule, frozenset({"e1"}), utc(2025, 3, 1), POLICY)
        assert result.created == []
        assert ComplianceAssignment.query.count() == 1

    def test_out_of_scope_open_assignment_is_retired_not_cancelled(self):
        rule = make_rule()
        a = make_assignment(rule, status="due")
        result = reconcile(rule, frozenset(), utc(2025, 1, 5), POLICY)

        assert result.retired == ["e1"]
        assert _db.session.get(ComplianceAssignment, a.id).status == "due"

    def test_creation_is_audited(self):
        rule = make_rule()
        result = reconcile(rule, frozenset({"e1"}), utc(2024, 1, 1), POLICY)
        entry = ComplianceAuditLog.query.filter_by(
            entity_type="assignment", entity_id=str(result.created[0]),
        ).one()
        assert entry.event_type == "assignment_created"
        assert entry.new_values["due_date"] == "2025-01-01"

    def test_recertification_intent_consumed(self):
        rule = make_rule()
        previous = make_assignment(rule, status="completed")
        intent, _ = repo.record_recertification_intent(
            company_id=rule.company_id, rule_id=rule.id, employee_id="e1",
            cycle_start=date(2025, 1, 20), source_assignment_id=previous.id,
        )

        result = reconcile(rule, frozenset({"e1"}), utc(2025, 1, 21), POLICY)

        assert len(result.created) == 1
        created = _db.session.get(ComplianceAssignment, result.created[0])
        assert created.cycle_start == date(2025, 1, 20)
        assert created.due_date == date(2026, 1, 20)
        assert created.source == "recertification"
        assert intent.status == "consumed"
        assert intent.consumed_assignment_id == created.id

    def test_intent_left_pending_when_employee_no_longer_targeted(self):
        rule = make_rule()
        previous = make_assignment(rule, status="completed")
        repo.record_recertification_intent(
            company_id=rule.company_id, rule_id=rule.id, employee_id="e1",
            cycle_start=date(2025, 1, 20), source_assignment_id=previous.id,
        )

        result = reconcile(rule, frozenset(), utc(2025, 1, 21), POLICY)

        assert result.created == []
        assert result.pending_intents == 1
        assert RecertificationIntent.query.one().status == "pending"
        assert RecertificationIntent.query.one().deferred_at == utc(2025, 1, 21)

        # Later passes keep the first deferral time.
        reconcile(rule, frozenset(), utc(2025, 2, 1), POLICY)
        assert RecertificationIntent.query.one().deferred_at == utc(2025, 1, 21)

    @pytest.mark.parametrize("returned_at, expected_start", [
        (utc(2025, 6, 1, 8), date(2025, 6, 1)),
        # Back in scope before the planned start: the planned start still holds.
        (utc(2025, 1, 10), date(2025, 1, 20)),
    ])
    def test_deferred_intent_starts_no_earlier_than_return(self, returned_at, expected_start):
        rule = make_rule()
        previous = make_assignment(rule, status="completed")
        intent, _ = repo.record_recertification_intent(
            company_id=rule.company_id, rule_id=rule.id, employee_id="e1",
            cycle_start=date(2025, 1, 20), source_assignment_id=previous.id,
        )
        reconcile(rule, frozenset(), utc(2025, 1, 5), POLICY)

        result = reconcile(rule, frozenset({"e1"}), returned_at, POLICY)

        created = _db.session.get(ComplianceAssignment, result.created[0])
        assert created.cycle_start == expected_start
        assert intent.status == "consumed"

    def test_intent_for_existing_cycle_is_consumed_without_duplicate(self):
        rule = make_rule()
        previous = make_assignment(rule, status="completed")
        existing = make_assignment(rule, cycle_start=date(2025, 1, 20), due_date=date(2026, 1, 20),
                                   source="recertification")
        intent, _ = repo.record_recertification_intent(
            company_id=rule.company_id, rule_id=rule.id, employee_id="e1",
            cycle_start=date(2025, 1, 20), source_assignment_id=previous.id,
        )

        result = reconcile(rule, frozenset({"e1"}), utc(2025, 1, 21), POLICY)

        assert result.created == []
        assert intent.status == "consumed"
        assert intent.consumed_assignment_id == existing.id
        assert ComplianceAssignment.query.count() == 2

    @pytest.mark.parametrize("status", ["completed", "exempted"])
    def test_duplicate_intent_ignored(self, status):
        rule = make_rule()
        previous = make_assignment(rule, status=status)
        kwargs = dict(company_id=rule.company_id, rule_id=rule.id, employee_id="e1",
                      cycle_start=date(2025, 1, 20), source_assignment_id=previous.id)
        _, first = repo.record_recertification_intent(**kwargs)
        _, second = repo.record_recertification_intent(**kwargs)
        assert (first, second) == (True, False)
