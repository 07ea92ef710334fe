"""
Target resolver, escalation router and policy tests (pure, snapshot-based).
"""

from __future__ import annotations

import dataclasses
from datetime import date

import pytest

from conftest import COMPANY, emp, utc
from compliance_engine.integrations.directory_gateway import DirectorySnapshot
from compliance_engine.models.compliance import ComplianceAssignment, ComplianceRule
from compliance_engine.services.escalation_router import (
    hr_group_address,
    reminder_recipient,
    resolve_recipient,
)
from compliance_engine.services.policy import EngineSettings
from compliance_engine.services.target_resolver import resolve

NOW = utc(2024, 6, 1, 12)


def _rule(**overrides) -> ComplianceRule:
    fields = dict(
        id=1, company_id=COMPANY, name="r", course_id="C1",
        applies_to_all=False, target_departments=[], target_positions=[],
        frequency_months=12, grace_period_days=0, reminder_days_before=14,
        effective_date=date(2024, 1, 1), expiry_date=None, is_active=True,
    )
    fields.update(overrides)
    return ComplianceRule(**fields)


def _directory() -> DirectorySnapshot:
    return DirectorySnapshot.build(COMPANY, [
        emp("e1", department="ops", position="tech", manager="m1"),
        emp("e2", department="fin", position="analyst", manager="m1"),
        emp("e3", department="ops", position="lead", status="on_leave"),
        emp("e4", department="hr", position="tech", status="terminated"),
        emp("e5", department=None, position="tech", manager="gone"),
        emp("m1", department="mgmt"),
    ], hr_admin_ids=["hr2", "hr1"])


class TestTargetResolver:
    def test_applies_to_all_active_only(self):
        assert resolve(_rule(applies_to_all=True), _directory(), NOW) == {"e1", "e2", "e5", "m1"}

    def test_department_or_position(self):
        rule = _rule(target_departments=["ops"], target_positions=["analyst"])
        assert resolve(rule, _directory(), NOW) == {"e1", "e2"}

    def test_position_only(self):
        assert resolve(_rule(target_positions=["tech"]), _directory(), NOW) == {"e1", "e5"}

    def test_no_targeting_matches_nobody(self):
        assert resolve(_rule(), _directory(), NOW) == frozenset()

    @pytest.mark.parametrize("overrides", [
        {"is_active": False},
        {"effective_date": date(2024, 7, 1)},
        {"expiry_date": date(2024, 5, 31)},
    ])
    def test_not_in_effect(self, overrides):
        rule = _rule(applies_to_all=True, **overrides)
        assert resolve(rule, _directory(), NOW) == frozenset()

    def test_expiry_day_is_inclusive(self):
        rule = _rule(applies_to_all=True, expiry_date=date(2024, 6, 1))
        assert "e1" in resolve(rule, _directory(), NOW)

    def test_other_company_snapshot_ignored(self):
        other = DirectorySnapshot.build("globex", [emp("x1", company_id="globex")])
        assert resolve(_rule(applies_to_all=True), other, NOW) == frozenset()

    def test_deterministic(self):
        rule = _rule(target_departments=["ops", "fin"])
        snapshot = _directory()
        assert resolve(rule, snapshot, NOW) == resolve(rule, snapshot, NOW)


class TestEscalationRouter:
    def _assignment(self, employee_id="e1"):
        return ComplianceAssignment(id=10, company_id=COMPANY, rule_id=1, employee_id=employee_id)

    def test_tier_one_goes_to_manager(self):
        recipient = resolve_recipient(self._assignment(), 1, _directory(), EngineSettings())
        assert (recipient.kind, recipient.ids, recipient.is_fallback) == ("manager", ("m1",), False)

    def test_tier_two_goes_to_hr_admins(self):
        recipient = resolve_recipient(self._assignment(), 2, _directory(), EngineSettings())
        assert (recipient.kind, recipient.ids, recipient.is_fallback) == ("hr", ("hr1", "hr2"), False)

    def test_unresolvable_manager_falls_back_to_hr(self):
        # e5's manager is not in the snapshot; m1 has no manager at all.
        for employee_id in ("e5", "m1", "unknown"):
            recipient = resolve_recipient(self._assignment(employee_id), 1, _directory(),
                                          EngineSettings())
            assert recipient.kind == "hr"
            assert recipient.is_fallback is True

    def test_hr_group_address_when_no_admins(self):
        snapshot = DirectorySnapshot.build(COMPANY, [emp("e1")])
        recipient = resolve_recipient(self._assignment(), 1, snapshot, EngineSettings())
        assert recipient.ids == (hr_group_address(COMPANY),)
        assert recipient.ids == ("hr:acme",)

    def test_reminder_goes_to_employee(self):
        recipient = reminder_recipient(self._assignment())
        assert recipient.to_dict() == {"kind": "employee", "ids": ["e1"], "is_fallback": False}


class TestEngineSettings:
    def test_route_for_tier_uses_highest_configured_tier(self):
        policy = EngineSettings(escalation_routes={1: "manager", 3: "hr"})
        assert policy.route_for_tier(1) == "manager"
        assert policy.route_for_tier(2) == "manager"
        assert policy.route_for_tier(5) == "hr"

    def test_from_config(self, app):
        policy = EngineSettings.from_config(app.config)
        assert policy.escalation_interval_days == 7
        assert policy.max_escalation_tier == 3
        assert dict(policy.escalation_routes) == {1: "manager", 2: "hr"}

    @pytest.mark.parametrize("kwargs", [
        {"escalation_interval_days": 0},
        {"max_escalation_tier": -1},
        {"evaluation_workers": 0},
        {"escalation_routes": {1: "ceo"}},
    ])
    def test_rejects_bad_values(self, kwargs):
        with pytest.raises(ValueError):
            EngineSettings(**kwargs)

    def test_settings_are_immutable(self):
        policy = EngineSettings()
        with pytest.raises(dataclasses.FrozenInstanceError):
            policy.max_escalation_tier = 9
