"""
Compliance API blueprint tests.

Covers rule authoring, completion/exemption events, the assignment read
model, rollups, evaluation status, manual trigger and health endpoints.
"""

from __future__ import annotations

from datetime import date

from conftest import COMPANY, emp, make_assignment, make_rule, utc
from compliance_engine.models import db as _db
from compliance_engine.services import assignment_repository
from compliance_engine.services.evaluation_engine import run_evaluation

BASE = "/api/v1/compliance"


def _rule_payload(**overrides):
    data = {
        "company_id": COMPANY,
        "name": "Annual Safety Training",
        "course_id": "SAFETY-101",
        "applies_to_all": True,
        "frequency_months": 12,
        "grace_period_days": 30,
        "reminder_days_before": 14,
        "effective_date": "2024-01-01",
    }
    data.update(overrides)
    return data


def _seed_assignments(directory):
    directory.set_company(COMPANY, [emp("e1", manager="m1"), emp("e2", manager="m1"), emp("m1")])
    make_rule()
    _db.session.commit()
    run_evaluation(now=utc(2024, 1, 1, 6))


# ═════════════════════════════════════════════════════════════════════════════
# Rules
# ═════════════════════════════════════════════════════════════════════════════


class TestRulesAPI:
    def test_create_and_get(self, client):
        res = client.post(f"{BASE}/rules", json=_rule_payload(), headers={"X-Actor": "author1"})
        assert res.status_code == 201
        body = res.get_json()
        assert body["warnings"] == []
        assert body["rule"]["created_by"] == "author1"
        rule_id = body["rule"]["id"]

        res = client.get(f"{BASE}/rules/{rule_id}")
        assert res.status_code == 200
        assert res.get_json()["course_id"] == "SAFETY-101"

    def test_create_no_op_rule_warns(self, client):
        res = client.post(f"{BASE}/rules", json=_rule_payload(applies_to_all=False))
        assert res.status_code == 201
        assert len(res.get_json()["warnings"]) == 1

    def test_create_validation_error(self, client):
        res = client.post(f"{BASE}/rules", json=_rule_payload(grace_period_days=-5))
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_CONSTRAINT"
        assert "grace_period_days" in body["details"]

    def test_non_object_body(self, client):
        res = client.post(f"{BASE}/rules", json=["nope"])
        assert res.status_code == 422

    def test_update_frozen_field_rejected(self, client):
        rule_id = client.post(f"{BASE}/rules", json=_rule_payload()).get_json()["rule"]["id"]
        res = client.put(f"{BASE}/rules/{rule_id}", json={"frequency_months": 6})
        assert res.status_code == 422
        assert "frequency_months" in res.get_json()["details"]

        res = client.put(f"{BASE}/rules/{rule_id}", json={"name": "Renamed"})
        assert res.status_code == 200
        assert res.get_json()["rule"]["name"] == "Renamed"

    def test_deactivate(self, client):
        rule_id = client.post(f"{BASE}/rules", json=_rule_payload()).get_json()["rule"]["id"]
        res = client.post(f"{BASE}/rules/{rule_id}/deactivate", json={})
        assert res.status_code == 200
        assert res.get_json()["is_active"] is False

    def test_list_requires_company(self, client):
        client.post(f"{BASE}/rules", json=_rule_payload())
        assert client.get(f"{BASE}/rules").status_code == 422
        res = client.get(f"{BASE}/rules?company_id={COMPANY}")
        assert res.get_json()["total"] == 1

    def test_cross_company_get_is_404(self, client):
        rule_id = client.post(f"{BASE}/rules", json=_rule_payload()).get_json()["rule"]["id"]
        assert client.get(f"{BASE}/rules/{rule_id}?company_id=globex").status_code == 404
        assert client.get(f"{BASE}/rules/9999").status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Events
# ═════════════════════════════════════════════════════════════════════════════


class TestEventsAPI:
    def test_completion_event(self, client, directory):
        _seed_assignments(directory)
        res = client.post(f"{BASE}/completions", json={
            "company_id": COMPANY, "employee_id": "e1", "course_id": "SAFETY-101",
            "completed_at": "2024-05-01T10:00:00Z",
        })
        assert res.status_code == 200
        body = res.get_json()
        assert len(body["completed"]) == 1
        assert body["completed"][0]["status"] == "completed"
        assert body["planned"][0]["cycle_start"] == "2024-05-01"

    def test_completion_validation(self, client):
        res = client.post(f"{BASE}/completions", json={
            "company_id": COMPANY, "employee_id": "e1", "course_id": "SAFETY-101",
        })
        assert res.status_code == 422
        res = client.post(f"{BASE}/completions", json={
            "company_id": COMPANY, "employee_id": "e1", "course_id": "SAFETY-101",
            "completed_at": "last tuesday",
        })
        assert res.status_code == 422

    def test_completion_that_keeps_losing_races_is_conflict(self, client, monkeypatch):
        make_assignment(make_rule(), status="due")
        _db.session.commit()
        monkeypatch.setattr(assignment_repository, "compare_and_swap",
                            lambda *args, **kwargs: False)

        res = client.post(f"{BASE}/completions", json={
            "company_id": COMPANY, "employee_id": "e1", "course_id": "SAFETY-101",
            "completed_at": "2024-05-01T10:00:00Z",
        })

        assert res.status_code == 409
        assert res.get_json()["details"]["action"] == "complete"

    def test_exemption_flow(self, client):
        a = make_assignment(make_rule(), status="overdue")
        _db.session.commit()

        res = client.post(f"{BASE}/assignments/{a.id}/exemption", json={
            "exemption_type": "role_change", "reason": "Moved to office role", "requested_by": "m1",
        })
        assert res.status_code == 201
        assert res.get_json()["exemption_status"] == "pending"

        res = client.post(f"{BASE}/assignments/{a.id}/exemption/approve",
                          json={"approved_by": "hr-lead"})
        assert res.status_code == 200
        body = res.get_json()
        assert body["status"] == "exempted"
        assert body["exemption"]["type"] == "role_change"

        # Terminal: a second request is a state conflict.
        res = client.post(f"{BASE}/assignments/{a.id}/exemption", json={
            "exemption_type": "medical", "reason": "x", "requested_by": "m1",
        })
        assert res.status_code == 409
        assert res.get_json()["details"]["current_status"] == "exempted"

    def test_reject_without_pending_is_conflict(self, client):
        a = make_assignment(make_rule())
        _db.session.commit()
        res = client.post(f"{BASE}/assignments/{a.id}/exemption/reject", json={"rejected_by": "hr"})
        assert res.status_code == 409

    def test_unknown_assignment(self, client):
        res = client.post(f"{BASE}/assignments/999/exemption", json={
            "exemption_type": "medical", "reason": "x", "requested_by": "m1",
        })
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Read model
# ═════════════════════════════════════════════════════════════════════════════


class TestReadModelAPI:
    def test_list_assignments_filters_and_pagination(self, client, directory):
        _seed_assignments(directory)

        res = client.get(f"{BASE}/assignments?company_id={COMPANY}&limit=2")
        body = res.get_json()
        assert res.status_code == 200
        assert body["total"] == 3
        assert len(body["items"]) == 2
        assert body["limit"] == 2

        res = client.get(f"{BASE}/assignments?company_id={COMPANY}&employee_id=e1")
        assert res.get_json()["total"] == 1

        res = client.get(f"{BASE}/assignments?company_id={COMPANY}&status=bogus")
        assert res.status_code == 400

        assert client.get(f"{BASE}/assignments?company_id=globex").get_json()["total"] == 0

    def test_assignment_detail_and_audit(self, client, directory):
        _seed_assignments(directory)
        run_evaluation(now=utc(2025, 2, 8, 9))
        a_id = client.get(f"{BASE}/assignments?company_id={COMPANY}&employee_id=e1") \
            .get_json()["items"][0]["id"]

        detail = client.get(f"{BASE}/assignments/{a_id}").get_json()
        assert detail["status"] == "escalated"
        assert detail["escalation_events"][0]["recipient_ids"] == ["m1"]

        audit = client.get(f"{BASE}/assignments/{a_id}/audit").get_json()
        events = [e["event_type"] for e in audit["items"]]
        assert events == ["assignment_created", "status_changed", "escalation_triggered"]
        assert audit["chain"]["valid"] is True

        assert client.get(f"{BASE}/assignments/{a_id}?company_id=globex").status_code == 404

    def test_employee_and_manager_rollups(self, client, directory):
        _seed_assignments(directory)
        run_evaluation(now=utc(2025, 1, 2))

        res = client.get(f"{BASE}/rollups/employees?company_id={COMPANY}")
        items = {i["employee_id"]: i for i in res.get_json()["items"]}
        assert items["e1"]["counts"]["due"] == 1
        assert items["e1"]["open"] == 1

        res = client.get(f"{BASE}/rollups/managers?company_id={COMPANY}")
        managers = res.get_json()["items"]
        assert [m["manager_id"] for m in managers] == ["m1"]
        assert managers[0]["direct_reports"] == ["e1", "e2"]
        assert managers[0]["counts"]["due"] == 2

    def test_manager_rollup_directory_down(self, client, directory):
        directory.set_unavailable(COMPANY)
        res = client.get(f"{BASE}/rollups/managers?company_id={COMPANY}")
        assert res.status_code == 503

    def test_evaluation_status(self, client, directory):
        _seed_assignments(directory)
        make_rule(name="Never evaluated", effective_date=date(2030, 1, 1))
        _db.session.commit()

        items = client.get(f"{BASE}/evaluations?company_id={COMPANY}").get_json()["items"]
        assert items[0]["last_status"] == "success"
        assert items[0]["last_success_at"].startswith("2024-01-01")
        assert items[1]["last_success_at"] is None

    def test_manual_run(self, client, directory):
        directory.set_company(COMPANY, [emp("e1")])
        make_rule()
        _db.session.commit()
        res = client.post(f"{BASE}/evaluations/run", json={"company_id": COMPANY})
        assert res.status_code == 200
        body = res.get_json()
        assert body["rules"] == 1
        assert body["created"] == 1


class TestHealthAPI:
    def test_ready(self, client):
        res = client.get("/api/v1/health/ready")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_live(self, client):
        res = client.get("/api/v1/health/live")
        assert res.status_code == 200
        checks = res.get_json()["checks"]
        assert checks["database"]["status"] == "ok"
        assert checks["redis"]["status"] == "skipped"
        assert checks["directory"]["status"] == "ok"
        assert checks["evaluation"] == {"status": "never_run"}

    def test_unknown_route(self, client):
        res = client.get("/api/v1/nothing-here")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"


class TestCLI:
    def test_compliance_tick(self, app, directory):
        directory.set_company(COMPANY, [emp("e1"), emp("e2")])
        make_rule()
        _db.session.commit()

        result = app.test_cli_runner().invoke(
            args=["compliance-tick", "--company-id", COMPANY, "--now", "2024-01-01T06:00:00Z"],
        )
        assert result.exit_code == 0
        assert "created=2" in result.output

    def test_dispatch_intents(self, app):
        result = app.test_cli_runner().invoke(args=["dispatch-intents", "--limit", "10"])
        assert result.exit_code == 0
        assert "attempted=0" in result.output

    def test_run_due_jobs(self, app):
        result = app.test_cli_runner().invoke(args=["run-due-jobs"])
        assert result.exit_code == 0
        assert "compliance_evaluation: success" in result.output
        assert "intent_dispatch: success" in result.output
