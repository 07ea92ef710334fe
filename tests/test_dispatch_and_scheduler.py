"""
Notification intent relay + scheduler tests.

Covers:
  - dispatch_pending hands pending intents to the dispatcher exactly once
  - failed deliveries retry until COMPLIANCE_DISPATCH_MAX_ATTEMPTS, then give up
  - WebhookDispatcher request shape and failure handling (mocked requests session)
  - SchedulerService registration, run, pause/force and job bookkeeping
  - scheduler API endpoints
"""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import MagicMock

import requests

from conftest import emp, make_assignment, make_rule, utc
from compliance_engine.integrations.dispatch_gateway import (
    DispatchResult,
    LoggingDispatcher,
    WebhookDispatcher,
    dispatcher_from_config,
)
from compliance_engine.models import db as _db
from compliance_engine.models.base import utcnow
from compliance_engine.models.compliance import ComplianceAssignment, NotificationIntent
from compliance_engine.models.scheduling import ScheduledJob
from compliance_engine.services import assignment_repository as repo
from compliance_engine.services.escalation_router import RecipientRef
from compliance_engine.services.intent_dispatch import dispatch_pending
from compliance_engine.services.scheduler_service import SchedulerService, get_registered_jobs, is_due


def _intent(template="reminder", tier=0, employee_id="e1"):
    rule = make_rule()
    a = make_assignment(rule, employee_id=employee_id)
    kind, ids = ("employee", ("e1",)) if template == "reminder" else ("manager", ("m1",))
    intent = repo.record_intent(
        assignment=a, template=template, tier=tier,
        recipient=RecipientRef(kind=kind, ids=ids), payload={"course_id": rule.course_id},
    )
    _db.session.commit()
    return intent


def _response(ok=True, status_code=202, text=""):
    r = MagicMock()
    r.ok = ok
    r.status_code = status_code
    r.text = text
    return r


# ═════════════════════════════════════════════════════════════════════════════
# Intent relay
# ═════════════════════════════════════════════════════════════════════════════


class TestDispatchPending:
    def test_dispatches_once(self, dispatcher):
        intent = _intent(template="escalation", tier=1)

        summary = dispatch_pending()
        assert summary == {"attempted": 1, "dispatched": 1, "retrying": 0, "failed": 0}
        assert dispatcher.sent[0]["template"] == "escalation"
        assert dispatcher.sent[0]["tier"] == 1
        assert dispatcher.sent[0]["recipient"] == {"kind": "manager", "ids": ["m1"]}

        again = dispatch_pending()
        assert again["attempted"] == 0
        assert _db.session.get(NotificationIntent, intent.id).dispatch_status == "dispatched"

    def test_reminder_message_has_no_tier(self, dispatcher):
        _intent()
        dispatch_pending()
        assert "tier" not in dispatcher.sent[0]
        assert dispatcher.sent[0]["payload"] == {"course_id": "SAFETY-101"}

    def test_failures_retry_then_give_up(self):
        intent = _intent()
        failing = MagicMock()
        failing.dispatch.return_value = DispatchResult(ok=False, status_code=503, error="HTTP 503")

        for _ in range(4):
            summary = dispatch_pending(dispatcher=failing)
            assert summary["retrying"] == 1
        final = dispatch_pending(dispatcher=failing)
        assert final["failed"] == 1

        row = _db.session.get(NotificationIntent, intent.id)
        assert row.dispatch_status == "failed"
        assert row.attempts == 5
        assert row.last_error == "HTTP 503"
        assert dispatch_pending(dispatcher=failing)["attempted"] == 0

    def test_company_filter(self, dispatcher):
        _intent()
        assert dispatch_pending(company_id="globex")["attempted"] == 0
        assert dispatch_pending(company_id="acme")["dispatched"] == 1


class TestWebhookDispatcher:
    def test_posts_json_with_idempotency_key(self):
        session = MagicMock()
        session.post.return_value = _response()
        dispatcher = WebhookDispatcher("https://notify.example.com/hook", session=session)

        result = dispatcher.dispatch({"intent_id": 7, "template": "reminder"})

        assert result.ok is True
        _, kwargs = session.post.call_args
        assert kwargs["json"] == {"intent_id": 7, "template": "reminder"}
        assert kwargs["headers"]["Idempotency-Key"] == "intent-7"

    def test_http_error_is_reported_not_raised(self):
        session = MagicMock()
        session.post.return_value = _response(ok=False, status_code=500, text="boom")
        result = WebhookDispatcher("https://x", session=session).dispatch({"intent_id": 1})
        assert result.ok is False
        assert result.error == "HTTP 500: boom"

    def test_timeout_is_reported_not_raised(self):
        session = MagicMock()
        session.post.side_effect = requests.Timeout()
        result = WebhookDispatcher("https://x", timeout=3, session=session).dispatch({"intent_id": 1})
        assert result.ok is False
        assert "timed out" in result.error

    def test_factory_picks_adapter(self):
        assert isinstance(dispatcher_from_config({}), LoggingDispatcher)
        assert isinstance(dispatcher_from_config({"NOTIFICATION_DISPATCHER_URL": "https://x"}),
                          WebhookDispatcher)


# ═════════════════════════════════════════════════════════════════════════════
# Scheduler
# ═════════════════════════════════════════════════════════════════════════════


class TestSchedulerService:
    def test_registered_jobs(self):
        jobs = get_registered_jobs()
        assert {"compliance_evaluation", "intent_dispatch"} <= set(jobs)

    def test_ensure_jobs_registered(self):
        created = SchedulerService.ensure_jobs_registered()
        assert len(created) == 2

        jobs = ScheduledJob.query.order_by(ScheduledJob.job_name).all()
        assert [j.job_name for j in jobs] == ["compliance_evaluation", "intent_dispatch"]
        assert jobs[0].interval_minutes == 60

        assert SchedulerService.ensure_jobs_registered() == []

    def test_run_evaluation_job(self, directory):
        directory.set_company("acme", [emp("e1"), emp("e2")])
        make_rule()
        _db.session.commit()
        SchedulerService.ensure_jobs_registered()

        result = SchedulerService.run_job("compliance_evaluation")

        assert result["status"] == "success"
        assert result["result"]["created"] == 2
        assert "results" not in result["result"]
        assert ComplianceAssignment.query.count() == 2
        job = ScheduledJob.query.filter_by(job_name="compliance_evaluation").one()
        assert job.run_count == 1
        assert job.last_run_status == "success"

    def test_paused_job_skipped_unless_forced(self, dispatcher):
        _intent()
        SchedulerService.ensure_jobs_registered()
        SchedulerService.toggle_job("intent_dispatch", False)

        assert SchedulerService.run_job("intent_dispatch")["status"] == "skipped"
        assert dispatcher.sent == []

        forced = SchedulerService.run_job("intent_dispatch", force=True)
        assert forced["status"] == "success"
        assert forced["result"]["dispatched"] == 1

    def test_unknown_job(self):
        result = SchedulerService.run_job("unknown_job_xyz")
        assert result["status"] == "error"
        assert "Unknown job" in result["error"]


class TestDueJobs:
    def test_is_due(self):
        registered = get_registered_jobs()["intent_dispatch"]
        now = utc(2025, 1, 1, 12)
        job = ScheduledJob(job_name="intent_dispatch", is_enabled=True, interval_minutes=15)
        assert is_due(job, registered, now) is True

        job.last_run_at = now - timedelta(minutes=10)
        assert is_due(job, registered, now) is False
        job.last_run_at = now - timedelta(minutes=15)
        assert is_due(job, registered, now) is True

        job.is_enabled = False
        assert is_due(job, registered, now) is False

    def test_run_due_jobs(self, dispatcher):
        first = SchedulerService.run_due_jobs()
        assert {r["job_name"] for r in first} == {"compliance_evaluation", "intent_dispatch"}
        assert all(r["status"] == "success" for r in first)

        assert SchedulerService.run_due_jobs() == []

        later = SchedulerService.run_due_jobs(now=utcnow() + timedelta(minutes=16))
        assert [r["job_name"] for r in later] == ["intent_dispatch"]

    def test_paused_job_never_due(self):
        SchedulerService.ensure_jobs_registered()
        SchedulerService.toggle_job("compliance_evaluation", False)
        names = [r["job_name"] for r in SchedulerService.run_due_jobs()]
        assert names == ["intent_dispatch"]


class TestSchedulerAPI:
    def test_list_and_status(self, client):
        SchedulerService.ensure_jobs_registered()
        res = client.get("/api/v1/scheduler/jobs")
        assert res.status_code == 200
        assert res.get_json()["total"] >= 2

        res = client.get("/api/v1/scheduler/jobs/intent_dispatch")
        assert res.status_code == 200
        assert res.get_json()["job_name"] == "intent_dispatch"

        assert client.get("/api/v1/scheduler/jobs/nope").status_code == 404

    def test_run_and_toggle(self, client):
        SchedulerService.ensure_jobs_registered()
        res = client.post("/api/v1/scheduler/jobs/intent_dispatch/run")
        assert res.status_code == 200
        assert res.get_json()["status"] == "success"

        assert client.post("/api/v1/scheduler/jobs/nope/run").status_code == 404

        res = client.post("/api/v1/scheduler/jobs/intent_dispatch/toggle", json={"enabled": False})
        assert res.status_code == 200
        assert res.get_json()["status"] == "paused"

        res = client.post("/api/v1/scheduler/jobs/intent_dispatch/toggle", json={})
        assert res.status_code == 400
