"""
Middleware and ambient wiring: log formatters, request timing headers,
rate-limit registration, health degradation and the JSON error envelope.
"""

from __future__ import annotations

import json
import logging
from unittest.mock import MagicMock

from compliance_engine.middleware.logging_config import JSONFormatter, ReadableFormatter
from compliance_engine.middleware.rate_limiter import init_rate_limits


def _record(msg="Escalation tier %d", args=(2,), **extra):
    return logging.makeLogRecord({
        "name": "compliance_engine.services.lifecycle_clock",
        "levelname": "INFO",
        "levelno": logging.INFO,
        "msg": msg,
        "args": args,
        **extra,
    })


class TestFormatters:
    def test_json_formatter_nests_context(self):
        line = JSONFormatter().format(_record(assignment_id=7, rule_id=3, tier=2))
        entry = json.loads(line)
        assert entry["message"] == "Escalation tier 2"
        assert entry["level"] == "INFO"
        assert entry["context"] == {"rule_id": 3, "assignment_id": 7, "tier": 2}

    def test_json_formatter_without_context(self):
        entry = json.loads(JSONFormatter().format(_record()))
        assert "context" not in entry

    def test_readable_formatter_appends_keys(self):
        line = ReadableFormatter().format(_record(rule_id=3, duration_ms=12.4))
        assert "Escalation tier 2 rule_id=3 [12ms]" in line


class TestRequestTiming:
    def test_headers_present(self, client):
        res = client.get("/api/v1/compliance/rules?company_id=acme")
        assert res.headers["X-Request-ID"]
        assert float(res.headers["X-Request-Duration-Ms"]) >= 0

    def test_request_id_echoed(self, client):
        res = client.get("/api/v1/health/ready", headers={"X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"


class TestRateLimits:
    def test_limits_applied_per_blueprint(self):
        app = MagicMock()
        compliance, health = MagicMock(), MagicMock()
        app.config = {"RATE_LIMITS": {"compliance": "5/minute", "missing": "1/minute"}}
        app.blueprints = {"compliance": compliance, "health": health}
        limiter = MagicMock()

        init_rate_limits(app, limiter)

        limiter.limit.assert_called_once_with("5/minute")
        limiter.limit.return_value.assert_called_once_with(compliance)
        limiter.exempt.assert_called_once_with(health)

    def test_disabled(self):
        app = MagicMock()
        app.config = {"RATELIMIT_ENABLED": False, "RATE_LIMITS": {"compliance": "5/minute"}}
        limiter = MagicMock()
        init_rate_limits(app, limiter)
        limiter.limit.assert_not_called()


class TestHealthDegraded:
    def test_directory_down_is_503(self, app, client):
        gateway = MagicMock()
        gateway.ping.return_value = False
        app.extensions["directory_gateway"] = gateway

        res = client.get("/api/v1/health/live")
        assert res.status_code == 503
        body = res.get_json()
        assert body["status"] == "degraded"
        assert body["checks"]["directory"]["status"] == "error"
        assert body["checks"]["database"]["status"] == "ok"


class TestErrorEnvelope:
    def test_directory_outage_maps_to_503(self, client, directory):
        directory.set_unavailable("acme")
        res = client.get("/api/v1/compliance/rollups/managers?company_id=acme")
        assert res.status_code == 503
        assert res.get_json() == {
            "error": "Directory service unavailable",
            "code": "ERR_UPSTREAM_UNAVAILABLE",
        }

    def test_method_not_allowed(self, client):
        res = client.delete("/api/v1/health/ready")
        assert res.status_code == 405
        assert res.get_json()["code"] == "ERR_METHOD_NOT_ALLOWED"
