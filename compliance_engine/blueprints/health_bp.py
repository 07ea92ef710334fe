"""
Health check blueprint.

Endpoints:
    GET /api/v1/health/ready : 200 as soon as the app serves requests
    GET /api/v1/health/live  : database, Redis and directory-service status,
                               plus the outcome of the last evaluation job

Only the database and directory checks affect the overall status; a down
Redis degrades rate limiting, not the engine.
"""

import logging
import time

import redis
from flask import Blueprint, current_app, jsonify

from compliance_engine.models import db
from compliance_engine.models.base import iso
from compliance_engine.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

health_bp = Blueprint("health", __name__, url_prefix="/api/v1/health")


def _timed(fn) -> dict:
    t0 = time.perf_counter()
    fn()
    return {"status": "ok", "latency_ms": round((time.perf_counter() - t0) * 1000, 1)}


def _check_database() -> dict:
    try:
        return _timed(lambda: db.session.execute(db.text("SELECT 1")))
    except Exception as exc:
        logger.error("Health check: database failed: %s", exc)
        return {"status": "error", "detail": str(exc)}


def _check_redis() -> dict:
    redis_url = current_app.config.get("REDIS_URL") or ""
    if current_app.testing or not redis_url.startswith("redis"):
        return {"status": "skipped"}
    try:
        return _timed(lambda: redis.from_url(redis_url, socket_timeout=2).ping())
    except redis.RedisError as exc:
        return {"status": "error", "detail": str(exc)}


def _check_directory() -> dict:
    gateway = current_app.extensions.get("directory_gateway")
    if gateway is None:
        return {"status": "error", "detail": "not configured"}
    kind = type(gateway).__name__
    return {"status": "ok" if gateway.ping() else "error", "kind": kind}


def _last_evaluation() -> dict:
    job = ScheduledJob.query.filter_by(job_name="compliance_evaluation").first()
    if job is None or job.last_run_at is None:
        return {"status": "never_run"}
    return {"status": job.last_run_status, "last_run_at": iso(job.last_run_at)}


@health_bp.route("/ready", methods=["GET"])
def ready():
    return jsonify({"status": "ok"}), 200


@health_bp.route("/live", methods=["GET"])
def live():
    checks = {
        "database": _check_database(),
        "redis": _check_redis(),
        "directory": _check_directory(),
    }
    healthy = checks["database"]["status"] == "ok" and checks["directory"]["status"] == "ok"
    if checks["database"]["status"] == "ok":
        checks["evaluation"] = _last_evaluation()

    return jsonify({
        "status": "healthy" if healthy else "degraded",
        "checks": checks,
    }), 200 if healthy else 503
