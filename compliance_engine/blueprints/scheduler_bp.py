"""
Scheduler API blueprint.

Endpoints:
    GET    /api/v1/scheduler/jobs
    GET    /api/v1/scheduler/jobs/<job_name>
    POST   /api/v1/scheduler/jobs/<job_name>/run
    POST   /api/v1/scheduler/jobs/<job_name>/toggle   {"enabled": true|false}
"""

import logging

from flask import Blueprint, jsonify, request

from compliance_engine.services.scheduler_service import SchedulerService
from compliance_engine.utils.errors import E, api_error

logger = logging.getLogger(__name__)

scheduler_bp = Blueprint("scheduler", __name__, url_prefix="/api/v1/scheduler")


@scheduler_bp.route("/jobs", methods=["GET"])
def list_scheduled_jobs():
    """List all registered jobs with their status."""
    jobs = SchedulerService.list_jobs()
    return jsonify({"jobs": jobs, "total": len(jobs)})


@scheduler_bp.route("/jobs/<job_name>", methods=["GET"])
def get_job_status(job_name):
    job = SchedulerService.get_job_status(job_name)
    if not job:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    return jsonify(job)


@scheduler_bp.route("/jobs/<job_name>/run", methods=["POST"])
def run_job(job_name):
    """Manually trigger a job; runs even when the job is paused."""
    result = SchedulerService.run_job(job_name, force=True)
    if result.get("status") == "error" and "Unknown job" in (result.get("error") or ""):
        return api_error(E.NOT_FOUND, result["error"])
    status = 500 if result.get("status") == "failed" else 200
    return jsonify(result), status


@scheduler_bp.route("/jobs/<job_name>/toggle", methods=["POST"])
def toggle_job(job_name):
    """Enable or disable a scheduled job."""
    data = request.get_json(silent=True) or {}
    enabled = data.get("enabled")
    if not isinstance(enabled, bool):
        return api_error(E.VALIDATION_REQUIRED, "'enabled' field is required (true/false)")

    result = SchedulerService.toggle_job(job_name, enabled)
    if not result:
        return api_error(E.NOT_FOUND, f"Job '{job_name}' not found")
    logger.info("Job %s %s", job_name, "enabled" if enabled else "paused",
                extra={"job_name": job_name})
    return jsonify(result)
