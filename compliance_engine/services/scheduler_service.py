"""
Compliance Training Engine
Scheduler Service.

The engine keeps no timers of its own. Something outside the process (cron,
a Kubernetes CronJob, the scheduler API, or ``flask run-due-jobs``) calls
``SchedulerService.run_due_jobs`` or ``run_job``; the ScheduledJob rows are
the only state that has to survive a restart.

Jobs register themselves with an interval:

    @register_job("intent_dispatch", every_minutes=15)
    def run_intent_dispatch(app):
        ...

A job is *due* when it is enabled and its last run is at least
``every_minutes`` old (or it never ran).
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from flask import Flask

from compliance_engine.models import db
from compliance_engine.models.base import as_utc, utcnow
from compliance_engine.models.scheduling import ScheduledJob

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_MINUTES = 1440


@dataclass(frozen=True)
class RegisteredJob:
    name: str
    fn: Callable
    every_minutes: int

    @property
    def description(self) -> str:
        return (self.fn.__doc__ or f"Scheduled job: {self.name}").strip()


_job_registry: dict[str, RegisteredJob] = {}


def register_job(name: str, *, every_minutes: int = DEFAULT_INTERVAL_MINUTES):
    """Decorator: add ``fn(app)`` to the registry under ``name``."""
    def decorator(fn: Callable) -> Callable:
        _job_registry[name] = RegisteredJob(name=name, fn=fn, every_minutes=every_minutes)
        return fn
    return decorator


def get_registered_jobs() -> dict[str, RegisteredJob]:
    return dict(_job_registry)


def _interval(job_record: ScheduledJob, registered: RegisteredJob) -> timedelta:
    return timedelta(minutes=job_record.interval_minutes or registered.every_minutes)


def is_due(job_record: ScheduledJob, registered: RegisteredJob, now: datetime) -> bool:
    if not job_record.is_enabled:
        return False
    last = as_utc(job_record.last_run_at)
    return last is None or now - last >= _interval(job_record, registered)


class SchedulerService:
    """Job bookkeeping and execution; every run gets its own app context."""

    _app: Flask | None = None

    @classmethod
    def init_app(cls, app: Flask) -> None:
        cls._app = app
        app.extensions["scheduler"] = cls
        logger.info("SchedulerService initialized with %d registered jobs",
                    len(_job_registry))

    @classmethod
    def ensure_jobs_registered(cls) -> list[ScheduledJob]:
        """Create a ScheduledJob row for every registered job that lacks one."""
        if not cls._app:
            return []

        created = []
        with cls._app.app_context():
            known = {name for (name,) in db.session.query(ScheduledJob.job_name).all()}
            for registered in _job_registry.values():
                if registered.name in known:
                    continue
                job = ScheduledJob(
                    job_name=registered.name,
                    description=registered.description,
                    interval_minutes=registered.every_minutes,
                    status="active",
                    is_enabled=True,
                )
                db.session.add(job)
                created.append(job)
            if created:
                db.session.commit()
                logger.info("Created %d scheduled job records", len(created))
        return created

    @classmethod
    def _record_run(cls, job_name: str, *, status: str, duration_ms: int, result, error) -> None:
        try:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record is None:
                    return
                job_record.record_run(
                    status=status,
                    duration_ms=duration_ms,
                    result=result if isinstance(result, dict) else {"output": str(result)},
                    error=error,
                )
                db.session.commit()
        except Exception:
            logger.exception("Failed to update job record for %s", job_name,
                             extra={"job_name": job_name})

    @classmethod
    def run_job(cls, job_name: str, *, force: bool = False) -> dict:
        """
        Execute one job by name.

        Paused jobs are skipped unless ``force`` is set (manual trigger).
        A failing job is reported in the returned dict, never raised.
        """
        registered = _job_registry.get(job_name)
        if registered is None:
            return {"job_name": job_name, "status": "error", "error": f"Unknown job: {job_name}"}
        if not cls._app:
            return {"job_name": job_name, "status": "error", "error": "Scheduler not initialized"}

        if not force:
            with cls._app.app_context():
                job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
                if job_record is not None and not job_record.is_enabled:
                    logger.info("Job %s is paused; skipped", job_name, extra={"job_name": job_name})
                    return {"job_name": job_name, "status": "skipped", "duration_ms": 0,
                            "result": None, "error": None}

        start = time.monotonic()
        result, error, status = None, None, "success"
        try:
            with cls._app.app_context():
                result = registered.fn(cls._app)
        except Exception as exc:
            status, error = "failed", str(exc)
            logger.exception("Job %s failed", job_name, extra={"job_name": job_name})
        duration_ms = int((time.monotonic() - start) * 1000)

        cls._record_run(job_name, status=status, duration_ms=duration_ms, result=result, error=error)
        return {
            "job_name": job_name,
            "status": status,
            "duration_ms": duration_ms,
            "result": result,
            "error": error,
        }

    @classmethod
    def run_due_jobs(cls, now: datetime | None = None) -> list[dict]:
        """Run every enabled job whose interval has elapsed. Missing rows are created first."""
        if not cls._app:
            return []
        now = now or utcnow()
        cls.ensure_jobs_registered()

        with cls._app.app_context():
            records = {j.job_name: j for j in ScheduledJob.query.all()}
            due = [
                name for name, registered in _job_registry.items()
                if name in records and is_due(records[name], registered, now)
            ]

        if due:
            logger.info("Running %d due job(s): %s", len(due), ", ".join(due))
        return [cls.run_job(name) for name in due]

    @classmethod
    def list_jobs(cls) -> list[dict]:
        jobs = []
        for name, registered in _job_registry.items():
            job_record = ScheduledJob.query.filter_by(job_name=name).first()
            jobs.append({
                "job_name": name,
                "every_minutes": registered.every_minutes,
                "db_record": job_record.to_dict() if job_record else None,
            })
        return jobs

    @classmethod
    def get_job_status(cls, job_name: str) -> dict | None:
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        return job_record.to_dict() if job_record else None

    @classmethod
    def toggle_job(cls, job_name: str, enabled: bool) -> dict | None:
        """Pause or resume a job. Returns None for an unknown job."""
        job_record = ScheduledJob.query.filter_by(job_name=job_name).first()
        if not job_record:
            return None
        job_record.is_enabled = enabled
        job_record.status = "active" if enabled else "paused"
        db.session.commit()
        logger.info("Job %s %s", job_name, job_record.status, extra={"job_name": job_name})
        return job_record.to_dict()
