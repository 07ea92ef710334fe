"""
Compliance Training Engine
Scheduling & evaluation bookkeeping models.

Models:
    - ScheduledJob: registry of background jobs with run history
    - RuleEvaluation: per-rule record of the last evaluation pass
"""

from compliance_engine.models import db
from compliance_engine.models.base import iso, utcnow


class ScheduledJob(db.Model):
    """Persistent state of one registered job: interval, pause flag, last run."""

    __tablename__ = "scheduled_jobs"

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(100), nullable=False, unique=True)
    description = db.Column(db.String(500), default="")
    interval_minutes = db.Column(db.Integer, nullable=False, default=1440)
    is_enabled = db.Column(db.Boolean, nullable=False, default=True)
    status = db.Column(db.String(20), nullable=False, default="active", comment="active | paused")

    last_run_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_run_status = db.Column(db.String(20), nullable=True, comment="success | failed")
    last_duration_ms = db.Column(db.Integer, nullable=True)
    last_result = db.Column(db.JSON, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    run_count = db.Column(db.Integer, nullable=False, default=0)
    failure_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def record_run(self, *, status, duration_ms, result=None, error=None, at=None):
        self.last_run_at = at or utcnow()
        self.last_run_status = status
        self.last_duration_ms = duration_ms
        self.last_result = result
        self.run_count = (self.run_count or 0) + 1
        if status == "failed":
            self.failure_count = (self.failure_count or 0) + 1
            self.last_error = error
        else:
            self.last_error = None

    def to_dict(self):
        return {
            "id": self.id,
            "job_name": self.job_name,
            "description": self.description,
            "interval_minutes": self.interval_minutes,
            "is_enabled": self.is_enabled,
            "status": self.status,
            "last_run_at": iso(self.last_run_at),
            "last_run_status": self.last_run_status,
            "last_duration_ms": self.last_duration_ms,
            "last_result": self.last_result,
            "last_error": self.last_error,
            "run_count": self.run_count,
            "failure_count": self.failure_count,
        }

    def __repr__(self):
        return f"<ScheduledJob {self.job_name} every {self.interval_minutes}m [{self.status}]>"


class RuleEvaluation(db.Model):
    """Outcome of the latest evaluation pass for one rule.

    ``last_success_at`` feeds the dashboard's "last successful evaluation"
    timestamp; a failed pass leaves it untouched.
    """

    __tablename__ = "rule_evaluations"

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(
        db.Integer, db.ForeignKey("compliance_rules.id", ondelete="CASCADE"),
        nullable=False, unique=True,
    )
    company_id = db.Column(db.String(64), nullable=False, index=True)

    last_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_success_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_status = db.Column(db.String(20), nullable=True, comment="success | failed")
    last_error = db.Column(db.Text, nullable=True)
    consecutive_failures = db.Column(db.Integer, nullable=False, default=0)
    last_summary = db.Column(db.JSON, nullable=True)

    def record_success(self, at, summary):
        self.last_attempt_at = at
        self.last_success_at = at
        self.last_status = "success"
        self.last_error = None
        self.consecutive_failures = 0
        self.last_summary = summary

    def record_failure(self, at, error):
        self.last_attempt_at = at
        self.last_status = "failed"
        self.last_error = str(error)[:2000]
        self.consecutive_failures = (self.consecutive_failures or 0) + 1

    def to_dict(self):
        return {
            "rule_id": self.rule_id,
            "company_id": self.company_id,
            "last_attempt_at": iso(self.last_attempt_at),
            "last_success_at": iso(self.last_success_at),
            "last_status": self.last_status,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "last_summary": self.last_summary,
        }

    def __repr__(self):
        return f"<RuleEvaluation rule={self.rule_id} [{self.last_status}]>"
