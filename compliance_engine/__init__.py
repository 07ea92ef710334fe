"""
Compliance Training Engine
Flask Application Factory.

Usage:
    from compliance_engine import create_app
    app = create_app()           # defaults to "development"
    app = create_app("testing")  # explicit config
"""

import importlib
import logging
import os

import click
from flask import Flask
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from sqlalchemy import engine as _sa_engine, event as _sa_event

from compliance_engine.config import config
from compliance_engine.integrations.directory_gateway import DirectoryGateway, InMemoryDirectoryGateway
from compliance_engine.integrations.dispatch_gateway import dispatcher_from_config
from compliance_engine.middleware.logging_config import configure_logging
from compliance_engine.middleware.rate_limiter import init_rate_limits
from compliance_engine.middleware.timing import init_request_timing
from compliance_engine.models import db

logger = logging.getLogger(__name__)


# ── SQLite FK enforcement (global engine event) ─────────────────────────
@_sa_event.listens_for(_sa_engine.Engine, "connect")
def _enable_sqlite_fk(dbapi_conn, connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    if "sqlite" in type(dbapi_conn).__module__:
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


migrate = Migrate()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],                     # no global limit, applied per blueprint
    storage_uri=os.getenv("REDIS_URL", "memory://"),
)


def _init_collaborators(app):
    """Directory gateway and notification dispatcher, reachable via app.extensions."""
    if app.config.get("DIRECTORY_SERVICE_URL"):
        app.extensions["directory_gateway"] = DirectoryGateway.from_config(app.config)
    else:
        if not app.testing:
            app.logger.warning("DIRECTORY_SERVICE_URL not set; using an empty in-memory directory")
        app.extensions["directory_gateway"] = InMemoryDirectoryGateway()
    app.extensions["notification_dispatcher"] = dispatcher_from_config(app.config)


def _register_cli(app):
    from compliance_engine.services.evaluation_engine import run_evaluation
    from compliance_engine.services.intent_dispatch import dispatch_pending
    from compliance_engine.utils.helpers import parse_datetime_input

    @app.cli.command("compliance-tick")
    @click.option("--company-id", default=None, help="Only evaluate rules of this company.")
    @click.option("--now", "now_raw", default=None, help="Evaluation time (ISO-8601), default: current UTC time.")
    def compliance_tick_cmd(company_id, now_raw):
        """Reconcile assignments and advance the lifecycle clock once."""
        summary = run_evaluation(company_id=company_id, now=parse_datetime_input(now_raw))
        click.echo(
            f"rules={summary['rules']} failed={summary['failed']} created={summary['created']} "
            f"advanced={summary['advanced']} reminders={summary['reminders']} "
            f"escalations={summary['escalations']}"
        )

    @app.cli.command("dispatch-intents")
    @click.option("--limit", default=200, show_default=True, help="Max intents per run.")
    def dispatch_intents_cmd(limit):
        """Hand pending notification intents to the dispatcher."""
        summary = dispatch_pending(limit=limit)
        click.echo(
            f"attempted={summary['attempted']} dispatched={summary['dispatched']} "
            f"retrying={summary['retrying']} failed={summary['failed']}"
        )

    @app.cli.command("run-due-jobs")
    def run_due_jobs_cmd():
        """Run every scheduled job whose interval has elapsed (cron entry point)."""
        from compliance_engine.services.scheduler_service import SchedulerService

        for result in SchedulerService.run_due_jobs():
            click.echo(f"{result['job_name']}: {result['status']} ({result.get('duration_ms', 0)} ms)")


def _register_http_errors(app):
    from flask import request

    from compliance_engine.utils.errors import E, api_error

    @app.errorhandler(404)
    def not_found(e):
        return api_error(E.NOT_FOUND, "Not found", details={"path": request.path})

    @app.errorhandler(405)
    def method_not_allowed(e):
        return api_error(E.METHOD_NOT_ALLOWED, f"{request.method} not allowed on {request.path}")

    @app.errorhandler(429)
    def rate_limited(e):
        return api_error(E.RATE_LIMITED, "Too many requests", details={"limit": e.description})

    @app.errorhandler(500)
    def server_error(e):
        logger.error("Unhandled error on %s: %s", request.path, e, exc_info=True)
        return api_error(E.INTERNAL, "Internal server error")


def create_app(config_name=None):
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration environment name.
                     One of: "development", "testing", "production".
                     Defaults to APP_ENV env var, or "development" if unset.

    Returns:
        Configured Flask application instance.
    """
    if config_name is None:
        config_name = os.getenv("APP_ENV", "development")

    app = Flask(__name__, instance_relative_config=True)
    config_cls = config[config_name]
    app.config.from_object(config_cls() if config_name == "production" else config_cls)

    # ── Structured logging (must be first) ───────────────────────────────
    configure_logging(app)

    # ── Extensions ───────────────────────────────────────────────────────
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)
    cors_origins = app.config.get("CORS_ORIGINS", "*")
    if cors_origins and cors_origins != "*":
        CORS(app, origins=[o.strip() for o in cors_origins.split(",") if o.strip()])
    else:
        CORS(app)

    # ── Request timing middleware ────────────────────────────────────────
    init_request_timing(app)

    # ── External collaborators ───────────────────────────────────────────
    _init_collaborators(app)

    # ── Import all models so Alembic can detect them ─────────────────────
    from compliance_engine.models import audit as _audit_models            # noqa: F401
    from compliance_engine.models import compliance as _compliance_models  # noqa: F401
    from compliance_engine.models import scheduling as _scheduling_models  # noqa: F401

    # ── Auto-create tables outside production (production runs migrations) ─
    if config_name in ("development", "default"):
        os.makedirs(app.instance_path, exist_ok=True)
        with app.app_context():
            db.create_all()
            app.logger.info("db.create_all() completed successfully")

    # ── Blueprints ───────────────────────────────────────────────────────
    from compliance_engine.blueprints.compliance_bp import compliance_bp
    from compliance_engine.blueprints.health_bp import health_bp
    from compliance_engine.blueprints.scheduler_bp import scheduler_bp

    app.register_blueprint(compliance_bp)
    app.register_blueprint(scheduler_bp)
    app.register_blueprint(health_bp)

    # ── Rate limiting ────────────────────────────────────────────────────
    init_rate_limits(app, limiter)

    # ── CLI commands ─────────────────────────────────────────────────────
    _register_cli(app)

    # ── HTTP-level errors share the API error envelope ───────────────────
    _register_http_errors(app)

    # ── Scheduler ────────────────────────────────────────────────────────
    importlib.import_module("compliance_engine.services.scheduled_jobs")  # registers @register_job handlers
    from compliance_engine.services.scheduler_service import SchedulerService as _SchedulerSvc
    _SchedulerSvc.init_app(app)

    return app
