"""
Compliance Training Engine
Configuration classes for Flask App Factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

Engine policy keys (COMPLIANCE_*) are read once per evaluation pass through
``compliance_engine.services.policy.EngineSettings.from_config``.
"""

import json
import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when PostgreSQL is not running
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'compliance_engine_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return int(raw)


def _env_routes(name: str, default: dict) -> dict:
    """Parse a tier → route mapping such as '{"1": "manager", "2": "hr"}'."""
    raw = os.getenv(name)
    if not raw:
        return dict(default)
    return {int(k): v for k, v in json.loads(raw).items()}


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    # Redis (rate-limit storage)
    REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")

    # Rate limiting (per remote address, keyed by blueprint name)
    RATE_LIMITS = {
        "compliance": os.getenv("RATE_LIMIT_COMPLIANCE", "120/minute"),
        "scheduler": os.getenv("RATE_LIMIT_SCHEDULER", "30/minute"),
    }

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # External collaborators
    DIRECTORY_SERVICE_URL = os.getenv("DIRECTORY_SERVICE_URL")
    DIRECTORY_SERVICE_TOKEN = os.getenv("DIRECTORY_SERVICE_TOKEN")
    DIRECTORY_SERVICE_TIMEOUT = _env_int("DIRECTORY_SERVICE_TIMEOUT", 20)
    NOTIFICATION_DISPATCHER_URL = os.getenv("NOTIFICATION_DISPATCHER_URL")

    # Engine policy
    COMPLIANCE_ESCALATION_INTERVAL_DAYS = _env_int("COMPLIANCE_ESCALATION_INTERVAL_DAYS", 7)
    COMPLIANCE_MAX_ESCALATION_TIER = _env_int("COMPLIANCE_MAX_ESCALATION_TIER", 3)
    COMPLIANCE_ESCALATION_ROUTES = _env_routes(
        "COMPLIANCE_ESCALATION_ROUTES", {1: "manager", 2: "hr"},
    )
    COMPLIANCE_ONE_TIME_WINDOW_DAYS = _env_int("COMPLIANCE_ONE_TIME_WINDOW_DAYS", 0)
    COMPLIANCE_EVALUATION_WORKERS = _env_int("COMPLIANCE_EVALUATION_WORKERS", 1)
    COMPLIANCE_DISPATCH_MAX_ATTEMPTS = _env_int("COMPLIANCE_DISPATCH_MAX_ATTEMPTS", 5)


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = (
        _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else _SQLITE_DEV
    )


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    # SQLite in-memory does not accept pool sizing arguments
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    DIRECTORY_SERVICE_URL = None
    NOTIFICATION_DISPATCHER_URL = None
    COMPLIANCE_EVALUATION_WORKERS = 1


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    # Railway/Heroku use postgres:// but SQLAlchemy 2.0 requires postgresql://
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _raw_db_url.replace("postgres://", "postgresql://", 1) if _raw_db_url else None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
        "connect_args": {
            "options": "-c statement_timeout=30000",  # 30s query timeout
        },
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")
        if not self.DIRECTORY_SERVICE_URL:
            raise RuntimeError("DIRECTORY_SERVICE_URL environment variable is required in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
