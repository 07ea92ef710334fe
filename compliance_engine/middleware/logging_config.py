"""
Logging setup for the engine.

Engine code logs through ``logging.getLogger(__name__)`` and passes the
entities involved via ``extra``:

    logger.info("Escalation tier %d", tier,
                extra={"assignment_id": a.id, "rule_id": rule.id, "tier": tier})

Production (and any non-debug, non-testing app) writes one JSON object per
line with those keys under ``context``; development prints a colored line
with the same keys appended as ``key=value``. ``LOG_LEVEL`` overrides the
level in both.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

# Keys lifted from ``extra`` into the output, in display order.
CONTEXT_KEYS = (
    "company_id",
    "rule_id",
    "assignment_id",
    "employee_id",
    "event_type",
    "tier",
    "job_name",
    "request_id",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

_QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine")


def _context(record: logging.LogRecord) -> dict:
    return {
        key: getattr(record, key)
        for key in CONTEXT_KEYS
        if getattr(record, key, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON document per record, for log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        context = _context(record)
        if context:
            entry["context"] = context
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Colored single-line output for a terminal."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        ts = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        context = _context(record)
        duration = context.pop("duration_ms", None)
        suffix = "".join(f" {k}={v}" for k, v in context.items())
        if duration is not None:
            suffix += f" [{duration:.0f}ms]"
        line = f"{color}{ts} {record.levelname:<8}{self.RESET} {record.name}: {record.getMessage()}{suffix}"
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_level(app, is_prod: bool) -> str:
    return (os.getenv("LOG_LEVEL") or app.config.get("LOG_LEVEL")
            or ("INFO" if is_prod else "DEBUG")).upper()


def configure_logging(app):
    """Install a single stderr handler on the root logger."""
    is_testing = app.config.get("TESTING", False)
    is_prod = not app.config.get("DEBUG", False) and not is_testing
    level_name = _resolve_level(app, is_prod)
    level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if is_prod else ReadableFormatter())
    handler.setLevel(level)

    # cleared first: tests create the app more than once per process
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not is_testing:
        app.logger.info("Logging configured: level=%s format=%s",
                        level_name, "json" if is_prod else "readable")
