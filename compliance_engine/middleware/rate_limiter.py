"""
Per-blueprint rate limits (Flask-Limiter).

``RATE_LIMITS`` maps a blueprint name to a limit string. Manual scheduler
triggers run a whole evaluation batch, so that blueprint gets the tighter
default. Health probes are always exempt.
"""

import logging

logger = logging.getLogger(__name__)


def init_rate_limits(app, limiter):
    if not app.config.get("RATELIMIT_ENABLED", True):
        logger.info("Rate limiting disabled")
        return

    applied = {}
    for bp_name, limit in (app.config.get("RATE_LIMITS") or {}).items():
        bp = app.blueprints.get(bp_name)
        if bp is None:
            logger.warning("RATE_LIMITS names unknown blueprint %r; ignored", bp_name)
            continue
        limiter.limit(limit)(bp)
        applied[bp_name] = limit

    health = app.blueprints.get("health")
    if health is not None:
        limiter.exempt(health)

    logger.info("Rate limits: %s", ", ".join(f"{k}={v}" for k, v in applied.items()) or "none")
