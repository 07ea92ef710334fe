"""
Request timing middleware.

Every response carries ``X-Request-ID`` (echoed from the caller when sent)
and ``X-Request-Duration-Ms``. One log line per request, except for health
probes: DEBUG normally, WARNING above ``SLOW_REQUEST_MS``, ERROR for 5xx.
The company the request was scoped to is attached as ``company_id``.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

DEFAULT_SLOW_REQUEST_MS = 1000


def _company_scope():
    company_id = request.args.get("company_id")
    if company_id is None and request.is_json:
        payload = request.get_json(silent=True)
        if isinstance(payload, dict):
            company_id = payload.get("company_id")
    return company_id


def init_request_timing(app: Flask):
    slow_ms = app.config.get("SLOW_REQUEST_MS", DEFAULT_SLOW_REQUEST_MS)

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = g.request_id

        if request.blueprint == "health":
            return response

        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "remote_addr": request.remote_addr,
            "request_id": g.request_id,
            "company_id": _company_scope(),
        }
        if response.status_code >= 500:
            level = logging.ERROR
        elif duration_ms > slow_ms:
            level = logging.WARNING
        else:
            level = logging.DEBUG
        logger.log(level, "%s %s %d (%.0fms)", request.method, request.path,
                   response.status_code, duration_ms, extra=extra)
        return response
