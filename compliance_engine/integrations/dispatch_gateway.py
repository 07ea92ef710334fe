"""
Notification Dispatcher adapters.

The engine decides *when* and *to whom*; delivery and rendering belong to
the external Notification Dispatcher. Outbox rows (NotificationIntent) are
handed to one of these adapters by the ``intent_dispatch`` job.

  - LoggingDispatcher: logs the message; default for development and testing
  - WebhookDispatcher: POSTs the JSON message to NOTIFICATION_DISPATCHER_URL

Both return a ``DispatchResult`` and never raise for delivery failures.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping

import requests

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 10


class DispatchResult:
    """Outcome of one delivery attempt."""

    def __init__(self, ok: bool, status_code: int | None = None,
                 error: str | None = None, duration_ms: int = 0) -> None:
        self.ok = ok
        self.status_code = status_code
        self.error = error
        self.duration_ms = duration_ms

    def __repr__(self):
        return f"<DispatchResult ok={self.ok} status={self.status_code}>"


class LoggingDispatcher:
    """Writes each message to the log and records it in ``sent``."""

    def __init__(self) -> None:
        self.sent: list[dict] = []

    def dispatch(self, message: Mapping[str, Any]) -> DispatchResult:
        self.sent.append(dict(message))
        logger.info(
            "Notification intent: %s → %s %s",
            message.get("template"),
            (message.get("recipient") or {}).get("kind"),
            (message.get("recipient") or {}).get("ids"),
            extra={
                "assignment_id": message.get("assignment_id"),
                "event_type": message.get("template"),
                "tier": message.get("tier"),
            },
        )
        return DispatchResult(ok=True)


class WebhookDispatcher:
    """POSTs intents as JSON to the Notification Dispatcher webhook.

    Pass a mock ``session`` in tests to intercept HTTP calls.
    """

    def __init__(self, url: str, *, timeout: int = _DEFAULT_TIMEOUT,
                 session: requests.Session | None = None) -> None:
        self.url = url
        self.timeout = timeout
        self._session = session

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self._session = requests.Session()
        return self._session

    def dispatch(self, message: Mapping[str, Any]) -> DispatchResult:
        t0 = time.perf_counter()
        try:
            resp = self.session.post(
                self.url,
                json=dict(message),
                headers={"Content-Type": "application/json",
                         "Idempotency-Key": f"intent-{message.get('intent_id')}"},
                timeout=self.timeout,
            )
        except requests.Timeout:
            return DispatchResult(ok=False, error=f"Request timed out after {self.timeout}s",
                                  duration_ms=int(self.timeout * 1000))
        except requests.RequestException as exc:
            return DispatchResult(ok=False, error=str(exc)[:500])

        duration_ms = int((time.perf_counter() - t0) * 1000)
        if resp.ok:
            return DispatchResult(ok=True, status_code=resp.status_code, duration_ms=duration_ms)
        return DispatchResult(
            ok=False,
            status_code=resp.status_code,
            error=f"HTTP {resp.status_code}: {resp.text[:500]}",
            duration_ms=duration_ms,
        )


def dispatcher_from_config(config: Mapping[str, Any]):
    """Webhook when NOTIFICATION_DISPATCHER_URL is set, logging otherwise."""
    url = config.get("NOTIFICATION_DISPATCHER_URL")
    if url:
        return WebhookDispatcher(url)
    return LoggingDispatcher()
