"""
Outbox relay: hands pending NotificationIntents to the Notification Dispatcher.

Delivery failures leave the intent pending with ``attempts`` incremented;
after COMPLIANCE_DISPATCH_MAX_ATTEMPTS the intent is marked ``failed``.
Each intent is committed on its own so a crash mid-batch never re-sends
already delivered intents.
"""

import logging

from flask import current_app

from compliance_engine.models import db
from compliance_engine.models.compliance import NotificationIntent
from compliance_engine.services.policy import EngineSettings

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 200


def get_dispatcher(app=None):
    return (app or current_app).extensions["notification_dispatcher"]


def dispatch_pending(*, dispatcher=None, limit: int = DEFAULT_BATCH_SIZE,
                     company_id: str | None = None) -> dict:
    dispatcher = dispatcher or get_dispatcher()
    policy = EngineSettings.from_config(current_app.config)

    q = NotificationIntent.query.filter_by(dispatch_status="pending")
    if company_id is not None:
        q = q.filter_by(company_id=company_id)
    intents = q.order_by(NotificationIntent.created_at, NotificationIntent.id).limit(limit).all()

    summary = {"attempted": 0, "dispatched": 0, "retrying": 0, "failed": 0}
    for intent in intents:
        summary["attempted"] += 1
        result = dispatcher.dispatch(intent.to_message())
        if result.ok:
            intent.mark_dispatched()
            summary["dispatched"] += 1
        else:
            intent.mark_attempt_failed(result.error or "unknown error",
                                       max_attempts=policy.dispatch_max_attempts)
            if intent.dispatch_status == "failed":
                summary["failed"] += 1
                logger.error("Intent delivery abandoned after %d attempts: %s",
                             intent.attempts, intent.last_error,
                             extra={"assignment_id": intent.assignment_id,
                                    "event_type": intent.template, "tier": intent.tier})
            else:
                summary["retrying"] += 1
                logger.warning("Intent delivery failed (attempt %d): %s",
                               intent.attempts, intent.last_error,
                               extra={"assignment_id": intent.assignment_id,
                                      "event_type": intent.template, "tier": intent.tier})
        db.session.commit()

    if summary["attempted"]:
        logger.info("Dispatched %d/%d notification intents",
                    summary["dispatched"], summary["attempted"])
    return summary
