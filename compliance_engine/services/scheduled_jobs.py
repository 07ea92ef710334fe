"""
Compliance Training Engine
Scheduled Jobs.

Concrete job implementations that run on a schedule.

Jobs:
    - compliance_evaluation: reconcile + tick every relevant rule (hourly)
    - intent_dispatch: relay pending notification intents (every 15 minutes)
"""

from __future__ import annotations

import logging
from typing import Any

from compliance_engine.services.evaluation_engine import run_evaluation
from compliance_engine.services.intent_dispatch import dispatch_pending
from compliance_engine.services.scheduler_service import register_job

logger = logging.getLogger(__name__)


@register_job("compliance_evaluation", every_minutes=60)
def run_compliance_evaluation(app) -> dict[str, Any]:
    """Reconcile assignments and advance the lifecycle clock for every rule."""
    summary = run_evaluation(app=app)
    # The per-rule breakdown lives in RuleEvaluation; keep the job record small.
    summary.pop("results", None)
    return summary


@register_job("intent_dispatch", every_minutes=15)
def run_intent_dispatch(app) -> dict[str, Any]:
    """Hand pending reminder/escalation intents to the Notification Dispatcher."""
    return dispatch_pending()
