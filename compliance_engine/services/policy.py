"""
Engine policy settings.

Typed view over the COMPLIANCE_* configuration keys. Read once per
evaluation pass and passed explicitly into the pure components (lifecycle
clock, escalation router, generator) so they never touch ``current_app``.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping

ROUTE_TARGETS = {"manager", "hr"}

DEFAULT_ROUTES = {1: "manager", 2: "hr"}


@dataclass(frozen=True)
class EngineSettings:
    escalation_interval_days: int = 7
    max_escalation_tier: int = 3
    escalation_routes: Mapping[int, str] = field(default_factory=lambda: dict(DEFAULT_ROUTES))
    one_time_window_days: int = 0
    evaluation_workers: int = 1
    dispatch_max_attempts: int = 5

    def __post_init__(self):
        if self.escalation_interval_days <= 0:
            raise ValueError("COMPLIANCE_ESCALATION_INTERVAL_DAYS must be > 0")
        if self.max_escalation_tier < 0:
            raise ValueError("COMPLIANCE_MAX_ESCALATION_TIER must be >= 0")
        if self.one_time_window_days < 0:
            raise ValueError("COMPLIANCE_ONE_TIME_WINDOW_DAYS must be >= 0")
        if self.evaluation_workers < 1:
            raise ValueError("COMPLIANCE_EVALUATION_WORKERS must be >= 1")
        routes = {int(k): str(v) for k, v in dict(self.escalation_routes).items()}
        bad = {v for v in routes.values() if v not in ROUTE_TARGETS}
        if bad:
            raise ValueError(f"COMPLIANCE_ESCALATION_ROUTES has unknown targets: {sorted(bad)}")
        if not routes:
            routes = dict(DEFAULT_ROUTES)
        object.__setattr__(self, "escalation_routes", MappingProxyType(routes))

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "EngineSettings":
        return cls(
            escalation_interval_days=int(config.get("COMPLIANCE_ESCALATION_INTERVAL_DAYS", 7)),
            max_escalation_tier=int(config.get("COMPLIANCE_MAX_ESCALATION_TIER", 3)),
            escalation_routes=config.get("COMPLIANCE_ESCALATION_ROUTES") or DEFAULT_ROUTES,
            one_time_window_days=int(config.get("COMPLIANCE_ONE_TIME_WINDOW_DAYS", 0)),
            evaluation_workers=int(config.get("COMPLIANCE_EVALUATION_WORKERS", 1)),
            dispatch_max_attempts=int(config.get("COMPLIANCE_DISPATCH_MAX_ATTEMPTS", 5)),
        )

    def route_for_tier(self, tier: int) -> str:
        """Route of the highest configured tier <= ``tier``; tiers below all keys go to the manager."""
        eligible = [t for t in self.escalation_routes if t <= tier]
        if not eligible:
            return "manager"
        return self.escalation_routes[max(eligible)]
