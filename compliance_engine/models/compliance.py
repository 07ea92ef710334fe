"""
Compliance Training Engine
Compliance domain models.

Models:
    - ComplianceRule: declarative requirement (course + cadence + audience), read by the engine
    - ComplianceAssignment: one employee's obligation for one cycle of a rule
    - EscalationEvent: append-only record of each escalation tier fired
    - NotificationIntent: outbox of reminder/escalation intents for the dispatcher
    - RecertificationIntent: "plan next cycle" hand-off from planner to generator
"""

from datetime import date

from compliance_engine.models import db
from compliance_engine.models.base import CompanyScopedModel, iso, utcnow


# ── Constants ────────────────────────────────────────────────────────────────

ASSIGNMENT_STATUSES = (
    "assigned", "reminder_due", "due", "overdue", "escalated",
    "completed", "exempted",
)
OPEN_STATUSES = frozenset({"assigned", "reminder_due", "due", "overdue", "escalated"})
TERMINAL_STATUSES = frozenset({"completed", "exempted"})

# Position of each open status on the time axis; the clock never lowers it.
STATUS_RANK = {
    "assigned": 0,
    "reminder_due": 1,
    "due": 2,
    "overdue": 3,
    "escalated": 4,
}

# Explicit (event-driven) transitions. Time-driven edges are computed by
# compliance_engine.services.lifecycle_clock.compute_target.
ASSIGNMENT_TRANSITIONS = {
    "complete": {"from": OPEN_STATUSES, "to": "completed"},
    "exempt": {"from": OPEN_STATUSES, "to": "exempted"},
}

ASSIGNMENT_SOURCES = {"rule_based", "recertification"}

EXEMPTION_TYPES = {
    "medical", "maternity", "role_change", "prior_learning",
    "pending_separation", "other",
}
EXEMPTION_STATUSES = {"none", "pending", "approved", "rejected"}

INTENT_TEMPLATES = {"reminder", "escalation"}
DISPATCH_STATUSES = {"pending", "dispatched", "failed"}
RECIPIENT_KINDS = {"employee", "manager", "hr"}

RECERT_INTENT_STATUSES = {"pending", "consumed"}

_OPEN_SLOT_PREDICATE = "status NOT IN ({})".format(
    ", ".join(f"'{s}'" for s in sorted(TERMINAL_STATUSES))
)


# ═════════════════════════════════════════════════════════════════════════════
# ComplianceRule
# ═════════════════════════════════════════════════════════════════════════════

class ComplianceRule(CompanyScopedModel):
    """
    Declarative compliance requirement.

    Written by rule authoring (through the rules API), read by the engine.
    Targeting arrays are stored as JSON but only ever exposed as frozensets.
    Once ``activated_at`` is set, the definition is frozen except for
    ``is_active``, ``expiry_date``, ``name`` and ``description``.
    """

    __tablename__ = "compliance_rules"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    course_id = db.Column(db.String(64), nullable=False, index=True,
                          comment="External course reference at the training provider")

    # Targeting
    applies_to_all = db.Column(db.Boolean, nullable=False, default=False)
    target_departments = db.Column(db.JSON, nullable=False, default=list,
                                   comment="Sorted list of department IDs")
    target_positions = db.Column(db.JSON, nullable=False, default=list,
                                 comment="Sorted list of position IDs")

    # Timing
    frequency_months = db.Column(db.Integer, nullable=True,
                                 comment="NULL = one-time obligation")
    grace_period_days = db.Column(db.Integer, nullable=False, default=0)
    reminder_days_before = db.Column(db.Integer, nullable=False, default=14)
    one_time_window_days = db.Column(db.Integer, nullable=True,
                                     comment="Overrides COMPLIANCE_ONE_TIME_WINDOW_DAYS")

    # Validity window
    effective_date = db.Column(db.Date, nullable=False)
    expiry_date = db.Column(db.Date, nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_mandatory = db.Column(db.Boolean, nullable=False, default=True)
    activated_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(db.String(150), default="system")

    assignments = db.relationship("ComplianceAssignment", back_populates="rule", lazy="dynamic")

    # ── Typed targeting ──────────────────────────────────────────────────

    @property
    def departments(self) -> frozenset[str]:
        return frozenset(self.target_departments or ())

    @property
    def positions(self) -> frozenset[str]:
        return frozenset(self.target_positions or ())

    @property
    def is_recurring(self) -> bool:
        return self.frequency_months is not None

    @property
    def is_no_op(self) -> bool:
        """True when the rule can never match anyone."""
        return not self.applies_to_all and not self.departments and not self.positions

    def is_in_effect(self, on: date) -> bool:
        """Active and inside its validity window on the given day."""
        if not self.is_active:
            return False
        if self.effective_date and on < self.effective_date:
            return False
        if self.expiry_date and on > self.expiry_date:
            return False
        return True

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "name": self.name,
            "description": self.description,
            "course_id": self.course_id,
            "applies_to_all": self.applies_to_all,
            "target_departments": sorted(self.departments),
            "target_positions": sorted(self.positions),
            "frequency_months": self.frequency_months,
            "grace_period_days": self.grace_period_days,
            "reminder_days_before": self.reminder_days_before,
            "one_time_window_days": self.one_time_window_days,
            "effective_date": iso(self.effective_date),
            "expiry_date": iso(self.expiry_date),
            "is_active": self.is_active,
            "is_mandatory": self.is_mandatory,
            "activated_at": iso(self.activated_at),
            "created_by": self.created_by,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }

    def __repr__(self):
        return f"<ComplianceRule {self.id}: {self.name[:40]}>"


# ═════════════════════════════════════════════════════════════════════════════
# ComplianceAssignment
# ═════════════════════════════════════════════════════════════════════════════

class ComplianceAssignment(CompanyScopedModel):
    """
    One employee's obligation under a rule for one cycle.

    Storage-level guarantees:
      - natural key (rule_id, employee_id, cycle_start) is unique
      - at most one non-terminal row per (rule_id, employee_id), enforced
        by a partial unique index over open statuses

    Rows are never deleted; terminal rows are retained for audit.
    """

    __tablename__ = "compliance_assignments"
    __table_args__ = (
        db.UniqueConstraint("rule_id", "employee_id", "cycle_start",
                            name="uq_assignment_natural_key"),
        db.Index(
            "uq_assignment_one_open", "rule_id", "employee_id",
            unique=True,
            sqlite_where=db.text(_OPEN_SLOT_PREDICATE),
            postgresql_where=db.text(_OPEN_SLOT_PREDICATE),
        ),
        db.Index("ix_assignment_rule_status", "rule_id", "status"),
        db.Index("ix_assignment_employee_course", "employee_id", "course_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    rule_id = db.Column(
        db.Integer, db.ForeignKey("compliance_rules.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    employee_id = db.Column(db.String(64), nullable=False, index=True)
    course_id = db.Column(db.String(64), nullable=False,
                          comment="Denormalised from the rule for completion matching")

    cycle_start = db.Column(db.Date, nullable=False)
    due_date = db.Column(db.Date, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="assigned",
                       comment="assigned | reminder_due | due | overdue | escalated | completed | exempted")
    escalation_tier = db.Column(db.Integer, nullable=False, default=0)
    source = db.Column(db.String(20), nullable=False, default="rule_based",
                       comment="rule_based | recertification")

    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reminder_sent_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_escalated_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Exemption workflow
    exemption_status = db.Column(db.String(20), nullable=False, default="none",
                                 comment="none | pending | approved | rejected")
    exemption_type = db.Column(db.String(30), nullable=True)
    exemption_reason = db.Column(db.Text, nullable=True)
    exemption_requested_by = db.Column(db.String(150), nullable=True)
    exemption_requested_at = db.Column(db.DateTime(timezone=True), nullable=True)
    exemption_approved_by = db.Column(db.String(150), nullable=True)
    exemption_approved_at = db.Column(db.DateTime(timezone=True), nullable=True)
    exemption_start_date = db.Column(db.Date, nullable=True)
    exemption_end_date = db.Column(db.Date, nullable=True)

    rule = db.relationship("ComplianceRule", back_populates="assignments")
    escalation_events = db.relationship(
        "EscalationEvent", back_populates="assignment",
        order_by="EscalationEvent.tier", lazy="select",
    )

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    @property
    def exemption(self) -> dict | None:
        if self.exemption_status != "approved":
            return None
        return {
            "type": self.exemption_type,
            "reason": self.exemption_reason,
            "approved_by": self.exemption_approved_by,
            "approved_at": iso(self.exemption_approved_at),
            "start_date": iso(self.exemption_start_date),
            "end_date": iso(self.exemption_end_date),
        }

    def to_dict(self, include_escalations=False):
        d = {
            "id": self.id,
            "company_id": self.company_id,
            "rule_id": self.rule_id,
            "employee_id": self.employee_id,
            "course_id": self.course_id,
            "cycle_start": iso(self.cycle_start),
            "due_date": iso(self.due_date),
            "status": self.status,
            "is_open": self.is_open,
            "escalation_tier": self.escalation_tier,
            "source": self.source,
            "completed_at": iso(self.completed_at),
            "reminder_sent_at": iso(self.reminder_sent_at),
            "last_escalated_at": iso(self.last_escalated_at),
            "exemption_status": self.exemption_status,
            "exemption_type": self.exemption_type,
            "exemption_reason": self.exemption_reason,
            "exemption_requested_by": self.exemption_requested_by,
            "exemption_requested_at": iso(self.exemption_requested_at),
            "exemption": self.exemption,
            "created_at": iso(self.created_at),
            "updated_at": iso(self.updated_at),
        }
        if include_escalations:
            d["escalation_events"] = [e.to_dict() for e in self.escalation_events]
        return d

    def __repr__(self):
        return (f"<ComplianceAssignment {self.id}: rule={self.rule_id} "
                f"emp={self.employee_id} [{self.status}/{self.escalation_tier}]>")


# ═════════════════════════════════════════════════════════════════════════════
# EscalationEvent
# ═════════════════════════════════════════════════════════════════════════════

class EscalationEvent(db.Model):
    """Immutable record of an escalation tier fired for an assignment.

    Append-only. Events are never updated or deleted. The unique
    (assignment_id, tier) constraint makes each tier fire at most once.
    """

    __tablename__ = "escalation_events"
    __table_args__ = (
        db.UniqueConstraint("assignment_id", "tier", name="uq_escalation_assignment_tier"),
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.String(64), nullable=False, index=True)
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("compliance_assignments.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    rule_id = db.Column(db.Integer, nullable=False, index=True)

    tier = db.Column(db.Integer, nullable=False)
    recipient_kind = db.Column(db.String(20), nullable=False, comment="manager | hr")
    recipient_ids = db.Column(db.JSON, nullable=False, default=list)
    is_fallback = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="True when the manager was unresolvable and HR received the escalation",
    )
    triggered_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    assignment = db.relationship("ComplianceAssignment", back_populates="escalation_events")

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "assignment_id": self.assignment_id,
            "rule_id": self.rule_id,
            "tier": self.tier,
            "recipient_kind": self.recipient_kind,
            "recipient_ids": list(self.recipient_ids or []),
            "is_fallback": self.is_fallback,
            "triggered_at": iso(self.triggered_at),
        }

    def __repr__(self):
        return f"<EscalationEvent a={self.assignment_id} tier={self.tier} → {self.recipient_kind}>"


# ═════════════════════════════════════════════════════════════════════════════
# NotificationIntent (outbox)
# ═════════════════════════════════════════════════════════════════════════════

class NotificationIntent(db.Model):
    """
    Outbound reminder/escalation intent awaiting the Notification Dispatcher.

    One record per (assignment, template, tier); doubles as the reminder log
    that keeps a re-run tick from re-emitting the same reminder.
    """

    __tablename__ = "notification_intents"
    __table_args__ = (
        db.UniqueConstraint("assignment_id", "template", "tier",
                            name="uq_intent_assignment_template_tier"),
        db.Index("ix_intent_dispatch_status", "dispatch_status", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.String(64), nullable=False, index=True)
    assignment_id = db.Column(
        db.Integer, db.ForeignKey("compliance_assignments.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    template = db.Column(db.String(30), nullable=False, comment="reminder | escalation")
    tier = db.Column(db.Integer, nullable=False, default=0, comment="0 for reminders")
    recipient_kind = db.Column(db.String(20), nullable=False, comment="employee | manager | hr")
    recipient_ids = db.Column(db.JSON, nullable=False, default=list)
    payload = db.Column(db.JSON, nullable=False, default=dict)

    # Dispatch tracking
    dispatch_status = db.Column(db.String(20), nullable=False, default="pending")
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_error = db.Column(db.Text, nullable=True)
    dispatched_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    def mark_dispatched(self):
        self.dispatch_status = "dispatched"
        self.dispatched_at = utcnow()
        self.attempts = (self.attempts or 0) + 1
        self.last_error = None

    def mark_attempt_failed(self, error: str, *, max_attempts: int):
        """Record a failed delivery; give up after ``max_attempts``."""
        self.attempts = (self.attempts or 0) + 1
        self.last_error = error
        if self.attempts >= max_attempts:
            self.dispatch_status = "failed"

    def to_message(self) -> dict:
        """Wire shape handed to the Notification Dispatcher."""
        msg = {
            "intent_id": self.id,
            "assignment_id": self.assignment_id,
            "template": self.template,
            "recipient": {"kind": self.recipient_kind, "ids": list(self.recipient_ids or [])},
            "payload": self.payload or {},
        }
        if self.template == "escalation":
            msg["tier"] = self.tier
        return msg

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "assignment_id": self.assignment_id,
            "template": self.template,
            "tier": self.tier,
            "recipient_kind": self.recipient_kind,
            "recipient_ids": list(self.recipient_ids or []),
            "payload": self.payload,
            "dispatch_status": self.dispatch_status,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "dispatched_at": iso(self.dispatched_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<NotificationIntent {self.id}: {self.template}/{self.tier} a={self.assignment_id}>"


# ═════════════════════════════════════════════════════════════════════════════
# RecertificationIntent
# ═════════════════════════════════════════════════════════════════════════════

class RecertificationIntent(db.Model):
    """
    "Plan next cycle" hand-off written by the recertification planner.

    Consumed by the assignment generator on its next pass for the rule.
    Unique on (rule_id, employee_id, cycle_start) so a redelivered completion
    event cannot plan the same cycle twice.
    """

    __tablename__ = "recertification_intents"
    __table_args__ = (
        db.UniqueConstraint("rule_id", "employee_id", "cycle_start",
                            name="uq_recert_rule_employee_cycle"),
        db.Index("ix_recert_rule_status", "rule_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.String(64), nullable=False, index=True)
    rule_id = db.Column(
        db.Integer, db.ForeignKey("compliance_rules.id", ondelete="RESTRICT"),
        nullable=False,
    )
    employee_id = db.Column(db.String(64), nullable=False)
    cycle_start = db.Column(db.Date, nullable=False)
    source_assignment_id = db.Column(db.Integer, nullable=True)

    status = db.Column(db.String(20), nullable=False, default="pending",
                       comment="pending | consumed")
    consumed_assignment_id = db.Column(db.Integer, nullable=True)
    consumed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deferred_at = db.Column(db.DateTime(timezone=True), nullable=True,
                            comment="first pass that left it pending because the employee was out of scope")
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "company_id": self.company_id,
            "rule_id": self.rule_id,
            "employee_id": self.employee_id,
            "cycle_start": iso(self.cycle_start),
            "source_assignment_id": self.source_assignment_id,
            "status": self.status,
            "consumed_assignment_id": self.consumed_assignment_id,
            "consumed_at": iso(self.consumed_at),
            "deferred_at": iso(self.deferred_at),
            "created_at": iso(self.created_at),
        }

    def __repr__(self):
        return f"<RecertificationIntent rule={self.rule_id} emp={self.employee_id} {self.cycle_start}>"
