"""compliance_engine_initial

Creates the compliance engine tables:
  - compliance_rules         : declarative requirements (rule authoring)
  - compliance_assignments   : per-employee, per-cycle obligations
  - escalation_events        : append-only escalation log
  - notification_intents     : outbox for the Notification Dispatcher
  - recertification_intents  : planned next cycles
  - compliance_audit_logs    : checksum-chained audit trail
  - rule_evaluations         : last evaluation outcome per rule
  - scheduled_jobs           : background job registry

Tables created conditionally (IF NOT EXISTS semantics) to support idempotent
execution against databases that already received these tables via
db.create_all() in a development environment.

Revision ID: 6c1e0a7d2b41
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = '6c1e0a7d2b41'
down_revision = None
branch_labels = None
depends_on = None

_OPEN_SLOT_PREDICATE = "status NOT IN ('completed', 'exempted')"


def upgrade():
    bind = op.get_bind()
    inspector = sa_inspect(bind)
    existing = set(inspector.get_table_names())

    # ── Rules ─────────────────────────────────────────────────────────────
    if "compliance_rules" not in existing:
        op.create_table(
            "compliance_rules",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("company_id", sa.String(length=64), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("course_id", sa.String(length=64), nullable=False),
            sa.Column("applies_to_all", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("target_departments", sa.JSON(), nullable=False),
            sa.Column("target_positions", sa.JSON(), nullable=False),
            sa.Column("frequency_months", sa.Integer(), nullable=True,
                      comment="NULL = one-time obligation"),
            sa.Column("grace_period_days", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("reminder_days_before", sa.Integer(), nullable=False, server_default="14"),
            sa.Column("one_time_window_days", sa.Integer(), nullable=True),
            sa.Column("effective_date", sa.Date(), nullable=False),
            sa.Column("expiry_date", sa.Date(), nullable=True),
            sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("is_mandatory", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_by", sa.String(length=150), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_compliance_rules_company_id", "compliance_rules", ["company_id"])
        op.create_index("ix_compliance_rules_course_id", "compliance_rules", ["course_id"])

    # ── Assignments ───────────────────────────────────────────────────────
    if "compliance_assignments" not in existing:
        op.create_table(
            "compliance_assignments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("company_id", sa.String(length=64), nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=False),
            sa.Column("employee_id", sa.String(length=64), nullable=False),
            sa.Column("course_id", sa.String(length=64), nullable=False),
            sa.Column("cycle_start", sa.Date(), nullable=False),
            sa.Column("due_date", sa.Date(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="assigned"),
            sa.Column("escalation_tier", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("source", sa.String(length=20), nullable=False, server_default="rule_based"),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("reminder_sent_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_escalated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("exemption_status", sa.String(length=20), nullable=False, server_default="none"),
            sa.Column("exemption_type", sa.String(length=30), nullable=True),
            sa.Column("exemption_reason", sa.Text(), nullable=True),
            sa.Column("exemption_requested_by", sa.String(length=150), nullable=True),
            sa.Column("exemption_requested_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("exemption_approved_by", sa.String(length=150), nullable=True),
            sa.Column("exemption_approved_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("exemption_start_date", sa.Date(), nullable=True),
            sa.Column("exemption_end_date", sa.Date(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["rule_id"], ["compliance_rules.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("rule_id", "employee_id", "cycle_start",
                                name="uq_assignment_natural_key"),
        )
        op.create_index("ix_compliance_assignments_company_id", "compliance_assignments", ["company_id"])
        op.create_index("ix_compliance_assignments_rule_id", "compliance_assignments", ["rule_id"])
        op.create_index("ix_compliance_assignments_employee_id", "compliance_assignments", ["employee_id"])
        op.create_index("ix_assignment_rule_status", "compliance_assignments", ["rule_id", "status"])
        op.create_index("ix_assignment_employee_course", "compliance_assignments",
                        ["employee_id", "course_id"])
        op.create_index(
            "uq_assignment_one_open", "compliance_assignments", ["rule_id", "employee_id"],
            unique=True,
            sqlite_where=sa.text(_OPEN_SLOT_PREDICATE),
            postgresql_where=sa.text(_OPEN_SLOT_PREDICATE),
        )

    # ── Escalation events ─────────────────────────────────────────────────
    if "escalation_events" not in existing:
        op.create_table(
            "escalation_events",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("company_id", sa.String(length=64), nullable=False),
            sa.Column("assignment_id", sa.Integer(), nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=False),
            sa.Column("tier", sa.Integer(), nullable=False),
            sa.Column("recipient_kind", sa.String(length=20), nullable=False),
            sa.Column("recipient_ids", sa.JSON(), nullable=False),
            sa.Column("is_fallback", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("triggered_at", sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(["assignment_id"], ["compliance_assignments.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("assignment_id", "tier", name="uq_escalation_assignment_tier"),
        )
        op.create_index("ix_escalation_events_company_id", "escalation_events", ["company_id"])
        op.create_index("ix_escalation_events_assignment_id", "escalation_events", ["assignment_id"])
        op.create_index("ix_escalation_events_rule_id", "escalation_events", ["rule_id"])

    # ── Notification intents (outbox) ─────────────────────────────────────
    if "notification_intents" not in existing:
        op.create_table(
            "notification_intents",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("company_id", sa.String(length=64), nullable=False),
            sa.Column("assignment_id", sa.Integer(), nullable=False),
            sa.Column("template", sa.String(length=30), nullable=False),
            sa.Column("tier", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("recipient_kind", sa.String(length=20), nullable=False),
            sa.Column("recipient_ids", sa.JSON(), nullable=False),
            sa.Column("payload", sa.JSON(), nullable=False),
            sa.Column("dispatch_status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["assignment_id"], ["compliance_assignments.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("assignment_id", "template", "tier",
                                name="uq_intent_assignment_template_tier"),
        )
        op.create_index("ix_notification_intents_company_id", "notification_intents", ["company_id"])
        op.create_index("ix_notification_intents_assignment_id", "notification_intents", ["assignment_id"])
        op.create_index("ix_intent_dispatch_status", "notification_intents",
                        ["dispatch_status", "created_at"])

    # ── Recertification intents ───────────────────────────────────────────
    if "recertification_intents" not in existing:
        op.create_table(
            "recertification_intents",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("company_id", sa.String(length=64), nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=False),
            sa.Column("employee_id", sa.String(length=64), nullable=False),
            sa.Column("cycle_start", sa.Date(), nullable=False),
            sa.Column("source_assignment_id", sa.Integer(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
            sa.Column("consumed_assignment_id", sa.Integer(), nullable=True),
            sa.Column("consumed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("deferred_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["rule_id"], ["compliance_rules.id"], ondelete="RESTRICT"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("rule_id", "employee_id", "cycle_start",
                                name="uq_recert_rule_employee_cycle"),
        )
        op.create_index("ix_recertification_intents_company_id", "recertification_intents", ["company_id"])
        op.create_index("ix_recert_rule_status", "recertification_intents", ["rule_id", "status"])

    # ── Audit trail ───────────────────────────────────────────────────────
    if "compliance_audit_logs" not in existing:
        op.create_table(
            "compliance_audit_logs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("company_id", sa.String(length=64), nullable=False),
            sa.Column("entity_type", sa.String(length=30), nullable=False),
            sa.Column("entity_id", sa.String(length=36), nullable=False),
            sa.Column("event_type", sa.String(length=40), nullable=False),
            sa.Column("actor", sa.String(length=150), nullable=False, server_default="system"),
            sa.Column("old_values", sa.JSON(), nullable=True),
            sa.Column("new_values", sa.JSON(), nullable=True),
            sa.Column("metadata", sa.JSON(), nullable=True),
            sa.Column("checksum", sa.String(length=64), nullable=False),
            sa.Column("previous_checksum", sa.String(length=64), nullable=True),
            sa.Column("event_timestamp", sa.String(length=40), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_compliance_audit_logs_company_id", "compliance_audit_logs", ["company_id"])
        op.create_index("idx_compliance_audit_entity", "compliance_audit_logs",
                        ["entity_type", "entity_id", "id"])
        op.create_index("idx_compliance_audit_event", "compliance_audit_logs", ["event_type"])
        op.create_index("idx_compliance_audit_ts", "compliance_audit_logs", ["event_timestamp"])

    # ── Evaluation bookkeeping ────────────────────────────────────────────
    if "rule_evaluations" not in existing:
        op.create_table(
            "rule_evaluations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("rule_id", sa.Integer(), nullable=False),
            sa.Column("company_id", sa.String(length=64), nullable=False),
            sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_status", sa.String(length=20), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("last_summary", sa.JSON(), nullable=True),
            sa.ForeignKeyConstraint(["rule_id"], ["compliance_rules.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("rule_id"),
        )
        op.create_index("ix_rule_evaluations_company_id", "rule_evaluations", ["company_id"])

    if "scheduled_jobs" not in existing:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("interval_minutes", sa.Integer(), nullable=False),
            sa.Column("is_enabled", sa.Boolean(), nullable=False),
            sa.Column("status", sa.String(length=20), nullable=False),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_result", sa.JSON(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=False),
            sa.Column("failure_count", sa.Integer(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    for table in (
        "scheduled_jobs",
        "rule_evaluations",
        "compliance_audit_logs",
        "recertification_intents",
        "notification_intents",
        "escalation_events",
        "compliance_assignments",
        "compliance_rules",
    ):
        op.drop_table(table)
