"""
Compliance Training Engine
Audit domain model.

Models:
    - ComplianceAuditLog: immutable, append-only, checksum-chained trail of
      rule and assignment lifecycle events.
"""

import hashlib
import json
import logging

from compliance_engine.models import db
from compliance_engine.models.base import iso, utcnow

logger = logging.getLogger(__name__)


# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {"rule", "assignment"}

AUDIT_EVENT_TYPES = {
    # Rule authoring
    "requirement_created",
    "requirement_updated",
    # Assignment lifecycle
    "assignment_created",
    "status_changed",
    "reminder_emitted",
    "escalation_triggered",
    "assignment_completed",
    # Exemption workflow
    "exemption_requested",
    "exemption_approved",
    "exemption_rejected",
    # Recertification
    "recertification_planned",
}


def _canonical(value) -> str:
    return json.dumps(value or {}, sort_keys=True, separators=(",", ":"), default=str)


def compute_checksum(
    *,
    company_id: str,
    entity_type: str,
    entity_id: str,
    event_type: str,
    actor: str,
    old_values: dict | None,
    new_values: dict | None,
    metadata: dict | None,
    event_timestamp: str,
    previous_checksum: str | None,
) -> str:
    """SHA-256 over the canonical row content plus the previous link."""
    payload = _canonical({
        "company_id": company_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "event_type": event_type,
        "actor": actor,
        "old_values": old_values or {},
        "new_values": new_values or {},
        "metadata": metadata or {},
        "event_timestamp": event_timestamp,
        "previous_checksum": previous_checksum or "",
    })
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ComplianceAuditLog(db.Model):
    """
    Immutable audit trail for every rule/assignment lifecycle event.

    One row per event. Each row's checksum covers its own content and the
    previous row's checksum for the same entity, so editing or deleting a
    row breaks the chain from that point on.
    """

    __tablename__ = "compliance_audit_logs"
    __table_args__ = (
        db.Index("idx_compliance_audit_entity", "entity_type", "entity_id", "id"),
        db.Index("idx_compliance_audit_event", "event_type"),
        db.Index("idx_compliance_audit_ts", "event_timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    company_id = db.Column(db.String(64), nullable=False, index=True)

    # Polymorphic entity reference
    entity_type = db.Column(db.String(30), nullable=False, comment="rule | assignment")
    entity_id = db.Column(db.String(36), nullable=False)

    # What happened
    event_type = db.Column(db.String(40), nullable=False)
    actor = db.Column(db.String(150), nullable=False, default="system")

    # Change payload
    old_values = db.Column(db.JSON, nullable=True)
    new_values = db.Column(db.JSON, nullable=True)
    event_metadata = db.Column("metadata", db.JSON, nullable=True)

    # Tamper evidence
    checksum = db.Column(db.String(64), nullable=False)
    previous_checksum = db.Column(db.String(64), nullable=True)

    # Stored as the ISO string that went into the checksum so a DB round
    # trip (naive SQLite datetimes) cannot change it.
    event_timestamp = db.Column(db.String(40), nullable=False)

    def expected_checksum(self) -> str:
        return compute_checksum(
            company_id=self.company_id,
            entity_type=self.entity_type,
            entity_id=self.entity_id,
            event_type=self.event_type,
            actor=self.actor,
            old_values=self.old_values,
            new_values=self.new_values,
            metadata=self.event_metadata,
            event_timestamp=self.event_timestamp,
            previous_checksum=self.previous_checksum,
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "company_id": self.company_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "event_type": self.event_type,
            "actor": self.actor,
            "old_values": self.old_values,
            "new_values": self.new_values,
            "metadata": self.event_metadata,
            "checksum": self.checksum,
            "previous_checksum": self.previous_checksum,
            "event_timestamp": self.event_timestamp,
        }

    def __repr__(self):
        return f"<ComplianceAuditLog {self.id}: {self.event_type} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def _latest_checksum(entity_type: str, entity_id: str) -> str | None:
    row = (
        db.session.query(ComplianceAuditLog.checksum)
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(ComplianceAuditLog.id.desc())
        .first()
    )
    return row[0] if row else None


def write_audit(
    *,
    company_id: str,
    entity_type: str,
    entity_id,
    event_type: str,
    actor: str = "system",
    old_values: dict | None = None,
    new_values: dict | None = None,
    metadata: dict | None = None,
    now=None,
) -> ComplianceAuditLog:
    """
    Append a single chained audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) ComplianceAuditLog instance.
    """
    entity_id = str(entity_id)
    event_timestamp = iso(now or utcnow())
    previous = _latest_checksum(entity_type, entity_id)

    # Round-trip through JSON so the stored values equal what was hashed.
    old_values = json.loads(_canonical(old_values)) if old_values else None
    new_values = json.loads(_canonical(new_values)) if new_values else None
    metadata = json.loads(_canonical(metadata)) if metadata else None

    log = ComplianceAuditLog(
        company_id=company_id,
        entity_type=entity_type,
        entity_id=entity_id,
        event_type=event_type,
        actor=actor or "system",
        old_values=old_values,
        new_values=new_values,
        event_metadata=metadata,
        event_timestamp=event_timestamp,
        previous_checksum=previous,
    )
    log.checksum = log.expected_checksum()
    db.session.add(log)
    db.session.flush()
    return log


def verify_chain(entity_type: str, entity_id) -> dict:
    """Recompute the checksum chain for one entity.

    Returns ``{"valid": bool, "entries": int, "broken_at": id | None}``.
    """
    entity_id = str(entity_id)
    rows = (
        ComplianceAuditLog.query
        .filter_by(entity_type=entity_type, entity_id=entity_id)
        .order_by(ComplianceAuditLog.id.asc())
        .all()
    )
    previous = None
    for row in rows:
        if row.previous_checksum != previous or row.checksum != row.expected_checksum():
            logger.warning(
                "Audit chain broken",
                extra={"entity_type": entity_type, "entity_id": entity_id, "audit_id": row.id},
            )
            return {"valid": False, "entries": len(rows), "broken_at": row.id}
        previous = row.checksum
    return {"valid": True, "entries": len(rows), "broken_at": None}
