"""
Audit log checksum chain: per-entity linking and tamper detection.
"""

from __future__ import annotations

from conftest import make_assignment, make_rule, utc
from compliance_engine.models import db as _db
from compliance_engine.models.audit import ComplianceAuditLog, verify_chain, write_audit


def _write(entity_id, event_type, **kwargs):
    return write_audit(company_id="acme", entity_type="assignment", entity_id=entity_id,
                       event_type=event_type, now=utc(2025, 1, 1), **kwargs)


class TestAuditChain:
    def test_entries_link_per_entity(self):
        first = _write(1, "assignment_created", new_values={"status": "assigned"})
        other = _write(2, "assignment_created")
        second = _write(1, "status_changed", old_values={"status": "assigned"},
                        new_values={"status": "due"})

        assert first.previous_checksum is None
        assert other.previous_checksum is None
        assert second.previous_checksum == first.checksum
        assert verify_chain("assignment", 1) == {"valid": True, "entries": 2, "broken_at": None}

    def test_checksum_is_deterministic(self):
        row = _write(1, "assignment_created", new_values={"b": 1, "a": [1, 2]})
        _db.session.expire(row)
        assert row.checksum == row.expected_checksum()

    def test_edited_row_breaks_chain(self):
        first = _write(1, "assignment_created")
        _write(1, "status_changed", new_values={"status": "due"})
        first.actor = "mallory"
        _db.session.flush()

        result = verify_chain("assignment", 1)
        assert result["valid"] is False
        assert result["broken_at"] == first.id

    def test_deleted_row_breaks_chain(self):
        _write(1, "assignment_created")
        middle = _write(1, "status_changed", new_values={"status": "reminder_due"})
        last = _write(1, "status_changed", new_values={"status": "due"})
        _db.session.delete(middle)
        _db.session.flush()

        result = verify_chain("assignment", 1)
        assert result["valid"] is False
        assert result["broken_at"] == last.id

    def test_empty_chain_is_valid(self):
        assert verify_chain("assignment", 404) == {"valid": True, "entries": 0, "broken_at": None}

    def test_engine_writes_are_chained(self):
        rule = make_rule()
        a = make_assignment(rule)
        _write(a.id, "status_changed", new_values={"status": "due"})
        _write(a.id, "reminder_emitted")
        assert ComplianceAuditLog.query.filter_by(entity_id=str(a.id)).count() == 2
        assert verify_chain("assignment", a.id)["valid"] is True
