"""
CompanyScopedModel: abstract base class for company-scoped models.

Companies live in the external directory, so ``company_id`` is an opaque
string identifier rather than a foreign key. Engine tables that need company
isolation inherit from CompanyScopedModel instead of db.Model directly.
This adds:
  - company_id column with index
  - created_at / updated_at timestamps
  - query_for_company(company_id) classmethod
  - Composite index macro helper
"""

from datetime import datetime, timezone

from compliance_engine.models import db


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalise a datetime to UTC-aware regardless of whether SQLite stored it naive.

    SQLite's DateTime columns return naive datetimes; PostgreSQL returns tz-aware.
    All comparisons against an aware ``now`` must go through this helper so the
    same code works in both environments.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(value) -> str | None:
    return value.isoformat() if value is not None else None


class CompanyScopedModel(db.Model):
    """Abstract base for company-scoped tables."""
    __abstract__ = True

    company_id = db.Column(
        db.String(64),
        nullable=False,
        index=True,
        comment="Directory company identifier",
    )
    created_at = db.Column(db.DateTime(timezone=True), default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    @classmethod
    def query_for_company(cls, company_id):
        """Return a query filtered by company_id."""
        return cls.query.filter_by(company_id=company_id)

    @classmethod
    def company_composite_index(cls, *extra_cols):
        """Helper to build (company_id, ...) composite index name+tuple."""
        name = f"ix_{cls.__tablename__}_company_{'_'.join(extra_cols)}"
        cols = ("company_id",) + extra_cols
        return db.Index(name, *cols)
