"""
Compliance Training Engine
Blueprint registry and shared request helpers.
"""

from flask import request

from compliance_engine.core.exceptions import ValidationError


def paginate_query(query, default_limit=100, max_limit=500):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit : max items (default 100, capped at max_limit)
        offset: starting position (default 0)

    Returns:
        (items_list, total_count, limit, offset)
    """
    total = query.count()
    try:
        limit = max(min(int(request.args.get("limit", default_limit)), max_limit), 1)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total, limit, offset


def require_company_id(data: dict | None = None) -> str:
    """company_id from the JSON body or query string; every read is company-scoped."""
    company_id = (data or {}).get("company_id") or request.args.get("company_id")
    company_id = str(company_id or "").strip()
    if not company_id:
        raise ValidationError("company_id is required", details={"company_id": "required"})
    return company_id


def actor_from_request(data: dict | None = None, default: str = "system") -> str:
    """Acting user as passed by the calling UI (X-Actor header or ``actor`` field)."""
    return (request.headers.get("X-Actor") or (data or {}).get("actor") or default).strip()
