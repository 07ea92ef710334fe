"""Shared parsing helpers used by blueprints and services.

parse_date_input:      ISO date (or DD.MM.YYYY) → date, raises ValueError on bad input
parse_datetime_input:  ISO timestamp → UTC-aware datetime, raises ValueError on bad input
parse_id_list:         JSON array of identifiers → frozenset[str], raises ValueError
"""
import logging
from datetime import date, datetime, timezone

logger = logging.getLogger(__name__)


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Supports: YYYY-MM-DD, YYYY-MM-DDTHH:MM:SS (→ .date()), DD.MM.YYYY, date objects.
    Returns None for empty input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(str(value), "%d.%m.%Y").date()
    except ValueError as exc:
        raise ValueError(
            "Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY."
        ) from exc


def parse_datetime_input(value):
    """Parse an ISO-8601 timestamp into a UTC-aware datetime.

    Naive timestamps are taken to be UTC. A trailing ``Z`` is accepted.
    Returns None for empty input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        raw = str(value).strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(raw)
        except ValueError as exc:
            raise ValueError("Invalid timestamp. Use ISO-8601, e.g. 2025-01-20T09:30:00Z.") from exc
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_id_list(value, field: str) -> frozenset[str]:
    """Validate a JSON array of department/position identifiers.

    Accepts strings and integers (stringified); rejects anything else so
    targeting never relies on runtime type guesses.
    """
    if value is None:
        return frozenset()
    if isinstance(value, (str, bytes)) or not isinstance(value, (list, tuple, set, frozenset)):
        raise ValueError(f"{field} must be a list of identifiers")
    ids = set()
    for item in value:
        if isinstance(item, bool) or not isinstance(item, (str, int)):
            raise ValueError(f"{field} contains a non-identifier value: {item!r}")
        text = str(item).strip()
        if not text:
            raise ValueError(f"{field} contains an empty identifier")
        ids.add(text)
    return frozenset(ids)
