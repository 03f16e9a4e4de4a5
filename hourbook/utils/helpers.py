"""Small request-parsing helpers shared by the blueprints."""

import math
from datetime import date, datetime

from flask import request


def parse_date(value):
    """Parse an ISO date string (or datetime string) to a date.

    Returns None for empty or invalid input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except (ValueError, TypeError):
        pass
    try:
        return datetime.fromisoformat(str(value)).date()
    except (ValueError, TypeError):
        return None


def parse_hours(value):
    """Coerce a JSON number to float. Returns None when it is not a finite number."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        hours = float(value)
    except (TypeError, ValueError):
        return None
    # "NaN" and "inf" parse as floats
    return hours if math.isfinite(hours) else None


def truthy(value) -> bool:
    """Query-string / JSON flag: "1", "true", "yes" (any case) or a truthy value."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def current_user() -> str:
    """Acting user from the ``X-User`` header; authentication happens upstream."""
    return (request.headers.get("X-User") or "").strip() or "system"
