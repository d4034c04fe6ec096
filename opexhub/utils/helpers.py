"""Shared utility functions for services and blueprints.

get_or_raise:      fetch by PK or raise NotFoundError
parse_date_input:  ISO / DD.MM.YYYY date parsing, raises ValueError
parse_month:       "YYYY-MM" validation, raises ValueError
as_bool:           lenient truthiness for JSON and query-string flags
"""
import logging
import re
from datetime import date, datetime

from opexhub.core.exceptions import NotFoundError
from opexhub.models import db

logger = logging.getLogger(__name__)

_MONTH_RE = re.compile(r"^(\d{4})-(\d{2})$")


def get_or_raise(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    obj = db.session.get(model, pk)
    if obj is None:
        raise NotFoundError(resource=label or model.__name__, resource_id=pk)
    return obj


def parse_date_input(value):
    """Parse a date string, raising ValueError on bad input.

    Supports: YYYY-MM-DD, YYYY-MM-DDTHH:MM:SS, DD.MM.YYYY, date objects.
    Empty input returns None.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    value = str(value)
    try:
        return date.fromisoformat(value)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value).date()
    except ValueError:
        pass
    try:
        return datetime.strptime(value, "%d.%m.%Y").date()
    except ValueError as exc:
        raise ValueError(
            "Invalid date format. Use YYYY-MM-DD or DD.MM.YYYY."
        ) from exc


def parse_month(value) -> str:
    """Normalise a monitoring month to ``YYYY-MM``.

    Accepts "YYYY-MM" strings and date objects.
    """
    if isinstance(value, date):
        return f"{value.year:04d}-{value.month:02d}"
    m = _MONTH_RE.match(str(value or "").strip())
    if not m or not 1 <= int(m.group(2)) <= 12:
        raise ValueError("Invalid month. Use YYYY-MM.")
    return m.group(0)


def as_bool(value, default=False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() in ("1", "true", "yes", "y", "on")


def as_float(value, field: str):
    """Coerce a numeric input, raising ValueError naming the field."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValueError(f"{field} must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a number") from None
