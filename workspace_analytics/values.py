"""Value coercion helpers shared by the filter evaluator and the aggregation pipeline."""

from __future__ import annotations

import math
from datetime import date, datetime, timezone
from typing import Any, Optional

from dateutil.parser import parse as dateutil_parse

# Missing date components are filled from the epoch, so "2024" means 2024-01-01.
_DATE_DEFAULTS = datetime(1970, 1, 1)


# ---------------------------------------------------------------------------
# Strings
# ---------------------------------------------------------------------------


def stringify(value: Any) -> str:
    """Render a stored value the way the dashboard displays it."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (list, tuple)):
        return ",".join(stringify(entry) for entry in value)
    return str(value)


def normalize_string(value: Any) -> str:
    return stringify(value).strip().lower()


def is_empty_value(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple)):
        return len(value) == 0
    return False


# ---------------------------------------------------------------------------
# Numbers
# ---------------------------------------------------------------------------


def to_number(value: Any) -> Optional[float]:
    """Return ``value`` as a float, or ``None`` when it is not numeric.

    Finite ints and floats are numeric; booleans are not. Strings are numeric
    when they are non-blank and parse to a finite number.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            number = float(value)
        except OverflowError:
            return None
        return number if math.isfinite(number) else None
    if isinstance(value, str):
        text = value.strip()
        if not text or "_" in text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def is_numeric(value: Any) -> bool:
    return to_number(value) is not None


def format_number(value: float) -> str:
    """Group thousands and keep at most two fraction digits (``1,234.57``)."""
    rounded = round(float(value), 2)
    if rounded == 0:
        rounded = 0.0
    if rounded.is_integer():
        return f"{int(rounded):,}"
    return f"{rounded:,.2f}".rstrip("0")


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ``value`` into an aware UTC datetime; naive inputs are taken as UTC."""
    if value in (None, "") or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    try:
        parsed = dateutil_parse(text, default=_DATE_DEFAULTS)
    except (TypeError, ValueError, OverflowError):
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def iso_day(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d")


def iso_minute(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d %H:%M")


__all__ = [
    "format_number",
    "is_empty_value",
    "is_numeric",
    "iso_day",
    "iso_minute",
    "normalize_string",
    "parse_datetime",
    "stringify",
    "to_number",
]
