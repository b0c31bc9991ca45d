"""Filter DSL for analytics cards: single-condition evaluation and filter sets.

A filter compares one comparand taken from a record row (a field value or the
record's last-updated timestamp) against a string payload. Comparison
semantics depend on the operator and on the type of the targeted field:

* ``is_empty`` / ``is_not_empty`` never look at the payload.
* ``within_last_days`` treats the payload as a number of days.
* ``contains`` is a case-insensitive substring test.
* equality and ordering resolve to date, number, boolean, list membership or
  plain string comparison, in that order of priority.

Malformed data never raises: a comparison that cannot be parsed is simply a
non-match. Invalid filters (missing field, missing value) are dropped before
evaluation, and a filter set without valid filters passes every row.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .fields import DATE_FIELD_TYPES, NUMBER_FIELD_TYPES, Field
from .records import RecordRow
from .values import (
    is_empty_value,
    iso_day,
    normalize_string,
    parse_datetime,
    to_number,
)

TARGET_FIELD = "field"
TARGET_RECORD_UPDATED = "record_updated_at"
FILTER_TARGETS = frozenset({TARGET_FIELD, TARGET_RECORD_UPDATED})

MATCH_ALL = "all"
MATCH_ANY = "any"
FILTER_MATCHES = frozenset({MATCH_ALL, MATCH_ANY})

EQUALITY_OPERATORS = frozenset({"equals", "not_equals"})
ORDERING_OPERATORS = frozenset(
    {"greater_than", "greater_than_or_equal", "less_than", "less_than_or_equal"}
)
VALUELESS_OPERATORS = frozenset({"is_empty", "is_not_empty"})
FILTER_OPERATORS = (
    EQUALITY_OPERATORS
    | ORDERING_OPERATORS
    | VALUELESS_OPERATORS
    | {"contains", "within_last_days"}
)


# ---------------------------------------------------------------------------
# Filter definitions
# ---------------------------------------------------------------------------


def new_filter_id() -> str:
    return str(uuid.uuid4())


def _day_count(value: str) -> Optional[float]:
    # Infinite counts keep the filter active; matching rejects them.
    text = value.strip()
    if not text or "_" in text:
        return None
    try:
        return float(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class AnalyticsFilter:
    """A single predicate applied to record rows before aggregation."""

    id: str = field(default_factory=new_filter_id)
    target: str = TARGET_FIELD
    field_id: Optional[str] = None
    operator: str = "equals"
    value: str = ""

    @property
    def requires_value(self) -> bool:
        return self.operator not in VALUELESS_OPERATORS

    @property
    def is_valid(self) -> bool:
        if self.target == TARGET_FIELD and not self.field_id:
            return False
        if self.operator == "within_last_days":
            days = _day_count(self.value)
            return days is not None and days > 0
        if self.requires_value:
            return self.value.strip() != ""
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "target": self.target,
            "field_id": self.field_id,
            "operator": self.operator,
            "value": self.value,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AnalyticsFilter":
        target = payload.get("target") or TARGET_FIELD
        operator = payload.get("operator") or "equals"
        if target not in FILTER_TARGETS:
            raise ValueError(f"Unknown filter target '{target}'")
        if operator not in FILTER_OPERATORS:
            raise ValueError(f"Unknown filter operator '{operator}'")
        raw_value = payload.get("value")
        return cls(
            id=str(payload.get("id") or new_filter_id()),
            target=target,
            field_id=payload.get("field_id") or None,
            operator=operator,
            value="" if raw_value is None else str(raw_value),
        )


@dataclass(frozen=True)
class FilterSet:
    """Ordered filters combined with an ``all`` or ``any`` policy."""

    filters: Sequence[AnalyticsFilter] = ()
    match: str = MATCH_ALL

    @property
    def active_filters(self) -> List[AnalyticsFilter]:
        return [entry for entry in self.filters if entry.is_valid]


def sanitize_filters(filters: Iterable[AnalyticsFilter]) -> List[AnalyticsFilter]:
    """Prepare filters for saving: trim values, drop stray field ids and invalid entries."""
    sanitized: List[AnalyticsFilter] = []
    for entry in filters:
        cleaned = AnalyticsFilter(
            id=entry.id or new_filter_id(),
            target=entry.target,
            field_id=(entry.field_id or None) if entry.target == TARGET_FIELD else None,
            operator=entry.operator,
            value=entry.value.strip(),
        )
        if cleaned.is_valid:
            sanitized.append(cleaned)
    return sanitized


# ---------------------------------------------------------------------------
# Operator catalog
# ---------------------------------------------------------------------------

TEXT_FILTER_OPERATORS = (
    {"value": "equals", "label": "is exactly"},
    {"value": "not_equals", "label": "is not"},
    {"value": "contains", "label": "contains"},
    {"value": "is_empty", "label": "is empty"},
    {"value": "is_not_empty", "label": "is not empty"},
)

NUMBER_FILTER_OPERATORS = (
    {"value": "equals", "label": "is exactly"},
    {"value": "not_equals", "label": "is not"},
    {"value": "greater_than", "label": "greater than"},
    {"value": "greater_than_or_equal", "label": "greater than or equal"},
    {"value": "less_than", "label": "less than"},
    {"value": "less_than_or_equal", "label": "less than or equal"},
    {"value": "is_empty", "label": "is empty"},
    {"value": "is_not_empty", "label": "is not empty"},
)

DATE_FILTER_OPERATORS = (
    {"value": "equals", "label": "is on"},
    {"value": "greater_than", "label": "is after"},
    {"value": "greater_than_or_equal", "label": "is on or after"},
    {"value": "less_than", "label": "is before"},
    {"value": "less_than_or_equal", "label": "is on or before"},
    {"value": "within_last_days", "label": "within last (days)"},
    {"value": "is_empty", "label": "is empty"},
    {"value": "is_not_empty", "label": "is not empty"},
)


def operator_options(target: str, field_type: Optional[str] = None) -> List[Dict[str, str]]:
    """Operators offered for a filter on ``target``/``field_type``, with display labels."""
    if target == TARGET_RECORD_UPDATED or field_type in DATE_FIELD_TYPES:
        return [dict(option) for option in DATE_FILTER_OPERATORS]
    if field_type in NUMBER_FIELD_TYPES:
        return [dict(option) for option in NUMBER_FILTER_OPERATORS]
    return [dict(option) for option in TEXT_FILTER_OPERATORS]


def value_input_type(operator: str, target: str, field_type: Optional[str] = None) -> str:
    if operator == "within_last_days":
        return "number"
    if target == TARGET_RECORD_UPDATED or field_type == "date":
        return "date"
    if field_type == "datetime":
        return "datetime-local"
    if field_type in NUMBER_FIELD_TYPES:
        return "number"
    return "text"


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _resolve_comparand(row: RecordRow, entry: AnalyticsFilter) -> Any:
    if entry.target == TARGET_RECORD_UPDATED:
        return row.last_modified
    return row.get(entry.field_id)


def _compare(operator: str, left: Any, right: Any) -> bool:
    if operator == "equals":
        return left == right
    if operator == "not_equals":
        return left != right
    if operator == "greater_than":
        return left > right
    if operator == "greater_than_or_equal":
        return left >= right
    if operator == "less_than":
        return left < right
    if operator == "less_than_or_equal":
        return left <= right
    return False


def _matches_date(
    operator: str, raw_value: Any, payload: str, field_type: Optional[str]
) -> bool:
    left = parse_datetime(raw_value)
    right = parse_datetime(payload)
    if left is None or right is None:
        return False
    if field_type == "date" and operator in EQUALITY_OPERATORS:
        return _compare(operator, iso_day(left), iso_day(right))
    return _compare(operator, left, right)


def _within_last_days(raw_value: Any, payload: str, now: datetime) -> bool:
    days = to_number(payload)
    if days is None or days <= 0:
        return False
    moment = parse_datetime(raw_value)
    if moment is None:
        return False
    try:
        window_start = now - timedelta(days=days)
    except OverflowError:
        return True
    return moment >= window_start


def matches_filter(
    row: RecordRow,
    entry: AnalyticsFilter,
    field_type: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Return ``True`` when ``row`` satisfies ``entry``."""
    raw_value = _resolve_comparand(row, entry)
    operator = entry.operator

    if operator == "is_empty":
        return is_empty_value(raw_value)
    if operator == "is_not_empty":
        return not is_empty_value(raw_value)
    if operator == "within_last_days":
        return _within_last_days(raw_value, entry.value, now or datetime.now(timezone.utc))
    if operator == "contains":
        needle = normalize_string(entry.value)
        if isinstance(raw_value, (list, tuple)):
            return any(needle in normalize_string(item) for item in raw_value)
        return needle in normalize_string(raw_value)

    if entry.target == TARGET_RECORD_UPDATED or field_type in DATE_FIELD_TYPES:
        return _matches_date(operator, raw_value, entry.value, field_type)

    left_number = to_number(raw_value)
    right_number = to_number(entry.value)
    if left_number is not None and right_number is not None:
        return _compare(operator, left_number, right_number)

    if isinstance(raw_value, bool):
        if operator not in EQUALITY_OPERATORS:
            return False
        desired = normalize_string(entry.value) == "true"
        return _compare(operator, raw_value, desired)

    if isinstance(raw_value, (list, tuple)):
        if operator not in EQUALITY_OPERATORS:
            return False
        needle = normalize_string(entry.value)
        present = any(normalize_string(item) == needle for item in raw_value)
        return present if operator == "equals" else not present

    # Ordering between opaque strings is unsupported.
    if operator not in EQUALITY_OPERATORS:
        return False
    return _compare(operator, normalize_string(raw_value), normalize_string(entry.value))


def _field_type_for(entry: AnalyticsFilter, fields_by_id: Mapping[str, Field]) -> Optional[str]:
    if entry.target != TARGET_FIELD or not entry.field_id:
        return None
    definition = fields_by_id.get(entry.field_id)
    return definition.type if definition else None


def matches_all(
    row: RecordRow,
    filter_set: FilterSet,
    fields_by_id: Optional[Mapping[str, Field]] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Evaluate every valid filter of ``filter_set`` against ``row``."""
    active = filter_set.active_filters
    if not active:
        return True
    lookup = fields_by_id or {}
    moment = now or datetime.now(timezone.utc)
    results = (
        matches_filter(row, entry, _field_type_for(entry, lookup), moment) for entry in active
    )
    if filter_set.match == MATCH_ANY:
        return any(results)
    return all(results)


def apply_filters(
    rows: Iterable[RecordRow],
    filter_set: FilterSet,
    fields_by_id: Optional[Mapping[str, Field]] = None,
    now: Optional[datetime] = None,
) -> List[RecordRow]:
    moment = now or datetime.now(timezone.utc)
    return [row for row in rows if matches_all(row, filter_set, fields_by_id, moment)]


__all__ = [
    "AnalyticsFilter",
    "FILTER_MATCHES",
    "FILTER_OPERATORS",
    "FILTER_TARGETS",
    "FilterSet",
    "MATCH_ALL",
    "MATCH_ANY",
    "TARGET_FIELD",
    "TARGET_RECORD_UPDATED",
    "apply_filters",
    "matches_all",
    "matches_filter",
    "new_filter_id",
    "operator_options",
    "sanitize_filters",
    "value_input_type",
]
