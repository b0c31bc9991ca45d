"""Aggregation pipeline turning filtered record rows into card results.

Number cards reduce to a single :class:`NumberResult`; bar, line and pie cards
bucket rows by a group field into a :class:`SeriesResult`. Bucket labels are
formatted per field type, sorted, then truncated to a per-chart limit. The
truncation is lossy and reported through ``total_buckets`` and
``dropped_buckets``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from .cards import GROUPED_AGGREGATIONS, AnalyticsCard
from .fields import Field
from .filters import apply_filters
from .records import RecordRow
from .values import (
    iso_day,
    iso_minute,
    parse_datetime,
    stringify,
    to_number,
)

logger = logging.getLogger(__name__)

EMPTY_LABEL = "(empty)"
OTHER_LABEL = "Other"
PIE_SLICE_LIMIT = 8
BAR_BUCKET_LIMIT = 12
LINE_POINT_LIMIT = 20


@dataclass(frozen=True)
class NumberResult:
    """Scalar result of a number card.

    ``empty`` is set when a sum/avg/min/max found no numeric values; ``value``
    is then ``0``.
    """

    value: float
    row_count: int
    empty: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value, "row_count": self.row_count, "empty": self.empty}


@dataclass(frozen=True)
class SeriesPoint:
    name: str
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "value": self.value}


@dataclass(frozen=True)
class SeriesResult:
    points: List[SeriesPoint] = field(default_factory=list)
    row_count: int = 0
    total_buckets: int = 0
    dropped_buckets: int = 0

    @property
    def truncated(self) -> bool:
        return self.dropped_buckets > 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "points": [point.to_dict() for point in self.points],
            "row_count": self.row_count,
            "total_buckets": self.total_buckets,
            "dropped_buckets": self.dropped_buckets,
        }


AggregationResult = Union[NumberResult, SeriesResult]


# ---------------------------------------------------------------------------
# Bucket labels
# ---------------------------------------------------------------------------


def _option_label(definition: Optional[Field], value: Any) -> str:
    if definition is None:
        return stringify(value)
    return definition.label_for(value)


def format_group_value(raw: Any, definition: Optional[Field] = None) -> List[str]:
    """Return the bucket label(s) a stored group value contributes to."""
    if raw is None or raw == "":
        return [EMPTY_LABEL]
    if isinstance(raw, (list, tuple)):
        return [_option_label(definition, item) for item in raw]
    field_type = definition.type if definition else None
    if field_type == "checkbox":
        return ["Yes" if raw else "No"]
    if field_type in ("date", "datetime"):
        moment = parse_datetime(raw)
        if moment is not None:
            return [iso_day(moment) if field_type == "date" else iso_minute(moment)]
    if field_type in ("single_select", "radio_select"):
        return [_option_label(definition, raw)]
    return [stringify(raw)]


# ---------------------------------------------------------------------------
# Ordering and truncation
# ---------------------------------------------------------------------------


def sort_series(points: Iterable[SeriesPoint], field_type: Optional[str] = None) -> List[SeriesPoint]:
    """Order buckets chronologically, numerically or alphabetically."""
    items = list(points)
    if field_type in ("date", "datetime"):

        def chronological(point: SeriesPoint):
            moment = parse_datetime(point.name)
            # Unparsable labels such as "(empty)" go last.
            if moment is None:
                return (1, 0.0, point.name)
            return (0, moment.timestamp(), point.name)

        return sorted(items, key=chronological)
    if items and all(to_number(point.name) is not None for point in items):
        return sorted(items, key=lambda point: to_number(point.name))
    return sorted(items, key=lambda point: (point.name.casefold(), point.name))


def truncate_series(points: Sequence[SeriesPoint], chart_type: str) -> List[SeriesPoint]:
    if chart_type == "pie":
        kept = list(points[:PIE_SLICE_LIMIT])
        remainder = sum(point.value for point in points[PIE_SLICE_LIMIT:])
        if remainder > 0:
            kept.append(SeriesPoint(name=OTHER_LABEL, value=remainder))
        return kept
    if chart_type == "bar":
        return list(points[:BAR_BUCKET_LIMIT])
    if chart_type == "line":
        return list(points[:LINE_POINT_LIMIT])
    return list(points)


def _dropped_bucket_count(total: int, chart_type: str) -> int:
    limit = {
        "pie": PIE_SLICE_LIMIT,
        "bar": BAR_BUCKET_LIMIT,
        "line": LINE_POINT_LIMIT,
    }.get(chart_type)
    if limit is None:
        return 0
    return max(total - limit, 0)


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


def _aggregate_number(rows: List[RecordRow], card: AnalyticsCard) -> NumberResult:
    if card.aggregation == "count":
        return NumberResult(value=len(rows), row_count=len(rows))
    numbers = [
        number
        for number in (to_number(row.get(card.value_field_id)) for row in rows)
        if number is not None
    ]
    if not numbers:
        return NumberResult(value=0, row_count=len(rows), empty=True)
    if card.aggregation == "sum":
        value = sum(numbers)
    elif card.aggregation == "avg":
        value = sum(numbers) / len(numbers)
    elif card.aggregation == "min":
        value = min(numbers)
    else:
        value = max(numbers)
    return NumberResult(value=value, row_count=len(rows))


def _aggregate_series(
    rows: List[RecordRow], card: AnalyticsCard, fields_by_id: Mapping[str, Field]
) -> SeriesResult:
    if card.aggregation not in GROUPED_AGGREGATIONS:
        raise ValueError("Grouped charts support count or sum")
    group_field = fields_by_id.get(card.group_field_id) if card.group_field_id else None
    totals: Dict[str, float] = {}
    for row in rows:
        labels = format_group_value(row.get(card.group_field_id), group_field)
        contribution: float = 1
        if card.aggregation == "sum":
            contribution = to_number(row.get(card.value_field_id)) or 0
        for label in labels:
            totals[label] = totals.get(label, 0) + contribution

    ordered = sort_series(
        (SeriesPoint(name=name, value=value) for name, value in totals.items()),
        group_field.type if group_field else None,
    )
    dropped = _dropped_bucket_count(len(ordered), card.chart_type)
    if dropped:
        logger.debug(
            "Card %s shows %s of %s buckets", card.id, len(ordered) - dropped, len(ordered)
        )
    return SeriesResult(
        points=truncate_series(ordered, card.chart_type),
        row_count=len(rows),
        total_buckets=len(ordered),
        dropped_buckets=dropped,
    )


def aggregate(
    rows: Iterable[RecordRow],
    card: AnalyticsCard,
    fields_by_id: Optional[Mapping[str, Field]] = None,
    now: Optional[datetime] = None,
) -> AggregationResult:
    """Filter ``rows`` with the card's filter set and reduce them to a result."""
    lookup = fields_by_id or {}
    passing = apply_filters(rows, card.filter_set, lookup, now)
    if card.is_number:
        return _aggregate_number(passing, card)
    return _aggregate_series(passing, card, lookup)


__all__ = [
    "AggregationResult",
    "EMPTY_LABEL",
    "NumberResult",
    "OTHER_LABEL",
    "SeriesPoint",
    "SeriesResult",
    "aggregate",
    "format_group_value",
    "sort_series",
    "truncate_series",
]
