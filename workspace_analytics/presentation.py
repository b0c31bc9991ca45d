"""Display payloads for analytics cards: chart datasets, card tiles and detail panels."""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, List, Mapping, Optional

from .aggregation import AggregationResult, NumberResult, SeriesResult
from .cards import AnalyticsCard
from .fields import Field
from .values import format_number

CHART_COLORS = (
    "#2563eb",
    "#0f766e",
    "#ea580c",
    "#7c3aed",
    "#0891b2",
    "#a21caf",
    "#16a34a",
    "#ca8a04",
)
TOP_SEGMENT_LIMIT = 6
EMPTY_DISPLAY = "--"

STATUS_LOADING = "loading"
STATUS_ERROR = "error"
STATUS_EMPTY = "empty"
STATUS_READY = "ready"


def _color(index: int) -> str:
    return CHART_COLORS[index % len(CHART_COLORS)]


def _percent(value: float, total: float) -> int:
    if total <= 0:
        return 0
    return int(value / total * 100 + 0.5)


def _summary_entry(identifier: str, label: str, value: float) -> Dict[str, Any]:
    return {
        "id": identifier,
        "label": label,
        "value": round(float(value), 4),
        "display": format_number(value),
    }


def _field_name(fields_by_id: Mapping[str, Field], field_id: Optional[str]) -> Optional[str]:
    if not field_id:
        return None
    definition = fields_by_id.get(field_id)
    return definition.name if definition and definition.name else None


def value_label(card: AnalyticsCard, fields_by_id: Mapping[str, Field]) -> str:
    return _field_name(fields_by_id, card.value_field_id) or "Records"


def group_label(card: AnalyticsCard, fields_by_id: Mapping[str, Field]) -> str:
    return _field_name(fields_by_id, card.group_field_id) or "Record"


def filters_label(card: AnalyticsCard) -> str:
    count = len(card.filter_set.active_filters)
    if not count:
        return "None"
    return f"{count} filter{'' if count == 1 else 's'}"


def format_updated(moment: Optional[datetime], tz: Optional[tzinfo] = None) -> Optional[str]:
    if moment is None:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(tz or timezone.utc).strftime("%H:%M:%S")


# ---------------------------------------------------------------------------
# Charts
# ---------------------------------------------------------------------------


def chart_payload(
    card: AnalyticsCard, result: Optional[AggregationResult], value_label: str = "Records"
) -> Optional[Dict[str, Any]]:
    """Chart definition for a grouped card, or ``None`` for number cards."""
    if card.is_number or not isinstance(result, SeriesResult):
        return None
    labels = [point.name for point in result.points]
    data = [point.value for point in result.points]
    if card.chart_type == "pie":
        dataset: Dict[str, Any] = {
            "label": value_label,
            "data": data,
            "backgroundColor": [_color(index) for index in range(len(data))],
        }
    elif card.chart_type == "line":
        dataset = {
            "label": value_label,
            "data": data,
            "borderColor": CHART_COLORS[1],
            "backgroundColor": CHART_COLORS[1],
        }
    else:
        dataset = {
            "label": value_label,
            "data": data,
            "backgroundColor": CHART_COLORS[0],
            "borderColor": CHART_COLORS[0],
        }
    return {
        "id": card.id,
        "type": "doughnut" if card.chart_type == "pie" else card.chart_type,
        "title": card.title,
        "labels": labels,
        "datasets": [dataset],
        "truncated": result.truncated,
    }


# ---------------------------------------------------------------------------
# Card tiles
# ---------------------------------------------------------------------------


def card_status(
    result: Optional[AggregationResult], error: Optional[str] = None, loading: bool = False
) -> str:
    if loading:
        return STATUS_LOADING
    if error:
        return STATUS_ERROR
    if result is None:
        return STATUS_LOADING
    if isinstance(result, NumberResult):
        return STATUS_EMPTY if result.empty else STATUS_READY
    return STATUS_READY if result.points else STATUS_EMPTY


def card_view(
    card: AnalyticsCard,
    result: Optional[AggregationResult],
    *,
    fields_by_id: Optional[Mapping[str, Field]] = None,
    error: Optional[str] = None,
    loading: bool = False,
    last_updated: Optional[datetime] = None,
    base_name: Optional[str] = None,
    table_name: Optional[str] = None,
    layout: Optional[Dict[str, int]] = None,
    tz: Optional[tzinfo] = None,
) -> Dict[str, Any]:
    lookup = fields_by_id or {}
    display_value: Optional[str] = None
    if card.is_number:
        if isinstance(result, NumberResult) and not error and not loading:
            display_value = format_number(result.value)
        else:
            display_value = EMPTY_DISPLAY
    updated = format_updated(last_updated, tz)
    return {
        "id": card.id,
        "title": card.title,
        "chart_type": card.chart_type,
        "aggregation": card.aggregation.upper(),
        "subtitle": f"{base_name or 'Base'} - {table_name or 'Table'}",
        "status": card_status(result, error, loading),
        "error": error,
        "display_value": display_value,
        "chart": None if error else chart_payload(card, result, value_label(card, lookup)),
        "layout": layout or (card.layout.to_dict() if card.layout else None),
        "last_updated": f"Updated {updated}" if updated else "Waiting for data",
    }


def card_detail(
    card: AnalyticsCard,
    result: Optional[AggregationResult],
    *,
    fields_by_id: Optional[Mapping[str, Field]] = None,
    error: Optional[str] = None,
    last_updated: Optional[datetime] = None,
    base_name: Optional[str] = None,
    table_name: Optional[str] = None,
    tz: Optional[tzinfo] = None,
) -> Dict[str, Any]:
    """Expanded breakdown shown when a card is opened."""
    lookup = fields_by_id or {}
    points = result.points if isinstance(result, SeriesResult) and not error else []
    number = result.value if isinstance(result, NumberResult) and not error else None

    if card.is_number:
        total = number or 0
        peak = number or 0
    else:
        total = sum(point.value for point in points)
        peak = max((point.value for point in points), default=0)
    data_points = len(points) or (1 if number is not None else 0)

    values_name = value_label(card, lookup)
    legend: List[Dict[str, Any]] = []
    if card.chart_type in ("bar", "line"):
        legend.append(
            {
                "label": values_name,
                "value": total,
                "display": format_number(total),
                "color": CHART_COLORS[0 if card.chart_type == "bar" else 1],
            }
        )
    elif card.chart_type == "pie":
        for index, point in enumerate(points):
            percent = _percent(point.value, total)
            legend.append(
                {
                    "label": point.name,
                    "value": point.value,
                    "display": f"{format_number(point.value)} ({percent}%)",
                    "color": _color(index),
                    "percent": percent,
                }
            )

    top_segments = [
        {
            "name": point.name,
            "value": point.value,
            "display": format_number(point.value),
            "percent": _percent(point.value, total),
            "color": _color(index),
        }
        for index, point in enumerate(points[:TOP_SEGMENT_LIMIT])
    ]

    updated = format_updated(last_updated, tz)
    return {
        "id": card.id,
        "title": card.title,
        "type": card.chart_type.upper(),
        "aggregation": card.aggregation.upper(),
        "group_label": None if card.is_number else group_label(card, lookup),
        "value_label": values_name if card.value_field_id else None,
        "summary": [
            _summary_entry("total", "Total", total),
            _summary_entry("max", "Max", peak),
        ],
        "data_points": data_points,
        "legend": legend,
        "top_segments": top_segments,
        "filters_label": filters_label(card),
        "base_name": base_name or "Base",
        "table_name": table_name or "Table",
        "error": error,
        "last_refresh": f"Updated {updated}" if updated else "Not loaded yet",
        "chart": None if error else chart_payload(card, result, values_name),
    }


__all__ = [
    "CHART_COLORS",
    "card_detail",
    "card_status",
    "card_view",
    "chart_payload",
    "filters_label",
    "format_updated",
    "group_label",
    "value_label",
]
