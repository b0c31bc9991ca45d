"""Analytics card definitions, editor form validation and grid layout rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .filters import (
    FILTER_MATCHES,
    MATCH_ALL,
    AnalyticsFilter,
    FilterSet,
    sanitize_filters,
)

CHART_TYPES = ("number", "bar", "line", "pie")
AGGREGATIONS = ("count", "sum", "avg", "min", "max")
GROUPED_AGGREGATIONS = ("count", "sum")

GRID_COLUMNS = 12
MAX_CARD_SIZE = 12
DEFAULT_NUMBER_SIZE = (3, 3)
DEFAULT_CHART_SIZE = (4, 5)
MIN_NUMBER_SIZE = (2, 2)
MIN_CHART_SIZE = (3, 4)


class CardValidationError(Exception):
    """Raised when the card editor form is incomplete or inconsistent."""

    def __init__(self, errors: Dict[str, str]):
        super().__init__("Card validation failed")
        self.errors = errors

    @property
    def message(self) -> str:
        return next(iter(self.errors.values()), "Card validation failed")


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------


def _is_coordinate(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass(frozen=True)
class CardLayout:
    x: int = 0
    y: int = 0
    w: int = DEFAULT_NUMBER_SIZE[0]
    h: int = DEFAULT_NUMBER_SIZE[1]

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "w": self.w, "h": self.h}

    @classmethod
    def from_dict(cls, payload: Any) -> Optional["CardLayout"]:
        """Return a layout when every coordinate is numeric, otherwise ``None``."""
        if not isinstance(payload, Mapping):
            return None
        coordinates = [payload.get(key) for key in ("x", "y", "w", "h")]
        if not all(_is_coordinate(value) for value in coordinates):
            return None
        x, y, w, h = (int(value) for value in coordinates)
        return cls(x=x, y=y, w=w, h=h)


def default_size(chart_type: str) -> Tuple[int, int]:
    return DEFAULT_NUMBER_SIZE if chart_type == "number" else DEFAULT_CHART_SIZE


def default_layout(chart_type: str, index: int) -> CardLayout:
    """Flow cards left to right across the grid in list order."""
    w, h = default_size(chart_type)
    offset = index * w
    return CardLayout(x=offset % GRID_COLUMNS, y=(offset // GRID_COLUMNS) * h, w=w, h=h)


def layout_constraints(chart_type: str) -> Dict[str, int]:
    min_w, min_h = MIN_NUMBER_SIZE if chart_type == "number" else MIN_CHART_SIZE
    return {"min_w": min_w, "min_h": min_h, "max_w": MAX_CARD_SIZE, "max_h": MAX_CARD_SIZE}


def clamp_layout(layout: CardLayout, chart_type: str) -> CardLayout:
    limits = layout_constraints(chart_type)
    w = min(max(layout.w, limits["min_w"]), limits["max_w"])
    h = min(max(layout.h, limits["min_h"]), limits["max_h"])
    x = min(max(layout.x, 0), GRID_COLUMNS - w)
    y = max(layout.y, 0)
    return CardLayout(x=x, y=y, w=w, h=h)


# ---------------------------------------------------------------------------
# Cards
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AnalyticsCard:
    """A persisted visualisation: data source, aggregation, filters and grid position."""

    id: str
    workspace_id: Optional[str] = None
    base_id: Optional[str] = None
    table_id: Optional[str] = None
    title: str = ""
    chart_type: str = "number"
    aggregation: str = "count"
    group_field_id: Optional[str] = None
    value_field_id: Optional[str] = None
    filters: Tuple[AnalyticsFilter, ...] = ()
    filter_match: str = MATCH_ALL
    layout: Optional[CardLayout] = None
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def is_number(self) -> bool:
        return self.chart_type == "number"

    @property
    def filter_set(self) -> FilterSet:
        return FilterSet(filters=self.filters, match=self.filter_match)

    def resolved_layout(self, index: int) -> CardLayout:
        return self.layout or default_layout(self.chart_type, index)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "workspace_id": self.workspace_id,
            "base_id": self.base_id,
            "table_id": self.table_id,
            "title": self.title,
            "chart_type": self.chart_type,
            "aggregation": self.aggregation,
            "group_field_id": self.group_field_id,
            "value_field_id": self.value_field_id,
            "filters": [entry.to_dict() for entry in self.filters],
            "filter_match": self.filter_match,
            "layout": self.layout.to_dict() if self.layout else None,
            "created_by": self.created_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "AnalyticsCard":
        if not payload.get("id"):
            raise ValueError("Card payload is missing an id")
        chart_type = payload.get("chart_type") or "number"
        aggregation = payload.get("aggregation") or "count"
        filter_match = payload.get("filter_match") or MATCH_ALL
        if chart_type not in CHART_TYPES:
            raise ValueError(f"Unknown chart type '{chart_type}'")
        if aggregation not in AGGREGATIONS:
            raise ValueError(f"Unknown aggregation '{aggregation}'")
        if filter_match not in FILTER_MATCHES:
            raise ValueError(f"Unknown filter match '{filter_match}'")
        raw_filters = payload.get("filters") or []
        return cls(
            id=str(payload["id"]),
            workspace_id=payload.get("workspace_id"),
            base_id=payload.get("base_id"),
            table_id=payload.get("table_id"),
            title=str(payload.get("title") or ""),
            chart_type=chart_type,
            aggregation=aggregation,
            group_field_id=payload.get("group_field_id") or None,
            value_field_id=payload.get("value_field_id") or None,
            filters=tuple(AnalyticsFilter.from_dict(entry) for entry in raw_filters),
            filter_match=filter_match,
            layout=CardLayout.from_dict(payload.get("layout")),
            created_by=payload.get("created_by"),
            created_at=payload.get("created_at"),
            updated_at=payload.get("updated_at"),
        )


# ---------------------------------------------------------------------------
# Editor form
# ---------------------------------------------------------------------------


@dataclass
class CardForm:
    """Values entered in the card editor before they are saved."""

    title: str = ""
    base_id: Optional[str] = None
    table_id: Optional[str] = None
    chart_type: str = "number"
    aggregation: str = "count"
    group_field_id: Optional[str] = None
    value_field_id: Optional[str] = None
    filters: List[AnalyticsFilter] = field(default_factory=list)
    filter_match: str = MATCH_ALL

    @classmethod
    def from_card(cls, card: AnalyticsCard) -> "CardForm":
        return cls(
            title=card.title,
            base_id=card.base_id,
            table_id=card.table_id,
            chart_type=card.chart_type,
            aggregation=card.aggregation,
            group_field_id=card.group_field_id,
            value_field_id=card.value_field_id,
            filters=list(card.filters),
            filter_match=card.filter_match,
        )

    def errors(self) -> Dict[str, str]:
        errors: Dict[str, str] = {}
        if not self.title.strip():
            errors["title"] = "Card title is required"
        if not self.base_id or not self.table_id:
            errors["table_id"] = "Select a base and table"
        if self.chart_type not in CHART_TYPES:
            errors["chart_type"] = f"Unknown chart type '{self.chart_type}'"
            return errors
        if self.aggregation not in AGGREGATIONS:
            errors["aggregation"] = f"Unknown aggregation '{self.aggregation}'"
        elif self.chart_type != "number":
            if self.aggregation not in GROUPED_AGGREGATIONS:
                errors["aggregation"] = "Grouped charts support count or sum"
            if not self.group_field_id:
                errors["group_field_id"] = "Select a field to group by"
        if self.aggregation == "sum" and not self.value_field_id:
            errors["value_field_id"] = "Select a numeric value field for sum"
        elif (
            self.chart_type == "number"
            and self.aggregation in ("avg", "min", "max")
            and not self.value_field_id
        ):
            errors["value_field_id"] = "Select a numeric value field for this aggregation"
        if self.filter_match not in FILTER_MATCHES:
            errors["filter_match"] = f"Unknown filter match '{self.filter_match}'"
        return errors

    def validate(self) -> Dict[str, Any]:
        """Return the payload to persist or raise :class:`CardValidationError`."""
        errors = self.errors()
        if errors:
            raise CardValidationError(errors)
        is_number = self.chart_type == "number"
        return {
            "title": self.title.strip(),
            "base_id": self.base_id,
            "table_id": self.table_id,
            "chart_type": self.chart_type,
            "aggregation": self.aggregation,
            "group_field_id": None if is_number else self.group_field_id,
            "value_field_id": None if self.aggregation == "count" else self.value_field_id,
            "filters": [entry.to_dict() for entry in sanitize_filters(self.filters)],
            "filter_match": self.filter_match,
        }


__all__ = [
    "AGGREGATIONS",
    "AnalyticsCard",
    "CHART_TYPES",
    "CardForm",
    "CardLayout",
    "CardValidationError",
    "GRID_COLUMNS",
    "GROUPED_AGGREGATIONS",
    "clamp_layout",
    "default_layout",
    "default_size",
    "layout_constraints",
]
