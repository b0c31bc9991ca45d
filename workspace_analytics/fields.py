"""Table field metadata consumed by the analytics filters and pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from .values import stringify

TEXT_FIELD_TYPES = frozenset({"text", "long_text", "email", "phone", "link"})
NUMBER_FIELD_TYPES = frozenset({"number", "monetary"})
DATE_FIELD_TYPES = frozenset({"date", "datetime"})
SELECT_FIELD_TYPES = frozenset({"single_select", "multi_select", "radio_select"})
KNOWN_FIELD_TYPES = (
    TEXT_FIELD_TYPES | NUMBER_FIELD_TYPES | DATE_FIELD_TYPES | SELECT_FIELD_TYPES | {"checkbox"}
)


@dataclass(frozen=True)
class SelectOptions:
    """Options of a select-like field: stored value mapped to its display label."""

    labels: Mapping[str, str] = field(default_factory=dict)

    def label_for(self, value: Any) -> str:
        if isinstance(value, str):
            return self.labels.get(value) or value
        return stringify(value)

    def to_dict(self) -> Dict[str, Any]:
        return {value: {"label": label} for value, label in self.labels.items()}


@dataclass(frozen=True)
class NoOptions:
    """Fields without option metadata resolve every value to itself."""

    def label_for(self, value: Any) -> str:
        return stringify(value)

    def to_dict(self) -> Optional[Dict[str, Any]]:
        return None


FieldOptions = Union[SelectOptions, NoOptions]


def parse_field_options(field_type: str, payload: Any) -> FieldOptions:
    """Build the options variant for ``field_type`` from a raw option mapping.

    Each entry may map a stored value to a plain label or to an object carrying
    ``label`` or ``name``. Entries without a usable label are skipped.
    """
    if field_type not in SELECT_FIELD_TYPES:
        return NoOptions()
    if not isinstance(payload, Mapping):
        return SelectOptions()
    labels: Dict[str, str] = {}
    for value, option in payload.items():
        label: Any = None
        if isinstance(option, str):
            label = option
        elif isinstance(option, Mapping):
            label = option.get("label") or option.get("name")
        if label:
            labels[str(value)] = str(label)
    return SelectOptions(labels=labels)


@dataclass(frozen=True)
class Field:
    """A single column of a table being analysed."""

    id: str
    type: str = "text"
    name: str = ""
    table_id: Optional[str] = None
    order_index: int = 0
    options: FieldOptions = field(default_factory=NoOptions)

    @property
    def is_date(self) -> bool:
        return self.type in DATE_FIELD_TYPES

    @property
    def is_numeric(self) -> bool:
        return self.type in NUMBER_FIELD_TYPES

    def label_for(self, value: Any) -> str:
        return self.options.label_for(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "table_id": self.table_id,
            "name": self.name,
            "type": self.type,
            "order_index": self.order_index,
            "options": self.options.to_dict(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Field":
        if not payload.get("id"):
            raise ValueError("Field payload is missing an id")
        field_type = str(payload.get("type") or "text")
        return cls(
            id=str(payload["id"]),
            type=field_type,
            name=str(payload.get("name") or ""),
            table_id=payload.get("table_id"),
            order_index=int(payload.get("order_index") or 0),
            options=parse_field_options(field_type, payload.get("options")),
        )


def index_fields(fields: Iterable[Field]) -> Dict[str, Field]:
    return {entry.id: entry for entry in fields}


__all__ = [
    "DATE_FIELD_TYPES",
    "Field",
    "FieldOptions",
    "KNOWN_FIELD_TYPES",
    "NUMBER_FIELD_TYPES",
    "NoOptions",
    "SELECT_FIELD_TYPES",
    "SelectOptions",
    "TEXT_FIELD_TYPES",
    "index_fields",
    "parse_field_options",
]
