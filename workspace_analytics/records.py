"""Read-only record rows handed to the analytics pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class RecordRow:
    """A single record of a table: stored values keyed by field id plus timestamps."""

    values: Mapping[str, Any] = field(default_factory=dict)
    created_at: Any = None
    updated_at: Any = None
    id: Optional[str] = None

    @property
    def last_modified(self) -> Any:
        """``updated_at`` when present, otherwise ``created_at``."""
        if self.updated_at is not None:
            return self.updated_at
        return self.created_at

    def get(self, field_id: Optional[str]) -> Any:
        if not field_id:
            return None
        return self.values.get(field_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "values": dict(self.values),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RecordRow":
        values = payload.get("values")
        return cls(
            values=dict(values) if isinstance(values, Mapping) else {},
            created_at=payload.get("created_at"),
            updated_at=payload.get("updated_at"),
            id=payload.get("id"),
        )


__all__ = ["RecordRow"]
