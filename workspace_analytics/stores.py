"""Collaborator interfaces for records, cards and metadata, with in-memory implementations.

The orchestrator only talks to the protocols below. The ``Memory*`` classes
keep everything in dictionaries and are used by the command-line report and
the test-suite.
"""

from __future__ import annotations

import copy
import itertools
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol

from .cards import AnalyticsCard
from .fields import Field
from .records import RecordRow

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[str], None]
Unsubscribe = Callable[[], None]


class RecordStore(Protocol):
    """Source of record rows, able to announce changes per table."""

    async def fetch_rows(self, table_id: str) -> List[RecordRow]:
        ...

    def subscribe(self, table_id: str, callback: ChangeCallback) -> Unsubscribe:
        ...


class CardStore(Protocol):
    async def list_cards(self, workspace_id: str) -> List[AnalyticsCard]:
        ...

    async def create_card(self, payload: Mapping[str, Any]) -> AnalyticsCard:
        ...

    async def update_card(self, card_id: str, updates: Mapping[str, Any]) -> AnalyticsCard:
        ...

    async def delete_card(self, card_id: str) -> None:
        ...


class FieldStore(Protocol):
    async def list_fields(self, table_id: str) -> List[Field]:
        ...


class MetadataStore(Protocol):
    async def list_bases(self, workspace_id: str) -> List[Dict[str, Any]]:
        ...

    async def list_tables(self, base_id: str) -> List[Dict[str, Any]]:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


class MemoryRecordStore:
    def __init__(self, rows_by_table: Optional[Mapping[str, Iterable[RecordRow]]] = None):
        self._rows: Dict[str, List[RecordRow]] = {
            table_id: list(rows) for table_id, rows in (rows_by_table or {}).items()
        }
        self._subscribers: Dict[str, List[ChangeCallback]] = {}

    async def fetch_rows(self, table_id: str) -> List[RecordRow]:
        return list(self._rows.get(table_id, []))

    def subscribe(self, table_id: str, callback: ChangeCallback) -> Unsubscribe:
        self._subscribers.setdefault(table_id, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(table_id, [])
            if callback in callbacks:
                callbacks.remove(callback)
            if not callbacks:
                self._subscribers.pop(table_id, None)

        return unsubscribe

    def subscriber_count(self, table_id: str) -> int:
        return len(self._subscribers.get(table_id, []))

    def _notify(self, table_id: str) -> None:
        for callback in list(self._subscribers.get(table_id, [])):
            try:
                callback(table_id)
            except Exception:
                logger.exception("Change subscriber for table %s failed", table_id)

    def insert_row(self, table_id: str, row: RecordRow) -> RecordRow:
        if row.id is None:
            row = RecordRow(
                values=row.values,
                created_at=row.created_at or _utc_now().isoformat(),
                updated_at=row.updated_at,
                id=str(uuid.uuid4()),
            )
        self._rows.setdefault(table_id, []).append(row)
        self._notify(table_id)
        return row

    def update_row(self, table_id: str, row_id: str, values: Mapping[str, Any]) -> RecordRow:
        rows = self._rows.get(table_id, [])
        for index, existing in enumerate(rows):
            if existing.id == row_id:
                merged = dict(existing.values)
                merged.update(values)
                updated = RecordRow(
                    values=merged,
                    created_at=existing.created_at,
                    updated_at=_utc_now().isoformat(),
                    id=existing.id,
                )
                rows[index] = updated
                self._notify(table_id)
                return updated
        raise KeyError(f"Unknown record '{row_id}'")

    def delete_row(self, table_id: str, row_id: str) -> None:
        rows = self._rows.get(table_id, [])
        remaining = [row for row in rows if row.id != row_id]
        if len(remaining) == len(rows):
            raise KeyError(f"Unknown record '{row_id}'")
        self._rows[table_id] = remaining
        self._notify(table_id)


# ---------------------------------------------------------------------------
# Cards
# ---------------------------------------------------------------------------


class MemoryCardStore:
    """Card persistence keyed by id; listing is newest first."""

    def __init__(
        self,
        cards: Optional[Iterable[AnalyticsCard]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._clock = clock or _utc_now
        self._sequence = itertools.count()
        self._cards: Dict[str, Dict[str, Any]] = {}
        self._order: Dict[str, int] = {}
        for card in cards or []:
            self._store(card.to_dict())

    def _store(self, payload: Dict[str, Any]) -> AnalyticsCard:
        card = AnalyticsCard.from_dict(payload)
        self._cards[card.id] = card.to_dict()
        self._order.setdefault(card.id, next(self._sequence))
        return card

    async def list_cards(self, workspace_id: str) -> List[AnalyticsCard]:
        matching = [
            payload for payload in self._cards.values() if payload.get("workspace_id") == workspace_id
        ]
        matching.sort(
            key=lambda payload: (payload.get("created_at") or "", self._order[payload["id"]]),
            reverse=True,
        )
        return [AnalyticsCard.from_dict(payload) for payload in matching]

    async def create_card(self, payload: Mapping[str, Any]) -> AnalyticsCard:
        timestamp = self._clock().isoformat()
        record = copy.deepcopy(dict(payload))
        record["id"] = str(uuid.uuid4())
        record["created_at"] = timestamp
        record["updated_at"] = timestamp
        card = self._store(record)
        logger.debug("Created analytics card %s", card.id)
        return card

    async def update_card(self, card_id: str, updates: Mapping[str, Any]) -> AnalyticsCard:
        if card_id not in self._cards:
            raise KeyError(f"Unknown analytics card '{card_id}'")
        record = copy.deepcopy(self._cards[card_id])
        record.update(copy.deepcopy(dict(updates)))
        record["id"] = card_id
        record["updated_at"] = self._clock().isoformat()
        return self._store(record)

    async def delete_card(self, card_id: str) -> None:
        if card_id not in self._cards:
            raise KeyError(f"Unknown analytics card '{card_id}'")
        del self._cards[card_id]
        self._order.pop(card_id, None)


# ---------------------------------------------------------------------------
# Metadata
# ---------------------------------------------------------------------------


class MemoryFieldStore:
    def __init__(self, fields: Optional[Iterable[Field]] = None):
        self._fields: Dict[str, List[Field]] = {}
        for definition in fields or []:
            self._fields.setdefault(definition.table_id or "", []).append(definition)

    async def list_fields(self, table_id: str) -> List[Field]:
        return sorted(self._fields.get(table_id, []), key=lambda entry: entry.order_index)


class MemoryMetadataStore:
    def __init__(
        self,
        bases: Optional[Iterable[Mapping[str, Any]]] = None,
        tables: Optional[Iterable[Mapping[str, Any]]] = None,
    ):
        self._bases = [dict(base) for base in bases or []]
        self._tables = [dict(table) for table in tables or []]

    async def list_bases(self, workspace_id: str) -> List[Dict[str, Any]]:
        return [
            dict(base)
            for base in self._bases
            if base.get("workspace_id") in (None, workspace_id)
        ]

    async def list_tables(self, base_id: str) -> List[Dict[str, Any]]:
        return [dict(table) for table in self._tables if table.get("base_id") == base_id]


__all__ = [
    "CardStore",
    "ChangeCallback",
    "FieldStore",
    "MemoryCardStore",
    "MemoryFieldStore",
    "MemoryMetadataStore",
    "MemoryRecordStore",
    "MetadataStore",
    "RecordStore",
    "Unsubscribe",
]
