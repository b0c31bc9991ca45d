"""Stateful coordinator for the analytics cards of one workspace.

The orchestrator owns the card list and, per card, the latest aggregation
result. It loads fields once per table, re-runs the pipeline when the record
store reports changes (debounced per table), and persists card edits and layout
changes through the card store.

Every refresh of a card takes a new request token. A load only publishes its
result while its token is still the newest one issued for that card, so
out-of-order completions never overwrite fresher data.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
)

from .aggregation import AggregationResult, aggregate
from .cards import (
    AnalyticsCard,
    CardForm,
    CardLayout,
    clamp_layout,
    default_layout,
)
from .fields import Field, index_fields
from .presentation import card_detail, card_view
from .settings import AnalyticsSettings, get_settings
from .stores import CardStore, FieldStore, MetadataStore, RecordStore, Unsubscribe

logger = logging.getLogger(__name__)

NoticeCallback = Callable[[str, str], None]


@dataclass
class CardState:
    """Latest known data for a card."""

    card: AnalyticsCard
    result: Optional[AggregationResult] = None
    error: Optional[str] = None
    loading: bool = False
    last_updated: Optional[datetime] = None
    token: int = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class CardOrchestrator:
    def __init__(
        self,
        workspace_id: str,
        card_store: CardStore,
        record_store: RecordStore,
        field_store: FieldStore,
        metadata_store: Optional[MetadataStore] = None,
        *,
        settings: Optional[AnalyticsSettings] = None,
        on_notice: Optional[NoticeCallback] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.workspace_id = workspace_id
        self._card_store = card_store
        self._record_store = record_store
        self._field_store = field_store
        self._metadata_store = metadata_store
        self._settings = settings or get_settings()
        self._on_notice = on_notice
        self._clock = clock or _utc_now

        self._order: List[str] = []
        self._states: Dict[str, CardState] = {}
        self._tokens = itertools.count(1)

        self._fields: Dict[str, List[Field]] = {}
        self._field_loads: Dict[str, "asyncio.Future[List[Field]]"] = {}
        self._base_names: Dict[str, str] = {}
        self._table_names: Dict[str, str] = {}

        self._subscriptions: Dict[str, Unsubscribe] = {}
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set["asyncio.Task[Any]"] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._closed = False
        self.notices: List[Dict[str, str]] = []

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def cards(self) -> List[AnalyticsCard]:
        return [self._states[card_id].card for card_id in self._order]

    @property
    def closed(self) -> bool:
        return self._closed

    def state(self, card_id: str) -> CardState:
        try:
            return self._states[card_id]
        except KeyError:
            raise KeyError(f"Unknown analytics card '{card_id}'") from None

    def subscribed_tables(self) -> Set[str]:
        return set(self._subscriptions)

    def layouts(self) -> Dict[str, CardLayout]:
        return {
            card_id: clamp_layout(
                self._states[card_id].card.resolved_layout(index),
                self._states[card_id].card.chart_type,
            )
            for index, card_id in enumerate(self._order)
        }

    def _notice(self, level: str, message: str) -> None:
        self.notices.append({"level": level, "message": message})
        if self._on_notice is not None:
            self._on_notice(level, message)

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    async def load_cards(self) -> List[AnalyticsCard]:
        """Fetch the workspace's cards, subscribe to their tables and refresh them."""
        self._loop = asyncio.get_running_loop()
        try:
            cards = await self._card_store.list_cards(self.workspace_id)
        except Exception:
            logger.exception("Failed to load analytics cards for workspace %s", self.workspace_id)
            self._notice("error", "Failed to load analytics cards")
            raise
        self._order = [card.id for card in cards]
        self._states = {card.id: CardState(card=card) for card in cards}
        self._sync_subscriptions()
        await self.load_metadata()
        await self.refresh_all()
        return self.cards

    async def load_metadata(self) -> None:
        """Resolve base and table names when a metadata store is configured."""
        if self._metadata_store is None:
            return
        try:
            bases = await self._metadata_store.list_bases(self.workspace_id)
            table_lists = await asyncio.gather(
                *(self._metadata_store.list_tables(base["id"]) for base in bases)
            )
        except Exception:
            logger.exception("Failed to load bases for workspace %s", self.workspace_id)
            return
        self._base_names = {base["id"]: base.get("name") or "" for base in bases}
        self._table_names = {
            table["id"]: table.get("name") or "" for tables in table_lists for table in tables
        }

    async def fields_for(self, table_id: str) -> List[Field]:
        """Fields of ``table_id``, fetched once; concurrent callers share the fetch."""
        cached = self._fields.get(table_id)
        if cached is not None:
            return cached
        pending = self._field_loads.get(table_id)
        if pending is None:
            pending = asyncio.ensure_future(self._fetch_fields(table_id))
            self._field_loads[table_id] = pending
        return await asyncio.shield(pending)

    async def _fetch_fields(self, table_id: str) -> List[Field]:
        try:
            fields = list(await self._field_store.list_fields(table_id))
        finally:
            self._field_loads.pop(table_id, None)
        self._fields[table_id] = fields
        return fields

    def invalidate_fields(self, table_id: Optional[str] = None) -> None:
        if table_id is None:
            self._fields.clear()
        else:
            self._fields.pop(table_id, None)

    # ------------------------------------------------------------------
    # Refreshing
    # ------------------------------------------------------------------

    def _is_current(self, card_id: str, token: int) -> bool:
        state = self._states.get(card_id)
        return state is not None and state.token == token

    async def refresh_card(self, card_id: str) -> CardState:
        state = self.state(card_id)
        token = next(self._tokens)
        state.token = token
        state.loading = True
        card = state.card
        try:
            if not card.table_id:
                raise ValueError("Card has no table")
            fields, rows = await asyncio.gather(
                self.fields_for(card.table_id),
                self._record_store.fetch_rows(card.table_id),
            )
            result = aggregate(rows, card, index_fields(fields), now=self._clock())
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._is_current(card_id, token):
                return state
            logger.warning("Failed to load data for analytics card %s: %s", card_id, exc)
            state.result = None
            state.error = str(exc) or "Failed to load data"
            state.loading = False
            return state
        if not self._is_current(card_id, token):
            logger.debug("Discarding stale result for analytics card %s", card_id)
            return state
        state.result = result
        state.error = None
        state.loading = False
        state.last_updated = self._clock()
        return state

    async def _refresh_many(self, card_ids: Iterable[str]) -> None:
        await asyncio.gather(
            *(self.refresh_card(card_id) for card_id in card_ids if card_id in self._states)
        )

    async def refresh_table(self, table_id: str) -> None:
        await self._refresh_many(
            [card_id for card_id in self._order if self._states[card_id].card.table_id == table_id]
        )

    async def refresh_all(self) -> None:
        await self._refresh_many(list(self._order))

    # ------------------------------------------------------------------
    # Change notifications
    # ------------------------------------------------------------------

    def _sync_subscriptions(self) -> None:
        in_use = {
            state.card.table_id for state in self._states.values() if state.card.table_id
        }
        for table_id in set(self._subscriptions) - in_use:
            self._subscriptions.pop(table_id)()
            timer = self._timers.pop(table_id, None)
            if timer is not None:
                timer.cancel()
        for table_id in in_use - set(self._subscriptions):
            self._subscriptions[table_id] = self._record_store.subscribe(
                table_id, self.notify_table_changed
            )

    def notify_table_changed(self, table_id: str) -> None:
        """Schedule a refresh of ``table_id``'s cards, restarting any pending timer."""
        if self._closed:
            return
        loop = self._loop or asyncio.get_running_loop()
        pending = self._timers.pop(table_id, None)
        if pending is not None:
            pending.cancel()
        self._timers[table_id] = loop.call_later(
            self._settings.refresh_debounce_seconds, self._fire_refresh, table_id
        )

    def _fire_refresh(self, table_id: str) -> None:
        self._timers.pop(table_id, None)
        if self._closed:
            return
        logger.debug("Refreshing analytics cards for table %s", table_id)
        self._spawn(self.refresh_table(table_id))

    def _spawn(self, awaitable: Awaitable[Any]) -> "asyncio.Task[Any]":
        task = asyncio.ensure_future(awaitable)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background analytics task failed", exc_info=exc)

    async def drain(self) -> None:
        """Wait until pending debounced refreshes and background saves have finished."""
        loop = asyncio.get_running_loop()
        while self._timers or self._tasks:
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
                continue
            deadline = max(handle.when() for handle in self._timers.values())
            await asyncio.sleep(max(deadline - loop.time(), 0))

    async def close(self) -> None:
        self._closed = True
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for unsubscribe in self._subscriptions.values():
            unsubscribe()
        self._subscriptions.clear()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    # ------------------------------------------------------------------
    # Editing
    # ------------------------------------------------------------------

    async def create_card(self, form: CardForm, created_by: Optional[str] = None) -> AnalyticsCard:
        payload = form.validate()
        payload["workspace_id"] = self.workspace_id
        payload["created_by"] = created_by
        payload["layout"] = default_layout(form.chart_type, len(self._order)).to_dict()
        try:
            card = await self._card_store.create_card(payload)
        except Exception:
            logger.exception("Failed to create analytics card")
            self._notice("error", "Failed to save analytics card")
            raise
        self._order.insert(0, card.id)
        self._states[card.id] = CardState(card=card)
        self._sync_subscriptions()
        self._notice("success", "Analytics card created")
        await self.refresh_card(card.id)
        return card

    async def update_card(self, card_id: str, form: CardForm) -> AnalyticsCard:
        state = self.state(card_id)
        payload = form.validate()
        try:
            card = await self._card_store.update_card(card_id, payload)
        except Exception:
            logger.exception("Failed to update analytics card %s", card_id)
            self._notice("error", "Failed to save analytics card")
            raise
        # Layout changes applied while the save was pending stay local.
        state.card = replace(card, layout=state.card.layout or card.layout)
        self._sync_subscriptions()
        self._notice("success", "Analytics card updated")
        await self.refresh_card(card_id)
        return state.card

    async def delete_card(self, card_id: str) -> None:
        self.state(card_id)
        try:
            await self._card_store.delete_card(card_id)
        except Exception:
            logger.exception("Failed to delete analytics card %s", card_id)
            self._notice("error", "Failed to delete analytics card")
            raise
        # Dropping the state invalidates any load still in flight for this card.
        self._states.pop(card_id, None)
        self._order = [existing for existing in self._order if existing != card_id]
        self._sync_subscriptions()
        self._notice("success", "Analytics card deleted")

    def apply_layout(self, layouts: Mapping[str, Any]) -> Dict[str, CardLayout]:
        """Apply grid positions locally, then persist each one in the background.

        Persistence failures produce an error notice; the local layout is kept.
        """
        applied: Dict[str, CardLayout] = {}
        for card_id, raw in layouts.items():
            state = self._states.get(card_id)
            if state is None:
                logger.debug("Ignoring layout for unknown analytics card %s", card_id)
                continue
            layout = raw if isinstance(raw, CardLayout) else CardLayout.from_dict(raw)
            if layout is None:
                logger.debug("Ignoring malformed layout for analytics card %s", card_id)
                continue
            layout = clamp_layout(layout, state.card.chart_type)
            state.card = replace(state.card, layout=layout)
            applied[card_id] = layout
        if applied:
            self._spawn(self._persist_layouts(applied))
        return applied

    async def _persist_layouts(self, layouts: Mapping[str, CardLayout]) -> None:
        results = await asyncio.gather(
            *(
                self._card_store.update_card(card_id, {"layout": layout.to_dict()})
                for card_id, layout in layouts.items()
            ),
            return_exceptions=True,
        )
        failures = [result for result in results if isinstance(result, Exception)]
        for failure in failures:
            logger.error("Failed to save card layout: %s", failure)
        if failures:
            self._notice("error", "Failed to save card layout")

    # ------------------------------------------------------------------
    # Presentation
    # ------------------------------------------------------------------

    def _fields_by_id(self, card: AnalyticsCard) -> Dict[str, Field]:
        return index_fields(self._fields.get(card.table_id or "", []))

    def card_view(self, card_id: str) -> Dict[str, Any]:
        state = self.state(card_id)
        card = state.card
        index = self._order.index(card_id)
        return card_view(
            card,
            state.result,
            fields_by_id=self._fields_by_id(card),
            error=state.error,
            loading=state.loading,
            last_updated=state.last_updated,
            base_name=self._base_names.get(card.base_id or ""),
            table_name=self._table_names.get(card.table_id or ""),
            layout=clamp_layout(card.resolved_layout(index), card.chart_type).to_dict(),
            tz=self._settings.tzinfo,
        )

    def card_detail(self, card_id: str) -> Dict[str, Any]:
        state = self.state(card_id)
        card = state.card
        return card_detail(
            card,
            state.result,
            fields_by_id=self._fields_by_id(card),
            error=state.error,
            last_updated=state.last_updated,
            base_name=self._base_names.get(card.base_id or ""),
            table_name=self._table_names.get(card.table_id or ""),
            tz=self._settings.tzinfo,
        )


__all__ = ["CardOrchestrator", "CardState", "NoticeCallback"]
