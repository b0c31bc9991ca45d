import asyncio
from datetime import datetime, timezone

import pytest

from workspace_analytics.cards import AnalyticsCard, CardForm, CardLayout, CardValidationError
from workspace_analytics.fields import Field
from workspace_analytics.orchestrator import CardOrchestrator
from workspace_analytics.records import RecordRow
from workspace_analytics.settings import AnalyticsSettings
from workspace_analytics.stores import (
    MemoryCardStore,
    MemoryFieldStore,
    MemoryMetadataStore,
    MemoryRecordStore,
)

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)
FAST = AnalyticsSettings(refresh_debounce_ms=20)


def fixed_clock():
    return NOW


class CountingFieldStore(MemoryFieldStore):
    def __init__(self, fields, failures=0):
        super().__init__(fields)
        self.calls = []
        self.failures = failures

    async def list_fields(self, table_id):
        self.calls.append(table_id)
        await asyncio.sleep(0)
        if self.failures:
            self.failures -= 1
            raise RuntimeError("fields unavailable")
        return await super().list_fields(table_id)


class CountingRecordStore(MemoryRecordStore):
    def __init__(self, rows_by_table=None, failing_tables=()):
        super().__init__(rows_by_table)
        self.fetches = []
        self.failing_tables = set(failing_tables)

    async def fetch_rows(self, table_id):
        self.fetches.append(table_id)
        if table_id in self.failing_tables:
            raise RuntimeError(f"records for {table_id} unavailable")
        return await super().fetch_rows(table_id)


class GatedRecordStore(MemoryRecordStore):
    """Hands out queued responses; a response may wait on an event before returning."""

    def __init__(self):
        super().__init__()
        self.responses = []

    async def fetch_rows(self, table_id):
        gate, rows = self.responses.pop(0)
        if gate is not None:
            await gate.wait()
        return rows


class GatedCardStore(MemoryCardStore):
    """Answers form saves with the record as it was, once ``release`` is set."""

    def __init__(self, cards):
        super().__init__(cards)
        self.release = None

    async def update_card(self, card_id, updates):
        card = await super().update_card(card_id, updates)
        if "layout" not in updates:
            await self.release.wait()
        return card


class FailingLayoutCardStore(MemoryCardStore):
    async def update_card(self, card_id, updates):
        if "layout" in updates:
            raise RuntimeError("layout store offline")
        return await super().update_card(card_id, updates)


FIELDS = [
    Field(id="status", table_id="t1", type="single_select", name="Status"),
    Field(id="amount", table_id="t1", type="number", name="Amount", order_index=1),
    Field(id="kind", table_id="t2", type="text", name="Kind"),
]


def rows(*statuses):
    return [RecordRow(values={"status": status, "amount": 10}, created_at="2024-03-01T00:00:00Z") for status in statuses]


def number_card(card_id, table_id="t1", **overrides):
    values = {
        "id": card_id,
        "workspace_id": "w1",
        "base_id": "b1",
        "table_id": table_id,
        "title": f"Card {card_id}",
        "chart_type": "number",
        "aggregation": "count",
        "created_at": "2024-01-01T00:00:00+00:00",
    }
    values.update(overrides)
    return AnalyticsCard(**values)


def build(cards, record_store=None, field_store=None, card_store=None, **kwargs):
    record_store = record_store or CountingRecordStore({"t1": rows("open", "open", "closed"), "t2": []})
    field_store = field_store or CountingFieldStore(FIELDS)
    card_store = card_store or MemoryCardStore(cards)
    kwargs.setdefault("settings", FAST)
    kwargs.setdefault("clock", fixed_clock)
    orchestrator = CardOrchestrator("w1", card_store, record_store, field_store, **kwargs)
    return orchestrator, card_store, record_store, field_store


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def test_load_cards_refreshes_every_card_and_subscribes():
    cards = [
        number_card("a"),
        AnalyticsCard(
            id="bb",
            workspace_id="w1",
            base_id="b1",
            table_id="t1",
            title="By status",
            chart_type="bar",
            group_field_id="status",
            created_at="2024-01-02T00:00:00+00:00",
        ),
    ]
    orchestrator, _, record_store, _ = build(cards)

    async def scenario():
        loaded = await orchestrator.load_cards()
        try:
            return loaded, orchestrator.card_view("a"), orchestrator.card_view("bb")
        finally:
            await orchestrator.close()

    loaded, number_view, bar_view = asyncio.run(scenario())
    assert [card.id for card in loaded] == ["bb", "a"]
    assert number_view["display_value"] == "3"
    assert number_view["status"] == "ready"
    assert bar_view["chart"]["labels"] == ["closed", "open"]
    assert bar_view["chart"]["datasets"][0]["data"] == [1, 2]
    assert record_store.subscriber_count("t1") == 0


def test_fields_are_fetched_once_per_table():
    cards = [number_card("a"), number_card("bb"), number_card("ccc", table_id="t2")]
    orchestrator, _, _, field_store = build(cards)

    async def scenario():
        await orchestrator.load_cards()
        await orchestrator.refresh_all()
        await orchestrator.close()

    asyncio.run(scenario())
    assert sorted(field_store.calls) == ["t1", "t2"]


def test_failed_field_fetch_is_not_cached():
    field_store = CountingFieldStore(FIELDS, failures=1)
    orchestrator, _, _, _ = build([number_card("a")], field_store=field_store)

    async def scenario():
        await orchestrator.load_cards()
        failed = orchestrator.card_view("a")
        await orchestrator.refresh_card("a")
        recovered = orchestrator.card_view("a")
        await orchestrator.close()
        return failed, recovered

    failed, recovered = asyncio.run(scenario())
    assert failed["status"] == "error"
    assert failed["error"] == "fields unavailable"
    assert recovered["status"] == "ready"
    assert field_store.calls == ["t1", "t1"]


def test_load_failures_are_isolated_per_card():
    record_store = CountingRecordStore({"t1": rows("open")}, failing_tables={"t2"})
    cards = [number_card("a"), number_card("bb", table_id="t2")]
    orchestrator, _, _, _ = build(cards, record_store=record_store)

    async def scenario():
        await orchestrator.load_cards()
        views = orchestrator.card_view("a"), orchestrator.card_view("bb")
        await orchestrator.close()
        return views

    healthy, broken = asyncio.run(scenario())
    assert healthy["status"] == "ready"
    assert healthy["display_value"] == "1"
    assert broken["status"] == "error"
    assert broken["error"] == "records for t2 unavailable"
    assert broken["display_value"] == "--"


def test_load_cards_failure_raises_and_notifies():
    class BrokenCardStore(MemoryCardStore):
        async def list_cards(self, workspace_id):
            raise RuntimeError("card store offline")

    notices = []
    orchestrator, _, _, _ = build(
        [], card_store=BrokenCardStore(), on_notice=lambda level, message: notices.append((level, message))
    )

    with pytest.raises(RuntimeError):
        asyncio.run(orchestrator.load_cards())
    assert notices == [("error", "Failed to load analytics cards")]


def test_metadata_names_feed_card_subtitles():
    metadata = MemoryMetadataStore(
        bases=[{"id": "b1", "name": "Sales", "workspace_id": "w1"}],
        tables=[{"id": "t1", "name": "Orders", "base_id": "b1"}],
    )
    orchestrator, _, _, _ = build([number_card("a")], metadata_store=metadata)

    async def scenario():
        await orchestrator.load_cards()
        view = orchestrator.card_view("a")
        detail = orchestrator.card_detail("a")
        await orchestrator.close()
        return view, detail

    view, detail = asyncio.run(scenario())
    assert view["subtitle"] == "Sales - Orders"
    assert detail["table_name"] == "Orders"


# ---------------------------------------------------------------------------
# Request tokens
# ---------------------------------------------------------------------------


def test_stale_responses_are_discarded():
    record_store = GatedRecordStore()
    orchestrator, card_store, _, _ = build([number_card("a")], record_store=record_store)

    async def scenario():
        slow_gate = asyncio.Event()
        record_store.responses = [(slow_gate, rows("old")), (None, rows("new", "new"))]
        await _seed(orchestrator, await card_store.list_cards("w1"))

        slow = asyncio.ensure_future(orchestrator.refresh_card("a"))
        await asyncio.sleep(0)
        await orchestrator.refresh_card("a")
        fresh_value = orchestrator.card_view("a")["display_value"]

        slow_gate.set()
        await slow
        final_value = orchestrator.card_view("a")["display_value"]
        await orchestrator.close()
        return fresh_value, final_value

    fresh_value, final_value = asyncio.run(scenario())
    assert fresh_value == "2"
    assert final_value == "2"


def test_deleting_a_card_invalidates_in_flight_loads():
    record_store = GatedRecordStore()
    orchestrator, card_store, _, _ = build([number_card("a")], record_store=record_store)

    async def scenario():
        gate = asyncio.Event()
        record_store.responses = [(gate, rows("x"))]
        await _seed(orchestrator, await card_store.list_cards("w1"))
        pending = asyncio.ensure_future(orchestrator.refresh_card("a"))
        await asyncio.sleep(0)
        await orchestrator.delete_card("a")
        gate.set()
        state = await pending
        await orchestrator.close()
        return state

    state = asyncio.run(scenario())
    assert state.result is None
    assert orchestrator.cards == []


async def _seed(orchestrator, cards):
    """Install cards without triggering the initial refresh."""
    original = orchestrator.refresh_all

    async def skip_refresh():
        return None

    orchestrator.refresh_all = skip_refresh
    try:
        await orchestrator.load_cards()
    finally:
        orchestrator.refresh_all = original
    assert [card.id for card in orchestrator.cards] == [card.id for card in cards]


# ---------------------------------------------------------------------------
# Change notifications
# ---------------------------------------------------------------------------


def test_notifications_are_debounced_per_table():
    orchestrator, _, record_store, _ = build([number_card("a")])

    async def scenario():
        await orchestrator.load_cards()
        baseline = len(record_store.fetches)
        for _ in range(3):
            orchestrator.notify_table_changed("t1")
        await orchestrator.drain()
        after_burst = len(record_store.fetches)
        await orchestrator.close()
        return baseline, after_burst

    baseline, after_burst = asyncio.run(scenario())
    assert after_burst == baseline + 1


def test_new_notification_resets_the_debounce_timer():
    settings = AnalyticsSettings(refresh_debounce_ms=100)
    orchestrator, _, record_store, _ = build([number_card("a")], settings=settings)

    async def scenario():
        await orchestrator.load_cards()
        baseline = len(record_store.fetches)
        orchestrator.notify_table_changed("t1")
        await asyncio.sleep(0.06)
        orchestrator.notify_table_changed("t1")
        await asyncio.sleep(0.06)
        before_deadline = len(record_store.fetches)
        await orchestrator.drain()
        after_deadline = len(record_store.fetches)
        await orchestrator.close()
        return baseline, before_deadline, after_deadline

    baseline, before_deadline, after_deadline = asyncio.run(scenario())
    assert before_deadline == baseline
    assert after_deadline == baseline + 1


def test_record_changes_refresh_cards_on_that_table_only():
    cards = [number_card("a"), number_card("bb", table_id="t2")]
    orchestrator, _, record_store, _ = build(cards)

    async def scenario():
        await orchestrator.load_cards()
        record_store.fetches.clear()
        record_store.insert_row("t1", RecordRow(values={"status": "open"}))
        await orchestrator.drain()
        value = orchestrator.card_view("a")["display_value"]
        await orchestrator.close()
        return value

    value = asyncio.run(scenario())
    assert value == "4"
    assert record_store.fetches == ["t1"]


def test_close_cancels_pending_timers_and_ignores_later_notifications():
    orchestrator, _, record_store, _ = build([number_card("a")])

    async def scenario():
        await orchestrator.load_cards()
        baseline = len(record_store.fetches)
        orchestrator.notify_table_changed("t1")
        await orchestrator.close()
        orchestrator.notify_table_changed("t1")
        await asyncio.sleep(0.05)
        return baseline

    baseline = asyncio.run(scenario())
    assert len(record_store.fetches) == baseline
    assert record_store.subscriber_count("t1") == 0
    assert orchestrator.closed


# ---------------------------------------------------------------------------
# Editing
# ---------------------------------------------------------------------------


def test_create_card_validates_before_saving():
    orchestrator, card_store, _, _ = build([])

    async def scenario():
        await orchestrator.load_cards()
        with pytest.raises(CardValidationError):
            await orchestrator.create_card(CardForm(title="", chart_type="bar"))
        remaining = await card_store.list_cards("w1")
        await orchestrator.close()
        return remaining

    assert asyncio.run(scenario()) == []


def test_create_card_prepends_with_default_layout_and_subscribes():
    orchestrator, _, record_store, _ = build([number_card("a")])

    async def scenario():
        await orchestrator.load_cards()
        created = await orchestrator.create_card(
            CardForm(title="Kinds", base_id="b1", table_id="t2", chart_type="pie", group_field_id="kind"),
            created_by="user-1",
        )
        subscribed = orchestrator.subscribed_tables()
        view = orchestrator.card_view(created.id)
        await orchestrator.close()
        return created, subscribed, view

    created, subscribed, view = asyncio.run(scenario())
    assert orchestrator.cards[0].id == created.id
    assert created.layout == CardLayout(x=4, y=0, w=4, h=5)
    assert created.created_by == "user-1"
    assert subscribed == {"t1", "t2"}
    assert view["status"] == "empty"
    assert orchestrator.notices[-1] == {"level": "success", "message": "Analytics card created"}


def test_update_card_moves_subscriptions():
    orchestrator, _, _, _ = build([number_card("a")])

    async def scenario():
        await orchestrator.load_cards()
        form = CardForm.from_card(orchestrator.state("a").card)
        form.table_id = "t2"
        updated = await orchestrator.update_card("a", form)
        subscribed = orchestrator.subscribed_tables()
        await orchestrator.close()
        return updated, subscribed

    updated, subscribed = asyncio.run(scenario())
    assert updated.table_id == "t2"
    assert subscribed == {"t2"}
    assert orchestrator.state("a").result.value == 0


def test_update_card_keeps_layout_applied_while_saving():
    card_store = GatedCardStore([number_card("a")])
    orchestrator, _, _, _ = build([], card_store=card_store)

    async def scenario():
        card_store.release = asyncio.Event()
        await orchestrator.load_cards()
        form = CardForm.from_card(orchestrator.state("a").card)
        form.title = "Renamed"
        saving = asyncio.ensure_future(orchestrator.update_card("a", form))
        await asyncio.sleep(0)
        orchestrator.apply_layout({"a": CardLayout(x=6, y=2, w=6, h=4)})
        await orchestrator.drain()
        card_store.release.set()
        updated = await saving
        await orchestrator.close()
        return updated

    updated = asyncio.run(scenario())
    assert updated.title == "Renamed"
    assert orchestrator.state("a").card.layout == CardLayout(x=6, y=2, w=6, h=4)
    assert orchestrator.card_view("a")["layout"] == {"x": 6, "y": 2, "w": 6, "h": 4}


def test_delete_card_unsubscribes_unused_tables():
    orchestrator, card_store, record_store, _ = build([number_card("a"), number_card("bb", table_id="t2")])

    async def scenario():
        await orchestrator.load_cards()
        await orchestrator.delete_card("bb")
        remaining = await card_store.list_cards("w1")
        subscribed = orchestrator.subscribed_tables()
        await orchestrator.close()
        return remaining, subscribed

    remaining, subscribed = asyncio.run(scenario())
    assert [card.id for card in remaining] == ["a"]
    assert subscribed == {"t1"}
    assert record_store.subscriber_count("t2") == 0
    with pytest.raises(KeyError):
        orchestrator.state("bb")


def test_layout_failures_notify_without_rolling_back():
    card_store = FailingLayoutCardStore([number_card("a")])
    notices = []
    orchestrator, _, _, _ = build(
        [], card_store=card_store, on_notice=lambda level, message: notices.append((level, message))
    )

    async def scenario():
        await orchestrator.load_cards()
        applied = orchestrator.apply_layout(
            {"a": {"x": 20, "y": 1, "w": 1, "h": 1}, "ghost": {"x": 0, "y": 0, "w": 3, "h": 3}}
        )
        await orchestrator.drain()
        stored = await card_store.list_cards("w1")
        await orchestrator.close()
        return applied, stored

    applied, stored = asyncio.run(scenario())
    assert applied == {"a": CardLayout(x=10, y=1, w=2, h=2)}
    assert orchestrator.state("a").card.layout == CardLayout(x=10, y=1, w=2, h=2)
    assert stored[0].layout is None
    assert notices == [("error", "Failed to save card layout")]


def test_layout_changes_are_persisted():
    orchestrator, card_store, _, _ = build([number_card("a")])

    async def scenario():
        await orchestrator.load_cards()
        orchestrator.apply_layout({"a": CardLayout(x=3, y=0, w=6, h=4)})
        await orchestrator.drain()
        stored = await card_store.list_cards("w1")
        await orchestrator.close()
        return stored

    stored = asyncio.run(scenario())
    assert stored[0].layout == CardLayout(x=3, y=0, w=6, h=4)
    assert orchestrator.card_view("a")["layout"] == {"x": 3, "y": 0, "w": 6, "h": 4}


def test_unknown_card_ids_raise_key_error():
    orchestrator, _, _, _ = build([])
    with pytest.raises(KeyError):
        orchestrator.card_view("missing")
    with pytest.raises(KeyError):
        asyncio.run(orchestrator.refresh_card("missing"))
