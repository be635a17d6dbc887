import asyncio
import threading

import pytest
from conftest import FakeClock

from leadflow.schemas.sync import PendingStageUpdate, PendingSyncUpdate
from leadflow.services.event_bus import EventBus, EventTag, ForceResync, LeadNameChanged, LeadStageChanged
from leadflow.services.kv_store import InMemoryKeyValueStore
from leadflow.services.lead_ids import chat_id_for_lead, is_valid_display_name, normalize_lead_id
from leadflow.services.sync_engine import (
    STAGE_UPDATES_KEY,
    SYNC_UPDATES_KEY,
    InMemoryChatViewModel,
    LeadCache,
    LeadSyncEngine,
)


class ThreadRecordingStore(InMemoryKeyValueStore):
    """In-memory store that reports itself as doing I/O."""

    blocking_io = True

    def __init__(self):
        super().__init__()
        self.write_threads = []

    def _write(self, key, value, origin):
        self.write_threads.append(threading.get_ident())
        return super()._write(key, value, origin)


@pytest.fixture
def chat_view():
    return InMemoryChatViewModel()


@pytest.fixture
def engine(event_bus, kv_store, chat_view, clock):
    engine = LeadSyncEngine(event_bus, kv_store, chat_view, clock=clock, origin="tab-a")
    engine.subscribe()
    return engine


class TestLeadIds:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("42", "42"),
            (42, "42"),
            ("lead_42", "42"),
            ("  lead_abc-1 ", "abc-1"),
            ("undefined", None),
            ("null", None),
            ("", None),
            (None, None),
            (True, None),
            ("lead_", None),
            ("42; drop table", None),
        ],
    )
    def test_normalize_lead_id(self, raw, expected):
        assert normalize_lead_id(raw) == expected

    def test_chat_id(self):
        assert chat_id_for_lead("42") == "lead_42"

    def test_display_name(self):
        assert is_valid_display_name("Ana")
        assert not is_valid_display_name("  ")
        assert not is_valid_display_name("undefined")
        assert not is_valid_display_name(None)


class TestSyncLeadToChat:
    def test_applies_to_chat_view_immediately(self, engine, chat_view, clock):
        assert engine.sync_lead_to_chat("42", "Ana", stage="qualification", email="ana@example.com")

        chat = chat_view.chats["lead_42"]
        assert chat["name"] == "Ana"
        assert chat["metadata"]["synced_name"] == "Ana"
        assert chat["metadata"]["stage"] == "qualification"
        assert chat["metadata"]["email"] == "ana@example.com"
        assert chat_view.last_trigger == clock.now

    def test_duplicate_submission_yields_one_update(self, engine, event_bus):
        published = []
        event_bus.subscribe(EventTag.LEAD_NAME_CHANGED, published.append)

        assert engine.sync_lead_to_chat("42", "Ana") is True
        assert engine.sync_lead_to_chat("42", "Ana") is False

        assert list(engine.pending) == ["42"]
        assert len(published) == 1

    def test_new_name_replaces_pending(self, engine):
        engine.sync_lead_to_chat("42", "Ana")
        engine.sync_lead_to_chat("42", "Ana María")

        assert engine.pending["42"].name == "Ana María"

    def test_chat_prefix_is_stripped(self, engine, chat_view):
        engine.sync_lead_to_chat("lead_42", "Ana")
        assert "lead_42" in chat_view.chats
        assert "42" in engine.pending

    def test_invalid_input_rejected(self, engine, chat_view):
        assert engine.sync_lead_to_chat("undefined", "Ana") is False
        assert engine.sync_lead_to_chat("42", "") is False
        assert engine.pending == {}
        assert chat_view.chats == {}

    def test_no_broadcast(self, engine, event_bus):
        published = []
        event_bus.subscribe(EventTag.LEAD_NAME_CHANGED, published.append)

        engine.sync_lead_to_chat("42", "Ana", broadcast=False)

        assert published == []

    def test_pending_set_is_mirrored(self, engine, kv_store):
        engine.sync_lead_to_chat("42", "Ana")

        mirrored = kv_store.get(SYNC_UPDATES_KEY)
        assert [entry["lead_id"] for entry in mirrored] == ["42"]
        assert mirrored[0]["name"] == "Ana"

    def test_updates_lead_cache(self, engine, clock):
        engine.sync_lead_to_chat("42", "Ana", phone="555")
        cached = engine.lead_cache.get("42")
        assert cached.name == "Ana"
        assert cached.phone == "555"
        assert cached.updated_at == clock.now


class TestDrainAndRefresh:
    @pytest.mark.asyncio
    async def test_drain_clears_pending_and_refreshes(self, engine, chat_view):
        engine.sync_lead_to_chat("42", "Ana")
        engine.sync_lead_to_chat("43", "Luis")

        applied = await engine.drain()

        assert applied == 2
        assert engine.pending == {}
        assert chat_view.refresh_count == 1

    @pytest.mark.asyncio
    async def test_drain_with_nothing_pending(self, engine, chat_view):
        assert await engine.drain() == 0
        assert chat_view.refresh_count == 0

    @pytest.mark.asyncio
    async def test_refresh_is_throttled(self, engine, chat_view, clock):
        engine.sync_lead_to_chat("42", "Ana")
        await engine.drain()
        clock.advance(seconds=3)
        engine.sync_lead_to_chat("43", "Luis")
        await engine.drain()
        assert chat_view.refresh_count == 1

        clock.advance(seconds=3)
        engine.sync_lead_to_chat("44", "Eva")
        await engine.drain()
        assert chat_view.refresh_count == 2

    @pytest.mark.asyncio
    async def test_force_resync_ignores_throttle(self, engine, chat_view, clock):
        engine.sync_lead_to_chat("42", "Ana")
        await engine.drain()
        chat_view.chats.clear()

        applied = await engine.force_resync()

        assert applied == 1
        assert chat_view.chats["lead_42"]["name"] == "Ana"
        assert chat_view.refresh_count == 2

    @pytest.mark.asyncio
    async def test_failing_refresh_is_logged(self, engine, chat_view):
        async def broken():
            raise RuntimeError("inbox offline")

        chat_view.refresh_chat_list = broken
        engine.sync_lead_to_chat("42", "Ana")

        assert await engine.drain() == 1

    @pytest.mark.asyncio
    async def test_timer_drains_in_background(self, event_bus, kv_store, chat_view, clock):
        engine = LeadSyncEngine(event_bus, kv_store, chat_view, clock=clock, drain_interval_seconds=0.01)
        engine.start()
        engine.sync_lead_to_chat("42", "Ana")

        await asyncio.sleep(0.05)
        await engine.stop()

        assert engine.pending == {}
        assert chat_view.refresh_count >= 1


class TestEventSubscriptions:
    def test_stage_change_updates_chat_metadata(self, engine, event_bus, chat_view):
        event_bus.publish(
            LeadStageChanged(tenant_id="tenant-1", lead_id="42", previous_stage="new", new_stage="opportunity")
        )

        assert chat_view.chats["lead_42"]["metadata"]["stage"] == "opportunity"
        assert engine.lead_cache.get("42").stage == "opportunity"

    def test_name_change_from_other_origin_is_applied(self, engine, event_bus, chat_view):
        event_bus.publish(LeadNameChanged(lead_id="42", name="Ana", origin="tab-b"))
        assert chat_view.chats["lead_42"]["name"] == "Ana"

    def test_own_name_change_is_ignored(self, engine, event_bus):
        event_bus.publish(LeadNameChanged(lead_id="42", name="Ana", origin="tab-a"))
        assert engine.pending == {}

    @pytest.mark.asyncio
    async def test_force_resync_event(self, engine, event_bus, chat_view):
        engine.sync_lead_to_chat("42", "Ana")
        event_bus.publish(ForceResync(reason="manual"))
        await asyncio.sleep(0)

        assert chat_view.refresh_count == 1

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self, engine, event_bus):
        await engine.stop()
        assert event_bus.subscriber_count(EventTag.LEAD_NAME_CHANGED) == 0

    @pytest.mark.asyncio
    async def test_stop_applies_what_is_still_pending(self, engine, chat_view):
        engine.sync_lead_to_chat("42", "Ana")
        chat_view.chats.clear()

        await engine.stop()

        assert engine.pending == {}
        assert chat_view.chats["lead_42"]["name"] == "Ana"
        assert chat_view.refresh_count == 1


class TestCrossSurfaceReplay:
    def test_other_tab_replays_mirrored_updates(self, kv_store, clock):
        tab_a = LeadSyncEngine(EventBus(), kv_store, InMemoryChatViewModel(), clock=clock, origin="tab-a")
        view_b = InMemoryChatViewModel()
        tab_b = LeadSyncEngine(EventBus(), kv_store, view_b, clock=clock, origin="tab-b")
        tab_a.subscribe()
        tab_b.subscribe()

        tab_a.sync_lead_to_chat("42", "Ana")

        assert view_b.chats["lead_42"]["name"] == "Ana"
        assert "42" in tab_b.pending

    def test_replay_does_not_echo_back(self, kv_store, clock):
        writes = []
        kv_store.subscribe(lambda change: writes.append(change.origin))
        tab_a = LeadSyncEngine(EventBus(), kv_store, InMemoryChatViewModel(), clock=clock, origin="tab-a")
        tab_b = LeadSyncEngine(EventBus(), kv_store, InMemoryChatViewModel(), clock=clock, origin="tab-b")
        tab_a.subscribe()
        tab_b.subscribe()

        tab_a.sync_lead_to_chat("42", "Ana")

        assert writes == ["tab-a"]

    def test_stale_replay_is_skipped(self, kv_store):
        clock = FakeClock()
        view_b = InMemoryChatViewModel()
        tab_b = LeadSyncEngine(EventBus(), kv_store, view_b, clock=clock, origin="tab-b")
        tab_b.subscribe()
        tab_b.sync_lead_to_chat("42", "Ana María")

        stale = PendingSyncUpdate(lead_id="42", name="Ana", timestamp=clock.now.replace(year=2023))
        kv_store.set(SYNC_UPDATES_KEY, [stale.model_dump(mode="json")], origin="tab-a")

        assert view_b.chats["lead_42"]["name"] == "Ana María"

    def test_malformed_replay_is_ignored(self, engine, kv_store):
        kv_store.set(SYNC_UPDATES_KEY, [{"lead_id": "42"}, "garbage"], origin="tab-b")
        assert engine.pending == {}

    def test_stage_change_reaches_other_tab(self, kv_store, clock):
        bus_a = EventBus()
        tab_a = LeadSyncEngine(bus_a, kv_store, InMemoryChatViewModel(), clock=clock, origin="tab-a")
        view_b = InMemoryChatViewModel()
        tab_b = LeadSyncEngine(EventBus(), kv_store, view_b, clock=clock, origin="tab-b")
        tab_a.subscribe()
        tab_b.subscribe()

        bus_a.publish(
            LeadStageChanged(tenant_id="tenant-1", lead_id="42", previous_stage="new", new_stage="confirmed")
        )

        assert view_b.chats["lead_42"]["metadata"]["stage"] == "confirmed"
        assert tab_b.lead_cache.get("42").stage == "confirmed"
        assert "42" in tab_b.pending_stages
        assert kv_store.get(STAGE_UPDATES_KEY)[0]["tenant_id"] == "tenant-1"

    def test_stage_replay_does_not_echo_back(self, kv_store, clock):
        writes = []
        kv_store.subscribe(lambda change: writes.append((change.key, change.origin)))
        bus_a = EventBus()
        tab_a = LeadSyncEngine(bus_a, kv_store, InMemoryChatViewModel(), clock=clock, origin="tab-a")
        tab_b = LeadSyncEngine(EventBus(), kv_store, InMemoryChatViewModel(), clock=clock, origin="tab-b")
        tab_a.subscribe()
        tab_b.subscribe()

        bus_a.publish(LeadStageChanged(tenant_id="tenant-1", lead_id="42", previous_stage=None, new_stage="closed"))

        assert writes == [(STAGE_UPDATES_KEY, "tab-a")]

    def test_stale_stage_replay_is_skipped(self, kv_store):
        clock = FakeClock()
        view_b = InMemoryChatViewModel()
        tab_b = LeadSyncEngine(EventBus(), kv_store, view_b, clock=clock, origin="tab-b")
        tab_b.subscribe()
        tab_b.sync_lead_to_chat("42", "Ana", stage="opportunity")

        stale = PendingStageUpdate(lead_id="42", stage="new", timestamp=clock.now.replace(year=2023))
        kv_store.set(STAGE_UPDATES_KEY, [stale.model_dump(mode="json")], origin="tab-a")

        assert view_b.chats["lead_42"]["metadata"]["stage"] == "opportunity"
        assert tab_b.pending_stages == {}


class TestMirrorWrites:
    @pytest.mark.asyncio
    async def test_io_store_is_written_off_the_loop_in_order(self, event_bus, chat_view, clock):
        store = ThreadRecordingStore()
        engine = LeadSyncEngine(event_bus, store, chat_view, clock=clock, origin="tab-a")
        engine.subscribe()

        engine.sync_lead_to_chat("42", "Ana")
        engine.sync_lead_to_chat("42", "Ana María")
        await engine.flush()

        assert store.get(SYNC_UPDATES_KEY)[0]["name"] == "Ana María"
        assert len(store.write_threads) == 2
        assert threading.get_ident() not in store.write_threads

    @pytest.mark.asyncio
    async def test_stop_waits_for_mirror_writes(self, event_bus, chat_view, clock):
        store = ThreadRecordingStore()
        engine = LeadSyncEngine(event_bus, store, chat_view, clock=clock, origin="tab-a")
        engine.subscribe()

        engine.sync_lead_to_chat("42", "Ana")
        await engine.stop()

        assert store.get(SYNC_UPDATES_KEY)[0]["lead_id"] == "42"


class TestLeadCache:
    def test_least_recently_updated_lead_is_evicted(self, clock):
        cache = LeadCache(max_entries=2)
        cache.update("a", clock.now, name="Ana")
        cache.update("b", clock.now, name="Beto")
        cache.update("a", clock.now, stage="closed")
        cache.update("c", clock.now, name="Carla")

        assert [lead_id for lead_id, _ in cache.items()] == ["a", "c"]
        assert cache.get("a").name == "Ana"
        assert len(cache) == 2
