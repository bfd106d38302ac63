import json

import pytest

from core.bus import AsyncIOBus
from core.clock import FrozenClock, load_timezone
from core.models.events import Event
from core.registry import PluginRegistry

from tests.conftest import NOW, RecordingHandler


class TestBus:
    @pytest.mark.asyncio
    async def test_publish_reaches_typed_and_wildcard_subscribers(self):
        bus = AsyncIOBus()
        seen = []

        async def typed(event):
            seen.append(("typed", event.type))

        async def wildcard(event):
            seen.append(("any", event.type))

        bus.subscribe("task.completed", typed)
        bus.subscribe("*", wildcard)
        await bus.publish(Event(type="task.completed", source="test"))
        await bus.publish(Event(type="task.failed", source="test"))

        assert sorted(seen) == [("any", "task.completed"), ("any", "task.failed"), ("typed", "task.completed")]

    @pytest.mark.asyncio
    async def test_failing_subscriber_is_counted_not_raised(self):
        bus = AsyncIOBus()
        delivered = []

        async def broken(event):
            raise RuntimeError("boom")

        async def fine(event):
            delivered.append(event.id)

        bus.subscribe("x", broken)
        bus.subscribe("x", fine)
        event = Event(type="x", source="test")

        assert await bus.publish(event) == 1
        assert delivered == [event.id]

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = AsyncIOBus()
        seen = []

        async def callback(event):
            seen.append(event)

        bus.subscribe("x", callback)
        bus.unsubscribe("x", callback)
        await bus.publish(Event(type="x", source="test"))

        assert seen == []
        assert bus.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_events_persisted_as_jsonl(self, tmp_path):
        bus = AsyncIOBus(events_dir=tmp_path / "events")
        event = Event(type="x", source="test", payload={"n": 1})

        await bus.publish(event)

        files = list((tmp_path / "events").glob("*.jsonl"))
        assert len(files) == 1
        line = json.loads(files[0].read_text().splitlines()[0])
        assert line["id"] == event.id
        assert line["payload"] == {"n": 1}

    def test_derive_keeps_correlation(self):
        root = Event(type="a", source="test")
        child = root.derive("b", "test", {"k": "v"})

        assert child.correlation_id == root.correlation_id
        assert child.id != root.id


class TestRegistry:
    def test_register_and_find(self):
        registry = PluginRegistry()
        handler = RecordingHandler("job")
        registry.register("task_handler", handler)

        assert registry.find("task_handler", "job") is handler
        assert registry.find("task_handler", "other") is None
        assert registry.names("task_handler") == ["job"]
        assert registry.first("email") is None

    def test_rejects_unknown_key_and_wrong_shape(self):
        registry = PluginRegistry()

        with pytest.raises(ValueError):
            registry.register("notifier", RecordingHandler("job"))
        with pytest.raises(TypeError):
            registry.register("task_handler", object())

    def test_get_unknown_raises(self):
        with pytest.raises(KeyError):
            PluginRegistry().get("task_handler", "missing")


class TestClock:
    def test_frozen_clock_advances(self):
        clock = FrozenClock(NOW)

        clock.advance(minutes=5)

        assert clock.now() == NOW.replace(minute=20)

    def test_unknown_timezone(self):
        with pytest.raises(ValueError):
            load_timezone("Mars/Olympus_Mons")
