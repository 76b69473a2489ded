"""
tests/test_events.py — EventBus Unit Tests
===========================================
"""

from __future__ import annotations

import asyncio

import pytest
from conftest import run_async

from xpengine.engine.events import EventBus, EventType, XPEvent
from xpengine.errors import InvalidArgument


def _event(**overrides) -> XPEvent:
    fields = dict(
        type=EventType.XP_CHANGE,
        guild_id="g1",
        user_id="u1",
        store_id="default",
        old_xp=0,
        new_xp=10,
        old_level=0,
        new_level=0,
        delta=10,
        reason="test",
    )
    fields.update(overrides)
    return XPEvent(**fields)


class TestDispatch:
    def test_handlers_run_in_registration_order(self):
        """Handlers fire in the order they were added."""
        bus = EventBus()
        seen = []
        bus.on("xpChange", lambda e: seen.append("first"))
        bus.on(EventType.XP_CHANGE, lambda e: seen.append("second"))
        bus.emit("xpChange", _event())
        assert seen == ["first", "second"]

    def test_raising_handler_does_not_stop_others(self, caplog):
        """A failing handler is logged and the rest still run."""
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("boom")

        bus.on("xpChange", broken)
        bus.on("xpChange", lambda e: seen.append(e.user_id))
        bus.emit("xpChange", _event())
        assert seen == ["u1"]
        assert "boom" in caplog.text

    def test_once_fires_a_single_time(self):
        """once-handlers unsubscribe after their first call."""
        bus = EventBus()
        seen = []
        bus.once("levelUp", seen.append)
        bus.emit("levelUp", _event(type=EventType.LEVEL_UP))
        bus.emit("levelUp", _event(type=EventType.LEVEL_UP))
        assert len(seen) == 1
        assert bus.listener_count("levelUp") == 0

    def test_off_removes_handler(self):
        """off() stops further deliveries."""
        bus = EventBus()
        seen = []
        bus.on("levelDown", seen.append)
        bus.off("levelDown", seen.append)
        bus.emit("levelDown", _event(type=EventType.LEVEL_DOWN))
        assert seen == []

    def test_handler_added_during_emit_waits_for_next_emit(self):
        """Subscriptions made mid-emit start with the next emit."""
        bus = EventBus()
        seen = []

        def subscribe_more(event):
            bus.on("xpChange", lambda e: seen.append("late"))

        bus.on("xpChange", subscribe_more)
        bus.emit("xpChange", _event())
        assert seen == []
        bus.emit("xpChange", _event())
        assert seen == ["late"]

    def test_unknown_event_name(self):
        """Event names are case sensitive."""
        bus = EventBus()
        with pytest.raises(InvalidArgument):
            bus.on("xpchange", print)


class TestAsyncHandlers:
    def test_emit_does_not_await_async_handler(self):
        """emit returns before an async handler finishes."""
        async def _inner():
            bus = EventBus()
            done = asyncio.Event()
            finished = []

            async def slow(event):
                await done.wait()
                finished.append(event.user_id)

            bus.on("xpChange", slow)
            bus.emit("xpChange", _event())
            assert finished == []
            assert bus.pending_tasks == 1

            done.set()
            for _ in range(3):
                await asyncio.sleep(0)
            assert finished == ["u1"]
            assert bus.pending_tasks == 0

        run_async(_inner())


    def test_async_handler_outside_a_loop_does_not_stop_others(self, caplog):
        """Without a running loop the async handler is logged and skipped."""
        bus = EventBus()
        seen = []

        async def needs_loop(event):
            seen.append("async")

        bus.on("xpChange", needs_loop)
        bus.on("xpChange", lambda e: seen.append("sync"))
        bus.emit("xpChange", _event())
        assert seen == ["sync"]
        assert bus.pending_tasks == 0
        assert "needs_loop" in caplog.text


class TestPayload:
    def test_to_dict_is_camel_case(self):
        """Payload keys are camelCase."""
        payload = _event().to_dict()
        assert payload["guildId"] == "g1"
        assert payload["storeId"] == "default"
        assert payload["oldXp"] == 0
        assert payload["newLevel"] == 0
        assert payload["type"] == "xpChange"
