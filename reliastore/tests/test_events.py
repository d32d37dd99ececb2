"""
Unit Tests: Event Bus
"""

import pytest

from reliastore.engine.events import EventBus, EventKind, RejectedEvent, SavedEvent


class TestEventBus:
    """Tests for EventBus."""

    def test_delivers_by_kind(self):
        bus = EventBus()
        saved, rejected = [], []
        bus.on(EventKind.SAVED, saved.append)
        bus.on("rejected", rejected.append)
        bus.emit(SavedEvent(1, {"Coins": 1}))
        assert saved == [SavedEvent(1, {"Coins": 1})]
        assert rejected == []

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.on(EventKind.SAVED, seen.append)
        unsubscribe()
        unsubscribe()
        bus.emit(SavedEvent(1, {}))
        assert seen == []
        assert bus.listener_count(EventKind.SAVED) == 0

    def test_unknown_kind(self):
        with pytest.raises(ValueError):
            EventBus().on("deleted", print)

    def test_raising_listener_is_isolated(self):
        bus = EventBus()
        seen = []
        bus.on(EventKind.REJECTED, lambda e: 1 / 0)
        bus.on(EventKind.REJECTED, seen.append)
        bus.emit(RejectedEvent(1, "busy"))
        assert seen == [RejectedEvent(1, "busy")]

    @pytest.mark.asyncio
    async def test_async_listener(self):
        bus = EventBus()
        seen = []

        async def listener(event):
            seen.append(event.identity)

        async def broken(event):
            raise RuntimeError("listener down")

        bus.on(EventKind.SAVED, listener)
        bus.on(EventKind.SAVED, broken)
        bus.emit(SavedEvent(7, {}))
        await bus.drain()
        assert seen == [7]
