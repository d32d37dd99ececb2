"""Pytest configuration and fixtures."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from reliastore.core.clock import ManualClock
from reliastore.core.config import StoreSettings
from reliastore.datastore import ReliableStore
from reliastore.engine.events import EventKind
from reliastore.storage.backends import InMemoryBackend

DEFAULTS = {"Coins": 0, "Inventory": {"Slots": 10}}


class EventRecorder:
    """Collects every event a store emits, grouped by kind."""

    def __init__(self, store: ReliableStore) -> None:
        self.events: dict[EventKind, list[Any]] = {kind: [] for kind in EventKind}
        for kind in EventKind:
            store.on(kind, self.events[kind].append)

    def __getitem__(self, kind: EventKind) -> list[Any]:
        return self.events[kind]


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def backend(clock: ManualClock) -> InMemoryBackend:
    return InMemoryBackend(clock=clock)


@pytest.fixture
def settings() -> StoreSettings:
    return StoreSettings(
        lease_ttl_s=10.0,
        autosave_interval_s=5.0,
        session_timeout_s=60.0,
        retries=3,
        retry_base_delay_s=0.0,
        backup_count=2,
    )


@pytest.fixture
def make_store(
    backend: InMemoryBackend,
    settings: StoreSettings,
    clock: ManualClock,
) -> Callable[..., ReliableStore]:
    """Factory for stores sharing one backend, one per simulated process."""

    def _make(owner_id: str = "proc-a", **kwargs: Any) -> ReliableStore:
        kwargs.setdefault("defaults", DEFAULTS)
        kwargs.setdefault("settings", settings)
        defaults = kwargs.pop("defaults")
        return ReliableStore(
            kwargs.pop("name", "players"),
            defaults,
            kwargs.pop("backend", backend),
            clock=clock,
            owner_id=owner_id,
            **kwargs,
        )

    return _make


@pytest.fixture
def store(make_store: Callable[..., ReliableStore]) -> ReliableStore:
    return make_store()


@pytest.fixture
def recorder(store: ReliableStore) -> EventRecorder:
    return EventRecorder(store)
