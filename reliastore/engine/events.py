"""
Event Bus: fire-and-forget notifications to independent listeners.

Kinds:
    LOADED    (identity, record)                  session opened
    SAVED     (identity, record)                  save finished (or no-op)
    REJECTED  (identity, reason)                  lease unavailable / lost
    CONFLICT  (identity, backend_record, attempted_record)

Plain callables run inline during ``emit``; coroutine functions are
scheduled as tasks on the running loop. A listener that raises is logged
and does not stop delivery to the others. Records carried by events are
deep copies.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Union

from reliastore.core.types import Identity, Record

logger = logging.getLogger(__name__)


class EventKind(Enum):
    LOADED = "loaded"
    SAVED = "saved"
    REJECTED = "rejected"
    CONFLICT = "conflict"


@dataclass(frozen=True, slots=True)
class LoadedEvent:
    identity: Identity
    record: Record


@dataclass(frozen=True, slots=True)
class SavedEvent:
    identity: Identity
    record: Record


@dataclass(frozen=True, slots=True)
class RejectedEvent:
    identity: Identity
    reason: str


@dataclass(frozen=True, slots=True)
class ConflictEvent:
    identity: Identity
    backend_record: Record
    attempted_record: Record


Event = Union[LoadedEvent, SavedEvent, RejectedEvent, ConflictEvent]
Listener = Callable[[Any], Any]

_KIND_OF: dict[type, EventKind] = {
    LoadedEvent: EventKind.LOADED,
    SavedEvent: EventKind.SAVED,
    RejectedEvent: EventKind.REJECTED,
    ConflictEvent: EventKind.CONFLICT,
}


class EventBus:
    """
    Per-kind listener registry.

    Usage:
        bus = EventBus()
        unsubscribe = bus.on(EventKind.SAVED, lambda e: print(e.record))
        bus.emit(SavedEvent(42, {"Coins": 100}))
        unsubscribe()
    """

    __slots__ = ("_listeners", "_pending")

    def __init__(self) -> None:
        self._listeners: dict[EventKind, list[Listener]] = {kind: [] for kind in EventKind}
        self._pending: set[asyncio.Task[Any]] = set()

    def on(self, kind: Union[EventKind, str], listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for ``kind``; returns an unsubscribe callable."""
        kind = EventKind(kind)
        self._listeners[kind].append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners[kind].remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def listener_count(self, kind: EventKind) -> int:
        return len(self._listeners[kind])

    def emit(self, event: Event) -> None:
        kind = _KIND_OF[type(event)]
        for listener in list(self._listeners[kind]):
            try:
                if inspect.iscoroutinefunction(listener):
                    self._schedule(listener, event)
                else:
                    listener(event)
            except Exception:
                logger.exception("%s listener %r failed", kind.value, listener)

    def _schedule(self, listener: Listener, event: Event) -> None:
        task = asyncio.get_running_loop().create_task(listener(event))
        self._pending.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Async listener failed: %s", error, exc_info=error)

    async def drain(self) -> None:
        """Wait for scheduled coroutine listeners to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
