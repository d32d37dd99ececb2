"""
Clock providers.

Two readings are needed:
- ``time()``: wall-clock seconds, comparable across processes. Used for
  lease timestamps and session metadata.
- ``monotonic()``: process-local seconds for heartbeat / inactivity
  tracking, immune to wall-clock adjustments.
"""

from __future__ import annotations

import time
from typing import Protocol, runtime_checkable


@runtime_checkable
class Clock(Protocol):
    def time(self) -> float: ...

    def monotonic(self) -> float: ...


class SystemClock:
    """Clock backed by the ``time`` module."""

    __slots__ = ()

    def time(self) -> float:
        return time.time()

    def monotonic(self) -> float:
        return time.monotonic()


class ManualClock:
    """
    Deterministic clock advanced explicitly.

    Both readings move together; useful for lease staleness and
    session-timeout scenarios.
    """

    __slots__ = ("_wall", "_mono")

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._wall = start
        self._mono = 0.0

    def time(self) -> float:
        return self._wall

    def monotonic(self) -> float:
        return self._mono

    def advance(self, seconds: float) -> None:
        if seconds < 0:
            raise ValueError("cannot move a clock backwards")
        self._wall += seconds
        self._mono += seconds
