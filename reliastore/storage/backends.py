"""
In-Memory Backend
=================

Process-local implementation of ``KeyValueBackend`` for development,
demos and tests.

Values are stored as JSON text so every read returns a fresh copy, the
same way a remote store hands back an opaque blob. Updates run under a
single ``asyncio.Lock`` which gives them the read-modify-write atomicity
the protocol promises.

Fault injection:
    backend.fail_next(2)             # next two calls of any kind fail
    backend.fail_next(1, "update")   # next update fails

Thread Safety:
    Async-safe within one event loop. Share one instance between several
    engines to model several processes talking to the same store.
"""

from __future__ import annotations

import asyncio
import json
from collections import Counter as CallCounter
from dataclasses import dataclass
from typing import Any, Optional

from reliastore.core.clock import Clock, SystemClock
from reliastore.core.errors import BackendError
from reliastore.core.types import Result, Ok, Err
from reliastore.storage.protocols import UpdateFn


@dataclass(slots=True)
class _Entry:
    payload: str
    expires_at: Optional[float] = None


class InMemoryBackend:
    """
    Dict-backed key-value store honouring the backend protocol.

    Example:
        backend = InMemoryBackend()
        await backend.put("u:1", {"Coins": 50, "version": 5})
        result = await backend.update("u:1", lambda old: {**old, "Coins": 60})
    """

    __slots__ = (
        "_data",
        "_lock",
        "_clock",
        "_latency_s",
        "_failures",
        "calls",
    )

    def __init__(
        self,
        clock: Optional[Clock] = None,
        latency_s: float = 0.0,
    ) -> None:
        self._data: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()
        self._clock = clock or SystemClock()
        self._latency_s = latency_s
        # operation name (or "*") -> remaining injected failures
        self._failures: dict[str, int] = {}
        self.calls: CallCounter[str] = CallCounter()

    # -------------------------------------------------------------------------
    # FAULT INJECTION
    # -------------------------------------------------------------------------

    def fail_next(self, count: int = 1, operation: str = "*") -> None:
        """Make the next ``count`` calls of ``operation`` fail transiently."""
        self._failures[operation] = self._failures.get(operation, 0) + count

    def _take_failure(self, operation: str) -> bool:
        for name in (operation, "*"):
            remaining = self._failures.get(name, 0)
            if remaining > 0:
                self._failures[name] = remaining - 1
                return True
        return False

    async def _round_trip(self, operation: str, key: str) -> Optional[BackendError]:
        self.calls[operation] += 1
        if self._latency_s > 0:
            await asyncio.sleep(self._latency_s)
        if self._take_failure(operation):
            return BackendError.unavailable(operation, key)
        return None

    # -------------------------------------------------------------------------
    # PROTOCOL
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Result[Optional[Any], BackendError]:
        failure = await self._round_trip("get", key)
        if failure is not None:
            return Err(failure)
        async with self._lock:
            return Ok(self._read(key))

    async def update(
        self,
        key: str,
        transform: UpdateFn,
        ttl_s: Optional[float] = None,
    ) -> Result[Optional[Any], BackendError]:
        failure = await self._round_trip("update", key)
        if failure is not None:
            return Err(failure)
        async with self._lock:
            current = self._read(key)
            new_value = transform(current)
            if new_value is None:
                return Ok(current)
            self._write(key, new_value, ttl_s)
            return Ok(self._read(key))

    async def delete(self, key: str) -> Result[bool, BackendError]:
        failure = await self._round_trip("delete", key)
        if failure is not None:
            return Err(failure)
        async with self._lock:
            existed = self._read(key) is not None
            self._data.pop(key, None)
            return Ok(existed)

    # -------------------------------------------------------------------------
    # CONVENIENCE (not part of the protocol)
    # -------------------------------------------------------------------------

    async def put(self, key: str, value: Any, ttl_s: Optional[float] = None) -> None:
        """Unconditionally store ``value`` (seeding, demos)."""
        async with self._lock:
            self._write(key, value, ttl_s)

    def keys(self) -> list[str]:
        return [k for k in list(self._data) if self._read(k) is not None]

    def __len__(self) -> int:
        return len(self.keys())

    # -------------------------------------------------------------------------
    # INTERNALS
    # -------------------------------------------------------------------------

    def _read(self, key: str) -> Optional[Any]:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock.time() >= entry.expires_at:
            del self._data[key]
            return None
        return json.loads(entry.payload)

    def _write(self, key: str, value: Any, ttl_s: Optional[float]) -> None:
        expires_at = self._clock.time() + ttl_s if ttl_s else None
        self._data[key] = _Entry(payload=json.dumps(value), expires_at=expires_at)
