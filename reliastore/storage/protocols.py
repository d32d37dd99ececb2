"""
Backend Protocols: the consumed key-value interface.

The engine assumes only three primitives on opaque JSON-compatible blobs:

    get(key)                         -> value | None
    update(key, transform, ttl_s)    -> value now stored
    delete(key)                      -> whether a value was removed

Every call may fail transiently and reports it as
``Err(BackendError)``. ``update`` is the only read-modify-write
primitive: the backend reads the current value, calls ``transform`` on
it and writes the result atomically with respect to other ``update``
calls on the same key. ``transform`` may be invoked more than once if the
backend retries internally, so it must not carry side effects; returning
``None`` leaves the stored value untouched.

The same protocol serves both record storage and lease storage; the two
may be separate backend instances or share one with distinct key
prefixes.
"""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, runtime_checkable

from reliastore.core.types import Result
from reliastore.core.errors import BackendError

# transform(current_value_or_None) -> new_value_or_None
UpdateFn = Callable[[Optional[Any]], Optional[Any]]


@runtime_checkable
class KeyValueBackend(Protocol):
    """Remote, eventually-consistent key-value store."""

    async def get(self, key: str) -> Result[Optional[Any], BackendError]:
        """Fetch the value stored under ``key``; ``Ok(None)`` when absent."""
        ...

    async def update(
        self,
        key: str,
        transform: UpdateFn,
        ttl_s: Optional[float] = None,
    ) -> Result[Optional[Any], BackendError]:
        """Conditionally rewrite ``key``; returns the value now stored."""
        ...

    async def delete(self, key: str) -> Result[bool, BackendError]:
        """Remove ``key``; ``Ok(False)`` when nothing was stored."""
        ...
