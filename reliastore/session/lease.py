"""
Lease Lock Manager: single-writer-per-record coordination

A lease is a small value ``{"owner": <process id>, "timestamp": <seconds>}``
kept on the lease backend under the record's lock key. Acquisition,
renewal and stale-lease recovery are one conditional update:

    absent                         -> write {owner: self, timestamp: now}
    owned by self                  -> refresh timestamp (re-entrant)
    other owner, age > 2 x TTL     -> steal, logged as a warning
    other owner, age <= 2 x TTL    -> keep, acquisition fails
    malformed value                -> treated as stale

Timestamps come from the wall clock because they are compared across
processes. The owner renews at least every TTL / 2. The backend expiry
hint outlives the staleness window, so staleness rather than expiry
decides when a lease changes hands.

Contention is not retried: a live competing owner is a legitimate state.
Backend faults are retried with the configured policy.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional
from uuid import uuid4

from reliastore.core import constants as C
from reliastore.core.clock import Clock, SystemClock
from reliastore.core.errors import ReliabilityError
from reliastore.core.types import Result, Ok, Err
from reliastore.observability.metrics import EngineMetrics
from reliastore.reliability.retry import RetryPolicy, retry_with_backoff
from reliastore.storage.protocols import KeyValueBackend

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Lease:
    """Persisted lease value."""
    owner: str
    timestamp: float

    def to_dict(self) -> dict[str, Any]:
        return {"owner": self.owner, "timestamp": self.timestamp}

    @classmethod
    def from_value(cls, value: Any) -> Optional[Lease]:
        """Parse a stored lease; ``None`` when absent or malformed."""
        if not isinstance(value, Mapping):
            return None
        owner = value.get("owner")
        timestamp = value.get("timestamp")
        if not isinstance(owner, str):
            return None
        if isinstance(timestamp, bool) or not isinstance(timestamp, (int, float)):
            return None
        return cls(owner=owner, timestamp=float(timestamp))

    def age(self, now: float) -> float:
        return now - self.timestamp


class LeaseManager:
    """
    Acquires, renews and releases per-record leases for one process.

    Usage:
        leases = LeaseManager(backend, owner_id="proc-a", ttl_s=120)
        if await leases.acquire("lock:game:42"):
            ...
            await leases.release("lock:game:42")

    Thread Safety:
        Async-safe. All coordination happens through the backend's
        conditional update.
    """

    __slots__ = (
        "_backend", "_owner_id", "_ttl_s", "_clock",
        "_retry_policy", "_key_prefix", "_metrics",
    )

    def __init__(
        self,
        backend: KeyValueBackend,
        owner_id: Optional[str] = None,
        ttl_s: float = C.DEFAULT_LEASE_TTL_S,
        clock: Optional[Clock] = None,
        retry_policy: Optional[RetryPolicy] = None,
        key_prefix: str = "",
        metrics: Optional[EngineMetrics] = None,
    ) -> None:
        if ttl_s < C.MIN_LEASE_TTL_S:
            raise ValueError(f"Lease TTL must be >= {C.MIN_LEASE_TTL_S}s")
        self._backend = backend
        self._owner_id = owner_id or str(uuid4())
        self._ttl_s = ttl_s
        self._clock = clock or SystemClock()
        self._retry_policy = retry_policy or RetryPolicy.default()
        self._key_prefix = key_prefix
        self._metrics = metrics

    @property
    def owner_id(self) -> str:
        return self._owner_id

    @property
    def ttl_s(self) -> float:
        return self._ttl_s

    @property
    def stale_after_s(self) -> float:
        return self._ttl_s * C.LEASE_STALE_FACTOR

    def _key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    def is_stale(self, lease: Lease, now: Optional[float] = None) -> bool:
        """A lease is stale once older than ``2 x TTL``."""
        if now is None:
            now = self._clock.time()
        return lease.age(now) > self.stale_after_s

    # -------------------------------------------------------------------------
    # ACQUIRE / RENEW
    # -------------------------------------------------------------------------

    async def try_acquire(self, key: str) -> Result[bool, ReliabilityError]:
        """
        Acquire or renew the lease on ``key``.

        Returns:
            Ok(True) when this process now holds the lease
            Ok(False) when another live owner holds it
            Err(ReliabilityError) when the backend stayed unreachable
        """
        full_key = self._key(key)
        now = self._clock.time()
        fresh = Lease(owner=self._owner_id, timestamp=now).to_dict()
        # Reset on every transform call since the backend may rerun it.
        displaced: list[Optional[str]] = []

        def transform(current: Any) -> Optional[dict[str, Any]]:
            displaced.clear()
            if current is None:
                return fresh
            lease = Lease.from_value(current)
            if lease is None:
                displaced.append(None)
                return fresh
            if lease.owner == self._owner_id:
                return fresh
            if self.is_stale(lease, now):
                displaced.append(lease.owner)
                return fresh
            return None

        result = await retry_with_backoff(
            lambda: self._backend.update(full_key, transform, self._backend_ttl_s()),
            self._retry_policy,
            operation=f"lease {full_key}",
        )
        if result.is_err():
            return result

        stored = Lease.from_value(result.unwrap())
        owned = stored is not None and stored.owner == self._owner_id
        if owned and displaced:
            logger.warning(
                "Stealing stale lease for %s (owner=%s)", full_key, displaced[0]
            )
            if self._metrics is not None:
                self._metrics.lease_thefts.inc(store=self._metrics.store)
        elif not owned and stored is not None:
            logger.debug(
                "Lease for %s held by %s (age %.1fs)",
                full_key, stored.owner, stored.age(now),
            )
        return Ok(owned)

    async def acquire(self, key: str) -> bool:
        """``True`` only when this process now owns the lease."""
        result = await self.try_acquire(key)
        if result.is_err():
            logger.error("Lease acquisition for %s failed: %s", self._key(key), result.error)
            return False
        return result.unwrap()

    async def renew(self, key: str) -> Result[bool, ReliabilityError]:
        """Renewal is re-entrant acquisition."""
        return await self.try_acquire(key)

    # -------------------------------------------------------------------------
    # RELEASE / INSPECT
    # -------------------------------------------------------------------------

    async def owner_of(self, key: str) -> Result[Optional[Lease], ReliabilityError]:
        full_key = self._key(key)
        result = await retry_with_backoff(
            lambda: self._backend.get(full_key),
            self._retry_policy,
            operation=f"lease read {full_key}",
        )
        if result.is_err():
            return result
        return Ok(Lease.from_value(result.unwrap()))

    async def release(self, key: str) -> bool:
        """
        Best-effort release. Deletes the lease only when this process owns
        it; another owner's lease is never removed.

        The ownership check runs inside a conditional update that backdates
        the lease past the staleness window, so the lease is already
        stealable when the delete follows. The backend offers no
        compare-and-delete: a steal landing between the update and the
        delete is removed with it, and that owner re-creates the lease on
        its next renewal.
        """
        full_key = self._key(key)
        # Reset on every transform call since the backend may rerun it.
        seen: list[Optional[Lease]] = []

        def transform(current: Any) -> Optional[dict[str, Any]]:
            seen.clear()
            lease = Lease.from_value(current)
            seen.append(lease)
            if lease is None or lease.owner != self._owner_id:
                return None
            return Lease(owner=self._owner_id, timestamp=self._expired_at()).to_dict()

        marked = await retry_with_backoff(
            lambda: self._backend.update(full_key, transform, self._backend_ttl_s()),
            self._retry_policy,
            operation=f"lease release {full_key}",
        )
        if marked.is_err():
            logger.warning("Could not mark lease %s for release: %s", full_key, marked.error)
            return False
        lease = seen[0] if seen else None
        if lease is None:
            return False
        if lease.owner != self._owner_id:
            logger.warning(
                "Not releasing lease %s: owned by %s", full_key, lease.owner
            )
            return False

        deleted = await retry_with_backoff(
            lambda: self._backend.delete(full_key),
            self._retry_policy,
            operation=f"lease release {full_key}",
        )
        if deleted.is_err():
            logger.warning("Lease release for %s failed: %s", full_key, deleted.error)
            return False
        return deleted.unwrap()

    def _expired_at(self) -> float:
        return self._clock.time() - self._backend_ttl_s()

    def _backend_ttl_s(self) -> float:
        return self._ttl_s * (C.LEASE_STALE_FACTOR + 1)
