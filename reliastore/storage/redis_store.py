"""
Redis Backend
=============

Redis/Valkey implementation of ``KeyValueBackend``.

Each key holds one JSON document as a plain string. ``update`` runs an
optimistic WATCH/MULTI/EXEC transaction: the key is watched, read, passed
through the transform and written back inside MULTI. If another client
touches the key first EXEC raises ``WatchError`` and the whole
read-transform-write cycle starts over, so the transform may run more
than once.

Error mapping:
- redis ``TimeoutError``     -> ``BackendError.timeout``
- any other ``RedisError``   -> ``BackendError.unavailable``
- undecodable stored text    -> ``BackendError.corrupt_payload``
- lost every WATCH race      -> ``BackendError.transaction_aborted``
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError
from redis.exceptions import TimeoutError as RedisTimeoutError

from reliastore.core import constants as C
from reliastore.core.errors import BackendError
from reliastore.core.types import Result, Ok, Err
from reliastore.storage.config import RedisConfig
from reliastore.storage.protocols import UpdateFn

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RedisMetrics:
    """Operation counters and latency sums for one backend instance."""
    get_count: int = 0
    update_count: int = 0
    delete_count: int = 0

    get_latency_sum_ns: int = 0
    update_latency_sum_ns: int = 0

    connection_errors: int = 0
    timeout_errors: int = 0
    watch_conflicts: int = 0

    def record_get(self, latency_ns: int) -> None:
        self.get_count += 1
        self.get_latency_sum_ns += latency_ns

    def record_update(self, latency_ns: int) -> None:
        self.update_count += 1
        self.update_latency_sum_ns += latency_ns

    def get_avg_get_latency_ms(self) -> float:
        if self.get_count == 0:
            return 0.0
        return (self.get_latency_sum_ns / self.get_count) / 1_000_000

    def get_avg_update_latency_ms(self) -> float:
        if self.update_count == 0:
            return 0.0
        return (self.update_latency_sum_ns / self.update_count) / 1_000_000


class RedisBackend:
    """
    Key-value backend on top of ``redis.asyncio``.

    Example:
        >>> backend = RedisBackend(config=RedisConfig(host="redis.example.com"))
        >>> await backend.connect()
        >>> await backend.update("u:42", lambda old: {"Coins": 10})
        >>> await backend.close()

    A pre-built client may be passed instead of a config; the backend then
    does not own it and ``close`` leaves it open.
    """

    __slots__ = (
        "_config",
        "_client",
        "_owns_client",
        "_max_attempts",
        "_metrics",
    )

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        client: Optional[Any] = None,
        max_attempts: int = C.MAX_TRANSACTION_ATTEMPTS,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        self._config = config or RedisConfig()
        self._client = client
        self._owns_client = client is None
        self._max_attempts = max_attempts
        self._metrics = RedisMetrics()

    @property
    def metrics(self) -> RedisMetrics:
        return self._metrics

    # -------------------------------------------------------------------------
    # CONNECTION MANAGEMENT
    # -------------------------------------------------------------------------

    async def connect(self) -> Result[None, BackendError]:
        """Create the client if needed and check the server answers PING."""
        if self._client is None:
            self._client = aioredis.Redis(**self._config.get_connection_kwargs())
        try:
            await self._client.ping()
        except RedisError as e:
            self._metrics.connection_errors += 1
            return Err(BackendError.unavailable("ping", "*", cause=e))
        logger.info("Connected to redis at %s:%d", self._config.host, self._config.port)
        return Ok(None)

    async def close(self) -> None:
        """Release the connection pool. Safe to call multiple times."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def health_check(self) -> Result[Dict[str, Any], BackendError]:
        result = await self.connect()
        if result.is_err():
            return result
        return Ok({
            "connected": True,
            "metrics": {
                "get_count": self._metrics.get_count,
                "update_count": self._metrics.update_count,
                "watch_conflicts": self._metrics.watch_conflicts,
                "avg_get_latency_ms": self._metrics.get_avg_get_latency_ms(),
                "avg_update_latency_ms": self._metrics.get_avg_update_latency_ms(),
            },
        })

    def _require_client(self) -> Any:
        if self._client is None:
            self._client = aioredis.Redis(**self._config.get_connection_kwargs())
        return self._client

    # -------------------------------------------------------------------------
    # PROTOCOL
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Result[Optional[Any], BackendError]:
        client = self._require_client()
        start_ns = time.perf_counter_ns()
        try:
            raw = await client.get(key)
        except RedisTimeoutError as e:
            self._metrics.timeout_errors += 1
            return Err(BackendError.timeout("get", key, cause=e))
        except RedisError as e:
            self._metrics.connection_errors += 1
            return Err(BackendError.unavailable("get", key, cause=e))

        self._metrics.record_get(time.perf_counter_ns() - start_ns)
        return self._decode(key, raw)

    async def update(
        self,
        key: str,
        transform: UpdateFn,
        ttl_s: Optional[float] = None,
    ) -> Result[Optional[Any], BackendError]:
        client = self._require_client()
        start_ns = time.perf_counter_ns()
        try:
            async with client.pipeline(transaction=True) as pipe:
                for attempt in range(1, self._max_attempts + 1):
                    try:
                        await pipe.watch(key)
                        decoded = self._decode(key, await pipe.get(key))
                        if decoded.is_err():
                            await pipe.reset()
                            return decoded
                        current = decoded.unwrap()

                        new_value = transform(current)
                        if new_value is None:
                            await pipe.reset()
                            return Ok(current)

                        pipe.multi()
                        pipe.set(key, json.dumps(new_value), ex=_ttl_seconds(ttl_s))
                        await pipe.execute()
                        self._metrics.record_update(time.perf_counter_ns() - start_ns)
                        return Ok(new_value)
                    except WatchError:
                        self._metrics.watch_conflicts += 1
                        logger.debug("WATCH on %s lost race (attempt %d)", key, attempt)
                        continue
        except RedisTimeoutError as e:
            self._metrics.timeout_errors += 1
            return Err(BackendError.timeout("update", key, cause=e))
        except RedisError as e:
            self._metrics.connection_errors += 1
            return Err(BackendError.unavailable("update", key, cause=e))

        return Err(BackendError.transaction_aborted(key, self._max_attempts))

    async def delete(self, key: str) -> Result[bool, BackendError]:
        client = self._require_client()
        try:
            removed = await client.delete(key)
        except RedisTimeoutError as e:
            self._metrics.timeout_errors += 1
            return Err(BackendError.timeout("delete", key, cause=e))
        except RedisError as e:
            self._metrics.connection_errors += 1
            return Err(BackendError.unavailable("delete", key, cause=e))
        self._metrics.delete_count += 1
        return Ok(bool(removed))

    # -------------------------------------------------------------------------
    # INTERNALS
    # -------------------------------------------------------------------------

    @staticmethod
    def _decode(key: str, raw: Any) -> Result[Optional[Any], BackendError]:
        if raw is None:
            return Ok(None)
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        try:
            return Ok(json.loads(raw))
        except json.JSONDecodeError as e:
            return Err(BackendError.corrupt_payload(key, cause=e))


def _ttl_seconds(ttl_s: Optional[float]) -> Optional[int]:
    """Redis EX takes whole seconds; round sub-second TTLs up."""
    if not ttl_s:
        return None
    return max(1, math.ceil(ttl_s))
