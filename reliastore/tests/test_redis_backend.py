"""
Unit Tests: Redis Backend

Runs RedisBackend against an in-process double of the ``redis.asyncio``
client surface it uses (GET/DELETE/PING and a WATCH/MULTI/EXEC
pipeline), so no server is needed.
"""

import json

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from reliastore.core.errors import ErrorCode
from reliastore.storage.redis_store import RedisBackend, _ttl_seconds


class FakePipeline:
    def __init__(self, client):
        self._client = client
        self._queued = []
        self.watching = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, *args):
        await self.reset()

    async def watch(self, key):
        self.watching = key

    async def get(self, key):
        return self._client.data.get(key)

    def multi(self):
        self._queued = []

    def set(self, key, value, ex=None):
        self._queued.append((key, value, ex))
        return self

    async def execute(self):
        if self._client.watch_conflicts > 0:
            self._client.watch_conflicts -= 1
            self._queued = []
            raise WatchError("watched key changed")
        for key, value, ex in self._queued:
            self._client.data[key] = value
            self._client.expiries[key] = ex
        self._queued = []
        return [True]

    async def reset(self):
        self._queued = []
        self.watching = None


class FakeRedis:
    def __init__(self):
        self.data = {}
        self.expiries = {}
        self.watch_conflicts = 0
        self.error = None
        self.closed = False

    def pipeline(self, transaction=True):
        if self.error is not None:
            raise self.error
        return FakePipeline(self)

    async def get(self, key):
        if self.error is not None:
            raise self.error
        return self.data.get(key)

    async def delete(self, key):
        if self.error is not None:
            raise self.error
        return 1 if self.data.pop(key, None) is not None else 0

    async def ping(self):
        if self.error is not None:
            raise self.error
        return True

    async def aclose(self):
        self.closed = True


@pytest.fixture
def client():
    return FakeRedis()


@pytest.fixture
def backend(client):
    return RedisBackend(client=client, max_attempts=3)


class TestRedisBackend:
    """Tests for RedisBackend."""

    @pytest.mark.asyncio
    async def test_get_decodes_json(self, backend, client):
        client.data["u:1"] = json.dumps({"Coins": 5})
        assert (await backend.get("u:1")).unwrap() == {"Coins": 5}
        assert (await backend.get("u:2")).unwrap() is None
        assert backend.metrics.get_count == 2

    @pytest.mark.asyncio
    async def test_get_bytes(self, backend, client):
        client.data["u:1"] = b'{"Coins": 5}'
        assert (await backend.get("u:1")).unwrap() == {"Coins": 5}

    @pytest.mark.asyncio
    async def test_corrupt_payload(self, backend, client):
        client.data["u:1"] = "{not json"
        result = await backend.get("u:1")
        assert result.error.code is ErrorCode.BACKEND_CORRUPT_PAYLOAD

    @pytest.mark.asyncio
    async def test_update_writes_with_ttl(self, backend, client):
        result = await backend.update("lock:1", lambda old: {"owner": "a"}, ttl_s=2.5)
        assert result.unwrap() == {"owner": "a"}
        assert json.loads(client.data["lock:1"]) == {"owner": "a"}
        assert client.expiries["lock:1"] == 3

    @pytest.mark.asyncio
    async def test_update_none_leaves_value(self, backend, client):
        client.data["u:1"] = json.dumps({"version": 4})
        result = await backend.update("u:1", lambda old: None)
        assert result.unwrap() == {"version": 4}
        assert json.loads(client.data["u:1"]) == {"version": 4}

    @pytest.mark.asyncio
    async def test_update_retries_lost_watch(self, backend, client):
        """A lost WATCH race reruns the transform on a fresh read."""
        client.watch_conflicts = 2
        calls = []

        def transform(old):
            calls.append(old)
            return {"n": 1}

        result = await backend.update("k", transform)
        assert result.unwrap() == {"n": 1}
        assert len(calls) == 3
        assert backend.metrics.watch_conflicts == 2

    @pytest.mark.asyncio
    async def test_update_aborts_after_max_attempts(self, backend, client):
        client.watch_conflicts = 10
        result = await backend.update("k", lambda old: {"n": 1})
        assert result.error.code is ErrorCode.BACKEND_TRANSACTION_ABORTED
        assert "k" not in client.data

    @pytest.mark.asyncio
    async def test_error_mapping(self, backend, client):
        client.error = RedisTimeoutError("slow")
        assert (await backend.get("k")).error.code is ErrorCode.BACKEND_TIMEOUT
        client.error = RedisConnectionError("down")
        assert (await backend.update("k", lambda old: 1)).error.code is ErrorCode.BACKEND_UNAVAILABLE
        assert (await backend.delete("k")).error.code is ErrorCode.BACKEND_UNAVAILABLE
        assert backend.metrics.timeout_errors == 1
        assert backend.metrics.connection_errors == 2

    @pytest.mark.asyncio
    async def test_delete(self, backend, client):
        client.data["k"] = "1"
        assert (await backend.delete("k")).unwrap() is True
        assert (await backend.delete("k")).unwrap() is False

    @pytest.mark.asyncio
    async def test_connect_and_health(self, backend, client):
        assert (await backend.connect()).is_ok()
        health = (await backend.health_check()).unwrap()
        assert health["connected"] is True
        client.error = RedisConnectionError("down")
        assert (await backend.connect()).is_err()

    @pytest.mark.asyncio
    async def test_close_leaves_borrowed_client_open(self, backend, client):
        await backend.close()
        assert client.closed is False

    def test_ttl_rounding(self):
        assert _ttl_seconds(None) is None
        assert _ttl_seconds(0.2) == 1
        assert _ttl_seconds(360.0) == 360

    def test_rejects_zero_attempts(self, client):
        with pytest.raises(ValueError):
            RedisBackend(client=client, max_attempts=0)
