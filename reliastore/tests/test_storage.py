"""
Unit Tests: Storage

Tests:
    - InMemoryBackend get/update/delete, TTL expiry and fault injection
    - Blob codec wrapping with lz4, lzma and the identity codec
    - RedisConfig validation
"""

import pytest

from reliastore.core.clock import ManualClock
from reliastore.core.errors import BackendError
from reliastore.storage.backends import InMemoryBackend
from reliastore.storage.codec import (
    BlobCodec,
    Lz4Compressor,
    LzmaCompressor,
    NoCompression,
    compressor_for,
    is_wrapped,
)
from reliastore.storage.config import RedisConfig
from reliastore.storage.protocols import KeyValueBackend


class TestInMemoryBackend:
    """Tests for InMemoryBackend."""

    def test_satisfies_protocol(self):
        assert isinstance(InMemoryBackend(), KeyValueBackend)

    @pytest.mark.asyncio
    async def test_get_absent(self):
        backend = InMemoryBackend()
        assert (await backend.get("missing")).unwrap() is None

    @pytest.mark.asyncio
    async def test_update_writes_and_returns(self):
        backend = InMemoryBackend()
        result = await backend.update("k", lambda old: {"n": (old or {}).get("n", 0) + 1})
        assert result.unwrap() == {"n": 1}
        result = await backend.update("k", lambda old: {"n": old["n"] + 1})
        assert result.unwrap() == {"n": 2}

    @pytest.mark.asyncio
    async def test_update_none_keeps_value(self):
        backend = InMemoryBackend()
        await backend.put("k", {"n": 1})
        result = await backend.update("k", lambda old: None)
        assert result.unwrap() == {"n": 1}
        assert (await backend.get("k")).unwrap() == {"n": 1}

    @pytest.mark.asyncio
    async def test_reads_are_copies(self):
        backend = InMemoryBackend()
        await backend.put("k", {"items": [1]})
        first = (await backend.get("k")).unwrap()
        first["items"].append(2)
        assert (await backend.get("k")).unwrap() == {"items": [1]}

    @pytest.mark.asyncio
    async def test_delete(self):
        backend = InMemoryBackend()
        await backend.put("k", 1)
        assert (await backend.delete("k")).unwrap() is True
        assert (await backend.delete("k")).unwrap() is False

    @pytest.mark.asyncio
    async def test_ttl_expiry(self):
        clock = ManualClock()
        backend = InMemoryBackend(clock=clock)
        await backend.update("k", lambda old: {"v": 1}, ttl_s=10)
        clock.advance(9)
        assert (await backend.get("k")).unwrap() == {"v": 1}
        clock.advance(1)
        assert (await backend.get("k")).unwrap() is None
        assert len(backend) == 0

    @pytest.mark.asyncio
    async def test_fail_next(self):
        backend = InMemoryBackend()
        backend.fail_next(1, "update")
        failed = await backend.update("k", lambda old: 1)
        assert failed.is_err()
        assert isinstance(failed.error, BackendError)
        assert (await backend.get("k")).unwrap() is None
        assert (await backend.update("k", lambda old: 1)).unwrap() == 1
        assert backend.calls["update"] == 2


class TestBlobCodec:
    """Tests for BlobCodec."""

    RECORD = {"Coins": 100, "Inventory": {"Sword": 1}, "version": 3}

    def test_passthrough_without_compressor(self):
        codec = BlobCodec()
        assert codec.wrap(self.RECORD) is self.RECORD
        assert codec.unwrap(self.RECORD) is self.RECORD

    @pytest.mark.parametrize("compressor", [Lz4Compressor(), LzmaCompressor(), NoCompression()])
    def test_wrapper_shape(self, compressor):
        blob = BlobCodec(compressor).wrap(self.RECORD)
        assert is_wrapped(blob)
        assert blob["codec"] == compressor.name
        assert BlobCodec(compressor).unwrap(blob) == self.RECORD

    def test_reads_any_builtin_codec(self):
        """A store reading lzma wrappers while configured for lz4."""
        blob = BlobCodec(LzmaCompressor()).wrap(self.RECORD)
        assert BlobCodec(Lz4Compressor()).unwrap(blob) == self.RECORD
        assert BlobCodec().unwrap(blob) == self.RECORD

    def test_undecodable_payload_returns_blob(self):
        blob = {"compressed": True, "codec": "lz4", "payload": "bm90IGx6NA=="}
        assert BlobCodec(Lz4Compressor()).unwrap(blob) is blob

    def test_non_record_payload_returns_blob(self):
        blob = {"compressed": True, "codec": "identity", "payload": "[1, 2]"}
        assert BlobCodec().unwrap(blob) is blob

    def test_unencodable_record_written_raw(self):
        record = {"bad": {1, 2}}
        assert BlobCodec(Lz4Compressor()).wrap(record) is record

    def test_compressor_for(self):
        assert compressor_for("lzma").name == "lzma"
        with pytest.raises(ValueError):
            compressor_for("zstd")


class TestRedisConfig:
    """Tests for RedisConfig."""

    def test_defaults(self):
        kwargs = RedisConfig().get_connection_kwargs()
        assert kwargs["host"] == "localhost"
        assert kwargs["decode_responses"] is True
        assert "password" not in kwargs

    def test_invalid(self):
        with pytest.raises(ValueError):
            RedisConfig(port=0)
        with pytest.raises(ValueError):
            RedisConfig(db=16)
        with pytest.raises(ValueError):
            RedisConfig(max_connections=0)

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("REDIS_HOST", "cache.internal")
        monkeypatch.setenv("REDIS_PORT", "6380")
        monkeypatch.setenv("REDIS_PASSWORD", "secret")
        monkeypatch.setenv("REDIS_SSL", "true")
        monkeypatch.setenv("REDIS_SOCKET_TIMEOUT_S", "1.5")
        config = RedisConfig.from_env()
        assert config.host == "cache.internal"
        assert config.port == 6380
        assert config.ssl is True
        assert config.get_connection_kwargs()["password"] == "secret"
        assert config.get_connection_kwargs()["socket_timeout"] == 1.5
        assert config.db == 0
