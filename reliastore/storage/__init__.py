"""
Storage module: key-value backends and the persisted blob codec.
"""

from reliastore.storage.protocols import KeyValueBackend, UpdateFn
from reliastore.storage.backends import InMemoryBackend
from reliastore.storage.config import RedisConfig
from reliastore.storage.redis_store import RedisBackend
from reliastore.storage.codec import (
    BlobCodec,
    Compressor,
    NoCompression,
    Lz4Compressor,
    LzmaCompressor,
    compressor_for,
)

__all__ = [
    "KeyValueBackend",
    "UpdateFn",
    "InMemoryBackend",
    "RedisConfig",
    "RedisBackend",
    "BlobCodec",
    "Compressor",
    "NoCompression",
    "Lz4Compressor",
    "LzmaCompressor",
    "compressor_for",
]
