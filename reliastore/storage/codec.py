"""
Blob Codec: optional compression of persisted records.

A record is persisted either as-is or inside a tagged wrapper:

    {"compressed": true, "codec": "lz4", "payload": "<base64 text>"}

The payload is the record's JSON text run through a ``Compressor``.
Compressors work on text so the wrapper stays JSON-compatible; binary
codecs (lz4 frames, lzma/xz streams) are base64-wrapped.

Decoding is forgiving in both directions: a record that cannot be
encoded is written raw, and a wrapper whose payload cannot be decoded is
handed back unchanged so the load pipeline can fall back to defaults.
"""

from __future__ import annotations

import base64
import json
import logging
import lzma
from typing import Any, Mapping, Optional, Protocol, runtime_checkable

import lz4.frame

from reliastore.core import constants as C

logger = logging.getLogger(__name__)


@runtime_checkable
class Compressor(Protocol):
    """Reversible text transform applied to the JSON form of a record."""

    name: str

    def encode(self, text: str) -> str: ...

    def decode(self, payload: str) -> str: ...


class NoCompression:
    """Identity codec. Useful to exercise the wrapper without compressing."""

    name = "identity"

    def encode(self, text: str) -> str:
        return text

    def decode(self, payload: str) -> str:
        return payload


class Lz4Compressor:
    """LZ4 frame compression. Fast; the default when compression is enabled."""

    name = "lz4"

    def __init__(self, compression_level: int = 0) -> None:
        self._level = compression_level

    def encode(self, text: str) -> str:
        raw = lz4.frame.compress(text.encode("utf-8"), compression_level=self._level)
        return base64.b64encode(raw).decode("ascii")

    def decode(self, payload: str) -> str:
        return lz4.frame.decompress(base64.b64decode(payload)).decode("utf-8")


class LzmaCompressor:
    """LZMA (xz) compression. Slower, smaller blobs for large records."""

    name = "lzma"

    def __init__(self, preset: int = 6) -> None:
        self._preset = preset

    def encode(self, text: str) -> str:
        raw = lzma.compress(text.encode("utf-8"), preset=self._preset)
        return base64.b64encode(raw).decode("ascii")

    def decode(self, payload: str) -> str:
        return lzma.decompress(base64.b64decode(payload)).decode("utf-8")


_BUILTIN: dict[str, type] = {
    NoCompression.name: NoCompression,
    Lz4Compressor.name: Lz4Compressor,
    LzmaCompressor.name: LzmaCompressor,
}


def compressor_for(name: str) -> Compressor:
    """Instantiate a built-in compressor by name."""
    try:
        return _BUILTIN[name]()
    except KeyError:
        raise ValueError(
            f"Unknown compressor {name!r}, expected one of {sorted(_BUILTIN)}"
        ) from None


def is_wrapped(blob: Any) -> bool:
    return (
        isinstance(blob, Mapping)
        and blob.get(C.COMPRESSED_FLAG) is True
        and isinstance(blob.get(C.COMPRESSED_PAYLOAD), str)
    )


class BlobCodec:
    """
    Converts between in-memory records and stored blobs.

    With ``compressor=None`` records are written raw; reads still
    understand wrappers produced by any built-in codec so a store can
    switch compression on or off without a data migration.
    """

    __slots__ = ("_compressor",)

    def __init__(self, compressor: Optional[Compressor] = None) -> None:
        self._compressor = compressor

    @property
    def compressor(self) -> Optional[Compressor]:
        return self._compressor

    @property
    def enabled(self) -> bool:
        return self._compressor is not None

    def wrap(self, record: Mapping[str, Any]) -> Any:
        """Prepare ``record`` for storage."""
        if self._compressor is None:
            return record
        try:
            payload = self._compressor.encode(json.dumps(record))
        except (TypeError, ValueError, RuntimeError, lzma.LZMAError) as e:
            logger.warning("Compression with %s failed, writing raw: %s",
                           self._compressor.name, e)
            return record
        return {
            C.COMPRESSED_FLAG: True,
            C.COMPRESSED_CODEC: self._compressor.name,
            C.COMPRESSED_PAYLOAD: payload,
        }

    def unwrap(self, blob: Any) -> Any:
        """Recover the record from a stored blob; non-wrapped blobs pass through."""
        if not is_wrapped(blob):
            return blob
        codec = self._codec_for(blob.get(C.COMPRESSED_CODEC))
        try:
            decoded = json.loads(codec.decode(blob[C.COMPRESSED_PAYLOAD]))
        except (ValueError, RuntimeError, lzma.LZMAError) as e:
            logger.warning("Could not decode %s payload, using raw blob: %s",
                           codec.name, e)
            return blob
        if not isinstance(decoded, dict):
            logger.warning("Decoded %s payload is not a record, using raw blob",
                           codec.name)
            return blob
        return decoded

    def _codec_for(self, name: Optional[str]) -> Compressor:
        if self._compressor is not None and (name is None or name == self._compressor.name):
            return self._compressor
        if name in _BUILTIN:
            return _BUILTIN[name]()
        # Wrappers written without a codec tag use the configured codec.
        return self._compressor or Lz4Compressor()
