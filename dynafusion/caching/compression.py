"""
Value compression for the remote cache tier.

Compressed values are stored as ``COMPRESSED:<algorithm>:<base64 payload>``
so any reader can recognise and decode them regardless of its own settings.
"""

import base64
import binascii
import gzip
import zlib
from typing import Dict, Optional

from ..shared.config import CompressionAlgorithm, CompressionSettings
from ..shared.errors import CacheError

MARKER = "COMPRESSED"


class CompressionCodec:
    """Byte-level codec."""

    algorithm: CompressionAlgorithm

    def __init__(self, level: int = 6):
        self.level = level

    def compress(self, data: bytes) -> bytes:
        raise NotImplementedError

    def decompress(self, data: bytes) -> bytes:
        raise NotImplementedError


class GzipCodec(CompressionCodec):
    algorithm = CompressionAlgorithm.GZIP

    def compress(self, data: bytes) -> bytes:
        return gzip.compress(data, compresslevel=self.level)

    def decompress(self, data: bytes) -> bytes:
        return gzip.decompress(data)


class DeflateCodec(CompressionCodec):
    algorithm = CompressionAlgorithm.DEFLATE

    def compress(self, data: bytes) -> bytes:
        return zlib.compress(data, self.level)

    def decompress(self, data: bytes) -> bytes:
        return zlib.decompress(data)


class ValueCompressor:
    """Compresses values above a size threshold with a pluggable codec."""

    def __init__(self, settings: Optional[CompressionSettings] = None):
        self.settings = settings or CompressionSettings()
        self._codecs: Dict[str, CompressionCodec] = {}
        self.register_codec(GzipCodec(self.settings.level))
        self.register_codec(DeflateCodec(self.settings.level))

    def register_codec(self, codec: CompressionCodec):
        self._codecs[codec.algorithm.value] = codec

    def should_compress(self, raw: bytes) -> bool:
        return self.settings.enabled and len(raw) > self.settings.min_size_bytes

    def encode(self, value: str) -> str:
        raw = value.encode("utf-8")
        if not self.should_compress(raw):
            return value
        algorithm = self.settings.algorithm.value
        payload = base64.b64encode(self._codecs[algorithm].compress(raw)).decode("ascii")
        return f"{MARKER}:{algorithm}:{payload}"

    def decode(self, value: str) -> str:
        if not value.startswith(f"{MARKER}:"):
            return value
        try:
            _, algorithm, payload = value.split(":", 2)
        except ValueError as e:
            raise CacheError("Malformed compressed cache value") from e

        codec = self._codecs.get(algorithm.lower())
        if codec is None:
            raise CacheError(f"Unsupported compression algorithm '{algorithm}'")
        try:
            return codec.decompress(base64.b64decode(payload)).decode("utf-8")
        except (binascii.Error, OSError, EOFError, zlib.error, UnicodeDecodeError) as e:
            raise CacheError("Failed to decompress cache value", details={"algorithm": algorithm}) from e
