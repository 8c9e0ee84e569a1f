"""
Serialization boundary for the shared (Redis) tier.

Values are stored as JSON. Payloads for key families the optimizer marked
for compression are zlib-compressed and tagged with a short prefix so
decoding does not need to know how a key was written.
"""

import json
import zlib
from typing import Any

from .errors import CacheSerializationError

COMPRESSED_PREFIX = b"z:"


def serialize(value: Any, compress: bool = False, level: int = 6) -> bytes:
    """Encode a value for Tier-2 storage."""
    try:
        data = json.dumps(value, default=str, separators=(",", ":")).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise CacheSerializationError("serialize", e) from e

    if compress:
        return COMPRESSED_PREFIX + zlib.compress(data, level)
    return data


def deserialize(data: bytes) -> Any:
    """Decode a Tier-2 payload produced by :func:`serialize`."""
    if isinstance(data, str):
        data = data.encode("utf-8")

    try:
        if data.startswith(COMPRESSED_PREFIX):
            data = zlib.decompress(data[len(COMPRESSED_PREFIX):])
        return json.loads(data.decode("utf-8"))
    except (zlib.error, UnicodeDecodeError, ValueError) as e:
        raise CacheSerializationError("deserialize", e) from e


def estimate_size(value: Any) -> int:
    """Rough in-memory footprint of a value, in bytes (UTF-16 estimate)."""
    try:
        return len(json.dumps(value, default=str)) * 2
    except (TypeError, ValueError):
        return len(str(value)) * 2
