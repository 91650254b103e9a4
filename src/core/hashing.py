"""
Deterministic hashing for cache keys and audit fingerprints.

stable_stringify() produces the same canonical JSON text for equal payloads
regardless of dict insertion order, and stable_hash() is FNV-1a 32-bit over
UTF-16 code units.
"""
from __future__ import annotations

import json
import math
from enum import Enum
from typing import Any

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619
HASH_PREFIX = "fnv1a32"


def _canonical(value: Any) -> Any:
    """Recursively sort mapping keys and normalize scalars to JSON-native forms."""
    if isinstance(value, Enum):
        return _canonical(value.value)
    if isinstance(value, dict):
        return {str(key): _canonical(value[key]) for key in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [_canonical(item) for item in value]
    if isinstance(value, bool) or value is None or isinstance(value, str):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return None
        # 1.0 and 1 must serialize identically
        if value.is_integer():
            return int(value)
        return value
    if hasattr(value, "to_dict"):
        return _canonical(value.to_dict())
    return str(value)


def stable_stringify(value: Any) -> str:
    """Serialize to compact JSON with object keys sorted at every depth."""
    return json.dumps(
        _canonical(value),
        ensure_ascii=False,
        separators=(",", ":"),
        sort_keys=True,
    )


def stable_hash(text: str) -> str:
    """FNV-1a 32-bit hash rendered as 8 lowercase hex characters."""
    hash_value = FNV_OFFSET_BASIS
    encoded = text.encode("utf-16-le", errors="surrogatepass")
    for index in range(0, len(encoded), 2):
        hash_value ^= encoded[index] | (encoded[index + 1] << 8)
        hash_value = (hash_value * FNV_PRIME) & 0xFFFFFFFF
    return f"{hash_value:08x}"


def create_input_hash(payload: Any) -> str:
    """Hash any JSON-like payload into the 'fnv1a32:xxxxxxxx' format."""
    return f"{HASH_PREFIX}:{stable_hash(stable_stringify(payload))}"
