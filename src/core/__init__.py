"""
Core Module - Shared primitives.

Components:
- hashing: Canonical JSON serialization and FNV-1a input hashes used for
  cache keys and replay fingerprints
"""

from src.core.hashing import create_input_hash, stable_hash, stable_stringify

__all__ = [
    "create_input_hash",
    "stable_hash",
    "stable_stringify",
]
