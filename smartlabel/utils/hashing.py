"""Stable hashing utilities for reproducible identifiers."""

from __future__ import annotations

import hashlib
import json
from typing import Any


def canonical_json(data: Any) -> str:
    """Return a deterministic JSON representation."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def stable_hash_str(s: str, digest_size: int = 8) -> str:
    if s is None:
        s = ""
    return hashlib.blake2b(str(s).encode("utf-8"), digest_size=digest_size).hexdigest()


def content_hash(payload: Any, digest_size: int = 16) -> str:
    """Hash the canonical JSON form of ``payload``; equal content yields equal ids."""
    return stable_hash_str(canonical_json(payload), digest_size=digest_size)


def shingle_hash(token: str) -> int:
    """Map a shingle to a 31-bit integer for min-hashing."""
    digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
    return int.from_bytes(digest, "big") & 0x7FFFFFFF


__all__ = ["canonical_json", "content_hash", "shingle_hash", "stable_hash_str"]
