from .hashing import canonical_json, content_hash, stable_hash_str
from .runtime import JsonFormatter, setup_logging, utc_now

__all__ = [
    "JsonFormatter",
    "canonical_json",
    "content_hash",
    "setup_logging",
    "stable_hash_str",
    "utc_now",
]
