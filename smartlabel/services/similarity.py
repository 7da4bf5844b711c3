"""Content-similarity signatures (MinHash over character shingles)."""

from __future__ import annotations

import re
from functools import lru_cache
from typing import List, Sequence, Tuple

import numpy as np

from ..utils.hashing import shingle_hash

_PRIME = np.uint64(2**31 - 1)


def _shingles(text: str, size: int) -> set[str]:
    norm = re.sub(r"\s+", " ", str(text or "")).strip().lower()
    if len(norm) <= size:
        return {norm}
    return {norm[i : i + size] for i in range(len(norm) - size + 1)}


@lru_cache(maxsize=8)
def _permutations(num_perm: int, seed: int) -> Tuple[np.ndarray, np.ndarray]:
    rng = np.random.default_rng(seed)
    a = rng.integers(1, int(_PRIME), size=num_perm, dtype=np.uint64)
    b = rng.integers(0, int(_PRIME), size=num_perm, dtype=np.uint64)
    return a, b


def minhash_signature(text: str, num_perm: int = 64, shingle_size: int = 3, seed: int = 1) -> List[int]:
    hashes = np.array(sorted(shingle_hash(s) for s in _shingles(text, shingle_size)), dtype=np.uint64)
    a, b = _permutations(int(num_perm), int(seed))
    values = (a[:, None] * hashes[None, :] + b[:, None]) % _PRIME
    return [int(v) for v in values.min(axis=1)]


def as_matrix(signatures: Sequence[Sequence[int]]) -> np.ndarray:
    if not signatures:
        return np.zeros((0, 0), dtype=np.uint64)
    return np.asarray(signatures, dtype=np.uint64)


def jaccard_estimate(matrix: np.ndarray, signature: np.ndarray) -> np.ndarray:
    """Estimated Jaccard similarity of every row of ``matrix`` to ``signature``."""
    if matrix.size == 0:
        return np.zeros(matrix.shape[0], dtype="float64")
    return (matrix == signature[None, :]).mean(axis=1)


__all__ = ["as_matrix", "jaccard_estimate", "minhash_signature"]
