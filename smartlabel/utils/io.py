"""Lightweight I/O helpers for tables and line-delimited records."""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Iterable, Iterator, Mapping

import pandas as pd

from .hashing import canonical_json


def read_table(path: str | Path) -> pd.DataFrame:
    ext = str(path).lower().split(".")[-1]
    if ext == "csv":
        return pd.read_csv(path, dtype=str, keep_default_na=False)
    if ext == "tsv":
        return pd.read_csv(path, sep="\t", dtype=str, keep_default_na=False)
    if ext in ("parquet", "pq"):
        return pd.read_parquet(path)
    if ext in ("jsonl", "ndjson"):
        return pd.read_json(path, lines=True, dtype=False)
    raise ValueError(f"Unsupported table extension: {path}")


def atomic_write_bytes(path: str | Path, data: bytes) -> None:
    tmp = str(path) + ".tmp"
    with open(tmp, "wb") as f:
        f.write(data)
    os.replace(tmp, path)


def write_jsonl(path: str | Path, records: Iterable[Mapping]) -> int:
    """Write canonical JSON lines atomically and return the record count."""
    lines = [canonical_json(dict(r)) for r in records]
    payload = "".join(line + "\n" for line in lines)
    atomic_write_bytes(path, payload.encode("utf-8"))
    return len(lines)


def iter_jsonl(path: str | Path) -> Iterator[dict]:
    with open(path, "r", encoding="utf-8") as f:
        for line in f:
            line = line.strip()
            if line:
                yield json.loads(line)


__all__ = ["atomic_write_bytes", "iter_jsonl", "read_table", "write_jsonl"]
