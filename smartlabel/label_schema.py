"""Label schema helpers shared by routing and quality checks."""
from __future__ import annotations

from typing import Iterable, List

# Tasks whose labels may hold several comma separated values (entity sets).
MULTI_VALUE_TASKS = {"ner", "multilabel", "multi_label", "categorical_multi"}


def normalize_schema(labels: Iterable[str]) -> List[str]:
    """Strip, de-duplicate and sort label values; an empty schema is an error."""
    cleaned = sorted({str(label).strip() for label in labels if str(label).strip()})
    if not cleaned:
        raise ValueError("label schema must contain at least one label")
    for label in cleaned:
        if "," in label:
            raise ValueError(f"label {label!r} may not contain a comma")
    return cleaned


def split_label(label: str | None, task_type: str) -> List[str]:
    if label is None:
        return []
    if str(task_type).lower() in MULTI_VALUE_TASKS:
        return [part.strip() for part in str(label).split(",") if part.strip()]
    return [str(label).strip()]


def label_in_schema(label: str | None, labels: Iterable[str], task_type: str) -> bool:
    parts = split_label(label, task_type)
    if not parts:
        return False
    allowed = set(labels)
    return all(part in allowed for part in parts)


__all__ = ["MULTI_VALUE_TASKS", "label_in_schema", "normalize_schema", "split_label"]
