"""Line-delimited JSON interchange for samples, labels and provenance."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping

import pandas as pd

from .shared.models import AuditEntry, SAMPLE_STATUSES, SOURCE_HUMAN, SOURCE_MODEL
from .utils.hashing import canonical_json
from .utils.io import iter_jsonl, read_table, write_jsonl

REQUIRED_COLUMNS = ("sample_id", "content_ref")
# keys an export line carries beyond the plain sample columns
EXPORT_COLUMNS = ("status", "label", "confidence", "label_source", "history")


def _clean(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, float) and pd.isna(value):
        return None
    return value


def read_sample_records(path: str | Path) -> List[Dict[str, Any]]:
    """Read sample rows from jsonl, csv or parquet.

    Plain rows carry ``sample_id``/``content_ref``/``content``.  Lines written
    by :func:`export_project` also carry a ``history``; for those the label,
    status and provenance keys are kept so the sample can be restored as it
    was exported.
    """
    path = Path(path)
    ext = path.suffix.lower().lstrip(".")
    if ext in ("jsonl", "ndjson"):
        rows: List[Mapping[str, Any]] = list(iter_jsonl(path))
    else:
        rows = read_table(path).to_dict(orient="records")
    records: List[Dict[str, Any]] = []
    for idx, row in enumerate(rows):
        missing = [col for col in REQUIRED_COLUMNS if _clean(row.get(col)) in (None, "")]
        if missing:
            raise ValueError(f"{path.name} row {idx}: missing {', '.join(missing)}")
        content = _clean(row.get("content"))
        record: Dict[str, Any] = {
            "sample_id": str(row["sample_id"]),
            "content_ref": str(row["content_ref"]),
            "content": None if content in (None, "") else str(content),
        }
        if isinstance(row.get("history"), list) and row["history"]:
            record.update({key: row.get(key) for key in EXPORT_COLUMNS})
            _check_exported(record, f"{path.name} row {idx}")
        records.append(record)
    return records


def _check_exported(record: Mapping[str, Any], where: str) -> None:
    status = record.get("status")
    if status not in SAMPLE_STATUSES:
        raise ValueError(f"{where}: unknown status {status!r}")
    if record["history"][-1].get("status") != status:
        raise ValueError(f"{where}: last history entry does not match status {status}")
    source = record.get("label_source")
    if record.get("label") is None:
        return
    if source not in (SOURCE_MODEL, SOURCE_HUMAN):
        raise ValueError(f"{where}: unknown label source {source!r}")
    confidence = record.get("confidence")
    if source == SOURCE_HUMAN and confidence is not None:
        raise ValueError(f"{where}: human labels carry no confidence")
    if confidence is not None and not 0.0 <= float(confidence) <= 1.0:
        raise ValueError(f"{where}: confidence {confidence} outside [0, 1]")


def is_exported(record: Mapping[str, Any]) -> bool:
    return bool(record.get("history"))


def history_entries(project_id: str, record: Mapping[str, Any]) -> List[AuditEntry]:
    """Audit entries for an exported record, re-homed into ``project_id``."""
    return [
        AuditEntry(
            entry_id=None,
            sample_id=record["sample_id"],
            project_id=project_id,
            kind=str(item["kind"]),
            prev_status=item.get("prev_status"),
            status=str(item["status"]),
            inputs_json=canonical_json(dict(item.get("inputs") or {})),
            actor=str(item["actor"]),
            ts=str(item["ts"]),
        )
        for item in record["history"]
    ]


def review_reason(record: Mapping[str, Any]) -> str | None:
    """Reason of the most recent review routing in an exported history."""
    for item in reversed(record["history"]):
        reason = (item.get("inputs") or {}).get("reason")
        if reason:
            return str(reason)
    return None


def export_rows(store, project_id: str) -> Iterator[Dict[str, Any]]:
    """Yield one export record per sample, ordered by sample id.

    History entries are numbered per sample (``seq``) rather than by database
    row id, so a restored project exports the same bytes as the original.
    """
    for sample in store.list_samples(project_id):
        annotation = store.authoritative_for(sample.sample_id)
        history = [
            {"seq": seq, **entry.to_export()}
            for seq, entry in enumerate(store.ledger.history(sample.sample_id), start=1)
        ]
        yield {
            "sample_id": sample.sample_id,
            "content_ref": sample.content_ref,
            "content": sample.content,
            "status": sample.status,
            "label": annotation.label if annotation is not None else None,
            "confidence": (
                annotation.confidence if annotation is not None and annotation.source == SOURCE_MODEL else None
            ),
            "label_source": annotation.source if annotation is not None else None,
            "history": history,
        }


def export_project(store, project_id: str, path: str | Path) -> int:
    return write_jsonl(path, export_rows(store, project_id))


__all__ = [
    "EXPORT_COLUMNS",
    "REQUIRED_COLUMNS",
    "export_project",
    "export_rows",
    "history_entries",
    "is_exported",
    "read_sample_records",
    "review_reason",
]
