from __future__ import annotations

import json
from pathlib import Path

import pandas as pd
import pytest

from smartlabel.errors import SchemaViolation
from smartlabel.interchange import read_sample_records
from smartlabel.testing import ScriptedLabelProvider


def _labeled_engine(engine_factory):
    provider = ScriptedLabelProvider(script={"s1": ("PERSON", 0.92), "s2": ("ORG", 0.4), "s3": ("ALIEN", 0.9)})
    engine = engine_factory([provider])
    engine.create_project("entities", "ner", ["PERSON", "ORG"], project_id="p1")
    engine.import_samples(
        "p1",
        [
            {"sample_id": "s3", "content_ref": "doc://s3", "content": "third"},
            {"sample_id": "s1", "content_ref": "doc://s1", "content": "first"},
            {"sample_id": "s2", "content_ref": "doc://s2"},
        ],
    )
    engine.wait(engine.schedule_batch("p1", sample_ids=["s1", "s2", "s3"]), timeout=10)
    return engine


def test_export_is_ordered_and_complete(engine_factory, tmp_path: Path) -> None:
    engine = _labeled_engine(engine_factory)
    out = tmp_path / "export.jsonl"

    assert engine.export("p1", out) == 3

    rows = [json.loads(line) for line in out.read_text(encoding="utf-8").splitlines()]
    assert [r["sample_id"] for r in rows] == ["s1", "s2", "s3"]
    s1, s2, s3 = rows
    assert (s1["status"], s1["label"], s1["confidence"], s1["label_source"]) == ("AutoLabeled", "PERSON", 0.92, "Model")
    assert (s2["status"], s2["label"], s2["confidence"]) == ("PendingReview", None, None)
    assert (s3["status"], s3["label"]) == ("Unlabeled", None)
    assert [h["kind"] for h in s1["history"]] == ["Ingest", "Claim", "Accept"]
    assert s1["history"][-1]["status"] == s1["status"]


def test_human_labels_export_without_confidence(engine_factory, tmp_path: Path) -> None:
    engine = _labeled_engine(engine_factory)
    task = engine.review_queue("p1")[0]
    engine.resolve_review(task.task_id, "alice", "ORG")
    out = tmp_path / "export.jsonl"
    engine.export("p1", out)
    s2 = [json.loads(line) for line in out.read_text(encoding="utf-8").splitlines()][1]
    assert (s2["status"], s2["label"], s2["confidence"], s2["label_source"]) == ("Reviewed", "ORG", None, "Human")


def test_export_is_byte_identical_when_unchanged(engine_factory, tmp_path: Path) -> None:
    engine = _labeled_engine(engine_factory)
    first, second = tmp_path / "a.jsonl", tmp_path / "b.jsonl"
    engine.export("p1", first)
    engine.export("p1", second)
    assert first.read_bytes() == second.read_bytes()


def test_export_round_trips_through_import(engine_factory, tmp_path: Path) -> None:
    engine = _labeled_engine(engine_factory)
    first = tmp_path / "export.jsonl"
    engine.export("p1", first)

    other = engine_factory([ScriptedLabelProvider(default=("ORG", 0.9))], db_name="other.db")
    other.create_project("copy", "ner", ["PERSON", "ORG"], project_id="p1")
    assert other.import_file("p1", first) == 3
    second = tmp_path / "reexport.jsonl"
    other.export("p1", second)

    assert second.read_bytes() == first.read_bytes()
    s1 = other.get_sample("s1")
    assert s1.status == "AutoLabeled"
    annotation = other.store.authoritative_for("s1")
    assert (annotation.label, annotation.source, annotation.confidence) == ("PERSON", "Model", 0.92)
    assert [e.kind for e in other.history("s1")] == ["Ingest", "Claim", "Accept"]
    assert [t.sample_id for t in other.review_queue("p1")] == ["s2"]
    assert other.review_queue("p1")[0].reason == "low_confidence"
    assert other.verify_provenance("p1") == []
    # importing the same file again adds nothing
    assert other.import_file("p1", first) == 0


def test_reimported_human_label_keeps_its_source(engine_factory, tmp_path: Path) -> None:
    engine = _labeled_engine(engine_factory)
    engine.resolve_review(engine.review_queue("p1")[0].task_id, "alice", "ORG")
    out = tmp_path / "export.jsonl"
    engine.export("p1", out)

    other = engine_factory([ScriptedLabelProvider(default=("ORG", 0.9))], db_name="other.db")
    other.create_project("copy", "ner", ["PERSON", "ORG"], project_id="p1")
    other.import_file("p1", out)

    annotation = other.store.authoritative_for("s2")
    assert (annotation.label, annotation.source, annotation.confidence) == ("ORG", "Human", None)
    assert other.get_sample("s2").status == "Reviewed"
    assert other.review_queue("p1") == []


def test_reimport_checks_label_schema(engine_factory, tmp_path: Path) -> None:
    engine = _labeled_engine(engine_factory)
    out = tmp_path / "export.jsonl"
    engine.export("p1", out)

    other = engine_factory([ScriptedLabelProvider(default=("ORG", 0.9))], db_name="other.db")
    other.create_project("copy", "ner", ["ORG", "PRODUCT"], project_id="p1")
    with pytest.raises(SchemaViolation):
        other.import_file("p1", out)


def test_exported_line_with_inconsistent_history_is_refused(tmp_path: Path) -> None:
    path = tmp_path / "bad.jsonl"
    line = {
        "sample_id": "s1",
        "content_ref": "doc://s1",
        "status": "AutoLabeled",
        "label": "PERSON",
        "confidence": 0.9,
        "label_source": "Model",
        "history": [{"kind": "Ingest", "prev_status": None, "status": "Unlabeled", "inputs": {}, "actor": "a", "ts": "t"}],
    }
    path.write_text(json.dumps(line) + "\n", encoding="utf-8")
    with pytest.raises(ValueError, match="does not match status"):
        read_sample_records(path)


def test_csv_import(engine_factory, tmp_path: Path) -> None:
    path = tmp_path / "samples.csv"
    pd.DataFrame(
        [
            {"sample_id": "001", "content_ref": "doc://1", "content": "hello"},
            {"sample_id": "002", "content_ref": "doc://2", "content": ""},
        ]
    ).to_csv(path, index=False)

    records = read_sample_records(path)
    assert records == [
        {"sample_id": "001", "content_ref": "doc://1", "content": "hello"},
        {"sample_id": "002", "content_ref": "doc://2", "content": None},
    ]

    engine = engine_factory([ScriptedLabelProvider(default=("ORG", 0.9))])
    engine.create_project("demo", "ner", ["PERSON", "ORG"], project_id="p1")
    assert engine.import_file("p1", path) == 2
    assert engine.get_sample("001").content == "hello"


def test_missing_required_column_is_reported(tmp_path: Path) -> None:
    path = tmp_path / "bad.jsonl"
    path.write_text(json.dumps({"sample_id": "s1"}) + "\n", encoding="utf-8")
    with pytest.raises(ValueError, match="content_ref"):
        read_sample_records(path)
