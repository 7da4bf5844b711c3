from __future__ import annotations

import sqlite3

import pytest

from conftest import make_project, make_sample
from smartlabel.errors import ConcurrencyConflict, InvalidTransition, ProjectNotFound, SampleNotFound
from smartlabel.ledger import make_entry
from smartlabel.shared.models import AUTO_LABELED, IN_PROGRESS, SOURCE_HUMAN, SOURCE_MODEL, UNLABELED


def _seed(store, *sample_ids: str) -> None:
    store.insert_project(make_project())
    samples = [make_sample(sid, status=UNLABELED) for sid in sample_ids]
    store.add_samples(samples, actor="test")


def test_missing_rows_raise_domain_errors(store) -> None:
    with pytest.raises(ProjectNotFound):
        store.get_project("nope")
    with pytest.raises(SampleNotFound):
        store.get_sample("nope")


def test_duplicate_project_is_refused(store) -> None:
    store.insert_project(make_project())
    with pytest.raises(InvalidTransition):
        store.insert_project(make_project())


def test_add_samples_skips_existing_ids_and_audits_ingest(store) -> None:
    _seed(store, "s1", "s2")
    assert store.add_samples([make_sample("s1", status=UNLABELED), make_sample("s3", status=UNLABELED)], actor="t") == 1
    assert [s.sample_id for s in store.list_samples("p1")] == ["s1", "s2", "s3"]
    history = store.ledger.history("s1")
    assert [e.kind for e in history] == ["Ingest"]
    assert history[0].prev_status is None
    assert history[0].status == UNLABELED


def test_transition_writes_audit_entry_with_status(store) -> None:
    _seed(store, "s1")
    with store.db.transaction() as conn:
        sample = store.get_sample("s1", conn)
        store.transition(conn, sample, IN_PROGRESS, kind="Claim", actor="job", inputs={"policy_version": 1})
    assert store.get_sample("s1").status == IN_PROGRESS
    last = store.ledger.last_entry("s1")
    assert (last.kind, last.prev_status, last.status) == ("Claim", UNLABELED, IN_PROGRESS)
    assert last.inputs == {"policy_version": 1}


def test_failed_transaction_leaves_no_audit_entry(store) -> None:
    _seed(store, "s1")
    with pytest.raises(RuntimeError):
        with store.db.transaction() as conn:
            sample = store.get_sample("s1", conn)
            store.transition(conn, sample, IN_PROGRESS, kind="Claim", actor="job")
            raise RuntimeError("crash between writes")
    assert store.get_sample("s1").status == UNLABELED
    assert [e.kind for e in store.ledger.history("s1")] == ["Ingest"]


def test_history_is_ordered_and_timestamps_never_decrease(store) -> None:
    _seed(store, "s1")
    for idx in range(5):
        store.ledger.append(
            make_entry(
                sample_id="s1", project_id="p1", kind=f"K{idx}", prev_status=UNLABELED, status=UNLABELED, actor="t"
            )
        )
    history = store.ledger.history("s1")
    assert [e.kind for e in history] == ["Ingest", "K0", "K1", "K2", "K3", "K4"]
    assert [e.ts for e in history] == sorted(e.ts for e in history)
    assert [e.entry_id for e in history] == sorted(e.entry_id for e in history)


def test_audit_entries_cannot_be_updated_or_deleted(store) -> None:
    _seed(store, "s1")
    conn = store.db.connect()
    try:
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("UPDATE audit_entries SET status='Reviewed'")
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("DELETE FROM audit_entries")
    finally:
        conn.close()
    assert len(store.ledger.history("s1")) == 1


def test_lease_conflict_reports_holder(store) -> None:
    _seed(store, "s1")
    store.acquire_lease("s1", "job-a")
    with pytest.raises(ConcurrencyConflict) as info:
        store.acquire_lease("s1", "job-b")
    assert info.value.holder == "job-a"
    store.release_lease("s1", "job-a")
    store.acquire_lease("s1", "job-b")
    assert store.lease_holder("s1") == "job-b"


def test_at_most_one_authoritative_annotation(store) -> None:
    _seed(store, "s1")
    with store.db.transaction() as conn:
        store.add_annotation(
            conn, sample_id="s1", label="PERSON", source=SOURCE_MODEL, producer="m", confidence=0.9, authoritative=True
        )
        human = store.add_annotation(
            conn, sample_id="s1", label="ORG", source=SOURCE_HUMAN, producer="alice", confidence=0.5
        )
        store.mark_authoritative(conn, human)
    annotations = store.annotations_for("s1")
    assert len(annotations) == 2
    assert [a.label for a in annotations if a.authoritative] == ["ORG"]
    assert store.authoritative_for("s1").source == SOURCE_HUMAN
    # human annotations never carry a confidence
    assert store.authoritative_for("s1").confidence is None


def test_only_one_open_review_task_per_sample(store) -> None:
    _seed(store, "s1")
    with store.db.transaction() as conn:
        task = store.open_review_task(conn, "s1", "low_confidence")
    with pytest.raises(sqlite3.IntegrityError):
        with store.db.transaction() as conn:
            store.open_review_task(conn, "s1", "qa_override")
    with store.db.transaction() as conn:
        store.resolve_review_task(conn, task, "labeled", "alice")
    with pytest.raises(InvalidTransition):
        with store.db.transaction() as conn:
            store.resolve_review_task(conn, task, "labeled", "bob")
    assert store.open_task_for("s1") is None
    resolved = store.get_review_task(task.task_id)
    assert resolved.outcome == "labeled"
    assert resolved.assigned_reviewer == "alice"


def test_record_decision_keeps_status(store) -> None:
    _seed(store, "s1")
    with store.db.transaction() as conn:
        sample = store.get_sample("s1", conn)
        store.transition(conn, sample, AUTO_LABELED, kind="Accept", actor="m")
        store.record_decision(conn, sample, kind="ConsistencyFlag", actor="qa", inputs={"x": 1})
    last = store.ledger.last_entry("s1")
    assert last.kind == "ConsistencyFlag"
    assert last.prev_status == last.status == AUTO_LABELED
