from __future__ import annotations

import sqlite3

import pytest

from conftest import make_project
from smartlabel.services.quality import FLAG_LOW_AGREEMENT, QualityAssuranceEngine
from smartlabel.shared.models import Annotation
from smartlabel.testing import ScriptedLabelProvider


def _ann(label: str, source: str = "Human", confidence=None) -> Annotation:
    return Annotation(
        annotation_id=f"a-{label}-{source}-{confidence}",
        sample_id="s1",
        label=label,
        source=source,
        confidence=confidence,
        producer="x",
        created_at="",
        authoritative=0,
    )


def test_single_vote_has_no_agreement_score() -> None:
    qa = QualityAssuranceEngine(store=None)
    result = qa.evaluate(make_project(), [_ann("PERSON", "Model", 0.9)])
    assert result.agreement_score is None
    assert not result.flagged


def test_low_confidence_model_annotations_do_not_vote() -> None:
    qa = QualityAssuranceEngine(store=None)
    result = qa.evaluate(make_project(), [_ann("PERSON", "Model", 0.4), _ann("ORG")])
    assert result.votes == 1
    assert result.agreement_score is None


def test_disagreement_below_threshold_is_flagged() -> None:
    qa = QualityAssuranceEngine(store=None)
    result = qa.evaluate(make_project(agreement=0.8), [_ann("PERSON", "Model", 0.92), _ann("ORG")])
    assert result.agreement_score == 0.0
    assert result.consistency_flags == (FLAG_LOW_AGREEMENT,)


def test_partial_entity_overlap_uses_set_jaccard() -> None:
    qa = QualityAssuranceEngine(store=None)
    result = qa.evaluate(make_project(agreement=0.4), [_ann("PERSON,ORG"), _ann("PERSON")])
    assert result.agreement_score == pytest.approx(0.5)
    assert not result.flagged


def test_metrics_are_pluggable_per_task() -> None:
    qa = QualityAssuranceEngine(store=None, metrics={"ner": lambda a, b: 1.0})
    result = qa.evaluate(make_project(), [_ann("PERSON"), _ann("ORG")])
    assert result.agreement_score == 1.0


def test_all_votes_policy_counts_unconfident_model_labels() -> None:
    qa = QualityAssuranceEngine(store=None, vote_policy="all")
    result = qa.evaluate(make_project(agreement=0.8), [_ann("PERSON", "Model", 0.4), _ann("ORG")])
    assert result.votes == 2
    assert result.agreement_score == 0.0
    assert result.flagged


def test_unknown_vote_policy_is_rejected() -> None:
    with pytest.raises(ValueError, match="vote policy"):
        QualityAssuranceEngine(store=None, vote_policy="majority")


@pytest.mark.parametrize("qa_votes, expected", [("confident", "Reviewed"), ("all", "PendingReview")])
def test_vote_policy_decides_whether_review_disagreement_is_flagged(engine_factory, qa_votes, expected) -> None:
    provider = ScriptedLabelProvider(script={"s1": ("ORG", 0.4)})
    engine = engine_factory([provider], qa_votes=qa_votes)
    engine.create_project("entities", "ner", ["PERSON", "ORG"], project_id="p1")
    engine.import_samples("p1", [{"sample_id": "s1", "content_ref": "doc://s1"}])
    engine.wait(engine.schedule_batch("p1", sample_ids=["s1"]), timeout=10)

    sample = engine.resolve_review(engine.review_queue("p1")[0].task_id, "alice", "PERSON")

    assert sample.status == expected
    reasons = [t.reason for t in engine.review_queue("p1")]
    assert reasons == ([] if qa_votes == "confident" else ["qa_override"])


def test_snapshot_reports_recent_window(engine_factory) -> None:
    provider = ScriptedLabelProvider(script={"s1": ("PERSON", 0.92), "s2": ("ORG", 0.95)})
    engine = engine_factory([provider])
    engine.create_project("entities", "ner", ["PERSON", "ORG"], project_id="p1")
    engine.import_samples("p1", [{"sample_id": s, "content_ref": f"doc://{s}"} for s in ("s1", "s2")])
    engine.wait(engine.schedule_batch("p1", sample_ids=["s1", "s2"]), timeout=10)
    engine.submit_annotation("s1", "ORG", "alice")
    engine.submit_annotation("s2", "ORG", "bob")

    metric = engine.quality_snapshot("p1", window=10)
    assert metric.sample_count == 2
    assert metric.agreement_score == pytest.approx(0.5)
    assert metric.consistency_flag_count == 1

    # s2 received the most recent annotation
    narrow = engine.quality_snapshot("p1", window=1)
    assert narrow.sample_count == 1
    assert narrow.agreement_score == 1.0
    assert narrow.consistency_flag_count == 0

    assert [m.metric_id for m in engine.quality_metrics("p1")] == [metric.metric_id, narrow.metric_id]
    conn = engine.db.connect()
    try:
        with pytest.raises(sqlite3.DatabaseError):
            conn.execute("UPDATE quality_metrics SET agreement_score=0")
    finally:
        conn.close()
