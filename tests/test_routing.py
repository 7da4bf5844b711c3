from __future__ import annotations

import pytest

from conftest import make_project
from smartlabel.services.executor import Prediction
from smartlabel.services.routing import ACCEPT, REJECT, REVIEW, ConfidenceRouter
from smartlabel.shared.models import REASON_DOUBLE_ANNOTATION, REASON_LOW_CONFIDENCE


@pytest.mark.parametrize("confidence", [0.0, 0.3, 0.79, 0.7999, 0.8, 0.81, 0.95, 1.0])
def test_threshold_splits_accept_and_review(confidence: float) -> None:
    project = make_project(threshold=0.8)
    decision = ConfidenceRouter().route(project, Prediction("PERSON", confidence, "m"))

    if confidence >= 0.8:
        assert decision.decision == ACCEPT
        assert decision.reason is None
    else:
        assert decision.decision == REVIEW
        assert decision.reason == REASON_LOW_CONFIDENCE


def test_double_annotation_sends_confident_predictions_to_review() -> None:
    project = make_project(double=True)
    decision = ConfidenceRouter().route(project, Prediction("ORG", 0.99, "m"))
    assert decision.decision == REVIEW
    assert decision.reason == REASON_DOUBLE_ANNOTATION


@pytest.mark.parametrize("confidence", [0.1, 0.99])
def test_label_outside_schema_is_rejected_regardless_of_confidence(confidence: float) -> None:
    project = make_project()
    decision = ConfidenceRouter().route(project, Prediction("ALIEN", confidence, "m"))
    assert decision.decision == REJECT
    assert decision.reason == "schema_violation"


def test_multi_value_labels_must_all_be_in_schema() -> None:
    project = make_project(task_type="multilabel", labels=("a", "b", "c"))
    router = ConfidenceRouter()
    assert router.route(project, Prediction("a, c", 0.9, "m")).decision == ACCEPT
    assert router.route(project, Prediction("a,z", 0.9, "m")).decision == REJECT


def test_classification_label_with_comma_is_not_split() -> None:
    project = make_project(task_type="classification", labels=("yes", "no"))
    assert ConfidenceRouter().route(project, Prediction("yes,no", 0.9, "m")).decision == REJECT
