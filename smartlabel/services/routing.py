"""Confidence routing: accept, send to human review, or reject a prediction."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from ..label_schema import label_in_schema
from ..shared.models import REASON_DOUBLE_ANNOTATION, REASON_LOW_CONFIDENCE

ACCEPT = "Accept"
REVIEW = "Review"
REJECT = "Reject"


@dataclass(frozen=True)
class RoutingDecision:
    decision: str
    reason: Optional[str] = None


class ConfidenceRouter:
    def route(self, project, prediction) -> RoutingDecision:
        """Decide what happens to a prediction under the project's policy.

        Schema membership is checked first: an unknown label is a data error
        regardless of confidence.
        """
        if not label_in_schema(prediction.label, project.labels, project.task_type):
            return RoutingDecision(REJECT, "schema_violation")
        if prediction.confidence >= float(project.confidence_threshold):
            if bool(project.require_double_annotation):
                return RoutingDecision(REVIEW, REASON_DOUBLE_ANNOTATION)
            return RoutingDecision(ACCEPT)
        return RoutingDecision(REVIEW, REASON_LOW_CONFIDENCE)


__all__ = ["ACCEPT", "REJECT", "REVIEW", "ConfidenceRouter", "RoutingDecision"]
