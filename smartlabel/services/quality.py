"""Quality assurance: inter-annotator agreement, consistency flags and snapshots."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from ..metrics import AgreementFn, DEFAULT_METRICS, metric_for_task, pairwise_agreement
from ..shared.models import (
    PENDING_REVIEW,
    REASON_QA_OVERRIDE,
    SOURCE_HUMAN,
    SOURCE_MODEL,
    Annotation,
    QualityMetric,
)
from ..utils.runtime import utc_now

LOGGER = logging.getLogger(__name__)

FLAG_LOW_AGREEMENT = "low_agreement"


@dataclass(frozen=True)
class QAResult:
    agreement_score: Optional[float]
    consistency_flags: Tuple[str, ...] = ()
    votes: int = 0

    @property
    def flagged(self) -> bool:
        return bool(self.consistency_flags)


VotePolicy = Callable[[object, Sequence[Annotation]], List[Annotation]]


def confident_votes(project, annotations: Sequence[Annotation]) -> List[Annotation]:
    """Human annotations, plus model annotations that met the project threshold.

    A model guess that was itself sent to review is not an independent opinion.
    """
    threshold = float(project.confidence_threshold)
    out: List[Annotation] = []
    for ann in annotations:
        if ann.source == SOURCE_HUMAN:
            out.append(ann)
        elif ann.source == SOURCE_MODEL and ann.confidence is not None and float(ann.confidence) >= threshold:
            out.append(ann)
    return out


def all_votes(project, annotations: Sequence[Annotation]) -> List[Annotation]:
    return list(annotations)


VOTE_POLICIES: Dict[str, VotePolicy] = {"confident": confident_votes, "all": all_votes}


class QualityAssuranceEngine:
    """Scores agreement between independent annotations of a sample.

    Only *votes* take part; ``vote_policy`` picks them from a sample's
    annotations (a name from :data:`VOTE_POLICIES` or a callable).
    """

    def __init__(
        self,
        store,
        metrics: Optional[Dict[str, AgreementFn]] = None,
        vote_policy: str | VotePolicy = "confident",
    ) -> None:
        self.store = store
        self.metrics = dict(DEFAULT_METRICS)
        if metrics:
            self.metrics.update({str(k).lower(): v for k, v in metrics.items()})
        if isinstance(vote_policy, str):
            if vote_policy not in VOTE_POLICIES:
                raise ValueError(f"unknown vote policy {vote_policy!r}")
            vote_policy = VOTE_POLICIES[vote_policy]
        self.vote_policy = vote_policy

    def votes(self, project, annotations: Sequence[Annotation]) -> List[Annotation]:
        return self.vote_policy(project, annotations)

    def evaluate(self, project, annotations: Sequence[Annotation]) -> QAResult:
        votes = self.votes(project, annotations)
        metric = metric_for_task(project.task_type, self.metrics)
        score = pairwise_agreement([v.label for v in votes], metric)
        if score is None:
            return QAResult(agreement_score=None, votes=len(votes))
        flags: Tuple[str, ...] = ()
        if score < float(project.agreement_threshold):
            flags = (FLAG_LOW_AGREEMENT,)
        return QAResult(agreement_score=float(score), consistency_flags=flags, votes=len(votes))

    def enforce(self, conn, project, sample, *, actor: str = "qa", allow_override: bool = True) -> Tuple[QAResult, bool]:
        """Evaluate ``sample`` inside an open transaction and apply the outcome.

        A flagged sample gets a ConsistencyFlag row.  Unless ``allow_override``
        is false, it also gets a fresh ReviewTask and moves to PendingReview,
        whatever decision was taken before.  Returns the result and whether a
        review was forced.
        """
        result = self.evaluate(project, self.store.annotations_for(sample.sample_id, conn))
        if not result.flagged:
            return result, False
        self.store.add_consistency_flag(conn, sample, result.agreement_score, project.agreement_threshold)
        inputs = {
            "agreement_score": result.agreement_score,
            "agreement_threshold": float(project.agreement_threshold),
            "flags": list(result.consistency_flags),
            "votes": result.votes,
            "policy_version": project.policy_version,
        }
        LOGGER.info(
            "consistency flag raised",
            extra={"sample_id": sample.sample_id, "agreement": result.agreement_score, "override": allow_override},
        )
        if not allow_override:
            self.store.record_decision(conn, sample, kind="ConsistencyFlag", actor=actor, inputs=inputs)
            return result, False
        if self.store.open_task_for(sample.sample_id, conn) is not None:
            self.store.record_decision(conn, sample, kind="ConsistencyFlag", actor=actor, inputs=inputs)
            return result, True
        self.store.open_review_task(conn, sample.sample_id, REASON_QA_OVERRIDE)
        if sample.status == PENDING_REVIEW:
            self.store.record_decision(conn, sample, kind="QAOverride", actor=actor, inputs=inputs)
        else:
            self.store.transition(conn, sample, PENDING_REVIEW, kind="QAOverride", actor=actor, inputs=inputs)
        return result, True

    def snapshot(self, project_id: str, window: int) -> QualityMetric:
        """Append a project-level QualityMetric over the ``window`` most recently annotated samples."""
        project = self.store.get_project(project_id)
        rows = self.store.project_annotations(project_id)
        agreement: Optional[float] = None
        sample_count = 0
        flag_count = 0
        if rows:
            df = pd.DataFrame([dict(r) for r in rows])
            recent = (
                df.groupby("sample_id")["created_at"].max().sort_values(ascending=False, kind="stable").head(int(window))
            )
            window_ids = set(recent.index)
            sample_count = len(window_ids)
            scores: List[float] = []
            for _, group in df[df["sample_id"].isin(window_ids)].groupby("sample_id", sort=True):
                annotations = [Annotation(**rec) for rec in group.to_dict(orient="records")]
                for ann in annotations:
                    if ann.confidence is not None and pd.isna(ann.confidence):
                        ann.confidence = None
                result = self.evaluate(project, annotations)
                if result.agreement_score is not None:
                    scores.append(result.agreement_score)
            if scores:
                agreement = float(np.mean(scores))
            flag_count = sum(1 for f in self.store.consistency_flags(project_id) if f.sample_id in window_ids)
        metric = QualityMetric(
            metric_id=f"qm_{uuid.uuid4().hex}",
            project_id=project_id,
            window_size=int(window),
            agreement_score=agreement,
            consistency_flag_count=int(flag_count),
            sample_count=int(sample_count),
            computed_at=utc_now(),
        )
        self.store.append_quality_metric(metric)
        LOGGER.info(
            "quality snapshot recorded",
            extra={"project_id": project_id, "agreement": agreement, "flags": flag_count, "samples": sample_count},
        )
        return metric


__all__ = [
    "FLAG_LOW_AGREEMENT",
    "QAResult",
    "QualityAssuranceEngine",
    "VOTE_POLICIES",
    "all_votes",
    "confident_votes",
]
