"""Active learning batch selection balancing uncertainty and diversity."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Protocol, Sequence

import numpy as np

from ..errors import EmptyPool
from ..shared.models import Sample, UNLABELED
from .similarity import as_matrix, jaccard_estimate, minhash_signature

LOGGER = logging.getLogger(__name__)

SimilarityFn = Callable[[np.ndarray, np.ndarray], np.ndarray]


class UncertaintyStrategy(Protocol):
    def score(self, project_id: str, pool: Sequence[Sample]) -> Dict[str, float]:
        ...


class NeighborConfidenceUncertainty:
    """Uncertainty from the latest model confidence on a similar, already labeled sample.

    A candidate's neighbours are labeled samples whose signature similarity is
    at least ``neighbor_similarity``.  The most recent model annotation among
    them gives ``1 - confidence``; candidates without neighbours get
    ``default_uncertainty``.
    """

    def __init__(
        self,
        store,
        signature_of: Callable[[Sample], List[int]],
        *,
        default_uncertainty: float = 1.0,
        neighbor_similarity: float = 0.5,
        similarity: SimilarityFn = jaccard_estimate,
    ) -> None:
        self.store = store
        self.signature_of = signature_of
        self.default_uncertainty = float(default_uncertainty)
        self.neighbor_similarity = float(neighbor_similarity)
        self.similarity = similarity

    def score(self, project_id: str, pool: Sequence[Sample]) -> Dict[str, float]:
        history = self.store.model_annotations(project_id)
        if not history:
            return {s.sample_id: self.default_uncertainty for s in pool}

        # latest model confidence per labeled sample, in chronological order
        latest: Dict[str, tuple[float, str]] = {}
        for sample_id, confidence, created_at in history:
            latest[sample_id] = (confidence, created_at)
        labeled_ids = sorted(latest, key=lambda sid: (latest[sid][1], sid))
        by_id = {s.sample_id: s for s in self.store.list_samples(project_id)}
        labeled_ids = [sid for sid in labeled_ids if sid in by_id]
        if not labeled_ids:
            return {s.sample_id: self.default_uncertainty for s in pool}
        labeled = as_matrix([self.signature_of(by_id[sid]) for sid in labeled_ids])
        confidences = np.array([latest[sid][0] for sid in labeled_ids], dtype="float64")

        scores: Dict[str, float] = {}
        for sample in pool:
            sims = self.similarity(labeled, np.asarray(self.signature_of(sample), dtype=np.uint64))
            hits = np.flatnonzero(sims >= self.neighbor_similarity)
            if hits.size:
                scores[sample.sample_id] = float(1.0 - confidences[hits[-1]])
            else:
                scores[sample.sample_id] = self.default_uncertainty
        return scores


class ActiveLearningSelector:
    """Greedy selection: most uncertain first, skipping near-duplicates of picks.

    Candidates are ranked by uncertainty (descending) then sample id
    (ascending).  A candidate is taken only if its similarity to every sample
    already chosen for this batch is below ``similarity_cap``.
    """

    def __init__(
        self,
        store,
        *,
        uncertainty: Optional[UncertaintyStrategy] = None,
        similarity: SimilarityFn = jaccard_estimate,
        signature_size: int = 64,
        shingle_size: int = 3,
        default_uncertainty: float = 1.0,
        neighbor_similarity: float = 0.5,
        similarity_cap: float = 0.9,
        enabled: bool = True,
    ) -> None:
        self.store = store
        self.similarity = similarity
        self.signature_size = int(signature_size)
        self.shingle_size = int(shingle_size)
        self.similarity_cap = float(similarity_cap)
        self.enabled = bool(enabled)
        self.uncertainty = uncertainty or NeighborConfidenceUncertainty(
            store,
            self.signature_of,
            default_uncertainty=default_uncertainty,
            neighbor_similarity=neighbor_similarity,
            similarity=similarity,
        )

    def signature_of(self, sample: Sample) -> List[int]:
        values = sample.signature_values()
        if values and len(values) == self.signature_size:
            return values
        return minhash_signature(
            sample.content or sample.content_ref, num_perm=self.signature_size, shingle_size=self.shingle_size
        )

    def candidates(self, project_id: str) -> List[Sample]:
        leased = self.store.leased_sample_ids()
        return [s for s in self.store.list_samples(project_id, [UNLABELED]) if s.sample_id not in leased]

    def select_batch(
        self,
        project_id: str,
        batch_size: int,
        *,
        enabled: Optional[bool] = None,
        similarity_cap: Optional[float] = None,
    ) -> List[str]:
        if int(batch_size) <= 0:
            raise ValueError("batch_size must be > 0")
        pool = self.candidates(project_id)
        if not pool:
            raise EmptyPool(f"no unlabeled samples in project {project_id}")
        enabled = self.enabled if enabled is None else bool(enabled)
        cap = self.similarity_cap if similarity_cap is None else float(similarity_cap)
        if not enabled:
            return [s.sample_id for s in pool[: int(batch_size)]]

        scores = self.uncertainty.score(project_id, pool)
        ranked = sorted(pool, key=lambda s: (-scores.get(s.sample_id, 0.0), s.sample_id))

        chosen: List[str] = []
        chosen_sigs: List[List[int]] = []
        for sample in ranked:
            if len(chosen) >= int(batch_size):
                break
            sig = self.signature_of(sample)
            if chosen_sigs:
                sims = self.similarity(as_matrix(chosen_sigs), np.asarray(sig, dtype=np.uint64))
                if float(sims.max()) >= cap:
                    continue
            chosen.append(sample.sample_id)
            chosen_sigs.append(sig)
        LOGGER.info(
            "batch selected",
            extra={"project_id": project_id, "requested": int(batch_size), "selected": len(chosen), "pool": len(pool)},
        )
        return chosen


__all__ = ["ActiveLearningSelector", "NeighborConfidenceUncertainty", "UncertaintyStrategy"]
