"""Per-sample unit of work: claim, enrich, predict, route, quality check."""

from __future__ import annotations

import logging
from typing import Any, Dict

from .config import ConfigSnapshot
from .errors import ConcurrencyConflict, ModelUnavailable
from .shared.models import AUTO_LABELED, IN_PROGRESS, PENDING_REVIEW, Project, SOURCE_MODEL, UNLABELED
from .services.routing import ACCEPT, REJECT

LOGGER = logging.getLogger(__name__)

# per-sample outcomes reported on a batch job
OUTCOME_AUTO_LABELED = "AutoLabeled"
OUTCOME_PENDING_REVIEW = "PendingReview"
OUTCOME_REJECTED = "Rejected"
OUTCOME_FAILED = "Failed"
OUTCOME_SKIPPED = "Skipped"
OUTCOME_NOT_STARTED = "NotStarted"
OUTCOMES = (
    OUTCOME_AUTO_LABELED,
    OUTCOME_PENDING_REVIEW,
    OUTCOME_REJECTED,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
    OUTCOME_NOT_STARTED,
)


class SamplePipeline:
    """Runs one sample through the labeling flow under a lease.

    The project and settings passed in are the snapshots taken when the batch
    was scheduled, so policy edits made while the batch runs do not apply to
    it.  Every status change goes through :meth:`SampleStore.transition`, which
    writes the audit entry before the status.
    """

    def __init__(self, store, injector, executor, router, quality) -> None:
        self.store = store
        self.injector = injector
        self.executor = executor
        self.router = router
        self.quality = quality

    def run(self, sample_id: str, project: Project, settings: ConfigSnapshot, *, holder: str) -> str:
        """Process ``sample_id`` and map the result to a batch outcome.

        Lease conflicts become ``Skipped``.  Storage failures propagate so the
        scheduler can fail the job.
        """
        try:
            return self.process(sample_id, project, settings, holder=holder)
        except ConcurrencyConflict as exc:
            LOGGER.info("sample skipped", extra={"sample_id": sample_id, "holder": holder, "error": str(exc)})
            return OUTCOME_SKIPPED

    def process(self, sample_id: str, project: Project, settings: ConfigSnapshot, *, holder: str) -> str:
        self.store.acquire_lease(sample_id, holder)
        try:
            return self._process_leased(sample_id, project, settings, holder)
        finally:
            self.store.release_lease(sample_id, holder)

    def _process_leased(self, sample_id: str, project: Project, settings: ConfigSnapshot, holder: str) -> str:
        with self.store.db.transaction() as conn:
            sample = self.store.get_sample(sample_id, conn)
            if sample.status != UNLABELED:
                raise ConcurrencyConflict(sample_id)
            self.store.transition(
                conn,
                sample,
                IN_PROGRESS,
                kind="Claim",
                actor=holder,
                inputs={"policy_version": project.policy_version},
            )

        context = self.injector.enrich(sample, timeout_s=settings.context_timeout_s)
        try:
            prediction = self.executor.predict(
                sample,
                context,
                timeout_s=settings.provider_timeout_s,
                retry_max=settings.retry_max,
                retry_backoff=settings.retry_backoff,
            )
        except ModelUnavailable as exc:
            # the sample stays InProgress; recover_stalled returns it to the pool
            with self.store.db.transaction() as conn:
                self.store.record_decision(
                    conn,
                    sample,
                    kind="ModelUnavailable",
                    actor="executor",
                    inputs={
                        "attempts": exc.attempts,
                        "context_snapshot_id": context.snapshot_id,
                        "policy_version": project.policy_version,
                    },
                )
            LOGGER.error("label model unavailable", extra={"sample_id": sample_id, "attempts": len(exc.attempts)})
            return OUTCOME_FAILED

        decision = self.router.route(project, prediction)
        inputs: Dict[str, Any] = {
            "label": prediction.label,
            "confidence": prediction.confidence,
            "provider": prediction.provider,
            "attempts": prediction.attempts,
            "context_snapshot_id": context.snapshot_id,
            "confidence_threshold": float(project.confidence_threshold),
            "policy_version": project.policy_version,
        }
        with self.store.db.transaction() as conn:
            if decision.decision == REJECT:
                inputs["schema"] = project.labels
                self.store.transition(
                    conn, sample, UNLABELED, kind="SchemaViolation", actor=prediction.provider, inputs=inputs
                )
                LOGGER.warning(
                    "prediction outside label schema",
                    extra={"sample_id": sample_id, "label": prediction.label, "provider": prediction.provider},
                )
                return OUTCOME_REJECTED
            if decision.decision == ACCEPT:
                self.store.add_annotation(
                    conn,
                    sample_id=sample_id,
                    label=prediction.label,
                    source=SOURCE_MODEL,
                    producer=prediction.provider,
                    confidence=prediction.confidence,
                    authoritative=True,
                )
                self.store.transition(conn, sample, AUTO_LABELED, kind="Accept", actor=prediction.provider, inputs=inputs)
            else:
                self.store.add_annotation(
                    conn,
                    sample_id=sample_id,
                    label=prediction.label,
                    source=SOURCE_MODEL,
                    producer=prediction.provider,
                    confidence=prediction.confidence,
                )
                self.store.open_review_task(conn, sample_id, decision.reason)
                inputs["reason"] = decision.reason
                self.store.transition(conn, sample, PENDING_REVIEW, kind="Review", actor=prediction.provider, inputs=inputs)
            self.quality.enforce(conn, project, sample)

        LOGGER.debug(
            "sample processed",
            extra={"sample_id": sample_id, "status": sample.status, "confidence": prediction.confidence},
        )
        return OUTCOME_AUTO_LABELED if sample.status == AUTO_LABELED else OUTCOME_PENDING_REVIEW


__all__ = [
    "OUTCOMES",
    "OUTCOME_AUTO_LABELED",
    "OUTCOME_FAILED",
    "OUTCOME_NOT_STARTED",
    "OUTCOME_PENDING_REVIEW",
    "OUTCOME_REJECTED",
    "OUTCOME_SKIPPED",
    "SamplePipeline",
]
