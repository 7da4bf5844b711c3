"""Engine facade: wires the store, services, pipeline and scheduler together."""

from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from .config import EngineConfig
from .errors import EmptyPool, InvalidTransition, SchemaLocked, SchemaViolation
from .interchange import export_project, history_entries, is_exported, read_sample_records, review_reason
from .label_schema import label_in_schema, normalize_schema
from .ledger import AuditLedger
from .pipeline import SamplePipeline
from .providers import ContextProvider, LabelModelProvider, build_label_provider
from .scheduler import JobScheduler, JobStatus
from .services import (
    ActiveLearningSelector,
    ConfidenceRouter,
    ContextInjector,
    LabelModelExecutor,
    ProviderCaller,
    QAResult,
    QualityAssuranceEngine,
)
from .services.similarity import minhash_signature
from .shared.database import Database
from .shared.models import (
    AUTO_LABELED,
    AuditEntry,
    IN_PROGRESS,
    PENDING_REVIEW,
    Project,
    QualityMetric,
    REASON_QA_OVERRIDE,
    REJECTED,
    REVIEWED,
    ReviewTask,
    Sample,
    SOURCE_HUMAN,
    UNLABELED,
)
from .store import SampleStore
from .utils.hashing import canonical_json
from .utils.runtime import utc_now

LOGGER = logging.getLogger(__name__)

LabelProviderFactory = Callable[[Project], Sequence[LabelModelProvider]]


class Engine:
    """Entry point for every operation of the orchestration core.

    ``label_providers`` is either a fixed, ordered list of providers or a
    callable building one for a project.  When neither is given, the
    providers described by ``config.providers`` are constructed per project.
    """

    def __init__(
        self,
        db_path: str | Path,
        config: EngineConfig | None = None,
        *,
        label_providers: Sequence[LabelModelProvider] | LabelProviderFactory | None = None,
        context_provider: ContextProvider | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = (config or EngineConfig()).validate()
        self.db = Database(db_path)
        self.ledger = AuditLedger(self.db)
        self.store = SampleStore(self.db, self.ledger)
        self.store.initialize()

        self._label_providers = label_providers
        self._sleep = sleep
        self._executors: Dict[tuple, LabelModelExecutor] = {}
        self._executor_lock = threading.Lock()
        self._last_snapshot: Optional[QualityMetric] = None

        self.caller = ProviderCaller()
        self.injector = ContextInjector(
            context_provider, self.store, self.caller, timeout_s=self.config.context_timeout_s
        )
        self.router = ConfidenceRouter()
        self.quality = QualityAssuranceEngine(self.store, vote_policy=self.config.qa_votes)
        self.selector = ActiveLearningSelector(
            self.store,
            signature_size=self.config.signature_size,
            shingle_size=self.config.shingle_size,
            default_uncertainty=self.config.default_uncertainty,
            neighbor_similarity=self.config.neighbor_similarity,
            similarity_cap=self.config.similarity_cap,
            enabled=self.config.enable_active_learning,
        )
        self.scheduler = JobScheduler(
            self.store,
            max_concurrent_jobs=self.config.max_concurrent_jobs,
            max_workers=self.config.max_workers,
            after_job=self._after_job,
        )
        self.scheduler.fail_orphaned_jobs()
        self._initialized = True
        LOGGER.info("engine initialised", extra={"db": str(self.db.path)})

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------
    def close(self) -> None:
        self.scheduler.shutdown(wait=True)
        self.caller.shutdown()
        for executor in self._executors.values():
            for provider in executor.providers:
                provider.close()
        self._initialized = False

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    # ------------------------------------------------------------------
    # projects
    # ------------------------------------------------------------------
    def create_project(
        self,
        name: str,
        task_type: str,
        labels: Iterable[str],
        *,
        project_id: str | None = None,
        confidence_threshold: float | None = None,
        require_double_annotation: bool | None = None,
        agreement_threshold: float | None = None,
    ) -> Project:
        now = utc_now()
        project = Project(
            project_id=project_id or f"prj_{uuid.uuid4().hex[:12]}",
            name=name,
            task_type=str(task_type).lower(),
            label_schema=canonical_json(normalize_schema(labels)),
            confidence_threshold=_unit(
                "confidence_threshold",
                self.config.default_confidence_threshold if confidence_threshold is None else confidence_threshold,
            ),
            require_double_annotation=int(
                self.config.require_double_annotation
                if require_double_annotation is None
                else bool(require_double_annotation)
            ),
            agreement_threshold=_unit(
                "agreement_threshold",
                self.config.inter_annotator_agreement_threshold
                if agreement_threshold is None
                else agreement_threshold,
            ),
            policy_version=1,
            created_at=now,
            updated_at=now,
        )
        self.store.insert_project(project)
        LOGGER.info("project created", extra={"project_id": project.project_id, "task_type": project.task_type})
        return project

    def get_project(self, project_id: str) -> Project:
        return self.store.get_project(project_id)

    def list_projects(self) -> List[Project]:
        return self.store.list_projects()

    def update_policy(
        self,
        project_id: str,
        *,
        confidence_threshold: float | None = None,
        require_double_annotation: bool | None = None,
        agreement_threshold: float | None = None,
        labels: Iterable[str] | None = None,
    ) -> Project:
        """Change routing or QA policy and bump the policy version.

        Batches already scheduled keep the policy they were scheduled with.
        The label schema may only change while the project has no samples.
        """
        with self.db.transaction() as conn:
            project = self.store.get_project(project_id, conn)
            changes: Dict[str, Any] = {}
            if labels is not None:
                schema = canonical_json(normalize_schema(labels))
                if schema != project.label_schema:
                    if self.store.count_samples(project_id, conn):
                        raise SchemaLocked(f"project {project_id} already has samples")
                    changes["label_schema"] = schema
            if confidence_threshold is not None:
                changes["confidence_threshold"] = _unit("confidence_threshold", confidence_threshold)
            if require_double_annotation is not None:
                changes["require_double_annotation"] = int(bool(require_double_annotation))
            if agreement_threshold is not None:
                changes["agreement_threshold"] = _unit("agreement_threshold", agreement_threshold)
            if not changes:
                return project
            project = replace(project, **changes, policy_version=project.policy_version + 1, updated_at=utc_now())
            self.store.save_project(conn, project)
        LOGGER.info(
            "project policy updated",
            extra={"project_id": project_id, "policy_version": project.policy_version, "changes": sorted(changes)},
        )
        return project

    # ------------------------------------------------------------------
    # samples
    # ------------------------------------------------------------------
    def import_samples(self, project_id: str, records: Iterable[Mapping[str, Any]], *, actor: str = "import") -> int:
        """Add samples; ids already present are left untouched.

        Plain records become Unlabeled samples.  Records produced by
        :meth:`export` are restored with their status, authoritative label and
        audit history, so an export round-trips without loss.
        """
        project = self.store.get_project(project_id)
        now = utc_now()
        samples: List[Sample] = []
        restored = 0
        offered = 0
        for record in records:
            offered += 1
            content = record.get("content")
            text = content or record["content_ref"]
            signature = minhash_signature(
                text, num_perm=self.config.signature_size, shingle_size=self.config.shingle_size
            )
            sample = Sample(
                sample_id=str(record["sample_id"]),
                project_id=project_id,
                content_ref=str(record["content_ref"]),
                content=content,
                signature=canonical_json(signature),
                status=UNLABELED,
                created_at=now,
                updated_at=now,
            )
            if not is_exported(record):
                samples.append(sample)
                continue
            label = record.get("label")
            if label is not None and not label_in_schema(label, project.labels, project.task_type):
                raise SchemaViolation(label, project.labels)
            sample.status = record["status"]
            if self.store.restore_sample(
                sample,
                history_entries(project_id, record),
                label=label,
                source=record.get("label_source"),
                confidence=record.get("confidence"),
                review_reason=review_reason(record),
            ):
                restored += 1
        added = self.store.add_samples(samples, actor=actor) + restored
        LOGGER.info(
            "samples imported",
            extra={"project_id": project_id, "offered": offered, "added": added, "restored": restored},
        )
        return added

    def import_file(self, project_id: str, path: str | Path) -> int:
        return self.import_samples(project_id, read_sample_records(path), actor=f"import:{Path(path).name}")

    def get_sample(self, sample_id: str) -> Sample:
        return self.store.get_sample(sample_id)

    def list_samples(self, project_id: str, statuses: Iterable[str] | None = None) -> List[Sample]:
        return self.store.list_samples(project_id, statuses)

    # ------------------------------------------------------------------
    # batches
    # ------------------------------------------------------------------
    def _providers_for(self, project: Project) -> List[LabelModelProvider]:
        source = self._label_providers
        if source is None:
            if not self.config.providers:
                raise ValueError("no label providers configured")
            return [build_label_provider(cfg, project.labels, project.task_type) for cfg in self.config.providers]
        if callable(source):
            return list(source(project))
        return list(source)

    def _executor_for(self, project: Project) -> LabelModelExecutor:
        key = (project.project_id, project.label_schema)
        with self._executor_lock:
            executor = self._executors.get(key)
            if executor is None:
                executor = LabelModelExecutor(
                    self._providers_for(project),
                    self.caller,
                    timeout_s=self.config.provider_timeout_s,
                    retry_max=self.config.retry_max,
                    retry_backoff=self.config.retry_backoff,
                    sleep=self._sleep,
                )
                self._executors[key] = executor
        return executor

    def pipeline_for(self, project: Project) -> SamplePipeline:
        return SamplePipeline(self.store, self.injector, self._executor_for(project), self.router, self.quality)

    def select_batch(self, project_id: str, batch_size: int | None = None) -> List[str]:
        self.store.get_project(project_id)
        return self.selector.select_batch(project_id, batch_size or self.config.default_batch_size)

    def schedule_batch(
        self,
        project_id: str,
        batch_size: int | None = None,
        *,
        sample_ids: Sequence[str] | None = None,
        overrides: Mapping[str, Any] | None = None,
    ) -> str:
        """Select a batch and queue it; returns the job id.

        The project policy and the engine settings are frozen here, so later
        edits to either do not reach this batch.
        """
        project = self.store.get_project(project_id)
        settings = self.config.snapshot()
        if overrides:
            settings = settings.with_changes(**dict(overrides))
        if sample_ids is None:
            sample_ids = self.selector.select_batch(
                project_id,
                batch_size or self.config.default_batch_size,
                enabled=settings.enable_active_learning,
                similarity_cap=settings.similarity_cap,
            )
        elif not sample_ids:
            raise EmptyPool(f"no samples given for project {project_id}")
        return self.scheduler.submit(project, list(sample_ids), settings, self.pipeline_for(project))

    def label(self, project_id: str, batch_size: int | None = None, *, timeout: float | None = None) -> JobStatus:
        job_id = self.schedule_batch(project_id, batch_size)
        return self.scheduler.wait(job_id, timeout)

    def wait(self, job_id: str, timeout: float | None = None) -> JobStatus:
        return self.scheduler.wait(job_id, timeout)

    def cancel(self, job_id: str) -> bool:
        return self.scheduler.cancel(job_id)

    def get_job_status(self, job_id: str) -> JobStatus:
        return self.scheduler.get_job_status(job_id)

    def list_jobs(self, project_id: str | None = None) -> List[JobStatus]:
        return [self.scheduler.get_job_status(job.job_id) for job in self.store.list_jobs(project_id)]

    def _after_job(self, status: JobStatus, settings) -> None:
        if settings.snapshot_after_batch:
            self.quality_snapshot(status.project_id, settings.quality_window)

    # ------------------------------------------------------------------
    # human review
    # ------------------------------------------------------------------
    def review_queue(self, project_id: str) -> List[ReviewTask]:
        self.store.get_project(project_id)
        return self.store.list_review_tasks(project_id, open_only=True)

    def assign_review(self, task_id: str, reviewer: str) -> None:
        self.store.assign_review_task(task_id, reviewer)

    def resolve_review(
        self,
        task_id: str,
        reviewer: str,
        label: str | None = None,
        *,
        reject: bool = False,
    ) -> Sample:
        """Close a review task with a human label or a rejection.

        A human label is checked for agreement with the other votes first.
        If agreement is too low the sample stays PendingReview under a new
        ``qa_override`` task; a reviewer resolving that task has the final word.
        """
        if not reject and label is None:
            raise ValueError("a label is required unless the sample is rejected")
        with self.db.transaction() as conn:
            task = self.store.get_review_task(task_id, conn)
            if not task.is_open:
                raise InvalidTransition(f"review task {task_id} is already resolved")
            sample = self.store.get_sample(task.sample_id, conn)
            project = self.store.get_project(sample.project_id, conn)
            if sample.status != PENDING_REVIEW:
                raise InvalidTransition(f"sample {sample.sample_id} is {sample.status}, not {PENDING_REVIEW}")
            inputs: Dict[str, Any] = {
                "task_id": task.task_id,
                "reason": task.reason,
                "policy_version": project.policy_version,
            }

            if reject:
                self.store.resolve_review_task(conn, task, "rejected", reviewer)
                self.store.clear_authoritative(conn, sample.sample_id)
                self.store.transition(conn, sample, REJECTED, kind="ReviewRejected", actor=reviewer, inputs=inputs)
            else:
                label = str(label).strip()
                if not label_in_schema(label, project.labels, project.task_type):
                    raise SchemaViolation(label, project.labels)
                annotation = self.store.add_annotation(
                    conn, sample_id=sample.sample_id, label=label, source=SOURCE_HUMAN, producer=reviewer
                )
                self.store.resolve_review_task(conn, task, "labeled", reviewer)
                result, forced = self.quality.enforce(
                    conn, project, sample, allow_override=task.reason != REASON_QA_OVERRIDE
                )
                if not forced:
                    self.store.mark_authoritative(conn, annotation)
                    inputs.update({"label": label, "agreement_score": result.agreement_score})
                    self.store.transition(conn, sample, REVIEWED, kind="ReviewResolved", actor=reviewer, inputs=inputs)
        LOGGER.info(
            "review resolved",
            extra={"task_id": task_id, "sample_id": sample.sample_id, "status": sample.status, "reviewer": reviewer},
        )
        return sample

    def submit_annotation(self, sample_id: str, label: str, annotator: str) -> QAResult:
        """Add an independent human annotation to an already labeled sample.

        The annotation does not replace the authoritative label; it is a
        vote.  Disagreement below the agreement threshold forces a review.
        """
        with self.db.transaction() as conn:
            sample = self.store.get_sample(sample_id, conn)
            project = self.store.get_project(sample.project_id, conn)
            if sample.status not in (AUTO_LABELED, PENDING_REVIEW, REVIEWED):
                raise InvalidTransition(f"sample {sample_id} is {sample.status}; nothing to compare against")
            label = str(label).strip()
            if not label_in_schema(label, project.labels, project.task_type):
                raise SchemaViolation(label, project.labels)
            self.store.add_annotation(conn, sample_id=sample_id, label=label, source=SOURCE_HUMAN, producer=annotator)
            self.store.record_decision(
                conn,
                sample,
                kind="Annotation",
                actor=annotator,
                inputs={"label": label, "policy_version": project.policy_version},
            )
            result, _ = self.quality.enforce(conn, project, sample)
        return result

    # ------------------------------------------------------------------
    # provenance, quality, export
    # ------------------------------------------------------------------
    def history(self, sample_id: str) -> List[AuditEntry]:
        self.store.get_sample(sample_id)
        return self.ledger.history(sample_id)

    def export(self, project_id: str, path: str | Path) -> int:
        self.store.get_project(project_id)
        count = export_project(self.store, project_id, path)
        LOGGER.info("project exported", extra={"project_id": project_id, "samples": count, "path": str(path)})
        return count

    def quality_snapshot(self, project_id: str, window: int | None = None) -> QualityMetric:
        metric = self.quality.snapshot(project_id, window or self.config.quality_window)
        self._last_snapshot = metric
        return metric

    def quality_metrics(self, project_id: str) -> List[QualityMetric]:
        return self.store.quality_metrics(project_id)

    def verify_provenance(self, project_id: str) -> List[str]:
        """Sample ids whose current status disagrees with their last audit entry."""
        latest = self.ledger.last_entries_for_project(project_id)
        mismatched = []
        for sample in self.store.list_samples(project_id):
            entry = latest.get(sample.sample_id)
            if entry is None or entry.status != sample.status:
                mismatched.append(sample.sample_id)
        if mismatched:
            LOGGER.warning("provenance mismatch", extra={"project_id": project_id, "samples": mismatched})
        return mismatched

    def recover_stalled(self, project_id: str, *, actor: str = "recovery") -> List[str]:
        """Return InProgress samples that nobody holds a lease on to Unlabeled."""
        leased = self.store.leased_sample_ids()
        recovered: List[str] = []
        for candidate in self.store.in_progress_samples(project_id):
            if candidate.sample_id in leased:
                continue
            with self.db.transaction() as conn:
                sample = self.store.get_sample(candidate.sample_id, conn)
                if sample.status != IN_PROGRESS:
                    continue
                self.store.transition(conn, sample, UNLABELED, kind="Requeue", actor=actor, inputs={})
            recovered.append(sample.sample_id)
        if recovered:
            LOGGER.info("stalled samples requeued", extra={"project_id": project_id, "count": len(recovered)})
        return recovered

    def health(self) -> Dict[str, Any]:
        last = self._last_snapshot
        return {
            "initialized": self._initialized,
            "db": str(self.db.path),
            "active_jobs": len(self.scheduler.active_jobs()),
            "max_concurrent_jobs": self.config.max_concurrent_jobs,
            "max_workers": self.config.max_workers,
            "projects": len(self.store.list_projects()),
            "last_quality_snapshot": None
            if last is None
            else {
                "project_id": last.project_id,
                "agreement_score": last.agreement_score,
                "consistency_flag_count": last.consistency_flag_count,
                "computed_at": last.computed_at,
            },
        }


def _unit(name: str, value: float) -> float:
    value = float(value)
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be within [0, 1], got {value}")
    return value


__all__ = ["Engine"]
