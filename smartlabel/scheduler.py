"""Batch job scheduling on a bounded, shared worker pool."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .config import ConfigSnapshot
from .errors import JobNotFound, StorageUnavailable
from .pipeline import OUTCOME_FAILED, OUTCOME_NOT_STARTED
from .shared.models import (
    BatchJob,
    JOB_CANCELLED,
    JOB_COMPLETED,
    JOB_FAILED,
    JOB_PARTIALLY_FAILED,
    JOB_QUEUED,
    JOB_RUNNING,
    JOB_TERMINAL_STATES,
    Project,
)
from .utils.hashing import canonical_json
from .utils.runtime import utc_now

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobStatus:
    job_id: str
    project_id: str
    state: str
    sample_ids: List[str]
    outcomes: Dict[str, str]
    error: Optional[str] = None
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.state in JOB_TERMINAL_STATES

    @property
    def counts(self) -> Dict[str, int]:
        return dict(sorted(Counter(self.outcomes.values()).items()))

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "project_id": self.project_id,
            "state": self.state,
            "total": len(self.sample_ids),
            "counts": self.counts,
            "error": self.error,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_record(cls, job: BatchJob) -> "JobStatus":
        return cls(
            job_id=job.job_id,
            project_id=job.project_id,
            state=job.state,
            sample_ids=job.sample_ids,
            outcomes=job.outcomes,
            error=job.error,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )


@dataclass
class _JobHandle:
    record: BatchJob
    project: Project
    settings: ConfigSnapshot
    pipeline: object
    outcomes: Dict[str, str] = field(default_factory=dict)
    cancel_requested: threading.Event = field(default_factory=threading.Event)
    abort: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    lock: threading.Lock = field(default_factory=threading.Lock)
    future: Optional[Future] = None

    def status(self) -> JobStatus:
        with self.lock:
            return JobStatus(
                job_id=self.record.job_id,
                project_id=self.record.project_id,
                state=self.record.state,
                sample_ids=list(self.record.sample_ids),
                outcomes=dict(self.outcomes),
                error=self.record.error,
                created_at=self.record.created_at,
                started_at=self.record.started_at,
                finished_at=self.record.finished_at,
            )

    def stop_requested(self) -> bool:
        return self.cancel_requested.is_set() or self.abort.is_set()


def final_state(outcomes: Dict[str, str], *, cancelled: bool, storage_error: bool) -> str:
    if storage_error:
        return JOB_FAILED
    if cancelled:
        return JOB_CANCELLED
    if any(outcome == OUTCOME_FAILED for outcome in outcomes.values()):
        return JOB_PARTIALLY_FAILED
    return JOB_COMPLETED


class JobScheduler:
    """Runs batch jobs.

    At most ``max_concurrent_jobs`` jobs run at once.  Their samples share one
    pool of ``max_workers`` threads, so a large job cannot starve the process
    of threads.  Cancelling a job stops samples that have not started; samples
    already in flight finish and keep their outcome.
    """

    def __init__(
        self,
        store,
        *,
        max_concurrent_jobs: int = 2,
        max_workers: int = 4,
        after_job: Optional[Callable[[JobStatus, ConfigSnapshot], None]] = None,
    ) -> None:
        self.store = store
        self.after_job = after_job
        self._job_pool = ThreadPoolExecutor(max_workers=int(max_concurrent_jobs), thread_name_prefix="smartlabel-job")
        self._sample_pool = ThreadPoolExecutor(max_workers=int(max_workers), thread_name_prefix="smartlabel-worker")
        self._handles: Dict[str, _JobHandle] = {}
        self._lock = threading.Lock()

    def submit(self, project: Project, sample_ids: List[str], settings: ConfigSnapshot, pipeline) -> str:
        job_id = f"job_{uuid.uuid4().hex}"
        record = BatchJob(
            job_id=job_id,
            project_id=project.project_id,
            state=JOB_QUEUED,
            config_json=canonical_json(
                {"settings": settings.to_dict(), "policy_version": project.policy_version}
            ),
            sample_ids_json=canonical_json(list(sample_ids)),
            outcomes_json=canonical_json({}),
            error=None,
            created_at=utc_now(),
            started_at=None,
            finished_at=None,
        )
        self.store.save_job(record)
        handle = _JobHandle(record=record, project=project, settings=settings, pipeline=pipeline)
        with self._lock:
            self._handles[job_id] = handle
        LOGGER.info(
            "job queued",
            extra={"job_id": job_id, "project_id": project.project_id, "samples": len(sample_ids)},
        )
        handle.future = self._job_pool.submit(self._run_job, handle)
        return job_id

    def _handle(self, job_id: str) -> Optional[_JobHandle]:
        with self._lock:
            return self._handles.get(job_id)

    def get_job_status(self, job_id: str) -> JobStatus:
        handle = self._handle(job_id)
        if handle is not None:
            return handle.status()
        record = self.store.get_job(job_id)
        if record is None:
            raise JobNotFound(job_id)
        return JobStatus.from_record(record)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> JobStatus:
        handle = self._handle(job_id)
        if handle is not None:
            handle.done.wait(timeout)
        return self.get_job_status(job_id)

    def cancel(self, job_id: str) -> bool:
        """Request cancellation; returns ``False`` if the job already finished."""
        handle = self._handle(job_id)
        if handle is None:
            if self.store.get_job(job_id) is None:
                raise JobNotFound(job_id)
            return False
        if handle.done.is_set():
            return False
        handle.cancel_requested.set()
        LOGGER.info("job cancellation requested", extra={"job_id": job_id})
        return True

    def active_jobs(self) -> List[str]:
        with self._lock:
            return [job_id for job_id, h in self._handles.items() if not h.done.is_set()]

    def fail_orphaned_jobs(self) -> List[str]:
        """Mark persisted Queued/Running jobs that no live handle owns as Failed.

        Leases such a job still holds are dropped, so its samples can be
        requeued by ``recover_stalled``.
        """
        orphaned: List[str] = []
        live = set(self.active_jobs())
        for job in self.store.list_jobs(states=[JOB_QUEUED, JOB_RUNNING]):
            if job.job_id in live:
                continue
            job.state = JOB_FAILED
            job.error = "interrupted before completion"
            job.finished_at = utc_now()
            self.store.save_job(job)
            freed = self.store.release_leases_held_by(job.job_id)
            orphaned.append(job.job_id)
            LOGGER.warning("orphaned job marked failed", extra={"job_id": job.job_id, "released_leases": freed})
        return orphaned

    def shutdown(self, wait: bool = True) -> None:
        for job_id in self.active_jobs():
            handle = self._handle(job_id)
            if handle is not None:
                handle.cancel_requested.set()
        self._job_pool.shutdown(wait=wait)
        self._sample_pool.shutdown(wait=wait)

    # ------------------------------------------------------------------
    def _persist(self, handle: _JobHandle) -> None:
        with handle.lock:
            handle.record.outcomes_json = canonical_json(handle.outcomes)
            record = BatchJob(**handle.record.to_row())
        self.store.save_job(record)

    def _set_state(self, handle: _JobHandle, state: str, **changes) -> None:
        with handle.lock:
            handle.record.state = state
            for key, value in changes.items():
                setattr(handle.record, key, value)
        LOGGER.info("job state changed", extra={"job_id": handle.record.job_id, "state": state})

    def _run_sample(self, handle: _JobHandle, sample_id: str) -> str:
        if handle.stop_requested():
            return OUTCOME_NOT_STARTED
        return handle.pipeline.run(sample_id, handle.project, handle.settings, holder=handle.record.job_id)

    def _run_job(self, handle: _JobHandle) -> None:
        job_id = handle.record.job_id
        storage_error: Optional[BaseException] = None
        try:
            if handle.cancel_requested.is_set():
                with handle.lock:
                    handle.outcomes.update({sid: OUTCOME_NOT_STARTED for sid in handle.record.sample_ids})
            else:
                self._set_state(handle, JOB_RUNNING, started_at=utc_now())
                self._persist(handle)
                futures = {
                    self._sample_pool.submit(self._run_sample, handle, sid): sid for sid in handle.record.sample_ids
                }
                for future in as_completed(futures):
                    sample_id = futures[future]
                    try:
                        outcome = future.result()
                    except StorageUnavailable as exc:
                        outcome = OUTCOME_FAILED
                        if storage_error is None:
                            storage_error = exc
                        handle.abort.set()
                        LOGGER.error(
                            "storage unavailable; aborting job",
                            extra={"job_id": job_id, "sample_id": sample_id, "error": str(exc)},
                        )
                    except Exception as exc:  # noqa: BLE001
                        outcome = OUTCOME_FAILED
                        LOGGER.exception(
                            "sample failed unexpectedly",
                            extra={"job_id": job_id, "sample_id": sample_id, "error": str(exc)},
                        )
                    with handle.lock:
                        handle.outcomes[sample_id] = outcome
        except StorageUnavailable as exc:
            storage_error = exc
        finally:
            with handle.lock:
                for sid in handle.record.sample_ids:
                    handle.outcomes.setdefault(sid, OUTCOME_NOT_STARTED)
                outcomes = dict(handle.outcomes)
            state = final_state(
                outcomes,
                cancelled=handle.cancel_requested.is_set(),
                storage_error=storage_error is not None,
            )
            self._set_state(
                handle,
                state,
                finished_at=utc_now(),
                error=str(storage_error) if storage_error is not None else None,
            )
            self._finish(handle)

    def _finish(self, handle: _JobHandle) -> None:
        job_id = handle.record.job_id
        try:
            try:
                self._persist(handle)
            except StorageUnavailable as exc:
                LOGGER.error("could not persist job outcome", extra={"job_id": job_id, "error": str(exc)})
            status = handle.status()
            if self.after_job is not None and status.state != JOB_FAILED:
                try:
                    self.after_job(status, handle.settings)
                except StorageUnavailable as exc:
                    LOGGER.error("post-job hook failed", extra={"job_id": job_id, "error": str(exc)})
            LOGGER.info("job finished", extra={"job_id": job_id, "state": status.state, "counts": status.counts})
        finally:
            handle.done.set()


__all__ = ["JobScheduler", "JobStatus", "final_state"]
