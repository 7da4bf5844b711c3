"""Sample store: durable projects, samples, annotations, review tasks and leases.

Readers open their own connection.  Writers accept an open connection so that
several writes (audit entry, annotation, status change) commit together inside
one :meth:`Database.transaction`.
"""
from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Any, Iterable, List, Mapping, Optional, Sequence

from .errors import ConcurrencyConflict, InvalidTransition, ProjectNotFound, SampleNotFound
from .ledger import AuditLedger, make_entry
from .shared.database import Database, ensure_schema, fetch_all, fetch_one
from .shared.models import (
    ALL_MODELS,
    Annotation,
    AuditEntry,
    BatchJob,
    ConsistencyFlag,
    ContextSnapshotRecord,
    IN_PROGRESS,
    PENDING_REVIEW,
    Project,
    QualityMetric,
    REASON_LOW_CONFIDENCE,
    ReviewTask,
    Sample,
    SampleLease,
    SOURCE_HUMAN,
    SOURCE_MODEL,
)
from .utils.runtime import utc_now

LOGGER = logging.getLogger(__name__)


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


class SampleStore:
    def __init__(self, db: Database, ledger: AuditLedger | None = None) -> None:
        self.db = db
        self.ledger = ledger or AuditLedger(db)

    def initialize(self) -> None:
        conn = self.db.connect()
        try:
            ensure_schema(conn, ALL_MODELS)
            conn.commit()
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------
    def insert_project(self, project: Project) -> None:
        with self.db.transaction() as conn:
            existing = fetch_one(conn, "SELECT project_id FROM projects WHERE project_id=?", (project.project_id,))
            if existing is not None:
                raise InvalidTransition(f"project {project.project_id} already exists")
            project.insert(conn)

    def get_project(self, project_id: str, conn: sqlite3.Connection | None = None) -> Project:
        sql = "SELECT * FROM projects WHERE project_id=?"
        if conn is None:
            with self.db.reader() as own:
                row = fetch_one(own, sql, (project_id,))
        else:
            row = fetch_one(conn, sql, (project_id,))
        if row is None:
            raise ProjectNotFound(project_id)
        return Project.from_row(row)

    def list_projects(self) -> List[Project]:
        with self.db.reader() as conn:
            return [Project.from_row(r) for r in fetch_all(conn, "SELECT * FROM projects ORDER BY project_id")]

    def save_project(self, conn: sqlite3.Connection, project: Project) -> None:
        project.save(conn)

    def count_samples(self, project_id: str, conn: sqlite3.Connection | None = None) -> int:
        sql = "SELECT COUNT(*) AS n FROM samples WHERE project_id=?"
        if conn is None:
            with self.db.reader() as own:
                return int(fetch_one(own, sql, (project_id,))["n"])
        return int(fetch_one(conn, sql, (project_id,))["n"])

    # ------------------------------------------------------------------
    # Samples
    # ------------------------------------------------------------------
    def add_samples(self, samples: Sequence[Sample], *, actor: str) -> int:
        """Insert new Unlabeled samples, skipping ids that already exist."""
        added = 0
        with self.db.transaction() as conn:
            for sample in samples:
                exists = fetch_one(conn, "SELECT 1 FROM samples WHERE sample_id=?", (sample.sample_id,))
                if exists is not None:
                    continue
                self.ledger.append(
                    make_entry(
                        sample_id=sample.sample_id,
                        project_id=sample.project_id,
                        kind="Ingest",
                        prev_status=None,
                        status=sample.status,
                        inputs={"content_ref": sample.content_ref},
                        actor=actor,
                    ),
                    conn,
                )
                sample.insert(conn)
                added += 1
        return added

    def restore_sample(
        self,
        sample: Sample,
        history: Sequence[AuditEntry],
        *,
        label: str | None = None,
        source: str | None = None,
        confidence: float | None = None,
        review_reason: str | None = None,
    ) -> bool:
        """Insert an exported sample together with its audit history and label.

        Returns ``False`` without writing anything if the id already exists.
        A PendingReview sample gets a fresh open review task.
        """
        with self.db.transaction() as conn:
            if fetch_one(conn, "SELECT 1 FROM samples WHERE sample_id=?", (sample.sample_id,)) is not None:
                return False
            self.ledger.restore(history, conn)
            sample.insert(conn)
            if label is not None:
                self.add_annotation(
                    conn,
                    sample_id=sample.sample_id,
                    label=label,
                    source=source or SOURCE_MODEL,
                    producer="import",
                    confidence=confidence,
                    authoritative=True,
                )
            if sample.status == PENDING_REVIEW:
                self.open_review_task(conn, sample.sample_id, review_reason or REASON_LOW_CONFIDENCE)
        return True

    def get_sample(self, sample_id: str, conn: sqlite3.Connection | None = None) -> Sample:
        sql = "SELECT * FROM samples WHERE sample_id=?"
        if conn is None:
            with self.db.reader() as own:
                row = fetch_one(own, sql, (sample_id,))
        else:
            row = fetch_one(conn, sql, (sample_id,))
        if row is None:
            raise SampleNotFound(sample_id)
        return Sample.from_row(row)

    def list_samples(self, project_id: str, statuses: Iterable[str] | None = None) -> List[Sample]:
        params: list[Any] = [project_id]
        sql = "SELECT * FROM samples WHERE project_id=?"
        statuses = list(statuses or [])
        if statuses:
            sql += f" AND status IN ({','.join('?' for _ in statuses)})"
            params.extend(statuses)
        sql += " ORDER BY sample_id"
        with self.db.reader() as conn:
            return [Sample.from_row(r) for r in fetch_all(conn, sql, params)]

    def transition(
        self,
        conn: sqlite3.Connection,
        sample: Sample,
        status: str,
        *,
        kind: str,
        actor: str,
        inputs: Mapping[str, Any] | None = None,
    ) -> int:
        """Record the audit entry, then move ``sample`` to ``status``.

        Both writes share ``conn`` so they commit or roll back together.
        """
        entry_id = self.ledger.append(
            make_entry(
                sample_id=sample.sample_id,
                project_id=sample.project_id,
                kind=kind,
                prev_status=sample.status,
                status=status,
                inputs=inputs,
                actor=actor,
            ),
            conn,
        )
        now = utc_now()
        conn.execute("UPDATE samples SET status=?, updated_at=? WHERE sample_id=?", (status, now, sample.sample_id))
        sample.status = status
        sample.updated_at = now
        return entry_id

    def record_decision(
        self,
        conn: sqlite3.Connection,
        sample: Sample,
        *,
        kind: str,
        actor: str,
        inputs: Mapping[str, Any] | None = None,
    ) -> int:
        """Audit a decision that leaves the sample's status unchanged."""
        return self.ledger.append(
            make_entry(
                sample_id=sample.sample_id,
                project_id=sample.project_id,
                kind=kind,
                prev_status=sample.status,
                status=sample.status,
                inputs=inputs,
                actor=actor,
            ),
            conn,
        )

    # ------------------------------------------------------------------
    # Leases
    # ------------------------------------------------------------------
    def acquire_lease(self, sample_id: str, holder: str) -> SampleLease:
        lease = SampleLease(sample_id=sample_id, holder=holder, acquired_at=utc_now())
        try:
            with self.db.transaction() as conn:
                lease.insert(conn)
        except sqlite3.IntegrityError as exc:
            current = self.lease_holder(sample_id)
            raise ConcurrencyConflict(sample_id, current) from exc
        return lease

    def release_lease(self, sample_id: str, holder: str) -> None:
        with self.db.transaction() as conn:
            conn.execute("DELETE FROM sample_leases WHERE sample_id=? AND holder=?", (sample_id, holder))

    def release_leases_held_by(self, holder: str) -> List[str]:
        """Drop every lease ``holder`` still owns; returns the freed sample ids."""
        with self.db.transaction() as conn:
            rows = fetch_all(conn, "SELECT sample_id FROM sample_leases WHERE holder=? ORDER BY sample_id", (holder,))
            conn.execute("DELETE FROM sample_leases WHERE holder=?", (holder,))
        return [r["sample_id"] for r in rows]

    def lease_holder(self, sample_id: str) -> Optional[str]:
        with self.db.reader() as conn:
            row = fetch_one(conn, "SELECT holder FROM sample_leases WHERE sample_id=?", (sample_id,))
        return row["holder"] if row is not None else None

    def leased_sample_ids(self) -> set[str]:
        with self.db.reader() as conn:
            return {r["sample_id"] for r in fetch_all(conn, "SELECT sample_id FROM sample_leases")}

    # ------------------------------------------------------------------
    # Annotations
    # ------------------------------------------------------------------
    def add_annotation(
        self,
        conn: sqlite3.Connection,
        *,
        sample_id: str,
        label: str,
        source: str,
        producer: str,
        confidence: Optional[float] = None,
        authoritative: bool = False,
    ) -> Annotation:
        if source == SOURCE_HUMAN:
            confidence = None
        if authoritative:
            self.clear_authoritative(conn, sample_id)
        annotation = Annotation(
            annotation_id=_new_id("ann"),
            sample_id=sample_id,
            label=label,
            source=source,
            confidence=confidence,
            producer=producer,
            created_at=utc_now(),
            authoritative=1 if authoritative else 0,
        )
        annotation.insert(conn)
        return annotation

    def clear_authoritative(self, conn: sqlite3.Connection, sample_id: str) -> None:
        conn.execute("UPDATE annotations SET authoritative=0 WHERE sample_id=? AND authoritative=1", (sample_id,))

    def mark_authoritative(self, conn: sqlite3.Connection, annotation: Annotation) -> None:
        self.clear_authoritative(conn, annotation.sample_id)
        conn.execute("UPDATE annotations SET authoritative=1 WHERE annotation_id=?", (annotation.annotation_id,))
        annotation.authoritative = 1

    def annotations_for(self, sample_id: str, conn: sqlite3.Connection | None = None) -> List[Annotation]:
        sql = "SELECT * FROM annotations WHERE sample_id=? ORDER BY created_at, annotation_id"
        if conn is None:
            with self.db.reader() as own:
                return [Annotation.from_row(r) for r in fetch_all(own, sql, (sample_id,))]
        return [Annotation.from_row(r) for r in fetch_all(conn, sql, (sample_id,))]

    def authoritative_for(self, sample_id: str, conn: sqlite3.Connection | None = None) -> Optional[Annotation]:
        for annotation in self.annotations_for(sample_id, conn):
            if annotation.authoritative:
                return annotation
        return None

    def model_annotations(self, project_id: str) -> List[tuple[str, float, str]]:
        """(sample_id, confidence, created_at) for every model annotation in a project."""
        with self.db.reader() as conn:
            rows = fetch_all(
                conn,
                """
                SELECT a.sample_id, a.confidence, a.created_at
                FROM annotations a JOIN samples s ON s.sample_id = a.sample_id
                WHERE s.project_id=? AND a.source='Model' AND a.confidence IS NOT NULL
                ORDER BY a.created_at, a.annotation_id
                """,
                (project_id,),
            )
        return [(r["sample_id"], float(r["confidence"]), r["created_at"]) for r in rows]

    def project_annotations(self, project_id: str) -> List[sqlite3.Row]:
        with self.db.reader() as conn:
            return fetch_all(
                conn,
                """
                SELECT a.* FROM annotations a JOIN samples s ON s.sample_id = a.sample_id
                WHERE s.project_id=? ORDER BY a.created_at, a.annotation_id
                """,
                (project_id,),
            )

    # ------------------------------------------------------------------
    # Review tasks
    # ------------------------------------------------------------------
    def open_review_task(self, conn: sqlite3.Connection, sample_id: str, reason: str, reviewer: str | None = None) -> ReviewTask:
        task = ReviewTask(
            task_id=_new_id("rev"),
            sample_id=sample_id,
            reason=reason,
            assigned_reviewer=reviewer,
            created_at=utc_now(),
            resolved_at=None,
            outcome=None,
        )
        task.insert(conn)
        return task

    def get_review_task(self, task_id: str, conn: sqlite3.Connection | None = None) -> ReviewTask:
        sql = "SELECT * FROM review_tasks WHERE task_id=?"
        if conn is None:
            with self.db.reader() as own:
                row = fetch_one(own, sql, (task_id,))
        else:
            row = fetch_one(conn, sql, (task_id,))
        if row is None:
            raise InvalidTransition(f"unknown review task {task_id}")
        return ReviewTask.from_row(row)

    def open_task_for(self, sample_id: str, conn: sqlite3.Connection | None = None) -> Optional[ReviewTask]:
        sql = "SELECT * FROM review_tasks WHERE sample_id=? AND resolved_at IS NULL"
        if conn is None:
            with self.db.reader() as own:
                row = fetch_one(own, sql, (sample_id,))
        else:
            row = fetch_one(conn, sql, (sample_id,))
        return ReviewTask.from_row(row) if row is not None else None

    def resolve_review_task(self, conn: sqlite3.Connection, task: ReviewTask, outcome: str, reviewer: str) -> None:
        now = utc_now()
        cur = conn.execute(
            """
            UPDATE review_tasks SET resolved_at=?, outcome=?, assigned_reviewer=COALESCE(assigned_reviewer, ?)
            WHERE task_id=? AND resolved_at IS NULL
            """,
            (now, outcome, reviewer, task.task_id),
        )
        if cur.rowcount != 1:
            raise InvalidTransition(f"review task {task.task_id} is already resolved")
        task.resolved_at = now
        task.outcome = outcome

    def assign_review_task(self, task_id: str, reviewer: str) -> None:
        with self.db.transaction() as conn:
            cur = conn.execute(
                "UPDATE review_tasks SET assigned_reviewer=? WHERE task_id=? AND resolved_at IS NULL",
                (reviewer, task_id),
            )
            if cur.rowcount != 1:
                raise InvalidTransition(f"review task {task_id} is not open")

    def list_review_tasks(self, project_id: str, *, open_only: bool = True) -> List[ReviewTask]:
        sql = """
            SELECT t.* FROM review_tasks t JOIN samples s ON s.sample_id = t.sample_id
            WHERE s.project_id=?
        """
        if open_only:
            sql += " AND t.resolved_at IS NULL"
        sql += " ORDER BY t.created_at, t.task_id"
        with self.db.reader() as conn:
            return [ReviewTask.from_row(r) for r in fetch_all(conn, sql, (project_id,))]

    # ------------------------------------------------------------------
    # Context snapshots, QA flags, quality metrics
    # ------------------------------------------------------------------
    def save_context_snapshot(self, snapshot_id: str, payload_json: str) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO context_snapshots(snapshot_id, payload_json, created_at) VALUES (?,?,?)",
                (snapshot_id, payload_json, utc_now()),
            )

    def get_context_snapshot(self, snapshot_id: str) -> Optional[ContextSnapshotRecord]:
        with self.db.reader() as conn:
            row = fetch_one(conn, "SELECT * FROM context_snapshots WHERE snapshot_id=?", (snapshot_id,))
        return ContextSnapshotRecord.from_row(row) if row is not None else None

    def count_context_snapshots(self) -> int:
        with self.db.reader() as conn:
            return int(fetch_one(conn, "SELECT COUNT(*) AS n FROM context_snapshots")["n"])

    def add_consistency_flag(
        self, conn: sqlite3.Connection, sample: Sample, agreement_score: float, threshold: float
    ) -> ConsistencyFlag:
        flag = ConsistencyFlag(
            flag_id=_new_id("flag"),
            sample_id=sample.sample_id,
            project_id=sample.project_id,
            agreement_score=float(agreement_score),
            threshold=float(threshold),
            created_at=utc_now(),
        )
        flag.insert(conn)
        return flag

    def consistency_flags(self, project_id: str) -> List[ConsistencyFlag]:
        with self.db.reader() as conn:
            rows = fetch_all(
                conn, "SELECT * FROM consistency_flags WHERE project_id=? ORDER BY created_at, flag_id", (project_id,)
            )
        return [ConsistencyFlag.from_row(r) for r in rows]

    def append_quality_metric(self, metric: QualityMetric) -> None:
        with self.db.transaction() as conn:
            metric.insert(conn)

    def quality_metrics(self, project_id: str) -> List[QualityMetric]:
        with self.db.reader() as conn:
            rows = fetch_all(
                conn, "SELECT * FROM quality_metrics WHERE project_id=? ORDER BY computed_at, metric_id", (project_id,)
            )
        return [QualityMetric.from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Batch jobs
    # ------------------------------------------------------------------
    def save_job(self, job: BatchJob) -> None:
        with self.db.transaction() as conn:
            job.save(conn)

    def get_job(self, job_id: str) -> Optional[BatchJob]:
        with self.db.reader() as conn:
            row = fetch_one(conn, "SELECT * FROM batch_jobs WHERE job_id=?", (job_id,))
        return BatchJob.from_row(row) if row is not None else None

    def list_jobs(self, project_id: str | None = None, states: Iterable[str] | None = None) -> List[BatchJob]:
        sql = "SELECT * FROM batch_jobs WHERE 1=1"
        params: list[Any] = []
        if project_id is not None:
            sql += " AND project_id=?"
            params.append(project_id)
        states = list(states or [])
        if states:
            sql += f" AND state IN ({','.join('?' for _ in states)})"
            params.extend(states)
        sql += " ORDER BY created_at, job_id"
        with self.db.reader() as conn:
            return [BatchJob.from_row(r) for r in fetch_all(conn, sql, params)]

    def in_progress_samples(self, project_id: str) -> List[Sample]:
        return self.list_samples(project_id, [IN_PROGRESS])


__all__ = ["SampleStore"]
