"""Dataclass style records representing the persistent schema.

Each model inherits from :class:`Record` which provides helpers for creating
tables and writing rows.  Status and decision vocabularies live here as plain
string constants so that they match the ``CHECK`` constraints one-to-one.
"""
from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .database import Record

# Sample statuses
UNLABELED = "Unlabeled"
IN_PROGRESS = "InProgress"
AUTO_LABELED = "AutoLabeled"
PENDING_REVIEW = "PendingReview"
REVIEWED = "Reviewed"
REJECTED = "Rejected"
SAMPLE_STATUSES = (UNLABELED, IN_PROGRESS, AUTO_LABELED, PENDING_REVIEW, REVIEWED, REJECTED)

# Annotation sources
SOURCE_MODEL = "Model"
SOURCE_HUMAN = "Human"

# Batch job states
JOB_QUEUED = "Queued"
JOB_RUNNING = "Running"
JOB_COMPLETED = "Completed"
JOB_PARTIALLY_FAILED = "PartiallyFailed"
JOB_CANCELLED = "Cancelled"
JOB_FAILED = "Failed"
JOB_STATES = (JOB_QUEUED, JOB_RUNNING, JOB_COMPLETED, JOB_PARTIALLY_FAILED, JOB_CANCELLED, JOB_FAILED)
JOB_TERMINAL_STATES = (JOB_COMPLETED, JOB_PARTIALLY_FAILED, JOB_CANCELLED, JOB_FAILED)

# Review task reasons
REASON_LOW_CONFIDENCE = "low_confidence"
REASON_DOUBLE_ANNOTATION = "double_annotation"
REASON_QA_OVERRIDE = "qa_override"


def _sql_list(values) -> str:
    return ", ".join(f"'{v}'" for v in values)


@dataclass
class Project(Record):
    project_id: str
    name: str
    task_type: str
    label_schema: str
    confidence_threshold: float
    require_double_annotation: int
    agreement_threshold: float
    policy_version: int
    created_at: str
    updated_at: str

    __tablename__ = "projects"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS projects (
            project_id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            task_type TEXT NOT NULL,
            label_schema TEXT NOT NULL,
            confidence_threshold REAL NOT NULL CHECK(confidence_threshold BETWEEN 0 AND 1),
            require_double_annotation INTEGER NOT NULL,
            agreement_threshold REAL NOT NULL CHECK(agreement_threshold BETWEEN 0 AND 1),
            policy_version INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );
        """
    )

    @property
    def labels(self) -> List[str]:
        return list(json.loads(self.label_schema))


@dataclass
class Sample(Record):
    sample_id: str
    project_id: str
    content_ref: str
    content: Optional[str]
    signature: Optional[str]
    status: str
    created_at: str
    updated_at: str

    __tablename__ = "samples"
    __schema__ = (
        f"""
        CREATE TABLE IF NOT EXISTS samples (
            sample_id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            content_ref TEXT NOT NULL,
            content TEXT NULL,
            signature TEXT NULL,
            status TEXT CHECK(status IN ({_sql_list(SAMPLE_STATUSES)})) NOT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            FOREIGN KEY(project_id) REFERENCES projects(project_id)
        );
        CREATE INDEX IF NOT EXISTS idx_samples_project_status ON samples(project_id, status);
        """
    )

    def signature_values(self) -> Optional[List[int]]:
        if not self.signature:
            return None
        return list(json.loads(self.signature))


@dataclass
class Annotation(Record):
    annotation_id: str
    sample_id: str
    label: str
    source: str
    confidence: Optional[float]
    producer: str
    created_at: str
    authoritative: int

    __tablename__ = "annotations"
    __schema__ = (
        f"""
        CREATE TABLE IF NOT EXISTS annotations (
            annotation_id TEXT PRIMARY KEY,
            sample_id TEXT NOT NULL,
            label TEXT NOT NULL,
            source TEXT CHECK(source IN ('{SOURCE_MODEL}','{SOURCE_HUMAN}')) NOT NULL,
            confidence REAL NULL CHECK(confidence IS NULL OR confidence BETWEEN 0 AND 1),
            producer TEXT NOT NULL,
            created_at TEXT NOT NULL,
            authoritative INTEGER NOT NULL DEFAULT 0,
            CHECK(source = '{SOURCE_MODEL}' OR confidence IS NULL),
            FOREIGN KEY(sample_id) REFERENCES samples(sample_id)
        );
        CREATE UNIQUE INDEX IF NOT EXISTS idx_annotations_one_authoritative
            ON annotations(sample_id) WHERE authoritative = 1;
        """
    )


@dataclass
class ReviewTask(Record):
    task_id: str
    sample_id: str
    reason: str
    assigned_reviewer: Optional[str]
    created_at: str
    resolved_at: Optional[str]
    outcome: Optional[str]

    __tablename__ = "review_tasks"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS review_tasks (
            task_id TEXT PRIMARY KEY,
            sample_id TEXT NOT NULL,
            reason TEXT NOT NULL,
            assigned_reviewer TEXT NULL,
            created_at TEXT NOT NULL,
            resolved_at TEXT NULL,
            outcome TEXT NULL,
            FOREIGN KEY(sample_id) REFERENCES samples(sample_id)
        );
        CREATE UNIQUE INDEX IF NOT EXISTS idx_review_tasks_one_open
            ON review_tasks(sample_id) WHERE resolved_at IS NULL;
        """
    )

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None


@dataclass
class QualityMetric(Record):
    metric_id: str
    project_id: str
    window_size: int
    agreement_score: Optional[float]
    consistency_flag_count: int
    sample_count: int
    computed_at: str

    __tablename__ = "quality_metrics"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS quality_metrics (
            metric_id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            window_size INTEGER NOT NULL,
            agreement_score REAL NULL,
            consistency_flag_count INTEGER NOT NULL,
            sample_count INTEGER NOT NULL,
            computed_at TEXT NOT NULL,
            FOREIGN KEY(project_id) REFERENCES projects(project_id)
        );
        CREATE TRIGGER IF NOT EXISTS quality_metrics_no_update BEFORE UPDATE ON quality_metrics
        BEGIN SELECT RAISE(ABORT, 'quality_metrics is append-only'); END;
        """
    )


@dataclass
class AuditEntry(Record):
    entry_id: Optional[int]
    sample_id: str
    project_id: str
    kind: str
    prev_status: Optional[str]
    status: str
    inputs_json: str
    actor: str
    ts: str

    __tablename__ = "audit_entries"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS audit_entries (
            entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
            sample_id TEXT NOT NULL,
            project_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            prev_status TEXT NULL,
            status TEXT NOT NULL,
            inputs_json TEXT NOT NULL,
            actor TEXT NOT NULL,
            ts TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_audit_sample ON audit_entries(sample_id, ts, entry_id);
        CREATE TRIGGER IF NOT EXISTS audit_entries_no_update BEFORE UPDATE ON audit_entries
        BEGIN SELECT RAISE(ABORT, 'audit_entries is append-only'); END;
        CREATE TRIGGER IF NOT EXISTS audit_entries_no_delete BEFORE DELETE ON audit_entries
        BEGIN SELECT RAISE(ABORT, 'audit_entries is append-only'); END;
        """
    )

    @property
    def inputs(self) -> Dict[str, Any]:
        return dict(json.loads(self.inputs_json or "{}"))

    def to_export(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "prev_status": self.prev_status,
            "status": self.status,
            "inputs": self.inputs,
            "actor": self.actor,
            "ts": self.ts,
        }


@dataclass
class ContextSnapshotRecord(Record):
    snapshot_id: str
    payload_json: str
    created_at: str

    __tablename__ = "context_snapshots"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS context_snapshots (
            snapshot_id TEXT PRIMARY KEY,
            payload_json TEXT NOT NULL,
            created_at TEXT NOT NULL
        );
        """
    )


@dataclass
class ConsistencyFlag(Record):
    flag_id: str
    sample_id: str
    project_id: str
    agreement_score: float
    threshold: float
    created_at: str

    __tablename__ = "consistency_flags"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS consistency_flags (
            flag_id TEXT PRIMARY KEY,
            sample_id TEXT NOT NULL,
            project_id TEXT NOT NULL,
            agreement_score REAL NOT NULL,
            threshold REAL NOT NULL,
            created_at TEXT NOT NULL
        );
        """
    )


@dataclass
class SampleLease(Record):
    sample_id: str
    holder: str
    acquired_at: str

    __tablename__ = "sample_leases"
    __schema__ = (
        """
        CREATE TABLE IF NOT EXISTS sample_leases (
            sample_id TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            acquired_at TEXT NOT NULL
        );
        """
    )


@dataclass
class BatchJob(Record):
    job_id: str
    project_id: str
    state: str
    config_json: str
    sample_ids_json: str
    outcomes_json: str
    error: Optional[str]
    created_at: str
    started_at: Optional[str]
    finished_at: Optional[str]

    __tablename__ = "batch_jobs"
    __schema__ = (
        f"""
        CREATE TABLE IF NOT EXISTS batch_jobs (
            job_id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL,
            state TEXT CHECK(state IN ({_sql_list(JOB_STATES)})) NOT NULL,
            config_json TEXT NOT NULL,
            sample_ids_json TEXT NOT NULL,
            outcomes_json TEXT NOT NULL,
            error TEXT NULL,
            created_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL
        );
        """
    )

    @property
    def sample_ids(self) -> List[str]:
        return list(json.loads(self.sample_ids_json))

    @property
    def outcomes(self) -> Dict[str, str]:
        return dict(json.loads(self.outcomes_json))


ALL_MODELS = (
    Project,
    Sample,
    Annotation,
    ReviewTask,
    QualityMetric,
    AuditEntry,
    ContextSnapshotRecord,
    ConsistencyFlag,
    SampleLease,
    BatchJob,
)
