from __future__ import annotations

from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from smartlabel import Engine, EngineConfig
from smartlabel.shared.database import Database
from smartlabel.shared.models import Project, Sample
from smartlabel.store import SampleStore


def make_config(**overrides) -> EngineConfig:
    values = dict(
        default_confidence_threshold=0.8,
        enable_active_learning=True,
        max_concurrent_jobs=2,
        require_double_annotation=False,
        inter_annotator_agreement_threshold=0.8,
        max_workers=2,
        provider_timeout_s=5.0,
        context_timeout_s=1.0,
        retry_max=1,
        retry_backoff=0.0,
        default_batch_size=8,
        snapshot_after_batch=False,
    )
    values.update(overrides)
    return EngineConfig(**values).validate()


def make_sample(sample_id: str = "s1", content: str | None = "some text", status: str = "InProgress") -> Sample:
    return Sample(
        sample_id=sample_id,
        project_id="p1",
        content_ref=f"ref://{sample_id}",
        content=content,
        signature=None,
        status=status,
        created_at="",
        updated_at="",
    )


def make_project(
    task_type: str = "ner",
    labels=("ORG", "PERSON"),
    threshold: float = 0.8,
    double: bool = False,
    agreement: float = 0.8,
) -> Project:
    return Project(
        project_id="p1",
        name="demo",
        task_type=task_type,
        label_schema='["' + '","'.join(sorted(labels)) + '"]',
        confidence_threshold=threshold,
        require_double_annotation=int(double),
        agreement_threshold=agreement,
        policy_version=1,
        created_at="",
        updated_at="",
    )


@pytest.fixture
def store(tmp_path: Path) -> SampleStore:
    store = SampleStore(Database(tmp_path / "store.db"))
    store.initialize()
    return store


@pytest.fixture
def engine_factory(tmp_path: Path):
    engines: list[Engine] = []

    def _make(providers, *, context=None, db_name: str = "smartlabel.db", **overrides) -> Engine:
        engine = Engine(
            tmp_path / db_name,
            make_config(**overrides),
            label_providers=providers,
            context_provider=context,
            sleep=lambda _s: None,
        )
        engines.append(engine)
        return engine

    yield _make
    for engine in engines:
        engine.close()
