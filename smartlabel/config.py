"""Configuration dataclasses for the orchestration engine."""

from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, List, Mapping, Optional


def _env_int(name: str, default: int) -> int:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    try:
        return float(val)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    val = os.getenv(name)
    if val is None or val == "":
        return default
    return val.strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class ProviderConfig:
    """Settings for an LLM-backed label provider."""

    name: str = "azure"
    backend: str = field(default_factory=lambda: os.getenv("SMARTLABEL_LLM_BACKEND", "azure"))
    model_name: str = field(default_factory=lambda: os.getenv("AZURE_OPENAI_DEPLOYMENT", "gpt-4o"))
    temperature: float = 0.0
    rpm_limit: Optional[int] = 30
    timeout: float = 60.0
    azure_api_key: Optional[str] = field(default_factory=lambda: os.getenv("AZURE_OPENAI_API_KEY"))
    azure_api_version: str = field(
        default_factory=lambda: os.getenv("AZURE_OPENAI_API_VERSION", "2024-06-01")
    )
    azure_endpoint: Optional[str] = field(default_factory=lambda: os.getenv("AZURE_OPENAI_ENDPOINT"))


@dataclass
class EngineConfig:
    # recognised product options
    default_confidence_threshold: float = field(
        default_factory=lambda: _env_float("SMARTLABEL_CONFIDENCE_THRESHOLD", 0.8)
    )
    enable_active_learning: bool = field(
        default_factory=lambda: _env_bool("SMARTLABEL_ACTIVE_LEARNING", True)
    )
    max_concurrent_jobs: int = field(default_factory=lambda: _env_int("SMARTLABEL_MAX_JOBS", 2))
    require_double_annotation: bool = field(
        default_factory=lambda: _env_bool("SMARTLABEL_DOUBLE_ANNOTATION", False)
    )
    inter_annotator_agreement_threshold: float = field(
        default_factory=lambda: _env_float("SMARTLABEL_AGREEMENT_THRESHOLD", 0.8)
    )
    # worker pool shared by every running job
    max_workers: int = field(default_factory=lambda: _env_int("SMARTLABEL_MAX_WORKERS", 4))
    # external calls
    provider_timeout_s: float = 30.0
    context_timeout_s: float = 5.0
    retry_max: int = 3
    retry_backoff: float = 0.5
    # active learning
    default_batch_size: int = 16
    default_uncertainty: float = 1.0
    similarity_cap: float = 0.9
    neighbor_similarity: float = 0.5
    signature_size: int = 64
    shingle_size: int = 3
    # quality reporting
    quality_window: int = 200
    snapshot_after_batch: bool = True
    # which annotations vote in agreement checks: "confident" or "all"
    qa_votes: str = "confident"
    providers: List[ProviderConfig] = field(default_factory=list)

    def validate(self) -> "EngineConfig":
        for name in (
            "default_confidence_threshold",
            "inter_annotator_agreement_threshold",
            "default_uncertainty",
            "similarity_cap",
            "neighbor_similarity",
        ):
            value = float(getattr(self, name))
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        for name in ("max_concurrent_jobs", "max_workers", "signature_size", "shingle_size", "quality_window"):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be > 0")
        if self.retry_max < 0:
            raise ValueError("retry_max must be >= 0")
        if self.provider_timeout_s <= 0 or self.context_timeout_s <= 0:
            raise ValueError("provider timeouts are mandatory and must be > 0")
        if self.qa_votes not in ("confident", "all"):
            raise ValueError(f"qa_votes must be 'confident' or 'all', got {self.qa_votes!r}")
        return self

    def snapshot(self) -> "ConfigSnapshot":
        return ConfigSnapshot(**{f.name: getattr(self, f.name) for f in fields(ConfigSnapshot)})

    @classmethod
    def from_file(cls, path: str | Path | None = None, overrides: Mapping[str, Any] | None = None) -> "EngineConfig":
        cfg = cls()
        if path:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
            _apply_overrides(cfg, data)
        if overrides:
            _apply_overrides(cfg, overrides)
        return cfg.validate()

    def to_dict(self) -> dict:
        data = asdict(self)
        for provider in data.get("providers", []):
            provider.pop("azure_api_key", None)
        return data


@dataclass(frozen=True)
class ConfigSnapshot:
    """Immutable copy of the settings a batch runs under."""

    enable_active_learning: bool
    require_double_annotation: bool
    inter_annotator_agreement_threshold: float
    provider_timeout_s: float
    context_timeout_s: float
    retry_max: int
    retry_backoff: float
    default_uncertainty: float
    similarity_cap: float
    neighbor_similarity: float
    quality_window: int
    snapshot_after_batch: bool

    def to_dict(self) -> dict:
        return asdict(self)

    def with_changes(self, **changes: Any) -> "ConfigSnapshot":
        return replace(self, **changes)


def _apply_overrides(target: object, overrides: Mapping[str, Any]) -> None:
    for key, value in overrides.items():
        if key == "providers" and isinstance(value, list):
            setattr(target, key, [ProviderConfig(**dict(v)) for v in value])
            continue
        if not hasattr(target, key):
            raise ValueError(f"Unknown configuration option: {key}")
        if isinstance(value, Mapping):
            current = getattr(target, key, None)
            if current is not None and not isinstance(current, (str, bytes, int, float, bool)):
                _apply_overrides(current, value)
            else:
                setattr(target, key, dict(value))
        else:
            setattr(target, key, value)


__all__ = ["ConfigSnapshot", "EngineConfig", "ProviderConfig"]
