"""Annotation orchestration core.

Expose the :class:`Engine` facade together with its configuration and error
types.  Everything else is reachable through the submodules.
"""

__version__ = "0.1.0"

from .config import ConfigSnapshot, EngineConfig, ProviderConfig
from .engine import Engine
from .errors import (
    ConcurrencyConflict,
    EmptyPool,
    InvalidTransition,
    JobNotFound,
    ModelUnavailable,
    ProjectNotFound,
    ProviderError,
    ProviderTimeout,
    SampleNotFound,
    SchemaLocked,
    SchemaViolation,
    SmartLabelError,
    StorageUnavailable,
)
from .providers import ContextProvider, LabelModelProvider
from .scheduler import JobStatus

# Layering overview:
# - shared.*: SQLite wrapper and record definitions
# - store / ledger: durable sample state and the append-only audit trail
# - services.*: context injection, model execution, selection, routing, QA
# - pipeline / scheduler: per-sample unit of work and the batch job runner
# - engine: the facade used by the CLI and by embedding applications

__all__ = [
    "__version__",
    "ConcurrencyConflict",
    "ConfigSnapshot",
    "ContextProvider",
    "EmptyPool",
    "Engine",
    "EngineConfig",
    "InvalidTransition",
    "JobNotFound",
    "JobStatus",
    "LabelModelProvider",
    "ModelUnavailable",
    "ProjectNotFound",
    "ProviderConfig",
    "ProviderError",
    "ProviderTimeout",
    "SampleNotFound",
    "SchemaLocked",
    "SchemaViolation",
    "SmartLabelError",
    "StorageUnavailable",
]
