"""Exception taxonomy for the orchestration core."""
from __future__ import annotations


class SmartLabelError(Exception):
    """Base class for every error raised by smartlabel."""


class ProviderError(SmartLabelError):
    """An external provider returned an error or an unusable payload."""

    def __init__(self, provider: str, message: str) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider


class ProviderTimeout(ProviderError):
    """An external provider did not answer within the configured timeout."""

    def __init__(self, provider: str, timeout_s: float) -> None:
        super().__init__(provider, f"timed out after {timeout_s:.2f}s")
        self.timeout_s = timeout_s


class ModelUnavailable(SmartLabelError):
    """Every label provider exhausted its retries for a sample."""

    def __init__(self, sample_id: str, attempts: list[str] | None = None) -> None:
        detail = "; ".join(attempts or [])
        super().__init__(f"no label provider available for sample {sample_id}" + (f" ({detail})" if detail else ""))
        self.sample_id = sample_id
        self.attempts = list(attempts or [])


class SchemaViolation(SmartLabelError):
    """A label value is not part of the project's label schema."""

    def __init__(self, label: str | None, schema: list[str]) -> None:
        super().__init__(f"label {label!r} not in schema {sorted(schema)}")
        self.label = label
        self.schema = sorted(schema)


class EmptyPool(SmartLabelError):
    """No unlabeled samples are available for selection."""


class ConcurrencyConflict(SmartLabelError):
    """The sample is already held by another pipeline."""

    def __init__(self, sample_id: str, holder: str | None = None) -> None:
        msg = f"sample {sample_id} is already being processed"
        if holder:
            msg += f" by {holder}"
        super().__init__(msg)
        self.sample_id = sample_id
        self.holder = holder


class StorageUnavailable(SmartLabelError):
    """The persistent store could not complete an operation."""


class ProjectNotFound(SmartLabelError):
    pass


class SampleNotFound(SmartLabelError):
    pass


class JobNotFound(SmartLabelError):
    pass


class InvalidTransition(SmartLabelError):
    """A requested state change is not allowed from the current state."""


class SchemaLocked(SmartLabelError):
    """The label schema cannot change once samples exist."""


__all__ = [
    "ConcurrencyConflict",
    "EmptyPool",
    "InvalidTransition",
    "JobNotFound",
    "ModelUnavailable",
    "ProjectNotFound",
    "ProviderError",
    "ProviderTimeout",
    "SampleNotFound",
    "SchemaLocked",
    "SchemaViolation",
    "SmartLabelError",
    "StorageUnavailable",
]
