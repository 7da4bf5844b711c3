"""Context injection: enrich a sample with business-entity context."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from ..errors import ProviderError
from ..providers import ContextProvider
from ..utils.hashing import canonical_json, content_hash

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ContextSnapshot:
    """Entity context for a sample, addressed by the hash of its content."""

    snapshot_id: str
    entities: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ContextSnapshot":
        entities = {str(k): v for k, v in dict(payload).items()}
        return cls(snapshot_id=content_hash(entities), entities=entities)

    def to_json(self) -> str:
        return canonical_json(self.entities)


class _NoContext:
    snapshot_id: Optional[str] = None
    entities: Dict[str, Any] = {}

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "NoContext"


NoContext = _NoContext()


class ContextInjector:
    """Queries the context provider and stores each distinct snapshot once."""

    def __init__(self, provider: ContextProvider | None, store, caller, timeout_s: float = 5.0) -> None:
        self.provider = provider
        self.store = store
        self.caller = caller
        self.timeout_s = float(timeout_s)

    def enrich(self, sample, *, timeout_s: float | None = None):
        if self.provider is None:
            return NoContext
        name = getattr(self.provider, "name", "context")
        try:
            payload = self.caller.call(name, lambda: self.provider.query(sample), timeout_s or self.timeout_s)
        except ProviderError as exc:
            LOGGER.warning(
                "context provider failed; continuing without context",
                extra={"sample_id": sample.sample_id, "provider": name, "error": str(exc)},
            )
            return NoContext
        if not isinstance(payload, Mapping):
            LOGGER.warning(
                "context provider returned a non-mapping payload",
                extra={"sample_id": sample.sample_id, "provider": name},
            )
            return NoContext
        try:
            snapshot = ContextSnapshot.from_payload(payload)
        except (TypeError, ValueError) as exc:
            LOGGER.warning(
                "context payload is not serialisable",
                extra={"sample_id": sample.sample_id, "provider": name, "error": str(exc)},
            )
            return NoContext
        self.store.save_context_snapshot(snapshot.snapshot_id, snapshot.to_json())
        return snapshot


__all__ = ["ContextInjector", "ContextSnapshot", "NoContext"]
