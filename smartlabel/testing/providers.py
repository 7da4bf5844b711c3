"""Deterministic test doubles for the provider contracts.

These avoid external model calls in end-to-end engine tests.
"""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..errors import ProviderError
from ..providers import ContextProvider, LabelModelProvider


class ScriptedLabelProvider(LabelModelProvider):
    """Returns a fixed ``(label, confidence)`` per sample id.

    ``script`` maps sample ids to replies; ``default`` answers everything
    else.  A callable ``default`` receives the sample.
    """

    def __init__(
        self,
        script: Mapping[str, Tuple[str, Any]] | None = None,
        default: Tuple[str, Any] | Callable[[Any], Tuple[str, Any]] | None = None,
        name: str = "scripted",
    ) -> None:
        self.name = name
        self.script = dict(script or {})
        self.default = default
        self.calls: List[str] = []
        self.contexts: List[Optional[Mapping[str, Any]]] = []
        self._lock = threading.Lock()

    def predict(self, sample, context):
        with self._lock:
            self.calls.append(sample.sample_id)
            self.contexts.append(context)
        if sample.sample_id in self.script:
            return self.script[sample.sample_id]
        if callable(self.default):
            return self.default(sample)
        if self.default is None:
            raise ProviderError(self.name, f"no scripted reply for {sample.sample_id}")
        return self.default


class FlakyLabelProvider(ScriptedLabelProvider):
    """Fails the first ``failures`` calls, then answers like its parent."""

    def __init__(self, failures: int, default: Tuple[str, Any], name: str = "flaky") -> None:
        super().__init__(default=default, name=name)
        self.failures = int(failures)

    def predict(self, sample, context):
        with self._lock:
            attempt = len(self.calls)
        if attempt < self.failures:
            with self._lock:
                self.calls.append(sample.sample_id)
            raise ProviderError(self.name, f"transient failure {attempt + 1}")
        return super().predict(sample, context)


class FailingLabelProvider(LabelModelProvider):
    def __init__(self, name: str = "failing", exc: Exception | None = None) -> None:
        self.name = name
        self.exc = exc
        self.calls = 0

    def predict(self, sample, context):
        self.calls += 1
        if self.exc is not None:
            raise self.exc
        raise ProviderError(self.name, "provider is down")


class SlowProvider(LabelModelProvider):
    """Sleeps ``delay_s`` before answering; used to trip timeouts."""

    def __init__(self, delay_s: float, reply: Tuple[str, Any] = ("A", 0.99), name: str = "slow") -> None:
        self.name = name
        self.delay_s = float(delay_s)
        self.reply = reply
        self.calls = 0

    def predict(self, sample, context):
        self.calls += 1
        time.sleep(self.delay_s)
        return self.reply


class BlockingLabelProvider(ScriptedLabelProvider):
    """Blocks every call until :attr:`release` is set.

    :attr:`started` is set when the first call arrives, which lets a test
    act while a sample is in flight.
    """

    def __init__(self, default: Tuple[str, Any], name: str = "blocking", wait_s: float = 10.0) -> None:
        super().__init__(default=default, name=name)
        self.started = threading.Event()
        self.release = threading.Event()
        self.wait_s = float(wait_s)

    def predict(self, sample, context):
        self.started.set()
        self.release.wait(self.wait_s)
        return super().predict(sample, context)


class StaticContextProvider(ContextProvider):
    def __init__(self, entities: Mapping[str, Any] | None = None, per_sample: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self.name = "static-context"
        self.entities = dict(entities or {})
        self.per_sample = {k: dict(v) for k, v in (per_sample or {}).items()}
        self.calls: List[str] = []

    def query(self, sample) -> Dict[str, Any]:
        self.calls.append(sample.sample_id)
        return dict(self.per_sample.get(sample.sample_id, self.entities))


class FailingContextProvider(ContextProvider):
    def __init__(self, exc: Exception | None = None, delay_s: float = 0.0) -> None:
        self.name = "failing-context"
        self.exc = exc or RuntimeError("knowledge graph offline")
        self.delay_s = float(delay_s)

    def query(self, sample):
        if self.delay_s:
            time.sleep(self.delay_s)
        raise self.exc


__all__ = [
    "BlockingLabelProvider",
    "FailingContextProvider",
    "FailingLabelProvider",
    "FlakyLabelProvider",
    "ScriptedLabelProvider",
    "SlowProvider",
    "StaticContextProvider",
]
