"""Label model execution with retries, exponential backoff and provider fallback."""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from ..errors import ModelUnavailable, ProviderError
from ..providers import LabelModelProvider

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Prediction:
    label: str
    confidence: float
    provider: str
    attempts: int = 1


def _checked_confidence(provider: str, value) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError) as exc:
        raise ProviderError(provider, f"confidence {value!r} is not numeric") from exc
    if math.isnan(confidence) or not 0.0 <= confidence <= 1.0:
        raise ProviderError(provider, f"confidence {confidence!r} outside [0, 1]")
    return confidence


def _unpack(provider: str, reply) -> tuple[str, float]:
    try:
        label, raw_conf = reply
    except (TypeError, ValueError) as exc:
        raise ProviderError(provider, f"expected (label, confidence), got {reply!r}") from exc
    if label is None or str(label).strip() == "":
        raise ProviderError(provider, "empty label")
    return str(label).strip(), _checked_confidence(provider, raw_conf)


class LabelModelExecutor:
    """Obtain a ``(label, confidence)`` prediction from the configured providers.

    Each provider gets ``1 + retry_max`` attempts.  Between attempts the
    executor sleeps ``retry_backoff * 2**attempt`` seconds.  Timeouts, provider
    errors and out-of-range confidences all count as failed attempts.  When the
    last provider is exhausted :class:`ModelUnavailable` is raised.
    """

    def __init__(
        self,
        providers: Sequence[LabelModelProvider],
        caller,
        *,
        timeout_s: float = 30.0,
        retry_max: int = 3,
        retry_backoff: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.providers: List[LabelModelProvider] = list(providers)
        self.caller = caller
        self.timeout_s = float(timeout_s)
        self.retry_max = int(retry_max)
        self.retry_backoff = float(retry_backoff)
        self._sleep = sleep

    def predict(
        self,
        sample,
        context,
        *,
        timeout_s: Optional[float] = None,
        retry_max: Optional[int] = None,
        retry_backoff: Optional[float] = None,
    ) -> Prediction:
        timeout_s = self.timeout_s if timeout_s is None else float(timeout_s)
        retry_max = self.retry_max if retry_max is None else int(retry_max)
        retry_backoff = self.retry_backoff if retry_backoff is None else float(retry_backoff)
        entities = getattr(context, "entities", None) or None
        failures: list[str] = []
        total_attempts = 0

        for provider in self.providers:
            name = getattr(provider, "name", type(provider).__name__)
            for attempt in range(retry_max + 1):
                total_attempts += 1
                try:
                    reply = self.caller.call(name, lambda p=provider: p.predict(sample, entities), timeout_s)
                    label, confidence = _unpack(name, reply)
                except ProviderError as exc:
                    failures.append(str(exc))
                    LOGGER.warning(
                        "label provider attempt failed",
                        extra={"sample_id": sample.sample_id, "provider": name, "attempt": attempt + 1, "error": str(exc)},
                    )
                    if attempt < retry_max:
                        delay = retry_backoff * (2 ** attempt)
                        if delay > 0:
                            self._sleep(delay)
                    continue
                return Prediction(label=label, confidence=confidence, provider=name, attempts=total_attempts)
            LOGGER.info(
                "label provider exhausted; falling back",
                extra={"sample_id": sample.sample_id, "provider": name},
            )

        raise ModelUnavailable(sample.sample_id, failures)


__all__ = ["LabelModelExecutor", "Prediction"]
