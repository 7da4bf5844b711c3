"""Bounded-time invocation of external provider calls."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, TypeVar

from ..errors import ProviderError, ProviderTimeout

LOGGER = logging.getLogger(__name__)

R = TypeVar("R")


class ProviderCaller:
    """Runs each provider call on its own daemon thread so a caller can stop waiting.

    The timeout covers the call itself and nothing else: there is no shared
    queue, so a provider that hangs cannot delay calls to other providers.  A
    call that overruns keeps its thread until the provider returns; the caller
    gets :class:`ProviderTimeout` immediately.  Any other exception escaping the
    provider is normalised to :class:`ProviderError`.
    """

    def __init__(self, thread_name_prefix: str = "smartlabel-provider") -> None:
        self.thread_name_prefix = thread_name_prefix
        self._lock = threading.Lock()
        self._abandoned = 0

    @property
    def abandoned(self) -> int:
        """Number of timed-out calls whose thread was left running."""
        with self._lock:
            return self._abandoned

    def call(self, provider_name: str, fn: Callable[[], R], timeout_s: float) -> R:
        outcome: Dict[str, Any] = {}
        finished = threading.Event()

        def _target() -> None:
            try:
                outcome["value"] = fn()
            except BaseException as exc:  # noqa: BLE001 - re-raised in the caller
                outcome["error"] = exc
            finally:
                finished.set()

        worker = threading.Thread(target=_target, name=f"{self.thread_name_prefix}-{provider_name}", daemon=True)
        worker.start()
        if not finished.wait(timeout_s):
            with self._lock:
                self._abandoned += 1
            LOGGER.warning("provider call timed out", extra={"provider": provider_name, "timeout_s": timeout_s})
            raise ProviderTimeout(provider_name, timeout_s)

        error = outcome.get("error")
        if error is None:
            return outcome["value"]
        if isinstance(error, ProviderError):
            raise error
        if not isinstance(error, Exception):
            raise error
        raise ProviderError(provider_name, f"{type(error).__name__}: {error}") from error

    def shutdown(self) -> None:
        abandoned = self.abandoned
        if abandoned:
            LOGGER.info("provider calls still running at shutdown", extra={"abandoned": abandoned})


__all__ = ["ProviderCaller"]
