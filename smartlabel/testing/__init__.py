"""Test utilities: deterministic providers that never touch the network."""

from .providers import (
    BlockingLabelProvider,
    FailingContextProvider,
    FailingLabelProvider,
    FlakyLabelProvider,
    ScriptedLabelProvider,
    SlowProvider,
    StaticContextProvider,
)

__all__ = [
    "BlockingLabelProvider",
    "FailingContextProvider",
    "FailingLabelProvider",
    "FlakyLabelProvider",
    "ScriptedLabelProvider",
    "SlowProvider",
    "StaticContextProvider",
]
