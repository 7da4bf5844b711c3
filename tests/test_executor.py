from __future__ import annotations

import pytest

from conftest import make_sample
from smartlabel.errors import ModelUnavailable
from smartlabel.services.calls import ProviderCaller
from smartlabel.services.context import ContextSnapshot, NoContext
from smartlabel.services.executor import LabelModelExecutor
from smartlabel.testing import (
    BlockingLabelProvider,
    FailingLabelProvider,
    FlakyLabelProvider,
    ScriptedLabelProvider,
    SlowProvider,
)


@pytest.fixture
def caller():
    caller = ProviderCaller()
    yield caller
    caller.shutdown()


def test_retries_with_exponential_backoff(caller) -> None:
    sleeps: list[float] = []
    provider = FlakyLabelProvider(failures=2, default=("PERSON", 0.9))
    executor = LabelModelExecutor([provider], caller, timeout_s=1.0, retry_max=3, retry_backoff=0.5, sleep=sleeps.append)

    prediction = executor.predict(make_sample(), NoContext)

    assert prediction.label == "PERSON"
    assert prediction.confidence == 0.9
    assert prediction.provider == "flaky"
    assert prediction.attempts == 3
    assert sleeps == [0.5, 1.0]


def test_falls_back_to_next_provider(caller) -> None:
    primary = FailingLabelProvider(name="primary")
    secondary = ScriptedLabelProvider(default=("ORG", 0.7), name="secondary")
    executor = LabelModelExecutor([primary, secondary], caller, retry_max=1, retry_backoff=0.0)

    prediction = executor.predict(make_sample(), NoContext)

    assert primary.calls == 2
    assert prediction.provider == "secondary"
    assert prediction.label == "ORG"
    assert prediction.attempts == 3


def test_exhaustion_raises_model_unavailable(caller) -> None:
    executor = LabelModelExecutor(
        [FailingLabelProvider(name="a", exc=RuntimeError("boom")), FailingLabelProvider(name="b")],
        caller,
        retry_max=2,
        retry_backoff=0.0,
    )
    with pytest.raises(ModelUnavailable) as info:
        executor.predict(make_sample("s9"), NoContext)
    assert info.value.sample_id == "s9"
    assert len(info.value.attempts) == 6
    assert "RuntimeError: boom" in info.value.attempts[0]


@pytest.mark.parametrize("confidence", [1.5, -0.1, float("nan"), "high", None])
def test_invalid_confidence_counts_as_provider_error(caller, confidence) -> None:
    provider = ScriptedLabelProvider(default=("PERSON", confidence))
    executor = LabelModelExecutor([provider], caller, retry_max=1, retry_backoff=0.0)
    with pytest.raises(ModelUnavailable):
        executor.predict(make_sample(), NoContext)
    assert len(provider.calls) == 2


def test_malformed_reply_is_a_provider_error(caller) -> None:
    executor = LabelModelExecutor([ScriptedLabelProvider(default="PERSON")], caller, retry_max=0)
    with pytest.raises(ModelUnavailable) as info:
        executor.predict(make_sample(), NoContext)
    assert "expected (label, confidence)" in info.value.attempts[0]


def test_timeout_counts_as_failure(caller) -> None:
    slow = SlowProvider(delay_s=0.5)
    executor = LabelModelExecutor([slow], caller, timeout_s=0.05, retry_max=0)
    with pytest.raises(ModelUnavailable) as info:
        executor.predict(make_sample(), NoContext)
    assert "timed out" in info.value.attempts[0]


def test_context_entities_reach_the_provider(caller) -> None:
    provider = ScriptedLabelProvider(default=("PERSON", 0.9))
    executor = LabelModelExecutor([provider], caller)
    snapshot = ContextSnapshot.from_payload({"PERSON": ["Ada Lovelace"]})

    executor.predict(make_sample("s1"), snapshot)
    executor.predict(make_sample("s2"), NoContext)

    assert provider.contexts == [{"PERSON": ["Ada Lovelace"]}, None]


def test_hanging_primary_does_not_starve_the_fallback(caller) -> None:
    primary = BlockingLabelProvider(default=("PERSON", 0.9), name="primary", wait_s=5.0)
    fallback = ScriptedLabelProvider(default=("ORG", 0.8), name="fallback")
    executor = LabelModelExecutor([primary, fallback], caller, timeout_s=0.1, retry_max=1, retry_backoff=0.0)
    try:
        for sid in ("s1", "s2", "s3"):
            prediction = executor.predict(make_sample(sid), NoContext)
            assert prediction.provider == "fallback"
            assert prediction.label == "ORG"
    finally:
        primary.release.set()

    assert fallback.calls == ["s1", "s2", "s3"]
    assert caller.abandoned == 6
