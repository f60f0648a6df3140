import asyncio

import pytest

from fairplay.errors import RejectedError, RpcUnavailable
from fairplay.retry import RetryError, RetryPolicy, aretry_call


class Flaky:
    def __init__(self, failures, exc_factory=lambda: RpcUnavailable("node down")):
        self.failures = failures
        self.exc_factory = exc_factory
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc_factory()
        return value


async def _no_sleep(_seconds):
    return None


@pytest.mark.asyncio
async def test_transient_failures_are_retried_until_success():
    fn = Flaky(2)
    seen = []
    policy = RetryPolicy(attempts_cap=3, base_delay=0.5, jitter_fraction=0.0)
    out = await aretry_call(fn, "ok", policy=policy, sleep=_no_sleep, on_retry=lambda a, e, d: seen.append((a, d)))
    assert out == "ok"
    assert fn.calls == 3
    assert seen == [(1, 0.5), (2, 1.0)]


@pytest.mark.asyncio
async def test_exhaustion_wraps_last_error():
    fn = Flaky(10)
    with pytest.raises(RetryError) as ei:
        await aretry_call(fn, 1, policy=RetryPolicy(attempts_cap=2, base_delay=0.0), sleep=_no_sleep)
    assert fn.calls == 3
    assert ei.value.attempts == 3
    assert isinstance(ei.value.last_exception, RpcUnavailable)


@pytest.mark.asyncio
async def test_rejections_are_not_retried():
    fn = Flaky(5, exc_factory=lambda: RejectedError("no"))
    with pytest.raises(RejectedError):
        await aretry_call(fn, 1, policy=RetryPolicy(base_delay=0.0), sleep=_no_sleep)
    assert fn.calls == 1


def test_classification():
    p = RetryPolicy()
    assert p.classify(RpcUnavailable("x")) == "transient"
    assert p.classify(asyncio.TimeoutError()) == "transient"
    assert p.classify(ConnectionResetError()) == "transient"
    assert p.classify(RejectedError("x")) == "permanent"
    assert p.classify(KeyError("x")) == "permanent"


def test_backoff_is_exponential_and_capped():
    p = RetryPolicy(base_delay=1.0, multiplier=2.0, max_delay=5.0)
    assert [p.backoff_seconds(a) for a in (0, 1, 2, 3, 4)] == [1.0, 1.0, 2.0, 4.0, 5.0]


def test_jitter_bounds():
    p = RetryPolicy(jitter_fraction=0.2)
    for _ in range(50):
        assert 8.0 <= p.with_jitter(10.0) <= 12.0
    assert RetryPolicy(jitter_fraction=0.0).with_jitter(3.0) == 3.0
