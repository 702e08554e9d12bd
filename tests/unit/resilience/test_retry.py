import asyncio

import pytest

from shared.models.errors import CircuitOpenError, UpstreamError, UpstreamTimeoutError
from shared.resilience.retry import RetryOptions, compute_delay, default_retry_on, retry


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


def test_always_failing_call_is_attempted_max_attempts_times():
    sleep = SleepRecorder()
    calls = 0
    error = UpstreamError("boom", upstream_status=503)

    async def fn():
        nonlocal calls
        calls += 1
        raise error

    options = RetryOptions(max_attempts=4, base_delay_ms=100, max_delay_ms=1000, jitter=False)
    with pytest.raises(UpstreamError) as exc_info:
        asyncio.run(retry(fn, options, sleep=sleep))

    assert exc_info.value is error
    assert calls == 4
    assert sleep.delays == [0.1, 0.2, 0.4]


def test_consecutive_delays_at_most_double_and_capped():
    options = RetryOptions(base_delay_ms=100, max_delay_ms=500, jitter=True)
    for rng_value in (0.0, 0.5, 0.99):
        delays = [compute_delay(a, options, rng=lambda: rng_value) for a in range(1, 8)]
        for previous, current in zip(delays, delays[1:]):
            assert current <= 2 * previous
        assert all(d <= 500 for d in delays)


def test_custom_jitter_callable_is_used():
    options = RetryOptions(base_delay_ms=100, max_delay_ms=1000, jitter=lambda exp, rng: exp / 2)
    assert compute_delay(2, options) == 100


def test_client_errors_are_not_retried():
    calls = 0

    async def fn():
        nonlocal calls
        calls += 1
        raise UpstreamError("bad request", upstream_status=400)

    with pytest.raises(UpstreamError):
        asyncio.run(retry(fn, RetryOptions(max_attempts=5), sleep=SleepRecorder()))
    assert calls == 1


def test_open_circuit_is_not_retried():
    assert default_retry_on(CircuitOpenError()) is False
    assert default_retry_on(UpstreamError("x")) is True
    assert default_retry_on(UpstreamError("x", upstream_status=429)) is False


def test_success_after_transient_failure():
    sleep = SleepRecorder()
    attempts = iter([UpstreamError("flaky", upstream_status=502), "ok"])

    async def fn():
        outcome = next(attempts)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    assert asyncio.run(retry(fn, {"jitter": False}, sleep=sleep)) == "ok"
    assert len(sleep.delays) == 1


def test_slow_attempt_times_out():
    async def slow():
        await asyncio.sleep(5)

    options = RetryOptions(max_attempts=1, per_attempt_timeout_ms=10)
    with pytest.raises(UpstreamTimeoutError):
        asyncio.run(retry(slow, options))


def test_merged_ignores_unknown_keys():
    merged = RetryOptions(max_attempts=3).merged({"max_attempts": 1, "cache": False})
    assert merged.max_attempts == 1
