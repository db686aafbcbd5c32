"""Tests for the rate limiter and the shared retry policy."""

import asyncio
from collections import Counter

import pytest

from braindump.completion.rate_limit import RateLimiter
from braindump.completion.retry import RetryPolicy
from braindump.errors import AuthFailureError, RateLimitedError, TransientServerError


def _limiter(clock, **kwargs):
    return RateLimiter(clock=clock, sleep=clock.sleep, **kwargs)


# --- Self-imposed window ------------------------------------------------------------

@pytest.mark.asyncio
async def test_window_overflow_pauses_for_cooldown(clock):
    limiter = _limiter(clock, requests_per_window=2, window_seconds=5, self_cooldown=3)
    for _ in range(3):
        await limiter.acquire()

    assert clock.sleeps == [3.0]
    state = limiter.state
    assert state.request_count_in_window == 1
    assert state.window_started_at == 1_003.0
    assert state.last_request_time == 1_003.0


@pytest.mark.asyncio
async def test_window_rolls_over(clock):
    limiter = _limiter(clock, requests_per_window=2, window_seconds=5)
    await limiter.acquire()
    await limiter.acquire()
    clock.now += 5
    await limiter.acquire()

    assert clock.sleeps == []
    assert limiter.state.request_count_in_window == 1


@pytest.mark.asyncio
async def test_concurrent_acquires_never_exceed_window(clock):
    limiter = _limiter(clock, requests_per_window=2, window_seconds=5, self_cooldown=5)
    granted = []

    async def caller():
        await limiter.acquire()
        granted.append(clock())

    await asyncio.gather(*(caller() for _ in range(6)))

    assert sorted(granted) == [1_000.0, 1_000.0, 1_005.0, 1_005.0, 1_010.0, 1_010.0]
    assert max(Counter(granted).values()) <= limiter.requests_per_window


# --- Cooldown flag --------------------------------------------------------------------

@pytest.mark.asyncio
async def test_backend_limit_fails_fast_until_elapsed(clock):
    limiter = _limiter(clock)
    await limiter.mark_backend_limited(10)

    with pytest.raises(RateLimitedError) as excinfo:
        await limiter.check()
    assert excinfo.value.self_imposed is False
    assert excinfo.value.retry_after == pytest.approx(10)
    assert limiter.remaining_cooldown() == pytest.approx(10)

    clock.now += 10
    await limiter.check()
    assert limiter.state.is_rate_limited is False
    assert limiter.remaining_cooldown() == 0.0


@pytest.mark.asyncio
async def test_consecutive_failures_above_threshold_start_cooldown(clock):
    limiter = _limiter(clock, error_threshold=3, error_cooldown=60)
    for _ in range(3):
        await limiter.record_failure()
    assert limiter.state.is_rate_limited is False

    await limiter.record_failure()
    state = limiter.state
    assert state.is_rate_limited is True
    assert state.rate_limited_until == 1_060.0
    assert state.consecutive_error_count == 0

    with pytest.raises(RateLimitedError) as excinfo:
        await limiter.check()
    assert excinfo.value.self_imposed is True


@pytest.mark.asyncio
async def test_success_resets_failure_count(clock):
    limiter = _limiter(clock, error_threshold=3)
    await limiter.record_failure()
    await limiter.record_failure()
    await limiter.record_success()
    assert limiter.state.consecutive_error_count == 0


def test_state_is_a_copy(clock):
    limiter = _limiter(clock)
    limiter.state.is_rate_limited = True
    assert limiter.state.is_rate_limited is False


# --- RetryPolicy ------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_retry_policy_retries_transient_errors(clock):
    outcomes = [TransientServerError("502"), TransientServerError("502"), "ok"]
    calls = []

    async def fn():
        calls.append(1)
        outcome = outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    policy = RetryPolicy(max_attempts=3, sleep=clock.sleep)
    assert await policy.run(fn) == "ok"
    assert len(calls) == 3
    assert clock.sleeps == [2.0, 4.0]


@pytest.mark.asyncio
async def test_retry_policy_surfaces_non_retryable_immediately(clock):
    calls = []

    async def fn():
        calls.append(1)
        raise AuthFailureError("bad key")

    with pytest.raises(AuthFailureError) as excinfo:
        await RetryPolicy(max_attempts=5, sleep=clock.sleep).run(fn)
    assert len(calls) == 1
    assert excinfo.value.attempts == 1
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_retry_policy_caps_retry_after_hint(clock):
    async def fn():
        raise RateLimitedError("429", retry_after=500)

    policy = RetryPolicy(max_attempts=2, max_retry_after_wait=30, sleep=clock.sleep)
    with pytest.raises(RateLimitedError):
        await policy.run(fn)
    assert clock.sleeps == [30]


@pytest.mark.asyncio
async def test_retry_policy_custom_classifier(clock):
    calls = []

    async def fn():
        calls.append(1)
        raise TransientServerError("502")

    policy = RetryPolicy(max_attempts=4, classifier=lambda exc: False, sleep=clock.sleep)
    with pytest.raises(TransientServerError):
        await policy.run(fn)
    assert len(calls) == 1


def test_retry_policy_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
