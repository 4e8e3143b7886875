"""
Tests for the retry controller: which failures retry, how long it waits, how it gives up.
"""
import unittest

import pytest

from storyboard_ai.services.image_generation import CancellationSignal, ClassifiedError, ErrorKind, with_retry
from storyboard_ai.services.image_generation.failure_types import classify_http_status
from storyboard_ai.services.image_generation.runner import MAX_RETRY_AFTER_SECONDS, backoff_delay


class Script:
    """attempt() double: raises the scripted errors in order, then returns 'ok'."""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, attempt_number: int):
        self.calls.append(attempt_number)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def rate_limited(retry_after=None):
    return classify_http_status(429, "slow down", retry_after=retry_after)


@pytest.mark.asyncio
async def test_auth_error_is_single_attempt(clock):
    attempt = Script(classify_http_status(401, "bad key"))
    with pytest.raises(ClassifiedError) as exc:
        await with_retry(attempt, max_attempts=3, sleep=clock.sleep)
    assert exc.value.kind is ErrorKind.AUTH_ERROR
    assert attempt.calls == [1]
    assert clock.sleeps == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [
        ClassifiedError(ErrorKind.MODERATION_REJECTED, "blocked"),
        ClassifiedError(ErrorKind.MALFORMED_RESPONSE, "html"),
        ClassifiedError(ErrorKind.TIMEOUT, "poll budget"),
        ClassifiedError(ErrorKind.INVALID_INPUT, "bad"),
        classify_http_status(400, "bad request"),
    ],
)
async def test_non_retryable_errors_propagate_unchanged(clock, error):
    attempt = Script(error)
    with pytest.raises(ClassifiedError) as exc:
        await with_retry(attempt, max_attempts=3, sleep=clock.sleep)
    assert exc.value is error
    assert attempt.calls == [1]


@pytest.mark.asyncio
async def test_sustained_rate_limit_exhausts_budget(clock):
    attempt = Script(rate_limited())
    with pytest.raises(ClassifiedError) as exc:
        await with_retry(attempt, max_attempts=3, backoff_seconds=1.0, sleep=clock.sleep)

    assert attempt.calls == [1, 2, 3]
    assert clock.sleeps == [1.0, 2.0]
    for k, delay in enumerate(clock.sleeps, start=2):
        assert delay >= 1.0 * (k - 1)
    assert exc.value.kind is ErrorKind.EXHAUSTED
    assert exc.value.cause is not None
    assert exc.value.cause.kind is ErrorKind.RATE_LIMITED
    assert exc.value.detail["attempts"] == 3


@pytest.mark.asyncio
async def test_recovers_after_transient_failures(clock):
    attempt = Script(
        ClassifiedError(ErrorKind.NETWORK_ERROR, "reset", retryable=True),
        classify_http_status(503, "overloaded"),
        "ok",
    )
    assert await with_retry(attempt, max_attempts=3, sleep=clock.sleep) == "ok"
    assert attempt.calls == [1, 2, 3]
    assert clock.sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_retry_after_header_extends_delay(clock):
    attempt = Script(rate_limited(retry_after="7"), "ok")
    assert await with_retry(attempt, max_attempts=3, sleep=clock.sleep) == "ok"
    assert clock.sleeps == [7.0]


@pytest.mark.asyncio
async def test_retry_after_ignored_when_disabled(clock):
    attempt = Script(rate_limited(retry_after="7"), "ok")
    await with_retry(attempt, max_attempts=3, respect_retry_after=False, sleep=clock.sleep)
    assert clock.sleeps == [1.0]


@pytest.mark.asyncio
async def test_single_attempt_budget(clock):
    attempt = Script(classify_http_status(500, "boom"))
    with pytest.raises(ClassifiedError) as exc:
        await with_retry(attempt, max_attempts=1, sleep=clock.sleep)
    assert exc.value.kind is ErrorKind.EXHAUSTED
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_cancelled_during_backoff(clock):
    signal = CancellationSignal()

    async def sleep_and_cancel(delay: float) -> None:
        await clock.sleep(delay)
        signal.cancel()

    attempt = Script(classify_http_status(503, "overloaded"), "ok")
    with pytest.raises(ClassifiedError) as exc:
        await with_retry(attempt, max_attempts=3, sleep=sleep_and_cancel, signal=signal)
    assert exc.value.kind is ErrorKind.CANCELLED
    assert attempt.calls == [1]


class TestBackoffDelay(unittest.TestCase):
    def test_linear(self):
        error = ClassifiedError(ErrorKind.NETWORK_ERROR, "x", retryable=True)
        self.assertEqual([backoff_delay(n, error, backoff_seconds=1.5) for n in (1, 2, 3)], [1.5, 3.0, 4.5])

    def test_retry_after_capped(self):
        self.assertEqual(backoff_delay(1, rate_limited(retry_after="3600")), MAX_RETRY_AFTER_SECONDS)

    def test_retry_after_smaller_than_backoff(self):
        self.assertEqual(backoff_delay(2, rate_limited(retry_after="1")), 2.0)

    def test_unparseable_retry_after(self):
        self.assertEqual(backoff_delay(1, rate_limited(retry_after="Wed, 21 Oct 2015 07:28:00 GMT")), 1.0)

    def test_retry_after_only_for_rate_limits(self):
        error = ClassifiedError(ErrorKind.PROVIDER_ERROR, "x", retryable=True, detail={"retry_after": "30"})
        self.assertEqual(backoff_delay(1, error), 1.0)
