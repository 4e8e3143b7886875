"""
Retry controller: centralized generate-with-retry, failure classification and observability.
Wraps one {build -> HTTP -> extract} attempt; never wraps the task poller's own loop.
Linear backoff (backoff_seconds * attempt), Retry-After honoured on 429.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, TypeVar

from storyboard_ai.services.image_generation.cancellation import CancellationSignal, Sleeper, pause
from storyboard_ai.services.image_generation.failure_types import ClassifiedError, ErrorKind
from storyboard_ai.utils.metrics import image_generation_attempts_total

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 1.0
MAX_RETRY_AFTER_SECONDS = 60.0

# Keys for structured logging
LOG_KEYS = (
    "provider",
    "attempt",
    "max_attempts",
    "success_after_retry",
    "failure_kind",
    "retryable",
)


def backoff_delay(
    attempt: int,
    error: ClassifiedError,
    *,
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    respect_retry_after: bool = True,
) -> float:
    """Delay before the attempt after `attempt`: backoff_seconds * attempt, or Retry-After if larger."""
    delay = backoff_seconds * attempt
    retry_after = error.detail.get("retry_after")
    if respect_retry_after and error.kind is ErrorKind.RATE_LIMITED and retry_after is not None:
        try:
            delay = max(delay, min(float(retry_after), MAX_RETRY_AFTER_SECONDS))
        except (TypeError, ValueError):
            pass
    return delay


async def with_retry(
    attempt: Callable[[int], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    respect_retry_after: bool = True,
    sleep: Sleeper = asyncio.sleep,
    signal: CancellationSignal | None = None,
    provider: str = "unknown",
) -> T:
    """
    Run attempt(n) for n = 1..max_attempts until it succeeds.

    Non-retryable errors (auth, moderation, malformed response, poll timeout, ...)
    propagate after the first failure. Retryable ones are retried; when the budget
    is spent the last error is wrapped as EXHAUSTED.
    """
    last_error: ClassifiedError | None = None

    for attempt_number in range(1, max_attempts + 1):
        if signal is not None:
            signal.raise_if_cancelled()
        try:
            result = await attempt(attempt_number)
        except ClassifiedError as e:
            last_error = e
            image_generation_attempts_total.labels(provider=provider, outcome=e.kind.value).inc()
            _log_structured(
                provider=provider,
                attempt=attempt_number,
                max_attempts=max_attempts,
                success_after_retry=False,
                failure_kind=e.kind.value,
                retryable=e.retryable,
            )
            if not e.retryable:
                raise
            if attempt_number >= max_attempts:
                break

            delay = backoff_delay(
                attempt_number,
                e,
                backoff_seconds=backoff_seconds,
                respect_retry_after=respect_retry_after,
            )
            logger.info(
                "image_generation_retry_scheduled",
                extra={
                    "provider": provider,
                    "attempt": attempt_number,
                    "max_attempts": max_attempts,
                    "delay_seconds": round(delay, 2),
                    "failure_kind": e.kind.value,
                },
            )
            await pause(delay, signal, sleep)
            continue

        image_generation_attempts_total.labels(provider=provider, outcome="success").inc()
        if attempt_number > 1:
            _log_structured(
                provider=provider,
                attempt=attempt_number,
                max_attempts=max_attempts,
                success_after_retry=True,
            )
        return result

    if last_error is None:
        raise RuntimeError("with_retry: no result and no error")
    raise ClassifiedError(
        ErrorKind.EXHAUSTED,
        f"Generation failed after {max_attempts} attempts: {last_error.message}",
        retryable=False,
        detail={**last_error.detail, "last_kind": last_error.kind.value, "attempts": max_attempts},
        cause=last_error,
    ) from last_error


def _log_structured(**kwargs: Any) -> None:
    """Emit one structured log line per attempt outcome."""
    extra = {k: v for k, v in kwargs.items() if k in LOG_KEYS and v is not None}
    logger.info("image_generation_result", extra=extra)
