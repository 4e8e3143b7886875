"""
Async task poller for providers that answer with a pending task id.
Fixed patience budget (interval x max_attempts); transient poll failures count as
still pending. Errors leaving the poller are never retryable: resubmitting would
start a new task.
"""
import asyncio
import logging
from typing import Callable

import httpx

from storyboard_ai.services.image_generation.base import (
    GenerationResult,
    ProviderConfig,
    TaskStatus,
    task_status,
)
from storyboard_ai.services.image_generation.cancellation import CancellationSignal, Sleeper, guarded, pause
from storyboard_ai.services.image_generation.extractors import find_image, resolve_image, task_result_image
from storyboard_ai.services.image_generation.failure_types import (
    ClassifiedError,
    ErrorKind,
    classify_task_failure,
)
from storyboard_ai.utils.metrics import image_generation_poll_attempts_total

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_POLL_ATTEMPTS = 30


async def poll(
    result_endpoint: str,
    task_id: str,
    config: ProviderConfig,
    *,
    client: httpx.AsyncClient,
    interval: float = DEFAULT_POLL_INTERVAL,
    max_attempts: int = DEFAULT_POLL_ATTEMPTS,
    sleep: Sleeper = asyncio.sleep,
    signal: CancellationSignal | None = None,
    on_attempt: Callable[[int, int], None] | None = None,
    download_timeout: float | None = None,
) -> GenerationResult:
    """
    Poll result_endpoint until the task reaches a terminal state.

    Raises:
        ClassifiedError(TIMEOUT): no terminal state after max_attempts polls.
        ClassifiedError: the task failed (see classify_task_failure), or CANCELLED.
    """
    try:
        return await _poll(
            result_endpoint, task_id, config,
            client=client, interval=interval, max_attempts=max_attempts, sleep=sleep,
            signal=signal, on_attempt=on_attempt, download_timeout=download_timeout,
        )
    except ClassifiedError as e:
        e.retryable = False
        e.detail.setdefault("task_id", task_id)
        raise


async def _poll(
    result_endpoint: str,
    task_id: str,
    config: ProviderConfig,
    *,
    client: httpx.AsyncClient,
    interval: float,
    max_attempts: int,
    sleep: Sleeper,
    signal: CancellationSignal | None,
    on_attempt: Callable[[int, int], None] | None,
    download_timeout: float | None,
) -> GenerationResult:
    headers = {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {config.api_key}",
    }
    for attempt in range(1, max_attempts + 1):
        await pause(interval, signal, sleep)
        if on_attempt is not None:
            on_attempt(attempt, max_attempts)

        try:
            response = await guarded(
                client.post(result_endpoint, headers=headers, json={"id": task_id}),
                signal,
            )
        except httpx.HTTPError as e:
            image_generation_poll_attempts_total.labels(outcome="transient_error").inc()
            logger.info(
                "image_generation_poll_transient",
                extra={"task_id": task_id, "poll_attempt": attempt, "error": type(e).__name__},
            )
            continue

        if not response.is_success:
            # A failed status is terminal even on an error response
            try:
                error_payload = response.json()
            except ValueError:
                error_payload = None
            if task_status(error_payload) is TaskStatus.FAILED:
                image_generation_poll_attempts_total.labels(outcome="failed").inc()
                raise classify_task_failure(error_payload)
            image_generation_poll_attempts_total.labels(outcome="transient_error").inc()
            logger.info(
                "image_generation_poll_transient",
                extra={"task_id": task_id, "poll_attempt": attempt, "status_code": response.status_code},
            )
            continue

        try:
            payload = response.json()
        except ValueError:
            image_generation_poll_attempts_total.labels(outcome="transient_error").inc()
            logger.info(
                "image_generation_poll_transient",
                extra={"task_id": task_id, "poll_attempt": attempt, "error": "invalid_json"},
            )
            continue
        if not isinstance(payload, dict):
            image_generation_poll_attempts_total.labels(outcome="transient_error").inc()
            continue

        status = task_status(payload)
        if status is TaskStatus.FAILED:
            image_generation_poll_attempts_total.labels(outcome="failed").inc()
            raise classify_task_failure(payload)

        if status is TaskStatus.SUCCEEDED:
            raw = task_result_image(payload)
            if raw is None:
                found = find_image(payload)
                raw = found[1] if found else None
            if raw:
                image_generation_poll_attempts_total.labels(outcome="succeeded").inc()
                image = await resolve_image(raw, client=client, signal=signal, timeout=download_timeout)
                logger.info("image_generation_poll_succeeded", extra={"task_id": task_id, "poll_attempt": attempt})
                return GenerationResult(image=image, model_name=config.model_name)
            # Some backends flip the status before the result is attached
            logger.warning(
                "image_generation_poll_completed_without_image",
                extra={"task_id": task_id, "poll_attempt": attempt},
            )

        image_generation_poll_attempts_total.labels(outcome="pending").inc()

    waited = max_attempts * interval
    raise ClassifiedError(
        ErrorKind.TIMEOUT,
        f"Task processing timed out (waited {waited:g}s)\n"
        f"Task ID: {task_id}\n\n"
        "Please query the task result manually later.",
        retryable=False,
        detail={"task_id": task_id, "poll_attempts": max_attempts},
    )
