"""
Response extractor: turn one provider HTTP response (JSON, SSE, HTML or error)
into a GenerationResult or a ClassifiedError.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from storyboard_ai.core.config import Settings
from storyboard_ai.services.image_generation.base import (
    GenerationResult,
    Provider,
    ProviderConfig,
    TaskStatus,
    task_id_of,
    task_status,
)
from storyboard_ai.services.image_generation.cancellation import CancellationSignal, Sleeper, guarded
from storyboard_ai.services.image_generation.extractors import (
    find_image,
    payload_preview,
    resolve_image,
    task_result_image,
)
from storyboard_ai.services.image_generation.failure_types import (
    ClassifiedError,
    ErrorKind,
    classify_gemini_block,
    classify_http_status,
    classify_task_failure,
)
from storyboard_ai.services.image_generation.poller import poll
from storyboard_ai.services.image_generation.providers import result_endpoint_for
from storyboard_ai.services.image_generation.streaming import read_stream

logger = logging.getLogger(__name__)

HTML_HINT = (
    "\n\nHint: the endpoint returned an HTML page. It is probably a documentation page "
    "rather than the API itself. Use the request URL from the API docs "
    "(usually a path under /v1/ or /api/), not a .html or /docs/ address."
)

# Progress band for stream/poll updates between "response received" and post-processing
_PROGRESS_LOW, _PROGRESS_HIGH = 70.0, 88.0


@dataclass
class ExtractionContext:
    """Per-call collaborators the extractor needs for downloads, streams and polling."""

    client: httpx.AsyncClient
    config: ProviderConfig
    settings: Settings
    signal: CancellationSignal | None = None
    sleep: Sleeper = asyncio.sleep
    progress: Callable[[float], None] | None = None

    def report(self, value: float) -> None:
        if self.progress is not None:
            self.progress(value)

    def report_fraction(self, fraction: float) -> None:
        fraction = min(1.0, max(0.0, fraction))
        self.report(_PROGRESS_LOW + (_PROGRESS_HIGH - _PROGRESS_LOW) * fraction)


def _error_message(status_code: int, reason: str, content_type: str, text: str) -> str:
    message = f"HTTP {status_code}: {reason}".rstrip(": ")
    if "application/json" in content_type:
        try:
            data = json.loads(text)
        except ValueError:
            return text[:200] or message
        if isinstance(data, dict):
            error = data.get("error")
            if isinstance(error, dict) and error.get("message"):
                return str(error["message"])
            if isinstance(error, str) and error:
                return error
            for key in ("message", "detail"):
                if data.get(key):
                    return str(data[key])
        return message
    return text[:200] if text.strip() else message


async def raise_for_error_response(
    response: httpx.Response,
    *,
    endpoint: str,
    signal: CancellationSignal | None = None,
) -> None:
    """Classify and raise for a non-2xx provider response."""
    content_type = response.headers.get("content-type", "").lower()
    body = await guarded(response.aread(), signal)
    text = body.decode("utf-8", errors="replace")
    status = response.status_code
    message = _error_message(status, response.reason_phrase, content_type, text)
    logger.warning(
        "image_generation_http_error",
        extra={"status_code": status, "content_type": content_type},
    )
    if "text/html" in content_type and 400 <= status < 500 and status not in (401, 403, 429):
        raise ClassifiedError(
            ErrorKind.MALFORMED_RESPONSE,
            f"API returned an HTML error page ({status})\n"
            f"Configured endpoint: {endpoint}\n"
            f"Response preview: {text[:300]}{HTML_HINT}",
            detail={"http_status": status},
        )
    raise classify_http_status(status, message, retry_after=response.headers.get("retry-after"))


def _on_stream_event(ctx: ExtractionContext) -> Callable[[dict[str, Any]], None]:
    def handle(event: dict[str, Any]) -> None:
        progress = event.get("progress")
        if isinstance(progress, (int, float)) and not isinstance(progress, bool):
            ctx.report_fraction(progress / 100.0)
    return handle


async def extract(provider: Provider, response: httpx.Response, ctx: ExtractionContext) -> GenerationResult:
    """
    Extract a generated image from a provider response.

    Branches on Content-Type: HTML is a misconfigured endpoint, event streams go to
    the stream reader, anything else must be JSON.
    """
    if not response.is_success:
        await raise_for_error_response(response, endpoint=ctx.config.endpoint, signal=ctx.signal)

    ctx.report(70)
    content_type = response.headers.get("content-type", "").lower()
    logger.info("image_generation_response", extra={"provider": provider.value, "content_type": content_type})

    if "text/event-stream" in content_type:
        payload: Any = await read_stream(response.aiter_bytes(), signal=ctx.signal, on_event=_on_stream_event(ctx))
    else:
        body = await guarded(response.aread(), ctx.signal)
        text = body.decode("utf-8", errors="replace")
        if "text/html" in content_type:
            raise ClassifiedError(
                ErrorKind.MALFORMED_RESPONSE,
                f"API did not return JSON (Content-Type: {content_type})\n"
                f"Configured endpoint: {ctx.config.endpoint}\n"
                f"Response preview: {text[:300]}{HTML_HINT}",
            )
        try:
            payload = json.loads(text)
        except ValueError as e:
            raise ClassifiedError(
                ErrorKind.MALFORMED_RESPONSE,
                f"API did not return valid JSON (Content-Type: {content_type or 'missing'})\n"
                f"Response preview: {text[:300]}",
            ) from e

    return await extract_from_payload(provider, payload, ctx)


async def extract_from_payload(provider: Provider, payload: Any, ctx: ExtractionContext) -> GenerationResult:
    """Apply task-status handling, then the image extraction pipeline, to a parsed payload."""
    preview_chars = ctx.settings.response_preview_chars
    if not isinstance(payload, dict):
        raise ClassifiedError(
            ErrorKind.MALFORMED_RESPONSE,
            f"Unexpected API response shape: {payload_preview(payload, preview_chars)}",
        )

    status = task_status(payload)
    if status is TaskStatus.FAILED:
        raise classify_task_failure(payload)

    if status is TaskStatus.PENDING:
        return await _poll_pending(provider, payload, ctx)

    raw = task_result_image(payload) if status is TaskStatus.SUCCEEDED else None
    if raw is None:
        found = find_image(payload)
        if found is not None:
            extractor_name, raw = found
            logger.debug("image extracted via %s", extractor_name)

    if raw is None:
        blocked = classify_gemini_block(payload)
        if blocked is not None:
            raise blocked
        raise ClassifiedError(
            ErrorKind.MALFORMED_RESPONSE,
            "Could not extract the generated image from the API response. "
            f"Response: {payload_preview(payload, preview_chars)}",
        )

    image = await resolve_image(
        raw,
        client=ctx.client,
        signal=ctx.signal,
        timeout=ctx.settings.download_timeout_seconds,
    )
    ctx.report(90)
    return GenerationResult(image=image, model_name=ctx.config.model_name)


async def _poll_pending(provider: Provider, payload: dict[str, Any], ctx: ExtractionContext) -> GenerationResult:
    task_id = task_id_of(payload)
    result_endpoint = result_endpoint_for(provider, ctx.config.endpoint)
    if not task_id or not result_endpoint:
        lines = [f"Task is still processing (status: {payload.get('status')})"]
        if task_id:
            lines.append(f"Task ID: {task_id}")
        lines.append(f"Progress: {payload.get('progress') or 0}%")
        lines.append(
            "\nThis API requires polling for the result, but the task id or the "
            "result endpoint is unknown."
        )
        raise ClassifiedError(
            ErrorKind.MALFORMED_RESPONSE,
            "\n".join(lines),
            detail={"task_id": task_id},
        )

    logger.info("image_generation_task_pending", extra={"provider": provider.value, "task_id": task_id})
    result = await poll(
        result_endpoint,
        task_id,
        ctx.config,
        client=ctx.client,
        interval=ctx.settings.poll_interval_seconds,
        max_attempts=ctx.settings.poll_max_attempts,
        sleep=ctx.sleep,
        signal=ctx.signal,
        on_attempt=lambda n, total: ctx.report_fraction(n / total),
        download_timeout=ctx.settings.download_timeout_seconds,
    )
    ctx.report(90)
    return result
