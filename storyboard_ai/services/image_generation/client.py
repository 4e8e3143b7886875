"""
Generation client: the single entry point the storyboard UI consumes.
Composes normalizer -> classifier -> request builder -> retry(HTTP + extractor).
Holds no state between calls; ProviderConfig is passed on every call.
"""
import asyncio
import dataclasses
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

import httpx

from storyboard_ai.core.config import Settings, settings as default_settings
from storyboard_ai.services.image_generation.base import (
    BuiltRequest,
    DataURI,
    GenerationRequest,
    GenerationResult,
    ImageRef,
    ProviderConfig,
)
from storyboard_ai.services.image_generation.cancellation import CancellationSignal, Sleeper, guarded
from storyboard_ai.services.image_generation.failure_types import ClassifiedError, ErrorKind
from storyboard_ai.services.image_generation.images import normalize
from storyboard_ai.services.image_generation.providers import classify, looks_like_documentation_url
from storyboard_ai.services.image_generation.request_builder import (
    build,
    build_validation_request,
    calculate_image_size,
    parse_endpoint,
    redact_url,
)
from storyboard_ai.services.image_generation.responses import ExtractionContext, extract
from storyboard_ai.services.image_generation.runner import with_retry
from storyboard_ai.utils.metrics import (
    image_generation_duration_seconds,
    image_generation_requests_total,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

# Statuses that prove the endpoint exists even though the request was rejected
REACHABLE_REJECTION_STATUSES = frozenset({400, 401, 403, 422, 429})
# Error-body fragments that identify a real image API behind a failing validation request
PROVIDER_ERROR_MARKERS = (
    "Gemini",
    "candidates",
    "channel_error",
    "empty response",
    "channel:",
    "request id:",
)


class ProgressReporter:
    """Clamp progress to a non-decreasing 0..100 sequence; callback failures never break a call."""

    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self._last: float | None = None

    @property
    def last(self) -> float | None:
        return self._last

    def __call__(self, value: float) -> None:
        if self._callback is None:
            return
        value = min(100.0, max(0.0, float(value)))
        if self._last is not None and value <= self._last:
            return
        self._last = value
        try:
            self._callback(value)
        except Exception:
            logger.warning("progress_callback_failed", exc_info=True)


class GenerationClient:
    """
    Async image generation client.

    Example:
        client = GenerationClient()
        result = await client.generate(
            GenerationRequest(prompt="...", storyboard_image=BlobReference("shot1.png")),
            ProviderConfig(endpoint="https://.../v1/images/generations", api_key="...", model_name="..."),
        )
        result.image.uri  # data:image/png;base64,...
    """

    def __init__(
        self,
        settings: Settings | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        """
        Args:
            settings: Tuning knobs; defaults to the process-wide settings.
            http_client: Optional shared httpx client (tests inject a MockTransport).
                When omitted, each call opens and closes its own client.
            sleep: Awaitable sleep used for backoff and polling.
        """
        self.settings = settings or default_settings
        self._http_client = http_client
        self._sleep = sleep

    @asynccontextmanager
    async def _http(self, timeout: float) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=timeout) as client:
            yield client

    def _validate(self, request: GenerationRequest, config: ProviderConfig) -> None:
        if not (config.endpoint or "").strip():
            raise ClassifiedError(ErrorKind.INVALID_ENDPOINT, "API endpoint is not configured")
        if not (config.api_key or "").strip():
            raise ClassifiedError(ErrorKind.INVALID_INPUT, "API key is not configured")
        if not (config.model_name or "").strip():
            raise ClassifiedError(ErrorKind.INVALID_INPUT, "Model name is not configured")
        if not (request.prompt or "").strip():
            raise ClassifiedError(ErrorKind.INVALID_INPUT, "Prompt must not be empty")
        if request.storyboard_image is None:
            raise ClassifiedError(ErrorKind.INVALID_INPUT, "Storyboard image is required")
        parse_endpoint(config.endpoint)
        calculate_image_size(request.aspect_ratio, self.settings.image_base_size)

    async def _normalize_reference(
        self,
        ref: ImageRef | None,
        label: str,
        client: httpx.AsyncClient,
        signal: CancellationSignal | None,
    ) -> DataURI | None:
        """Optional references that cannot be used are dropped, not fatal."""
        if ref is None:
            return None
        try:
            return await normalize(
                ref,
                client=client,
                min_bytes=self.settings.min_image_bytes,
                signal=signal,
                timeout=self.settings.download_timeout_seconds,
            )
        except ClassifiedError as e:
            if e.kind is not ErrorKind.INVALID_INPUT:
                raise
            logger.warning("reference_image_skipped: %s (%s)", label, e.message)
            return None

    async def generate(
        self,
        request: GenerationRequest,
        config: ProviderConfig,
        on_progress: ProgressCallback | None = None,
        signal: CancellationSignal | None = None,
    ) -> GenerationResult:
        """
        Generate a storyboard frame.

        Raises:
            ClassifiedError: with one of the ErrorKind values; message is UI-ready.
        """
        started = time.monotonic()
        progress = ProgressReporter(on_progress)
        provider_label = "unknown"
        try:
            if not (request.aspect_ratio or "").strip():
                request = dataclasses.replace(request, aspect_ratio=self.settings.default_aspect_ratio)
            self._validate(request, config)
            provider = classify(config.endpoint, config.provider)
            provider_label = provider.value

            async with self._http(self.settings.request_timeout_seconds) as client:
                storyboard = await normalize(
                    request.storyboard_image,
                    client=client,
                    min_bytes=self.settings.min_image_bytes,
                    signal=signal,
                    timeout=self.settings.download_timeout_seconds,
                )
                role = await self._normalize_reference(request.role_image, "role", client, signal)
                scene = await self._normalize_reference(request.scene_image, "scene", client, signal)
                progress(10)

                built = build(
                    provider,
                    request,
                    config,
                    storyboard=storyboard,
                    role=role,
                    scene=scene,
                    base_size=self.settings.image_base_size,
                )
                ctx = ExtractionContext(
                    client=client,
                    config=config,
                    settings=self.settings,
                    signal=signal,
                    sleep=self._sleep,
                    progress=progress,
                )

                async def attempt(attempt_number: int) -> GenerationResult:
                    progress(30 + (attempt_number - 1) * 10)
                    return await self._send(built, ctx, attempt_number)

                result = await with_retry(
                    attempt,
                    max_attempts=self.settings.retry_max_attempts,
                    backoff_seconds=self.settings.retry_backoff_seconds,
                    respect_retry_after=self.settings.retry_respect_retry_after,
                    sleep=self._sleep,
                    signal=signal,
                    provider=provider_label,
                )
        except ClassifiedError as e:
            image_generation_requests_total.labels(provider=provider_label, outcome=e.kind.value).inc()
            logger.warning(
                "image_generation_failed",
                extra={
                    "provider": provider_label,
                    "model": config.model_name,
                    "failure_kind": e.kind.value,
                    "retryable": e.retryable,
                    "error": e.message[:300],
                },
            )
            raise
        finally:
            image_generation_duration_seconds.labels(provider=provider_label).observe(time.monotonic() - started)

        image_generation_requests_total.labels(provider=provider_label, outcome="success").inc()
        progress(100)
        logger.info("image_generation_succeeded", extra={"provider": provider_label, "model": result.model_name})
        return result

    async def _send(self, built: BuiltRequest, ctx: ExtractionContext, attempt_number: int) -> GenerationResult:
        """One HTTP call plus extraction; transport failures become NETWORK_ERROR."""
        logger.info(
            "image_generation_attempt",
            extra={
                "provider": built.provider.value,
                "endpoint": redact_url(built.url),
                "attempt": attempt_number,
            },
        )
        http_request = ctx.client.build_request("POST", built.url, headers=built.headers, json=built.body)
        try:
            response = await guarded(ctx.client.send(http_request, stream=True), ctx.signal)
            try:
                return await extract(built.provider, response, ctx)
            finally:
                await response.aclose()
        except httpx.TimeoutException as e:
            raise ClassifiedError(
                ErrorKind.NETWORK_ERROR,
                f"Request to the image API timed out ({type(e).__name__})",
                retryable=True,
            ) from e
        except httpx.HTTPError as e:
            raise ClassifiedError(
                ErrorKind.NETWORK_ERROR,
                f"Network error while calling the image API: {e}",
                retryable=True,
            ) from e

    async def validate_config(self, config: ProviderConfig) -> bool:
        """
        Lightweight reachability check for a provider config.

        Returns True when the endpoint looks like a real image API (including auth,
        rate-limit and validation rejections of the test request).

        Raises:
            ClassifiedError: INVALID_ENDPOINT (empty, unparsable or documentation URL),
                MALFORMED_RESPONSE (HTML), NETWORK_ERROR (unreachable) or
                PROVIDER_ERROR (any other failure status).
        """
        endpoint = (config.endpoint or "").strip()
        if not endpoint:
            raise ClassifiedError(ErrorKind.INVALID_ENDPOINT, "API endpoint must not be empty")
        if looks_like_documentation_url(endpoint):
            raise ClassifiedError(
                ErrorKind.INVALID_ENDPOINT,
                "The API endpoint looks like a documentation page. Use the actual API "
                "address (usually starting with /v1/ or /api/).",
            )
        provider = classify(endpoint, config.provider)
        check = build_validation_request(provider, config)

        async with self._http(self.settings.validation_timeout_seconds) as client:
            try:
                response = await client.post(check.url, headers=check.headers, json=check.body)
            except httpx.HTTPError as e:
                raise ClassifiedError(
                    ErrorKind.NETWORK_ERROR,
                    f"Cannot reach the API endpoint {endpoint}: {e}",
                    retryable=True,
                ) from e

        content_type = response.headers.get("content-type", "").lower()
        text = response.text
        if "text/html" in content_type:
            raise ClassifiedError(
                ErrorKind.MALFORMED_RESPONSE,
                "The API endpoint returned an HTML page; check the address.\n"
                f"Configured endpoint: {endpoint}\n"
                f"Response preview: {text[:200]}...",
            )
        if response.is_success:
            return True
        if response.status_code in REACHABLE_REJECTION_STATUSES:
            logger.info(
                "config_validation_rejected_but_reachable",
                extra={"provider": provider.value, "status_code": response.status_code},
            )
            return True
        if any(marker in text for marker in PROVIDER_ERROR_MARKERS):
            return True
        raise ClassifiedError(
            ErrorKind.PROVIDER_ERROR,
            f"API returned error {response.status_code}: {text[:300]}",
            detail={"http_status": response.status_code},
        )


async def generate(
    request: GenerationRequest,
    config: ProviderConfig,
    on_progress: ProgressCallback | None = None,
    signal: CancellationSignal | None = None,
) -> GenerationResult:
    """Module-level shortcut for GenerationClient().generate()."""
    return await GenerationClient().generate(request, config, on_progress=on_progress, signal=signal)


async def validate_config(config: ProviderConfig) -> bool:
    """Module-level shortcut for GenerationClient().validate_config()."""
    return await GenerationClient().validate_config(config)
