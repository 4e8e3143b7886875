"""
Request builder: provider-specific URL, headers and JSON body.
Image order is always storyboard, role, scene; providers read meaning from position.
"""
import logging
import math
from typing import Any, Sequence

import httpx

from storyboard_ai.services.image_generation.base import (
    BuiltRequest,
    DataURI,
    GenerationRequest,
    Provider,
    ProviderConfig,
)
from storyboard_ai.services.image_generation.failure_types import ClassifiedError, ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_BASE_SIZE = 1024
DEFAULT_ASYNC_TASK_MODEL = "nano-banana"
AUTO_ASPECT_RATIO = "auto"


def parse_endpoint(endpoint: str) -> httpx.URL:
    """Parse endpoint as an absolute http(s) URL or raise INVALID_ENDPOINT."""
    text = (endpoint or "").strip()
    try:
        url = httpx.URL(text)
    except (httpx.InvalidURL, TypeError, ValueError) as e:
        raise ClassifiedError(
            ErrorKind.INVALID_ENDPOINT,
            f"Invalid API endpoint: {text!r}. Use a complete URL including the protocol (https://).",
        ) from e
    if url.scheme not in ("http", "https") or not url.host:
        raise ClassifiedError(
            ErrorKind.INVALID_ENDPOINT,
            f"Invalid API endpoint: {text!r}. Use a complete URL including the protocol (https://).",
        )
    return url


def calculate_image_size(aspect_ratio: str, base_size: int = DEFAULT_BASE_SIZE) -> tuple[int, int]:
    """
    Pixel size for an aspect ratio like '16:9'.
    The larger side is base_size; both sides are rounded down to a multiple of 8.
    """
    ratio_text = (aspect_ratio or "").strip().lower()
    if ratio_text == AUTO_ASPECT_RATIO:
        side = base_size // 8 * 8
        return side, side
    try:
        w_text, h_text = ratio_text.split(":")
        w, h = float(w_text), float(h_text)
    except ValueError as e:
        raise ClassifiedError(
            ErrorKind.INVALID_INPUT,
            f"Invalid aspect ratio {aspect_ratio!r}; expected W:H such as 16:9",
        ) from e
    if not (w > 0 and h > 0) or math.isinf(w) or math.isinf(h):
        raise ClassifiedError(
            ErrorKind.INVALID_INPUT,
            f"Invalid aspect ratio {aspect_ratio!r}; both sides must be positive",
        )
    if w >= h:
        width, height = float(base_size), base_size * h / w
    else:
        width, height = base_size * w / h, float(base_size)
    width_px = max(8, int(width) // 8 * 8)
    height_px = max(8, int(height) // 8 * 8)
    return width_px, height_px


def _bearer_headers(api_key: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
    }


def _gemini_prompt(request: GenerationRequest, width: int, height: int) -> str:
    # No negative-prompt field in generateContent: constraints ride along in the text part.
    text = request.prompt
    if request.aspect_ratio and request.aspect_ratio.strip().lower() != AUTO_ASPECT_RATIO:
        text += f"\nAspect ratio: {request.aspect_ratio} ({width}x{height} pixels)"
    if request.negative_prompt and request.negative_prompt.strip():
        text += "\nAvoid: " + request.negative_prompt.strip()
    return text


def _build_gemini(
    url: httpx.URL,
    request: GenerationRequest,
    config: ProviderConfig,
    images: Sequence[DataURI],
    size: tuple[int, int],
) -> BuiltRequest:
    parts: list[dict[str, Any]] = [{"text": _gemini_prompt(request, *size)}]
    for image in images:
        parts.append({"inlineData": {"mimeType": image.mime, "data": image.data}})
    body = {
        "contents": [{"role": "user", "parts": parts}],
        "generationConfig": {"responseModalities": ["IMAGE"]},
    }
    return BuiltRequest(
        provider=Provider.GEMINI,
        url=str(url.copy_set_param("key", config.api_key)),
        headers={"Content-Type": "application/json"},
        body=body,
    )


def _build_async_task(
    url: httpx.URL,
    request: GenerationRequest,
    config: ProviderConfig,
    images: Sequence[DataURI],
    size: tuple[int, int],
) -> BuiltRequest:
    width, height = size
    body: dict[str, Any] = {
        "model": config.model_name or DEFAULT_ASYNC_TASK_MODEL,
        "prompt": request.prompt,
        "imageSize": f"{width}x{height}",
        "aspectRatio": request.aspect_ratio,
        # Bare base64, positional: storyboard, role, scene
        "urls": [image.data for image in images],
        # "-1" (auto ratio): return a task id to poll; "": stream progress over SSE
        "webhook": "-1" if request.aspect_ratio.strip().lower() == AUTO_ASPECT_RATIO else "",
        "shutProgress": False,
    }
    if request.negative_prompt and request.negative_prompt.strip():
        body["negativePrompt"] = request.negative_prompt.strip()
    return BuiltRequest(
        provider=Provider.ASYNC_TASK,
        url=str(url),
        headers=_bearer_headers(config.api_key),
        body=body,
    )


def _build_generic(
    url: httpx.URL,
    request: GenerationRequest,
    config: ProviderConfig,
    images: Sequence[DataURI],
    size: tuple[int, int],
) -> BuiltRequest:
    width, height = size
    body: dict[str, Any] = {
        "model": config.model_name,
        "prompt": request.prompt,
        "n": 1,
        "image": images[0].uri,
        "size": f"{width}x{height}",
    }
    if request.negative_prompt and request.negative_prompt.strip():
        body["negative_prompt"] = request.negative_prompt.strip()
    return BuiltRequest(
        provider=Provider.GENERIC,
        url=str(url),
        headers=_bearer_headers(config.api_key),
        body=body,
    )


_BUILDERS = {
    Provider.GEMINI: _build_gemini,
    Provider.ASYNC_TASK: _build_async_task,
    Provider.GENERIC: _build_generic,
}


def build(
    provider: Provider,
    request: GenerationRequest,
    config: ProviderConfig,
    *,
    storyboard: DataURI,
    role: DataURI | None = None,
    scene: DataURI | None = None,
    base_size: int = DEFAULT_BASE_SIZE,
) -> BuiltRequest:
    """
    Build the HTTP request for one provider call.

    The request and config are never mutated. Positional shapes (Gemini parts, async
    task urls) list the present images as storyboard, role, scene; the generic shape
    keeps each reference in its own named field.

    Raises:
        ClassifiedError(INVALID_ENDPOINT): endpoint is not an absolute http(s) URL.
        ClassifiedError(INVALID_INPUT): aspect ratio cannot be parsed.
    """
    url = parse_endpoint(config.endpoint)
    size = calculate_image_size(request.aspect_ratio, base_size)
    images = [img for img in (storyboard, role, scene) if img is not None]
    built = _BUILDERS[provider](url, request, config, images, size)
    if provider is Provider.GENERIC:
        if role is not None:
            built.body["reference_image"] = role.uri
        if scene is not None:
            built.body["scene_image"] = scene.uri
    logger.info(
        "image_generation_request_built",
        extra={
            "provider": provider.value,
            "model": config.model_name,
            "image_count": 1 + (role is not None) + (scene is not None),
        },
    )
    return built


def build_validation_request(provider: Provider, config: ProviderConfig) -> BuiltRequest:
    """Minimal request used by validate_config; needs no image input."""
    url = parse_endpoint(config.endpoint)
    if provider is Provider.GEMINI:
        return BuiltRequest(
            provider=provider,
            url=str(url.copy_set_param("key", config.api_key)),
            headers={"Content-Type": "application/json"},
            body={
                "contents": [{"role": "user", "parts": [{"text": "test"}]}],
                # TEXT mode so the check does not need an image
                "generationConfig": {"responseModalities": ["TEXT"]},
            },
        )
    if provider is Provider.ASYNC_TASK:
        body = {
            "model": config.model_name or DEFAULT_ASYNC_TASK_MODEL,
            "prompt": "test",
            "size": "1024x1024",
        }
    else:
        body = {"model": config.model_name or "test-model", "prompt": "test"}
    return BuiltRequest(provider=provider, url=str(url), headers=_bearer_headers(config.api_key), body=body)


def redact_url(url: str) -> str:
    """URL safe for logs (Gemini carries the API key as ?key=)."""
    try:
        parsed = httpx.URL(url)
    except (httpx.InvalidURL, TypeError, ValueError):
        return "<invalid url>"
    if "key" in parsed.params:
        parsed = parsed.copy_set_param("key", "***")
    return str(parsed)
