"""
Image extraction from heterogeneous provider payloads.
IMAGE_EXTRACTORS is tried in order and stops at the first match; supporting another
response shape means appending a (name, predicate, extractor) entry.
"""
import json
import re
from typing import Any, Callable

import httpx

from storyboard_ai.services.image_generation.base import DataURI, RemoteURL
from storyboard_ai.services.image_generation.cancellation import CancellationSignal
from storyboard_ai.services.image_generation.failure_types import ClassifiedError, ErrorKind
from storyboard_ai.services.image_generation.images import DEFAULT_MIME, download_as_data_uri

Predicate = Callable[[dict[str, Any]], bool]
Extractor = Callable[[dict[str, Any]], str | None]

DATA_URI_LITERAL_RE = re.compile(r"data:image/[^;\"']+;base64,[A-Za-z0-9+/=]+")
IMAGE_URL_RE = re.compile(r"https?://[^\s\"']+\.(?:jpg|jpeg|png|webp|gif)(?:\?[^\s\"']*)?", re.IGNORECASE)

RESULT_IMAGE_KEYS = ("image", "url", "data", "base64")

# Strings longer than this are treated as base64 blobs when sanitizing for logs
_REDACT_MIN_LEN = 200


def _first(value: Any) -> Any:
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _string(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _has_candidates(payload: dict[str, Any]) -> bool:
    candidates = payload.get("candidates")
    return isinstance(candidates, list) and bool(candidates)


def _gemini_inline_data(payload: dict[str, Any]) -> str | None:
    candidate = payload["candidates"][0]
    if not isinstance(candidate, dict):
        return None
    content = candidate.get("content")
    if not isinstance(content, dict):
        return None
    parts = content.get("parts")
    if not isinstance(parts, list):
        return None
    for part in parts:
        if not isinstance(part, dict):
            continue
        inline = part.get("inlineData") or part.get("inline_data")
        if isinstance(inline, dict) and _string(inline.get("data")):
            mime = inline.get("mimeType") or inline.get("mime_type") or DEFAULT_MIME
            return f"data:{mime};base64,{inline['data'].strip()}"
    return None


def _has_data_list(payload: dict[str, Any]) -> bool:
    data = payload.get("data")
    return isinstance(data, list) and bool(data)


def _openai_data(payload: dict[str, Any]) -> str | None:
    item = payload["data"][0]
    if isinstance(item, str):
        return _string(item)
    if not isinstance(item, dict):
        return None
    return _string(item.get("url")) or _string(item.get("b64_json")) or _string(item.get("image"))


def _generic_fields(payload: dict[str, Any]) -> str | None:
    images = _first(payload.get("images"))
    if isinstance(images, dict):
        images = images.get("url") or images.get("image") or images.get("b64_json")
    found = _string(images)
    if found:
        return found
    result = payload.get("result")
    if isinstance(result, dict):
        found = _string(result.get("image"))
        if found:
            return found
    return _string(payload.get("image")) or _string(payload.get("url")) or _string(payload.get("data"))


def _serialized_scan(payload: dict[str, Any]) -> str | None:
    text = json.dumps(payload, ensure_ascii=False)
    match = DATA_URI_LITERAL_RE.search(text) or IMAGE_URL_RE.search(text)
    return match.group(0) if match else None


def _always(payload: dict[str, Any]) -> bool:
    return True


IMAGE_EXTRACTORS: list[tuple[str, Predicate, Extractor]] = [
    ("gemini_inline_data", _has_candidates, _gemini_inline_data),
    ("openai_data", _has_data_list, _openai_data),
    ("generic_fields", _always, _generic_fields),
    ("serialized_scan", _always, _serialized_scan),
]


def find_image(payload: dict[str, Any]) -> tuple[str, str] | None:
    """Return (extractor name, raw image string) for the first matching shape."""
    for name, predicate, extractor in IMAGE_EXTRACTORS:
        if predicate(payload):
            found = extractor(payload)
            if found:
                return name, found
    return None


def task_result_image(payload: dict[str, Any]) -> str | None:
    """Image of a completed task: results[0] / results / top-level fields."""
    results = payload.get("results")
    if isinstance(results, list):
        results = results[0] if results else None
    source = results if isinstance(results, dict) else payload
    for key in RESULT_IMAGE_KEYS:
        found = _string(source.get(key))
        if found:
            return found
    return None


def to_image_ref(raw: str) -> DataURI | RemoteURL:
    """Interpret an extracted string: data URI, http(s) URL, or bare base64."""
    value = raw.strip()
    if value.startswith(("http://", "https://")):
        return RemoteURL(value)
    if value.startswith("data:"):
        try:
            return DataURI.parse(value)
        except ClassifiedError as e:
            raise ClassifiedError(
                ErrorKind.MALFORMED_RESPONSE,
                "Provider returned an image data URI that could not be parsed",
            ) from e
    return DataURI(mime=DEFAULT_MIME, data="".join(value.split()))


async def resolve_image(
    raw: str,
    *,
    client: httpx.AsyncClient,
    signal: CancellationSignal | None = None,
    timeout: float | None = None,
) -> DataURI:
    """Turn an extracted image string into a self-contained DataURI (URLs are downloaded)."""
    ref = to_image_ref(raw)
    if isinstance(ref, RemoteURL):
        return await download_as_data_uri(ref.url, client=client, signal=signal, timeout=timeout)
    return ref


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _redact(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_redact(v) for v in value]
    if isinstance(value, str) and len(value) >= _REDACT_MIN_LEN and " " not in value:
        return f"[REDACTED {len(value)} chars]"
    return value


def sanitize_payload_for_log(payload: Any) -> Any:
    """Copy of a provider payload safe for logs and error previews (no base64 blobs)."""
    return _redact(payload)


def payload_preview(payload: Any, limit: int = 500) -> str:
    text = json.dumps(sanitize_payload_for_log(payload), ensure_ascii=False, default=str)
    return text if len(text) <= limit else text[:limit] + "..."
