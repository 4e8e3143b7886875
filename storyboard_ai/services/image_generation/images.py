"""
Image normalizer: reduce any ImageRef to a validated DataURI.
Remote URLs and local blobs are fetched and re-encoded; nothing is cached.
"""
import asyncio
import io
import logging
from pathlib import Path

import httpx
from PIL import Image, UnidentifiedImageError

from storyboard_ai.services.image_generation.base import (
    BlobReference,
    DataURI,
    ImageRef,
    RemoteURL,
)
from storyboard_ai.services.image_generation.cancellation import CancellationSignal, guarded
from storyboard_ai.services.image_generation.failure_types import ClassifiedError, ErrorKind

logger = logging.getLogger(__name__)

DEFAULT_MIME = "image/png"
MIN_IMAGE_BYTES = 100


def sniff_mime(content: bytes, default: str = DEFAULT_MIME) -> str:
    """Detect image MIME type from content with Pillow; default when unknown."""
    try:
        with Image.open(io.BytesIO(content)) as img:
            fmt = img.format
    except (UnidentifiedImageError, OSError, ValueError):
        logger.debug("image format not recognized, assuming %s", default)
        return default
    return Image.MIME.get(fmt or "", default)


def _mime_for(content: bytes, declared: str | None) -> str:
    if declared:
        declared = declared.split(";")[0].strip().lower()
        if declared.startswith("image/"):
            return declared
    return sniff_mime(content)


def _check_size(content: bytes, min_bytes: int, source: str) -> None:
    if len(content) < min_bytes:
        raise ClassifiedError(
            ErrorKind.INVALID_INPUT,
            f"Image from {source} is empty or incomplete ({len(content)} bytes, minimum {min_bytes})",
            detail={"image_bytes": len(content)},
        )


async def fetch_image(
    url: str,
    *,
    client: httpx.AsyncClient,
    signal: CancellationSignal | None = None,
    timeout: float | None = None,
) -> tuple[bytes, str | None]:
    """GET url; return (content, content-type). Raises httpx errors as-is."""
    kwargs = {"timeout": timeout} if timeout is not None else {}
    response = await guarded(client.get(url, follow_redirects=True, **kwargs), signal)
    response.raise_for_status()
    return response.content, response.headers.get("content-type")


async def _read_blob(ref: BlobReference) -> bytes:
    if isinstance(ref.handle, bytes):
        return ref.handle
    path = Path(ref.handle)
    try:
        return await asyncio.to_thread(path.read_bytes)
    except OSError as e:
        raise ClassifiedError(
            ErrorKind.INVALID_INPUT,
            f"Cannot read image file {path}: {e.strerror or e}",
        ) from e


async def normalize(
    ref: ImageRef,
    *,
    client: httpx.AsyncClient,
    min_bytes: int = MIN_IMAGE_BYTES,
    signal: CancellationSignal | None = None,
    timeout: float | None = None,
) -> DataURI:
    """
    Convert any ImageRef to a DataURI.

    Raises:
        ClassifiedError(INVALID_INPUT): malformed data URI, unreadable source,
            or fewer than min_bytes of decoded image data.
    """
    if isinstance(ref, DataURI):
        if not ref.mime.lower().startswith("image/"):
            raise ClassifiedError(
                ErrorKind.INVALID_INPUT,
                f"Data URI is not an image (mime type {ref.mime})",
            )
        _check_size(ref.decode(), min_bytes, "data URI")
        return ref

    if isinstance(ref, BlobReference):
        content = await _read_blob(ref)
        _check_size(content, min_bytes, "blob")
        return DataURI.from_bytes(content, _mime_for(content, ref.mime))

    if isinstance(ref, RemoteURL):
        try:
            content, content_type = await fetch_image(ref.url, client=client, signal=signal, timeout=timeout)
        except httpx.HTTPStatusError as e:
            raise ClassifiedError(
                ErrorKind.INVALID_INPUT,
                f"Cannot load image URL {ref.url}: HTTP {e.response.status_code}",
            ) from e
        except httpx.HTTPError as e:
            raise ClassifiedError(
                ErrorKind.INVALID_INPUT,
                f"Cannot load image URL {ref.url}: {e}",
            ) from e
        _check_size(content, min_bytes, ref.url)
        return DataURI.from_bytes(content, _mime_for(content, content_type))

    raise ClassifiedError(ErrorKind.INVALID_INPUT, f"Unsupported image reference: {type(ref).__name__}")


async def download_as_data_uri(
    url: str,
    *,
    client: httpx.AsyncClient,
    signal: CancellationSignal | None = None,
    timeout: float | None = None,
) -> DataURI:
    """Download a generated image so the caller always receives a self-contained image."""
    try:
        content, content_type = await fetch_image(url, client=client, signal=signal, timeout=timeout)
    except httpx.HTTPStatusError as e:
        raise ClassifiedError(
            ErrorKind.NETWORK_ERROR,
            f"Image download failed: HTTP {e.response.status_code}\nImage URL: {url}",
            retryable=True,
            detail={"http_status": e.response.status_code},
        ) from e
    except httpx.HTTPError as e:
        raise ClassifiedError(
            ErrorKind.NETWORK_ERROR,
            f"Image download failed: {e}\nImage URL: {url}",
            retryable=True,
        ) from e
    if not content:
        raise ClassifiedError(
            ErrorKind.MALFORMED_RESPONSE,
            f"Generated image download was empty\nImage URL: {url}",
        )
    return DataURI.from_bytes(content, _mime_for(content, content_type))
