"""
Data model for the image generation client.
Used by the normalizer, classifier, request builder, extractors and the facade.
"""
import base64
import binascii
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Union

from storyboard_ai.services.image_generation.failure_types import ClassifiedError, ErrorKind

DATA_URI_RE = re.compile(r"^data:([^;,]+);base64,(.+)$", re.DOTALL)


class Provider(str, Enum):
    """Wire protocol shapes a backend may speak."""

    GEMINI = "gemini"
    ASYNC_TASK = "async_task"
    GENERIC = "generic"


@dataclass(frozen=True)
class DataURI:
    """Self-contained image: MIME type plus base64 payload."""

    mime: str
    data: str

    @property
    def uri(self) -> str:
        return f"data:{self.mime};base64,{self.data}"

    def decode(self) -> bytes:
        """Decoded image bytes. Raises INVALID_INPUT on bad base64."""
        try:
            return base64.b64decode(self.data, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ClassifiedError(
                ErrorKind.INVALID_INPUT,
                f"Image data is not valid base64: {e}",
            ) from e

    @classmethod
    def parse(cls, value: str) -> "DataURI":
        """Parse 'data:<mime>;base64,<payload>'. Raises INVALID_INPUT on other shapes."""
        match = DATA_URI_RE.match(value.strip())
        if not match:
            raise ClassifiedError(
                ErrorKind.INVALID_INPUT,
                "Image is not a base64 data URI (expected data:<mime>;base64,<payload>)",
            )
        return cls(mime=match.group(1), data="".join(match.group(2).split()))

    @classmethod
    def from_bytes(cls, content: bytes, mime: str) -> "DataURI":
        return cls(mime=mime, data=base64.standard_b64encode(content).decode("ascii"))

    def __repr__(self) -> str:
        return f"DataURI(mime={self.mime!r}, data=<{len(self.data)} chars>)"


@dataclass(frozen=True)
class BlobReference:
    """Local image content: raw bytes or a filesystem path."""

    handle: Union[bytes, str, Path]
    mime: str | None = None

    def __repr__(self) -> str:
        if isinstance(self.handle, bytes):
            return f"BlobReference(<{len(self.handle)} bytes>)"
        return f"BlobReference({str(self.handle)!r})"


@dataclass(frozen=True)
class RemoteURL:
    """Image reachable over http(s)."""

    url: str


ImageRef = Union[DataURI, BlobReference, RemoteURL]


def parse_image_ref(value: str) -> ImageRef:
    """Map the string forms a UI sends to an ImageRef variant."""
    text = value.strip()
    if text.startswith("data:"):
        return DataURI.parse(text)
    if text.startswith(("http://", "https://")):
        return RemoteURL(text)
    return BlobReference(text)


@dataclass(frozen=True)
class ProviderConfig:
    """Per-call provider settings; provider (if set) overrides URL classification."""

    endpoint: str
    api_key: str
    model_name: str
    provider: Provider | None = None

    def __repr__(self) -> str:
        return (
            f"ProviderConfig(endpoint={self.endpoint!r}, api_key=<redacted>, "
            f"model_name={self.model_name!r}, provider={self.provider!r})"
        )


@dataclass(frozen=True)
class GenerationRequest:
    """Request for storyboard frame generation."""

    prompt: str
    storyboard_image: ImageRef
    aspect_ratio: str = "16:9"
    negative_prompt: str | None = None
    role_image: ImageRef | None = None
    scene_image: ImageRef | None = None


@dataclass(frozen=True)
class GenerationResult:
    """Generated image (always a DataURI) and the model that produced it."""

    image: DataURI
    model_name: str

    def to_dict(self) -> dict[str, Any]:
        return {"image": self.image.uri, "model": self.model_name}


@dataclass
class BuiltRequest:
    """Exact HTTP request for one provider call."""

    provider: Provider
    url: str
    headers: dict[str, str]
    body: dict[str, Any] = field(default_factory=dict)


class TaskStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


PENDING_STATUSES = frozenset({"pending", "processing", "in_progress", "queued", "running"})
SUCCEEDED_STATUSES = frozenset({"succeeded", "completed", "success"})
FAILED_STATUSES = frozenset({"failed", "error"})
TERMINAL_STATUSES = SUCCEEDED_STATUSES | FAILED_STATUSES


def task_status(payload: Any) -> TaskStatus | None:
    """Map a payload's status field onto TaskStatus; None when absent or unknown."""
    if not isinstance(payload, dict):
        return None
    status = payload.get("status")
    if not isinstance(status, str):
        return None
    value = status.strip().lower()
    if value in SUCCEEDED_STATUSES:
        return TaskStatus.SUCCEEDED
    if value in FAILED_STATUSES:
        return TaskStatus.FAILED
    if value in PENDING_STATUSES:
        return TaskStatus.PENDING
    return None


def task_id_of(payload: dict[str, Any]) -> str | None:
    task_id = payload.get("id") or payload.get("task_id") or payload.get("job_id")
    return str(task_id) if task_id else None
