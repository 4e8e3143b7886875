"""
Image generation client with URL-based provider detection.
"""
from .base import (
    BlobReference,
    BuiltRequest,
    DataURI,
    GenerationRequest,
    GenerationResult,
    ImageRef,
    Provider,
    ProviderConfig,
    RemoteURL,
    TaskStatus,
    parse_image_ref,
)
from .cancellation import CancellationSignal
from .client import GenerationClient, ProgressReporter, generate, validate_config
from .extractors import IMAGE_EXTRACTORS, find_image
from .failure_types import ClassifiedError, ErrorKind, classify_http_status, classify_task_failure
from .images import normalize
from .poller import poll
from .providers import classify, result_endpoint_for
from .request_builder import build, build_validation_request, calculate_image_size
from .responses import ExtractionContext, extract
from .runner import with_retry
from .streaming import read_stream

__all__ = [
    "BlobReference",
    "BuiltRequest",
    "DataURI",
    "GenerationRequest",
    "GenerationResult",
    "ImageRef",
    "Provider",
    "ProviderConfig",
    "RemoteURL",
    "TaskStatus",
    "parse_image_ref",
    "CancellationSignal",
    "GenerationClient",
    "ProgressReporter",
    "generate",
    "validate_config",
    "IMAGE_EXTRACTORS",
    "find_image",
    "ClassifiedError",
    "ErrorKind",
    "classify_http_status",
    "classify_task_failure",
    "normalize",
    "poll",
    "classify",
    "result_endpoint_for",
    "build",
    "build_validation_request",
    "calculate_image_size",
    "ExtractionContext",
    "extract",
    "with_retry",
    "read_stream",
]
