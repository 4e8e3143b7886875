"""
Failure taxonomy for the image generation client.
Every failure that leaves the client is a ClassifiedError carrying an ErrorKind,
a UI-ready message and a retryable flag that drives the retry controller.
"""
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Error kinds surfaced to the UI."""

    INVALID_INPUT = "invalid_input"  # empty prompt, undersized image; never sent
    INVALID_ENDPOINT = "invalid_endpoint"  # endpoint is not an absolute URL
    AUTH_ERROR = "auth_error"  # 401 / 403
    RATE_LIMITED = "rate_limited"  # 429, quota
    MODERATION_REJECTED = "moderation_rejected"  # content policy
    MALFORMED_RESPONSE = "malformed_response"  # HTML, unparseable, no image
    TIMEOUT = "timeout"  # poller budget spent
    NETWORK_ERROR = "network_error"  # transport failure
    PROVIDER_ERROR = "provider_error"  # upstream error status / failed task
    EXHAUSTED = "exhausted"  # retry budget spent
    CANCELLED = "cancelled"  # caller aborted


class ClassifiedError(Exception):
    """Raised for every client failure; detail holds diagnostics for logging."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        retryable: bool = False,
        detail: dict[str, Any] | None = None,
        cause: "ClassifiedError | None" = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.retryable = retryable
        self.detail = detail or {}
        self.cause = cause

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "message": self.message, "retryable": self.retryable}

    def __repr__(self) -> str:
        return f"ClassifiedError(kind={self.kind.value!r}, message={self.message!r}, retryable={self.retryable})"


# Gemini finishReason values that mean the content was refused
BLOCKING_FINISH_REASONS = frozenset({
    "SAFETY",
    "IMAGE_SAFETY",
    "BLOCKLIST",
    "SPII",
    "PROHIBITED_CONTENT",
})

# Unspecified stop without an image; retryable
RETRYABLE_FINISH_REASONS = frozenset({
    "OTHER",
})

# Output withheld as recitation; not retryable
FATAL_FINISH_REASONS = frozenset({
    "RECITATION",
})

MODERATION_KEYWORDS = ("moderation", "policy", "safety", "sensitive")
RATE_LIMIT_KEYWORDS = ("rate limit", "quota", "too many requests")
AUTH_KEYWORDS = ("auth", "api key", "apikey", "unauthorized", "invalid key")

MODERATION_HINT = (
    "Suggestions: rephrase the prompt to avoid sensitive content, "
    "try different reference images, or adjust the negative prompt."
)


def moderation_error(message: str, detail: dict[str, Any] | None = None) -> ClassifiedError:
    return ClassifiedError(
        ErrorKind.MODERATION_REJECTED,
        f"Content moderation rejected the request: {message}\n\n{MODERATION_HINT}",
        retryable=False,
        detail=detail,
    )


def classify_http_status(
    status_code: int,
    message: str,
    *,
    retry_after: str | None = None,
) -> ClassifiedError:
    """
    Classify a non-2xx provider response.
    401/403 are fatal, 429 and 5xx are retryable, other 4xx are fatal.
    """
    detail: dict[str, Any] = {"http_status": status_code}
    if status_code in (401, 403):
        return ClassifiedError(
            ErrorKind.AUTH_ERROR,
            f"API authentication failed ({status_code}): {message}. Check the API key.",
            retryable=False,
            detail=detail,
        )
    if status_code == 429:
        if retry_after is not None:
            detail["retry_after"] = retry_after
        return ClassifiedError(
            ErrorKind.RATE_LIMITED,
            f"Rate limited by the provider: {message}. Please try again later.",
            retryable=True,
            detail=detail,
        )
    return ClassifiedError(
        ErrorKind.PROVIDER_ERROR,
        f"API call failed ({status_code}): {message}",
        retryable=status_code >= 500,
        detail=detail,
    )


def classify_task_failure(payload: dict[str, Any]) -> ClassifiedError:
    """
    Classify a task/status payload whose status is failed/error.
    Keyword heuristics follow what async draw backends put in error/failure_reason.
    """
    failure_reason = payload.get("failure_reason") or ""
    raw = payload.get("error") or failure_reason or payload.get("message") or "Task failed"
    if isinstance(raw, dict):
        raw = raw.get("message") or str(raw)
    error_msg = str(raw)
    lowered = error_msg.lower()
    detail: dict[str, Any] = {"failure_reason": failure_reason or None}
    task_id = payload.get("id") or payload.get("task_id") or payload.get("job_id")
    if task_id:
        detail["task_id"] = task_id

    if failure_reason == "output_moderation" or any(k in lowered for k in MODERATION_KEYWORDS):
        return moderation_error(error_msg, detail)
    if any(k in lowered for k in RATE_LIMIT_KEYWORDS):
        return ClassifiedError(
            ErrorKind.RATE_LIMITED,
            f"Rate limited by the provider: {error_msg}. Please try again later.",
            retryable=True,
            detail=detail,
        )
    if any(k in lowered for k in AUTH_KEYWORDS):
        return ClassifiedError(
            ErrorKind.AUTH_ERROR,
            f"API authentication failed: {error_msg}. Check the API key.",
            retryable=False,
            detail=detail,
        )
    return ClassifiedError(
        ErrorKind.PROVIDER_ERROR,
        f"Generation task failed: {error_msg}",
        retryable=True,
        detail=detail,
    )


def build_gemini_error_detail(result: dict[str, Any]) -> dict[str, Any]:
    """
    Extract error-related fields from a raw Gemini response for logging and classification.
    Normalized keys: block_reason, finish_reason, finish_message, safety_ratings.
    """
    detail: dict[str, Any] = {}
    if not result:
        return detail
    prompt_feedback = result.get("promptFeedback") or {}
    if isinstance(prompt_feedback, dict) and prompt_feedback.get("blockReason"):
        detail["block_reason"] = prompt_feedback["blockReason"]
    candidates = result.get("candidates") or []
    if isinstance(candidates, list) and candidates and isinstance(candidates[0], dict):
        c0 = candidates[0]
        if "finishReason" in c0:
            detail["finish_reason"] = c0["finishReason"]
        if "finishMessage" in c0:
            detail["finish_message"] = c0["finishMessage"]
        if "safetyRatings" in c0:
            detail["safety_ratings"] = c0["safetyRatings"]
    return detail


def classify_gemini_block(result: dict[str, Any]) -> ClassifiedError | None:
    """
    Classify a Gemini response that stopped without an image.
    Safety blocks are moderation rejections; OTHER is a retryable provider error,
    RECITATION a fatal one. Returns None when no stop reason explains the miss.
    """
    detail = build_gemini_error_detail(result)
    if detail.get("block_reason"):
        return moderation_error(f"prompt blocked ({detail['block_reason']})", detail)
    finish_reason = str(detail.get("finish_reason") or "").strip().upper()
    if finish_reason in BLOCKING_FINISH_REASONS:
        reason = detail.get("finish_message") or finish_reason
        return moderation_error(f"response blocked ({reason})", detail)
    if finish_reason in RETRYABLE_FINISH_REASONS or finish_reason in FATAL_FINISH_REASONS:
        reason = detail.get("finish_message") or finish_reason
        return ClassifiedError(
            ErrorKind.PROVIDER_ERROR,
            f"Gemini stopped without an image ({reason})",
            retryable=finish_reason in RETRYABLE_FINISH_REASONS,
            detail=detail,
        )
    return None
