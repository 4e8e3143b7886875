"""
JSON-lines logging for the image service.
Provider credentials travel per call (Gemini puts the key in the URL), so every
handler carries SecretRedactionFilter.
"""
import json
import logging
import re
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone

from storyboard_ai.core.config import settings

# ?key=..., &key=..., "Bearer ..." in messages and string extras
_SECRET_PATTERNS = (
    (re.compile(r"([?&]key=)[^&\s\"']+"), r"\1***"),
    (re.compile(r"(Bearer\s+)[A-Za-z0-9._\-]+"), r"\1***"),
)


def redact_secrets(text: str) -> str:
    for pattern, replacement in _SECRET_PATTERNS:
        text = pattern.sub(replacement, text)
    return text


class SecretRedactionFilter(logging.Filter):
    """Mask API keys in the formatted message and in string extra fields."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.args:
            record.msg = record.getMessage()
            record.args = None
        if isinstance(record.msg, str):
            record.msg = redact_secrets(record.msg)
        for field in JsonFormatter.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if isinstance(value, str):
                setattr(record, field, redact_secrets(value))
        return True


class JsonFormatter(logging.Formatter):
    """JSON log formatter with support for extra fields."""

    # Fields to extract from log record's extra dict
    EXTRA_FIELDS = (
        "provider", "model", "endpoint", "attempt", "max_attempts",
        "delay_seconds", "failure_kind", "retryable", "success_after_retry",
        "task_id", "poll_attempt", "status_code", "content_type",
        "image_count", "error", "path", "method",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "env": settings.app_env,
        }

        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def configure_logging() -> None:
    formatter = JsonFormatter()
    redaction = SecretRedactionFilter()
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    handler.addFilter(redaction)
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level, logging.INFO))
    handlers: list[logging.Handler] = [handler]
    if settings.log_file:
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redaction)
        handlers.append(file_handler)
    root.handlers = handlers
    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
