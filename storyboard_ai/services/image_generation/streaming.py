"""
Server-Sent Events reader for task-progress streams.
The last parsed event is the authoritative task state; reading stops at the first
terminal status. A corrupt frame is logged and skipped.
"""
import codecs
import json
import logging
from typing import Any, AsyncIterator, Callable

from storyboard_ai.services.image_generation.base import TERMINAL_STATUSES
from storyboard_ai.services.image_generation.cancellation import CancellationSignal, guarded
from storyboard_ai.services.image_generation.failure_types import ClassifiedError, ErrorKind

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"


def _is_terminal(event: dict[str, Any]) -> bool:
    status = event.get("status")
    return isinstance(status, str) and status.strip().lower() in TERMINAL_STATUSES


def parse_sse_line(line: str) -> dict[str, Any] | None:
    """Parse one 'data: {...}' line; None for other lines, keep-alives and bad JSON."""
    line = line.rstrip("\r")
    if not line.startswith(DATA_PREFIX):
        return None
    raw = line[len(DATA_PREFIX):].strip()
    if not raw or raw == DONE_MARKER:
        return None
    try:
        event = json.loads(raw)
    except json.JSONDecodeError as e:
        logger.warning("sse_frame_unparseable", extra={"error": f"{e.msg} at {e.pos}"})
        return None
    if not isinstance(event, dict):
        logger.warning("sse_frame_unparseable", extra={"error": f"expected object, got {type(event).__name__}"})
        return None
    return event


async def read_stream(
    chunks: AsyncIterator[bytes],
    *,
    signal: CancellationSignal | None = None,
    on_event: Callable[[dict[str, Any]], None] | None = None,
) -> dict[str, Any]:
    """
    Consume an SSE byte stream and return the terminal event.

    Raises:
        ClassifiedError(MALFORMED_RESPONSE): the stream ended without a terminal event.
        ClassifiedError(CANCELLED): signal fired while waiting for the next chunk.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    iterator = chunks.__aiter__()
    buffer = ""
    last_event: dict[str, Any] | None = None
    events_seen = 0

    def handle(line: str) -> bool:
        nonlocal last_event, events_seen
        event = parse_sse_line(line)
        if event is None:
            return False
        last_event = event
        events_seen += 1
        if on_event is not None:
            on_event(event)
        return _is_terminal(event)

    while True:
        try:
            chunk = await guarded(iterator.__anext__(), signal)
        except StopAsyncIteration:
            break
        buffer += decoder.decode(chunk)
        lines = buffer.split("\n")
        # Last element is an incomplete line (or "")
        buffer = lines.pop()
        for line in lines:
            if handle(line):
                return last_event  # type: ignore[return-value]

    buffer += decoder.decode(b"", final=True)
    for line in buffer.split("\n"):
        if handle(line):
            return last_event  # type: ignore[return-value]

    if last_event is None:
        raise ClassifiedError(
            ErrorKind.MALFORMED_RESPONSE,
            "Could not parse any event from the event stream",
        )
    raise ClassifiedError(
        ErrorKind.MALFORMED_RESPONSE,
        f"Event stream ended before the task finished (last status: {last_event.get('status')!r})",
        detail={"events_seen": events_seen},
    )
