"""
Tests for the async task poller. Time is virtual (FakeClock); HTTP is a MockTransport.
"""
import json

import httpx
import pytest

from storyboard_ai.services.image_generation import ClassifiedError, ErrorKind, poll
from tests.helpers import DRAW_RESULT_ENDPOINT, b64, json_response, make_png


class Recorder:
    """MockTransport handler that replays canned responses and records poll bodies."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.bodies = []
        self.headers = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, content=make_png(), headers={"content-type": "image/png"})
        self.bodies.append(json.loads(request.content))
        self.headers.append(request.headers)
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.mark.asyncio
async def test_always_pending_times_out(mock_client, draw_config, clock):
    handler = Recorder(json_response({"id": "task-42", "status": "running", "progress": 50}))
    async with mock_client(handler) as client:
        with pytest.raises(ClassifiedError) as exc:
            await poll(DRAW_RESULT_ENDPOINT, "task-42", draw_config, client=client, sleep=clock.sleep)

    assert exc.value.kind is ErrorKind.TIMEOUT
    assert not exc.value.retryable
    assert "Task ID: task-42" in exc.value.message
    assert exc.value.detail["task_id"] == "task-42"
    assert len(handler.bodies) == 30
    assert clock.now <= 61
    assert clock.sleeps == [2.0] * 30


@pytest.mark.asyncio
async def test_poll_request_shape(mock_client, draw_config, clock):
    handler = Recorder(json_response({"status": "succeeded", "results": [{"url": "https://cdn.example.com/o.png"}]}))
    async with mock_client(handler) as client:
        result = await poll(DRAW_RESULT_ENDPOINT, "task-7", draw_config, client=client, sleep=clock.sleep)

    assert handler.bodies == [{"id": "task-7"}]
    assert handler.headers[0]["authorization"] == "Bearer test-key"
    # Sleeps before the first poll
    assert clock.sleeps == [2.0]
    assert result.image.mime == "image/png"
    assert result.model_name == "nano-banana"


@pytest.mark.asyncio
async def test_failed_task_stops_immediately(mock_client, draw_config, clock):
    handler = Recorder(
        json_response({"status": "running"}),
        json_response({"status": "failed", "error": "upstream worker crashed"}),
        json_response({"status": "succeeded", "image": b64(make_png())}),
    )
    async with mock_client(handler) as client:
        with pytest.raises(ClassifiedError) as exc:
            await poll(DRAW_RESULT_ENDPOINT, "task-9", draw_config, client=client, sleep=clock.sleep)

    assert exc.value.kind is ErrorKind.PROVIDER_ERROR
    assert not exc.value.retryable
    assert len(handler.bodies) == 2
    assert exc.value.detail["task_id"] == "task-9"


@pytest.mark.asyncio
async def test_failed_task_moderation(mock_client, draw_config, clock):
    handler = Recorder(json_response({"status": "failed", "failure_reason": "output_moderation", "error": "flagged"}))
    async with mock_client(handler) as client:
        with pytest.raises(ClassifiedError) as exc:
            await poll(DRAW_RESULT_ENDPOINT, "task-1", draw_config, client=client, sleep=clock.sleep)
    assert exc.value.kind is ErrorKind.MODERATION_REJECTED


@pytest.mark.asyncio
async def test_transient_failures_count_as_pending(mock_client, draw_config, clock):
    png = make_png()
    handler = Recorder(
        httpx.ConnectError("connection reset"),
        httpx.Response(502, text="bad gateway"),
        httpx.Response(200, text="<html>oops</html>", headers={"content-type": "text/html"}),
        json_response({"status": "processing", "progress": 80}),
        json_response({"status": "completed", "image": b64(png)}),
    )
    async with mock_client(handler) as client:
        result = await poll(DRAW_RESULT_ENDPOINT, "task-3", draw_config, client=client, sleep=clock.sleep)

    assert len(handler.bodies) == 5
    assert result.image.decode() == png


@pytest.mark.asyncio
async def test_failed_status_on_error_response_is_terminal(mock_client, draw_config, clock):
    handler = Recorder(json_response({"id": "t-f", "status": "failed", "error": "worker crashed"}, status_code=500))
    async with mock_client(handler) as client:
        with pytest.raises(ClassifiedError) as exc:
            await poll(DRAW_RESULT_ENDPOINT, "t-f", draw_config, client=client, sleep=clock.sleep)

    assert exc.value.kind is ErrorKind.PROVIDER_ERROR
    assert "worker crashed" in exc.value.message
    assert not exc.value.retryable
    assert len(handler.bodies) == 1
    assert clock.sleeps == [2.0]


@pytest.mark.asyncio
async def test_error_response_without_failed_status_keeps_polling(mock_client, draw_config, clock):
    png = make_png()
    handler = Recorder(
        json_response({"id": "t-p", "status": "processing"}, status_code=503),
        json_response({"status": "succeeded", "results": [{"image": b64(png)}]}),
    )
    async with mock_client(handler) as client:
        result = await poll(DRAW_RESULT_ENDPOINT, "t-p", draw_config, client=client, sleep=clock.sleep)

    assert len(handler.bodies) == 2
    assert result.image.decode() == png


@pytest.mark.asyncio
async def test_succeeded_without_image_keeps_polling(mock_client, draw_config, clock):
    handler = Recorder(
        json_response({"status": "succeeded", "results": []}),
        json_response({"status": "succeeded", "results": [{"url": "https://cdn.example.com/late.png"}]}),
    )
    async with mock_client(handler) as client:
        result = await poll(DRAW_RESULT_ENDPOINT, "task-5", draw_config, client=client, sleep=clock.sleep)
    assert len(handler.bodies) == 2
    assert result.image.mime == "image/png"


@pytest.mark.asyncio
async def test_on_attempt_reports_progress(mock_client, draw_config, clock):
    seen = []
    handler = Recorder(
        json_response({"status": "running"}),
        json_response({"status": "succeeded", "image": b64(make_png())}),
    )
    async with mock_client(handler) as client:
        await poll(
            DRAW_RESULT_ENDPOINT, "task-8", draw_config,
            client=client, sleep=clock.sleep, max_attempts=5,
            on_attempt=lambda n, total: seen.append((n, total)),
        )
    assert seen == [(1, 5), (2, 5)]


@pytest.mark.asyncio
async def test_download_failure_after_success_is_not_retryable(mock_client, draw_config, clock):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(500)
        return json_response({"status": "succeeded", "results": [{"url": "https://cdn.example.com/o.png"}]})

    async with mock_client(handler) as client:
        with pytest.raises(ClassifiedError) as exc:
            await poll(DRAW_RESULT_ENDPOINT, "task-2", draw_config, client=client, sleep=clock.sleep)
    assert exc.value.kind is ErrorKind.NETWORK_ERROR
    assert not exc.value.retryable
