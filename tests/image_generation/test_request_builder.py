"""Tests for provider-specific request construction."""
import dataclasses

import httpx
import pytest

from storyboard_ai.services.image_generation import (
    ClassifiedError,
    ErrorKind,
    GenerationRequest,
    Provider,
    ProviderConfig,
    build,
    build_validation_request,
    calculate_image_size,
)
from storyboard_ai.services.image_generation.request_builder import redact_url
from tests.helpers import GEMINI_ENDPOINT, png_data_uri


@pytest.fixture
def images():
    return png_data_uri("red"), png_data_uri("green"), png_data_uri("blue")


def _request(images, **kwargs):
    return GenerationRequest(prompt="A knight at dawn", storyboard_image=images[0], **kwargs)


@pytest.mark.parametrize(
    "ratio,expected",
    [
        ("16:9", (1024, 576)),
        ("9:16", (576, 1024)),
        ("1:1", (1024, 1024)),
        ("4:3", (1024, 768)),
        ("21:9", (1024, 432)),
        ("2.39:1", (1024, 424)),
        ("auto", (1024, 1024)),
    ],
)
def test_calculate_image_size(ratio, expected):
    width, height = calculate_image_size(ratio)
    assert (width, height) == expected
    assert width % 8 == 0 and height % 8 == 0


@pytest.mark.parametrize("ratio", ["", "wide", "16:0", "0:9", "-4:3", "16:9:1"])
def test_calculate_image_size_rejects_invalid(ratio):
    with pytest.raises(ClassifiedError) as exc:
        calculate_image_size(ratio)
    assert exc.value.kind is ErrorKind.INVALID_INPUT


def test_gemini_body_shape_and_key_in_query(gemini_config, images):
    request = _request(images, negative_prompt="blurry", aspect_ratio="16:9")
    built = build(Provider.GEMINI, request, gemini_config, storyboard=images[0], role=images[1], scene=images[2])

    url = httpx.URL(built.url)
    assert url.params["key"] == "test-key"
    assert "Authorization" not in built.headers
    parts = built.body["contents"][0]["parts"]
    assert built.body["contents"][0]["role"] == "user"
    assert built.body["generationConfig"] == {"responseModalities": ["IMAGE"]}
    assert parts[0]["text"].startswith("A knight at dawn")
    assert parts[0]["text"].endswith("\nAvoid: blurry")
    assert "16:9" in parts[0]["text"]
    assert [p["inlineData"]["data"] for p in parts[1:]] == [img.data for img in images]
    assert all(p["inlineData"]["mimeType"] == "image/png" for p in parts[1:])


def test_gemini_without_negative_prompt_has_no_avoid_line(gemini_config, images):
    built = build(Provider.GEMINI, _request(images), gemini_config, storyboard=images[0])
    text = built.body["contents"][0]["parts"][0]["text"]
    assert "Avoid" not in text
    assert len(built.body["contents"][0]["parts"]) == 2


def test_async_task_body(draw_config, images):
    request = _request(images, negative_prompt="text, watermark", aspect_ratio="9:16")
    built = build(Provider.ASYNC_TASK, request, draw_config, storyboard=images[0], role=images[1])

    assert built.headers["Authorization"] == "Bearer test-key"
    assert built.body["model"] == "nano-banana"
    assert built.body["imageSize"] == "576x1024"
    assert built.body["aspectRatio"] == "9:16"
    assert built.body["urls"] == [images[0].data, images[1].data]
    assert built.body["negativePrompt"] == "text, watermark"
    assert built.body["webhook"] == ""
    assert built.body["shutProgress"] is False
    assert built.url == draw_config.endpoint


def test_async_task_auto_ratio_requests_task_id(draw_config, images):
    built = build(Provider.ASYNC_TASK, _request(images, aspect_ratio="auto"), draw_config, storyboard=images[0])

    assert built.body["webhook"] == "-1"
    assert built.body["imageSize"] == "1024x1024"
    assert "negativePrompt" not in built.body


def test_generic_body(generic_config, images):
    request = _request(images, negative_prompt="low quality")
    built = build(Provider.GENERIC, request, generic_config, storyboard=images[0], role=images[1], scene=images[2])

    assert built.headers["Authorization"] == "Bearer test-key"
    assert built.body["model"] == "dall-e-2"
    assert built.body["n"] == 1
    assert built.body["image"] == images[0].uri
    assert built.body["reference_image"] == images[1].uri
    assert built.body["scene_image"] == images[2].uri
    assert built.body["negative_prompt"] == "low quality"


def test_generic_omits_absent_references(generic_config, images):
    built = build(Provider.GENERIC, _request(images), generic_config, storyboard=images[0])
    assert "reference_image" not in built.body
    assert "scene_image" not in built.body
    assert "negative_prompt" not in built.body


@pytest.mark.parametrize("provider", list(Provider))
def test_image_order_follows_inputs(provider, images, gemini_config):
    config = dataclasses.replace(gemini_config, model_name="m")
    request = _request(images)

    def ordered(built):
        if provider is Provider.GEMINI:
            return [p["inlineData"]["data"] for p in built.body["contents"][0]["parts"][1:]]
        if provider is Provider.ASYNC_TASK:
            return built.body["urls"]
        return [built.body["image"], built.body["reference_image"], built.body["scene_image"]]

    forward = ordered(build(provider, request, config, storyboard=images[0], role=images[1], scene=images[2]))
    swapped = ordered(build(provider, request, config, storyboard=images[2], role=images[0], scene=images[1]))

    assert swapped == [forward[2], forward[0], forward[1]]


def test_build_does_not_mutate_request(generic_config, images):
    request = _request(images, negative_prompt="x")
    before = dataclasses.asdict(request)
    build(Provider.GENERIC, request, generic_config, storyboard=images[0])
    assert dataclasses.asdict(request) == before


@pytest.mark.parametrize("endpoint", ["", "api.example.com/v1/images", "/v1/images", "ftp://example.com/x", "http://"])
def test_invalid_endpoint(endpoint, images):
    config = ProviderConfig(endpoint=endpoint, api_key="k", model_name="m")
    with pytest.raises(ClassifiedError) as exc:
        build(Provider.GENERIC, _request(images), config, storyboard=images[0])
    assert exc.value.kind is ErrorKind.INVALID_ENDPOINT


def test_gemini_validation_request_uses_text_modality(gemini_config):
    check = build_validation_request(Provider.GEMINI, gemini_config)
    assert check.body["generationConfig"]["responseModalities"] == ["TEXT"]
    assert httpx.URL(check.url).params["key"] == "test-key"


def test_redact_url_hides_key():
    redacted = redact_url(GEMINI_ENDPOINT + "?key=secret")
    assert "secret" not in redacted
