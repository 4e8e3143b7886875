from typing import Callable

import httpx
import pytest

from storyboard_ai.core.config import Settings
from storyboard_ai.services.image_generation import DataURI, ProviderConfig
from tests.helpers import (
    DRAW_ENDPOINT,
    GEMINI_ENDPOINT,
    GENERIC_ENDPOINT,
    FakeClock,
    make_png,
    png_data_uri,
)


@pytest.fixture
def png_bytes() -> bytes:
    return make_png()


@pytest.fixture
def storyboard() -> DataURI:
    return png_data_uri()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings()


@pytest.fixture
def gemini_config() -> ProviderConfig:
    return ProviderConfig(endpoint=GEMINI_ENDPOINT, api_key="test-key", model_name="gemini-2.5-flash-image")


@pytest.fixture
def draw_config() -> ProviderConfig:
    return ProviderConfig(endpoint=DRAW_ENDPOINT, api_key="test-key", model_name="nano-banana")


@pytest.fixture
def generic_config() -> ProviderConfig:
    return ProviderConfig(endpoint=GENERIC_ENDPOINT, api_key="test-key", model_name="dall-e-2")


@pytest.fixture
def mock_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Factory: AsyncClient whose requests are answered by handler."""

    def factory(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler))

    return factory
