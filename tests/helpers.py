"""Test helpers: real PNG bytes, canned responses, a fake clock."""
import base64
import io
import json

import httpx
from PIL import Image
from PIL.PngImagePlugin import PngInfo

from storyboard_ai.services.image_generation import DataURI

GEMINI_ENDPOINT = "https://generativelanguage.googleapis.com/v1beta/models/gemini-2.5-flash-image:generateContent"
DRAW_ENDPOINT = "https://api.example.com/v1/draw/nano-banana"
DRAW_RESULT_ENDPOINT = "https://api.example.com/v1/draw/result"
GENERIC_ENDPOINT = "https://api.example.com/v1/images/generations"


def make_png(size: tuple[int, int] = (1, 1), color: str = "red") -> bytes:
    """1x1 PNG with a text chunk so it clears the 100-byte floor."""
    info = PngInfo()
    info.add_text("Comment", "storyboard test frame " * 4)
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG", pnginfo=info)
    return buf.getvalue()


def png_data_uri(color: str = "red") -> DataURI:
    return DataURI.from_bytes(make_png(color=color), "image/png")


def b64(content: bytes) -> str:
    return base64.b64encode(content).decode("ascii")


def json_response(payload, status_code: int = 200, headers: dict | None = None) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=json.dumps(payload).encode(),
        headers={"content-type": "application/json", **(headers or {})},
    )


class FakeClock:
    """Records sleeps and advances virtual time instead of waiting."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay
