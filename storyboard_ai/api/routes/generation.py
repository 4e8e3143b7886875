"""
AI image API for the storyboard editor: generate a frame, validate a provider config.
The browser sends images as data URIs, http(s) URLs or server-side paths.
"""
import logging

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from storyboard_ai.services.image_generation import (
    ClassifiedError,
    ErrorKind,
    GenerationClient,
    GenerationRequest,
    Provider,
    ProviderConfig,
    parse_image_ref,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ai-image", tags=["ai-image"])

ERROR_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INVALID_ENDPOINT: 400,
    ErrorKind.AUTH_ERROR: 401,
    ErrorKind.MODERATION_REJECTED: 422,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.CANCELLED: 499,
}
DEFAULT_ERROR_STATUS = 502


# ---------- Pydantic models (match the editor's AIImageConfig / GenerateAIImageParams) ----------
class ProviderConfigIn(BaseModel):
    api_endpoint: str
    api_key: str = ""
    model_name: str = ""
    provider: Provider | None = None

    def to_config(self) -> ProviderConfig:
        return ProviderConfig(
            endpoint=self.api_endpoint.strip(),
            api_key=self.api_key.strip(),
            model_name=self.model_name.strip(),
            provider=self.provider,
        )


class GenerationRequestIn(BaseModel):
    prompt: str
    negative_prompt: str | None = None
    storyboard_image: str = Field(..., description="data URI, http(s) URL or server-side path")
    role_image: str | None = None
    scene_image: str | None = None
    aspect_ratio: str = "16:9"

    @field_validator("role_image", "scene_image", "negative_prompt")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        return v


class GenerateBody(BaseModel):
    config: ProviderConfigIn
    request: GenerationRequestIn


class GenerateOut(BaseModel):
    image: str
    model: str


class ValidateOut(BaseModel):
    ok: bool


def error_response(error: ClassifiedError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(error.kind, DEFAULT_ERROR_STATUS)
    return JSONResponse(status_code=status_code, content={"error": error.to_dict()})


def _to_request(body: GenerationRequestIn) -> GenerationRequest:
    return GenerationRequest(
        prompt=body.prompt,
        negative_prompt=body.negative_prompt,
        storyboard_image=parse_image_ref(body.storyboard_image),
        role_image=parse_image_ref(body.role_image) if body.role_image else None,
        scene_image=parse_image_ref(body.scene_image) if body.scene_image else None,
        aspect_ratio=body.aspect_ratio,
    )


def get_generation_client() -> GenerationClient:
    return GenerationClient()


@router.post("/generate", response_model=GenerateOut)
async def generate_image(body: GenerateBody):
    """Generate one storyboard frame; errors come back as {error: {kind, message, retryable}}."""
    client = get_generation_client()
    try:
        result = await client.generate(_to_request(body.request), body.config.to_config())
    except ClassifiedError as e:
        return error_response(e)
    return GenerateOut(image=result.image.uri, model=result.model_name)


@router.post("/validate", response_model=ValidateOut)
async def validate_provider_config(body: ProviderConfigIn):
    """Check the configured endpoint with a minimal provider-appropriate request."""
    client = get_generation_client()
    try:
        ok = await client.validate_config(body.to_config())
    except ClassifiedError as e:
        return error_response(e)
    return ValidateOut(ok=ok)
