from fastapi import APIRouter

from storyboard_ai import __version__
from storyboard_ai.core.config import settings


router = APIRouter()


@router.get("/health")
def health() -> dict:
    """Liveness check. The service is stateless: no database or cache to check."""
    return {"status": "ok", "version": __version__, "env": settings.app_env}
