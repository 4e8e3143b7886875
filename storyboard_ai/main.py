"""
FastAPI application for the storyboard AI image service.
Serves health, the AI image API and metrics.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from storyboard_ai import __version__
from storyboard_ai.core.config import settings
from storyboard_ai.core.logging import configure_logging
from storyboard_ai.api.routes import generation, health
from storyboard_ai.utils.metrics import router as metrics_router


configure_logging()

app = FastAPI(
    title="Storyboard AI Image API",
    description="Provider-agnostic AI image generation for the storyboard editor",
    version=__version__,
)

# CORS
origins = settings.cors_origins_list
if not origins:
    origins = ["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(health.router, tags=["health"])
app.include_router(generation.router)
app.include_router(metrics_router)
