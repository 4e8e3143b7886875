"""
Prometheus-based metrics for the image generation client.
Provides /metrics endpoint for scraping.
"""
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST
from fastapi import APIRouter, Response


# Counters
image_generation_attempts_total = Counter(
    "image_generation_attempts_total",
    "Provider call attempts by outcome (success or error kind)",
    ["provider", "outcome"],
)

image_generation_requests_total = Counter(
    "image_generation_requests_total",
    "generate() calls by final outcome",
    ["provider", "outcome"],
)

image_generation_poll_attempts_total = Counter(
    "image_generation_poll_attempts_total",
    "Async task poll requests by outcome",
    ["outcome"],  # pending, succeeded, failed, transient_error
)

# Histograms
image_generation_duration_seconds = Histogram(
    "image_generation_duration_seconds",
    "generate() wall-clock duration",
    ["provider"],
    buckets=[1, 5, 10, 30, 60, 120, 300],
)


# Metrics endpoint router
router = APIRouter()


@router.get("/metrics")
def metrics_endpoint() -> Response:
    """Prometheus metrics endpoint for scraping."""
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
