"""
Provider classification from the endpoint URL.
Pure string inspection: no network probing. New wire shapes are added here and in
request_builder / extractors, never at call sites.
"""
import re

from storyboard_ai.services.image_generation.base import Provider

# Documentation pages people paste instead of the API endpoint
DOC_URL_MARKERS = ("/doc", "/docs", "/documentation", "apifox.cn", "/#/")

_DRAW_SEGMENT_RE = re.compile(r"/draw/[^/]+/?$")


def _path_of(endpoint: str) -> str:
    """Lowercased URL text without query/fragment; tolerant of garbage input."""
    text = (endpoint or "").strip().lower()
    for sep in ("?", "#"):
        text = text.split(sep, 1)[0]
    return text


def classify(endpoint: str, override: Provider | None = None) -> Provider:
    """
    Infer the wire protocol from the endpoint URL.

    Total: unknown or malformed input is GENERIC. An explicit override wins.
    """
    if override is not None:
        return override
    path = _path_of(endpoint if isinstance(endpoint, str) else "")
    if "/models/" in path and (":generatecontent" in path or ":streamgeneratecontent" in path):
        return Provider.GEMINI
    if "/draw/" in path:
        return Provider.ASYNC_TASK
    return Provider.GENERIC


def result_endpoint_for(provider: Provider, endpoint: str) -> str | None:
    """Task result URL for providers that poll; None for the rest."""
    if provider is not Provider.ASYNC_TASK:
        return None
    base, sep, query = endpoint.strip().partition("?")
    if _DRAW_SEGMENT_RE.search(base):
        base = _DRAW_SEGMENT_RE.sub("/draw/result", base)
    else:
        base = base.rstrip("/") + "/result"
    return base + (sep + query if query else "")


def looks_like_documentation_url(endpoint: str) -> bool:
    value = (endpoint or "").strip().lower()
    if _path_of(value).endswith(".html"):
        return True
    return any(marker in value for marker in DOC_URL_MARKERS)
