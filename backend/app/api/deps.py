"""
FastAPI dependencies for the long-lived pipeline objects.

The lifespan handler in ``main.py`` stores them on ``app.state``; routes
pull them in with ``Depends`` so tests can swap them through
``app.dependency_overrides``.

Usage in a route:
    @router.get("/feed")
    async def feed(client: FeedClient = Depends(get_feed_client)):
        ...
"""

from __future__ import annotations

from fastapi import Request

from backend.app.core.cache import CacheTier
from backend.app.core.errors import QuakeMapError
from backend.app.ingestion.feed_client import FeedClient
from backend.app.pipeline.orchestrator import Orchestrator


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise QuakeMapError(
            f"{name} is not initialised",
            status_code=503,
            error_code="SERVICE_UNAVAILABLE",
        )
    return value


def get_cache(request: Request) -> CacheTier:
    return _state(request, "cache")


def get_feed_client(request: Request) -> FeedClient:
    return _state(request, "feed_client")


def get_orchestrator(request: Request) -> Orchestrator:
    return _state(request, "orchestrator")
