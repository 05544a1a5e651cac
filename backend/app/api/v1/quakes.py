"""
FastAPI quake map endpoints.

Endpoints:
    GET  /api/v1/quakes/feed              — Ranked, filtered feed events
    POST /api/v1/quakes/view              — One-shot fetch → viewport → clusters
    GET  /api/v1/quakes/session           — Current snapshot of the live session
    POST /api/v1/quakes/session/filters   — Change range / magnitude floor / mode
    POST /api/v1/quakes/session/viewport  — Report the visible map rectangle
    GET  /api/v1/quakes/tiers             — Render budget and cluster thresholds
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_feed_client, get_orchestrator
from backend.app.api.schemas import FiltersUpdate, ViewportUpdate, ViewRequest
from backend.app.core.config import settings
from backend.app.core.errors import FeedNetworkError, FetchAbortedError, ValidationError
from backend.app.ingestion.feed_client import FeedClient, FetchResult, FetchStatus
from backend.app.pipeline.orchestrator import Orchestrator, build_view
from backend.app.spatial.clustering import THRESHOLD_TIERS, WORLD_THRESHOLD, DistanceMetric
from backend.app.spatial.render_hints import heatmap_points
from backend.app.spatial.viewport import MODE_SCALE, ZOOM_CAP_TIERS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/quakes", tags=["quake-map"])


def _raise_for_status(result: FetchResult) -> None:
    if result.status == FetchStatus.NETWORK_ERROR:
        raise FeedNetworkError(result.feed_url, result.error or "Failed to fetch")
    if result.status == FetchStatus.ABORTED:
        raise FetchAbortedError(result.abort_reason or "cancelled")


# ---------------------------------------------------------------------------
# Stateless endpoints
# ---------------------------------------------------------------------------

@router.get("/feed")
async def get_feed(
    range: str = Query("24h", description="24h, 7d or 30d; anything else means 24h"),
    min_magnitude: float = Query(0.0, ge=0.0, le=10.0),
    limit: int = Query(settings.DEFAULT_RESULT_CAP, ge=1, le=20000),
    client: FeedClient = Depends(get_feed_client),
):
    """
    Fetch the USGS summary feed for ``range``.

    Events at or above ``min_magnitude`` come back sorted by magnitude,
    strongest first, truncated to ``limit``.
    """
    result = await client.fetch_events(range, min_magnitude, limit)
    _raise_for_status(result)
    return result.to_dict()


@router.post("/view")
async def build_map_view(
    req: ViewRequest,
    heatmap: bool = Query(False, description="Include heatmap points for the rendered events"),
    client: FeedClient = Depends(get_feed_client),
):
    """
    Full pipeline for a single request: fetch, cull to the viewport,
    rank, cap by zoom tier and performance mode, then cluster.
    """
    metric = req.metric or settings.CLUSTER_DISTANCE_METRIC
    if metric not in {m.value for m in DistanceMetric}:
        raise ValidationError(f"Unknown distance metric: {metric}", field="metric")

    view = await build_view(
        client,
        req.range,
        req.min_magnitude,
        req.bounds.to_bounds() if req.bounds else None,
        req.mode,
        result_cap=req.limit,
        metric=metric,
    )
    _raise_for_status(view.fetch)

    body = view.to_dict()
    if heatmap and view.selection is not None:
        body["heatmap"] = heatmap_points(view.selection.events)
    return body


@router.get("/tiers")
async def get_tiers():
    """Render budget per zoom tier and clustering thresholds."""
    return {
        "render_cap": {
            "tiers": [{"min_zoom": z, "cap": cap} for z, cap in ZOOM_CAP_TIERS],
            "mode_scale": {mode.value: scale for mode, scale in MODE_SCALE.items()},
        },
        "cluster_threshold": {
            "tiers": [{"zoom_above": z, "threshold": t} for z, t in THRESHOLD_TIERS],
            "default": WORLD_THRESHOLD,
            "metric": settings.CLUSTER_DISTANCE_METRIC,
        },
        "debounce_ms": {
            "range": settings.DEBOUNCE_RANGE_MS,
            "magnitude": settings.DEBOUNCE_MAGNITUDE_MS,
            "bounds": settings.DEBOUNCE_BOUNDS_MS,
        },
    }


# ---------------------------------------------------------------------------
# Live session
# ---------------------------------------------------------------------------

@router.get("/session")
async def get_session(orchestrator: Orchestrator = Depends(get_orchestrator)):
    return orchestrator.snapshot().to_dict()


@router.post("/session/filters")
async def update_filters(
    req: FiltersUpdate,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    """
    Apply filter changes to the live session.

    Range and magnitude changes are debounced before the refetch; a mode
    change only re-derives the current clusters.
    """
    if req.range is not None:
        orchestrator.set_range(req.range)
    if req.min_magnitude is not None:
        orchestrator.set_magnitude_floor(req.min_magnitude)
    if req.mode is not None:
        orchestrator.set_mode(req.mode)
    if req.refresh:
        orchestrator.refresh()
    if req.wait:
        await orchestrator.wait_idle()
    return orchestrator.snapshot().to_dict()


@router.post("/session/viewport")
async def update_viewport(
    req: ViewportUpdate,
    orchestrator: Orchestrator = Depends(get_orchestrator),
):
    orchestrator.set_bounds(req.bounds.to_bounds())
    if req.wait:
        await orchestrator.wait_idle()
    return orchestrator.snapshot().to_dict()
