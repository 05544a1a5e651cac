"""
Pydantic schemas for the quake map API.

Separated from the route handlers so they are reusable across
the codebase (session endpoints, one-shot view endpoint, tests).
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, model_validator

from backend.app.core.config import settings
from backend.app.spatial.viewport import ViewportBounds


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------

class BoundsInput(BaseModel):
    """
    Visible map rectangle as reported by the map widget.
    ``west`` may exceed ``east`` when the view straddles the antimeridian.
    """
    north: float = Field(..., ge=-90.0, le=90.0, examples=[60.0])
    south: float = Field(..., ge=-90.0, le=90.0, examples=[20.0])
    east: float = Field(..., ge=-180.0, le=180.0, examples=[40.0])
    west: float = Field(..., ge=-180.0, le=180.0, examples=[-10.0])
    zoom: int = Field(..., ge=0, le=22, description="Map zoom level", examples=[5])

    @model_validator(mode="after")
    def _check_order(self) -> "BoundsInput":
        if self.south > self.north:
            raise ValueError("south must not exceed north")
        return self

    def to_bounds(self) -> ViewportBounds:
        return ViewportBounds(
            north=self.north, south=self.south,
            east=self.east, west=self.west, zoom=self.zoom,
        )


class ViewRequest(BaseModel):
    """Request body for POST /api/v1/quakes/view."""
    range: str = Field("24h", description="24h, 7d, 30d or short, medium, long; anything else means 24h")
    min_magnitude: float = Field(0.0, ge=0.0, le=10.0)
    bounds: Optional[BoundsInput] = Field(
        None, description="Visible rectangle; omitted means the whole world at zoom 2",
    )
    mode: str = Field("balanced", description="performance, balanced or high_quality; anything else means balanced")
    limit: Optional[int] = Field(
        settings.DEFAULT_RESULT_CAP, ge=1, le=20000,
        description="Cap applied to the feed result before viewport selection",
    )
    metric: Optional[str] = Field(None, description="planar or haversine")


class FiltersUpdate(BaseModel):
    """Partial update for the live session; omitted fields are unchanged."""
    range: Optional[str] = Field(None, description="Resolved like GET /feed; unknown values mean 24h")
    min_magnitude: Optional[float] = Field(None, ge=0.0, le=10.0)
    mode: Optional[str] = Field(None, description="Unknown values mean balanced")
    refresh: bool = Field(False, description="Skip the debounce and fetch now")
    wait: bool = Field(False, description="Block until the pipeline is idle")


class ViewportUpdate(BaseModel):
    bounds: BoundsInput
    wait: bool = False


# ---------------------------------------------------------------------------
# Response schemas
# ---------------------------------------------------------------------------

class CacheKeysResponse(BaseModel):
    count: int
    keys: list[str]
    memory_entries: int


class CacheClearResponse(BaseModel):
    removed: int
