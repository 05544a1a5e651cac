"""
viewport.py — Decide which events are worth rendering for the current map view.

Three steps, all pure:

    1. FILTER  — keep events inside the visible rectangle
    2. RANK    — magnitude descending; magnitudes within 0.5 of each other
                 are ordered by recency instead
    3. CAP     — truncate to a budget set by zoom tier and performance mode

Render budget (balanced mode):

    zoom ≥ 8 → 1000    zoom ≥ 6 → 500    zoom ≥ 4 → 250    otherwise → 100

``high_quality`` doubles every tier, ``performance`` takes three quarters.
The cap bounds n for the O(n²) clustering pass that follows, so the two
always run in series.
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Tuple

from backend.app.quakes.models import Event
from backend.app.spatial.geo import inside_rectangle

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_ZOOM = 2  # world view, used before the first viewport report
RECENCY_TIE_WINDOW = 0.5  # magnitude units

# (minimum zoom, balanced cap), checked top-down
ZOOM_CAP_TIERS: Tuple[Tuple[int, int], ...] = (
    (8, 1000),
    (6, 500),
    (4, 250),
    (0, 100),
)


class PerformanceMode(str, Enum):
    """Render-budget selector exposed to the UI."""
    PERFORMANCE = "performance"
    BALANCED = "balanced"
    HIGH_QUALITY = "high_quality"


MODE_SCALE: Dict[PerformanceMode, float] = {
    PerformanceMode.PERFORMANCE: 0.75,
    PerformanceMode.BALANCED: 1.0,
    PerformanceMode.HIGH_QUALITY: 2.0,
}


def resolve_mode(value: Any) -> PerformanceMode:
    """Unknown or missing values mean balanced."""
    if isinstance(value, PerformanceMode):
        return value
    try:
        return PerformanceMode(str(value or "").strip().lower().replace("-", "_"))
    except ValueError:
        return PerformanceMode.BALANCED


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ViewportBounds:
    """Visible map rectangle in degrees plus the zoom level. Latest wins."""
    north: float
    south: float
    east: float
    west: float
    zoom: int

    def __post_init__(self) -> None:
        for name in ("north", "south"):
            value = getattr(self, name)
            if not (-90.0 <= value <= 90.0):
                raise ValueError(f"{name} must be in [-90, 90], got {value}")
        for name in ("east", "west"):
            value = getattr(self, name)
            if not (-180.0 <= value <= 180.0):
                raise ValueError(f"{name} must be in [-180, 180], got {value}")
        if self.south > self.north:
            raise ValueError(
                f"south ({self.south}) must not exceed north ({self.north})"
            )
        if self.zoom < 0:
            raise ValueError(f"zoom must be non-negative, got {self.zoom}")

    @property
    def crosses_antimeridian(self) -> bool:
        return self.west > self.east

    def contains(self, event: Event) -> bool:
        return inside_rectangle(
            event.coords.latitude, event.coords.longitude,
            self.south, self.north, self.west, self.east,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "north": self.north,
            "south": self.south,
            "east": self.east,
            "west": self.west,
            "zoom": self.zoom,
        }


@dataclass(frozen=True)
class ViewportSelection:
    """Ranked, capped events plus read-only counts for observability."""
    events: Tuple[Event, ...]
    total_count: int
    visible_count: int  # inside the rectangle, before the cap
    culled_count: int   # visible but dropped by the cap
    cap: int
    zoom: int
    mode: PerformanceMode

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total_count,
            "visible": self.visible_count,
            "culled": self.culled_count,
            "rendered": len(self.events),
            "cap": self.cap,
            "zoom": self.zoom,
            "mode": self.mode.value,
        }


# ---------------------------------------------------------------------------
# Ranking & budget
# ---------------------------------------------------------------------------

def compare_priority(a: Event, b: Event) -> int:
    """
    Comparator for ``functools.cmp_to_key``: negative when ``a`` ranks first.

    Clearly different magnitudes order by size; near-equal ones (within
    RECENCY_TIE_WINDOW) order newest first.
    """
    diff = b.magnitude_or_zero - a.magnitude_or_zero
    if abs(diff) > RECENCY_TIE_WINDOW:
        return 1 if diff > 0 else -1
    if a.time == b.time:
        return 0
    return 1 if b.time > a.time else -1


priority_key = functools.cmp_to_key(compare_priority)


def rank_events(events: Sequence[Event]) -> list:
    """Stable priority sort; never mutates the input."""
    return sorted(events, key=priority_key)


def render_cap(zoom: Optional[int], mode: Any = PerformanceMode.BALANCED) -> int:
    """
    Maximum number of events to render at ``zoom`` under ``mode``.

    >>> render_cap(9)
    1000
    >>> render_cap(3, "high_quality")
    200
    >>> render_cap(5, "performance")
    187
    """
    zoom = DEFAULT_ZOOM if zoom is None else zoom
    base = ZOOM_CAP_TIERS[-1][1]
    for min_zoom, cap in ZOOM_CAP_TIERS:
        if zoom >= min_zoom:
            base = cap
            break
    return int(base * MODE_SCALE[resolve_mode(mode)])


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def select_visible(
    events: Sequence[Event],
    bounds: Optional[ViewportBounds],
    mode: Any = PerformanceMode.BALANCED,
) -> ViewportSelection:
    """
    Filter ``events`` to ``bounds``, rank them and truncate to the render cap.

    With no bounds (before the map has reported a viewport) every event is
    visible and the cap for DEFAULT_ZOOM applies. Calling this twice with
    the same arguments gives the same result.

    Examples
    --------
    >>> east = ViewportBounds(north=90, south=-90, east=180, west=0, zoom=3)
    >>> select_visible([], east).visible_count
    0
    """
    mode = resolve_mode(mode)
    zoom = bounds.zoom if bounds is not None else DEFAULT_ZOOM

    if bounds is None:
        visible = list(events)
    else:
        visible = [e for e in events if bounds.contains(e)]

    ranked = rank_events(visible)
    cap = render_cap(zoom, mode)
    kept = tuple(ranked[:cap])

    selection = ViewportSelection(
        events=kept,
        total_count=len(events),
        visible_count=len(visible),
        culled_count=len(visible) - len(kept),
        cap=cap,
        zoom=zoom,
        mode=mode,
    )
    logger.debug(
        "Viewport selection: %d/%d visible, %d culled (cap %d)",
        selection.visible_count, selection.total_count,
        selection.culled_count, cap,
        extra={"visible_count": selection.visible_count, "culled_count": selection.culled_count},
    )
    return selection
