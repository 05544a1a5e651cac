"""
Marker styling hints attached to serialised points and clusters.

The map client draws whatever it is told; these helpers keep the magnitude
colour bands and glyph sizes in one place so every consumer agrees.

    M < 2    → green     2 ≤ M < 4 → lime     4 ≤ M < 5 → amber
    5 ≤ M < 6 → orange   M ≥ 6     → red
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Optional

from backend.app.quakes.models import Event
from backend.app.spatial.clustering import Cluster

MAGNITUDE_COLORS = (
    (6.0, "#b91c1c"),  # red
    (5.0, "#f97316"),  # orange
    (4.0, "#f59e0b"),  # amber
    (2.0, "#84cc16"),  # lime
)
LOW_MAGNITUDE_COLOR = "#10b981"  # green


def magnitude_color(magnitude: Optional[float]) -> str:
    m = magnitude or 0.0
    for floor, color in MAGNITUDE_COLORS:
        if m >= floor:
            return color
    return LOW_MAGNITUDE_COLOR


def marker_radius(magnitude: Optional[float]) -> float:
    """Point radius in pixels, 4 × magnitude clamped to [4, 40]."""
    if magnitude is None:
        return 4.0
    return max(4.0, min(40.0, magnitude * 4.0))


def cluster_icon_size(count: int) -> int:
    """
    >>> cluster_icon_size(1), cluster_icon_size(10), cluster_icon_size(10_000)
    (30, 38, 60)
    """
    return min(60, 30 + round(math.log10(max(1, count)) * 8))


def heat_intensity(magnitude: Optional[float], scale: float = 1.0) -> float:
    return max(0.01, ((magnitude or 0.0) / 8.0) * scale)


def point_payload(event: Event) -> Dict[str, Any]:
    data = event.to_dict()
    data["style"] = {
        "color": magnitude_color(event.magnitude),
        "radius": marker_radius(event.magnitude),
    }
    return data


def cluster_payload(cluster: Cluster) -> Dict[str, Any]:
    data = cluster.to_dict()
    data["members"] = [point_payload(e) for e in cluster.members]
    if cluster.is_cluster:
        data["style"] = {
            "color": magnitude_color(cluster.max_magnitude),
            "size": cluster_icon_size(cluster.count),
        }
    else:
        data["style"] = data["members"][0]["style"]
    return data


def heatmap_points(events: Iterable[Event], scale: float = 1.0) -> List[Dict[str, float]]:
    return [
        {
            "lat": e.coords.latitude,
            "lon": e.coords.longitude,
            "intensity": heat_intensity(e.magnitude, scale),
        }
        for e in events
    ]
