"""
clustering.py — Greedy proximity clustering of ranked events.

Algorithm (single pass, deterministic for a given input order):

    for each event e in ranked order:
        skip e if an earlier cluster already claimed it
        start a cluster seeded by e
        claim every later unclaimed event within threshold(zoom) of e
        center = magnitude-weighted centroid of members (weight max(1, M))

Distance thresholds (metres-equivalent) shrink as the map zooms in:

    zoom > 10 → 40    zoom > 7 → 60    zoom > 4 → 80    otherwise → 120

Cost is O(n²) in the number of events, which is only acceptable because
the viewport cap bounds n upstream. A uniform grid keyed on
threshold-sized cells would make this near-linear if that bound is ever
lifted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from backend.app.quakes.models import Event
from backend.app.spatial.geo import Coordinate, haversine_m, planar_distance_m
from backend.app.spatial.viewport import DEFAULT_ZOOM

logger = logging.getLogger(__name__)


# (zoom strictly above, threshold), checked top-down
THRESHOLD_TIERS: Tuple[Tuple[int, float], ...] = (
    (10, 40.0),
    (7, 60.0),
    (4, 80.0),
)
WORLD_THRESHOLD = 120.0


class DistanceMetric(str, Enum):
    PLANAR = "planar"        # degree distance × METERS_PER_DEGREE
    HAVERSINE = "haversine"  # great-circle metres


_METRICS: Dict[DistanceMetric, Callable[[Coordinate, Coordinate], float]] = {
    DistanceMetric.PLANAR: planar_distance_m,
    DistanceMetric.HAVERSINE: haversine_m,
}


@dataclass(frozen=True)
class Cluster:
    """A group of nearby events. Never mutated; recomputed wholesale."""
    center: Coordinate
    members: Tuple[Event, ...]
    max_magnitude: float

    @property
    def count(self) -> int:
        return len(self.members)

    @property
    def is_cluster(self) -> bool:
        """Singletons are drawn as plain points, not cluster glyphs."""
        return len(self.members) > 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "center": self.center.to_dict(),
            "count": self.count,
            "is_cluster": self.is_cluster,
            "max_magnitude": self.max_magnitude,
            "members": [e.to_dict() for e in self.members],
        }


def distance_threshold(zoom: int) -> float:
    """
    >>> distance_threshold(12), distance_threshold(8), distance_threshold(5), distance_threshold(2)
    (40.0, 60.0, 80.0, 120.0)
    """
    for above, threshold in THRESHOLD_TIERS:
        if zoom > above:
            return threshold
    return WORLD_THRESHOLD


def _unwrap(lon: float, anchor: float) -> float:
    if lon - anchor > 180.0:
        return lon - 360.0
    if anchor - lon > 180.0:
        return lon + 360.0
    return lon


def weighted_centroid(members: Sequence[Event]) -> Coordinate:
    """
    Magnitude-weighted centre; weight = max(1, magnitude) so small or
    unknown magnitudes still pull the centre.

    Longitudes are unwrapped around the first member before averaging so a
    group straddling ±180° stays on the seam instead of jumping to 0°.
    """
    if len(members) == 1:
        return members[0].coords

    anchor = members[0].coords.longitude
    total = lat_sum = lon_sum = 0.0
    for event in members:
        weight = max(1.0, event.magnitude_or_zero)
        total += weight
        lat_sum += event.coords.latitude * weight
        lon_sum += _unwrap(event.coords.longitude, anchor) * weight

    lon = lon_sum / total
    if lon > 180.0:
        lon -= 360.0
    elif lon < -180.0:
        lon += 360.0
    return Coordinate(lat_sum / total, lon)


def cluster_events(
    ranked_events: Sequence[Event],
    zoom: int,
    metric: Any = DistanceMetric.PLANAR,
) -> Tuple[Cluster, ...]:
    """
    Partition ``ranked_events`` into clusters. Every event lands in exactly
    one cluster; clusters come out in the order of their seed events.

    Examples
    --------
    >>> a = Event("a", 5.0, "", 0, None, Coordinate(10.0, 10.0))
    >>> b = Event("b", 3.0, "", 0, None, Coordinate(10.0005, 10.0005))
    >>> [c.count for c in cluster_events([a, b], zoom=2)]
    [2]
    >>> [c.count for c in cluster_events([a, b], zoom=12)]
    [1, 1]
    """
    distance = _METRICS[DistanceMetric(metric)]
    threshold = distance_threshold(zoom)
    events = list(ranked_events)
    claimed = [False] * len(events)
    clusters: List[Cluster] = []

    for i, seed in enumerate(events):
        if claimed[i]:
            continue
        claimed[i] = True
        members = [seed]

        for j in range(i + 1, len(events)):
            if claimed[j]:
                continue
            if distance(seed.coords, events[j].coords) <= threshold:
                claimed[j] = True
                members.append(events[j])

        clusters.append(Cluster(
            center=weighted_centroid(members),
            members=tuple(members),
            max_magnitude=max(e.magnitude_or_zero for e in members),
        ))

    logger.debug(
        "Clustered %d events into %d groups at zoom %d",
        len(events), len(clusters), zoom,
        extra={"event_count": len(events), "cluster_count": len(clusters)},
    )
    return tuple(clusters)


def cluster(
    ranked_events: Sequence[Event],
    zoom: Optional[int],
    metric: Any = DistanceMetric.PLANAR,
) -> Tuple[Cluster, ...]:
    """Entry point used by the orchestrator; a missing zoom means world view."""
    return cluster_events(ranked_events, DEFAULT_ZOOM if zoom is None else zoom, metric)
