"""
test_clustering.py — Tests for greedy proximity clustering.

Covers:
    • Zoom → distance threshold tiers
    • Same pair clustered at world zoom, split at street zoom
    • Partition property (every event in exactly one cluster)
    • Magnitude-weighted centroid and max magnitude
    • Antimeridian neighbours
    • Render hint payloads

Run with:
    pytest tests/test_clustering.py -v
"""

from __future__ import annotations

import pytest

from backend.app.quakes.models import Event
from backend.app.spatial.clustering import (
    DistanceMetric,
    cluster,
    cluster_events,
    distance_threshold,
    weighted_centroid,
)
from backend.app.spatial.geo import Coordinate, planar_distance_m
from backend.app.spatial.render_hints import (
    cluster_icon_size,
    cluster_payload,
    heatmap_points,
    magnitude_color,
    marker_radius,
)


def _make_event(eid: str, mag=3.0, lat: float = 10.0, lon: float = 10.0) -> Event:
    return Event(id=eid, magnitude=mag, place="", time=0, depth=None, coords=Coordinate(lat, lon))


# ~79 m apart under the planar metric
PAIR = (
    _make_event("a", mag=5.0, lat=10.0, lon=10.0),
    _make_event("b", mag=3.0, lat=10.0005, lon=10.0005),
)


# ═══════════════════════════════════════════════════════════════════════════
# Thresholds
# ═══════════════════════════════════════════════════════════════════════════

class TestDistanceThreshold:

    @pytest.mark.parametrize("zoom, expected", [
        (18, 40.0), (11, 40.0), (10, 60.0), (8, 60.0),
        (7, 80.0), (5, 80.0), (4, 120.0), (0, 120.0),
    ])
    def test_tiers(self, zoom, expected):
        assert distance_threshold(zoom) == expected


# ═══════════════════════════════════════════════════════════════════════════
# Grouping
# ═══════════════════════════════════════════════════════════════════════════

class TestClusterEvents:

    def test_pair_distance_sits_between_tiers(self):
        d = planar_distance_m(PAIR[0].coords, PAIR[1].coords)
        assert 60.0 < d < 80.0

    def test_world_zoom_groups_pair(self):
        clusters = cluster_events(PAIR, zoom=2)
        assert len(clusters) == 1
        assert clusters[0].count == 2
        assert clusters[0].is_cluster

    def test_street_zoom_splits_pair(self):
        clusters = cluster_events(PAIR, zoom=12)
        assert [c.count for c in clusters] == [1, 1]
        assert not clusters[0].is_cluster

    def test_zoom_five_groups_zoom_eight_splits(self):
        assert len(cluster_events(PAIR, zoom=5)) == 1
        assert len(cluster_events(PAIR, zoom=8)) == 2

    def test_partition(self):
        events = [
            _make_event(f"e{i}", mag=float(i % 6), lat=10.0 + (i % 5) * 0.0003, lon=10.0 + (i // 5) * 0.01)
            for i in range(40)
        ]
        clusters = cluster_events(events, zoom=3)

        member_ids = [e.id for c in clusters for e in c.members]
        assert sorted(member_ids) == sorted(e.id for e in events)
        assert len(member_ids) == len(set(member_ids))

    def test_seed_order_follows_input(self):
        far = _make_event("far", mag=1.0, lat=-40.0, lon=-40.0)
        clusters = cluster_events([PAIR[0], far, PAIR[1]], zoom=2)
        assert [c.members[0].id for c in clusters] == ["a", "far"]

    def test_membership_measured_from_seed(self):
        # b is within range of a, c only within range of b
        a = _make_event("a", lat=0.0, lon=0.0)
        b = _make_event("b", lat=0.0, lon=0.001)
        c = _make_event("c", lat=0.0, lon=0.002)
        clusters = cluster_events([a, b, c], zoom=2)
        assert [[e.id for e in cl.members] for cl in clusters] == [["a", "b"], ["c"]]

    def test_empty(self):
        assert cluster_events([], zoom=5) == ()

    def test_missing_zoom_means_world_view(self):
        assert len(cluster(PAIR, None)) == 1

    def test_haversine_metric(self):
        clusters = cluster_events(PAIR, zoom=2, metric=DistanceMetric.HAVERSINE)
        assert len(clusters) == 1
        assert len(cluster_events(PAIR, zoom=12, metric="haversine")) == 2

    def test_unknown_metric_rejected(self):
        with pytest.raises(ValueError):
            cluster_events(PAIR, zoom=2, metric="manhattan")


class TestCentroid:

    def test_singleton_uses_own_coords(self):
        event = _make_event("solo", lat=12.5, lon=-33.25)
        assert weighted_centroid([event]) == event.coords

    def test_weighted_by_magnitude(self):
        light = _make_event("light", mag=1.0, lat=0.0, lon=0.0)
        heavy = _make_event("heavy", mag=3.0, lat=0.0004, lon=0.0)
        center = weighted_centroid([light, heavy])
        assert center.latitude == pytest.approx(0.0003)
        assert center.longitude == pytest.approx(0.0)

    def test_small_and_unknown_magnitudes_weigh_one(self):
        tiny = _make_event("tiny", mag=0.2, lat=0.0, lon=0.0)
        unknown = _make_event("unknown", mag=None, lat=0.0002, lon=0.0)
        center = weighted_centroid([tiny, unknown])
        assert center.latitude == pytest.approx(0.0001)

    def test_max_magnitude(self):
        clusters = cluster_events(PAIR, zoom=2)
        assert clusters[0].max_magnitude == 5.0

    def test_max_magnitude_of_unknowns_is_zero(self):
        clusters = cluster_events([_make_event("x", mag=None)], zoom=2)
        assert clusters[0].max_magnitude == 0.0

    def test_antimeridian_pair_stays_on_seam(self):
        east = _make_event("east", mag=2.0, lat=-17.0, lon=179.9999)
        west = _make_event("west", mag=2.0, lat=-17.0, lon=-179.9999)
        clusters = cluster_events([east, west], zoom=2)

        assert len(clusters) == 1
        assert abs(clusters[0].center.longitude) > 179.99


# ═══════════════════════════════════════════════════════════════════════════
# Render hints
# ═══════════════════════════════════════════════════════════════════════════

class TestRenderHints:

    @pytest.mark.parametrize("mag, color", [
        (None, "#10b981"), (1.9, "#10b981"), (2.0, "#84cc16"),
        (4.2, "#f59e0b"), (5.5, "#f97316"), (7.1, "#b91c1c"),
    ])
    def test_magnitude_colour_bands(self, mag, color):
        assert magnitude_color(mag) == color

    def test_marker_radius_clamped(self):
        assert marker_radius(None) == 4.0
        assert marker_radius(0.5) == 4.0
        assert marker_radius(5.0) == 20.0
        assert marker_radius(12.0) == 40.0

    def test_cluster_icon_size_grows_then_caps(self):
        assert cluster_icon_size(1) == 30
        assert cluster_icon_size(100) == 46
        assert cluster_icon_size(10 ** 6) == 60

    def test_cluster_payload_styles(self):
        grouped = cluster_payload(cluster_events(PAIR, zoom=2)[0])
        assert grouped["count"] == 2
        assert grouped["style"] == {"color": "#f97316", "size": 32}
        assert grouped["members"][0]["style"]["radius"] == 20.0

        single = cluster_payload(cluster_events(PAIR, zoom=12)[1])
        assert single["style"] == {"color": "#84cc16", "radius": 12.0}

    def test_heatmap_points(self):
        points = heatmap_points(PAIR)
        assert points[0] == {"lat": 10.0, "lon": 10.0, "intensity": 0.625}
        assert heatmap_points([_make_event("z", mag=None)])[0]["intensity"] == 0.01
