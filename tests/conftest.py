"""
Shared fixtures: an in-memory durable store with failure switches, a
controllable clock, and GeoJSON feature builders.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

import pytest

from backend.app.core.cache import CacheTier, DurableStore


class FakeDurableStore(DurableStore):
    """Dict-backed durable store. Flip the ``fail_*`` switches to simulate outages."""

    name = "fake"

    def __init__(self) -> None:
        self.data: Dict[str, str] = {}
        self.fail_get = False
        self.fail_set = False
        self.fail_keys = False
        self.fail_delete_after: Optional[int] = None  # deletes allowed before failing
        self.deletes = 0
        self.closed = False

    async def get(self, key: str) -> Optional[str]:
        if self.fail_get:
            raise ConnectionError("durable get down")
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        if self.fail_set:
            raise ConnectionError("durable set down")
        self.data[key] = value

    async def delete(self, key: str) -> None:
        if self.fail_delete_after is not None and self.deletes >= self.fail_delete_after:
            raise ConnectionError("durable delete down")
        self.deletes += 1
        self.data.pop(key, None)

    async def keys(self) -> List[str]:
        if self.fail_keys:
            raise ConnectionError("durable keys down")
        return list(self.data)

    async def ping(self) -> bool:
        return not self.fail_get

    async def close(self) -> None:
        self.closed = True


class FakeClock:
    """Epoch-ms clock advanced by hand."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms

    def advance_minutes(self, minutes: float) -> None:
        self.now += int(minutes * 60_000)


def make_feature(
    fid: Optional[str] = "us1",
    mag: Any = 4.0,
    lat: float = 35.0,
    lon: float = -118.0,
    depth: Any = 10.0,
    time: Any = 1_700_000_000_000,
    place: Any = "Somewhere",
) -> Dict[str, Any]:
    return {
        "type": "Feature",
        "id": fid,
        "properties": {
            "mag": mag,
            "place": place,
            "time": time,
            "url": f"https://earthquake.usgs.gov/earthquakes/eventpage/{fid}",
            "detail": None,
        },
        "geometry": {"type": "Point", "coordinates": [lon, lat, depth]},
    }


def make_feed(*features: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "FeatureCollection", "features": list(features)}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def durable() -> FakeDurableStore:
    return FakeDurableStore()


@pytest.fixture
def cache(durable: FakeDurableStore, clock: FakeClock) -> CacheTier:
    return CacheTier(durable, default_ttl_ms=5 * 60_000, max_memory_entries=50, clock=clock)
