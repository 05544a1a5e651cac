"""
feed_client.py — USGS summary feed ingestion for the map pipeline.

Fetches the GeoJSON summary feed for a time range and turns it into a
magnitude-ranked list of normalised Events, consulting the two-level cache
before any network I/O.

Pipeline per call
=================
    1. RESOLVE   → range selector → feed URL (unknown values → 24h feed)
    2. CACHE     → "<feedURL>|min:<floor>" looked up in memory, then Redis
    3. FETCH     → one HTTP GET raced against a 15 s timeout and the
                   caller's cancellation token; first to fire aborts
    4. NORMALISE → every feature becomes an Event; bad geometry is coerced
                   to (0, 0) so counts match the source feed
    5. FILTER    → magnitude_or_zero ≥ floor
    6. SORT      → magnitude descending, stable for ties, BEFORE the cap
    7. STORE     → full filtered list written to the cache (token checked)
    8. CAP       → truncated to result_cap

Error Handling Strategy
=======================
    Cancellation / timeout  → FetchStatus.ABORTED, no error message
    Non-2xx / transport     → FetchStatus.NETWORK_ERROR with a message
    Malformed record        → coerced to defaults, logged at DEBUG
    Cache failure           → absorbed inside CacheTier (treated as a miss)

USGS GeoJSON feed reference:
    https://earthquake.usgs.gov/earthquakes/feed/v1.0/geojson.php
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from backend.app.core.cache import CacheTier, make_cache_key
from backend.app.core.cancellation import CancellationToken
from backend.app.core.config import settings
from backend.app.core.errors import FeedNetworkError, MalformedRecordError
from backend.app.quakes.models import Event, TimeRange, resolve_range
from backend.app.spatial.geo import ORIGIN, Coordinate

logger = logging.getLogger(__name__)

# 9999-12-31T23:59:59.999Z, the last instant datetime can represent
MAX_EVENT_TIME_MS = 253_402_300_799_999


class FetchStatus(str, Enum):
    """Outcome of a feed fetch."""
    SUCCESS = "success"
    ABORTED = "aborted"  # superseded or timed out; not an error
    NETWORK_ERROR = "network_error"


@dataclass
class FetchResult:
    """Result container for one ``fetch_events`` call."""
    status: FetchStatus
    events: List[Event] = field(default_factory=list)
    from_cache: bool = False
    total_count: int = 0  # filtered count before the result cap
    feed_url: str = ""
    cache_key: str = ""
    fetch_time_ms: float = 0.0
    error: Optional[str] = None
    abort_reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.SUCCESS

    @property
    def aborted(self) -> bool:
        return self.status == FetchStatus.ABORTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "status": self.status.value,
            "from_cache": self.from_cache,
            "count": len(self.events),
            "total_count": self.total_count,
            "feed_url": self.feed_url,
            "fetch_time_ms": round(self.fetch_time_ms, 1),
            "error": self.error,
            "abort_reason": self.abort_reason,
            "events": [e.to_dict() for e in self.events],
        }


def build_feed_url(time_range: Any, base: str = settings.USGS_FEED_BASE) -> str:
    """
    >>> build_feed_url("7d", "https://feed")
    'https://feed/all_week.geojson'
    """
    return f"{base.rstrip('/')}/{resolve_range(time_range).feed_id}.geojson"


# ═══════════════════════════════════════════════════════════════════════════
# Normalisation
# ═══════════════════════════════════════════════════════════════════════════

def _optional_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _parse_coordinates(feature_id: str, geometry: Any) -> Tuple[Coordinate, Optional[float]]:
    """Strict geometry parse; raises MalformedRecordError on anything odd."""
    if not isinstance(geometry, dict):
        raise MalformedRecordError(feature_id, "missing geometry")
    raw = geometry.get("coordinates")
    if not isinstance(raw, (list, tuple)) or len(raw) < 2:
        raise MalformedRecordError(feature_id, "missing coordinates")
    lon = _optional_float(raw[0])
    lat = _optional_float(raw[1])
    if lon is None or lat is None:
        raise MalformedRecordError(feature_id, "non-numeric coordinates")
    depth = _optional_float(raw[2]) if len(raw) > 2 else None
    try:
        return Coordinate(lat, lon), depth
    except ValueError as exc:
        raise MalformedRecordError(feature_id, str(exc)) from exc


def normalize_feature(feature: Any, index: int = 0) -> Event:
    """
    Turn one GeoJSON feature into an Event. Never raises.

    USGS GeoJSON format:
        feature = {
            "type": "Feature",
            "properties": {"mag": 5.2, "place": "...", "time": 1708617600000, ...},
            "geometry": {"type": "Point", "coordinates": [lon, lat, depth_km]},
            "id": "us7000m..."
        }

    Missing ``mag``/``depth`` stay None; missing or invalid geometry falls
    back to the origin. A feature without an id gets ``feature-<index>``.
    """
    if not isinstance(feature, dict):
        feature = {}
    props = feature.get("properties")
    if not isinstance(props, dict):
        props = {}

    feature_id = feature.get("id")
    feature_id = str(feature_id) if feature_id not in (None, "") else f"feature-{index}"

    try:
        coords, depth = _parse_coordinates(feature_id, feature.get("geometry"))
    except MalformedRecordError as exc:
        logger.debug("Coercing record to defaults: %s", exc.message)
        coords, depth = ORIGIN, None

    ts = _optional_float(props.get("time"))
    if ts is not None and not 0 <= ts <= MAX_EVENT_TIME_MS:
        logger.debug("Coercing out-of-range time for %s: %r", feature_id, ts)
        ts = None
    place = props.get("place")

    return Event(
        id=feature_id,
        magnitude=_optional_float(props.get("mag")),
        place=str(place) if place is not None else "Unknown",
        time=int(ts) if ts is not None else 0,
        depth=depth,
        coords=coords,
        url=props.get("url"),
        detail=props.get("detail"),
    )


def rank_by_magnitude(events: Sequence[Event], magnitude_floor: float = 0.0) -> List[Event]:
    """
    Drop events under the floor and sort the rest magnitude-descending.

    ``sorted(..., reverse=True)`` keeps feed order for equal magnitudes, so
    truncating the result always keeps the K most severe events.
    """
    kept = [e for e in events if e.magnitude_or_zero >= magnitude_floor]
    return sorted(kept, key=lambda e: e.magnitude_or_zero, reverse=True)


def normalize_feed(document: Any, magnitude_floor: float = 0.0) -> List[Event]:
    """Normalise a whole feed document, filter by floor, rank by magnitude."""
    features = document.get("features") if isinstance(document, dict) else None
    if not isinstance(features, list):
        features = []
    events = [normalize_feature(f, i) for i, f in enumerate(features)]
    return rank_by_magnitude(events, magnitude_floor)


# ═══════════════════════════════════════════════════════════════════════════
# Client
# ═══════════════════════════════════════════════════════════════════════════

class FeedClient:
    """
    Cache-first USGS feed client.

    Usage:
        client = FeedClient(cache_tier)
        result = await client.fetch_events("7d", magnitude_floor=2.5, result_cap=500)
        if result.ok:
            render(result.events)
    """

    def __init__(
        self,
        cache: CacheTier,
        *,
        base_url: str = settings.USGS_FEED_BASE,
        timeout_ms: int = settings.FEED_FETCH_TIMEOUT_MS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.cache = cache
        self.base_url = base_url
        self.timeout_ms = timeout_ms
        self._http_client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            # The race in _request enforces the deadline; httpx's own
            # timeout is a backstop.
            self._http_client = httpx.AsyncClient(
                timeout=self.timeout_ms / 1000.0 + 5.0,
                headers={"Accept": "application/json"},
            )
        return self._http_client

    async def aclose(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def fetch_events(
        self,
        time_range: Any = TimeRange.DAY,
        magnitude_floor: float = 0.0,
        result_cap: Optional[int] = settings.DEFAULT_RESULT_CAP,
        token: Optional[CancellationToken] = None,
    ) -> FetchResult:
        token = token or CancellationToken()
        feed_url = build_feed_url(time_range, self.base_url)
        cache_key = make_cache_key(feed_url, magnitude_floor)
        start = time.monotonic()

        def _elapsed() -> float:
            return (time.monotonic() - start) * 1000

        cached = await self.cache.get(cache_key)
        if cached is not None:
            return FetchResult(
                status=FetchStatus.SUCCESS,
                events=_cap(cached, result_cap),
                from_cache=True,
                total_count=len(cached),
                feed_url=feed_url,
                cache_key=cache_key,
                fetch_time_ms=_elapsed(),
            )

        if token.cancelled:
            return self._aborted(feed_url, cache_key, token.reason, _elapsed())

        try:
            document = await self._request(feed_url, token)
        except FeedNetworkError as exc:
            logger.warning(
                "Feed fetch failed: %s", exc.message,
                extra={"feed_url": feed_url, "duration_ms": _elapsed()},
            )
            return FetchResult(
                status=FetchStatus.NETWORK_ERROR,
                feed_url=feed_url,
                cache_key=cache_key,
                fetch_time_ms=_elapsed(),
                error=exc.message,
            )

        if document is None:
            return self._aborted(feed_url, cache_key, token.reason or "timeout", _elapsed())

        events = normalize_feed(document, magnitude_floor)

        # A cancelled fetch must not commit side effects
        if token.cancelled:
            return self._aborted(feed_url, cache_key, token.reason, _elapsed())
        await self.cache.set(cache_key, events)

        logger.info(
            "Fetched %d events (floor %.1f) from %s",
            len(events), magnitude_floor, feed_url,
            extra={"feed_url": feed_url, "event_count": len(events), "duration_ms": _elapsed()},
        )
        return FetchResult(
            status=FetchStatus.SUCCESS,
            events=_cap(events, result_cap),
            total_count=len(events),
            feed_url=feed_url,
            cache_key=cache_key,
            fetch_time_ms=_elapsed(),
        )

    async def _request(self, url: str, token: CancellationToken) -> Optional[Dict[str, Any]]:
        """
        GET ``url`` raced against the timeout and the token.

        Returns the decoded JSON document, or None when the timeout or the
        token won. Whichever side loses is cancelled exactly once here.
        """
        client = await self._get_client()
        request_task = asyncio.ensure_future(client.get(url))
        cancel_task = asyncio.ensure_future(token.wait())

        try:
            done, _ = await asyncio.wait(
                {request_task, cancel_task},
                timeout=self.timeout_ms / 1000.0,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (request_task, cancel_task):
                if not task.done():
                    task.cancel()
            await asyncio.gather(request_task, cancel_task, return_exceptions=True)

        if request_task not in done:
            logger.info("Feed request aborted (%s): %s", token.reason or "timeout", url)
            return None

        try:
            response = request_task.result()
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise FeedNetworkError(
                url, f"HTTP {status}: {exc.response.reason_phrase}", status_code=status,
            ) from exc
        except httpx.HTTPError as exc:
            raise FeedNetworkError(url, str(exc) or type(exc).__name__) from exc
        except ValueError as exc:
            raise FeedNetworkError(url, f"Invalid JSON: {exc}") from exc

    @staticmethod
    def _aborted(feed_url: str, cache_key: str, reason: Optional[str], elapsed: float) -> FetchResult:
        logger.debug("Fetch aborted (%s) for %s", reason, feed_url)
        return FetchResult(
            status=FetchStatus.ABORTED,
            feed_url=feed_url,
            cache_key=cache_key,
            fetch_time_ms=elapsed,
            abort_reason=reason or "cancelled",
        )


def _cap(events: Sequence[Event], result_cap: Optional[int]) -> List[Event]:
    if result_cap is None:
        return list(events)
    return list(events[:max(0, result_cap)])
