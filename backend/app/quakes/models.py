"""
Data structures shared across the seismic pipeline.

    Event      — one normalised feed record (immutable)
    TimeRange  — the feed window selector exposed to the UI
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from backend.app.spatial.geo import ORIGIN, Coordinate


class TimeRange(str, Enum):
    """USGS summary feed windows, keyed by the selector values the UI sends."""
    DAY = "24h"
    WEEK = "7d"
    MONTH = "30d"

    @property
    def feed_id(self) -> str:
        return _FEED_IDS[self]


_FEED_IDS = {
    TimeRange.DAY: "all_day",
    TimeRange.WEEK: "all_week",
    TimeRange.MONTH: "all_month",
}

_RANGE_ALIASES = {
    "short": TimeRange.DAY,
    "day": TimeRange.DAY,
    "medium": TimeRange.WEEK,
    "week": TimeRange.WEEK,
    "long": TimeRange.MONTH,
    "month": TimeRange.MONTH,
}


def resolve_range(value: Any) -> TimeRange:
    """
    Map a selector value to a TimeRange. Unknown values fall back to 24h.

    >>> resolve_range("7d")
    <TimeRange.WEEK: '7d'>
    >>> resolve_range("bogus")
    <TimeRange.DAY: '24h'>
    """
    if isinstance(value, TimeRange):
        return value
    text = str(value or "").strip().lower()
    try:
        return TimeRange(text)
    except ValueError:
        return _RANGE_ALIASES.get(text, TimeRange.DAY)


@dataclass(frozen=True)
class Event:
    """
    Normalised seismic event.

    ``magnitude`` and ``depth`` keep ``None`` when the source omitted them so
    the UI can print "N/A"; every comparison goes through
    ``magnitude_or_zero``. ``coords`` is always set.
    """

    id: str
    magnitude: Optional[float]
    place: str
    time: int  # epoch milliseconds
    depth: Optional[float]
    coords: Coordinate = ORIGIN
    url: Optional[str] = None
    detail: Optional[str] = None

    @property
    def magnitude_or_zero(self) -> float:
        return self.magnitude if self.magnitude is not None else 0.0

    @property
    def time_utc(self) -> Optional[str]:
        if not self.time:
            return None
        try:
            return datetime.fromtimestamp(self.time / 1000.0, tz=timezone.utc).isoformat()
        except (OverflowError, OSError, ValueError):
            return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "magnitude": self.magnitude,
            "place": self.place,
            "time": self.time,
            "time_utc": self.time_utc,
            "depth": self.depth,
            "coords": self.coords.to_dict(),
            "url": self.url,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        """Inverse of ``to_dict``; used when reading the durable cache."""
        coords = data.get("coords") or {}
        return cls(
            id=str(data["id"]),
            magnitude=data.get("magnitude"),
            place=data.get("place") or "",
            time=int(data.get("time") or 0),
            depth=data.get("depth"),
            coords=Coordinate(float(coords.get("lat", 0.0)), float(coords.get("lon", 0.0))),
            url=data.get("url"),
            detail=data.get("detail"),
        )
