"""
orchestrator.py — Glue between user intent and the render-ready cluster list.

Composes FeedClient → ViewportEngine → ClusterEngine and owns the only
mutable state of the pipeline: the current event list, the latest
viewport, and the status flags shown to the user.

State machine per filter change
===============================

    IDLE → DEBOUNCING → FETCHING → { READY | ERROR | ABORTED } → IDLE

    • range, magnitude floor and viewport bounds each have their own
      debounce timer; bounds use the longest window because pan/zoom
      reports arrive continuously
    • a new trigger cancels the in-flight fetch token before the next
      request starts; results of a superseded fetch are dropped
    • READY replaces events, then recomputes selection and clusters
    • ERROR keeps the previous clusters and only sets ``error``
    • ABORTED is never reported as an error

Usage:
    orchestrator = Orchestrator(feed_client)
    orchestrator.subscribe(lambda snap: print(snap.to_dict()))
    orchestrator.set_range("7d")
    orchestrator.set_bounds(ViewportBounds(north=60, south=20, east=30, west=-10, zoom=5))
    await orchestrator.wait_idle()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from backend.app.core.cancellation import CancellationToken
from backend.app.core.config import settings
from backend.app.ingestion.feed_client import FeedClient, FetchResult, FetchStatus
from backend.app.quakes.models import Event, TimeRange, resolve_range
from backend.app.spatial.clustering import Cluster, DistanceMetric, cluster
from backend.app.spatial.render_hints import cluster_payload
from backend.app.spatial.viewport import (
    PerformanceMode,
    ViewportBounds,
    ViewportSelection,
    resolve_mode,
    select_visible,
)

logger = logging.getLogger(__name__)


class Phase(str, Enum):
    IDLE = "idle"
    DEBOUNCING = "debouncing"
    FETCHING = "fetching"
    READY = "ready"
    ERROR = "error"
    ABORTED = "aborted"


# ═══════════════════════════════════════════════════════════════════════════
# Debounce timer
# ═══════════════════════════════════════════════════════════════════════════

class Debouncer:
    """Runs ``callback`` once ``delay_ms`` has passed without a new trigger."""

    def __init__(self, name: str, delay_ms: int, callback: Callable[[], None]):
        self.name = name
        self.delay_ms = delay_ms
        self._callback = callback
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def trigger(self) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._fire())

    def cancel(self) -> None:
        if self.pending:
            self._task.cancel()

    async def _fire(self) -> None:
        await asyncio.sleep(self.delay_ms / 1000.0)
        self._callback()


# ═══════════════════════════════════════════════════════════════════════════
# Snapshots
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class PipelineSnapshot:
    """Everything the presentation layer reads. Replaced, never mutated."""
    phase: Phase
    last_outcome: Optional[Phase]
    loading: bool
    error: Optional[str]
    from_cache: bool
    clusters: Tuple[Cluster, ...]
    total_count: int
    visible_count: int
    culled_count: int
    time_range: TimeRange
    magnitude_floor: float
    mode: PerformanceMode
    bounds: Optional[ViewportBounds]

    @property
    def rendered_count(self) -> int:
        return sum(c.count for c in self.clusters)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase": self.phase.value,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "loading": self.loading,
            "error": self.error,
            "from_cache": self.from_cache,
            "filters": {
                "range": self.time_range.value,
                "min_magnitude": self.magnitude_floor,
                "mode": self.mode.value,
                "bounds": self.bounds.to_dict() if self.bounds else None,
            },
            "counts": {
                "total": self.total_count,
                "visible": self.visible_count,
                "culled": self.culled_count,
                "rendered": self.rendered_count,
                "clusters": len(self.clusters),
            },
            "clusters": [cluster_payload(c) for c in self.clusters],
        }


@dataclass(frozen=True)
class ViewResult:
    """One-shot pipeline output: the fetch outcome plus the derived view."""
    fetch: FetchResult
    selection: Optional[ViewportSelection] = None
    clusters: Tuple[Cluster, ...] = field(default_factory=tuple)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.fetch.ok,
            "status": self.fetch.status.value,
            "from_cache": self.fetch.from_cache,
            "error": self.fetch.error,
            "counts": self.selection.to_dict() if self.selection else None,
            "clusters": [cluster_payload(c) for c in self.clusters],
        }


def derive_view(
    events: Tuple[Event, ...],
    bounds: Optional[ViewportBounds],
    mode: PerformanceMode,
    metric: Any = DistanceMetric.PLANAR,
) -> Tuple[ViewportSelection, Tuple[Cluster, ...]]:
    """ViewportEngine then ClusterEngine, always in series."""
    selection = select_visible(events, bounds, mode)
    return selection, cluster(selection.events, selection.zoom, metric)


async def build_view(
    feed_client: FeedClient,
    time_range: Any = TimeRange.DAY,
    magnitude_floor: float = 0.0,
    bounds: Optional[ViewportBounds] = None,
    mode: Any = PerformanceMode.BALANCED,
    *,
    result_cap: Optional[int] = settings.DEFAULT_RESULT_CAP,
    metric: Any = settings.CLUSTER_DISTANCE_METRIC,
    token: Optional[CancellationToken] = None,
) -> ViewResult:
    """Stateless fetch → select → cluster, used by request/response callers."""
    result = await feed_client.fetch_events(time_range, magnitude_floor, result_cap, token)
    if not result.ok:
        return ViewResult(fetch=result)
    selection, clusters = derive_view(tuple(result.events), bounds, resolve_mode(mode), metric)
    return ViewResult(fetch=result, selection=selection, clusters=clusters)


# ═══════════════════════════════════════════════════════════════════════════
# Orchestrator
# ═══════════════════════════════════════════════════════════════════════════

class Orchestrator:
    """Single filter session: at most one fetch in flight at any time."""

    def __init__(
        self,
        feed_client: FeedClient,
        *,
        time_range: Any = TimeRange.DAY,
        magnitude_floor: float = 0.0,
        mode: Any = PerformanceMode.BALANCED,
        result_cap: Optional[int] = settings.DEFAULT_RESULT_CAP,
        metric: Any = settings.CLUSTER_DISTANCE_METRIC,
        range_delay_ms: int = settings.DEBOUNCE_RANGE_MS,
        magnitude_delay_ms: int = settings.DEBOUNCE_MAGNITUDE_MS,
        bounds_delay_ms: int = settings.DEBOUNCE_BOUNDS_MS,
    ):
        self.feed_client = feed_client
        self.time_range = resolve_range(time_range)
        self.magnitude_floor = float(magnitude_floor)
        self.mode = resolve_mode(mode)
        self.result_cap = result_cap
        self.metric = DistanceMetric(metric)

        self._events: Tuple[Event, ...] = ()
        self._bounds: Optional[ViewportBounds] = None
        self._selection: Optional[ViewportSelection] = None
        self._clusters: Tuple[Cluster, ...] = ()

        self._phase = Phase.IDLE
        self._last_outcome: Optional[Phase] = None
        self._loading = False
        self._error: Optional[str] = None
        self._from_cache = False

        self._generation = 0
        self._token: Optional[CancellationToken] = None
        self._fetch_task: Optional[asyncio.Task] = None
        self._listeners: List[Callable[[PipelineSnapshot], None]] = []

        self._debouncers = {
            "range": Debouncer("range", range_delay_ms, self._start_fetch),
            "magnitude": Debouncer("magnitude", magnitude_delay_ms, self._start_fetch),
            "bounds": Debouncer("bounds", bounds_delay_ms, self._start_fetch),
        }

    # ── Inputs from the UI ──

    def set_range(self, value: Any) -> None:
        self.time_range = resolve_range(value)
        self._schedule("range")

    def set_magnitude_floor(self, value: float) -> None:
        self.magnitude_floor = float(value)
        self._schedule("magnitude")

    def set_bounds(self, bounds: Optional[ViewportBounds]) -> None:
        self._bounds = bounds
        self._schedule("bounds")

    def set_mode(self, value: Any) -> None:
        """Performance mode only changes the render budget; no refetch."""
        self.mode = resolve_mode(value)
        self._recompute()
        self._notify()

    def refresh(self) -> None:
        """Fetch now, skipping any pending debounce."""
        for debouncer in self._debouncers.values():
            debouncer.cancel()
        self._start_fetch()

    # ── Outputs to the UI ──

    @property
    def events(self) -> Tuple[Event, ...]:
        return self._events

    @property
    def clusters(self) -> Tuple[Cluster, ...]:
        return self._clusters

    def snapshot(self) -> PipelineSnapshot:
        selection = self._selection
        return PipelineSnapshot(
            phase=self._phase,
            last_outcome=self._last_outcome,
            loading=self._loading,
            error=self._error,
            from_cache=self._from_cache,
            clusters=self._clusters,
            total_count=selection.total_count if selection else 0,
            visible_count=selection.visible_count if selection else 0,
            culled_count=selection.culled_count if selection else 0,
            time_range=self.time_range,
            magnitude_floor=self.magnitude_floor,
            mode=self.mode,
            bounds=self._bounds,
        )

    def subscribe(self, listener: Callable[[PipelineSnapshot], None]) -> Callable[[], None]:
        """Register a snapshot listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    # ── Lifecycle ──

    async def wait_idle(self) -> None:
        """Wait until no debounce timer or fetch is pending."""
        while True:
            pending = [d.task for d in self._debouncers.values() if d.pending]
            if self._fetch_task is not None and not self._fetch_task.done():
                pending.append(self._fetch_task)
            if not pending:
                break
            await asyncio.wait(pending)

        task = self._fetch_task
        if task is not None and not task.cancelled() and task.exception() is not None:
            raise task.exception()

    async def aclose(self) -> None:
        for debouncer in self._debouncers.values():
            debouncer.cancel()
        if self._token is not None:
            self._token.cancel("closed")
        task = self._fetch_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        self._listeners.clear()

    # ── Internals ──

    def _schedule(self, name: str) -> None:
        if self._phase != Phase.FETCHING:
            self._phase = Phase.DEBOUNCING
        self._debouncers[name].trigger()
        self._notify()

    def _start_fetch(self) -> None:
        if self._token is not None:
            self._token.cancel("superseded")

        self._generation += 1
        token = CancellationToken()
        self._token = token
        self._phase = Phase.FETCHING
        self._loading = True
        self._notify()

        self._fetch_task = asyncio.get_running_loop().create_task(
            self._run_fetch(self._generation, token, self.time_range, self.magnitude_floor)
        )

    async def _run_fetch(
        self,
        generation: int,
        token: CancellationToken,
        time_range: TimeRange,
        magnitude_floor: float,
    ) -> None:
        try:
            result = await self.feed_client.fetch_events(
                time_range, magnitude_floor, self.result_cap, token,
            )
        except Exception as e:
            logger.exception("Feed fetch failed unexpectedly")
            result = FetchResult(status=FetchStatus.NETWORK_ERROR, error=str(e) or type(e).__name__)

        if generation != self._generation or token.cancelled:
            logger.debug("Discarding stale fetch result (generation %d)", generation)
            return

        self._token = None
        self._loading = False

        if result.ok:
            self._events = tuple(result.events)
            self._from_cache = result.from_cache
            self._error = None
            self._recompute()
            self._last_outcome = Phase.READY
            logger.info(
                "Pipeline ready: %d events, %d clusters%s",
                len(self._events), len(self._clusters),
                " (cache)" if result.from_cache else "",
                extra={"event_count": len(self._events), "cluster_count": len(self._clusters)},
            )
        elif result.aborted:
            self._last_outcome = Phase.ABORTED
        else:
            # Keep the clusters already on screen
            self._error = result.error or "Failed to fetch"
            self._last_outcome = Phase.ERROR

        self._phase = self._last_outcome
        self._notify()
        self._phase = Phase.IDLE
        self._notify()

    def _recompute(self) -> None:
        self._selection, self._clusters = derive_view(
            self._events, self._bounds, self.mode, self.metric,
        )

    def _notify(self) -> None:
        if not self._listeners:
            return
        snap = self.snapshot()
        for listener in list(self._listeners):
            listener(snap)
