"""
test_orchestrator.py — Tests for the debounced fetch → viewport → cluster session.

Covers:
    • Debounce coalescing per input
    • Cancellation of superseded fetches and stale-result discard
    • Error keeps the clusters already on screen
    • Abort is never reported as an error
    • Mode changes recompute without refetching
    • Listener snapshots and shutdown
    • One-shot build_view against a mocked feed

Run with:
    pytest tests/test_orchestrator.py -v
"""

from __future__ import annotations

import asyncio
from typing import List, Optional

import httpx
import pytest

from backend.app.ingestion.feed_client import FeedClient, FetchResult, FetchStatus
from backend.app.pipeline.orchestrator import Orchestrator, Phase, build_view
from backend.app.quakes.models import Event, TimeRange, resolve_range
from backend.app.spatial.geo import Coordinate
from backend.app.spatial.viewport import PerformanceMode, ViewportBounds

from tests.conftest import make_feature, make_feed


def _make_event(eid: str, mag: float = 4.0, lat: float = 0.0, lon: float = 0.0) -> Event:
    return Event(id=eid, magnitude=mag, place="", time=0, depth=None, coords=Coordinate(lat, lon))


def _spread_events(n: int, prefix: str = "e") -> List[Event]:
    """``n`` events far enough apart that none cluster."""
    return [_make_event(f"{prefix}{i}", mag=float(i % 7), lat=-60.0 + i * 0.5, lon=-170.0 + i * 1.0) for i in range(n)]


def _success(events: List[Event], from_cache: bool = False) -> FetchResult:
    return FetchResult(status=FetchStatus.SUCCESS, events=list(events), from_cache=from_cache, total_count=len(events))


class FakeFeedClient:
    """Returns ``result`` immediately, or parks each call on a future when ``hold`` is set."""

    def __init__(self, result: Optional[FetchResult] = None, hold: bool = False):
        self.result = result or _success([])
        self.hold = hold
        self.calls = []
        self.gates: List[asyncio.Future] = []

    async def fetch_events(self, time_range, magnitude_floor=0.0, result_cap=None, token=None):
        self.calls.append({
            "range": resolve_range(time_range),
            "floor": magnitude_floor,
            "cap": result_cap,
            "token": token,
        })
        if self.hold:
            gate = asyncio.get_running_loop().create_future()
            self.gates.append(gate)
            return await gate
        return self.result


def _orchestrator(client, **kwargs) -> Orchestrator:
    kwargs.setdefault("range_delay_ms", 10)
    kwargs.setdefault("magnitude_delay_ms", 10)
    kwargs.setdefault("bounds_delay_ms", 20)
    return Orchestrator(client, **kwargs)


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


# ═══════════════════════════════════════════════════════════════════════════
# Debounce
# ═══════════════════════════════════════════════════════════════════════════

class TestDebounce:

    @pytest.mark.asyncio
    async def test_rapid_range_changes_fetch_once(self):
        client = FakeFeedClient()
        orch = _orchestrator(client)

        orch.set_range("7d")
        orch.set_range("30d")
        orch.set_range("24h")
        assert orch.snapshot().phase == Phase.DEBOUNCING

        await orch.wait_idle()

        assert len(client.calls) == 1
        assert client.calls[0]["range"] is TimeRange.DAY
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_magnitude_floor_forwarded(self):
        client = FakeFeedClient()
        orch = _orchestrator(client)

        orch.set_magnitude_floor(2.5)
        orch.set_magnitude_floor(4.5)
        await orch.wait_idle()

        assert [c["floor"] for c in client.calls] == [4.5]
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_refresh_skips_debounce(self):
        client = FakeFeedClient()
        orch = _orchestrator(client, range_delay_ms=10_000)

        orch.set_range("7d")
        orch.refresh()
        await orch.wait_idle()

        assert len(client.calls) == 1
        assert client.calls[0]["range"] is TimeRange.WEEK
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_bounds_change_refetches_and_culls(self):
        events = [_make_event("east", lon=120.0), _make_event("west", lon=-120.0)]
        client = FakeFeedClient(_success(events))
        orch = _orchestrator(client)

        orch.set_bounds(ViewportBounds(north=90, south=-90, east=180, west=0, zoom=3))
        await orch.wait_idle()

        snap = orch.snapshot()
        assert len(client.calls) == 1
        assert snap.visible_count == 1
        assert [c.members[0].id for c in snap.clusters] == ["east"]
        await orch.aclose()


# ═══════════════════════════════════════════════════════════════════════════
# Supersession
# ═══════════════════════════════════════════════════════════════════════════

class TestSupersession:

    @pytest.mark.asyncio
    async def test_new_fetch_cancels_previous_token(self):
        client = FakeFeedClient(hold=True)
        orch = _orchestrator(client)

        orch.refresh()
        orch.refresh()
        await _settle()

        first, second = client.calls[0]["token"], client.calls[1]["token"]
        assert first.cancelled and first.reason == "superseded"
        assert not second.cancelled
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_stale_result_discarded(self):
        client = FakeFeedClient(hold=True)
        orch = _orchestrator(client)

        orch.set_range("30d")
        orch.refresh()
        orch.set_range("24h")
        orch.refresh()
        await _settle()
        assert len(client.gates) == 2

        # The superseded request answers first and must be ignored
        client.gates[0].set_result(_success(_spread_events(3, "old")))
        await _settle()
        assert orch.events == ()
        assert orch.snapshot().loading

        client.gates[1].set_result(_success(_spread_events(2, "new")))
        await orch.wait_idle()

        assert {e.id for e in orch.events} == {"new0", "new1"}
        assert not orch.snapshot().loading
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_loading_while_fetching(self):
        client = FakeFeedClient(hold=True)
        orch = _orchestrator(client)

        orch.refresh()
        snap = orch.snapshot()
        assert snap.loading
        assert snap.phase == Phase.FETCHING

        await _settle()
        client.gates[0].set_result(_success([]))
        await orch.wait_idle()
        assert not orch.snapshot().loading
        await orch.aclose()


# ═══════════════════════════════════════════════════════════════════════════
# Outcomes
# ═══════════════════════════════════════════════════════════════════════════

class TestOutcomes:

    @pytest.mark.asyncio
    async def test_ready_replaces_events_and_clusters(self):
        client = FakeFeedClient(_success(_spread_events(5), from_cache=True))
        orch = _orchestrator(client)

        orch.refresh()
        await orch.wait_idle()

        snap = orch.snapshot()
        assert snap.last_outcome == Phase.READY
        assert snap.phase == Phase.IDLE
        assert snap.from_cache
        assert snap.error is None
        assert len(snap.clusters) == 5
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_error_keeps_previous_clusters(self):
        client = FakeFeedClient(_success(_spread_events(4)))
        orch = _orchestrator(client)
        orch.refresh()
        await orch.wait_idle()
        before = orch.clusters

        client.result = FetchResult(status=FetchStatus.NETWORK_ERROR, error="HTTP 503: Service Unavailable")
        orch.refresh()
        await orch.wait_idle()

        snap = orch.snapshot()
        assert snap.clusters == before
        assert snap.error == "HTTP 503: Service Unavailable"
        assert snap.last_outcome == Phase.ERROR
        assert not snap.loading
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_error_cleared_by_next_success(self):
        client = FakeFeedClient(FetchResult(status=FetchStatus.NETWORK_ERROR, error="boom"))
        orch = _orchestrator(client)
        orch.refresh()
        await orch.wait_idle()
        assert orch.snapshot().error == "boom"

        client.result = _success(_spread_events(1))
        orch.refresh()
        await orch.wait_idle()
        assert orch.snapshot().error is None
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_abort_is_not_an_error(self):
        client = FakeFeedClient(FetchResult(status=FetchStatus.ABORTED, abort_reason="timeout"))
        orch = _orchestrator(client)

        orch.refresh()
        await orch.wait_idle()

        snap = orch.snapshot()
        assert snap.error is None
        assert snap.last_outcome == Phase.ABORTED
        assert not snap.loading
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_unexpected_fetch_exception_becomes_error(self):
        client = FakeFeedClient(_success(_spread_events(3)))
        orch = _orchestrator(client)
        orch.refresh()
        await orch.wait_idle()
        before = orch.clusters

        async def explode(*args, **kwargs):
            raise RuntimeError("decoder blew up")

        client.fetch_events = explode
        orch.refresh()
        await orch.wait_idle()

        snap = orch.snapshot()
        assert snap.phase == Phase.IDLE
        assert snap.last_outcome == Phase.ERROR
        assert snap.error == "decoder blew up"
        assert not snap.loading
        assert snap.clusters == before
        await orch.aclose()


# ═══════════════════════════════════════════════════════════════════════════
# Mode, listeners, lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestModeAndListeners:

    @pytest.mark.asyncio
    async def test_mode_change_recomputes_without_fetch(self):
        client = FakeFeedClient(_success(_spread_events(150)))
        orch = _orchestrator(client)
        orch.refresh()
        await orch.wait_idle()
        assert orch.snapshot().rendered_count == 100

        orch.set_mode(PerformanceMode.PERFORMANCE)
        assert orch.snapshot().rendered_count == 75
        orch.set_mode("high_quality")
        assert orch.snapshot().rendered_count == 150

        assert len(client.calls) == 1
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_listener_sees_phase_sequence(self):
        client = FakeFeedClient(_success(_spread_events(2)))
        orch = _orchestrator(client)
        phases = []
        orch.subscribe(lambda snap: phases.append(snap.phase))

        orch.set_range("7d")
        await orch.wait_idle()

        assert phases == [Phase.DEBOUNCING, Phase.FETCHING, Phase.READY, Phase.IDLE]
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        orch = _orchestrator(FakeFeedClient())
        seen = []
        unsubscribe = orch.subscribe(seen.append)
        unsubscribe()

        orch.refresh()
        await orch.wait_idle()
        assert seen == []
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_snapshot_to_dict(self):
        client = FakeFeedClient(_success(_spread_events(3)))
        orch = _orchestrator(client, time_range="7d", magnitude_floor=2.5)
        orch.refresh()
        await orch.wait_idle()

        body = orch.snapshot().to_dict()
        assert body["filters"]["range"] == "7d"
        assert body["filters"]["min_magnitude"] == 2.5
        assert body["filters"]["bounds"] is None
        assert body["counts"]["clusters"] == 3
        assert body["last_outcome"] == "ready"
        assert "style" in body["clusters"][0]
        await orch.aclose()

    @pytest.mark.asyncio
    async def test_aclose_cancels_in_flight(self):
        client = FakeFeedClient(hold=True)
        orch = _orchestrator(client)
        orch.refresh()
        await _settle()

        await orch.aclose()

        assert client.calls[0]["token"].reason == "closed"
        assert orch.events == ()


# ═══════════════════════════════════════════════════════════════════════════
# One-shot pipeline
# ═══════════════════════════════════════════════════════════════════════════

class TestBuildView:

    @pytest.mark.asyncio
    async def test_fetch_select_cluster(self, cache):
        doc = make_feed(
            make_feature("a", mag=5.0, lat=10.0, lon=10.0),
            make_feature("b", mag=3.0, lat=10.0005, lon=10.0005),
            make_feature("c", mag=6.0, lat=10.0, lon=-120.0),
        )
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, json=doc)))
        client = FeedClient(cache, base_url="https://feed.test", http_client=http)

        view = await build_view(
            client, "24h", 0.0,
            ViewportBounds(north=90, south=-90, east=180, west=0, zoom=3),
        )

        assert view.fetch.ok
        assert view.selection.visible_count == 2
        assert [c.count for c in view.clusters] == [2]
        assert view.to_dict()["counts"]["culled"] == 0
        await client.aclose()

    @pytest.mark.asyncio
    async def test_failed_fetch_has_no_view(self, cache):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502)))
        client = FeedClient(cache, base_url="https://feed.test", http_client=http)

        view = await build_view(client, "24h")

        assert not view.fetch.ok
        assert view.selection is None
        assert view.to_dict()["clusters"] == []
        await client.aclose()
