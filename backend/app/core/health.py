"""
Health check aggregation — deep health probe for the pipeline's dependencies.

Checks:
    • Durable cache connectivity (Redis PING)
    • In-process cache occupancy against its soft cap
    • Upstream feed configuration

A durable-store failure only degrades the service: the pipeline keeps
working from memory and the network. Nothing here marks the service
unhealthy unless the feed itself is unusable.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from backend.app.core.cache import CacheTier, NullDurableStore
from backend.app.core.config import settings

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # partial functionality
    UNHEALTHY = "unhealthy"


@dataclass
class ComponentHealth:
    name: str
    status: HealthStatus = HealthStatus.HEALTHY
    latency_ms: float = 0.0
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "name": self.name,
            "status": self.status.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.message:
            d["message"] = self.message
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class HealthReport:
    status: HealthStatus = HealthStatus.HEALTHY
    version: str = settings.APP_VERSION
    environment: str = settings.ENVIRONMENT
    timestamp: str = ""
    uptime_seconds: float = 0.0
    components: List[ComponentHealth] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "version": self.version,
            "environment": self.environment,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
            "uptime_seconds": round(self.uptime_seconds, 1),
            "components": [c.to_dict() for c in self.components],
        }


_start_time = time.monotonic()


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url


async def check_durable_cache(cache: Optional[CacheTier]) -> ComponentHealth:
    """PING the durable store; failure degrades to memory-only caching."""
    comp = ComponentHealth(name="durable_cache")
    start = time.monotonic()

    if cache is None or isinstance(cache.durable, NullDurableStore):
        comp.status = HealthStatus.DEGRADED
        comp.message = "Durable cache disabled; memory only"
    else:
        try:
            ok = await cache.durable.ping()
        except Exception as e:
            logger.warning("Durable cache ping failed: %s", e)
            ok = False
            comp.message = str(e)
        if ok:
            comp.status = HealthStatus.HEALTHY
            comp.message = "Redis reachable"
        else:
            comp.status = HealthStatus.DEGRADED
            comp.message = comp.message or "Redis unreachable; memory only"
        comp.details = {"url": _redact(settings.REDIS_URL), "prefix": settings.CACHE_KEY_PREFIX}

    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_memory_cache(cache: Optional[CacheTier]) -> ComponentHealth:
    comp = ComponentHealth(name="memory_cache")
    start = time.monotonic()
    if cache is None:
        comp.status = HealthStatus.DEGRADED
        comp.message = "Cache tier not initialised"
    else:
        comp.message = f"{cache.memory_size}/{cache.max_memory_entries} entries"
        comp.details = {
            "entries": cache.memory_size,
            "soft_cap": cache.max_memory_entries,
            "ttl_ms": cache.default_ttl_ms,
        }
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def check_feed_config() -> ComponentHealth:
    """Feed URL and timeout are configured (no network call)."""
    comp = ComponentHealth(name="usgs_feed")
    start = time.monotonic()

    if not settings.USGS_FEED_BASE.startswith(("http://", "https://")):
        comp.status = HealthStatus.UNHEALTHY
        comp.message = f"Invalid feed base URL: {settings.USGS_FEED_BASE!r}"
    else:
        comp.status = HealthStatus.HEALTHY
        comp.message = "Feed configured"
    comp.details = {
        "base_url": settings.USGS_FEED_BASE,
        "timeout_ms": settings.FEED_FETCH_TIMEOUT_MS,
    }
    comp.latency_ms = (time.monotonic() - start) * 1000
    return comp


async def run_health_check(cache: Optional[CacheTier] = None) -> HealthReport:
    """Run all health checks and aggregate into a report."""
    report = HealthReport(
        timestamp=datetime.now(timezone.utc).isoformat(),
        uptime_seconds=time.monotonic() - _start_time,
    )

    checks = [
        check_durable_cache(cache),
        check_memory_cache(cache),
        check_feed_config(),
    ]

    for coro in checks:
        comp = await coro
        report.components.append(comp)

    statuses = [c.status for c in report.components]
    if HealthStatus.UNHEALTHY in statuses:
        report.status = HealthStatus.UNHEALTHY
    elif HealthStatus.DEGRADED in statuses:
        report.status = HealthStatus.DEGRADED
    else:
        report.status = HealthStatus.HEALTHY

    return report
