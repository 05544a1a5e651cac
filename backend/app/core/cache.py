"""
Two-level event cache — in-process dict in front of a durable Redis store.

Provides:
    • CacheTier with get / set / remove / list_keys / clear_all
    • Lazy TTL expiry (purged on the read that discovers it)
    • Durable-hit warming of the in-process map
    • Oldest-entry eviction once the in-process map exceeds its soft cap
    • RedisDurableStore (redis.asyncio) and NullDurableStore (tests, no Redis)

Keys are ``"<feedURL>|min:<magnitudeFloor>"``; durable values are JSON
documents ``{"storedAt": ms, "ttl": ms, "payload": [event, ...]}`` so they
survive a process restart.

Failure policy:
    Durable read/write errors are logged and degrade to a cache miss.
    Only ``clear_all`` reports a durable failure, as CacheFailureError
    carrying the number of keys already removed.

Usage:
    tier = CacheTier(RedisDurableStore(settings.REDIS_URL))
    await tier.set(key, events)
    cached = await tier.get(key)
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from backend.app.core.config import settings
from backend.app.core.errors import CacheFailureError
from backend.app.quakes.models import Event

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Wall-clock epoch milliseconds."""
    return int(time.time() * 1000)


def make_cache_key(feed_url: str, magnitude_floor: float) -> str:
    """
    >>> make_cache_key("https://x/all_day.geojson", 2.5)
    'https://x/all_day.geojson|min:2.5'
    >>> make_cache_key("https://x/all_day.geojson", 4.0)
    'https://x/all_day.geojson|min:4'
    """
    floor = repr(float(magnitude_floor))
    if floor.endswith(".0"):
        floor = floor[:-2]
    return f"{feed_url}|min:{floor}"


# ═══════════════════════════════════════════════════════════════════════════
# Entries
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CacheEntry:
    key: str
    stored_at: int  # epoch ms
    ttl: int        # ms
    payload: Tuple[Event, ...]

    def is_valid(self, now: int) -> bool:
        return now - self.stored_at <= self.ttl

    def to_json(self) -> str:
        return json.dumps({
            "storedAt": self.stored_at,
            "ttl": self.ttl,
            "payload": [e.to_dict() for e in self.payload],
        })

    @classmethod
    def from_json(cls, key: str, raw: str) -> "CacheEntry":
        doc = json.loads(raw)
        return cls(
            key=key,
            stored_at=int(doc["storedAt"]),
            ttl=int(doc["ttl"]),
            payload=tuple(Event.from_dict(e) for e in doc["payload"]),
        )


# ═══════════════════════════════════════════════════════════════════════════
# Durable stores
# ═══════════════════════════════════════════════════════════════════════════

class DurableStore:
    """Async key/value interface the CacheTier persists through."""

    name = "durable"

    async def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    async def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def delete(self, key: str) -> None:
        raise NotImplementedError

    async def keys(self) -> List[str]:
        raise NotImplementedError

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None


class NullDurableStore(DurableStore):
    """Stores nothing. Used when Redis is disabled and in tests."""

    name = "null"

    async def get(self, key: str) -> Optional[str]:
        return None

    async def set(self, key: str, value: str) -> None:
        return None

    async def delete(self, key: str) -> None:
        return None

    async def keys(self) -> List[str]:
        return []


class RedisDurableStore(DurableStore):
    """Redis-backed store; every key is namespaced with ``prefix``."""

    name = "redis"

    def __init__(self, url: str = settings.REDIS_URL, prefix: str = settings.CACHE_KEY_PREFIX):
        self.url = url
        self.prefix = prefix
        self._client = None

    def _get_client(self):
        """Get or create async Redis client (connects lazily on first command)."""
        if self._client is None:
            import redis.asyncio as aioredis
            self._client = aioredis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis client created: %s", self.url.split("@")[-1])
        return self._client

    async def get(self, key: str) -> Optional[str]:
        return await self._get_client().get(self.prefix + key)

    async def set(self, key: str, value: str) -> None:
        await self._get_client().set(self.prefix + key, value)

    async def delete(self, key: str) -> None:
        await self._get_client().delete(self.prefix + key)

    async def keys(self) -> List[str]:
        found = []
        async for raw in self._get_client().scan_iter(f"{self.prefix}*"):
            found.append(raw[len(self.prefix):])
        return found

    async def ping(self) -> bool:
        return bool(await self._get_client().ping())

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis connection closed")


# ═══════════════════════════════════════════════════════════════════════════
# Cache tier
# ═══════════════════════════════════════════════════════════════════════════

class CacheTier:
    """
    Process-scoped two-level cache. Created once at startup and cleared
    only through ``clear_all``.
    """

    def __init__(
        self,
        durable: Optional[DurableStore] = None,
        *,
        default_ttl_ms: int = settings.CACHE_TTL_MS,
        max_memory_entries: int = settings.MEMORY_CACHE_MAX_ENTRIES,
        clock: Callable[[], int] = now_ms,
    ):
        self.durable = durable or NullDurableStore()
        self.default_ttl_ms = default_ttl_ms
        self.max_memory_entries = max_memory_entries
        self.clock = clock
        self._memory: Dict[str, CacheEntry] = {}

    @property
    def memory_size(self) -> int:
        return len(self._memory)

    async def get(self, key: str) -> Optional[Tuple[Event, ...]]:
        """Return the cached events for ``key`` or None on miss / expiry."""
        now = self.clock()

        entry = self._memory.get(key)
        if entry is not None:
            if entry.is_valid(now):
                logger.debug("Cache HIT (memory): %s", key, extra={"cache_key": key})
                return entry.payload
            self._memory.pop(key, None)

        try:
            raw = await self.durable.get(key)
        except Exception as e:
            logger.warning("Durable cache GET error for %s: %s", key, e)
            return None
        if raw is None:
            return None

        try:
            entry = CacheEntry.from_json(key, raw)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding unreadable cache entry %s: %s", key, e)
            await self._delete_durable(key)
            return None

        if not entry.is_valid(now):
            logger.debug("Cache EXPIRED (durable): %s", key)
            await self._delete_durable(key)
            return None

        # Warm the in-process map; keep the original timestamp so the
        # warmed copy expires together with the durable one.
        self._store_memory(entry)
        logger.debug("Cache HIT (durable): %s", key, extra={"cache_key": key})
        return entry.payload

    async def set(
        self,
        key: str,
        events: Sequence[Event],
        ttl: Optional[int] = None,
    ) -> CacheEntry:
        entry = CacheEntry(
            key=key,
            stored_at=self.clock(),
            ttl=ttl if ttl is not None else self.default_ttl_ms,
            payload=tuple(events),
        )
        self._store_memory(entry)
        try:
            await self.durable.set(key, entry.to_json())
        except Exception as e:
            logger.warning("Durable cache SET error for %s: %s", key, e)
        return entry

    async def contains(self, key: str) -> bool:
        """True when either level holds ``key``, expired or not."""
        if key in self._memory:
            return True
        try:
            return await self.durable.get(key) is not None
        except Exception as e:
            logger.warning("Durable cache GET error for %s: %s", key, e)
            return False

    async def remove(self, key: str) -> None:
        self._memory.pop(key, None)
        await self._delete_durable(key)

    async def list_keys(self) -> List[str]:
        keys = set(self._memory)
        try:
            keys.update(await self.durable.keys())
        except Exception as e:
            logger.warning("Durable cache KEYS error: %s", e)
        return sorted(keys)

    async def clear_all(self) -> int:
        """
        Remove every entry from both levels and return how many distinct
        keys were removed. Keys deleted before a durable failure stay
        deleted.
        """
        removed = set(self._memory)
        self._memory.clear()

        try:
            durable_keys = await self.durable.keys()
        except Exception as e:
            raise CacheFailureError("clear", str(e), removed=len(removed)) from e

        for key in durable_keys:
            try:
                await self.durable.delete(key)
            except Exception as e:
                raise CacheFailureError("clear", str(e), removed=len(removed)) from e
            removed.add(key)

        logger.info("Cache cleared: %d entries removed", len(removed))
        return len(removed)

    async def close(self) -> None:
        await self.durable.close()

    def _store_memory(self, entry: CacheEntry) -> None:
        self._memory[entry.key] = entry
        if len(self._memory) > self.max_memory_entries:
            oldest = min(self._memory.values(), key=lambda e: e.stored_at)
            self._memory.pop(oldest.key, None)
            logger.debug("Evicted oldest memory cache entry %s", oldest.key)

    async def _delete_durable(self, key: str) -> None:
        try:
            await self.durable.delete(key)
        except Exception as e:
            logger.warning("Durable cache DELETE error for %s: %s", key, e)


def build_cache_tier() -> CacheTier:
    """Cache tier wired from settings (Redis unless disabled)."""
    durable: DurableStore = (
        RedisDurableStore(settings.REDIS_URL, settings.CACHE_KEY_PREFIX)
        if settings.REDIS_ENABLED else NullDurableStore()
    )
    return CacheTier(durable)
