"""
Cache inspection endpoints.

Endpoints:
    GET    /api/v1/cache/keys          — Every cached key across both tiers
    DELETE /api/v1/cache               — Clear both tiers, return count removed
    DELETE /api/v1/cache/entry?key=…   — Drop one key from both tiers
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from backend.app.api.deps import get_cache
from backend.app.api.schemas import CacheClearResponse, CacheKeysResponse
from backend.app.core.cache import CacheTier
from backend.app.core.errors import NotFoundError

router = APIRouter(prefix="/api/v1/cache", tags=["cache"])


@router.get("/keys", response_model=CacheKeysResponse)
async def list_cache_keys(cache: CacheTier = Depends(get_cache)):
    keys = await cache.list_keys()
    return CacheKeysResponse(count=len(keys), keys=keys, memory_entries=cache.memory_size)


@router.delete("", response_model=CacheClearResponse)
async def clear_cache(cache: CacheTier = Depends(get_cache)):
    """
    Remove every entry from memory and the durable store.

    A durable failure part-way through surfaces as 503 with the number of
    keys already removed in ``details.removed``.
    """
    removed = await cache.clear_all()
    return CacheClearResponse(removed=removed)


@router.delete("/entry")
async def remove_cache_entry(
    key: str = Query(..., min_length=1),
    cache: CacheTier = Depends(get_cache),
):
    if not await cache.contains(key):
        raise NotFoundError("Cache entry", key=key)
    await cache.remove(key)
    return {"removed": key}
