"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from backend.app.core.config import settings
    print(settings.REDIS_URL)
"""

from __future__ import annotations

from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Seismic Viewport Pipeline"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # ── CORS ──
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://localhost:5173",
    ]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Durable cache (Redis) ──
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_ENABLED: bool = True
    CACHE_KEY_PREFIX: str = "quakecache:"
    CACHE_TTL_MS: int = 5 * 60 * 1000  # 5 minutes
    MEMORY_CACHE_MAX_ENTRIES: int = 50  # soft cap, oldest stored entry evicted

    # ── Upstream feed ──
    USGS_FEED_BASE: str = "https://earthquake.usgs.gov/earthquakes/feed/v1.0/summary"
    FEED_FETCH_TIMEOUT_MS: int = 15_000
    DEFAULT_RESULT_CAP: int = 2000  # keeps 7d/30d feeds from flooding the map

    # ── Orchestrator debounce windows (ms) ──
    DEBOUNCE_RANGE_MS: int = 250
    DEBOUNCE_MAGNITUDE_MS: int = 400
    DEBOUNCE_BOUNDS_MS: int = 500  # pan/zoom fires continuously

    # ── Clustering ──
    CLUSTER_DISTANCE_METRIC: str = "planar"  # planar | haversine

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()
