"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.cache import build_cache_tier
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import run_health_check

# ── Pipeline ──
from backend.app.ingestion.feed_client import FeedClient
from backend.app.pipeline.orchestrator import Orchestrator

# ── API routers ──
from backend.app.api.v1.quakes import router as quakes_router
from backend.app.api.v1.cache import router as cache_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create the cache, feed client and live session; close them on shutdown."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    cache = build_cache_tier()
    feed_client = FeedClient(cache)
    app.state.cache = cache
    app.state.feed_client = feed_client
    app.state.orchestrator = Orchestrator(feed_client)

    yield

    logger.info("Shutting down %s", settings.APP_NAME)
    await app.state.orchestrator.aclose()
    await feed_client.aclose()
    await cache.close()


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Real-time earthquake map backend. "
        "Fetches the USGS summary feed through a two-level cache "
        "(in-process + Redis, 5 minute TTL), culls events to the visible "
        "viewport, ranks them by magnitude and recency under a zoom-tiered "
        "render budget, and groups nearby events into weighted clusters."
    ),
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# ── Middleware stack, outermost first ──

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)

# ── Error handlers ──
register_error_handlers(app)

# ── Register routers ──
app.include_router(quakes_router)
app.include_router(cache_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "feed-client",
            "cache-tier",
            "viewport-engine",
            "cluster-engine",
            "orchestrator",
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
async def health_check(request: Request):
    """Deep health probe — checks all subsystems."""
    report = await run_health_check(getattr(request.app.state, "cache", None))
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}


@app.get("/health/ready", tags=["health"])
async def readiness(request: Request):
    """Kubernetes readiness probe — can we serve traffic?"""
    report = await run_health_check(getattr(request.app.state, "cache", None))
    if report.status.value == "unhealthy":
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()
