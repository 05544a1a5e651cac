"""
Centralised error handling — exception hierarchy + FastAPI handlers.

Failure taxonomy of the pipeline:
    Aborted          — request superseded or timed out; never shown as an error
    NetworkFailure   — non-2xx or transport failure; shown, prior data retained
    CacheFailure     — durable store error; degrades to a cache miss
    MalformedRecord  — one feed record fails parsing; coerced to defaults

Only NetworkFailure is ever surfaced to the presentation layer as an
error message. The others are classified and absorbed where they occur.

Usage:
    from backend.app.core.errors import FeedNetworkError, register_error_handlers

    raise FeedNetworkError(url, "HTTP 503: Service Unavailable")
"""

from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
# Exception Hierarchy
# ═══════════════════════════════════════════════════════════════════════════

class QuakeMapError(Exception):
    """Base exception for all application errors."""

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        *,
        status_code: int = 500,
        error_code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        self.details = details or {}


class NotFoundError(QuakeMapError):
    """Resource not found (404)."""

    def __init__(self, resource: str, **identifiers: Any):
        details = {"resource": resource, **identifiers}
        super().__init__(
            message=f"{resource} not found",
            status_code=404,
            error_code="NOT_FOUND",
            details=details,
        )


class ValidationError(QuakeMapError):
    """Input validation failed (422)."""

    def __init__(self, message: str, *, field: Optional[str] = None, **details: Any):
        d = {**details}
        if field:
            d["field"] = field
        super().__init__(
            message=message,
            status_code=422,
            error_code="VALIDATION_ERROR",
            details=d,
        )


class FeedNetworkError(QuakeMapError):
    """Upstream feed returned non-2xx or the transport failed (502)."""

    def __init__(self, feed_url: str, message: str = "", **details: Any):
        super().__init__(
            message=message or "Feed request failed",
            status_code=502,
            error_code="FEED_NETWORK_ERROR",
            details={"feed_url": feed_url, **details},
        )


class FetchAbortedError(QuakeMapError):
    """Fetch cancelled by a newer request or by its timeout."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(
            message=f"Fetch aborted ({reason})",
            status_code=499,
            error_code="FETCH_ABORTED",
            details={"reason": reason},
        )
        self.reason = reason


class CacheFailureError(QuakeMapError):
    """Durable cache store failed (503). ``removed`` counts keys already deleted."""

    def __init__(self, operation: str, message: str = "", *, removed: int = 0):
        super().__init__(
            message=f"Cache {operation} failed: {message}",
            status_code=503,
            error_code="CACHE_FAILURE",
            details={"operation": operation, "removed": removed},
        )
        self.removed = removed


class MalformedRecordError(QuakeMapError):
    """A single feed record could not be parsed strictly."""

    def __init__(self, record_id: Optional[str], message: str = ""):
        super().__init__(
            message=f"Malformed record {record_id or '<no id>'}: {message}",
            status_code=422,
            error_code="MALFORMED_RECORD",
            details={"record_id": record_id},
        )


# ═══════════════════════════════════════════════════════════════════════════
# Error Response Builder
# ═══════════════════════════════════════════════════════════════════════════

def _build_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request: Optional[Request] = None,
) -> JSONResponse:
    """Build a consistent JSON error response."""
    body: Dict[str, Any] = {
        "error": {
            "code": error_code,
            "message": message,
            "status": status_code,
        }
    }

    if details:
        body["error"]["details"] = details

    if request and not settings.is_production:
        body["error"]["path"] = str(request.url.path)
        body["error"]["method"] = request.method

    return JSONResponse(status_code=status_code, content=body)


# ═══════════════════════════════════════════════════════════════════════════
# FastAPI Exception Handlers
# ═══════════════════════════════════════════════════════════════════════════

def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the FastAPI app."""

    @app.exception_handler(QuakeMapError)
    async def handle_quake_error(request: Request, exc: QuakeMapError):
        level = logging.WARNING if exc.status_code < 500 else logging.ERROR
        logger.log(
            level,
            "API Error [%s]: %s | details=%s",
            exc.error_code, exc.message, exc.details,
        )
        return _build_error_response(
            exc.status_code, exc.error_code, exc.message,
            exc.details, request,
        )

    @app.exception_handler(ValueError)
    async def handle_value_error(request: Request, exc: ValueError):
        logger.warning("ValueError: %s", exc)
        return _build_error_response(
            422, "VALIDATION_ERROR", str(exc), request=request,
        )

    @app.exception_handler(Exception)
    async def handle_unhandled(request: Request, exc: Exception):
        logger.critical(
            "Unhandled exception: %s\n%s",
            exc, traceback.format_exc(),
        )
        message = str(exc) if settings.DEBUG else "Internal server error"
        details = (
            {"traceback": traceback.format_exc().split("\n")}
            if settings.DEBUG else None
        )
        return _build_error_response(
            500, "INTERNAL_ERROR", message, details, request,
        )
