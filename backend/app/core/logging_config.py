"""
Structured logging configuration.

Provides:
    • JSON lines in production, one object per record
    • Coloured console lines in development, pipeline fields appended inline
    • Request-scoped context (request_id, client_ip, endpoint) via ContextVar

Pipeline code passes its measurements through ``extra=``; only the names in
PIPELINE_FIELDS are picked up by the formatters.

Usage:
    from backend.app.core.logging_config import setup_logging, get_logger

    setup_logging()
    logger = get_logger(__name__)
    logger.info("Feed fetched", extra={"feed_url": url, "duration_ms": 412.0})
"""

from __future__ import annotations

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from backend.app.core.config import settings

_request_context: ContextVar[Dict[str, Any]] = ContextVar(
    "request_context", default={}
)

PIPELINE_FIELDS = (
    "feed_url",
    "cache_key",
    "event_count",
    "visible_count",
    "culled_count",
    "cluster_count",
    "duration_ms",
    "status_code",
    "endpoint",
)

# Short labels used by the console formatter
_SHORT_LABELS = {
    "cache_key": "key",
    "event_count": "events",
    "visible_count": "visible",
    "culled_count": "culled",
    "cluster_count": "clusters",
    "duration_ms": "ms",
}

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "redis")


def set_request_context(**kwargs: Any) -> None:
    """Replace the request-scoped context; call with no arguments to clear it."""
    _request_context.set(kwargs)


def get_request_context() -> Dict[str, Any]:
    return _request_context.get()


def _pipeline_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in PIPELINE_FIELDS if hasattr(record, key)}


# ── Production ──

class JSONFormatter(logging.Formatter):
    """One JSON object per record for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "service": settings.APP_NAME,
            "env": settings.ENVIRONMENT,
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }

        ctx = get_request_context()
        if ctx:
            entry["request"] = ctx

        entry.update(_pipeline_fields(record))

        if record.exc_info and record.exc_info[1]:
            exc = record.exc_info[1]
            entry["exception"] = {"type": type(exc).__name__, "message": str(exc)}

        return json.dumps(entry, default=str)


# ── Development ──

class PrettyFormatter(logging.Formatter):
    """Coloured single-line output with pipeline counters appended."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, self.RESET)
        parts: List[str] = [
            f"{color}{self.formatTime(record, '%H:%M:%S')} {record.levelname:8s}{self.RESET}",
        ]

        request_id = get_request_context().get("request_id")
        if request_id:
            parts.append(f"[{request_id[:8]}]")

        parts.append(f"{record.name}: {record.getMessage()}")

        fields = _pipeline_fields(record)
        fields.pop("feed_url", None)
        fields.pop("endpoint", None)
        if fields:
            rendered = " ".join(
                f"{_SHORT_LABELS.get(k, k)}={v:.1f}" if isinstance(v, float) else f"{_SHORT_LABELS.get(k, k)}={v}"
                for k, v in fields.items()
            )
            parts.append(f"({rendered})")

        line = " ".join(parts)
        if record.exc_info and record.exc_info[1]:
            line += f"\n  {type(record.exc_info[1]).__name__}: {record.exc_info[1]}"
        return line


def setup_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Install one stdout handler on the root logger.

    Defaults come from settings: JSON in production, pretty elsewhere.
    Safe to call more than once; previous handlers are replaced.
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))
    root.handlers.clear()

    use_json = settings.is_production if json_output is None else json_output
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else PrettyFormatter())
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
