"""Structured request logging middleware.

Logs every request with method, path, status_code and duration_ms. Each
request gets a request_id (inbound X-Request-ID or a fresh uuid4), echoed
back on the response. Webhook deliveries additionally carry the
integration_id and provider from the URL, so every pipeline log line
emitted while handling the delivery can be traced back to it.

Probe traffic (/health, /metrics) is logged at debug level.
"""

from __future__ import annotations

import logging
import sys
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.callsync.config import Environment, get_settings

logger = structlog.get_logger(__name__)

QUIET_PATHS = ("/health", "/metrics")


def configure_structlog() -> None:
    """Configure structlog processors based on environment and LOG_LEVEL."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=settings.LOG_LEVEL.upper())

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.ENVIRONMENT == Environment.production:
        shared_processors.append(structlog.processors.JSONRenderer())
    else:
        shared_processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def webhook_context(path: str) -> dict[str, str]:
    """Pull integration id and provider out of a /webhooks/... path.

    /webhooks/{id}, /webhooks/{provider}/{id} and /webhooks/{id}/{action}
    are all recognised; anything else yields an empty dict.
    """
    parts = [p for p in path.split("/") if p]
    if len(parts) < 2 or parts[0] != "webhooks":
        return {}
    if len(parts) == 2:
        return {"integration_id": parts[1]}
    if parts[2] in ("test", "validate", "logs"):
        return {"integration_id": parts[1]}
    return {"webhook_provider": parts[1], "integration_id": parts[2]}


class LoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with timing and binds request context for the pipeline."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        context = {"request_id": request_id, **webhook_context(request.url.path)}
        start_time = time.monotonic()
        structlog.contextvars.bind_contextvars(**context)

        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "request.failed",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            )
            raise
        finally:
            structlog.contextvars.unbind_contextvars(*context)

        response.headers["X-Request-ID"] = request_id

        if request.url.path.startswith(QUIET_PATHS):
            log_method = logger.debug
        elif response.status_code >= 500:
            log_method = logger.error
        elif response.status_code >= 400:
            log_method = logger.warning
        else:
            log_method = logger.info

        log_method(
            "request.completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.monotonic() - start_time) * 1000, 2),
            request_id=request_id,
        )
        return response
