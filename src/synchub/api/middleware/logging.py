"""Structured request logging for the sync hub.

Every request gets a request_id (returned as X-Request-ID) bound into the
structlog context, so log lines emitted by the orchestrator and reconciler
during a cron-triggered run or a webhook carry the id of the call that
started them.

Requests are tagged with a route kind:
- health: /health, /metrics (logged at debug; load balancers poll them)
- sync: /api/v1/sync/... and /api/v1/quickbooks/... cron triggers
- webhook: /api/v1/webhooks/... pushes
- api: everything else

Production renders JSON; other environments use the console renderer.
"""

from __future__ import annotations

import logging
import time
import uuid

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from src.synchub.config import Environment, get_settings

logger = structlog.get_logger(__name__)

_HEALTH_PATHS = frozenset({"/health", "/health/ready", "/metrics"})


def configure_structlog() -> None:
    """Route structlog through stdlib logging at LOG_LEVEL."""
    settings = get_settings()
    logging.basicConfig(format="%(message)s", level=settings.LOG_LEVEL.upper())

    renderer = (
        structlog.processors.JSONRenderer()
        if settings.ENVIRONMENT == Environment.production
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def route_kind(path: str) -> str:
    """Classify a request path for log filtering."""
    if path in _HEALTH_PATHS:
        return "health"
    if path.startswith(("/api/v1/sync/", "/api/v1/quickbooks/")):
        return "sync"
    if path.startswith("/api/v1/webhooks/"):
        return "webhook"
    return "api"


class LoggingMiddleware(BaseHTTPMiddleware):
    """Log each request once on completion, with the request id bound for its duration."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = str(uuid.uuid4())
        kind = route_kind(request.url.path)
        start_time = time.monotonic()
        structlog.contextvars.bind_contextvars(request_id=request_id, route_kind=kind)

        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception(
                    "request.failed",
                    method=request.method,
                    path=request.url.path,
                    duration_ms=round((time.monotonic() - start_time) * 1000, 2),
                )
                raise

            response.headers["X-Request-ID"] = request_id
            if kind == "health" and response.status_code < 400:
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
            )
            return response
        finally:
            structlog.contextvars.unbind_contextvars("request_id", "route_kind")
