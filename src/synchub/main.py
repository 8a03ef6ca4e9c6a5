"""FastAPI application factory.

Creates the app with logging middleware, metrics middleware, lifespan
events for database initialization and service wiring, and the v1 API
router.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from collections.abc import AsyncGenerator

import structlog
from fastapi import FastAPI
from fastapi.requests import Request
from fastapi.responses import Response

from src.synchub.api.middleware.logging import LoggingMiddleware, configure_structlog
from src.synchub.api.v1.router import router as v1_router
from src.synchub.config import get_settings
from src.synchub.core.database import close_db, init_db
from src.synchub.core.monitoring import MetricsMiddleware, get_metrics_response
from src.synchub.services import build_services


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: init DB and services on startup, close on shutdown."""
    log = structlog.get_logger(__name__)
    settings = get_settings()
    configure_structlog()
    await init_db()

    services = build_services(settings)
    app.state.services = services
    app.state.sync_orchestrator = services.orchestrator
    app.state.sync_log = services.sync_log
    app.state.formula_service = services.formula_service
    app.state.quickbooks_client = services.quickbooks_client
    app.state.quickbooks_publisher = services.quickbooks_publisher
    log.info(
        "synchub.started",
        environment=settings.ENVIRONMENT.value,
        sources=sorted(s.value for s in services.sources),
    )

    yield

    await services.aclose()
    await close_db()
    log.info("synchub.stopped")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Sync Hub API",
        version="0.1.0",
        description="Brokerage data sync between REZEN, Zoho CRM and QuickBooks Online",
        lifespan=lifespan,
    )

    # Middleware is added in reverse order (last added = outermost)
    app.add_middleware(LoggingMiddleware)

    # Metrics middleware (outermost -- records Prometheus metrics for all requests)
    app.add_middleware(MetricsMiddleware)

    app.include_router(v1_router)

    # Prometheus metrics endpoint (infrastructure route, outside v1 router)
    @app.get("/metrics", include_in_schema=False)
    async def metrics(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        return get_metrics_response()

    return app


app = create_app()
