"""returnflow API service.

FastAPI application providing:
- Return case commands and queries for every UI surface
- Consistent JSON errors with retryable flags
- Request ID correlation

This module provides the app factory pattern for creating configured
FastAPI instances suitable for testing and production deployment.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from returnflow.api.middleware import ErrorHandlerMiddleware, RequestIDMiddleware
from returnflow.api.routers import admin_router, cases_router
from returnflow.services.events import CaseEventPublisher

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from returnflow.core.config import Settings
    from returnflow.services.parcels import ExchangeParcelFactory, ParcelEligibility

logger = logging.getLogger(__name__)

API_TITLE = "returnflow API"
API_DESCRIPTION = """
Return and exchange case resolution engine.

## Namespaces

- **/api/parcels/{parcel_id}/return-cases** - Case commands and snapshots
- **/api/return-cases/open** - Cases requiring action
- **/api/admin/idempotency-records/purge** - Idempotency ledger retention sweep

## Documentation

- OpenAPI spec: `/api/openapi.json`
- Swagger UI: `/api/docs`
"""


def create_app(
    settings: Settings | None = None,
    *,
    parcel_tracking: ParcelEligibility | ExchangeParcelFactory | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    case_events: CaseEventPublisher | None = None,
) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Args:
        settings: Settings instance; loaded from the environment when omitted.
        parcel_tracking: Parcel tracking adapter. When omitted, an HTTP client
            is built from ``settings.parcels`` at startup and closed at shutdown.
        session_factory: Session factory to use instead of the process-wide one.
        case_events: Publisher for row-level updates.

    Returns:
        Configured FastAPI application ready to serve requests.

    Example:
        app = create_app()

        # For testing
        app = create_app(Settings(environment="dev"), parcel_tracking=InMemoryParcelTracking())
    """
    if settings is None:
        from returnflow.core.settings import get_settings

        settings = get_settings()

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=settings.app_version,
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
        lifespan=_lifespan,
    )

    app.state.settings = settings
    app.state.parcel_tracking = parcel_tracking
    app.state.session_factory = session_factory
    app.state.case_events = case_events or CaseEventPublisher()

    _add_middleware(app, settings)
    app.include_router(cases_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration."""
        return {"status": "healthy"}

    logger.info("returnflow API application created (version=%s)", settings.app_version)
    return app


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Own the tracking client and the database engine for the app's lifetime."""
    from returnflow.db import close_engine
    from returnflow.services.parcels import HttpParcelTrackingClient, ParcelTrackingConfig

    owned_client: HttpParcelTrackingClient | None = None
    if app.state.parcel_tracking is None:
        config = ParcelTrackingConfig.from_settings(app.state.settings)
        owned_client = HttpParcelTrackingClient(config)
        app.state.parcel_tracking = owned_client
        logger.info("Parcel tracking client configured for %s", app.state.settings.parcels.base_url)

    try:
        yield
    finally:
        if owned_client is not None:
            await owned_client.aclose()
            app.state.parcel_tracking = None
        if app.state.session_factory is None:
            await close_engine()


def _add_middleware(app: FastAPI, settings: Settings) -> None:
    """Add middleware to the application.

    The last middleware added is the outermost. RequestIDMiddleware wraps
    ErrorHandlerMiddleware so error bodies can carry the request id.
    """
    app.add_middleware(ErrorHandlerMiddleware)
    app.add_middleware(RequestIDMiddleware)

    allowed_origins = [] if settings.is_production else ["http://localhost:3000"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
