"""PulseGuard API service.

FastAPI application providing:
- Reading ingestion with deadline-bounded analysis
- Reading lookup with the currently attached analysis
- Retry queue administration and on-demand draining

This module provides the app factory pattern for creating configured
FastAPI instances suitable for testing and production deployment.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from pulseguard.api.middleware import (
    ErrorHandlerMiddleware,
    RequestIDMiddleware,
    http_exception_handler,
)
from pulseguard.api.routers import admin_router, readings_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from pulseguard.core.config import Settings

logger = logging.getLogger(__name__)

# Application metadata
API_TITLE = "PulseGuard API"
API_DESCRIPTION = """
Vital-sign monitoring with resilient analysis.

## Namespaces

- **/api/readings** - Reading ingestion and lookup
- **/api/admin/retry-queue** - Analysis retry queue operations

## Documentation

- OpenAPI spec: `/api/openapi.json`
- Swagger UI: `/api/docs`
- ReDoc: `/api/redoc`
"""


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Open the database engine and classifier client; run the embedded worker.

    Everything is torn down in reverse order on shutdown. The worker gets
    its shutdown timeout to finish an in-flight pass.
    """
    from pulseguard.core.settings import get_settings
    from pulseguard.db import close_engine, init_engine
    from pulseguard.services.analysis import AnalysisInvoker
    from pulseguard.services.classifier_client import ClassificationClient
    from pulseguard.services.retry_queue import make_retry_reporter
    from pulseguard.worker.main import RetryWorker

    if app.state.settings is None:
        app.state.settings = get_settings()
    settings: Settings = app.state.settings

    session_factory = init_engine(settings.database)
    try:
        async with ClassificationClient(settings.classifier) as client:
            if not client.is_configured:
                logger.warning("Classifier not configured, alert analyses will use fallbacks")

            app.state.invoker = AnalysisInvoker(
                client, make_retry_reporter(session_factory, settings.retry)
            )
            app.state.worker = None
            if settings.worker.embedded:
                app.state.worker = RetryWorker(
                    session_factory,
                    app.state.invoker,
                    settings.worker,
                    settings.retry,
                    history_limit=settings.ingestion.history_limit,
                )
                await app.state.worker.start()

            try:
                yield
            finally:
                if app.state.worker is not None:
                    await app.state.worker.stop()
    finally:
        await close_engine()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure a FastAPI application instance.

    This factory function creates a fully configured FastAPI app with:
    - API routers mounted under /api
    - Request ID middleware for log correlation
    - Error handling middleware for consistent JSON responses
    - CORS middleware (configurable via settings)
    - A lifespan that wires the database, classifier and retry worker

    Args:
        settings: Optional Settings instance. If not provided, settings
            are loaded from the environment when the app starts.

    Returns:
        Configured FastAPI application ready to serve requests.

    Example:
        app = create_app()

        # For testing
        test_settings = Settings(environment="dev", worker={"embedded": False})
        app = create_app(test_settings)
    """
    version = "0.1.0"
    if settings:
        version = settings.app_version

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=version,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    # Store settings in app state for access in routes
    app.state.settings = settings

    app.add_exception_handler(StarletteHTTPException, http_exception_handler)

    # Add middleware (order matters - last added is outermost)
    _add_middleware(app, settings)

    _include_routers(app)

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration."""
        return {"status": "healthy"}

    logger.info("PulseGuard API application created (version=%s)", version)

    return app


def _add_middleware(app: FastAPI, settings: Settings | None) -> None:
    """Add middleware to the application.

    Args:
        app: The FastAPI application instance.
        settings: Optional settings for middleware configuration.
    """
    app.add_middleware(ErrorHandlerMiddleware)

    # Outside the error handler so error responses carry the request ID too
    app.add_middleware(RequestIDMiddleware)

    allowed_origins = ["http://localhost:3000", "http://localhost:8000"]
    if settings and settings.is_production:
        allowed_origins = []

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )


def _include_routers(app: FastAPI) -> None:
    app.include_router(readings_router, prefix="/api")
    app.include_router(admin_router, prefix="/api")
