"""TaskFlow admin API service.

FastAPI application exposing the queue monitor to operators:
- Per-queue job counts
- Dead-job listing and re-drive
- Cleaning of completed or dead jobs

This module provides the app factory pattern for creating configured
FastAPI instances suitable for testing and production deployment.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from taskflow.api.middleware import ErrorHandlerMiddleware, RequestIDMiddleware
from taskflow.api.routers import admin_router
from taskflow.bootstrap import build_services
from taskflow.core.settings import get_settings

if TYPE_CHECKING:
    from taskflow.bootstrap import Services
    from taskflow.core.config import Settings

logger = logging.getLogger(__name__)

API_TITLE = "TaskFlow API"
API_DESCRIPTION = """
Operator endpoints for the TaskFlow background job queues.

## Namespaces

- **/api/admin/** - Queue statistics and dead-job operations (basic auth)

## Documentation

- OpenAPI schema: `/api/openapi.json`
- Swagger UI: `/api/docs`
"""


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    """Create and configure a FastAPI application instance.

    When ``services`` is given the caller owns its lifecycle; otherwise
    the application builds its services on startup and closes them on
    shutdown.

    Args:
        settings: Optional Settings instance. Defaults to the cached
            environment settings.
        services: Optional pre-built service container (tests).

    Returns:
        Configured FastAPI application ready to serve requests.
    """
    if settings is None:
        settings = services.settings if services is not None else get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if services is not None:
            yield
            return
        owned = build_services(settings)
        await owned.start()
        app.state.services = owned
        try:
            yield
        finally:
            await owned.close()

    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=settings.app_version,
        docs_url="/api/docs",
        redoc_url=None,
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.services = services

    _add_middleware(app, settings)
    app.include_router(admin_router, prefix="/api")

    @app.get("/health", tags=["health"])
    async def health_check() -> dict[str, str]:
        """Health check endpoint for container orchestration."""
        return {"status": "healthy"}

    logger.info("TaskFlow API application created (version=%s)", settings.app_version)

    return app


def _add_middleware(app: FastAPI, settings: Settings) -> None:
    """Add middleware to the application.

    The last middleware added is the outermost, so the request ID is
    set before the error handler builds a response that reports it.
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


__all__ = ["create_app"]
