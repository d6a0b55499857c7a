"""FastAPI application factory.

Creates and configures the FastAPI application with all routes and middleware.

## Usage

```python
from family_sync.api import create_app

app = create_app()

# Run with uvicorn
if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
```

## Configuration

The app is configured via environment variables. See `family_sync.config`
for available settings.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from family_sync.calendar.scheduler import SyncScheduler
from family_sync.calendar.sync import CalendarSyncService
from family_sync.config import get_settings
from family_sync.database.connection import close_db, get_session_factory, init_db
from family_sync.database.repositories import SqlConnectionRepository, SqlEventRepository
from family_sync.providers.registry import build_provider_registry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown tasks:
    - Initialize database connection
    - Create provider adapters and the scheduler
    - Clean up on shutdown
    """
    settings = get_settings()

    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    # Initialize database
    await init_db()

    session_factory = get_session_factory()
    connections = SqlConnectionRepository(session_factory)
    providers = build_provider_registry(settings)
    sync_service = CalendarSyncService(
        connections, SqlEventRepository(session_factory), providers, settings
    )

    app.state.providers = providers
    app.state.scheduler = SyncScheduler(
        connections, sync_service, max_concurrency=settings.sync_max_concurrency
    )

    yield

    # Shutdown
    logger.info("Shutting down")
    await providers.aclose()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="External calendar sync for family calendars",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        openapi_url="/openapi.json" if settings.debug else None,
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
        allow_headers=["*"],
    )

    # Include routers
    from family_sync.api.routes import connections, internal

    app.include_router(
        connections.router,
        prefix="/api/families/{family_id}/calendar-connections",
        tags=["Calendar connections"],
    )
    app.include_router(internal.router, prefix="/internal", tags=["Internal"])

    # Health check endpoint
    @app.get("/health", tags=["Health"])
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "version": settings.app_version}

    return app
