"""FastAPI application factory.

Creates and configures the FastAPI application with all routes and middleware.

## Usage

```bash
roomcast serve --port 8080
# or
uvicorn --factory roomcast.api:create_app
```

## Background Tasks

The lifespan starts an SSE heartbeat task, and the sync worker when
`RUN_SYNC_WORKER` is set. Deployments that run `roomcast worker` or call
`/api/sync/cron` leave the worker off.

## Configuration

The app is configured via environment variables. See `roomcast.config`
for available settings.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from roomcast.calendar.dispatcher import SyncDispatcher
from roomcast.calendar.sync import SyncReconciler
from roomcast.config import Settings, configure_logging, get_settings
from roomcast.database.connection import close_db, get_session_factory, init_db
from roomcast.sse.registry import ConnectionRegistry
from roomcast.tasks import PeriodicTask

logger = logging.getLogger(__name__)


def adapter_options_from(settings: Settings) -> dict[str, Any]:
    """Adapter keyword arguments derived from settings."""
    return {
        "timeout": settings.http_timeout_seconds,
        "user_agent": settings.http_user_agent,
    }


def build_services(app: FastAPI, settings: Settings) -> None:
    """Attach registry, reconciler and dispatcher to `app.state`."""
    registry = ConnectionRegistry()
    adapter_options = adapter_options_from(settings)
    reconciler = SyncReconciler(
        get_session_factory(),
        registry=registry,
        adapter_options=adapter_options,
    )
    app.state.registry = registry
    app.state.adapter_options = adapter_options
    app.state.reconciler = reconciler
    app.state.dispatcher = SyncDispatcher(
        get_session_factory(),
        reconciler,
        batch_size=settings.sync_dispatch_batch_size,
        stale_after_seconds=settings.sync_stale_after_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager.

    Handles startup and shutdown tasks:
    - Initialize database connection and services
    - Start background tasks
    - Close display streams and clean up on shutdown
    """
    settings = get_settings()

    logger.info("Starting %s v%s (%s)", settings.app_name, settings.app_version, settings.environment)

    await init_db()
    build_services(app, settings)
    registry: ConnectionRegistry = app.state.registry

    async def heartbeat() -> None:
        registry.send_heartbeats()

    tasks = [
        PeriodicTask(
            "sse-heartbeat",
            heartbeat,
            settings.sse_heartbeat_interval_seconds,
            run_immediately=False,
        )
    ]
    if settings.run_sync_worker:
        tasks.append(
            PeriodicTask(
                "sync-worker",
                app.state.dispatcher.dispatch,
                settings.sync_dispatch_interval_seconds,
            )
        )
    for task in tasks:
        task.start()

    yield

    # Shutdown
    logger.info("Shutting down")
    for task in tasks:
        await task.stop()
    registry.clear()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application
    """
    settings = get_settings()
    configure_logging(settings.log_level)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Calendar cache sync and live display push",
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
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )

    # Include routers
    from roomcast.api.routes import calendars, displays, health, sync

    app.include_router(displays.router, prefix="/api", tags=["Displays"])
    app.include_router(calendars.router, prefix="/api/calendars", tags=["Calendars"])
    app.include_router(health.router, prefix="/api/health", tags=["Health"])
    app.include_router(sync.router, prefix="/api/sync", tags=["Sync"])

    return app
