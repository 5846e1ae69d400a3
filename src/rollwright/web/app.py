"""FastAPI application factory for the Rollwright operator API.

The application wires:
- CORS middleware for cross-origin requests
- Request logging middleware with correlation IDs
- The release coordinator lifecycle (unit workers and reconciler loops)
- The release ledger database and its EventBus subscription
- The SSE broadcaster subscribed to the EventBus

Example usage:
    >>> from rollwright.config import load_config
    >>> from rollwright.web.app import create_app
    >>>
    >>> app = create_app(load_config())
    >>>
    >>> import uvicorn
    >>> uvicorn.run(app, host="0.0.0.0", port=8080)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rollwright import __version__
from rollwright.config import RollwrightConfig
from rollwright.database.connection import create_schema, get_engine, get_session_factory
from rollwright.database.ledger import ReleaseLedger
from rollwright.logging import get_logger
from rollwright.orchestrator.coordinator import ReleaseCoordinator, create_release_coordinator
from rollwright.web.middleware import RequestLoggingMiddleware
from rollwright.web.routes.events import EventBroadcaster, create_events_router
from rollwright.web.routes.health import create_health_router
from rollwright.web.routes.units import create_units_router
from rollwright.web.routes.webhooks import create_webhooks_router

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = get_logger(__name__)


def _attach_coordinator(app: FastAPI, coordinator: ReleaseCoordinator) -> None:
    app.state.coordinator = coordinator
    coordinator.events.subscribe(app.state.broadcaster)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start the coordinator and ledger on startup, stop them on shutdown.

    A coordinator passed to create_app is used as is; otherwise one is built
    from configuration here, so that constructing the app never touches the
    manifest repository or the cluster.
    """
    config: RollwrightConfig = app.state.config
    logger.info("app_startup_begin", host=config.web.host, port=config.web.port)

    if app.state.coordinator is None:
        _attach_coordinator(app, create_release_coordinator(config))
    coordinator: ReleaseCoordinator = app.state.coordinator

    engine = None
    ledger = None
    if config.database.enabled:
        engine = get_engine(config.database)
        if config.database.url.startswith("sqlite"):
            await create_schema(engine)
        app.state.engine = engine
        app.state.session_factory = get_session_factory(engine)
        ledger = ReleaseLedger(app.state.session_factory)
        coordinator.events.subscribe(ledger)
        logger.info("release_ledger_enabled", url=engine.url.render_as_string(hide_password=True))

    await coordinator.start()
    try:
        yield
    finally:
        logger.info("app_shutdown_begin")
        await coordinator.stop()
        await app.state.broadcaster.close()
        if ledger is not None:
            coordinator.events.unsubscribe(ledger)
        if engine is not None:
            await engine.dispose()
            logger.info("database_pool_disposed")


def create_app(
    config: RollwrightConfig | None = None,
    coordinator: ReleaseCoordinator | None = None,
) -> FastAPI:
    """Create and configure the operator API.

    Args:
        config: Configuration. If None, defaults (plus environment) are used.
        coordinator: Pre-built coordinator. If None, one is created from
            ``config`` during startup.

    Returns:
        Configured FastAPI application instance.
    """
    if config is None:
        config = RollwrightConfig()

    app = FastAPI(
        title="Rollwright",
        version=__version__,
        description="Release orchestration: build, publish, reconcile, verify, roll back",
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.broadcaster = EventBroadcaster()
    app.state.session_factory = None
    app.state.coordinator = None
    if coordinator is not None:
        _attach_coordinator(app, coordinator)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.web.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(create_health_router())
    app.include_router(create_units_router())
    app.include_router(create_events_router())
    app.include_router(create_webhooks_router())

    logger.info("app_created", cors_origins=config.web.cors_origins, version=__version__)
    return app
