from collections.abc import Iterable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI
from starlette.exceptions import HTTPException as StarletteHTTPException

from relayjobs.config.logging import get_logger, setup_logging
from relayjobs.config.settings import Settings, settings as default_settings
from relayjobs.core.exceptions import (
    RelayJobsException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    relay_jobs_exception_handler,
)
from relayjobs.core.registries import init_controllers
from relayjobs.core.security import CORSHeadersMiddleware
from relayjobs.healthz import router as health_router
from relayjobs.infra.connections import ConnectionRegistry
from relayjobs.jobs.broker import Broker
from relayjobs.jobs.hooks import JobType
from relayjobs.jobs.routes import create_controller_router
from relayjobs.jobs.store import RecordStore

logger = get_logger(__name__)


def create_app(
    job_types: Iterable[JobType] | None = None,
    settings: Settings | None = None,
    connections: ConnectionRegistry | None = None,
    options: dict[str, dict[str, Any]] | None = None,
    store: RecordStore | None = None,
    broker: Broker | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        job_types: Jobs to serve, one set of routes each
        settings: Defaults to the process settings
        connections: Shared connection registry; one is created if omitted
        options: Per-job option overrides keyed by job name
        store: Record store override (connections are used otherwise)
        broker: Broker override (connections are used otherwise)
    """
    settings = settings or default_settings

    # Initialize structured logging
    setup_logging(settings)

    connections = connections or ConnectionRegistry()
    database = connections.database(settings) if store is None else None
    store = store or RecordStore(database, settings)
    broker = broker or Broker(connections.redis(settings), settings)

    controllers = init_controllers(job_types or [], store, broker, settings, options)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if database is not None and settings.db_auto_create:
            await database.create_all()
        logger.info("Application started", controllers=controllers.list())
        yield
        await connections.close()

    app = FastAPI(
        title=settings.app_name,
        description="Durable background jobs with broker dispatch and retry backoff",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/openapi.json" if settings.debug else None,
        docs_url="/docs" if settings.debug else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.broker = broker
    app.state.controllers = controllers

    # Add middleware
    app.add_middleware(CORSHeadersMiddleware)
    app.add_middleware(RequestContextMiddleware)

    # Add exception handlers
    app.add_exception_handler(RelayJobsException, relay_jobs_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(health_router, tags=["health"])
    for controller in controllers:
        app.include_router(create_controller_router(controller))

    return app
