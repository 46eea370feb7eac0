"""FastAPI application factory with lifespan management."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

import vmfleet
from vmfleet.catalog import Catalog
from vmfleet.db.engine import create_async_engine, create_session_factory, create_tables
from vmfleet.health.router import router as health_router
from vmfleet.middleware.auth import AuthMiddleware
from vmfleet.middleware.correlation import CorrelationIdMiddleware
from vmfleet.middleware.errors import CatchAllErrorMiddleware, register_error_handlers
from vmfleet.middleware.logging import setup_logging
from vmfleet.providers.mock import MockProvider
from vmfleet.servers.projector import StatusProjector
from vmfleet.servers.router import plans_router, sweeps_router
from vmfleet.servers.router import router as servers_router
from vmfleet.servers.service import LifecycleController
from vmfleet.servers.store import ServerStore
from vmfleet.servers.sweeper import ReconciliationSweeper
from vmfleet.settings import FleetSettings

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from vmfleet.providers.base import ComputeProvider

logger = logging.getLogger(__name__)


def build_provider(settings: FleetSettings) -> ComputeProvider:
    """Create the compute provider selected by ``settings.provider.backend``."""
    backend = settings.provider.backend
    if backend == "mock":
        return MockProvider(settle_on_describe=True)
    if backend == "aws":
        from vmfleet.providers.aws import AWSProvider

        return AWSProvider(
            access_key_id=settings.aws.access_key_id,
            secret_access_key=settings.aws.secret_access_key,
            session_token=settings.aws.session_token,
            region=settings.aws.region,
            ami_id=settings.aws.ami_id,
            key_name=settings.aws.key_name,
            security_group_id=settings.aws.security_group_id,
            subnet_id=settings.aws.subnet_id,
            detailed_monitoring=settings.aws.detailed_monitoring,
            timeout_seconds=settings.provider.timeout_seconds,
            retry_attempts=settings.provider.retry_attempts,
            retry_backoff_seconds=settings.provider.retry_backoff_seconds,
        )
    msg = f"Unknown provider backend: {backend}"
    raise ValueError(msg)


def _redact(database_url: str) -> str:
    if "@" not in database_url:
        return database_url
    credentials, host = database_url.split("@", 1)
    return credentials.rsplit(":", 1)[0] + ":***@" + host


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage startup / shutdown of the store, provider, controller and sweeper."""
    settings: FleetSettings = app.state.settings

    # --- Startup --------------------------------------------------------
    engine = create_async_engine(settings.database_url)
    session_factory = create_session_factory(engine)
    await create_tables(engine)

    provider: ComputeProvider = getattr(app.state, "provider", None) or build_provider(settings)
    store = ServerStore(session_factory)
    catalog = Catalog(settings.catalog)
    projector = StatusProjector(provider)
    controller = LifecycleController(store, provider, catalog, projector=projector)
    sweeper = ReconciliationSweeper(
        store,
        provider,
        interval_seconds=settings.sweep.interval_seconds,
        provisioning_timeout_minutes=settings.sweep.provisioning_timeout_minutes,
    )

    app.state.engine = engine
    app.state.session_factory = session_factory
    app.state.provider = provider
    app.state.store = store
    app.state.catalog = catalog
    app.state.controller = controller
    app.state.sweeper = sweeper

    if settings.sweep.enabled:
        sweeper.start()

    logger.info(
        "vmfleet started (provider=%s, database=%s)",
        provider.provider_name,
        _redact(settings.database_url),
    )

    yield

    # --- Shutdown -------------------------------------------------------
    await sweeper.stop()
    await controller.aclose()
    await provider.disconnect()
    await engine.dispose()
    logger.info("vmfleet shut down")


def create_app(
    settings: FleetSettings | None = None,
    *,
    provider: ComputeProvider | None = None,
) -> FastAPI:
    """Build and return the configured FastAPI application.

    *provider* replaces the backend selected in settings.
    """
    if settings is None:
        settings = FleetSettings()

    setup_logging(settings.log_level.upper())

    app = FastAPI(
        title="vmfleet",
        version=vmfleet.__version__,
        debug=settings.debug,
        lifespan=_lifespan,
    )
    app.state.settings = settings
    app.state.provider = provider

    # ----- Middleware stack (outer → inner) ----------------------------
    # Correlation → CatchAll → Auth; added in reverse order.
    app.add_middleware(AuthMiddleware, api_key=settings.api_key)
    app.add_middleware(CatchAllErrorMiddleware)
    app.add_middleware(CorrelationIdMiddleware)

    register_error_handlers(app)

    app.include_router(health_router)
    app.include_router(servers_router)
    app.include_router(plans_router)
    app.include_router(sweeps_router)

    return app
