"""FastAPI application entry-point for the PLANT Metrics API."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from plant_api import __version__
from plant_api.config import APISettings, PlatformEnv, load_api_settings
from plant_api.dependencies import (
    dispose_clients,
    dispose_engine,
    get_session_factory,
    get_settings,
    init_clients,
    init_engine,
)
from plant_api.middleware.auth import AuthenticationMiddleware
from plant_api.middleware.logging import RequestLoggingMiddleware
from plant_api.routers import (
    admin,
    audit,
    auth,
    chapters,
    health,
    invoices,
    leader,
    metrics,
    notifications,
    payments,
    reports,
    trades,
)
from plant_api.services.event_bus import init_event_bus
from plant_api.services.scheduler import SweepScheduler

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Initialise the async database engine.
    - Create database tables if they do not exist (dev convenience;
      production should use Alembic migrations).
    - Initialise the MPESA and email clients and the event bus.
    - Start the sweep scheduler (grace-window invoicing and scheduled
      notifications).

    On shutdown everything is released in reverse order.
    """
    settings: APISettings = get_settings()

    # Fail fast: refuse to start in production/staging without JWT_SECRET.
    if settings.platform_env in (PlatformEnv.STAGING, PlatformEnv.PRODUCTION) and not os.environ.get("JWT_SECRET"):
        raise RuntimeError(
            f"JWT_SECRET environment variable is required in {settings.platform_env.value} mode. Refusing to start."
        )

    if settings.structured_logging:
        from plant_api.middleware.json_formatter import configure_json_logging

        configure_json_logging()
        logger.info("Structured JSON logging enabled")

    # Database engine.
    engine = init_engine(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info(
        "Database engine initialised (%s, %s)",
        settings.database_url[:40] + "...",
        "local" if is_local else "postgres",
    )

    # Auto-create tables in dev or local SQLite mode (idempotent).
    if settings.platform_env == PlatformEnv.DEV or is_local:
        from plant_core.state.tables import Base

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(
            "Database tables ensured (%s)",
            "local SQLite" if is_local else "dev auto-migration",
        )

    # Outbound clients.
    mpesa_client, email_client = init_clients(settings)
    logger.info(
        "Clients initialised (mpesa=%s, email=%s)",
        settings.mpesa_mode.value,
        "enabled" if email_client.enabled else "log_only",
    )

    # Event bus: audit-friendly event logging plus STK push on trade declaration.
    session_factory = get_session_factory()
    init_event_bus(session_factory, mpesa_client=mpesa_client, settings=settings)

    scheduler: SweepScheduler | None = None
    if settings.scheduler_enabled:
        scheduler = SweepScheduler(session_factory, settings, email_client)
        await scheduler.start()

    yield

    # Shutdown.
    if scheduler is not None:
        await scheduler.stop()
    await dispose_clients()
    await dispose_engine()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="PLANT Metrics API",
        description="Member metrics, trade payments and chapter reporting for PLANT.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost last) -----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "Accept",
        ],
    )
    app.add_middleware(AuthenticationMiddleware)
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    # Versioned API routes; all business endpoints live under /api/v1.
    app.include_router(health.router, prefix="/api/v1")
    app.include_router(auth.router, prefix="/api/v1")
    app.include_router(metrics.router, prefix="/api/v1")
    app.include_router(trades.router, prefix="/api/v1")
    app.include_router(payments.router, prefix="/api/v1")
    app.include_router(invoices.router, prefix="/api/v1")
    app.include_router(chapters.router, prefix="/api/v1")
    app.include_router(leader.router, prefix="/api/v1")
    app.include_router(admin.router, prefix="/api/v1")
    app.include_router(notifications.router, prefix="/api/v1")
    app.include_router(reports.router, prefix="/api/v1")
    app.include_router(audit.router, prefix="/api/v1")

    # Infrastructure endpoints outside versioning (probes).
    app.include_router(health.readiness_router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        # Log the full error for debugging; return a safe message to the client.
        logger.warning("ValueError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=400, content={"detail": "Invalid request"})

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError) -> JSONResponse:
        logger.warning("PermissionError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=403, content={"detail": "Permission denied"})

    @app.exception_handler(LookupError)
    async def lookup_error_handler(request: Request, exc: LookupError) -> JSONResponse:
        logger.info("LookupError on %s: %s", request.url.path, exc)
        return JSONResponse(status_code=404, content={"detail": str(exc) or "Not found"})

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal database error"},
        )

    return app


# Module-level application instance used by ``uvicorn plant_api.main:app``.
app = create_app()
