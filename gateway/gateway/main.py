"""FastAPI application entry-point for the tenant integration gateway."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from gateway import __version__
from gateway.config import GatewaySettings, PlatformEnv, load_gateway_settings
from gateway.dependencies import (
    TENANT_DOMAIN_HEADER,
    dispose_http_clients,
    dispose_store_clients,
    get_primary_engine,
    init_platform_client,
    init_provider_client,
    init_store_clients,
)
from gateway.errors import GatewayError, error_envelope
from gateway.middleware.logging import RequestLoggingMiddleware
from gateway.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware
from gateway.routers import auth, functions, health, provision, webhooks

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup:
    - Configure structured logging when enabled.
    - Initialise the ordered store clients (primary, optional fallback).
    - Create tables in dev or local SQLite mode (production uses migrations).
    - Initialise the platform and provider HTTP clients.

    On shutdown:
    - Close both HTTP pools and dispose every engine.
    """
    settings: GatewaySettings = load_gateway_settings()

    if settings.structured_logging:
        from gateway.middleware.json_formatter import JSONFormatter

        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        root_logger.addHandler(handler)
        root_logger.setLevel(logging.INFO)
        logger.info("Structured JSON logging enabled")

    stores = init_store_clients(settings)
    logger.info(
        "Store clients initialised: %s (%s)",
        ", ".join(client.name for client in stores),
        "local" if settings.is_local_store else "postgres",
    )

    if settings.platform_env == PlatformEnv.DEV or settings.is_local_store:
        from gateway_core.state.sqlite_adapter import create_local_tables

        await create_local_tables(get_primary_engine())

    init_platform_client(settings)
    init_provider_client(settings)
    logger.info("HTTP clients initialised (provider=%s)", settings.provider_api_url)

    yield

    await dispose_http_clients()
    await dispose_store_clients()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_gateway_settings()

    app = FastAPI(
        title="Tenant Integration Gateway",
        description="OAuth install, signed webhook ingestion, provisioning and function-call bridge.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "HEAD", "OPTIONS"],
        allow_headers=[
            "Authorization",
            "Content-Type",
            "X-Correlation-ID",
            "X-Session-Token",
            "X-Tenant-Domain",
        ],
    )
    app.add_middleware(
        RateLimitMiddleware,
        config=RateLimitConfig(
            enabled=settings.rate_limit_enabled,
            default_requests_per_minute=settings.rate_limit_requests_per_minute,
            burst_multiplier=settings.rate_limit_burst_multiplier,
            path_limits={
                "/webhooks": settings.rate_limit_webhooks_per_minute,
                "/provision": settings.rate_limit_provision_per_minute,
                "/functions/*": settings.rate_limit_functions_per_minute,
                "/auth*": settings.rate_limit_auth_per_minute,
            },
            tenant_headers=(TENANT_DOMAIN_HEADER, settings.webhook_tenant_header),
            domain_suffix=settings.tenant_domain_suffix,
        ),
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(webhooks.router)
    app.include_router(provision.router)
    app.include_router(functions.router)

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("%s on %s: %s", exc.code, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=error_envelope(exc))

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error on %s: %s", request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content=error_envelope(GatewayError("Internal database error", code="DATABASE_ERROR")),
        )

    return app


# Module-level application instance used by ``uvicorn gateway.main:app``.
app = create_app()
