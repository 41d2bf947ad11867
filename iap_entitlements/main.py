"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from iap_entitlements.config import Config
from iap_entitlements.logging_config import configure_logging, get_logger
from iap_entitlements.middleware import ContextMiddleware, RequestLoggingMiddleware
from iap_entitlements.services.entitlement_state_machine import EntitlementStateMachine
from iap_entitlements.services.rtdn_listener import RtdnListener
from iap_entitlements.wiring import build_engine, build_http_client, build_rtdn_listener

logger = get_logger(__name__)

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Prunes stale idempotency records and runs the RTDN listener for the
    lifetime of the app.
    """
    logger.info("entitlements_starting", version=VERSION)

    engine: EntitlementStateMachine = app.state.engine
    engine.guard.prune_expired()

    listener: Optional[RtdnListener] = app.state.rtdn_listener
    if listener is not None:
        listener.start()

    try:
        logger.info("entitlements_started", status="ready")
        yield
    finally:
        logger.info("entitlements_shutting_down")
        if listener is not None:
            listener.stop()
        http_client = getattr(app.state, "http_client", None)
        if http_client is not None:
            http_client.close()
        logger.info("entitlements_stopped")


def create_app(
    config: Optional[Config] = None,
    engine: Optional[EntitlementStateMachine] = None,
    rtdn_listener: Optional[RtdnListener] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        config: Loaded configuration (read from CONFIG_PATH if omitted)
        engine: Prebuilt state machine (built from config if omitted)
        rtdn_listener: RTDN listener (built from config if omitted and enabled)

    Returns:
        Configured FastAPI application instance
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    app = FastAPI(
        title="IAP Entitlements",
        description="Subscription entitlement engine for App Store, Google Play and Stripe",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.state.http_client = None
    if engine is None:
        config = config or Config()
        app.state.http_client = build_http_client(config)
        engine = build_engine(config, http_client=app.state.http_client)
    if rtdn_listener is None and config is not None:
        rtdn_listener = build_rtdn_listener(config, engine)

    app.state.engine = engine
    app.state.rtdn_listener = rtdn_listener

    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(ContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)

    from iap_entitlements.api.maintenance import router as maintenance_router
    from iap_entitlements.api.subscriptions import router as subscriptions_router
    from iap_entitlements.api.webhooks import router as webhooks_router

    app.include_router(subscriptions_router)
    app.include_router(webhooks_router)
    app.include_router(maintenance_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Service and provider configuration status."""
        listener = app.state.rtdn_listener
        return {
            "status": "healthy",
            "version": VERSION,
            "providers": app.state.engine.verifiers.status(),
            "rtdn": "running" if listener is not None and listener.is_running else "disabled",
            "subscriptions": app.state.engine.subscriptions.get_statistics(),
        }

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app
