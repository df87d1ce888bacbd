"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from billing_reconciler.config import Config, get_config
from billing_reconciler.logging_config import configure_logging, get_logger
from billing_reconciler.middleware import ContextMiddleware, RequestLoggingMiddleware
from billing_reconciler.repositories.subscription_store import SubscriptionStore, get_subscription_store
from billing_reconciler.services.event_dispatcher import EventDispatcher, get_event_dispatcher
from billing_reconciler.services.reconciliation_engine import ReconciliationEngine
from billing_reconciler.services.stripe_gateway import StripeGateway

VERSION = "0.1.0"

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Resolves configuration and builds the engine before traffic is accepted.
    Startup fails when a required configuration key is missing.
    """
    logger.info("reconciler_starting", version=VERSION)

    config: Config = app.state.config if app.state.config is not None else get_config()
    settings = config.validate_required()

    store = app.state.store if app.state.store is not None else get_subscription_store()
    dispatcher = app.state.dispatcher if app.state.dispatcher is not None else get_event_dispatcher(settings.pubsub)
    gateway = app.state.gateway if app.state.gateway is not None else StripeGateway.from_config(settings)

    app.state.config = config
    app.state.store = store
    app.state.dispatcher = dispatcher
    app.state.engine = ReconciliationEngine(
        settings=settings,
        gateway=gateway,
        store=store,
        dispatcher=dispatcher,
    )

    if dispatcher.is_enabled():
        logger.info("pubsub_enabled", message="Change notifications will be published")
    else:
        logger.info("pubsub_disabled", message="Change notifications are disabled or failed to initialize")

    logger.info("reconciler_started", status="ready", config_path=str(config.config_path))
    try:
        yield
    finally:
        logger.info("reconciler_shutting_down")
        dispatcher.shutdown()
        logger.info("reconciler_stopped")


def create_app(
    config: Optional[Config] = None,
    store: Optional[SubscriptionStore] = None,
    gateway: Optional[StripeGateway] = None,
    dispatcher: Optional[EventDispatcher] = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        config: Configuration loader (defaults to global instance)
        store: Subscription storage (defaults to global instance)
        gateway: Processor API access (defaults to one built from config)
        dispatcher: Change notification publisher (defaults to global instance)

    Returns:
        Configured FastAPI application instance
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    app = FastAPI(
        title="Billing Reconciler",
        description="Reconciles Stripe subscription and payment events into local billing state",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.store = store
    app.state.gateway = gateway
    app.state.dispatcher = dispatcher
    app.state.engine = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(ContextMiddleware)
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)

    from billing_reconciler.api.subscriptions import router as subscriptions_router
    from billing_reconciler.api.webhooks import router as webhooks_router

    app.include_router(webhooks_router)
    app.include_router(subscriptions_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Health check endpoint."""
        logger.debug("root_endpoint_called")
        return {
            "service": "billing-reconciler",
            "status": "running",
            "version": VERSION,
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Detailed health check."""
        dispatcher = app.state.dispatcher
        store = app.state.store
        ready = app.state.engine is not None

        return {
            "status": "healthy" if ready else "starting",
            "pubsub": "connected" if dispatcher is not None and dispatcher.is_enabled() else "disabled",
            "config": "validated" if ready else "pending",
            "subscriptions": store.count() if store is not None else 0,
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


app = create_app()
