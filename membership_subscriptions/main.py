"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from membership_subscriptions.exceptions import (
    AuthenticationError,
    AuthorizationError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
    TransientInfraError,
)
from membership_subscriptions.logging_config import configure_logging, get_logger
from membership_subscriptions.middleware import ContextMiddleware, RequestLoggingMiddleware

logger = get_logger(__name__)

VERSION = "0.1.0"


def _fail(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"status": "fail", "data": message})


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Start consumers and the outbox dispatcher; stop them on shutdown."""
    from membership_subscriptions.repositories.mongo import close_mongo_client
    from membership_subscriptions.services.event_bus import get_event_bus
    from membership_subscriptions.services.event_consumers import register_consumers
    from membership_subscriptions.services.outbox_dispatcher import get_outbox_dispatcher
    from membership_subscriptions.services.upsert_engine import get_upsert_engine
    from membership_subscriptions.services.user_directory import get_user_directory

    logger.info("service_starting", version=VERSION)

    event_bus = get_event_bus()
    dispatcher = get_outbox_dispatcher()
    try:
        if event_bus.is_enabled():
            logger.info("pubsub_enabled", message="Event bus initialized and ready")
        else:
            logger.info("pubsub_disabled", message="Event bus is disabled or failed to initialize")

        try:
            register_consumers(event_bus, get_upsert_engine(), get_user_directory())
        except TransientInfraError as e:
            logger.error("event_consumers_unavailable", error=str(e))
        dispatcher.start()

        logger.info("service_started", status="ready")
        yield
    finally:
        logger.info("service_shutting_down")
        dispatcher.stop()
        event_bus.shutdown()
        close_mongo_client()
        logger.info("service_stopped")


def create_app() -> FastAPI:
    """Create and configure FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    app = FastAPI(
        title="Membership Subscription Service",
        description="Yearly membership subscriptions with rollover, movement tracking and resignation",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    include_request_details = os.getenv("LOG_REQUEST_DETAILS", "true").lower() == "true"
    app.add_middleware(RequestLoggingMiddleware, include_request_details=include_request_details)
    app.add_middleware(ContextMiddleware)

    from membership_subscriptions.api.subscriptions import router as subscriptions_router

    app.include_router(subscriptions_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Service banner."""
        logger.debug("root_endpoint_called")
        return {
            "service": "membership-subscriptions",
            "status": "running",
            "version": VERSION,
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Store counts, event bus status and outbox backlog."""
        from membership_subscriptions.repositories.subscription_store import get_subscription_store
        from membership_subscriptions.repositories.user_store import get_user_store
        from membership_subscriptions.services.event_bus import get_event_bus

        stats = get_subscription_store().get_statistics()
        return {
            "status": "healthy",
            "pubsub": "connected" if get_event_bus().is_enabled() else "disabled",
            "subscriptions": stats["total_subscriptions"],
            "users": get_user_store().count(),
            "outbox_pending": stats["outbox_pending"],
            "outbox_failed": stats["outbox_failed"],
        }

    @app.exception_handler(SubscriptionValidationError)
    async def validation_error_handler(request: Request, exc: SubscriptionValidationError) -> JSONResponse:
        logger.warning("request_rejected", path=request.url.path, error=str(exc))
        return _fail(400, str(exc))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        message = _validation_message(exc)
        logger.warning("request_rejected", path=request.url.path, error=message)
        return _fail(400, message)

    @app.exception_handler(SubscriptionNotFoundError)
    async def not_found_handler(request: Request, exc: SubscriptionNotFoundError) -> JSONResponse:
        logger.info("subscription_not_found", path=request.url.path, error=str(exc))
        return _fail(404, str(exc))

    @app.exception_handler(AuthenticationError)
    async def authentication_handler(request: Request, exc: AuthenticationError) -> JSONResponse:
        return _fail(401, str(exc))

    @app.exception_handler(AuthorizationError)
    async def authorization_handler(request: Request, exc: AuthorizationError) -> JSONResponse:
        return _fail(403, str(exc))

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Handle uncaught exceptions."""
        logger.error(
            "unhandled_exception",
            error=str(exc),
            error_type=type(exc).__name__,
            path=request.url.path,
            exc_info=True,
        )
        return JSONResponse(status_code=500, content={"status": "error", "data": "Server Error"})

    logger.info("app_created", endpoints=len(app.routes))
    return app


app = create_app()
