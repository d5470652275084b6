"""FastAPI application entry point and lifecycle management."""

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from storefront_billing.errors import AppError, ErrorCategory, ErrorCode
from storefront_billing.logging_config import configure_logging, get_logger
from storefront_billing.metrics import BillingMetrics
from storefront_billing.middleware import ContextMiddleware, RequestLoggingMiddleware
from storefront_billing.models import BillingSettings
from storefront_billing.repositories.data_store import DataStore
from storefront_billing.services.billing_gateway import BillingGateway
from storefront_billing.services.container import BillingServices

logger = get_logger(__name__)

VERSION = "0.1.0"

_CATEGORY_STATUS = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.AUTHENTICATION: 401,
    ErrorCategory.PAYMENT: 402,
    ErrorCategory.NETWORK: 503,
    ErrorCategory.CLIENT: 400,
    ErrorCategory.SERVER: 500,
    ErrorCategory.UNKNOWN: 500,
}

_CODE_STATUS = {
    ErrorCode.VALIDATION_ENTITY_NOT_FOUND: 404,
    ErrorCode.VALIDATION_ENTITY_EXISTS: 409,
    ErrorCode.VALIDATION_INVALID_TRANSITION: 409,
    ErrorCode.NETWORK_REQUEST_TIMEOUT: 504,
}


def status_for_error(error: AppError) -> int:
    """HTTP status code for an application error."""
    return _CODE_STATUS.get(error.code) or _CATEGORY_STATUS.get(error.category, 500)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Releases the data store client and the Pub/Sub publisher on shutdown.
    """
    services: BillingServices = app.state.services
    logger.info("billing_service_starting", version=VERSION)
    try:
        logger.info(
            "billing_service_started",
            status="ready",
            pubsub="enabled" if services.dispatcher.is_enabled() else "disabled",
            gateway="enabled" if services.gateway.is_enabled() else "disabled",
        )
        yield
    finally:
        logger.info("billing_service_shutting_down")
        await services.close()
        logger.info("billing_service_stopped")


def _load_settings() -> BillingSettings:
    from storefront_billing.config import get_config

    return get_config().settings


def create_app(
    settings: Optional[BillingSettings] = None,
    data_store: Optional[DataStore] = None,
    gateway: Optional[BillingGateway] = None,
    metrics: Optional[BillingMetrics] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Billing settings; loaded from billing.yaml when omitted
        data_store: Data store overriding the configured backend
        gateway: Billing gateway overriding the configured one
        metrics: Metrics sink

    Returns:
        Configured FastAPI application instance
    """
    log_level = os.getenv("LOG_LEVEL", "INFO")
    json_format = os.getenv("LOG_FORMAT", "json").lower() == "json"
    configure_logging(log_level=log_level, json_format=json_format)

    services = BillingServices(
        settings or _load_settings(),
        data_store=data_store,
        gateway=gateway,
        metrics=metrics,
    )

    app = FastAPI(
        title="Storefront Billing",
        description="Subscription lifecycle service: transitions, event history, feature gates and billing sync",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.services = services

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

    from storefront_billing.api.subscriptions import router as subscriptions_router

    app.include_router(subscriptions_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        logger.debug("root_endpoint_called")
        return {
            "service": "storefront-billing",
            "status": "running",
            "version": VERSION,
        }

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Detailed health check."""
        cache_stats = services.cache.cache.stats()
        return {
            "status": "healthy",
            "data_store": type(services.store).__name__,
            "pubsub": "connected" if services.dispatcher.is_enabled() else "disabled",
            "billing_gateway": "enabled" if services.gateway.is_enabled() else "disabled",
            "cache": f"{cache_stats['size']}/{cache_stats['max_size']} entries",
            "plans": f"loaded ({len(services.plans)} plans)",
        }

    @app.get("/metrics")
    async def metrics_endpoint() -> Response:
        return Response(content=services.metrics.render(), media_type=CONTENT_TYPE_LATEST)

    @app.exception_handler(AppError)
    async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
        status_code = status_for_error(exc)
        log = logger.error if status_code >= 500 else logger.warning
        log(
            "app_error",
            code=exc.code.value,
            category=exc.category.value,
            error=exc.message,
            path=request.url.path,
            status_code=status_code,
        )
        return JSONResponse(
            status_code=status_code,
            content={
                "error": exc.code.value,
                "message": exc.message,
                "category": exc.category.value,
                "details": exc.details,
            },
        )

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
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
            },
        )

    logger.info("app_created", endpoints=len(app.routes))
    return app
