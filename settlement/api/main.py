"""
Main FastAPI application.

Settlement API with:
- CORS configuration
- Domain error to HTTP status mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from settlement import __version__
from settlement.config import get_settings
from settlement.database.connection import close_db, init_db
from settlement.exceptions import (
    ConfigurationError,
    IdempotencyConflictError,
    InvalidTransitionError,
    NotFoundError,
    SettlementError,
    ValidationError,
)
from settlement.integrations.razorpay_client import GatewayError
from settlement.integrations.webhook_handler import WebhookError
from settlement.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    get_coordinator,
    get_webhook_handler,
    invoice_router,
    monitoring_router,
    order_router,
    payment_router,
    subscription_router,
    webhook_router,
)

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    if get_coordinator.cache_info().currsize:
        coordinator = get_coordinator()
        await coordinator.gateway.close()
        await coordinator.idempotency_manager.close()
    if get_webhook_handler.cache_info().currsize:
        await get_webhook_handler().close()
    await close_db()
    logger.info("database_connections_closed")


app = FastAPI(
    title="Settlement Engine",
    description=(
        "Payment and subscription settlement against the Razorpay gateway. "
        "Features: signed callbacks, idempotent ledger transitions, idempotency keys, "
        "webhooks, transactional outbox and subscription reconciliation."
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    Also adds timing information and structured logging context.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


def _error(
    status_code: int, error: str, message: str, details: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    content: Dict[str, Any] = {"error": error, "message": message}
    if details is not None:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error(status.HTTP_404_NOT_FOUND, "not_found", str(exc))


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    logger.warning("request_rejected", error=str(exc), path=request.url.path)
    return _error(status.HTTP_400_BAD_REQUEST, "validation_error", str(exc))


@app.exception_handler(InvalidTransitionError)
async def invalid_transition_handler(
    request: Request, exc: InvalidTransitionError
) -> JSONResponse:
    return _error(
        status.HTTP_409_CONFLICT,
        "invalid_transition",
        str(exc),
        {
            "payment_id": str(exc.payment_id),
            "current_status": exc.current_status,
            "requested_status": exc.requested_status,
        },
    )


@app.exception_handler(IdempotencyConflictError)
async def idempotency_conflict_handler(
    request: Request, exc: IdempotencyConflictError
) -> JSONResponse:
    return _error(status.HTTP_409_CONFLICT, "idempotency_conflict", str(exc))


@app.exception_handler(WebhookError)
async def webhook_error_handler(request: Request, exc: WebhookError) -> JSONResponse:
    logger.error("api_webhook_error", error=str(exc))
    return _error(status.HTTP_400_BAD_REQUEST, "webhook_error", str(exc))


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(
    request: Request, exc: ConfigurationError
) -> JSONResponse:
    logger.error("configuration_error", error=str(exc), path=request.url.path)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "configuration_error", str(exc))


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError) -> JSONResponse:
    return _error(
        status.HTTP_502_BAD_GATEWAY,
        "gateway_error",
        exc.message,
        {"code": exc.code, "retryable": exc.retryable},
    )


@app.exception_handler(SettlementError)
async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
    logger.error("settlement_error", error=str(exc), error_type=type(exc).__name__)
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "settlement_error", str(exc))


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )
    return _error(
        status.HTTP_500_INTERNAL_SERVER_ERROR,
        "Internal server error",
        "An unexpected error occurred. Please try again later.",
    )


# Include routers
app.include_router(order_router)
app.include_router(invoice_router)
app.include_router(payment_router)
app.include_router(subscription_router)
app.include_router(webhook_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": __version__,
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "settlement.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
