"""
Native Payments HTTP service.

Mounts the customer, payment, order, subscription, membership, analytics,
webhook and admin routers under ``/api/payment``, plus the unprefixed
health and Prometheus endpoints. Domain, provider and webhook errors are
turned into ``{"error": {...}}`` bodies here; routes never build error
responses themselves.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import Depends, FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from native_payments.api.analytics_routes import analytics_router
from native_payments.api.deps import Services, close_services, get_services
from native_payments.api.membership_routes import membership_router
from native_payments.api.routes import (
    admin_router,
    customer_router,
    monitoring_router,
    order_router,
    payment_router,
    subscription_router,
    webhook_router,
)
from native_payments.config import get_settings
from native_payments.core.exceptions import PaymentSystemError
from native_payments.database.connection import close_db, prepare_database
from native_payments.integrations.base import ProviderError
from native_payments.integrations.webhook_handler import WebhookError
from native_payments.monitoring.logging import setup_logging

# Setup logging first
setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables and register providers on startup; release clients on shutdown."""
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await prepare_database(get_services().registry)
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    try:
        await close_services()
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


app = FastAPI(
    title="Native Payments",
    description=(
        "Multi-provider payment service (Stripe, PayPal, Authorize.Net) with recurring "
        "subscription billing, retry/backoff, memberships and analytics."
    ),
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """
    Bind the request id (and the Idempotency-Key, when sent) to every log line.

    The request id is echoed in ``X-Request-ID`` so clients can quote it.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    context = {"request_id": request_id, "method": request.method, "path": request.url.path}
    if request.headers.get("Idempotency-Key"):
        context["idempotency_key"] = request.headers["Idempotency-Key"]
    structlog.contextvars.bind_contextvars(**context)

    start_time = time.time()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(
            "request_failed", error=str(e), duration_seconds=time.time() - start_time
        )
        raise
    else:
        response.headers["X-Request-ID"] = request_id
        log = logger.info if response.status_code < 500 else logger.error
        log(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=round(time.time() - start_time, 4),
        )
        return response
    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(PaymentSystemError)
async def payment_system_error_handler(request: Request, exc: PaymentSystemError) -> JSONResponse:
    """Answer domain errors with their own status and error code."""
    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        "request_error",
        error=exc.message,
        error_code=exc.error_code,
        status_code=exc.http_status,
        path=request.url.path,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(ProviderError)
async def provider_error_handler(request: Request, exc: ProviderError) -> JSONResponse:
    """Provider errors that escaped the services: declines are 402, the rest 502."""
    status_code = (
        status.HTTP_502_BAD_GATEWAY if exc.retryable else status.HTTP_402_PAYMENT_REQUIRED
    )
    logger.error(
        "provider_error",
        provider=exc.provider_id,
        error=str(exc),
        error_type=exc.error_type.value,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "code": exc.code or exc.error_type.value,
                "message": str(exc),
                "type": "ProviderError",
                "provider": exc.provider_id,
            }
        },
    )


@app.exception_handler(WebhookError)
async def webhook_error_handler(request: Request, exc: WebhookError) -> JSONResponse:
    logger.error("api_webhook_error", error=str(exc), path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": {"code": "webhook_error", "message": str(exc), "type": "WebhookError"}},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything else is a 500 in the same envelope as domain errors."""
    logger.exception(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": {
                "code": "internal_error",
                "message": "An unexpected error occurred. Please try again later.",
                "type": "InternalError",
            }
        },
    )


app.include_router(customer_router)
app.include_router(payment_router)
app.include_router(order_router)
app.include_router(subscription_router)
app.include_router(membership_router)
app.include_router(analytics_router)
app.include_router(webhook_router)
app.include_router(admin_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root(services: Services = Depends(get_services)) -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "providers": [adapter.provider_id for adapter in services.registry.available()],
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def run() -> None:
    """Console entry point: serve the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "native_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
