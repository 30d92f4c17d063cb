"""FastAPI application entry point."""
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.exc import SQLAlchemyError

from metering.api.v1 import health, pool, usage
from metering.config import settings
from metering.database import AsyncSessionLocal, engine
from metering.exceptions import (
    InsufficientCredits,
    InvalidEventType,
    MeteringError,
    NoActiveResource,
    NotificationDeliveryFailed,
    PersistenceError,
    PoolExhausted,
    ProvisioningError,
    ResourceNotFound,
    TierNotEligible,
    UserNotFound,
)
from metering.middleware.logging import LoggingMiddleware, setup_logging
from metering.middleware.metrics import MetricsMiddleware
from metering.schemas.error import REMEDIATION_HINTS, ErrorCode, ErrorDetail
from metering.services.container import build_services
from metering.tracing import setup_tracing
from metering.utils.client_cache import client_cache
from metering.utils.clock import utcnow

setup_logging()
logger = structlog.get_logger(__name__)

# Most specific class first; lookup walks the exception's MRO
ERROR_STATUS: dict[type[MeteringError], tuple[int, str]] = {
    InvalidEventType: (status.HTTP_400_BAD_REQUEST, ErrorCode.INVALID_EVENT_TYPE),
    InsufficientCredits: (status.HTTP_402_PAYMENT_REQUIRED, ErrorCode.INSUFFICIENT_CREDITS),
    TierNotEligible: (status.HTTP_403_FORBIDDEN, ErrorCode.TIER_NOT_ELIGIBLE),
    UserNotFound: (status.HTTP_404_NOT_FOUND, ErrorCode.USER_NOT_FOUND),
    ResourceNotFound: (status.HTTP_404_NOT_FOUND, ErrorCode.RESOURCE_NOT_FOUND),
    NoActiveResource: (status.HTTP_409_CONFLICT, ErrorCode.NO_ACTIVE_RESOURCE),
    PoolExhausted: (status.HTTP_409_CONFLICT, ErrorCode.POOL_EXHAUSTED),
    PersistenceError: (status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.PERSISTENCE_ERROR),
    ProvisioningError: (status.HTTP_502_BAD_GATEWAY, ErrorCode.PROVISIONING_ERROR),
    NotificationDeliveryFailed: (status.HTTP_502_BAD_GATEWAY, ErrorCode.NOTIFICATION_FAILED),
}


def _request_id(request: Request) -> str:
    return request.headers.get("x-request-id", f"req_{uuid.uuid4().hex[:12]}")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build shared services on startup; flush detached jobs and clients on shutdown."""
    logger.info("application_starting", env=settings.app_env)
    if getattr(app.state, "services", None) is None:
        app.state.services = build_services(AsyncSessionLocal, settings)

    yield

    logger.info("application_shutting_down", pending_jobs=app.state.services.tasks.pending)
    await app.state.services.tasks.drain()
    await client_cache.close()
    await engine.dispose()


app = FastAPI(
    title="Usage Metering Service",
    description="Credit metering, user notifications and number pool management",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(MetricsMiddleware)
app.add_middleware(LoggingMiddleware)

metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

setup_tracing(app, engine)


@app.exception_handler(MeteringError)
async def metering_exception_handler(request: Request, exc: MeteringError) -> JSONResponse:
    """Map domain errors to structured responses."""
    status_code, code = next(
        (ERROR_STATUS[cls] for cls in type(exc).__mro__ if cls in ERROR_STATUS),
        (status.HTTP_500_INTERNAL_SERVER_ERROR, ErrorCode.INTERNAL_ERROR),
    )
    request_id = _request_id(request)

    log = logger.error if status_code >= 500 else logger.info
    log(
        "metering_error",
        path=request.url.path,
        request_id=request_id,
        error_type=type(exc).__name__,
        status_code=status_code,
        error_message=str(exc),
    )

    return JSONResponse(
        status_code=status_code,
        content={
            "error": type(exc).__name__,
            "message": str(exc),
            "details": [ErrorDetail(code=code, message=str(exc)).model_dump(exclude_none=True)],
            "remediation": REMEDIATION_HINTS.get(code),
            "request_id": request_id,
            "timestamp": utcnow().isoformat() + "Z",
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 422 with field-level validation errors."""
    request_id = _request_id(request)
    details = [
        ErrorDetail(
            code=ErrorCode.VALIDATION_ERROR,
            message=error["msg"],
            field=".".join(str(loc) for loc in error["loc"]),
        ).model_dump()
        for error in exc.errors()
    ]

    logger.warning("validation_error", path=request.url.path, request_id=request_id, error_count=len(details))

    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "ValidationError",
            "message": "Request validation failed",
            "details": details,
            "remediation": "Check the API documentation for correct request format at /docs",
            "request_id": request_id,
            "timestamp": utcnow().isoformat() + "Z",
        },
    )


@app.exception_handler(SQLAlchemyError)
async def database_exception_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Return 503 for database errors that escaped the services."""
    request_id = _request_id(request)

    logger.error(
        "database_error",
        path=request.url.path,
        request_id=request_id,
        error_type=type(exc).__name__,
        error_message=str(exc),
    )

    error_message = "Database temporarily unavailable" if settings.app_env == "production" else str(exc)

    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "error": "DatabaseError",
            "message": "A database error occurred",
            "details": [{"code": ErrorCode.DATABASE_ERROR, "message": error_message}],
            "remediation": REMEDIATION_HINTS.get(ErrorCode.DATABASE_ERROR),
            "request_id": request_id,
            "timestamp": utcnow().isoformat() + "Z",
        },
        headers={"Retry-After": "30"},
    )


@app.get("/", tags=["Root"])
async def root() -> dict[str, str]:
    """Service information."""
    return {
        "service": "Usage Metering Service",
        "version": "0.1.0",
        "status": "operational",
        "docs": "/docs",
    }


app.include_router(health.router, tags=["Health"])
app.include_router(usage.router, prefix="/v1", tags=["Usage"])
app.include_router(pool.router, prefix="/v1", tags=["Pool"])
