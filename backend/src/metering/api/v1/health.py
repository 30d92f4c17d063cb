"""Health check endpoints for liveness and readiness probes."""
import structlog
from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from redis import asyncio as aioredis
from sqlalchemy import text

from metering.config import settings
from metering.database import engine
from metering.utils.clock import utcnow

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("/health", status_code=status.HTTP_200_OK, tags=["Health"])
async def health_check() -> dict[str, str]:
    """Liveness probe; does not check external dependencies."""
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": "0.1.0",
    }


@router.get("/health/ready", tags=["Health"])
async def readiness_check() -> JSONResponse:
    """
    Readiness probe.

    The database is required. The worker queue (Redis) is reported but does
    not fail readiness, since usage checks never touch it.
    """
    checks = {"database": "unknown", "worker_queue": "unknown"}
    ready = True

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "connected"
    except Exception as exc:
        logger.error("database_health_check_failed", error=str(exc))
        checks["database"] = "disconnected"
        ready = False

    try:
        redis_client = aioredis.from_url(str(settings.arq_redis_url))
        try:
            await redis_client.ping()
        finally:
            await redis_client.aclose()
        checks["worker_queue"] = "connected"
    except Exception as exc:
        logger.warning("worker_queue_health_check_failed", error=str(exc))
        checks["worker_queue"] = "disconnected"

    return JSONResponse(
        status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
        content={
            "ready": ready,
            "checks": checks,
            "timestamp": utcnow().isoformat(),
        },
    )
