"""Periodic pool upkeep and monthly counter reset.

Runs as an ARQ worker:
    arq metering.workers.pool_maintenance.WorkerSettings

Each job runs as a single cron entry, so at most one instance of a job is
scheduled at a time; ``ResourcePool`` additionally serializes buffer
maintenance inside the process.
"""
from typing import Any

import structlog
from arq import cron
from arq.connections import RedisSettings

from metering.config import settings
from metering.database import AsyncSessionLocal
from metering.middleware.logging import setup_logging
from metering.services.container import build_services
from metering.utils.client_cache import client_cache

logger = structlog.get_logger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    setup_logging()
    ctx["session_factory"] = AsyncSessionLocal
    ctx["services"] = build_services(AsyncSessionLocal, settings)
    logger.info("pool_worker_started", provisioning_mode=settings.provisioning_mode)


async def shutdown(ctx: dict[str, Any]) -> None:
    await ctx["services"].tasks.drain()
    await client_cache.close()
    logger.info("pool_worker_stopped")


async def maintain_pool_buffer(ctx: dict[str, Any]) -> dict[str, int]:
    """
    Top the US pool up to the low watermark.

    Returns:
        Dict with the number of provisioned units
    """
    async with ctx["session_factory"]() as db:
        pool = ctx["services"].pool(db)
        try:
            provisioned = await pool.maintain_buffer()
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("pool_maintenance_failed")
            raise

    logger.info("pool_maintenance_completed", provisioned=provisioned)
    return {"provisioned": provisioned}


async def cleanup_pool(ctx: dict[str, Any]) -> dict[str, int]:
    """
    Release the oldest available US units above the high watermark.

    Returns:
        Dict with the number of released units
    """
    async with ctx["session_factory"]() as db:
        pool = ctx["services"].pool(db)
        try:
            released = await pool.cleanup_excess()
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("pool_cleanup_failed")
            raise

    logger.info("pool_cleanup_completed", released=released)
    return {"released": released}


async def reset_monthly_message_counts(ctx: dict[str, Any]) -> dict[str, int]:
    """Reset tier 3 monthly message counters at the start of the month."""
    async with ctx["session_factory"]() as db:
        ledger = ctx["services"].ledger(db)
        try:
            users = await ledger.reset_monthly_message_counts()
            await db.commit()
        except Exception:
            await db.rollback()
            logger.exception("monthly_reset_failed")
            raise

    return {"users": users}


class WorkerSettings:
    """
    ARQ worker settings for the number pool.

    Schedule:
    - Buffer maintenance: every 30 minutes
    - Excess cleanup: hourly at minute 15
    - Monthly message counter reset: 1st of the month, 00:05 UTC
    """

    functions = [maintain_pool_buffer, cleanup_pool, reset_monthly_message_counts]

    cron_jobs = [
        cron(maintain_pool_buffer, minute={0, 30}, timeout=600, unique=True),
        cron(cleanup_pool, minute=15, timeout=600, unique=True),
        cron(reset_monthly_message_counts, day=1, hour=0, minute=5, timeout=300, unique=True),
    ]

    on_startup = startup
    on_shutdown = shutdown

    redis_settings = RedisSettings.from_dsn(str(settings.arq_redis_url))
    max_jobs = 1
