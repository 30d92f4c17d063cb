"""In-process runner for fire-and-forget side effects.

Jobs submitted here are detached from the request that scheduled them: the
caller never awaits them, so every job logs its own outcome. Concurrency is
bounded by a semaphore so a burst of low-balance events cannot spawn an
unbounded number of charges or notifications.
"""
import asyncio
from typing import Awaitable, Callable

import structlog

from metering.metrics import background_jobs_total

logger = structlog.get_logger(__name__)

JobFactory = Callable[[], Awaitable[object]]


class BackgroundTaskRunner:
    """Bounded runner for detached async jobs."""

    def __init__(self, max_concurrency: int = 32):
        """
        Initialize the runner.

        Args:
            max_concurrency: Maximum number of jobs executing at once
        """
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of jobs not yet finished."""
        return len(self._tasks)

    def submit(self, name: str, job: JobFactory, **log_context: object) -> asyncio.Task:
        """
        Schedule a job without awaiting it.

        Args:
            name: Job name used in logs and metrics
            job: Zero-argument callable returning the coroutine to run
            **log_context: Extra fields bound to the job's log entries

        Returns:
            The created task (kept referenced until it completes)
        """
        task = asyncio.get_running_loop().create_task(self._run(name, job, log_context))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(self, name: str, job: JobFactory, log_context: dict) -> None:
        async with self._semaphore:
            try:
                await job()
            except asyncio.CancelledError:
                logger.warning("background_job_cancelled", job=name, **log_context)
                raise
            except Exception as exc:
                background_jobs_total.labels(job=name, status="failed").inc()
                logger.exception("background_job_failed", job=name, exc_info=exc, **log_context)
            else:
                background_jobs_total.labels(job=name, status="succeeded").inc()
                logger.debug("background_job_completed", job=name, **log_context)

    async def drain(self) -> None:
        """Wait until every submitted job, including ones they submit, has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
