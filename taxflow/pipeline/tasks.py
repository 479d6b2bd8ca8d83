"""Async task definitions for invoice processing.

Uses arq (async Redis queue) for background task processing. Each task
runs one job through the pipeline; jobs that fail with a retryable error
are re-enqueued with exponential backoff.

Based on arq documentation:
https://arq-docs.helpmanual.io/
"""

import logging
from typing import Any

from arq.connections import RedisSettings

from taxflow.pipeline.processor import InvoicePipeline
from taxflow.pipeline.states import JobStage
from taxflow.pipeline.store import RedisJobStore
from taxflow.shared.config import Settings, get_settings
from taxflow.shared.errors import ConcurrencyConflictError, JobNotFoundError

logger = logging.getLogger(__name__)


def retry_delay_seconds(settings: Settings, attempts: int) -> float:
    """Backoff before the next attempt: base * 2^(attempts - 1)."""
    return settings.retry_backoff_seconds * 2 ** max(attempts - 1, 0)


async def enqueue_job(redis: Any, job_id: str, defer_by: float | None = None) -> None:
    """Put a job id on the arq queue."""
    if defer_by:
        await redis.enqueue_job("process_job", job_id, _defer_by=defer_by)
    else:
        await redis.enqueue_job("process_job", job_id)
    logger.info(f"Enqueued job {job_id}" + (f" in {defer_by:.1f}s" if defer_by else ""))


async def process_job(ctx: dict[str, Any], job_id: str) -> dict[str, Any]:
    """Run one job through the pipeline.

    A lease conflict means another worker already has the job, so the task
    ends quietly without touching it.

    Args:
        ctx: arq context (contains redis connection and the pipeline)
        job_id: Processing job id

    Returns:
        Summary of the job's resting state
    """
    settings: Settings = ctx.get("settings") or get_settings()
    pipeline: InvoicePipeline = ctx.get("pipeline") or InvoicePipeline(
        RedisJobStore(ctx["redis"]), settings
    )

    logger.info(f"Processing job {job_id}")
    try:
        job = await pipeline.run(job_id)
    except ConcurrencyConflictError:
        logger.info(f"Job {job_id} is leased by another worker; skipping")
        return {"job_id": job_id, "status": "skipped"}
    except JobNotFoundError:
        logger.error(f"Job {job_id} not found; dropping task")
        return {"job_id": job_id, "status": "missing"}

    if job.stage == JobStage.QUEUED:
        delay = retry_delay_seconds(settings, job.attempts)
        await enqueue_job(ctx["redis"], job_id, defer_by=delay)

    logger.info(f"Job {job_id} rested in {job.stage.value} after {job.attempts} failed attempt(s)")
    return {"job_id": job_id, "status": job.stage.value, "attempts": job.attempts}


async def startup(ctx: dict[str, Any]) -> None:
    """Worker startup hook - initialize services.

    Called once when worker starts. Builds the pipeline once so providers
    and circuit breakers are shared across jobs.
    """
    logger.info("Initializing worker services...")
    settings = get_settings()
    ctx["settings"] = settings
    ctx["pipeline"] = InvoicePipeline(RedisJobStore(ctx["redis"]), settings)
    logger.info("Worker services initialized")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Worker shutdown hook - cleanup resources."""
    logger.info("Worker shutting down...")


class WorkerSettings:
    """arq worker settings.

    Defines the worker configuration including:
    - Task functions to register
    - Redis connection settings
    - Concurrency and job timeout
    """

    functions = [process_job]
    on_startup = startup
    on_shutdown = shutdown

    # These will be set from environment
    redis_settings: RedisSettings | None = None
    max_jobs = 10
    job_timeout = 300

    @classmethod
    def get_redis_settings(cls) -> RedisSettings:
        """Get Redis settings from configuration."""
        return RedisSettings.from_dsn(get_settings().redis_url)
