"""
ARQ worker for background derivative generation.

Usage:
    # Start worker
    arq apps.api.memories.worker.WorkerSettings

    # Or with custom redis
    arq apps.api.memories.worker.WorkerSettings --redis redis://localhost:6379/1
"""

import logging
from datetime import timedelta
from typing import Any

from arq import Retry, create_pool, cron
from arq.connections import ArqRedis, RedisSettings

from apps.api.config import get_settings
from apps.api.memories.derivatives import DerivativeJob, DerivativePipeline
from db.models.memory import ProcessingStatus
from db.session import async_session_factory
from packages.shared.storage import build_storage_manager

logger = logging.getLogger(__name__)


# =============================================================================
# Job Functions
# =============================================================================


async def generate_derivatives_job(
    ctx: dict[str, Any],
    payload: dict[str, Any],
) -> dict[str, Any]:
    """
    Background job to generate display/thumb variants for one original.

    Retryable failures (source unreadable, storage upload failed) are
    re-queued with a growing delay until ``max_tries`` is reached; the
    variant rows hold the failure in the meantime. A retry only redoes
    variants that have not completed.

    Args:
        ctx: ARQ context (pipeline is created on startup)
        payload: DerivativeJob.to_payload()

    Returns:
        Job result dict
    """
    job = DerivativeJob.from_payload(payload)
    pipeline: DerivativePipeline = ctx["pipeline"]
    job_try = ctx.get("job_try", 1)

    logger.info(f"Starting derivatives for memory {job.memory_id} (try {job_try})")
    outcomes = await pipeline.generate(job, regenerate=False)

    if any(o.retryable for o in outcomes) and job_try < WorkerSettings.max_tries:
        delay = get_settings().derivative_retry_delay_seconds * 2 ** (job_try - 1)
        logger.warning(f"Retrying derivatives for memory {job.memory_id} in {delay}s")
        raise Retry(defer=delay)

    completed = [o.asset_type.value for o in outcomes if o.status == ProcessingStatus.COMPLETED]
    failed = {o.asset_type.value: o.error for o in outcomes if o.status == ProcessingStatus.FAILED}
    return {
        "status": "error" if failed else "success",
        "memory_id": str(job.memory_id),
        "completed": completed,
        "failed": failed,
    }


async def expire_stale_derivatives_job(ctx: dict[str, Any]) -> dict[str, Any]:
    """
    Periodic job that fails variants stuck in pending/processing.

    Scheduled every 15 minutes via cron_jobs.
    """
    logger.info("Starting expiry of stale derivatives")
    pipeline: DerivativePipeline = ctx["pipeline"]
    count = await pipeline.expire_stale()
    logger.info(f"Expired {count} stale derivatives")
    return {"status": "success", "expired": count}


# =============================================================================
# Startup/Shutdown Hooks
# =============================================================================


async def startup(ctx: dict[str, Any]) -> None:
    """Called when worker starts."""
    settings = get_settings()
    manager = build_storage_manager(settings)
    ctx["manager"] = manager
    ctx["pipeline"] = DerivativePipeline(async_session_factory, manager, settings)
    logger.info("Derivative worker starting up")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Called when worker shuts down."""
    manager = ctx.get("manager")
    if manager is not None:
        await manager.aclose()
    logger.info("Derivative worker shutting down")


# =============================================================================
# Worker Settings
# =============================================================================


def get_redis_settings() -> RedisSettings:
    """Get Redis settings from config."""
    return RedisSettings.from_dsn(get_settings().redis_url)


class WorkerSettings:
    """ARQ worker settings."""

    # Job functions
    functions = [
        generate_derivatives_job,
        expire_stale_derivatives_job,
    ]

    # Cron jobs (periodic tasks)
    cron_jobs = [
        cron(expire_stale_derivatives_job, minute={0, 15, 30, 45}),
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown

    # Redis connection
    redis_settings = get_redis_settings()

    # Job settings
    max_jobs = 10  # Max concurrent jobs
    job_timeout = timedelta(minutes=10)  # Max job duration
    max_tries = get_settings().derivative_max_tries
    retry_delay = timedelta(seconds=get_settings().derivative_retry_delay_seconds)


# =============================================================================
# Job Enqueueing Helper
# =============================================================================


_redis_pool: ArqRedis | None = None


async def get_redis_pool() -> ArqRedis:
    """Get or create Redis connection pool for enqueueing jobs."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = await create_pool(get_redis_settings())
    return _redis_pool


async def enqueue_derivative_job(job: DerivativeJob) -> str | None:
    """
    Enqueue a derivative generation job.

    Args:
        job: Reference to the original asset

    Returns:
        Job ID or None if enqueueing failed
    """
    try:
        redis = await get_redis_pool()
        queued = await redis.enqueue_job("generate_derivatives_job", job.to_payload())
        return queued.job_id if queued else None
    except Exception as e:
        logger.exception(f"Failed to enqueue derivative job: {e}")
        return None
