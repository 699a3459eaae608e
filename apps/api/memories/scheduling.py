"""
Fire-and-forget scheduling of derivative generation.

Production hands jobs to the ARQ worker; development and tests run them on
in-process asyncio tasks. Either way the request that submitted the job
does not own it: cancelling the request leaves the job running.
"""

import asyncio
import logging
from typing import Protocol

from apps.api.memories.derivatives import DerivativeJob, DerivativeOutcome, DerivativePipeline
from apps.api.memories.worker import enqueue_derivative_job
from db.models.memory import MemoryAsset, MemoryType

logger = logging.getLogger(__name__)


class DerivativeScheduler(Protocol):
    """Accepts derivative jobs without waiting for them."""

    async def submit(self, job: DerivativeJob) -> None:
        ...


class ArqDerivativeScheduler:
    """Submits jobs to the ARQ queue; retries are the worker's max_tries."""

    async def submit(self, job: DerivativeJob) -> None:
        job_id = await enqueue_derivative_job(job)
        if job_id is None:
            logger.error(f"Derivative job for memory {job.memory_id} was not queued")
        else:
            logger.info(f"Queued derivative job {job_id} for memory {job.memory_id}")


class InProcessDerivativeScheduler:
    """
    Runs jobs on detached asyncio tasks with their own retry policy.

    Task references are held until completion so they are not garbage
    collected mid-flight.
    """

    def __init__(
        self,
        pipeline: DerivativePipeline,
        max_tries: int = 3,
        retry_delay: float = 5.0,
    ):
        self.pipeline = pipeline
        self.max_tries = max(1, max_tries)
        self.retry_delay = retry_delay
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def submit(self, job: DerivativeJob) -> None:
        task = asyncio.create_task(self._run(job), name=f"derivatives-{job.memory_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job: DerivativeJob) -> list[DerivativeOutcome]:
        outcomes: list[DerivativeOutcome] = []
        for attempt in range(1, self.max_tries + 1):
            try:
                outcomes = await self.pipeline.generate(job, regenerate=False)
            except Exception:
                logger.exception(f"Derivative run {attempt} crashed for memory {job.memory_id}")
            else:
                if not any(o.retryable for o in outcomes):
                    return outcomes

            if attempt < self.max_tries:
                await asyncio.sleep(self.retry_delay * 2 ** (attempt - 1))

        logger.error(f"Giving up on derivatives for memory {job.memory_id} after {self.max_tries} tries")
        return outcomes

    async def drain(self) -> None:
        """Wait for every submitted job, including ones submitted while waiting."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


async def enqueue_derivative_generation(
    scheduler: DerivativeScheduler,
    memory_type: MemoryType,
    original_asset: MemoryAsset,
) -> None:
    """
    Schedule derivative generation for an original asset. Never raises.

    Args:
        scheduler: Where to submit the job
        memory_type: Type of the owning memory
        original_asset: The stored original
    """
    try:
        await scheduler.submit(DerivativeJob.from_asset(memory_type, original_asset))
    except Exception:
        logger.exception(f"Could not schedule derivatives for memory {original_asset.memory_id}")
