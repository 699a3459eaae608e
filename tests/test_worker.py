"""
Tests for background derivative jobs and schedulers.

Jobs are called directly with a hand-built ARQ context; no Redis needed.
"""

import json
from unittest.mock import AsyncMock

import pytest
from arq import Retry

from apps.api.memories import scheduling
from apps.api.memories.derivatives import DerivativeJob, DerivativePipeline
from apps.api.memories.scheduling import (
    ArqDerivativeScheduler,
    InProcessDerivativeScheduler,
    enqueue_derivative_generation,
)
from apps.api.memories.worker import (
    WorkerSettings,
    expire_stale_derivatives_job,
    generate_derivatives_job,
)
from db.models.memory import MemoryAsset
from tests.fakes import RecordingScheduler, make_image_bytes, seed_original


@pytest.fixture
def pipeline(session_factory, manager, settings) -> DerivativePipeline:
    return DerivativePipeline(session_factory, manager, settings)


class TestGenerateDerivativesJob:
    async def test_success(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(900, 600))

        result = await generate_derivatives_job({"pipeline": pipeline, "job_try": 1}, job.to_payload())

        assert result["status"] == "success"
        assert result["memory_id"] == str(job.memory_id)
        assert sorted(result["completed"]) == ["display", "thumb"]
        assert result["failed"] == {}

    async def test_retryable_failure_requests_retry(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(100, 100))
        s3.objects.clear()

        with pytest.raises(Retry):
            await generate_derivatives_job({"pipeline": pipeline, "job_try": 1}, job.to_payload())

    async def test_last_try_reports_failure(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(100, 100))
        s3.objects.clear()
        ctx = {"pipeline": pipeline, "job_try": WorkerSettings.max_tries}

        result = await generate_derivatives_job(ctx, job.to_payload())

        assert result["status"] == "error"
        assert set(result["failed"]) == {"display", "thumb"}

    async def test_decode_failure_is_not_retried(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, b"\xff\xd8\xff truncated")

        result = await generate_derivatives_job({"pipeline": pipeline, "job_try": 1}, job.to_payload())

        assert result["status"] == "error"

    async def test_payload_survives_json(self, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(10, 10))

        payload = json.loads(json.dumps(job.to_payload()))

        assert DerivativeJob.from_payload(payload) == job


class TestExpireJob:
    async def test_returns_count(self, pipeline):
        result = await expire_stale_derivatives_job({"pipeline": pipeline})

        assert result == {"status": "success", "expired": 0}


class TestSchedulers:
    async def test_arq_scheduler_enqueues_payload(self, monkeypatch, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(10, 10))
        enqueue = AsyncMock(return_value="job-1")
        monkeypatch.setattr(scheduling, "enqueue_derivative_job", enqueue)

        await ArqDerivativeScheduler().submit(job)

        enqueue.assert_awaited_once_with(job)

    async def test_in_process_scheduler_gives_up_after_max_tries(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(100, 100))
        s3.objects.clear()
        pipeline.generate = AsyncMock(wraps=pipeline.generate)
        scheduler = InProcessDerivativeScheduler(pipeline, max_tries=2, retry_delay=0.0)

        await scheduler.submit(job)
        await scheduler.drain()

        assert pipeline.generate.await_count == 2
        assert scheduler.pending == 0

    async def test_in_process_scheduler_survives_crashes(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(100, 100))
        pipeline.generate = AsyncMock(side_effect=RuntimeError("boom"))
        scheduler = InProcessDerivativeScheduler(pipeline, max_tries=3, retry_delay=0.0)

        await scheduler.submit(job)
        await scheduler.drain()

        assert pipeline.generate.await_count == 3

    async def test_enqueue_never_raises(self, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(10, 10))
        scheduler = RecordingScheduler(fail=True)

        async with session_factory() as db:
            original = await db.get(MemoryAsset, job.original_asset_id)

        await enqueue_derivative_generation(scheduler, job.memory_type, original)

        assert scheduler.jobs == []
