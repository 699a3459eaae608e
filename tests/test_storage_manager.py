"""
Unit tests for the storage manager.

Tests:
1. Retries: transient failures are retried with exponential backoff
2. Fallback: exhausted or unavailable backends hand over to the next one
3. Replication: concurrent uploads succeed if any backend succeeds
4. Deadlines: in-flight attempts are never abandoned; late objects are reported
5. Delete: single call, classified immutable vs transient
"""

import asyncio

import pytest

from apps.api.storage import delete_file, upload_file
from packages.shared.storage import (
    AggregateUploadError,
    DeleteError,
    DeleteErrorKind,
    FileUpload,
    StorageBackend,
    StorageManager,
    StorageManagerConfig,
    TransientUploadFailure,
    UploadError,
    UploadOptions,
    UploadResult,
    UploadTimeout,
)
from tests.fakes import FakeProvider


@pytest.fixture
def file() -> FileUpload:
    return FileUpload(filename="note.txt", content_type="text/plain", data=b"hello memories")


def build_manager(*providers: FakeProvider, retry_delay: float = 0.0, max_retries: int = 3) -> StorageManager:
    return StorageManager(
        providers=providers,
        config=StorageManagerConfig(
            default_backend=StorageBackend.S3,
            fallback_backends=[StorageBackend.VERCEL_BLOB],
            max_retries=max_retries,
            retry_delay=retry_delay,
        ),
    )


# =============================================================================
# Retry Tests
# =============================================================================


class TestRetry:
    async def test_first_attempt_success(self, manager, s3, file):
        result = await manager.upload(file)

        assert isinstance(result, UploadResult)
        assert result.provider == StorageBackend.S3
        assert result.size == file.size
        assert s3.upload_calls == 1
        assert s3.objects[result.key] == file.data

    async def test_transient_failures_are_retried(self, s3, blob, file):
        s3.fail_times = 2
        manager = build_manager(s3, blob)

        result = await manager.upload(file, StorageBackend.S3)

        assert result.provider == StorageBackend.S3
        assert s3.upload_calls == 3
        assert blob.upload_calls == 0

    async def test_backoff_doubles_between_attempts(self, s3, blob, file):
        s3.fail_times = 2
        manager = build_manager(s3, blob, retry_delay=0.05)

        await manager.upload(file, StorageBackend.S3)

        first_gap = s3.call_times[1] - s3.call_times[0]
        second_gap = s3.call_times[2] - s3.call_times[1]
        assert first_gap >= 0.045
        assert second_gap >= 0.095

    async def test_no_sleep_after_last_attempt(self, s3, file):
        s3.always_fail = True
        manager = StorageManager(
            providers=[s3],
            config=StorageManagerConfig(max_retries=2, retry_delay=0.0),
        )

        with pytest.raises(UploadError) as exc_info:
            await manager.upload(file)

        assert s3.upload_calls == 2
        assert exc_info.value.attempts == 2


# =============================================================================
# Fallback Tests
# =============================================================================


class TestFallback:
    async def test_falls_back_after_retries_exhausted(self, s3, blob, file):
        s3.always_fail = True
        manager = build_manager(s3, blob)

        result = await manager.upload(file)

        assert result.provider == StorageBackend.VERCEL_BLOB
        assert s3.upload_calls == 3
        assert blob.upload_calls == 1

    async def test_fallback_result_waits_out_backoff(self, s3, blob, file):
        s3.always_fail = True
        manager = build_manager(s3, blob, retry_delay=0.05)
        loop = asyncio.get_running_loop()

        started = loop.time()
        result = await manager.upload(file)
        elapsed = loop.time() - started

        assert result.provider == StorageBackend.VERCEL_BLOB
        assert blob.upload_calls == 1
        # 0.05 after the first attempt, 0.1 after the second
        assert elapsed >= 0.145
        assert blob.call_times[0] - s3.call_times[0] >= 0.145

    async def test_unavailable_provider_is_skipped_without_attempts(self, s3, blob, file):
        s3.available = False
        manager = build_manager(s3, blob)

        result = await manager.upload(file, StorageBackend.S3)

        assert result.provider == StorageBackend.VERCEL_BLOB
        assert s3.upload_calls == 0

    async def test_all_backends_failing_raises_upload_error_with_cause(self, s3, blob, file):
        s3.always_fail = True
        blob.always_fail = True
        manager = build_manager(s3, blob)

        with pytest.raises(UploadError) as exc_info:
            await manager.upload(file)

        error = exc_info.value
        assert not isinstance(error, UploadTimeout)
        assert isinstance(error.cause, TransientUploadFailure)
        assert error.provider == StorageBackend.VERCEL_BLOB.value
        assert error.attempts == 6

    async def test_no_available_backend(self, s3, blob, file):
        s3.available = False
        blob.available = False
        manager = build_manager(s3, blob)

        with pytest.raises(UploadError, match="No storage backend available"):
            await manager.upload(file)

    async def test_unregistered_backend_is_skipped(self, blob, file):
        manager = build_manager(blob)

        result = await manager.upload(file, StorageBackend.S3)

        assert result.provider == StorageBackend.VERCEL_BLOB

    async def test_options_reach_provider(self, manager, s3, file):
        result = await manager.upload(
            file, StorageBackend.S3, UploadOptions(folder="memories/u1", content_type="text/markdown")
        )

        assert result.key.startswith("memories/u1/")
        assert result.mime_type == "text/markdown"


# =============================================================================
# Replication Tests
# =============================================================================


class TestReplication:
    async def test_upload_to_list_returns_every_result(self, manager, s3, icp, file):
        results = await manager.upload(file, [StorageBackend.S3, StorageBackend.ICP])

        assert isinstance(results, list)
        assert {r.provider for r in results} == {StorageBackend.S3, StorageBackend.ICP}
        assert len(s3.objects) == 1
        assert len(icp.objects) == 1

    async def test_partial_replication_succeeds(self, manager, s3, icp, file):
        icp.always_fail = True

        outcome = await manager.replicate(file, [StorageBackend.S3, StorageBackend.ICP])

        assert outcome.backends == [StorageBackend.S3]
        assert outcome.is_partial
        assert StorageBackend.ICP in outcome.failures
        assert icp.upload_calls == 3

    async def test_replication_does_not_fall_back(self, manager, s3, blob, icp, file):
        s3.always_fail = True

        outcome = await manager.replicate(file, [StorageBackend.S3, StorageBackend.ICP])

        assert outcome.backends == [StorageBackend.ICP]
        assert blob.upload_calls == 0

    async def test_all_replicas_failing_raises_aggregate(self, manager, s3, icp, file):
        s3.always_fail = True
        icp.available = False

        with pytest.raises(AggregateUploadError) as exc_info:
            await manager.upload(file, [StorageBackend.S3, StorageBackend.ICP])

        assert len(exc_info.value.errors) == 2

    async def test_duplicate_backends_upload_once(self, manager, s3, file):
        results = await manager.upload(file, [StorageBackend.S3, StorageBackend.S3])

        assert len(results) == 1
        assert s3.upload_calls == 1


# =============================================================================
# Deadline Tests
# =============================================================================


class TestDeadline:
    async def test_late_success_is_reported_for_cleanup(self, s3, blob, file):
        s3.delay = 0.2
        manager = build_manager(s3, blob)

        with pytest.raises(UploadTimeout) as exc_info:
            await manager.upload(file, StorageBackend.S3, timeout=0.05)

        late = exc_info.value.late_result
        assert late is not None
        assert late.key in s3.objects
        assert s3.upload_calls == 1
        assert blob.upload_calls == 0

    async def test_backoff_past_deadline_times_out(self, s3, blob, file):
        s3.always_fail = True
        manager = build_manager(s3, blob, retry_delay=1.0)

        with pytest.raises(UploadTimeout):
            await manager.upload(file, StorageBackend.S3, timeout=0.1)

        assert s3.upload_calls == 1

    async def test_fast_upload_within_deadline(self, manager, file):
        result = await manager.upload(file, timeout=5.0)

        assert result.provider == StorageBackend.S3


# =============================================================================
# Delete Tests
# =============================================================================


class TestDelete:
    async def test_delete_removes_object(self, manager, s3, file):
        result = await manager.upload(file)

        await manager.delete(StorageBackend.S3, result.key)

        assert result.key not in s3.objects

    async def test_immutable_backend_delete_is_classified(self, file):
        arweave = FakeProvider(StorageBackend.ARWEAVE, immutable=True)
        manager = StorageManager(providers=[arweave])

        with pytest.raises(DeleteError) as exc_info:
            await manager.delete(StorageBackend.ARWEAVE, "tx-123")

        assert exc_info.value.kind == DeleteErrorKind.IMMUTABLE
        assert exc_info.value.is_immutable
        assert exc_info.value.key == "tx-123"

    async def test_transient_delete_failure_is_not_retried(self, manager, s3):
        s3.fail_deletes = True

        with pytest.raises(DeleteError) as exc_info:
            await manager.delete("s3", "memories/a.jpg")

        assert exc_info.value.kind == DeleteErrorKind.TRANSIENT
        assert s3.delete_calls == ["memories/a.jpg"]

    async def test_unregistered_backend_delete_is_transient(self, manager):
        with pytest.raises(DeleteError) as exc_info:
            await manager.delete(StorageBackend.IPFS, "bafy")

        assert exc_info.value.kind == DeleteErrorKind.TRANSIENT


# =============================================================================
# API Facade Tests
# =============================================================================


class TestFacade:
    async def test_upload_and_delete_through_facade(self, manager, s3, file):
        result = await upload_file(manager, file, "s3", UploadOptions(folder="memories"))

        assert result.key in s3.objects

        await delete_file(manager, result.provider, result.key)

        assert s3.deleted == [result.key]
