"""
Service layer for the memory upload workflow.

Handles:
- Single-file upload: validate -> store -> record -> ledger -> derivatives
- Folder upload with bounded concurrency and per-file results
- Memory deletion with best-effort physical cleanup
"""

import asyncio
import logging
import time
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from apps.api.config import Settings
from apps.api.memories.derivatives import (
    default_specs,
    pending_variants,
    read_image_dimensions,
)
from apps.api.memories.error_codes import (
    MemoryErrorCode,
    classify_storage_error,
    get_error_message,
)
from apps.api.memories.ledger import CleanupReport, StorageEdgeLedger
from apps.api.memories.preferences import StoragePreference, resolve_backends
from apps.api.memories.scheduling import DerivativeScheduler, enqueue_derivative_generation
from apps.api.memories.validation import (
    MB,
    MediaClass,
    ValidatedFile,
    ValidationFailure,
    validate_file,
)
from db.models.memory import (
    AssetType,
    Memory,
    MemoryAsset,
    ProcessingStatus,
    StorageArtifact,
    Visibility,
)
from packages.shared.storage.base import FileUpload, StorageBackend, UploadOptions, UploadResult
from packages.shared.storage.errors import (
    AggregateUploadError,
    StorageError,
    UploadTimeout,
)
from packages.shared.storage.manager import StorageManager

logger = logging.getLogger(__name__)


class RecordCreationError(Exception):
    """Raised when files were stored but the database records could not be written."""

    def __init__(self, uploads: list[UploadResult], cause: BaseException):
        self.uploads = uploads
        self.cause = cause
        self.code = MemoryErrorCode.RECORD_CREATION_FAILED
        super().__init__(get_error_message(self.code, str(cause)))


class MemoryNotFoundError(LookupError):
    """Raised when a memory does not exist or belongs to someone else."""


@dataclass
class MemoryWithAssets:
    memory: Memory
    assets: list[MemoryAsset]
    uploads: list[UploadResult] = field(default_factory=list)


@dataclass
class BatchItemResult:
    """Outcome of one file in a folder upload."""

    index: int
    filename: str
    size_bytes: int
    success: bool
    elapsed_seconds: float
    memory_id: uuid.UUID | None = None
    backends: list[StorageBackend] = field(default_factory=list)
    error_code: MemoryErrorCode | None = None
    error: str | None = None


@dataclass
class BatchUploadResult:
    """Per-file results plus aggregate statistics for a folder upload."""

    items: list[BatchItemResult]
    total_time: float  # Seconds, wall clock for the whole batch

    @property
    def total_files(self) -> int:
        return len(self.items)

    @property
    def successful_uploads(self) -> int:
        return sum(1 for item in self.items if item.success)

    @property
    def failed_uploads(self) -> int:
        return self.total_files - self.successful_uploads

    @property
    def partial_failure(self) -> bool:
        return 0 < self.failed_uploads < self.total_files

    @property
    def average_time(self) -> float:
        return self.total_time / self.total_files if self.items else 0.0

    @property
    def total_size_mb(self) -> float:
        return sum(item.size_bytes for item in self.items if item.success) / MB

    @property
    def upload_speed_mbps(self) -> float:
        return self.total_size_mb / self.total_time if self.total_time > 0 else 0.0


@dataclass
class MemoryDeletionResult:
    memory_id: uuid.UUID
    cleanup: CleanupReport

    @property
    def logical_delete_ok(self) -> bool:
        return self.cleanup.logical_delete_ok


class MemoryUploadService:
    """Upload workflow coordinator."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        manager: StorageManager,
        settings: Settings,
        scheduler: DerivativeScheduler,
    ):
        self.session_factory = session_factory
        self.manager = manager
        self.settings = settings
        self.scheduler = scheduler

    # =========================================================================
    # Single File
    # =========================================================================

    async def upload_file(
        self,
        file: FileUpload,
        owner_id: str,
        preference: StoragePreference | str | None = None,
        title: str | None = None,
        timeout: float | None = None,
    ) -> MemoryWithAssets:
        """
        Upload one file and create its memory.

        Args:
            file: Uploaded file
            owner_id: Resolved owner identity
            preference: Storage preference (None uses the configured default)
            title: Memory title (defaults to the filename)
            timeout: Storage deadline in seconds (None uses settings)

        Returns:
            The created memory with its original asset

        Raises:
            ValidationFailure: File rejected before upload
            UploadError: Storage exhausted retries and fallbacks
            AggregateUploadError: Every replicated backend failed
            UploadTimeout: Deadline passed
            RecordCreationError: Stored, but records could not be written
        """
        validated = validate_file(file, self.settings)
        backends = resolve_backends(preference, self.settings)

        logger.info(
            f"Uploading {file.filename} ({file.size} bytes) for {owner_id} "
            f"to {', '.join(b.value for b in backends)}"
        )
        uploads = await self._store_original(validated, owner_id, backends, timeout)

        try:
            memory, assets = await self._create_records(validated, owner_id, uploads, title)
        except SQLAlchemyError as e:
            keys = ", ".join(f"{u.provider.value}:{u.key}" for u in uploads)
            logger.exception(f"Orphaned blob(s) after record creation failed: {keys}")
            raise RecordCreationError(uploads, e) from e

        original = assets[0]
        await enqueue_derivative_generation(self.scheduler, memory.type, original)
        logger.info(f"Created memory {memory.id} ({memory.type.value}) for {owner_id}")
        return MemoryWithAssets(memory=memory, assets=assets, uploads=uploads)

    async def _store_original(
        self,
        validated: ValidatedFile,
        owner_id: str,
        backends: tuple[StorageBackend, ...],
        timeout: float | None,
    ) -> list[UploadResult]:
        """Upload with fallback (one backend) or replication (several)."""
        options = UploadOptions(
            folder=self.settings.storage_folder,
            content_type=validated.file.content_type,
            metadata={"owner_id": owner_id},
        )
        timeout = timeout if timeout is not None else self.settings.storage_upload_timeout_seconds

        try:
            if len(backends) == 1:
                result = await self.manager.upload(validated.file, backends[0], options, timeout)
                return [result]

            outcome = await self.manager.replicate(validated.file, backends, options, timeout)
            await self._discard_late_results(outcome.failures.values())
            return outcome.results
        except UploadTimeout as e:
            await self._discard_late_results([e])
            raise
        except AggregateUploadError as e:
            await self._discard_late_results(e.errors)
            raise

    async def _discard_late_results(self, errors: Iterable[StorageError]) -> None:
        """Delete objects whose upload finished after the deadline."""
        for error in errors:
            late = getattr(error, "late_result", None)
            if late is None:
                continue
            try:
                await self.manager.delete(late.provider, late.key)
                logger.info(f"Removed late upload {late.provider.value}:{late.key}")
            except StorageError as e:
                logger.error(f"Orphaned late upload {late.provider.value}:{late.key}: {e}")

    async def _create_records(
        self,
        validated: ValidatedFile,
        owner_id: str,
        uploads: list[UploadResult],
        title: str | None,
    ) -> tuple[Memory, list[MemoryAsset]]:
        """
        Create the memory, its original asset, pending variant rows and its
        edges in one transaction.
        """
        file = validated.file
        primary = uploads[0]
        content_hash = file.compute_hash()

        dimensions = None
        if validated.media_class == MediaClass.IMAGE:
            dimensions = read_image_dimensions(file.data)
        width, height = dimensions or (None, None)

        async with self.session_factory() as db:
            memory = Memory(
                owner_id=owner_id,
                type=validated.memory_type,
                title=title or file.filename,
                visibility=Visibility.PRIVATE,
                storage_locations=[],
                storage_count=0,
            )
            db.add(memory)
            await db.flush()

            original = MemoryAsset(
                memory_id=memory.id,
                asset_type=AssetType.ORIGINAL,
                url=primary.url,
                storage_backend=primary.provider,
                storage_key=primary.key,
                bytes=file.size,
                width=width,
                height=height,
                mime_type=file.content_type,
                content_hash=content_hash,
                processing_status=ProcessingStatus.COMPLETED,
            )
            db.add(original)
            variants = pending_variants(memory.type, original, default_specs(self.settings))
            db.add_all(variants)
            await db.flush()

            ledger = StorageEdgeLedger(db)
            await ledger.create_edge(
                memory_id=memory.id,
                memory_type=memory.type,
                artifact=StorageArtifact.METADATA,
                backend=StorageBackend.NEON,
                location=f"memories/{memory.id}",
            )
            for upload in uploads:
                await ledger.create_edge(
                    memory_id=memory.id,
                    memory_type=memory.type,
                    artifact=StorageArtifact.ASSET,
                    backend=upload.provider,
                    location=upload.key,
                    size_bytes=upload.size,
                    content_hash=content_hash,
                )

            await db.commit()
            await db.refresh(memory)
            return memory, [original, *variants]

    # =========================================================================
    # Folder (Batch)
    # =========================================================================

    async def upload_batch(
        self,
        files: list[FileUpload],
        owner_id: str,
        preference: StoragePreference | str | None = None,
    ) -> BatchUploadResult:
        """
        Upload many files with bounded concurrency.

        A failing file becomes a failed item; it never aborts the batch.

        Raises:
            ValidationFailure: Only for whole-batch limits (file count, total size)
        """
        if len(files) > self.settings.max_files_per_upload:
            raise ValidationFailure(
                MemoryErrorCode.TOO_MANY_FILES,
                f"{len(files)} files, maximum {self.settings.max_files_per_upload}",
            )
        total_bytes = sum(f.size for f in files)
        if total_bytes > self.settings.max_total_upload_size_mb * MB:
            raise ValidationFailure(
                MemoryErrorCode.FILE_TOO_LARGE,
                f"Total upload {total_bytes / MB:.0f}MB exceeds "
                f"{self.settings.max_total_upload_size_mb}MB",
            )

        semaphore = asyncio.Semaphore(self.settings.upload_concurrency)
        started = time.perf_counter()

        async def run(index: int, file: FileUpload) -> BatchItemResult:
            async with semaphore:
                return await self._upload_batch_item(index, file, owner_id, preference)

        items = await asyncio.gather(*(run(i, f) for i, f in enumerate(files)))
        result = BatchUploadResult(items=list(items), total_time=time.perf_counter() - started)

        logger.info(
            f"Folder upload for {owner_id}: {result.successful_uploads}/{result.total_files} "
            f"succeeded in {result.total_time:.2f}s ({result.upload_speed_mbps:.2f} MB/s)"
        )
        return result

    async def _upload_batch_item(
        self,
        index: int,
        file: FileUpload,
        owner_id: str,
        preference: StoragePreference | str | None,
    ) -> BatchItemResult:
        started = time.perf_counter()
        item = BatchItemResult(
            index=index,
            filename=file.filename,
            size_bytes=file.size,
            success=False,
            elapsed_seconds=0.0,
        )

        try:
            created = await self.upload_file(file, owner_id, preference)
        except ValidationFailure as e:
            item.error_code, item.error = e.code, e.message
        except RecordCreationError as e:
            item.error_code, item.error = e.code, str(e)
        except StorageError as e:
            item.error_code = classify_storage_error(e)
            item.error = get_error_message(item.error_code, str(e))
        except Exception as e:
            logger.exception(f"Unexpected failure uploading {file.filename}")
            item.error_code = MemoryErrorCode.INTERNAL_ERROR
            item.error = get_error_message(item.error_code, str(e))
        else:
            item.success = True
            item.memory_id = created.memory.id
            item.backends = [u.provider for u in created.uploads]

        item.elapsed_seconds = time.perf_counter() - started
        if not item.success:
            logger.warning(f"Folder item {index} ({file.filename}) failed: {item.error}")
        return item

    # =========================================================================
    # Read / Delete
    # =========================================================================

    async def get_memory(self, memory_id: uuid.UUID, owner_id: str) -> MemoryWithAssets:
        async with self.session_factory() as db:
            memory = await self._get_owned(db, memory_id, owner_id, load_assets=True)
            return MemoryWithAssets(memory=memory, assets=list(memory.assets))

    async def get_presence(self, memory_id: uuid.UUID, owner_id: str) -> dict:
        async with self.session_factory() as db:
            await self._get_owned(db, memory_id, owner_id)
            return await StorageEdgeLedger(db).presence_summary(memory_id)

    async def delete_memory(self, memory_id: uuid.UUID, owner_id: str) -> MemoryDeletionResult:
        """
        Delete a memory, its assets and its edges.

        Backend deletes are attempted first; their failures are reported in
        the result and never block the logical delete.

        Raises:
            MemoryNotFoundError: Memory missing or owned by someone else
        """
        async with self.session_factory() as db:
            memory = await self._get_owned(db, memory_id, owner_id)
            report = await StorageEdgeLedger(db).cleanup_memory(memory.id, memory.type, self.manager)
            await db.delete(memory)
            await db.commit()

        logger.info(
            f"Deleted memory {memory_id}: {report.deleted_backend_object_count} objects removed, "
            f"{len(report.failed)} left behind"
        )
        return MemoryDeletionResult(memory_id=memory_id, cleanup=report)

    @staticmethod
    async def _get_owned(
        db: AsyncSession,
        memory_id: uuid.UUID,
        owner_id: str,
        load_assets: bool = False,
    ) -> Memory:
        stmt = select(Memory).where(Memory.id == memory_id, Memory.owner_id == owner_id)
        if load_assets:
            stmt = stmt.options(selectinload(Memory.assets))
        memory = (await db.execute(stmt)).scalar_one_or_none()
        if memory is None:
            raise MemoryNotFoundError(f"Memory {memory_id} not found")
        return memory
