"""
Asset derivative pipeline.

Consumes a completed original image and produces optimized variants
(display and thumb by default). Each variant is its own MemoryAsset row,
upserted on (memory_id, asset_type), plus an asset StorageEdge.

Per-asset state machine: pending -> processing -> completed | failed.
A failure is recorded on the variant row only; the original asset and the
memory are left alone.
"""

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from io import BytesIO
from typing import Any

from PIL import Image, ImageOps
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from apps.api.config import Settings
from apps.api.memories.error_codes import MemoryErrorCode, get_error_message
from apps.api.memories.ledger import StorageEdgeLedger, dialect_insert
from db.models.memory import (
    AssetType,
    Memory,
    MemoryAsset,
    MemoryType,
    ProcessingStatus,
    StorageArtifact,
)
from packages.shared.storage.base import FileUpload, StorageBackend, UploadOptions
from packages.shared.storage.errors import StorageError
from packages.shared.storage.manager import StorageManager

logger = logging.getLogger(__name__)

# EXIF orientations that swap width and height
ROTATED_ORIENTATIONS = {5, 6, 7, 8}
EXIF_ORIENTATION_TAG = 0x0112

OUTPUT_MIME_TYPES = {
    "WEBP": "image/webp",
    "JPEG": "image/jpeg",
}


# =============================================================================
# Resize and Encode
# =============================================================================


@dataclass(frozen=True)
class DerivativeSpec:
    """Target for one variant."""

    asset_type: AssetType
    max_size: int  # Longest edge in pixels
    quality: float  # 0.0 - 1.0


DISPLAY = DerivativeSpec(AssetType.DISPLAY, max_size=2048, quality=0.85)
THUMB = DerivativeSpec(AssetType.THUMB, max_size=512, quality=0.8)


def default_specs(settings: Settings) -> tuple[DerivativeSpec, ...]:
    """Display and thumb specs from settings."""
    return (
        DerivativeSpec(AssetType.DISPLAY, settings.display_max_size, settings.display_quality),
        DerivativeSpec(AssetType.THUMB, settings.thumb_max_size, settings.thumb_quality),
    )


def pending_variants(
    memory_type: MemoryType,
    original: MemoryAsset,
    specs: tuple[DerivativeSpec, ...],
) -> list[MemoryAsset]:
    """
    Placeholder rows for variants awaiting generation.

    They point at the original object until their own upload lands. Only
    image memories get variants.
    """
    if memory_type != MemoryType.IMAGE:
        return []
    return [
        MemoryAsset(
            memory_id=original.memory_id,
            asset_type=spec.asset_type,
            url=original.url,
            storage_backend=original.storage_backend,
            storage_key=original.storage_key,
            bytes=original.bytes,
            mime_type=original.mime_type,
            processing_status=ProcessingStatus.PENDING,
        )
        for spec in specs
    ]


def compute_resize_dimensions(width: int, height: int, max_size: int) -> tuple[int, int]:
    """
    Fit dimensions inside a square of ``max_size`` without upscaling.

    If both sides already fit they pass through unchanged. Otherwise the
    longest side becomes ``max_size`` and the other keeps the aspect ratio,
    rounded to the nearest pixel (6000x4000 at 2048 gives 2048x1365).
    """
    if width <= max_size and height <= max_size:
        return width, height
    if width >= height:
        return max_size, max(1, round(height * max_size / width))
    return max(1, round(width * max_size / height)), max_size


@dataclass
class RenderedDerivative:
    data: bytes
    width: int
    height: int
    mime_type: str


def render_derivative(data: bytes, spec: DerivativeSpec, fmt: str = "WEBP") -> RenderedDerivative:
    """
    Resize and re-encode an image.

    Args:
        data: Source image bytes
        spec: Target size and quality
        fmt: Output format (WEBP or JPEG)

    Returns:
        RenderedDerivative with encoded bytes and final dimensions

    Raises:
        OSError: If the source cannot be decoded (PIL.UnidentifiedImageError)
    """
    with Image.open(BytesIO(data)) as source:
        img = ImageOps.exif_transpose(source)

        width, height = compute_resize_dimensions(img.width, img.height, spec.max_size)
        if (width, height) != img.size:
            img = img.resize((width, height), Image.Resampling.LANCZOS)

        # JPEG has no alpha; WEBP keeps it
        if fmt == "JPEG" and img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        elif img.mode not in ("RGB", "RGBA", "L"):
            img = img.convert("RGBA" if "transparency" in img.info or "A" in img.getbands() else "RGB")

        output = BytesIO()
        img.save(output, format=fmt, quality=round(spec.quality * 100))

    return RenderedDerivative(
        data=output.getvalue(),
        width=width,
        height=height,
        mime_type=OUTPUT_MIME_TYPES.get(fmt, f"image/{fmt.lower()}"),
    )


def read_image_dimensions(data: bytes) -> tuple[int, int] | None:
    """
    Read display dimensions of an image without decoding pixels.

    Returns:
        (width, height) after EXIF orientation, or None if not an image
    """
    try:
        with Image.open(BytesIO(data)) as img:
            width, height = img.size
            if img.getexif().get(EXIF_ORIENTATION_TAG) in ROTATED_ORIENTATIONS:
                width, height = height, width
            return width, height
    except (OSError, ValueError, Image.DecompressionBombError):
        return None


# =============================================================================
# Pipeline
# =============================================================================


@dataclass
class DerivativeJob:
    """Reference to a completed original asset."""

    memory_id: uuid.UUID
    memory_type: MemoryType
    original_asset_id: uuid.UUID
    backend: StorageBackend
    storage_key: str
    url: str
    content_type: str
    size: int

    @classmethod
    def from_asset(cls, memory_type: MemoryType, asset: MemoryAsset) -> "DerivativeJob":
        return cls(
            memory_id=asset.memory_id,
            memory_type=memory_type,
            original_asset_id=asset.id,
            backend=asset.storage_backend,
            storage_key=asset.storage_key,
            url=asset.url,
            content_type=asset.mime_type,
            size=asset.bytes,
        )

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe dict for the job queue."""
        payload = asdict(self)
        payload["memory_id"] = str(self.memory_id)
        payload["original_asset_id"] = str(self.original_asset_id)
        payload["memory_type"] = self.memory_type.value
        payload["backend"] = self.backend.value
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "DerivativeJob":
        return cls(
            memory_id=uuid.UUID(payload["memory_id"]),
            memory_type=MemoryType(payload["memory_type"]),
            original_asset_id=uuid.UUID(payload["original_asset_id"]),
            backend=StorageBackend(payload["backend"]),
            storage_key=payload["storage_key"],
            url=payload["url"],
            content_type=payload["content_type"],
            size=int(payload["size"]),
        )


@dataclass
class DerivativeOutcome:
    """Result of generating one variant."""

    asset_type: AssetType
    status: ProcessingStatus
    error_code: MemoryErrorCode | None = None
    error: str | None = None
    width: int | None = None
    height: int | None = None
    size: int | None = None

    @property
    def retryable(self) -> bool:
        return self.error_code in (
            MemoryErrorCode.DERIVATIVE_SOURCE_UNAVAILABLE,
            MemoryErrorCode.DERIVATIVE_UPLOAD_FAILED,
            MemoryErrorCode.RECORD_CREATION_FAILED,
        )


class DerivativePipeline:
    """
    Generates derivative assets for image memories.

    Failures never propagate to callers; they are recorded on the variant
    row and reported through the returned outcomes.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        manager: StorageManager,
        settings: Settings,
        specs: tuple[DerivativeSpec, ...] | None = None,
    ):
        self.session_factory = session_factory
        self.manager = manager
        self.settings = settings
        self.specs = specs or default_specs(settings)
        self.output_format = settings.derivative_format

    async def generate(self, job: DerivativeJob, regenerate: bool = True) -> list[DerivativeOutcome]:
        """
        Generate every configured variant for one original.

        Args:
            job: Reference to the original asset
            regenerate: Re-render variants that already completed. Schedulers
                pass False so a retry only redoes what is missing or failed.

        Returns:
            One outcome per variant in ``self.specs`` order (empty for non-image memories)
        """
        if job.memory_type != MemoryType.IMAGE:
            logger.info(f"Skipping derivatives for {job.memory_type.value} memory {job.memory_id}")
            return []

        logger.info(f"Generating derivatives for memory {job.memory_id}")

        done: dict[AssetType, DerivativeOutcome] = {}
        async with self.session_factory() as db:
            if await db.get(Memory, job.memory_id) is None:
                logger.info(f"Memory {job.memory_id} was deleted; skipping derivatives")
                return []
            for spec in self.specs:
                asset = await self._get_variant(db, job.memory_id, spec.asset_type)
                if (
                    not regenerate
                    and asset is not None
                    and asset.processing_status == ProcessingStatus.COMPLETED
                ):
                    done[spec.asset_type] = DerivativeOutcome(
                        asset_type=spec.asset_type,
                        status=ProcessingStatus.COMPLETED,
                        width=asset.width,
                        height=asset.height,
                        size=asset.bytes,
                    )
                    continue
                await self._begin_processing(db, job, spec.asset_type)
            await db.commit()

        todo = [spec for spec in self.specs if spec.asset_type not in done]
        if not todo:
            logger.info(f"Derivatives for memory {job.memory_id} already completed")
            return [done[spec.asset_type] for spec in self.specs]

        try:
            source = await self.manager.download(job.backend, job.storage_key)
        except (StorageError, OSError) as e:
            logger.warning(f"Could not read original for memory {job.memory_id}: {e}")
            for spec in todo:
                done[spec.asset_type] = await self._fail(
                    job, spec, MemoryErrorCode.DERIVATIVE_SOURCE_UNAVAILABLE, str(e)
                )
            return [done[spec.asset_type] for spec in self.specs]

        for spec in todo:
            done[spec.asset_type] = await self._generate_one(job, source, spec)

        outcomes = [done[spec.asset_type] for spec in self.specs]
        completed = sum(1 for o in outcomes if o.status == ProcessingStatus.COMPLETED)
        logger.info(
            f"Derivatives for memory {job.memory_id}: {completed}/{len(outcomes)} completed"
        )
        return outcomes

    async def _generate_one(
        self,
        job: DerivativeJob,
        source: bytes,
        spec: DerivativeSpec,
    ) -> DerivativeOutcome:
        try:
            rendered = await asyncio.to_thread(render_derivative, source, spec, self.output_format)
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            return await self._fail(job, spec, MemoryErrorCode.DERIVATIVE_DECODE_FAILED, str(e))

        extension = self.output_format.lower()
        file = FileUpload(
            filename=f"{spec.asset_type.value}.{extension}",
            content_type=rendered.mime_type,
            data=rendered.data,
        )
        options = UploadOptions(
            folder=f"{self.settings.storage_folder}/{job.memory_id}/derivatives",
            metadata={"memory_id": str(job.memory_id), "asset_type": spec.asset_type.value},
        )

        try:
            result = await self.manager.upload(file, job.backend, options)
        except StorageError as e:
            return await self._fail(job, spec, MemoryErrorCode.DERIVATIVE_UPLOAD_FAILED, str(e))

        content_hash = file.compute_hash()
        try:
            async with self.session_factory() as db:
                asset = await self._get_variant(db, job.memory_id, spec.asset_type)
                if asset is None:
                    # Memory deleted while rendering
                    await self._discard(result.provider, result.key)
                    return DerivativeOutcome(
                        asset_type=spec.asset_type,
                        status=ProcessingStatus.FAILED,
                        error_code=MemoryErrorCode.RECORD_CREATION_FAILED,
                        error="Variant row no longer exists",
                    )
                previous = (asset.storage_backend, asset.storage_key)
                asset.transition_to(ProcessingStatus.COMPLETED)
                asset.url = result.url
                asset.storage_backend = result.provider
                asset.storage_key = result.key
                asset.bytes = result.size
                asset.width = rendered.width
                asset.height = rendered.height
                asset.mime_type = rendered.mime_type
                asset.content_hash = content_hash
                await db.flush()

                await StorageEdgeLedger(db).ensure_edge(
                    memory_id=job.memory_id,
                    memory_type=job.memory_type,
                    artifact=StorageArtifact.ASSET,
                    backend=result.provider,
                    location=result.key,
                    size_bytes=result.size,
                    content_hash=content_hash,
                )
                await db.commit()
        except (SQLAlchemyError, ValueError) as e:
            logger.exception(
                f"Orphaned derivative blob {result.provider.value}:{result.key} "
                f"for memory {job.memory_id}"
            )
            return await self._fail(job, spec, MemoryErrorCode.RECORD_CREATION_FAILED, str(e))

        # The replaced object belonged to this variant alone unless it is the original
        if previous not in ((job.backend, job.storage_key), (result.provider, result.key)):
            await self._discard(*previous)

        return DerivativeOutcome(
            asset_type=spec.asset_type,
            status=ProcessingStatus.COMPLETED,
            width=rendered.width,
            height=rendered.height,
            size=result.size,
        )

    async def _begin_processing(
        self,
        db: AsyncSession,
        job: DerivativeJob,
        asset_type: AssetType,
    ) -> None:
        """
        Upsert the variant row into ``processing``.

        Rows seeded as ``pending`` at upload move on from there. Missing rows
        (memories stored before seeding) are created pointing at the original;
        existing rows keep their last location.
        """
        insert = dialect_insert(db)
        stmt = insert(MemoryAsset).values(
            id=uuid.uuid4(),
            memory_id=job.memory_id,
            asset_type=asset_type,
            url=job.url,
            storage_backend=job.backend,
            storage_key=job.storage_key,
            bytes=job.size,
            mime_type=job.content_type,
            processing_status=ProcessingStatus.PROCESSING,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["memory_id", "asset_type"],
            set_={
                "processing_status": ProcessingStatus.PROCESSING,
                "processing_error": None,
                "updated_at": func.now(),
            },
        )
        await db.execute(stmt)

    async def _fail(
        self,
        job: DerivativeJob,
        spec: DerivativeSpec,
        code: MemoryErrorCode,
        detail: str,
    ) -> DerivativeOutcome:
        """Record a failed variant; the row is kept for audit and retry."""
        message = get_error_message(code, detail)
        logger.error(f"Derivative {spec.asset_type.value} failed for memory {job.memory_id}: {message}")

        try:
            async with self.session_factory() as db:
                asset = await self._get_variant(db, job.memory_id, spec.asset_type)
                if asset is not None and asset.can_transition_to(ProcessingStatus.FAILED):
                    asset.transition_to(ProcessingStatus.FAILED, error=message)
                    await db.commit()
        except SQLAlchemyError:
            logger.exception(f"Could not record derivative failure for memory {job.memory_id}")

        return DerivativeOutcome(
            asset_type=spec.asset_type,
            status=ProcessingStatus.FAILED,
            error_code=code,
            error=message,
        )

    async def _discard(self, backend: StorageBackend, key: str) -> None:
        try:
            await self.manager.delete(backend, key)
        except StorageError as e:
            logger.warning(f"Could not discard derivative blob {backend.value}:{key}: {e}")

    @staticmethod
    async def _get_variant(
        db: AsyncSession,
        memory_id: uuid.UUID,
        asset_type: AssetType,
    ) -> MemoryAsset | None:
        stmt = (
            select(MemoryAsset)
            .where(MemoryAsset.memory_id == memory_id, MemoryAsset.asset_type == asset_type)
            .execution_options(populate_existing=True)
        )
        return (await db.execute(stmt)).scalar_one_or_none()

    # ==========================================================================
    # Expiry
    # ==========================================================================

    async def expire_stale(self, now: datetime | None = None) -> int:
        """
        Fail variants stuck in pending/processing past the stale window.

        Completed and failed rows never expire; originals are never touched.

        Returns:
            Number of variants marked failed
        """
        cutoff = (now or datetime.now(UTC)) - timedelta(minutes=self.settings.derivative_stale_minutes)
        message = MemoryErrorCode.DERIVATIVE_EXPIRED.value

        async with self.session_factory() as db:
            stmt = select(MemoryAsset).where(
                MemoryAsset.asset_type != AssetType.ORIGINAL,
                MemoryAsset.processing_status.in_(
                    [ProcessingStatus.PENDING, ProcessingStatus.PROCESSING]
                ),
                MemoryAsset.updated_at < cutoff,
            )
            stale = (await db.execute(stmt)).scalars().all()
            for asset in stale:
                asset.transition_to(ProcessingStatus.FAILED, error=message)
            await db.commit()

        if stale:
            logger.info(f"Expired {len(stale)} stale derivative assets")
        return len(stale)
