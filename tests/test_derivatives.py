"""
Tests for the asset derivative pipeline.

Tests:
1. Resize math: longest edge capped, aspect kept, never upscaled
2. Encoding: WEBP output at the configured quality, EXIF orientation applied
3. Pipeline: display/thumb rows and edges created for image memories
4. Failures: recorded on the variant row only, original untouched
5. Regeneration upserts and removes replaced objects; retries skip completed variants
6. Stale variants expire
"""

from datetime import UTC, datetime, timedelta
from io import BytesIO

import pytest
from PIL import Image
from sqlalchemy import select, update

from apps.api.memories.derivatives import (
    DISPLAY,
    THUMB,
    DerivativePipeline,
    DerivativeSpec,
    compute_resize_dimensions,
    read_image_dimensions,
    render_derivative,
)
from apps.api.memories.error_codes import MemoryErrorCode
from db.models.memory import (
    AssetType,
    Memory,
    MemoryAsset,
    MemoryType,
    ProcessingStatus,
    StorageArtifact,
    StorageEdge,
)
from packages.shared.storage import StorageBackend
from tests.fakes import make_image_bytes, seed_original

# =============================================================================
# Resize Math
# =============================================================================


class TestResizeDimensions:
    @pytest.mark.parametrize(
        ("size", "max_size", "expected"),
        [
            ((6000, 4000), 2048, (2048, 1365)),
            ((6000, 4000), 512, (512, 341)),
            ((4000, 6000), 2048, (1365, 2048)),
            ((800, 600), 2048, (800, 600)),
            ((2048, 100), 2048, (2048, 100)),
            ((4096, 4096), 512, (512, 512)),
        ],
    )
    def test_fit_inside_square(self, size, max_size, expected):
        assert compute_resize_dimensions(*size, max_size) == expected

    def test_default_specs(self):
        assert (DISPLAY.max_size, DISPLAY.quality) == (2048, 0.85)
        assert (THUMB.max_size, THUMB.quality) == (512, 0.8)


# =============================================================================
# Encoding
# =============================================================================


class TestRenderDerivative:
    def test_webp_output(self):
        rendered = render_derivative(make_image_bytes(1024, 768), THUMB, "WEBP")

        assert (rendered.width, rendered.height) == (512, 384)
        assert rendered.mime_type == "image/webp"
        with Image.open(BytesIO(rendered.data)) as img:
            assert img.format == "WEBP"
            assert img.size == (512, 384)

    def test_small_image_is_not_upscaled(self):
        rendered = render_derivative(make_image_bytes(300, 200), DISPLAY, "WEBP")

        assert (rendered.width, rendered.height) == (300, 200)

    def test_exif_orientation_is_applied(self):
        data = make_image_bytes(300, 200, orientation=6)

        rendered = render_derivative(data, DISPLAY, "JPEG")

        assert read_image_dimensions(data) == (200, 300)
        assert (rendered.width, rendered.height) == (200, 300)
        assert rendered.mime_type == "image/jpeg"

    def test_png_with_alpha(self):
        img = Image.new("RGBA", (600, 300), (0, 0, 255, 128))
        output = BytesIO()
        img.save(output, format="PNG")

        rendered = render_derivative(output.getvalue(), DerivativeSpec(AssetType.THUMB, 300, 0.8))

        assert (rendered.width, rendered.height) == (300, 150)

    def test_undecodable_input_raises(self):
        with pytest.raises(OSError):
            render_derivative(b"not an image", DISPLAY)

    def test_read_dimensions_of_non_image(self):
        assert read_image_dimensions(b"%PDF-1.4") is None


# =============================================================================
# Pipeline
# =============================================================================


async def load_assets(session_factory, memory_id) -> dict[AssetType, MemoryAsset]:
    async with session_factory() as db:
        rows = (
            await db.execute(select(MemoryAsset).where(MemoryAsset.memory_id == memory_id))
        ).scalars().all()
        return {row.asset_type: row for row in rows}


@pytest.fixture
def pipeline(session_factory, manager, settings) -> DerivativePipeline:
    return DerivativePipeline(session_factory, manager, settings)


class TestPipeline:
    async def test_generates_display_and_thumb(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(3000, 2000))

        outcomes = await pipeline.generate(job)

        assert [o.status for o in outcomes] == [ProcessingStatus.COMPLETED] * 2
        assets = await load_assets(session_factory, job.memory_id)
        display, thumb = assets[AssetType.DISPLAY], assets[AssetType.THUMB]
        assert (display.width, display.height) == (2048, 1365)
        assert (thumb.width, thumb.height) == (512, 341)
        for variant in (display, thumb):
            assert variant.processing_status == ProcessingStatus.COMPLETED
            assert variant.mime_type == "image/webp"
            assert variant.storage_key in s3.objects
            assert variant.storage_key != job.storage_key
            assert variant.bytes == len(s3.objects[variant.storage_key])
            assert variant.content_hash is not None
        assert assets[AssetType.ORIGINAL].processing_status == ProcessingStatus.COMPLETED

    async def test_derivative_edges_are_recorded(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(1200, 800))

        await pipeline.generate(job)

        async with session_factory() as db:
            edges = (
                await db.execute(select(StorageEdge).where(StorageEdge.memory_id == job.memory_id))
            ).scalars().all()
            memory = await db.get(Memory, job.memory_id)
        assert [(e.artifact, e.backend) for e in edges] == [(StorageArtifact.ASSET, StorageBackend.S3)]
        assert memory.storage_count == 1

    async def test_non_image_memory_is_skipped(self, pipeline, session_factory, s3):
        job = await seed_original(
            session_factory, s3, b"%PDF-1.4 ...", MemoryType.DOCUMENT, "application/pdf"
        )

        outcomes = await pipeline.generate(job)

        assert outcomes == []
        assert set(await load_assets(session_factory, job.memory_id)) == {AssetType.ORIGINAL}

    async def test_deleted_memory_is_skipped(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(100, 100))
        async with session_factory() as db:
            await db.delete(await db.get(Memory, job.memory_id))
            await db.commit()

        assert await pipeline.generate(job) == []
        assert AssetType.DISPLAY not in await load_assets(session_factory, job.memory_id)

    async def test_decode_failure_marks_variants_failed(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, b"\xff\xd8\xff but not really a jpeg")

        outcomes = await pipeline.generate(job)

        assert {o.error_code for o in outcomes} == {MemoryErrorCode.DERIVATIVE_DECODE_FAILED}
        assert not any(o.retryable for o in outcomes)
        assets = await load_assets(session_factory, job.memory_id)
        for asset_type in (AssetType.DISPLAY, AssetType.THUMB):
            assert assets[asset_type].processing_status == ProcessingStatus.FAILED
            assert assets[asset_type].processing_error
        original = assets[AssetType.ORIGINAL]
        assert original.processing_status == ProcessingStatus.COMPLETED
        assert original.processing_error is None

    async def test_missing_source_is_retryable(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(100, 100))
        s3.objects.clear()

        outcomes = await pipeline.generate(job)

        assert {o.error_code for o in outcomes} == {MemoryErrorCode.DERIVATIVE_SOURCE_UNAVAILABLE}
        assert all(o.retryable for o in outcomes)

    async def test_upload_failure_is_retryable(self, pipeline, session_factory, s3, blob):
        job = await seed_original(session_factory, s3, make_image_bytes(100, 100))
        s3.always_fail = True
        blob.always_fail = True

        outcomes = await pipeline.generate(job)

        assert {o.error_code for o in outcomes} == {MemoryErrorCode.DERIVATIVE_UPLOAD_FAILED}
        assets = await load_assets(session_factory, job.memory_id)
        assert assets[AssetType.DISPLAY].processing_status == ProcessingStatus.FAILED

    async def test_regeneration_upserts(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(1000, 1000))

        await pipeline.generate(job)
        first = await load_assets(session_factory, job.memory_id)
        await pipeline.generate(job)
        second = await load_assets(session_factory, job.memory_id)

        assert len(second) == 3
        assert second[AssetType.THUMB].id == first[AssetType.THUMB].id
        assert second[AssetType.THUMB].processing_status == ProcessingStatus.COMPLETED

    async def test_regeneration_removes_replaced_objects(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(1000, 1000))

        await pipeline.generate(job)
        first = await load_assets(session_factory, job.memory_id)
        await pipeline.generate(job)
        second = await load_assets(session_factory, job.memory_id)

        assert set(s3.objects) == {asset.storage_key for asset in second.values()}
        assert sorted(s3.deleted) == sorted(
            first[asset_type].storage_key for asset_type in (AssetType.DISPLAY, AssetType.THUMB)
        )
        assert job.storage_key in s3.objects

    async def test_completed_variants_are_kept_without_regenerate(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(1000, 1000))
        await pipeline.generate(job)
        before = {t: a.storage_key for t, a in (await load_assets(session_factory, job.memory_id)).items()}
        uploads = s3.upload_calls

        outcomes = await pipeline.generate(job, regenerate=False)

        assert [o.status for o in outcomes] == [ProcessingStatus.COMPLETED] * 2
        assert [(o.width, o.height) for o in outcomes] == [(1000, 1000), (512, 512)]
        assert s3.upload_calls == uploads
        assert s3.deleted == []
        after = {t: a.storage_key for t, a in (await load_assets(session_factory, job.memory_id)).items()}
        assert after == before

    async def test_asset_edge_keeps_original_location(self, pipeline, session_factory, s3):
        data = make_image_bytes(1200, 800)
        job = await seed_original(session_factory, s3, data)

        await pipeline.generate(job)

        async with session_factory() as db:
            edge = (
                await db.execute(
                    select(StorageEdge).where(
                        StorageEdge.memory_id == job.memory_id,
                        StorageEdge.artifact == StorageArtifact.ASSET,
                    )
                )
            ).scalar_one()
        assert edge.location == job.storage_key
        assert edge.size_bytes == len(data)
        assert edge.present is True

    async def test_failed_variant_recovers_on_retry(self, pipeline, session_factory, s3):
        data = make_image_bytes(800, 600)
        job = await seed_original(session_factory, s3, data)
        s3.objects.clear()
        await pipeline.generate(job)

        s3.objects[job.storage_key] = data
        outcomes = await pipeline.generate(job)

        assert [o.status for o in outcomes] == [ProcessingStatus.COMPLETED] * 2
        assets = await load_assets(session_factory, job.memory_id)
        assert assets[AssetType.DISPLAY].processing_error is None


# =============================================================================
# Expiry
# =============================================================================


class TestExpiry:
    async def test_stale_processing_variants_expire(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(100, 100))
        now = datetime.now(UTC)

        async with session_factory() as db:
            for asset_type, status in (
                (AssetType.DISPLAY, ProcessingStatus.PROCESSING),
                (AssetType.THUMB, ProcessingStatus.COMPLETED),
            ):
                db.add(
                    MemoryAsset(
                        memory_id=job.memory_id,
                        asset_type=asset_type,
                        url=job.url,
                        storage_backend=job.backend,
                        storage_key=job.storage_key,
                        bytes=job.size,
                        mime_type=job.content_type,
                        processing_status=status,
                    )
                )
            await db.flush()
            await db.execute(
                update(MemoryAsset)
                .where(MemoryAsset.memory_id == job.memory_id)
                .values(updated_at=now - timedelta(hours=2))
            )
            await db.commit()

        expired = await pipeline.expire_stale(now=now)

        assert expired == 1
        assets = await load_assets(session_factory, job.memory_id)
        assert assets[AssetType.DISPLAY].processing_status == ProcessingStatus.FAILED
        assert assets[AssetType.DISPLAY].processing_error == "expired"
        assert assets[AssetType.THUMB].processing_status == ProcessingStatus.COMPLETED
        assert assets[AssetType.ORIGINAL].processing_status == ProcessingStatus.COMPLETED

    async def test_fresh_variants_do_not_expire(self, pipeline, session_factory, s3):
        job = await seed_original(session_factory, s3, make_image_bytes(100, 100))
        async with session_factory() as db:
            db.add(
                MemoryAsset(
                    memory_id=job.memory_id,
                    asset_type=AssetType.DISPLAY,
                    url=job.url,
                    storage_backend=job.backend,
                    storage_key=job.storage_key,
                    bytes=job.size,
                    mime_type=job.content_type,
                    processing_status=ProcessingStatus.PENDING,
                )
            )
            await db.commit()

        assert await pipeline.expire_stale() == 0
