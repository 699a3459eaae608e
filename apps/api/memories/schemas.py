"""Pydantic schemas for memory API responses."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from apps.api.memories.error_codes import MemoryErrorCode
from apps.api.memories.ledger import CleanupReport
from apps.api.memories.service import (
    BatchUploadResult,
    MemoryDeletionResult,
    MemoryWithAssets,
)
from db.models.memory import (
    AssetType,
    MemoryType,
    ProcessingStatus,
    StorageArtifact,
    SyncState,
    Visibility,
)
from packages.shared.storage.base import StorageBackend


# =============================================================================
# Memory Schemas
# =============================================================================


class MemoryAssetResponse(BaseModel):
    """One stored representation of a memory."""

    id: UUID
    asset_type: AssetType
    url: str
    storage_backend: StorageBackend
    storage_key: str
    bytes: int
    width: int | None = None
    height: int | None = None
    mime_type: str
    content_hash: str | None = None
    processing_status: ProcessingStatus
    processing_error: str | None = None

    model_config = ConfigDict(from_attributes=True)


class MemoryResponse(BaseModel):
    """Memory with its assets."""

    id: UUID
    owner_id: str
    type: MemoryType
    title: str | None = None
    visibility: Visibility
    storage_locations: list[str] = Field(
        default_factory=list,
        description="Backends currently holding at least one present artifact",
    )
    storage_count: int = Field(..., description="Number of present storage edges")
    storage_duration: int | None = Field(
        default=None,
        description="Retention horizon in days (null = permanent)",
    )
    retention_expires_at: datetime | None = Field(
        default=None,
        description="End of the retention horizon (null = permanent)",
    )
    created_at: datetime
    assets: list[MemoryAssetResponse] = Field(default_factory=list)

    model_config = ConfigDict(
        from_attributes=True,
        json_schema_extra={
            "example": {
                "id": "550e8400-e29b-41d4-a716-446655440000",
                "owner_id": "user_123",
                "type": "image",
                "title": "beach.jpg",
                "visibility": "private",
                "storage_locations": ["neon", "s3"],
                "storage_count": 2,
                "storage_duration": None,
                "retention_expires_at": None,
                "created_at": "2026-01-22T10:00:00Z",
                "assets": [],
            }
        },
    )

    @classmethod
    def from_result(cls, result: MemoryWithAssets) -> "MemoryResponse":
        memory = result.memory
        return cls(
            id=memory.id,
            owner_id=memory.owner_id,
            type=memory.type,
            title=memory.title,
            visibility=memory.visibility,
            storage_locations=list(memory.storage_locations or []),
            storage_count=memory.storage_count,
            storage_duration=memory.storage_duration,
            retention_expires_at=memory.retention_expires_at,
            created_at=memory.created_at,
            assets=[MemoryAssetResponse.model_validate(a) for a in result.assets],
        )


# =============================================================================
# Folder Upload Schemas
# =============================================================================


class BatchItemResponse(BaseModel):
    index: int
    filename: str
    success: bool
    size_bytes: int
    elapsed_seconds: float
    memory_id: UUID | None = None
    backends: list[StorageBackend] = Field(default_factory=list)
    error_code: MemoryErrorCode | None = None
    error: str | None = None


class FolderUploadResponse(BaseModel):
    """Per-file results and aggregate statistics for a folder upload."""

    total_files: int
    successful_uploads: int
    failed_uploads: int
    partial_failure: bool
    total_time: float = Field(..., description="Seconds")
    average_time: float = Field(..., description="Seconds per file")
    total_size_mb: float
    upload_speed_mbps: float = Field(..., description="Megabytes per second")
    items: list[BatchItemResponse]

    @classmethod
    def from_result(cls, result: BatchUploadResult) -> "FolderUploadResponse":
        return cls(
            total_files=result.total_files,
            successful_uploads=result.successful_uploads,
            failed_uploads=result.failed_uploads,
            partial_failure=result.partial_failure,
            total_time=round(result.total_time, 3),
            average_time=round(result.average_time, 3),
            total_size_mb=round(result.total_size_mb, 2),
            upload_speed_mbps=round(result.upload_speed_mbps, 2),
            items=[
                BatchItemResponse(
                    index=item.index,
                    filename=item.filename,
                    success=item.success,
                    size_bytes=item.size_bytes,
                    elapsed_seconds=round(item.elapsed_seconds, 3),
                    memory_id=item.memory_id,
                    backends=item.backends,
                    error_code=item.error_code,
                    error=item.error,
                )
                for item in sorted(result.items, key=lambda i: i.index)
            ],
        )


# =============================================================================
# Deletion Schemas
# =============================================================================


class CleanupFailureResponse(BaseModel):
    backend: StorageBackend
    key: str
    kind: str
    message: str


class CleanupObjectResponse(BaseModel):
    backend: StorageBackend
    key: str


class PhysicalCleanupResponse(BaseModel):
    succeeded: list[CleanupObjectResponse]
    failed: list[CleanupFailureResponse]


class MemoryDeleteResponse(BaseModel):
    """Logical delete always completes; physical cleanup is reported per object."""

    memory_id: UUID
    logical_delete_ok: bool
    deleted_edge_count: int
    deleted_backend_object_count: int
    errors: list[str]
    physical_cleanup: PhysicalCleanupResponse

    @classmethod
    def from_result(cls, result: MemoryDeletionResult) -> "MemoryDeleteResponse":
        report: CleanupReport = result.cleanup
        return cls(
            memory_id=result.memory_id,
            logical_delete_ok=result.logical_delete_ok,
            deleted_edge_count=report.deleted_edge_count,
            deleted_backend_object_count=report.deleted_backend_object_count,
            errors=report.errors,
            physical_cleanup=PhysicalCleanupResponse(
                succeeded=[CleanupObjectResponse(backend=t.backend, key=t.key) for t in report.succeeded],
                failed=[
                    CleanupFailureResponse(
                        backend=f.backend, key=f.key, kind=f.kind, message=f.message
                    )
                    for f in report.failed
                ],
            ),
        )


# =============================================================================
# Ledger Schemas
# =============================================================================


class StorageEdgeResponse(BaseModel):
    id: UUID
    memory_id: UUID
    memory_type: MemoryType
    artifact: StorageArtifact
    backend: StorageBackend
    present: bool
    location: str | None = None
    size_bytes: int | None = None
    content_hash: str | None = None
    sync_state: SyncState
    sync_error: str | None = None
    last_synced_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True)


class BackendPresence(BaseModel):
    metadata: bool
    asset: bool


class PresenceResponse(BaseModel):
    memory_id: UUID
    overall_status: str = Field(
        ...,
        description="none, web2_only, decentralized_only or hybrid",
    )
    edge_count: int
    present_count: int
    backends: dict[str, BackendPresence]
