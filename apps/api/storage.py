"""
Storage interface for the API layer.

Thin functions over the storage manager and the edge ledger, for callers
that do not need the full upload workflow. The manager is always passed in;
there is no process-wide instance here.

Usage:
    from apps.api.storage import upload_file, delete_file

    result = await upload_file(manager, file, StorageBackend.S3)
    await delete_file(manager, result.provider, result.key)
"""

import uuid
from collections.abc import Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.memories.ledger import CleanupReport, StorageEdgeLedger
from apps.api.memories.scheduling import enqueue_derivative_generation
from db.models.memory import MemoryType, StorageArtifact, StorageEdge
from packages.shared.storage import (
    FileUpload,
    StorageBackend,
    StorageManager,
    UploadOptions,
    UploadResult,
)

__all__ = [
    "cleanup_storage_edges_for_memory",
    "create_storage_edge",
    "delete_file",
    "enqueue_derivative_generation",
    "upload_file",
]


# =============================================================================
# Convenience Functions
# =============================================================================


async def upload_file(
    manager: StorageManager,
    file: FileUpload,
    backends: StorageBackend | str | Sequence[StorageBackend] | None = None,
    options: UploadOptions | None = None,
    timeout: float | None = None,
) -> UploadResult | list[UploadResult]:
    """
    Upload a file to one backend (with fallback) or several (replicated).

    Returns:
        UploadResult for one backend, list of UploadResult for several

    Raises:
        UploadError: Retries and fallbacks exhausted
        AggregateUploadError: Every replicated backend failed
    """
    return await manager.upload(file, backends, options, timeout)


async def delete_file(
    manager: StorageManager,
    backend: StorageBackend | str,
    key: str,
) -> None:
    """
    Delete one object.

    Raises:
        DeleteError: Tagged IMMUTABLE or TRANSIENT
    """
    await manager.delete(backend, key)


async def create_storage_edge(
    db: AsyncSession,
    memory_id: uuid.UUID,
    memory_type: MemoryType,
    artifact: StorageArtifact,
    backend: StorageBackend,
    location: str | None = None,
    size_bytes: int | None = None,
    content_hash: str | None = None,
) -> StorageEdge:
    """Upsert a presence edge (caller commits)."""
    return await StorageEdgeLedger(db).create_edge(
        memory_id=memory_id,
        memory_type=memory_type,
        artifact=artifact,
        backend=backend,
        location=location,
        size_bytes=size_bytes,
        content_hash=content_hash,
    )


async def cleanup_storage_edges_for_memory(
    db: AsyncSession,
    memory_id: uuid.UUID,
    memory_type: MemoryType,
    manager: StorageManager,
) -> CleanupReport:
    """
    Delete a memory's backend objects, then its assets and edges (caller commits).

    Returns:
        CleanupReport (deleted_edge_count, deleted_backend_object_count, errors)
    """
    return await StorageEdgeLedger(db).cleanup_memory(memory_id, memory_type, manager)
