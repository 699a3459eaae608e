"""
Memory API endpoints.

Endpoints:
- POST /memories/upload/file: Upload one file as a new memory
- POST /memories/upload/folder: Upload many files with per-file results
- GET /memories/{id}: Memory with its assets
- GET /memories/{id}/presence: Where the memory's artifacts are stored
- DELETE /memories/{id}: Delete with best-effort physical cleanup
- GET /storage-edges: Ledger rows by sync state
- GET /storage-edges/stuck: Edges stuck in migrating
"""

import uuid
from datetime import UTC, datetime, timedelta
from typing import Annotated

from fastapi import (
    APIRouter,
    Depends,
    File,
    Form,
    Query,
    UploadFile as FastAPIUploadFile,
    status,
)
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.config import Settings, get_settings
from apps.api.dependencies import get_db, get_owner_id, get_upload_service
from apps.api.memories.error_codes import (
    MemoryErrorCode,
    classify_storage_error,
    get_error_message,
)
from apps.api.memories.ledger import StorageEdgeLedger
from apps.api.memories.preferences import StoragePreference
from apps.api.memories.schemas import (
    FolderUploadResponse,
    MemoryDeleteResponse,
    MemoryResponse,
    PresenceResponse,
    StorageEdgeResponse,
)
from apps.api.memories.service import (
    MemoryNotFoundError,
    MemoryUploadService,
    RecordCreationError,
)
from apps.api.memories.validation import ValidationFailure
from db.models.memory import SyncState
from packages.shared.exceptions import (
    DatabaseException,
    NotFoundError,
    StorageFailedError,
    ValidationError,
)
from packages.shared.storage import FileUpload, StorageBackend, StorageError

router = APIRouter()
edges_router = APIRouter()

# HTTP status per validation code; anything else is a plain 400
VALIDATION_STATUS: dict[MemoryErrorCode, int] = {
    MemoryErrorCode.FILE_TOO_LARGE: status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
    MemoryErrorCode.UNSUPPORTED_MIME_TYPE: status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
}


# =============================================================================
# Helper Functions
# =============================================================================


async def read_upload(upload: FastAPIUploadFile) -> FileUpload:
    """Read a multipart part fully into memory."""
    data = await upload.read()
    return FileUpload(
        filename=upload.filename or "upload",
        content_type=upload.content_type or "application/octet-stream",
        data=data,
    )


def to_validation_error(exc: ValidationFailure) -> ValidationError:
    return ValidationError(
        exc.message,
        code=exc.code.value,
        status_code=VALIDATION_STATUS.get(exc.code, status.HTTP_400_BAD_REQUEST),
    )


def to_storage_error(exc: StorageError) -> StorageFailedError:
    code = classify_storage_error(exc)
    return StorageFailedError(
        get_error_message(code, str(exc)),
        code=code.value,
        provider=exc.provider,
    )


# =============================================================================
# Upload
# =============================================================================


@router.post(
    "/upload/file",
    response_model=MemoryResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload a single file",
    description="Validate, store and record one file. Derivatives are generated in the background.",
)
async def upload_file(
    service: Annotated[MemoryUploadService, Depends(get_upload_service)],
    owner_id: Annotated[str, Depends(get_owner_id)],
    file: Annotated[FastAPIUploadFile, File(description="File to upload")],
    preference: Annotated[
        StoragePreference | None, Form(description="neon, icp or dual (default from settings)")
    ] = None,
    title: Annotated[str | None, Form(description="Memory title (defaults to filename)")] = None,
) -> MemoryResponse:
    upload = await read_upload(file)
    try:
        created = await service.upload_file(upload, owner_id, preference, title)
    except ValidationFailure as e:
        raise to_validation_error(e)
    except StorageError as e:
        raise to_storage_error(e)
    except RecordCreationError as e:
        raise DatabaseException(str(e), detail={"code": e.code.value})
    return MemoryResponse.from_result(created)


@router.post(
    "/upload/folder",
    response_model=FolderUploadResponse,
    summary="Upload a folder of files",
    description=(
        "Upload many files with bounded concurrency. Individual failures are "
        "reported per file and never abort the batch."
    ),
)
async def upload_folder(
    service: Annotated[MemoryUploadService, Depends(get_upload_service)],
    owner_id: Annotated[str, Depends(get_owner_id)],
    files: Annotated[list[FastAPIUploadFile], File(description="Files to upload")],
    preference: Annotated[
        StoragePreference | None, Form(description="neon, icp or dual (default from settings)")
    ] = None,
) -> FolderUploadResponse:
    uploads = [await read_upload(f) for f in files]
    try:
        result = await service.upload_batch(uploads, owner_id, preference)
    except ValidationFailure as e:
        raise to_validation_error(e)
    return FolderUploadResponse.from_result(result)


# =============================================================================
# Read / Delete
# =============================================================================


@router.get("/{memory_id}", response_model=MemoryResponse, summary="Get a memory")
async def get_memory(
    memory_id: uuid.UUID,
    service: Annotated[MemoryUploadService, Depends(get_upload_service)],
    owner_id: Annotated[str, Depends(get_owner_id)],
) -> MemoryResponse:
    try:
        found = await service.get_memory(memory_id, owner_id)
    except MemoryNotFoundError:
        raise NotFoundError("Memory", str(memory_id))
    return MemoryResponse.from_result(found)


@router.get(
    "/{memory_id}/presence",
    response_model=PresenceResponse,
    summary="Storage presence for a memory",
)
async def get_presence(
    memory_id: uuid.UUID,
    service: Annotated[MemoryUploadService, Depends(get_upload_service)],
    owner_id: Annotated[str, Depends(get_owner_id)],
) -> PresenceResponse:
    try:
        summary = await service.get_presence(memory_id, owner_id)
    except MemoryNotFoundError:
        raise NotFoundError("Memory", str(memory_id))
    return PresenceResponse.model_validate(summary)


@router.delete(
    "/{memory_id}",
    response_model=MemoryDeleteResponse,
    summary="Delete a memory",
    description=(
        "The memory, its assets and its ledger rows are always removed. Backend "
        "objects that could not be deleted are listed under physical_cleanup.failed."
    ),
)
async def delete_memory(
    memory_id: uuid.UUID,
    service: Annotated[MemoryUploadService, Depends(get_upload_service)],
    owner_id: Annotated[str, Depends(get_owner_id)],
) -> MemoryDeleteResponse:
    try:
        result = await service.delete_memory(memory_id, owner_id)
    except MemoryNotFoundError:
        raise NotFoundError("Memory", str(memory_id))
    return MemoryDeleteResponse.from_result(result)


# =============================================================================
# Storage Edges
# =============================================================================


@edges_router.get(
    "",
    response_model=list[StorageEdgeResponse],
    summary="List storage edges by sync state",
)
async def list_edges(
    db: Annotated[AsyncSession, Depends(get_db)],
    state: Annotated[SyncState, Query(description="Sync state to filter on")],
    backend: Annotated[StorageBackend | None, Query(description="Restrict to one backend")] = None,
    limit: Annotated[int, Query(ge=1, le=1000)] = 100,
) -> list[StorageEdgeResponse]:
    edges = await StorageEdgeLedger(db).query_by_state(state, backend=backend, limit=limit)
    return [StorageEdgeResponse.model_validate(e) for e in edges]


@edges_router.get(
    "/stuck",
    response_model=list[StorageEdgeResponse],
    summary="List edges stuck in migrating",
)
async def list_stuck_edges(
    db: Annotated[AsyncSession, Depends(get_db)],
    settings: Annotated[Settings, Depends(get_settings)],
    older_than_minutes: Annotated[
        int | None, Query(ge=1, description="Defaults to the configured threshold")
    ] = None,
) -> list[StorageEdgeResponse]:
    minutes = older_than_minutes or settings.sync_stuck_minutes
    edges = await StorageEdgeLedger(db).find_stuck(
        timedelta(minutes=minutes), now=datetime.now(UTC)
    )
    return [StorageEdgeResponse.model_validate(e) for e in edges]
