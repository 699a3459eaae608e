"""
Storage providers and the storage manager for memory artifacts.

Provides abstract interface and implementations for:
- S3/MinIO object storage
- Managed blob storage
- Decentralized backends (canister, permaweb, IPFS) via injected clients
"""

from packages.shared.storage.base import (
    FileUpload,
    StorageBackend,
    StorageProvider,
    UploadOptions,
    UploadResult,
)
from packages.shared.storage.errors import (
    AggregateUploadError,
    DeleteError,
    DeleteErrorKind,
    DeleteFailed,
    ImmutableBackendViolation,
    ProviderUnavailable,
    StorageError,
    TransientUploadFailure,
    UploadError,
    UploadTimeout,
)
from packages.shared.storage.factory import build_storage_manager
from packages.shared.storage.manager import (
    ReplicationOutcome,
    StorageManager,
    StorageManagerConfig,
)

__all__ = [
    "AggregateUploadError",
    "DeleteError",
    "DeleteErrorKind",
    "DeleteFailed",
    "FileUpload",
    "ImmutableBackendViolation",
    "ProviderUnavailable",
    "ReplicationOutcome",
    "StorageBackend",
    "StorageError",
    "StorageManager",
    "StorageManagerConfig",
    "StorageProvider",
    "TransientUploadFailure",
    "UploadError",
    "UploadOptions",
    "UploadResult",
    "UploadTimeout",
    "build_storage_manager",
]
