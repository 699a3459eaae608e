"""Abstract base class for memory storage providers."""

import hashlib
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from packages.shared.storage.errors import ProviderUnavailable


class StorageBackend(str, Enum):
    """Closed set of storage targets a memory artifact can live on."""

    S3 = "s3"
    VERCEL_BLOB = "vercel_blob"
    ICP = "icp"
    ARWEAVE = "arweave"
    IPFS = "ipfs"
    NEON = "neon"  # Relational database row (metadata only)


@dataclass
class FileUpload:
    """A file held in memory, ready to be sent to a provider."""

    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    def compute_hash(self) -> str:
        """Return the hex-encoded SHA-256 of the file contents."""
        return hashlib.sha256(self.data).hexdigest()


@dataclass
class UploadOptions:
    """Per-upload options passed through to providers."""

    folder: str = "memories"
    content_type: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    public: bool = True


@dataclass
class UploadResult:
    """Information about an object stored on one backend."""

    url: str
    key: str
    size: int
    mime_type: str
    provider: StorageBackend
    metadata: dict[str, Any] = field(default_factory=dict)


def build_object_key(folder: str, filename: str) -> str:
    """
    Generate a unique object key for a file.

    Returns:
        Key in format: folder/YYYY/MM/DD/<uuid>_<filename>
    """
    date_path = datetime.now(UTC).strftime("%Y/%m/%d")

    # Sanitize filename
    safe_filename = "".join(c for c in filename if c.isalnum() or c in "._-")
    if not safe_filename:
        safe_filename = "file"
    unique_name = f"{uuid.uuid4().hex[:12]}_{safe_filename}"

    return f"{folder.strip('/')}/{date_path}/{unique_name}"


class StorageProvider(ABC):
    """
    Uniform capability wrapper around one physical storage backend.

    Providers perform network I/O only; they never touch the database.
    ``get_url`` and ``is_available`` must not perform I/O.
    """

    #: Write-once backends refuse deletes with ImmutableBackendViolation.
    immutable: bool = False

    @property
    @abstractmethod
    def name(self) -> StorageBackend:
        """Return the backend this provider writes to."""
        pass

    @abstractmethod
    async def upload(self, file: FileUpload, options: UploadOptions) -> UploadResult:
        """
        Store a file and return its location.

        Args:
            file: File to store
            options: Folder, content type override and metadata

        Returns:
            UploadResult tagged with this provider's name

        Raises:
            ProviderUnavailable: Provider is not configured
            TransientUploadFailure: The backend rejected or dropped the request
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        """
        Delete an object by key.

        Raises:
            DeleteFailed: The backend could not delete the object
            ImmutableBackendViolation: The backend is write-once
        """
        pass

    @abstractmethod
    def get_url(self, key: str) -> str:
        """Return the public URL for a key."""
        pass

    @abstractmethod
    def is_available(self) -> bool:
        """Return True when the provider has the configuration it needs."""
        pass

    async def download(self, key: str) -> bytes:
        """Fetch object contents. Providers that cannot read back raise ProviderUnavailable."""
        raise ProviderUnavailable(
            "Provider does not support reading objects back",
            provider=self.name.value,
        )

    def _require_available(self) -> None:
        if not self.is_available():
            raise ProviderUnavailable(provider=self.name.value)
