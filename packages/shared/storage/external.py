"""
Providers for decentralized backends.

The canister, permaweb and content-addressed protocols are reached through
an injected ``ExternalStorageClient``. Without a client the provider reports
itself unavailable and the storage manager falls back to other backends.
"""

import logging
from typing import Protocol

from packages.shared.storage.base import (
    FileUpload,
    StorageBackend,
    StorageProvider,
    UploadOptions,
    UploadResult,
)
from packages.shared.storage.errors import (
    DeleteFailed,
    ImmutableBackendViolation,
    StorageError,
    TransientUploadFailure,
)

logger = logging.getLogger(__name__)


class ExternalStorageClient(Protocol):
    """Protocol client for a decentralized backend."""

    async def put(self, data: bytes, content_type: str, metadata: dict[str, str]) -> str:
        """Store bytes and return the backend identifier (canister path, tx id, CID)."""
        ...

    async def remove(self, identifier: str) -> None:
        """Remove an object by identifier."""
        ...


class ExternalStorageProvider(StorageProvider):
    """Base for providers that delegate to an ExternalStorageClient."""

    backend: StorageBackend

    def __init__(self, gateway_url: str | None, client: ExternalStorageClient | None = None):
        self.gateway_url = gateway_url.rstrip("/") if gateway_url else None
        self.client = client

    @property
    def name(self) -> StorageBackend:
        return self.backend

    def is_available(self) -> bool:
        return self.client is not None and bool(self.gateway_url)

    def get_url(self, key: str) -> str:
        return f"{self.gateway_url}/{key}"

    async def upload(self, file: FileUpload, options: UploadOptions) -> UploadResult:
        self._require_available()

        content_type = options.content_type or file.content_type
        try:
            identifier = await self.client.put(file.data, content_type, dict(options.metadata))
        except StorageError:
            raise
        except Exception as e:
            raise TransientUploadFailure(
                f"{self.backend.value} upload failed: {e}",
                provider=self.backend.value,
                cause=e,
            ) from e

        return UploadResult(
            url=self.get_url(identifier),
            key=identifier,
            size=file.size,
            mime_type=content_type,
            provider=self.backend,
            metadata={"sha256": file.compute_hash()},
        )

    async def delete(self, key: str) -> None:
        self._require_available()
        try:
            await self.client.remove(key)
        except StorageError:
            raise
        except Exception as e:
            raise DeleteFailed(
                f"{self.backend.value} delete failed: {e}",
                provider=self.backend.value,
                cause=e,
            ) from e


class CanisterStorageProvider(ExternalStorageProvider):
    """Decentralized canister storage."""

    backend = StorageBackend.ICP

    def __init__(
        self,
        canister_id: str | None,
        network_url: str | None,
        client: ExternalStorageClient | None = None,
    ):
        self.canister_id = canister_id
        gateway = f"{network_url.rstrip('/')}/{canister_id}" if canister_id and network_url else None
        super().__init__(gateway, client)


class ArweaveStorageProvider(ExternalStorageProvider):
    """Write-once permaweb storage. Deletes always fail with ImmutableBackendViolation."""

    backend = StorageBackend.ARWEAVE
    immutable = True

    async def delete(self, key: str) -> None:
        raise ImmutableBackendViolation(
            f"Arweave transaction {key} is permanent and cannot be deleted",
            provider=self.backend.value,
        )


class IPFSStorageProvider(ExternalStorageProvider):
    """Content-addressed storage; delete unpins the CID."""

    backend = StorageBackend.IPFS

    def get_url(self, key: str) -> str:
        return f"{self.gateway_url}/ipfs/{key}"
