"""Managed blob store provider (Vercel Blob HTTP API)."""

import logging

import httpx

from packages.shared.storage.base import (
    FileUpload,
    StorageBackend,
    StorageProvider,
    UploadOptions,
    UploadResult,
    build_object_key,
)
from packages.shared.storage.errors import DeleteFailed, StorageError, TransientUploadFailure

logger = logging.getLogger(__name__)

DEFAULT_BLOB_API_URL = "https://blob.vercel-storage.com"
BLOB_API_VERSION = "7"


class BlobStorageProvider(StorageProvider):
    """
    Managed blob storage over HTTP.

    Objects are written with ``PUT /<pathname>`` and removed with
    ``POST /delete``. The store returns the public URL, which is what
    callers persist as the object key for later deletes.
    """

    def __init__(
        self,
        token: str | None,
        api_url: str = DEFAULT_BLOB_API_URL,
        public_base_url: str | None = None,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize blob storage provider.

        Args:
            token: Read/write token (None disables the provider)
            api_url: Blob API base URL
            public_base_url: Public store URL used by get_url for bare pathnames
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests)
        """
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def name(self) -> StorageBackend:
        return StorageBackend.VERCEL_BLOB

    def is_available(self) -> bool:
        return bool(self.token)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_url,
                timeout=httpx.Timeout(self.timeout),
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "x-api-version": BLOB_API_VERSION,
                },
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def get_url(self, key: str) -> str:
        if key.startswith(("http://", "https://")) or not self.public_base_url:
            return key
        return f"{self.public_base_url}/{key}"

    async def upload(self, file: FileUpload, options: UploadOptions) -> UploadResult:
        self._require_available()

        content_type = options.content_type or file.content_type
        pathname = build_object_key(options.folder, file.filename)
        client = await self._get_client()

        try:
            response = await client.put(
                f"/{pathname}",
                content=file.data,
                headers={
                    "x-content-type": content_type,
                    "x-add-random-suffix": "0",
                },
            )
        except httpx.RequestError as e:
            raise TransientUploadFailure(
                f"Blob upload request failed: {e}",
                provider=self.name.value,
                cause=e,
            ) from e

        if not response.is_success:
            raise TransientUploadFailure(
                f"Blob upload rejected: {response.text[:200]}",
                provider=self.name.value,
                status_code=response.status_code,
            )

        body = response.json()
        url = body.get("url") or self.get_url(pathname)
        return UploadResult(
            url=url,
            key=url,
            size=file.size,
            mime_type=body.get("contentType", content_type),
            provider=self.name,
            metadata={"pathname": body.get("pathname", pathname)},
        )

    async def delete(self, key: str) -> None:
        client = await self._get_client()
        try:
            response = await client.post("/delete", json={"urls": [self.get_url(key)]})
        except httpx.RequestError as e:
            raise DeleteFailed(
                f"Blob delete request failed: {e}",
                provider=self.name.value,
                cause=e,
            ) from e

        if not response.is_success:
            raise DeleteFailed(
                f"Blob delete rejected (HTTP {response.status_code})",
                provider=self.name.value,
            )

    async def download(self, key: str) -> bytes:
        client = await self._get_client()
        try:
            response = await client.get(self.get_url(key))
        except httpx.RequestError as e:
            raise StorageError(f"Blob download failed: {e}", provider=self.name.value, cause=e) from e

        if response.status_code == 404:
            raise StorageError(f"Object not found: {key}", provider=self.name.value, code="not_found")
        if not response.is_success:
            raise StorageError(
                f"Blob download rejected (HTTP {response.status_code})",
                provider=self.name.value,
            )
        return response.content
