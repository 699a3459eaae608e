"""
Unit tests for storage providers.

Uses httpx.MockTransport for the blob store and in-memory protocol clients
for decentralized backends - does not hit real services.
"""

import json

import httpx
import pytest

from packages.shared.storage import (
    DeleteError,
    DeleteErrorKind,
    FileUpload,
    ImmutableBackendViolation,
    ProviderUnavailable,
    StorageBackend,
    StorageError,
    StorageManager,
    TransientUploadFailure,
    UploadOptions,
    build_storage_manager,
)
from packages.shared.storage.blob import BlobStorageProvider
from packages.shared.storage.external import (
    ArweaveStorageProvider,
    CanisterStorageProvider,
    IPFSStorageProvider,
)
from packages.shared.storage.s3 import S3StorageProvider


@pytest.fixture
def file() -> FileUpload:
    return FileUpload(filename="beach photo.jpg", content_type="image/jpeg", data=b"\xff\xd8\xff fake")


class MemoryClient:
    """ExternalStorageClient keeping objects in a dict."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.objects: dict[str, bytes] = {}

    async def put(self, data: bytes, content_type: str, metadata: dict[str, str]) -> str:
        if self.fail:
            raise ConnectionError("gateway unreachable")
        identifier = f"id{len(self.objects)}"
        self.objects[identifier] = data
        return identifier

    async def remove(self, identifier: str) -> None:
        self.objects.pop(identifier, None)


# =============================================================================
# Blob Provider Tests
# =============================================================================


class TestBlobProvider:
    async def test_upload_puts_pathname_and_returns_url_as_key(self, file):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            pathname = request.url.path.lstrip("/")
            return httpx.Response(
                200,
                json={
                    "url": f"https://store.public.blob.test/{pathname}",
                    "pathname": pathname,
                    "contentType": "image/jpeg",
                },
            )

        provider = BlobStorageProvider(token="tok", transport=httpx.MockTransport(handler))
        result = await provider.upload(file, UploadOptions(folder="memories"))
        await provider.close()

        request = requests[0]
        assert request.method == "PUT"
        assert request.url.path.startswith("/memories/")
        assert request.url.path.endswith("_beachphoto.jpg")
        assert request.headers["authorization"] == "Bearer tok"
        assert request.headers["x-content-type"] == "image/jpeg"
        assert request.content == file.data

        assert result.provider == StorageBackend.VERCEL_BLOB
        assert result.key == result.url
        assert result.url.startswith("https://store.public.blob.test/memories/")
        assert result.size == file.size

    async def test_server_error_is_transient(self, file):
        provider = BlobStorageProvider(
            token="tok",
            transport=httpx.MockTransport(lambda request: httpx.Response(503, text="busy")),
        )

        with pytest.raises(TransientUploadFailure) as exc_info:
            await provider.upload(file, UploadOptions())

        assert exc_info.value.status_code == 503
        assert exc_info.value.provider == "vercel_blob"

    async def test_network_error_is_transient(self, file):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        provider = BlobStorageProvider(token="tok", transport=httpx.MockTransport(handler))

        with pytest.raises(TransientUploadFailure):
            await provider.upload(file, UploadOptions())

    async def test_delete_posts_url(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={})

        provider = BlobStorageProvider(token="tok", transport=httpx.MockTransport(handler))
        await provider.delete("https://store.public.blob.test/memories/a.jpg")

        assert bodies == [{"urls": ["https://store.public.blob.test/memories/a.jpg"]}]

    async def test_download_missing_object(self):
        provider = BlobStorageProvider(
            token="tok",
            transport=httpx.MockTransport(lambda request: httpx.Response(404)),
        )

        with pytest.raises(StorageError, match="Object not found"):
            await provider.download("https://store.public.blob.test/missing.jpg")

    async def test_without_token_is_unavailable(self, file):
        provider = BlobStorageProvider(token=None)

        assert not provider.is_available()
        with pytest.raises(ProviderUnavailable):
            await provider.upload(file, UploadOptions())


# =============================================================================
# S3 Provider Tests
# =============================================================================


class TestS3Provider:
    def test_unconfigured_bucket_is_unavailable(self):
        provider = S3StorageProvider(bucket="")

        assert not provider.is_available()

    def test_url_styles(self):
        aws = S3StorageProvider(bucket="vault", region="eu-west-1")
        minio = S3StorageProvider(bucket="vault", endpoint_url="http://localhost:9000/")
        public = S3StorageProvider(bucket="vault", public_base_url="https://cdn.test/")

        assert aws.get_url("a/b.jpg") == "https://vault.s3.eu-west-1.amazonaws.com/a/b.jpg"
        assert minio.get_url("a/b.jpg") == "http://localhost:9000/vault/a/b.jpg"
        assert public.get_url("a/b.jpg") == "https://cdn.test/a/b.jpg"


# =============================================================================
# Decentralized Provider Tests
# =============================================================================


class TestDecentralizedProviders:
    async def test_canister_upload_uses_client(self, file):
        client = MemoryClient()
        provider = CanisterStorageProvider("abc-cai", "https://icp0.io", client=client)

        result = await provider.upload(file, UploadOptions())

        assert result.provider == StorageBackend.ICP
        assert client.objects[result.key] == file.data
        assert result.url == f"https://icp0.io/abc-cai/{result.key}"

    async def test_canister_without_client_is_unavailable(self, file):
        provider = CanisterStorageProvider("abc-cai", "https://icp0.io")

        assert not provider.is_available()
        with pytest.raises(ProviderUnavailable):
            await provider.upload(file, UploadOptions())

    async def test_client_failure_is_transient(self, file):
        provider = CanisterStorageProvider("abc-cai", "https://icp0.io", client=MemoryClient(fail=True))

        with pytest.raises(TransientUploadFailure, match="gateway unreachable"):
            await provider.upload(file, UploadOptions())

    async def test_arweave_delete_is_immutable(self):
        provider = ArweaveStorageProvider("https://arweave.net", client=MemoryClient())

        assert provider.immutable
        with pytest.raises(ImmutableBackendViolation):
            await provider.delete("tx-1")

    async def test_manager_classifies_arweave_delete_as_immutable(self):
        manager = StorageManager(
            providers=[ArweaveStorageProvider("https://arweave.net", client=MemoryClient())]
        )

        with pytest.raises(DeleteError) as exc_info:
            await manager.delete(StorageBackend.ARWEAVE, "tx-1")

        assert exc_info.value.kind == DeleteErrorKind.IMMUTABLE

    def test_ipfs_gateway_url(self):
        provider = IPFSStorageProvider("https://gateway.test/", client=MemoryClient())

        assert provider.get_url("bafy123") == "https://gateway.test/ipfs/bafy123"


# =============================================================================
# Factory Tests
# =============================================================================


class TestFactory:
    def test_registers_every_provider(self, settings):
        manager = build_storage_manager(settings)

        for backend in (
            StorageBackend.S3,
            StorageBackend.VERCEL_BLOB,
            StorageBackend.ICP,
            StorageBackend.ARWEAVE,
            StorageBackend.IPFS,
        ):
            assert manager.get_provider(backend) is not None
        assert manager.get_provider(StorageBackend.NEON) is None

    def test_only_configured_providers_are_available(self, settings):
        settings.s3_bucket = "vault"
        settings.blob_read_write_token = None

        manager = build_storage_manager(settings, clients={StorageBackend.ARWEAVE: MemoryClient()})

        assert set(manager.available_backends()) == {StorageBackend.S3, StorageBackend.ARWEAVE}
        assert manager.config.default_backend == StorageBackend.S3
        assert manager.config.fallback_backends == [StorageBackend.VERCEL_BLOB]
