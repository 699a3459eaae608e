"""S3/MinIO object storage provider."""

import logging

import aioboto3
from botocore.exceptions import BotoCoreError, ClientError

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


class S3StorageProvider(StorageProvider):
    """
    S3/MinIO storage provider.

    Supports both AWS S3 and MinIO (via endpoint_url configuration).
    Objects are organized by folder and date: memories/YYYY/MM/DD/<uuid>_<filename>
    """

    def __init__(
        self,
        bucket: str,
        endpoint_url: str | None = None,
        region: str = "us-east-1",
        aws_access_key_id: str | None = None,
        aws_secret_access_key: str | None = None,
        public_base_url: str | None = None,
    ):
        """
        Initialize S3 storage provider.

        Args:
            bucket: S3 bucket name (empty string disables the provider)
            endpoint_url: Custom endpoint URL for MinIO (None for AWS S3)
            region: AWS region
            aws_access_key_id: AWS access key (optional, uses env/IAM if not set)
            aws_secret_access_key: AWS secret key (optional, uses env/IAM if not set)
            public_base_url: CDN or bucket URL used by get_url (optional)
        """
        self.bucket = bucket
        self.endpoint_url = endpoint_url
        self.region = region
        self.aws_access_key_id = aws_access_key_id
        self.aws_secret_access_key = aws_secret_access_key
        self.public_base_url = public_base_url.rstrip("/") if public_base_url else None
        self._session = aioboto3.Session()

    @property
    def name(self) -> StorageBackend:
        return StorageBackend.S3

    def is_available(self) -> bool:
        return bool(self.bucket)

    def _get_client_kwargs(self) -> dict:
        """Build kwargs for S3 client."""
        kwargs = {
            "region_name": self.region,
        }
        if self.endpoint_url:
            kwargs["endpoint_url"] = self.endpoint_url
        if self.aws_access_key_id and self.aws_secret_access_key:
            kwargs["aws_access_key_id"] = self.aws_access_key_id
            kwargs["aws_secret_access_key"] = self.aws_secret_access_key
        return kwargs

    def get_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        if self.endpoint_url:
            return f"{self.endpoint_url.rstrip('/')}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def upload(self, file: FileUpload, options: UploadOptions) -> UploadResult:
        """
        Upload a file to S3.

        Args:
            file: File to store
            options: Folder, content type override and metadata

        Returns:
            UploadResult with S3 key and public URL
        """
        self._require_available()

        content_type = options.content_type or file.content_type
        key = build_object_key(options.folder, file.filename)
        file_hash = file.compute_hash()

        try:
            async with self._session.client("s3", **self._get_client_kwargs()) as s3:
                await s3.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=file.data,
                    ContentType=content_type,
                    Metadata={
                        "sha256": file_hash,
                        "original_filename": file.filename,
                        **options.metadata,
                    },
                )
        except (ClientError, BotoCoreError) as e:
            raise TransientUploadFailure(
                f"S3 put_object failed for {key}",
                provider=self.name.value,
                cause=e,
            ) from e

        return UploadResult(
            url=self.get_url(key),
            key=key,
            size=file.size,
            mime_type=content_type,
            provider=self.name,
            metadata={"sha256": file_hash, "bucket": self.bucket},
        )

    async def delete(self, key: str) -> None:
        """Delete an object from S3 (S3 reports success for missing keys)."""
        try:
            async with self._session.client("s3", **self._get_client_kwargs()) as s3:
                await s3.delete_object(Bucket=self.bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise DeleteFailed(
                f"S3 delete_object failed for {key}",
                provider=self.name.value,
                cause=e,
            ) from e

    async def download(self, key: str) -> bytes:
        """
        Retrieve object contents from S3.

        Raises:
            StorageError: Missing key (code not_found) or S3 failure
        """
        try:
            async with self._session.client("s3", **self._get_client_kwargs()) as s3:
                response = await s3.get_object(Bucket=self.bucket, Key=key)
                return await response["Body"].read()
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") == "NoSuchKey":
                raise StorageError(
                    f"Object not found: {key}", provider=self.name.value, code="not_found"
                ) from e
            raise StorageError(f"S3 get_object failed for {key}", provider=self.name.value, cause=e) from e
        except BotoCoreError as e:
            raise StorageError(f"S3 get_object failed for {key}", provider=self.name.value, cause=e) from e
