"""Factory for building the storage manager from configuration."""

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING

from packages.shared.storage.base import StorageBackend
from packages.shared.storage.blob import BlobStorageProvider
from packages.shared.storage.external import (
    ArweaveStorageProvider,
    CanisterStorageProvider,
    ExternalStorageClient,
    IPFSStorageProvider,
)
from packages.shared.storage.manager import StorageManager, StorageManagerConfig
from packages.shared.storage.s3 import S3StorageProvider

if TYPE_CHECKING:
    from apps.api.config import Settings

logger = logging.getLogger(__name__)


def build_storage_manager(
    settings: "Settings",
    clients: Mapping[StorageBackend, ExternalStorageClient] | None = None,
) -> StorageManager:
    """
    Create a storage manager with every known provider registered.

    Providers without configuration are still registered; they report
    themselves unavailable and the manager skips them.

    Args:
        settings: Application settings
        clients: Protocol clients for decentralized backends, keyed by backend

    Returns:
        A new StorageManager (callers keep the reference; nothing is cached here)
    """
    clients = clients or {}

    config = StorageManagerConfig(
        default_backend=StorageBackend(settings.storage_default_backend),
        fallback_backends=[StorageBackend(b) for b in settings.storage_fallback_backends],
        max_retries=settings.storage_max_retries,
        retry_delay=settings.storage_retry_delay_seconds,
    )

    manager = StorageManager(
        providers=[
            S3StorageProvider(
                bucket=settings.s3_bucket,
                endpoint_url=settings.s3_endpoint_url,
                region=settings.s3_region,
                aws_access_key_id=settings.s3_access_key_id,
                aws_secret_access_key=settings.s3_secret_access_key,
                public_base_url=settings.s3_public_base_url,
            ),
            BlobStorageProvider(
                token=settings.blob_read_write_token,
                api_url=settings.blob_api_url,
                public_base_url=settings.blob_public_base_url,
            ),
            CanisterStorageProvider(
                canister_id=settings.icp_canister_id,
                network_url=settings.icp_network_url,
                client=clients.get(StorageBackend.ICP),
            ),
            ArweaveStorageProvider(
                settings.arweave_gateway_url,
                client=clients.get(StorageBackend.ARWEAVE),
            ),
            IPFSStorageProvider(
                settings.ipfs_gateway_url,
                client=clients.get(StorageBackend.IPFS),
            ),
        ],
        config=config,
    )

    available = ", ".join(b.value for b in manager.available_backends()) or "none"
    logger.info(f"Storage manager ready (available backends: {available})")
    return manager
