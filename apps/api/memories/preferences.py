"""Mapping from a user's storage preference to concrete backends."""

from enum import Enum

from apps.api.config import Settings
from packages.shared.storage.base import StorageBackend


class StoragePreference(str, Enum):
    """Where a user wants memories stored."""

    NEON = "neon"  # Managed database + web2 object storage
    ICP = "icp"  # Decentralized canister only
    DUAL = "dual"  # Both


def resolve_backends(
    preference: StoragePreference | str | None,
    settings: Settings,
) -> tuple[StorageBackend, ...]:
    """
    Resolve the asset backends for a preference.

    The metadata record always lives in the database; this only decides
    where binary assets go. One backend means a single upload with fallback,
    several mean replication.

    Args:
        preference: User preference (None uses the configured default)
        settings: Application settings (default web2 backend)

    Returns:
        Ordered, de-duplicated tuple of backends
    """
    preference = StoragePreference(preference or settings.default_storage_preference)
    web2 = StorageBackend(settings.storage_default_backend)

    if preference == StoragePreference.ICP:
        return (StorageBackend.ICP,)
    if preference == StoragePreference.DUAL:
        return (web2, StorageBackend.ICP)
    return (web2,)
