"""Database models package."""

from db.models.base_model import BaseModel, TimestampMixin
from db.models.memory import (
    AssetType,
    InvalidSyncTransition,
    Memory,
    MemoryAsset,
    MemoryType,
    ProcessingStatus,
    StorageArtifact,
    StorageEdge,
    SyncState,
    Visibility,
    can_transition_processing,
    can_transition_sync,
)

__all__ = [
    # Base models and mixins
    "BaseModel",
    "TimestampMixin",
    # Memory models
    "AssetType",
    "InvalidSyncTransition",
    "Memory",
    "MemoryAsset",
    "MemoryType",
    "ProcessingStatus",
    "StorageArtifact",
    "StorageEdge",
    "SyncState",
    "Visibility",
    "can_transition_processing",
    "can_transition_sync",
]
