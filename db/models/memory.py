"""
SQLAlchemy models for memories and their storage presence.

Tables:
- Memory: Logical user item (image, video, note, document, audio)
- MemoryAsset: One concrete binary representation of a memory
- StorageEdge: Presence assertion for one artifact of one memory on one backend
"""

import uuid
from datetime import UTC, datetime, timedelta
from enum import Enum

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column, relationship

from db.models.base_model import BaseModel, JSONType, enum_values
from packages.shared.storage.base import StorageBackend


class MemoryType(str, Enum):
    """Kinds of memory."""

    IMAGE = "image"
    VIDEO = "video"
    NOTE = "note"
    DOCUMENT = "document"
    AUDIO = "audio"


class Visibility(str, Enum):
    PRIVATE = "private"
    SHARED = "shared"
    PUBLIC = "public"


class AssetType(str, Enum):
    """Concrete representations of a memory."""

    ORIGINAL = "original"
    DISPLAY = "display"
    THUMB = "thumb"
    PLACEHOLDER = "placeholder"
    POSTER = "poster"
    WAVEFORM = "waveform"


class ProcessingStatus(str, Enum):
    """Per-asset processing states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StorageArtifact(str, Enum):
    """Independently replicated pieces of a memory."""

    METADATA = "metadata"  # The database record
    ASSET = "asset"  # A binary file


class SyncState(str, Enum):
    """Reconciliation status of a storage edge."""

    IDLE = "idle"
    MIGRATING = "migrating"
    FAILED = "failed"


# Valid state transitions
VALID_SYNC_TRANSITIONS: dict[SyncState, list[SyncState]] = {
    SyncState.IDLE: [SyncState.MIGRATING],
    SyncState.MIGRATING: [SyncState.IDLE, SyncState.FAILED],
    SyncState.FAILED: [SyncState.MIGRATING],  # Retry
}

VALID_PROCESSING_TRANSITIONS: dict[ProcessingStatus, list[ProcessingStatus]] = {
    ProcessingStatus.PENDING: [ProcessingStatus.PROCESSING, ProcessingStatus.FAILED],
    ProcessingStatus.PROCESSING: [ProcessingStatus.COMPLETED, ProcessingStatus.FAILED],
    ProcessingStatus.COMPLETED: [ProcessingStatus.PROCESSING],  # Regeneration
    ProcessingStatus.FAILED: [ProcessingStatus.PROCESSING],  # Retry
}


def can_transition_sync(current: SyncState, target: SyncState) -> bool:
    """Check if a sync state transition is valid."""
    return target in VALID_SYNC_TRANSITIONS.get(current, [])


def can_transition_processing(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    """Check if a processing state transition is valid."""
    return target in VALID_PROCESSING_TRANSITIONS.get(current, [])


class InvalidSyncTransition(ValueError):
    """Raised when a storage edge is moved along a transition that does not exist."""


class Memory(BaseModel):
    """
    Logical memory item.

    ``storage_count`` and ``storage_locations`` are derived from the present
    storage edges and are rewritten whenever the ledger changes.
    """

    __tablename__ = "memories"

    # --- Ownership ---
    owner_id: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        index=True,
        comment="Opaque identity from the identity resolver",
    )

    # --- Content ---
    type: Mapped[MemoryType] = mapped_column(
        SAEnum(MemoryType, name="memorytype", values_callable=enum_values),
        nullable=False,
    )
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    visibility: Mapped[Visibility] = mapped_column(
        SAEnum(Visibility, name="visibility", values_callable=enum_values),
        default=Visibility.PRIVATE,
        nullable=False,
    )

    # --- Storage Presence (derived from storage_edges) ---
    storage_locations: Mapped[list] = mapped_column(
        JSONType,
        default=list,
        nullable=False,
        comment="Backends currently holding at least one present artifact",
    )
    storage_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Number of present storage edges",
    )
    storage_duration: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Retention horizon in days; NULL means permanent",
    )

    # --- Relationships ---
    assets: Mapped[list["MemoryAsset"]] = relationship(
        "MemoryAsset",
        back_populates="memory",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="MemoryAsset.created_at",
    )

    __table_args__ = (
        CheckConstraint("storage_count >= 0", name="ck_memories_storage_count"),
        Index("ix_memories_owner_created", "owner_id", "created_at"),
        {"comment": "User memories"},
    )

    def __repr__(self) -> str:
        return f"<Memory {self.id} ({self.type.value})>"

    @property
    def retention_expires_at(self) -> datetime | None:
        """When the retention horizon ends, or None for permanent storage."""
        if self.storage_duration is None or self.created_at is None:
            return None
        created = self.created_at
        if created.tzinfo is None:
            created = created.replace(tzinfo=UTC)
        return created + timedelta(days=self.storage_duration)


class MemoryAsset(BaseModel):
    """
    One concrete binary representation of a memory.

    At most one row exists per (memory_id, asset_type); writers upsert on
    that key. Derivative rows start out referencing their source object and
    are rewritten with their own location once processing completes.
    """

    __tablename__ = "memory_assets"

    # --- Foreign Key ---
    memory_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("memories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    # --- Asset Identity ---
    asset_type: Mapped[AssetType] = mapped_column(
        SAEnum(AssetType, name="assettype", values_callable=enum_values),
        nullable=False,
    )

    # --- Storage Location ---
    url: Mapped[str] = mapped_column(Text, nullable=False)
    storage_backend: Mapped[StorageBackend] = mapped_column(
        SAEnum(StorageBackend, name="storagebackend", values_callable=enum_values),
        nullable=False,
    )
    storage_key: Mapped[str] = mapped_column(Text, nullable=False)

    # --- File Metadata ---
    bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    content_hash: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
        comment="SHA-256 hex digest",
    )

    # --- Processing ---
    processing_status: Mapped[ProcessingStatus] = mapped_column(
        SAEnum(ProcessingStatus, name="processingstatus", values_callable=enum_values),
        default=ProcessingStatus.PENDING,
        nullable=False,
        index=True,
    )
    processing_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # --- Relationships ---
    memory: Mapped["Memory"] = relationship("Memory", back_populates="assets")

    __table_args__ = (
        UniqueConstraint("memory_id", "asset_type", name="uq_memory_assets_memory_type"),
        CheckConstraint("bytes > 0", name="ck_memory_assets_bytes_positive"),
        CheckConstraint(
            "(width IS NULL AND height IS NULL) OR (width > 0 AND height > 0)",
            name="ck_memory_assets_dimensions",
        ),
        {"comment": "Binary representations of memories"},
    )

    def __repr__(self) -> str:
        return f"<MemoryAsset {self.asset_type.value} ({self.processing_status.value})>"

    def can_transition_to(self, target: ProcessingStatus) -> bool:
        return can_transition_processing(self.processing_status, target)

    def transition_to(self, target: ProcessingStatus, error: str | None = None) -> None:
        """
        Transition to a new processing state.

        Raises:
            ValueError: If the transition is not allowed.
        """
        if not self.can_transition_to(target):
            raise ValueError(
                f"Cannot transition from {self.processing_status.value} to {target.value}"
            )
        self.processing_status = target
        self.processing_error = error if target == ProcessingStatus.FAILED else None


class StorageEdge(BaseModel):
    """
    Presence assertion for one artifact of one memory on one backend.

    A missing edge means "never attempted"; ``present = False`` means the
    artifact is known to be absent. ``memory_id`` is not a foreign key so the
    ledger can describe memories whose record lives on another backend.
    """

    __tablename__ = "storage_edges"

    # --- Natural Key ---
    memory_id: Mapped[uuid.UUID] = mapped_column(nullable=False)
    memory_type: Mapped[MemoryType] = mapped_column(
        SAEnum(MemoryType, name="memorytype", values_callable=enum_values),
        nullable=False,
    )
    artifact: Mapped[StorageArtifact] = mapped_column(
        SAEnum(StorageArtifact, name="storageartifact", values_callable=enum_values),
        nullable=False,
    )
    backend: Mapped[StorageBackend] = mapped_column(
        SAEnum(StorageBackend, name="storagebackend", values_callable=enum_values),
        nullable=False,
    )

    # --- Presence ---
    present: Mapped[bool] = mapped_column(default=True, nullable=False)
    location: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
        comment="Backend key, URL or row reference",
    )
    content_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # --- Reconciliation ---
    sync_state: Mapped[SyncState] = mapped_column(
        SAEnum(SyncState, name="syncstate", values_callable=enum_values),
        default=SyncState.IDLE,
        nullable=False,
    )
    last_synced_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint(
            "memory_id", "memory_type", "artifact", "backend", name="uq_storage_edges_key"
        ),
        Index("ix_storage_edges_memory", "memory_id", "memory_type"),
        Index("ix_storage_edges_backend_artifact_present", "backend", "artifact", "present"),
        Index("ix_storage_edges_sync_state", "sync_state"),
        CheckConstraint(
            "sync_state != 'failed' OR sync_error IS NOT NULL",
            name="ck_storage_edges_failed_has_error",
        ),
        {"comment": "Per-backend presence of memory artifacts"},
    )

    def __repr__(self) -> str:
        return (
            f"<StorageEdge {self.memory_id} {self.artifact.value}@{self.backend.value} "
            f"present={self.present} ({self.sync_state.value})>"
        )

    def can_transition_to(self, target: SyncState) -> bool:
        return can_transition_sync(self.sync_state, target)

    def transition_to(self, target: SyncState, error: str | None = None) -> None:
        """
        Move the edge to a new sync state.

        ``failed`` requires an error message; every other state clears it.
        Completing a migration stamps ``last_synced_at``.

        Raises:
            InvalidSyncTransition: If the transition is not allowed or
                ``failed`` is requested without an error.
        """
        if not self.can_transition_to(target):
            raise InvalidSyncTransition(
                f"Cannot transition from {self.sync_state.value} to {target.value}"
            )
        if target == SyncState.FAILED and not error:
            raise InvalidSyncTransition("Transition to failed requires a sync error")

        if self.sync_state == SyncState.MIGRATING and target == SyncState.IDLE:
            self.last_synced_at = datetime.now(UTC)
        self.sync_state = target
        self.sync_error = error if target == SyncState.FAILED else None
