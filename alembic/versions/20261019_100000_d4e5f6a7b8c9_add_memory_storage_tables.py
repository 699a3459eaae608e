"""Add memory storage tables

Creates tables for memory storage and replication:
- memories: Logical user items with derived storage presence counters
- memory_assets: Original and derived binary representations
- storage_edges: Per-backend presence ledger with sync state

Revision ID: d4e5f6a7b8c9
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "d4e5f6a7b8c9"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

memorytype = postgresql.ENUM(
    "image", "video", "note", "document", "audio", name="memorytype", create_type=False
)
visibility = postgresql.ENUM("private", "shared", "public", name="visibility", create_type=False)
assettype = postgresql.ENUM(
    "original", "display", "thumb", "placeholder", "poster", "waveform",
    name="assettype",
    create_type=False,
)
storagebackend = postgresql.ENUM(
    "s3", "vercel_blob", "icp", "arweave", "ipfs", "neon",
    name="storagebackend",
    create_type=False,
)
processingstatus = postgresql.ENUM(
    "pending", "processing", "completed", "failed", name="processingstatus", create_type=False
)
storageartifact = postgresql.ENUM("metadata", "asset", name="storageartifact", create_type=False)
syncstate = postgresql.ENUM("idle", "migrating", "failed", name="syncstate", create_type=False)

ENUMS = (memorytype, visibility, assettype, storagebackend, processingstatus, storageartifact, syncstate)


def upgrade() -> None:
    """Upgrade database schema."""
    bind = op.get_bind()
    for enum in ENUMS:
        enum.create(bind, checkfirst=True)

    # ==========================================================================
    # CREATE MEMORIES TABLE
    # ==========================================================================
    op.create_table(
        "memories",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column(
            "owner_id",
            sa.String(length=255),
            nullable=False,
            comment="Opaque identity from the identity resolver",
        ),
        sa.Column("type", memorytype, nullable=False),
        sa.Column("title", sa.String(length=255), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("visibility", visibility, nullable=False),
        sa.Column(
            "storage_locations",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=False,
            comment="Backends currently holding at least one present artifact",
        ),
        sa.Column(
            "storage_count",
            sa.Integer(),
            nullable=False,
            comment="Number of present storage edges",
        ),
        sa.Column(
            "storage_duration",
            sa.Integer(),
            nullable=True,
            comment="Retention horizon in days; NULL means permanent",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("storage_count >= 0", name="ck_memories_storage_count"),
        sa.PrimaryKeyConstraint("id"),
        comment="User memories",
    )
    op.create_index("ix_memories_owner_id", "memories", ["owner_id"])
    op.create_index("ix_memories_owner_created", "memories", ["owner_id", "created_at"])

    # ==========================================================================
    # CREATE MEMORY_ASSETS TABLE
    # ==========================================================================
    op.create_table(
        "memory_assets",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("memory_id", sa.UUID(), nullable=False),
        sa.Column("asset_type", assettype, nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("storage_backend", storagebackend, nullable=False),
        sa.Column("storage_key", sa.Text(), nullable=False),
        sa.Column("bytes", sa.BigInteger(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("mime_type", sa.String(length=100), nullable=False),
        sa.Column("content_hash", sa.String(length=64), nullable=True, comment="SHA-256 hex digest"),
        sa.Column("processing_status", processingstatus, nullable=False),
        sa.Column("processing_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint("bytes > 0", name="ck_memory_assets_bytes_positive"),
        sa.CheckConstraint(
            "(width IS NULL AND height IS NULL) OR (width > 0 AND height > 0)",
            name="ck_memory_assets_dimensions",
        ),
        sa.ForeignKeyConstraint(
            ["memory_id"],
            ["memories.id"],
            name="fk_memory_assets_memory_id",
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("memory_id", "asset_type", name="uq_memory_assets_memory_type"),
        comment="Binary representations of memories",
    )
    op.create_index("ix_memory_assets_memory_id", "memory_assets", ["memory_id"])
    op.create_index("ix_memory_assets_processing_status", "memory_assets", ["processing_status"])

    # ==========================================================================
    # CREATE STORAGE_EDGES TABLE
    # ==========================================================================
    op.create_table(
        "storage_edges",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("memory_id", sa.UUID(), nullable=False),
        sa.Column("memory_type", memorytype, nullable=False),
        sa.Column("artifact", storageartifact, nullable=False),
        sa.Column("backend", storagebackend, nullable=False),
        sa.Column("present", sa.Boolean(), nullable=False),
        sa.Column("location", sa.Text(), nullable=True, comment="Backend key, URL or row reference"),
        sa.Column("content_hash", sa.String(length=64), nullable=True),
        sa.Column("size_bytes", sa.BigInteger(), nullable=True),
        sa.Column("sync_state", syncstate, nullable=False),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
        sa.CheckConstraint(
            "sync_state != 'failed' OR sync_error IS NOT NULL",
            name="ck_storage_edges_failed_has_error",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "memory_id", "memory_type", "artifact", "backend", name="uq_storage_edges_key"
        ),
        comment="Per-backend presence of memory artifacts",
    )
    op.create_index("ix_storage_edges_memory", "storage_edges", ["memory_id", "memory_type"])
    op.create_index(
        "ix_storage_edges_backend_artifact_present",
        "storage_edges",
        ["backend", "artifact", "present"],
    )
    op.create_index("ix_storage_edges_sync_state", "storage_edges", ["sync_state"])


def downgrade() -> None:
    """Downgrade database schema."""
    op.drop_index("ix_storage_edges_sync_state", table_name="storage_edges")
    op.drop_index("ix_storage_edges_backend_artifact_present", table_name="storage_edges")
    op.drop_index("ix_storage_edges_memory", table_name="storage_edges")
    op.drop_table("storage_edges")
    op.drop_index("ix_memory_assets_processing_status", table_name="memory_assets")
    op.drop_index("ix_memory_assets_memory_id", table_name="memory_assets")
    op.drop_table("memory_assets")
    op.drop_index("ix_memories_owner_created", table_name="memories")
    op.drop_index("ix_memories_owner_id", table_name="memories")
    op.drop_table("memories")

    # Drop enums
    bind = op.get_bind()
    for enum in reversed(ENUMS):
        enum.drop(bind, checkfirst=True)
