"""
Storage edge ledger.

Authoritative record of which artifact of which memory is present on which
backend. Writers upsert on the natural key instead of locking; the last
write wins on value fields.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from db.models.memory import (
    Memory,
    MemoryAsset,
    MemoryType,
    StorageArtifact,
    StorageEdge,
    SyncState,
)
from packages.shared.storage.base import StorageBackend
from packages.shared.storage.errors import DeleteError
from packages.shared.storage.manager import StorageManager

logger = logging.getLogger(__name__)

EDGE_KEY_COLUMNS = ["memory_id", "memory_type", "artifact", "backend"]

WEB2_BACKENDS = frozenset({StorageBackend.NEON, StorageBackend.S3, StorageBackend.VERCEL_BLOB})
DECENTRALIZED_BACKENDS = frozenset({StorageBackend.ICP, StorageBackend.ARWEAVE, StorageBackend.IPFS})


class EdgeNotFoundError(LookupError):
    """Raised when a storage edge does not exist for a key."""


@dataclass(frozen=True)
class EdgeKey:
    """Natural key of a storage edge."""

    memory_id: uuid.UUID
    memory_type: MemoryType
    artifact: StorageArtifact
    backend: StorageBackend


@dataclass(frozen=True)
class CleanupTarget:
    backend: StorageBackend
    key: str


@dataclass(frozen=True)
class CleanupFailure:
    backend: StorageBackend
    key: str
    kind: str
    message: str


@dataclass
class CleanupReport:
    """Outcome of removing a memory's storage from the ledger and backends."""

    deleted_edge_count: int = 0
    deleted_asset_count: int = 0
    succeeded: list[CleanupTarget] = field(default_factory=list)
    failed: list[CleanupFailure] = field(default_factory=list)
    logical_delete_ok: bool = False

    @property
    def deleted_backend_object_count(self) -> int:
        return len(self.succeeded)

    @property
    def errors(self) -> list[str]:
        return [f"[{f.backend.value}] {f.key}: {f.message}" for f in self.failed]

    @property
    def physical_cleanup(self) -> dict[str, list]:
        return {"succeeded": list(self.succeeded), "failed": list(self.failed)}


def dialect_insert(db: AsyncSession):
    """Pick the INSERT construct that supports ON CONFLICT for the bound dialect."""
    if db.get_bind().dialect.name == "sqlite":
        return sqlite_insert
    return pg_insert


class StorageEdgeLedger:
    """Presence matrix keyed by (memory, memory type, artifact, backend)."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==========================================================================
    # Edge Writes
    # ==========================================================================

    async def create_edge(
        self,
        memory_id: uuid.UUID,
        memory_type: MemoryType,
        artifact: StorageArtifact,
        backend: StorageBackend,
        location: str | None = None,
        size_bytes: int | None = None,
        content_hash: str | None = None,
    ) -> StorageEdge:
        """
        Upsert an edge asserting the artifact is present on the backend.

        Calling twice with the same key leaves one row holding the latest
        values. The memory's storage counters are recomputed afterwards.

        Returns:
            The stored edge
        """
        now = datetime.now(UTC)
        insert = dialect_insert(self.db)

        stmt = insert(StorageEdge).values(
            id=uuid.uuid4(),
            memory_id=memory_id,
            memory_type=memory_type,
            artifact=artifact,
            backend=backend,
            present=True,
            location=location,
            size_bytes=size_bytes,
            content_hash=content_hash,
            sync_state=SyncState.IDLE,
            sync_error=None,
            last_synced_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=EDGE_KEY_COLUMNS,
            set_={
                "present": True,
                "location": stmt.excluded.location,
                "size_bytes": stmt.excluded.size_bytes,
                "content_hash": stmt.excluded.content_hash,
                "sync_state": stmt.excluded.sync_state,
                "sync_error": None,
                "last_synced_at": stmt.excluded.last_synced_at,
                "updated_at": func.now(),
            },
        )
        await self.db.execute(stmt)
        await self.refresh_memory_presence(memory_id)

        key = EdgeKey(memory_id, memory_type, artifact, backend)
        edge = await self.get_edge(key)
        logger.info(f"Edge recorded: {artifact.value}@{backend.value} for memory {memory_id}")
        return edge

    async def ensure_edge(
        self,
        memory_id: uuid.UUID,
        memory_type: MemoryType,
        artifact: StorageArtifact,
        backend: StorageBackend,
        location: str | None = None,
        size_bytes: int | None = None,
        content_hash: str | None = None,
    ) -> StorageEdge:
        """
        Assert presence without replacing an existing edge's values.

        One asset edge per backend covers the original and its variants; the
        first recorded location (the original) stays on the edge. A missing
        edge is created with the given values.

        Returns:
            The stored edge
        """
        key = EdgeKey(memory_id, memory_type, artifact, backend)
        edge = await self.get_edge(key)
        if edge is None:
            return await self.create_edge(
                memory_id=memory_id,
                memory_type=memory_type,
                artifact=artifact,
                backend=backend,
                location=location,
                size_bytes=size_bytes,
                content_hash=content_hash,
            )

        edge.present = True
        edge.last_synced_at = datetime.now(UTC)
        await self.db.flush()
        await self.refresh_memory_presence(memory_id)
        return edge

    async def mark_sync_state(
        self,
        key: EdgeKey,
        state: SyncState,
        error: str | None = None,
    ) -> StorageEdge:
        """
        Move an edge through the reconciliation state machine.

        Raises:
            EdgeNotFoundError: No edge exists for the key
            InvalidSyncTransition: Transition not allowed, or failed without error
        """
        edge = await self._require_edge(key)
        previous = edge.sync_state
        edge.transition_to(state, error)
        await self.db.flush()
        logger.info(
            f"Edge {key.artifact.value}@{key.backend.value} for memory {key.memory_id}: "
            f"{previous.value} -> {state.value}"
        )
        return edge

    async def set_presence(self, key: EdgeKey, present: bool) -> StorageEdge:
        """Record a reconciliation finding that an artifact is (or is not) on the backend."""
        edge = await self._require_edge(key)
        edge.present = present
        await self.db.flush()
        await self.refresh_memory_presence(key.memory_id)
        return edge

    async def delete_edges_for_memory(
        self,
        memory_id: uuid.UUID,
        memory_type: MemoryType | None = None,
    ) -> int:
        """
        Delete every edge of a memory (hard delete).

        Callers that own physical objects should use cleanup_memory, which
        attempts backend deletes first.

        Returns:
            Number of edges removed
        """
        stmt = delete(StorageEdge).where(StorageEdge.memory_id == memory_id)
        if memory_type is not None:
            stmt = stmt.where(StorageEdge.memory_type == memory_type)
        result = await self.db.execute(stmt.execution_options(synchronize_session=False))
        await self.refresh_memory_presence(memory_id)
        return result.rowcount or 0

    # ==========================================================================
    # Queries
    # ==========================================================================

    async def get_edge(self, key: EdgeKey) -> StorageEdge | None:
        stmt = (
            select(StorageEdge)
            .where(
                StorageEdge.memory_id == key.memory_id,
                StorageEdge.memory_type == key.memory_type,
                StorageEdge.artifact == key.artifact,
                StorageEdge.backend == key.backend,
            )
            .execution_options(populate_existing=True)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def edges_for_memory(self, memory_id: uuid.UUID) -> list[StorageEdge]:
        stmt = (
            select(StorageEdge)
            .where(StorageEdge.memory_id == memory_id)
            .order_by(StorageEdge.artifact, StorageEdge.backend)
            .execution_options(populate_existing=True)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def query_by_state(
        self,
        state: SyncState,
        backend: StorageBackend | None = None,
        limit: int | None = None,
    ) -> list[StorageEdge]:
        """Edges in a given sync state, oldest change first, for reconciliation sweeps."""
        stmt = select(StorageEdge).where(StorageEdge.sync_state == state)
        if backend is not None:
            stmt = stmt.where(StorageEdge.backend == backend)
        stmt = stmt.order_by(StorageEdge.updated_at)
        if limit is not None:
            stmt = stmt.limit(limit)
        return list((await self.db.execute(stmt)).scalars().all())

    async def find_stuck(
        self,
        older_than: timedelta,
        now: datetime | None = None,
    ) -> list[StorageEdge]:
        """Edges that entered ``migrating`` and have not moved since the cutoff."""
        cutoff = (now or datetime.now(UTC)) - older_than
        stmt = (
            select(StorageEdge)
            .where(
                StorageEdge.sync_state == SyncState.MIGRATING,
                StorageEdge.updated_at < cutoff,
            )
            .order_by(StorageEdge.updated_at)
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def presence_summary(self, memory_id: uuid.UUID) -> dict[str, Any]:
        """
        Summarize where a memory's artifacts are present.

        Returns:
            Dict with per-backend metadata/asset flags and an overall status:
            none, web2_only, decentralized_only or hybrid
        """
        edges = await self.edges_for_memory(memory_id)

        backends: dict[str, dict[str, bool]] = {}
        present_on: set[StorageBackend] = set()
        for edge in edges:
            flags = backends.setdefault(edge.backend.value, {"metadata": False, "asset": False})
            if edge.present:
                flags[edge.artifact.value] = True
                present_on.add(edge.backend)

        on_web2 = bool(present_on & WEB2_BACKENDS)
        on_decentralized = bool(present_on & DECENTRALIZED_BACKENDS)
        if on_web2 and on_decentralized:
            overall = "hybrid"
        elif on_web2:
            overall = "web2_only"
        elif on_decentralized:
            overall = "decentralized_only"
        else:
            overall = "none"

        return {
            "memory_id": str(memory_id),
            "backends": backends,
            "overall_status": overall,
            "edge_count": len(edges),
            "present_count": sum(1 for e in edges if e.present),
        }

    # ==========================================================================
    # Memory Counters
    # ==========================================================================

    async def refresh_memory_presence(self, memory_id: uuid.UUID) -> None:
        """Rewrite storage_count and storage_locations from present edges."""
        stmt = select(StorageEdge.backend).where(
            StorageEdge.memory_id == memory_id,
            StorageEdge.present.is_(True),
        )
        backends = list((await self.db.execute(stmt)).scalars().all())
        held = set(backends)
        locations = [b.value for b in StorageBackend if b in held]

        await self.db.execute(
            update(Memory)
            .where(Memory.id == memory_id)
            .values(storage_count=len(backends), storage_locations=locations)
        )

    # ==========================================================================
    # Cleanup
    # ==========================================================================

    async def cleanup_memory(
        self,
        memory_id: uuid.UUID,
        memory_type: MemoryType,
        manager: StorageManager,
    ) -> CleanupReport:
        """
        Remove a memory's physical objects and its ledger rows.

        Every distinct (backend, key) referenced by an asset edge or asset row
        gets one delete attempt. Edges and asset rows are removed whatever the
        outcome of those attempts.

        Returns:
            CleanupReport with per-object successes and failures
        """
        report = CleanupReport()

        for target in await self._collect_targets(memory_id, memory_type):
            try:
                await manager.delete(target.backend, target.key)
            except DeleteError as e:
                logger.warning(f"Backend delete failed for memory {memory_id}: {e}")
                report.failed.append(
                    CleanupFailure(target.backend, target.key, e.kind.value, e.message)
                )
            else:
                report.succeeded.append(target)

        result = await self.db.execute(
            delete(MemoryAsset)
            .where(MemoryAsset.memory_id == memory_id)
            .execution_options(synchronize_session=False)
        )
        report.deleted_asset_count = result.rowcount or 0
        report.deleted_edge_count = await self.delete_edges_for_memory(memory_id, memory_type)
        report.logical_delete_ok = True

        logger.info(
            f"Cleanup for memory {memory_id}: {report.deleted_edge_count} edges, "
            f"{report.deleted_backend_object_count} objects deleted, {len(report.failed)} failed"
        )
        return report

    async def _collect_targets(
        self,
        memory_id: uuid.UUID,
        memory_type: MemoryType,
    ) -> list[CleanupTarget]:
        targets: dict[CleanupTarget, None] = {}

        assets = await self.db.execute(
            select(MemoryAsset.storage_backend, MemoryAsset.storage_key).where(
                MemoryAsset.memory_id == memory_id
            )
        )
        for backend, key in assets.all():
            targets[CleanupTarget(backend, key)] = None

        edges = await self.db.execute(
            select(StorageEdge.backend, StorageEdge.location).where(
                StorageEdge.memory_id == memory_id,
                StorageEdge.memory_type == memory_type,
                StorageEdge.artifact == StorageArtifact.ASSET,
                StorageEdge.location.is_not(None),
            )
        )
        for backend, location in edges.all():
            targets[CleanupTarget(backend, location)] = None

        # The database row is not a physical object
        return [t for t in targets if t.backend != StorageBackend.NEON]

    async def _require_edge(self, key: EdgeKey) -> StorageEdge:
        edge = await self.get_edge(key)
        if edge is None:
            raise EdgeNotFoundError(
                f"No {key.artifact.value} edge on {key.backend.value} for memory {key.memory_id}"
            )
        return edge
