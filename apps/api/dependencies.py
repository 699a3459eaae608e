"""
FastAPI dependencies for the storage stack.

Long-lived objects (storage manager, derivative scheduler, identity
resolver) are built once in the app lifespan and stored on app.state.
"""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.config import Settings, get_settings
from apps.api.memories.identity import IdentityError, IdentityResolver
from apps.api.memories.scheduling import DerivativeScheduler
from apps.api.memories.service import MemoryUploadService
from db.session import async_session_factory
from packages.shared.storage import StorageManager


def get_storage_manager(request: Request) -> StorageManager:
    return request.app.state.storage_manager


def get_scheduler(request: Request) -> DerivativeScheduler:
    return request.app.state.derivative_scheduler


def get_identity_resolver(request: Request) -> IdentityResolver:
    return request.app.state.identity_resolver


def get_session_factory(request: Request):
    """Session factory (overridable per app for tests)."""
    return getattr(request.app.state, "session_factory", async_session_factory)


async def get_db(session_factory=Depends(get_session_factory)) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session from the active factory."""
    async with session_factory() as session:
        yield session


async def get_owner_id(
    request: Request,
    resolver: Annotated[IdentityResolver, Depends(get_identity_resolver)],
) -> str:
    """Resolve the acting owner, authenticated or ephemeral."""
    try:
        return await resolver.resolve(request)
    except IdentityError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"error": "identity_required", "message": str(e)},
        )


def get_upload_service(
    settings: Annotated[Settings, Depends(get_settings)],
    manager: Annotated[StorageManager, Depends(get_storage_manager)],
    scheduler: Annotated[DerivativeScheduler, Depends(get_scheduler)],
    session_factory=Depends(get_session_factory),
) -> MemoryUploadService:
    return MemoryUploadService(session_factory, manager, settings, scheduler)
