"""
FastAPI application entrypoint.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from apps.api.config import get_settings
from apps.api.memories.derivatives import DerivativePipeline
from apps.api.memories.identity import HeaderIdentityResolver
from apps.api.memories.scheduling import (
    ArqDerivativeScheduler,
    DerivativeScheduler,
    InProcessDerivativeScheduler,
)
from apps.api.routers import health, memories
from db.session import async_session_factory
from packages.shared.exceptions import AppException, app_exception_handler
from packages.shared.storage import build_storage_manager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    Build the storage stack once per process.

    A session factory or storage manager already set on app.state is kept.
    """
    settings = get_settings()
    session_factory = getattr(app.state, "session_factory", None) or async_session_factory
    manager = getattr(app.state, "storage_manager", None) or build_storage_manager(settings)

    scheduler: DerivativeScheduler
    if settings.use_arq_worker:
        scheduler = ArqDerivativeScheduler()
    else:
        pipeline = DerivativePipeline(session_factory, manager, settings)
        scheduler = InProcessDerivativeScheduler(
            pipeline,
            max_tries=settings.derivative_max_tries,
            retry_delay=settings.derivative_retry_delay_seconds,
        )

    app.state.session_factory = session_factory
    app.state.storage_manager = manager
    app.state.derivative_scheduler = scheduler
    app.state.identity_resolver = HeaderIdentityResolver(
        allow_ephemeral=settings.allow_ephemeral_users
    )
    logger.info(f"{settings.app_name} started (arq worker: {settings.use_arq_worker})")

    yield

    if isinstance(scheduler, InProcessDerivativeScheduler):
        await scheduler.drain()
    await manager.aclose()


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_exception_handler(AppException, app_exception_handler)

# Include routers
app.include_router(health.router)
app.include_router(
    memories.router,
    prefix=f"{settings.api_v1_prefix}/memories",
    tags=["memories"],
)
app.include_router(
    memories.edges_router,
    prefix=f"{settings.api_v1_prefix}/storage-edges",
    tags=["storage-edges"],
)
