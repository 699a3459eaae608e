"""
Health check endpoint.
GET /health - Returns 200 if the database and default storage are reachable, 503 otherwise.
"""

import time
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Response, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.dependencies import get_db, get_storage_manager
from packages.shared.storage import StorageManager

router = APIRouter()


@router.get("/health")
async def health_check(
    response: Response,
    db: Annotated[AsyncSession, Depends(get_db)],
    manager: Annotated[StorageManager, Depends(get_storage_manager)],
) -> dict[str, Any]:
    """
    Health check endpoint.

    Returns:
        200 + {"status": "ok", ...} if all checks pass
        503 + {"status": "degraded", ...} if any check fails
    """
    result: dict[str, Any] = {
        "status": "ok",
        "api": "ok",
        "db": "ok",
        "storage": "ok",
    }
    all_healthy = True

    # --- Check database (SELECT 1) ---
    try:
        start = time.perf_counter()
        await db.execute(text("SELECT 1"))
        result["db_latency_ms"] = round((time.perf_counter() - start) * 1000, 2)
    except Exception:
        result["db"] = "fail"
        all_healthy = False

    # --- Check storage (configured providers only, no network) ---
    available = manager.available_backends()
    result["storage_backends"] = [b.value for b in available]
    if manager.config.default_backend not in available:
        result["storage"] = "fail"
        all_healthy = False

    # --- Set response ---
    if not all_healthy:
        result["status"] = "degraded"
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return result
