"""API routers package."""

from apps.api.routers import health, memories

__all__ = ["health", "memories"]
