"""Shared utilities package."""

from packages.shared.exceptions import (
    AppException,
    DatabaseException,
    NotFoundError,
    StorageFailedError,
    ValidationError,
)

__all__ = [
    "AppException",
    "DatabaseException",
    "NotFoundError",
    "StorageFailedError",
    "ValidationError",
]
