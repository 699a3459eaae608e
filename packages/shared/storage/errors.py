"""
Storage exception types.

Provides consistent error classification across all storage providers
and the storage manager. Retry and fallback decisions are made on the
exception type, never on message text.
"""

from enum import Enum
from typing import Any


class StorageError(Exception):
    """Base exception for all storage errors."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        code: str | None = None,
        cause: BaseException | None = None,
    ):
        self.message = message
        self.provider = provider
        self.code = code
        self.cause = cause
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.provider:
            parts.insert(0, f"[{self.provider}]")
        if self.code:
            parts.append(f"({self.code})")
        return " ".join(parts)


# =============================================================================
# Provider-level errors
# =============================================================================


class ProviderUnavailable(StorageError):
    """Raised when a provider is missing configuration or credentials.

    Never retried; the manager moves on to the next fallback backend.
    """

    def __init__(
        self,
        message: str = "Storage provider is not configured",
        provider: str | None = None,
    ):
        super().__init__(message, provider, code="provider_unavailable")


class TransientUploadFailure(StorageError):
    """Raised when an upload failed in a way that may succeed on retry."""

    def __init__(
        self,
        message: str = "Upload failed",
        provider: str | None = None,
        cause: BaseException | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message, provider, code="transient_upload_failure", cause=cause)
        self.status_code = status_code


class DeleteFailed(StorageError):
    """Raised when a provider could not delete an object."""

    def __init__(
        self,
        message: str = "Delete failed",
        provider: str | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message, provider, code="delete_failed", cause=cause)


class ImmutableBackendViolation(StorageError):
    """Raised when a delete is attempted on a write-once backend."""

    def __init__(
        self,
        message: str = "Backend is immutable; stored data cannot be deleted",
        provider: str | None = None,
    ):
        super().__init__(message, provider, code="immutable_backend")


# =============================================================================
# Manager-level errors
# =============================================================================


class UploadError(StorageError):
    """Raised when an upload exhausted its retries and every fallback."""

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        cause: BaseException | None = None,
        attempts: int = 0,
    ):
        super().__init__(message, provider, code="upload_failed", cause=cause)
        self.attempts = attempts


class UploadTimeout(UploadError):
    """Raised when an upload exceeded the caller's deadline.

    ``late_result`` holds the result of an attempt that was already in flight
    when the deadline passed and completed anyway, so the caller can clean up
    the object it created.
    """

    def __init__(
        self,
        message: str = "Upload deadline exceeded",
        provider: str | None = None,
        timeout: float | None = None,
        late_result: Any = None,
    ):
        super().__init__(message, provider)
        self.code = "upload_timeout"
        self.timeout = timeout
        self.late_result = late_result

    def __str__(self) -> str:
        base = super().__str__()
        if self.timeout is not None:
            return f"{base} after {self.timeout}s"
        return base


class AggregateUploadError(StorageError):
    """Raised when every backend of a replicated upload failed."""

    def __init__(
        self,
        errors: list[StorageError],
        message: str = "All storage backends failed",
    ):
        super().__init__(message, code="all_backends_failed")
        self.errors = errors

    def __str__(self) -> str:
        causes = "; ".join(str(e) for e in self.errors)
        return f"{super().__str__()}: {causes}" if causes else super().__str__()


class DeleteErrorKind(str, Enum):
    """Classification of a failed delete."""

    IMMUTABLE = "immutable"
    TRANSIENT = "transient"


class DeleteError(StorageError):
    """Raised by the manager when a backend delete failed."""

    def __init__(
        self,
        message: str,
        provider: str | None,
        key: str,
        kind: DeleteErrorKind,
        cause: BaseException | None = None,
    ):
        super().__init__(message, provider, code=f"delete_{kind.value}", cause=cause)
        self.key = key
        self.kind = kind

    @property
    def is_immutable(self) -> bool:
        return self.kind == DeleteErrorKind.IMMUTABLE
