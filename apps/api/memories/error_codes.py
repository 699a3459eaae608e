"""Structured error codes for memory uploads, storage and derivatives."""

from enum import Enum

from packages.shared.storage.errors import (
    AggregateUploadError,
    DeleteError,
    ProviderUnavailable,
    UploadError,
    UploadTimeout,
)


class MemoryErrorCode(str, Enum):
    """
    Error codes reported per file and per asset.

    Categories:
    - VALIDATION_*: Rejected before any upload
    - IDENTITY_*: Caller could not be resolved
    - STORAGE_*: Provider failures after retries/fallback
    - RECORD_*: Database failures after a successful upload
    - DERIVATIVE_*: Background variant generation
    - DELETE_*: Physical cleanup
    """

    # --- Validation Errors ---
    EMPTY_FILE = "empty_file"
    FILE_TOO_LARGE = "file_too_large"
    UNSUPPORTED_MIME_TYPE = "unsupported_mime_type"
    CONTENT_MISMATCH = "content_mismatch"
    TOO_MANY_FILES = "too_many_files"

    # --- Identity Errors ---
    IDENTITY_REQUIRED = "identity_required"

    # --- Storage Errors ---
    STORAGE_UNAVAILABLE = "storage_unavailable"
    STORAGE_UPLOAD_FAILED = "storage_upload_failed"
    STORAGE_TIMEOUT = "storage_timeout"
    STORAGE_ALL_BACKENDS_FAILED = "storage_all_backends_failed"

    # --- Record Errors ---
    RECORD_CREATION_FAILED = "record_creation_failed"

    # --- Derivative Errors ---
    DERIVATIVE_SOURCE_UNAVAILABLE = "derivative_source_unavailable"
    DERIVATIVE_DECODE_FAILED = "derivative_decode_failed"
    DERIVATIVE_UPLOAD_FAILED = "derivative_upload_failed"
    DERIVATIVE_EXPIRED = "expired"

    # --- Delete Errors ---
    DELETE_IMMUTABLE = "delete_immutable"
    DELETE_FAILED = "delete_failed"

    # --- Unclassified ---
    INTERNAL_ERROR = "internal_error"


# Human-readable error messages
ERROR_MESSAGES: dict[MemoryErrorCode, str] = {
    # Validation
    MemoryErrorCode.EMPTY_FILE: "File is empty",
    MemoryErrorCode.FILE_TOO_LARGE: "File exceeds the size limit for its media type",
    MemoryErrorCode.UNSUPPORTED_MIME_TYPE: "File type is not supported",
    MemoryErrorCode.CONTENT_MISMATCH: "File content does not match its declared type",
    MemoryErrorCode.TOO_MANY_FILES: "Too many files in one upload",
    # Identity
    MemoryErrorCode.IDENTITY_REQUIRED: "Could not resolve the uploading user",
    # Storage
    MemoryErrorCode.STORAGE_UNAVAILABLE: "No storage backend is available",
    MemoryErrorCode.STORAGE_UPLOAD_FAILED: "Upload to storage failed after retries",
    MemoryErrorCode.STORAGE_TIMEOUT: "Upload did not finish before the deadline",
    MemoryErrorCode.STORAGE_ALL_BACKENDS_FAILED: "Upload failed on every selected backend",
    # Record
    MemoryErrorCode.RECORD_CREATION_FAILED: "File was stored but the memory record could not be created",
    # Derivatives
    MemoryErrorCode.DERIVATIVE_SOURCE_UNAVAILABLE: "Original file could not be read back",
    MemoryErrorCode.DERIVATIVE_DECODE_FAILED: "Original file could not be decoded as an image",
    MemoryErrorCode.DERIVATIVE_UPLOAD_FAILED: "Derived file could not be stored",
    MemoryErrorCode.DERIVATIVE_EXPIRED: "Processing did not finish in time",
    # Delete
    MemoryErrorCode.DELETE_IMMUTABLE: "Backend is immutable; object remains stored",
    MemoryErrorCode.DELETE_FAILED: "Backend object could not be deleted",
    # Unclassified
    MemoryErrorCode.INTERNAL_ERROR: "Unexpected internal error",
}


def get_error_message(code: MemoryErrorCode, detail: str | None = None) -> str:
    """
    Get human-readable error message for an error code.

    Args:
        code: The error code
        detail: Optional additional detail to append

    Returns:
        Human-readable error message
    """
    base_message = ERROR_MESSAGES.get(code, f"Unknown error: {code}")
    if detail:
        return f"{base_message}: {detail}"
    return base_message


def classify_storage_error(exc: BaseException) -> MemoryErrorCode:
    """Map a storage exception to the most specific error code."""
    if isinstance(exc, UploadTimeout):
        return MemoryErrorCode.STORAGE_TIMEOUT
    if isinstance(exc, AggregateUploadError):
        return MemoryErrorCode.STORAGE_ALL_BACKENDS_FAILED
    if isinstance(exc, UploadError):
        if isinstance(exc.cause, ProviderUnavailable):
            return MemoryErrorCode.STORAGE_UNAVAILABLE
        return MemoryErrorCode.STORAGE_UPLOAD_FAILED
    if isinstance(exc, ProviderUnavailable):
        return MemoryErrorCode.STORAGE_UNAVAILABLE
    if isinstance(exc, DeleteError):
        return MemoryErrorCode.DELETE_IMMUTABLE if exc.is_immutable else MemoryErrorCode.DELETE_FAILED
    return MemoryErrorCode.INTERNAL_ERROR
