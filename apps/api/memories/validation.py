"""
Media validation for memory uploads.

Checks, in order:
1. Declared MIME type is on the allow-list
2. Size is within the ceiling for the media class
3. For binary classes, sniffed magic bytes belong to the declared class
   (text types are exempt from sniffing)
"""

from dataclasses import dataclass
from enum import Enum

from apps.api.config import Settings
from apps.api.memories.error_codes import MemoryErrorCode, get_error_message
from db.models.memory import MemoryType
from packages.shared.storage.base import FileUpload

MB = 1024 * 1024


class MediaClass(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    DOCUMENT = "document"


# Accepted MIME types per media class
ACCEPTED_MIME_TYPES: dict[MediaClass, frozenset[str]] = {
    MediaClass.IMAGE: frozenset(
        {
            "image/jpeg",
            "image/png",
            "image/gif",
            "image/webp",
            "image/tiff",
        }
    ),
    MediaClass.DOCUMENT: frozenset(
        {
            "application/pdf",
            "application/msword",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "application/rtf",
            "application/epub+zip",
            "application/vnd.oasis.opendocument.text",
            "text/plain",
            "text/markdown",
            "text/x-markdown",
            "text/x-org",
        }
    ),
    MediaClass.VIDEO: frozenset(
        {
            "video/mp4",
            "video/quicktime",
            "video/x-msvideo",
            "video/webm",
        }
    ),
    MediaClass.AUDIO: frozenset(
        {
            "audio/mpeg",
            "audio/wav",
            "audio/x-wav",
            "audio/ogg",
            "audio/flac",
        }
    ),
}

MEMORY_TYPE_BY_CLASS: dict[MediaClass, MemoryType] = {
    MediaClass.IMAGE: MemoryType.IMAGE,
    MediaClass.VIDEO: MemoryType.VIDEO,
    MediaClass.AUDIO: MemoryType.AUDIO,
    MediaClass.DOCUMENT: MemoryType.DOCUMENT,
}

# Magic bytes checked at offset 0
JPEG_MAGIC = b"\xff\xd8\xff"
PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
GIF_MAGICS = (b"GIF87a", b"GIF89a")
TIFF_MAGICS = (b"II*\x00", b"MM\x00*")
PDF_MAGIC = b"%PDF-"
ZIP_MAGIC = b"PK\x03\x04"
OLE_MAGIC = b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1"  # Legacy .doc
RTF_MAGIC = b"{\\rtf"
WEBM_MAGIC = b"\x1a\x45\xdf\xa3"
OGG_MAGIC = b"OggS"
FLAC_MAGIC = b"fLaC"
ID3_MAGIC = b"ID3"
MP3_FRAME_MAGICS = (b"\xff\xfb", b"\xff\xf3", b"\xff\xf2")


class ValidationFailure(Exception):
    """Raised when a file is rejected before upload. Never retried."""

    def __init__(self, code: MemoryErrorCode, detail: str | None = None):
        self.code = code
        self.detail = detail
        self.message = get_error_message(code, detail)
        super().__init__(self.message)


@dataclass
class ValidatedFile:
    """A file that passed validation, with its classification."""

    file: FileUpload
    media_class: MediaClass
    memory_type: MemoryType
    detected_mime: str | None


def media_class_for(mime_type: str) -> MediaClass | None:
    """Return the media class of an accepted MIME type, or None."""
    for media_class, accepted in ACCEPTED_MIME_TYPES.items():
        if mime_type in accepted:
            return media_class
    return None


def class_of_detected(mime_type: str) -> MediaClass:
    """Class a sniffed MIME type belongs to (anything non-media counts as a document)."""
    prefix = mime_type.split("/", 1)[0]
    if prefix in ("image", "video", "audio"):
        return MediaClass(prefix)
    return MediaClass.DOCUMENT


def detect_mime_type(content: bytes, sample_size: int = 4096) -> str | None:
    """
    Detect a MIME type by inspecting magic bytes.

    Args:
        content: File content bytes
        sample_size: How many bytes to inspect

    Returns:
        Detected MIME type or None if unknown
    """
    sample = content[:sample_size]

    if sample.startswith(JPEG_MAGIC):
        return "image/jpeg"
    if sample.startswith(PNG_MAGIC):
        return "image/png"
    if sample.startswith(GIF_MAGICS):
        return "image/gif"
    if sample.startswith(TIFF_MAGICS):
        return "image/tiff"

    # RIFF container: WEBP image, AVI video or WAVE audio
    if sample.startswith(b"RIFF") and len(sample) >= 12:
        form = sample[8:12]
        if form == b"WEBP":
            return "image/webp"
        if form == b"AVI ":
            return "video/x-msvideo"
        if form == b"WAVE":
            return "audio/wav"

    # ISO base media: brand decides QuickTime vs MP4
    if len(sample) >= 12 and sample[4:8] == b"ftyp":
        brand = sample[8:12]
        if brand == b"qt  ":
            return "video/quicktime"
        if brand in (b"M4A ", b"M4B "):
            return "audio/mp4"
        return "video/mp4"

    if sample.startswith(WEBM_MAGIC):
        return "video/webm"
    if sample.startswith(OGG_MAGIC):
        return "audio/ogg"
    if sample.startswith(FLAC_MAGIC):
        return "audio/flac"
    if sample.startswith(ID3_MAGIC) or sample.startswith(MP3_FRAME_MAGICS):
        return "audio/mpeg"

    if sample.startswith(PDF_MAGIC):
        return "application/pdf"
    if sample.startswith(RTF_MAGIC):
        return "application/rtf"
    if sample.startswith(OLE_MAGIC):
        return "application/msword"
    if sample.startswith(ZIP_MAGIC):
        if b"mimetypeapplication/epub+zip" in sample:
            return "application/epub+zip"
        if b"mimetypeapplication/vnd.oasis.opendocument.text" in sample:
            return "application/vnd.oasis.opendocument.text"
        if b"word/" in sample:
            return "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
        return "application/zip"

    return None


def size_limit_bytes(media_class: MediaClass, settings: Settings) -> int:
    """Size ceiling for a media class (video is allowed more than the rest)."""
    if media_class == MediaClass.VIDEO:
        return settings.max_video_size_mb * MB
    return settings.max_file_size_mb * MB


def validate_file(file: FileUpload, settings: Settings) -> ValidatedFile:
    """
    Validate a file before it is sent to storage.

    Args:
        file: Uploaded file
        settings: Application settings (size limits)

    Returns:
        ValidatedFile with media class and memory type

    Raises:
        ValidationFailure: If the file is empty, too large, of an unsupported
            type, or its content does not match the declared type
    """
    if file.size == 0:
        raise ValidationFailure(MemoryErrorCode.EMPTY_FILE, file.filename)

    declared = (file.content_type or "").split(";", 1)[0].strip().lower()
    media_class = media_class_for(declared)
    if media_class is None:
        raise ValidationFailure(MemoryErrorCode.UNSUPPORTED_MIME_TYPE, declared or "unknown")

    limit = size_limit_bytes(media_class, settings)
    if file.size > limit:
        raise ValidationFailure(
            MemoryErrorCode.FILE_TOO_LARGE,
            f"{file.size / MB:.1f}MB exceeds {limit // MB}MB for {media_class.value}",
        )

    # Text formats have no reliable signature
    if declared.startswith("text/"):
        return ValidatedFile(file, media_class, MEMORY_TYPE_BY_CLASS[media_class], None)

    detected = detect_mime_type(file.data)
    if detected is None or class_of_detected(detected) != media_class:
        raise ValidationFailure(
            MemoryErrorCode.CONTENT_MISMATCH,
            f"Invalid {media_class.value} file",
        )

    return ValidatedFile(file, media_class, MEMORY_TYPE_BY_CLASS[media_class], detected)
