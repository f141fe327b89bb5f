from enum import Enum


class ErrorType(str, Enum):
    AUDIO_VALIDATION = "audio_validation"
    DATABASE = "database"
    CLOUDFLARE_R2 = "cloudflare_r2"
    NETWORK = "network"
    TIMEOUT = "timeout"
    FILE_SIZE = "file_size"
    FILE_FORMAT = "file_format"
    UNKNOWN = "unknown"


class IngestError(Exception):
    """Base class for per-file ingest failures. Subclasses fix the category."""

    error_type = ErrorType.UNKNOWN


class AudioValidationError(IngestError):
    error_type = ErrorType.AUDIO_VALIDATION


class FileFormatError(IngestError):
    error_type = ErrorType.FILE_FORMAT


class StorageError(IngestError):
    error_type = ErrorType.CLOUDFLARE_R2


class ObjectNotFound(StorageError):
    pass


class NetworkError(IngestError):
    error_type = ErrorType.NETWORK


class IngestTimeout(IngestError):
    error_type = ErrorType.TIMEOUT


class DatabaseError(IngestError):
    error_type = ErrorType.DATABASE

    def __init__(self, message: str, transient: bool = False):
        super().__init__(message)
        self.transient = transient


class MetadataError(Exception):
    """Raised by the extractor when a buffer cannot be parsed at all."""
