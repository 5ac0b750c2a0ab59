"""Custom exception classes for deep-freeze."""

from typing import Optional


class MigratorError(Exception):
    """Base exception class for all migrator errors."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class ConfigurationError(MigratorError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, message: str, config_key: Optional[str] = None) -> None:
        self.config_key = config_key
        super().__init__(message)


class AuthenticationError(MigratorError):
    """Raised when authentication fails (Google Drive or AWS).

    Never handled per file: it aborts the whole run.
    """

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        self.provider = provider
        super().__init__(message)


class RateLimitError(MigratorError):
    """Raised when API rate limit is exceeded. This error is retryable."""

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        self.retry_after = retry_after
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        return True


class DownloadError(MigratorError):
    """Raised when a Google Drive listing, metadata or download call fails."""

    def __init__(
        self,
        message: str,
        file_id: Optional[str] = None,
        path: Optional[str] = None,
    ) -> None:
        self.file_id = file_id
        self.path = path
        super().__init__(message)


class UploadError(MigratorError):
    """Raised when an S3 call fails for a reason other than authentication."""

    def __init__(
        self,
        message: str,
        bucket: Optional[str] = None,
        key: Optional[str] = None,
    ) -> None:
        self.bucket = bucket
        self.key = key
        super().__init__(message)


class IntegrityError(MigratorError):
    """Raised when a staged file does not hold the expected number of bytes."""

    def __init__(
        self,
        message: str,
        expected_size: Optional[int] = None,
        actual_size: Optional[int] = None,
    ) -> None:
        self.expected_size = expected_size
        self.actual_size = actual_size
        super().__init__(message)


class ProtocolLimitError(MigratorError):
    """Raised when a file cannot be archived within the destination's limits."""

    def __init__(self, message: str, size: Optional[int] = None) -> None:
        self.size = size
        super().__init__(message)


class EmptyFileError(ProtocolLimitError):
    """Raised when a chunk plan is requested for a zero-byte file."""


class ChunkCountExceededError(ProtocolLimitError):
    """Raised when a file would need more parts than a multipart upload allows."""

    def __init__(
        self,
        message: str,
        size: Optional[int] = None,
        chunk_count: Optional[int] = None,
    ) -> None:
        self.chunk_count = chunk_count
        super().__init__(message, size=size)


class FileTooLargeError(ProtocolLimitError):
    """Raised when a file exceeds the maximum archive object size."""


class StateStoreError(MigratorError):
    """Raised when the local state database cannot be read or written."""

    def __init__(self, message: str, db_path: Optional[str] = None) -> None:
        self.db_path = db_path
        super().__init__(message)
