from .paths import (
    destination_key,
    disambiguate_path,
    format_bytes,
    join_source_path,
    sanitize_name,
    staging_path,
)
from .logger import setup_logging, get_logger, DEFAULT_LOG_DIR, DEFAULT_LOG_FORMAT
from .exceptions import (
    MigratorError,
    ConfigurationError,
    AuthenticationError,
    RateLimitError,
    DownloadError,
    UploadError,
    IntegrityError,
    ProtocolLimitError,
    EmptyFileError,
    ChunkCountExceededError,
    FileTooLargeError,
    StateStoreError,
)

__all__ = [
    "destination_key",
    "disambiguate_path",
    "format_bytes",
    "join_source_path",
    "sanitize_name",
    "staging_path",
    "setup_logging",
    "get_logger",
    "DEFAULT_LOG_DIR",
    "DEFAULT_LOG_FORMAT",
    "MigratorError",
    "ConfigurationError",
    "AuthenticationError",
    "RateLimitError",
    "DownloadError",
    "UploadError",
    "IntegrityError",
    "ProtocolLimitError",
    "EmptyFileError",
    "ChunkCountExceededError",
    "FileTooLargeError",
    "StateStoreError",
]
