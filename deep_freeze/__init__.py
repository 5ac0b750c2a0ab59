"""Deep Freeze - Migrate files from Google Drive to S3 Glacier Deep Archive."""

__version__ = "0.1.0"

from .config import ConfigManager, EngineSettings, build_settings
from .migration.engine import MigrationEngine, RecordOutcome, RunResult
from .migration.state import FileRecord, MigrationStatus, StateStore
from .migration.chunking import ChunkPlan, plan_chunks
from .auth import GoogleDriveAuthProvider
from .sources.google_drive import GoogleDriveClient
from .targets.s3_archive import S3ArchiveClient

__all__ = [
    "ConfigManager",
    "EngineSettings",
    "build_settings",
    "MigrationEngine",
    "RecordOutcome",
    "RunResult",
    "FileRecord",
    "MigrationStatus",
    "StateStore",
    "ChunkPlan",
    "plan_chunks",
    "GoogleDriveAuthProvider",
    "GoogleDriveClient",
    "S3ArchiveClient",
]
