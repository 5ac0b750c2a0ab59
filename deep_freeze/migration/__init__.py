from .catalog import CatalogBuilder, CatalogResult
from .chunking import ChunkPlan, plan_chunks
from .downloader import DownloadResult, ResumableDownloader
from .engine import MigrationEngine, RecordOutcome, RunResult, StopReason
from .state import FileRecord, MigrationStatus, StateStore, StoreSummary
from .uploader import ChunkedUploader, UploadResult
from .verifier import ConsistencyVerifier, Verification, VerificationOutcome

__all__ = [
    "CatalogBuilder",
    "CatalogResult",
    "ChunkPlan",
    "plan_chunks",
    "DownloadResult",
    "ResumableDownloader",
    "MigrationEngine",
    "RecordOutcome",
    "RunResult",
    "StopReason",
    "FileRecord",
    "MigrationStatus",
    "StateStore",
    "StoreSummary",
    "ChunkedUploader",
    "UploadResult",
    "ConsistencyVerifier",
    "Verification",
    "VerificationOutcome",
]
