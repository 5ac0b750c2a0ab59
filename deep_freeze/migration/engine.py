import asyncio
import logging
import random
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, TypeVar

from ..auth.google_drive import GoogleDriveAuthProvider
from ..config import EngineSettings
from ..sources.google_drive import GoogleDriveClient
from ..targets.s3_archive import S3ArchiveClient
from ..utils.exceptions import AuthenticationError, MigratorError, RateLimitError
from ..utils.paths import destination_key, staging_path
from .catalog import CatalogBuilder, CatalogResult
from .downloader import ResumableDownloader
from .state import FileRecord, StateStore, StoreSummary
from .uploader import ChunkedUploader
from .verifier import (
    ConsistencyVerifier,
    Verification,
    VerificationOutcome,
    discard_staged,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RecordOutcome(Enum):
    MIGRATED = "migrated"
    ALREADY_MIGRATED = "already_migrated"
    NEEDS_TRANSFER = "needs_transfer"
    FAILED = "failed"


class StopReason(Enum):
    COMPLETE = "complete"
    CHECK_ONLY = "check_only"
    NO_PROGRESS = "no_progress"
    MAX_PASSES = "max_passes"


@dataclass
class RunResult:
    passes: int
    stop_reason: StopReason
    summary: StoreSummary
    outcomes: Dict[str, int] = field(default_factory=dict)

    @property
    def completed(self) -> bool:
        return self.summary.total == self.summary.migrated


class MigrationEngine:
    """Drives every cataloged record to the archive, one verified step at a time.

    Each record is verified before anything is transferred, because both the
    archive and the staging directory may have changed since the last run.
    """

    def __init__(
        self,
        drive_client: GoogleDriveClient,
        storage_client: S3ArchiveClient,
        state: StateStore,
        settings: EngineSettings,
        auth_provider: Optional[GoogleDriveAuthProvider] = None,
    ) -> None:
        self._drive_client = drive_client
        self._storage_client = storage_client
        self._state = state
        self._settings = settings
        self._auth_provider = auth_provider
        self._downloader = ResumableDownloader(drive_client, on_bytes=self._notify_bytes)
        self._uploader = ChunkedUploader(storage_client, on_bytes=self._notify_bytes)
        self._verifier = ConsistencyVerifier(storage_client, state)
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._outcomes: Dict[str, int] = {}
        self._on_progress: Optional[Callable[[str, RecordOutcome], None]] = None
        self._on_bytes: Optional[Callable[[int], None]] = None

    @property
    def settings(self) -> EngineSettings:
        return self._settings

    def set_progress_callback(
        self, callback: Callable[[str, RecordOutcome], None]
    ) -> None:
        self._on_progress = callback

    def set_bytes_callback(self, callback: Callable[[int], None]) -> None:
        self._on_bytes = callback

    def _get_semaphore(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._settings.concurrency)
        return self._semaphore

    def _reset_run_state(self) -> None:
        self._semaphore = None
        self._outcomes = {outcome.value: 0 for outcome in RecordOutcome}

    def catalog(self, on_page: Optional[Callable[[int, int], None]] = None) -> CatalogResult:
        builder = CatalogBuilder(self._drive_client, self._state, on_page=on_page)
        return builder.build(self._settings.base_folder_id)

    def eligible_records(self) -> List[FileRecord]:
        return self._state.get_eligible_records(exclude_ids=self._settings.skip_ids)

    async def run(self) -> RunResult:
        self._reset_run_state()
        passes = 0
        previous: Optional[Tuple[Tuple[str, int], ...]] = None
        stop_reason: Optional[StopReason] = None

        for skipped_id in sorted(self._settings.skip_ids):
            logger.info("Skipping %s on operator request", skipped_id)

        while passes < self._settings.max_passes:
            records = await asyncio.to_thread(self.eligible_records)
            if not records:
                stop_reason = StopReason.COMPLETE
                break

            snapshot = tuple((r.source_id, int(r.status)) for r in records)
            if snapshot == previous:
                logger.error(
                    "No progress in the last pass, %d files still unmigrated",
                    len(records),
                )
                stop_reason = StopReason.NO_PROGRESS
                break
            previous = snapshot

            passes += 1
            logger.info("Pass %d: %d files to check", passes, len(records))
            await asyncio.gather(*(self._process_with_semaphore(r) for r in records))

            if self._settings.check_only:
                stop_reason = StopReason.CHECK_ONLY
                break

        if stop_reason is None:
            remaining = await asyncio.to_thread(self.eligible_records)
            stop_reason = StopReason.COMPLETE if not remaining else StopReason.MAX_PASSES
            if remaining:
                logger.error(
                    "Stopped after %d passes with %d files unmigrated",
                    passes,
                    len(remaining),
                )

        summary = await asyncio.to_thread(self._state.get_summary)
        return RunResult(
            passes=passes,
            stop_reason=stop_reason,
            summary=summary,
            outcomes=dict(self._outcomes),
        )

    async def _process_with_semaphore(self, record: FileRecord) -> None:
        async with self._get_semaphore():
            outcome = await self.process_record(record)
        self._outcomes[outcome.value] = self._outcomes.get(outcome.value, 0) + 1
        self._notify_progress(record.source_path, outcome)

    async def process_record(self, record: FileRecord) -> RecordOutcome:
        key = destination_key(record.source_path, self._settings.key_prefix)
        local_path = staging_path(self._settings.temp_dir, record.source_id)

        if self._auth_provider is not None and not self._settings.check_only:
            await asyncio.to_thread(self._auth_provider.refresh_if_needed)

        logger.info("Migrating %s (%s)", record.source_path, record.source_id)
        verification = await self._verify(record, key, local_path)
        if verification is None:
            return RecordOutcome.FAILED
        if verification.outcome == VerificationOutcome.MATCHED:
            return RecordOutcome.ALREADY_MIGRATED
        if self._settings.check_only:
            return RecordOutcome.NEEDS_TRANSFER

        try:
            download = await self._call_with_retry(
                "download", self._downloader.download, record.source_id, local_path
            )
        except AuthenticationError:
            raise
        except (MigratorError, OSError) as e:
            await self._mark_failed(record, f"Download failed: {e}")
            return RecordOutcome.FAILED
        if download.was_complete:
            logger.info("Using staged copy of %s", record.source_path)
        await asyncio.to_thread(
            self._state.set_local,
            record.source_id,
            str(local_path),
            download.resumed_from + download.bytes_written,
        )

        try:
            await self._call_with_retry("upload", self._uploader.upload, local_path, key)
        except AuthenticationError:
            raise
        except (MigratorError, OSError) as e:
            await self._mark_failed(record, f"Upload failed: {e}")
            return RecordOutcome.FAILED

        verification = await self._verify(record, key, local_path)
        if verification is None:
            return RecordOutcome.FAILED
        if verification.outcome == VerificationOutcome.MATCHED:
            return RecordOutcome.MIGRATED

        await asyncio.to_thread(discard_staged, local_path)
        await asyncio.to_thread(self._state.set_local, record.source_id, None, None)
        await self._mark_failed(
            record,
            f"Archived object {key} did not match after upload "
            f"({verification.outcome.value})",
        )
        return RecordOutcome.FAILED

    async def _verify(
        self, record: FileRecord, key: str, local_path: Path
    ) -> Optional[Verification]:
        try:
            verification: Verification = await asyncio.to_thread(
                self._verifier.verify, record, key, local_path
            )
            return verification
        except AuthenticationError:
            raise
        except MigratorError as e:
            logger.error("Could not check %s: %s", record.source_path, e)
            await asyncio.to_thread(self._state.set_skip, record.source_id)
            return None

    async def _call_with_retry(
        self, description: str, fn: Callable[..., T], *args: Any
    ) -> T:
        attempts = max(self._settings.retry_attempts, 0) + 1
        last_error: Optional[RateLimitError] = None
        for attempt in range(attempts):
            if last_error is not None:
                delay = last_error.retry_after or self._settings.retry_delay_seconds * (
                    2 ** (attempt - 1)
                )
                delay += random.uniform(0, 1)
                logger.warning(
                    "Rate limited during %s (attempt %d/%d), retrying in %.1fs",
                    description,
                    attempt,
                    attempts,
                    delay,
                )
                await asyncio.sleep(delay)
            try:
                return await asyncio.to_thread(fn, *args)
            except RateLimitError as e:
                last_error = e

        assert last_error is not None
        raise last_error

    async def _mark_failed(self, record: FileRecord, error: str) -> None:
        logger.error("%s: %s", record.source_path, error)
        await asyncio.to_thread(self._state.set_needs_transfer, record.source_id)
        await asyncio.to_thread(self._state.set_skip, record.source_id)

    def _notify_progress(self, source_path: str, outcome: RecordOutcome) -> None:
        if self._on_progress:
            self._on_progress(source_path, outcome)

    def _notify_bytes(self, count: int) -> None:
        if self._on_bytes:
            self._on_bytes(count)

    def get_summary(self) -> StoreSummary:
        return self._state.get_summary()
