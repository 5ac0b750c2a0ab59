import logging
import shutil
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from ..targets.s3_archive import S3ArchiveClient
from .state import FileRecord, MigrationStatus, StateStore

logger = logging.getLogger(__name__)


class VerificationOutcome(Enum):
    MATCHED = "matched"
    MISSING = "missing"
    MISMATCHED = "mismatched"


@dataclass
class Verification:
    outcome: VerificationOutcome
    key: str
    destination_size: Optional[int] = None

    @property
    def status(self) -> MigrationStatus:
        if self.outcome == VerificationOutcome.MATCHED:
            return MigrationStatus.MIGRATED
        return MigrationStatus.NEEDS_TRANSFER


def discard_staged(local_path: Path) -> bool:
    if local_path.is_dir():
        shutil.rmtree(local_path)
        return True
    if local_path.exists():
        local_path.unlink()
        logger.debug("Deleted staged copy %s", local_path)
        return True
    return False


class ConsistencyVerifier:
    """Reconciles a record's status with what is actually in the archive.

    Only sizes are compared; the recorded content hash is not checked.
    Destination errors other than a missing object propagate to the caller.
    """

    def __init__(self, storage_client: S3ArchiveClient, state: StateStore) -> None:
        self._storage_client = storage_client
        self._state = state

    def verify(
        self, record: FileRecord, key: str, local_path: Optional[Path] = None
    ) -> Verification:
        logger.info("Checking migration status for %s", record.source_path)
        size = self._storage_client.get_object_size(key)

        if size is None:
            logger.info("Not found: %s", self._storage_client.get_url(key))
            self._state.set_needs_transfer(record.source_id)
            return Verification(VerificationOutcome.MISSING, key)

        if size == record.source_size:
            logger.info("Sizes match on source and archive for %s", record.source_path)
            self._state.set_migrated(record.source_id, key, size)
            if local_path is not None and discard_staged(local_path):
                self._state.set_local(record.source_id, None, None)
            return Verification(VerificationOutcome.MATCHED, key, size)

        logger.warning(
            "%s exists in the archive with the wrong size (source %d, archive %d)",
            key,
            record.source_size,
            size,
        )
        self._storage_client.delete_object(key)
        self._state.set_needs_transfer(record.source_id)
        return Verification(VerificationOutcome.MISMATCHED, key, size)
