import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..sources.google_drive import GoogleDriveClient
from ..utils.exceptions import IntegrityError

logger = logging.getLogger(__name__)


@dataclass
class DownloadResult:
    local_path: Path
    expected_size: int
    resumed_from: int = 0
    bytes_written: int = 0

    @property
    def was_complete(self) -> bool:
        return self.bytes_written == 0 and self.resumed_from == self.expected_size


class ResumableDownloader:
    """Stages a source file locally, continuing any partial earlier download.

    A staged file is trusted by size only; its content is never re-hashed.
    """

    def __init__(
        self,
        drive_client: GoogleDriveClient,
        on_bytes: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._drive_client = drive_client
        self._on_bytes = on_bytes

    def _prepare(self, local_path: Path, expected_size: int) -> int:
        """Return the offset to resume from, clearing anything unusable."""
        if local_path.is_dir():
            logger.info("Staging path %s is a directory, erasing it", local_path)
            shutil.rmtree(local_path)
            return 0

        if not local_path.exists():
            local_path.parent.mkdir(parents=True, exist_ok=True)
            return 0

        existing = local_path.stat().st_size
        if existing > expected_size:
            logger.warning(
                "Staged file %s is larger than the source (%d > %d), starting over",
                local_path,
                existing,
                expected_size,
            )
            local_path.unlink()
            return 0
        return existing

    def download(
        self, file_id: str, local_path: Path, expected_size: Optional[int] = None
    ) -> DownloadResult:
        if expected_size is None:
            expected_size = self._drive_client.get_metadata(file_id).size

        offset = self._prepare(local_path, expected_size)
        result = DownloadResult(
            local_path=local_path,
            expected_size=expected_size,
            resumed_from=offset,
        )

        if offset == expected_size:
            if not local_path.exists():
                local_path.touch()
            logger.info("Already staged: %s (%d bytes)", local_path, expected_size)
            return result

        if offset:
            logger.info("Resuming %s from byte %d of %d", file_id, offset, expected_size)
        else:
            logger.info("Downloading %s (%d bytes)", file_id, expected_size)

        mode = "ab" if offset else "wb"
        with local_path.open(mode) as handle:
            handle.seek(offset)
            for chunk in self._drive_client.download(file_id, start=offset):
                handle.write(chunk)
                result.bytes_written += len(chunk)
                if self._on_bytes:
                    self._on_bytes(len(chunk))

        total = offset + result.bytes_written
        if total != expected_size:
            raise IntegrityError(
                f"Staged {total} bytes for {file_id}, expected {expected_size}",
                expected_size=expected_size,
                actual_size=total,
            )

        logger.info("Finished downloading %s to %s", file_id, local_path)
        return result
