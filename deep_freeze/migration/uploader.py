import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from ..targets.s3_archive import S3ArchiveClient, UploadedPart
from ..utils.exceptions import FileTooLargeError
from .chunking import MAX_UPLOAD_SIZE, MIN_CHUNK_SIZE, plan_chunks

logger = logging.getLogger(__name__)


@dataclass
class UploadResult:
    key: str
    size: int
    multipart: bool = False
    parts_uploaded: int = 0
    parts_reused: int = 0
    upload_id: Optional[str] = None


class ChunkedUploader:
    """Archives a staged file as one object, in parts when it is large.

    A failed multipart upload is left open so the next attempt can pick up the
    parts that already landed.
    """

    def __init__(
        self,
        storage_client: S3ArchiveClient,
        multipart_threshold: int = MIN_CHUNK_SIZE,
        on_bytes: Optional[Callable[[int], None]] = None,
    ) -> None:
        self._storage_client = storage_client
        self._multipart_threshold = max(multipart_threshold, MIN_CHUNK_SIZE)
        self._on_bytes = on_bytes

    def upload(self, local_path: Path, key: str) -> UploadResult:
        size = local_path.stat().st_size
        if size >= MAX_UPLOAD_SIZE:
            raise FileTooLargeError(
                f"{local_path} is {size} bytes, the archive limit is {MAX_UPLOAD_SIZE}",
                size=size,
            )

        if size < self._multipart_threshold:
            logger.info("Uploading %s to %s", local_path, key)
            self._storage_client.put_object(key, local_path)
            self._report(size)
            return UploadResult(key=key, size=size, parts_uploaded=1)

        return self._upload_multipart(local_path, key, size)

    def _upload_multipart(self, local_path: Path, key: str, size: int) -> UploadResult:
        plan = plan_chunks(size)
        result = UploadResult(key=key, size=size, multipart=True)

        upload_id = self._storage_client.find_multipart_upload(key)
        existing: Dict[int, UploadedPart] = {}
        if upload_id is not None:
            existing = self._storage_client.list_parts(key, upload_id)
            logger.info(
                "Resuming multipart upload %s for %s (%d parts already present)",
                upload_id,
                key,
                len(existing),
            )
        else:
            upload_id = self._storage_client.create_multipart_upload(key)
        result.upload_id = upload_id

        logger.info(
            "Uploading %s in %d chunks of %d bytes", key, plan.chunk_count, plan.chunk_size
        )
        parts: List[UploadedPart] = []
        with local_path.open("rb") as handle:
            for part_number, offset, length in plan.ranges():
                present = existing.get(part_number)
                if present is not None and present.size == length:
                    parts.append(present)
                    result.parts_reused += 1
                    self._report(length)
                    continue

                handle.seek(offset)
                body = handle.read(length)
                logger.debug(
                    "Uploading chunk %d of %d for %s", part_number, plan.chunk_count, key
                )
                etag = self._storage_client.upload_part(key, upload_id, part_number, body)
                parts.append(UploadedPart(part_number=part_number, etag=etag, size=length))
                result.parts_uploaded += 1
                self._report(length)

        self._storage_client.complete_multipart_upload(key, upload_id, parts)
        logger.info("Done uploading %s", key)
        return result

    def _report(self, count: int) -> None:
        if self._on_bytes:
            self._on_bytes(count)
