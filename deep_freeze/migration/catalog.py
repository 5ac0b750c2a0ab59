import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from ..sources.google_drive import DriveFile, GoogleDriveClient
from ..utils.paths import disambiguate_path
from .state import StateStore

logger = logging.getLogger(__name__)


@dataclass
class CatalogResult:
    pages: int = 0
    files_seen: int = 0
    files_added: int = 0
    renamed: int = 0
    skipped_existing: bool = False


class CatalogBuilder:
    """Populates an empty state store from the source listing, once.

    Drive allows several files with the same name in one folder, and name
    sanitizing can fold distinct names together. Every cataloged path must map
    to its own archive key, so a path that is already taken by another file is
    tagged with that file's id.
    """

    def __init__(
        self,
        drive_client: GoogleDriveClient,
        state: StateStore,
        on_page: Optional[Callable[[int, int], None]] = None,
    ) -> None:
        self._drive_client = drive_client
        self._state = state
        self._on_page = on_page
        self._paths: Dict[str, str] = {}
        self._ids: Dict[str, str] = {}

    def _unique_path(self, entry: DriveFile, result: CatalogResult) -> str:
        path = entry.path
        while self._paths.get(path, entry.id) != entry.id:
            path = disambiguate_path(path, entry.id)
        if path != entry.path:
            result.renamed += 1
            logger.warning(
                "%s (%s) shares its path with another file, cataloged as %s",
                entry.path,
                entry.id,
                path,
            )
        self._paths[path] = entry.id
        self._ids[entry.id] = path
        return path

    def _page_rows(
        self, entries: List[DriveFile], result: CatalogResult
    ) -> List[Tuple[str, str, int, Optional[str]]]:
        rows = []
        for entry in entries:
            if entry.id in self._ids:
                continue
            path = self._unique_path(entry, result)
            rows.append((entry.id, path, entry.size, entry.md5_checksum))
        return rows

    def build(self, folder_id: str) -> CatalogResult:
        result = CatalogResult()
        if self._state.count_rows() > 0:
            logger.info("File list already populated, not re-listing the source")
            result.skipped_existing = True
            return result

        logger.info("File list empty, populating from folder %s", folder_id)
        self._paths.clear()
        self._ids.clear()
        cursor: Optional[str] = None
        while True:
            page = self._drive_client.list_folder(
                folder_id, recursive=True, cursor=cursor
            )
            result.pages += 1
            result.files_seen += len(page.entries)
            result.files_added += self._state.insert_records(
                self._page_rows(page.entries, result)
            )
            logger.debug(
                "Listing page %d: %d files (%d total)",
                result.pages,
                len(page.entries),
                result.files_seen,
            )
            if self._on_page:
                self._on_page(result.pages, result.files_seen)

            if not page.has_more:
                break
            cursor = page.cursor

        logger.info(
            "Cataloged %d files in %d pages", result.files_added, result.pages
        )
        return result
