import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, NoReturn, Optional, Tuple

import requests
from google.auth.transport.requests import AuthorizedSession
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from deep_freeze.utils.exceptions import (
    AuthenticationError,
    DownloadError,
    RateLimitError,
)
from deep_freeze.utils.paths import join_source_path

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
GOOGLE_APPS_MIME_PREFIX = "application/vnd.google-apps."
DRIVE_FILES_URL = "https://www.googleapis.com/drive/v3/files"
LIST_FIELDS = "nextPageToken, files(id, name, mimeType, size, md5Checksum, parents)"
METADATA_FIELDS = "id,name,mimeType,size,md5Checksum,parents"
PAGE_SIZE = 1000
DOWNLOAD_CHUNK_SIZE = 1024 * 1024
DOWNLOAD_TIMEOUT_SECONDS = 60


@dataclass
class DriveFile:
    id: str
    name: str
    mime_type: str
    size: int
    path: str = ""
    md5_checksum: Optional[str] = None
    parent_id: Optional[str] = None


@dataclass
class ListFolderPage:
    entries: List[DriveFile] = field(default_factory=list)
    has_more: bool = False
    cursor: Optional[str] = None


def _encode_cursor(queue: List[Tuple[str, str]], page_token: Optional[str]) -> str:
    return json.dumps({"queue": [list(item) for item in queue], "page_token": page_token})


def _decode_cursor(cursor: str) -> Tuple[List[Tuple[str, str]], Optional[str]]:
    try:
        data = json.loads(cursor)
        queue = [(str(folder_id), str(prefix)) for folder_id, prefix in data["queue"]]
        return queue, data.get("page_token")
    except (ValueError, KeyError, TypeError) as e:
        raise DownloadError(f"Invalid listing cursor: {e}") from e


class GoogleDriveClient:
    """Google Drive source: paginated listing, metadata and ranged downloads."""

    def __init__(self, credentials: Any) -> None:
        self._credentials = credentials
        self._service: Optional[Any] = None
        self._session: Optional[AuthorizedSession] = None

    def connect(self) -> None:
        self._service = build("drive", "v3", credentials=self._credentials)
        self._session = AuthorizedSession(self._credentials)
        logger.info("Connected to Google Drive API")

    def _ensure_connected(self) -> Any:
        if self._service is None:
            raise DownloadError("Not connected to Google Drive. Call connect() first.")
        return self._service

    def _ensure_session(self) -> AuthorizedSession:
        if self._session is None:
            raise DownloadError("Not connected to Google Drive. Call connect() first.")
        return self._session

    @staticmethod
    def _raise_for_status(
        status: int,
        detail: str,
        headers: Optional[Mapping[str, str]] = None,
        file_id: Optional[str] = None,
    ) -> NoReturn:
        if status == 429:
            retry_after = (headers or {}).get("retry-after")
            retry_seconds = float(retry_after) if retry_after else None
            raise RateLimitError(
                f"Google Drive API rate limit exceeded: {detail}",
                retry_after=retry_seconds,
            )

        if status in (401, 403):
            raise AuthenticationError(
                f"Google Drive authentication error ({status}): {detail}",
                provider="google_drive",
            )

        if status == 404:
            raise DownloadError(
                f"File not found in Google Drive: {detail}",
                file_id=file_id,
            )

        raise DownloadError(
            f"Google Drive API error ({status}): {detail}",
            file_id=file_id,
        )

    def _handle_http_error(
        self, error: HttpError, file_id: Optional[str] = None
    ) -> NoReturn:
        self._raise_for_status(error.resp.status, str(error), error.resp, file_id)

    def list_folder(
        self,
        folder_id: str,
        recursive: bool = True,
        cursor: Optional[str] = None,
    ) -> ListFolderPage:
        """Return one page of the (recursive) listing under ``folder_id``.

        Paths are relative to ``folder_id``. Pass the returned cursor back in to
        continue; ``folder_id`` is ignored once a cursor is given.
        """
        service = self._ensure_connected()
        if cursor is None:
            queue: List[Tuple[str, str]] = [(folder_id, "")]
            page_token: Optional[str] = None
        else:
            queue, page_token = _decode_cursor(cursor)

        if not queue:
            return ListFolderPage()

        current_id, prefix = queue[0]
        request_kwargs: Dict[str, Any] = {
            "q": f"'{current_id}' in parents and trashed=false",
            "fields": LIST_FIELDS,
            "pageSize": PAGE_SIZE,
            "supportsAllDrives": True,
            "includeItemsFromAllDrives": True,
        }
        if page_token:
            request_kwargs["pageToken"] = page_token

        try:
            response = service.files().list(**request_kwargs).execute()
        except HttpError as e:
            self._handle_http_error(e, file_id=current_id)

        entries: List[DriveFile] = []
        for file_data in response.get("files", []):
            mime_type = file_data.get("mimeType", "")
            path = join_source_path(prefix, file_data["name"])

            if mime_type == FOLDER_MIME_TYPE:
                if recursive:
                    queue.append((file_data["id"], path))
                continue

            if mime_type.startswith(GOOGLE_APPS_MIME_PREFIX):
                logger.debug("Skipping Google-native document %s (%s)", path, mime_type)
                continue

            parents = file_data.get("parents", [])
            entries.append(
                DriveFile(
                    id=file_data["id"],
                    name=file_data["name"],
                    mime_type=mime_type,
                    size=int(file_data.get("size", 0)),
                    path=path,
                    md5_checksum=file_data.get("md5Checksum"),
                    parent_id=parents[0] if parents else None,
                )
            )

        next_token = response.get("nextPageToken")
        if not next_token:
            queue.pop(0)

        has_more = bool(queue)
        return ListFolderPage(
            entries=entries,
            has_more=has_more,
            cursor=_encode_cursor(queue, next_token) if has_more else None,
        )

    def get_metadata(self, file_id: str) -> DriveFile:
        service = self._ensure_connected()
        try:
            result = (
                service.files()
                .get(fileId=file_id, fields=METADATA_FIELDS, supportsAllDrives=True)
                .execute()
            )
        except HttpError as e:
            self._handle_http_error(e, file_id=file_id)

        parents = result.get("parents", [])
        return DriveFile(
            id=result["id"],
            name=result["name"],
            mime_type=result.get("mimeType", ""),
            size=int(result.get("size", 0)),
            path=result["name"],
            md5_checksum=result.get("md5Checksum"),
            parent_id=parents[0] if parents else None,
        )

    def download(self, file_id: str, start: int = 0) -> Iterator[bytes]:
        """Stream the file's bytes from offset ``start`` to the end."""
        session = self._ensure_session()
        headers = {"Range": f"bytes={start}-"} if start > 0 else {}
        try:
            response = session.get(
                f"{DRIVE_FILES_URL}/{file_id}",
                params={"alt": "media", "supportsAllDrives": "true"},
                headers=headers,
                stream=True,
                timeout=DOWNLOAD_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            raise DownloadError(f"Download request failed: {e}", file_id=file_id) from e

        try:
            if response.status_code not in (200, 206):
                self._raise_for_status(
                    response.status_code, response.reason, response.headers, file_id
                )
            if start > 0 and response.status_code != 206:
                raise DownloadError(
                    f"Range request from byte {start} was not honoured",
                    file_id=file_id,
                )
            for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                if chunk:
                    yield chunk
        except requests.RequestException as e:
            raise DownloadError(
                f"Error while downloading file: {e}", file_id=file_id
            ) from e
        finally:
            response.close()
