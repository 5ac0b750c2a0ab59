"""Google Drive credentials: service account or installed-app OAuth2."""

import json
import logging
from pathlib import Path
from typing import Any, Optional

from google.auth.exceptions import GoogleAuthError, RefreshError
from google.auth.transport.requests import Request
from google.oauth2 import service_account
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow

from ..utils.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

SCOPES = ["https://www.googleapis.com/auth/drive.readonly"]
PROVIDER = "google_drive"


class GoogleDriveAuthProvider:
    """Obtains and refreshes read-only Drive credentials.

    A service account key takes precedence. Otherwise a cached user token is
    used, refreshed when expired, and the browser flow runs only when neither
    works and ``interactive`` is set.
    """

    def __init__(
        self,
        credentials_path: Path,
        token_path: Path,
        service_account_path: Optional[Path] = None,
        interactive: bool = True,
    ) -> None:
        self._credentials_path = credentials_path
        self._token_path = token_path
        self._service_account_path = service_account_path
        self._interactive = interactive
        self._credentials: Optional[Any] = None

    @property
    def credentials(self) -> Any:
        if self._credentials is None:
            raise AuthenticationError("Not authenticated", provider=PROVIDER)
        return self._credentials

    def authenticate(self) -> Any:
        if self._service_account_path is not None:
            return self._load_service_account(self._service_account_path)

        if self._load_token():
            if self._credentials.valid or self.refresh_if_needed():
                logger.info("Using cached Google Drive token")
                return self._credentials

        if not self._interactive:
            raise AuthenticationError(
                "No usable Google Drive token and interactive login is disabled",
                provider=PROVIDER,
            )
        return self._run_oauth_flow()

    def is_authenticated(self) -> bool:
        return self._credentials is not None and self._credentials.valid

    def refresh_if_needed(self) -> bool:
        """Refresh expired credentials. Returns False when they cannot be refreshed."""
        creds = self._credentials
        if creds is None:
            return False
        if creds.valid:
            return True

        refreshable = isinstance(creds, service_account.Credentials) or (
            creds.expired and getattr(creds, "refresh_token", None)
        )
        if not refreshable:
            return False

        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise AuthenticationError(
                f"Google Drive token refresh failed: {e}", provider=PROVIDER
            ) from e
        if isinstance(creds, Credentials):
            self._save_token()
        logger.info("Google Drive token refreshed")
        return True

    def _load_service_account(self, path: Path) -> Any:
        try:
            self._credentials = service_account.Credentials.from_service_account_file(
                str(path), scopes=SCOPES
            )
        except (OSError, ValueError, GoogleAuthError) as e:
            raise AuthenticationError(
                f"Could not load service account key {path}: {e}", provider=PROVIDER
            ) from e
        logger.info("Using Google service account from %s", path)
        return self._credentials

    def _save_token(self) -> None:
        if self._credentials is None:
            return
        self._token_path.parent.mkdir(parents=True, exist_ok=True)
        self._token_path.write_text(self._credentials.to_json())
        logger.debug("Token saved to %s", self._token_path)

    def _load_token(self) -> bool:
        if not self._token_path.exists():
            return False
        try:
            self._credentials = Credentials.from_authorized_user_file(
                str(self._token_path), SCOPES
            )
        except (json.JSONDecodeError, ValueError, KeyError) as e:
            logger.warning("Corrupted token file, will re-authenticate: %s", e)
            self._credentials = None
            return False
        return True

    def _run_oauth_flow(self) -> Any:
        if not self._credentials_path.exists():
            raise AuthenticationError(
                f"OAuth client secrets not found: {self._credentials_path}",
                provider=PROVIDER,
            )
        try:
            flow = InstalledAppFlow.from_client_secrets_file(
                str(self._credentials_path), SCOPES
            )
            self._credentials = flow.run_local_server(port=0)
        except (OSError, ValueError, GoogleAuthError) as e:
            raise AuthenticationError(
                f"Google Drive OAuth flow failed: {e}", provider=PROVIDER
            ) from e
        self._save_token()
        logger.info("Google Drive authentication successful")
        return self._credentials
