"""
External mirror client for Google Drive.

Uploads, lists, downloads and deletes backup payloads in a user's Drive and
manages the user's OAuth access/refresh token pair:

- an expired access token is refreshed before any Drive call;
- refreshed tokens are written to the credential record before the call
  proceeds, so other callers see them;
- refresh is single-flight per user (a per-user lock; a waiting caller
  re-reads the record instead of calling Google again);
- every Drive call goes through one ProviderRetryPolicy: on an authorization
  error it refreshes once and retries once, a second failure is surfaced.
"""
import io
import json
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httplib2
import google_auth_httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseDownload, MediaIoBaseUpload
from sqlalchemy.orm import Session

from storevault import config
from storevault.constants import (
    DRIVE_FOLDER_MIME_TYPE, DRIVE_SCOPES, DRIVE_TOKEN_URI,
    PAYLOAD_FILE_PREFIX, PAYLOAD_MIME_TYPE, RATE_LIMIT_REASONS, SPREADSHEET_EXPORT_URL,
)
from storevault.database import SessionLocal
from storevault.exceptions import (
    BackupNotFoundException, DriveUnauthorizedException,
    TransientProviderException, ValidationException,
)
from storevault.repositories.credential_repository import CredentialRepository
from storevault.services.date_service import utcnow

logger = logging.getLogger("storevault.mirror")


class ProviderAuthorizationError(Exception):
    """Google rejected the access token (HTTP 401)"""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Google Drive rejected the access token during {operation}")


@dataclass
class DriveToken:
    """Detached copy of a user's credential record"""
    user_id: str
    access_token: Optional[str]
    refresh_token: Optional[str]
    token_expiry_date: Optional[datetime]
    folder_id: Optional[str]
    spreadsheet_id: Optional[str]
    connected: bool


@dataclass
class TokenGrant:
    """Result of a token refresh"""
    access_token: str
    token_expiry_date: Optional[datetime]
    refresh_token: Optional[str] = None


@dataclass
class RemotePayload:
    """Metadata of a backup payload stored in Drive"""
    file_id: str
    name: str
    size_bytes: int = 0
    created_time: Optional[str] = None


def _error_reasons(error: HttpError) -> List[str]:
    """Machine-readable reasons from a Drive error body"""
    details = error.error_details if isinstance(getattr(error, "error_details", None), list) else []
    try:
        body = json.loads(error.content.decode("utf-8"))
        details = details + body["error"]["errors"]
    except (ValueError, AttributeError, KeyError, TypeError):
        pass
    return [d["reason"] for d in details if isinstance(d, dict) and d.get("reason")]


class _TimeoutRequest(Request):
    """google-auth transport request with a default timeout"""

    def __init__(self, timeout: float):
        super().__init__()
        self._timeout = timeout

    def __call__(self, url, method="GET", body=None, headers=None, timeout=None, **kwargs):
        return super().__call__(
            url, method=method, body=body, headers=headers,
            timeout=timeout or self._timeout, **kwargs
        )


class GoogleDriveTransport:
    """Thin wrapper over the Drive v3 API; translates Google errors"""

    def __init__(self, timeout: float = config.PROVIDER_TIMEOUT_SECONDS,
                 client_id: Optional[str] = None, client_secret: Optional[str] = None):
        self.timeout = timeout
        self.client_id = client_id or config.GOOGLE_CLIENT_ID
        self.client_secret = client_secret or config.GOOGLE_CLIENT_SECRET

    def _service(self, access_token: str):
        # Token-only credentials: refresh is driven by MirrorClient, never by the HTTP layer
        credentials = Credentials(token=access_token)
        http = google_auth_httplib2.AuthorizedHttp(
            credentials,
            http=httplib2.Http(timeout=self.timeout),
            refresh_status_codes=(),
        )
        return build("drive", "v3", http=http, cache_discovery=False)

    def _call(self, operation: str, func: Callable[[], Any], resource: str = "") -> Any:
        try:
            return func()
        except HttpError as e:
            status = e.resp.status if e.resp is not None else 0
            if status == 401:
                raise ProviderAuthorizationError(operation)
            if status == 404:
                raise BackupNotFoundException(resource or f"drive file ({operation})")
            if status == 403 and not RATE_LIMIT_REASONS.intersection(_error_reasons(e)):
                raise DriveUnauthorizedException("", f"Google Drive denied {operation}")
            raise TransientProviderException(operation, f"HTTP {status}: {e}")
        except (httplib2.HttpLib2Error, OSError) as e:
            raise TransientProviderException(operation, str(e) or type(e).__name__)

    def refresh(self, refresh_token: str) -> TokenGrant:
        """Exchange a refresh token for a new access token"""
        if not self.client_id or not self.client_secret:
            raise DriveUnauthorizedException("", "Google API configuration missing")

        credentials = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=DRIVE_TOKEN_URI,
            client_id=self.client_id,
            client_secret=self.client_secret,
            scopes=DRIVE_SCOPES,
        )
        try:
            credentials.refresh(_TimeoutRequest(self.timeout))
        except RefreshError as e:
            raise DriveUnauthorizedException("", f"Token refresh rejected: {e}")
        except TransportError as e:
            raise TransientProviderException("token refresh", str(e))

        return TokenGrant(
            access_token=credentials.token,
            token_expiry_date=credentials.expiry,
            refresh_token=credentials.refresh_token,
        )

    def ensure_folder(self, access_token: str, folder_name: str) -> str:
        """Get or create the backup folder and return its id"""
        service = self._service(access_token)
        escaped = folder_name.replace("'", "\\'")

        response = self._call("folder lookup", lambda: service.files().list(
            q=f"name='{escaped}' and mimeType='{DRIVE_FOLDER_MIME_TYPE}' and trashed=false",
            spaces="drive",
            fields="files(id, name)",
        ).execute())
        files = response.get("files", [])
        if files:
            return files[0]["id"]

        folder = self._call("folder creation", lambda: service.files().create(
            body={"name": folder_name, "mimeType": DRIVE_FOLDER_MIME_TYPE},
            fields="id",
        ).execute())
        logger.info(f"Created Google Drive folder: {folder_name}")
        return folder["id"]

    def upload(self, access_token: str, folder_id: Optional[str], file_name: str,
               payload: bytes, mime_type: str = PAYLOAD_MIME_TYPE) -> str:
        service = self._service(access_token)
        body: Dict[str, Any] = {"name": file_name}
        if folder_id:
            body["parents"] = [folder_id]
        media = MediaIoBaseUpload(io.BytesIO(payload), mimetype=mime_type, resumable=False)
        response = self._call("upload", lambda: service.files().create(
            body=body, media_body=media, fields="id"
        ).execute())
        return response["id"]

    def list_files(self, access_token: str, folder_id: Optional[str],
                   name_prefix: str) -> List[Dict[str, Any]]:
        service = self._service(access_token)
        query = f"name contains '{name_prefix}' and trashed=false"
        if folder_id:
            query = f"'{folder_id}' in parents and {query}"
        response = self._call("list", lambda: service.files().list(
            q=query,
            spaces="drive",
            fields="files(id, name, size, createdTime)",
            orderBy="createdTime desc",
            pageSize=100,
        ).execute())
        return response.get("files", [])

    def download(self, access_token: str, file_id: str) -> bytes:
        service = self._service(access_token)

        def _download() -> bytes:
            buffer = io.BytesIO()
            downloader = MediaIoBaseDownload(buffer, service.files().get_media(fileId=file_id))
            done = False
            while not done:
                _status, done = downloader.next_chunk()
            return buffer.getvalue()

        return self._call("download", _download, resource=file_id)

    def delete(self, access_token: str, file_id: str) -> None:
        service = self._service(access_token)
        self._call("delete", lambda: service.files().delete(fileId=file_id).execute(), resource=file_id)

    def get_download_url(self, access_token: str, file_id: str) -> str:
        service = self._service(access_token)
        meta = self._call("download link", lambda: service.files().get(
            fileId=file_id, fields="id, webContentLink, webViewLink"
        ).execute())
        return meta.get("webContentLink") or meta.get("webViewLink") or \
            f"https://drive.google.com/uc?id={file_id}&export=download"


class ProviderRetryPolicy:
    """
    Shared retry rule for every Drive operation.

    The operation runs with a valid credential. If Google answers with an
    authorization error the token is refreshed once and the operation is
    retried exactly once. Other errors are surfaced immediately.
    """

    def __init__(self, client: "MirrorClient"):
        self.client = client

    def run(self, user_id: str, operation: str, func: Callable[[DriveToken], Any]) -> Any:
        try:
            return self._run(user_id, operation, func)
        except DriveUnauthorizedException as e:
            if e.user_id:
                raise
            # Raised by the transport, which does not know the user
            raise DriveUnauthorizedException(user_id, e.reason) from e

    def _run(self, user_id: str, operation: str, func: Callable[[DriveToken], Any]) -> Any:
        token = self.client.valid_credential(user_id)
        try:
            return func(token)
        except ProviderAuthorizationError:
            logger.info(f"Drive {operation} for user {user_id} got 401, refreshing token")

        token = self.client.refresh_access_token(user_id, stale_token=token.access_token)
        try:
            return func(token)
        except ProviderAuthorizationError:
            raise DriveUnauthorizedException(
                user_id, f"Google Drive rejected the refreshed token during {operation}"
            )


class MirrorClient:
    """Mirrors backup payloads to and from users' Google Drive"""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal,
                 transport: Optional[GoogleDriveTransport] = None,
                 clock: Callable[[], datetime] = utcnow,
                 refresh_lock_timeout: float = config.REFRESH_LOCK_TIMEOUT_SECONDS,
                 folder_name: str = config.DRIVE_FOLDER_NAME):
        self.session_factory = session_factory
        self.transport = transport or GoogleDriveTransport()
        self.clock = clock
        self.refresh_lock_timeout = refresh_lock_timeout
        self.folder_name = folder_name
        self.credentials = CredentialRepository()
        self.retry_policy = ProviderRetryPolicy(self)
        self._refresh_locks: Dict[str, threading.Lock] = {}
        self._refresh_locks_guard = threading.Lock()

    # ===== CREDENTIALS =====

    def _refresh_lock(self, user_id: str) -> threading.Lock:
        with self._refresh_locks_guard:
            lock = self._refresh_locks.get(user_id)
            if lock is None:
                lock = threading.Lock()
                self._refresh_locks[user_id] = lock
            return lock

    def _load(self, user_id: str) -> Optional[DriveToken]:
        db = self.session_factory()
        try:
            record = self.credentials.get(db, user_id)
            if not record:
                return None
            return DriveToken(
                user_id=record.user_id,
                access_token=record.access_token,
                refresh_token=record.refresh_token,
                token_expiry_date=record.token_expiry_date,
                folder_id=record.folder_id,
                spreadsheet_id=record.spreadsheet_id,
                connected=bool(record.connected),
            )
        finally:
            db.close()

    def _mark_disconnected(self, user_id: str) -> None:
        db = self.session_factory()
        try:
            self.credentials.mark_disconnected(db, user_id)
        finally:
            db.close()
        logger.warning(f"Google Drive disconnected for user {user_id}; reconnection required")

    def is_expired(self, token: DriveToken) -> bool:
        return token.token_expiry_date is not None and token.token_expiry_date <= self.clock()

    def valid_credential(self, user_id: str) -> DriveToken:
        """
        Get a usable credential, refreshing it first if it has expired.

        Raises:
            DriveUnauthorizedException: no credential, disconnected, or refresh failed
        """
        token = self._load(user_id)
        if not token or not token.connected or not token.access_token:
            raise DriveUnauthorizedException(user_id)
        if self.is_expired(token):
            return self.refresh_access_token(user_id, stale_token=token.access_token)
        return token

    def refresh_access_token(self, user_id: str, stale_token: Optional[str] = None) -> DriveToken:
        """
        Exchange the refresh token for a new access token and persist it.

        If another caller already replaced ``stale_token`` while this one was
        waiting, the persisted token is returned without calling Google.

        Raises:
            DriveUnauthorizedException: refresh rejected; the credential is
                marked disconnected and is not retried
            TransientProviderException: an in-flight refresh did not finish in time
        """
        lock = self._refresh_lock(user_id)
        if not lock.acquire(timeout=self.refresh_lock_timeout):
            raise TransientProviderException(
                "token refresh", "timed out waiting for an in-flight refresh"
            )
        try:
            token = self._load(user_id)
            if not token or not token.connected:
                raise DriveUnauthorizedException(user_id)

            if (stale_token is not None and token.access_token
                    and token.access_token != stale_token and not self.is_expired(token)):
                logger.debug(f"Token for user {user_id} already refreshed by another caller")
                return token

            if not token.refresh_token:
                self._mark_disconnected(user_id)
                raise DriveUnauthorizedException(user_id, "No refresh token stored")

            try:
                grant = self.transport.refresh(token.refresh_token)
            except DriveUnauthorizedException as e:
                self._mark_disconnected(user_id)
                raise DriveUnauthorizedException(user_id, e.reason)
            except TransientProviderException as e:
                logger.error(f"Token refresh for user {user_id} failed: {e}")
                raise DriveUnauthorizedException(user_id, f"Token refresh failed ({e.details})")

            db = self.session_factory()
            try:
                self.credentials.save_tokens(
                    db, user_id,
                    access_token=grant.access_token,
                    token_expiry_date=grant.token_expiry_date,
                    refresh_token=grant.refresh_token,
                )
            finally:
                db.close()

            logger.info(f"Refreshed Google Drive token for user {user_id}")
            return self._load(user_id)
        finally:
            lock.release()

    def connection_status(self, user_id: str) -> dict:
        token = self._load(user_id)
        if not token:
            return {"connected": False, "expired": False, "can_refresh": False}
        return {
            "connected": token.connected and bool(token.access_token),
            "expired": self.is_expired(token),
            "can_refresh": bool(token.refresh_token),
            "token_expiry_date": token.token_expiry_date,
        }

    def connected_users(self) -> List[str]:
        """Users whose Drive is connected"""
        db = self.session_factory()
        try:
            return [record.user_id for record in self.credentials.get_connected(db)]
        finally:
            db.close()

    def _folder_id(self, token: DriveToken) -> str:
        if token.folder_id:
            return token.folder_id
        folder_id = self.transport.ensure_folder(token.access_token, self.folder_name)
        db = self.session_factory()
        try:
            self.credentials.set_folder_id(db, token.user_id, folder_id)
        finally:
            db.close()
        token.folder_id = folder_id
        return folder_id

    # ===== DRIVE OPERATIONS =====

    def upload_payload(self, user_id: str, file_name: str, payload: bytes) -> str:
        """Upload a payload into the user's backup folder and return its file id"""
        file_id = self.retry_policy.run(
            user_id, "upload",
            lambda token: self.transport.upload(
                token.access_token, self._folder_id(token), file_name, payload
            ),
        )
        logger.info(f"✓ Uploaded to Google Drive: {file_name} (user {user_id})")
        return file_id

    def list_remote_payloads(self, user_id: str) -> List[RemotePayload]:
        files = self.retry_policy.run(
            user_id, "list",
            lambda token: self.transport.list_files(
                token.access_token, self._folder_id(token), PAYLOAD_FILE_PREFIX
            ),
        )
        return [
            RemotePayload(
                file_id=f["id"],
                name=f.get("name", ""),
                size_bytes=int(f.get("size") or 0),
                created_time=f.get("createdTime"),
            )
            for f in files
        ]

    def download_payload(self, user_id: str, file_id: str) -> bytes:
        if not file_id:
            raise ValidationException("file_id", "File ID is required")
        return self.retry_policy.run(
            user_id, "download",
            lambda token: self.transport.download(token.access_token, file_id),
        )

    def delete_remote_payload(self, user_id: str, file_id: str) -> None:
        self.retry_policy.run(
            user_id, "delete",
            lambda token: self.transport.delete(token.access_token, file_id),
        )
        logger.info(f"Deleted Google Drive file {file_id} (user {user_id})")

    def get_download_url(self, user_id: str, file_id: str) -> str:
        if not file_id:
            raise ValidationException("file_id", "File ID is required")
        return self.retry_policy.run(
            user_id, "download link",
            lambda token: self.transport.get_download_url(token.access_token, file_id),
        )

    def get_spreadsheet_download_url(self, user_id: str) -> str:
        """Export link (xlsx) for the user's invoice spreadsheet"""
        token = self.valid_credential(user_id)
        if not token.spreadsheet_id:
            raise ValidationException("spreadsheet_id", "No Google Sheets ID configured")
        return SPREADSHEET_EXPORT_URL.format(spreadsheet_id=token.spreadsheet_id)
