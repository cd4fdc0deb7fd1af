"""
Tests for MirrorClient and ProviderRetryPolicy.

Tests cover:
1. Expired credentials are refreshed exactly once before the call
2. Refresh failures surface as DriveUnauthorizedException
3. Authorization errors are retried once after a refresh
4. Concurrent callers share one refresh
5. Google HTTP, network and refresh errors map to engine errors
"""
import json
import socket
import threading
from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import httplib2
import pytest
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.errors import HttpError

from storevault.exceptions import (
    BackupNotFoundException, DriveUnauthorizedException, TransientProviderException, ValidationException
)
from storevault.services.mirror_service import (
    DriveToken, GoogleDriveTransport, ProviderAuthorizationError, _TimeoutRequest
)


class TestCredentialRefresh:
    """Tests for access token refresh"""

    def test_valid_token_is_used_without_refresh(self, mirror_client, drive, add_credential):
        add_credential("alice")

        file_id = mirror_client.upload_payload("alice", "StoreVault_Backup_x.json", b"{}")

        assert drive.refresh_calls == 0
        assert drive.files[file_id]["payload"] == b"{}"

    def test_expired_token_is_refreshed_once_and_persisted(
            self, mirror_client, drive, add_credential, get_credential, clock):
        """Expired credential: one refresh, new token stored, then the upload succeeds"""
        add_credential("alice", expires_in=timedelta(minutes=-5))

        file_id = mirror_client.upload_payload("alice", "StoreVault_Backup_x.json", b"{}")

        assert drive.refresh_calls == 1
        assert file_id in drive.files
        credential = get_credential("alice")
        assert credential.access_token == "refreshed-1"
        assert credential.token_expiry_date == clock() + timedelta(hours=1)
        assert credential.refresh_token == "refresh-token"
        assert all(token == "refreshed-1" for _, token in drive.calls)

    def test_rejected_refresh_raises_unauthorized_and_disconnects(
            self, mirror_client, drive, add_credential, get_credential):
        add_credential("alice", expires_in=timedelta(minutes=-5))
        drive.refresh_error = DriveUnauthorizedException("", "invalid_grant")

        with pytest.raises(DriveUnauthorizedException) as exc_info:
            mirror_client.upload_payload("alice", "StoreVault_Backup_x.json", b"{}")

        assert exc_info.value.user_id == "alice"
        assert drive.files == {}
        credential = get_credential("alice")
        assert credential.connected is False
        assert credential.access_token is None

    def test_transient_refresh_failure_raises_unauthorized_but_keeps_connection(
            self, mirror_client, drive, add_credential, get_credential):
        add_credential("alice", expires_in=timedelta(minutes=-5))
        drive.refresh_error = TransientProviderException("token refresh", "timed out")

        with pytest.raises(DriveUnauthorizedException):
            mirror_client.list_remote_payloads("alice")

        assert get_credential("alice").connected is True

    def test_missing_refresh_token_raises_unauthorized(self, mirror_client, drive, add_credential):
        add_credential("alice", expires_in=timedelta(minutes=-5), refresh_token=None)

        with pytest.raises(DriveUnauthorizedException):
            mirror_client.download_payload("alice", "file-1")

        assert drive.refresh_calls == 0

    def test_unknown_or_disconnected_user_raises_unauthorized(self, mirror_client, add_credential):
        add_credential("bob", connected=False)

        with pytest.raises(DriveUnauthorizedException):
            mirror_client.list_remote_payloads("nobody")
        with pytest.raises(DriveUnauthorizedException):
            mirror_client.list_remote_payloads("bob")

    def test_concurrent_refresh_is_single_flight(self, mirror_client, drive, add_credential):
        """Two callers with the same expired token trigger one refresh"""
        add_credential("alice", expires_in=timedelta(minutes=-5))
        drive.refresh_delay = 0.2
        results, errors = [], []

        def _worker():
            try:
                results.append(mirror_client.valid_credential("alice").access_token)
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=_worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert errors == []
        assert drive.refresh_calls == 1
        assert results == ["refreshed-1", "refreshed-1"]

    def test_refresh_lock_timeout_is_transient(self, mirror_client, add_credential):
        add_credential("alice", expires_in=timedelta(minutes=-5))
        mirror_client.refresh_lock_timeout = 0.05
        lock = mirror_client._refresh_lock("alice")
        lock.acquire()
        try:
            with pytest.raises(TransientProviderException):
                mirror_client.refresh_access_token("alice", stale_token="token-alice")
        finally:
            lock.release()


class TestRetryPolicy:
    """Tests for the shared authorization retry"""

    def test_authorization_error_is_retried_once(self, mirror_client, drive, add_credential):
        add_credential("alice")
        drive.unauthorized_responses = 1

        files = mirror_client.list_remote_payloads("alice")

        assert files == []
        assert drive.refresh_calls == 1

    def test_second_authorization_error_is_surfaced(self, mirror_client, drive, add_credential):
        add_credential("alice")
        drive.unauthorized_responses = 3

        with pytest.raises(DriveUnauthorizedException) as exc_info:
            mirror_client.delete_remote_payload("alice", "file-1")

        assert exc_info.value.user_id == "alice"
        assert drive.refresh_calls == 1

    def test_policy_passes_token_to_operation(self, mirror_client, add_credential):
        add_credential("alice")
        seen = []

        mirror_client.retry_policy.run("alice", "lookup", lambda token: seen.append(token))

        assert isinstance(seen[0], DriveToken)
        assert seen[0].access_token == "token-alice"


class TestDriveOperations:
    """Tests for upload/list/download/delete through the fake Drive"""

    def test_upload_list_download_delete(self, mirror_client, drive, add_credential, get_credential):
        add_credential("alice")

        file_id = mirror_client.upload_payload("alice", "StoreVault_Backup_a.json", b'{"a":1}')
        listed = mirror_client.list_remote_payloads("alice")

        assert [(f.file_id, f.name, f.size_bytes) for f in listed] == [
            (file_id, "StoreVault_Backup_a.json", 7)
        ]
        assert get_credential("alice").folder_id == "folder-1"
        assert mirror_client.download_payload("alice", file_id) == b'{"a":1}'

        mirror_client.delete_remote_payload("alice", file_id)
        assert mirror_client.list_remote_payloads("alice") == []

    def test_download_requires_file_id(self, mirror_client):
        with pytest.raises(ValidationException):
            mirror_client.download_payload("alice", "")

    def test_connection_status(self, mirror_client, add_credential):
        add_credential("alice", expires_in=timedelta(minutes=-1))

        status = mirror_client.connection_status("alice")

        assert status["connected"] is True
        assert status["expired"] is True
        assert status["can_refresh"] is True
        assert mirror_client.connection_status("nobody")["connected"] is False

    def test_connected_users(self, mirror_client, add_credential):
        add_credential("bob")
        add_credential("alice")
        add_credential("carol", connected=False)

        assert mirror_client.connected_users() == ["alice", "bob"]

    def test_spreadsheet_link_requires_spreadsheet(self, mirror_client, add_credential):
        add_credential("alice")

        with pytest.raises(ValidationException):
            mirror_client.get_spreadsheet_download_url("alice")


def _http_error(status, reason=None):
    body = {"error": {"code": status, "message": "Drive error"}}
    if reason:
        body["error"]["errors"] = [{"domain": "usageLimits", "reason": reason, "message": reason}]
    return HttpError(httplib2.Response({"status": status}), json.dumps(body).encode("utf-8"))


def _raise(error):
    def _call():
        raise error
    return _call


@pytest.fixture
def transport():
    return GoogleDriveTransport(timeout=7, client_id="client-id", client_secret="client-secret")


class TestGoogleDriveTransport:
    """Tests for the translation of Google errors into engine errors"""

    def test_unauthorized_token_is_retryable_authorization_error(self, transport):
        with pytest.raises(ProviderAuthorizationError):
            transport._call("upload", _raise(_http_error(401)))

    def test_missing_file_is_not_found(self, transport):
        with pytest.raises(BackupNotFoundException) as exc_info:
            transport._call("download", _raise(_http_error(404)), resource="file-1")

        assert exc_info.value.backup_id == "file-1"

    def test_forbidden_requires_reconnect(self, transport):
        with pytest.raises(DriveUnauthorizedException):
            transport._call("upload", _raise(_http_error(403, "insufficientFilePermissions")))

    def test_forbidden_without_reason_requires_reconnect(self, transport):
        with pytest.raises(DriveUnauthorizedException):
            transport._call("upload", _raise(_http_error(403)))

    @pytest.mark.parametrize("reason", ["rateLimitExceeded", "userRateLimitExceeded"])
    def test_rate_limited_forbidden_is_transient(self, transport, reason):
        with pytest.raises(TransientProviderException):
            transport._call("list", _raise(_http_error(403, reason)))

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_throttling_and_server_errors_are_transient(self, transport, status):
        with pytest.raises(TransientProviderException) as exc_info:
            transport._call("list", _raise(_http_error(status)))

        assert str(status) in exc_info.value.details

    @pytest.mark.parametrize("error", [
        httplib2.HttpLib2Error("connection reset"),
        socket.timeout("timed out"),
        ConnectionRefusedError(),
    ])
    def test_network_errors_are_transient(self, transport, error):
        with pytest.raises(TransientProviderException):
            transport._call("upload", _raise(error))

    def test_delete_of_missing_file_names_the_file(self, transport, monkeypatch):
        service = MagicMock()
        service.files.return_value.delete.return_value.execute.side_effect = _http_error(404)
        monkeypatch.setattr(transport, "_service", lambda access_token: service)

        with pytest.raises(BackupNotFoundException) as exc_info:
            transport.delete("token-alice", "file-9")

        assert exc_info.value.backup_id == "file-9"


class TestTokenRefresh:
    """Tests for GoogleDriveTransport.refresh"""

    def test_successful_refresh_returns_grant(self, transport):
        expiry = datetime(2026, 3, 2, 13, 0, 0)

        def _grant(credentials, request):
            credentials.token = "fresh-token"
            credentials.expiry = expiry

        with patch.object(Credentials, "refresh", autospec=True, side_effect=_grant) as refresh:
            grant = transport.refresh("refresh-token")

        assert grant.access_token == "fresh-token"
        assert grant.token_expiry_date == expiry
        assert grant.refresh_token == "refresh-token"
        request = refresh.call_args.args[1]
        assert isinstance(request, _TimeoutRequest)

    def test_rejected_refresh_requires_reconnect(self, transport):
        with patch.object(Credentials, "refresh", autospec=True,
                          side_effect=RefreshError("invalid_grant: Token has been revoked")):
            with pytest.raises(DriveUnauthorizedException) as exc_info:
                transport.refresh("refresh-token")

        assert "invalid_grant" in exc_info.value.reason

    def test_network_failure_during_refresh_is_transient(self, transport):
        with patch.object(Credentials, "refresh", autospec=True,
                          side_effect=TransportError("connection timed out")):
            with pytest.raises(TransientProviderException):
                transport.refresh("refresh-token")

    def test_missing_client_configuration_requires_reconnect(self, transport):
        transport.client_secret = None

        with patch.object(Credentials, "refresh", autospec=True) as refresh:
            with pytest.raises(DriveUnauthorizedException):
                transport.refresh("refresh-token")

        refresh.assert_not_called()

    def test_token_request_uses_default_timeout(self):
        with patch.object(Request, "__call__", autospec=True, return_value="response") as call:
            _TimeoutRequest(7)("https://oauth2.googleapis.com/token", method="POST")

        assert call.call_args.kwargs["timeout"] == 7
        assert call.call_args.kwargs["method"] == "POST"

    def test_token_request_keeps_explicit_timeout(self):
        with patch.object(Request, "__call__", autospec=True, return_value="response") as call:
            _TimeoutRequest(7)("https://oauth2.googleapis.com/token", timeout=2)

        assert call.call_args.kwargs["timeout"] == 2
