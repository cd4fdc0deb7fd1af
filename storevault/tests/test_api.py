"""
Tests for the HTTP endpoints.
"""
import pytest
from fastapi.testclient import TestClient

from storevault import config
from storevault.main import app, get_manager


@pytest.fixture
def client(manager):
    app.dependency_overrides[get_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def headers():
    return {"X-API-Key": config.API_KEY, "X-User-Id": "alice"}


class TestAuth:
    """Tests for API key and owner identity"""

    def test_health_needs_no_key(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "active"

    def test_missing_api_key_is_rejected(self, client):
        response = client.get("/api/backups")

        assert response.status_code == 401

    def test_restore_requires_owner(self, client):
        response = client.post(
            "/api/backups/restore",
            json={"backup_id": "backup_1_x"},
            headers={"X-API-Key": config.API_KEY},
        )

        assert response.status_code == 401


class TestBackupEndpoints:
    """Tests for backup endpoints"""

    def test_create_and_list(self, client, headers, store_documents):
        created = client.post("/api/backups/create", headers=headers)

        assert created.status_code == 200
        body = created.json()
        assert body["success"] is True
        assert body["backup"]["total_documents"] == 6
        assert body["backup"]["backup_type"] == "manual"

        listed = client.get("/api/backups", headers=headers)
        assert [b["backup_id"] for b in listed.json()] == [body["backup"]["backup_id"]]

    def test_create_while_busy_is_conflict(self, client, headers, manager):
        manager._gate.acquire()
        try:
            response = client.post("/api/backups/create", headers=headers)
        finally:
            manager._gate.release()

        assert response.status_code == 409
        assert response.json()["detail"]["error_kind"] == "busy"

    def test_delete_then_not_found(self, client, headers):
        backup_id = client.post("/api/backups/create", headers=headers).json()["backup"]["backup_id"]

        first = client.delete(f"/api/backups/{backup_id}", headers=headers)
        second = client.delete(f"/api/backups/{backup_id}", headers=headers)

        assert first.status_code == 200
        assert second.status_code == 404

    def test_restore_of_deleted_backup_is_not_found(self, client, headers, store_documents):
        backup_id = client.post("/api/backups/create", headers=headers).json()["backup"]["backup_id"]
        client.delete(f"/api/backups/{backup_id}", headers=headers)

        response = client.post("/api/backups/restore", json={"backup_id": backup_id}, headers=headers)

        assert response.status_code == 404
        assert response.json()["detail"]["error_kind"] == "not_found"

    def test_restore(self, client, headers, store_documents):
        backup_id = client.post("/api/backups/create", headers=headers).json()["backup"]["backup_id"]

        response = client.post("/api/backups/restore", json={"backup_id": backup_id}, headers=headers)

        assert response.status_code == 200
        assert response.json()["restored_count"] == 3

    def test_restore_malformed_id_is_bad_request(self, client, headers):
        response = client.post("/api/backups/restore", json={"backup_id": "a/b"}, headers=headers)

        assert response.status_code == 400
        assert response.json()["detail"]["error_kind"] == "validation"

    def test_remote_list_without_drive_requires_reconnect(self, client, headers):
        response = client.get("/api/backups/remote", headers=headers)

        assert response.status_code == 401
        assert response.json()["detail"]["error_kind"] == "reconnect_required"

    def test_download_link_errors_are_mapped(self, client, headers):
        response = client.get("/api/backups/remote/file-1/download-link", headers=headers)

        assert response.status_code == 401
        assert response.json()["error_kind"] == "reconnect_required"


class TestSchedulerEndpoints:
    """Tests for scheduler endpoints"""

    def test_status_lifecycle(self, client, headers):
        assert client.get("/api/scheduler/status", headers=headers).json() == {
            "is_running": False, "next_backup_in": 0,
        }

        client.post("/api/scheduler/start", headers=headers)
        detail = client.get("/api/scheduler/detail", headers=headers).json()
        assert detail["running"] is True
        assert detail["state"] == "idle"

        client.post("/api/scheduler/stop", headers=headers)
        assert client.get("/api/scheduler/status", headers=headers).json()["is_running"] is False

    def test_health_and_stats(self, client, headers):
        client.post("/api/backups/create", headers=headers)

        health = client.get("/api/backups/health", headers=headers).json()
        stats = client.get("/api/backups/stats", headers=headers).json()

        assert health["is_backup_needed"] is False
        assert health["minutes_until_next"] == 30
        assert stats["completed_backups"] == 1
