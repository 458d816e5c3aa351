"""
Tests for the Internal API (backend/api/v1/internal.py)

Tests cover:
- POST /internal/gdpr/process-deletions - run the deletion sweep
- POST /internal/gdpr/exports/{id}/ready|failed - export worker callbacks
- GET /internal/gdpr/exports/{id}/payload - export payload
- GET /internal/audit - operator audit query
- API key authentication enforcement
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from api.dependencies import get_gdpr_service, get_sweep_service, verify_api_key
from compliance.gdpr import InternalError, InvalidTransitionError, NotFoundError
from models.gdpr import (
    AuditAction,
    AuditDataType,
    AuditEntry,
    AuditResult,
    ExportPayload,
    ExportRequest,
    ExportStatus,
    SweepResult,
)


BASE_URL = "/api/v1/internal"
NOW = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
API_KEY = "internal-test-key-0123456789"


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def mock_gdpr_service():
    return AsyncMock()


@pytest.fixture
def mock_sweep():
    return AsyncMock()


@pytest.fixture
def auth_client(mock_gdpr_service, mock_sweep):
    """TestClient with API key verified and mocked services."""
    from main import app

    app.dependency_overrides[verify_api_key] = lambda: True
    app.dependency_overrides[get_gdpr_service] = lambda: mock_gdpr_service
    app.dependency_overrides[get_sweep_service] = lambda: mock_sweep

    client = TestClient(app)
    yield client

    app.dependency_overrides.pop(verify_api_key, None)
    app.dependency_overrides.pop(get_gdpr_service, None)
    app.dependency_overrides.pop(get_sweep_service, None)


@pytest.fixture
def keyed_client(mock_gdpr_service, mock_sweep):
    """TestClient going through the real API key check."""
    from main import app

    app.dependency_overrides[get_gdpr_service] = lambda: mock_gdpr_service
    app.dependency_overrides[get_sweep_service] = lambda: mock_sweep

    with patch("api.dependencies.settings") as mock_settings:
        mock_settings.internal_api_key = API_KEY
        yield TestClient(app)

    app.dependency_overrides.pop(get_gdpr_service, None)
    app.dependency_overrides.pop(get_sweep_service, None)


def _ready_export(**overrides):
    defaults = {
        "id": "exp-1",
        "user_id": "user-1",
        "request_date": NOW,
        "status": ExportStatus.READY,
        "download_url": "https://files.example.com/exp-1.zip",
        "completed_at": NOW,
    }
    defaults.update(overrides)
    return ExportRequest(**defaults)


# =============================================================================
# API key
# =============================================================================


class TestApiKey:

    def test_missing_key_is_401(self, keyed_client):
        response = keyed_client.post(f"{BASE_URL}/gdpr/process-deletions")
        assert response.status_code == 401

    def test_wrong_key_is_401(self, keyed_client):
        response = keyed_client.post(
            f"{BASE_URL}/gdpr/process-deletions",
            headers={"X-API-Key": "not-the-right-key-at-all"},
        )
        assert response.status_code == 401

    def test_valid_key(self, keyed_client, mock_sweep):
        mock_sweep.process_due_deletions.return_value = SweepResult()

        response = keyed_client.post(
            f"{BASE_URL}/gdpr/process-deletions",
            headers={"X-API-Key": API_KEY},
        )
        assert response.status_code == 200

    def test_unconfigured_key_is_503(self, mock_gdpr_service):
        from main import app

        with patch("api.dependencies.settings") as mock_settings:
            mock_settings.internal_api_key = None
            response = TestClient(app).get(
                f"{BASE_URL}/audit", headers={"X-API-Key": API_KEY}
            )
        assert response.status_code == 503


# =============================================================================
# Deletion sweep
# =============================================================================


class TestProcessDeletions:

    def test_sweep_summary(self, auth_client, mock_sweep):
        mock_sweep.process_due_deletions.return_value = SweepResult(
            processed=3, completed=2, failed=1
        )

        response = auth_client.post(f"{BASE_URL}/gdpr/process-deletions")

        assert response.status_code == 200
        assert response.json() == {"processed": 3, "completed": 2, "failed": 1}

    def test_sweep_error(self, auth_client, mock_sweep):
        mock_sweep.process_due_deletions.side_effect = RuntimeError("db gone")

        response = auth_client.post(f"{BASE_URL}/gdpr/process-deletions")

        assert response.status_code == 500
        assert "db gone" not in response.text


# =============================================================================
# Export worker callbacks
# =============================================================================


class TestExportCallbacks:

    def test_mark_ready(self, auth_client, mock_gdpr_service):
        mock_gdpr_service.complete_export.return_value = _ready_export()

        response = auth_client.post(
            f"{BASE_URL}/gdpr/exports/exp-1/ready",
            json={"download_url": "https://files.example.com/exp-1.zip"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "ready"
        mock_gdpr_service.complete_export.assert_awaited_once_with(
            "exp-1", "https://files.example.com/exp-1.zip"
        )

    def test_mark_ready_rejects_non_http_url(self, auth_client, mock_gdpr_service):
        response = auth_client.post(
            f"{BASE_URL}/gdpr/exports/exp-1/ready",
            json={"download_url": "file:///etc/passwd"},
        )

        assert response.status_code == 400
        mock_gdpr_service.complete_export.assert_not_called()

    def test_mark_ready_missing_url(self, auth_client):
        response = auth_client.post(f"{BASE_URL}/gdpr/exports/exp-1/ready", json={})
        assert response.status_code == 400

    def test_mark_ready_unknown_export(self, auth_client, mock_gdpr_service):
        mock_gdpr_service.complete_export.side_effect = NotFoundError("missing")

        response = auth_client.post(
            f"{BASE_URL}/gdpr/exports/missing/ready",
            json={"download_url": "https://files.example.com/x.zip"},
        )

        assert response.status_code == 404

    def test_mark_failed_after_ready_is_409(self, auth_client, mock_gdpr_service):
        mock_gdpr_service.fail_export.side_effect = InvalidTransitionError(
            "exp-1", "ready", "failed"
        )

        response = auth_client.post(f"{BASE_URL}/gdpr/exports/exp-1/failed")

        assert response.status_code == 409

    def test_mark_failed(self, auth_client, mock_gdpr_service):
        mock_gdpr_service.fail_export.return_value = _ready_export(
            status=ExportStatus.FAILED, download_url=None
        )

        response = auth_client.post(f"{BASE_URL}/gdpr/exports/exp-1/failed")

        assert response.status_code == 200
        assert response.json()["download_url"] is None

    def test_payload(self, auth_client, mock_gdpr_service):
        mock_gdpr_service.build_export_payload.return_value = ExportPayload(
            request_id="exp-1",
            user_id="user-1",
            export_timestamp=NOW,
            consent={"marketing": True, "analytics": False, "personalization": False},
            consent_history=[],
            deletion_requests=[],
            export_requests=[],
            activity_logs=[],
        )

        response = auth_client.get(f"{BASE_URL}/gdpr/exports/exp-1/payload")

        assert response.status_code == 200
        data = response.json()
        assert data["export_format_version"] == "1.0"
        assert data["consent"]["marketing"] is True

    def test_payload_internal_error(self, auth_client, mock_gdpr_service):
        mock_gdpr_service.build_export_payload.side_effect = InternalError("boom")

        response = auth_client.get(f"{BASE_URL}/gdpr/exports/exp-1/payload")

        assert response.status_code == 500

    def test_oversized_export_id_is_400(self, auth_client, mock_gdpr_service):
        long_id = "e" * 65

        assert auth_client.get(f"{BASE_URL}/gdpr/exports/{long_id}/payload").status_code == 400
        assert auth_client.post(f"{BASE_URL}/gdpr/exports/{long_id}/failed").status_code == 400
        mock_gdpr_service.build_export_payload.assert_not_awaited()
        mock_gdpr_service.fail_export.assert_not_awaited()


# =============================================================================
# Audit query
# =============================================================================


class TestAuditQuery:

    def test_query_with_filters(self, auth_client, mock_gdpr_service):
        entry = AuditEntry(
            user_id="user-1",
            data_type=AuditDataType.USER_PROFILE,
            action=AuditAction.DELETE,
            ip_address="0.0.0.0",
            user_agent="System",
            result=AuditResult.SUCCESS,
            timestamp=NOW,
        )
        mock_gdpr_service.query_audit_log.return_value = ([entry], 7)

        response = auth_client.get(
            f"{BASE_URL}/audit",
            params={"user_id": "user-1", "action": "delete", "limit": 1, "offset": 3},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["total"] == 7
        assert data["entries"][0]["action"] == "delete"
        mock_gdpr_service.query_audit_log.assert_awaited_once_with(
            user_id="user-1", action=AuditAction.DELETE, limit=1, offset=3
        )

    def test_query_defaults(self, auth_client, mock_gdpr_service):
        mock_gdpr_service.query_audit_log.return_value = ([], 0)

        response = auth_client.get(f"{BASE_URL}/audit")

        assert response.status_code == 200
        mock_gdpr_service.query_audit_log.assert_awaited_once_with(
            user_id=None, action=None, limit=100, offset=0
        )

    def test_unknown_action_is_400(self, auth_client):
        response = auth_client.get(f"{BASE_URL}/audit", params={"action": "purge"})
        assert response.status_code == 400

    def test_limit_above_500_is_400(self, auth_client):
        response = auth_client.get(f"{BASE_URL}/audit", params={"limit": 501})
        assert response.status_code == 400
