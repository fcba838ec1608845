"""
Endpoint tests for POST/GET /api/email/sync.

Auth goes through the remote Supabase path (app.auth.supabase is patched);
the sync services are patched at their module attributes.
"""

import os
from unittest.mock import Mock, patch

import pytest

os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")
os.environ.setdefault("SUPABASE_KEY", "test.anon.key")
os.environ.setdefault("SUPABASE_SERVICE_KEY", "test.service.key")

from fastapi.testclient import TestClient

from app.models.email_sync import ProcessedEmail, SyncStatus, SyncSummary
from app.models.mailbox import MailboxConfig
from app.services.email_sync import SyncError


USER_ID = "user-123"
AUTH_HEADERS = {"Authorization": "Bearer test-token"}


@pytest.fixture()
def client():
    from app.main import app
    return TestClient(app)


@pytest.fixture()
def auth():
    with patch("app.auth.SUPABASE_JWT_SECRET", None), \
         patch("app.auth.supabase") as mock_auth_sb:
        mock_auth_sb.auth.get_user.return_value = Mock(user=Mock(id=USER_ID))
        yield mock_auth_sb


@pytest.fixture()
def services(mocker):
    mailbox = MailboxConfig(account="me@gmail.com", password="app-password")
    return Mock(
        resolve=mocker.patch(
            "app.services.mailbox_settings.resolve_mailboxes", return_value=[mailbox]
        ),
        load_watermark=mocker.patch(
            "app.services.expense_store.load_watermark", return_value={"me@gmail.com:1"}
        ),
        run_sync=mocker.patch("app.services.email_sync.run_sync"),
        record=mocker.patch("app.services.expense_store.record_processed_emails"),
        update_last_sync=mocker.patch("app.services.expense_store.update_last_sync"),
        mailbox=mailbox,
    )


class TestPostSync:
    def test_returns_summary(self, client, auth, services):
        processed = [ProcessedEmail(email_account="me@gmail.com", email_uid="2", expense_id="exp-1")]
        services.run_sync.return_value = SyncSummary(
            new_expenses=1,
            meals_created=1,
            accounts=1,
            message="Synced 1 new expenses (0 duplicates skipped, 0 failed)",
            processed=processed,
        )

        response = client.post("/api/email/sync", headers=AUTH_HEADERS)

        assert response.status_code == 200
        assert response.json() == {
            "newExpenses": 1,
            "mealsCreated": 1,
            "duplicates": 0,
            "failed": 0,
            "accounts": 1,
            "failedAccounts": [],
            "message": "Synced 1 new expenses (0 duplicates skipped, 0 failed)",
        }
        services.run_sync.assert_called_once_with(USER_ID, [services.mailbox], {"me@gmail.com:1"})
        services.record.assert_called_once_with(USER_ID, processed)
        services.update_last_sync.assert_called_once_with(USER_ID)

    def test_all_mailboxes_failed_returns_502(self, client, auth, services):
        services.run_sync.side_effect = SyncError(
            "All 1 mailbox(es) failed", failed_accounts=["me@gmail.com"]
        )

        response = client.post("/api/email/sync", headers=AUTH_HEADERS)

        assert response.status_code == 502
        assert "me@gmail.com" in response.json()["detail"]
        services.record.assert_not_called()
        services.update_last_sync.assert_not_called()

    def test_unexpected_error_returns_500(self, client, auth, services):
        services.run_sync.side_effect = Exception("connection reset")

        response = client.post("/api/email/sync", headers=AUTH_HEADERS)

        assert response.status_code == 500
        assert response.json()["detail"] == "Email sync failed"

    def test_watermark_load_failure_syncs_without_it(self, client, auth, services):
        services.load_watermark.side_effect = Exception("connection reset")
        services.run_sync.return_value = SyncSummary(
            new_expenses=1, accounts=1, message="Synced 1 new expenses (0 duplicates skipped, 0 failed)"
        )

        response = client.post("/api/email/sync", headers=AUTH_HEADERS)

        assert response.status_code == 200
        assert response.json()["newExpenses"] == 1
        services.run_sync.assert_called_once_with(USER_ID, [services.mailbox], set())
        services.update_last_sync.assert_called_once_with(USER_ID)

    def test_env_mailboxes_are_not_shared_with_other_users(self, client, auth, mocker, monkeypatch):
        monkeypatch.setenv("EMAIL_USER", "owner@gmail.com")
        monkeypatch.setenv("EMAIL_PASSWORD", "app-password")
        monkeypatch.setenv("EMAIL_OWNER_USER_ID", "owner-1")
        mocker.patch("app.services.mailbox_settings.fetch_user_mailboxes", return_value=[])
        reader = mocker.patch("app.services.email_sync.MailboxReader")
        load_watermark = mocker.patch("app.services.expense_store.load_watermark")

        response = client.post("/api/email/sync", headers=AUTH_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["newExpenses"] == 0
        assert body["accounts"] == 0
        assert body["message"] == "No email accounts configured"
        reader.assert_not_called()
        load_watermark.assert_not_called()

    def test_no_mailboxes_returns_zeros(self, client, auth, services, mocker):
        services.resolve.return_value = []
        real_run_sync = mocker.patch(
            "app.services.email_sync.run_sync",
            return_value=SyncSummary(message="No email accounts configured"),
        )

        response = client.post("/api/email/sync", headers=AUTH_HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["newExpenses"] == 0
        assert body["mealsCreated"] == 0
        assert body["message"] == "No email accounts configured"
        real_run_sync.assert_called_once_with(USER_ID, [], set())
        services.load_watermark.assert_not_called()

    def test_requires_auth(self, client, services):
        response = client.post("/api/email/sync")

        assert response.status_code == 401
        services.run_sync.assert_not_called()

    def test_invalid_token(self, client, services):
        with patch("app.auth.SUPABASE_JWT_SECRET", None), \
             patch("app.auth.supabase") as mock_auth_sb:
            mock_auth_sb.auth.get_user.return_value = Mock(user=None)

            response = client.post("/api/email/sync", headers=AUTH_HEADERS)

        assert response.status_code == 401


class TestGetSyncStatus:
    def test_returns_status(self, client, auth, mocker):
        mocker.patch(
            "app.services.expense_store.get_sync_status",
            return_value=SyncStatus(configured=True, last_sync="2025-11-19T12:00:00+00:00"),
        )

        response = client.get("/api/email/sync", headers=AUTH_HEADERS)

        assert response.status_code == 200
        assert response.json() == {
            "configured": True,
            "lastSync": "2025-11-19T12:00:00+00:00",
        }

    def test_env_mailbox_counts_as_configured(self, client, auth, mocker):
        mocker.patch(
            "app.services.expense_store.get_sync_status",
            return_value=SyncStatus(configured=False, last_sync=None),
        )
        mocker.patch(
            "app.services.mailbox_settings.env_mailboxes_for",
            return_value=[MailboxConfig(account="env@gmail.com", password="pw")],
        )

        response = client.get("/api/email/sync", headers=AUTH_HEADERS)

        assert response.json() == {"configured": True, "lastSync": None}

    def test_not_configured(self, client, auth, mocker):
        mocker.patch(
            "app.services.expense_store.get_sync_status",
            return_value=SyncStatus(configured=False, last_sync=None),
        )
        mocker.patch("app.services.mailbox_settings.env_mailboxes_for", return_value=[])

        response = client.get("/api/email/sync", headers=AUTH_HEADERS)

        assert response.json()["configured"] is False

    def test_env_mailbox_not_configured_for_other_users(self, client, auth, mocker, monkeypatch):
        monkeypatch.setenv("EMAIL_USER", "owner@gmail.com")
        monkeypatch.setenv("EMAIL_PASSWORD", "app-password")
        monkeypatch.setenv("EMAIL_OWNER_USER_ID", "owner-1")
        mocker.patch(
            "app.services.expense_store.get_sync_status",
            return_value=SyncStatus(configured=False, last_sync=None),
        )

        response = client.get("/api/email/sync", headers=AUTH_HEADERS)

        assert response.json()["configured"] is False

    def test_requires_auth(self, client):
        assert client.get("/api/email/sync").status_code == 401
