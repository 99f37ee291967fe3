from __future__ import annotations

import importlib
from datetime import datetime, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from funnelwatch.core.database import get_db
from funnelwatch.services.event_fetcher import EventSourceError, SyncConfigurationError
from funnelwatch.services.sync_lock import SyncInProgressError

cron = importlib.import_module("funnelwatch.api.cron")
cron_auth = importlib.import_module("funnelwatch.core.cron_auth")


def _fake_db():
    yield object()


def _client() -> TestClient:
    app = FastAPI()
    app.include_router(cron.router, prefix="/api/cron")
    app.dependency_overrides[get_db] = _fake_db
    return TestClient(app)


AUTH = {"Authorization": "Bearer s3cret"}


@pytest.fixture(autouse=True)
def _auth_settings(monkeypatch):
    monkeypatch.setattr(cron_auth.settings, "CRON_SECRET", "s3cret", raising=False)
    monkeypatch.setattr(cron_auth.settings, "DASHBOARD_URL", "https://dash.example.com", raising=False)
    monkeypatch.setattr(cron_auth.settings, "ENVIRONMENT", "production", raising=False)


def test_sync_requires_auth(monkeypatch):
    monkeypatch.setattr(cron, "run_data_sync", lambda db: pytest.fail("sync should not run"))

    response = _client().get("/api/cron/sync-data")

    assert response.status_code == 401


def test_sync_success_and_partial_answer_200(monkeypatch):
    payloads = iter(
        [
            {"success": True, "status": "success", "partial": False},
            {"success": True, "status": "partial", "partial": True},
        ]
    )
    monkeypatch.setattr(cron, "run_data_sync", lambda db: next(payloads))
    client = _client()

    first = client.get("/api/cron/sync-data", headers=AUTH)
    second = client.get("/api/cron/sync-data", headers={"Sec-Fetch-Site": "same-origin"})

    assert first.status_code == 200
    assert first.json()["partial"] is False
    assert second.status_code == 200
    assert second.json()["partial"] is True


def test_sync_failed_payload_answers_500(monkeypatch):
    monkeypatch.setattr(cron, "run_data_sync", lambda db: {"success": False, "status": "failed"})

    response = _client().get("/api/cron/sync-data", headers=AUTH)

    assert response.status_code == 500
    assert response.json()["status"] == "failed"


def test_sync_configuration_error_carries_diagnostics(monkeypatch):
    def _raise(db):
        raise SyncConfigurationError("Missing credentials", {"has_api_key": False, "has_project_id": True})

    monkeypatch.setattr(cron, "run_data_sync", _raise)

    response = _client().get("/api/cron/sync-data", headers=AUTH)

    assert response.status_code == 500
    body = response.json()
    assert body["success"] is False
    assert body["diagnostics"] == {"has_api_key": False, "has_project_id": True}


def test_sync_in_progress_answers_409(monkeypatch):
    expires_at = datetime(2026, 3, 2, 12, 5, tzinfo=timezone.utc)

    def _raise(db):
        raise SyncInProgressError("data_sync:proj-1", expires_at)

    monkeypatch.setattr(cron, "run_data_sync", _raise)

    response = _client().get("/api/cron/sync-data", headers=AUTH)

    assert response.status_code == 409
    assert response.json()["lease_expires_at"] == expires_at.isoformat()


def test_sync_upstream_error_answers_502(monkeypatch):
    def _raise(db):
        raise EventSourceError(503, "maintenance")

    monkeypatch.setattr(cron, "run_data_sync", _raise)

    response = _client().get("/api/cron/sync-data", headers=AUTH)

    assert response.status_code == 502
    body = response.json()
    assert body["status_code"] == 503
    assert "maintenance" in body["error"]


def test_check_alerts_runs_detector(monkeypatch):
    calls = []

    class _FakeDetector:
        def run_alert_check(self, db):
            calls.append(db)
            return {"success": True, "detected": 2, "saved": 1, "suppressed": 1, "notified": 1, "alerts": []}

    monkeypatch.setattr(cron, "build_detector", lambda: _FakeDetector())

    response = _client().get("/api/cron/check-alerts", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["saved"] == 1
    assert len(calls) == 1


def test_check_alerts_requires_auth(monkeypatch):
    monkeypatch.setattr(cron, "build_detector", lambda: pytest.fail("detector should not be built"))

    assert _client().get("/api/cron/check-alerts").status_code == 401
