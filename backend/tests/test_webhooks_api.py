from __future__ import annotations

import importlib

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from funnelwatch.core.database import Base, get_db
from funnelwatch.models.models import Funnel, FunnelDailyAggregate, FunnelEntry, StepDailyAggregate

webhooks = importlib.import_module("funnelwatch.api.webhooks")


def _make_session():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, future=True)()


def _client(session) -> TestClient:
    app = FastAPI()
    app.include_router(webhooks.router, prefix="/api/webhooks")

    def _override_db():
        yield session

    app.dependency_overrides[get_db] = _override_db
    return TestClient(app)


@pytest.fixture(autouse=True)
def _webhook_settings(monkeypatch):
    monkeypatch.setattr(webhooks.settings, "WEBHOOK_SECRET", "", raising=False)
    monkeypatch.setattr(webhooks.settings, "EVENT_SOURCE_PROJECT_ID", "proj-1", raising=False)
    monkeypatch.setattr(webhooks.settings, "DEFAULT_FUNNEL_NAME", "Quiz", raising=False)


def test_enveloped_submission_creates_completed_entry():
    session = _make_session()

    response = _client(session).post(
        "/api/webhooks/source",
        json={
            "type": "user.submitted",
            "data": {"entryId": "entry-1", "currentPageIndex": 12, "timeSpent": 95, "createdAt": "2026-03-02T10:00:00Z"},
        },
    )

    assert response.status_code == 200
    assert response.json() == {
        "success": True,
        "entry_id": "entry-1",
        "event": "user.submitted",
        "is_submission": True,
        "is_paid": False,
    }
    entry = session.query(FunnelEntry).one()
    assert entry.completed is True
    assert entry.last_step_index == 12
    assert entry.time_spent == 95
    assert entry.last_event_type == "user.submitted"
    assert session.query(Funnel).one().source_project_id == "proj-1"
    session.close()


def test_flat_payload_updates_existing_entry_and_keeps_completion():
    session = _make_session()
    client = _client(session)
    client.post("/api/webhooks/source", json={"type": "user.submitted", "data": {"entryId": "entry-1"}})

    response = client.post(
        "/api/webhooks/source",
        json={"event": "user.paid", "entry_id": "entry-1", "project_id": "proj-1", "timeSpent": 120},
    )

    assert response.status_code == 200
    assert response.json()["is_paid"] is True
    entry = session.query(FunnelEntry).one()
    assert entry.completed is True
    assert entry.time_spent == 120
    assert entry.last_event_type == "user.paid"
    session.close()


def test_webhook_never_touches_daily_aggregates():
    session = _make_session()

    _client(session).post("/api/webhooks/source", json={"type": "user.submitted", "data": {"entryId": "entry-1"}})

    assert session.query(FunnelDailyAggregate).count() == 0
    assert session.query(StepDailyAggregate).count() == 0
    session.close()


def test_missing_project_id_is_rejected(monkeypatch):
    monkeypatch.setattr(webhooks.settings, "EVENT_SOURCE_PROJECT_ID", "", raising=False)
    session = _make_session()

    response = _client(session).post("/api/webhooks/source", json={"type": "user.submitted", "data": {"entryId": "e"}})

    assert response.status_code == 400
    assert session.query(FunnelEntry).count() == 0
    session.close()


def test_invalid_secret_is_rejected(monkeypatch):
    monkeypatch.setattr(webhooks.settings, "WEBHOOK_SECRET", "hook-key", raising=False)
    session = _make_session()
    client = _client(session)

    rejected = client.post("/api/webhooks/source", json={"type": "user.submitted", "data": {"entryId": "e"}})
    accepted = client.post(
        "/api/webhooks/source",
        json={"type": "user.submitted", "data": {"entryId": "e"}},
        headers={"X-Webhook-Signature": "hook-key"},
    )

    assert rejected.status_code == 401
    assert accepted.status_code == 200
    session.close()


def test_missing_entry_id_gets_generated_one():
    session = _make_session()

    response = _client(session).post("/api/webhooks/source", json={"type": "user.started", "data": {}})

    assert response.status_code == 200
    assert response.json()["entry_id"].startswith("entry_")
    assert session.query(FunnelEntry).one().completed is False
    session.close()


def test_health_lists_supported_events():
    session = _make_session()

    response = _client(session).get("/api/webhooks/source")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert "user.submitted" in response.json()["supported_events"]
    session.close()


def test_unwrap_envelope_variants():
    assert webhooks.unwrap_envelope({"type": "user.paid", "data": {"a": 1}}) == ("user.paid", {"a": 1})
    assert webhooks.unwrap_envelope({"event": "user.submitted", "a": 1}) == ("user.submitted", {"event": "user.submitted", "a": 1})
    assert webhooks.unwrap_envelope({"a": 1})[0] == "unknown"
