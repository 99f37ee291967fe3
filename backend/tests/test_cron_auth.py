from __future__ import annotations

import importlib

import pytest
from fastapi import HTTPException
from starlette.requests import Request

cron_auth = importlib.import_module("funnelwatch.core.cron_auth")


def _request(headers: dict[str, str] | None = None) -> Request:
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/api/cron/sync-data",
        "headers": [(key.lower().encode("latin-1"), value.encode("latin-1")) for key, value in (headers or {}).items()],
        "client": ("203.0.113.7", 5555),
    }
    return Request(scope)


@pytest.fixture(autouse=True)
def _auth_settings(monkeypatch):
    monkeypatch.setattr(cron_auth.settings, "CRON_SECRET", "s3cret", raising=False)
    monkeypatch.setattr(cron_auth.settings, "DASHBOARD_URL", "https://dash.example.com", raising=False)
    monkeypatch.setattr(cron_auth.settings, "ENVIRONMENT", "production", raising=False)
    monkeypatch.setattr(cron_auth.settings, "WEBHOOK_SECRET", "", raising=False)


def test_bearer_token_is_accepted():
    caller = cron_auth.require_cron_auth(_request({"Authorization": "Bearer s3cret"}))
    assert caller.kind == "scheduler"
    assert caller.client_ip == "203.0.113.7"


def test_wrong_token_is_rejected():
    with pytest.raises(HTTPException) as exc_info:
        cron_auth.require_cron_auth(_request({"Authorization": "Bearer nope"}))
    assert exc_info.value.status_code == 401


def test_missing_token_is_rejected():
    with pytest.raises(HTTPException) as exc_info:
        cron_auth.require_cron_auth(_request())
    assert exc_info.value.status_code == 401


def test_same_origin_dashboard_call_is_accepted():
    assert cron_auth.require_cron_auth(_request({"Sec-Fetch-Site": "same-origin"})).kind == "dashboard"
    referer = {"Referer": "https://dash.example.com/dashboard"}
    assert cron_auth.require_cron_auth(_request(referer)).kind == "dashboard"


def test_open_when_secret_missing_outside_production(monkeypatch):
    monkeypatch.setattr(cron_auth.settings, "CRON_SECRET", "", raising=False)
    monkeypatch.setattr(cron_auth.settings, "ENVIRONMENT", "development", raising=False)

    assert cron_auth.require_cron_auth(_request()).kind == "open"


def test_production_without_secret_is_unavailable(monkeypatch):
    monkeypatch.setattr(cron_auth.settings, "CRON_SECRET", "", raising=False)

    with pytest.raises(HTTPException) as exc_info:
        cron_auth.require_cron_auth(_request())
    assert exc_info.value.status_code == 503


def test_webhook_secret_unset_allows_everything():
    assert cron_auth.verify_webhook_secret(_request()) is True


def test_webhook_secret_header_variants(monkeypatch):
    monkeypatch.setattr(cron_auth.settings, "WEBHOOK_SECRET", "hook-key", raising=False)

    assert cron_auth.verify_webhook_secret(_request({"X-Webhook-Signature": "hook-key"})) is True
    assert cron_auth.verify_webhook_secret(_request({"Webhook-Secret": "hook-key"})) is True
    assert cron_auth.verify_webhook_secret(_request({"Authorization": "Bearer hook-key"})) is True
    assert cron_auth.verify_webhook_secret(_request({"X-Webhook-Signature": "wrong"})) is False
    assert cron_auth.verify_webhook_secret(_request()) is False
