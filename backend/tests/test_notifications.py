from __future__ import annotations

import importlib
import io
import json
from urllib import error as urlerror

from funnelwatch.services.anomaly_detector import DetectedAlert

notifications = importlib.import_module("funnelwatch.services.notifications")


def _alert(**overrides) -> DetectedAlert:
    values = dict(
        funnel_id=1,
        funnel_name="Quiz",
        severity="critical",
        alert_type="drop_off",
        current_value=40.0,
        previous_day_value=20.0,
        seven_day_average=22.5,
        percentage_change=100.0,
        message="Drop-off rate at Step 3 (Sex) increased by 100.0%",
        step_number=3,
        step_name="Sex",
        recommendation="Review recent changes to this step.",
    )
    values.update(overrides)
    return DetectedAlert(**values)


class _FakeResponse:
    def __init__(self, code: int):
        self.code = code

    def getcode(self):
        return self.code

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_build_alert_message_for_step_alert():
    message = notifications.build_alert_message(_alert(), "https://dash.example.com/")

    assert message["text"] == "Drop-off rate at Step 3 (Sex) increased by 100.0%"
    blocks = message["blocks"]
    assert blocks[0]["type"] == "header"
    assert "CRITICAL ALERT" in blocks[0]["text"]["text"]
    assert blocks[2]["fields"][1]["text"] == "*Step:*\nStep 3 - Sex"
    assert "+100.0%" in blocks[3]["text"]["text"]
    # |40 - 20| * 10 users at $30 each
    assert "~200 additional users" in blocks[4]["text"]["text"]
    assert "$6,000" in blocks[4]["text"]["text"]
    assert blocks[5]["text"]["text"].startswith("*Recommendation:*")
    assert blocks[6]["elements"][0]["url"] == "https://dash.example.com/dashboard"
    assert blocks[-1] == {"type": "divider"}


def test_build_alert_message_for_funnel_alert_without_recommendation():
    alert = _alert(
        alert_type="conversion",
        step_number=None,
        step_name=None,
        recommendation=None,
        current_value=10.0,
        previous_day_value=20.0,
        percentage_change=-50.0,
    )

    blocks = notifications.build_alert_message(alert, "http://localhost:3000")["blocks"]

    assert blocks[2]["fields"][1]["text"] == "*Type:*\nOverall Funnel"
    assert "Change: -50.0%" in blocks[3]["text"]["text"]
    assert not any("Recommendation" in str(block) for block in blocks)


def test_send_message_without_webhook_url_returns_false(monkeypatch):
    def _unexpected(*args, **kwargs):
        raise AssertionError("urlopen should not be called")

    monkeypatch.setattr(notifications.urlrequest, "urlopen", _unexpected)

    assert notifications.SlackNotifier("").send_message({"text": "hi"}) is False


def test_send_alert_posts_json(monkeypatch):
    captured = {}

    def _fake_urlopen(req, timeout):
        captured["url"] = req.full_url
        captured["method"] = req.get_method()
        captured["body"] = json.loads(req.data.decode("utf-8"))
        captured["timeout"] = timeout
        return _FakeResponse(200)

    monkeypatch.setattr(notifications.urlrequest, "urlopen", _fake_urlopen)
    notifier = notifications.SlackNotifier("https://hooks.slack.test/abc", timeout=3, dashboard_url="https://dash")

    assert notifier.send_alert(_alert()) is True
    assert captured["url"] == "https://hooks.slack.test/abc"
    assert captured["method"] == "POST"
    assert captured["timeout"] == 3.0
    assert captured["body"]["text"].startswith("Drop-off rate")


def test_send_message_http_error_returns_false(monkeypatch):
    def _fake_urlopen(req, timeout):
        raise urlerror.HTTPError(req.full_url, 500, "boom", {}, io.BytesIO(b"server error"))

    monkeypatch.setattr(notifications.urlrequest, "urlopen", _fake_urlopen)

    assert notifications.SlackNotifier("https://hooks.slack.test/abc").send_message({"text": "hi"}) is False


def test_send_message_non_2xx_returns_false(monkeypatch):
    monkeypatch.setattr(notifications.urlrequest, "urlopen", lambda req, timeout: _FakeResponse(302))

    assert notifications.SlackNotifier("https://hooks.slack.test/abc").send_message({"text": "hi"}) is False


def test_from_settings_reads_webhook(monkeypatch):
    monkeypatch.setattr(notifications.settings, "SLACK_WEBHOOK_URL", " https://hooks.slack.test/x ", raising=False)
    monkeypatch.setattr(notifications.settings, "SLACK_NOTIFY_TIMEOUT_SECONDS", 4.0, raising=False)

    notifier = notifications.SlackNotifier.from_settings()

    assert notifier.webhook_url == "https://hooks.slack.test/x"
    assert notifier.timeout == 4.0
