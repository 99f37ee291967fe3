"""
Push alerts to a Slack incoming webhook.

Delivery is best effort: every failure is logged and reported as False,
never raised.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib import error as urlerror
from urllib import request as urlrequest

from funnelwatch.core.config import settings

logger = logging.getLogger(__name__)

_SEVERITY_EMOJI = {"critical": "\U0001F6A8", "warning": "⚠️", "info": "ℹ️"}
# Rough value of one lost customer, used for the estimated-impact line.
_AVG_CUSTOMER_VALUE = 30


def _fmt(value: Optional[float]) -> str:
    return f"{float(value or 0.0):.1f}"


def build_alert_message(alert: Any, dashboard_url: str) -> dict[str, Any]:
    """Block-formatted message for one alert (DetectedAlert or anything with the same fields)."""
    severity = str(alert.severity)
    emoji = _SEVERITY_EMOJI.get(severity, "")
    previous_value = float(alert.previous_day_value or 0.0)
    additional_dropoffs = round(abs(float(alert.current_value) - previous_value) * 10)
    estimated_revenue = additional_dropoffs * _AVG_CUSTOMER_VALUE
    change = float(alert.percentage_change)

    if alert.step_name:
        location = f"*Step:*\nStep {alert.step_number} - {alert.step_name}"
    else:
        location = "*Type:*\nOverall Funnel"

    blocks: list[dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": f"{emoji} {severity.upper()} ALERT".strip(), "emoji": True},
        },
        {"type": "section", "text": {"type": "mrkdwn", "text": f"*{alert.message}*"}},
        {
            "type": "section",
            "fields": [
                {"type": "mrkdwn", "text": f"*Funnel:*\n{alert.funnel_name}"},
                {"type": "mrkdwn", "text": location},
            ],
        },
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    "*Metrics:*\n"
                    f"• Current: {_fmt(alert.current_value)}%\n"
                    f"• Previous day: {_fmt(previous_value)}%\n"
                    f"• 7-day average: {_fmt(alert.seven_day_average)}%\n"
                    f"• Change: {'+' if change > 0 else ''}{change:.1f}%"
                ),
            },
        },
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    "*Estimated Impact:*\n"
                    f"• ~{additional_dropoffs} additional users affected\n"
                    f"• Potential revenue impact: ${estimated_revenue:,}"
                ),
            },
        },
    ]
    if alert.recommendation:
        blocks.append(
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Recommendation:*\n{alert.recommendation}"}}
        )
    blocks.append(
        {
            "type": "actions",
            "elements": [
                {
                    "type": "button",
                    "text": {"type": "plain_text", "text": "View Dashboard", "emoji": True},
                    "url": f"{dashboard_url.rstrip('/')}/dashboard",
                }
            ],
        }
    )
    blocks.append({"type": "divider"})
    return {"text": str(alert.message), "blocks": blocks}


class SlackNotifier:
    def __init__(self, webhook_url: str | None = None, *, timeout: float = 10.0, dashboard_url: str | None = None):
        self.webhook_url = str(webhook_url or "").strip()
        self.timeout = float(timeout)
        self.dashboard_url = dashboard_url or str(getattr(settings, "DASHBOARD_URL", "") or "http://localhost:3000")

    @classmethod
    def from_settings(cls) -> "SlackNotifier":
        return cls(
            getattr(settings, "SLACK_WEBHOOK_URL", ""),
            timeout=float(getattr(settings, "SLACK_NOTIFY_TIMEOUT_SECONDS", 10.0) or 10.0),
            dashboard_url=str(getattr(settings, "DASHBOARD_URL", "") or "http://localhost:3000"),
        )

    def send_message(self, payload: dict[str, Any]) -> bool:
        if not self.webhook_url:
            logger.warning("SLACK_WEBHOOK_URL not configured, skipping notification")
            return False

        req = urlrequest.Request(
            self.webhook_url,
            data=json.dumps(payload).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlrequest.urlopen(req, timeout=self.timeout) as response:
                status_code = int(response.getcode() or 0)
        except urlerror.HTTPError as exc:
            logger.warning(
                "Slack webhook HTTP error: status=%s body=%s",
                exc.code,
                exc.read().decode("utf-8", "ignore")[:250],
            )
            return False
        except Exception as exc:
            logger.warning("Slack webhook failed: %s", exc)
            return False

        if status_code < 200 or status_code >= 300:
            logger.warning("Slack webhook returned status %s", status_code)
            return False
        return True

    def send_alert(self, alert: Any) -> bool:
        return self.send_message(build_alert_message(alert, self.dashboard_url))
