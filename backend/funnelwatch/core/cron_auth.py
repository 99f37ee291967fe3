"""Auth dependencies for scheduler-triggered jobs and inbound webhooks."""
from __future__ import annotations

import hmac
import logging
from dataclasses import dataclass

from fastapi import HTTPException, Request, status

from funnelwatch.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobCaller:
    # "scheduler" (bearer token), "dashboard" (same-origin), or "open" (no secret configured)
    kind: str
    client_ip: str


def _extract_bearer(request: Request) -> str:
    auth_header = request.headers.get("authorization") or ""
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return ""


def is_same_origin_request(request: Request) -> bool:
    """True when the browser says the call came from the dashboard itself."""
    if (request.headers.get("sec-fetch-site") or "").strip().lower() == "same-origin":
        return True
    dashboard_url = str(getattr(settings, "DASHBOARD_URL", "") or "").strip().rstrip("/")
    referer = request.headers.get("referer") or ""
    return bool(dashboard_url) and dashboard_url in referer


def require_cron_auth(request: Request) -> JobCaller:
    client_ip = request.client.host if request.client else "unknown"
    expected_token = str(getattr(settings, "CRON_SECRET", "") or "").strip()

    presented_token = _extract_bearer(request)
    if expected_token and presented_token and hmac.compare_digest(presented_token, expected_token):
        return JobCaller(kind="scheduler", client_ip=client_ip)

    if is_same_origin_request(request):
        return JobCaller(kind="dashboard", client_ip=client_ip)

    if not expected_token:
        environment = str(getattr(settings, "ENVIRONMENT", "development") or "development").strip().lower()
        if environment == "production":
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Cron secret not configured",
            )
        return JobCaller(kind="open", client_ip=client_ip)

    logger.warning("Rejected job trigger from %s", client_ip)
    raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unauthorized")


def verify_webhook_secret(request: Request) -> bool:
    """Check the shared webhook secret, if one is configured."""
    expected = str(getattr(settings, "WEBHOOK_SECRET", "") or "").strip()
    if not expected:
        return True
    for header in ("x-webhook-signature", "webhook-secret", "authorization"):
        presented = (request.headers.get(header) or "").strip()
        if not presented:
            continue
        if presented.lower().startswith("bearer "):
            presented = presented[7:].strip()
        if hmac.compare_digest(presented, expected):
            return True
    return False
