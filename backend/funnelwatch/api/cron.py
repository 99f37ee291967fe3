"""
Scheduler-triggered jobs: data sync and alert check.

Both accept a bearer token (external scheduler) or a same-origin call from the
dashboard. A partial sync still answers 200 with `partial: true`.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from funnelwatch.core.cron_auth import JobCaller, require_cron_auth
from funnelwatch.core.database import get_db
from funnelwatch.services.anomaly_detector import AlertThresholds, AnomalyDetector
from funnelwatch.services.data_sync import run_data_sync
from funnelwatch.services.event_fetcher import EventSourceError, SyncConfigurationError
from funnelwatch.services.notifications import SlackNotifier
from funnelwatch.services.sync_lock import SyncInProgressError

router = APIRouter()
logger = logging.getLogger(__name__)


def build_detector() -> AnomalyDetector:
    return AnomalyDetector(AlertThresholds.from_settings(), SlackNotifier.from_settings())


@router.get("/sync-data")
def sync_data(
    db: Session = Depends(get_db),
    caller: JobCaller = Depends(require_cron_auth),
):
    logger.info("Data sync triggered by %s (%s)", caller.kind, caller.client_ip)
    try:
        payload = run_data_sync(db)
    except SyncConfigurationError as exc:
        logger.error("Data sync not configured: %s", exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc), "diagnostics": exc.diagnostics},
        )
    except SyncInProgressError as exc:
        return JSONResponse(
            status_code=409,
            content={
                "success": False,
                "error": str(exc),
                "lease_expires_at": exc.expires_at.isoformat() if exc.expires_at else None,
            },
        )
    except EventSourceError as exc:
        return JSONResponse(
            status_code=502,
            content={"success": False, "error": str(exc), "status_code": exc.status_code},
        )

    if not payload.get("success"):
        return JSONResponse(status_code=500, content=payload)
    return payload


@router.get("/check-alerts")
def check_alerts(
    db: Session = Depends(get_db),
    caller: JobCaller = Depends(require_cron_auth),
):
    logger.info("Alert check triggered by %s (%s)", caller.kind, caller.client_ip)
    return build_detector().run_alert_check(db)
