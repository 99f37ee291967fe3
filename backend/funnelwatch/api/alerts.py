"""
Alerts API Router
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from funnelwatch.core.database import get_db
from funnelwatch.models.models import Alert
from funnelwatch.services.anomaly_detector import ALERT_STATUSES, serialize_alert, update_alert_status

router = APIRouter()


class AlertStatusUpdate(BaseModel):
    status: str
    actor: Optional[str] = None


@router.get("")
def list_alerts(
    status: Optional[str] = Query(None),
    severity: Optional[str] = Query(None),
    funnel_id: Optional[int] = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    """Newest alerts first, plus counts of active alerts by severity."""
    query = db.query(Alert)
    if status:
        query = query.filter(Alert.status == status)
    if severity:
        query = query.filter(Alert.severity == severity)
    if funnel_id is not None:
        query = query.filter(Alert.funnel_id == funnel_id)
    alerts = query.order_by(desc(Alert.created_at), desc(Alert.id)).limit(limit).all()

    active_counts = dict(
        db.query(Alert.severity, func.count(Alert.id))
        .filter(Alert.status == "active")
        .group_by(Alert.severity)
        .all()
    )
    summary = {
        "critical": int(active_counts.get("critical", 0)),
        "warning": int(active_counts.get("warning", 0)),
        "info": int(active_counts.get("info", 0)),
    }
    summary["total"] = sum(summary.values())
    return {"alerts": [serialize_alert(alert) for alert in alerts], "summary": summary}


@router.patch("/{alert_id}")
def patch_alert(alert_id: int, body: AlertStatusUpdate, db: Session = Depends(get_db)):
    if body.status not in ALERT_STATUSES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid status; expected one of {', '.join(ALERT_STATUSES)}",
        )
    alert = update_alert_status(db, alert_id, body.status, actor=body.actor)
    if alert is None:
        raise HTTPException(status_code=404, detail="Alert not found")
    return serialize_alert(alert)
