"""
Inbound webhook from the event source.

Only the per-entry record is upserted here. Daily aggregates belong to the
sync job; counting webhook pushes as well would double count entries.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from funnelwatch.core.config import settings
from funnelwatch.core.cron_auth import verify_webhook_secret
from funnelwatch.core.database import get_db
from funnelwatch.core.time import ensure_utc, now_utc
from funnelwatch.models.models import FunnelEntry
from funnelwatch.services.data_sync import get_or_create_funnel

router = APIRouter()
logger = logging.getLogger(__name__)

SUPPORTED_EVENTS = ["user.submitted", "user.paid"]


def _first_present(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return ensure_utc(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
    except ValueError:
        logger.warning("Ignoring unparseable webhook timestamp %r", value)
        return None


def _as_int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def unwrap_envelope(raw: dict[str, Any]) -> tuple[str, dict[str, Any]]:
    """Accept `{type|event, data}` envelopes as well as flat payloads."""
    event_type = str(raw.get("type") or raw.get("event") or "unknown")
    data = raw.get("data")
    payload = data if isinstance(data, dict) else raw
    return event_type, payload


@router.post("/source")
def receive_source_webhook(
    request: Request,
    raw: dict[str, Any] = Body(...),
    db: Session = Depends(get_db),
):
    if not verify_webhook_secret(request):
        logger.warning("Rejected webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    event_type, payload = unwrap_envelope(raw)
    logger.info("Processing webhook event %s", event_type)

    project_id = _first_present(payload, "projectId", "project_id", "flowId") or str(
        getattr(settings, "EVENT_SOURCE_PROJECT_ID", "") or ""
    ).strip()
    if not project_id:
        raise HTTPException(
            status_code=400,
            detail="Missing project id - configure EVENT_SOURCE_PROJECT_ID or include it in the payload",
        )

    current = now_utc()
    entry_id = str(
        _first_present(payload, "entryId", "entry_id", "id", "userId")
        or f"entry_{int(current.timestamp() * 1000)}"
    )
    funnel = get_or_create_funnel(db, project_id=str(project_id))

    is_submission = "submitted" in event_type
    is_paid = "paid" in event_type
    is_completed = is_submission or payload.get("completed") is True
    current_page_index = _as_int(_first_present(payload, "currentPageIndex", "current_page_index"))
    total_pages = _as_int(_first_present(payload, "totalPages", "total_pages"))
    time_spent = _as_int(_first_present(payload, "timeSpent", "time_spent"))

    entry = db.query(FunnelEntry).filter(FunnelEntry.entry_id == entry_id).first()
    if entry is None:
        entry = FunnelEntry(
            entry_id=entry_id,
            funnel_id=funnel.id,
            last_step_index=current_page_index or (funnel.total_steps if is_completed else 0),
            total_steps=total_pages or funnel.total_steps,
            time_spent=time_spent,
            created_at=_parse_timestamp(payload.get("createdAt") or payload.get("created_at")) or current,
        )
        db.add(entry)
    else:
        if current_page_index or is_completed:
            entry.last_step_index = current_page_index or funnel.total_steps
        if time_spent:
            entry.time_spent = time_spent
    entry.completed = bool(entry.completed) or is_completed
    entry.last_event_type = event_type[:80]
    entry.updated_at = current
    db.commit()

    return {
        "success": True,
        "entry_id": entry_id,
        "event": event_type,
        "is_submission": is_submission,
        "is_paid": is_paid,
    }


@router.get("/source")
def webhook_health():
    return {
        "status": "ok",
        "endpoint": "Event source webhook",
        "supported_events": SUPPORTED_EVENTS,
        "message": "POST entry data to this endpoint",
    }
