"""
Funnels read API.

Serves the stored daily aggregates; nothing here talks to the event source.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import desc
from sqlalchemy.orm import Session

from funnelwatch.core.database import get_db
from funnelwatch.core.time import ensure_utc, now_utc
from funnelwatch.models.models import Funnel, FunnelDailyAggregate, FunnelStep, StepDailyAggregate
from funnelwatch.services.daily_aggregator import compute_rate

router = APIRouter()


def _iso(value) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value else None


def _resolve_window(start_date: Optional[date], end_date: Optional[date], days: int) -> tuple[date, date]:
    if (start_date is None) != (end_date is None):
        raise HTTPException(status_code=400, detail="start_date and end_date must be given together")
    if start_date and end_date:
        if start_date > end_date:
            raise HTTPException(status_code=400, detail="start_date must be on or before end_date")
        return start_date, end_date
    end = now_utc().date()
    # Inclusive window: `days` calendar days ending today.
    return end - timedelta(days=days - 1), end


def _latest_metrics(db: Session, funnel_id: int) -> Optional[dict]:
    latest = (
        db.query(FunnelDailyAggregate)
        .filter(FunnelDailyAggregate.funnel_id == funnel_id)
        .order_by(desc(FunnelDailyAggregate.day_key))
        .first()
    )
    if latest is None:
        return None
    return {
        "day": latest.day_key.isoformat(),
        "conversion_rate": latest.conversion_rate,
        "total_starts": latest.total_starts,
        "total_completions": latest.total_completions,
    }


@router.get("")
def list_funnels(db: Session = Depends(get_db)):
    """All funnels with their most recent daily metrics."""
    funnels = db.query(Funnel).order_by(desc(Funnel.updated_at), Funnel.id.asc()).all()
    return {
        "funnels": [
            {
                "id": funnel.id,
                "source_project_id": funnel.source_project_id,
                "name": funnel.name,
                "description": funnel.description,
                "total_steps": funnel.total_steps,
                "status": funnel.status,
                "last_updated": _iso(funnel.updated_at),
                "metrics": _latest_metrics(db, funnel.id),
            }
            for funnel in funnels
        ]
    }


@router.get("/analytics")
def funnel_analytics(
    start_date: Optional[date] = Query(None),
    end_date: Optional[date] = Query(None),
    days: int = Query(30, ge=1, le=365),
    funnel_id: Optional[int] = Query(None),
    db: Session = Depends(get_db),
):
    """Totals, per-step breakdown and a daily trend over a UTC day window."""
    start, end = _resolve_window(start_date, end_date, days)

    query = db.query(Funnel)
    if funnel_id is not None:
        query = query.filter(Funnel.id == funnel_id)
    else:
        query = query.filter(Funnel.status == "active")
    funnel = query.order_by(Funnel.id.asc()).first()

    if funnel is None:
        return {
            "success": True,
            "total_entries": 0,
            "metrics": {"total_starts": 0, "total_completions": 0, "conversion_rate": 0.0, "abandonment_rate": 0.0},
            "steps": [],
            "trends": [],
            "message": "No funnel data yet. Run the data sync to populate analytics.",
        }

    funnel_rows = (
        db.query(FunnelDailyAggregate)
        .filter(
            FunnelDailyAggregate.funnel_id == funnel.id,
            FunnelDailyAggregate.day_key >= start,
            FunnelDailyAggregate.day_key <= end,
        )
        .all()
    )
    steps = (
        db.query(FunnelStep)
        .filter(FunnelStep.funnel_id == funnel.id)
        .order_by(FunnelStep.step_number.asc())
        .all()
    )
    step_rows = []
    if steps:
        step_rows = (
            db.query(StepDailyAggregate)
            .filter(
                StepDailyAggregate.step_id.in_([step.id for step in steps]),
                StepDailyAggregate.day_key >= start,
                StepDailyAggregate.day_key <= end,
            )
            .all()
        )

    total_starts = sum(row.total_starts for row in funnel_rows)
    total_completions = sum(row.total_completions for row in funnel_rows)

    per_step = {step.id: {"views": 0, "exits": 0, "continues": 0, "time_weighted": 0.0, "time_views": 0} for step in steps}
    for row in step_rows:
        bucket = per_step[row.step_id]
        bucket["views"] += row.views
        bucket["exits"] += row.exits
        bucket["continues"] += row.continues
        if row.avg_time_on_step:
            bucket["time_weighted"] += row.avg_time_on_step * row.views
            bucket["time_views"] += row.views

    step_payload = []
    for step in steps:
        bucket = per_step[step.id]
        step_payload.append(
            {
                "step_number": step.step_number,
                "step_key": step.step_key,
                "step_name": step.step_name,
                "category": step.category,
                "is_discovered": bool(step.is_discovered),
                "views": bucket["views"],
                "exits": bucket["exits"],
                "continues": bucket["continues"],
                "drop_off_rate": round(compute_rate(bucket["exits"], bucket["views"]), 2),
                "conversion_rate": round(compute_rate(bucket["continues"], bucket["views"]), 2),
                "avg_time_on_step": (
                    round(bucket["time_weighted"] / bucket["time_views"]) if bucket["time_views"] else 0
                ),
            }
        )

    by_day = {row.day_key: row for row in funnel_rows}
    trends = []
    day = start
    while day <= end:
        row = by_day.get(day)
        trends.append(
            {
                "date": day.isoformat(),
                "total_starts": row.total_starts if row else 0,
                "total_completions": row.total_completions if row else 0,
                "conversion_rate": row.conversion_rate if row else 0.0,
            }
        )
        day += timedelta(days=1)

    return {
        "success": True,
        "total_entries": total_starts,
        "date_range": {"start": start.isoformat(), "end": end.isoformat(), "days": (end - start).days + 1},
        "funnel": {"id": funnel.id, "name": funnel.name, "total_steps": funnel.total_steps},
        "metrics": {
            "total_starts": total_starts,
            "total_completions": total_completions,
            "total_abandoned": total_starts - total_completions,
            "conversion_rate": round(compute_rate(total_completions, total_starts), 2),
            "abandonment_rate": round(compute_rate(total_starts - total_completions, total_starts), 2),
        },
        "steps": step_payload,
        "trends": trends,
    }


@router.get("/{funnel_id}")
def get_funnel(funnel_id: int, db: Session = Depends(get_db)):
    funnel = db.query(Funnel).filter(Funnel.id == funnel_id).first()
    if not funnel:
        raise HTTPException(status_code=404, detail="Funnel not found")

    steps = (
        db.query(FunnelStep)
        .filter(FunnelStep.funnel_id == funnel.id)
        .order_by(FunnelStep.step_number.asc())
        .all()
    )
    return {
        "id": funnel.id,
        "source_project_id": funnel.source_project_id,
        "name": funnel.name,
        "description": funnel.description,
        "total_steps": funnel.total_steps,
        "status": funnel.status,
        "created_at": _iso(funnel.created_at),
        "last_updated": _iso(funnel.updated_at),
        "metrics": _latest_metrics(db, funnel.id),
        "steps": [
            {
                "id": step.id,
                "step_number": step.step_number,
                "step_key": step.step_key,
                "step_name": step.step_name,
                "category": step.category,
                "is_discovered": bool(step.is_discovered),
            }
            for step in steps
        ],
    }
