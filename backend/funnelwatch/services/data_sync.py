"""
Data sync job: fetch -> normalize -> aggregate -> reconcile steps -> write.

One invocation is one sequential pass. The fetch stage is time-boxed; when it
stops early the run still processes what it fetched and reports
`partial=True` (HTTP 200) so the scheduler or an operator can run it again.
Upstream failures abort before anything is written. Each outcome is recorded
in sync_logs.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funnelwatch.core.config import settings
from funnelwatch.core.time import ensure_utc, now_utc
from funnelwatch.models.models import Funnel, FunnelStep, SyncLog
from funnelwatch.services.aggregate_writer import replace_daily_aggregates, upsert_entries
from funnelwatch.services.daily_aggregator import aggregate_entries
from funnelwatch.services.entry_normalizer import normalize_entry
from funnelwatch.services.event_fetcher import (
    EventSourceClient,
    EventSourceError,
    FetchResult,
    RawEvent,
    SyncConfigurationError,
    build_event_source_client,
    fetch_all_events,
)
from funnelwatch.services.funnel_pages import FUNNEL_PAGES, purchase_complete_keys
from funnelwatch.services.step_catalog import (
    collect_observed_step_keys,
    reconcile_step_catalog,
    summarize_page_coverage,
)
from funnelwatch.services.sync_lock import acquire_sync_lease, release_sync_lease, sync_lease_name

logger = logging.getLogger(__name__)

SYNC_TYPE = "event_source_api"


def dedupe_events(events: Iterable[RawEvent]) -> list[RawEvent]:
    """
    Keep one record per entry_id, the most recently updated one.

    Offset paging over a live dataset can return the same entry twice when
    rows shift between page requests.
    """
    latest: dict[str, RawEvent] = {}
    for event in events:
        current = latest.get(event.entry_id)
        if current is None:
            latest[event.entry_id] = event
            continue
        current_ts = current.updated_at or current.created_at
        candidate_ts = event.updated_at or event.created_at
        if candidate_ts >= current_ts:
            latest[event.entry_id] = event
    return list(latest.values())


def get_or_create_funnel(db: Session, *, project_id: str, name: str | None = None) -> Funnel:
    funnel = db.query(Funnel).filter(Funnel.source_project_id == project_id).first()
    if funnel is not None:
        return funnel
    funnel = Funnel(
        source_project_id=project_id,
        name=name or settings.DEFAULT_FUNNEL_NAME,
        total_steps=len(FUNNEL_PAGES),
        status="active",
    )
    db.add(funnel)
    db.commit()
    logger.info("Created funnel %s for project %s", funnel.id, project_id)
    return funnel


def _write_sync_log(
    db: Session,
    *,
    status: str,
    records_processed: int,
    started_at: datetime,
    error_message: str | None = None,
    details: dict[str, Any] | None = None,
) -> None:
    try:
        db.add(
            SyncLog(
                sync_type=SYNC_TYPE,
                status=status,
                records_processed=records_processed,
                error_message=error_message,
                details=details,
                started_at=started_at,
                completed_at=now_utc(),
            )
        )
        db.commit()
    except SQLAlchemyError as log_error:
        db.rollback()
        logger.error("Failed to write sync log (%s): %s", status, log_error)


def _partial_message(fetch: FetchResult, failed_days: int) -> str | None:
    parts = []
    if fetch.partial:
        parts.append(f"fetch stopped at {fetch.stop_reason} after {fetch.records_fetched} records")
    if failed_days:
        parts.append(f"{failed_days} day(s) failed to write")
    if not parts:
        return None
    return "Partial sync: " + "; ".join(parts) + ". Re-run the sync to pick up the rest."


def process_events(
    db: Session,
    *,
    project_id: str,
    fetch: FetchResult,
    started_at: datetime,
) -> dict[str, Any]:
    events = dedupe_events(fetch.events)
    if not events:
        status = "partial" if fetch.partial else "success"
        _write_sync_log(
            db,
            status=status,
            records_processed=0,
            started_at=started_at,
            details={"pagination": fetch.as_dict()},
        )
        return {
            "success": True,
            "status": status,
            "message": "No entries found at the event source",
            "entries_processed": 0,
            "steps_processed": 0,
            "days_processed": 0,
            "failed_days": [],
            "funnel_metrics": {"total_starts": 0, "total_completions": 0, "conversion_rate": 0.0},
            "partial": fetch.partial,
            "pagination": fetch.as_dict(),
            "page_coverage": summarize_page_coverage([]),
        }

    funnel = get_or_create_funnel(db, project_id=project_id)
    completion_keys = purchase_complete_keys(settings.PURCHASE_COMPLETE_EXTRA_KEYS)
    normalized = [normalize_entry(event, completion_keys) for event in events]
    aggregates = aggregate_entries(normalized)

    observed_keys = collect_observed_step_keys(events)
    catalog = reconcile_step_catalog(db, funnel_id=funnel.id, observed_keys=observed_keys)

    upsert_entries(db, funnel_id=funnel.id, entries=zip(events, normalized))
    write = replace_daily_aggregates(
        db,
        funnel_id=funnel.id,
        aggregates=aggregates,
        step_ids_by_key=catalog.step_ids_by_key,
    )

    funnel.total_steps = db.query(FunnelStep).filter(FunnelStep.funnel_id == funnel.id).count()
    db.commit()

    if write.all_failed:
        status = "failed"
    elif fetch.partial or write.days_failed:
        status = "partial"
    else:
        status = "success"

    totals = aggregates.totals()
    steps_processed = len(aggregates.step_keys()) - len(write.orphaned_step_keys)
    message = _partial_message(fetch, len(write.days_failed))

    _write_sync_log(
        db,
        status=status,
        records_processed=len(events),
        started_at=started_at,
        error_message=(
            "; ".join(f"{day.isoformat()}: {error}" for day, error in write.days_failed) or None
        ),
        details={
            "pagination": fetch.as_dict(),
            "days_written": [day.isoformat() for day in write.days_written],
            "failed_days": write.failed_days_payload(),
            "discovered_steps": catalog.discovered,
            "orphaned_step_keys": write.orphaned_step_keys,
        },
    )

    logger.info(
        "Sync %s: entries=%s steps=%s days=%s failed_days=%s partial=%s",
        status,
        len(events),
        steps_processed,
        len(write.days_written),
        len(write.days_failed),
        fetch.partial,
    )

    payload: dict[str, Any] = {
        "success": status != "failed",
        "status": status,
        "funnel_id": funnel.id,
        "entries_processed": len(events),
        "steps_processed": steps_processed,
        "days_processed": len(write.days_written),
        "failed_days": write.failed_days_payload(),
        "funnel_metrics": {
            "total_starts": totals.starts,
            "total_completions": totals.completions,
            "conversion_rate": round(totals.conversion_rate, 2),
        },
        "partial": fetch.partial,
        "pagination": fetch.as_dict(),
        "page_coverage": {
            **summarize_page_coverage(observed_keys),
            "discovered_steps": catalog.discovered,
            "orphaned_step_keys": write.orphaned_step_keys,
        },
    }
    if message:
        payload["message"] = message
    return payload


def run_data_sync(
    db: Session,
    *,
    source_client: Optional[EventSourceClient] = None,
    now: datetime | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> dict[str, Any]:
    """
    Run one sync pass.

    Raises SyncConfigurationError (after logging a failed sync) when credentials
    are missing, SyncInProgressError when another run holds the lease, and
    EventSourceError (after logging a failed sync) when the source errors.
    """
    started_at = ensure_utc(now) or now_utc()
    started_clock = clock()
    owns_client = source_client is None
    try:
        client = source_client or build_event_source_client()
    except SyncConfigurationError as exc:
        logger.error("Sync not configured: %s", exc)
        _write_sync_log(
            db,
            status="failed",
            records_processed=0,
            started_at=started_at,
            error_message=str(exc),
            details=exc.diagnostics,
        )
        raise

    lease_name = sync_lease_name(client.project_id)
    lease_owner = acquire_sync_lease(
        db,
        name=lease_name,
        ttl_seconds=int(settings.SYNC_LEASE_SECONDS),
        now=started_at,
    )
    logger.info("Starting data sync for project %s", client.project_id)
    try:
        try:
            fetch = fetch_all_events(
                client,
                page_size=int(settings.SYNC_PAGE_SIZE),
                max_records=int(settings.SYNC_MAX_RECORDS),
                deadline_seconds=float(settings.SYNC_FETCH_DEADLINE_SECONDS),
                embeddable_id=str(settings.EVENT_SOURCE_EMBEDDABLE_ID or "").strip() or None,
                clock=clock,
            )
        except EventSourceError as exc:
            logger.error("Sync aborted by event source error: %s", exc)
            _write_sync_log(
                db,
                status="failed",
                records_processed=0,
                started_at=started_at,
                error_message=str(exc),
                details={"status_code": exc.status_code},
            )
            raise

        logger.info(
            "Fetched %s entries in %s pages (stop_reason=%s)",
            len(fetch.events),
            fetch.pages_fetched,
            fetch.stop_reason,
        )

        try:
            payload = process_events(db, project_id=client.project_id, fetch=fetch, started_at=started_at)
        except Exception as exc:
            # Roll back before the lease release commits, so no half-replaced day is persisted.
            db.rollback()
            logger.error("Sync failed while processing results: %s", exc)
            _write_sync_log(
                db,
                status="failed",
                records_processed=0,
                started_at=started_at,
                error_message=str(exc),
            )
            raise
    finally:
        try:
            release_sync_lease(db, name=lease_name, owner=lease_owner)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to release sync lease %s: %s", lease_name, exc)
        if owns_client:
            client.close()

    payload["duration_ms"] = int((clock() - started_clock) * 1000)
    return payload
