"""
Persist daily aggregates by replacing whole days.

Each touched day is deleted and re-inserted inside its own transaction, so a
re-sync with the same (or a larger) batch converges on the same rows instead
of adding counts on top of old ones. If a day fails, it is rolled back and
left exactly as it was before the run; other days still get written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from funnelwatch.models.models import FunnelDailyAggregate, FunnelEntry, FunnelStep, StepDailyAggregate
from funnelwatch.services.daily_aggregator import DailyAggregates
from funnelwatch.services.entry_normalizer import NormalizedEntry
from funnelwatch.services.event_fetcher import RawEvent

logger = logging.getLogger(__name__)

_ENTRY_LOOKUP_CHUNK = 500


@dataclass
class WriteResult:
    days_written: list[date] = field(default_factory=list)
    days_failed: list[tuple[date, str]] = field(default_factory=list)
    step_rows_written: int = 0
    funnel_rows_written: int = 0
    orphaned_step_keys: list[str] = field(default_factory=list)

    @property
    def all_failed(self) -> bool:
        return bool(self.days_failed) and not self.days_written

    def failed_days_payload(self) -> list[dict[str, Any]]:
        return [{"day": day.isoformat(), "error": error} for day, error in self.days_failed]


def _replace_day(
    db: Session,
    *,
    funnel_id: int,
    day_key: date,
    aggregates: DailyAggregates,
    step_ids_by_key: dict[str, int],
) -> int:
    funnel_step_ids = select(FunnelStep.id).where(FunnelStep.funnel_id == funnel_id)
    db.query(StepDailyAggregate).filter(
        StepDailyAggregate.day_key == day_key,
        StepDailyAggregate.step_id.in_(funnel_step_ids),
    ).delete(synchronize_session=False)
    db.query(FunnelDailyAggregate).filter(
        FunnelDailyAggregate.funnel_id == funnel_id,
        FunnelDailyAggregate.day_key == day_key,
    ).delete(synchronize_session=False)

    step_rows = []
    for step_key, counter in sorted(aggregates.steps_for_day(day_key).items()):
        step_id = step_ids_by_key.get(step_key)
        if step_id is None:
            continue
        step_rows.append(
            StepDailyAggregate(
                step_id=step_id,
                day_key=day_key,
                views=counter.views,
                exits=counter.exits,
                continues=counter.continues,
                drop_off_rate=counter.drop_off_rate,
                conversion_rate=counter.conversion_rate,
                avg_time_on_step=counter.avg_time_on_step,
            )
        )
    db.add_all(step_rows)

    totals = aggregates.funnel[day_key]
    db.add(
        FunnelDailyAggregate(
            funnel_id=funnel_id,
            day_key=day_key,
            total_starts=totals.starts,
            total_completions=totals.completions,
            total_dropoffs=totals.drop_offs,
            conversion_rate=totals.conversion_rate,
        )
    )
    db.commit()
    return len(step_rows)


def replace_daily_aggregates(
    db: Session,
    *,
    funnel_id: int,
    aggregates: DailyAggregates,
    step_ids_by_key: dict[str, int],
) -> WriteResult:
    result = WriteResult()
    result.orphaned_step_keys = sorted(aggregates.step_keys() - set(step_ids_by_key))
    for step_key in result.orphaned_step_keys:
        logger.warning("Dropping aggregates for step %r: no step definition", step_key)

    for day_key in aggregates.days():
        try:
            written = _replace_day(
                db,
                funnel_id=funnel_id,
                day_key=day_key,
                aggregates=aggregates,
                step_ids_by_key=step_ids_by_key,
            )
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Failed to replace aggregates for %s; day left unchanged: %s", day_key, exc)
            result.days_failed.append((day_key, str(exc)))
            continue
        except Exception:
            # Not a storage failure: undo this day's deletes and stop the run.
            db.rollback()
            logger.exception("Unexpected error while replacing aggregates for %s; day left unchanged", day_key)
            raise
        result.days_written.append(day_key)
        result.step_rows_written += written
        result.funnel_rows_written += 1

    return result


def upsert_entries(
    db: Session,
    *,
    funnel_id: int,
    entries: Iterable[tuple[RawEvent, NormalizedEntry]],
) -> int:
    """Upsert one FunnelEntry per fetched entry. Does not touch aggregates."""
    pairs = list(entries)
    existing: dict[str, FunnelEntry] = {}
    entry_ids = [event.entry_id for event, _ in pairs]
    for start in range(0, len(entry_ids), _ENTRY_LOOKUP_CHUNK):
        chunk = entry_ids[start:start + _ENTRY_LOOKUP_CHUNK]
        for row in db.query(FunnelEntry).filter(FunnelEntry.entry_id.in_(chunk)).all():
            existing[row.entry_id] = row

    for event, normalized in pairs:
        time_spent = int(
            sum(
                fact.time_on_step_seconds
                for fact in normalized.facts.values()
                if fact.time_on_step_seconds is not None
            )
        )
        row = existing.get(event.entry_id)
        if row is None:
            row = FunnelEntry(entry_id=event.entry_id, funnel_id=funnel_id, created_at=event.created_at)
            db.add(row)
            existing[event.entry_id] = row
        row.completed = normalized.completed
        row.last_step_index = normalized.max_page_index
        row.total_steps = normalized.visit_count
        row.time_spent = time_spent
        row.updated_at = event.updated_at or event.created_at

    db.commit()
    return len(pairs)
