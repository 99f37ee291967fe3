"""
Keep funnel_steps in line with the static catalog plus any step keys seen in
event data.

Aggregates reference steps by key, so every observed key needs a FunnelStep
row before aggregates are written. Catalog rows are keyed by page number;
keys the catalog doesn't know are numbered from DISCOVERED_STEP_OFFSET up.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from sqlalchemy.orm import Session

from funnelwatch.models.models import FunnelStep
from funnelwatch.services.event_fetcher import RawEvent
from funnelwatch.services.funnel_pages import DISCOVERED_STEP_OFFSET, FUNNEL_PAGES, StepDefinition

logger = logging.getLogger(__name__)

_KEY_SEPARATORS = re.compile(r"[_\-\s]+")


@dataclass
class StepCatalogResult:
    step_ids_by_key: dict[str, int] = field(default_factory=dict)
    created: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    discovered: list[dict[str, Any]] = field(default_factory=list)


def humanize_step_key(step_key: str) -> str:
    """`new_page_key` -> `New Page Key`."""
    words = [word for word in _KEY_SEPARATORS.split(step_key.strip()) if word]
    if not words:
        return step_key
    return " ".join(word[:1].upper() + word[1:] for word in words)


def collect_observed_step_keys(events: Iterable[RawEvent]) -> dict[str, int]:
    """Every step key in the batch, mapped to its page_index in the first event it appears in."""
    observed: dict[str, int] = {}
    for event in events:
        for visit in event.page_views:
            observed.setdefault(visit.page_key, visit.page_index)
    return observed


def summarize_page_coverage(
    observed_keys: Iterable[str],
    catalog: Iterable[StepDefinition] = FUNNEL_PAGES,
) -> dict[str, Any]:
    observed = set(observed_keys)
    catalog_keys = [page.page_key for page in catalog]
    catalog_set = set(catalog_keys)
    missing = [key for key in catalog_keys if key not in observed]
    return {
        "catalog_pages": len(catalog_keys),
        "catalog_pages_seen": len(catalog_keys) - len(missing),
        "missing_catalog_keys": missing,
        "uncataloged_keys": sorted(observed - catalog_set),
    }


def _apply_definition(row: FunnelStep, page: StepDefinition) -> bool:
    changed = False
    for attr, value in (
        ("step_name", page.page_name),
        ("category", page.category),
        ("is_discovered", False),
    ):
        if getattr(row, attr) != value:
            setattr(row, attr, value)
            changed = True
    return changed


def reconcile_step_catalog(
    db: Session,
    *,
    funnel_id: int,
    observed_keys: dict[str, int],
    catalog: Iterable[StepDefinition] = FUNNEL_PAGES,
) -> StepCatalogResult:
    catalog = tuple(catalog)
    result = StepCatalogResult()
    rows = db.query(FunnelStep).filter(FunnelStep.funnel_id == funnel_id).all()
    by_number = {row.step_number: row for row in rows}
    by_key = {row.step_key: row for row in rows}

    for page in catalog:
        row = by_number.get(page.page_number)
        if row is None:
            row = by_key.get(page.page_key)
            if row is not None:
                # Key was stored under another number (e.g. discovered before it joined the catalog).
                logger.info(
                    "Moving step %r from number %s to catalog number %s",
                    page.page_key,
                    row.step_number,
                    page.page_number,
                )
                by_number.pop(row.step_number, None)
                row.step_number = page.page_number
                by_number[page.page_number] = row
                _apply_definition(row, page)
                result.updated.append(page.page_key)
                continue

            row = FunnelStep(
                funnel_id=funnel_id,
                step_number=page.page_number,
                step_key=page.page_key,
                step_name=page.page_name,
                category=page.category,
                is_discovered=False,
            )
            db.add(row)
            by_number[page.page_number] = row
            by_key[page.page_key] = row
            result.created.append(page.page_key)
            continue

        changed = _apply_definition(row, page)
        if row.step_key != page.page_key:
            holder = by_key.get(page.page_key)
            if holder is not None and holder is not row:
                logger.warning(
                    "Catalog key %r for step %s already belongs to step %s; keeping key %r",
                    page.page_key,
                    page.page_number,
                    holder.step_number,
                    row.step_key,
                )
            else:
                by_key.pop(row.step_key, None)
                row.step_key = page.page_key
                by_key[page.page_key] = row
                changed = True
        if changed:
            result.updated.append(page.page_key)

    db.flush()

    next_number = max((n for n in by_number if n >= DISCOVERED_STEP_OFFSET), default=DISCOVERED_STEP_OFFSET - 1) + 1
    for step_key, first_page_index in observed_keys.items():
        if step_key in by_key:
            continue
        row = FunnelStep(
            funnel_id=funnel_id,
            step_number=next_number,
            step_key=step_key,
            step_name=humanize_step_key(step_key),
            category=None,
            is_discovered=True,
            first_seen_page_index=first_page_index,
        )
        db.add(row)
        by_number[next_number] = row
        by_key[step_key] = row
        result.discovered.append(
            {"step_key": step_key, "step_number": next_number, "step_name": row.step_name}
        )
        logger.info("Discovered new step %r as #%s", step_key, next_number)
        next_number += 1

    db.commit()
    result.step_ids_by_key = {key: row.id for key, row in by_key.items()}
    return result
