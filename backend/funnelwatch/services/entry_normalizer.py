"""Turn one raw entry into per-step exit/continue facts."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from funnelwatch.core.time import utc_day
from funnelwatch.services.event_fetcher import PageVisit, RawEvent


@dataclass(frozen=True)
class StepFact:
    step_key: str
    # Array position of the retained (last) occurrence.
    position: int
    page_index: int
    is_exit: bool
    is_continue: bool
    time_on_step_seconds: Optional[float] = None


@dataclass(frozen=True)
class NormalizedEntry:
    entry_id: str
    day_key: date
    completed: bool
    facts: dict[str, StepFact] = field(default_factory=dict)
    visit_count: int = 0
    max_page_index: int = 0

    @property
    def exit_step_key(self) -> str | None:
        for fact in self.facts.values():
            if fact.is_exit:
                return fact.step_key
        return None


def is_entry_completed(page_views: Iterable[PageVisit], purchase_complete_keys: frozenset[str] | set[str]) -> bool:
    return any(visit.page_key in purchase_complete_keys for visit in page_views)


def _time_on_step(visits: list[PageVisit], position: int) -> Optional[float]:
    if position + 1 >= len(visits):
        return None
    current = visits[position].timestamp
    following = visits[position + 1].timestamp
    if current is None or following is None:
        return None
    seconds = (following - current).total_seconds()
    if seconds < 0:
        return None
    return seconds


def normalize_entry(event: RawEvent, purchase_complete_keys: frozenset[str] | set[str]) -> NormalizedEntry:
    """
    Collapse repeat visits and classify each step as exit or continue.

    Conditional branching can send a user back to a page they already saw, so
    only the last array occurrence of each step key is kept. The occurrence at
    the final array position is the exit, unless the entry reached a
    purchase-complete page, in which case nothing is an exit. The numeric
    page_index is informational only; array order is authoritative.
    """
    visits = list(event.page_views)
    day_key = utc_day(event.created_at)
    if not visits:
        return NormalizedEntry(entry_id=event.entry_id, day_key=day_key, completed=False)

    completed = is_entry_completed(visits, purchase_complete_keys)

    last_position: dict[str, int] = {}
    for position, visit in enumerate(visits):
        last_position[visit.page_key] = position

    final_position = len(visits) - 1
    facts: dict[str, StepFact] = {}
    for step_key, position in sorted(last_position.items(), key=lambda item: item[1]):
        is_exit = position == final_position and not completed
        facts[step_key] = StepFact(
            step_key=step_key,
            position=position,
            page_index=visits[position].page_index,
            is_exit=is_exit,
            is_continue=not is_exit,
            time_on_step_seconds=_time_on_step(visits, position),
        )

    return NormalizedEntry(
        entry_id=event.entry_id,
        day_key=day_key,
        completed=completed,
        facts=facts,
        visit_count=len(visits),
        max_page_index=max(visit.page_index for visit in visits),
    )
