"""
Fold normalized entries into per-UTC-day step and funnel counters.

Counters only hold integer counts and time sums; every rate is derived from
the final counts when read, so results don't depend on processing order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Iterable, Optional

from funnelwatch.services.entry_normalizer import NormalizedEntry


def compute_rate(numerator: int | float, denominator: int | float) -> float:
    """Percentage numerator/denominator*100; 0.0 when the denominator is 0."""
    den = float(denominator or 0)
    if den <= 0:
        return 0.0
    return float(numerator or 0) / den * 100.0


@dataclass
class StepCounter:
    views: int = 0
    exits: int = 0
    continues: int = 0
    time_total_seconds: float = 0.0
    time_samples: int = 0

    @property
    def drop_off_rate(self) -> float:
        return compute_rate(self.exits, self.views)

    @property
    def conversion_rate(self) -> float:
        return compute_rate(self.continues, self.views)

    @property
    def avg_time_on_step(self) -> Optional[float]:
        if self.time_samples <= 0:
            return None
        return self.time_total_seconds / self.time_samples


@dataclass
class FunnelCounter:
    starts: int = 0
    completions: int = 0

    @property
    def drop_offs(self) -> int:
        return self.starts - self.completions

    @property
    def conversion_rate(self) -> float:
        return compute_rate(self.completions, self.starts)


@dataclass
class DailyAggregates:
    steps: dict[tuple[date, str], StepCounter] = field(default_factory=dict)
    funnel: dict[date, FunnelCounter] = field(default_factory=dict)

    def add_entry(self, entry: NormalizedEntry) -> None:
        day_totals = self.funnel.setdefault(entry.day_key, FunnelCounter())
        day_totals.starts += 1
        if entry.completed:
            day_totals.completions += 1

        for fact in entry.facts.values():
            counter = self.steps.setdefault((entry.day_key, fact.step_key), StepCounter())
            counter.views += 1
            if fact.is_exit:
                counter.exits += 1
            if fact.is_continue:
                counter.continues += 1
            if fact.time_on_step_seconds is not None:
                counter.time_total_seconds += fact.time_on_step_seconds
                counter.time_samples += 1

    def days(self) -> list[date]:
        return sorted(self.funnel)

    def step_keys(self) -> set[str]:
        return {step_key for _, step_key in self.steps}

    def steps_for_day(self, day_key: date) -> dict[str, StepCounter]:
        return {step_key: counter for (day, step_key), counter in self.steps.items() if day == day_key}

    def totals(self) -> FunnelCounter:
        overall = FunnelCounter()
        for counter in self.funnel.values():
            overall.starts += counter.starts
            overall.completions += counter.completions
        return overall


def aggregate_entries(entries: Iterable[NormalizedEntry]) -> DailyAggregates:
    aggregates = DailyAggregates()
    for entry in entries:
        aggregates.add_entry(entry)
    return aggregates
