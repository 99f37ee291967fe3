from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

from funnelwatch.services.entry_normalizer import is_entry_completed, normalize_entry
from funnelwatch.services.event_fetcher import RawEvent
from funnelwatch.services.funnel_pages import PURCHASE_COMPLETE_KEYS, purchase_complete_keys

_BASE = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _event(keys: list[str], *, offsets: list[int] | None = None, created_at: str = "2026-03-02T10:00:00Z") -> RawEvent:
    offsets = offsets if offsets is not None else [i * 10 for i in range(len(keys))]
    return RawEvent.model_validate(
        {
            "entry_id": "entry-1",
            "project_id": "proj-1",
            "created_at": created_at,
            "page_views": [
                {
                    "timestamp": (_BASE + timedelta(seconds=offset)).isoformat(),
                    "page_key": key,
                    "page_index": index,
                }
                for index, (key, offset) in enumerate(zip(keys, offsets))
            ],
        }
    )


def test_repeat_visits_keep_last_occurrence_and_last_position_is_exit():
    normalized = normalize_entry(_event(["a", "b", "a", "c"]), PURCHASE_COMPLETE_KEYS)

    assert normalized.completed is False
    assert set(normalized.facts) == {"a", "b", "c"}
    assert normalized.facts["a"].position == 2
    assert normalized.facts["a"].is_exit is False
    assert normalized.facts["a"].is_continue is True
    assert normalized.facts["b"].is_continue is True
    assert normalized.facts["c"].position == 3
    assert normalized.facts["c"].is_exit is True
    assert normalized.facts["c"].is_continue is False
    assert normalized.exit_step_key == "c"
    assert normalized.visit_count == 4


def test_completion_overrides_exit():
    normalized = normalize_entry(_event(["a", "b", "payment_successful"]), PURCHASE_COMPLETE_KEYS)

    assert normalized.completed is True
    assert normalized.exit_step_key is None
    assert all(fact.is_continue for fact in normalized.facts.values())


def test_completion_counts_purchase_key_anywhere_in_sequence():
    normalized = normalize_entry(_event(["a", "payment_successful", "calendar_extra"]), PURCHASE_COMPLETE_KEYS)

    assert normalized.completed is True
    assert normalized.exit_step_key is None


def test_configured_extra_completion_key():
    keys = purchase_complete_keys("async_confirmation_to_redirect, ")
    assert "async_confirmation_to_redirect" in keys
    assert "asnyc_confirmation_to_redirect" in keys

    normalized = normalize_entry(_event(["a", "async_confirmation_to_redirect"]), keys)
    assert normalized.completed is True


def test_time_on_step_uses_next_visit_after_retained_occurrence():
    normalized = normalize_entry(_event(["a", "b", "a", "c"], offsets=[0, 5, 20, 50]), PURCHASE_COMPLETE_KEYS)

    assert normalized.facts["a"].time_on_step_seconds == 30
    assert normalized.facts["b"].time_on_step_seconds == 15
    assert normalized.facts["c"].time_on_step_seconds is None


def test_day_key_is_utc_calendar_day():
    normalized = normalize_entry(
        _event(["a"], created_at="2026-03-01T23:30:00-05:00"),
        PURCHASE_COMPLETE_KEYS,
    )
    assert normalized.day_key == date(2026, 3, 2)


def test_entry_without_page_views_is_a_start_without_steps():
    event = RawEvent.model_validate({"entry_id": "entry-2", "created_at": "2026-03-02T10:00:00Z", "page_views": None})
    normalized = normalize_entry(event, PURCHASE_COMPLETE_KEYS)

    assert normalized.completed is False
    assert normalized.facts == {}
    assert normalized.exit_step_key is None


def test_is_entry_completed_checks_keys():
    event = _event(["a", "calendar_page"])
    assert is_entry_completed(event.page_views, PURCHASE_COMPLETE_KEYS) is True
    assert is_entry_completed(event.page_views[:1], PURCHASE_COMPLETE_KEYS) is False
