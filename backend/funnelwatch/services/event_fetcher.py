"""
Paginated pull of entry page-view events from the form/quiz platform.

The upstream API returns a JSON array of entries, each with a `page_views`
sub-array, paged with limit/offset. Records are validated into `RawEvent` at
this boundary; anything that fails validation is skipped and counted instead
of leaking loosely-shaped dicts into the pipeline.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from funnelwatch.core.config import settings
from funnelwatch.core.time import ensure_utc

logger = logging.getLogger(__name__)

ERROR_BODY_MAX_CHARS = 500


class SyncConfigurationError(RuntimeError):
    """Credentials or project settings for the event source are missing."""

    def __init__(self, message: str, diagnostics: dict[str, Any] | None = None):
        super().__init__(message)
        self.diagnostics = diagnostics or {}


class EventSourceError(RuntimeError):
    """The event source answered with a non-success status or an unusable body."""

    def __init__(self, status_code: int | None, body: str = ""):
        self.status_code = status_code
        self.body = (body or "")[:ERROR_BODY_MAX_CHARS]
        if status_code is None:
            message = f"Event source request failed: {self.body}"
        else:
            message = f"Event source API error: {status_code} - {self.body}"
        super().__init__(message)


class PageVisit(BaseModel):
    model_config = ConfigDict(extra="ignore")

    timestamp: Optional[datetime] = None
    page_id: Optional[str] = None
    page_key: str = ""
    page_index: int = 0
    url: Optional[str] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _blank_timestamp(cls, value):
        if value == "":
            return None
        return value

    @field_validator("timestamp")
    @classmethod
    def _timestamp_utc(cls, value):
        return ensure_utc(value)

    @field_validator("page_key", mode="before")
    @classmethod
    def _clean_key(cls, value):
        return str(value or "").strip()

    @field_validator("page_index", mode="before")
    @classmethod
    def _default_index(cls, value):
        return 0 if value is None else value

    @model_validator(mode="after")
    def _fallback_key(self):
        if not self.page_key:
            self.page_key = f"step_{self.page_index}"
        return self


class RawEvent(BaseModel):
    """One entry (a user's attempt) with its ordered page visits."""

    model_config = ConfigDict(extra="ignore")

    entry_id: str
    project_id: str = ""
    embeddable_id: Optional[str] = None
    contact_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    entry_data: Optional[str] = None
    page_views: list[PageVisit] = Field(default_factory=list)

    @field_validator("entry_id", mode="before")
    @classmethod
    def _entry_id_required(cls, value):
        text_value = str(value if value is not None else "").strip()
        if not text_value:
            raise ValueError("entry_id is required")
        return text_value

    @field_validator("project_id", mode="before")
    @classmethod
    def _project_id_text(cls, value):
        return str(value or "").strip()

    @field_validator("created_at", "updated_at")
    @classmethod
    def _utc(cls, value):
        return ensure_utc(value)

    @field_validator("entry_data", mode="before")
    @classmethod
    def _entry_data_text(cls, value):
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value)

    @field_validator("page_views", mode="before")
    @classmethod
    def _page_views_list(cls, value):
        return [] if value is None else value


def parse_events(records: list[Any]) -> tuple[list[RawEvent], int]:
    """Validate raw records; returns (events, skipped_count)."""
    events: list[RawEvent] = []
    skipped = 0
    for record in records:
        if not isinstance(record, dict):
            skipped += 1
            continue
        try:
            events.append(RawEvent.model_validate(record))
        except ValidationError as exc:
            skipped += 1
            logger.warning(
                "Skipping malformed entry %s: %s",
                record.get("entry_id"),
                exc.errors()[0].get("msg") if exc.errors() else exc,
            )
    return events, skipped


class EventSourceClient:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        project_id: str,
        client: Optional[httpx.Client] = None,
        timeout: float = 20.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.project_id = project_id
        self._client = client or httpx.Client(timeout=timeout)

    def fetch_page(self, *, limit: int, offset: int) -> list[Any]:
        url = f"{self.base_url}/projects/{self.project_id}/entries-page-views"
        try:
            response = self._client.get(
                url,
                params={"limit": limit, "offset": offset},
                headers={"X-Api-Key": self.api_key, "Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise EventSourceError(None, str(exc)) from exc

        if not response.is_success:
            raise EventSourceError(response.status_code, response.text)

        try:
            payload = response.json()
        except ValueError as exc:
            raise EventSourceError(response.status_code, f"invalid JSON body: {response.text}") from exc
        if not isinstance(payload, list):
            raise EventSourceError(response.status_code, f"expected a JSON array, got {type(payload).__name__}")
        return payload

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> "EventSourceClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


def build_event_source_client(*, client: Optional[httpx.Client] = None) -> EventSourceClient:
    api_key = str(getattr(settings, "EVENT_SOURCE_API_KEY", "") or "").strip()
    project_id = str(getattr(settings, "EVENT_SOURCE_PROJECT_ID", "") or "").strip()
    if not api_key or not project_id:
        raise SyncConfigurationError(
            "EVENT_SOURCE_API_KEY or EVENT_SOURCE_PROJECT_ID not configured",
            diagnostics={
                "EVENT_SOURCE_API_KEY": f"set ({len(api_key)} chars)" if api_key else "NOT SET",
                "EVENT_SOURCE_PROJECT_ID": project_id or "NOT SET",
            },
        )
    return EventSourceClient(
        base_url=str(settings.EVENT_SOURCE_API_URL),
        api_key=api_key,
        project_id=project_id,
        client=client,
        timeout=float(settings.EVENT_SOURCE_TIMEOUT_SECONDS),
    )


@dataclass
class FetchResult:
    events: list[RawEvent] = field(default_factory=list)
    partial: bool = False
    stop_reason: str = "end_of_data"
    pages_fetched: int = 0
    records_fetched: int = 0
    records_skipped: int = 0
    records_filtered_out: int = 0
    elapsed_seconds: float = 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "partial": self.partial,
            "stop_reason": self.stop_reason,
            "pages_fetched": self.pages_fetched,
            "records_fetched": self.records_fetched,
            "records_skipped": self.records_skipped,
            "records_filtered_out": self.records_filtered_out,
            "entries_kept": len(self.events),
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


def fetch_all_events(
    client: EventSourceClient,
    *,
    page_size: int,
    max_records: int,
    deadline_seconds: float,
    embeddable_id: str | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> FetchResult:
    """
    Page through the source until it runs dry, the record cap is hit, or the
    deadline passes.

    The first page is always requested. Hitting the deadline or the cap is not
    an error: the result comes back with `partial=True` so the caller can
    process what it has and re-run later. Upstream errors propagate.
    """
    if page_size <= 0:
        raise ValueError("page_size must be > 0")
    if max_records <= 0:
        raise ValueError("max_records must be > 0")

    started = clock()
    result = FetchResult()
    offset = 0

    while True:
        if result.pages_fetched > 0 and clock() - started >= deadline_seconds:
            result.stop_reason = "deadline"
            logger.warning(
                "Fetch deadline of %ss reached after %s pages (%s records); returning partial result",
                deadline_seconds,
                result.pages_fetched,
                result.records_fetched,
            )
            break

        limit = min(page_size, max_records - result.records_fetched)
        batch = client.fetch_page(limit=limit, offset=offset)
        result.pages_fetched += 1
        result.records_fetched += len(batch)
        offset += len(batch)

        events, skipped = parse_events(batch)
        result.records_skipped += skipped
        if embeddable_id:
            kept = [event for event in events if event.embeddable_id == embeddable_id]
            result.records_filtered_out += len(events) - len(kept)
            events = kept
        result.events.extend(events)

        logger.debug(
            "Fetched page %s: %s records (offset=%s, kept=%s)",
            result.pages_fetched,
            len(batch),
            offset,
            len(events),
        )

        if len(batch) < limit:
            result.stop_reason = "end_of_data"
            break
        if result.records_fetched >= max_records:
            result.stop_reason = "record_cap"
            logger.warning("Fetch stopped at record cap of %s", max_records)
            break

    result.partial = result.stop_reason != "end_of_data"
    result.elapsed_seconds = clock() - started
    return result
