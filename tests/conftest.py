"""Shared fixtures and fakes for the almanac test suite."""

from __future__ import annotations

import itertools
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import AsyncMock

import pytest

from almanac.credentials import CredentialManager
from almanac.errors import NotFoundError, UserNotFoundError
from almanac.google_calendar import GoogleCalendarClient
from almanac.models import EventCreate, EventFilters, EventUpdate, LocalEvent, Recurrence
from almanac.service import UnifiedEventService

# Tuesday, noon UTC.
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)
USER_ID = "user-1"


def make_local_event(**overrides: Any) -> LocalEvent:
    """Build a LocalEvent with sensible defaults."""
    start = overrides.pop("start_time", NOW + timedelta(hours=2))
    values: dict[str, Any] = {
        "id": 1,
        "user_id": USER_ID,
        "title": "Planning",
        "description": None,
        "location": None,
        "start_time": start,
        "end_time": start + timedelta(hours=1),
        "is_all_day": False,
        "recurrence": Recurrence.NONE,
        "created_at": NOW - timedelta(days=1),
        "updated_at": NOW - timedelta(days=1),
    }
    values.update(overrides)
    return LocalEvent(**values)


def make_google_item(**overrides: Any) -> dict[str, Any]:
    """Build a Google Calendar event resource with a timed start/end."""
    item: dict[str, Any] = {
        "id": "g1",
        "status": "confirmed",
        "summary": "Standup",
        "start": {"dateTime": "2026-03-10T15:00:00Z"},
        "end": {"dateTime": "2026-03-10T15:30:00Z"},
    }
    item.update(overrides)
    return item


class FakeLocalEventStore:
    """In-memory stand-in for LocalEventStore with the same filter semantics."""

    def __init__(self, events: list[LocalEvent] | None = None, users: set[str] | None = None):
        self.events: dict[int, LocalEvent] = {e.id: e for e in events or []}
        self.users = users if users is not None else {USER_ID}
        self._ids = itertools.count(max(self.events, default=0) + 1)
        self.list_calls: list[EventFilters | None] = []

    async def list(self, user_id: str, filters: EventFilters | None = None) -> list[LocalEvent]:
        self.list_calls.append(filters)
        rows = [e for e in self.events.values() if e.user_id == user_id]
        if filters is not None and filters.start_date is not None:
            rows = [e for e in rows if e.start_time >= filters.start_date]
        if filters is not None and filters.end_date is not None:
            rows = [e for e in rows if e.end_time <= filters.end_date]
        rows.sort(key=lambda e: (e.start_time, e.id))
        if filters is not None:
            rows = rows[filters.offset :]
            if filters.limit is not None:
                rows = rows[: filters.limit]
        return rows

    async def create(self, user_id: str, data: EventCreate) -> LocalEvent:
        if user_id not in self.users:
            raise UserNotFoundError(user_id)
        event = LocalEvent(
            id=next(self._ids),
            user_id=user_id,
            created_at=NOW,
            updated_at=NOW,
            **data.model_dump(),
        )
        self.events[event.id] = event
        return event

    async def update(self, event_id: int, user_id: str, data: EventUpdate) -> LocalEvent:
        existing = self.events.get(event_id)
        if existing is None or existing.user_id != user_id:
            raise NotFoundError()
        updated = existing.model_copy(update={**data.changes(), "updated_at": NOW})
        self.events[event_id] = updated
        return updated

    async def delete(self, event_id: int, user_id: str) -> LocalEvent:
        existing = self.events.get(event_id)
        if existing is None or existing.user_id != user_id:
            raise NotFoundError()
        return self.events.pop(event_id)

    async def has_any(self, user_id: str) -> bool:
        return any(e.user_id == user_id for e in self.events.values())


def make_service(
    *,
    local_events: list[LocalEvent] | None = None,
    google_items: list[dict[str, Any]] | None = None,
    session_valid: bool = False,
    now: datetime = NOW,
    timezone: str = "UTC",
    external_timeout: float = 5.0,
) -> tuple[UnifiedEventService, FakeLocalEventStore, AsyncMock, AsyncMock]:
    """Build a UnifiedEventService over fakes; returns (service, store, google, credentials)."""
    store = FakeLocalEventStore(local_events)
    google = AsyncMock(spec=GoogleCalendarClient)
    google.list_events.return_value = google_items or []
    credentials = AsyncMock(spec=CredentialManager)
    credentials.has_valid_session.return_value = session_valid
    service = UnifiedEventService(
        store,  # type: ignore[arg-type]
        google,
        credentials,
        timezone=timezone,
        external_timeout=external_timeout,
        clock=lambda: now,
    )
    return service, store, google, credentials


@pytest.fixture
def now() -> datetime:
    return NOW
