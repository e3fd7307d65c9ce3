"""Unified aggregation over local events and Google Calendar.

:class:`UnifiedEventService` owns no storage.  It merges
:class:`~almanac.local_store.LocalEventStore` rows and Google Calendar items
into :class:`~almanac.models.UnifiedEvent` values, assigns namespaced ids
(``local_<id>`` / ``external_<id>``), and routes mutations back to the
backend an id names.

Read path failure policy: a Google outage (no session, network error,
timeout, API error) yields zero external events plus a warning log; local
store errors always propagate.  Every convenience read (today, upcoming,
range, origin, search, statistics) is a parameterized call into
:meth:`UnifiedEventService.get_all_events`.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Callable, Iterable
from datetime import UTC, date, datetime, time, timedelta, tzinfo
from typing import TYPE_CHECKING, Any
from zoneinfo import ZoneInfo

from almanac.config import DEFAULT_EXTERNAL_READ_BUDGET_SECONDS
from almanac.errors import ProviderApiError, ProviderUnavailableError
from almanac.event_ids import ExternalRef, LocalRef, format_event_id, parse_event_id
from almanac.google_http import google_rfc3339, parse_google_datetime
from almanac.models import (
    Attendee,
    EventCreate,
    EventFilters,
    EventOrigin,
    EventStatistics,
    EventUpdate,
    IntegrationStatus,
    LocalEvent,
    Recurrence,
    UnifiedEvent,
)

if TYPE_CHECKING:
    from almanac.credentials import CredentialManager
    from almanac.google_calendar import GoogleCalendarClient
    from almanac.local_store import LocalEventStore

logger = logging.getLogger(__name__)

DEFAULT_UPCOMING_DAYS = 7
UNTITLED_EVENT_TITLE = "Untitled Event"

_RRULE_FREQ_PATTERN = re.compile(r"^RRULE:.*?\bFREQ=([A-Z]+)", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Formatting: backend shapes -> UnifiedEvent
# ---------------------------------------------------------------------------


def format_local_event(event: LocalEvent) -> UnifiedEvent:
    return UnifiedEvent(
        id=format_event_id(LocalRef(event.id)),
        title=event.title,
        description=event.description,
        location=event.location,
        start_time=event.start_time,
        end_time=event.end_time,
        is_all_day=event.is_all_day,
        recurrence=event.recurrence,
        origin=EventOrigin.LOCAL,
        original_id=event.id,
        created_at=event.created_at,
        updated_at=event.updated_at,
    )


def _parse_boundary(payload: Any, tz: tzinfo) -> tuple[datetime, bool] | None:
    """Return (instant, is_date_only) for a Google start/end object."""
    if not isinstance(payload, dict):
        return None
    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return parse_google_datetime(date_time), False
    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc
        return datetime.combine(parsed, time.min, tzinfo=tz), True
    return None


def _parse_recurrence(payload: Any) -> Recurrence:
    if not isinstance(payload, list):
        return Recurrence.NONE
    for rule in payload:
        if not isinstance(rule, str):
            continue
        match = _RRULE_FREQ_PATTERN.match(rule.strip())
        if match is None:
            continue
        try:
            return Recurrence(match.group(1).lower())
        except ValueError:
            return Recurrence.NONE
    return Recurrence.NONE


def _parse_attendees(payload: Any) -> tuple[Attendee, ...]:
    if not isinstance(payload, list):
        return ()
    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = entry.get("email")
        if not isinstance(email, str) or not email.strip():
            continue
        attendees.append(
            Attendee(
                email=email.strip(),
                display_name=entry.get("displayName"),
                response_status=entry.get("responseStatus"),
            )
        )
    return tuple(attendees)


def _optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def format_external_event(item: dict[str, Any], *, timezone: tzinfo = UTC) -> UnifiedEvent | None:
    """Translate a Google Calendar event resource.

    Returns None for cancelled events.  All-day is signalled solely by a
    ``date`` start without ``dateTime``; a missing end defaults to one day
    (all-day) or one hour (timed) after the start.

    Raises
    ------
    ValueError
        If the item has no id or no parseable start.
    """
    if item.get("status") == "cancelled":
        return None

    external_id = item.get("id")
    if not isinstance(external_id, str) or not external_id.strip():
        raise ValueError("Google Calendar event is missing an id")

    start = _parse_boundary(item.get("start"), timezone)
    if start is None:
        raise ValueError(f"Google Calendar event {external_id} has no start")
    start_time, is_all_day = start

    end = _parse_boundary(item.get("end"), timezone)
    if end is not None:
        end_time = end[0]
    elif is_all_day:
        end_time = start_time + timedelta(days=1)
    else:
        end_time = start_time + timedelta(hours=1)

    return UnifiedEvent(
        id=format_event_id(ExternalRef(external_id)),
        title=_optional_text(item.get("summary")) or UNTITLED_EVENT_TITLE,
        description=_optional_text(item.get("description")),
        location=_optional_text(item.get("location")),
        start_time=start_time,
        end_time=end_time,
        is_all_day=is_all_day,
        recurrence=_parse_recurrence(item.get("recurrence")),
        origin=EventOrigin.EXTERNAL,
        original_id=external_id,
        attendees=_parse_attendees(item.get("attendees")),
        html_link=_optional_text(item.get("htmlLink")),
    )


# ---------------------------------------------------------------------------
# Formatting: write payloads -> Google event bodies
# ---------------------------------------------------------------------------


def _boundary_payload(
    value: datetime, *, is_all_day: bool, tz: ZoneInfo
) -> dict[str, str]:
    if is_all_day:
        return {"date": value.astimezone(tz).date().isoformat()}
    return {"dateTime": google_rfc3339(value), "timeZone": tz.key}


def build_provider_payload(
    changes: dict[str, Any],
    *,
    timezone: ZoneInfo,
) -> dict[str, Any]:
    """Build a Google event body (or partial PATCH body) from field changes.

    Only keys present in *changes* are emitted.  Blank description/location
    are omitted and a recurrence of ``none`` is not sent.  An all-day end
    that does not fall after the start date is pushed to the next day.
    """
    body: dict[str, Any] = {}
    is_all_day = bool(changes.get("is_all_day") or False)

    title = changes.get("title")
    if isinstance(title, str) and title.strip():
        body["summary"] = title.strip()

    for field_name in ("description", "location"):
        text = _optional_text(changes.get(field_name))
        if text is not None:
            body[field_name] = text

    start_time = changes.get("start_time")
    end_time = changes.get("end_time")
    if isinstance(start_time, datetime):
        body["start"] = _boundary_payload(start_time, is_all_day=is_all_day, tz=timezone)
    if isinstance(end_time, datetime):
        body["end"] = _boundary_payload(end_time, is_all_day=is_all_day, tz=timezone)
    if is_all_day and "start" in body and "end" in body:
        start_date = date.fromisoformat(body["start"]["date"])
        if date.fromisoformat(body["end"]["date"]) <= start_date:
            body["end"] = {"date": (start_date + timedelta(days=1)).isoformat()}

    recurrence = changes.get("recurrence")
    if recurrence is not None and Recurrence(recurrence) is not Recurrence.NONE:
        body["recurrence"] = [f"RRULE:FREQ={Recurrence(recurrence).value.upper()}"]

    return body


def _paginate(events: list[UnifiedEvent], filters: EventFilters) -> list[UnifiedEvent]:
    window = events[filters.offset :]
    if filters.limit is not None:
        window = window[: filters.limit]
    return window


def _matches(event: UnifiedEvent, needle: str) -> bool:
    return any(
        value is not None and needle in value.lower()
        for value in (event.title, event.description, event.location)
    )


# ---------------------------------------------------------------------------
# UnifiedEventService
# ---------------------------------------------------------------------------


class UnifiedEventService:
    """Single entry point for reading and mutating a user's calendar."""

    def __init__(
        self,
        local_store: LocalEventStore,
        google_client: GoogleCalendarClient,
        credential_manager: CredentialManager,
        *,
        timezone: str = "UTC",
        default_calendar_id: str = "primary",
        external_timeout: float = DEFAULT_EXTERNAL_READ_BUDGET_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._local = local_store
        self._google = google_client
        self._credentials = credential_manager
        self._tz = ZoneInfo(timezone)
        self._default_calendar_id = default_calendar_id
        self._external_timeout = external_timeout
        self._clock = clock or (lambda: datetime.now(UTC))

    # ------------------------------------------------------------------
    # Aggregate read
    # ------------------------------------------------------------------

    async def get_all_events(
        self, user_id: str, filters: EventFilters | None = None
    ) -> list[UnifiedEvent]:
        """Merge local and external events, sorted by start time.

        Local and external reads run concurrently.  ``offset``/``limit`` are
        applied to the merged, sorted list.
        """
        filters = filters or EventFilters()
        local_events, external_events = await asyncio.gather(
            self._fetch_local(user_id, filters),
            self._fetch_external(user_id, filters),
        )
        merged = sorted([*local_events, *external_events], key=lambda event: event.start_time)
        return _paginate(merged, filters)

    async def _fetch_local(self, user_id: str, filters: EventFilters) -> list[UnifiedEvent]:
        if not filters.include_local:
            return []
        store_filters = filters.model_copy(update={"limit": None, "offset": 0})
        rows = await self._local.list(user_id, store_filters)
        return [format_local_event(row) for row in rows]

    async def _fetch_external(self, user_id: str, filters: EventFilters) -> list[UnifiedEvent]:
        """Fetch external events within the read budget; always returns a list, never raises."""
        if not filters.include_external:
            return []
        try:
            items = await asyncio.wait_for(
                self._list_external(user_id, filters), timeout=self._external_timeout
            )
        except Exception as exc:
            logger.warning(
                "External calendar fetch failed (%s); continuing with local events only",
                type(exc).__name__,
                extra={"user_id": user_id, "reason": "external_fetch_failed"},
            )
            return []
        return list(self._format_external_items(items))

    async def _list_external(self, user_id: str, filters: EventFilters) -> list[dict[str, Any]]:
        if not await self._credentials.has_valid_session(user_id):
            return []
        return await self._google.list_events(
            user_id,
            time_min=filters.start_date,
            time_max=filters.end_date,
            calendar_id=filters.calendar_id or self._default_calendar_id,
        )

    def _format_external_items(self, items: Iterable[dict[str, Any]]) -> Iterable[UnifiedEvent]:
        for item in items:
            try:
                event = format_external_event(item, timezone=self._tz)
            except ValueError as exc:
                logger.warning("Skipping malformed Google Calendar event: %s", exc)
                continue
            if event is not None:
                yield event

    # ------------------------------------------------------------------
    # Convenience reads
    # ------------------------------------------------------------------

    def _day_bounds(self) -> tuple[datetime, datetime]:
        local_now = self._clock().astimezone(self._tz)
        day_start = datetime.combine(local_now.date(), time.min, tzinfo=self._tz)
        return day_start, day_start + timedelta(days=1)

    async def get_all_today_events(
        self, user_id: str, filters: EventFilters | None = None
    ) -> list[UnifiedEvent]:
        day_start, day_end = self._day_bounds()
        return await self.get_all_events(
            user_id, self._with_window(filters, start=day_start, end=day_end)
        )

    async def get_all_upcoming_events(
        self,
        user_id: str,
        days: int = DEFAULT_UPCOMING_DAYS,
        limit: int | None = None,
        offset: int = 0,
        filters: EventFilters | None = None,
    ) -> list[UnifiedEvent]:
        now = self._clock()
        scoped = self._with_window(filters, start=now, end=now + timedelta(days=days))
        scoped = scoped.model_copy(update={"limit": limit, "offset": offset})
        return await self.get_all_events(user_id, scoped)

    async def get_all_events_in_range(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
        filters: EventFilters | None = None,
    ) -> list[UnifiedEvent]:
        return await self.get_all_events(user_id, self._with_window(filters, start=start, end=end))

    async def get_events_by_origin(
        self,
        user_id: str,
        origin: EventOrigin,
        filters: EventFilters | None = None,
    ) -> list[UnifiedEvent]:
        scoped = (filters or EventFilters()).model_copy(
            update={
                "include_local": origin is EventOrigin.LOCAL,
                "include_external": origin is EventOrigin.EXTERNAL,
            }
        )
        return await self.get_all_events(user_id, scoped)

    async def search_all_events(
        self,
        user_id: str,
        term: str,
        filters: EventFilters | None = None,
    ) -> list[UnifiedEvent]:
        """Case-insensitive substring match over title, description and location."""
        base = filters or EventFilters()
        unpaged = base.model_copy(update={"limit": None, "offset": 0})
        needle = term.strip().lower()
        events = await self.get_all_events(user_id, unpaged)
        matches = [event for event in events if _matches(event, needle)]
        return _paginate(matches, base)

    async def get_event_statistics(
        self, user_id: str, filters: EventFilters | None = None
    ) -> EventStatistics:
        all_events, today_events, upcoming_events = await asyncio.gather(
            self.get_all_events(user_id, filters),
            self.get_all_today_events(user_id, filters),
            self.get_all_upcoming_events(user_id, DEFAULT_UPCOMING_DAYS, filters=filters),
        )
        return EventStatistics(
            total_events=len(all_events),
            local_events=sum(1 for e in all_events if e.origin is EventOrigin.LOCAL),
            google_events=sum(1 for e in all_events if e.origin is EventOrigin.EXTERNAL),
            today_events=len(today_events),
            upcoming_events=len(upcoming_events),
            all_day_events=sum(1 for e in all_events if e.is_all_day),
            recurring_events=sum(1 for e in all_events if e.recurrence is not Recurrence.NONE),
        )

    @staticmethod
    def _with_window(
        filters: EventFilters | None, *, start: datetime, end: datetime
    ) -> EventFilters:
        return (filters or EventFilters()).model_copy(
            update={"start_date": start, "end_date": end, "limit": None, "offset": 0}
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def save_event(
        self,
        user_id: str,
        data: EventCreate | EventUpdate,
        *,
        event_id: str | None = None,
        preferred_origin: EventOrigin = EventOrigin.LOCAL,
        calendar_id: str | None = None,
        strict: bool = False,
    ) -> UnifiedEvent:
        """Create or update an event, routing by id or by preferred origin.

        With *event_id*, the id's origin decides the backend.  Without it, the
        event is created on Google Calendar when *preferred_origin* is
        external and a valid session exists, otherwise locally.  ``strict``
        turns the silent local fallback into :class:`ProviderUnavailableError`.
        """
        if event_id is not None:
            return await self._update_event(user_id, event_id, data, calendar_id=calendar_id)

        create = (
            data
            if isinstance(data, EventCreate)
            else EventCreate.model_validate(data.model_dump(exclude_unset=True))
        )

        if preferred_origin is EventOrigin.EXTERNAL:
            if await self._credentials.has_valid_session(user_id):
                response = await self._google.create_event(
                    user_id,
                    build_provider_payload(create.model_dump(), timezone=self._tz),
                    calendar_id=calendar_id or self._default_calendar_id,
                )
                return self._format_provider_response(response, action="create")
            if strict:
                raise ProviderUnavailableError("Google Calendar is not connected for this user")
            logger.info(
                "Google Calendar unavailable; saving event locally", extra={"user_id": user_id}
            )

        event = await self._local.create(user_id, create)
        return format_local_event(event)

    async def _update_event(
        self,
        user_id: str,
        event_id: str,
        data: EventCreate | EventUpdate,
        *,
        calendar_id: str | None,
    ) -> UnifiedEvent:
        ref = parse_event_id(event_id)
        update = (
            data
            if isinstance(data, EventUpdate)
            else EventUpdate.model_validate(data.model_dump())
        )
        match ref:
            case LocalRef(id=local_id):
                event = await self._local.update(local_id, user_id, update)
                return format_local_event(event)
            case ExternalRef(id=external_id):
                response = await self._google.update_event(
                    user_id,
                    external_id,
                    build_provider_payload(update.changes(), timezone=self._tz),
                    calendar_id=calendar_id or self._default_calendar_id,
                )
                return self._format_provider_response(response, action="update")
        raise TypeError(f"Unsupported event reference: {ref!r}")

    async def delete_event(
        self, user_id: str, event_id: str, *, calendar_id: str | None = None
    ) -> None:
        ref = parse_event_id(event_id)
        match ref:
            case LocalRef(id=local_id):
                await self._local.delete(local_id, user_id)
            case ExternalRef(id=external_id):
                await self._google.delete_event(
                    user_id,
                    external_id,
                    calendar_id=calendar_id or self._default_calendar_id,
                )

    def _format_provider_response(self, response: dict[str, Any], *, action: str) -> UnifiedEvent:
        try:
            event = format_external_event(response, timezone=self._tz)
        except ValueError as exc:
            raise ProviderApiError(
                status_code=200,
                message=f"Google Calendar returned an unusable event after {action}: {exc}",
            ) from exc
        if event is None:
            raise ProviderApiError(
                status_code=200,
                message=f"Google Calendar returned a cancelled event after {action}",
            )
        return event

    # ------------------------------------------------------------------
    # Integration status
    # ------------------------------------------------------------------

    async def has_google_integration(self, user_id: str) -> bool:
        return await self._credentials.has_valid_session(user_id)

    async def get_integration_status(self, user_id: str) -> IntegrationStatus:
        has_local_events, has_google = await asyncio.gather(
            self._local.has_any(user_id),
            self._credentials.has_valid_session(user_id),
        )
        return IntegrationStatus(
            has_local_events=has_local_events,
            has_google_integration=has_google,
            total_integrations=int(has_local_events) + int(has_google),
        )
