"""Unified event endpoints.

All routes act on behalf of the user named by the ``X-User-Id`` header and
return :class:`~almanac.models.UnifiedEvent` values whose ids encode their
origin (``local_<id>`` or ``external_<id>``).
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Query

from almanac.api.deps import get_current_user_id, get_event_parser, get_event_service
from almanac.api.models import (
    ApiMeta,
    ApiResponse,
    CreateEventRequest,
    DeletedEvent,
    ParseEventRequest,
)
from almanac.models import EventFilters, EventOrigin, EventStatistics, EventUpdate, UnifiedEvent
from almanac.nl_parser import NaturalLanguageEventParser, ParsedEvent
from almanac.service import DEFAULT_UPCOMING_DAYS, UnifiedEventService, format_local_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/events", tags=["events"])


def _filters(
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    include_local: bool = Query(default=True),
    include_google: bool = Query(default=True),
    calendar_id: str | None = Query(default=None),
) -> EventFilters:
    return EventFilters(
        start_date=start_date,
        end_date=end_date,
        limit=limit,
        offset=offset,
        include_local=include_local,
        include_google=include_google,
        calendar_id=calendar_id,
    )


def _listing(events: list[UnifiedEvent]) -> ApiResponse[list[UnifiedEvent]]:
    return ApiResponse[list[UnifiedEvent]](data=events, meta=ApiMeta(count=len(events)))


@router.get("", response_model=ApiResponse[list[UnifiedEvent]])
async def list_events(
    origin: EventOrigin | None = Query(default=None),
    filters: EventFilters = Depends(_filters),
    user_id: str = Depends(get_current_user_id),
    service: UnifiedEventService = Depends(get_event_service),
) -> ApiResponse[list[UnifiedEvent]]:
    """Return merged local and Google events sorted by start time."""
    if origin is not None:
        events = await service.get_events_by_origin(user_id, origin, filters)
    else:
        events = await service.get_all_events(user_id, filters)
    return _listing(events)


@router.get("/today", response_model=ApiResponse[list[UnifiedEvent]])
async def list_today_events(
    filters: EventFilters = Depends(_filters),
    user_id: str = Depends(get_current_user_id),
    service: UnifiedEventService = Depends(get_event_service),
) -> ApiResponse[list[UnifiedEvent]]:
    return _listing(await service.get_all_today_events(user_id, filters))


@router.get("/upcoming", response_model=ApiResponse[list[UnifiedEvent]])
async def list_upcoming_events(
    days: int = Query(default=DEFAULT_UPCOMING_DAYS, ge=1, le=366),
    filters: EventFilters = Depends(_filters),
    user_id: str = Depends(get_current_user_id),
    service: UnifiedEventService = Depends(get_event_service),
) -> ApiResponse[list[UnifiedEvent]]:
    events = await service.get_all_upcoming_events(
        user_id,
        days,
        limit=filters.limit,
        offset=filters.offset,
        filters=filters,
    )
    return _listing(events)


@router.get("/search", response_model=ApiResponse[list[UnifiedEvent]])
async def search_events(
    q: str = Query(min_length=1, max_length=200),
    filters: EventFilters = Depends(_filters),
    user_id: str = Depends(get_current_user_id),
    service: UnifiedEventService = Depends(get_event_service),
) -> ApiResponse[list[UnifiedEvent]]:
    return _listing(await service.search_all_events(user_id, q, filters))


@router.get("/stats", response_model=ApiResponse[EventStatistics])
async def event_statistics(
    user_id: str = Depends(get_current_user_id),
    service: UnifiedEventService = Depends(get_event_service),
) -> ApiResponse[EventStatistics]:
    return ApiResponse[EventStatistics](data=await service.get_event_statistics(user_id))


@router.post("", response_model=ApiResponse[UnifiedEvent], status_code=201)
async def create_event(
    body: CreateEventRequest,
    user_id: str = Depends(get_current_user_id),
    service: UnifiedEventService = Depends(get_event_service),
) -> ApiResponse[UnifiedEvent]:
    """Create an event locally or on Google Calendar (``origin=external``).

    Without a working Google connection an external request falls back to a
    local event unless ``strict`` is set.
    """
    event = await service.save_event(
        user_id,
        body.to_event_create(),
        preferred_origin=body.origin,
        calendar_id=body.calendar_id,
        strict=body.strict,
    )
    return ApiResponse[UnifiedEvent](data=event)


@router.patch("/{event_id}", response_model=ApiResponse[UnifiedEvent])
async def update_event(
    event_id: str,
    body: EventUpdate,
    calendar_id: str | None = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    service: UnifiedEventService = Depends(get_event_service),
) -> ApiResponse[UnifiedEvent]:
    event = await service.save_event(user_id, body, event_id=event_id, calendar_id=calendar_id)
    return ApiResponse[UnifiedEvent](data=event)


@router.delete("/{event_id}", response_model=ApiResponse[DeletedEvent])
async def delete_event(
    event_id: str,
    calendar_id: str | None = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    service: UnifiedEventService = Depends(get_event_service),
) -> ApiResponse[DeletedEvent]:
    await service.delete_event(user_id, event_id, calendar_id=calendar_id)
    return ApiResponse[DeletedEvent](data=DeletedEvent(id=event_id))


@router.post("/parse", response_model=ApiResponse[ParsedEvent])
async def parse_event(
    body: ParseEventRequest,
    user_id: str = Depends(get_current_user_id),
    parser: NaturalLanguageEventParser = Depends(get_event_parser),
) -> ApiResponse[ParsedEvent]:
    """Preview how free text would be interpreted, without saving it."""
    return ApiResponse[ParsedEvent](data=await parser.parse(body.text))


@router.post("/from-text", response_model=ApiResponse[UnifiedEvent], status_code=201)
async def create_event_from_text(
    body: ParseEventRequest,
    user_id: str = Depends(get_current_user_id),
    parser: NaturalLanguageEventParser = Depends(get_event_parser),
) -> ApiResponse[UnifiedEvent]:
    event = await parser.create_event_from_text(user_id, body.text)
    logger.info("Created event from text", extra={"event_id": event.id})
    return ApiResponse[UnifiedEvent](data=format_local_event(event))
