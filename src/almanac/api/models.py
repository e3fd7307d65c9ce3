"""Request/response models for the almanac HTTP API.

Successful responses follow ``{"data": T, "meta": {...}}``; errors follow
``{"error": {"code": "...", "message": "..."}}``.
"""

from __future__ import annotations

from typing import Generic, TypeVar

from pydantic import BaseModel, ConfigDict, Field

from almanac.models import EventCreate, EventOrigin


class ApiMeta(BaseModel):
    """Extensible metadata bag attached to every API response."""

    model_config = {"extra": "allow"}


T = TypeVar("T")


class ApiResponse(BaseModel, Generic[T]):
    data: T
    meta: ApiMeta = Field(default_factory=ApiMeta)


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict | None = None


class ErrorResponse(BaseModel):
    """Standard error response envelope."""

    error: ErrorDetail


class CreateEventRequest(EventCreate):
    """Event fields plus routing options for ``POST /api/events``."""

    model_config = ConfigDict(extra="forbid")

    origin: EventOrigin = EventOrigin.LOCAL
    calendar_id: str | None = None
    strict: bool = False

    def to_event_create(self) -> EventCreate:
        return EventCreate.model_validate(
            self.model_dump(include=set(EventCreate.model_fields))
        )


class ParseEventRequest(BaseModel):
    text: str = Field(min_length=1, max_length=2000)


class DeletedEvent(BaseModel):
    id: str
    deleted: bool = True


class AuthorizationUrlResponse(BaseModel):
    authorization_url: str
    state: str


class GoogleConnectionResult(BaseModel):
    connected: bool
    scope: str | None = None


class CalendarSummary(BaseModel):
    id: str
    summary: str | None = None
    primary: bool = False
    access_role: str | None = None
    time_zone: str | None = None
