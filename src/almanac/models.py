"""Domain models for the unified event layer.

- ``UnifiedEvent``: immutable read-model shared by local and external events
- ``LocalEvent``: a row of the ``events`` table
- ``EventCreate`` / ``EventUpdate``: write payloads
- ``EventFilters``: aggregation filters (date window, paging, sources)
- ``EventStatistics`` / ``IntegrationStatus``: derived summaries
- ``Credential`` / ``GoogleSession``: OAuth token material (always redacted in repr)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


_NULLABLE_UPDATE_FIELDS = frozenset({"description", "location"})


class Recurrence(StrEnum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class EventOrigin(StrEnum):
    """Where an event lives; also the prefix of its unified id."""

    LOCAL = "local"
    EXTERNAL = "external"


def _ensure_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def _blank_to_none(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    return normalized or None


class Attendee(BaseModel):
    email: str
    display_name: str | None = None
    response_status: str | None = None


class UnifiedEvent(BaseModel):
    """One event in the merged view, whatever backend it came from."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    recurrence: Recurrence = Recurrence.NONE
    origin: EventOrigin
    original_id: int | str
    attendees: tuple[Attendee, ...] = ()
    html_link: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class LocalEvent(BaseModel):
    """A persisted row of the ``events`` table."""

    id: int
    user_id: str
    title: str
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    recurrence: Recurrence = Recurrence.NONE
    created_at: datetime | None = None
    updated_at: datetime | None = None


class EventCreate(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: str = Field(min_length=1, max_length=500)
    description: str | None = None
    location: str | None = None
    start_time: datetime
    end_time: datetime
    is_all_day: bool = False
    recurrence: Recurrence = Recurrence.NONE

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @field_validator("description", "location")
    @classmethod
    def _normalize_optional_text(cls, value: str | None) -> str | None:
        return _blank_to_none(value)

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_datetime(cls, value: datetime) -> datetime:
        return _ensure_aware(value)

    @model_validator(mode="after")
    def _validate_window(self) -> EventCreate:
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self


class EventUpdate(BaseModel):
    """Partial update; only fields that were explicitly set are applied."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = Field(default=None, min_length=1, max_length=500)
    description: str | None = None
    location: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    is_all_day: bool | None = None
    recurrence: Recurrence | None = None

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str | None) -> str | None:
        if value is None:
            return None
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string when set")
        return normalized

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_datetime(cls, value: datetime | None) -> datetime | None:
        return _ensure_aware(value)

    @model_validator(mode="after")
    def _validate_window(self) -> EventUpdate:
        if (
            self.start_time is not None
            and self.end_time is not None
            and self.end_time < self.start_time
        ):
            raise ValueError("end_time must not be before start_time")
        return self

    def changes(self) -> dict[str, object]:
        """Return only the explicitly-set fields, keyed by column name.

        ``None`` clears ``description``/``location``; for every other field it
        means "leave unchanged".
        """
        changes: dict[str, object] = {}
        for name in self.model_fields_set:
            value = getattr(self, name)
            if value is None and name not in _NULLABLE_UPDATE_FIELDS:
                continue
            if name in _NULLABLE_UPDATE_FIELDS:
                value = _blank_to_none(value)
            changes[name] = value
        return changes


class EventFilters(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int | None = Field(default=None, ge=1)
    offset: int = Field(default=0, ge=0)
    include_local: bool = True
    include_external: bool = Field(
        default=True,
        validation_alias=AliasChoices("include_external", "include_google"),
    )
    calendar_id: str | None = None

    @field_validator("start_date", "end_date")
    @classmethod
    def _normalize_datetime(cls, value: datetime | None) -> datetime | None:
        return _ensure_aware(value)


class EventStatistics(BaseModel):
    total_events: int = 0
    local_events: int = 0
    google_events: int = 0
    today_events: int = 0
    upcoming_events: int = 0
    all_day_events: int = 0
    recurring_events: int = 0


class LocalEventStatistics(BaseModel):
    """Aggregates computed directly by the local store."""

    total: int = 0
    today: int = 0
    upcoming: int = 0
    all_day: int = 0
    recurring: int = 0


class IntegrationStatus(BaseModel):
    has_local_events: bool
    has_google_integration: bool
    total_integrations: int


class Credential(BaseModel):
    """Stored OAuth credential for one (user, provider) pair."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    provider: str
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None
    scope: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("expires_at", "created_at", "updated_at")
    @classmethod
    def _normalize_datetime(cls, value: datetime | None) -> datetime | None:
        return _ensure_aware(value)

    def is_expired(self, now: datetime) -> bool:
        """True when the access token can no longer be used as-is."""
        return self.expires_at is not None and now >= self.expires_at

    def __repr__(self) -> str:
        return (
            f"Credential("
            f"user_id={self.user_id!r}, "
            f"provider={self.provider!r}, "
            f"access_token=<REDACTED>, "
            f"refresh_token={'<REDACTED>' if self.refresh_token else None}, "
            f"expires_at={self.expires_at!r})"
        )

    __str__ = __repr__


@dataclass(frozen=True)
class GoogleSession:
    """A usable bearer token for one user's Google Calendar."""

    user_id: str
    access_token: str
    expires_at: datetime | None = None

    @property
    def authorization_header(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def __repr__(self) -> str:
        return (
            f"GoogleSession(user_id={self.user_id!r}, access_token=<REDACTED>, "
            f"expires_at={self.expires_at!r})"
        )
