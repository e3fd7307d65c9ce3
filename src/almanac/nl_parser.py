"""Natural-language event creation.

Sends free text such as "lunch with Sam tomorrow at 1pm at Luigi's" to an
OpenAI chat model constrained to a JSON object, validates the reply into a
:class:`ParsedEvent`, converts it to an :class:`~almanac.models.EventCreate`
in the configured timezone, and stores it as a local event.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from almanac.errors import EventParseError
from almanac.models import EventCreate, LocalEvent

if TYPE_CHECKING:
    from openai import AsyncOpenAI

    from almanac.local_store import LocalEventStore

logger = logging.getLogger(__name__)

_TIME_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")
_MAX_INPUT_CHARS = 2000

_SYSTEM_PROMPT = """You turn natural-language requests into a single calendar event.
Today is {today} ({weekday}); the user's timezone is {timezone}.
Resolve relative dates ("tomorrow", "next Friday") against today.
Respond with one JSON object only, with these keys:
  "title": short event title (string, required)
  "description": extra details (string or null)
  "location": where it happens (string or null)
  "date": the event date as YYYY-MM-DD
  "start_time": start as HH:MM, 24-hour clock
  "end_time": end as HH:MM, 24-hour clock
  "is_all_day": true only when no time of day is given or implied
If no duration is given, make the event one hour long.
For all-day events use "00:00" for both times."""


class ParsedEvent(BaseModel):
    """Structured event as returned by the model."""

    model_config = ConfigDict(extra="ignore")

    title: str = Field(min_length=1)
    description: str | None = None
    location: str | None = None
    day: date = Field(validation_alias=AliasChoices("date", "day"), serialization_alias="date")
    start_time: str
    end_time: str
    is_all_day: bool = False

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
        if value is None:
            return None
        return value.strip() or None

    @field_validator("start_time", "end_time")
    @classmethod
    def _validate_clock_time(cls, value: str) -> str:
        normalized = value.strip()
        if _TIME_PATTERN.fullmatch(normalized) is None:
            raise ValueError("must be HH:MM in 24-hour format")
        return normalized


def _clock_time(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def to_event_create(parsed: ParsedEvent, tz: ZoneInfo) -> EventCreate:
    """Anchor a parsed event in *tz*.

    All-day events span midnight to the next midnight; a timed event whose
    end is not after its start is assumed to end on the following day.
    """
    if parsed.is_all_day:
        start = datetime.combine(parsed.day, time.min, tzinfo=tz)
        end = start + timedelta(days=1)
    else:
        start = datetime.combine(parsed.day, _clock_time(parsed.start_time), tzinfo=tz)
        end = datetime.combine(parsed.day, _clock_time(parsed.end_time), tzinfo=tz)
        if end <= start:
            end += timedelta(days=1)
    return EventCreate(
        title=parsed.title,
        description=parsed.description,
        location=parsed.location,
        start_time=start,
        end_time=end,
        is_all_day=parsed.is_all_day,
    )


class NaturalLanguageEventParser:
    """Parse free text into events with an OpenAI chat model."""

    def __init__(
        self,
        client: AsyncOpenAI,
        local_store: LocalEventStore,
        *,
        model: str,
        timezone: str = "UTC",
        temperature: float = 0.1,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._client = client
        self._local = local_store
        self._model = model
        self._tz = ZoneInfo(timezone)
        self._temperature = temperature
        self._clock = clock or (lambda: datetime.now(UTC))

    def _system_prompt(self) -> str:
        today = self._clock().astimezone(self._tz).date()
        return _SYSTEM_PROMPT.format(
            today=today.isoformat(),
            weekday=today.strftime("%A"),
            timezone=self._tz.key,
        )

    async def parse(self, text: str) -> ParsedEvent:
        """Ask the model for a structured event.

        Raises
        ------
        EventParseError
            If the input is empty, or the reply is empty, not JSON, or does
            not describe a valid event.
        """
        prompt = text.strip()
        if not prompt:
            raise EventParseError("Event description must not be empty")
        if len(prompt) > _MAX_INPUT_CHARS:
            raise EventParseError(f"Event description exceeds {_MAX_INPUT_CHARS} characters")

        response = await self._client.chat.completions.create(
            model=self._model,
            messages=[
                {"role": "system", "content": self._system_prompt()},
                {
                    "role": "user",
                    "content": f'Parse this into a calendar event: "{prompt}"',
                },
            ],
            response_format={"type": "json_object"},
            temperature=self._temperature,
        )

        content = response.choices[0].message.content if response.choices else None
        if not content or not content.strip():
            raise EventParseError("The language model returned an empty reply")

        try:
            payload = json.loads(content)
        except json.JSONDecodeError as exc:
            raise EventParseError("The language model reply was not valid JSON") from exc

        try:
            parsed = ParsedEvent.model_validate(payload)
        except ValidationError as exc:
            logger.info("Rejected language model event: %d validation error(s)", exc.error_count())
            reason = exc.errors()[0]["msg"]
            raise EventParseError(f"Could not understand the event: {reason}") from exc

        logger.debug("Parsed natural-language event", extra={"is_all_day": parsed.is_all_day})
        return parsed

    async def create_event_from_text(self, user_id: str, text: str) -> LocalEvent:
        parsed = await self.parse(text)
        return await self._local.create(user_id, to_event_create(parsed, self._tz))
