"""Tests for translating between Google Calendar resources and UnifiedEvent."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from zoneinfo import ZoneInfo

import httpx
import pytest

from almanac.google_http import (
    coerce_expires_in_seconds,
    google_rfc3339,
    parse_google_datetime,
    safe_google_error_message,
)
from almanac.models import EventOrigin, Recurrence
from almanac.service import (
    UNTITLED_EVENT_TITLE,
    build_provider_payload,
    format_external_event,
    format_local_event,
)
from tests.conftest import make_google_item, make_local_event

pytestmark = pytest.mark.unit

BERLIN = ZoneInfo("Europe/Berlin")


class TestFormatLocalEvent:
    def test_prefixes_id_and_keeps_fields(self):
        local = make_local_event(id=12, title="Review", location="Room 4")
        event = format_local_event(local)
        assert event.id == "local_12"
        assert event.original_id == 12
        assert event.origin is EventOrigin.LOCAL
        assert event.title == "Review"
        assert event.location == "Room 4"
        assert event.created_at == local.created_at


class TestFormatExternalEvent:
    def test_timed_event(self):
        event = format_external_event(
            make_google_item(
                location="  HQ  ",
                htmlLink="https://calendar.google.com/event?eid=abc",
                attendees=[
                    {"email": "sam@example.com", "responseStatus": "accepted"},
                    {"displayName": "no email"},
                ],
            )
        )
        assert event is not None
        assert event.id == "external_g1"
        assert event.original_id == "g1"
        assert event.origin is EventOrigin.EXTERNAL
        assert event.title == "Standup"
        assert event.location == "HQ"
        assert event.start_time == datetime(2026, 3, 10, 15, 0, tzinfo=UTC)
        assert event.end_time == datetime(2026, 3, 10, 15, 30, tzinfo=UTC)
        assert event.is_all_day is False
        assert event.html_link == "https://calendar.google.com/event?eid=abc"
        assert [a.email for a in event.attendees] == ["sam@example.com"]

    def test_all_day_event_uses_configured_timezone(self):
        event = format_external_event(
            make_google_item(start={"date": "2026-03-12"}, end={"date": "2026-03-13"}),
            timezone=BERLIN,
        )
        assert event is not None
        assert event.is_all_day is True
        assert event.start_time == datetime(2026, 3, 12, tzinfo=BERLIN)
        assert event.end_time == datetime(2026, 3, 13, tzinfo=BERLIN)

    def test_missing_end_defaults(self):
        timed = format_external_event(make_google_item(end=None))
        all_day = format_external_event(make_google_item(start={"date": "2026-03-12"}, end=None))
        assert timed.end_time - timed.start_time == timedelta(hours=1)
        assert all_day.end_time - all_day.start_time == timedelta(days=1)

    def test_missing_summary_gets_placeholder_title(self):
        event = format_external_event(make_google_item(summary="   "))
        assert event.title == UNTITLED_EVENT_TITLE

    def test_cancelled_event_is_dropped(self):
        assert format_external_event(make_google_item(status="cancelled")) is None

    @pytest.mark.parametrize(
        ("rules", "expected"),
        [
            (["RRULE:FREQ=WEEKLY;BYDAY=TU"], Recurrence.WEEKLY),
            (["EXDATE:20260317T150000Z", "RRULE:FREQ=DAILY"], Recurrence.DAILY),
            (["RRULE:FREQ=HOURLY"], Recurrence.NONE),
            ("RRULE:FREQ=DAILY", Recurrence.NONE),
            (None, Recurrence.NONE),
        ],
    )
    def test_recurrence(self, rules, expected):
        event = format_external_event(make_google_item(recurrence=rules))
        assert event.recurrence is expected

    def test_missing_id_raises(self):
        with pytest.raises(ValueError, match="missing an id"):
            format_external_event(make_google_item(id=""))

    def test_missing_start_raises(self):
        with pytest.raises(ValueError, match="has no start"):
            format_external_event(make_google_item(start={"timeZone": "UTC"}))

    def test_invalid_date_raises(self):
        with pytest.raises(ValueError):
            format_external_event(make_google_item(start={"date": "next tuesday"}))


class TestBuildProviderPayload:
    def test_timed_create_payload(self):
        start = datetime(2026, 3, 10, 13, 0, tzinfo=UTC)
        payload = build_provider_payload(
            {
                "title": " Lunch ",
                "description": "",
                "location": "Luigi's",
                "start_time": start,
                "end_time": start + timedelta(hours=1),
                "is_all_day": False,
                "recurrence": Recurrence.NONE,
            },
            timezone=BERLIN,
        )
        assert payload == {
            "summary": "Lunch",
            "location": "Luigi's",
            "start": {"dateTime": "2026-03-10T13:00:00Z", "timeZone": "Europe/Berlin"},
            "end": {"dateTime": "2026-03-10T14:00:00Z", "timeZone": "Europe/Berlin"},
        }

    def test_all_day_payload_uses_local_dates(self):
        # 23:30 UTC on the 11th is already the 12th in Berlin.
        start = datetime(2026, 3, 11, 23, 30, tzinfo=UTC)
        payload = build_provider_payload(
            {"start_time": start, "end_time": start, "is_all_day": True},
            timezone=BERLIN,
        )
        assert payload == {"start": {"date": "2026-03-12"}, "end": {"date": "2026-03-13"}}

    def test_recurrence_becomes_rrule(self):
        payload = build_provider_payload({"recurrence": "monthly"}, timezone=BERLIN)
        assert payload == {"recurrence": ["RRULE:FREQ=MONTHLY"]}

    def test_partial_update_only_emits_changed_fields(self):
        assert build_provider_payload({"location": "Room 2"}, timezone=BERLIN) == {
            "location": "Room 2"
        }

    def test_empty_changes(self):
        assert build_provider_payload({}, timezone=BERLIN) == {}


class TestGoogleHttpHelpers:
    def test_rfc3339_normalizes_to_utc(self):
        assert google_rfc3339(datetime(2026, 3, 10, 13, 0, tzinfo=BERLIN)) == "2026-03-10T12:00:00Z"
        assert google_rfc3339(datetime(2026, 3, 10, 13, 0)) == "2026-03-10T13:00:00Z"

    def test_parse_datetime_with_offset(self):
        parsed = parse_google_datetime("2026-03-10T09:00:00-05:00")
        assert parsed == datetime(2026, 3, 10, 14, 0, tzinfo=UTC)

    def test_parse_invalid_datetime(self):
        with pytest.raises(ValueError):
            parse_google_datetime("yesterday")

    @pytest.mark.parametrize(
        ("value", "expected"),
        [(3599, 3599), ("120", 120), (0, 3600), (-5, 3600), (True, 3600), (None, 3600)],
    )
    def test_coerce_expires_in(self, value, expected):
        assert coerce_expires_in_seconds(value) == expected

    def test_error_message_prefers_nested_message(self):
        response = httpx.Response(400, json={"error": {"message": "  Bad   request  "}})
        assert safe_google_error_message(response) == "Bad request"

    def test_error_message_is_truncated(self):
        response = httpx.Response(500, text="x" * 500)
        assert len(safe_google_error_message(response)) == 200

    def test_error_message_without_body(self):
        assert safe_google_error_message(httpx.Response(502)) == (
            "Request failed without an error payload"
        )
