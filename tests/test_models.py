"""Tests for the domain models in almanac.models."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from pydantic import ValidationError

from almanac.models import (
    Credential,
    EventCreate,
    EventFilters,
    EventUpdate,
    GoogleSession,
    Recurrence,
    UnifiedEvent,
)

pytestmark = pytest.mark.unit

START = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)


class TestEventCreate:
    def test_strips_title_and_blanks_optional_text(self):
        event = EventCreate(
            title="  Dentist  ",
            description="   ",
            location=" Main St ",
            start_time=START,
            end_time=START + timedelta(hours=1),
        )
        assert event.title == "Dentist"
        assert event.description is None
        assert event.location == "Main St"
        assert event.recurrence is Recurrence.NONE

    def test_blank_title_rejected(self):
        with pytest.raises(ValidationError):
            EventCreate(title="   ", start_time=START, end_time=START)

    def test_end_before_start_rejected(self):
        with pytest.raises(ValidationError, match="end_time"):
            EventCreate(title="x", start_time=START, end_time=START - timedelta(minutes=1))

    def test_zero_length_event_allowed(self):
        event = EventCreate(title="x", start_time=START, end_time=START)
        assert event.end_time == event.start_time

    def test_naive_datetimes_are_treated_as_utc(self):
        event = EventCreate(
            title="x",
            start_time=datetime(2026, 3, 10, 9, 0),
            end_time=datetime(2026, 3, 10, 10, 0),
        )
        assert event.start_time.tzinfo is UTC

    def test_unknown_recurrence_rejected(self):
        with pytest.raises(ValidationError):
            EventCreate(title="x", start_time=START, end_time=START, recurrence="hourly")

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            EventCreate(title="x", start_time=START, end_time=START, color="red")


class TestEventUpdate:
    def test_changes_contains_only_set_fields(self):
        update = EventUpdate(title="New title")
        assert update.changes() == {"title": "New title"}

    def test_empty_update_has_no_changes(self):
        assert EventUpdate().changes() == {}

    def test_explicit_none_clears_description(self):
        update = EventUpdate(description=None, location="  ")
        assert update.changes() == {"description": None, "location": None}

    def test_explicit_none_for_non_nullable_field_is_ignored(self):
        update = EventUpdate(title=None, is_all_day=None)
        assert update.changes() == {}

    def test_false_is_a_real_change(self):
        assert EventUpdate(is_all_day=False).changes() == {"is_all_day": False}

    def test_window_validated_when_both_bounds_given(self):
        with pytest.raises(ValidationError):
            EventUpdate(start_time=START, end_time=START - timedelta(hours=1))

    def test_blank_title_rejected(self):
        with pytest.raises(ValidationError):
            EventUpdate(title="  ")


class TestEventFilters:
    def test_defaults_include_both_sources(self):
        filters = EventFilters()
        assert filters.include_local is True
        assert filters.include_external is True
        assert filters.offset == 0
        assert filters.limit is None

    def test_include_google_alias(self):
        assert EventFilters(include_google=False).include_external is False

    def test_limit_must_be_positive(self):
        with pytest.raises(ValidationError):
            EventFilters(limit=0)

    def test_offset_must_not_be_negative(self):
        with pytest.raises(ValidationError):
            EventFilters(offset=-1)


class TestUnifiedEvent:
    def test_is_immutable(self):
        event = UnifiedEvent(
            id="local_1",
            title="x",
            start_time=START,
            end_time=START,
            origin="local",
            original_id=1,
        )
        with pytest.raises(ValidationError):
            event.title = "y"


class TestSecretRedaction:
    def test_credential_repr_hides_tokens(self):
        credential = Credential(
            user_id="u1",
            provider="google_calendar",
            access_token="ya29.secret",
            refresh_token="1//refresh-secret",
        )
        rendered = repr(credential)
        assert "ya29.secret" not in rendered
        assert "refresh-secret" not in rendered
        assert str(credential) == rendered

    def test_session_repr_hides_token(self):
        session = GoogleSession(user_id="u1", access_token="ya29.secret")
        assert "ya29.secret" not in repr(session)
        assert session.authorization_header == {"Authorization": "Bearer ya29.secret"}

    def test_credential_expiry(self):
        credential = Credential(
            user_id="u1", provider="google_calendar", access_token="t", expires_at=START
        )
        assert credential.is_expired(START) is True
        assert credential.is_expired(START - timedelta(seconds=1)) is False

    def test_credential_without_expiry_never_expires(self):
        credential = Credential(user_id="u1", provider="google_calendar", access_token="t")
        assert credential.is_expired(START) is False
