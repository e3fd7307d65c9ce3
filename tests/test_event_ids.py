"""Tests for unified event id parsing and formatting."""

from __future__ import annotations

import pytest

from almanac.errors import InvalidEventIdError
from almanac.event_ids import ExternalRef, LocalRef, format_event_id, parse_event_id

pytestmark = pytest.mark.unit


class TestParseEventId:
    def test_local_id_parses_to_integer_ref(self):
        assert parse_event_id("local_42") == LocalRef(42)

    def test_external_id_keeps_remainder_verbatim(self):
        assert parse_event_id("external_abc123") == ExternalRef("abc123")

    def test_external_id_may_contain_underscores(self):
        assert parse_event_id("external_abc_20260310T090000Z") == ExternalRef(
            "abc_20260310T090000Z"
        )

    @pytest.mark.parametrize(
        "event_id",
        [
            "",
            "42",
            "foo_1",
            "local_",
            "local_abc",
            "local_0",
            "local_-3",
            "local_1.5",
            "local_١٢",
            "external_",
            "LOCAL_1",
        ],
    )
    def test_malformed_ids_are_rejected(self, event_id: str):
        with pytest.raises(InvalidEventIdError):
            parse_event_id(event_id)

    def test_invalid_id_error_is_a_value_error(self):
        with pytest.raises(ValueError, match="Invalid event id"):
            parse_event_id("nope")


class TestFormatEventId:
    def test_local_ref(self):
        assert format_event_id(LocalRef(7)) == "local_7"

    def test_external_ref(self):
        assert format_event_id(ExternalRef("g1")) == "external_g1"

    @pytest.mark.parametrize("ref", [LocalRef(12), ExternalRef("abc_def")])
    def test_parse_inverts_format(self, ref):
        assert parse_event_id(format_event_id(ref)) == ref
