"""Tests for calendar_utils module."""

from datetime import UTC, datetime, timedelta

import pytest

from calendar_booking.calendar_utils import (
    compute_default_end,
    event_boundary,
    event_result,
    event_window,
    format_event_time,
    is_active_event,
    is_valid_email,
    overlaps,
    parse_datetime,
    resolve_time_range,
    resolve_timezone,
    to_rfc3339,
)
from calendar_booking.exceptions import ValidationError

# ============================================================================
# Tests for format_event_time
# ============================================================================


def test_format_event_time_datetime_utc():
    """Test formatting UTC datetime."""
    result = format_event_time({"dateTime": "2024-01-15T10:00:00Z"})
    assert "January 15, 2024" in result
    assert "10:00 AM" in result


def test_format_event_time_all_day():
    result = format_event_time({"date": "2024-01-15"})
    assert result == "January 15, 2024 (all day)"


def test_format_event_time_invalid_passthrough():
    assert format_event_time({"dateTime": "not-a-date"}) == "not-a-date"


# ============================================================================
# Tests for validation helpers
# ============================================================================


@pytest.mark.parametrize("email", ["ana@example.com", "first.last+tag@clinic.co.uk"])
def test_is_valid_email_accepts(email):
    assert is_valid_email(email) is True


@pytest.mark.parametrize("email", ["", None, "ana", "ana@", "@example.com", "ana@example"])
def test_is_valid_email_rejects(email):
    assert is_valid_email(email) is False


def test_resolve_timezone_picks_first_known_zone():
    assert resolve_timezone(None, "Not/AZone", "Europe/Madrid") == "Europe/Madrid"


def test_resolve_timezone_falls_back_to_utc():
    assert resolve_timezone(None, "") == "UTC"


# ============================================================================
# Tests for parsing and windows
# ============================================================================


def test_parse_datetime_zulu():
    dt = parse_datetime("2024-01-15T10:00:00Z")
    assert dt == datetime(2024, 1, 15, 10, 0, tzinfo=UTC)


def test_parse_datetime_naive_uses_zone():
    dt = parse_datetime("2024-01-15T10:00:00", "Europe/Madrid")
    assert dt.astimezone(UTC) == datetime(2024, 1, 15, 9, 0, tzinfo=UTC)


def test_parse_datetime_invalid_raises():
    with pytest.raises(ValidationError):
        parse_datetime("tomorrow at ten")


def test_event_boundary_all_day_is_midnight_in_zone():
    boundary = event_boundary({"date": "2024-01-15"}, "America/New_York")
    assert boundary.astimezone(UTC) == datetime(2024, 1, 15, 5, 0, tzinfo=UTC)


def test_event_window_undated_event():
    assert event_window({"start": {}, "end": {}}) is None


def test_overlaps_is_half_open():
    """Back-to-back intervals do not overlap."""
    ten = datetime(2024, 1, 15, 10, tzinfo=UTC)
    ten_thirty = ten + timedelta(minutes=30)
    eleven = ten + timedelta(hours=1)
    assert overlaps(ten, ten_thirty, ten + timedelta(minutes=15), eleven) is True
    assert overlaps(ten, ten_thirty, ten_thirty, eleven) is False


def test_is_active_event_checks_end():
    now = datetime(2024, 1, 15, 12, tzinfo=UTC)
    running = {"end": {"dateTime": "2024-01-15T12:30:00Z"}}
    finished = {"end": {"dateTime": "2024-01-15T11:59:00Z"}}
    assert is_active_event(running, now) is True
    assert is_active_event(finished, now) is False


# ============================================================================
# Tests for default end and ranges
# ============================================================================


def test_compute_default_end_timed():
    end = compute_default_end({"dateTime": "2024-01-15T10:00:00", "timeZone": "Europe/Madrid"}, 60)
    assert end["timeZone"] == "Europe/Madrid"
    assert parse_datetime(end["dateTime"]) == parse_datetime("2024-01-15T11:00:00", "Europe/Madrid")


def test_compute_default_end_all_day_is_next_day():
    assert compute_default_end({"date": "2024-01-31"}, 60) == {"date": "2024-02-01"}


def test_compute_default_end_requires_start():
    with pytest.raises(ValidationError):
        compute_default_end({}, 60)


def test_to_rfc3339_converts_to_utc():
    dt = parse_datetime("2024-01-15T10:00:00+02:00")
    assert to_rfc3339(dt) == "2024-01-15T08:00:00Z"


def test_resolve_time_range_defaults():
    time_min, time_max = resolve_time_range(None, None, 30)
    delta = parse_datetime(time_max) - parse_datetime(time_min)
    assert delta == timedelta(days=30)


def test_resolve_time_range_rejects_inverted_bounds():
    with pytest.raises(ValidationError):
        resolve_time_range("2024-02-01T00:00:00Z", "2024-01-01T00:00:00Z", 30)


def test_event_result_keeps_known_fields_only():
    event = {"id": "e1", "summary": "Visit", "etag": '"3"', "hangoutLink": None, "location": "Room 2"}
    assert event_result(event) == {"id": "e1", "summary": "Visit"}
    assert event_result(event, "location")["location"] == "Room 2"
