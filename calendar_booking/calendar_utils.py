"""Utility functions for calendar operations."""

import re
from datetime import UTC, date, datetime, timedelta
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .exceptions import ValidationError

# RFC 5322-ish pattern, enough for real-world addresses.
EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+"
    r"@[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?"
    r"(?:\.[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?)+$"
)

RESULT_FIELDS = (
    "id",
    "summary",
    "start",
    "end",
    "htmlLink",
    "hangoutLink",
    "attendees",
    "conferenceData",
)


def format_event_time(event_datetime: dict[str, Any] | None) -> str:
    """Format event datetime for human-readable display."""
    if not event_datetime:
        return "No time specified"

    if event_datetime.get("dateTime"):
        dt_str = event_datetime["dateTime"]
        try:
            dt = datetime.fromisoformat(dt_str.replace("Z", "+00:00"))
            return dt.strftime("%B %d, %Y at %I:%M %p")
        except ValueError:
            return dt_str

    if event_datetime.get("date"):
        try:
            dt = datetime.strptime(event_datetime["date"], "%Y-%m-%d")
            return dt.strftime("%B %d, %Y (all day)")
        except ValueError:
            return event_datetime["date"]

    return "No time specified"


def is_valid_email(email: str | None) -> bool:
    return bool(email and EMAIL_RE.match(email.strip()))


def get_zone(name: str | None) -> ZoneInfo:
    """Resolve an IANA zone name, falling back to UTC for unknown names."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def resolve_timezone(*candidates: str | None) -> str:
    """Return the first candidate that is a known IANA zone, else ``UTC``."""
    for name in candidates:
        if not name:
            continue
        try:
            ZoneInfo(name)
            return name
        except (ZoneInfoNotFoundError, ValueError):
            continue
    return "UTC"


# ============================================================================
# Parsing and windows
# ============================================================================


def parse_datetime(value: str, tz_name: str | None = None) -> datetime:
    """Parse an RFC3339/ISO datetime into an aware datetime.

    Naive values are interpreted in ``tz_name`` (UTC when omitted).
    """
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, AttributeError) as e:
        raise ValidationError(f"Invalid date/time: {value}") from e
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=get_zone(tz_name))
    return dt


def parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Invalid date: {value}") from e


def event_boundary(event_datetime: dict[str, Any] | None, tz_name: str | None = None) -> datetime | None:
    """Convert an event start/end object into an aware datetime.

    All-day dates map to midnight in the event's (or given) timezone.
    Returns None when the object carries no time at all.
    """
    if not event_datetime:
        return None
    zone = event_datetime.get("timeZone") or tz_name
    if event_datetime.get("dateTime"):
        return parse_datetime(event_datetime["dateTime"], zone)
    if event_datetime.get("date"):
        day = parse_date(event_datetime["date"])
        return datetime(day.year, day.month, day.day, tzinfo=get_zone(zone))
    return None


def event_window(event: dict[str, Any], tz_name: str | None = None) -> tuple[datetime, datetime] | None:
    """Return the ``[start, end)`` window of an event, or None if undated."""
    try:
        start = event_boundary(event.get("start"), tz_name)
        end = event_boundary(event.get("end"), tz_name)
    except ValidationError:
        return None
    if start is None or end is None:
        return None
    return start, end


def overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval overlap test."""
    return a_start < b_end and b_start < a_end


def is_active_event(event: dict[str, Any], now: datetime | None = None, tz_name: str | None = None) -> bool:
    """An event is active while its end time has not passed."""
    now = now or datetime.now(UTC)
    try:
        end = event_boundary(event.get("end"), tz_name)
    except ValidationError:
        return False
    return end is not None and end > now


def compute_default_end(start: dict[str, Any], duration_minutes: int) -> dict[str, Any]:
    """Build an end object from a start when the caller omitted it."""
    if start.get("dateTime"):
        start_dt = parse_datetime(start["dateTime"], start.get("timeZone"))
        end_dt = start_dt + timedelta(minutes=duration_minutes)
        end = {"dateTime": end_dt.isoformat()}
        if start.get("timeZone"):
            end["timeZone"] = start["timeZone"]
        return end
    if start.get("date"):
        next_day = parse_date(start["date"]) + timedelta(days=1)
        return {"date": next_day.isoformat()}
    raise ValidationError("A valid start date/time (start) is required.")


def to_rfc3339(dt: datetime) -> str:
    """Format an aware datetime as RFC3339 in UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


def resolve_time_range(
    start_date: str | None,
    end_date: str | None,
    default_days: int,
) -> tuple[str, str]:
    """Turn optional caller bounds into an RFC3339 query window."""
    now = datetime.now(UTC)
    time_min = parse_datetime(start_date) if start_date else now
    time_max = parse_datetime(end_date) if end_date else now + timedelta(days=default_days)
    if time_max <= time_min:
        raise ValidationError("endDate must be after startDate.")
    return to_rfc3339(time_min), to_rfc3339(time_max)


def event_result(event: dict[str, Any], *extra: str) -> dict[str, Any]:
    """Normalized event fields returned to the tool-call layer."""
    result = {}
    for key in (*RESULT_FIELDS, *extra):
        if event.get(key) is not None:
            result[key] = event[key]
    return result
