"""iCalendar (.ics) helpers."""

from __future__ import annotations

import html
import re
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from .recurrence import local_datetime_utc, parse_date_key
from .utils import parse_clock

if TYPE_CHECKING:
    from .models import Event


DEFAULT_DURATION = timedelta(hours=2)

_tag_pattern = re.compile(r"<[^>]+>")


def _ensure_utc(dt: datetime) -> datetime:
    """Return a timezone-aware UTC datetime."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def _format_utc(dt: datetime) -> str:
    """Format a datetime as an RFC5545 UTC timestamp."""

    return _ensure_utc(dt).replace(microsecond=0).strftime("%Y%m%dT%H%M%SZ")


def _escape_text(value: str | None) -> str:
    """Escape text for ICS fields and strip any HTML tags."""

    if not value:
        return ""
    stripped = _tag_pattern.sub("", html.unescape(value))
    normalized = stripped.replace("\r\n", "\n").replace("\r", "\n")
    return (
        normalized.replace("\\", "\\\\")
        .replace(";", r"\;")
        .replace(",", r"\,")
        .replace("\n", "\\n")
    )


def occurrence_bounds(event: Event, date_key: str) -> tuple[datetime, datetime] | None:
    """Return the UTC start and end of a timed occurrence.

    Events without a start time are all-day and return ``None``. An end time
    earlier than the start means the occurrence runs past midnight.
    """
    start_clock = parse_clock(event.start_time)
    if start_clock is None:
        return None
    start = local_datetime_utc(date_key, *start_clock)
    end_clock = parse_clock(event.end_time)
    if end_clock is None:
        return start, start + DEFAULT_DURATION
    end = local_datetime_utc(date_key, *end_clock)
    if end <= start:
        end += timedelta(days=1)
    return start, end


def generate_occurrence_ics(
    event: Event, date_key: str, *, now: datetime | None = None
) -> str:
    """Return ICS text for one occurrence of an event."""

    dtstamp = _format_utc(now or datetime.now(UTC))
    bounds = occurrence_bounds(event, date_key)
    if bounds is None:
        day = parse_date_key(date_key)
        timing = [
            f"DTSTART;VALUE=DATE:{day.strftime('%Y%m%d')}",
            f"DTEND;VALUE=DATE:{(day + timedelta(days=1)).strftime('%Y%m%d')}",
        ]
    else:
        timing = [f"DTSTART:{_format_utc(bounds[0])}", f"DTEND:{_format_utc(bounds[1])}"]
    location = ", ".join(
        part for part in (event.venue_name, event.venue_address) if part
    )

    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//Happenings//EN",
        "BEGIN:VEVENT",
        f"UID:{event.id}-{date_key}@happenings",
        f"DTSTAMP:{dtstamp}",
        *timing,
        f"SUMMARY:{_escape_text(event.title)}",
        f"DESCRIPTION:{_escape_text(event.description)}",
        f"LOCATION:{_escape_text(location)}",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(lines) + "\r\n"
