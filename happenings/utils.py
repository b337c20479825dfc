"""Utility helpers for Happenings."""

from __future__ import annotations

import hashlib
import re
import unicodedata
from datetime import UTC, datetime

_slug_invalid = re.compile(r"[^a-z0-9]+")
_email_pattern = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_clock_pattern = re.compile(r"^(?P<hour>[01]?\d|2[0-3]):(?P<minute>[0-5]\d)(?::[0-5]\d)?$")


def utcnow() -> datetime:
    """Return a naive UTC datetime."""

    return datetime.now(UTC).replace(tzinfo=None)


def slugify(value: str) -> str:
    """Return a canonical slug suitable for URLs."""
    value = (
        unicodedata.normalize("NFKD", value or "")
        .encode("ascii", "ignore")
        .decode("ascii")
    )
    value = value.strip().lower()
    value = _slug_invalid.sub("-", value)
    value = value.strip("-")
    return value


def normalize_email(value: str | None) -> str:
    return (value or "").strip().lower()


def is_valid_email(value: str | None) -> bool:
    return bool(value) and bool(_email_pattern.match(value))


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def parse_clock(value: str | None) -> tuple[int, int] | None:
    """Parse an ``HH:MM`` (or ``HH:MM:SS``) wall-clock string."""
    if not value:
        return None
    match = _clock_pattern.match(value.strip())
    if not match:
        return None
    return int(match.group("hour")), int(match.group("minute"))


def format_clock(hour: int, minute: int) -> str:
    """Return a 12-hour label such as ``7:15 PM``."""
    hour %= 24
    suffix = "AM" if hour < 12 else "PM"
    display = hour % 12 or 12
    return f"{display}:{minute:02d} {suffix}"


def add_minutes_to_clock(value: str | None, minutes: int) -> str | None:
    parsed = parse_clock(value)
    if parsed is None:
        return None
    total = parsed[0] * 60 + parsed[1] + minutes
    return format_clock((total // 60) % 24, total % 60)


def humanize_time(value: datetime | None, *, now: datetime | None = None) -> str:
    """Return a friendly string such as 'in 2 hours' or '3 hours ago'."""
    if not value:
        return ""
    now = now or utcnow()
    delta_seconds = (value - now).total_seconds()
    past = delta_seconds < 0
    seconds = abs(delta_seconds)

    units = [
        ("week", 7 * 24 * 3600),
        ("day", 24 * 3600),
        ("hour", 3600),
        ("minute", 60),
    ]

    for name, step in units:
        amount = int(seconds // step)
        if amount >= 1:
            label = name if amount == 1 else f"{name}s"
            break
    else:
        return "in moments" if not past else "moments ago"

    if past:
        return f"{amount} {label} ago"
    return f"in {amount} {label}"
