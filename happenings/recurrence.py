"""Occurrence expansion for one-off and recurring happenings.

An occurrence is identified by its *date key*, a ``YYYY-MM-DD`` string for
the calendar date in the configured timezone. Every RSVP, timeslot, claim
and override row is scoped by ``(event_id, date_key)``, so all date math in
the application funnels through this module.

Schedules are stored loosely on the event (``event_date``, ``day_of_week``,
``recurrence_rule``, ``custom_dates``...) and normalized here into a
:class:`Recurrence` before expansion. ``recurrence_rule`` accepts:

* empty / ``none``: one-time on ``event_date``, or weekly when only a
  ``day_of_week`` is known
* ``weekly`` / ``biweekly``
* ordinal phrases: ``1st``, ``2nd/4th``, ``1st & 3rd``, ``last``
* an RRULE subset: ``FREQ=WEEKLY|MONTHLY;INTERVAL=n;BYDAY=...;COUNT=n;UNTIL=...``
* ``custom``: the explicit ``custom_dates`` list
"""

from __future__ import annotations

import calendar
import re
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from sqlalchemy import select

from .config import settings
from .errors import InvalidDateKey, InvalidRequestError, OccurrenceCancelled
from .models import OccurrenceOverride
from .utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

    from .models import Event

_date_key_pattern = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ordinal_pattern = re.compile(
    r"\b(1st|2nd|3rd|4th|5th|first|second|third|fourth|fifth|last)\b"
)
_byday_pattern = re.compile(r"^(?P<ordinal>[+-]?\d)?(?P<day>MO|TU|WE|TH|FR|SA|SU)$")

WEEKDAY_NAMES = [
    "Monday",
    "Tuesday",
    "Wednesday",
    "Thursday",
    "Friday",
    "Saturday",
    "Sunday",
]
_weekday_lookup = {name.lower(): index for index, name in enumerate(WEEKDAY_NAMES)}
_weekday_lookup.update(
    {name[:3].lower(): index for index, name in enumerate(WEEKDAY_NAMES)}
)
_rrule_days = {code: index for index, code in enumerate(["MO", "TU", "WE", "TH", "FR", "SA", "SU"])}

ORDINALS = {
    "1st": 1,
    "first": 1,
    "2nd": 2,
    "second": 2,
    "3rd": 3,
    "third": 3,
    "4th": 4,
    "fourth": 4,
    "5th": 5,
    "fifth": 5,
    "last": -1,
}
_ordinal_labels = {1: "1st", 2: "2nd", 3: "3rd", 4: "4th", 5: "5th", -1: "Last"}

# Horizon used when looking for the next occurrence of sparse schedules.
NEXT_OCCURRENCE_HORIZON_DAYS = 3660


@dataclass(frozen=True)
class Recurrence:
    frequency: str
    weekdays: tuple[int, ...] = ()
    monthly: tuple[tuple[int, int], ...] = ()
    interval: int = 1
    start_key: str | None = None
    end_key: str | None = None
    count: int | None = None
    custom_dates: tuple[str, ...] = ()
    is_confident: bool = True


UNKNOWN = Recurrence(frequency="unknown", is_confident=False)


# -------- date keys --------


def local_zone() -> ZoneInfo:
    return ZoneInfo(settings.timezone)


def is_valid_date_key(value: str | None) -> bool:
    if not value or not _date_key_pattern.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def parse_date_key(value: str) -> date:
    if not is_valid_date_key(value):
        raise InvalidDateKey()
    return date.fromisoformat(value)


def to_date_key(day: date) -> str:
    return day.isoformat()


def today_key(now: datetime | None = None) -> str:
    """Return today's date key in the configured zone.

    ``now`` is a naive UTC datetime, matching what the models store.
    """
    current = (now or utcnow()).replace(tzinfo=UTC)
    return to_date_key(current.astimezone(local_zone()).date())


def add_days(date_key: str, days: int) -> str:
    return to_date_key(parse_date_key(date_key) + timedelta(days=days))


def format_date_key(date_key: str) -> str:
    """Return a short label such as ``Sat, Jan 18``."""
    day = parse_date_key(date_key)
    return f"{day:%a}, {day:%b} {day.day}"


def local_datetime_utc(date_key: str, hour: int, minute: int) -> datetime:
    """Convert a local wall-clock time on an occurrence to naive UTC."""
    day = parse_date_key(date_key)
    local = datetime(day.year, day.month, day.day, hour, minute, tzinfo=local_zone())
    return local.astimezone(UTC).replace(tzinfo=None)


# -------- interpretation --------


def parse_weekday(value: str | int | None) -> int | None:
    if value is None:
        return None
    if isinstance(value, int):
        return value if 0 <= value <= 6 else None
    return _weekday_lookup.get(value.strip().lower())


def _parse_ordinals(text: str) -> list[int]:
    found = {ORDINALS[token] for token in _ordinal_pattern.findall(text)}
    return sorted(found, key=lambda n: (n < 0, n))


def _weekday_in_text(text: str) -> int | None:
    for token in re.findall(r"[a-z]+", text):
        if token in _weekday_lookup and len(token) > 3:
            return _weekday_lookup[token]
    return None


def _parse_until(value: str) -> str | None:
    digits = value.strip()[:8]
    if len(digits) != 8 or not digits.isdigit():
        return None
    candidate = f"{digits[:4]}-{digits[4:6]}-{digits[6:]}"
    return candidate if is_valid_date_key(candidate) else None


def _interpret_rrule(
    rule: str,
    *,
    weekday: int | None,
    start_key: str | None,
    end_key: str | None,
    count: int | None,
) -> Recurrence:
    body = rule.split(":", 1)[1] if rule.upper().startswith("RRULE:") else rule
    parts: dict[str, str] = {}
    for chunk in body.split(";"):
        if "=" in chunk:
            key, value = chunk.split("=", 1)
            parts[key.strip().upper()] = value.strip().upper()

    freq = parts.get("FREQ")
    try:
        interval = max(int(parts.get("INTERVAL", "1")), 1)
    except ValueError:
        return UNKNOWN
    if "COUNT" in parts:
        try:
            count = int(parts["COUNT"])
        except ValueError:
            return UNKNOWN
    if "UNTIL" in parts:
        end_key = _parse_until(parts["UNTIL"]) or end_key

    bydays: list[tuple[int | None, int]] = []
    for token in filter(None, parts.get("BYDAY", "").split(",")):
        match = _byday_pattern.match(token)
        if not match:
            return UNKNOWN
        ordinal = int(match.group("ordinal")) if match.group("ordinal") else None
        bydays.append((ordinal, _rrule_days[match.group("day")]))

    if freq == "WEEKLY":
        weekdays = sorted({day for _, day in bydays}) or (
            [weekday] if weekday is not None else []
        )
        if not weekdays and start_key:
            weekdays = [parse_date_key(start_key).weekday()]
        if not weekdays:
            return UNKNOWN
        return Recurrence(
            frequency="biweekly" if interval == 2 else "weekly",
            weekdays=tuple(weekdays),
            interval=interval,
            start_key=start_key,
            end_key=end_key,
            count=count,
        )

    if freq == "MONTHLY":
        setpos = [
            int(value)
            for value in filter(None, parts.get("BYSETPOS", "").split(","))
            if value.lstrip("+-").isdigit()
        ]
        pairs: set[tuple[int, int]] = set()
        for ordinal, day in bydays:
            if ordinal is not None:
                pairs.add((ordinal, day))
            else:
                for position in setpos or [1]:
                    pairs.add((position, day))
        if not pairs:
            return UNKNOWN
        return Recurrence(
            frequency="monthly",
            monthly=tuple(sorted(pairs, key=lambda p: (p[0] < 0, p[0], p[1]))),
            interval=interval,
            start_key=start_key,
            end_key=end_key,
            count=count,
        )

    return UNKNOWN


def interpret_recurrence(event: Event) -> Recurrence:
    """Normalize the schedule fields stored on an event."""
    rule = (event.recurrence_rule or "").strip()
    lowered = rule.lower()
    weekday = parse_weekday(event.day_of_week)
    start_key = event.event_date if is_valid_date_key(event.event_date) else None
    end_key = (
        event.recurrence_end_date
        if is_valid_date_key(event.recurrence_end_date)
        else None
    )
    count = event.max_occurrences if (event.max_occurrences or 0) > 0 else None
    custom = tuple(
        sorted({value for value in (event.custom_dates or []) if is_valid_date_key(value)})
    )

    if lowered == "custom" or (custom and not lowered):
        if not custom:
            return UNKNOWN
        return Recurrence(
            frequency="custom",
            custom_dates=custom,
            start_key=start_key or custom[0],
            end_key=end_key,
            count=count,
        )

    if lowered.startswith(("freq=", "rrule:")):
        recurrence = _interpret_rrule(
            rule, weekday=weekday, start_key=start_key, end_key=end_key, count=count
        )
    elif lowered in {"weekly", "biweekly", "every other week"}:
        if weekday is None and start_key:
            weekday = parse_date_key(start_key).weekday()
        if weekday is None:
            return UNKNOWN
        recurrence = Recurrence(
            frequency="weekly" if lowered == "weekly" else "biweekly",
            weekdays=(weekday,),
            interval=1 if lowered == "weekly" else 2,
            start_key=start_key,
            end_key=end_key,
            count=count,
        )
    elif ordinals := _parse_ordinals(lowered):
        # Multi-ordinal phrases stay monthly; never degrade them to weekly.
        day = weekday
        if day is None:
            day = _weekday_in_text(lowered)
        if day is None and start_key:
            day = parse_date_key(start_key).weekday()
        if day is None:
            return UNKNOWN
        recurrence = Recurrence(
            frequency="monthly",
            monthly=tuple((ordinal, day) for ordinal in ordinals),
            start_key=start_key,
            end_key=end_key,
            count=count,
        )
    elif lowered in {"", "none", "once", "one-time"}:
        if start_key:
            return Recurrence(frequency="one-time", start_key=start_key)
        if weekday is None:
            return UNKNOWN
        recurrence = Recurrence(
            frequency="weekly", weekdays=(weekday,), end_key=end_key, count=count
        )
    else:
        return UNKNOWN

    if recurrence.interval > 1 and recurrence.start_key is None:
        # Every-other-week (or -month) series step from their first date.
        return UNKNOWN

    if recurrence.count is not None and recurrence.start_key is None:
        # A finite count needs a series start to count from.
        recurrence = Recurrence(
            frequency=recurrence.frequency,
            weekdays=recurrence.weekdays,
            monthly=recurrence.monthly,
            interval=recurrence.interval,
            end_key=recurrence.end_key,
            is_confident=recurrence.is_confident,
        )
    return recurrence


# -------- expansion --------


def nth_weekday_of_month(year: int, month: int, weekday: int, ordinal: int) -> date | None:
    """Return the ``ordinal``-th ``weekday`` of a month; ``-1`` means last."""
    days_in_month = calendar.monthrange(year, month)[1]
    if ordinal > 0:
        offset = (weekday - date(year, month, 1).weekday()) % 7
        day = 1 + offset + (ordinal - 1) * 7
        if day > days_in_month:
            return None
        return date(year, month, day)
    last = date(year, month, days_in_month)
    day = days_in_month - (last.weekday() - weekday) % 7 + (ordinal + 1) * 7
    if day < 1:
        return None
    return date(year, month, day)


def _iter_series(recurrence: Recurrence, base: date, until: date) -> Iterator[date]:
    """Yield the series' dates in ascending order from ``base`` to ``until``."""
    if recurrence.frequency == "one-time":
        day = parse_date_key(recurrence.start_key)
        if base <= day <= until:
            yield day
        return

    if recurrence.frequency == "custom":
        for value in recurrence.custom_dates:
            day = parse_date_key(value)
            if day > until:
                return
            if day >= base:
                yield day
        return

    if recurrence.frequency in {"weekly", "biweekly"}:
        week_start = base - timedelta(days=base.weekday())
        week = 0
        while week_start + timedelta(weeks=week) <= until:
            if week % recurrence.interval == 0:
                for weekday in recurrence.weekdays:
                    day = week_start + timedelta(weeks=week, days=weekday)
                    if base <= day <= until:
                        yield day
            week += 1
        return

    if recurrence.frequency == "monthly":
        year, month = base.year, base.month
        while date(year, month, 1) <= until:
            found = [
                nth_weekday_of_month(year, month, weekday, ordinal)
                for ordinal, weekday in recurrence.monthly
            ]
            for day in sorted({day for day in found if day is not None}):
                if base <= day <= until:
                    yield day
            month += recurrence.interval
            while month > 12:
                month -= 12
                year += 1


def expand_occurrences(
    event: Event,
    start_key: str | None = None,
    end_key: str | None = None,
    *,
    max_occurrences: int | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Return the event's occurrence date keys inside ``[start_key, end_key]``.

    The window defaults to today plus ``expansion_window_days``. Finite series
    count from their own start so a window never resets the count.
    """
    recurrence = interpret_recurrence(event)
    if not recurrence.is_confident:
        return []
    window_start = parse_date_key(start_key or today_key(now))
    window_end = (
        parse_date_key(end_key)
        if end_key
        else window_start + timedelta(days=settings.expansion_window_days)
    )
    limit = max_occurrences or settings.max_occurrences_per_event
    until = window_end
    if recurrence.end_key:
        until = min(until, parse_date_key(recurrence.end_key))
    series_start = (
        parse_date_key(recurrence.start_key) if recurrence.start_key else window_start
    )

    keys: list[str] = []
    for index, day in enumerate(_iter_series(recurrence, series_start, until)):
        if recurrence.count is not None and index >= recurrence.count:
            break
        if day < window_start:
            continue
        keys.append(to_date_key(day))
        if len(keys) >= limit:
            break
    return keys


def next_occurrence(event: Event, now: datetime | None = None) -> str | None:
    start = today_key(now)
    keys = expand_occurrences(
        event,
        start,
        add_days(start, NEXT_OCCURRENCE_HORIZON_DAYS),
        max_occurrences=1,
        now=now,
    )
    return keys[0] if keys else None


def is_occurrence(event: Event, date_key: str) -> bool:
    """Return whether ``date_key`` is one of the event's occurrences."""
    recurrence = interpret_recurrence(event)
    if not recurrence.is_confident or not is_valid_date_key(date_key):
        return False
    target = parse_date_key(date_key)
    if recurrence.end_key and target > parse_date_key(recurrence.end_key):
        return False
    base = parse_date_key(recurrence.start_key) if recurrence.start_key else target
    if target < base:
        return False
    for index, day in enumerate(_iter_series(recurrence, base, target)):
        if recurrence.count is not None and index >= recurrence.count:
            return False
        if day == target:
            return True
    return False


def describe_recurrence(event: Event) -> str:
    recurrence = interpret_recurrence(event)
    if recurrence.frequency == "one-time":
        return "One-time"
    if recurrence.frequency == "custom":
        return "Custom dates"
    if recurrence.frequency in {"weekly", "biweekly"}:
        days = " & ".join(WEEKDAY_NAMES[day] for day in recurrence.weekdays)
        if recurrence.interval == 1:
            return f"Every {days}"
        if recurrence.interval == 2:
            return f"Every other {days}"
        return f"Every {recurrence.interval} weeks on {days}"
    if recurrence.frequency == "monthly":
        by_day: dict[int, list[int]] = {}
        for ordinal, weekday in recurrence.monthly:
            by_day.setdefault(weekday, []).append(ordinal)
        phrases = [
            f"{' & '.join(_ordinal_labels[o] for o in ordinals)} {WEEKDAY_NAMES[weekday]}"
            for weekday, ordinals in by_day.items()
        ]
        if recurrence.interval == 2:
            return f"{', '.join(phrases)} of every other month"
        if recurrence.interval > 2:
            return f"{', '.join(phrases)} of every {recurrence.interval} months"
        return f"{', '.join(phrases)} of the month"
    return "Schedule to be announced"


# -------- occurrence resolution for writes --------


def is_occurrence_cancelled(db: Session, event_id: str, date_key: str) -> bool:
    stmt = select(OccurrenceOverride.status).where(
        OccurrenceOverride.event_id == event_id,
        OccurrenceOverride.date_key == date_key,
    )
    return db.scalar(stmt) == "cancelled"


def read_date_key(event: Event, provided: str | None, now: datetime | None = None) -> str:
    """Resolve the occurrence a read refers to, without write checks."""
    if provided:
        if not is_valid_date_key(provided):
            raise InvalidDateKey()
        return provided
    return next_occurrence(event, now) or event.event_date or today_key(now)


def resolve_date_key(
    db: Session,
    event: Event,
    provided: str | None,
    *,
    now: datetime | None = None,
    allow_past: bool = False,
) -> str:
    """Return the occurrence a write applies to, or raise.

    Missing keys default to the next occurrence. Keys must be real
    occurrences of the series and must not be cancelled.
    """
    if provided:
        if not is_valid_date_key(provided):
            raise InvalidDateKey()
        if not is_occurrence(event, provided):
            raise InvalidDateKey("That date is not an occurrence of this event")
        date_key = provided
    else:
        date_key = next_occurrence(event, now)
        if date_key is None:
            raise InvalidRequestError(
                "This event has no upcoming occurrences",
                code="NO_UPCOMING_OCCURRENCE",
            )
    if is_occurrence_cancelled(db, event.id, date_key):
        raise OccurrenceCancelled()
    if not allow_past and date_key < today_key(now):
        raise InvalidRequestError(
            "This occurrence has already happened", code="OCCURRENCE_PAST"
        )
    return date_key
