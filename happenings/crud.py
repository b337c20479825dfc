"""CRUD helpers for members, events, and occurrences."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime
from typing import Any, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import ConflictError, InvalidRequestError
from .hosts import add_primary_host
from .models import Event, Member, OccurrenceOverride
from .recurrence import (
    expand_occurrences,
    interpret_recurrence,
    is_occurrence,
    is_occurrence_cancelled,
    is_valid_date_key,
    parse_weekday,
    today_key,
)
from .signups import (
    flush_or_conflict,
    most_seats_upcoming,
    occurrence_summary,
    refill_upcoming,
)
from .timeslots import regenerate_timeslots, validate_slot_config
from .utils import is_valid_email, normalize_email, parse_clock, slugify, utcnow

logger = logging.getLogger("uvicorn.error")

VISIBILITIES = {"public", "invite_only"}
EVENT_FIELDS = (
    "title",
    "description",
    "venue_name",
    "venue_address",
    "start_time",
    "end_time",
    "event_date",
    "day_of_week",
    "recurrence_rule",
    "recurrence_end_date",
    "max_occurrences",
    "custom_dates",
    "capacity",
    "has_timeslots",
    "total_slots",
    "slot_duration_minutes",
    "slot_offer_window_minutes",
    "visibility",
)
SLOT_FIELDS = {"has_timeslots", "total_slots", "slot_duration_minutes"}


# -------- members --------


def create_member(
    session: Session, *, display_name: str, email: str, is_admin: bool = False
) -> Member:
    name = (display_name or "").strip()
    normalized = normalize_email(email)
    if not name:
        raise InvalidRequestError("Display name is required", code="MISSING_FIELDS")
    if not is_valid_email(normalized):
        raise InvalidRequestError("Please enter a valid email address", code="INVALID_EMAIL")
    if get_member_by_email(session, normalized):
        raise ConflictError("That email is already registered", code="EMAIL_TAKEN")
    member = Member(
        display_name=name,
        email=normalized,
        api_token=secrets.token_urlsafe(32),
        is_admin=is_admin,
    )
    session.add(member)
    flush_or_conflict(session, "That email is already registered", code="EMAIL_TAKEN")
    logger.info("Created member %s", member.id)
    return member


def get_member_by_token(session: Session, token: str | None) -> Member | None:
    if not token:
        return None
    return session.scalars(select(Member).where(Member.api_token == token)).first()


def get_member_by_email(session: Session, email: str | None) -> Member | None:
    normalized = normalize_email(email)
    if not normalized:
        return None
    return session.scalars(select(Member).where(Member.email == normalized)).first()


# -------- events --------


def _unique_slug(session: Session, title: str) -> str:
    base = slugify(title) or "happening"
    slug = base
    while session.scalar(select(Event.id).where(Event.slug == slug)):
        slug = f"{base}-{secrets.token_hex(3)}"
    return slug


def _clean_optional_text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _validate_fields(values: dict[str, Any]) -> dict[str, Any]:
    """Normalize event attributes and reject malformed ones."""
    cleaned = dict(values)
    if "title" in cleaned:
        title = (cleaned["title"] or "").strip()
        if not title:
            raise InvalidRequestError("Title is required", code="MISSING_FIELDS")
        cleaned["title"] = title
    for key in ("description", "venue_name", "venue_address", "recurrence_rule"):
        if key in cleaned:
            cleaned[key] = _clean_optional_text(cleaned[key])
    for key in ("start_time", "end_time"):
        if key in cleaned:
            cleaned[key] = _clean_optional_text(cleaned[key])
            if cleaned[key] and parse_clock(cleaned[key]) is None:
                raise InvalidRequestError(
                    f"{key} must use HH:MM", code="INVALID_TIME"
                )
    for key in ("event_date", "recurrence_end_date"):
        if key in cleaned:
            cleaned[key] = _clean_optional_text(cleaned[key])
            if cleaned[key] and not is_valid_date_key(cleaned[key]):
                raise InvalidRequestError(
                    f"{key} must be a YYYY-MM-DD date", code="INVALID_DATE_KEY"
                )
    if "day_of_week" in cleaned:
        raw = _clean_optional_text(cleaned["day_of_week"])
        if raw and parse_weekday(raw) is None:
            raise InvalidRequestError("Unknown day of week", code="INVALID_SCHEDULE")
        cleaned["day_of_week"] = raw
    if cleaned.get("custom_dates") is not None:
        dates = cleaned["custom_dates"]
        if not isinstance(dates, list) or not all(is_valid_date_key(d) for d in dates):
            raise InvalidRequestError(
                "custom_dates must be a list of YYYY-MM-DD dates",
                code="INVALID_DATE_KEY",
            )
        cleaned["custom_dates"] = sorted(set(dates))
    for key in ("capacity", "max_occurrences"):
        if cleaned.get(key) is not None and cleaned[key] < 1:
            raise InvalidRequestError(f"{key} must be at least 1", code="INVALID_REQUEST")
    if "visibility" in cleaned:
        visibility = (cleaned["visibility"] or "public").strip().lower()
        if visibility not in VISIBILITIES:
            raise InvalidRequestError("Invalid visibility", code="INVALID_VISIBILITY")
        cleaned["visibility"] = visibility
    return cleaned


def create_event(session: Session, host: Member, **fields: Any) -> Event:
    """Create a draft event owned by ``host``."""
    values = _validate_fields({k: v for k, v in fields.items() if k in EVENT_FIELDS})
    if "title" not in values:
        raise InvalidRequestError("Title is required", code="MISSING_FIELDS")
    values.setdefault("visibility", "public")
    values["has_timeslots"] = bool(values.get("has_timeslots"))
    validate_slot_config(
        values["has_timeslots"],
        values.get("total_slots"),
        values.get("slot_duration_minutes"),
        values.get("slot_offer_window_minutes"),
    )
    event = Event(
        slug=_unique_slug(session, values["title"]),
        host_id=host.id,
        status="draft",
        **values,
    )
    session.add(event)
    session.flush()
    add_primary_host(session, event, host)
    logger.info("Member %s created event %s (%s)", host.id, event.id, event.slug)
    return event


def update_event(
    session: Session, event: Event, updates: dict[str, Any], *, now: datetime | None = None
) -> Event:
    values = _validate_fields({k: v for k, v in updates.items() if k in EVENT_FIELDS})
    if "has_timeslots" in values:
        values["has_timeslots"] = bool(values["has_timeslots"])
    merged = {field: values.get(field, getattr(event, field)) for field in SLOT_FIELDS}
    validate_slot_config(
        merged["has_timeslots"],
        merged["total_slots"],
        merged["slot_duration_minutes"],
        values.get("slot_offer_window_minutes", event.slot_offer_window_minutes),
    )
    slots_changed = any(
        field in values and values[field] != getattr(event, field) for field in SLOT_FIELDS
    )
    if values.get("capacity") is not None:
        held = most_seats_upcoming(session, event.id, now=now)
        if values["capacity"] < held:
            raise ConflictError(
                f"{held} seats are already taken on an upcoming date; "
                "capacity cannot go below that",
                code="CAPACITY_BELOW_SEATS",
            )
    old_capacity = event.capacity
    if slots_changed:
        regenerate_timeslots(session, event, now=now)

    for field, value in values.items():
        setattr(event, field, value)
    if event.status == "published" and not interpret_recurrence(event).is_confident:
        raise InvalidRequestError(
            "Published events need a schedule that can be expanded",
            code="INVALID_SCHEDULE",
        )
    session.flush()

    capacity_grew = "capacity" in values and (
        event.capacity is None
        or (old_capacity is not None and event.capacity > old_capacity)
    )
    if capacity_grew and event.status == "published":
        offered = refill_upcoming(session, event, now=now)
        if offered:
            logger.info("Capacity change on %s offered %d seats", event.id, offered)
    return event


def publish_event(session: Session, event: Event, *, now: datetime | None = None) -> Event:
    if event.status != "draft":
        raise InvalidRequestError("Only drafts can be published", code="INVALID_STATUS")
    if not interpret_recurrence(event).is_confident:
        raise InvalidRequestError(
            "Add a date or a schedule before publishing", code="INVALID_SCHEDULE"
        )
    event.status = "published"
    event.published_at = now or utcnow()
    session.flush()
    logger.info("Published event %s", event.id)
    return event


def cancel_event(session: Session, event: Event, *, now: datetime | None = None) -> Event:
    if event.status == "cancelled":
        raise InvalidRequestError("Event is already cancelled", code="INVALID_STATUS")
    event.status = "cancelled"
    event.cancelled_at = now or utcnow()
    session.flush()
    logger.info("Cancelled event %s", event.id)
    return event


def delete_event(session: Session, event: Event) -> None:
    if event.status != "draft":
        raise ConflictError(
            "Only draft events can be deleted; cancel it instead",
            code="EVENT_NOT_DRAFT",
        )
    session.delete(event)
    session.flush()
    logger.info("Deleted draft event %s", event.id)


def list_public_events(session: Session, limit: int | None = None) -> Sequence[Event]:
    stmt = (
        select(Event)
        .where(Event.status == "published", Event.visibility == "public")
        .order_by(Event.created_at.desc())
    )
    if limit and limit > 0:
        stmt = stmt.limit(limit)
    return session.scalars(stmt).all()


# -------- occurrences --------


def set_occurrence_status(
    session: Session,
    event: Event,
    date_key: str,
    *,
    cancelled: bool,
    note: str | None = None,
    actor_id: str | None = None,
) -> OccurrenceOverride:
    """Cancel or restore one occurrence; existing signups are kept."""
    if not is_valid_date_key(date_key) or not is_occurrence(event, date_key):
        raise InvalidRequestError(
            "That date is not an occurrence of this event", code="INVALID_DATE_KEY"
        )
    override = session.scalars(
        select(OccurrenceOverride).where(
            OccurrenceOverride.event_id == event.id,
            OccurrenceOverride.date_key == date_key,
        )
    ).first()
    if override is None:
        override = OccurrenceOverride(event_id=event.id, date_key=date_key)
        session.add(override)
    override.status = "cancelled" if cancelled else "normal"
    if note is not None or not cancelled:
        override.note = _clean_optional_text(note)
    override.updated_by = actor_id
    flush_or_conflict(session, "The occurrence was updated by someone else; please retry")
    logger.info(
        "Occurrence %s/%s is now %s", event.id, date_key, override.status
    )
    return override


def list_occurrences(
    session: Session,
    event: Event,
    start_key: str | None = None,
    end_key: str | None = None,
    *,
    now: datetime | None = None,
) -> list[dict]:
    for key in (start_key, end_key):
        if key and not is_valid_date_key(key):
            raise InvalidRequestError("Dates must use YYYY-MM-DD", code="INVALID_DATE_KEY")
    results = []
    for date_key in expand_occurrences(event, start_key, end_key, now=now):
        summary = occurrence_summary(session, event, date_key)
        summary["is_cancelled"] = is_occurrence_cancelled(session, event.id, date_key)
        summary["is_past"] = date_key < today_key(now)
        results.append(summary)
    return results
