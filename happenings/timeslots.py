"""Per-occurrence performer lineups built from numbered timeslots."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import notifications
from .config import settings
from .errors import ConflictError, InvalidRequestError, NotFoundError
from .models import (
    OPEN_CLAIM_STATUSES,
    SLOT_HOLDING_STATUSES,
    Event,
    LineupState,
    Member,
    Timeslot,
    TimeslotClaim,
)
from .recurrence import today_key
from .signups import earliest_waitlisted, flush_or_conflict, next_waitlist_position
from .utils import add_minutes_to_clock, normalize_email, utcnow

logger = logging.getLogger("uvicorn.error")

MIN_SLOT_MINUTES = 5
MAX_SLOT_MINUTES = 90
MAX_TOTAL_SLOTS = 100

SLOT_TAKEN = "This slot was just taken by someone else"


def slot_duration(event: Event) -> int:
    return event.slot_duration_minutes or settings.default_slot_duration_minutes


def offer_window(event: Event) -> timedelta:
    minutes = event.slot_offer_window_minutes or settings.default_slot_offer_window_minutes
    return timedelta(minutes=minutes)


def validate_slot_config(
    has_timeslots: bool,
    total_slots: int | None,
    duration_minutes: int | None,
    offer_window_minutes: int | None = None,
) -> None:
    if duration_minutes is not None and not (
        MIN_SLOT_MINUTES <= duration_minutes <= MAX_SLOT_MINUTES
    ):
        raise InvalidRequestError(
            f"Slot duration must be between {MIN_SLOT_MINUTES} and {MAX_SLOT_MINUTES} minutes",
            code="INVALID_SLOT_CONFIG",
        )
    if offer_window_minutes is not None and offer_window_minutes < 1:
        raise InvalidRequestError(
            "Slot offer window must be at least one minute", code="INVALID_SLOT_CONFIG"
        )
    if not has_timeslots:
        return
    if not total_slots or not (1 <= total_slots <= MAX_TOTAL_SLOTS):
        raise InvalidRequestError(
            f"Timeslot events need between 1 and {MAX_TOTAL_SLOTS} slots",
            code="INVALID_SLOT_CONFIG",
        )


def _require_timeslots(event: Event) -> None:
    if not event.has_timeslots or not event.total_slots:
        raise InvalidRequestError(
            "This event does not have timeslots", code="NO_TIMESLOTS"
        )


def list_timeslots(db: Session, event_id: str, date_key: str) -> list[Timeslot]:
    stmt = (
        select(Timeslot)
        .where(Timeslot.event_id == event_id, Timeslot.date_key == date_key)
        .order_by(Timeslot.slot_index)
    )
    return list(db.scalars(stmt))


def ensure_timeslots(db: Session, event: Event, date_key: str) -> list[Timeslot]:
    """Return the occurrence's slots, generating them on first use."""
    _require_timeslots(event)
    existing = list_timeslots(db, event.id, date_key)
    if existing:
        return existing
    duration = slot_duration(event)
    slots = [
        Timeslot(
            event_id=event.id,
            date_key=date_key,
            slot_index=index,
            start_offset_minutes=index * duration if event.start_time else None,
            duration_minutes=duration,
        )
        for index in range(event.total_slots)
    ]
    db.add_all(slots)
    flush_or_conflict(db, "Timeslots are being generated; please retry")
    logger.info(
        "Generated %d timeslots for %s/%s", len(slots), event.id, date_key
    )
    return slots


def regenerate_timeslots(db: Session, event: Event, *, now: datetime | None = None) -> int:
    """Drop generated slots on upcoming occurrences so they rebuild lazily.

    Refuses while any upcoming slot is claimed or waitlisted.
    """
    upcoming = list(
        db.scalars(
            select(Timeslot).where(
                Timeslot.event_id == event.id, Timeslot.date_key >= today_key(now)
            )
        )
    )
    if not upcoming:
        return 0
    active = db.scalar(
        select(TimeslotClaim.id)
        .where(
            TimeslotClaim.timeslot_id.in_([slot.id for slot in upcoming]),
            TimeslotClaim.status.in_(OPEN_CLAIM_STATUSES + ("performed",)),
        )
        .limit(1)
    )
    if active:
        raise ConflictError(
            "Timeslots cannot change while performers hold or wait for slots",
            code="TIMESLOTS_CLAIMED",
        )
    for slot in upcoming:
        db.delete(slot)
    db.flush()
    logger.info("Cleared %d upcoming timeslots for %s", len(upcoming), event.id)
    return len(upcoming)


def get_slot(db: Session, event: Event, date_key: str, slot_index: int) -> Timeslot:
    for slot in ensure_timeslots(db, event, date_key):
        if slot.slot_index == slot_index:
            return slot
    raise NotFoundError("Timeslot not found", code="TIMESLOT_NOT_FOUND")


def slot_holder(db: Session, timeslot_id: str) -> TimeslotClaim | None:
    stmt = select(TimeslotClaim).where(
        TimeslotClaim.timeslot_id == timeslot_id,
        TimeslotClaim.status.in_(SLOT_HOLDING_STATUSES),
    )
    return db.scalars(stmt).first()


def find_open_claim(
    db: Session,
    event_id: str,
    date_key: str,
    *,
    member_id: str | None = None,
    guest_email: str | None = None,
) -> TimeslotClaim | None:
    stmt = select(TimeslotClaim).where(
        TimeslotClaim.event_id == event_id,
        TimeslotClaim.date_key == date_key,
        TimeslotClaim.status.in_(OPEN_CLAIM_STATUSES),
    )
    if member_id:
        stmt = stmt.where(TimeslotClaim.member_id == member_id)
    else:
        stmt = stmt.where(TimeslotClaim.guest_email == normalize_email(guest_email))
    return db.scalars(stmt).first()


def get_claim(db: Session, event: Event, claim_id: str) -> TimeslotClaim:
    claim = db.get(TimeslotClaim, claim_id)
    if claim is None or claim.event_id != event.id:
        raise NotFoundError("Claim not found", code="CLAIM_NOT_FOUND")
    return claim


def claim_slot(
    db: Session,
    event: Event,
    date_key: str,
    slot_index: int,
    *,
    member: Member | None = None,
    guest_name: str | None = None,
    guest_email: str | None = None,
    allow_waitlist: bool = True,
) -> TimeslotClaim:
    """Claim a slot, or queue for it when someone already holds it."""
    if event.status != "published":
        raise InvalidRequestError(
            "This event is not accepting signups", code="EVENT_NOT_PUBLISHED"
        )
    _require_timeslots(event)
    email = None if member else normalize_email(guest_email)
    if find_open_claim(
        db,
        event.id,
        date_key,
        member_id=member.id if member else None,
        guest_email=email,
    ):
        raise ConflictError(
            "You already have a slot in this event", code="ALREADY_CLAIMED"
        )
    slot = get_slot(db, event, date_key, slot_index)
    # A free slot with a queue still goes to the queue first.
    held = (
        slot_holder(db, slot.id) is not None
        or earliest_waitlisted(db, TimeslotClaim, TimeslotClaim.timeslot_id == slot.id)
        is not None
    )
    if held and not allow_waitlist:
        raise ConflictError(SLOT_TAKEN, code="SLOT_TAKEN")

    claim = TimeslotClaim(
        timeslot_id=slot.id,
        timeslot=slot,
        event_id=event.id,
        date_key=date_key,
        member_id=member.id if member else None,
        member=member,
        guest_name=None if member else guest_name,
        guest_email=email,
        guest_verified=member is None,
        status="waitlist" if held else "confirmed",
        updated_by=member.id if member else None,
    )
    if held:
        claim.waitlist_position = next_waitlist_position(
            db, TimeslotClaim, TimeslotClaim.timeslot_id == slot.id
        )
    db.add(claim)
    flush_or_conflict(db, SLOT_TAKEN, code="SLOT_TAKEN")
    if claim.status == "waitlist" and slot_holder(db, slot.id) is None:
        promote_slot_waitlist(db, event, slot)
    logger.info(
        "Claim %s on slot %d of %s/%s is %s",
        claim.id,
        slot_index,
        event.id,
        date_key,
        claim.status,
    )
    return claim


def promote_slot_waitlist(
    db: Session,
    event: Event,
    timeslot: Timeslot,
    *,
    exclude_ids: Iterable[str] = (),
    now: datetime | None = None,
) -> TimeslotClaim | None:
    if slot_holder(db, timeslot.id) is not None:
        return None
    candidate = earliest_waitlisted(
        db,
        TimeslotClaim,
        TimeslotClaim.timeslot_id == timeslot.id,
        exclude_ids=exclude_ids,
    )
    if candidate is None:
        return None
    now = now or utcnow()
    candidate.status = "offered"
    candidate.offer_expires_at = now + offer_window(event)
    candidate.waitlist_position = None
    db.flush()
    logger.info(
        "Offered slot %d of %s/%s to claim %s",
        timeslot.slot_index,
        event.id,
        timeslot.date_key,
        candidate.id,
    )
    notifications.send_claim_offer(
        db, event, candidate, slot_index=timeslot.slot_index, now=now
    )
    return candidate


def release_claim(
    db: Session,
    claim: TimeslotClaim,
    *,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> TimeslotClaim:
    """Cancel an open claim and offer the slot to its waitlist."""
    if claim.status not in OPEN_CLAIM_STATUSES:
        raise InvalidRequestError("This claim is no longer active", code="CLAIM_INACTIVE")
    held = claim.status in ("confirmed", "offered")
    claim.status = "cancelled"
    claim.offer_expires_at = None
    claim.waitlist_position = None
    claim.updated_by = actor_id
    db.flush()
    logger.info("Released claim %s", claim.id)
    if held:
        event = db.get(Event, claim.event_id)
        promote_slot_waitlist(db, event, claim.timeslot, now=now)
    return claim


def process_expired_claim_offers(
    db: Session,
    event: Event,
    date_key: str | None = None,
    *,
    now: datetime | None = None,
) -> list[TimeslotClaim]:
    now = now or utcnow()
    stmt = select(TimeslotClaim).where(
        TimeslotClaim.event_id == event.id,
        TimeslotClaim.status == "offered",
        TimeslotClaim.offer_expires_at.is_not(None),
        TimeslotClaim.offer_expires_at <= now,
    )
    if date_key:
        stmt = stmt.where(TimeslotClaim.date_key == date_key)
    expired = list(db.scalars(stmt.order_by(TimeslotClaim.offer_expires_at)))
    for claim in expired:
        claim.waitlist_position = next_waitlist_position(
            db, TimeslotClaim, TimeslotClaim.timeslot_id == claim.timeslot_id
        )
        claim.status = "waitlist"
        claim.offer_expires_at = None
        db.flush()
        logger.info("Offer for claim %s expired; re-queued", claim.id)

    expired_ids = [claim.id for claim in expired]
    seen: set[str] = set()
    for claim in expired:
        if claim.timeslot_id in seen:
            continue
        seen.add(claim.timeslot_id)
        promote_slot_waitlist(
            db, event, claim.timeslot, exclude_ids=expired_ids, now=now
        )
        # A slot nobody else wanted goes back to the lapsed claims in queue order.
        promote_slot_waitlist(db, event, claim.timeslot, now=now)
    return expired


def accept_claim_offer(
    db: Session, claim: TimeslotClaim, *, now: datetime | None = None
) -> TimeslotClaim:
    if claim.status == "confirmed":
        return claim
    if claim.status != "offered":
        raise InvalidRequestError("No pending offer to confirm", code="NO_OFFER")
    now = now or utcnow()
    if claim.offer_expires_at is not None and claim.offer_expires_at <= now:
        event = db.get(Event, claim.event_id)
        process_expired_claim_offers(db, event, claim.date_key, now=now)
        if claim.status != "offered":
            db.commit()
            raise InvalidRequestError(
                "Your offer has expired. You have been moved back to the waitlist.",
                code="OFFER_EXPIRED",
            )
    claim.status = "confirmed"
    claim.offer_expires_at = None
    db.flush()
    logger.info("Claim %s accepted its offer", claim.id)
    return claim


def mark_no_show(
    db: Session,
    claim: TimeslotClaim,
    *,
    actor_id: str | None = None,
    now: datetime | None = None,
) -> TimeslotClaim:
    if claim.status not in ("confirmed", "performed"):
        raise InvalidRequestError(
            "Only confirmed or performed claims can be marked as a no-show",
            code="INVALID_CLAIM_STATUS",
        )
    claim.status = "no_show"
    claim.updated_by = actor_id
    if claim.member is not None:
        claim.member.no_show_count = (claim.member.no_show_count or 0) + 1
    db.flush()
    logger.info("Claim %s marked as no-show", claim.id)
    event = db.get(Event, claim.event_id)
    promote_slot_waitlist(db, event, claim.timeslot, now=now)
    return claim


def mark_performed(
    db: Session, claim: TimeslotClaim, *, actor_id: str | None = None
) -> TimeslotClaim:
    if claim.status != "confirmed":
        raise InvalidRequestError(
            "Only confirmed claims can be marked as performed",
            code="INVALID_CLAIM_STATUS",
        )
    claim.status = "performed"
    claim.updated_by = actor_id
    db.flush()
    return claim


def set_now_playing(
    db: Session,
    event: Event,
    date_key: str,
    slot_index: int | None,
    *,
    actor_id: str | None = None,
) -> LineupState:
    state = db.scalars(
        select(LineupState).where(
            LineupState.event_id == event.id, LineupState.date_key == date_key
        )
    ).first()
    if state is None:
        state = LineupState(event_id=event.id, date_key=date_key)
        db.add(state)
    state.now_playing_timeslot_id = (
        None if slot_index is None else get_slot(db, event, date_key, slot_index).id
    )
    state.updated_by = actor_id
    flush_or_conflict(db, "The lineup was updated by someone else; please retry")
    return state


def get_lineup(db: Session, event: Event, date_key: str) -> dict:
    """Return the occurrence's slots with holders, waitlists and now playing."""
    slots = ensure_timeslots(db, event, date_key)
    state = db.scalars(
        select(LineupState).where(
            LineupState.event_id == event.id, LineupState.date_key == date_key
        )
    ).first()
    now_playing = state.now_playing_timeslot_id if state else None
    by_slot: dict[str, list[TimeslotClaim]] = {slot.id: [] for slot in slots}
    for claim in db.scalars(
        select(TimeslotClaim)
        .where(
            TimeslotClaim.timeslot_id.in_(list(by_slot)),
            TimeslotClaim.status != "cancelled",
        )
        .order_by(TimeslotClaim.created_at)
    ):
        by_slot[claim.timeslot_id].append(claim)
    entries = []
    for slot in slots:
        claims = by_slot[slot.id]
        holder = next((c for c in claims if c.status in SLOT_HOLDING_STATUSES), None)
        waitlist = sorted(
            (c for c in claims if c.status == "waitlist"),
            key=lambda c: (c.waitlist_position or 0, c.created_at),
        )
        start_label = None
        end_label = None
        if slot.start_offset_minutes is not None:
            start_label = add_minutes_to_clock(event.start_time, slot.start_offset_minutes)
            end_label = add_minutes_to_clock(
                event.start_time, slot.start_offset_minutes + slot.duration_minutes
            )
        entries.append(
            {
                "slot": slot,
                "start_label": start_label,
                "end_label": end_label,
                "holder": holder,
                "waitlist": waitlist,
                "no_shows": [c for c in claims if c.status == "no_show"],
                "is_now_playing": slot.id == now_playing,
            }
        )
    return {"date_key": date_key, "slots": entries}
