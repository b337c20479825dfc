"""Occurrence-scoped RSVP ledger with capacity, waitlist, and offers.

Seats on an occurrence are held by ``confirmed`` and ``offered`` RSVPs, so an
outstanding offer reserves its seat until it is accepted or expires. A new
RSVP is confirmed while a seat is free and otherwise joins the end of the
waitlist. Whenever a seat frees up the earliest waitlisted RSVP is offered
the seat for ``rsvp_offer_window_hours``. An expired offer goes back to the
end of the waitlist rather than being dropped.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import notifications
from .config import settings
from .errors import ConflictError, InvalidRequestError
from .models import RSVP, Event, Member
from .recurrence import today_key
from .utils import normalize_email, utcnow

logger = logging.getLogger("uvicorn.error")

SEAT_STATUSES = ("confirmed", "offered")
ACTIVE_STATUSES = ("confirmed", "offered", "waitlist")


def flush_or_conflict(db: Session, message: str, *, code: str = "CONFLICT") -> None:
    """Flush pending rows, turning a unique-index race into a 409."""
    try:
        db.flush()
    except IntegrityError as exc:
        db.rollback()
        logger.info("Rejected duplicate write: %s", exc.orig)
        raise ConflictError(message, code=code) from exc


def next_waitlist_position(db: Session, model, *criteria) -> int:
    current = db.scalar(
        select(func.max(model.waitlist_position)).where(
            model.status == "waitlist", *criteria
        )
    )
    return (current or 0) + 1


def earliest_waitlisted(db: Session, model, *criteria, exclude_ids: Iterable[str] = ()):
    stmt = select(model).where(model.status == "waitlist", *criteria)
    excluded = list(exclude_ids)
    if excluded:
        stmt = stmt.where(model.id.not_in(excluded))
    stmt = stmt.order_by(
        model.waitlist_position.is_(None),
        model.waitlist_position,
        model.created_at,
    )
    return db.scalars(stmt.limit(1)).first()


def _occurrence(event_id: str, date_key: str) -> tuple:
    return (RSVP.event_id == event_id, RSVP.date_key == date_key)


def count_by_status(db: Session, event_id: str, date_key: str) -> dict[str, int]:
    rows = db.execute(
        select(RSVP.status, func.count())
        .where(*_occurrence(event_id, date_key))
        .group_by(RSVP.status)
    ).all()
    counts = {status: 0 for status in ("confirmed", "offered", "waitlist", "cancelled")}
    for status, total in rows:
        counts[status] = total
    return counts


def seats_taken(db: Session, event_id: str, date_key: str) -> int:
    return (
        db.scalar(
            select(func.count())
            .select_from(RSVP)
            .where(*_occurrence(event_id, date_key), RSVP.status.in_(SEAT_STATUSES))
        )
        or 0
    )


def most_seats_upcoming(db: Session, event_id: str, *, now: datetime | None = None) -> int:
    """Return the most seats held on any occurrence from today on."""
    rows = db.execute(
        select(func.count())
        .select_from(RSVP)
        .where(
            RSVP.event_id == event_id,
            RSVP.status.in_(SEAT_STATUSES),
            RSVP.date_key >= today_key(now),
        )
        .group_by(RSVP.date_key)
    ).scalars()
    return max(rows, default=0)


def has_open_seat(db: Session, event: Event, date_key: str) -> bool:
    if event.capacity is None:
        return True
    return seats_taken(db, event.id, date_key) < event.capacity


def occurrence_summary(db: Session, event: Event, date_key: str) -> dict:
    counts = count_by_status(db, event.id, date_key)
    held = counts["confirmed"] + counts["offered"]
    remaining = None if event.capacity is None else max(event.capacity - held, 0)
    return {
        "date_key": date_key,
        "capacity": event.capacity,
        "confirmed": counts["confirmed"],
        "offered": counts["offered"],
        "waitlist": counts["waitlist"],
        "remaining": remaining,
        "is_full": remaining == 0,
    }


def find_member_rsvp(
    db: Session, event_id: str, date_key: str, member_id: str, *, active_only: bool = True
) -> RSVP | None:
    stmt = select(RSVP).where(*_occurrence(event_id, date_key), RSVP.member_id == member_id)
    if active_only:
        stmt = stmt.where(RSVP.status.in_(ACTIVE_STATUSES))
    return db.scalars(stmt.order_by(RSVP.created_at.desc())).first()


def find_guest_rsvp(db: Session, event_id: str, date_key: str, email: str) -> RSVP | None:
    stmt = select(RSVP).where(
        *_occurrence(event_id, date_key),
        RSVP.guest_email == normalize_email(email),
        RSVP.status.in_(ACTIVE_STATUSES),
    )
    return db.scalars(stmt).first()


def list_occurrence_rsvps(db: Session, event: Event, date_key: str) -> list[RSVP]:
    """Return active RSVPs: confirmed, then offers, then the waitlist in order."""
    stmt = select(RSVP).where(
        *_occurrence(event.id, date_key), RSVP.status.in_(ACTIVE_STATUSES)
    )
    rank = {"confirmed": 0, "offered": 1, "waitlist": 2}
    rsvps = list(db.scalars(stmt))
    rsvps.sort(
        key=lambda r: (rank[r.status], r.waitlist_position or 0, r.created_at)
    )
    return rsvps


def _ensure_accepting(event: Event) -> None:
    if event.status != "published":
        raise InvalidRequestError(
            "This event is not accepting RSVPs", code="EVENT_NOT_PUBLISHED"
        )


def _place(db: Session, event: Event, rsvp: RSVP) -> None:
    # Newcomers never jump an existing waitlist.
    waiting = earliest_waitlisted(db, RSVP, *_occurrence(event.id, rsvp.date_key))
    if waiting is None and has_open_seat(db, event, rsvp.date_key):
        rsvp.status = "confirmed"
        rsvp.waitlist_position = None
    else:
        rsvp.status = "waitlist"
        rsvp.waitlist_position = next_waitlist_position(
            db, RSVP, *_occurrence(event.id, rsvp.date_key)
        )


def create_member_rsvp(
    db: Session,
    event: Event,
    member: Member,
    date_key: str,
    *,
    notes: str | None = None,
) -> RSVP:
    _ensure_accepting(event)
    if find_member_rsvp(db, event.id, date_key, member.id):
        raise ConflictError(
            "You have already RSVP'd to this occurrence", code="ALREADY_RSVPD"
        )
    rsvp = RSVP(
        event_id=event.id,
        date_key=date_key,
        member_id=member.id,
        member=member,
        notes=(notes or "").strip() or None,
    )
    _place(db, event, rsvp)
    db.add(rsvp)
    flush_or_conflict(
        db, "You have already RSVP'd to this occurrence", code="ALREADY_RSVPD"
    )
    if rsvp.status == "waitlist":
        fill_open_seats(db, event, date_key)
    logger.info(
        "RSVP %s for member %s on %s/%s is %s",
        rsvp.id,
        member.id,
        event.id,
        date_key,
        rsvp.status,
    )
    notifications.notify_hosts_of_signup(
        db,
        event,
        rsvp,
        summary=occurrence_summary(db, event, date_key),
        actor_id=member.id,
    )
    return rsvp


def create_guest_rsvp(
    db: Session,
    event: Event,
    date_key: str,
    *,
    guest_name: str,
    guest_email: str,
    notes: str | None = None,
) -> RSVP:
    _ensure_accepting(event)
    email = normalize_email(guest_email)
    if find_guest_rsvp(db, event.id, date_key, email):
        raise ConflictError(
            "You have already RSVP'd to this occurrence", code="ALREADY_RSVPD"
        )
    rsvp = RSVP(
        event_id=event.id,
        date_key=date_key,
        guest_name=guest_name,
        guest_email=email,
        guest_verified=True,
        notes=(notes or "").strip() or None,
    )
    _place(db, event, rsvp)
    db.add(rsvp)
    flush_or_conflict(
        db, "You have already RSVP'd to this occurrence", code="ALREADY_RSVPD"
    )
    if rsvp.status == "waitlist":
        fill_open_seats(db, event, date_key)
    logger.info(
        "Guest RSVP %s on %s/%s is %s", rsvp.id, event.id, date_key, rsvp.status
    )
    notifications.notify_hosts_of_signup(
        db, event, rsvp, summary=occurrence_summary(db, event, date_key)
    )
    return rsvp


def promote_next(
    db: Session,
    event: Event,
    date_key: str,
    *,
    exclude_ids: Iterable[str] = (),
    now: datetime | None = None,
) -> RSVP | None:
    """Offer a free seat to the earliest waitlisted RSVP, if any."""
    if not has_open_seat(db, event, date_key):
        return None
    candidate = earliest_waitlisted(
        db, RSVP, *_occurrence(event.id, date_key), exclude_ids=exclude_ids
    )
    if candidate is None:
        return None
    now = now or utcnow()
    candidate.status = "offered"
    candidate.offer_expires_at = now + settings.rsvp_offer_window
    candidate.waitlist_position = None
    db.flush()
    logger.info(
        "Offered seat on %s/%s to RSVP %s until %s",
        event.id,
        date_key,
        candidate.id,
        candidate.offer_expires_at.isoformat(),
    )
    notifications.send_rsvp_offer(db, event, candidate, now=now)
    return candidate


def fill_open_seats(
    db: Session,
    event: Event,
    date_key: str,
    *,
    exclude_ids: Iterable[str] = (),
    now: datetime | None = None,
) -> list[RSVP]:
    excluded = list(exclude_ids)
    offered: list[RSVP] = []
    while True:
        promoted = promote_next(db, event, date_key, exclude_ids=excluded, now=now)
        if promoted is None:
            return offered
        offered.append(promoted)


def refill_upcoming(db: Session, event: Event, *, now: datetime | None = None) -> int:
    """Fill seats on every upcoming occurrence that has a waitlist."""
    date_keys = db.scalars(
        select(RSVP.date_key)
        .where(
            RSVP.event_id == event.id,
            RSVP.status == "waitlist",
            RSVP.date_key >= today_key(now),
        )
        .distinct()
    ).all()
    return sum(len(fill_open_seats(db, event, key, now=now)) for key in date_keys)


def cancel_rsvp(db: Session, rsvp: RSVP, *, now: datetime | None = None) -> RSVP:
    """Cancel an RSVP (or decline an offer) and pass any freed seat on."""
    if rsvp.status == "cancelled":
        raise InvalidRequestError("This RSVP is already cancelled", code="ALREADY_CANCELLED")
    held_seat = rsvp.status in SEAT_STATUSES
    previous = rsvp.status
    rsvp.status = "cancelled"
    rsvp.offer_expires_at = None
    rsvp.waitlist_position = None
    db.flush()
    logger.info("Cancelled RSVP %s (was %s)", rsvp.id, previous)
    if held_seat:
        fill_open_seats(db, rsvp.event, rsvp.date_key, now=now)
    return rsvp


def process_expired_offers(
    db: Session,
    event: Event,
    date_key: str | None = None,
    *,
    now: datetime | None = None,
) -> list[RSVP]:
    """Send lapsed offers to the back of the waitlist and re-offer their seats."""
    now = now or utcnow()
    stmt = select(RSVP).where(
        RSVP.event_id == event.id,
        RSVP.status == "offered",
        RSVP.offer_expires_at.is_not(None),
        RSVP.offer_expires_at <= now,
    )
    if date_key:
        stmt = stmt.where(RSVP.date_key == date_key)
    expired = list(db.scalars(stmt.order_by(RSVP.offer_expires_at)))
    if not expired:
        return []

    for rsvp in expired:
        rsvp.waitlist_position = next_waitlist_position(
            db, RSVP, *_occurrence(event.id, rsvp.date_key)
        )
        rsvp.status = "waitlist"
        rsvp.offer_expires_at = None
        db.flush()
        logger.info(
            "Offer for RSVP %s expired; back on the waitlist at #%d",
            rsvp.id,
            rsvp.waitlist_position,
        )

    expired_ids = [rsvp.id for rsvp in expired]
    for key in sorted({rsvp.date_key for rsvp in expired}):
        fill_open_seats(db, event, key, exclude_ids=expired_ids, now=now)
        # Seats nobody else took go back to the lapsed entries in queue order.
        fill_open_seats(db, event, key, now=now)
    return expired


def accept_offer(db: Session, rsvp: RSVP, *, now: datetime | None = None) -> RSVP:
    """Confirm an offered seat; confirming twice is a no-op."""
    if rsvp.status == "confirmed":
        return rsvp
    if rsvp.status != "offered":
        raise InvalidRequestError("No pending offer to confirm", code="NO_OFFER")
    now = now or utcnow()
    if rsvp.offer_expires_at is not None and rsvp.offer_expires_at <= now:
        process_expired_offers(db, rsvp.event, rsvp.date_key, now=now)
        if rsvp.status != "offered":
            # Persist the re-queue; the request itself still fails.
            db.commit()
            raise InvalidRequestError(
                "Your offer has expired. You have been moved back to the waitlist.",
                code="OFFER_EXPIRED",
            )
    rsvp.status = "confirmed"
    rsvp.offer_expires_at = None
    db.flush()
    logger.info("RSVP %s accepted its offer", rsvp.id)
    return rsvp
