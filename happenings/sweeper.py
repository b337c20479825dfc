"""Periodic maintenance: lapsed waitlist offers, stale guest codes, VACUUM."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import select, union

from .database import engine, get_session
from .guests import purge_stale_verifications as _purge_verifications
from .models import RSVP, Event, TimeslotClaim
from .recurrence import today_key
from .signups import process_expired_offers, refill_upcoming
from .timeslots import process_expired_claim_offers
from .utils import utcnow

# Use uvicorn's error logger so sweep messages show up with level prefixes.
logger = logging.getLogger("uvicorn.error")


def _events_with_expired_offers(session, now: datetime) -> list[str]:
    rsvp_events = select(RSVP.event_id).where(
        RSVP.status == "offered",
        RSVP.offer_expires_at.is_not(None),
        RSVP.offer_expires_at <= now,
    )
    claim_events = select(TimeslotClaim.event_id).where(
        TimeslotClaim.status == "offered",
        TimeslotClaim.offer_expires_at.is_not(None),
        TimeslotClaim.offer_expires_at <= now,
    )
    return list(session.scalars(union(rsvp_events, claim_events)))


def _events_with_upcoming_waitlists(session, now: datetime) -> list[str]:
    stmt = (
        select(RSVP.event_id)
        .join(Event, Event.id == RSVP.event_id)
        .where(
            Event.status == "published",
            RSVP.status == "waitlist",
            RSVP.date_key >= today_key(now),
        )
        .distinct()
    )
    return list(session.scalars(stmt))


def sweep_expired_offers(now: datetime | None = None) -> dict:
    """Re-queue every lapsed offer and pass its seat or slot to the next in line."""
    now = now or utcnow()
    stats = {
        "events": 0,
        "rsvp_offers_expired": 0,
        "claim_offers_expired": 0,
        "seats_offered": 0,
    }
    with get_session() as session:
        for event_id in _events_with_expired_offers(session, now):
            event = session.get(Event, event_id)
            if event is None:
                continue
            stats["rsvp_offers_expired"] += len(
                process_expired_offers(session, event, now=now)
            )
            if event.has_timeslots:
                stats["claim_offers_expired"] += len(
                    process_expired_claim_offers(session, event, now=now)
                )
            stats["events"] += 1
            # One event per transaction so a failure elsewhere keeps this work.
            session.commit()

        # Free seats left behind with people still waiting, e.g. after a
        # lapsed offer that had nobody behind it.
        for event_id in _events_with_upcoming_waitlists(session, now):
            event = session.get(Event, event_id)
            stats["seats_offered"] += refill_upcoming(session, event, now=now)
            session.commit()

    if stats["events"] or stats["seats_offered"]:
        logger.info(
            "Offer sweep finished: events=%d, rsvp offers expired=%d, "
            "claim offers expired=%d, seats offered=%d",
            stats["events"],
            stats["rsvp_offers_expired"],
            stats["claim_offers_expired"],
            stats["seats_offered"],
        )
    return stats


def purge_stale_verifications(now: datetime | None = None) -> int:
    with get_session() as session:
        removed = _purge_verifications(session, now=now)
    if removed:
        logger.info("Purged %d stale guest verifications", removed)
    return removed


def vacuum_database() -> None:
    with engine.connect() as connection:
        connection.execution_options(isolation_level="AUTOCOMMIT").exec_driver_sql(
            "VACUUM"
        )
