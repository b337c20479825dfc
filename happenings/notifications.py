"""Email notifications sent as signups move through their lifecycle."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from . import emails
from .config import settings
from .models import (
    RSVP,
    AttendeeInvite,
    Event,
    EventHost,
    GuestVerification,
    Member,
    TimeslotClaim,
)
from .recurrence import format_date_key
from .tokens import action_url, issue_action_token
from .utils import add_minutes_to_clock, humanize_time, parse_clock, utcnow


def _venue(event: Event) -> str:
    return ", ".join(part for part in (event.venue_name, event.venue_address) if part)


def _start_label(event: Event, offset_minutes: int | None = 0) -> str | None:
    if not parse_clock(event.start_time) or offset_minutes is None:
        return None
    return add_minutes_to_clock(event.start_time, offset_minutes)


def _verification_for(
    db: Session, *, rsvp_id: str | None = None, claim_id: str | None = None
) -> GuestVerification | None:
    stmt = select(GuestVerification)
    if rsvp_id:
        stmt = stmt.where(GuestVerification.rsvp_id == rsvp_id)
    else:
        stmt = stmt.where(GuestVerification.claim_id == claim_id)
    return db.scalars(stmt.order_by(GuestVerification.created_at.desc())).first()


def send_verification_code(
    event: Event, verification: GuestVerification, code: str, *, expires_minutes: int
) -> bool:
    purpose = "claiming your slot" if verification.kind == "timeslot" else "your RSVP"
    return emails.send_template(
        verification.email,
        "verification_code",
        guest_name=verification.guest_name,
        code=code,
        purpose=purpose,
        event_title=event.title,
        date_label=format_date_key(verification.date_key),
        expires_minutes=expires_minutes,
    )


def send_rsvp_confirmation(
    event: Event, rsvp: RSVP, *, cancel_url: str | None = None
) -> bool:
    return emails.send_template(
        rsvp.contact_email,
        "rsvp_confirmation",
        name=rsvp.display_name,
        status=rsvp.status,
        position=rsvp.waitlist_position,
        event_title=event.title,
        date_label=format_date_key(rsvp.date_key),
        start_label=_start_label(event),
        venue=_venue(event),
        cancel_url=cancel_url,
    )


def send_rsvp_offer(db: Session, event: Event, rsvp: RSVP, *, now: datetime | None = None) -> bool:
    confirm_url = None
    if rsvp.is_guest:
        verification = _verification_for(db, rsvp_id=rsvp.id)
        if verification is not None and rsvp.offer_expires_at is not None:
            token = issue_action_token(
                db,
                verification,
                "confirm",
                expires_in=rsvp.offer_expires_at - (now or utcnow()),
                now=now,
            )
            confirm_url = action_url(token)
    return emails.send_template(
        rsvp.contact_email,
        "waitlist_offer",
        name=rsvp.display_name,
        what="a spot",
        event_title=event.title,
        date_label=format_date_key(rsvp.date_key),
        expires_label=humanize_time(rsvp.offer_expires_at, now=now),
        confirm_url=confirm_url,
    )


def send_claim_confirmation(
    event: Event,
    claim: TimeslotClaim,
    *,
    slot_index: int,
    start_offset_minutes: int | None,
    cancel_url: str | None = None,
) -> bool:
    return emails.send_template(
        claim.contact_email,
        "claim_confirmation",
        name=claim.display_name,
        status=claim.status,
        position=claim.waitlist_position,
        slot_number=slot_index + 1,
        event_title=event.title,
        date_label=format_date_key(claim.date_key),
        start_label=_start_label(event, start_offset_minutes),
        cancel_url=cancel_url,
    )


def send_claim_offer(
    db: Session,
    event: Event,
    claim: TimeslotClaim,
    *,
    slot_index: int,
    now: datetime | None = None,
) -> bool:
    confirm_url = None
    if claim.member_id is None:
        verification = _verification_for(db, claim_id=claim.id)
        if verification is not None and claim.offer_expires_at is not None:
            token = issue_action_token(
                db,
                verification,
                "confirm",
                expires_in=claim.offer_expires_at - (now or utcnow()),
                now=now,
            )
            confirm_url = action_url(token)
    return emails.send_template(
        claim.contact_email,
        "waitlist_offer",
        name=claim.display_name,
        what=f"slot {slot_index + 1}",
        event_title=event.title,
        date_label=format_date_key(claim.date_key),
        expires_label=humanize_time(claim.offer_expires_at, now=now),
        confirm_url=confirm_url,
    )


def notify_hosts_of_signup(
    db: Session,
    event: Event,
    rsvp: RSVP,
    *,
    summary: dict,
    actor_id: str | None = None,
) -> int:
    """Email every accepted host except the one who made the change."""
    stmt = (
        select(Member)
        .join(EventHost, EventHost.member_id == Member.id)
        .where(
            EventHost.event_id == event.id,
            EventHost.invitation_status == "accepted",
        )
    )
    verb = "joined the waitlist for" if rsvp.status == "waitlist" else "is going to"
    sent = 0
    for host in db.scalars(stmt):
        if host.id == actor_id:
            continue
        if emails.send_template(
            host.email,
            "host_signup",
            name=rsvp.display_name,
            verb=verb,
            event_title=event.title,
            date_label=format_date_key(rsvp.date_key),
            confirmed=summary["confirmed"],
            capacity=summary["capacity"],
            waitlist=summary["waitlist"],
        ):
            sent += 1
    return sent


def send_cohost_invite(event: Event, invitee: Member, inviter: Member) -> bool:
    return emails.send_template(
        invitee.email,
        "cohost_invite",
        name=invitee.display_name,
        inviter=inviter.display_name,
        event_title=event.title,
    )


def send_attendee_invite(
    event: Event,
    invite: AttendeeInvite,
    *,
    to_email: str | None,
    inviter: Member,
    token: str | None,
    now: datetime | None = None,
) -> bool:
    accept_url = None
    if token:
        accept_url = f"{settings.site_url.rstrip('/')}/invites/accept?token={token}"
    return emails.send_template(
        to_email,
        "attendee_invite",
        inviter=inviter.display_name,
        event_title=event.title,
        accept_url=accept_url,
        expires_label=humanize_time(invite.expires_at, now=now),
    )
