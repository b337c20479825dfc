"""Co-host management, attendee invites, and event access checks."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from . import notifications
from .config import settings
from .errors import (
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    PermissionDenied,
)
from .models import AttendeeInvite, Event, EventHost, Member
from .signups import flush_or_conflict
from .utils import is_valid_email, normalize_email, sha256_hex, utcnow

logger = logging.getLogger("uvicorn.error")


# -------- access checks --------


def host_row(db: Session, event_id: str, member_id: str) -> EventHost | None:
    stmt = select(EventHost).where(
        EventHost.event_id == event_id, EventHost.member_id == member_id
    )
    return db.scalars(stmt).first()


def is_host(db: Session, event: Event, member: Member | None) -> bool:
    if member is None:
        return False
    row = host_row(db, event.id, member.id)
    return row is not None and row.invitation_status == "accepted"


def is_primary_host(event: Event, member: Member | None) -> bool:
    return member is not None and event.host_id == member.id


def require_host(db: Session, event: Event, member: Member) -> None:
    """Hosts and co-hosts share management rights over an event."""
    if member.is_admin or is_host(db, event, member):
        return
    raise PermissionDenied("Only hosts can manage this event")


def require_primary_host(event: Event, member: Member) -> None:
    if member.is_admin or is_primary_host(event, member):
        return
    raise PermissionDenied("Only the primary host can do that")


def can_view(db: Session, event: Event, member: Member | None) -> bool:
    if event.status == "published" and event.visibility == "public":
        return True
    if member is None:
        return False
    if member.is_admin or host_row(db, event.id, member.id) is not None:
        return True
    return event.status != "draft" and has_accepted_invite(db, event, member)


def has_accepted_invite(db: Session, event: Event, member: Member) -> bool:
    stmt = select(AttendeeInvite.id).where(
        AttendeeInvite.event_id == event.id,
        AttendeeInvite.member_id == member.id,
        AttendeeInvite.status == "accepted",
    )
    return db.scalar(stmt.limit(1)) is not None


def require_attendance_access(db: Session, event: Event, member: Member) -> None:
    if event.visibility != "invite_only":
        return
    if member.is_admin or is_host(db, event, member) or has_accepted_invite(
        db, event, member
    ):
        return
    raise PermissionDenied("This event is invite-only", code="INVITE_ONLY")


# -------- co-hosts --------


def list_hosts(db: Session, event: Event) -> list[EventHost]:
    stmt = (
        select(EventHost)
        .where(EventHost.event_id == event.id)
        .order_by(EventHost.created_at)
    )
    return list(db.scalars(stmt))


def add_primary_host(db: Session, event: Event, member: Member) -> EventHost:
    row = EventHost(
        event_id=event.id,
        member_id=member.id,
        role="host",
        invitation_status="accepted",
        invited_by=member.id,
        responded_at=utcnow(),
    )
    db.add(row)
    db.flush()
    return row


def invite_cohost(
    db: Session, event: Event, inviter: Member, invitee: Member
) -> EventHost:
    if not (inviter.is_admin or is_host(db, event, inviter)):
        raise PermissionDenied("Only hosts can invite co-hosts")
    if inviter.id == invitee.id:
        raise InvalidRequestError("You cannot invite yourself", code="SELF_INVITE")
    row = host_row(db, event.id, invitee.id)
    if row is not None and row.invitation_status == "accepted":
        raise InvalidRequestError(
            "This member is already a host", code="ALREADY_HOST"
        )
    if row is not None and row.invitation_status == "pending":
        raise InvalidRequestError(
            "This member already has a pending invitation", code="ALREADY_INVITED"
        )
    if row is None:
        row = EventHost(event_id=event.id, member_id=invitee.id)
        db.add(row)
    row.role = "cohost"
    row.invitation_status = "pending"
    row.invited_by = inviter.id
    row.responded_at = None
    flush_or_conflict(
        db, "This member already has a pending invitation", code="ALREADY_INVITED"
    )
    logger.info("Member %s invited %s to co-host %s", inviter.id, invitee.id, event.id)
    notifications.send_cohost_invite(event, invitee, inviter)
    return row


def respond_to_cohost_invite(
    db: Session, event: Event, member: Member, *, accept: bool
) -> EventHost:
    row = host_row(db, event.id, member.id)
    if row is None or row.invitation_status != "pending":
        raise NotFoundError("No pending co-host invitation", code="INVITATION_NOT_FOUND")
    row.invitation_status = "accepted" if accept else "declined"
    row.responded_at = utcnow()
    db.flush()
    logger.info(
        "Member %s %s co-hosting %s",
        member.id,
        "accepted" if accept else "declined",
        event.id,
    )
    return row


def remove_host(db: Session, event: Event, actor: Member, member_id: str) -> dict:
    """Remove a host, promoting the longest-serving co-host if needed."""
    row = host_row(db, event.id, member_id)
    if row is None:
        raise NotFoundError("Host not found", code="HOST_NOT_FOUND")
    is_self = actor.id == member_id
    actor_is_primary = is_primary_host(event, actor)
    if not (is_self or actor.is_admin):
        if not actor_is_primary:
            raise PermissionDenied("Only the primary host can remove co-hosts")
        if row.role == "host":
            raise PermissionDenied("Primary hosts cannot remove other primary hosts")

    was_primary = row.role == "host" or event.host_id == member_id
    db.delete(row)
    db.flush()
    logger.info("Removed host %s from %s", member_id, event.id)

    promoted: str | None = None
    if was_primary:
        successor = db.scalars(
            select(EventHost)
            .where(
                EventHost.event_id == event.id,
                EventHost.invitation_status == "accepted",
            )
            .order_by(EventHost.created_at)
            .limit(1)
        ).first()
        if successor is not None:
            successor.role = "host"
            event.host_id = successor.member_id
            promoted = successor.member_id
            logger.info("Promoted %s to primary host of %s", promoted, event.id)
        else:
            event.host_id = None
        db.flush()
    return {"removed": member_id, "promoted": promoted, "host_id": event.host_id}


# -------- attendee invites --------


def effective_status(invite: AttendeeInvite, *, now: datetime | None = None) -> str:
    now = now or utcnow()
    if invite.status == "pending" and invite.expires_at and invite.expires_at <= now:
        return "expired"
    return invite.status


def _active_invite_count(db: Session, event_id: str) -> int:
    return (
        db.scalar(
            select(func.count())
            .select_from(AttendeeInvite)
            .where(
                AttendeeInvite.event_id == event_id,
                AttendeeInvite.status.in_(("pending", "accepted")),
            )
        )
        or 0
    )


def create_attendee_invite(
    db: Session,
    event: Event,
    actor: Member,
    *,
    member_id: str | None = None,
    email: str | None = None,
    now: datetime | None = None,
) -> tuple[AttendeeInvite, str | None]:
    """Invite a member or an email address; email invites get a one-time token."""
    require_primary_host(event, actor)
    if bool(member_id) == bool(email):
        raise InvalidRequestError(
            "Provide either member_id or email", code="INVALID_INVITEE"
        )
    if _active_invite_count(db, event.id) >= settings.max_invites_per_event:
        raise InvalidRequestError(
            f"This event has reached the maximum of {settings.max_invites_per_event} invites",
            code="INVITE_LIMIT",
        )

    now = now or utcnow()
    invite = AttendeeInvite(
        event_id=event.id,
        invited_by=actor.id,
        status="pending",
        expires_at=now + timedelta(days=settings.invite_expiry_days),
        created_at=now,
    )
    token = None
    if member_id:
        invitee = db.get(Member, member_id)
        if invitee is None:
            raise NotFoundError("Member not found", code="MEMBER_NOT_FOUND")
        duplicate = AttendeeInvite.member_id == member_id
        invite.member_id = member_id
        to_email = invitee.email
    else:
        normalized = normalize_email(email)
        if not is_valid_email(normalized):
            raise InvalidRequestError(
                "Please enter a valid email address", code="INVALID_EMAIL"
            )
        duplicate = AttendeeInvite.email == normalized
        token = secrets.token_hex(32)
        invite.email = normalized
        invite.token_hash = sha256_hex(token)
        to_email = normalized

    existing = db.scalar(
        select(AttendeeInvite.id)
        .where(
            AttendeeInvite.event_id == event.id,
            duplicate,
            AttendeeInvite.status.in_(("pending", "accepted")),
        )
        .limit(1)
    )
    if existing:
        raise ConflictError("This person has already been invited", code="ALREADY_INVITED")
    db.add(invite)
    flush_or_conflict(db, "This person has already been invited", code="ALREADY_INVITED")
    logger.info("Created attendee invite %s for event %s", invite.id, event.id)
    notifications.send_attendee_invite(
        event, invite, to_email=to_email, inviter=actor, token=token, now=now
    )
    return invite, token


def list_attendee_invites(db: Session, event: Event, actor: Member) -> list[AttendeeInvite]:
    require_primary_host(event, actor)
    stmt = (
        select(AttendeeInvite)
        .where(AttendeeInvite.event_id == event.id)
        .order_by(AttendeeInvite.created_at.desc())
    )
    return list(db.scalars(stmt))


def revoke_attendee_invite(
    db: Session, event: Event, actor: Member, invite_id: str
) -> AttendeeInvite:
    require_primary_host(event, actor)
    invite = db.get(AttendeeInvite, invite_id)
    if invite is None or invite.event_id != event.id:
        raise NotFoundError("Invite not found", code="INVITE_NOT_FOUND")
    if invite.status == "revoked":
        raise InvalidRequestError("Invite already revoked", code="INVITE_REVOKED")
    invite.status = "revoked"
    invite.revoked_at = utcnow()
    invite.revoked_by = actor.id
    db.flush()
    logger.info("Revoked attendee invite %s", invite.id)
    return invite


def _invite_for_member(
    db: Session, member: Member, *, token: str | None, invite_id: str | None
) -> AttendeeInvite:
    if token:
        invite = db.scalars(
            select(AttendeeInvite).where(AttendeeInvite.token_hash == sha256_hex(token))
        ).first()
    elif invite_id:
        invite = db.get(AttendeeInvite, invite_id)
        if invite is not None and invite.member_id != member.id and (
            invite.email is None or invite.email != normalize_email(member.email)
        ):
            invite = None
    else:
        raise InvalidRequestError("Provide an invite token or id", code="INVALID_INVITE")
    if invite is None:
        raise NotFoundError("Invite not found", code="INVITE_NOT_FOUND")
    return invite


def _ensure_actionable(invite: AttendeeInvite, now: datetime) -> None:
    status = effective_status(invite, now=now)
    if status == "revoked":
        raise InvalidRequestError("This invite has been revoked", code="INVITE_REVOKED")
    if status == "accepted":
        raise InvalidRequestError(
            "This invite has already been accepted", code="INVITE_USED"
        )
    if status == "declined":
        raise InvalidRequestError("This invite was declined", code="INVITE_DECLINED")
    if status == "expired":
        raise InvalidRequestError("This invite has expired", code="INVITE_EXPIRED")


def accept_attendee_invite(
    db: Session,
    member: Member,
    *,
    token: str | None = None,
    invite_id: str | None = None,
    now: datetime | None = None,
) -> AttendeeInvite:
    now = now or utcnow()
    invite = _invite_for_member(db, member, token=token, invite_id=invite_id)
    _ensure_actionable(invite, now)
    invite.member_id = member.id
    invite.status = "accepted"
    invite.accepted_at = now
    flush_or_conflict(
        db, "You already have an invite to this event", code="ALREADY_INVITED"
    )
    logger.info("Member %s accepted invite %s", member.id, invite.id)
    return invite


def decline_attendee_invite(
    db: Session, member: Member, invite_id: str, *, now: datetime | None = None
) -> AttendeeInvite:
    now = now or utcnow()
    invite = _invite_for_member(db, member, token=None, invite_id=invite_id)
    _ensure_actionable(invite, now)
    invite.status = "declined"
    invite.declined_at = now
    db.flush()
    return invite
