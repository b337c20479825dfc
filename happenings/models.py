"""SQLAlchemy models for Happenings."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

from .utils import utcnow

Base = declarative_base()

RSVP_STATUSES = ("confirmed", "waitlist", "offered", "cancelled")
CLAIM_STATUSES = (
    "confirmed",
    "waitlist",
    "offered",
    "cancelled",
    "no_show",
    "performed",
)
EVENT_STATUSES = ("draft", "published", "cancelled")
INVITE_STATUSES = ("pending", "accepted", "declined", "revoked")

# Claim states that hold a slot, and the ones that count as "signed up".
SLOT_HOLDING_STATUSES = ("confirmed", "offered", "performed")
OPEN_CLAIM_STATUSES = ("confirmed", "offered", "waitlist")


def _uuid() -> str:
    return str(uuid.uuid4())


def _now() -> datetime:
    return utcnow()


def _partial(condition: str) -> dict:
    return {
        "sqlite_where": text(condition),
        "postgresql_where": text(condition),
    }


class Meta(Base):
    __tablename__ = "meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class Member(Base):
    __tablename__ = "members"

    id = Column(String(36), primary_key=True, default=_uuid)
    display_name = Column(String(120), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    api_token = Column(String(128), nullable=False, unique=True)
    is_admin = Column(Boolean, default=False, nullable=False)
    no_show_count = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class Event(Base):
    __tablename__ = "events"

    id = Column(String(36), primary_key=True, default=_uuid)
    slug = Column(String(160), nullable=False, unique=True)
    host_id = Column(
        String(36), ForeignKey("members.id", ondelete="SET NULL"), nullable=True
    )
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    venue_name = Column(String(255), nullable=True)
    venue_address = Column(String(255), nullable=True)
    # Local wall-clock times (HH:MM) in the configured timezone.
    start_time = Column(String(8), nullable=True)
    end_time = Column(String(8), nullable=True)
    event_date = Column(String(10), nullable=True)
    day_of_week = Column(String(16), nullable=True)
    recurrence_rule = Column(String(255), nullable=True)
    recurrence_end_date = Column(String(10), nullable=True)
    max_occurrences = Column(Integer, nullable=True)
    custom_dates = Column(JSON, nullable=True)
    capacity = Column(Integer, nullable=True)
    has_timeslots = Column(Boolean, default=False, nullable=False)
    total_slots = Column(Integer, nullable=True)
    slot_duration_minutes = Column(Integer, nullable=True)
    slot_offer_window_minutes = Column(Integer, nullable=True)
    visibility = Column(String(16), default="public", nullable=False)
    status = Column(String(16), default="draft", nullable=False)
    published_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    host = relationship("Member", foreign_keys=[host_id])
    hosts = relationship(
        "EventHost",
        back_populates="event",
        cascade="all, delete-orphan",
        order_by="EventHost.created_at",
    )
    overrides = relationship(
        "OccurrenceOverride", back_populates="event", cascade="all, delete-orphan"
    )
    rsvps = relationship("RSVP", back_populates="event", cascade="all, delete-orphan")
    timeslots = relationship(
        "Timeslot", back_populates="event", cascade="all, delete-orphan"
    )
    attendee_invites = relationship(
        "AttendeeInvite", back_populates="event", cascade="all, delete-orphan"
    )

    @property
    def is_published(self) -> bool:
        return self.status == "published"


class EventHost(Base):
    __tablename__ = "event_hosts"
    __table_args__ = (UniqueConstraint("event_id", "member_id", name="uq_event_hosts"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    member_id = Column(
        String(36), ForeignKey("members.id", ondelete="CASCADE"), nullable=False
    )
    role = Column(String(16), default="cohost", nullable=False)
    invitation_status = Column(String(16), default="pending", nullable=False)
    invited_by = Column(String(36), ForeignKey("members.id"), nullable=True)
    responded_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="hosts")
    member = relationship("Member", foreign_keys=[member_id])


class OccurrenceOverride(Base):
    __tablename__ = "occurrence_overrides"
    __table_args__ = (
        UniqueConstraint("event_id", "date_key", name="uq_occurrence_overrides"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    date_key = Column(String(10), nullable=False)
    status = Column(String(16), default="normal", nullable=False)
    note = Column(Text, nullable=True)
    updated_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="overrides")


class RSVP(Base):
    __tablename__ = "rsvps"
    __table_args__ = (
        Index(
            "uq_rsvps_active_member",
            "event_id",
            "date_key",
            "member_id",
            unique=True,
            **_partial("status != 'cancelled' AND member_id IS NOT NULL"),
        ),
        Index(
            "uq_rsvps_active_guest",
            "event_id",
            "date_key",
            "guest_email",
            unique=True,
            **_partial("status != 'cancelled' AND guest_email IS NOT NULL"),
        ),
        Index("ix_rsvps_occurrence_status", "event_id", "date_key", "status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    date_key = Column(String(10), nullable=False)
    member_id = Column(
        String(36), ForeignKey("members.id", ondelete="CASCADE"), nullable=True
    )
    guest_name = Column(String(120), nullable=True)
    guest_email = Column(String(255), nullable=True)
    guest_verified = Column(Boolean, default=False, nullable=False)
    status = Column(String(16), default="confirmed", nullable=False)
    waitlist_position = Column(Integer, nullable=True)
    offer_expires_at = Column(DateTime, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    event = relationship("Event", back_populates="rsvps")
    member = relationship("Member")

    @property
    def is_guest(self) -> bool:
        return self.member_id is None

    @property
    def display_name(self) -> str:
        if self.member is not None:
            return self.member.display_name
        return self.guest_name or "Guest"

    @property
    def contact_email(self) -> str | None:
        if self.member is not None:
            return self.member.email
        return self.guest_email


class Timeslot(Base):
    __tablename__ = "event_timeslots"
    __table_args__ = (
        UniqueConstraint(
            "event_id", "date_key", "slot_index", name="uq_event_timeslots_slot"
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    date_key = Column(String(10), nullable=False)
    slot_index = Column(Integer, nullable=False)
    start_offset_minutes = Column(Integer, nullable=True)
    duration_minutes = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="timeslots")
    claims = relationship(
        "TimeslotClaim",
        back_populates="timeslot",
        cascade="all, delete-orphan",
        order_by="TimeslotClaim.created_at",
    )


class TimeslotClaim(Base):
    __tablename__ = "timeslot_claims"
    __table_args__ = (
        Index(
            "uq_timeslot_claims_holder",
            "timeslot_id",
            unique=True,
            **_partial("status IN ('confirmed', 'offered', 'performed')"),
        ),
        Index(
            "uq_timeslot_claims_open_member",
            "event_id",
            "date_key",
            "member_id",
            unique=True,
            **_partial(
                "status IN ('confirmed', 'offered', 'waitlist') AND member_id IS NOT NULL"
            ),
        ),
        Index(
            "uq_timeslot_claims_open_guest",
            "event_id",
            "date_key",
            "guest_email",
            unique=True,
            **_partial(
                "status IN ('confirmed', 'offered', 'waitlist') AND guest_email IS NOT NULL"
            ),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    timeslot_id = Column(
        String(36), ForeignKey("event_timeslots.id", ondelete="CASCADE"), nullable=False
    )
    # Denormalized so per-occurrence uniqueness can live in an index.
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    date_key = Column(String(10), nullable=False)
    member_id = Column(
        String(36), ForeignKey("members.id", ondelete="CASCADE"), nullable=True
    )
    guest_name = Column(String(120), nullable=True)
    guest_email = Column(String(255), nullable=True)
    guest_verified = Column(Boolean, default=False, nullable=False)
    status = Column(String(16), default="confirmed", nullable=False)
    waitlist_position = Column(Integer, nullable=True)
    offer_expires_at = Column(DateTime, nullable=True)
    updated_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)

    timeslot = relationship("Timeslot", back_populates="claims")
    member = relationship("Member")

    @property
    def display_name(self) -> str:
        if self.member is not None:
            return self.member.display_name
        return self.guest_name or "Guest"

    @property
    def contact_email(self) -> str | None:
        if self.member is not None:
            return self.member.email
        return self.guest_email


class LineupState(Base):
    __tablename__ = "lineup_states"
    __table_args__ = (UniqueConstraint("event_id", "date_key", name="uq_lineup_states"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    date_key = Column(String(10), nullable=False)
    now_playing_timeslot_id = Column(
        String(36),
        ForeignKey("event_timeslots.id", ondelete="SET NULL"),
        nullable=True,
    )
    updated_by = Column(String(36), nullable=True)
    updated_at = Column(DateTime, default=_now, onupdate=_now, nullable=False)


class AttendeeInvite(Base):
    __tablename__ = "attendee_invites"
    __table_args__ = (
        Index(
            "uq_attendee_invites_member",
            "event_id",
            "member_id",
            unique=True,
            **_partial("status IN ('pending', 'accepted') AND member_id IS NOT NULL"),
        ),
        Index(
            "uq_attendee_invites_email",
            "event_id",
            "email",
            unique=True,
            **_partial("status IN ('pending', 'accepted') AND email IS NOT NULL"),
        ),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    member_id = Column(
        String(36), ForeignKey("members.id", ondelete="CASCADE"), nullable=True
    )
    email = Column(String(255), nullable=True)
    token_hash = Column(String(64), nullable=True, unique=True)
    status = Column(String(16), default="pending", nullable=False)
    invited_by = Column(String(36), ForeignKey("members.id"), nullable=True)
    expires_at = Column(DateTime, nullable=True)
    accepted_at = Column(DateTime, nullable=True)
    declined_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    revoked_by = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=_now, nullable=False)

    event = relationship("Event", back_populates="attendee_invites")
    member = relationship("Member", foreign_keys=[member_id])


class GuestVerification(Base):
    __tablename__ = "guest_verifications"
    __table_args__ = (
        Index("ix_guest_verifications_email_event", "email", "event_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False)
    guest_name = Column(String(120), nullable=False)
    event_id = Column(
        String(36), ForeignKey("events.id", ondelete="CASCADE"), nullable=False
    )
    date_key = Column(String(10), nullable=False)
    kind = Column(String(16), default="rsvp", nullable=False)
    slot_index = Column(Integer, nullable=True)
    timeslot_id = Column(
        String(36),
        ForeignKey("event_timeslots.id", ondelete="SET NULL"),
        nullable=True,
    )
    code_hash = Column(String(64), nullable=True)
    code_expires_at = Column(DateTime, nullable=True)
    code_attempts = Column(Integer, default=0, nullable=False)
    locked_until = Column(DateTime, nullable=True)
    verified_at = Column(DateTime, nullable=True)
    rsvp_id = Column(
        String(36), ForeignKey("rsvps.id", ondelete="SET NULL"), nullable=True
    )
    claim_id = Column(
        String(36), ForeignKey("timeslot_claims.id", ondelete="SET NULL"), nullable=True
    )
    token_used = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=_now, nullable=False)
