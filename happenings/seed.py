"""Development helpers for populating fake members, happenings and signups."""

from __future__ import annotations

import random

from faker import Faker
from sqlalchemy.orm import Session

from .crud import create_event, create_member, publish_event
from .database import get_session
from .models import Event, Member
from .recurrence import WEEKDAY_NAMES, add_days, next_occurrence, today_key
from .signups import create_member_rsvp
from .storage import init_db
from .timeslots import claim_slot

_event_types = [
    "Open Mic",
    "Song Circle",
    "Jam Session",
    "Poetry Night",
    "Comedy Hour",
    "Board Game Night",
    "Book Club",
    "Drop-in Sketching",
]
_schedules = [
    {"recurrence_rule": "weekly"},
    {"recurrence_rule": "biweekly"},
    {"recurrence_rule": "1st/3rd"},
    {"recurrence_rule": "last"},
    {"recurrence_rule": "FREQ=MONTHLY;BYDAY=2TH,4TH"},
    {"recurrence_rule": None},
]
_timeslot_types = {"Open Mic", "Poetry Night", "Comedy Hour"}


def seed_fake_data(
    *,
    member_count: int = 12,
    event_count: int = 4,
    max_rsvps_per_event: int = 8,
) -> dict[str, int]:
    """Populate the SQLite database with synthetic members and happenings."""
    if member_count < 1:
        raise ValueError("member_count must be >= 1")
    if event_count < 0:
        raise ValueError("event_count must be >= 0")
    if max_rsvps_per_event < 0:
        raise ValueError("max_rsvps_per_event must be >= 0")

    init_db()
    fake = Faker()
    stats = {"members": 0, "events": 0, "rsvps": 0, "claims": 0}

    with get_session() as session:
        members = [_create_member(session, fake) for _ in range(member_count)]
        stats["members"] = len(members)
        for _ in range(event_count):
            event = _create_event(session, fake, host=random.choice(members))
            stats["events"] += 1
            date_key = next_occurrence(event)
            if date_key is None:
                continue
            stats["rsvps"] += _create_rsvps(
                session, event, date_key, members, max_rsvps_per_event
            )
            if event.has_timeslots:
                stats["claims"] += _create_claims(session, event, date_key, members)

    return stats


def _create_member(session: Session, fake: Faker) -> Member:
    return create_member(
        session, display_name=fake.name_nonbinary(), email=fake.unique.email()
    )


def _create_event(session: Session, fake: Faker, *, host: Member) -> Event:
    event_type = random.choice(_event_types)
    schedule = dict(random.choice(_schedules))
    if schedule["recurrence_rule"] is None:
        schedule["event_date"] = add_days(today_key(), random.randint(1, 30))
    elif schedule["recurrence_rule"] == "biweekly":
        # Every-other-week series step from their first date.
        schedule["event_date"] = add_days(today_key(), random.randint(0, 13))
    else:
        schedule["day_of_week"] = random.choice(WEEKDAY_NAMES)
    hour = random.randint(17, 20)
    has_timeslots = event_type in _timeslot_types
    event = create_event(
        session,
        host,
        title=f"{fake.city()} {event_type}",
        description="\n\n".join(fake.paragraphs(nb=2)),
        venue_name=f"{fake.last_name()}'s {random.choice(['Cafe', 'Hall', 'Taproom'])}",
        venue_address=fake.address().replace("\n", ", "),
        start_time=f"{hour:02d}:{random.choice([0, 30]):02d}",
        end_time=f"{hour + 2:02d}:30",
        capacity=random.choice([None, 10, 20, 40]),
        has_timeslots=has_timeslots,
        total_slots=random.randint(6, 12) if has_timeslots else None,
        slot_duration_minutes=random.choice([10, 15]) if has_timeslots else None,
        **schedule,
    )
    return publish_event(session, event)


def _create_rsvps(
    session: Session, event: Event, date_key: str, members: list[Member], max_rsvps: int
) -> int:
    if max_rsvps <= 0:
        return 0
    attendees = random.sample(members, k=min(len(members), random.randint(0, max_rsvps)))
    for member in attendees:
        create_member_rsvp(session, event, member, date_key)
    return len(attendees)


def _create_claims(
    session: Session, event: Event, date_key: str, members: list[Member]
) -> int:
    performers = random.sample(members, k=min(len(members), event.total_slots // 2))
    for index, member in enumerate(performers):
        claim_slot(session, event, date_key, index, member=member)
    return len(performers)
