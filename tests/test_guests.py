from __future__ import annotations

import re
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest

from happenings import guests, signups, timeslots
from happenings.errors import HappeningsError
from happenings.models import RSVP, GuestVerification
from happenings.recurrence import local_datetime_utc, next_occurrence
from happenings.utils import utcnow

_code_pattern = re.compile(r"verification code is: (\w+)")


def _last_code(outbox) -> str:
    for mail in reversed(outbox):
        match = _code_pattern.search(mail["body"])
        if match:
            return match.group(1)
    raise AssertionError("no verification code was sent")


def _link_token(outbox, marker: str) -> str:
    for mail in reversed(outbox):
        for line in mail["body"].splitlines():
            if marker in line:
                url = line.split(marker, 1)[1].strip()
                return parse_qs(urlparse(url).query)["token"][0]
    raise AssertionError(f"no mail contained {marker!r}")


def _guest_rsvp(session, event, outbox, *, name="Gina Guest", email="gina@example.com"):
    issued = guests.request_rsvp_code(
        session, event, guest_name=name, guest_email=email
    )
    session.commit()
    result = guests.verify_rsvp_code(
        session, issued["verification_id"], _last_code(outbox)
    )
    session.commit()
    return result


def test_code_request_emails_a_code(session, make_event, outbox):
    event = make_event()
    issued = guests.request_rsvp_code(
        session, event, guest_name="Gina Guest", guest_email=" Gina@Example.com "
    )
    session.commit()

    assert issued["success"] is True
    assert issued["date_key"] == next_occurrence(event)
    verification = session.get(GuestVerification, issued["verification_id"])
    assert verification.email == "gina@example.com"
    code = _last_code(outbox)
    assert len(code) == guests.CODE_LENGTH
    # Only a keyed hash of the code is stored.
    assert verification.code_hash != code
    assert verification.code_hash == guests.hash_code(session, code)


def test_verified_code_creates_rsvp_and_cancel_link(session, make_event, outbox):
    event = make_event()
    result = _guest_rsvp(session, event, outbox)

    assert result.rsvp.status == "confirmed"
    assert result.rsvp.guest_email == "gina@example.com"
    assert result.rsvp.guest_verified is True
    assert result.verification.verified_at is not None
    assert result.cancel_token
    assert "Cancel here:" in outbox[-1]["body"]


def test_code_cannot_be_reused(session, make_event, outbox):
    event = make_event()
    result = _guest_rsvp(session, event, outbox)

    with pytest.raises(HappeningsError) as excinfo:
        guests.verify_rsvp_code(session, result.verification.id, _last_code(outbox))
    assert excinfo.value.code == "CODE_USED"


def test_wrong_codes_count_and_lock_out(session, make_event, outbox):
    event = make_event()
    issued = guests.request_rsvp_code(
        session, event, guest_name="Gina Guest", guest_email="gina@example.com"
    )
    session.commit()
    vid = issued["verification_id"]

    with pytest.raises(HappeningsError) as first:
        guests.verify_rsvp_code(session, vid, "000000")
    assert first.value.code == "INVALID_CODE"
    assert first.value.extra["attempts_remaining"] == 4

    for _ in range(3):
        with pytest.raises(HappeningsError):
            guests.verify_rsvp_code(session, vid, "000000")
    with pytest.raises(HappeningsError) as locked:
        guests.verify_rsvp_code(session, vid, "000000")
    assert locked.value.code == "LOCKED_OUT"
    assert locked.value.status_code == 429

    session.expire_all()
    assert session.get(GuestVerification, vid).code_attempts == 5

    # The right code no longer helps, and new codes are refused while locked.
    with pytest.raises(HappeningsError) as still_locked:
        guests.verify_rsvp_code(session, vid, _last_code(outbox))
    assert still_locked.value.code == "LOCKED_OUT"
    with pytest.raises(HappeningsError) as no_new_code:
        guests.request_rsvp_code(
            session, event, guest_name="Gina Guest", guest_email="gina@example.com"
        )
    assert no_new_code.value.code == "LOCKED_OUT"


def test_code_requests_are_rate_limited(session, make_event):
    event = make_event()
    for _ in range(3):
        guests.request_rsvp_code(
            session, event, guest_name="Gina Guest", guest_email="gina@example.com"
        )
    with pytest.raises(HappeningsError) as excinfo:
        guests.request_rsvp_code(
            session, event, guest_name="Gina Guest", guest_email="gina@example.com"
        )
    assert excinfo.value.code == "RATE_LIMITED"
    assert excinfo.value.extra["retry_after"] == 3600


def test_new_code_invalidates_the_previous_one(session, make_event, outbox):
    event = make_event()
    first = guests.request_rsvp_code(
        session, event, guest_name="Gina Guest", guest_email="gina@example.com"
    )
    first_code = _last_code(outbox)
    guests.request_rsvp_code(
        session, event, guest_name="Gina Guest", guest_email="gina@example.com"
    )
    session.commit()

    with pytest.raises(HappeningsError) as excinfo:
        guests.verify_rsvp_code(session, first["verification_id"], first_code)
    assert excinfo.value.code == "CODE_EXPIRED"


def test_expired_codes_are_rejected(session, make_event, outbox):
    event = make_event()
    issued = guests.request_rsvp_code(
        session, event, guest_name="Gina Guest", guest_email="gina@example.com"
    )
    session.commit()

    with pytest.raises(HappeningsError) as excinfo:
        guests.verify_rsvp_code(
            session,
            issued["verification_id"],
            _last_code(outbox),
            now=utcnow() + timedelta(minutes=16),
        )
    assert excinfo.value.code == "CODE_EXPIRED"


@pytest.mark.parametrize(
    "name, email, code",
    [
        ("", "gina@example.com", "MISSING_FIELDS"),
        ("G", "gina@example.com", "INVALID_NAME"),
        ("Gina Guest", "not-an-email", "INVALID_EMAIL"),
    ],
)
def test_guest_details_are_validated(session, make_event, name, email, code):
    event = make_event()
    with pytest.raises(HappeningsError) as excinfo:
        guests.request_rsvp_code(session, event, guest_name=name, guest_email=email)
    assert excinfo.value.code == code


def test_guests_cannot_join_invite_only_events(session, make_event):
    event = make_event(visibility="invite_only")
    with pytest.raises(HappeningsError) as excinfo:
        guests.request_rsvp_code(
            session, event, guest_name="Gina Guest", guest_email="gina@example.com"
        )
    assert excinfo.value.code == "INVITE_ONLY"


def test_cancel_link_is_single_use(session, make_event, outbox):
    event = make_event()
    result = _guest_rsvp(session, event, outbox)

    outcome = guests.perform_action(session, result.cancel_token, "cancel_rsvp")
    session.commit()
    assert outcome.rsvp.status == "cancelled"

    with pytest.raises(HappeningsError) as excinfo:
        guests.perform_action(session, result.cancel_token, "cancel_rsvp")
    assert excinfo.value.code == "TOKEN_USED"


def test_action_must_match_token(session, make_event, outbox):
    event = make_event()
    result = _guest_rsvp(session, event, outbox)

    with pytest.raises(HappeningsError) as mismatch:
        guests.perform_action(session, result.cancel_token, "confirm")
    assert mismatch.value.code == "ACTION_MISMATCH"
    with pytest.raises(HappeningsError) as garbage:
        guests.perform_action(session, "not-a-token", "cancel_rsvp")
    assert garbage.value.code == "INVALID_TOKEN"


def test_waitlisted_guest_confirms_offer_from_email(
    session, make_event, make_member, outbox
):
    event = make_event(capacity=1)
    key = next_occurrence(event)
    holder = signups.create_member_rsvp(session, event, make_member(), key)
    session.commit()

    result = _guest_rsvp(session, event, outbox)
    assert result.rsvp.status == "waitlist"

    signups.cancel_rsvp(session, holder)
    session.commit()
    assert result.rsvp.status == "offered"

    token = _link_token(outbox, "Claim it here:")
    outcome = guests.perform_action(session, token, "confirm")
    session.commit()

    assert outcome.rsvp.status == "confirmed"
    assert session.get(RSVP, result.rsvp.id).status == "confirmed"


def test_guest_claims_a_free_slot(session, make_event, outbox):
    event = make_event(has_timeslots=True, total_slots=3, slot_duration_minutes=10)
    issued = guests.request_claim_code(
        session,
        event,
        guest_name="Gus Guest",
        guest_email="gus@example.com",
        slot_index=1,
    )
    session.commit()

    result = guests.verify_claim_code(
        session, issued["verification_id"], _last_code(outbox)
    )
    session.commit()

    assert result.claim.status == "confirmed"
    assert result.claim.timeslot.slot_index == 1
    assert "Release your slot here:" in outbox[-1]["body"]

    outcome = guests.perform_action(session, result.cancel_token, "cancel")
    assert outcome.claim.status == "cancelled"


def test_guest_claim_code_refused_for_held_slot(session, make_event, make_member):
    event = make_event(has_timeslots=True, total_slots=3, slot_duration_minutes=10)
    timeslots.claim_slot(session, event, next_occurrence(event), 0, member=make_member())
    session.commit()

    with pytest.raises(HappeningsError) as excinfo:
        guests.request_claim_code(
            session,
            event,
            guest_name="Gus Guest",
            guest_email="gus@example.com",
            slot_index=0,
        )
    assert excinfo.value.code == "SLOT_TAKEN"


def test_slot_taken_between_request_and_verify(session, make_event, make_member, outbox):
    event = make_event(has_timeslots=True, total_slots=3, slot_duration_minutes=10)
    issued = guests.request_claim_code(
        session,
        event,
        guest_name="Gus Guest",
        guest_email="gus@example.com",
        slot_index=0,
    )
    session.commit()
    code = _last_code(outbox)
    timeslots.claim_slot(session, event, issued["date_key"], 0, member=make_member())
    session.commit()

    with pytest.raises(HappeningsError) as excinfo:
        guests.verify_claim_code(session, issued["verification_id"], code)
    assert excinfo.value.code == "SLOT_TAKEN"


def test_purge_removes_only_stale_unverified_attempts(session, make_event):
    event = make_event()
    old = utcnow() - timedelta(days=8)
    stale = GuestVerification(
        email="old@example.com",
        guest_name="Old Attempt",
        event_id=event.id,
        date_key=next_occurrence(event),
        created_at=old,
    )
    verified = GuestVerification(
        email="done@example.com",
        guest_name="Done Attempt",
        event_id=event.id,
        date_key=next_occurrence(event),
        created_at=old,
        verified_at=old,
    )
    session.add_all([stale, verified])
    session.commit()

    assert guests.purge_stale_verifications(session) == 1
    session.commit()
    session.expire_all()
    assert session.get(GuestVerification, verified.id) is not None


def test_code_verified_after_the_occurrence_day_is_refused(session, make_event, outbox):
    event = make_event()
    key = next_occurrence(event)
    late_evening = local_datetime_utc(key, 23, 55)
    issued = guests.request_rsvp_code(
        session,
        event,
        guest_name="Gina Guest",
        guest_email="gina@example.com",
        date_key=key,
        now=late_evening,
    )
    session.commit()

    with pytest.raises(HappeningsError) as excinfo:
        guests.verify_rsvp_code(
            session,
            issued["verification_id"],
            _last_code(outbox),
            now=late_evening + timedelta(minutes=10),
        )
    assert excinfo.value.code == "OCCURRENCE_PAST"
    session.rollback()
    assert session.query(RSVP).count() == 0
