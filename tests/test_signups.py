from __future__ import annotations

from datetime import timedelta

import pytest

from happenings import signups
from happenings.crud import update_event
from happenings.errors import HappeningsError
from happenings.models import RSVP
from happenings.recurrence import add_days, next_occurrence
from happenings.utils import utcnow


def _rsvp_all(session, event, members, date_key):
    rsvps = [signups.create_member_rsvp(session, event, m, date_key) for m in members]
    session.commit()
    return rsvps


def test_rsvps_fill_capacity_then_waitlist(session, make_event, make_member):
    event = make_event(capacity=2)
    key = next_occurrence(event)
    members = [make_member() for _ in range(4)]

    first, second, third, fourth = _rsvp_all(session, event, members, key)

    assert [first.status, second.status] == ["confirmed", "confirmed"]
    assert [third.status, fourth.status] == ["waitlist", "waitlist"]
    assert [third.waitlist_position, fourth.waitlist_position] == [1, 2]
    summary = signups.occurrence_summary(session, event, key)
    assert summary["confirmed"] == 2
    assert summary["waitlist"] == 2
    assert summary["remaining"] == 0
    assert summary["is_full"] is True


def test_occurrences_have_independent_ledgers(session, make_event, make_member):
    event = make_event(capacity=1)
    key = next_occurrence(event)
    later = add_days(key, 7)
    member = make_member()

    first = signups.create_member_rsvp(session, event, member, key)
    second = signups.create_member_rsvp(session, event, member, later)
    session.commit()

    assert first.status == "confirmed"
    assert second.status == "confirmed"
    assert signups.occurrence_summary(session, event, later)["confirmed"] == 1


def test_duplicate_rsvp_is_rejected(session, make_event, make_member):
    event = make_event()
    key = next_occurrence(event)
    member = make_member()
    signups.create_member_rsvp(session, event, member, key)
    session.commit()

    with pytest.raises(HappeningsError) as excinfo:
        signups.create_member_rsvp(session, event, member, key)
    assert excinfo.value.code == "ALREADY_RSVPD"
    assert excinfo.value.status_code == 409


def test_cancelling_a_seat_offers_it_to_the_waitlist(
    session, make_event, make_member, outbox
):
    event = make_event(capacity=1)
    key = next_occurrence(event)
    holder, waiting = _rsvp_all(session, event, [make_member(), make_member()], key)
    outbox.clear()

    signups.cancel_rsvp(session, holder)
    session.commit()

    assert holder.status == "cancelled"
    assert waiting.status == "offered"
    assert waiting.waitlist_position is None
    assert waiting.offer_expires_at is not None
    assert any(mail["to"] == waiting.member.email for mail in outbox)
    # The offer reserves the seat.
    assert signups.has_open_seat(session, event, key) is False


def test_accepting_an_offer_confirms_the_seat(session, make_event, make_member):
    event = make_event(capacity=1)
    key = next_occurrence(event)
    holder, waiting = _rsvp_all(session, event, [make_member(), make_member()], key)
    signups.cancel_rsvp(session, holder)

    signups.accept_offer(session, waiting)
    session.commit()

    assert waiting.status == "confirmed"
    assert waiting.offer_expires_at is None
    # Accepting twice is a no-op.
    assert signups.accept_offer(session, waiting).status == "confirmed"


def test_expired_offer_moves_to_back_and_next_is_offered(
    session, make_event, make_member
):
    event = make_event(capacity=1)
    key = next_occurrence(event)
    holder, first, second = _rsvp_all(
        session, event, [make_member(), make_member(), make_member()], key
    )
    signups.cancel_rsvp(session, holder)
    session.commit()
    assert first.status == "offered"

    later = utcnow() + timedelta(days=2)
    expired = signups.process_expired_offers(session, event, key, now=later)
    session.commit()

    assert [r.id for r in expired] == [first.id]
    assert first.status == "waitlist"
    assert first.waitlist_position == 3
    assert second.status == "offered"


def test_accepting_an_expired_offer_requeues_and_fails(
    session, make_event, make_member
):
    event = make_event(capacity=1)
    key = next_occurrence(event)
    holder, first, second = _rsvp_all(
        session, event, [make_member(), make_member(), make_member()], key
    )
    signups.cancel_rsvp(session, holder)
    session.commit()

    with pytest.raises(HappeningsError) as excinfo:
        signups.accept_offer(session, first, now=utcnow() + timedelta(days=2))
    assert excinfo.value.code == "OFFER_EXPIRED"

    session.expire_all()
    assert session.get(RSVP, first.id).status == "waitlist"
    assert session.get(RSVP, second.id).status == "offered"


def test_declining_an_offer_passes_it_on(session, make_event, make_member):
    event = make_event(capacity=1)
    key = next_occurrence(event)
    holder, first, second = _rsvp_all(
        session, event, [make_member(), make_member(), make_member()], key
    )
    signups.cancel_rsvp(session, holder)

    signups.cancel_rsvp(session, first)
    session.commit()

    assert first.status == "cancelled"
    assert second.status == "offered"


def test_cancelling_a_waitlisted_rsvp_does_not_offer(session, make_event, make_member):
    event = make_event(capacity=1)
    key = next_occurrence(event)
    _, first, second = _rsvp_all(
        session, event, [make_member(), make_member(), make_member()], key
    )

    signups.cancel_rsvp(session, first)
    session.commit()

    assert second.status == "waitlist"
    with pytest.raises(HappeningsError) as excinfo:
        signups.cancel_rsvp(session, first)
    assert excinfo.value.code == "ALREADY_CANCELLED"


def test_capacity_increase_offers_waitlisted_seats(session, make_event, make_member):
    event = make_event(capacity=1)
    key = next_occurrence(event)
    holder, first, second = _rsvp_all(
        session, event, [make_member(), make_member(), make_member()], key
    )

    update_event(session, event, {"capacity": 2})
    session.commit()

    assert holder.status == "confirmed"
    assert first.status == "offered"
    assert second.status == "waitlist"


def test_capacity_cannot_drop_below_seats_taken(session, make_event, make_member):
    event = make_event(capacity=3)
    key = next_occurrence(event)
    rsvps = _rsvp_all(session, event, [make_member() for _ in range(2)], key)

    with pytest.raises(HappeningsError) as excinfo:
        update_event(session, event, {"capacity": 1})
    assert excinfo.value.code == "CAPACITY_BELOW_SEATS"
    assert excinfo.value.status_code == 409
    session.rollback()

    update_event(session, event, {"capacity": 2})
    session.commit()
    assert all(r.status == "confirmed" for r in rsvps)
    summary = signups.occurrence_summary(session, event, key)
    assert summary["confirmed"] <= summary["capacity"]
    assert summary["remaining"] == 0
    late = signups.create_member_rsvp(session, event, make_member(), key)
    assert late.status == "waitlist"


def test_newcomers_queue_behind_an_existing_waitlist(session, make_event, make_member):
    event = make_event(capacity=1)
    key = next_occurrence(event)
    holder, waiting = _rsvp_all(session, event, [make_member(), make_member()], key)
    # A seat left open beside a waitlist, as a crashed request could leave it.
    holder.status = "cancelled"
    session.commit()

    late = signups.create_member_rsvp(session, event, make_member(), key)
    session.commit()

    assert waiting.status == "offered"
    assert late.status == "waitlist"


def test_lone_expired_offer_is_offered_again(session, make_event, make_member):
    event = make_event(capacity=1)
    key = next_occurrence(event)
    holder, waiting = _rsvp_all(session, event, [make_member(), make_member()], key)
    signups.cancel_rsvp(session, holder)
    session.commit()

    later = utcnow() + timedelta(days=2)
    expired = signups.process_expired_offers(session, event, key, now=later)
    session.commit()

    assert [r.id for r in expired] == [waiting.id]
    assert waiting.status == "offered"
    assert waiting.offer_expires_at > later

    # Accepting after the first offer lapsed confirms the seat that came back.
    signups.accept_offer(session, waiting, now=later)
    assert waiting.status == "confirmed"


def test_racing_duplicate_rsvp_is_a_conflict(session, make_event, make_member, monkeypatch):
    event = make_event(capacity=5)
    key = next_occurrence(event)
    member = make_member()
    signups.create_member_rsvp(session, event, member, key)
    session.commit()
    # The other request passed its duplicate check before this one committed.
    monkeypatch.setattr(signups, "find_member_rsvp", lambda *args, **kwargs: None)

    with pytest.raises(HappeningsError) as excinfo:
        signups.create_member_rsvp(session, event, member, key)
    assert excinfo.value.code == "ALREADY_RSVPD"
    assert excinfo.value.status_code == 409
    assert excinfo.value.message == "You have already RSVP'd to this occurrence"


def test_racing_duplicate_guest_rsvp_is_a_conflict(session, make_event, monkeypatch):
    event = make_event(capacity=5)
    key = next_occurrence(event)
    signups.create_guest_rsvp(
        session, event, key, guest_name="Gina Guest", guest_email="gina@example.com"
    )
    session.commit()
    monkeypatch.setattr(signups, "find_guest_rsvp", lambda *args, **kwargs: None)

    with pytest.raises(HappeningsError) as excinfo:
        signups.create_guest_rsvp(
            session, event, key, guest_name="Gina Guest", guest_email="GINA@example.com"
        )
    assert excinfo.value.code == "ALREADY_RSVPD"


def test_unlimited_capacity_never_waitlists(session, make_event, make_member):
    event = make_event(capacity=None)
    key = next_occurrence(event)
    rsvps = _rsvp_all(session, event, [make_member() for _ in range(5)], key)
    assert {r.status for r in rsvps} == {"confirmed"}
    assert signups.occurrence_summary(session, event, key)["remaining"] is None


def test_drafts_do_not_accept_rsvps(session, make_event, make_member):
    event = make_event(publish=False)
    with pytest.raises(HappeningsError) as excinfo:
        signups.create_member_rsvp(session, event, make_member(), "2030-01-01")
    assert excinfo.value.code == "EVENT_NOT_PUBLISHED"


def test_hosts_are_told_about_new_signups(session, make_event, make_member, outbox):
    event = make_event(capacity=5)
    key = next_occurrence(event)
    outbox.clear()

    signups.create_member_rsvp(session, event, make_member("Ada"), key)

    host_mail = [mail for mail in outbox if mail["to"] == "host@example.com"]
    assert len(host_mail) == 1
    assert "Ada is going to" in host_mail[0]["body"]
