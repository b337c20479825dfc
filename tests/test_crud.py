from __future__ import annotations

import pytest

from happenings import crud
from happenings.errors import HappeningsError
from happenings.models import Event
from happenings.recurrence import add_days, next_occurrence
from happenings.signups import create_member_rsvp


def test_create_member_normalizes_and_rejects_duplicates(session):
    member = crud.create_member(
        session, display_name="  Ada  ", email=" Ada@Example.COM "
    )
    session.commit()
    assert member.display_name == "Ada"
    assert member.email == "ada@example.com"
    assert member.api_token
    assert crud.get_member_by_token(session, member.api_token).id == member.id

    with pytest.raises(HappeningsError) as excinfo:
        crud.create_member(session, display_name="Other", email="ada@example.com")
    assert excinfo.value.code == "EMAIL_TAKEN"
    assert excinfo.value.status_code == 409


def test_create_member_validates_email(session):
    with pytest.raises(HappeningsError) as excinfo:
        crud.create_member(session, display_name="Ada", email="nope")
    assert excinfo.value.code == "INVALID_EMAIL"


def test_events_start_as_drafts_with_unique_slugs(session, host):
    first = crud.create_event(session, host, title="Song Circle", event_date="2030-05-05")
    second = crud.create_event(session, host, title="Song Circle", event_date="2030-05-12")
    session.commit()

    assert first.status == "draft"
    assert first.slug == "song-circle"
    assert second.slug.startswith("song-circle-")
    assert first.host_id == host.id


@pytest.mark.parametrize(
    "fields, code",
    [
        ({"title": "  "}, "MISSING_FIELDS"),
        ({"title": "X", "start_time": "7pm"}, "INVALID_TIME"),
        ({"title": "X", "event_date": "05/05/2030"}, "INVALID_DATE_KEY"),
        ({"title": "X", "day_of_week": "Funday"}, "INVALID_SCHEDULE"),
        ({"title": "X", "visibility": "secret"}, "INVALID_VISIBILITY"),
        ({"title": "X", "has_timeslots": True}, "INVALID_SLOT_CONFIG"),
    ],
)
def test_create_event_validation(session, host, fields, code):
    with pytest.raises(HappeningsError) as excinfo:
        crud.create_event(session, host, **fields)
    assert excinfo.value.code == code


def test_publish_requires_an_expandable_schedule(session, host):
    event = crud.create_event(session, host, title="Someday", recurrence_rule="sometimes")
    with pytest.raises(HappeningsError) as excinfo:
        crud.publish_event(session, event)
    assert excinfo.value.code == "INVALID_SCHEDULE"

    crud.update_event(session, event, {"recurrence_rule": "weekly", "day_of_week": "Friday"})
    crud.publish_event(session, event)
    assert event.status == "published"
    assert event.published_at is not None

    with pytest.raises(HappeningsError) as again:
        crud.publish_event(session, event)
    assert again.value.code == "INVALID_STATUS"


def test_published_schedule_must_stay_expandable(session, make_event):
    event = make_event()
    with pytest.raises(HappeningsError) as excinfo:
        crud.update_event(session, event, {"recurrence_rule": "whenever"})
    assert excinfo.value.code == "INVALID_SCHEDULE"


def test_only_drafts_can_be_deleted(session, make_event):
    draft = make_event(publish=False)
    crud.delete_event(session, draft)
    session.commit()
    assert session.get(Event, draft.id) is None

    live = make_event()
    with pytest.raises(HappeningsError) as excinfo:
        crud.delete_event(session, live)
    assert excinfo.value.code == "EVENT_NOT_DRAFT"

    crud.cancel_event(session, live)
    assert live.status == "cancelled"


def test_public_listing_hides_drafts_and_invite_only(session, make_event):
    public = make_event(title="Public")
    make_event(title="Draft", publish=False)
    make_event(title="Private", visibility="invite_only")

    assert [e.id for e in crud.list_public_events(session)] == [public.id]


def test_cancelling_an_occurrence_keeps_signups(session, make_event, make_member):
    event = make_event(capacity=10)
    key = next_occurrence(event)
    rsvp = create_member_rsvp(session, event, make_member(), key)
    session.commit()

    override = crud.set_occurrence_status(
        session, event, key, cancelled=True, note="Venue flooded"
    )
    assert override.status == "cancelled"
    assert override.note == "Venue flooded"
    assert rsvp.status == "confirmed"

    rows = crud.list_occurrences(session, event, key, add_days(key, 14))
    assert [row["date_key"] for row in rows] == [key, add_days(key, 7), add_days(key, 14)]
    assert rows[0]["is_cancelled"] is True
    assert rows[0]["confirmed"] == 1
    assert rows[1]["is_cancelled"] is False

    restored = crud.set_occurrence_status(session, event, key, cancelled=False)
    assert restored.status == "normal"
    assert restored.note is None


def test_occurrence_status_needs_a_real_occurrence(session, make_event):
    event = make_event()
    key = next_occurrence(event)
    with pytest.raises(HappeningsError) as excinfo:
        crud.set_occurrence_status(session, event, add_days(key, 1), cancelled=True)
    assert excinfo.value.code == "INVALID_DATE_KEY"


def test_every_other_week_needs_a_first_date(session, host):
    event = crud.create_event(
        session, host, title="Fortnightly Jam", recurrence_rule="biweekly", day_of_week="Tuesday"
    )
    with pytest.raises(HappeningsError) as excinfo:
        crud.publish_event(session, event)
    assert excinfo.value.code == "INVALID_SCHEDULE"

    crud.update_event(session, event, {"event_date": "2030-01-01"})
    crud.publish_event(session, event)
    assert event.status == "published"
