from __future__ import annotations

import re

import pytest
from fastapi.testclient import TestClient

from happenings import api
from happenings.recurrence import add_days
from happenings.storage import fetch_root_token


@pytest.fixture()
def client(monkeypatch):
    """FastAPI test client with the scheduler disabled."""

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    with TestClient(api.app) as test_client:
        yield test_client


def _auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def _signup(client, name: str, email: str) -> dict:
    response = client.post("/api/members", json={"display_name": name, "email": email})
    assert response.status_code == 201
    return response.json()["member"]


def _published_event(client, token: str, **fields) -> dict:
    payload = {
        "title": "Tuesday Open Mic",
        "venue_name": "The Loft",
        "start_time": "19:00",
        "end_time": "21:00",
        "recurrence_rule": "weekly",
        "day_of_week": "Tuesday",
    }
    payload.update(fields)
    created = client.post("/api/events", json=payload, headers=_auth(token))
    assert created.status_code == 201
    event_id = created.json()["event"]["id"]
    published = client.post(f"/api/events/{event_id}/publish", headers=_auth(token))
    assert published.status_code == 200
    return published.json()["event"]


def test_member_signup_and_whoami(client):
    member = _signup(client, "Hal Host", "hal@example.com")
    assert member["api_token"]

    response = client.get("/api/members/me", headers=_auth(member["api_token"]))
    assert response.status_code == 200
    assert response.json()["member"]["email"] == "hal@example.com"
    assert "api_token" not in response.json()["member"]


def test_missing_or_bad_token_is_401(client):
    response = client.get("/api/members/me")
    assert response.status_code == 401
    assert response.json()["code"] == "UNAUTHENTICATED"

    response = client.get("/api/members/me", headers=_auth("bogus"))
    assert response.status_code == 401


def test_only_admins_create_admins(client):
    response = client.post(
        "/api/members",
        json={"display_name": "Sneaky", "email": "sneaky@example.com", "is_admin": True},
    )
    assert response.status_code == 403

    response = client.post(
        "/api/members",
        json={"display_name": "Ann Admin", "email": "ann@example.com", "is_admin": True},
        headers=_auth(fetch_root_token()),
    )
    assert response.status_code == 201
    assert response.json()["member"]["is_admin"] is True


def test_root_token_cannot_act_as_a_member(client):
    response = client.post(
        "/api/events", json={"title": "Rootfest"}, headers=_auth(fetch_root_token())
    )
    assert response.status_code == 400
    assert response.json()["code"] == "MEMBER_REQUIRED"


def test_event_lifecycle_over_http(client):
    host = _signup(client, "Hal Host", "hal@example.com")
    created = client.post(
        "/api/events",
        json={"title": "Poetry Night", "recurrence_rule": "weekly", "day_of_week": "Friday"},
        headers=_auth(host["api_token"]),
    )
    assert created.status_code == 201
    event = created.json()["event"]
    assert event["status"] == "draft"
    assert event["recurrence_label"] == "Every Friday"

    # Drafts are hidden from everyone but their hosts.
    assert client.get(f"/api/events/{event['id']}").status_code == 404
    assert client.get(f"/api/events/{event['id']}", headers=_auth(host["api_token"])).status_code == 200

    patched = client.patch(
        f"/api/events/{event['id']}",
        json={"capacity": 12, "venue_name": "Back Room"},
        headers=_auth(host["api_token"]),
    )
    assert patched.status_code == 200
    assert patched.json()["event"]["capacity"] == 12

    client.post(f"/api/events/{event['id']}/publish", headers=_auth(host["api_token"]))
    listed = client.get("/api/events").json()["events"]
    assert [e["id"] for e in listed] == [event["id"]]

    detail = client.get(f"/api/events/{event['id']}").json()["event"]
    assert detail["next_occurrence_summary"]["capacity"] == 12
    assert detail["hosts"][0]["member_id"] == host["id"]
    assert detail["is_host"] is False

    deleted = client.delete(f"/api/events/{event['id']}", headers=_auth(host["api_token"]))
    assert deleted.status_code == 409
    assert deleted.json()["code"] == "EVENT_NOT_DRAFT"


def test_non_hosts_cannot_edit(client):
    host = _signup(client, "Hal Host", "hal@example.com")
    other = _signup(client, "Olive Other", "olive@example.com")
    event = _published_event(client, host["api_token"])

    response = client.patch(
        f"/api/events/{event['id']}", json={"title": "Mine now"}, headers=_auth(other["api_token"])
    )
    assert response.status_code == 403
    assert response.json()["code"] == "FORBIDDEN"


def test_rsvp_waitlist_and_offer_over_http(client, outbox):
    host = _signup(client, "Hal Host", "hal@example.com")
    first = _signup(client, "Fay First", "fay@example.com")
    second = _signup(client, "Sam Second", "sam@example.com")
    event = _published_event(client, host["api_token"], capacity=1)
    url = f"/api/events/{event['id']}/rsvp"

    taken = client.post(url, json={}, headers=_auth(first["api_token"]))
    assert taken.status_code == 201
    assert taken.json()["rsvp"]["status"] == "confirmed"
    date_key = taken.json()["rsvp"]["date_key"]
    assert date_key == event["next_occurrence"]

    queued = client.post(url, json={}, headers=_auth(second["api_token"]))
    assert queued.json()["rsvp"]["status"] == "waitlist"
    assert queued.json()["rsvp"]["waitlist_position"] == 1
    assert queued.json()["summary"]["waitlist"] == 1

    duplicate = client.post(url, json={}, headers=_auth(second["api_token"]))
    assert duplicate.status_code == 409
    assert duplicate.json()["code"] == "ALREADY_RSVPD"

    cancelled = client.delete(url, params={"date_key": date_key}, headers=_auth(first["api_token"]))
    assert cancelled.json()["rsvp"]["status"] == "cancelled"

    mine = client.get(url, params={"date_key": date_key}, headers=_auth(second["api_token"]))
    assert mine.json()["rsvp"]["status"] == "offered"
    assert any(mail["to"] == "sam@example.com" and "spot opened up" in mail["subject"] for mail in outbox)

    accepted = client.patch(url, json={"date_key": date_key}, headers=_auth(second["api_token"]))
    assert accepted.status_code == 200
    assert accepted.json()["rsvp"]["status"] == "confirmed"


def test_rsvp_date_key_errors(client):
    host = _signup(client, "Hal Host", "hal@example.com")
    member = _signup(client, "Mo Member", "mo@example.com")
    event = _published_event(client, host["api_token"])
    url = f"/api/events/{event['id']}/rsvp"

    bad = client.post(url, json={"date_key": "soon"}, headers=_auth(member["api_token"]))
    assert bad.status_code == 400
    assert bad.json()["code"] == "INVALID_DATE_KEY"

    off_day = add_days(event["next_occurrence"], 1)
    wrong = client.post(url, json={"date_key": off_day}, headers=_auth(member["api_token"]))
    assert wrong.json()["code"] == "INVALID_DATE_KEY"

    past = client.post(url, json={"date_key": "2020-01-07"}, headers=_auth(member["api_token"]))
    assert past.json()["code"] == "OCCURRENCE_PAST"

    cancelled_key = add_days(event["next_occurrence"], 7)
    response = client.post(
        f"/api/events/{event['id']}/occurrences/{cancelled_key}/cancel",
        json={"note": "Holiday"},
        headers=_auth(host["api_token"]),
    )
    assert response.json() == {"date_key": cancelled_key, "status": "cancelled", "note": "Holiday"}
    blocked = client.post(url, json={"date_key": cancelled_key}, headers=_auth(member["api_token"]))
    assert blocked.status_code == 409
    assert blocked.json()["code"] == "OCCURRENCE_CANCELLED"

    occurrences = client.get(
        f"/api/events/{event['id']}/occurrences",
        params={"start": event["next_occurrence"], "end": cancelled_key},
    ).json()["occurrences"]
    assert [o["is_cancelled"] for o in occurrences] == [False, True]


def test_attendee_list_is_for_hosts(client):
    host = _signup(client, "Hal Host", "hal@example.com")
    member = _signup(client, "Mo Member", "mo@example.com")
    event = _published_event(client, host["api_token"])
    client.post(f"/api/events/{event['id']}/rsvp", json={}, headers=_auth(member["api_token"]))

    denied = client.get(f"/api/events/{event['id']}/attendees", headers=_auth(member["api_token"]))
    assert denied.status_code == 403

    listed = client.get(f"/api/events/{event['id']}/attendees", headers=_auth(host["api_token"]))
    attendees = listed.json()["attendees"]
    assert [a["email"] for a in attendees] == ["mo@example.com"]

    removed = client.delete(
        f"/api/events/{event['id']}/attendees/{attendees[0]['id']}",
        headers=_auth(host["api_token"]),
    )
    assert removed.json()["rsvp"]["status"] == "cancelled"


def test_lineup_claims_over_http(client):
    host = _signup(client, "Hal Host", "hal@example.com")
    first = _signup(client, "Fay First", "fay@example.com")
    second = _signup(client, "Sam Second", "sam@example.com")
    event = _published_event(
        client, host["api_token"], has_timeslots=True, total_slots=3, slot_duration_minutes=10
    )
    base = f"/api/events/{event['id']}"

    claim = client.post(f"{base}/timeslots/0/claim", json={}, headers=_auth(first["api_token"]))
    assert claim.status_code == 201
    assert claim.json()["claim"]["status"] == "confirmed"
    queued = client.post(f"{base}/timeslots/0/claim", json={}, headers=_auth(second["api_token"]))
    assert queued.json()["claim"]["status"] == "waitlist"

    public = client.get(f"{base}/timeslots").json()
    assert public["slots"][0]["holder"]["name"] == "Fay First"
    assert "email" not in public["slots"][0]["holder"]
    assert public["slots"][0]["waitlist_count"] == 1
    assert public["slots"][1]["start_label"] == "7:10 PM"

    claim_id = claim.json()["claim"]["id"]
    no_show = client.post(f"{base}/claims/{claim_id}/no-show", headers=_auth(host["api_token"]))
    assert no_show.json()["claim"]["status"] == "no_show"

    offered_id = queued.json()["claim"]["id"]
    confirmed = client.post(f"{base}/claims/{offered_id}/confirm", headers=_auth(second["api_token"]))
    assert confirmed.json()["claim"]["status"] == "confirmed"

    playing = client.put(
        f"{base}/lineup/now-playing", json={"slot_index": 0}, headers=_auth(host["api_token"])
    )
    assert playing.status_code == 200
    lineup = client.get(f"{base}/timeslots", headers=_auth(host["api_token"])).json()
    assert lineup["slots"][0]["is_now_playing"] is True
    assert lineup["slots"][0]["holder"]["email"] == "sam@example.com"


def test_invite_only_event_is_hidden_until_invited(client):
    host = _signup(client, "Hal Host", "hal@example.com")
    friend = _signup(client, "Fran Friend", "fran@example.com")
    event = _published_event(client, host["api_token"], visibility="invite_only")
    url = f"/api/events/{event['id']}"

    assert client.get(url, headers=_auth(friend["api_token"])).status_code == 404
    assert client.get("/api/events").json()["events"] == []

    created = client.post(
        f"{url}/attendee-invites", json={"email": "fran@example.com"}, headers=_auth(host["api_token"])
    )
    assert created.status_code == 201
    token = created.json()["token"]

    accepted = client.post(
        "/api/attendee-invites/accept", json={"token": token}, headers=_auth(friend["api_token"])
    )
    assert accepted.status_code == 200
    assert accepted.json()["event_id"] == event["id"]
    assert client.get(url, headers=_auth(friend["api_token"])).status_code == 200

    rsvp = client.post(f"{url}/rsvp", json={}, headers=_auth(friend["api_token"]))
    assert rsvp.status_code == 201

    invites = client.get(f"{url}/attendee-invites", headers=_auth(host["api_token"])).json()["invites"]
    assert [i["status"] for i in invites] == ["accepted"]


def test_cohost_invite_and_response(client):
    host = _signup(client, "Hal Host", "hal@example.com")
    cohost = _signup(client, "Cora Cohost", "cora@example.com")
    event = _published_event(client, host["api_token"])
    url = f"/api/events/{event['id']}/cohosts"

    invited = client.post(url, json={"email": "cora@example.com"}, headers=_auth(host["api_token"]))
    assert invited.status_code == 201
    assert invited.json()["host"]["invitation_status"] == "pending"

    responded = client.post(
        f"{url}/respond", json={"accept": True}, headers=_auth(cohost["api_token"])
    )
    assert responded.json()["host"]["invitation_status"] == "accepted"

    listed = client.get(url, headers=_auth(cohost["api_token"])).json()["hosts"]
    assert {h["member_id"] for h in listed} == {host["id"], cohost["id"]}

    left = client.delete(f"{url}/{host['id']}", headers=_auth(host["api_token"]))
    assert left.json()["promoted"] == cohost["id"]


def test_guest_rsvp_over_http(client, outbox):
    host = _signup(client, "Hal Host", "hal@example.com")
    event = _published_event(client, host["api_token"])

    requested = client.post(
        "/api/guest/rsvp/request-code",
        json={"event_id": event["id"], "guest_name": "Gina Guest", "guest_email": "gina@example.com"},
    )
    assert requested.status_code == 200
    body = requested.json()
    assert body["date_key"] == event["next_occurrence"]
    code = re.search(r"verification code is: (\w+)", outbox[-1]["body"]).group(1)

    wrong = client.post(
        "/api/guest/rsvp/verify-code",
        json={"verification_id": body["verification_id"], "code": "000000"},
    )
    assert wrong.status_code == 400
    assert wrong.json()["attempts_remaining"] == 4

    verified = client.post(
        "/api/guest/rsvp/verify-code",
        json={"verification_id": body["verification_id"], "code": code},
    )
    assert verified.status_code == 200
    assert verified.json()["rsvp"]["status"] == "confirmed"
    assert verified.json()["rsvp"]["is_guest"] is True

    cancelled = client.post(
        "/api/guest/action",
        json={"token": verified.json()["cancel_token"], "action": "cancel_rsvp"},
    )
    assert cancelled.json()["rsvp"]["status"] == "cancelled"


def test_guest_rate_limit_sets_retry_after(client):
    host = _signup(client, "Hal Host", "hal@example.com")
    event = _published_event(client, host["api_token"])
    payload = {"event_id": event["id"], "guest_name": "Gina Guest", "guest_email": "gina@example.com"}

    for _ in range(3):
        assert client.post("/api/guest/rsvp/request-code", json=payload).status_code == 200
    limited = client.post("/api/guest/rsvp/request-code", json=payload)
    assert limited.status_code == 429
    assert limited.headers["retry-after"] == "3600"


def test_guest_claim_over_http(client, outbox):
    host = _signup(client, "Hal Host", "hal@example.com")
    event = _published_event(
        client, host["api_token"], has_timeslots=True, total_slots=2, slot_duration_minutes=10
    )
    requested = client.post(
        "/api/guest/timeslot-claim/request-code",
        json={
            "event_id": event["id"],
            "guest_name": "Gus Guest",
            "guest_email": "gus@example.com",
            "slot_index": 1,
        },
    )
    assert requested.status_code == 200
    code = re.search(r"verification code is: (\w+)", outbox[-1]["body"]).group(1)

    verified = client.post(
        "/api/guest/timeslot-claim/verify-code",
        json={"verification_id": requested.json()["verification_id"], "code": code},
    )
    assert verified.status_code == 200
    assert verified.json()["claim"]["slot_index"] == 1


def test_occurrence_ics_download(client):
    host = _signup(client, "Hal Host", "hal@example.com")
    event = _published_event(client, host["api_token"], description="Bring a song")
    key = event["next_occurrence"]

    response = client.get(f"/api/events/{event['id']}/occurrences/{key}/event.ics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/calendar")
    assert f'filename="{event["slug"]}-{key}.ics"' in response.headers["content-disposition"]
    assert f"UID:{event['id']}-{key}@happenings" in response.text

    off_day = add_days(key, 1)
    missing = client.get(f"/api/events/{event['id']}/occurrences/{off_day}/event.ics")
    assert missing.status_code == 400


def test_validation_errors_use_error_shape(client):
    response = client.post("/api/members", json={"display_name": "No Email"})
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_ERROR"
