"""FastAPI application for Happenings."""

from __future__ import annotations

import logging
import tomllib
from contextlib import asynccontextmanager
from datetime import datetime
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
from typing import Any

from fastapi import Depends, FastAPI, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import guests, hosts, notifications, signups, timeslots
from .config import settings
from .crud import (
    cancel_event,
    create_event,
    create_member,
    delete_event,
    get_member_by_email,
    get_member_by_token,
    list_occurrences,
    list_public_events,
    publish_event,
    set_occurrence_status,
    update_event,
)
from .database import SessionLocal
from .errors import (
    AuthenticationRequired,
    EventNotFound,
    HappeningsError,
    InvalidDateKey,
    InvalidRequestError,
    NotFoundError,
    PermissionDenied,
)
from .ics import generate_occurrence_ics
from .models import RSVP, AttendeeInvite, Event, EventHost, Member, Meta, TimeslotClaim
from .recurrence import (
    describe_recurrence,
    is_occurrence,
    next_occurrence,
    read_date_key,
    resolve_date_key,
)
from .scheduler import start_scheduler, stop_scheduler
from .storage import init_db
from .utils import utcnow

# Use uvicorn's error logger so messages get the level prefix in the default log
# format (needed for downstream filtering like Loki).
logger = logging.getLogger("uvicorn.error")


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("happenings")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@asynccontextmanager
async def lifespan(_: FastAPI):
    init_db()
    if settings.enable_scheduler:
        start_scheduler()
    try:
        yield
    finally:
        stop_scheduler()


app = FastAPI(title="Happenings", version=APP_VERSION, lifespan=lifespan)


def get_db():
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# -------- error handling --------


@app.exception_handler(HappeningsError)
async def happenings_error_handler(request: Request, exc: HappeningsError):
    headers = None
    if exc.extra.get("retry_after"):
        headers = {"Retry-After": str(exc.extra["retry_after"])}
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


@app.exception_handler(OperationalError)
async def operational_error_handler(request: Request, exc: OperationalError):
    raw = str(exc.orig) if getattr(exc, "orig", None) else str(exc)
    if "database is locked" in raw.lower():
        logger.error(
            "SQLite database is locked while handling %s %s",
            request.method,
            request.url.path,
        )
        return JSONResponse(
            {
                "error": "The database is busy at the moment. Please wait a few seconds and try again.",
                "code": "DATABASE_BUSY",
            },
            status_code=503,
        )
    logger.error(
        "Operational database error on %s %s: %s",
        request.method,
        request.url.path,
        raw,
    )
    return JSONResponse(
        {"error": "We hit a database issue. Please try again.", "code": "DATABASE_ERROR"},
        status_code=500,
    )


@app.exception_handler(IntegrityError)
async def integrity_error_handler(request: Request, exc: IntegrityError):
    logger.info(
        "Constraint violation on %s %s: %s", request.method, request.url.path, exc.orig
    )
    return JSONResponse(
        {"error": "That conflicts with a change someone else just made", "code": "CONFLICT"},
        status_code=409,
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {
            "error": "Some of the fields were invalid",
            "code": "VALIDATION_ERROR",
            "detail": exc.errors(),
        },
        status_code=422,
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    return JSONResponse({"error": "Internal server error"}, status_code=500)


# -------- request payloads --------


class MemberCreatePayload(BaseModel):
    display_name: str
    email: str
    is_admin: bool = False


class EventCreatePayload(BaseModel):
    title: str
    description: str | None = None
    venue_name: str | None = None
    venue_address: str | None = None
    start_time: str | None = Field(None, description="Local HH:MM")
    end_time: str | None = Field(None, description="Local HH:MM")
    event_date: str | None = Field(None, description="YYYY-MM-DD")
    day_of_week: str | None = None
    recurrence_rule: str | None = None
    recurrence_end_date: str | None = None
    max_occurrences: int | None = Field(None, ge=1)
    custom_dates: list[str] | None = None
    capacity: int | None = Field(None, ge=1)
    has_timeslots: bool = False
    total_slots: int | None = Field(None, ge=1)
    slot_duration_minutes: int | None = None
    slot_offer_window_minutes: int | None = None
    visibility: str = "public"


class EventUpdatePayload(BaseModel):
    title: str | None = None
    description: str | None = None
    venue_name: str | None = None
    venue_address: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    event_date: str | None = None
    day_of_week: str | None = None
    recurrence_rule: str | None = None
    recurrence_end_date: str | None = None
    max_occurrences: int | None = Field(None, ge=1)
    custom_dates: list[str] | None = None
    capacity: int | None = Field(None, ge=1)
    has_timeslots: bool | None = None
    total_slots: int | None = Field(None, ge=1)
    slot_duration_minutes: int | None = None
    slot_offer_window_minutes: int | None = None
    visibility: str | None = None


class OccurrenceStatusPayload(BaseModel):
    note: str | None = None


class RSVPCreatePayload(BaseModel):
    date_key: str | None = None
    notes: str | None = None


class DateKeyPayload(BaseModel):
    date_key: str | None = None


class NowPlayingPayload(BaseModel):
    date_key: str | None = None
    slot_index: int | None = None


class CohostInvitePayload(BaseModel):
    member_id: str | None = None
    email: str | None = None


class CohostResponsePayload(BaseModel):
    accept: bool


class AttendeeInvitePayload(BaseModel):
    member_id: str | None = None
    email: str | None = None


class AttendeeInviteUpdatePayload(BaseModel):
    invite_id: str
    action: str = "revoke"


class InviteAcceptPayload(BaseModel):
    token: str | None = None
    invite_id: str | None = None


class GuestRSVPCodePayload(BaseModel):
    event_id: str
    guest_name: str
    guest_email: str
    date_key: str | None = None


class GuestClaimCodePayload(BaseModel):
    event_id: str
    guest_name: str
    guest_email: str
    slot_index: int = Field(..., ge=0)
    date_key: str | None = None


class VerifyCodePayload(BaseModel):
    verification_id: str
    code: str
    notes: str | None = None


class GuestActionPayload(BaseModel):
    token: str
    action: str


# -------- auth helpers --------


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def _is_root_token(db: Session, token: str | None) -> bool:
    if not token:
        return False
    meta = db.get(Meta, settings.root_token_key)
    return meta is not None and meta.value == token


def _root_actor() -> Member:
    # Never added to the session; only carries admin rights.
    return Member(id=None, display_name="Site admin", email="", is_admin=True)


def _optional_member(request: Request, db: Session) -> Member | None:
    token = _get_bearer_token(request)
    if _is_root_token(db, token):
        return _root_actor()
    return get_member_by_token(db, token)


def _require_member(request: Request, db: Session) -> Member:
    """Return the calling member (or the root admin) or raise 401."""
    member = _optional_member(request, db)
    if member is None:
        raise AuthenticationRequired()
    return member


def _require_real_member(request: Request, db: Session) -> Member:
    member = _require_member(request, db)
    if member.id is None:
        raise InvalidRequestError(
            "Use a member token for this action", code="MEMBER_REQUIRED"
        )
    return member


def _ensure_event(db: Session, event_id: str, viewer: Member | None = None) -> Event:
    event = db.get(Event, event_id)
    if event is None or not hosts.can_view(db, event, viewer):
        raise EventNotFound()
    return event


def _read_occurrence(event: Event, date_key: str | None) -> str:
    key = read_date_key(event, date_key)
    if date_key and not is_occurrence(event, key):
        raise InvalidDateKey("That date is not an occurrence of this event")
    return key


# -------- serializers --------


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _serialize_member(member: Member, *, include_token: bool = False) -> dict:
    data = {
        "id": member.id,
        "display_name": member.display_name,
        "email": member.email,
        "is_admin": member.is_admin,
        "no_show_count": member.no_show_count,
        "created_at": _iso(member.created_at),
    }
    if include_token:
        data["api_token"] = member.api_token
    return data


def _serialize_event(event: Event) -> dict:
    return {
        "id": event.id,
        "slug": event.slug,
        "title": event.title,
        "description": event.description,
        "venue_name": event.venue_name,
        "venue_address": event.venue_address,
        "start_time": event.start_time,
        "end_time": event.end_time,
        "event_date": event.event_date,
        "day_of_week": event.day_of_week,
        "recurrence_rule": event.recurrence_rule,
        "recurrence_end_date": event.recurrence_end_date,
        "max_occurrences": event.max_occurrences,
        "custom_dates": event.custom_dates,
        "recurrence_label": describe_recurrence(event),
        "next_occurrence": next_occurrence(event),
        "capacity": event.capacity,
        "has_timeslots": event.has_timeslots,
        "total_slots": event.total_slots,
        "slot_duration_minutes": event.slot_duration_minutes,
        "slot_offer_window_minutes": event.slot_offer_window_minutes,
        "visibility": event.visibility,
        "status": event.status,
        "host_id": event.host_id,
        "published_at": _iso(event.published_at),
        "cancelled_at": _iso(event.cancelled_at),
        "created_at": _iso(event.created_at),
        "updated_at": _iso(event.updated_at),
    }


def _serialize_rsvp(rsvp: RSVP, *, include_email: bool = False) -> dict:
    data = {
        "id": rsvp.id,
        "event_id": rsvp.event_id,
        "date_key": rsvp.date_key,
        "member_id": rsvp.member_id,
        "name": rsvp.display_name,
        "is_guest": rsvp.is_guest,
        "status": rsvp.status,
        "waitlist_position": rsvp.waitlist_position,
        "offer_expires_at": _iso(rsvp.offer_expires_at),
        "notes": rsvp.notes,
        "created_at": _iso(rsvp.created_at),
    }
    if include_email:
        data["email"] = rsvp.contact_email
    return data


def _serialize_claim(claim: TimeslotClaim, *, include_email: bool = False) -> dict:
    data = {
        "id": claim.id,
        "timeslot_id": claim.timeslot_id,
        "slot_index": claim.timeslot.slot_index if claim.timeslot else None,
        "event_id": claim.event_id,
        "date_key": claim.date_key,
        "member_id": claim.member_id,
        "name": claim.display_name,
        "is_guest": claim.member_id is None,
        "status": claim.status,
        "waitlist_position": claim.waitlist_position,
        "offer_expires_at": _iso(claim.offer_expires_at),
        "created_at": _iso(claim.created_at),
    }
    if include_email:
        data["email"] = claim.contact_email
    return data


def _serialize_lineup(lineup: dict, *, include_email: bool = False) -> dict:
    slots = []
    for entry in lineup["slots"]:
        slot = entry["slot"]
        holder = entry["holder"]
        slots.append(
            {
                "id": slot.id,
                "slot_index": slot.slot_index,
                "start_offset_minutes": slot.start_offset_minutes,
                "duration_minutes": slot.duration_minutes,
                "start_label": entry["start_label"],
                "end_label": entry["end_label"],
                "is_now_playing": entry["is_now_playing"],
                "holder": (
                    _serialize_claim(holder, include_email=include_email)
                    if holder
                    else None
                ),
                "waitlist_count": len(entry["waitlist"]),
                "waitlist": [
                    _serialize_claim(claim, include_email=include_email)
                    for claim in entry["waitlist"]
                ]
                if include_email
                else [],
                "no_shows": len(entry["no_shows"]),
            }
        )
    return {"date_key": lineup["date_key"], "slots": slots}


def _serialize_host(row: EventHost) -> dict:
    return {
        "member_id": row.member_id,
        "display_name": row.member.display_name if row.member else None,
        "role": row.role,
        "invitation_status": row.invitation_status,
        "invited_by": row.invited_by,
        "responded_at": _iso(row.responded_at),
        "created_at": _iso(row.created_at),
    }


def _serialize_invite(invite: AttendeeInvite, *, now: datetime | None = None) -> dict:
    return {
        "id": invite.id,
        "event_id": invite.event_id,
        "member_id": invite.member_id,
        "email": invite.email,
        "status": hosts.effective_status(invite, now=now),
        "invited_by": invite.invited_by,
        "expires_at": _iso(invite.expires_at),
        "accepted_at": _iso(invite.accepted_at),
        "declined_at": _iso(invite.declined_at),
        "revoked_at": _iso(invite.revoked_at),
        "created_at": _iso(invite.created_at),
    }


def _is_manager(db: Session, event: Event, member: Member | None) -> bool:
    return member is not None and (member.is_admin or hosts.is_host(db, event, member))


# -------- members --------


@app.post("/api/members", status_code=201)
def api_create_member(
    payload: MemberCreatePayload, request: Request, db: Session = Depends(get_db)
):
    if payload.is_admin:
        caller = _optional_member(request, db)
        if caller is None or not caller.is_admin:
            raise PermissionDenied("Only admins can create admin members")
    member = create_member(
        db,
        display_name=payload.display_name,
        email=payload.email,
        is_admin=payload.is_admin,
    )
    return {"member": _serialize_member(member, include_token=True)}


@app.get("/api/members/me")
def api_whoami(request: Request, db: Session = Depends(get_db)):
    member = _require_real_member(request, db)
    return {"member": _serialize_member(member)}


# -------- events --------


@app.get("/api/events")
def api_list_events(
    limit: int | None = Query(None, ge=1, le=200), db: Session = Depends(get_db)
):
    return {"events": [_serialize_event(e) for e in list_public_events(db, limit)]}


@app.post("/api/events", status_code=201)
def api_create_event(
    payload: EventCreatePayload, request: Request, db: Session = Depends(get_db)
):
    member = _require_real_member(request, db)
    event = create_event(db, member, **payload.model_dump())
    return {"event": _serialize_event(event)}


@app.get("/api/events/{event_id}")
def api_get_event(event_id: str, request: Request, db: Session = Depends(get_db)):
    viewer = _optional_member(request, db)
    event = _ensure_event(db, event_id, viewer)
    data = _serialize_event(event)
    if data["next_occurrence"]:
        signups.process_expired_offers(db, event, data["next_occurrence"])
        data["next_occurrence_summary"] = signups.occurrence_summary(
            db, event, data["next_occurrence"]
        )
    data["hosts"] = [
        _serialize_host(row)
        for row in hosts.list_hosts(db, event)
        if row.invitation_status == "accepted"
    ]
    data["is_host"] = _is_manager(db, event, viewer)
    return {"event": data}


@app.patch("/api/events/{event_id}")
def api_update_event(
    event_id: str,
    payload: EventUpdatePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_host(db, event, member)
    event = update_event(db, event, payload.model_dump(exclude_unset=True))
    return {"event": _serialize_event(event)}


@app.delete("/api/events/{event_id}", status_code=204)
def api_delete_event(event_id: str, request: Request, db: Session = Depends(get_db)):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_primary_host(event, member)
    delete_event(db, event)
    return Response(status_code=204)


@app.post("/api/events/{event_id}/publish")
def api_publish_event(event_id: str, request: Request, db: Session = Depends(get_db)):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_host(db, event, member)
    return {"event": _serialize_event(publish_event(db, event))}


@app.post("/api/events/{event_id}/cancel")
def api_cancel_event(event_id: str, request: Request, db: Session = Depends(get_db)):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_host(db, event, member)
    return {"event": _serialize_event(cancel_event(db, event))}


# -------- occurrences --------


@app.get("/api/events/{event_id}/occurrences")
def api_list_occurrences(
    event_id: str,
    request: Request,
    start: str | None = Query(None),
    end: str | None = Query(None),
    db: Session = Depends(get_db),
):
    event = _ensure_event(db, event_id, _optional_member(request, db))
    signups.process_expired_offers(db, event)
    return {
        "event_id": event.id,
        "recurrence_label": describe_recurrence(event),
        "occurrences": list_occurrences(db, event, start, end),
    }


@app.post("/api/events/{event_id}/occurrences/{date_key}/cancel")
def api_cancel_occurrence(
    event_id: str,
    date_key: str,
    request: Request,
    payload: OccurrenceStatusPayload | None = None,
    db: Session = Depends(get_db),
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_host(db, event, member)
    override = set_occurrence_status(
        db,
        event,
        date_key,
        cancelled=True,
        note=payload.note if payload else None,
        actor_id=member.id,
    )
    return {"date_key": override.date_key, "status": override.status, "note": override.note}


@app.post("/api/events/{event_id}/occurrences/{date_key}/restore")
def api_restore_occurrence(
    event_id: str, date_key: str, request: Request, db: Session = Depends(get_db)
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_host(db, event, member)
    override = set_occurrence_status(
        db, event, date_key, cancelled=False, actor_id=member.id
    )
    return {"date_key": override.date_key, "status": override.status, "note": override.note}


@app.get("/api/events/{event_id}/occurrences/{date_key}/event.ics")
def api_occurrence_ics(
    event_id: str, date_key: str, request: Request, db: Session = Depends(get_db)
):
    """Serve one occurrence as a downloadable ICS file."""
    event = _ensure_event(db, event_id, _optional_member(request, db))
    key = _read_occurrence(event, date_key)
    filename = f"{event.slug}-{key}.ics"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return Response(
        content=generate_occurrence_ics(event, key),
        media_type="text/calendar",
        headers=headers,
    )


# -------- member RSVPs --------


@app.get("/api/events/{event_id}/rsvp")
def api_get_own_rsvp(
    event_id: str,
    request: Request,
    date_key: str | None = Query(None),
    db: Session = Depends(get_db),
):
    member = _require_real_member(request, db)
    event = _ensure_event(db, event_id, member)
    key = _read_occurrence(event, date_key)
    signups.process_expired_offers(db, event, key)
    rsvp = signups.find_member_rsvp(db, event.id, key, member.id)
    return {
        "date_key": key,
        "rsvp": _serialize_rsvp(rsvp) if rsvp else None,
        "summary": signups.occurrence_summary(db, event, key),
    }


@app.post("/api/events/{event_id}/rsvp", status_code=201)
def api_create_rsvp(
    event_id: str,
    request: Request,
    payload: RSVPCreatePayload | None = None,
    db: Session = Depends(get_db),
):
    member = _require_real_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_attendance_access(db, event, member)
    payload = payload or RSVPCreatePayload()
    key = resolve_date_key(db, event, payload.date_key)
    signups.process_expired_offers(db, event, key)
    rsvp = signups.create_member_rsvp(db, event, member, key, notes=payload.notes)
    notifications.send_rsvp_confirmation(event, rsvp)
    return {
        "rsvp": _serialize_rsvp(rsvp),
        "summary": signups.occurrence_summary(db, event, key),
    }


@app.patch("/api/events/{event_id}/rsvp")
def api_accept_rsvp_offer(
    event_id: str,
    request: Request,
    payload: DateKeyPayload | None = None,
    db: Session = Depends(get_db),
):
    member = _require_real_member(request, db)
    event = _ensure_event(db, event_id, member)
    key = _read_occurrence(event, payload.date_key if payload else None)
    rsvp = signups.find_member_rsvp(db, event.id, key, member.id)
    if rsvp is None:
        raise NotFoundError("You have no RSVP for this occurrence", code="RSVP_NOT_FOUND")
    rsvp = signups.accept_offer(db, rsvp)
    return {
        "rsvp": _serialize_rsvp(rsvp),
        "summary": signups.occurrence_summary(db, event, key),
    }


@app.delete("/api/events/{event_id}/rsvp")
def api_cancel_own_rsvp(
    event_id: str,
    request: Request,
    date_key: str | None = Query(None),
    db: Session = Depends(get_db),
):
    """Cancel the caller's RSVP; on an offered RSVP this declines the offer."""
    member = _require_real_member(request, db)
    event = _ensure_event(db, event_id, member)
    key = _read_occurrence(event, date_key)
    rsvp = signups.find_member_rsvp(db, event.id, key, member.id)
    if rsvp is None:
        raise NotFoundError("You have no RSVP for this occurrence", code="RSVP_NOT_FOUND")
    rsvp = signups.cancel_rsvp(db, rsvp)
    return {
        "rsvp": _serialize_rsvp(rsvp),
        "summary": signups.occurrence_summary(db, event, key),
    }


@app.get("/api/events/{event_id}/attendees")
def api_list_attendees(
    event_id: str,
    request: Request,
    date_key: str | None = Query(None),
    db: Session = Depends(get_db),
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_host(db, event, member)
    key = _read_occurrence(event, date_key)
    signups.process_expired_offers(db, event, key)
    return {
        "date_key": key,
        "attendees": [
            _serialize_rsvp(rsvp, include_email=True)
            for rsvp in signups.list_occurrence_rsvps(db, event, key)
        ],
        "summary": signups.occurrence_summary(db, event, key),
    }


@app.delete("/api/events/{event_id}/attendees/{rsvp_id}")
def api_remove_attendee(
    event_id: str, rsvp_id: str, request: Request, db: Session = Depends(get_db)
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_host(db, event, member)
    rsvp = db.get(RSVP, rsvp_id)
    if rsvp is None or rsvp.event_id != event.id:
        raise NotFoundError("RSVP not found", code="RSVP_NOT_FOUND")
    rsvp = signups.cancel_rsvp(db, rsvp)
    logger.info("Host %s removed RSVP %s", member.id, rsvp.id)
    return {
        "rsvp": _serialize_rsvp(rsvp, include_email=True),
        "summary": signups.occurrence_summary(db, event, rsvp.date_key),
    }


# -------- timeslots --------


@app.get("/api/events/{event_id}/timeslots")
def api_get_lineup(
    event_id: str,
    request: Request,
    date_key: str | None = Query(None),
    db: Session = Depends(get_db),
):
    viewer = _optional_member(request, db)
    event = _ensure_event(db, event_id, viewer)
    key = _read_occurrence(event, date_key)
    timeslots.process_expired_claim_offers(db, event, key)
    lineup = timeslots.get_lineup(db, event, key)
    return _serialize_lineup(lineup, include_email=_is_manager(db, event, viewer))


@app.post("/api/events/{event_id}/timeslots/{slot_index}/claim", status_code=201)
def api_claim_slot(
    event_id: str,
    slot_index: int,
    request: Request,
    payload: DateKeyPayload | None = None,
    db: Session = Depends(get_db),
):
    member = _require_real_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_attendance_access(db, event, member)
    key = resolve_date_key(db, event, payload.date_key if payload else None)
    timeslots.process_expired_claim_offers(db, event, key)
    claim = timeslots.claim_slot(db, event, key, slot_index, member=member)
    notifications.send_claim_confirmation(
        event,
        claim,
        slot_index=slot_index,
        start_offset_minutes=claim.timeslot.start_offset_minutes,
    )
    return {"claim": _serialize_claim(claim)}


@app.delete("/api/events/{event_id}/timeslots/{slot_index}/claim")
def api_release_own_claim(
    event_id: str,
    slot_index: int,
    request: Request,
    date_key: str | None = Query(None),
    db: Session = Depends(get_db),
):
    member = _require_real_member(request, db)
    event = _ensure_event(db, event_id, member)
    key = _read_occurrence(event, date_key)
    claim = timeslots.find_open_claim(db, event.id, key, member_id=member.id)
    if claim is None or claim.timeslot.slot_index != slot_index:
        raise NotFoundError("You have no claim on this slot", code="CLAIM_NOT_FOUND")
    claim = timeslots.release_claim(db, claim, actor_id=member.id)
    return {"claim": _serialize_claim(claim)}


@app.post("/api/events/{event_id}/claims/{claim_id}/confirm")
def api_accept_claim_offer(
    event_id: str, claim_id: str, request: Request, db: Session = Depends(get_db)
):
    member = _require_real_member(request, db)
    event = _ensure_event(db, event_id, member)
    claim = timeslots.get_claim(db, event, claim_id)
    if claim.member_id != member.id:
        raise PermissionDenied("This claim belongs to someone else")
    claim = timeslots.accept_claim_offer(db, claim)
    return {"claim": _serialize_claim(claim)}


@app.post("/api/events/{event_id}/claims/{claim_id}/no-show")
def api_mark_no_show(
    event_id: str, claim_id: str, request: Request, db: Session = Depends(get_db)
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_host(db, event, member)
    claim = timeslots.mark_no_show(
        db, timeslots.get_claim(db, event, claim_id), actor_id=member.id
    )
    return {"claim": _serialize_claim(claim, include_email=True)}


@app.post("/api/events/{event_id}/claims/{claim_id}/performed")
def api_mark_performed(
    event_id: str, claim_id: str, request: Request, db: Session = Depends(get_db)
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_host(db, event, member)
    claim = timeslots.mark_performed(
        db, timeslots.get_claim(db, event, claim_id), actor_id=member.id
    )
    return {"claim": _serialize_claim(claim, include_email=True)}


@app.delete("/api/events/{event_id}/claims/{claim_id}")
def api_remove_claim(
    event_id: str, claim_id: str, request: Request, db: Session = Depends(get_db)
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_host(db, event, member)
    claim = timeslots.release_claim(
        db, timeslots.get_claim(db, event, claim_id), actor_id=member.id
    )
    return {"claim": _serialize_claim(claim, include_email=True)}


@app.put("/api/events/{event_id}/lineup/now-playing")
def api_set_now_playing(
    event_id: str,
    payload: NowPlayingPayload,
    request: Request,
    db: Session = Depends(get_db),
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_host(db, event, member)
    key = resolve_date_key(db, event, payload.date_key, allow_past=True)
    state = timeslots.set_now_playing(
        db, event, key, payload.slot_index, actor_id=member.id
    )
    return {"date_key": key, "now_playing_timeslot_id": state.now_playing_timeslot_id}


# -------- co-hosts --------


@app.get("/api/events/{event_id}/cohosts")
def api_list_cohosts(event_id: str, request: Request, db: Session = Depends(get_db)):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    hosts.require_host(db, event, member)
    return {"hosts": [_serialize_host(row) for row in hosts.list_hosts(db, event)]}


@app.post("/api/events/{event_id}/cohosts", status_code=201)
def api_invite_cohost(
    event_id: str,
    payload: CohostInvitePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    if payload.member_id:
        invitee = db.get(Member, payload.member_id)
    elif payload.email:
        invitee = get_member_by_email(db, payload.email)
    else:
        raise InvalidRequestError("Provide member_id or email", code="INVALID_INVITEE")
    if invitee is None:
        raise NotFoundError("Member not found", code="MEMBER_NOT_FOUND")
    row = hosts.invite_cohost(db, event, member, invitee)
    return {"host": _serialize_host(row)}


@app.post("/api/events/{event_id}/cohosts/respond")
def api_respond_cohost(
    event_id: str,
    payload: CohostResponsePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    member = _require_real_member(request, db)
    event = db.get(Event, event_id)
    if event is None:
        raise EventNotFound()
    row = hosts.respond_to_cohost_invite(db, event, member, accept=payload.accept)
    return {"host": _serialize_host(row)}


@app.delete("/api/events/{event_id}/cohosts/{member_id}")
def api_remove_cohost(
    event_id: str, member_id: str, request: Request, db: Session = Depends(get_db)
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    return hosts.remove_host(db, event, member, member_id)


# -------- attendee invites --------


@app.get("/api/events/{event_id}/attendee-invites")
def api_list_attendee_invites(
    event_id: str, request: Request, db: Session = Depends(get_db)
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    now = utcnow()
    invites = hosts.list_attendee_invites(db, event, member)
    return {"invites": [_serialize_invite(invite, now=now) for invite in invites]}


@app.post("/api/events/{event_id}/attendee-invites", status_code=201)
def api_create_attendee_invite(
    event_id: str,
    payload: AttendeeInvitePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    invite, token = hosts.create_attendee_invite(
        db, event, member, member_id=payload.member_id, email=payload.email
    )
    data: dict[str, Any] = {"invite": _serialize_invite(invite)}
    if token:
        data["token"] = token
    return data


@app.patch("/api/events/{event_id}/attendee-invites")
def api_update_attendee_invite(
    event_id: str,
    payload: AttendeeInviteUpdatePayload,
    request: Request,
    db: Session = Depends(get_db),
):
    member = _require_member(request, db)
    event = _ensure_event(db, event_id, member)
    if payload.action != "revoke":
        raise InvalidRequestError("Unsupported invite action", code="INVALID_ACTION")
    invite = hosts.revoke_attendee_invite(db, event, member, payload.invite_id)
    return {"invite": _serialize_invite(invite)}


@app.post("/api/attendee-invites/accept")
def api_accept_attendee_invite(
    payload: InviteAcceptPayload, request: Request, db: Session = Depends(get_db)
):
    member = _require_real_member(request, db)
    invite = hosts.accept_attendee_invite(
        db, member, token=payload.token, invite_id=payload.invite_id
    )
    return {"invite": _serialize_invite(invite), "event_id": invite.event_id}


@app.post("/api/attendee-invites/{invite_id}/decline")
def api_decline_attendee_invite(
    invite_id: str, request: Request, db: Session = Depends(get_db)
):
    member = _require_real_member(request, db)
    invite = hosts.decline_attendee_invite(db, member, invite_id)
    return {"invite": _serialize_invite(invite)}


# -------- guests --------


def _guest_event(db: Session, event_id: str) -> Event:
    event = db.get(Event, event_id)
    if event is None or event.status == "draft":
        raise EventNotFound()
    return event


@app.post("/api/guest/rsvp/request-code")
def api_guest_rsvp_request_code(
    payload: GuestRSVPCodePayload, db: Session = Depends(get_db)
):
    event = _guest_event(db, payload.event_id)
    return guests.request_rsvp_code(
        db,
        event,
        guest_name=payload.guest_name,
        guest_email=payload.guest_email,
        date_key=payload.date_key,
    )


@app.post("/api/guest/rsvp/verify-code")
def api_guest_rsvp_verify_code(payload: VerifyCodePayload, db: Session = Depends(get_db)):
    result = guests.verify_rsvp_code(
        db, payload.verification_id, payload.code, notes=payload.notes
    )
    return {
        "success": True,
        "rsvp": _serialize_rsvp(result.rsvp),
        "cancel_token": result.cancel_token,
        "summary": signups.occurrence_summary(
            db, result.rsvp.event, result.rsvp.date_key
        ),
    }


@app.post("/api/guest/timeslot-claim/request-code")
def api_guest_claim_request_code(
    payload: GuestClaimCodePayload, db: Session = Depends(get_db)
):
    event = _guest_event(db, payload.event_id)
    return guests.request_claim_code(
        db,
        event,
        guest_name=payload.guest_name,
        guest_email=payload.guest_email,
        slot_index=payload.slot_index,
        date_key=payload.date_key,
    )


@app.post("/api/guest/timeslot-claim/verify-code")
def api_guest_claim_verify_code(
    payload: VerifyCodePayload, db: Session = Depends(get_db)
):
    result = guests.verify_claim_code(db, payload.verification_id, payload.code)
    return {
        "success": True,
        "claim": _serialize_claim(result.claim),
        "cancel_token": result.cancel_token,
    }


@app.post("/api/guest/action")
def api_guest_action(payload: GuestActionPayload, db: Session = Depends(get_db)):
    result = guests.perform_action(db, payload.token, payload.action)
    data: dict[str, Any] = {
        "success": True,
        "action": result.action,
        "message": result.message,
    }
    if result.rsvp is not None:
        data["rsvp"] = _serialize_rsvp(result.rsvp)
    if result.claim is not None:
        data["claim"] = _serialize_claim(result.claim)
    return data
