"""Guest (non-member) signups gated by emailed one-time codes.

A guest asks for a code for one occurrence (and, for lineups, one slot). The
code is stored only as an HMAC, expires after ``code_expires_minutes`` and
allows ``max_code_attempts`` guesses before the email is locked out of the
event for ``lockout_minutes``. A correct code materializes the RSVP or claim
in the same transaction and returns a signed link the guest can later use to
cancel, or to accept a waitlist offer.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from . import notifications, signups, timeslots
from .config import settings
from .errors import (
    ConflictError,
    InvalidRequestError,
    NotFoundError,
    PermissionDenied,
    RateLimitedError,
)
from .models import RSVP, Event, GuestVerification, TimeslotClaim
from .recurrence import resolve_date_key
from .storage import get_token_secret
from .tokens import action_url, decode_action_token, issue_action_token
from .utils import is_valid_email, normalize_email, utcnow

logger = logging.getLogger("uvicorn.error")

CODE_CHARSET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 6
RATE_LIMIT_WINDOW = timedelta(hours=1)


@dataclass
class GuestSignup:
    verification: GuestVerification
    rsvp: RSVP | None = None
    claim: TimeslotClaim | None = None
    cancel_token: str | None = None


@dataclass
class ActionResult:
    action: str
    message: str
    rsvp: RSVP | None = None
    claim: TimeslotClaim | None = None


def generate_code() -> str:
    return "".join(secrets.choice(CODE_CHARSET) for _ in range(CODE_LENGTH))


def hash_code(db: Session, code: str) -> str:
    key = get_token_secret(db).encode("utf-8")
    return hmac.new(key, code.strip().upper().encode("utf-8"), "sha256").hexdigest()


def _clean_guest(guest_name: str | None, guest_email: str | None) -> tuple[str, str]:
    name = (guest_name or "").strip()
    email = normalize_email(guest_email)
    if not name or not email:
        raise InvalidRequestError("Name and email are required", code="MISSING_FIELDS")
    if len(name) < 2 or len(name) > 120:
        raise InvalidRequestError(
            "Please enter your name (at least 2 characters)", code="INVALID_NAME"
        )
    if not is_valid_email(email):
        raise InvalidRequestError("Please enter a valid email address", code="INVALID_EMAIL")
    return name, email


def _ensure_guest_event(event: Event) -> None:
    if event.status != "published":
        raise InvalidRequestError(
            "This event is not accepting signups", code="EVENT_NOT_PUBLISHED"
        )
    if event.visibility == "invite_only":
        raise PermissionDenied(
            "Guests cannot sign up for invite-only events", code="INVITE_ONLY"
        )


def _enforce_rate_limit(db: Session, email: str, now: datetime) -> None:
    recent = (
        db.scalar(
            select(func.count())
            .select_from(GuestVerification)
            .where(
                GuestVerification.email == email,
                GuestVerification.created_at >= now - RATE_LIMIT_WINDOW,
            )
        )
        or 0
    )
    if recent >= settings.max_codes_per_email_per_hour:
        raise RateLimitedError(
            "Too many code requests. Please try again later.",
            retry_after=int(RATE_LIMIT_WINDOW.total_seconds()),
        )


def _enforce_lockout(db: Session, email: str, event_id: str, now: datetime) -> None:
    locked_until = db.scalar(
        select(func.max(GuestVerification.locked_until)).where(
            GuestVerification.email == email,
            GuestVerification.event_id == event_id,
            GuestVerification.locked_until > now,
        )
    )
    if locked_until:
        raise RateLimitedError(
            "Too many failed attempts. Please try again later.",
            code="LOCKED_OUT",
            retry_after=max(int((locked_until - now).total_seconds()), 1),
        )


def _issue_code(
    db: Session,
    event: Event,
    *,
    kind: str,
    guest_name: str,
    email: str,
    date_key: str,
    slot_index: int | None,
    timeslot_id: str | None,
    now: datetime,
) -> dict:
    _enforce_rate_limit(db, email, now)
    _enforce_lockout(db, email, event.id, now)

    # Earlier unverified codes for the same attempt stop working.
    db.execute(
        update(GuestVerification)
        .where(
            GuestVerification.email == email,
            GuestVerification.event_id == event.id,
            GuestVerification.date_key == date_key,
            GuestVerification.kind == kind,
            GuestVerification.verified_at.is_(None),
        )
        .values(code_hash=None, code_expires_at=now)
        .execution_options(synchronize_session="fetch")
    )

    code = generate_code()
    verification = GuestVerification(
        email=email,
        guest_name=guest_name,
        event_id=event.id,
        date_key=date_key,
        kind=kind,
        slot_index=slot_index,
        timeslot_id=timeslot_id,
        code_hash=hash_code(db, code),
        code_expires_at=now + settings.code_lifetime,
        created_at=now,
    )
    db.add(verification)
    db.flush()
    logger.info(
        "Issued %s verification %s for %s on %s/%s",
        kind,
        verification.id,
        email,
        event.id,
        date_key,
    )
    notifications.send_verification_code(
        event, verification, code, expires_minutes=settings.code_expires_minutes
    )
    return {
        "success": True,
        "message": "Verification code sent to your email",
        "verification_id": verification.id,
        "expires_at": verification.code_expires_at.isoformat(),
        "date_key": date_key,
    }


def request_rsvp_code(
    db: Session,
    event: Event,
    *,
    guest_name: str | None,
    guest_email: str | None,
    date_key: str | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or utcnow()
    name, email = _clean_guest(guest_name, guest_email)
    _ensure_guest_event(event)
    effective_key = resolve_date_key(db, event, date_key, now=now)
    if signups.find_guest_rsvp(db, event.id, effective_key, email):
        raise ConflictError(
            "You have already RSVP'd to this occurrence", code="ALREADY_RSVPD"
        )
    return _issue_code(
        db,
        event,
        kind="rsvp",
        guest_name=name,
        email=email,
        date_key=effective_key,
        slot_index=None,
        timeslot_id=None,
        now=now,
    )


def request_claim_code(
    db: Session,
    event: Event,
    *,
    guest_name: str | None,
    guest_email: str | None,
    slot_index: int,
    date_key: str | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or utcnow()
    name, email = _clean_guest(guest_name, guest_email)
    _ensure_guest_event(event)
    effective_key = resolve_date_key(db, event, date_key, now=now)
    slot = timeslots.get_slot(db, event, effective_key, slot_index)
    if timeslots.slot_holder(db, slot.id) is not None:
        raise ConflictError(timeslots.SLOT_TAKEN, code="SLOT_TAKEN")
    if timeslots.find_open_claim(db, event.id, effective_key, guest_email=email):
        raise ConflictError("You already have a slot in this event", code="ALREADY_CLAIMED")
    return _issue_code(
        db,
        event,
        kind="timeslot",
        guest_name=name,
        email=email,
        date_key=effective_key,
        slot_index=slot_index,
        timeslot_id=slot.id,
        now=now,
    )


def _check_code(
    db: Session, verification_id: str | None, code: str | None, kind: str, now: datetime
) -> GuestVerification:
    if not verification_id or not code:
        raise InvalidRequestError(
            "verification_id and code are required", code="MISSING_FIELDS"
        )
    verification = db.get(GuestVerification, verification_id)
    if verification is None:
        raise InvalidRequestError("Invalid or expired code", code="INVALID_CODE")
    if verification.kind != kind:
        raise InvalidRequestError("Invalid verification type", code="INVALID_VERIFICATION")
    if verification.verified_at is not None:
        raise InvalidRequestError("Code already used", code="CODE_USED")
    if verification.locked_until and verification.locked_until > now:
        raise RateLimitedError(
            "Too many failed attempts. Please try again later.",
            code="LOCKED_OUT",
            retry_after=max(int((verification.locked_until - now).total_seconds()), 1),
        )
    if verification.code_attempts >= settings.max_code_attempts:
        raise InvalidRequestError(
            "Too many failed attempts. Please request a new code.",
            code="CODE_INVALIDATED",
        )
    if (
        not verification.code_hash
        or verification.code_expires_at is None
        or verification.code_expires_at <= now
    ):
        raise InvalidRequestError(
            "Code expired. Please request a new one.", code="CODE_EXPIRED"
        )

    if hmac.compare_digest(hash_code(db, code), verification.code_hash):
        return verification

    verification.code_attempts += 1
    remaining = settings.max_code_attempts - verification.code_attempts
    if remaining <= 0:
        verification.locked_until = now + settings.lockout
        db.commit()
        logger.info("Verification %s locked after too many attempts", verification.id)
        raise RateLimitedError(
            "Too many failed attempts. Please try again later.",
            code="LOCKED_OUT",
            retry_after=settings.lockout_minutes * 60,
        )
    # Count the failed guess even though the request fails.
    db.commit()
    raise InvalidRequestError(
        "Invalid code", code="INVALID_CODE", attempts_remaining=remaining
    )


def _load_writable_event(
    db: Session, verification: GuestVerification, now: datetime
) -> Event:
    event = db.get(Event, verification.event_id)
    if event is None:
        raise NotFoundError("Event not found", code="EVENT_NOT_FOUND")
    _ensure_guest_event(event)
    # The occurrence may have been cancelled or passed since the code was sent.
    resolve_date_key(db, event, verification.date_key, now=now)
    return event


def verify_rsvp_code(
    db: Session,
    verification_id: str | None,
    code: str | None,
    *,
    notes: str | None = None,
    now: datetime | None = None,
) -> GuestSignup:
    now = now or utcnow()
    verification = _check_code(db, verification_id, code, "rsvp", now)
    event = _load_writable_event(db, verification, now)
    rsvp = signups.create_guest_rsvp(
        db,
        event,
        verification.date_key,
        guest_name=verification.guest_name,
        guest_email=verification.email,
        notes=notes,
    )
    verification.verified_at = now
    verification.code_hash = None
    verification.rsvp_id = rsvp.id
    db.flush()
    token = issue_action_token(
        db,
        verification,
        "cancel_rsvp",
        expires_in=timedelta(days=settings.rsvp_cancel_token_days),
        now=now,
    )
    notifications.send_rsvp_confirmation(event, rsvp, cancel_url=action_url(token))
    return GuestSignup(verification=verification, rsvp=rsvp, cancel_token=token)


def verify_claim_code(
    db: Session,
    verification_id: str | None,
    code: str | None,
    *,
    now: datetime | None = None,
) -> GuestSignup:
    now = now or utcnow()
    verification = _check_code(db, verification_id, code, "timeslot", now)
    event = _load_writable_event(db, verification, now)
    claim = timeslots.claim_slot(
        db,
        event,
        verification.date_key,
        verification.slot_index,
        guest_name=verification.guest_name,
        guest_email=verification.email,
        allow_waitlist=False,
    )
    verification.verified_at = now
    verification.code_hash = None
    verification.claim_id = claim.id
    verification.timeslot_id = claim.timeslot_id
    db.flush()
    token = issue_action_token(
        db,
        verification,
        "cancel",
        expires_in=timedelta(days=settings.rsvp_cancel_token_days),
        now=now,
    )
    notifications.send_claim_confirmation(
        event,
        claim,
        slot_index=claim.timeslot.slot_index,
        start_offset_minutes=claim.timeslot.start_offset_minutes,
        cancel_url=action_url(token),
    )
    return GuestSignup(verification=verification, claim=claim, cancel_token=token)


def perform_action(
    db: Session, token: str | None, action: str | None, *, now: datetime | None = None
) -> ActionResult:
    """Apply a guest's emailed cancel/confirm link."""
    if not token or not action:
        raise InvalidRequestError("token and action are required", code="MISSING_FIELDS")
    payload = decode_action_token(db, token)
    if payload["action"] != action:
        raise InvalidRequestError("Token action mismatch", code="ACTION_MISMATCH")
    verification = db.get(GuestVerification, payload["sub"])
    if verification is None:
        raise NotFoundError("Verification not found", code="VERIFICATION_NOT_FOUND")
    email = normalize_email(payload.get("email"))
    if email != verification.email:
        raise PermissionDenied("This link does not belong to you")
    if verification.token_used and action != "confirm":
        raise InvalidRequestError("This link has already been used", code="TOKEN_USED")

    rsvp = None
    claim = None
    if payload.get("rsvp_id"):
        rsvp = db.get(RSVP, payload["rsvp_id"])
        if rsvp is None:
            raise NotFoundError("RSVP not found", code="RSVP_NOT_FOUND")
        if rsvp.guest_email != email:
            raise PermissionDenied("This link does not belong to you")
    elif payload.get("claim_id"):
        claim = db.get(TimeslotClaim, payload["claim_id"])
        if claim is None:
            raise NotFoundError("Claim not found", code="CLAIM_NOT_FOUND")
        if claim.guest_email != email:
            raise PermissionDenied("This link does not belong to you")
    else:
        raise InvalidRequestError("Invalid or malformed link", code="INVALID_TOKEN")

    if action == "cancel_rsvp":
        if rsvp is None:
            raise InvalidRequestError("Token action mismatch", code="ACTION_MISMATCH")
        signups.cancel_rsvp(db, rsvp, now=now)
        verification.token_used = True
        db.flush()
        return ActionResult(action=action, message="Your RSVP has been cancelled", rsvp=rsvp)

    if action == "cancel":
        if claim is None:
            raise InvalidRequestError("Token action mismatch", code="ACTION_MISMATCH")
        timeslots.release_claim(db, claim, now=now)
        verification.token_used = True
        db.flush()
        return ActionResult(action=action, message="Your slot has been released", claim=claim)

    if rsvp is not None:
        signups.accept_offer(db, rsvp, now=now)
        return ActionResult(action=action, message="Your spot is confirmed", rsvp=rsvp)
    timeslots.accept_claim_offer(db, claim, now=now)
    return ActionResult(action=action, message="Your slot is confirmed", claim=claim)


def purge_stale_verifications(db: Session, *, now: datetime | None = None) -> int:
    """Delete unverified attempts older than ``verification_retention_days``."""
    cutoff = (now or utcnow()) - timedelta(days=settings.verification_retention_days)
    result = db.execute(
        delete(GuestVerification)
        .where(
            GuestVerification.verified_at.is_(None),
            GuestVerification.created_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0
