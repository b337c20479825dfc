"""Signed, expiring links that let guests act on their signup by email."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from urllib.parse import urlencode

from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session

from .config import settings
from .errors import InvalidRequestError
from .models import GuestVerification
from .storage import get_token_secret
from .utils import utcnow

ALGORITHM = "HS256"
ACTIONS = ("confirm", "cancel", "cancel_rsvp")


def issue_action_token(
    db: Session,
    verification: GuestVerification,
    action: str,
    *,
    expires_in: timedelta,
    now: datetime | None = None,
) -> str:
    if action not in ACTIONS:
        raise ValueError(f"Unknown action {action!r}")
    issued = (now or utcnow()).replace(tzinfo=UTC)
    payload = {
        "sub": verification.id,
        "email": verification.email,
        "action": action,
        "iat": int(issued.timestamp()),
        "exp": int((issued + expires_in).timestamp()),
    }
    if verification.rsvp_id:
        payload["rsvp_id"] = verification.rsvp_id
    if verification.claim_id:
        payload["claim_id"] = verification.claim_id
    return jwt.encode(payload, get_token_secret(db), algorithm=ALGORITHM)


def decode_action_token(db: Session, token: str) -> dict:
    try:
        payload = jwt.decode(token, get_token_secret(db), algorithms=[ALGORITHM])
    except ExpiredSignatureError as exc:
        raise InvalidRequestError("This link has expired", code="TOKEN_EXPIRED") from exc
    except JWTError as exc:
        raise InvalidRequestError("Invalid or malformed link", code="INVALID_TOKEN") from exc
    if payload.get("action") not in ACTIONS or not payload.get("sub"):
        raise InvalidRequestError("Invalid or malformed link", code="INVALID_TOKEN")
    return payload


def action_url(token: str) -> str:
    return f"{settings.site_url.rstrip('/')}/guest/action?{urlencode({'token': token})}"
