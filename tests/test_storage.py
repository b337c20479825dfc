from __future__ import annotations

import dataclasses

from happenings import storage
from happenings.database import get_session
from happenings.storage import ensure_root_token, fetch_root_token, rotate_root_token


def test_root_token_lifecycle():
    first = ensure_root_token()
    assert isinstance(first, str) and first
    assert fetch_root_token() == first
    rotated = rotate_root_token()
    assert rotated != first
    assert fetch_root_token() == rotated


def test_token_secret_is_generated_once():
    with get_session() as session:
        first = storage.get_token_secret(session)
    with get_session() as session:
        assert storage.get_token_secret(session) == first


def test_configured_token_secret_wins(monkeypatch):
    monkeypatch.setattr(
        storage, "settings", dataclasses.replace(storage.settings, token_secret="s3cret")
    )
    with get_session() as session:
        assert storage.get_token_secret(session) == "s3cret"
