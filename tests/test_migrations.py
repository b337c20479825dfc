from __future__ import annotations

import types

import pytest
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from happenings import database, storage
from happenings.models import Base


def _patch_db(monkeypatch: pytest.MonkeyPatch, engine: Engine, db_path) -> None:
    monkeypatch.setattr(storage, "engine", engine)
    monkeypatch.setattr(database, "engine", engine)
    monkeypatch.setattr(database, "DATABASE_URL", str(engine.url))
    fake_settings = types.SimpleNamespace(database_path=db_path)
    monkeypatch.setattr(storage, "settings", fake_settings)


def _get_version(engine: Engine) -> str | None:
    with engine.connect() as conn:
        if not inspect(conn).has_table("alembic_version"):
            return None
        return conn.execute(text("select version_num from alembic_version")).scalar()


def test_upgrade_database_stamps_existing_db(monkeypatch, tmp_path):
    db_path = tmp_path / "existing.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    Base.metadata.create_all(bind=engine)  # existing schema without Alembic tracking
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=False)

    assert "Stamped existing database to Alembic head" in actions
    assert _get_version(engine) == "0001_initial"


def test_upgrade_database_creates_fresh_schema(monkeypatch, tmp_path):
    db_path = tmp_path / "fresh.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)

    actions = storage.upgrade_database(make_backup=False)

    assert "Ran Alembic upgrade to head (fresh database)" in actions
    assert _get_version(engine) == "0001_initial"
    inspector = inspect(engine)
    assert set(Base.metadata.tables) <= set(inspector.get_table_names())
    rsvp_indexes = {index["name"] for index in inspector.get_indexes("rsvps")}
    assert {"uq_rsvps_active_member", "uq_rsvps_active_guest"} <= rsvp_indexes
    claim_indexes = {index["name"] for index in inspector.get_indexes("timeslot_claims")}
    assert "uq_timeslot_claims_holder" in claim_indexes


def test_upgrade_is_idempotent_and_backs_up(monkeypatch, tmp_path):
    db_path = tmp_path / "repeat.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)
    storage.upgrade_database(make_backup=False)

    actions = storage.upgrade_database(make_backup=True)

    assert actions[0].startswith("Backup created at")
    assert (tmp_path / "repeat.sqlite.bak").exists()
    assert "Applied Alembic migrations to head" in actions


def test_partial_index_allows_rsvp_after_cancellation(monkeypatch, tmp_path):
    db_path = tmp_path / "partial.sqlite"
    engine = create_engine(f"sqlite:///{db_path}", future=True)
    _patch_db(monkeypatch, engine, db_path)
    storage.upgrade_database(make_backup=False)

    insert = text(
        "insert into rsvps (id, event_id, date_key, guest_email, guest_verified, status,"
        " created_at, updated_at) values (:id, 'e1', '2030-01-01', 'a@example.com', 1,"
        " :status, '2030-01-01', '2030-01-01')"
    )
    with engine.begin() as conn:
        conn.execute(insert, {"id": "r1", "status": "cancelled"})
        conn.execute(insert, {"id": "r2", "status": "confirmed"})
    with pytest.raises(IntegrityError):
        with engine.begin() as conn:
            conn.execute(insert, {"id": "r3", "status": "waitlist"})
