"""Shared pytest fixtures for Happenings."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from happenings import api, database, emails, storage, sweeper
from happenings.crud import create_event, create_member, publish_event
from happenings.models import Base


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )

    @event.listens_for(engine, "connect")
    def _foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    storage.get_session = database.get_session
    sweeper.engine = engine
    sweeper.get_session = database.get_session
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    database.SessionLocal.remove()
    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield
    database.SessionLocal.remove()


@pytest.fixture(autouse=True)
def outbox(monkeypatch):
    """Capture outgoing email instead of talking to SMTP."""

    sent: list[dict] = []

    def _capture(to_email: str, subject: str, body: str) -> bool:
        sent.append({"to": to_email, "subject": subject, "body": body})
        return True

    monkeypatch.setattr(emails, "send_email", _capture)
    return sent


@pytest.fixture()
def session():
    db = database.SessionLocal()
    yield db
    db.rollback()
    db.close()


@pytest.fixture()
def host(session):
    member = create_member(session, display_name="Hal Host", email="host@example.com")
    session.commit()
    return member


@pytest.fixture()
def make_member(session):
    counter = {"n": 0}

    def _make(name: str | None = None, *, is_admin: bool = False):
        counter["n"] += 1
        member = create_member(
            session,
            display_name=name or f"Member {counter['n']}",
            email=f"member{counter['n']}@example.com",
            is_admin=is_admin,
        )
        session.commit()
        return member

    return _make


@pytest.fixture()
def make_event(session, host):
    """Create and publish an event; keyword arguments override the defaults."""

    def _make(*, publish: bool = True, owner=None, **fields):
        values = {
            "title": "Tuesday Open Mic",
            "venue_name": "The Loft",
            "start_time": "19:00",
            "end_time": "21:00",
            "recurrence_rule": "weekly",
            "day_of_week": "Tuesday",
        }
        values.update(fields)
        event = create_event(session, owner or host, **values)
        if publish:
            publish_event(session, event)
        session.commit()
        return event

    return _make
