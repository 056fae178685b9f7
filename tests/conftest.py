"""Shared pytest fixtures for EventDesk."""

from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from eventdesk import api, database
from eventdesk.crud import create_event, create_participant
from eventdesk.models import Base
from eventdesk.utils import utcnow


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = database.build_session_factory(engine)
    database.engine = engine
    database.SessionLocal = session_factory
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture()
def make_event(session):
    """Create and commit an event; keyword arguments override the defaults."""

    def _make_event(**overrides):
        params = {
            "owner_id": "owner-1",
            "title": "Capacity Test",
            "start_time": utcnow().replace(microsecond=0) + timedelta(days=7),
            "max_attendees": None,
            "allow_waitlist": False,
        }
        params.update(overrides)
        event = create_event(session, **params)
        session.commit()
        return event

    return _make_event


@pytest.fixture()
def make_participant(session):
    def _make_participant(name: str, email: str | None = None):
        participant = create_participant(
            session,
            name=name,
            email=email or f"{name.lower().replace(' ', '.')}@example.com",
        )
        session.commit()
        return participant

    return _make_participant
