"""Shared pytest fixtures for EventHub."""

from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from eventhub import api, database, storage
from eventhub.events import create_event
from eventhub.models import Base, User
from eventhub.teams import create_team
from eventhub.utils import utcnow


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
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
def make_user(session):
    """Factory for signed-up users without a team."""

    def _make(email: str | None = "owner@example.com", name: str | None = "Owner"):
        user = User(email=email, name=name, is_anonymous=False, created_at=utcnow())
        session.add(user)
        session.flush()
        return user

    return _make


@pytest.fixture()
def owner(make_user):
    return make_user("owner@example.com", "Olivia Owner")


@pytest.fixture()
def team(session, owner):
    return create_team(session, user=owner, name="Night Owls", description="Late shows")


@pytest.fixture()
def make_event(session):
    """Factory for events starting two days from now."""

    def _make(user, team, **overrides):
        start = utcnow().replace(microsecond=0) + timedelta(days=2)
        fields = {
            "title": "Summer Concert",
            "description": "An evening of live music in the park.",
            "venue": "City Park Stage",
            "start_time": start,
            "end_time": start + timedelta(hours=3),
            "event_type": "music",
            "status": "published",
        }
        fields.update(overrides)
        return create_event(session, user=user, team_id=team.id, **fields)

    return _make
