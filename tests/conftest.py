"""Shared pytest fixtures for TeamUp."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from teamup import api, database, storage
from teamup.crud import create_event, create_user
from teamup.models import Base


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

    database.SessionLocal.remove()
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
    """Factory creating committed users."""

    def _make(name: str = "Sam Runner", **kwargs):
        user = create_user(session, name=name, **kwargs)
        session.commit()
        return user

    return _make


@pytest.fixture()
def make_event(session):
    """Factory creating committed events with an enrolled organizer."""

    def _make(organizer, **kwargs):
        kwargs.setdefault("name", "Sunday Football")
        kwargs.setdefault("date", "2030-05-04T10:00:00.000Z")
        kwargs.setdefault("type", "football")
        event = create_event(session, organizer=organizer, **kwargs)
        session.commit()
        return event

    return _make
