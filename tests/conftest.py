# tests/conftest.py

from __future__ import annotations


import pytest
from sqlalchemy import event
from sqlalchemy.pool import StaticPool

from database import Base, make_engine, make_session_factory
from models import User
from settlement import seed_charities



@pytest.fixture()
def engine():
    """
    One in-memory SQLite database per test. StaticPool keeps the single
    connection alive so every session (and the TestClient threads) see
    the same tables.
    """
    eng = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=eng)
    yield eng
    Base.metadata.drop_all(bind=eng)
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    seed_charities(session)
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(db):
    counter = {"n": 0}

    def _make(**overrides) -> User:
        counter["n"] += 1
        values = {
            "email": f"user{counter['n']}@example.com",
            "password_hash": "not-a-real-hash",
            "name": f"User {counter['n']}",
            "timezone": "UTC",
            "balance": 100,
        }
        values.update(overrides)
        user = User(**values)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture()
def strict_db():
    """
    Same in-memory database, but with SQLite foreign keys enforced the way
    PostgreSQL enforces them.
    """
    eng = make_engine("sqlite://", poolclass=StaticPool)

    @event.listens_for(eng, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    Base.metadata.create_all(bind=eng)
    session = make_session_factory(eng)()
    seed_charities(session)
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=eng)
        eng.dispose()
