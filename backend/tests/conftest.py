from __future__ import annotations

import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-0123456789abcdef0123456789abcdef")
os.environ.setdefault("ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("OTP_BCRYPT_ROUNDS", "4")

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from trustauth import models  # noqa: F401
from trustauth.database import Base
from trustauth.models import User

_phone_counter = iter(range(10_000_000, 99_999_999))


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN itself.
    @event.listens_for(engine, "connect")
    def _do_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def new_phone() -> str:
    return f"+9198{next(_phone_counter)}"


@pytest.fixture()
def make_user(db):
    def _make(*, role: str = "customer", phone: str | None = None, is_active: bool = True, mfa_enabled: bool = False):
        user = User(
            phone_e164=phone or new_phone(),
            role=role,
            is_active=is_active,
            mfa_enabled=mfa_enabled,
        )
        db.add(user)
        db.flush()
        return user

    return _make


class FakeRedis:
    """In-memory stand-in for the handful of commands the rate limiter uses."""

    def __init__(self):
        self.counters: dict[str, int] = {}

    def incr(self, key):
        self.counters[key] = self.counters.get(key, 0) + 1
        return self.counters[key]

    def expire(self, key, ttl):
        return True

    def ttl(self, key):
        return 60


@pytest.fixture()
def fake_redis():
    return FakeRedis()
