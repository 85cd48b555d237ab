"""
Pytest configuration and shared fixtures.

Tests run against an in-memory SQLite database. The environment is set
here before any chatpipe import so settings are built with test values.
"""

import os
from datetime import datetime, timedelta, timezone

import pytest

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["CODEC"] = "identity"
os.environ["STORE_SELF_COPY"] = "false"

# Clear settings cache before any app imports to ensure test env vars are used
from chatpipe.config import get_settings
get_settings.cache_clear()

from chatpipe import models  # noqa: F401,E402  registers tables on Base.metadata
from chatpipe.storage import Base, MessageStore, SessionLocal, engine  # noqa: E402


class FakeClock:
    """Callable clock returning a fixed UTC time until advanced."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2025, 1, 15, 10, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(scope="function")
def db():
    """Fresh database session; tables are dropped after each test."""
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store(db):
    return MessageStore(db)
