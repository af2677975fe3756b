"""Shared pytest fixtures for test suite"""
import asyncio
import itertools
import os
import sys
from datetime import timedelta
from pathlib import Path
from typing import Generator, List
from unittest.mock import patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("APP_URL", "https://rsvp.example.com")
os.environ.setdefault("DISPLAY_TIMEZONE", "Asia/Jerusalem")

from rsvp_dispatch.main import app
from rsvp_dispatch.db.session import get_db
from rsvp_dispatch.db import redis as redis_module
from rsvp_dispatch.models import Base
from rsvp_dispatch.models.account import Account, PlanTier
from rsvp_dispatch.models.bulk_job import Channel
from rsvp_dispatch.models.event import Event
from rsvp_dispatch.models.guest import Guest, RsvpStatus
from rsvp_dispatch.services.channels import BaseChannelSender, DispatchLimits, ErrorKind, SendResult
from rsvp_dispatch.utils.time import utcnow


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

CRON_SECRET = os.environ["CRON_SECRET"]

_slugs = itertools.count(1)


class FakeSender(BaseChannelSender):
    """In-memory sender: records every call, fails the addresses it is told to"""

    RATE_LIMITS = DispatchLimits(batch_size=10, concurrency=5, batch_delay=0, wave_delay=0)

    def __init__(self, channel: str = Channel.CHAT, fail_addresses=(), error_kind: str = ErrorKind.INVALID_ADDRESS):
        self.channel = channel
        self.fail_addresses = set(fail_addresses)
        self.error_kind = error_kind
        self.sent = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def send(self, address, message):
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(0)
            self.sent.append((address, message))
            if address in self.fail_addresses:
                return SendResult.failure(self.error_kind, code=21211)
            return SendResult(delivered=True, provider_message_id=f"SM{len(self.sent):04d}")
        finally:
            self.in_flight -= 1

    async def test_connection(self):
        return True

    async def aclose(self):
        self.closed = True


class SleepRecorder:
    """Stands in for asyncio.sleep; records requested delays without waiting"""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    # Create all tables
    Base.metadata.create_all(bind=test_engine)

    # Create session
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        # Drop all tables after test
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function", autouse=True)
def mock_redis():
    """Mock Redis client using fakeredis (leases and locks)"""
    fake_redis = fakeredis.FakeStrictRedis(decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database and mocked Redis"""

    # Override get_db dependency to use test database
    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db

    try:
        with patch("rsvp_dispatch.main.initialize_otel", return_value=False):
            with patch("rsvp_dispatch.main.init_db"):
                with patch("rsvp_dispatch.main.instrument_sqlalchemy"):
                    with TestClient(app) as test_client:
                        yield test_client
    finally:
        # Cleanup - always clear overrides
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def fake_sender() -> FakeSender:
    return FakeSender()


@pytest.fixture(scope="function")
def no_sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture(scope="function")
def make_account(db_session: Session):
    """Factory for accounts"""
    def _make(plan_tier: str = PlanTier.BUSINESS, name: str = "Cohen Family") -> Account:
        account = Account(name=name, plan_tier=plan_tier)
        db_session.add(account)
        db_session.commit()
        db_session.refresh(account)
        return account
    return _make


@pytest.fixture(scope="function")
def make_event(db_session: Session):
    """Factory for events"""
    def _make(account: Account, locale: str = "en", starts_in: timedelta = timedelta(days=14), **fields) -> Event:
        event = Event(
            account_id=account.id,
            title=fields.pop("title", "Dana & Avi's Wedding"),
            starts_at=fields.pop("starts_at", utcnow() + starts_in),
            location=fields.pop("location", "Tel Aviv"),
            venue=fields.pop("venue", "Garden Hall"),
            locale=locale,
            **fields
        )
        db_session.add(event)
        db_session.commit()
        db_session.refresh(event)
        return event
    return _make


def guest_phone(index: int) -> str:
    return f"+97250000{index:04d}"


@pytest.fixture(scope="function")
def make_guests(db_session: Session):
    """Factory for guests; phone numbers depend only on the position in the list"""
    def _make(event: Event, count: int, rsvp_status: str = RsvpStatus.PENDING, without_phone=()) -> List[Guest]:
        guests = []
        for i in range(count):
            guest = Guest(
                event_id=event.id,
                name=f"Guest {i}",
                phone_number=None if i in without_phone else guest_phone(i),
                slug=f"g{next(_slugs)}",
                rsvp_status=rsvp_status,
            )
            db_session.add(guest)
            guests.append(guest)
        db_session.commit()
        for guest in guests:
            db_session.refresh(guest)
        return guests
    return _make


@pytest.fixture(scope="function")
def account(make_account) -> Account:
    """Account on the unlimited plan"""
    return make_account()


@pytest.fixture(scope="function")
def event(make_event, account) -> Event:
    return make_event(account)


@pytest.fixture(scope="function")
def account_headers(account):
    return {"X-Account-Id": str(account.id)}
