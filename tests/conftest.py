"""Shared fixtures for ledger tests."""

from datetime import UTC, datetime, timedelta

import pytest

from spendwise_ledger.config import Settings
from spendwise_ledger.db import Database
from spendwise_ledger.secret_box import KeySession, SecretBox
from spendwise_ledger.service import LedgerService

TEST_KEY = bytes(range(32))


class FakeClock:
    """Controllable clock for time-dependent behavior."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    """Clock fixed at 2024-04-15 12:00 UTC."""
    return FakeClock(datetime(2024, 4, 15, 12, 0, tzinfo=UTC))


@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a temporary data directory."""
    return Settings(
        database_path=tmp_path / "ledger.db",
        key_path=tmp_path / "secret.key",
        default_currency="USD",
    )


@pytest.fixture
def db(tmp_path):
    """Create a temporary database."""
    database = Database(tmp_path / "test.db")
    yield database
    database.close()


@pytest.fixture
def key_session():
    """An unlocked key session."""
    session = KeySession()
    session.initialize(TEST_KEY)
    return session


@pytest.fixture
def service(settings, db, key_session, clock):
    """LedgerService wired to the temporary database."""
    return LedgerService(settings, db, secret_box=SecretBox(key_session), clock=clock)


@pytest.fixture
def trio(service):
    """A USD group with members A, B and C (in that order)."""
    group = service.create_group("Trip", currency_code="USD")
    a = service.add_member(group.id, "A")
    b = service.add_member(group.id, "B")
    c = service.add_member(group.id, "C")
    return group, a, b, c
