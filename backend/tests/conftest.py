"""
Pytest configuration and fixtures for the chip ledger tests.

Every test gets its own file-backed SQLite database so that threaded tests
exercise real row locking (BEGIN IMMEDIATE) instead of a shared in-memory
connection. No Postgres instance is required.
"""

import os
import tempfile
from datetime import datetime, timedelta

# Set required env vars before any chipbank imports
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), "chipbank-import.db"),
)
os.environ.setdefault("USE_EVENT_MULTIPLIERS", "0")

import pytest
from sqlalchemy import func, select
from sqlalchemy.orm import sessionmaker

from chipbank.accounts import AccountStore
from chipbank.db import Base, build_engine
from chipbank.models import User
from chipbank.side_effects import SideEffectDispatcher


class FakeClock:
    """Settable clock; engines call it like ``utcnow``."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 3, 15, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    def __init__(self):
        self.rechecked: list[int] = []

    def recheck(self, user_id: int) -> None:
        self.rechecked.append(user_id)


@pytest.fixture
def engine(tmp_path):
    """Fresh SQLite database with the full schema."""
    db_engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=db_engine)
    yield db_engine
    db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def dispatcher():
    """Runs side effects inline so tests can assert on them immediately."""
    return SideEffectDispatcher(inline=True)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def accounts(session_factory):
    return AccountStore(session_factory)


@pytest.fixture
def make_user(accounts):
    """Create an account and return its id."""
    counter = {"n": 0}

    def _make(balance: int = 1000, username: str | None = None) -> int:
        counter["n"] += 1
        return accounts.create_account(username or f"user{counter['n']}", balance)

    return _make


@pytest.fixture
def update_user(session_factory):
    """Set columns on a user row directly, bypassing the engines."""

    def _update(user_id: int, **fields) -> None:
        with session_factory() as db:
            user = db.get(User, user_id)
            for name, value in fields.items():
                setattr(user, name, value)
            db.commit()

    return _update


@pytest.fixture
def total_chips(session_factory):
    """Sum of every account balance."""

    def _total() -> int:
        with session_factory() as db:
            return int(db.execute(select(func.coalesce(func.sum(User.balance), 0))).scalar_one())

    return _total
