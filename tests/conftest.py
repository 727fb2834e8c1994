"""Shared test fixtures and configuration.

Sets up fake environment variables so choreminder.config doesn't sys.exit(),
and provides temp-file stores sharing one database, a controllable clock,
and a small household.
"""

import os

# Patch env vars BEFORE any choreminder imports
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "fake-token-for-tests")
os.environ.setdefault("ADMIN_CHAT_IDS", "12345")
os.environ.setdefault("DATABASE_PATH", ":memory:")
os.environ.setdefault("TIMEZONE", "UTC")

from datetime import datetime, timedelta

import pytest

# Sunday, 09:00
START = datetime(2026, 3, 1, 9, 0)


class FakeClock:
    """Callable clock the tests move forward by hand."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(START)


@pytest.fixture
def tmp_db_path(tmp_path):
    """Return a temporary SQLite DB path."""
    return str(tmp_path / "test_choreminder.db")


@pytest.fixture
def task_db(tmp_db_path):
    from choreminder.data.db import TaskDB
    return TaskDB(db_path=tmp_db_path)


@pytest.fixture
def member_db(tmp_db_path):
    from choreminder.data.db import MemberDB
    return MemberDB(db_path=tmp_db_path)


@pytest.fixture
def rule_db(tmp_db_path):
    from choreminder.data.db import RuleDB
    return RuleDB(db_path=tmp_db_path)


@pytest.fixture
def notification_db(tmp_db_path):
    from choreminder.data.db import NotificationDB
    return NotificationDB(db_path=tmp_db_path)


@pytest.fixture
def household(member_db):
    """Household "h1": two parents and two children; Alice has quiet hours 21:00-07:00."""
    from choreminder.data.models import HouseholdMember, MemberRole

    members = {
        "mom": HouseholdMember(
            id="mom", household_id="h1", name="Mom", role=MemberRole.PARENT,
            telegram_chat_id=111, email="mom@example.com", phone="+15550001",
        ),
        "dad": HouseholdMember(
            id="dad", household_id="h1", name="Dad", role=MemberRole.PARENT,
            email="dad@example.com",
        ),
        "alice": HouseholdMember(
            id="alice", household_id="h1", name="Alice", role=MemberRole.CHILD,
            quiet_hours_start="21:00", quiet_hours_end="07:00",
            telegram_chat_id=333, phone="+15550003",
        ),
        "bob": HouseholdMember(
            id="bob", household_id="h1", name="Bob", role=MemberRole.CHILD,
            phone="+15550004",
        ),
    }
    for member in members.values():
        member_db.add_member(member)
    return members


@pytest.fixture
def admin():
    from choreminder.data.models import Actor
    return Actor(member_id="mom", household_id="h1", is_admin=True)
