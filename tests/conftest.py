"""
Shared pytest fixtures and iCal helpers.
"""

import logging
from datetime import datetime
from datetime import timezone

import pytest

from ics_calendar_sync.db import StateDatabase
from ics_calendar_sync.models import SyncConfig
from ics_calendar_sync.models import SyncResult
from tests.fake_store import FakeCalendarStore

FEED_URL = "https://example.com/feed.ics"
CALENDAR_NAME = "Subscribed Events"


def make_vevent(
    uid: str,
    summary: str = "Standup",
    start: str = "20240115T090000Z",
    end: str | None = "20240115T093000Z",
    sequence: int | None = None,
    extra: tuple = (),
) -> str:
    """Return a minimal, valid VEVENT iCal string (no VCALENDAR wrapper)."""
    lines = [
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"SUMMARY:{summary}",
        f"DTSTART:{start}",
    ]
    if end:
        lines.append(f"DTEND:{end}")
    lines.append("DTSTAMP:20240101T000000Z")
    if sequence is not None:
        lines.append(f"SEQUENCE:{sequence}")
    lines.extend(extra)
    lines.append("END:VEVENT")
    return "\r\n".join(lines) + "\r\n"


def make_feed(*vevents: str) -> str:
    """Wrap VEVENT strings in a VCALENDAR."""
    return (
        "BEGIN:VCALENDAR\r\n"
        "VERSION:2.0\r\n"
        "PRODID:-//Test//Feed//EN\r\n" + "".join(vevents) + "END:VCALENDAR\r\n"
    )


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class StaticFetcher:
    """Stands in for FeedFetcher; returns whatever ``content`` currently holds."""

    def __init__(self, content: str = ""):
        self.content = content
        self.error: Exception | None = None
        self.calls = 0

    def fetch(self, url: str) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.content


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "test_state.db"


@pytest.fixture
def state_db(db_path):
    with StateDatabase(db_path) as db:
        yield db


@pytest.fixture
def sync_config(db_path):
    return SyncConfig(
        source_url=FEED_URL,
        calendar_name=CALENDAR_NAME,
        state_db_path=db_path,
        dry_run=False,
        verbose=False,
    )


@pytest.fixture
def sync_logger():
    return logging.getLogger("test_sync")


@pytest.fixture
def sync_result():
    return SyncResult()


@pytest.fixture
def fake_store():
    return FakeCalendarStore(calendars=[CALENDAR_NAME])


@pytest.fixture
def fetcher():
    return StaticFetcher()
