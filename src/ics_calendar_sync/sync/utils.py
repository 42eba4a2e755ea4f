"""
Stateless event helpers: content hashing, window filtering, dedup, run lock.
"""

import fcntl
import hashlib
import logging
import os
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from pathlib import Path

from ics_calendar_sync.models import CalendarEvent
from ics_calendar_sync.models import SyncInProgressError

_logger = logging.getLogger(__name__)

_SEPARATOR = b"\x00"


def format_instant(value: datetime) -> str:
    """UTC ISO-8601 with a Z suffix, e.g. 2024-01-15T09:00:00Z."""
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _alarm_key(alarm):
    return (alarm.trigger, alarm.action.value, alarm.description or "")


def _attendee_key(attendee):
    return (
        attendee.email or "",
        attendee.name or "",
        attendee.role.value if attendee.role else "",
        attendee.participation_status.value if attendee.participation_status else "",
    )


def _hash_fields(event: CalendarEvent):
    yield event.uid
    yield event.summary
    yield event.description
    yield event.location
    yield event.url

    yield format_instant(event.start)
    yield format_instant(event.end)
    yield "allday" if event.is_all_day else "timed"
    yield event.time_zone

    yield event.recurrence_rule
    for value in sorted(event.exception_dates):
        yield format_instant(value)
    for value in sorted(event.additional_dates):
        yield format_instant(value)

    yield event.status.value if event.status else None
    yield event.transparency.value if event.transparency else None
    yield str(event.priority) if event.priority is not None else None

    for alarm in sorted(event.alarms, key=_alarm_key):
        yield alarm.action.value
        yield str(alarm.trigger)
        yield alarm.description

    yield from sorted(event.categories)

    yield event.organizer.email if event.organizer else None
    yield event.organizer.name if event.organizer else None

    for attendee in sorted(event.attendees, key=_attendee_key):
        yield attendee.email
        yield attendee.name
        yield attendee.role.value if attendee.role else None
        yield attendee.participation_status.value if attendee.participation_status else None


def compute_hash(event: CalendarEvent) -> str:
    """
    SHA256 over the semantically relevant fields of an event.

    Every field is followed by a NUL byte so that adjacent values cannot run
    together. ``sequence``, DTSTAMP and LAST-MODIFIED are not part of the hash.
    """
    hasher = hashlib.sha256()
    for value in _hash_fields(event):
        if value is not None:
            hasher.update(value.encode("utf-8"))
        hasher.update(_SEPARATOR)
    return hasher.hexdigest()


def short_hash(event: CalendarEvent) -> str:
    return compute_hash(event)[:8]


def events_equal(a: CalendarEvent, b: CalendarEvent) -> bool:
    return compute_hash(a) == compute_hash(b)


def filter_by_window(
    events: list[CalendarEvent],
    days_past: int | None,
    days_future: int | None,
    now: datetime | None = None,
) -> list[CalendarEvent]:
    """Keep events overlapping [now - days_past, now + days_future].

    Both bounds are inclusive; a None bound leaves that side open.
    """
    if days_past is None and days_future is None:
        return list(events)
    now = now or datetime.now(timezone.utc)
    window_start = now - timedelta(days=days_past) if days_past is not None else None
    window_end = now + timedelta(days=days_future) if days_future is not None else None

    kept = []
    for event in events:
        if window_start is not None and event.end < window_start:
            continue
        if window_end is not None and event.start > window_end:
            continue
        kept.append(event)
    return kept


def deduplicate_events(events: list[CalendarEvent]) -> list[CalendarEvent]:
    """Collapse duplicate UIDs, keeping the highest SEQUENCE.

    On equal sequence the later occurrence wins. Output order follows each
    UID's first appearance in the feed.
    """
    chosen: dict[str, CalendarEvent] = {}
    for event in events:
        existing = chosen.get(event.uid)
        if existing is None:
            chosen[event.uid] = event
            continue
        _logger.debug(
            f"Duplicate UID {event.uid} (sequence {existing.sequence} vs {event.sequence})"
        )
        if event.sequence >= existing.sequence:
            chosen[event.uid] = event
    return list(chosen.values())


class SyncLock:
    """Advisory, non-blocking lock file guarding one ledger.

    Usage::

        with SyncLock(Path("state.db.lock")):
            ...

    Raises SyncInProgressError when another process holds the lock.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._fd: int | None = None

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            raise SyncInProgressError(self.path) from None
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        fcntl.flock(self._fd, fcntl.LOCK_UN)
        os.close(self._fd)
        self._fd = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
