"""
Locating the store entry that corresponds to a feed event.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import IntEnum

from ics_calendar_sync.mapper import EventMapper
from ics_calendar_sync.mapper import extract_marker_uid
from ics_calendar_sync.mapper import make_marker
from ics_calendar_sync.models import CalendarEvent
from ics_calendar_sync.models import StoreEntry
from ics_calendar_sync.models import SyncedEventRecord
from ics_calendar_sync.store import CalendarStore

_logger = logging.getLogger(__name__)

FUZZY_SEARCH_WINDOW = timedelta(days=2)
FUZZY_TIME_TOLERANCE = timedelta(minutes=5)


class ResolutionTier(IntEnum):
    STABLE_ID = 1
    LOCAL_ID = 2
    MARKER = 3
    FUZZY = 4


@dataclass
class Resolution:
    entry: StoreEntry
    tier: ResolutionTier

    @property
    def used_fallback(self) -> bool:
        return self.tier != ResolutionTier.STABLE_ID


class EventResolver:
    """Four-tier lookup: stable id, local id, embedded marker, fuzzy match.

    The resolver only reads from the store. Entries handed out during a run
    are remembered so the fuzzy tier cannot give the same unmarked entry to
    two feed events.
    """

    def __init__(self, store: CalendarStore, mapper: EventMapper, calendar_ref: str | None):
        self.store = store
        self.mapper = mapper
        self.calendar_ref = calendar_ref
        self._claimed: set[str] = set()

    def claim(self, stable_id: str | None) -> None:
        if stable_id:
            self._claimed.add(stable_id)

    def resolve(self, event: CalendarEvent, record: SyncedEventRecord | None) -> Resolution | None:
        if record is not None:
            resolution = self._by_identifiers(record)
            if resolution:
                return resolution
        if self.calendar_ref is None:
            return None

        entry = self.store.find_by_embedded_marker(make_marker(event.uid), self.calendar_ref)
        if entry is not None:
            _logger.debug(f"Resolved {event.uid} via embedded marker")
            return Resolution(entry, ResolutionTier.MARKER)

        entry = self._fuzzy_match(event)
        if entry is not None:
            _logger.debug(f"Resolved {event.uid} via fuzzy match to '{entry.title}'")
            return Resolution(entry, ResolutionTier.FUZZY)
        return None

    def locate_for_delete(self, record: SyncedEventRecord) -> StoreEntry | None:
        """Find an orphan's entry. Never fuzzy: a wrong guess would delete user data."""
        resolution = self._by_identifiers(record)
        if resolution:
            return resolution.entry
        if self.calendar_ref is None:
            return None
        return self.store.find_by_embedded_marker(make_marker(record.source_uid), self.calendar_ref)

    def _by_identifiers(self, record: SyncedEventRecord) -> Resolution | None:
        if record.store_item_id:
            entry = self.store.find_by_stable_id(record.store_item_id)
            if entry is not None:
                return Resolution(entry, ResolutionTier.STABLE_ID)
        if record.store_local_id:
            entry = self.store.find_by_local_id(record.store_local_id)
            if entry is not None:
                _logger.debug(f"Resolved {record.source_uid} via local identifier")
                return Resolution(entry, ResolutionTier.LOCAL_ID)
        return None

    def _fuzzy_match(self, event: CalendarEvent) -> StoreEntry | None:
        wanted = self.mapper.display_title(event).lower()
        summary = (event.summary or "").lower()
        candidates = self.store.search(
            self.calendar_ref,
            event.start - FUZZY_SEARCH_WINDOW,
            event.start + FUZZY_SEARCH_WINDOW,
        )
        for entry in candidates:
            if entry.stable_id in self._claimed:
                continue
            owner = extract_marker_uid(entry.notes)
            if owner is not None and owner != event.uid:
                continue
            title = (entry.title or "").strip().lower()
            if not title:
                continue
            if not (
                wanted in title
                or title in wanted
                or (summary and (summary in title or title in summary))
            ):
                continue
            if entry.is_all_day != event.is_all_day:
                continue
            if abs(entry.start - event.start) > FUZZY_TIME_TOLERANCE:
                continue
            if abs(entry.end - event.end) > FUZZY_TIME_TOLERANCE:
                continue
            return entry
        return None
