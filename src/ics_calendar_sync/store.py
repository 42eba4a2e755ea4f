"""
Abstract calendar store consumed by the sync core.
"""

from abc import ABC
from abc import abstractmethod
from dataclasses import dataclass
from datetime import datetime

from ics_calendar_sync.models import StoreEntry


@dataclass
class CalendarInfo:
    ref: str
    name: str
    account: str = ""
    writable: bool | None = None  # None = unknown


class CalendarStore(ABC):
    """Destination calendar backend.

    ``calendar_ref`` is an opaque handle returned by
    ``resolve_or_create_calendar``. Entries are identified by ``stable_id``;
    ``find_by_local_id`` may always return None on backends without a
    secondary identifier.
    """

    @abstractmethod
    def resolve_or_create_calendar(self, name: str, create_if_missing: bool) -> str:
        """Return the calendar ref for ``name``.

        Raises CalendarNotFoundError when it is missing and may not be
        created, NoWritableCalendarError when it is read-only.
        """

    @abstractmethod
    def list_calendars(self) -> list[CalendarInfo]: ...

    @abstractmethod
    def create(self, entry: StoreEntry, calendar_ref: str) -> str:
        """Create ``entry`` and return its stable id."""

    @abstractmethod
    def update(self, stable_id: str, entry: StoreEntry) -> None:
        """Overwrite the entry. Raises EntryNotFoundError when absent."""

    @abstractmethod
    def delete(self, stable_id: str) -> None:
        """Remove the entry. Raises EntryNotFoundError when absent."""

    @abstractmethod
    def find_by_stable_id(self, stable_id: str) -> StoreEntry | None: ...

    @abstractmethod
    def find_by_local_id(self, local_id: str) -> StoreEntry | None: ...

    @abstractmethod
    def find_by_embedded_marker(self, marker: str, calendar_ref: str) -> StoreEntry | None:
        """Scan the whole calendar for an entry whose notes contain ``marker``."""

    @abstractmethod
    def search(self, calendar_ref: str, start: datetime, end: datetime) -> list[StoreEntry]:
        """Entries overlapping [start, end]."""
