"""
Feed event -> calendar store entry mapping, including the UID marker.
"""

import re
from dataclasses import dataclass

from ics_calendar_sync.models import CalendarEvent
from ics_calendar_sync.models import StoreEntry
from ics_calendar_sync.recurrence import normalize_rule

MARKER_PREFIX = "[ICS-SYNC-UID:"
MARKER_SUFFIX = "]"

_MARKER_RE = re.compile(r"\[ICS-SYNC-UID:([^\]]*)\]")
# A marker plus the blank-line separator that precedes it.
_MARKER_BLOCK_RE = re.compile(r"(?:\n\n)?\[ICS-SYNC-UID:[^\]]*\]")


def make_marker(uid: str) -> str:
    return f"{MARKER_PREFIX}{uid}{MARKER_SUFFIX}"


def extract_marker_uid(notes: str | None) -> str | None:
    """Return the UID encoded in the first marker in ``notes``, if any."""
    if not notes:
        return None
    match = _MARKER_RE.search(notes)
    return match.group(1) if match else None


def has_marker(notes: str | None, uid: str) -> bool:
    return bool(notes) and make_marker(uid) in notes


def strip_marker(notes: str | None) -> str:
    return _MARKER_BLOCK_RE.sub("", notes or "")


def embed_marker(notes: str | None, uid: str) -> str:
    """Append the marker for ``uid``, replacing any marker already present.

    Calling it again on its own output returns the same text.
    """
    body = strip_marker(notes)
    marker = make_marker(uid)
    return f"{body}\n\n{marker}" if body else marker


@dataclass
class MappingConfig:
    summary_prefix: str = ""
    sync_alarms: bool = True
    include_source_info: bool = False
    source_url: str | None = None


class EventMapper:
    """Builds the StoreEntry written for a feed event."""

    def __init__(self, config: MappingConfig | None = None):
        self.config = config or MappingConfig()

    def display_title(self, event: CalendarEvent) -> str:
        return self.config.summary_prefix + event.display_title

    def build_notes(self, event: CalendarEvent) -> str:
        notes = event.description or ""
        if self.config.include_source_info:
            source = self.config.source_url or "ICS feed"
            notes += f"\n---\nSynced from: {source}"
        return embed_marker(notes, event.uid)

    def to_entry(self, event: CalendarEvent, calendar_ref: str | None = None) -> StoreEntry:
        return StoreEntry(
            title=self.display_title(event),
            start=event.start,
            end=event.end,
            is_all_day=event.is_all_day,
            notes=self.build_notes(event),
            location=event.location,
            url=event.url,
            time_zone=event.time_zone,
            recurrence_rule=normalize_rule(event.recurrence_rule, event.start),
            exception_dates=list(event.exception_dates),
            alarms=list(event.alarms) if self.config.sync_alarms else [],
            transparency=event.transparency,
            calendar_ref=calendar_ref,
        )
