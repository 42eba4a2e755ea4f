"""
Pure data models and error types. No network, EDS or sqlite imports.
"""

from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from enum import Enum
from pathlib import Path

DEFAULT_STATE_DB = Path.home() / ".local/share/ics-calendar-sync/state.db"
DEFAULT_CONFIG = Path.home() / ".config/ics-calendar-sync.conf"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class CalendarSyncError(Exception):
    """Base exception for calendar sync errors."""

    pass


class FetchError(CalendarSyncError):
    """The feed could not be retrieved."""

    pass


class AuthenticationRequiredError(FetchError):
    def __init__(self, url: str = ""):
        super().__init__(
            "Authentication required. Provide credentials via config or environment variables."
            + (f" ({url})" if url else "")
        )


class FeedNotFoundError(FetchError):
    def __init__(self, url: str):
        super().__init__(f"Feed not found (HTTP 404): {url}")
        self.url = url


class InvalidResponseError(FetchError):
    def __init__(self, status_code: int):
        super().__init__(f"Server returned HTTP {status_code}")
        self.status_code = status_code


class ParseError(CalendarSyncError):
    """A single event (or the whole feed) could not be parsed."""

    pass


class FeedFormatError(ParseError):
    """The fetched text is not a calendar at all."""

    pass


class RecurrenceError(CalendarSyncError):
    pass


class CalendarStoreError(CalendarSyncError):
    """Base class for calendar store failures."""

    pass


class AccessDeniedError(CalendarStoreError):
    pass


class NoWritableCalendarError(CalendarStoreError):
    pass


class CalendarNotFoundError(CalendarStoreError):
    def __init__(self, name: str):
        super().__init__(f"Calendar '{name}' not found")
        self.name = name


class EntryNotFoundError(CalendarStoreError):
    def __init__(self, entry_id: str):
        super().__init__(f"Event with identifier '{entry_id}' not found")
        self.entry_id = entry_id


class StateStoreError(CalendarSyncError):
    pass


class ConfigError(CalendarSyncError):
    pass


class SyncInProgressError(CalendarSyncError):
    def __init__(self, lock_path: Path):
        super().__init__(f"Sync already in progress (lock held: {lock_path})")
        self.lock_path = lock_path


# ---------------------------------------------------------------------------
# Feed events
# ---------------------------------------------------------------------------


class EventStatus(str, Enum):
    TENTATIVE = "TENTATIVE"
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"


class EventTransparency(str, Enum):
    OPAQUE = "OPAQUE"  # blocks time
    TRANSPARENT = "TRANSPARENT"


class AlarmAction(str, Enum):
    DISPLAY = "DISPLAY"
    AUDIO = "AUDIO"
    EMAIL = "EMAIL"


class TriggerRelation(str, Enum):
    START = "START"
    END = "END"


class AttendeeRole(str, Enum):
    CHAIR = "CHAIR"
    REQUIRED = "REQ-PARTICIPANT"
    OPTIONAL = "OPT-PARTICIPANT"
    NON_PARTICIPANT = "NON-PARTICIPANT"


class ParticipationStatus(str, Enum):
    NEEDS_ACTION = "NEEDS-ACTION"
    ACCEPTED = "ACCEPTED"
    DECLINED = "DECLINED"
    TENTATIVE = "TENTATIVE"
    DELEGATED = "DELEGATED"


def enum_or_none(enum_cls, value: str | None):
    """Map a raw iCal token onto an enum member, or None when unknown."""
    if value is None:
        return None
    try:
        return enum_cls(value.strip().upper())
    except ValueError:
        return None


@dataclass
class Alarm:
    """A VALARM. ``trigger`` is a signed offset in seconds (negative = before)."""

    action: AlarmAction
    trigger: int
    trigger_relation: TriggerRelation = TriggerRelation.START
    description: str | None = None


@dataclass
class Organizer:
    email: str | None = None
    name: str | None = None


@dataclass
class Attendee:
    email: str | None = None
    name: str | None = None
    role: AttendeeRole | None = None
    participation_status: ParticipationStatus | None = None


@dataclass
class CalendarEvent:
    """One VEVENT from the feed."""

    uid: str
    start: datetime
    end: datetime
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    url: str | None = None
    is_all_day: bool = False
    sequence: int = 0
    last_modified: datetime | None = None
    date_stamp: datetime | None = None
    recurrence_rule: str | None = None
    exception_dates: list[datetime] = field(default_factory=list)
    additional_dates: list[datetime] = field(default_factory=list)
    alarms: list[Alarm] = field(default_factory=list)
    status: EventStatus | None = None
    transparency: EventTransparency | None = None
    organizer: Organizer | None = None
    attendees: list[Attendee] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    priority: int | None = None
    time_zone: str | None = None
    raw_text: str = ""

    @property
    def display_title(self) -> str:
        return self.summary or "(No Title)"


# ---------------------------------------------------------------------------
# Calendar store entries
# ---------------------------------------------------------------------------


@dataclass
class StoreEntry:
    """An event as held by the calendar store.

    ``stable_id`` survives store restarts; ``local_id`` is a secondary,
    store-local handle that some backends expose and others leave as None.
    Drafts passed to ``CalendarStore.create`` carry no identifiers yet.
    """

    title: str
    start: datetime
    end: datetime
    is_all_day: bool = False
    notes: str | None = None
    location: str | None = None
    url: str | None = None
    time_zone: str | None = None
    recurrence_rule: str | None = None
    exception_dates: list[datetime] = field(default_factory=list)
    alarms: list[Alarm] = field(default_factory=list)
    transparency: EventTransparency | None = None
    stable_id: str | None = None
    local_id: str | None = None
    calendar_ref: str | None = None


# ---------------------------------------------------------------------------
# Ledger / history
# ---------------------------------------------------------------------------


class RunStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class SyncedEventRecord:
    """Ledger row: the last applied state of one source event."""

    source_uid: str
    store_item_id: str
    content_hash: str
    sequence: int = 0
    store_local_id: str | None = None
    last_modified: datetime | None = None
    synced_at: datetime | None = None
    raw_source_data: str = ""


@dataclass
class SyncRunRecord:
    id: int
    started_at: datetime
    status: RunStatus
    completed_at: datetime | None = None
    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    error_message: str | None = None


# ---------------------------------------------------------------------------
# Run configuration and results
# ---------------------------------------------------------------------------


@dataclass
class SyncConfig:
    """Configuration for a sync operation."""

    source_url: str
    calendar_name: str = "Subscribed Events"
    state_db_path: Path = DEFAULT_STATE_DB
    headers: dict[str, str] = field(default_factory=dict)
    timeout: int = 30
    max_retries: int = 3
    retry_delay: float = 2.0
    verify_ssl: bool = True
    create_if_missing: bool = True
    delete_orphans: bool = True
    summary_prefix: str = ""
    window_days_past: int | None = None  # None = unbounded
    window_days_future: int | None = None
    sync_alarms: bool = True
    include_source_info: bool = False
    log_level: str = "info"
    interval_minutes: int = 15
    dry_run: bool = False
    full_resync: bool = False
    verbose: bool = False


@dataclass
class SyncEventError:
    uid: str
    operation: str  # 'create', 'update', 'delete'
    message: str


@dataclass
class SyncResult:
    """Outcome counts for one sync run."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    errors: list[SyncEventError] = field(default_factory=list)

    @property
    def total_processed(self) -> int:
        return self.created + self.updated + self.deleted + self.unchanged

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def add_error(self, uid: str, operation: str, message: str) -> None:
        self.errors.append(SyncEventError(uid=uid, operation=operation, message=message))
