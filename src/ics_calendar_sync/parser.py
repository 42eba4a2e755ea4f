"""
Tolerant RFC 5545 parser for VEVENT/VALARM blocks.
"""

import logging
import re
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from datetime import tzinfo
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from ics_calendar_sync.models import Alarm
from ics_calendar_sync.models import AlarmAction
from ics_calendar_sync.models import Attendee
from ics_calendar_sync.models import AttendeeRole
from ics_calendar_sync.models import CalendarEvent
from ics_calendar_sync.models import EventStatus
from ics_calendar_sync.models import EventTransparency
from ics_calendar_sync.models import FeedFormatError
from ics_calendar_sync.models import Organizer
from ics_calendar_sync.models import ParseError
from ics_calendar_sync.models import ParticipationStatus
from ics_calendar_sync.models import TriggerRelation
from ics_calendar_sync.models import enum_or_none

logger = logging.getLogger(__name__)

# Non-IANA TZID values commonly emitted by Exchange/Outlook feeds.
TIMEZONE_ALIASES = {
    "Eastern Standard Time": "America/New_York",
    "Pacific Standard Time": "America/Los_Angeles",
    "Central Standard Time": "America/Chicago",
    "Mountain Standard Time": "America/Denver",
    "GMT Standard Time": "Europe/London",
    "W. Europe Standard Time": "Europe/Berlin",
    "Central European Standard Time": "Europe/Warsaw",
    "Romance Standard Time": "Europe/Paris",
    "GMT": "UTC",
    "Etc/GMT": "UTC",
    "Z": "UTC",
}

_DATETIME_FORMATS = ("%Y%m%dT%H%M%S", "%Y%m%dT%H%M", "%Y%m%d")

# [+-]P[nY][nM][nW][nD][T[nH][nM][nS]]
_DURATION_RE = re.compile(
    r"^(?P<sign>[+-])?P"
    r"(?:(?P<years>\d+)Y)?(?:(?P<months>\d+)M)?(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)

# Calendar-free approximations for Y and (date-part) M designators.
_DAYS_PER_YEAR = 365
_DAYS_PER_MONTH = 30


@dataclass
class Property:
    """One parsed content line: NAME;PARAM=VALUE:value."""

    name: str
    value: str
    params: dict[str, str] = field(default_factory=dict)


@dataclass
class ParseDiagnostic:
    uid: str | None
    message: str


# ---------------------------------------------------------------------------
# Low-level helpers
# ---------------------------------------------------------------------------


def unfold_lines(content: str) -> list[str]:
    """Normalise line endings and join RFC 5545 continuation lines."""
    normalized = content.replace("\r\n", "\n").replace("\r", "\n")
    normalized = normalized.replace("\n ", "").replace("\n\t", "")
    return normalized.split("\n")


def _split_unquoted(text: str, sep: str) -> list[str]:
    parts = []
    current = []
    in_quotes = False
    for char in text:
        if char == '"':
            in_quotes = not in_quotes
        if char == sep and not in_quotes:
            parts.append("".join(current))
            current = []
            continue
        current.append(char)
    parts.append("".join(current))
    return parts


def parse_property(line: str) -> Property | None:
    """Split a content line at the first unquoted colon.

    Returns None for lines with no name/value separator.
    """
    in_quotes = False
    colon = -1
    for index, char in enumerate(line):
        if char == '"':
            in_quotes = not in_quotes
        elif char == ":" and not in_quotes:
            colon = index
            break
    if colon <= 0:
        return None

    head, value = line[:colon], line[colon + 1 :]
    components = _split_unquoted(head, ";")
    name = components[0].strip().upper()
    if not name:
        return None

    params = {}
    for param in components[1:]:
        key, sep, raw = param.partition("=")
        if not sep:
            continue
        params[key.strip().upper()] = raw.strip().strip('"')
    return Property(name=name, value=value, params=params)


def unescape_text(value: str) -> str:
    """Undo TEXT escaping (\\n, \\N, \\, \\; \\\\)."""
    out = []
    chars = iter(value)
    for char in chars:
        if char != "\\":
            out.append(char)
            continue
        nxt = next(chars, "")
        if nxt in ("n", "N"):
            out.append("\n")
        elif nxt in (",", ";", "\\"):
            out.append(nxt)
        else:
            # Unknown escape: keep it verbatim.
            out.append("\\" + nxt)
    return "".join(out)


def split_text_list(value: str) -> list[str]:
    """Split a comma-separated TEXT list, honouring escaped commas."""
    items = []
    current = []
    escaped = False
    for char in value:
        if escaped:
            current.append("\\" + char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == ",":
            items.append("".join(current))
            current = []
        else:
            current.append(char)
    items.append("".join(current))
    return [unescape_text(item).strip() for item in items if item.strip()]


def resolve_timezone(tzid: str | None) -> tuple[tzinfo | None, str | None]:
    """Return (tzinfo, canonical key) for a TZID parameter value."""
    if not tzid:
        return None, None
    candidates = [tzid, TIMEZONE_ALIASES.get(tzid)]
    cleaned = tzid.replace('"', "").replace("/Microsoft/", "").strip()
    candidates.extend([cleaned, TIMEZONE_ALIASES.get(cleaned)])
    # Vendor-prefixed ids, e.g. /freeassociation.sourceforge.net/Europe/Berlin
    segments = cleaned.strip("/").split("/")
    candidates.extend("/".join(segments[-n:]) for n in (3, 2) if len(segments) > n)
    for key in candidates:
        if not key:
            continue
        if key == "UTC":
            return timezone.utc, "UTC"
        try:
            return ZoneInfo(key), key
        except (ZoneInfoNotFoundError, ValueError):
            continue
    logger.debug("Unknown TZID %r", tzid)
    return None, None


def parse_datetime(
    value: str | None,
    params: dict[str, str] | None = None,
    default_tz: tzinfo | None = None,
) -> datetime | None:
    """Parse an iCal DATE or DATE-TIME into an aware datetime.

    ``Z`` means UTC; otherwise the TZID parameter is honoured; floating and
    date-only values use ``default_tz`` (the local zone when None).
    """
    if not value:
        return None
    text = value.strip()
    tz: tzinfo | None = None
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1]
        tz = timezone.utc
    elif params and params.get("TZID"):
        tz, _ = resolve_timezone(params["TZID"])

    for fmt in _DATETIME_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        if tz is None:
            tz = default_tz
        if tz is None:
            return parsed.astimezone()
        return parsed.replace(tzinfo=tz)
    return None


def parse_duration(value: str) -> timedelta:
    """Parse an iCal DURATION.

    ``nY`` counts as 365 days and a date-part ``nM`` as 30 days: without a
    calendar anchor there is no exact length for either.
    """
    match = _DURATION_RE.match(value.strip().upper())
    if not match or value.strip().upper() in ("P", "+P", "-P", "PT"):
        raise ParseError(f"Invalid duration: {value!r}")
    parts = {k: int(v) for k, v in match.groupdict().items() if k != "sign" and v}
    days = (
        parts.get("years", 0) * _DAYS_PER_YEAR
        + parts.get("months", 0) * _DAYS_PER_MONTH
        + parts.get("weeks", 0) * 7
        + parts.get("days", 0)
    )
    try:
        delta = timedelta(
            days=days,
            hours=parts.get("hours", 0),
            minutes=parts.get("minutes", 0),
            seconds=parts.get("seconds", 0),
        )
    except (OverflowError, ValueError) as e:
        raise ParseError(f"Duration out of range: {value!r}") from e
    return -delta if match.group("sign") == "-" else delta


def _strip_mailto(value: str) -> str:
    value = value.strip()
    if value.lower().startswith("mailto:"):
        return value[7:]
    return value


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


class ICSParser:
    """Converts feed text into CalendarEvent records.

    A malformed event is skipped and reported in ``diagnostics``; it never
    aborts the rest of the feed.
    """

    def __init__(self, default_tz: tzinfo | None = None):
        self.default_tz = default_tz
        self.diagnostics: list[ParseDiagnostic] = []

    def parse(self, text: str) -> list[CalendarEvent]:
        self.diagnostics = []
        lines = unfold_lines(text)
        if not any(line.strip().upper() == "BEGIN:VCALENDAR" for line in lines):
            raise FeedFormatError("Content is not an iCalendar document (no BEGIN:VCALENDAR)")

        events = []
        block: list[str] | None = None
        for line in lines:
            trimmed = line.strip()
            if not trimmed:
                continue
            upper = trimmed.upper()
            if upper == "BEGIN:VEVENT":
                if block is not None:
                    self._record(None, "Unterminated VEVENT before next BEGIN:VEVENT")
                block = []
                continue
            if upper == "END:VEVENT":
                if block is not None:
                    event = self._try_parse_block(block)
                    if event is not None:
                        events.append(event)
                block = None
                continue
            if block is not None:
                block.append(line)

        if block is not None:
            self._record(None, "Unterminated VEVENT at end of feed")

        logger.debug("Parsed %d events (%d skipped)", len(events), len(self.diagnostics))
        return events

    def parse_event_block(self, text: str) -> CalendarEvent:
        """Parse exactly one VEVENT (with or without a VCALENDAR wrapper).

        Raises ParseError when the block is missing or invalid.
        """
        block: list[str] | None = None
        for line in unfold_lines(text):
            trimmed = line.strip()
            upper = trimmed.upper()
            if upper == "BEGIN:VEVENT" and block is None:
                block = []
            elif upper == "END:VEVENT" and block is not None:
                return self._parse_event(block)
            elif block is not None and trimmed:
                block.append(line)
        raise ParseError("No complete VEVENT block found")

    # -- internals ----------------------------------------------------------

    def _record(self, uid: str | None, message: str) -> None:
        logger.warning("Skipping event%s: %s", f" {uid}" if uid else "", message)
        self.diagnostics.append(ParseDiagnostic(uid=uid, message=message))

    def _try_parse_block(self, block: list[str]) -> CalendarEvent | None:
        try:
            return self._parse_event(block)
        except ParseError as e:
            uid = next(
                (line.partition(":")[2].strip() for line in block if line.upper().startswith("UID")),
                None,
            )
            self._record(uid or None, str(e))
            return None

    def _parse_event(self, block: list[str]) -> CalendarEvent:
        properties: dict[str, list[Property]] = {}
        alarm_blocks: list[list[str]] = []
        current_alarm: list[str] | None = None
        nested_depth = 0

        for line in block:
            upper = line.strip().upper()
            if upper == "BEGIN:VALARM":
                current_alarm = []
                continue
            if upper == "END:VALARM":
                if current_alarm is not None:
                    alarm_blocks.append(current_alarm)
                current_alarm = None
                continue
            if current_alarm is not None:
                current_alarm.append(line)
                continue
            # Other nested components (rare in VEVENT) are ignored wholesale.
            if upper.startswith("BEGIN:"):
                nested_depth += 1
                continue
            if upper.startswith("END:"):
                nested_depth = max(0, nested_depth - 1)
                continue
            if nested_depth:
                continue

            prop = parse_property(line)
            if prop is None:
                logger.debug("Ignoring malformed property line: %r", line)
                continue
            properties.setdefault(prop.name, []).append(prop)

        def first(name: str) -> Property | None:
            values = properties.get(name)
            return values[0] if values else None

        uid_prop = first("UID")
        uid = uid_prop.value.strip() if uid_prop else ""
        if not uid:
            raise ParseError("Event missing required UID field")

        dtstart = first("DTSTART")
        start = parse_datetime(
            dtstart.value if dtstart else None,
            dtstart.params if dtstart else None,
            self.default_tz,
        )
        if start is None:
            raise ParseError(f"Event {uid} has invalid or missing start date")

        is_all_day = dtstart.params.get("VALUE", "").upper() == "DATE"

        dtend = first("DTEND")
        duration = first("DURATION")
        end = None
        if dtend is not None:
            end = parse_datetime(dtend.value, dtend.params, self.default_tz)
        try:
            if end is None and duration is not None:
                end = start + parse_duration(duration.value)
            if end is None:
                end = start + timedelta(days=1) if is_all_day else start
        except OverflowError as e:
            raise ParseError(f"Event {uid} has an out-of-range end") from e
        if end < start:
            raise ParseError(f"Event {uid} ends before it starts")

        _, time_zone = resolve_timezone(dtstart.params.get("TZID"))

        summary = first("SUMMARY")
        description = first("DESCRIPTION")
        location = first("LOCATION")
        url = first("URL")
        sequence = first("SEQUENCE")
        last_modified = first("LAST-MODIFIED")
        dtstamp = first("DTSTAMP")
        rrule = first("RRULE")
        status = first("STATUS")
        transp = first("TRANSP")
        priority = first("PRIORITY")

        raw_lines = ["BEGIN:VEVENT", *block, "END:VEVENT"]
        return CalendarEvent(
            uid=uid,
            start=start,
            end=end,
            summary=unescape_text(summary.value) if summary else None,
            description=unescape_text(description.value) if description else None,
            location=unescape_text(location.value) if location else None,
            url=url.value.strip() or None if url else None,
            is_all_day=is_all_day,
            sequence=_non_negative_int(sequence.value if sequence else None),
            last_modified=self._instant(last_modified),
            date_stamp=self._instant(dtstamp),
            recurrence_rule=rrule.value.strip() or None if rrule else None,
            exception_dates=self._multi_dates(properties.get("EXDATE", [])),
            additional_dates=self._multi_dates(properties.get("RDATE", [])),
            alarms=[a for a in (self._parse_alarm(b, start) for b in alarm_blocks) if a],
            status=enum_or_none(EventStatus, status.value if status else None),
            transparency=enum_or_none(EventTransparency, transp.value if transp else None),
            organizer=self._organizer(first("ORGANIZER")),
            attendees=[self._attendee(p) for p in properties.get("ATTENDEE", [])],
            categories=self._categories(properties.get("CATEGORIES", [])),
            priority=_priority(priority.value if priority else None),
            time_zone=time_zone,
            raw_text="\r\n".join(raw_lines),
        )

    def _instant(self, prop: Property | None) -> datetime | None:
        if prop is None:
            return None
        return parse_datetime(prop.value, prop.params, self.default_tz)

    def _multi_dates(self, props: list[Property]) -> list[datetime]:
        dates: list[datetime] = []
        for prop in props:
            # RDATE;VALUE=PERIOD values carry a "/end" suffix; keep the start.
            for raw in prop.value.split(","):
                parsed = parse_datetime(raw.split("/")[0].strip(), prop.params, self.default_tz)
                if parsed is not None and parsed not in dates:
                    dates.append(parsed)
        return dates

    def _categories(self, props: list[Property]) -> list[str]:
        categories: list[str] = []
        for prop in props:
            for item in split_text_list(prop.value):
                if item not in categories:
                    categories.append(item)
        return categories

    @staticmethod
    def _organizer(prop: Property | None) -> Organizer | None:
        if prop is None:
            return None
        return Organizer(email=_strip_mailto(prop.value) or None, name=prop.params.get("CN"))

    @staticmethod
    def _attendee(prop: Property) -> Attendee:
        return Attendee(
            email=_strip_mailto(prop.value) or None,
            name=prop.params.get("CN"),
            role=enum_or_none(AttendeeRole, prop.params.get("ROLE")),
            participation_status=enum_or_none(ParticipationStatus, prop.params.get("PARTSTAT")),
        )

    def _parse_alarm(self, lines: list[str], event_start: datetime) -> Alarm | None:
        props: dict[str, Property] = {}
        for line in lines:
            prop = parse_property(line)
            if prop is not None:
                props.setdefault(prop.name, prop)

        action = enum_or_none(AlarmAction, props["ACTION"].value if "ACTION" in props else None)
        trigger = props.get("TRIGGER")
        if action is None or trigger is None:
            logger.debug("Ignoring VALARM without a supported ACTION or TRIGGER")
            return None

        relation = TriggerRelation.START
        if trigger.params.get("RELATED", "").upper() == "END":
            relation = TriggerRelation.END

        if trigger.params.get("VALUE", "").upper() == "DATE-TIME":
            absolute = parse_datetime(trigger.value, trigger.params, self.default_tz)
            if absolute is None:
                return None
            offset = int((absolute - event_start).total_seconds())
        else:
            try:
                offset = int(parse_duration(trigger.value).total_seconds())
            except ParseError:
                logger.debug("Ignoring VALARM with unparseable TRIGGER %r", trigger.value)
                return None

        description = props.get("DESCRIPTION")
        return Alarm(
            action=action,
            trigger=offset,
            trigger_relation=relation,
            description=unescape_text(description.value) if description else None,
        )


def _non_negative_int(value: str | None) -> int:
    try:
        return max(0, int((value or "0").strip()))
    except ValueError:
        return 0


def _priority(value: str | None) -> int | None:
    try:
        number = int((value or "").strip())
    except ValueError:
        return None
    # 0 means "undefined" in RFC 5545.
    return number if 1 <= number <= 9 else None
