"""
RRULE text <-> structured recurrence rule.

Only the fields stores generally understand survive ``to_rule_text``:
frequency, interval, BYDAY, BYMONTHDAY, BYMONTH, BYSETPOS and the end
condition. BYYEARDAY and BYWEEKNO are parsed but dropped on output.
"""

import logging
import re
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from enum import Enum

from ics_calendar_sync.models import RecurrenceError

logger = logging.getLogger(__name__)

_BYDAY_RE = re.compile(r"^(?P<ordinal>[+-]?\d{1,2})?(?P<day>SU|MO|TU|WE|TH|FR|SA)$")
_UNTIL_FORMATS = ("%Y%m%dT%H%M%S", "%Y%m%d")


class Frequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


class Weekday(str, Enum):
    SUNDAY = "SU"
    MONDAY = "MO"
    TUESDAY = "TU"
    WEDNESDAY = "WE"
    THURSDAY = "TH"
    FRIDAY = "FR"
    SATURDAY = "SA"


@dataclass(frozen=True)
class DayOfWeek:
    """A BYDAY item; ``ordinal`` 0 means every such weekday, -1 the last."""

    day: Weekday
    ordinal: int = 0

    def __str__(self) -> str:
        return f"{self.ordinal}{self.day.value}" if self.ordinal else self.day.value


@dataclass
class RecurrenceRule:
    frequency: Frequency
    interval: int = 1
    count: int | None = None
    until: datetime | None = None
    by_day: list[DayOfWeek] = field(default_factory=list)
    by_month_day: list[int] = field(default_factory=list)
    by_month: list[int] = field(default_factory=list)
    by_set_position: list[int] = field(default_factory=list)
    by_year_day: list[int] = field(default_factory=list)
    by_week_number: list[int] = field(default_factory=list)

    @property
    def is_unbounded(self) -> bool:
        return self.count is None and self.until is None


def _components(text: str) -> dict[str, str]:
    rule = text.strip()
    if rule.upper().startswith("RRULE:"):
        rule = rule[6:]
    parts = {}
    for part in rule.split(";"):
        key, sep, value = part.partition("=")
        if sep and key.strip():
            parts[key.strip().upper()] = value.strip()
    return parts


def _int_list(value: str | None) -> list[int]:
    if not value:
        return []
    numbers = []
    for item in value.split(","):
        try:
            numbers.append(int(item.strip()))
        except ValueError:
            logger.debug("Ignoring non-numeric rule value %r", item)
    return numbers


def _parse_by_day(value: str | None) -> list[DayOfWeek]:
    days = []
    for item in (value or "").split(","):
        match = _BYDAY_RE.match(item.strip().upper())
        if not match:
            continue
        ordinal = int(match.group("ordinal") or 0)
        days.append(DayOfWeek(Weekday(match.group("day")), ordinal))
    return days


def _parse_until(value: str, event_start: datetime | None) -> datetime | None:
    text = value.strip()
    tz = None
    if text.upper().endswith("Z"):
        text = text[:-1]
        tz = timezone.utc
    elif event_start is not None:
        tz = event_start.tzinfo
    for fmt in _UNTIL_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
        except ValueError:
            continue
        return parsed.replace(tzinfo=tz) if tz else parsed.astimezone()
    return None


def _frequency(value: str | None) -> Frequency:
    try:
        return Frequency((value or "").upper())
    except ValueError:
        raise RecurrenceError(f"Unsupported recurrence frequency: {value!r}") from None


def parse_rule(text: str | None, event_start: datetime | None = None) -> RecurrenceRule | None:
    """Parse an RRULE value (``RRULE:`` prefix optional).

    Returns None for empty input or a frequency other than
    daily/weekly/monthly/yearly. A naive UNTIL is read in the zone of
    ``event_start``.
    """
    if not text or not text.strip():
        return None
    parts = _components(text)
    try:
        frequency = _frequency(parts.get("FREQ"))
    except RecurrenceError as e:
        logger.warning(f"{e}; treating event as non-recurring")
        return None

    try:
        interval = max(1, int(parts.get("INTERVAL", "1")))
    except ValueError:
        interval = 1

    count = None
    until = None
    if "COUNT" in parts:
        try:
            count = int(parts["COUNT"])
        except ValueError:
            logger.debug("Ignoring invalid COUNT %r", parts["COUNT"])
    if count is None and "UNTIL" in parts:
        until = _parse_until(parts["UNTIL"], event_start)

    return RecurrenceRule(
        frequency=frequency,
        interval=interval,
        count=count,
        until=until,
        by_day=_parse_by_day(parts.get("BYDAY")),
        by_month_day=_int_list(parts.get("BYMONTHDAY")),
        by_month=_int_list(parts.get("BYMONTH")),
        by_set_position=_int_list(parts.get("BYSETPOS")),
        by_year_day=_int_list(parts.get("BYYEARDAY")),
        by_week_number=_int_list(parts.get("BYWEEKNO")),
    )


def to_rule_text(rule: RecurrenceRule) -> str:
    """Render a rule back to RRULE value text (without the ``RRULE:`` prefix)."""
    parts = [f"FREQ={rule.frequency.value}"]
    if rule.interval > 1:
        parts.append(f"INTERVAL={rule.interval}")
    if rule.by_day:
        parts.append("BYDAY=" + ",".join(str(d) for d in rule.by_day))
    if rule.by_month_day:
        parts.append("BYMONTHDAY=" + ",".join(str(n) for n in rule.by_month_day))
    if rule.by_month:
        parts.append("BYMONTH=" + ",".join(str(n) for n in rule.by_month))
    if rule.by_set_position:
        parts.append("BYSETPOS=" + ",".join(str(n) for n in rule.by_set_position))
    if rule.count is not None and rule.count > 0:
        parts.append(f"COUNT={rule.count}")
    elif rule.until is not None:
        parts.append("UNTIL=" + rule.until.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ"))
    return ";".join(parts)


def normalize_rule(text: str | None, event_start: datetime | None = None) -> str | None:
    """Parse and re-render a rule; None when it has no usable frequency."""
    rule = parse_rule(text, event_start)
    return to_rule_text(rule) if rule else None
