"""
Unit tests for ICSParser and the low-level content-line helpers.
"""

from datetime import timedelta
from datetime import timezone

import pytest

from ics_calendar_sync.models import AlarmAction
from ics_calendar_sync.models import AttendeeRole
from ics_calendar_sync.models import EventStatus
from ics_calendar_sync.models import FeedFormatError
from ics_calendar_sync.models import ParseError
from ics_calendar_sync.models import TriggerRelation
from ics_calendar_sync.parser import ICSParser
from ics_calendar_sync.parser import parse_duration
from ics_calendar_sync.parser import parse_property
from ics_calendar_sync.parser import resolve_timezone
from ics_calendar_sync.parser import split_text_list
from ics_calendar_sync.parser import unescape_text
from ics_calendar_sync.parser import unfold_lines
from tests.conftest import make_feed
from tests.conftest import make_vevent
from tests.conftest import utc


def _block(*lines: str) -> str:
    """A feed holding one VEVENT made of exactly ``lines``."""
    return make_feed("BEGIN:VEVENT\r\n" + "".join(f"{line}\r\n" for line in lines) + "END:VEVENT\r\n")


def _vevent_lines(uid: str, *lines: str) -> str:
    return "".join(f"{line}\r\n" for line in ("BEGIN:VEVENT", f"UID:{uid}", *lines, "END:VEVENT"))


@pytest.fixture
def parser():
    return ICSParser(default_tz=timezone.utc)


# ---------------------------------------------------------------------------
# Content-line helpers
# ---------------------------------------------------------------------------


class TestContentLines:
    def test_unfold_joins_continuation_lines(self):
        assert unfold_lines("SUMMARY:Hel\r\n lo\r\n\tWorld") == ["SUMMARY:HelloWorld"]

    def test_property_splits_at_first_unquoted_colon(self):
        prop = parse_property('ATTENDEE;CN="Doe: John";ROLE=CHAIR:mailto:john@example.com')
        assert prop.name == "ATTENDEE"
        assert prop.value == "mailto:john@example.com"
        assert prop.params == {"CN": "Doe: John", "ROLE": "CHAIR"}

    def test_line_without_colon_is_ignored(self):
        assert parse_property("GARBAGE") is None

    def test_unescape_text(self):
        assert unescape_text(r"a\, b\; c\nd\\e") == "a, b; c\nd\\e"

    def test_unknown_escape_kept_verbatim(self):
        assert unescape_text(r"50\% off") == r"50\% off"

    def test_text_list_honours_escaped_commas(self):
        assert split_text_list(r"One\, Two,Three, ") == ["One, Two", "Three"]


class TestDurations:
    def test_negative_minutes(self):
        assert parse_duration("-PT15M") == -timedelta(minutes=15)

    def test_weeks_and_time(self):
        assert parse_duration("P1WT2H") == timedelta(days=7, hours=2)

    def test_year_and_month_are_approximated(self):
        assert parse_duration("P1Y2M") == timedelta(days=365 + 60)

    @pytest.mark.parametrize("value", ["P", "PT", "15M", "PXD", "P9999999999D"])
    def test_invalid_duration_raises(self, value):
        with pytest.raises(ParseError):
            parse_duration(value)


class TestTimezones:
    def test_iana_name(self):
        tz, key = resolve_timezone("Europe/Berlin")
        assert key == "Europe/Berlin"
        assert tz is not None

    def test_windows_alias(self):
        _, key = resolve_timezone("W. Europe Standard Time")
        assert key == "Europe/Berlin"

    def test_vendor_prefixed_id(self):
        _, key = resolve_timezone("/freeassociation.sourceforge.net/Europe/Berlin")
        assert key == "Europe/Berlin"

    def test_unknown_zone(self):
        assert resolve_timezone("Not/AZone") == (None, None)


# ---------------------------------------------------------------------------
# Feed parsing
# ---------------------------------------------------------------------------


class TestFeedParsing:
    def test_parses_basic_event(self, parser):
        events = parser.parse(make_feed(make_vevent("u1", summary="Standup", sequence=2)))

        assert len(events) == 1
        event = events[0]
        assert event.uid == "u1"
        assert event.summary == "Standup"
        assert event.start == utc(2024, 1, 15, 9, 0)
        assert event.end == utc(2024, 1, 15, 9, 30)
        assert event.sequence == 2
        assert event.date_stamp == utc(2024, 1, 1)
        assert event.raw_text.startswith("BEGIN:VEVENT\r\nUID:u1")

    def test_non_calendar_content_raises(self, parser):
        with pytest.raises(FeedFormatError):
            parser.parse("<html><body>Login required</body></html>")

    def test_empty_calendar_yields_no_events(self, parser):
        assert parser.parse(make_feed()) == []

    def test_bad_event_is_skipped_not_fatal(self, parser):
        feed = make_feed(
            make_vevent("good-1"),
            "BEGIN:VEVENT\r\nSUMMARY:No uid\r\nDTSTART:20240115T090000Z\r\nEND:VEVENT\r\n",
            make_vevent("bad-start", start="not-a-date"),
            make_vevent("good-2"),
        )
        events = parser.parse(feed)

        assert [e.uid for e in events] == ["good-1", "good-2"]
        assert len(parser.diagnostics) == 2
        assert parser.diagnostics[1].uid == "bad-start"

    def test_end_before_start_is_skipped(self, parser):
        events = parser.parse(
            make_feed(make_vevent("u1", start="20240115T100000Z", end="20240115T090000Z"))
        )
        assert events == []
        assert "ends before it starts" in parser.diagnostics[0].message

    def test_out_of_range_duration_is_skipped(self, parser):
        feed = make_feed(
            make_vevent("huge", end=None, extra=("DURATION:P9999999999D",)),
            make_vevent("good"),
        )
        events = parser.parse(feed)

        assert [e.uid for e in events] == ["good"]
        assert parser.diagnostics[0].uid == "huge"

    def test_all_day_end_past_year_9999_is_skipped(self, parser):
        feed = make_feed(
            _vevent_lines("last-day", "DTSTART;VALUE=DATE:99991231"),
            make_vevent("good"),
        )
        events = parser.parse(feed)

        assert [e.uid for e in events] == ["good"]
        assert parser.diagnostics[0].uid == "last-day"
        assert "out-of-range end" in parser.diagnostics[0].message

    def test_unterminated_event_is_reported(self, parser):
        feed = "BEGIN:VCALENDAR\r\nBEGIN:VEVENT\r\nUID:u1\r\nDTSTART:20240115T090000Z\r\n"
        assert parser.parse(feed) == []
        assert parser.diagnostics

    def test_trailing_spaces_in_values_are_kept(self, parser):
        events = parser.parse(
            _block("UID:u1 ", "DTSTART:20240115T090000Z ", "SUMMARY:Foo ")
        )
        assert events[0].uid == "u1"
        assert events[0].summary == "Foo "
        assert events[0].start == utc(2024, 1, 15, 9, 0)

    def test_folded_and_escaped_description(self, parser):
        events = parser.parse(
            _block(
                "UID:u1",
                "DTSTART:20240115T090000Z",
                "DESCRIPTION:Agenda:\\n1. Intro\\, welcome",
                " and coffee",
            )
        )
        assert events[0].description == "Agenda:\n1. Intro, welcomeand coffee"

    def test_missing_summary_uses_placeholder_title(self, parser):
        events = parser.parse(_block("UID:u1", "DTSTART:20240115T090000Z"))
        assert events[0].summary is None
        assert events[0].display_title == "(No Title)"


class TestEventTimes:
    def test_all_day_without_end_lasts_one_day(self, parser):
        events = parser.parse(_block("UID:u1", "DTSTART;VALUE=DATE:20240115"))
        event = events[0]
        assert event.is_all_day
        assert event.end - event.start == timedelta(days=1)

    def test_timed_without_end_is_instantaneous(self, parser):
        events = parser.parse(make_feed(make_vevent("u1", end=None)))
        assert events[0].end == events[0].start

    def test_duration_sets_end(self, parser):
        events = parser.parse(
            _block("UID:u1", "DTSTART:20240115T090000Z", "DURATION:PT1H30M")
        )
        assert events[0].end == utc(2024, 1, 15, 10, 30)

    def test_tzid_is_honoured(self, parser):
        events = parser.parse(
            _block(
                "UID:u1",
                "DTSTART;TZID=Europe/Berlin:20240115T090000",
                "DTEND;TZID=Europe/Berlin:20240115T100000",
            )
        )
        event = events[0]
        assert event.time_zone == "Europe/Berlin"
        assert event.start == utc(2024, 1, 15, 8, 0)

    def test_floating_time_uses_default_zone(self, parser):
        events = parser.parse(_block("UID:u1", "DTSTART:20240115T090000"))
        assert events[0].start == utc(2024, 1, 15, 9, 0)


class TestEventProperties:
    def test_exception_dates_are_deduplicated(self, parser):
        events = parser.parse(
            make_feed(
                make_vevent(
                    "u1",
                    extra=(
                        "RRULE:FREQ=DAILY;COUNT=5",
                        "EXDATE:20240116T090000Z,20240117T090000Z",
                        "EXDATE:20240116T090000Z",
                    ),
                )
            )
        )
        event = events[0]
        assert event.recurrence_rule == "FREQ=DAILY;COUNT=5"
        assert event.exception_dates == [utc(2024, 1, 16, 9), utc(2024, 1, 17, 9)]

    def test_categories_merged_without_duplicates(self, parser):
        events = parser.parse(
            make_feed(make_vevent("u1", extra=("CATEGORIES:Work,Team", "CATEGORIES:Team,Travel")))
        )
        assert events[0].categories == ["Work", "Team", "Travel"]

    def test_status_priority_and_sequence(self, parser):
        events = parser.parse(
            make_feed(
                make_vevent("u1", extra=("STATUS:cancelled", "PRIORITY:0", "SEQUENCE:-3")),
                make_vevent("u2", extra=("STATUS:bogus", "PRIORITY:5")),
            )
        )
        assert events[0].status == EventStatus.CANCELLED
        assert events[0].priority is None
        assert events[0].sequence == 0
        assert events[1].status is None
        assert events[1].priority == 5

    def test_organizer_and_attendees(self, parser):
        events = parser.parse(
            make_feed(
                make_vevent(
                    "u1",
                    extra=(
                        "ORGANIZER;CN=Boss:mailto:boss@example.com",
                        "ATTENDEE;CN=Ann;ROLE=REQ-PARTICIPANT;PARTSTAT=ACCEPTED:mailto:ann@example.com",
                    ),
                )
            )
        )
        event = events[0]
        assert event.organizer.email == "boss@example.com"
        assert event.organizer.name == "Boss"
        assert event.attendees[0].email == "ann@example.com"
        assert event.attendees[0].role == AttendeeRole.REQUIRED


class TestAlarms:
    def _alarms(self, parser, *alarm_lines):
        extra = []
        for lines in alarm_lines:
            extra.extend(["BEGIN:VALARM", *lines, "END:VALARM"])
        return parser.parse(make_feed(make_vevent("u1", extra=tuple(extra))))[0].alarms

    def test_relative_trigger(self, parser):
        alarms = self._alarms(parser, ["ACTION:DISPLAY", "TRIGGER:-PT15M", "DESCRIPTION:Soon"])
        assert len(alarms) == 1
        assert alarms[0].action == AlarmAction.DISPLAY
        assert alarms[0].trigger == -900
        assert alarms[0].description == "Soon"

    def test_trigger_related_to_end(self, parser):
        alarms = self._alarms(parser, ["ACTION:AUDIO", "TRIGGER;RELATED=END:PT0S"])
        assert alarms[0].trigger_relation == TriggerRelation.END
        assert alarms[0].trigger == 0

    def test_absolute_trigger_becomes_offset(self, parser):
        alarms = self._alarms(
            parser, ["ACTION:DISPLAY", "TRIGGER;VALUE=DATE-TIME:20240115T083000Z"]
        )
        assert alarms[0].trigger == -1800

    def test_unsupported_alarms_are_dropped(self, parser):
        alarms = self._alarms(
            parser,
            ["ACTION:PROCEDURE", "TRIGGER:-PT5M"],
            ["ACTION:DISPLAY"],
            ["ACTION:EMAIL", "TRIGGER:soon"],
        )
        assert alarms == []


class TestSingleBlock:
    def test_parse_event_block_without_wrapper(self, parser):
        event = parser.parse_event_block(make_vevent("u1"))
        assert event.uid == "u1"

    def test_parse_event_block_requires_complete_block(self, parser):
        with pytest.raises(ParseError):
            parser.parse_event_block("BEGIN:VEVENT\r\nUID:u1\r\n")
