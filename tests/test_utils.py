"""
Unit tests for stateless helpers in ics_calendar_sync.sync.utils.
"""

import dataclasses
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from ics_calendar_sync.models import Alarm
from ics_calendar_sync.models import AlarmAction
from ics_calendar_sync.models import Attendee
from ics_calendar_sync.models import CalendarEvent
from ics_calendar_sync.models import SyncInProgressError
from ics_calendar_sync.sync import lock_path_for
from ics_calendar_sync.sync.utils import SyncLock
from ics_calendar_sync.sync.utils import compute_hash
from ics_calendar_sync.sync.utils import deduplicate_events
from ics_calendar_sync.sync.utils import events_equal
from ics_calendar_sync.sync.utils import filter_by_window
from ics_calendar_sync.sync.utils import format_instant
from ics_calendar_sync.sync.utils import short_hash
from tests.conftest import utc


def _event(uid: str = "u1", **kwargs) -> CalendarEvent:
    values = {
        "uid": uid,
        "start": utc(2024, 1, 15, 9, 0),
        "end": utc(2024, 1, 15, 10, 0),
        "summary": "Standup",
    }
    values.update(kwargs)
    return CalendarEvent(**values)


# ---------------------------------------------------------------------------
# compute_hash
# ---------------------------------------------------------------------------


class TestComputeHash:
    def test_is_stable_and_hex(self):
        digest = compute_hash(_event())
        assert digest == compute_hash(_event())
        assert len(digest) == 64
        assert short_hash(_event()) == digest[:8]

    def test_ignores_sequence_and_timestamps(self):
        base = _event()
        bumped = dataclasses.replace(
            base,
            sequence=7,
            date_stamp=utc(2024, 2, 1),
            last_modified=utc(2024, 2, 1),
            raw_text="different",
        )
        assert events_equal(base, bumped)

    @pytest.mark.parametrize(
        "change",
        [
            {"summary": "Retro"},
            {"description": "Notes"},
            {"location": "Room 1"},
            {"end": utc(2024, 1, 15, 10, 30)},
            {"is_all_day": True},
            {"recurrence_rule": "FREQ=DAILY"},
            {"exception_dates": [utc(2024, 1, 16, 9)]},
            {"alarms": [Alarm(action=AlarmAction.DISPLAY, trigger=-600)]},
            {"categories": ["Work"]},
            {"priority": 1},
        ],
    )
    def test_detects_content_changes(self, change):
        assert compute_hash(_event()) != compute_hash(_event(**change))

    def test_adjacent_fields_do_not_run_together(self):
        a = _event(summary="ab", description=None)
        b = _event(summary="a", description="b")
        assert compute_hash(a) != compute_hash(b)

    def test_none_and_empty_string_hash_alike(self):
        assert compute_hash(_event(location=None)) == compute_hash(_event(location=""))

    def test_list_order_does_not_matter(self):
        a = _event(categories=["Work", "Team"], exception_dates=[utc(2024, 1, 17), utc(2024, 1, 16)])
        b = _event(categories=["Team", "Work"], exception_dates=[utc(2024, 1, 16), utc(2024, 1, 17)])
        assert compute_hash(a) == compute_hash(b)

    def test_attendee_order_does_not_matter(self):
        ann = Attendee(email="ann@example.com", name="Ann")
        bob = Attendee(email="bob@example.com", name="Bob")
        assert compute_hash(_event(attendees=[ann, bob])) == compute_hash(_event(attendees=[bob, ann]))
        assert compute_hash(_event(attendees=[ann])) != compute_hash(_event(attendees=[ann, bob]))

    def test_attendees_without_email_order_does_not_matter(self):
        ann = Attendee(name="Ann")
        bob = Attendee(name="Bob")
        assert compute_hash(_event(attendees=[ann, bob])) == compute_hash(_event(attendees=[bob, ann]))

    def test_alarms_sharing_trigger_order_does_not_matter(self):
        display = Alarm(action=AlarmAction.DISPLAY, trigger=-600, description="x")
        audio = Alarm(action=AlarmAction.AUDIO, trigger=-600)
        assert compute_hash(_event(alarms=[display, audio])) == compute_hash(
            _event(alarms=[audio, display])
        )

    def test_same_instant_in_other_zone_hashes_equal(self):
        cet = timezone(timedelta(hours=1))
        shifted = _event(start=datetime(2024, 1, 15, 10, 0, tzinfo=cet))
        assert compute_hash(shifted) == compute_hash(_event())


def test_format_instant_converts_to_utc():
    cet = timezone(timedelta(hours=1))
    assert format_instant(datetime(2024, 1, 15, 10, 0, tzinfo=cet)) == "2024-01-15T09:00:00Z"


# ---------------------------------------------------------------------------
# filter_by_window
# ---------------------------------------------------------------------------


class TestFilterByWindow:
    NOW = utc(2024, 6, 1, 12, 0)

    def test_unbounded_keeps_everything(self):
        events = [_event("old", start=utc(2000, 1, 1), end=utc(2000, 1, 1, 1))]
        assert filter_by_window(events, None, None, now=self.NOW) == events

    def test_bounds_are_inclusive(self):
        past_edge = _event("past", start=utc(2024, 5, 31), end=utc(2024, 5, 31, 12, 0))
        future_edge = _event("future", start=utc(2024, 6, 2, 12, 0), end=utc(2024, 6, 2, 13, 0))
        kept = filter_by_window([past_edge, future_edge], 1, 1, now=self.NOW)
        assert [e.uid for e in kept] == ["past", "future"]

    def test_events_outside_window_dropped(self):
        too_old = _event("old", start=utc(2024, 5, 1), end=utc(2024, 5, 1, 1))
        too_new = _event("new", start=utc(2024, 7, 1), end=utc(2024, 7, 1, 1))
        spanning = _event("span", start=utc(2024, 5, 1), end=utc(2024, 7, 1))
        kept = filter_by_window([too_old, too_new, spanning], 7, 7, now=self.NOW)
        assert [e.uid for e in kept] == ["span"]

    def test_past_boundary_in_days(self):
        edge_end = self.NOW - timedelta(days=30)
        old_end = self.NOW - timedelta(days=31)
        on_edge = _event("edge", start=edge_end - timedelta(hours=1), end=edge_end)
        too_old = _event("old", start=old_end - timedelta(hours=1), end=old_end)
        kept = filter_by_window([on_edge, too_old], 30, 365, now=self.NOW)
        assert [e.uid for e in kept] == ["edge"]

    def test_single_sided_window(self):
        old = _event("old", start=utc(2020, 1, 1), end=utc(2020, 1, 1, 1))
        far = _event("far", start=utc(2030, 1, 1), end=utc(2030, 1, 1, 1))
        assert [e.uid for e in filter_by_window([old, far], None, 30, now=self.NOW)] == ["old"]
        assert [e.uid for e in filter_by_window([old, far], 30, None, now=self.NOW)] == ["far"]


# ---------------------------------------------------------------------------
# deduplicate_events
# ---------------------------------------------------------------------------


class TestDeduplicate:
    def test_highest_sequence_wins(self):
        events = [
            _event("a", summary="v2", sequence=2),
            _event("b"),
            _event("a", summary="v1", sequence=1),
        ]
        result = deduplicate_events(events)
        assert [e.uid for e in result] == ["a", "b"]
        assert result[0].summary == "v2"

    def test_equal_sequence_later_wins(self):
        result = deduplicate_events([_event("a", summary="first"), _event("a", summary="second")])
        assert [e.summary for e in result] == ["second"]


# ---------------------------------------------------------------------------
# SyncLock
# ---------------------------------------------------------------------------


class TestSyncLock:
    def test_second_holder_is_rejected(self, tmp_path):
        path = tmp_path / "state.db.lock"
        with SyncLock(path):
            with pytest.raises(SyncInProgressError):
                SyncLock(path).acquire()

    def test_lock_released_on_exit(self, tmp_path):
        path = tmp_path / "state.db.lock"
        with SyncLock(path):
            pass
        with SyncLock(path) as lock:
            assert lock.path == path

    def test_lock_path_sits_beside_database(self, tmp_path):
        assert lock_path_for(tmp_path / "state.db") == tmp_path / "state.db.lock"
