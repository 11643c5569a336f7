"""
Unit tests for the VEVENT → CalendarEvent conversion in eds_gcal_sync.eds_client.

These use real ICalGLib components built from bare VEVENT strings, so they
need PyGObject with the libical-glib and EDS typelibs installed; the module
is skipped otherwise.
"""

import logging
from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

gi = pytest.importorskip("gi")
try:
    gi.require_version("ICalGLib", "3.0")
    gi.require_version("ECal", "2.0")
    gi.require_version("EDataServer", "1.2")
except ValueError:
    pytest.skip("EDS typelibs not available", allow_module_level=True)

from eds_gcal_sync.eds_client import MANAGED_CATEGORY  # noqa: E402
from eds_gcal_sync.eds_client import EDSCalendarSource  # noqa: E402
from eds_gcal_sync.eds_client import build_query  # noqa: E402
from eds_gcal_sync.eds_client import event_from_component  # noqa: E402
from eds_gcal_sync.eds_client import expand_occurrences  # noqa: E402
from eds_gcal_sync.eds_client import is_event_cancelled  # noqa: E402
from eds_gcal_sync.eds_client import is_managed_event  # noqa: E402
from eds_gcal_sync.eds_client import parse_component  # noqa: E402
from eds_gcal_sync.models import BackendProtocolError  # noqa: E402
from eds_gcal_sync.models import EventCategory  # noqa: E402
from eds_gcal_sync.models import TimeRange  # noqa: E402

# ---------------------------------------------------------------------------
# iCal helpers
# ---------------------------------------------------------------------------

_DTSTART = "20260301T100000Z"
_DTEND = "20260301T110000Z"
_DTSTAMP = "20260224T000000Z"

_START = datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc)


def _make_vevent(uid: str, extra_lines=(), timing=None) -> str:
    """Return a minimal VEVENT string with optional extra property lines."""
    lines = ["BEGIN:VEVENT", f"UID:{uid}", "SUMMARY:Test Event"]
    lines.extend(timing if timing is not None else [f"DTSTART:{_DTSTART}", f"DTEND:{_DTEND}"])
    lines.append(f"DTSTAMP:{_DTSTAMP}")
    lines.extend(extra_lines)
    lines.append("END:VEVENT")
    return "\r\n".join(lines) + "\r\n"


def _event(uid: str = "E1", extra_lines=(), timing=None):
    return event_from_component(parse_component(_make_vevent(uid, extra_lines, timing)))


# ---------------------------------------------------------------------------
# Conversion
# ---------------------------------------------------------------------------


class TestEventFromComponent:
    def test_basic_fields(self):
        event = _event(extra_lines=["DESCRIPTION:Agenda", "LOCATION:Room 4"])
        assert event.uid == "E1"
        assert event.title == "Test Event"
        assert event.description == "Agenda"
        assert event.location == "Room 4"
        assert event.start == _START
        assert event.end == _START + timedelta(hours=1)
        assert not event.all_day
        assert not event.is_private
        assert event.category is EventCategory.APPOINTMENT

    def test_last_modified_preferred_over_dtstamp(self):
        event = _event(extra_lines=["LAST-MODIFIED:20260225T080000Z"])
        assert event.last_modified == datetime(2026, 2, 25, 8, 0, tzinfo=timezone.utc)

    def test_dtstamp_used_without_last_modified(self):
        assert _event().last_modified == datetime(2026, 2, 24, tzinfo=timezone.utc)

    def test_tzid_times_are_zone_aware(self):
        event = _event(
            timing=[
                "DTSTART;TZID=Europe/Berlin:20260301T110000",
                "DTEND;TZID=Europe/Berlin:20260301T120000",
            ]
        )
        assert event.start == _START
        assert event.end == _START + timedelta(hours=1)

    def test_all_day_event(self):
        event = _event(timing=["DTSTART;VALUE=DATE:20260301", "DTEND;VALUE=DATE:20260302"])
        assert event.all_day
        assert event.category is EventCategory.ALL_DAY_EVENT
        assert event.end - event.start == timedelta(days=1)

    def test_duration_instead_of_dtend(self):
        event = _event(timing=[f"DTSTART:{_DTSTART}", "DURATION:PT90M"])
        assert event.end - event.start == timedelta(minutes=90)

    @pytest.mark.parametrize("klass", ["PRIVATE", "CONFIDENTIAL"])
    def test_private_classes(self, klass):
        assert _event(extra_lines=[f"CLASS:{klass}"]).is_private

    def test_public_class(self):
        assert not _event(extra_lines=["CLASS:PUBLIC"]).is_private

    def test_attendees_make_a_meeting(self):
        event = _event(extra_lines=["ATTENDEE:mailto:someone@example.com"])
        assert event.category is EventCategory.MEETING

    def test_explicit_category_wins(self):
        event = _event(
            extra_lines=["CATEGORIES:Reminder", "ATTENDEE:mailto:someone@example.com"]
        )
        assert event.category is EventCategory.REMINDER

    def test_exception_uid_includes_recurrence_id(self):
        event = _event("S1", extra_lines=["RECURRENCE-ID:20260302T100000Z"])
        assert event.uid == "S1::RID::20260302T100000Z"

    def test_end_before_start_is_protocol_error(self):
        with pytest.raises(BackendProtocolError):
            _event(timing=[f"DTSTART:{_DTEND}", f"DTEND:{_DTSTART}"])


class TestEventMarkers:
    def test_managed_event_detected(self):
        comp = parse_component(_make_vevent("M1", [f"CATEGORIES:{MANAGED_CATEGORY}"]))
        assert is_managed_event(comp)

    def test_ordinary_event_not_managed(self):
        assert not is_managed_event(parse_component(_make_vevent("E1", ["CATEGORIES:Work"])))

    def test_cancelled_event_detected(self):
        assert is_event_cancelled(parse_component(_make_vevent("C1", ["STATUS:CANCELLED"])))
        assert not is_event_cancelled(parse_component(_make_vevent("C2", ["STATUS:CONFIRMED"])))


# ---------------------------------------------------------------------------
# Recurrence expansion
# ---------------------------------------------------------------------------


class TestExpandOccurrences:
    def test_non_recurring_event_is_returned_as_is(self):
        comp = parse_component(_make_vevent("E1"))
        master = event_from_component(comp)
        assert expand_occurrences(comp, master, _START + timedelta(days=30)) == [master]

    def test_daily_series_with_exdate(self):
        comp = parse_component(
            _make_vevent("R1", ["RRULE:FREQ=DAILY;COUNT=3", "EXDATE;VALUE=DATE:20260302"])
        )
        master = event_from_component(comp)

        occurrences = expand_occurrences(comp, master, _START + timedelta(days=30))

        assert [o.start for o in occurrences] == [_START, _START + timedelta(days=2)]
        assert occurrences[0].uid == "R1::RID::20260301T100000Z"
        assert all(o.end - o.start == timedelta(hours=1) for o in occurrences)

    def test_expansion_stops_at_until(self):
        comp = parse_component(_make_vevent("R2", ["RRULE:FREQ=DAILY"]))
        master = event_from_component(comp)
        occurrences = expand_occurrences(comp, master, _START + timedelta(days=5))
        assert len(occurrences) == 5

    def test_unknown_tzid_still_expands(self):
        comp = parse_component(
            _make_vevent(
                "R3",
                ["RRULE:FREQ=DAILY;COUNT=2"],
                timing=[
                    "DTSTART;TZID=Mars/Olympus_Mons:20260301T100000",
                    "DTEND;TZID=Mars/Olympus_Mons:20260301T110000",
                ],
            )
        )
        master = event_from_component(comp)

        occurrences = expand_occurrences(comp, master, _START + timedelta(days=30))

        assert [o.uid for o in occurrences] == [
            "R3::RID::20260301T100000",
            "R3::RID::20260302T100000",
        ]

    def test_date_only_until_with_tzid_start_stops_at_until(self):
        comp = parse_component(
            _make_vevent(
                "R4",
                ["RRULE:FREQ=DAILY;UNTIL=20260303"],
                timing=[
                    "DTSTART;TZID=Europe/Berlin:20260301T110000",
                    "DTEND;TZID=Europe/Berlin:20260301T120000",
                ],
            )
        )
        master = event_from_component(comp)

        occurrences = expand_occurrences(comp, master, _START + timedelta(days=30))

        assert 2 <= len(occurrences) <= 3
        assert all(o.start.date() <= date(2026, 3, 3) for o in occurrences)

    def test_expansion_starts_at_window_lower_bound(self):
        comp = parse_component(_make_vevent("R5", ["RRULE:FREQ=DAILY"]))
        master = event_from_component(comp)
        since = _START + timedelta(days=6000) - timedelta(hours=1)

        occurrences = expand_occurrences(comp, master, since + timedelta(days=3), since=since)

        assert [o.start for o in occurrences] == [
            _START + timedelta(days=6000 + n) for n in range(3)
        ]

    def test_occurrence_cap_is_logged(self, caplog):
        comp = parse_component(_make_vevent("R6", ["RRULE:FREQ=HOURLY"]))
        master = event_from_component(comp)

        with caplog.at_level(logging.WARNING, logger="eds_gcal_sync.eds_client"):
            occurrences = expand_occurrences(comp, master, _START + timedelta(days=300))

        assert len(occurrences) == 5000
        assert "R6" in caplog.text


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------


class _StubClient:
    """Stands in for ECal.Client, returning fixed iCal strings."""

    def __init__(self, objects):
        self.objects = objects
        self.queries = []

    def get_object_list_sync(self, query, cancellable):
        self.queries.append(query)
        return True, self.objects


def _list(objects, window=None):
    source = EDSCalendarSource("groupware-calendar-test", expansion_horizon=timedelta(days=36500))
    source.client = _StubClient(objects)
    return source.list_events(window or TimeRange())


class TestListEvents:
    _MASTER = _make_vevent("S1", ["RRULE:FREQ=DAILY;COUNT=3"])

    def test_cancelled_exception_removes_its_occurrence(self):
        cancelled = _make_vevent(
            "S1",
            ["RECURRENCE-ID:20260302T100000Z", "STATUS:CANCELLED"],
            timing=["DTSTART:20260302T100000Z", "DTEND:20260302T110000Z"],
        )

        events = _list([self._MASTER, cancelled])

        assert [e.uid for e in events] == [
            "S1::RID::20260301T100000Z",
            "S1::RID::20260303T100000Z",
        ]

    def test_exception_overrides_its_occurrence(self):
        moved = _make_vevent(
            "S1",
            ["RECURRENCE-ID:20260302T100000Z"],
            timing=["DTSTART:20260302T150000Z", "DTEND:20260302T160000Z"],
        )

        events = {e.uid: e for e in _list([self._MASTER, moved])}

        assert len(events) == 3
        overridden = events["S1::RID::20260302T100000Z"]
        assert overridden.start == _START + timedelta(days=1, hours=5)

    def test_cancelled_and_managed_events_are_skipped(self):
        events = _list(
            [
                _make_vevent("C1", ["STATUS:CANCELLED"]),
                _make_vevent("M1", [f"CATEGORIES:{MANAGED_CATEGORY}"]),
                _make_vevent("E1"),
            ]
        )
        assert [e.uid for e in events] == ["E1"]


# ---------------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------------


class TestBuildQuery:
    def test_unbounded_window_selects_everything(self):
        assert build_query(TimeRange()) == "#t"

    def test_bounded_window_uses_time_range(self):
        window = TimeRange(start=_START, end=_START + timedelta(days=1))
        assert build_query(window) == (
            '(occur-in-time-range? (make-time "20260301T100000Z") '
            '(make-time "20260302T100000Z"))'
        )
