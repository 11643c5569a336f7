"""
Evolution Data Server groupware calendar source.
"""

import logging
import re
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Optional
from typing import Tuple
from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

import gi

gi.require_version("EDataServer", "1.2")
gi.require_version("ECal", "2.0")
gi.require_version("ICalGLib", "3.0")
from gi.repository import ECal
from gi.repository import EDataServer
from gi.repository import GLib
from gi.repository import ICalGLib

from eds_gcal_sync.interfaces import CalendarSource
from eds_gcal_sync.models import BackendProtocolError
from eds_gcal_sync.models import BackendUnavailable
from eds_gcal_sync.models import CalendarEvent
from eds_gcal_sync.models import EventCategory
from eds_gcal_sync.models import TimeRange

_logger = logging.getLogger(__name__)

# Marker other tools of ours put on events they create; never sync those back out.
MANAGED_CATEGORY = "CALENDAR-SYNC-MANAGED"

# Matches the YYYYMMDD prefix of EXDATE values, date-only and TZID datetime forms.
_EXDATE_DATE_RE = re.compile(r"^EXDATE[^:\n]*:(\d{8})", re.MULTILINE)

# YYYYMMDD part of an RRULE UNTIL, date-only and datetime forms alike.
_RRULE_UNTIL_RE = re.compile(r"UNTIL=(\d{8})")

# Cap on occurrences of one recurring series inside a single window.
_MAX_OCCURRENCES = 5000

_PRIVATE_CLASSES = frozenset({"PRIVATE", "CONFIDENTIAL"})


def get_calendar_display_info(calendar_uid: str) -> Tuple[str, str, str]:
    """
    Get human-readable information about a calendar.

    Returns:
        Tuple of (display_name, account_name, uid)
    """
    try:
        registry = EDataServer.SourceRegistry.new_sync(None)
        source = registry.ref_source(calendar_uid)

        if not source:
            return ("Unknown Calendar", "", calendar_uid)

        display_name = source.get_display_name() or "Unnamed Calendar"
        return (display_name, _parent_display_name(registry, source), calendar_uid)
    except GLib.Error as e:
        return (f"Error: {e.message}", "", calendar_uid)


def _parent_display_name(registry, source) -> str:
    parent_uid = source.get_parent()
    if not parent_uid:
        return ""
    parent_source = registry.ref_source(parent_uid)
    if not parent_source:
        return ""
    return parent_source.get_display_name() or ""


def list_calendars(registry=None) -> list[tuple[str, str, str]]:
    """Return (display_name, account_name, uid) for every EDS calendar."""
    registry = registry or EDataServer.SourceRegistry.new_sync(None)
    entries = []
    for source in registry.list_sources(EDataServer.SOURCE_EXTENSION_CALENDAR):
        entries.append(
            (
                source.get_display_name() or "(unnamed)",
                _parent_display_name(registry, source),
                source.get_uid() or "",
            )
        )
    return sorted(entries)


# ---------------------------------------------------------------------------
# iCal → CalendarEvent conversion
# ---------------------------------------------------------------------------


def parse_component(obj) -> ICalGLib.Component:
    """Handle both string and native Component objects from EDS API; return the VEVENT."""
    comp = ICalGLib.Component.new_from_string(obj) if isinstance(obj, str) else obj
    if comp is None:
        raise BackendProtocolError("EDS returned an unparseable calendar object")
    if comp.isa() == ICalGLib.ComponentKind.VCALENDAR_COMPONENT:
        vevent = comp.get_first_component(ICalGLib.ComponentKind.VEVENT_COMPONENT)
        if vevent is None:
            raise BackendProtocolError("Calendar object contains no VEVENT")
        return vevent
    return comp


def _property_values(comp: ICalGLib.Component, kind) -> list[str]:
    values = []
    prop = comp.get_first_property(kind)
    while prop:
        values.append(prop.get_value_as_string() or "")
        prop = comp.get_next_property(kind)
    return values


def is_managed_event(comp: ICalGLib.Component) -> bool:
    """Check if an event was created by one of our sync tools."""
    for value in _property_values(comp, ICalGLib.PropertyKind.CATEGORIES_PROPERTY):
        if MANAGED_CATEGORY in value.split(","):
            return True
    return False


def is_event_cancelled(comp: ICalGLib.Component) -> bool:
    """Return True if the event's STATUS is CANCELLED; cancelled events no longer block time."""
    status = _property_values(comp, ICalGLib.PropertyKind.STATUS_PROPERTY)
    return bool(status) and status[0].strip().upper() == "CANCELLED"


def _tzinfo_for(prop: ICalGLib.Property | None, value: ICalGLib.Time):
    """Resolve the timezone of a DTSTART/DTEND value; None means floating (local) time."""
    if value.is_utc():
        return timezone.utc
    if prop is None:
        return None
    tzid_param = prop.get_first_parameter(ICalGLib.ParameterKind.TZID_PARAMETER)
    if not tzid_param:
        return None
    tzid = tzid_param.get_tzid()
    try:
        return ZoneInfo(tzid)
    except (ZoneInfoNotFoundError, ValueError):
        _logger.debug(f"Unknown TZID {tzid!r}; treating time as UTC")
        return timezone.utc


def to_datetime(value: ICalGLib.Time, tzinfo=None) -> datetime:
    """Convert an ICalGLib.Time to an aware datetime (dates become midnight UTC)."""
    if value.is_date():
        return datetime(value.get_year(), value.get_month(), value.get_day(), tzinfo=timezone.utc)
    naive = datetime(
        value.get_year(),
        value.get_month(),
        value.get_day(),
        value.get_hour(),
        value.get_minute(),
        value.get_second(),
    )
    if tzinfo is None:
        return naive.astimezone()  # Floating time: interpret in the local zone
    return naive.replace(tzinfo=tzinfo)


def _category_for(comp: ICalGLib.Component, all_day: bool) -> EventCategory:
    for value in _property_values(comp, ICalGLib.PropertyKind.CATEGORIES_PROPERTY):
        for name in value.split(","):
            try:
                return EventCategory.parse(name)
            except ValueError:
                continue
    if comp.get_first_property(ICalGLib.PropertyKind.ATTENDEE_PROPERTY) or comp.get_first_property(
        ICalGLib.PropertyKind.ORGANIZER_PROPERTY
    ):
        return EventCategory.MEETING
    if all_day:
        return EventCategory.ALL_DAY_EVENT
    return EventCategory.APPOINTMENT


def _last_modified(comp: ICalGLib.Component) -> datetime | None:
    prop = comp.get_first_property(ICalGLib.PropertyKind.LASTMODIFIED_PROPERTY)
    if prop:
        value = prop.get_lastmodified()
    else:
        prop = comp.get_first_property(ICalGLib.PropertyKind.DTSTAMP_PROPERTY)
        value = prop.get_dtstamp() if prop else None
    if value is None or value.is_null_time():
        return None
    return to_datetime(value, timezone.utc)


def event_uid(comp: ICalGLib.Component) -> str:
    """Stable UID; exception occurrences get a compound ``<UID>::RID::<RECURRENCE-ID>`` key."""
    base_uid = comp.get_uid()
    if not base_uid:
        raise BackendProtocolError("Event without UID")
    rid_prop = comp.get_first_property(ICalGLib.PropertyKind.RECURRENCEID_PROPERTY)
    if rid_prop:
        return f"{base_uid}::RID::{rid_prop.get_recurrenceid().as_ical_string()}"
    return base_uid


def event_from_component(comp: ICalGLib.Component) -> CalendarEvent:
    """Convert a VEVENT into a CalendarEvent.

    Raises BackendProtocolError when mandatory data (UID, DTSTART) is missing.
    """
    uid = event_uid(comp)
    dtstart_prop = comp.get_first_property(ICalGLib.PropertyKind.DTSTART_PROPERTY)
    if not dtstart_prop:
        raise BackendProtocolError(f"Event {uid} has no DTSTART")
    dtstart = dtstart_prop.get_dtstart()
    all_day = dtstart.is_date()
    start = to_datetime(dtstart, _tzinfo_for(dtstart_prop, dtstart))

    dtend_prop = comp.get_first_property(ICalGLib.PropertyKind.DTEND_PROPERTY)
    duration_prop = comp.get_first_property(ICalGLib.PropertyKind.DURATION_PROPERTY)
    if dtend_prop:
        dtend = dtend_prop.get_dtend()
        end = to_datetime(dtend, _tzinfo_for(dtend_prop, dtend))
    elif duration_prop:
        end = start + timedelta(seconds=duration_prop.get_duration().as_int())
    else:
        end = start + (timedelta(days=1) if all_day else timedelta(0))
    if end < start:
        raise BackendProtocolError(f"Event {uid} ends before it starts")

    classes = _property_values(comp, ICalGLib.PropertyKind.CLASS_PROPERTY)
    is_private = bool(classes) and classes[0].strip().upper() in _PRIVATE_CLASSES

    return CalendarEvent(
        uid=uid,
        title=comp.get_summary() or "",
        description=comp.get_description() or "",
        location=comp.get_location() or "",
        start=start,
        end=end,
        all_day=all_day,
        category=_category_for(comp, all_day),
        is_private=is_private,
        last_modified=_last_modified(comp),
    )


def _exdate_days(comp: ICalGLib.Component) -> set[str]:
    """Excluded dates of a series as YYYYMMDD strings."""
    days = set()
    prop = comp.get_first_property(ICalGLib.PropertyKind.EXDATE_PROPERTY)
    while prop:
        exdate = prop.get_exdate()
        if exdate and not exdate.is_null_time():
            days.add(f"{exdate.get_year():04d}{exdate.get_month():02d}{exdate.get_day():02d}")
        prop = comp.get_next_property(ICalGLib.PropertyKind.EXDATE_PROPERTY)
    if not days:
        # get_exdate() returns null_time for VALUE=DATE in some libical-glib builds.
        for m in _EXDATE_DATE_RE.finditer(comp.as_ical_string() or ""):
            days.add(m.group(1))
    return days


def _floating_copy(value: ICalGLib.Time) -> ICalGLib.Time:
    """Timezone-free copy of a TZID time; libical cannot iterate zones it does not know."""
    return ICalGLib.Time.new_from_string(
        f"{value.get_year():04d}{value.get_month():02d}{value.get_day():02d}"
        f"T{value.get_hour():02d}{value.get_minute():02d}{value.get_second():02d}"
    )


def _iteration_time(moment: datetime, like: ICalGLib.Time, tzinfo) -> ICalGLib.Time:
    """``moment`` as an ICalGLib.Time of the same kind (date, UTC or floating) as ``like``."""
    if like.is_date():
        return ICalGLib.Time.new_from_string(moment.astimezone(timezone.utc).strftime("%Y%m%d"))
    if like.is_utc():
        return ICalGLib.Time.new_from_string(_make_time(moment))
    local = moment.astimezone(tzinfo) if tzinfo is not None else moment.astimezone()
    return ICalGLib.Time.new_from_string(local.strftime("%Y%m%dT%H%M%S"))


def _rrule_until_day(rrule_prop: ICalGLib.Property) -> str | None:
    m = _RRULE_UNTIL_RE.search(rrule_prop.as_ical_string() or "")
    return m.group(1) if m else None


def expand_occurrences(
    comp: ICalGLib.Component,
    master: CalendarEvent,
    until: datetime,
    since: datetime | None = None,
) -> list[CalendarEvent]:
    """Expand a recurring master into one event per occurrence in ``[since, until)``.

    Occurrence UIDs use the same compound key as exception VEVENTs, so an
    exception read from EDS replaces the generated occurrence it overrides.

    Raises BackendProtocolError when libical cannot iterate the rule.
    """
    rrule_prop = comp.get_first_property(ICalGLib.PropertyKind.RRULE_PROPERTY)
    if not rrule_prop:
        return [master]

    dtstart_prop = comp.get_first_property(ICalGLib.PropertyKind.DTSTART_PROPERTY)
    dtstart = dtstart_prop.get_dtstart()
    tzinfo = _tzinfo_for(dtstart_prop, dtstart)
    duration = master.end - master.start
    excluded = _exdate_days(comp)
    # With a TZID DTSTART and a date-only UNTIL libical keeps going past the end.
    until_day = _rrule_until_day(rrule_prop)
    base_uid = comp.get_uid()

    iter_start = dtstart if dtstart.is_utc() or dtstart.is_date() else _floating_copy(dtstart)
    occurrences = []
    try:
        rule = rrule_prop.get_rrule()
        iterator = ICalGLib.RecurIterator.new(rule, iter_start)
        if iterator is None:
            raise BackendProtocolError(f"Cannot expand recurrence rule of {base_uid}")
        # Jump to the window; libical refuses this for COUNT rules, which end anyway.
        if (
            since is not None
            and since > master.start
            and rule.get_count() == 0
            and hasattr(iterator, "set_start")
        ):
            if not iterator.set_start(_iteration_time(since, iter_start, tzinfo)):
                _logger.debug(f"Iterating {base_uid} from DTSTART; set_start was refused")

        while True:
            occ = iterator.next()
            if occ is None or occ.is_null_time():
                break
            day = f"{occ.get_year():04d}{occ.get_month():02d}{occ.get_day():02d}"
            if until_day and day > until_day:
                break
            start = to_datetime(occ, tzinfo)
            if start >= until:
                break
            if day in excluded or (since is not None and start < since):
                continue
            if len(occurrences) >= _MAX_OCCURRENCES:
                _logger.warning(
                    f"Recurring event {base_uid} has more than {_MAX_OCCURRENCES} "
                    f"occurrences in the window; later ones are not synced"
                )
                break
            occurrences.append(
                CalendarEvent(
                    uid=f"{base_uid}::RID::{occ.as_ical_string()}",
                    title=master.title,
                    description=master.description,
                    location=master.location,
                    start=start,
                    end=start + duration,
                    all_day=master.all_day,
                    category=master.category,
                    is_private=master.is_private,
                    last_modified=master.last_modified,
                )
            )
    except GLib.Error as e:
        raise BackendProtocolError(f"Cannot expand recurrence of {base_uid}: {e.message}") from e
    return occurrences


# ---------------------------------------------------------------------------
# Source
# ---------------------------------------------------------------------------


def _make_time(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def build_query(window: TimeRange) -> str:
    """EDS s-expression selecting objects that occur inside ``window``."""
    if window.is_unbounded:
        # "#t" (boolean true) is the correct sexp for "all events".
        return "#t"
    lower = window.start or datetime(1970, 1, 1, tzinfo=timezone.utc)
    upper = window.end or datetime(2100, 1, 1, tzinfo=timezone.utc)
    return (
        f'(occur-in-time-range? (make-time "{_make_time(lower)}") '
        f'(make-time "{_make_time(upper)}"))'
    )


class EDSCalendarSource(CalendarSource):
    """Reads a groupware calendar (Exchange, GroupWise, ...) through EDS."""

    def __init__(
        self,
        calendar_uid: str,
        registry: Optional[EDataServer.SourceRegistry] = None,
        timeout: int = 30,
        expansion_horizon: timedelta = timedelta(days=365),
    ):
        self.registry = registry
        self.calendar_uid = calendar_uid
        self.timeout = timeout
        self.expansion_horizon = expansion_horizon
        self.client: Optional[ECal.Client] = None

    def connect(self):
        """Connect to the specified calendar in EDS."""
        try:
            if self.registry is None:
                self.registry = EDataServer.SourceRegistry.new_sync(None)
            source = self.registry.ref_source(self.calendar_uid)
        except GLib.Error as e:
            raise BackendUnavailable(f"EDS registry unreachable: {e.message}") from e
        if not source:
            raise BackendUnavailable(f"Calendar with UID '{self.calendar_uid}' not found in EDS")

        try:
            self.client = ECal.Client.connect_sync(
                source, ECal.ClientSourceType.EVENTS, self.timeout, None
            )
        except GLib.Error as e:
            raise BackendUnavailable(
                f"Failed to connect to calendar {self.calendar_uid}: {e.message}"
            ) from e

    def list_events(self, window: TimeRange) -> list[CalendarEvent]:
        if self.client is None:
            self.connect()

        try:
            _, objects = self.client.get_object_list_sync(build_query(window), None)
        except GLib.Error as e:
            raise BackendUnavailable(f"Failed to fetch events: {e.message}") from e

        until = datetime.now(timezone.utc) + self.expansion_horizon
        if window.end is not None:
            until = min(until, window.end)

        by_uid: dict[str, CalendarEvent] = {}
        exceptions: list[CalendarEvent] = []
        cancelled_occurrences: set[str] = set()
        for obj in objects:
            comp = parse_component(obj)
            is_exception = comp.get_first_property(ICalGLib.PropertyKind.RECURRENCEID_PROPERTY)
            if is_managed_event(comp):
                _logger.debug(f"Skipping managed event: {comp.get_uid()}")
                continue
            if is_event_cancelled(comp):
                _logger.debug(f"Skipping cancelled event: {comp.get_uid()}")
                if is_exception:
                    cancelled_occurrences.add(event_uid(comp))
                continue
            event = event_from_component(comp)
            if is_exception:
                exceptions.append(event)
                continue
            for occurrence in expand_occurrences(comp, event, until, since=window.start):
                by_uid[occurrence.uid] = occurrence

        # Exceptions override the generated occurrence with the same RECURRENCE-ID;
        # a cancelled exception removes it.
        for event in exceptions:
            by_uid[event.uid] = event
        for uid in cancelled_occurrences:
            by_uid.pop(uid, None)

        events = [e for uid, e in sorted(by_uid.items()) if window.contains(e.start)]
        _logger.debug(f"EDS returned {len(objects)} objects, {len(events)} events in window")
        return events
