"""
Evolution Data Server backend for the calendar store.
"""

import logging
import uuid
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from zoneinfo import ZoneInfo

import gi

gi.require_version("EDataServer", "1.2")
gi.require_version("ECal", "2.0")
gi.require_version("ICalGLib", "3.0")
from gi.repository import ECal
from gi.repository import EDataServer
from gi.repository import GLib
from gi.repository import ICalGLib

from ics_calendar_sync.models import AccessDeniedError
from ics_calendar_sync.models import Alarm
from ics_calendar_sync.models import AlarmAction
from ics_calendar_sync.models import CalendarNotFoundError
from ics_calendar_sync.models import CalendarStoreError
from ics_calendar_sync.models import EntryNotFoundError
from ics_calendar_sync.models import EventTransparency
from ics_calendar_sync.models import NoWritableCalendarError
from ics_calendar_sync.models import StoreEntry
from ics_calendar_sync.models import TriggerRelation
from ics_calendar_sync.models import enum_or_none
from ics_calendar_sync.parser import resolve_timezone
from ics_calendar_sync.store import CalendarInfo
from ics_calendar_sync.store import CalendarStore

logger = logging.getLogger(__name__)

# E_CAL_CLIENT_ERROR_OBJECT_NOT_FOUND = 1  (from e-cal-client-error-quark)
_EDS_NOT_FOUND_CODE = 1
_EDS_CAL_CLIENT_ERROR_DOMAIN = "e-cal-client-error-quark"
# E_CLIENT_ERROR_PERMISSION_DENIED = 8  (from e-client-error-quark)
_EDS_PERMISSION_DENIED_CODE = 8
_EDS_CLIENT_ERROR_DOMAIN = "e-client-error-quark"

_CONNECT_TIMEOUT = 10


def is_not_found_error(e: Exception) -> bool:
    """Return True when EDS reports that a calendar object does not exist."""
    if isinstance(e, GLib.Error):
        domain = e.domain or ""
        if e.code == _EDS_NOT_FOUND_CODE and _EDS_CAL_CLIENT_ERROR_DOMAIN in domain:
            return True
    return "object not found" in str(e).lower()


def is_permission_error(e: Exception) -> bool:
    if isinstance(e, GLib.Error):
        domain = e.domain or ""
        if e.code == _EDS_PERMISSION_DENIED_CODE and _EDS_CLIENT_ERROR_DOMAIN in domain:
            return True
    return "permission denied" in str(e).lower()


def _wrap(e: GLib.Error, action: str, entry_id: str | None = None) -> CalendarStoreError:
    if entry_id is not None and is_not_found_error(e):
        return EntryNotFoundError(entry_id)
    if is_permission_error(e):
        return AccessDeniedError(f"Permission denied while {action}: {e.message}")
    return CalendarStoreError(f"Failed {action}: {e.message}")


# ---------------------------------------------------------------------------
# Component building
# ---------------------------------------------------------------------------

_TRANSP = {
    EventTransparency.OPAQUE: ICalGLib.PropertyTransp.OPAQUE,
    EventTransparency.TRANSPARENT: ICalGLib.PropertyTransp.TRANSPARENT,
}

_ACTIONS = {
    AlarmAction.DISPLAY: ICalGLib.PropertyAction.DISPLAY,
    AlarmAction.AUDIO: ICalGLib.PropertyAction.AUDIO,
}


def _utc(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _ical_time(value: datetime, is_all_day: bool, time_zone: str | None) -> ICalGLib.Time:
    if is_all_day:
        return ICalGLib.Time.new_from_string(value.strftime("%Y%m%d"))
    if time_zone:
        local = value.astimezone(ZoneInfo(time_zone))
        return ICalGLib.Time.new_from_string(local.strftime("%Y%m%dT%H%M%S"))
    return ICalGLib.Time.new_from_string(_utc(value))


def _with_tzid(prop: ICalGLib.Property, tzid: str | None) -> ICalGLib.Property:
    if tzid and prop.get_first_parameter(ICalGLib.ParameterKind.TZID_PARAMETER) is None:
        prop.add_parameter(ICalGLib.Parameter.new_tzid(tzid))
    return prop


def _valarm(alarm: Alarm, fallback_description: str) -> ICalGLib.Component:
    valarm = ICalGLib.Component.new_valarm()
    valarm.add_property(ICalGLib.Property.new_action(_ACTIONS[alarm.action]))
    trigger = ICalGLib.Trigger.new_relduration(ICalGLib.Duration.new_from_int(alarm.trigger))
    trigger_prop = ICalGLib.Property.new_trigger(trigger)
    if alarm.trigger_relation == TriggerRelation.END:
        trigger_prop.add_parameter(ICalGLib.Parameter.new_related(ICalGLib.ParameterRelated.END))
    valarm.add_property(trigger_prop)
    description = alarm.description or fallback_description
    valarm.add_property(ICalGLib.Property.new_description(description))
    return valarm


def build_component(entry: StoreEntry, uid: str, tzid: str | None = None) -> ICalGLib.Component:
    """Build a VEVENT component for a StoreEntry.

    Timed events are written as wall-clock time with a TZID parameter when
    ``tzid`` is given (the entry's zone must be registered with the client),
    otherwise in UTC.
    """
    time_zone = entry.time_zone if tzid else None
    event = ICalGLib.Component.new_vevent()
    event.add_property(ICalGLib.Property.new_uid(uid))
    stamp = ICalGLib.Time.new_from_string(_utc(datetime.now(timezone.utc)))
    event.add_property(ICalGLib.Property.new_dtstamp(stamp))
    event.add_property(ICalGLib.Property.new_summary(entry.title))

    start = _ical_time(entry.start, entry.is_all_day, time_zone)
    end = _ical_time(entry.end, entry.is_all_day, time_zone)
    event.add_property(_with_tzid(ICalGLib.Property.new_dtstart(start), tzid))
    event.add_property(_with_tzid(ICalGLib.Property.new_dtend(end), tzid))

    if entry.notes:
        event.add_property(ICalGLib.Property.new_description(entry.notes))
    if entry.location:
        event.add_property(ICalGLib.Property.new_location(entry.location))
    if entry.url:
        event.add_property(ICalGLib.Property.new_url(entry.url))
    if entry.recurrence_rule:
        rule = ICalGLib.Recurrence.new_from_string(entry.recurrence_rule)
        event.add_property(ICalGLib.Property.new_rrule(rule))
        for exdate in entry.exception_dates:
            value = _ical_time(exdate, entry.is_all_day, time_zone)
            event.add_property(_with_tzid(ICalGLib.Property.new_exdate(value), tzid))
    if entry.transparency:
        event.add_property(ICalGLib.Property.new_transp(_TRANSP[entry.transparency]))
    for alarm in entry.alarms:
        if alarm.action in _ACTIONS:
            event.add_component(_valarm(alarm, entry.title))
    return event


# ---------------------------------------------------------------------------
# Component reading
# ---------------------------------------------------------------------------


def _tzid_of(prop: ICalGLib.Property) -> str | None:
    param = prop.get_first_parameter(ICalGLib.ParameterKind.TZID_PARAMETER)
    return param.get_tzid() if param else None


def _to_datetime(value: ICalGLib.Time, tzid: str | None) -> datetime:
    """Convert an ICalGLib.Time to an aware datetime.

    Dates and floating times are taken in the local zone.
    """
    if value.is_date():
        return datetime(value.get_year(), value.get_month(), value.get_day()).astimezone()
    naive = datetime(
        value.get_year(),
        value.get_month(),
        value.get_day(),
        value.get_hour(),
        value.get_minute(),
        value.get_second(),
    )
    if value.is_utc():
        return naive.replace(tzinfo=timezone.utc)
    tz, _ = resolve_timezone(tzid)
    return naive.replace(tzinfo=tz) if tz else naive.astimezone()


def _properties(comp: ICalGLib.Component, kind: ICalGLib.PropertyKind):
    prop = comp.get_first_property(kind)
    while prop:
        yield prop
        prop = comp.get_next_property(kind)


def _read_alarms(event: ICalGLib.Component) -> list[Alarm]:
    actions = {value: key for key, value in _ACTIONS.items()}
    alarms = []
    valarm = event.get_first_component(ICalGLib.ComponentKind.VALARM_COMPONENT)
    while valarm:
        action_prop = valarm.get_first_property(ICalGLib.PropertyKind.ACTION_PROPERTY)
        trigger_prop = valarm.get_first_property(ICalGLib.PropertyKind.TRIGGER_PROPERTY)
        action = actions.get(action_prop.get_action()) if action_prop else None
        trigger = trigger_prop.get_trigger() if trigger_prop else None
        # Absolute triggers are never written by this store.
        if action is not None and trigger is not None and trigger.get_time().is_null_time():
            related = trigger_prop.get_first_parameter(ICalGLib.ParameterKind.RELATED_PARAMETER)
            relation = TriggerRelation.START
            if related and related.get_related() == ICalGLib.ParameterRelated.END:
                relation = TriggerRelation.END
            description = valarm.get_first_property(ICalGLib.PropertyKind.DESCRIPTION_PROPERTY)
            alarms.append(
                Alarm(
                    action=action,
                    trigger=trigger.get_duration().as_int(),
                    trigger_relation=relation,
                    description=description.get_description() if description else None,
                )
            )
        valarm = event.get_next_component(ICalGLib.ComponentKind.VALARM_COMPONENT)
    return alarms


def component_to_entry(
    comp: ICalGLib.Component, calendar_ref: str | None = None
) -> StoreEntry | None:
    """Read a VEVENT (bare or wrapped in a VCALENDAR) back into a StoreEntry.

    Returns None when the component has no VEVENT or no DTSTART.
    """
    event = comp
    if comp.isa() == ICalGLib.ComponentKind.VCALENDAR_COMPONENT:
        event = comp.get_first_component(ICalGLib.ComponentKind.VEVENT_COMPONENT)
    if event is None:
        return None
    dtstart_prop = event.get_first_property(ICalGLib.PropertyKind.DTSTART_PROPERTY)
    if dtstart_prop is None:
        return None

    start_time = dtstart_prop.get_dtstart()
    start_tzid = _tzid_of(dtstart_prop)
    is_all_day = start_time.is_date()
    start = _to_datetime(start_time, start_tzid)

    dtend_prop = event.get_first_property(ICalGLib.PropertyKind.DTEND_PROPERTY)
    duration_prop = event.get_first_property(ICalGLib.PropertyKind.DURATION_PROPERTY)
    if dtend_prop is not None:
        end = _to_datetime(dtend_prop.get_dtend(), _tzid_of(dtend_prop))
    elif duration_prop is not None:
        end = start + timedelta(seconds=duration_prop.get_duration().as_int())
    else:
        end = start + timedelta(days=1) if is_all_day else start

    rrule_prop = event.get_first_property(ICalGLib.PropertyKind.RRULE_PROPERTY)
    url_prop = event.get_first_property(ICalGLib.PropertyKind.URL_PROPERTY)
    transp_prop = event.get_first_property(ICalGLib.PropertyKind.TRANSP_PROPERTY)
    exception_dates = []
    for prop in _properties(event, ICalGLib.PropertyKind.EXDATE_PROPERTY):
        value = _to_datetime(prop.get_exdate(), _tzid_of(prop))
        if value not in exception_dates:
            exception_dates.append(value)

    _, time_zone = resolve_timezone(start_tzid)
    return StoreEntry(
        title=event.get_summary() or "",
        start=start,
        end=end,
        is_all_day=is_all_day,
        notes=event.get_description(),
        location=event.get_location(),
        url=url_prop.get_url() if url_prop else None,
        time_zone=time_zone,
        recurrence_rule=rrule_prop.get_value_as_string() if rrule_prop else None,
        exception_dates=exception_dates,
        alarms=_read_alarms(event),
        transparency=enum_or_none(
            EventTransparency, transp_prop.get_value_as_string() if transp_prop else None
        ),
        stable_id=event.get_uid(),
        local_id=None,
        calendar_ref=calendar_ref,
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class EDSCalendarStore(CalendarStore):
    """CalendarStore over EDS calendars, addressed by source UID.

    Stable ids are iCalendar UIDs. EDS exposes no second identifier, so
    ``find_by_local_id`` always returns None.
    """

    def __init__(self, registry: EDataServer.SourceRegistry | None = None):
        self.registry = registry or EDataServer.SourceRegistry.new_sync(None)
        self._clients: dict[str, ECal.Client] = {}

    # -- calendars ----------------------------------------------------------

    def _sources(self):
        return self.registry.list_sources(EDataServer.SOURCE_EXTENSION_CALENDAR)

    def _account_name(self, source) -> str:
        parent_uid = source.get_parent()
        if not parent_uid:
            return ""
        parent = self.registry.ref_source(parent_uid)
        return (parent.get_display_name() or "") if parent else ""

    def _client(self, calendar_ref: str) -> ECal.Client:
        client = self._clients.get(calendar_ref)
        if client is not None:
            return client
        source = self.registry.ref_source(calendar_ref)
        if source is None:
            raise CalendarNotFoundError(calendar_ref)
        try:
            client = ECal.Client.connect_sync(
                source, ECal.ClientSourceType.EVENTS, _CONNECT_TIMEOUT, None
            )
        except GLib.Error as e:
            raise _wrap(e, f"connecting to calendar {calendar_ref}") from e
        self._clients[calendar_ref] = client
        return client

    def list_calendars(self) -> list[CalendarInfo]:
        calendars = []
        for source in self._sources():
            ref = source.get_uid() or ""
            try:
                writable = not self._client(ref).is_readonly()
            except CalendarStoreError:
                writable = None
            calendars.append(
                CalendarInfo(
                    ref=ref,
                    name=source.get_display_name() or "(unnamed)",
                    account=self._account_name(source),
                    writable=writable,
                )
            )
        return calendars

    def resolve_or_create_calendar(self, name: str, create_if_missing: bool) -> str:
        matches = [s for s in self._sources() if (s.get_display_name() or "") == name]
        for source in matches:
            ref = source.get_uid()
            if not self._client(ref).is_readonly():
                return ref
        if matches:
            raise NoWritableCalendarError(f"Calendar '{name}' is read-only")
        if not create_if_missing:
            raise CalendarNotFoundError(name)
        return self._create_local_calendar(name)

    def _create_local_calendar(self, name: str) -> str:
        logger.info(f"Creating calendar: {name}")
        source = EDataServer.Source.new(None, None)
        source.set_display_name(name)
        source.set_parent("local-stub")
        extension = source.get_extension(EDataServer.SOURCE_EXTENSION_CALENDAR)
        extension.set_backend_name("local")
        try:
            self.registry.commit_source_sync(source, None)
        except GLib.Error as e:
            raise _wrap(e, f"creating calendar '{name}'") from e
        return source.get_uid()

    # -- reading ------------------------------------------------------------

    def _to_entry(self, obj, calendar_ref: str) -> StoreEntry | None:
        comp = ICalGLib.Component.new_from_string(obj) if isinstance(obj, str) else obj
        entry = component_to_entry(comp, calendar_ref) if comp else None
        if entry is None:
            logger.debug("Skipping calendar object without a readable VEVENT")
        return entry

    def _query(self, calendar_ref: str, sexp: str) -> list[StoreEntry]:
        try:
            _, objects = self._client(calendar_ref).get_object_list_sync(sexp, None)
        except GLib.Error as e:
            raise _wrap(e, "querying calendar") from e
        entries = (self._to_entry(obj, calendar_ref) for obj in objects or [])
        return [entry for entry in entries if entry is not None]

    def _get(self, calendar_ref: str, uid: str) -> StoreEntry | None:
        try:
            _, comp = self._client(calendar_ref).get_object_sync(uid, None, None)
        except GLib.Error as e:
            if is_not_found_error(e):
                return None
            raise _wrap(e, f"reading event {uid}") from e
        return self._to_entry(comp, calendar_ref) if comp else None

    def _owner(self, stable_id: str) -> str | None:
        for ref in self._clients:
            if self._get(ref, stable_id) is not None:
                return ref
        return None

    def find_by_stable_id(self, stable_id: str) -> StoreEntry | None:
        for ref in list(self._clients):
            entry = self._get(ref, stable_id)
            if entry is not None:
                return entry
        return None

    def find_by_local_id(self, local_id: str) -> StoreEntry | None:
        return None

    def find_by_embedded_marker(self, marker: str, calendar_ref: str) -> StoreEntry | None:
        quoted = marker.replace("\\", "\\\\").replace('"', '\\"')
        for entry in self._query(calendar_ref, f'(contains? "description" "{quoted}")'):
            if entry.notes and marker in entry.notes:
                return entry
        return None

    def search(self, calendar_ref: str, start: datetime, end: datetime) -> list[StoreEntry]:
        sexp = (
            f'(occur-in-time-range? (make-time "{_utc(start)}") '
            f'(make-time "{_utc(end + timedelta(seconds=1))}"))'
        )
        return self._query(calendar_ref, sexp)

    # -- writing ------------------------------------------------------------

    def _component(self, client: ECal.Client, entry: StoreEntry, uid: str) -> ICalGLib.Component:
        tzid = None
        if entry.time_zone and not entry.is_all_day and entry.time_zone != "UTC":
            zone = ICalGLib.Timezone.get_builtin_timezone(entry.time_zone)
            if zone is not None:
                try:
                    client.add_timezone_sync(zone, None)
                    tzid = zone.get_tzid()
                except GLib.Error as e:
                    logger.debug(f"Could not add timezone {entry.time_zone}: {e.message}")
        return build_component(entry, uid, tzid)

    def create(self, entry: StoreEntry, calendar_ref: str) -> str:
        client = self._client(calendar_ref)
        uid = str(uuid.uuid4())
        try:
            success, out_uid = client.create_object_sync(
                self._component(client, entry, uid), ECal.OperationFlags.NONE, None
            )
        except GLib.Error as e:
            raise _wrap(e, "creating event") from e
        if not success:
            raise CalendarStoreError("Failed to create event")
        # Some backends rewrite the UID; keep what the server assigned.
        return out_uid or uid

    def update(self, stable_id: str, entry: StoreEntry) -> None:
        calendar_ref = entry.calendar_ref if entry.calendar_ref in self._clients else None
        calendar_ref = calendar_ref or self._owner(stable_id)
        if calendar_ref is None:
            raise EntryNotFoundError(stable_id)
        client = self._client(calendar_ref)
        try:
            success = client.modify_object_sync(
                self._component(client, entry, stable_id),
                ECal.ObjModType.ALL,
                ECal.OperationFlags.NONE,
                None,
            )
        except GLib.Error as e:
            raise _wrap(e, f"updating event {stable_id}", stable_id) from e
        if not success:
            raise CalendarStoreError(f"Failed to modify event {stable_id}")

    def delete(self, stable_id: str) -> None:
        calendar_ref = self._owner(stable_id)
        if calendar_ref is None:
            raise EntryNotFoundError(stable_id)
        try:
            success = self._client(calendar_ref).remove_object_sync(
                stable_id,
                None,  # rid (recurrence-id)
                ECal.ObjModType.ALL,
                ECal.OperationFlags.NONE,
                None,  # cancellable
            )
        except GLib.Error as e:
            raise _wrap(e, f"removing event {stable_id}", stable_id) from e
        if not success:
            raise CalendarStoreError(f"Failed to remove event {stable_id}")
