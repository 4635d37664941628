"""
Calendar object operations - Sans-I/O conversion between iCalendar data
and Event rows.

A remote calendar object holds one series: the master VEVENT plus one
VEVENT with RECURRENCE-ID per exception.  Locally the same series is a
master row and exception rows sharing the uid.

Time values are converted to aware UTC datetimes.  Floating times are
taken to be in the server timezone.  All-day values become midnight
UTC, with the inclusive end convention of diff_ops.
"""
from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from urllib.parse import quote

import icalendar

from calsync.lib import error
from calsync.lib import vcal
from calsync.lib.python_utilities import to_normal_str
from calsync.objects import Alarm
from calsync.objects import Attendee
from calsync.objects import Event
from calsync.operations.diff_ops import denormalize_all_day_end
from calsync.operations.diff_ops import normalize_all_day_end
from calsync.operations.recurrence_ops import format_rule
from calsync.operations.recurrence_ops import get_zone
from calsync.operations.recurrence_ops import instance_key
from calsync.operations.recurrence_ops import parse_instance
from calsync.operations.recurrence_ops import parse_rule

log = logging.getLogger("calsync")


def generate_uid() -> str:
    """Generate a new UID for a calendar object."""
    return str(uuid.uuid1())


def generate_url(parent_url: str, uid: str) -> str:
    """
    URL of the calendar object holding the series `uid`.

    Slashes in the uid are double-quoted so that the object stays
    directly below the collection.
    """
    quoted_uid = quote(uid.replace("/", "%2F"))
    if not parent_url.endswith("/"):
        parent_url += "/"
    return f"{parent_url}{quoted_uid}.ics"


def get_duration(component: Any) -> timedelta:
    """
    Duration of a VEVENT.

    Either DURATION or DTEND should be set, but never both.  Without
    any of them a date-valued DTSTART lasts one day, a datetime zero.
    """
    if "DURATION" in component:
        return component["DURATION"].dt

    if "DTSTART" in component and "DTEND" in component:
        end = component["DTEND"].dt
        start = component["DTSTART"].dt
        if isinstance(end, datetime) != isinstance(start, datetime):
            if not isinstance(start, datetime):
                start = datetime(start.year, start.month, start.day)
            if not isinstance(end, datetime):
                end = datetime(end.year, end.month, end.day)
            start = start.replace(tzinfo=None)
            end = end.replace(tzinfo=None)
        return end - start

    if "DTSTART" in component:
        if not isinstance(component["DTSTART"].dt, datetime):
            return timedelta(days=1)

    return timedelta(0)


def to_utc(value: Any, tz: Any = None) -> datetime:
    """date, floating or zoned datetime to an aware UTC datetime"""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=get_zone(tz))
        return value.astimezone(timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raise error.ValidationError(reason=f"not a date or datetime: {value!r}")


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def _date_list(component: Any, name: str, tz: Any = None) -> List[datetime]:
    result = []
    for prop in _as_list(component.get(name)):
        for item in getattr(prop, "dts", []):
            value = item.dt
            ## RDATE periods - only the start matters
            if isinstance(value, tuple):
                value = value[0]
            result.append(to_utc(value, tz))
    return result


def rule_from_component(component: Any, tz: Any = None) -> Optional[Dict[str, Any]]:
    """The rule dict of a master VEVENT, EXDATE and RDATE included"""
    rrule = component.get("RRULE")
    if isinstance(rrule, list):
        rrule = rrule[0] if rrule else None
    if rrule is None:
        return None
    rule = parse_rule(to_normal_str(rrule.to_ical()))
    if not rule:
        return None
    exdates = _date_list(component, "EXDATE", tz)
    if exdates:
        rule["EXDATE"] = exdates
    rdates = _date_list(component, "RDATE", tz)
    if rdates:
        rule["RDATE"] = rdates
    return rule


def _address(value: Any) -> str:
    email = str(value)
    if email.lower().startswith("mailto:"):
        email = email[7:]
    return email


def _attendee(value: Any, role: Optional[str] = None) -> Attendee:
    params = getattr(value, "params", {})
    return Attendee(
        email=_address(value),
        name=params.get("CN"),
        role=role or params.get("ROLE", "REQ-PARTICIPANT"),
        status=params.get("PARTSTAT", "NEEDS-ACTION"),
        rsvp=str(params.get("RSVP", "")).upper() == "TRUE",
    )


def _categories(component: Any) -> List[str]:
    categories = []
    for prop in _as_list(component.get("CATEGORIES")):
        for cat in getattr(prop, "cats", [prop]):
            cat = str(cat).strip()
            if cat and cat not in categories:
                categories.append(cat)
    return categories


def _free_busy(component: Any) -> str:
    if str(component.get("TRANSP", "OPAQUE")).upper() == "TRANSPARENT":
        return "free"
    busystatus = str(component.get("X-MICROSOFT-CDO-BUSYSTATUS", "")).upper()
    if busystatus == "OOF":
        return "outofoffice"
    if busystatus == "TENTATIVE" or str(component.get("STATUS", "")).upper() == "TENTATIVE":
        return "tentative"
    return "busy"


def _alarms(component: Any, tz: Any = None) -> List[Alarm]:
    alarms = []
    for valarm in component.walk("VALARM"):
        trigger = valarm.get("TRIGGER")
        if trigger is None:
            continue
        value = trigger.dt
        if isinstance(value, datetime):
            value = to_utc(value, tz)
        elif not isinstance(value, timedelta):
            continue
        action = str(valarm.get("ACTION", "DISPLAY")).upper()
        alarms.append(Alarm(action=action, trigger=value))
    return alarms


def _text(component: Any, name: str) -> str:
    value = component.get(name)
    if value is None:
        return ""
    if isinstance(value, list):
        value = value[0]
    return str(value)


def _timestamp(component: Any, *names: str) -> Optional[datetime]:
    for name in names:
        value = component.get(name)
        if value is not None:
            return to_utc(value.dt)
    return None


def event_from_component(component: Any, tz: Any = None) -> Event:
    """
    Build an Event from one VEVENT.  instance is left unset, it depends
    on the master of the series (see events_from_ical).
    """
    if component.get("DTSTART") is None:
        raise error.ValidationError(reason="VEVENT without DTSTART")
    start_value = component["DTSTART"].dt
    all_day = not isinstance(start_value, datetime)
    start = to_utc(start_value, tz)
    if "DTEND" in component:
        end = to_utc(component["DTEND"].dt, tz)
    else:
        end = start + get_duration(component)
    end = normalize_all_day_end(start, end, all_day)

    organizer = component.get("ORGANIZER")
    try:
        priority = int(component.get("PRIORITY", 0))
    except (TypeError, ValueError):
        priority = 0
    sensitivity = _text(component, "CLASS").lower() or "public"
    if sensitivity not in ("public", "private", "confidential"):
        sensitivity = "private"

    return Event(
        uid=_text(component, "UID") or None,
        start=start,
        end=end,
        all_day=all_day,
        recurrence=rule_from_component(component, tz),
        sequence=int(component.get("SEQUENCE", 0)),
        title=_text(component, "SUMMARY"),
        description=_text(component, "DESCRIPTION"),
        location=_text(component, "LOCATION"),
        categories=_categories(component),
        url=_text(component, "URL"),
        free_busy=_free_busy(component),
        priority=priority,
        sensitivity=sensitivity,
        status=_text(component, "STATUS").upper(),
        attendees=[_attendee(a) for a in _as_list(component.get("ATTENDEE"))],
        organizer=_attendee(organizer, role="ORGANIZER") if organizer else None,
        alarms=_alarms(component, tz),
        created=_timestamp(component, "CREATED"),
        changed=_timestamp(component, "LAST-MODIFIED", "DTSTAMP"),
    )


def events_from_ical(data: Any, tz: Any = None) -> List[Event]:
    """
    Parse ical data into masters, each with its exceptions in
    `exceptions` (instance keys filled in).  An ICS feed yields one
    master per uid, a CalDAV object exactly one.
    """
    try:
        cal = vcal.parse(data)
    except ValueError as e:
        raise error.ValidationError(reason=f"invalid ical data: {e}")
    method = _text(cal, "METHOD") or None

    masters: Dict[str, Event] = OrderedDict()
    overrides: Dict[str, List[Any]] = OrderedDict()
    for component in cal.walk("VEVENT"):
        uid = _text(component, "UID") or generate_uid()
        if component.get("RECURRENCE-ID") is not None:
            overrides.setdefault(uid, []).append(component)
            continue
        if uid in masters:
            log.debug(f"duplicate master for uid {uid}, keeping the first")
            continue
        event = event_from_component(component, tz)
        event.uid = uid
        event.method = method
        masters[uid] = event

    for uid, components in overrides.items():
        master = masters.get(uid)
        for component in components:
            exception = event_from_component(component, tz)
            exception.uid = uid
            exception.method = method
            recurrence_id = component["RECURRENCE-ID"].dt
            if master is None:
                ## an occurrence without its series, keep it as a plain event
                masters[f"{uid}@{recurrence_id}"] = exception
                continue
            exception.is_exception = True
            exception.recurrence = None
            exception.instance = instance_key(to_utc(recurrence_id, tz), master.all_day, tz)
            master.exceptions.append(exception)
    for master in masters.values():
        master.exceptions.sort(key=lambda e: e.instance)
    return list(masters.values())


def _ical_rule(rule: Dict[str, Any], all_day: bool) -> icalendar.vRecur:
    rule = dict(rule)
    until = rule.get("UNTIL")
    if all_day and isinstance(until, datetime):
        rule["UNTIL"] = until.astimezone(timezone.utc).date()
    return icalendar.vRecur.from_ical(format_rule(rule, with_lists=False))


def _calendar_address(attendee: Attendee, organizer: bool = False) -> icalendar.vCalAddress:
    address = icalendar.vCalAddress(f"mailto:{attendee.email}")
    if attendee.name:
        address.params["CN"] = icalendar.vText(attendee.name)
    if not organizer:
        address.params["ROLE"] = icalendar.vText(attendee.role or "REQ-PARTICIPANT")
        address.params["PARTSTAT"] = icalendar.vText(attendee.status or "NEEDS-ACTION")
        if attendee.rsvp:
            address.params["RSVP"] = icalendar.vText("TRUE")
    return address


def component_from_event(
    event: Event,
    recurrence_id: Any = None,
    now: Optional[datetime] = None,
) -> icalendar.Event:
    """One VEVENT.  The rule is only written for masters."""
    vevent = icalendar.Event()
    vevent.add("uid", event.uid)
    vevent.add("dtstamp", now or datetime.now(timezone.utc))
    if event.created:
        vevent.add("created", event.created)
    if event.changed:
        vevent.add("last-modified", event.changed)
    vevent.add("sequence", event.sequence or 0)

    if event.all_day:
        start = event.start.astimezone(timezone.utc).date()
        end = denormalize_all_day_end(event.start, event.end, True)
        end = end.astimezone(timezone.utc).date() if end else start
        vevent.add("dtstart", start)
        vevent.add("dtend", max(end, start + timedelta(days=1)))
    else:
        vevent.add("dtstart", event.start.astimezone(timezone.utc))
        vevent.add("dtend", (event.end or event.start).astimezone(timezone.utc))

    if recurrence_id is not None:
        vevent.add("recurrence-id", recurrence_id)
    elif event.recurrence and not event.recurrence_id:
        vevent.add("rrule", _ical_rule(event.recurrence, event.all_day))
        for name in ("EXDATE", "RDATE"):
            values = event.recurrence.get(name)
            if values:
                if event.all_day:
                    values = [v.astimezone(timezone.utc).date() for v in values]
                vevent.add(name.lower(), values)

    vevent.add("summary", event.title or "")
    for name, value in (
        ("description", event.description),
        ("location", event.location),
        ("url", event.url),
        ("status", event.status),
    ):
        if value:
            vevent.add(name, value)
    if event.categories:
        vevent.add("categories", list(event.categories))
    if event.priority:
        vevent.add("priority", event.priority)
    if event.sensitivity and event.sensitivity != "public":
        vevent.add("class", event.sensitivity.upper())
    if event.free_busy == "free":
        vevent.add("transp", "TRANSPARENT")
    else:
        vevent.add("transp", "OPAQUE")
        if event.free_busy == "outofoffice":
            vevent.add("x-microsoft-cdo-busystatus", "OOF")
        elif event.free_busy == "tentative":
            vevent.add("x-microsoft-cdo-busystatus", "TENTATIVE")

    if event.organizer and event.organizer.email:
        vevent.add("organizer", _calendar_address(event.organizer, organizer=True))
    for attendee in event.attendees:
        if attendee.email:
            vevent.add("attendee", _calendar_address(attendee))

    for alarm in event.alarms:
        valarm = icalendar.Alarm()
        valarm.add("action", alarm.action)
        valarm.add("trigger", alarm.trigger)
        if alarm.action == "DISPLAY":
            valarm.add("description", event.title or "")
        vevent.add_component(valarm)
    return vevent


def _recurrence_id(master: Event, instance: str, tz: Any = None) -> Any:
    value = parse_instance(instance, tz)
    if master.all_day:
        return value.date()
    return value.astimezone(timezone.utc)


def to_ical(
    master: Event,
    exceptions: Optional[Iterable[Event]] = None,
    tz: Any = None,
    method: Optional[str] = None,
) -> str:
    """Serialize a series (master plus exceptions) into one VCALENDAR"""
    if master.uid is None:
        raise error.ValidationError(reason="event without uid")
    if master.start is None:
        raise error.ValidationError(reason=f"event {master.uid} without start")
    exceptions = master.exceptions if exceptions is None else exceptions
    now = datetime.now(timezone.utc)
    cal = vcal.new_calendar(method)
    cal.add_component(component_from_event(master, now=now))
    for exception in exceptions:
        if not exception.instance:
            continue
        exception = exception.copy(uid=master.uid)
        cal.add_component(
            component_from_event(
                exception, recurrence_id=_recurrence_id(master, exception.instance, tz), now=now
            )
        )
    return to_normal_str(cal.to_ical())


def notify_at(event: Event, alarm_types: Iterable[str] = ("DISPLAY",)) -> Optional[datetime]:
    """Time of the earliest alarm of the given types, None without alarms"""
    types = {t.upper() for t in alarm_types}
    times = []
    for alarm in event.alarms:
        if alarm.action.upper() not in types:
            continue
        if isinstance(alarm.trigger, datetime):
            times.append(to_utc(alarm.trigger))
        elif event.start is not None:
            times.append(event.start + alarm.trigger)
    return min(times) if times else None
