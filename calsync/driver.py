"""
The calendar driver: everything a calendar application asks of the
store, for one user.

    driver = CalendarDriver("sqlite:///calendars.db", user_id=1,
                            config=SyncConfig(timezone="Europe/Berlin"))
    source_id = driver.create_source(Source(caldav_url="https://dav.example.com/"))
    for event in driver.load_events(start, end):
        ...
    driver.end_request()

Reads make sure the calendars involved are in sync first (throttled,
see calsync.orchestrator).  Edits go through calsync.controller, which
pushes them to the server.  Failures to talk to the server do not
raise; the methods return None/False and leave a message in
``last_error``.  Invalid input raises ValidationError.
"""
import dataclasses
import logging
import re
from datetime import datetime
from datetime import timedelta
from typing import Any
from typing import Callable
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Union
from urllib.parse import quote

from calsync.config import SyncConfig
from calsync.controller import EditOutcome
from calsync.controller import PushController
from calsync.davclient import DAVClient
from calsync.lib import error
from calsync.lib.url import join
from calsync.objects import Alarm
from calsync.objects import Attachment
from calsync.objects import Calendar
from calsync.objects import Event
from calsync.objects import FILTER_ACTIVE
from calsync.objects import FILTER_WRITEABLE
from calsync.objects import Source
from calsync.operations.calendarobject_ops import generate_uid
from calsync.operations.calendarobject_ops import to_utc
from calsync.operations.savemode_ops import master_instance
from calsync.orchestrator import SyncOrchestrator
from calsync.protocol import normalize_color
from calsync.protocol.xml_parsers import DEFAULT_COLOR
from calsync.resolver import locate
from calsync.store import Store

log = logging.getLogger("calsync")

INSTANCE_RE = re.compile(r"^\d{8}(T\d{6})?$")

EventRef = Union[int, str, Event, Dict[str, Any]]


class CalendarDriver:
    """
    Args:
        store: A calsync.store.Store, or a database URL for one
        user_id: The user the driver works for
        config: SyncConfig
        username: Login name of the user, for preinstalled sources
        password: Password of the user, for preinstalled sources
        client_factory: callable(calendar) returning a sync client,
            for the calendars' collections
        dav_client_factory: callable(source) returning a DAVClient,
            for calendar and source management
        clock: callable returning the current (aware) time
    """

    def __init__(
        self,
        store: Union[Store, str] = "sqlite://",
        user_id: int = 1,
        config: Optional[SyncConfig] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        client_factory: Optional[Callable] = None,
        dav_client_factory: Optional[Callable[[Source], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.config = config or SyncConfig()
        self.store = store if isinstance(store, Store) else Store(store, user_id=user_id)
        self.orchestrator = SyncOrchestrator(self.store, self.config, client_factory, clock)
        self.controller = PushController(self.store, self.orchestrator)
        self.dav_client_factory = dav_client_factory or self._dav_client
        self.username = username
        self.password = password
        self.last_error: Optional[str] = None
        self._cache: Dict[int, Event] = {}
        self._install_sources()

    def _dav_client(self, source: Source) -> DAVClient:
        return DAVClient(
            source.caldav_url,
            username=source.caldav_user,
            password=source.caldav_pass,
            timeout=self.config.timeout,
            ssl_verify_cert=self.config.ssl_verify_cert,
        )

    def _fail(self, message: str) -> None:
        log.error(message)
        self.last_error = message

    def now(self) -> datetime:
        return self.orchestrator.now()

    def end_request(self) -> None:
        """Forget everything remembered for the current request"""
        self._cache.clear()
        self.orchestrator.end_request()

    ## sources and calendars

    def _install_sources(self) -> None:
        """Add the sources every user gets, unless the user has them already"""
        if not self.config.preinstalled_sources:
            return
        known = {s.caldav_url for s in self.store.list_sources()}
        for entry in self.config.preinstalled_sources:
            source = Source(
                caldav_url=(entry.get("caldav_url") or entry.get("url") or "").replace(
                    "%u", self.username or ""
                ),
                caldav_user=(entry.get("caldav_user") or entry.get("user") or "").replace(
                    "%u", self.username or ""
                )
                or None,
                caldav_pass=(entry.get("caldav_pass") or entry.get("pass") or "").replace(
                    "%p", self.password or ""
                )
                or None,
            )
            if not source.caldav_url or source.caldav_url in known:
                continue
            if self.create_source(source) is not None:
                known.add(source.caldav_url)

    def list_calendars(self, filter: int = 0) -> List[Calendar]:
        calendars = self.store.list_calendars(active_only=bool(filter & FILTER_ACTIVE))
        if filter & FILTER_WRITEABLE:
            calendars = [c for c in calendars if c.editable]
        return calendars

    def create_source(self, source: Source) -> Optional[int]:
        """
        Add a CalDAV account and one calendar per collection found on
        it.  Returns the source id, None if the server could not be
        asked.
        """
        if not source.caldav_url:
            raise error.ValidationError(reason="source without url")
        try:
            found = self.dav_client_factory(source).discover_calendars(source.caldav_url)
        except error.RemoteTransportError as e:
            self._fail(f"could not find the calendars of {source.caldav_url}: {e}")
            return None
        with self.store.transaction():
            source_id = self.store.insert_source(source)
            for info in found:
                self.store.insert_calendar(
                    Calendar(
                        source_id=source_id,
                        name=info.name,
                        color=info.color or DEFAULT_COLOR,
                        caldav_url=info.href,
                    )
                )
        log.info(f"added source {source.caldav_url} with {len(found)} calendars")
        return source_id

    def delete_source(self, source_id: int) -> bool:
        """Forget a source and its calendars.  Nothing is deleted remotely."""
        self._cache.clear()
        return self.store.delete_source(source_id)

    def create_calendar(self, calendar: Calendar) -> Optional[int]:
        """
        Add a calendar.  An ICS subscription needs caldav_url, the feed
        url.  A CalDAV calendar needs source_id; without caldav_url a
        new collection is made on the source's server.
        """
        calendar = dataclasses.replace(
            calendar, color=normalize_color(calendar.color) or DEFAULT_COLOR
        )
        if calendar.is_ical:
            if not calendar.caldav_url:
                raise error.ValidationError(reason="ics calendar without url")
            calendar_id = self.store.insert_calendar(dataclasses.replace(calendar, source_id=None))
            self.orchestrator.sync_calendar(calendar_id)
            return calendar_id

        source = self.store.get_source(calendar.source_id) if calendar.source_id else None
        if source is None:
            raise error.ValidationError(reason=f"no such source: {calendar.source_id}")
        if not calendar.caldav_url:
            url = join(source.caldav_url, quote(generate_uid()) + "/")
            try:
                self.dav_client_factory(source).make_calendar(url, calendar.name, calendar.color)
            except error.RemoteTransportError as e:
                self._fail(f"could not create calendar {calendar.name}: {e}")
                return None
            calendar = dataclasses.replace(calendar, caldav_url=url)
        return self.store.insert_calendar(calendar)

    def edit_calendar(self, calendar: Calendar) -> bool:
        """Change name, color and alarm display of a calendar"""
        stored = self.store.get_calendar(calendar.id)
        if stored is None:
            return False
        color = normalize_color(calendar.color) or stored.color
        name = calendar.name or stored.name
        if (name, color) != (stored.name, stored.color) and stored.source_id and not stored.is_ical:
            source = self.store.get_source(stored.source_id)
            try:
                self.dav_client_factory(source).set_calendar_properties(stored.caldav_url, name, color)
            except error.RemoteTransportError as e:
                self._fail(f"could not change calendar {stored.name}: {e}")
                return False
        return self.store.update_calendar(
            calendar.id, {"name": name, "color": color, "showalarms": calendar.showalarms}
        )

    def subscribe_calendar(self, calendar_id: int, active: bool = True) -> bool:
        return self.store.update_calendar(calendar_id, {"active": bool(active)})

    def delete_calendar(self, calendar_id: int) -> bool:
        """Delete a calendar, and its collection on the server"""
        calendar = self.store.get_calendar(calendar_id)
        if calendar is None:
            return False
        if not calendar.is_ical and calendar.source_id and calendar.caldav_url:
            source = self.store.get_source(calendar.source_id)
            try:
                self.dav_client_factory(source).delete_calendar(calendar.caldav_url)
            except error.RemoteTransportError as e:
                self._fail(f"could not delete calendar {calendar.name}: {e}")
                return False
        self._cache.clear()
        return self.store.delete_calendar(calendar_id)

    ## events

    def _normalize(self, event: Event) -> Event:
        """Aware UTC datetimes everywhere, naive ones are server time"""
        tz = self.config.timezone
        event = event.copy()
        if event.start is not None:
            event.start = to_utc(event.start, tz)
        if event.end is not None:
            event.end = to_utc(event.end, tz)
        if event.recurrence:
            rule = event.recurrence
            if isinstance(rule.get("UNTIL"), datetime):
                rule["UNTIL"] = to_utc(rule["UNTIL"], tz)
            for key in ("EXDATE", "RDATE"):
                if rule.get(key):
                    rule[key] = [to_utc(d, tz) for d in rule[key]]
        event.alarms = [
            Alarm(a.action, to_utc(a.trigger, tz)) if isinstance(a.trigger, datetime) else a
            for a in event.alarms
        ]
        return event

    def _outcome(self, outcome: EditOutcome) -> Optional[int]:
        self._cache.clear()
        if outcome.ok:
            self.last_error = None
            return outcome.event_id
        self._fail(outcome.message or outcome.status)
        return None

    def _master_id(self, event_id: Optional[int]) -> Optional[int]:
        row = self._load(event_id) if event_id else None
        if row is None:
            return None
        return row.recurrence_id or row.id

    def _save_attachments(self, event_id: Optional[int], event: Event) -> None:
        master_id = self._master_id(event_id)
        if master_id is None:
            return
        for attachment_id in event.deleted_attachments:
            self.store.delete_attachment(attachment_id, master_id)
        for attachment in event.attachments:
            if attachment.id is None:
                self.store.insert_attachment(master_id, attachment)

    def new_event(self, event: Event) -> Union[int, bool]:
        """Add an event.  Returns its id, False on failure."""
        event = self._normalize(event)
        event_id = self._outcome(self.controller.apply_create(event))
        if event_id is None:
            return False
        self._save_attachments(event_id, event)
        return event_id

    def edit_event(self, event: Event, savemode: Optional[str] = None) -> Union[int, bool]:
        """
        Save a changed event.  savemode decides what a change to an
        occurrence of a series applies to: new, current, future or all.
        Returns the id of the row holding the change, False on failure.
        """
        event = self._normalize(event)
        event_id = self._outcome(self.controller.apply_edit(event, savemode))
        if event_id is None:
            return False
        self._save_attachments(event_id, event)
        return event_id

    def move_event(self, event: Event, savemode: Optional[str] = None) -> Union[int, bool]:
        """Change the times of an event (drag and drop)"""
        return self._retime(event, savemode)

    def resize_event(self, event: Event, savemode: Optional[str] = None) -> Union[int, bool]:
        """Change the end of an event"""
        return self._retime(event, savemode)

    def _retime(self, event: Event, savemode: Optional[str]) -> Union[int, bool]:
        stored = self._load(event.id)
        if stored is None:
            return False
        changes = {"start": event.start, "end": event.end, "all_day": event.all_day}
        if event.calendar_id is not None:
            changes["calendar_id"] = event.calendar_id
        return self.edit_event(stored.copy(**changes), savemode)

    def remove_event(self, event: Union[Event, int], savemode: Optional[str] = None) -> bool:
        if isinstance(event, int):
            event = self._load(event)
            if event is None:
                return False
        return self._outcome(self.controller.apply_remove(event, savemode)) is not None

    def _load(self, event_id: Optional[int]) -> Optional[Event]:
        if not event_id:
            return None
        if event_id not in self._cache:
            row = self.store.get_event(event_id)
            if row is None:
                return None
            self._cache[event_id] = row
        return self._cache[event_id].copy()

    def _parse_ref(self, ref: EventRef):
        """(id, uid, instance) of the accepted ways to name an event"""
        if isinstance(ref, bool):
            return None, None, None
        if isinstance(ref, int):
            return ref, None, None
        if isinstance(ref, Event):
            return ref.id, ref.uid, ref.instance
        if isinstance(ref, dict):
            return ref.get("id"), ref.get("uid"), ref.get("instance")
        ref = str(ref)
        if ref.isdigit():
            return int(ref), None, None
        uid, _, instance = ref.rpartition("@")
        if uid and INSTANCE_RE.match(instance):
            return None, uid, instance
        return None, ref, None

    def get_event(self, ref: EventRef, scope: Optional[str] = None, full: bool = False) -> Optional[Event]:
        """
        One event, by id, by uid (the master), by uid@instance or by a
        dict/Event carrying those.  scope "master" returns the master
        of an occurrence.  full adds the exceptions of a master and the
        attachments.
        """
        event_id, uid, instance = self._parse_ref(ref)
        row = self._load(event_id)
        if row is None:
            row = locate(self.store, None, uid, instance)
            if row is None and instance:
                ## the first instance of a series is the master row
                master = locate(self.store, None, uid)
                if master is not None and master.recurrence and (
                    master_instance(master, self.orchestrator.context()) == instance
                ):
                    row = master
            if row is None:
                return None
            self._cache[row.id] = row.copy()
        if scope == "master" and row.recurrence_id:
            row = self._load(row.recurrence_id)
            if row is None:
                return None
        if full:
            if row.is_master and row.recurrence:
                row.exceptions = self.store.children(row.id, exceptions=True)
            master_id = row.recurrence_id or row.id
            row.attachments = self.store.list_attachments(master_id)
        return row

    def load_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        query: Optional[str] = None,
        calendar_ids: Optional[Iterable[int]] = None,
        virtual: bool = True,
        modified_since: Optional[datetime] = None,
    ) -> List[Event]:
        """
        Events in a time range.  With virtual every occurrence is its
        own event; without, the series are returned as masters with
        their exceptions.
        """
        tz = self.config.timezone
        start = to_utc(start, tz) if start is not None else None
        end = to_utc(end, tz) if end is not None else None
        ids = list(calendar_ids) if calendar_ids is not None else self.store.calendar_ids(active_only=True)
        for calendar_id in ids:
            self.orchestrator.ensure_fresh(calendar_id)
        rows = self.store.query_events(
            start, end, ids, query, to_utc(modified_since, tz) if modified_since else None
        )
        if virtual:
            return self._substitute_first(rows)

        result = []
        seen = set()
        for row in rows:
            master_id = row.recurrence_id or row.id
            if master_id in seen:
                continue
            seen.add(master_id)
            master = row if master_id == row.id else self._load(master_id)
            if master is None:
                continue
            if master.recurrence:
                master.exceptions = self.store.children(master_id, exceptions=True)
            result.append(master)
        return result

    def _substitute_first(self, rows: List[Event]) -> List[Event]:
        """
        Leave out masters whose first instance is replaced by an
        exception.  The other masters of series get the instance key of
        their slot.
        """
        ctx = self.orchestrator.context()
        hidden = set()
        for row in rows:
            if not row.is_exception or not row.instance:
                continue
            master = self._load(row.recurrence_id)
            if master is not None and master_instance(master, ctx)[:8] == row.instance[:8]:
                hidden.add(master.id)
        result = []
        for row in rows:
            if row.id in hidden:
                continue
            if row.is_master and row.recurrence:
                row.instance = master_instance(row, ctx)
            result.append(row)
        return result

    ## alarms

    def pending_alarms(self, time: Optional[datetime] = None,
                       calendar_ids: Optional[Iterable[int]] = None) -> List[Event]:
        time = to_utc(time, self.config.timezone) if time is not None else self.now()
        return [
            event
            for event in self.store.pending_alarms(time, calendar_ids)
            if not event.cancelled
        ]

    def dismiss_alarm(self, event_id: int, snooze_seconds: int = 0) -> bool:
        """Snooze an alarm, or switch it off until the event changes"""
        notifyat = None
        if snooze_seconds:
            notifyat = self.now() + timedelta(seconds=snooze_seconds)
        self._cache.pop(event_id, None)
        return self.store.update_event(event_id, {"notifyat": notifyat})

    ## attachments

    def list_attachments(self, event: EventRef) -> List[Attachment]:
        found = self.get_event(event)
        if found is None:
            return []
        return self.store.list_attachments(found.recurrence_id or found.id)

    def get_attachment(self, attachment_id: int, event: EventRef) -> Optional[Attachment]:
        found = self.get_event(event)
        if found is None:
            return None
        return self.store.get_attachment(attachment_id, found.recurrence_id or found.id)

    def get_attachment_body(self, attachment_id: int, event: EventRef) -> Optional[bytes]:
        found = self.get_event(event)
        if found is None:
            return None
        attachment = self.store.get_attachment(
            attachment_id, found.recurrence_id or found.id, with_data=True
        )
        return attachment.data if attachment is not None else None

    ## categories

    def remove_category(self, name: str) -> bool:
        self._cache.clear()
        return self.store.replace_category(name) > 0

    def replace_category(self, name: str, new_name: str) -> bool:
        self._cache.clear()
        return self.store.replace_category(name, new_name) > 0

    ## users

    def user_delete(self) -> None:
        """Remove all data of the user"""
        self.end_request()
        self.store.delete_user()
