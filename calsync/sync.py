#!/usr/bin/env python
"""
Sync clients: the per-calendar view of a remote source used by the
orchestrator and the push controller.

CalDAVSync talks to a CalDAV collection through a DAVClient.  ICalSync
reads an ICS feed; it has no etags or ctag of its own, so they are
computed from the content, and it is read-only.

Both share the interface

    get_ctag() -> str | None
    is_synced() -> bool
    get_updates(local_events) -> (updates, synced_ids)
    fetch_event(update) -> Event
    create_event(master, exceptions) -> (url, etag)
    update_event(master, exceptions) -> (url, etag)
    remove_event(master) -> bool
"""
import logging
from collections import OrderedDict
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple
from urllib.parse import quote

from calsync.davclient import DAVClient
from calsync.lib import error
from calsync.lib import vcal
from calsync.lib.url import canonical_href
from calsync.objects import Calendar
from calsync.objects import Event
from calsync.operations.calendarobject_ops import events_from_ical
from calsync.operations.calendarobject_ops import generate_url
from calsync.operations.calendarobject_ops import to_ical
from calsync.operations.diff_ops import content_etag
from calsync.operations.diff_ops import diff
from calsync.operations.diff_ops import fake_ctag
from calsync.operations.diff_ops import RemoteUpdate

log = logging.getLogger("calsync")


class BaseSync:
    """Common part of the sync clients"""

    read_only = False

    def __init__(self, calendar: Calendar, client: Any = None, tz: Any = None) -> None:
        self.calendar = calendar
        self.client = client
        self.tz = tz
        ## ctag seen by the last is_synced() call
        self.ctag: Optional[str] = None

    def list(self) -> List[Tuple[str, Optional[str]]]:
        raise NotImplementedError()

    def get_ctag(self) -> Optional[str]:
        raise NotImplementedError()

    def is_synced(self) -> bool:
        """Does the remote ctag equal the stored one?"""
        self.ctag = self.get_ctag()
        return self.ctag is not None and self.ctag == self.calendar.caldav_tag

    def get_updates(self, local_events: Sequence[Event]) -> Tuple[List[RemoteUpdate], List[int]]:
        result = diff(local_events, self.list())
        log.debug(
            f"calendar {self.calendar.id}: {len(result.updates)} remote changes, "
            f"{len(result.synced_ids)} unchanged"
        )
        return result.updates, result.synced_ids

    def fetch_event(self, update: RemoteUpdate) -> Optional[Event]:
        raise NotImplementedError()

    def create_event(self, master: Event, exceptions: Sequence[Event]) -> Tuple[str, Optional[str]]:
        raise error.ValidationError(reason=f"calendar {self.calendar.name} is read-only")

    def update_event(self, master: Event, exceptions: Sequence[Event]) -> Tuple[str, Optional[str]]:
        raise error.ValidationError(reason=f"calendar {self.calendar.name} is read-only")

    def remove_event(self, master: Event) -> bool:
        raise error.ValidationError(reason=f"calendar {self.calendar.name} is read-only")


class CalDAVSync(BaseSync):
    """A CalDAV collection"""

    def list(self) -> List[Tuple[str, Optional[str]]]:
        return self.client.list_collection(self.calendar.caldav_url)

    def get_ctag(self) -> Optional[str]:
        return self.client.get_ctag(self.calendar.caldav_url)

    def fetch_event(self, update: RemoteUpdate) -> Optional[Event]:
        try:
            data, etag = self.client.fetch(update.href)
        except error.NotFoundError:
            log.warning(f"{update.href} vanished during sync")
            return None
        events = events_from_ical(data, self.tz)
        if not events:
            error.weirdness("calendar object without VEVENT", update.href)
            return None
        if len(events) > 1:
            error.weirdness("calendar object with more than one series", update.href)
        event = events[0]
        event.caldav_url = update.href
        event.caldav_tag = etag or update.etag
        return event

    def create_event(self, master: Event, exceptions: Sequence[Event]) -> Tuple[str, Optional[str]]:
        url = generate_url(self.calendar.caldav_url, master.uid)
        etag = self.client.put(url, to_ical(master, exceptions, self.tz))
        return url, etag

    def update_event(self, master: Event, exceptions: Sequence[Event]) -> Tuple[str, Optional[str]]:
        if not master.caldav_url:
            return self.create_event(master, exceptions)
        etag = self.client.put(
            master.caldav_url, to_ical(master, exceptions, self.tz), master.caldav_tag
        )
        return master.caldav_url, etag

    def remove_event(self, master: Event) -> bool:
        if not master.caldav_url:
            return True
        return self.client.delete(master.caldav_url, master.caldav_tag)


class ICalSync(BaseSync):
    """
    An ICS feed.  Every uid in the feed is one item, its href is the
    feed url with the quoted uid appended.  The feed is downloaded once
    per client instance.
    """

    read_only = True

    def __init__(self, calendar: Calendar, client: Any = None, tz: Any = None) -> None:
        super().__init__(calendar, client, tz)
        self._feed: Optional[Dict[str, Tuple[Event, str]]] = None

    def _href(self, uid: str) -> str:
        return self.calendar.caldav_url.rstrip("/") + "/" + quote(uid, safe="")

    def _load(self) -> Dict[str, Tuple[Event, str]]:
        if self._feed is not None:
            return self._feed
        data, _ = self.client.fetch(self.calendar.caldav_url)
        components: Dict[str, List[bytes]] = OrderedDict()
        for component in vcal.parse(data).walk("VEVENT"):
            uid = str(component.get("UID", ""))
            components.setdefault(uid, []).append(component.to_ical())
        feed = OrderedDict()
        for event in events_from_ical(data, self.tz):
            href = self._href(event.uid)
            etag = content_etag(b"".join(components.get(event.uid, [])))
            event.caldav_url = href
            event.caldav_tag = etag
            feed[canonical_href(href)] = (event, etag)
        self._feed = feed
        return feed

    def list(self) -> List[Tuple[str, Optional[str]]]:
        return [(event.caldav_url, etag) for event, etag in self._load().values()]

    def get_ctag(self) -> Optional[str]:
        return fake_ctag(self.list())

    def fetch_event(self, update: RemoteUpdate) -> Optional[Event]:
        item = self._load().get(canonical_href(update.href))
        return item[0] if item else None


def get_sync_client(calendar: Calendar, config: Any = None, client: Any = None) -> BaseSync:
    """The sync client for a calendar, chosen by its is_ical flag"""
    tz = getattr(config, "timezone", None)
    if client is None:
        client = DAVClient(
            calendar.caldav_url,
            username=calendar.caldav_user,
            password=calendar.caldav_pass,
            timeout=getattr(config, "timeout", None),
            ssl_verify_cert=getattr(config, "ssl_verify_cert", True),
        )
    if calendar.is_ical:
        return ICalSync(calendar, client, tz)
    return CalDAVSync(calendar, client, tz)
