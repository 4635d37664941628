"""
Domain objects of the calendar store.

A Source is a CalDAV account, a Calendar is one collection (remote, or
a read-only ICS snapshot), and an Event row is one of:

* a master (recurrence_id == 0), carrying the recurrence rule
* a materialized occurrence of a master (generated, is_exception False)
* an exception of a master (durable, is_exception True)
"""
from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from enum import Enum
from typing import Any
from typing import Dict
from typing import List
from typing import Optional
from typing import Union

FILTER_ACTIVE = 2
FILTER_WRITEABLE = 1


class SaveMode(str, Enum):
    NEW = "new"
    CURRENT = "current"
    FUTURE = "future"
    ALL = "all"


## integer codes are what the store persists
FREE_BUSY_MAP = {"free": 0, "busy": 1, "out-of-office": 2, "outofoffice": 2, "tentative": 3}
SENSITIVITY_MAP = {"public": 0, "private": 1, "confidential": 2}
FREE_BUSY_NAMES = {0: "free", 1: "busy", 2: "outofoffice", 3: "tentative"}
SENSITIVITY_NAMES = {0: "public", 1: "private", 2: "confidential"}


@dataclass
class Attendee:
    email: Optional[str] = None
    name: Optional[str] = None
    role: str = "REQ-PARTICIPANT"
    status: str = "NEEDS-ACTION"
    rsvp: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attendee":
        return cls(
            email=data.get("email"),
            name=data.get("name"),
            role=data.get("role") or "REQ-PARTICIPANT",
            status=data.get("status") or "NEEDS-ACTION",
            rsvp=bool(data.get("rsvp", False)),
        )


@dataclass
class Alarm:
    """
    A VALARM.  The trigger is either relative to the event start (a
    timedelta, usually negative) or an absolute datetime.
    """

    action: str = "DISPLAY"
    trigger: Union[timedelta, datetime] = timedelta(minutes=-15)

    def to_dict(self) -> Dict[str, Any]:
        if isinstance(self.trigger, datetime):
            trigger: Any = "@" + self.trigger.isoformat()
        else:
            trigger = self.trigger.total_seconds()
        return {"action": self.action, "trigger": trigger}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alarm":
        trigger = data.get("trigger", 0)
        if isinstance(trigger, str) and trigger.startswith("@"):
            trigger = datetime.fromisoformat(trigger[1:])
        else:
            trigger = timedelta(seconds=float(trigger))
        return cls(action=data.get("action") or "DISPLAY", trigger=trigger)


@dataclass
class Source:
    id: Optional[int] = None
    user_id: Optional[int] = None
    caldav_url: str = ""
    caldav_user: Optional[str] = None
    caldav_pass: Optional[str] = None


@dataclass
class Calendar:
    id: Optional[int] = None
    user_id: Optional[int] = None
    source_id: Optional[int] = None
    name: str = ""
    color: str = "cc0000"
    showalarms: bool = False
    active: bool = True
    caldav_url: Optional[str] = None
    caldav_tag: Optional[str] = None
    caldav_last_change: Optional[datetime] = None
    is_ical: bool = False
    ## joined in from the source when read from the store
    caldav_user: Optional[str] = None
    caldav_pass: Optional[str] = None

    @property
    def ctag(self) -> Optional[str]:
        return self.caldav_tag

    @property
    def editable(self) -> bool:
        return not self.is_ical


@dataclass
class Attachment:
    id: Optional[int] = None
    event_id: Optional[int] = None
    name: str = ""
    mimetype: str = "application/octet-stream"
    size: int = 0
    data: Optional[bytes] = None


@dataclass
class Event:
    id: Optional[int] = None
    calendar_id: Optional[int] = None
    uid: Optional[str] = None
    recurrence_id: int = 0
    is_exception: bool = False
    instance: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    all_day: bool = False
    recurrence: Optional[Dict[str, Any]] = None
    sequence: int = 0
    title: str = ""
    description: str = ""
    location: str = ""
    categories: List[str] = field(default_factory=list)
    url: str = ""
    free_busy: Optional[str] = "busy"
    priority: int = 0
    sensitivity: Optional[str] = "public"
    status: str = ""
    attendees: List[Attendee] = field(default_factory=list)
    organizer: Optional[Attendee] = None
    alarms: List[Alarm] = field(default_factory=list)
    notifyat: Optional[datetime] = None
    created: Optional[datetime] = None
    changed: Optional[datetime] = None
    caldav_url: Optional[str] = None
    caldav_tag: Optional[str] = None
    ## iTip method when the edit originates from a scheduling message
    method: Optional[str] = None
    ## master calendar id before a move to another calendar
    from_calendar: Optional[int] = None
    attachments: List[Attachment] = field(default_factory=list)
    deleted_attachments: List[int] = field(default_factory=list)
    ## filled in by get_event(full=True) and load_events(virtual=False)
    exceptions: List["Event"] = field(default_factory=list)

    @property
    def is_master(self) -> bool:
        return not self.recurrence_id

    @property
    def is_recurring(self) -> bool:
        return bool(self.recurrence) or bool(self.recurrence_id)

    @property
    def cancelled(self) -> bool:
        return (self.status or "").upper() == "CANCELLED"

    @property
    def instance_ref(self) -> Optional[str]:
        """uid@instance, the external name of one occurrence"""
        if not self.instance:
            return None
        return f"{self.uid}@{self.instance}"

    @property
    def duration(self) -> timedelta:
        if self.start is None or self.end is None:
            return timedelta(0)
        return self.end - self.start

    def copy(self, **changes) -> "Event":
        """A deep enough copy: lists and the rule dict are not shared"""
        new = dataclasses.replace(self, **changes)
        if "recurrence" not in changes and self.recurrence is not None:
            new.recurrence = dict(self.recurrence)
            for key in ("EXDATE", "RDATE"):
                if key in new.recurrence:
                    new.recurrence[key] = list(new.recurrence[key])
        if "attendees" not in changes:
            new.attendees = [dataclasses.replace(a) for a in self.attendees]
        if "alarms" not in changes:
            new.alarms = list(self.alarms)
        if "categories" not in changes:
            new.categories = list(self.categories)
        if "exceptions" not in changes:
            new.exceptions = list(self.exceptions)
        return new
