"""
Shared fixtures: an in-memory store and an in-memory CalDAV server.
"""
from datetime import datetime
from datetime import timezone

import pytest

from calsync.config import SyncConfig
from calsync.lib import error
from calsync.objects import Calendar
from calsync.operations.diff_ops import fake_ctag
from calsync.store import Store
from calsync.sync import CalDAVSync

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)
WORK_URL = "https://dav.example.com/calendars/alice/work/"
HOME_URL = "https://dav.example.com/calendars/alice/home/"


def _dt(name, value):
    if "T" in value:
        return f"{name}:{value}"
    return f"{name};VALUE=DATE:{value}"


def ics(uid, start, end, rrule=None, summary="Event", extra=()):
    """Calendar data of one VEVENT, plus extra raw VEVENT blocks"""
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        "PRODID:-//tests//tests//EN",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        "DTSTAMP:20240101T000000Z",
        _dt("DTSTART", start),
        _dt("DTEND", end),
    ]
    if rrule:
        lines.append(f"RRULE:{rrule}")
    lines += [f"SUMMARY:{summary}", "END:VEVENT"]
    for block in extra:
        lines += block.strip().split("\n")
    lines.append("END:VCALENDAR")
    return "\r\n".join(lines) + "\r\n"


class FakeDAVClient:
    """
    A CalDAV server in a dict, with the interface of
    calsync.davclient.DAVClient.

    conflicts: number of upcoming put/delete calls answered with 412
    fail: every call raises RemoteTransportError
    """

    def __init__(self):
        self.objects = {}
        self.counter = 0
        self.conflicts = 0
        self.fail = False
        self.calls = []

    def _etag(self):
        self.counter += 1
        return f'"etag-{self.counter}"'

    def _check(self, method, href):
        self.calls.append((method, href))
        if self.fail:
            raise error.RemoteTransportError(url=href, reason="connection refused")

    def add(self, href, data):
        """A change made by some other client"""
        self.objects[href] = (data, self._etag())
        return self.objects[href][1]

    def list_collection(self, url):
        self._check("REPORT", url)
        return [
            (href, etag)
            for href, (data, etag) in sorted(self.objects.items())
            if href.startswith(url)
        ]

    def get_ctag(self, url):
        self._check("PROPFIND", url)
        return fake_ctag(
            (href, etag) for href, (data, etag) in self.objects.items() if href.startswith(url)
        )

    def fetch(self, href):
        self._check("GET", href)
        if href not in self.objects:
            raise error.NotFoundError(url=href, reason="object not found")
        return self.objects[href]

    def put(self, href, data, expected_etag=None):
        self._check("PUT", href)
        if self.conflicts:
            self.conflicts -= 1
            raise error.RemoteConflictError(url=href, reason="the object was changed on the server")
        current = self.objects.get(href)
        if (expected_etag is None) != (current is None):
            raise error.RemoteConflictError(url=href, reason="the object was changed on the server")
        if current is not None and current[1] != expected_etag:
            raise error.RemoteConflictError(url=href, reason="the object was changed on the server")
        return self.add(href, data)

    def delete(self, href, etag=None):
        self._check("DELETE", href)
        if self.conflicts:
            self.conflicts -= 1
            raise error.RemoteConflictError(url=href, reason="the object was changed on the server")
        if href not in self.objects:
            return False
        if etag and self.objects[href][1] != etag:
            raise error.RemoteConflictError(url=href, reason="the object was changed on the server")
        del self.objects[href]
        return True


@pytest.fixture
def config():
    return SyncConfig(timezone="UTC")


@pytest.fixture
def store():
    return Store("sqlite://", user_id=1)


@pytest.fixture
def server():
    return FakeDAVClient()


@pytest.fixture
def work(store):
    return store.insert_calendar(Calendar(name="Work", caldav_url=WORK_URL))


@pytest.fixture
def home(store):
    return store.insert_calendar(Calendar(name="Home", caldav_url=HOME_URL))


@pytest.fixture
def client_factory(server):
    return lambda calendar: CalDAVSync(calendar, server, "UTC")


class Clock:
    """A settable clock"""

    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()
