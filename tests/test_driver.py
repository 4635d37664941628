"""
Tests for the CalendarDriver, the surface a calendar application uses.
"""
import logging
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from calsync.config import SyncConfig
from calsync.driver import CalendarDriver
from calsync.lib import error
from calsync.objects import Alarm
from calsync.objects import Attachment
from calsync.objects import Calendar
from calsync.objects import Event
from calsync.objects import FILTER_WRITEABLE
from calsync.objects import Source
from calsync.operations.calendarobject_ops import generate_url
from calsync.protocol import CalendarInfo
from calsync.sync import get_sync_client

from conftest import ics
from conftest import WORK_URL

utc = timezone.utc
START = datetime(2024, 1, 8, 9, tzinfo=utc)
FEED_URL = "https://www.example.com/holidays.ics"


class FakeAccount:
    """Stands in for the DAVClient of a source"""

    def __init__(self, calendars=(), fail=False):
        self.calendars = list(calendars)
        self.fail = fail
        self.sources = []
        self.made = []
        self.props = []
        self.deleted = []

    def __call__(self, source):
        self.sources.append(source)
        return self

    def _check(self, url):
        if self.fail:
            raise error.RemoteTransportError(url=url, reason="connection refused")

    def discover_calendars(self, url=None):
        self._check(url)
        return list(self.calendars)

    def make_calendar(self, url, name, color=None):
        self._check(url)
        self.made.append((url, name, color))
        return url

    def set_calendar_properties(self, url, name=None, color=None):
        self._check(url)
        self.props.append((url, name, color))
        return True

    def delete_calendar(self, url):
        self._check(url)
        self.deleted.append(url)
        return True


@pytest.fixture
def account():
    return FakeAccount([CalendarInfo(href=WORK_URL, name="Work", color="00ff00")])


@pytest.fixture
def driver(store, config, client_factory, clock, account):
    return CalendarDriver(
        store, 1, config, client_factory=client_factory, dav_client_factory=account, clock=clock
    )


def standup(calendar_id, **changes):
    fields = dict(
        calendar_id=calendar_id,
        uid="E1",
        start=START,
        end=START + timedelta(hours=1),
        recurrence={"FREQ": "WEEKLY", "COUNT": 5},
        title="Standup",
    )
    fields.update(changes)
    return Event(**fields)


class TestSeries:
    def test_expansion(self, driver, work):
        master_id = driver.new_event(standup(work))
        assert master_id
        events = driver.load_events(START - timedelta(days=7), START + timedelta(days=60))
        assert [e.instance_ref for e in events] == [
            "E1@20240108T090000",
            "E1@20240115T090000",
            "E1@20240122T090000",
            "E1@20240129T090000",
            "E1@20240205T090000",
        ]
        assert {e.duration for e in events} == {timedelta(hours=1)}
        assert events[0].id == master_id

    def test_edit_current(self, driver, store, server, work):
        master_id = driver.new_event(standup(work))
        occurrence = driver.get_event("E1@20240122T090000")

        def others():
            return {
                e.id: (e.start, e.title)
                for e in store.series_rows(master_id)
                if e.id != occurrence.id
            }

        before = others()
        assert len(before) == 4
        event_id = driver.edit_event(occurrence.copy(title="Changed"), "current")
        assert event_id == occurrence.id
        (exception,) = store.children(master_id, exceptions=True)
        assert exception.instance == "20240122T090000"
        assert exception.title == "Changed"
        assert others() == before
        assert "RECURRENCE-ID:20240122T090000Z" in server.objects[WORK_URL + "E1.ics"][0]

    def test_edit_future(self, driver, store, server, work):
        master_id = driver.new_event(standup(work))
        occurrence = driver.get_event("E1@20240122T090000")
        new_id = driver.edit_event(occurrence.copy(title="Later"), "future")

        assert [e.start for e in store.series_rows(master_id)] == [START, START + timedelta(weeks=1)]
        master = driver.get_event(master_id)
        assert "COUNT" not in master.recurrence
        assert master.recurrence["UNTIL"] < START + timedelta(weeks=2)

        new = driver.get_event(new_id)
        assert new.uid != "E1"
        assert new.title == "Later"
        assert new.recurrence["COUNT"] == 3
        assert [e.start for e in store.series_rows(new_id)] == [
            START + timedelta(weeks=2),
            START + timedelta(weeks=3),
            START + timedelta(weeks=4),
        ]
        assert new.caldav_url == generate_url(WORK_URL, new.uid)
        assert new.caldav_url in server.objects

    def test_edit_future_keeps_the_occurrences_after_an_exdate(self, driver, store, work):
        weekly = {"FREQ": "WEEKLY", "COUNT": 5, "EXDATE": [START + timedelta(weeks=3)]}
        master_id = driver.new_event(standup(work, recurrence=weekly))
        occurrence = driver.get_event("E1@20240122T090000")
        new_id = driver.edit_event(occurrence.copy(title="Later"), "future")

        starts = [e.start for e in store.series_rows(master_id) + store.series_rows(new_id)]
        assert sorted(starts) == [
            START,
            START + timedelta(weeks=1),
            START + timedelta(weeks=2),
            START + timedelta(weeks=4),
        ]

    def test_not_virtual(self, driver, store, work):
        master_id = driver.new_event(standup(work))
        driver.edit_event(driver.get_event("E1@20240122T090000").copy(title="Changed"), "current")
        (master,) = driver.load_events(START, START + timedelta(days=60), virtual=False)
        assert master.id == master_id
        assert [e.title for e in master.exceptions] == ["Changed"]

    def test_remove(self, driver, server, work):
        master_id = driver.new_event(standup(work))
        assert driver.remove_event(master_id, "all")
        assert driver.get_event(master_id) is None
        assert WORK_URL + "E1.ics" not in server.objects


class TestGetEvent:
    def test_refs(self, driver, work):
        master_id = driver.new_event(standup(work))
        occurrence = driver.get_event("E1@20240115T090000")
        assert occurrence.recurrence_id == master_id
        assert driver.get_event(master_id).id == master_id
        assert driver.get_event(str(master_id)).id == master_id
        assert driver.get_event("E1").id == master_id
        assert driver.get_event({"uid": "E1", "instance": "20240115T090000"}).id == occurrence.id
        assert driver.get_event(occurrence).id == occurrence.id
        assert driver.get_event("E1@20240115T090000", scope="master").id == master_id
        assert driver.get_event("nope") is None
        assert driver.get_event("E1@20240116T090000") is None

    def test_first_instance_is_the_master(self, driver, work):
        master_id = driver.new_event(standup(work))
        assert driver.get_event("E1@20240108T090000").id == master_id

    def test_uid_with_at_sign(self, driver, work):
        event_id = driver.new_event(standup(work, uid="abc@example.com", recurrence=None))
        assert driver.get_event("abc@example.com").id == event_id

    def test_full(self, driver, work):
        master_id = driver.new_event(
            standup(work, attachments=[Attachment(name="notes.txt", mimetype="text/plain", data=b"hi")])
        )
        driver.edit_event(driver.get_event("E1@20240122T090000").copy(title="Changed"), "current")
        master = driver.get_event(master_id, full=True)
        assert [e.instance for e in master.exceptions] == ["20240122T090000"]
        assert [a.name for a in master.attachments] == ["notes.txt"]


class TestEdit:
    def test_naive_times_are_server_time(self, store, client_factory, clock, work):
        driver = CalendarDriver(
            store, 1, SyncConfig(timezone="Europe/Berlin"), client_factory=client_factory, clock=clock
        )
        event_id = driver.new_event(
            Event(calendar_id=work, start=datetime(2024, 1, 8, 9), end=datetime(2024, 1, 8, 10))
        )
        assert driver.get_event(event_id).start == START - timedelta(hours=1)

    def test_debug_leaves_the_calsync_logger_alone(self, store, client_factory, clock):
        logger = logging.getLogger("calsync")
        level, mode = logger.level, error.debugmode
        driver = CalendarDriver(
            store, 1, SyncConfig(debug=True), client_factory=client_factory, clock=clock
        )
        assert driver.orchestrator.log_level == logging.WARNING
        assert logger.level == level
        assert error.debugmode == mode

    def test_move(self, driver, server, work):
        event_id = driver.new_event(standup(work, recurrence=None))
        assert driver.move_event(
            Event(id=event_id, start=START + timedelta(hours=1), end=START + timedelta(hours=2))
        ) == event_id
        assert driver.get_event(event_id).start == START + timedelta(hours=1)
        assert "DTSTART:20240108T100000Z" in server.objects[WORK_URL + "E1.ics"][0]

    def test_failure_sets_last_error(self, driver, server, work):
        event_id = driver.new_event(standup(work, recurrence=None))
        server.fail = True
        assert driver.edit_event(driver.get_event(event_id).copy(title="Changed")) is False
        assert "could not save" in driver.last_error
        assert driver.get_event(event_id).title == "Standup"

        server.fail = False
        assert driver.edit_event(driver.get_event(event_id).copy(title="Changed")) == event_id
        assert driver.last_error is None

    def test_invalid_event(self, driver, work):
        with pytest.raises(error.ValidationError):
            driver.new_event(Event(calendar_id=work, start=START, end=START - timedelta(hours=1)))

    def test_query(self, driver, work):
        driver.new_event(standup(work, recurrence=None))
        driver.new_event(standup(work, uid="E2", recurrence=None, title="Lunch"))
        assert [e.uid for e in driver.load_events(query="lunch")] == ["E2"]


class TestAlarms:
    def test_pending_and_dismiss(self, driver, store, work):
        store.update_calendar(work, {"showalarms": True})
        event_id = driver.new_event(
            standup(work, recurrence=None, alarms=[Alarm("DISPLAY", timedelta(minutes=-15))])
        )
        assert driver.get_event(event_id).notifyat == START - timedelta(minutes=15)
        assert [e.id for e in driver.pending_alarms(START - timedelta(minutes=10))] == [event_id]

        assert driver.dismiss_alarm(event_id)
        assert driver.pending_alarms(START - timedelta(minutes=10)) == []

    def test_snooze(self, driver, store, work, clock):
        store.update_calendar(work, {"showalarms": True})
        event_id = driver.new_event(
            standup(work, recurrence=None, alarms=[Alarm("DISPLAY", timedelta(minutes=-15))])
        )
        assert driver.dismiss_alarm(event_id, 300)
        assert driver.get_event(event_id).notifyat == clock.now + timedelta(seconds=300)

    def test_cancelled_events_do_not_alarm(self, driver, store, work):
        store.update_calendar(work, {"showalarms": True})
        driver.new_event(
            standup(work, recurrence=None, status="CANCELLED", alarms=[Alarm("DISPLAY", timedelta(minutes=-15))])
        )
        assert driver.pending_alarms(START - timedelta(minutes=10)) == []


class TestAttachments:
    def test_attachments_belong_to_the_master(self, driver, work):
        master_id = driver.new_event(
            standup(work, attachments=[Attachment(name="notes.txt", mimetype="text/plain", data=b"hello")])
        )
        (attachment,) = driver.list_attachments("E1@20240122T090000")
        assert attachment.event_id == master_id
        assert driver.get_attachment(attachment.id, master_id).name == "notes.txt"
        assert driver.get_attachment_body(attachment.id, "E1@20240115T090000") == b"hello"

    def test_delete(self, driver, work):
        event_id = driver.new_event(
            standup(work, recurrence=None, attachments=[Attachment(name="notes.txt", data=b"hello")])
        )
        event = driver.get_event(event_id, full=True)
        (attachment,) = event.attachments
        driver.edit_event(event.copy(deleted_attachments=[attachment.id]))
        assert driver.list_attachments(event_id) == []


class TestCategories:
    def test_replace_and_remove(self, driver, work):
        event_id = driver.new_event(standup(work, recurrence=None, categories=["work", "review"]))
        assert driver.replace_category("work", "job")
        assert driver.get_event(event_id).categories == ["job", "review"]
        assert driver.remove_category("review")
        assert driver.get_event(event_id).categories == ["job"]
        assert not driver.remove_category("nothing")


class TestSources:
    def test_preinstalled(self, store, client_factory, clock, account):
        config = SyncConfig(
            timezone="UTC",
            preinstalled_sources=[
                {"caldav_url": "https://dav.example.com/%u/", "caldav_user": "%u", "caldav_pass": "%p"}
            ],
        )
        CalendarDriver(
            store, 1, config, "alice", "secret", client_factory, account, clock
        )
        (source,) = store.list_sources()
        assert source.caldav_url == "https://dav.example.com/alice/"
        assert (source.caldav_user, source.caldav_pass) == ("alice", "secret")
        (calendar,) = store.list_calendars()
        assert (calendar.name, calendar.color, calendar.caldav_url) == ("Work", "00ff00", WORK_URL)
        assert calendar.caldav_user == "alice"

        ## a second request does not add it again
        CalendarDriver(store, 1, config, "alice", "secret", client_factory, account, clock)
        assert len(store.list_sources()) == 1

    def test_unreachable_source(self, store, driver):
        driver.dav_client_factory = FakeAccount(fail=True)
        assert driver.create_source(Source(caldav_url="https://dav.example.com/")) is None
        assert "could not find" in driver.last_error
        assert store.list_sources() == []

    def test_source_without_url(self, driver):
        with pytest.raises(error.ValidationError):
            driver.create_source(Source())

    def test_delete_source(self, store, driver):
        source_id = driver.create_source(Source(caldav_url="https://dav.example.com/"))
        assert len(driver.list_calendars()) == 1
        assert driver.delete_source(source_id)
        assert driver.list_calendars() == []


class TestCalendars:
    @pytest.fixture
    def source_id(self, store):
        return store.insert_source(Source(caldav_url="https://dav.example.com/calendars/alice/"))

    def test_make_calendar(self, store, driver, account, source_id):
        calendar_id = driver.create_calendar(Calendar(name="New", source_id=source_id, color="#00FF00"))
        calendar = store.get_calendar(calendar_id)
        assert calendar.caldav_url.startswith("https://dav.example.com/calendars/alice/")
        assert calendar.caldav_url.endswith("/")
        assert calendar.color == "00ff00"
        assert account.made == [(calendar.caldav_url, "New", "00ff00")]

    def test_make_calendar_failure(self, store, driver, account, source_id):
        account.fail = True
        assert driver.create_calendar(Calendar(name="New", source_id=source_id)) is None
        assert "could not create" in driver.last_error

    def test_calendar_without_source(self, driver):
        with pytest.raises(error.ValidationError):
            driver.create_calendar(Calendar(name="New"))

    def test_ics_subscription(self, store, config, server, clock):
        server.add(FEED_URL, ics("H1", "20240101", "20240102", summary="New Year"))
        driver = CalendarDriver(
            store, 1, config, client_factory=lambda c: get_sync_client(c, config, server), clock=clock
        )
        calendar_id = driver.create_calendar(Calendar(name="Holidays", caldav_url=FEED_URL, is_ical=True))
        assert driver.get_event("H1").calendar_id == calendar_id
        assert [c.id for c in driver.list_calendars(FILTER_WRITEABLE)] == []
        with pytest.raises(error.ValidationError):
            driver.new_event(Event(calendar_id=calendar_id, start=START, end=START))

    def test_edit(self, store, driver, account, source_id):
        calendar_id = store.insert_calendar(
            Calendar(name="Work", source_id=source_id, caldav_url=WORK_URL)
        )
        assert driver.edit_calendar(Calendar(id=calendar_id, name="Renamed", color="ff0000", showalarms=True))
        calendar = store.get_calendar(calendar_id)
        assert (calendar.name, calendar.color, calendar.showalarms) == ("Renamed", "ff0000", True)
        assert account.props == [(WORK_URL, "Renamed", "ff0000")]

        account.fail = True
        assert not driver.edit_calendar(Calendar(id=calendar_id, name="Again"))
        assert store.get_calendar(calendar_id).name == "Renamed"

    def test_delete(self, store, driver, account, source_id):
        calendar_id = store.insert_calendar(
            Calendar(name="Work", source_id=source_id, caldav_url=WORK_URL)
        )
        assert driver.delete_calendar(calendar_id)
        assert account.deleted == [WORK_URL]
        assert store.get_calendar(calendar_id) is None

    def test_subscribe(self, store, driver, work):
        assert driver.subscribe_calendar(work, False)
        assert not store.get_calendar(work).active


class TestUsers:
    def test_user_delete(self, driver, store, work):
        driver.new_event(standup(work))
        driver.user_delete()
        assert store.list_calendars() == []
        assert driver.load_events() == []
