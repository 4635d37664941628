"""
Tests for the edit scope operations module.

The planners get the stored rows of a series and return a MutationPlan;
these tests look at the plans only, nothing is executed.
"""
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from calsync.lib import error
from calsync.objects import Attendee
from calsync.objects import Event
from calsync.operations.base import PlanRef
from calsync.operations.savemode_ops import check_scheduling
from calsync.operations.savemode_ops import is_rescheduled
from calsync.operations.savemode_ops import PlanContext
from calsync.operations.savemode_ops import plan_create
from calsync.operations.savemode_ops import plan_edit
from calsync.operations.savemode_ops import plan_overwrite
from calsync.operations.savemode_ops import plan_remove
from calsync.operations.savemode_ops import SeriesState

utc = timezone.utc
START = datetime(2024, 1, 8, 9, tzinfo=utc)
ctx = PlanContext(tz="UTC", now=datetime(2024, 1, 1, tzinfo=utc))


def master(**changes):
    event = Event(
        id=1,
        calendar_id=1,
        uid="E1",
        start=START,
        end=START + timedelta(hours=1),
        recurrence={"FREQ": "WEEKLY", "COUNT": 5},
        title="Standup",
        caldav_url="https://dav.example.com/cal/E1.ics",
        caldav_tag='"1"',
    )
    return event.copy(**changes)


def occurrence(n, **changes):
    """The n-th slot (0 is the master's own) as a generated row"""
    start = START + timedelta(weeks=n)
    row = master().copy(
        id=n + 1,
        recurrence_id=1,
        instance=start.strftime("%Y%m%dT%H%M%S"),
        start=start,
        end=start + timedelta(hours=1),
    )
    return row.copy(**changes)


def mutations(plan, op):
    return [m for m in plan.mutations if m.op == op]


class TestPlanCreate:
    def test_single_event(self):
        plan = plan_create(Event(calendar_id=1, start=START, end=START, title="Lunch"))
        (create,) = plan.mutations
        assert create.op == "create"
        assert create.fields["uid"]
        assert create.fields["recurrence_id"] == 0
        assert plan.result == PlanRef("master")
        assert plan.touched == [PlanRef("master")]

    def test_recurring_event_is_expanded(self):
        plan = plan_create(master(id=None, uid=None))
        assert [m.op for m in plan.mutations] == ["create", "regenerate"]

    def test_without_push(self):
        assert plan_create(master(id=None), push=False).touched == []

    def test_end_defaults_to_start(self):
        plan = plan_create(Event(calendar_id=1, start=START, title="Reminder"))
        assert plan.mutations[0].fields["end"] == START

    def test_comes_with_exceptions(self):
        exception = occurrence(2, id=None, is_exception=True, title="Moved")
        plan = plan_create(master(id=None, exceptions=[exception, exception]))
        created = mutations(plan, "create")
        assert len(created) == 2
        assert created[1].fields["recurrence_id"] == PlanRef("master")
        assert created[1].fields["instance"] == "20240122T090000"

    def test_without_calendar(self):
        with pytest.raises(error.ValidationError):
            plan_create(Event(start=START, end=START))

    def test_ends_before_start(self):
        with pytest.raises(error.ValidationError):
            plan_create(Event(calendar_id=1, start=START, end=START - timedelta(hours=1)))


class TestPlanOverwrite:
    def test_replaces_exceptions(self):
        old_exception = occurrence(1, id=10, is_exception=True)
        remote = master(id=None, title="Renamed", caldav_tag='"2"')
        plan = plan_overwrite(master(), [old_exception], remote)
        assert [m.op for m in plan.mutations] == ["update", "purge", "delete", "regenerate"]
        assert plan.mutations[0].fields["title"] == "Renamed"
        assert plan.mutations[0].fields["caldav_tag"] == '"2"'
        assert plan.mutations[2].target == 10
        assert plan.touched == []


class TestPlanEditCurrent:
    def test_occurrence_becomes_exception(self):
        target = occurrence(2)
        submitted = target.copy(title="Moved", start=target.start + timedelta(hours=2),
                                end=target.end + timedelta(hours=2))
        plan = plan_edit(SeriesState(target, master()), submitted, "current", ctx)
        (update,) = plan.mutations
        assert update.op == "update"
        assert update.target == target.id
        assert update.fields["is_exception"] is True
        assert update.fields["recurrence"] is None
        assert update.fields["title"] == "Moved"
        assert update.fields["sequence"] == 1
        assert plan.result == target.id
        assert plan.touched == [1]

    def test_first_instance_gets_new_exception(self):
        submitted = master(title="Special")
        plan = plan_edit(SeriesState(master(), master()), submitted, "current", ctx)
        (create,) = plan.mutations
        assert create.op == "create"
        assert create.fields["recurrence_id"] == 1
        assert create.fields["instance"] == "20240108T090000"
        assert plan.result == PlanRef("exception")

    def test_first_instance_with_existing_exception(self):
        existing = occurrence(0, id=20, is_exception=True)
        state = SeriesState(master(), master(), [existing])
        plan = plan_edit(state, master(title="Again"), "current", ctx)
        (update,) = plan.mutations
        assert update.target == 20
        assert plan.result == 20

    def test_moving_one_occurrence_to_other_calendar(self):
        target = occurrence(2)
        with pytest.raises(error.ValidationError):
            plan_edit(SeriesState(target, master()), target.copy(calendar_id=2), "current", ctx)


class TestPlanEditFuture:
    def test_splits_the_series(self):
        target = occurrence(2)
        submitted = target.copy(title="Later")
        plan = plan_edit(SeriesState(target, master()), submitted, "future", ctx)

        create = plan.mutations[0]
        assert create.op == "create"
        assert create.fields["uid"] != "E1"
        assert create.fields["start"] == target.start
        assert create.fields["recurrence"] == {"FREQ": "WEEKLY", "COUNT": 3}
        assert create.fields["caldav_url"] is None

        (update,) = [m for m in mutations(plan, "update") if m.target == 1]
        assert update.regenerate
        assert update.fields["recurrence"] == {
            "FREQ": "WEEKLY",
            "UNTIL": datetime(2024, 1, 21, 9, tzinfo=utc),
        }
        assert plan.touched == [1, PlanRef("future")]
        assert plan.result == PlanRef("future")

    def test_exdates_after_the_split_are_not_counted_twice(self):
        exdate = START + timedelta(weeks=3)
        stored = master(recurrence={"FREQ": "WEEKLY", "COUNT": 5, "EXDATE": [exdate]})
        target = occurrence(2, recurrence=stored.recurrence)
        plan = plan_edit(SeriesState(target, stored), target.copy(title="Later"), "future", ctx)

        create = plan.mutations[0]
        assert create.fields["recurrence"] == {"FREQ": "WEEKLY", "COUNT": 3, "EXDATE": [exdate]}
        split = Event(start=create.fields["start"], end=create.fields["end"], recurrence=create.fields["recurrence"])
        assert [o.start for o in ctx.expand(split)] == [target.start, START + timedelta(weeks=4)]
        (update,) = [m for m in mutations(plan, "update") if m.target == 1]
        assert "EXDATE" not in update.fields["recurrence"]

    def test_later_exceptions_move_along(self):
        target = occurrence(2)
        earlier = occurrence(1, id=30, is_exception=True)
        later = occurrence(3, id=31, is_exception=True)
        submitted = target.copy(start=target.start + timedelta(days=1), end=target.end + timedelta(days=1))
        state = SeriesState(target, master(), [earlier, later])
        plan = plan_edit(state, submitted, "future", ctx)
        moved = [m for m in mutations(plan, "update") if m.target == 31]
        assert moved[0].fields["recurrence_id"] == PlanRef("future")
        assert moved[0].fields["instance"] == "20240130T090000"
        assert not [m for m in plan.mutations if m.target == 30]

    def test_edited_exception_is_replaced(self):
        target = occurrence(2, is_exception=True)
        plan = plan_edit(SeriesState(target, master(), [target]), target.copy(), "future", ctx)
        assert [m.target for m in mutations(plan, "delete")] == [target.id]

    def test_first_instance_edits_the_whole_series(self):
        submitted = master(title="Renamed")
        state = SeriesState(master(), master())
        assert plan_edit(state, submitted, "future", ctx) == plan_edit(state, submitted, "all", ctx)


class TestPlanEditAll:
    def test_content_change_keeps_times(self):
        target = occurrence(2)
        plan = plan_edit(SeriesState(target, master()), target.copy(title="Renamed"), "all", ctx)
        update = plan.mutations[0]
        assert update.target == 1
        assert update.fields["title"] == "Renamed"
        assert update.fields["start"] == START
        assert update.fields["sequence"] == 0
        assert [m.op for m in plan.mutations] == ["update", "purge", "regenerate"]

    def test_shift_moves_the_series_and_weekday(self):
        target = occurrence(2)
        rule = {"FREQ": "WEEKLY", "COUNT": 5, "BYDAY": "MO"}
        submitted = target.copy(
            start=target.start + timedelta(days=1),
            end=target.end + timedelta(days=1),
            recurrence=rule,
        )
        exception = occurrence(3, id=40, is_exception=True)
        plan = plan_edit(SeriesState(target, master(), [exception]), submitted, "all", ctx)
        update = plan.mutations[0]
        assert update.fields["start"] == START + timedelta(days=1)
        assert update.fields["recurrence"]["BYDAY"] == "TU"
        assert update.fields["sequence"] == 1
        (rekey,) = [m for m in plan.mutations if m.target == 40]
        assert rekey.fields["instance"] == "20240130T090000"

    def test_time_of_day_change(self):
        target = occurrence(2)
        submitted = target.copy(start=target.start + timedelta(hours=1), end=target.end + timedelta(hours=1))
        plan = plan_edit(SeriesState(target, master()), submitted, "all", ctx)
        assert plan.mutations[0].fields["start"] == START + timedelta(hours=1)
        assert plan.mutations[0].fields["end"] == START + timedelta(hours=2)

    def test_saved_exdates_survive(self):
        exdate = datetime(2024, 1, 15, 9, tzinfo=utc)
        stored = master(recurrence={"FREQ": "WEEKLY", "COUNT": 5, "EXDATE": [exdate]})
        submitted = stored.copy(recurrence={"FREQ": "WEEKLY", "COUNT": 6})
        plan = plan_edit(SeriesState(stored, stored), submitted, "all", ctx)
        assert plan.mutations[0].fields["recurrence"]["EXDATE"] == [exdate]

    def test_move_to_other_calendar(self):
        exception = occurrence(1, id=50, is_exception=True)
        plan = plan_edit(SeriesState(master(), master(), [exception]), master(calendar_id=2), "all", ctx)
        assert plan.mutations[0].fields["calendar_id"] == 2
        (moved,) = [m for m in plan.mutations if m.target == 50]
        assert moved.fields == {"calendar_id": 2}

    def test_single_event(self):
        single = master(recurrence=None)
        plan = plan_edit(SeriesState(single, single), single.copy(location="Room 2"), "current", ctx)
        (update,) = plan.mutations
        assert update.target == 1
        assert update.fields["location"] == "Room 2"
        assert update.fields["sequence"] == 1


class TestPlanEditNew:
    def test_saved_as_separate_event(self):
        target = occurrence(2)
        plan = plan_edit(SeriesState(target, master()), target.copy(title="Copy"), "new", ctx)
        create = plan.mutations[0]
        assert create.op == "create"
        assert create.fields["uid"] != "E1"
        assert create.fields["recurrence"] is None
        assert create.fields["caldav_url"] is None
        assert not mutations(plan, "regenerate")


class TestPlanEditValidation:
    def test_unknown_savemode(self):
        with pytest.raises(error.ValidationError):
            plan_edit(SeriesState(master(), master()), master(), "sometimes", ctx)

    def test_default_savemode_is_all(self):
        state = SeriesState(master(), master())
        assert plan_edit(state, master(title="x"), None, ctx) == plan_edit(state, master(title="x"), "all", ctx)

    def test_without_start(self):
        with pytest.raises(error.ValidationError):
            plan_edit(SeriesState(master(), master()), master(start=None), "all", ctx)


class TestPlanRemove:
    def test_all(self):
        plan = plan_remove(SeriesState(occurrence(2), master()), "all", ctx)
        (delete,) = plan.mutations
        assert delete.op == "delete" and delete.cascade
        assert plan.removed == [1]

    def test_current_occurrence(self):
        target = occurrence(2)
        plan = plan_remove(SeriesState(target, master()), "current", ctx)
        assert [m.op for m in plan.mutations] == ["delete", "update"]
        assert plan.mutations[0].target == target.id
        assert plan.mutations[1].fields["recurrence"]["EXDATE"] == [target.start]
        assert plan.touched == [1]

    def test_current_first_instance_moves_master_on(self):
        plan = plan_remove(SeriesState(master(), master()), "current", ctx)
        (update,) = plan.mutations
        assert update.fields["start"] == START + timedelta(weeks=1)
        assert update.fields["recurrence"]["COUNT"] == 4
        assert update.regenerate

    def test_future(self):
        later = occurrence(3, id=60, is_exception=True)
        plan = plan_remove(SeriesState(occurrence(2), master(), [later]), "future", ctx)
        assert [m.target for m in mutations(plan, "delete")] == [60]
        (update,) = mutations(plan, "update")
        assert update.fields["recurrence"]["UNTIL"] == datetime(2024, 1, 21, 9, tzinfo=utc)

    def test_future_from_first_instance(self):
        plan = plan_remove(SeriesState(master(), master()), "future", ctx)
        assert plan.removed == [1]

    def test_single_event(self):
        single = master(recurrence=None)
        assert plan_remove(SeriesState(single, single), "current", ctx).removed == [1]

    def test_new_does_not_apply(self):
        with pytest.raises(error.ValidationError):
            plan_remove(SeriesState(master(), master()), "new", ctx)


class TestCheckScheduling:
    def test_time_change_increments_sequence(self):
        old = master(sequence=3)
        new = check_scheduling(old, old.copy(start=START + timedelta(hours=1)))
        assert new.sequence == 4

    def test_content_change_keeps_sequence(self):
        old = master(sequence=3)
        assert check_scheduling(old, old.copy(title="Other")).sequence == 3

    def test_location_change_is_reschedule(self):
        assert is_rescheduled(master(), master(location="Room 1"))

    def test_shortened_series_is_no_reschedule(self):
        old = master()
        assert not is_rescheduled(old, old.copy(recurrence={"FREQ": "WEEKLY", "COUNT": 3}))
        assert is_rescheduled(old, old.copy(recurrence={"FREQ": "WEEKLY", "COUNT": 7}))

    def test_interval_one_is_default(self):
        old = master()
        assert not is_rescheduled(old, old.copy(recurrence={"FREQ": "WEEKLY", "COUNT": 5, "INTERVAL": 1}))

    def test_organizer_resets_attendee_status(self):
        attendees = [
            Attendee(email="me@example.com", role="ORGANIZER", status="ACCEPTED"),
            Attendee(email="bob@example.com", status="ACCEPTED"),
            Attendee(email="eve@example.com", status="DELEGATED"),
        ]
        old = master(attendees=attendees)
        new = check_scheduling(old, old.copy(start=START + timedelta(days=1)), ["Me@Example.com"])
        assert [a.status for a in new.attendees] == ["ACCEPTED", "NEEDS-ACTION", "DELEGATED"]
        assert new.attendees[1].rsvp
        ## the submitted event is left alone
        assert attendees[1].status == "ACCEPTED"

    def test_attendee_keeps_status(self):
        old = master(attendees=[Attendee(email="bob@example.com", status="ACCEPTED")])
        new = check_scheduling(old, old.copy(start=START + timedelta(days=1)), ["me@example.com"])
        assert new.attendees[0].status == "ACCEPTED"

    def test_scheduling_message_keeps_sequence(self):
        old = master(sequence=2)
        new = check_scheduling(old, old.copy(start=START + timedelta(days=1), method="REQUEST", sequence=1))
        assert new.sequence == 2
