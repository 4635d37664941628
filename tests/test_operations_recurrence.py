"""
Tests for the recurrence operations module.

These tests verify expansion of masters into occurrence slots and the
rule string format, without any store or network I/O.
"""
from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest

from calsync.lib import error
from calsync.objects import Event
from calsync.operations.recurrence_ops import count_slots_from
from calsync.operations.recurrence_ops import exceptions_after
from calsync.operations.recurrence_ops import expand
from calsync.operations.recurrence_ops import format_rule
from calsync.operations.recurrence_ops import instance_key
from calsync.operations.recurrence_ops import parse_instance
from calsync.operations.recurrence_ops import parse_rule
from calsync.operations.recurrence_ops import series_end
from calsync.operations.recurrence_ops import shift_instance

utc = timezone.utc
NOW = datetime(2024, 1, 1, tzinfo=utc)


def weekly(**rule):
    start = datetime(2024, 1, 8, 9, tzinfo=utc)
    return Event(
        id=1,
        uid="E1",
        start=start,
        end=start + timedelta(hours=1),
        recurrence=dict({"FREQ": "WEEKLY"}, **rule),
    )


class TestExpand:
    def test_weekly_count(self):
        """Five weekly slots, the first one is the master's own start"""
        slots = expand(weekly(COUNT=5), now=NOW)
        assert [s.instance for s in slots] == [
            "20240108T090000",
            "20240115T090000",
            "20240122T090000",
            "20240129T090000",
            "20240205T090000",
        ]
        assert slots[0].start == datetime(2024, 1, 8, 9, tzinfo=utc)
        assert all(s.end - s.start == timedelta(hours=1) for s in slots)

    def test_expansion_is_repeatable(self):
        master = weekly(COUNT=5)
        assert expand(master, now=NOW) == expand(master, now=NOW)

    def test_until_is_inclusive(self):
        slots = expand(weekly(UNTIL=datetime(2024, 1, 22, 9, tzinfo=utc)), now=NOW)
        assert len(slots) == 3

    def test_exdate(self):
        master = weekly(COUNT=5, EXDATE=[datetime(2024, 1, 15, 9, tzinfo=utc)])
        keys = [s.instance for s in expand(master, now=NOW)]
        assert "20240115T090000" not in keys
        assert len(keys) == 4

    def test_exception_shadows_slot_of_same_date(self):
        """An exception moved to another time of day still replaces its slot"""
        exception = Event(id=7, recurrence_id=1, is_exception=True, instance="20240122T120000")
        keys = [s.instance for s in expand(weekly(COUNT=5), exceptions=[exception], now=NOW)]
        assert "20240122T090000" not in keys
        assert len(keys) == 4

    def test_no_rule(self):
        assert expand(Event(start=NOW, end=NOW)) == []

    def test_unbounded_series_stops_at_horizon(self):
        start = datetime(2024, 1, 1, 9, tzinfo=utc)
        master = Event(start=start, end=start + timedelta(hours=1), recurrence={"FREQ": "DAILY"})
        slots = expand(master, now=NOW, horizon_years=1)
        ## 2024 is a leap year
        assert len(slots) == 366
        assert slots[-1].start == datetime(2024, 12, 31, 9, tzinfo=utc)

    def test_occurrence_cap(self):
        start = datetime(2024, 1, 1, 9, tzinfo=utc)
        master = Event(start=start, end=start, recurrence={"FREQ": "DAILY"})
        assert len(expand(master, now=NOW)) == 999
        assert len(expand(master, now=NOW, max_occurrences=10)) == 10

    def test_count_is_not_capped_by_horizon(self):
        start = datetime(2024, 1, 1, 9, tzinfo=utc)
        master = Event(start=start, end=start, recurrence={"FREQ": "YEARLY", "COUNT": 30})
        assert len(expand(master, now=NOW, horizon_years=5)) == 30

    def test_all_day_keys(self):
        start = datetime(2024, 1, 10, tzinfo=utc)
        master = Event(
            start=start,
            end=start + timedelta(hours=23),
            all_day=True,
            recurrence={"FREQ": "DAILY", "COUNT": 3},
        )
        keys = [s.instance for s in expand(master, now=NOW, tz="Europe/Berlin")]
        assert keys == ["20240110", "20240111", "20240112"]

    def test_wall_clock_time_kept_over_dst(self):
        """09:00 in Berlin is 08:00 UTC before the switch, 07:00 after"""
        start = datetime(2024, 3, 29, 8, tzinfo=utc)
        master = Event(
            start=start,
            end=start + timedelta(hours=1),
            recurrence={"FREQ": "DAILY", "COUNT": 5},
        )
        slots = expand(master, now=NOW, tz="Europe/Berlin")
        assert [s.start.hour for s in slots] == [8, 8, 7, 7, 7]
        assert {s.instance[8:] for s in slots} == {"T090000"}

    def test_rule_without_freq(self):
        master = weekly()
        master.recurrence = {"COUNT": 3}
        with pytest.raises(error.ValidationError):
            expand(master, now=NOW)

    def test_invalid_rule(self):
        with pytest.raises(error.ValidationError):
            expand(weekly(BYDAY="XX"), now=NOW)

    def test_master_without_start(self):
        with pytest.raises(error.ValidationError):
            expand(Event(recurrence={"FREQ": "DAILY"}), now=NOW)


class TestSeriesBounds:
    def test_series_end(self):
        assert series_end(weekly(COUNT=5), now=NOW) == datetime(2024, 2, 5, 9, tzinfo=utc)

    def test_series_end_without_rule(self):
        assert series_end(Event(start=NOW, end=NOW)) is None

    def test_count_slots_from(self):
        master = weekly(COUNT=5)
        assert count_slots_from(master, datetime(2024, 1, 22, 9, tzinfo=utc), now=NOW) == 3
        assert count_slots_from(master, datetime(2024, 1, 1, tzinfo=utc), now=NOW) == 5

    def test_exceptions_after(self):
        inside = Event(id=2, instance="20240122T090000")
        outside = Event(id=3, instance="20240212T090000")
        end = datetime(2024, 2, 5, 9, tzinfo=utc)
        assert exceptions_after([inside, outside], end) == [outside]
        assert exceptions_after([inside, outside], None) == []


class TestInstanceKeys:
    def test_instance_key_in_zone(self):
        ts = datetime(2024, 1, 8, 8, tzinfo=utc)
        assert instance_key(ts, tz="Europe/Berlin") == "20240108T090000"
        assert instance_key(ts) == "20240108T080000"
        assert instance_key(ts, all_day=True) == "20240108"

    def test_parse_instance(self):
        assert parse_instance("20240108T090000", "Europe/Berlin").astimezone(utc) == datetime(
            2024, 1, 8, 8, tzinfo=utc
        )
        assert parse_instance("20240108") == datetime(2024, 1, 8, tzinfo=utc)

    def test_shift_instance(self):
        assert shift_instance("20240108T090000", timedelta(days=1)) == "20240109T090000"
        assert shift_instance("20240108", timedelta(days=2), all_day=True) == "20240110"


class TestRuleFormat:
    def test_parse_rule(self):
        rule = parse_rule("FREQ=WEEKLY;COUNT=5;BYDAY=MO,WE;EXDATE=20240115T090000Z")
        assert rule == {
            "FREQ": "WEEKLY",
            "COUNT": 5,
            "BYDAY": "MO,WE",
            "EXDATE": [datetime(2024, 1, 15, 9, tzinfo=utc)],
        }

    def test_parse_empty_rule(self):
        assert parse_rule("") is None
        assert parse_rule(None) is None

    def test_format_rule(self):
        rule = {
            "EXDATE": [datetime(2024, 1, 15, 9, tzinfo=utc)],
            "COUNT": 5,
            "FREQ": "WEEKLY",
            "UNTIL": None,
        }
        assert format_rule(rule) == "FREQ=WEEKLY;COUNT=5;EXDATE=20240115T090000Z"
        assert format_rule(rule, with_lists=False) == "FREQ=WEEKLY;COUNT=5"

    def test_format_until(self):
        rule = {"FREQ": "DAILY", "UNTIL": datetime(2024, 1, 21, 10, tzinfo=utc)}
        assert format_rule(rule) == "FREQ=DAILY;UNTIL=20240121T100000Z"
        assert parse_rule(format_rule(rule)) == rule

    def test_format_nothing(self):
        assert format_rule(None) == ""
        assert format_rule({}) == ""
