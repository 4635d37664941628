"""
Recurrence expansion - Sans-I/O.

A master event carries its rule as a dict of RRULE parts (FREQ,
INTERVAL, COUNT, UNTIL, BYDAY, ...) plus EXDATE/RDATE lists.  The store
persists it in the flat form produced by format_rule(), e.g.

    FREQ=WEEKLY;COUNT=5;EXDATE=20240115T090000Z

expand() turns master + rule + exceptions into the ordered list of
occurrence slots.  The first slot is always the master's own start;
the store represents that slot by the master row itself.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from datetime import tzinfo
from typing import Any
from typing import Dict
from typing import Iterable
from typing import Iterator
from typing import List
from typing import Optional
from zoneinfo import ZoneInfo

from dateutil.relativedelta import relativedelta
from dateutil.rrule import rrulestr

from calsync.lib import error
from calsync.objects import Event

INSTANCE_FORMAT = "%Y%m%dT%H%M%S"
INSTANCE_DATE_FORMAT = "%Y%m%d"
UTC_FORMAT = "%Y%m%dT%H%M%SZ"

MAX_OCCURRENCES = 999
HORIZON_YEARS = 20

## parts that are not RRULE parameters but travel in the same string
LIST_PARTS = ("EXDATE", "RDATE")
IGNORED_PARTS = ("EXCEPTIONS",)


@dataclass(frozen=True)
class OccurrenceSpec:
    """One generated slot of a series"""

    start: datetime
    end: datetime
    instance: str


def get_zone(tz: Any = None) -> tzinfo:
    if tz is None or tz == "UTC":
        return timezone.utc
    if isinstance(tz, tzinfo):
        return tz
    return ZoneInfo(tz)


def _utc(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def _expansion_zone(all_day: bool, tz: Any) -> tzinfo:
    ## all-day series are date based, they must never move across a
    ## date boundary because of a zone offset
    return timezone.utc if all_day else get_zone(tz)


def instance_key(start: datetime, all_day: bool = False, tz: Any = None) -> str:
    """
    The instance identifier of the occurrence starting at `start`.  Used
    both when generating occurrences and when looking them up.
    """
    local = _utc(start).astimezone(_expansion_zone(all_day, tz))
    return local.strftime(INSTANCE_DATE_FORMAT if all_day else INSTANCE_FORMAT)


def parse_instance(key: str, tz: Any = None) -> datetime:
    """Inverse of instance_key (aware, in the zone the key was made in)"""
    if len(key) >= 15 and key[8] == "T":
        ts = datetime.strptime(key[:15], INSTANCE_FORMAT)
        return ts.replace(tzinfo=get_zone(tz))
    ts = datetime.strptime(key[:8], INSTANCE_DATE_FORMAT)
    return ts.replace(tzinfo=timezone.utc)


def shift_instance(key: str, delta: timedelta, all_day: bool = False, tz: Any = None) -> str:
    """Move an instance key by the same delta as the series start"""
    return instance_key(parse_instance(key, tz) + delta, all_day, tz)


def _parse_ts(value: str) -> datetime:
    value = value.strip()
    if value.endswith("Z"):
        return datetime.strptime(value, UTC_FORMAT).replace(tzinfo=timezone.utc)
    if "T" in value:
        return datetime.strptime(value[:15], INSTANCE_FORMAT).replace(tzinfo=timezone.utc)
    return datetime.strptime(value[:8], INSTANCE_DATE_FORMAT).replace(tzinfo=timezone.utc)


def _format_ts(value: Any) -> str:
    if isinstance(value, datetime):
        return _utc(value).strftime(UTC_FORMAT)
    if isinstance(value, date):
        return value.strftime(INSTANCE_DATE_FORMAT)
    return str(value)


def parse_rule(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Parse the persisted rule string into a dict.  Numbers become ints,
    UNTIL becomes an aware datetime, EXDATE and RDATE lists of aware
    datetimes.
    """
    if not text:
        return None
    rule: Dict[str, Any] = {}
    for part in text.strip().rstrip(";").split(";"):
        if "=" not in part:
            continue
        key, value = part.split("=", 1)
        key = key.strip().upper()
        if key in LIST_PARTS:
            rule[key] = [_parse_ts(x) for x in value.split(",") if x]
        elif key == "UNTIL":
            rule[key] = _parse_ts(value)
        elif value.lstrip("-").isdigit():
            rule[key] = int(value)
        else:
            rule[key] = value
    return rule or None


def format_rule(rule: Optional[Dict[str, Any]], with_lists: bool = True) -> str:
    """
    The persisted string form of a rule dict.  FREQ comes first, empty
    parts are dropped.  with_lists=False gives a plain RRULE value.
    """
    if not rule:
        return ""
    parts = []
    keys = sorted(rule, key=lambda k: (k != "FREQ", k in LIST_PARTS))
    for key in keys:
        value = rule[key]
        if key in IGNORED_PARTS or value is None or value == "" or value == []:
            continue
        if key in LIST_PARTS:
            if not with_lists:
                continue
            value = ",".join(_format_ts(x) for x in value)
        elif key == "UNTIL":
            value = _format_ts(value)
        elif isinstance(value, (list, tuple)):
            value = ",".join(str(x) for x in value)
        parts.append(f"{key}={value}")
    return ";".join(parts)


def is_bounded(rule: Optional[Dict[str, Any]]) -> bool:
    return bool(rule) and (bool(rule.get("COUNT")) or bool(rule.get("UNTIL")))


def _slots(
    master: Event,
    rule: Dict[str, Any],
    now: Optional[datetime] = None,
    tz: Any = None,
    max_occurrences: int = MAX_OCCURRENCES,
    horizon_years: int = HORIZON_YEARS,
) -> Iterator[datetime]:
    """
    All nominal slot starts of the series, in the expansion zone,
    including the ones shadowed by exceptions.
    """
    if master.start is None:
        raise error.ValidationError(reason="recurring event without start")
    if not rule.get("FREQ"):
        raise error.ValidationError(reason=f"recurrence rule without FREQ: {rule}")
    zone = _expansion_zone(master.all_day, tz)
    dtstart = _utc(master.start).astimezone(zone)

    try:
        rset = rrulestr(format_rule(rule, with_lists=False), dtstart=dtstart, forceset=True)
    except (ValueError, TypeError) as e:
        raise error.ValidationError(reason=f"invalid recurrence rule: {e}")
    for exdate in rule.get("EXDATE") or []:
        rset.exdate(_utc(exdate).astimezone(zone))
    for rdate in rule.get("RDATE") or []:
        rset.rdate(_utc(rdate).astimezone(zone))

    bounded = is_bounded(rule)
    limit = _utc(now or datetime.now(timezone.utc)) + relativedelta(years=horizon_years)

    ## the master is the first instance, whatever the rule says, and counts
    ## towards max_occurrences like every generated slot
    yield dtstart
    count = 1
    for start in rset:
        if start <= dtstart:
            continue
        if count >= max_occurrences:
            break
        if not bounded and start > limit:
            break
        count += 1
        yield start


def expand(
    master: Event,
    rule: Optional[Dict[str, Any]] = None,
    exceptions: Iterable[Event] = (),
    now: Optional[datetime] = None,
    tz: Any = None,
    max_occurrences: int = MAX_OCCURRENCES,
    horizon_years: int = HORIZON_YEARS,
) -> List[OccurrenceSpec]:
    """
    Expand a master event into its occurrence slots.

    Args:
        master: The master event (start, end and all_day are used)
        rule: Rule dict, defaults to master.recurrence
        exceptions: Exception rows of the series.  Slots whose date
            collides with an exception's instance are left out, the
            exception represents them.
        now: Reference time for the horizon of unbounded series
        tz: Zone in which wall-clock times are preserved
        max_occurrences: Upper bound of returned slots
        horizon_years: Unbounded series stop this many years after now

    Returns:
        Occurrence specs in chronological order, each with the master's
        duration
    """
    rule = master.recurrence if rule is None else rule
    if not rule:
        return []
    shadowed = {e.instance[:8] for e in exceptions if e.instance}
    duration = master.duration
    result = []
    for start in _slots(master, rule, now, tz, max_occurrences, horizon_years):
        key = instance_key(start, master.all_day, tz)
        if key[:8] in shadowed:
            continue
        start_utc = _utc(start)
        result.append(
            OccurrenceSpec(start=start_utc, end=start_utc + duration, instance=key)
        )
    return result


def series_end(
    master: Event,
    rule: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    tz: Any = None,
    max_occurrences: int = MAX_OCCURRENCES,
    horizon_years: int = HORIZON_YEARS,
) -> Optional[datetime]:
    """Nominal start of the last slot of the series (UTC)"""
    rule = master.recurrence if rule is None else rule
    if not rule:
        return None
    last = None
    for last in _slots(master, rule, now, tz, max_occurrences, horizon_years):
        pass
    return _utc(last) if last is not None else None


def count_slots_from(
    master: Event,
    since: datetime,
    rule: Optional[Dict[str, Any]] = None,
    now: Optional[datetime] = None,
    tz: Any = None,
    max_occurrences: int = MAX_OCCURRENCES,
    horizon_years: int = HORIZON_YEARS,
) -> int:
    """Number of slots starting at or after `since`"""
    rule = master.recurrence if rule is None else rule
    if not rule:
        return 0
    since = _utc(since)
    return sum(
        1
        for start in _slots(master, rule, now, tz, max_occurrences, horizon_years)
        if _utc(start) >= since
    )


def exceptions_after(
    exceptions: Iterable[Event], end: Optional[datetime], tz: Any = None
) -> List[Event]:
    """Exceptions whose nominal instance lies after the series end"""
    if end is None:
        return []
    return [
        e
        for e in exceptions
        if e.instance and _utc(parse_instance(e.instance, tz)) > end
    ]
