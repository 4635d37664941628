"""
Edit scope resolution - Sans-I/O.

Given the stored state of a series and an edit request, compute the
MutationPlan that realizes the edit for one savemode:

* new: save the submission as a new, independent event
* current: turn the edited occurrence into an exception
* future: split the series at the edited occurrence
* all: edit the master, shifting the series as the submission asks

The plans are executed by calsync.resolver.apply_plan.  Nothing in this
module touches the store or the network.
"""
from __future__ import annotations

import copy
import re
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Sequence
from typing import Tuple

from calsync.lib import error
from calsync.objects import Event
from calsync.objects import SaveMode
from calsync.operations.base import MutationPlan
from calsync.operations.base import Target
from calsync.operations.calendarobject_ops import generate_uid
from calsync.operations.recurrence_ops import count_slots_from
from calsync.operations.recurrence_ops import expand
from calsync.operations.recurrence_ops import get_zone
from calsync.operations.recurrence_ops import HORIZON_YEARS
from calsync.operations.recurrence_ops import instance_key
from calsync.operations.recurrence_ops import MAX_OCCURRENCES
from calsync.operations.recurrence_ops import parse_instance
from calsync.operations.recurrence_ops import shift_instance

CONTENT_FIELDS = (
    "title",
    "description",
    "location",
    "categories",
    "url",
    "free_busy",
    "priority",
    "sensitivity",
    "status",
    "attendees",
    "organizer",
    "alarms",
)
TIMING_FIELDS = ("start", "end", "all_day")
SCHEDULING_PROPS = ("start", "end", "all_day", "recurrence", "location", "cancelled")

WEEKDAYS = ("MO", "TU", "WE", "TH", "FR", "SA", "SU")


@dataclass
class PlanContext:
    """Everything the planners need besides the rows themselves"""

    tz: Any = None
    now: Optional[datetime] = None
    max_occurrences: int = MAX_OCCURRENCES
    horizon_years: int = HORIZON_YEARS
    user_emails: Tuple[str, ...] = ()

    @classmethod
    def from_config(cls, config, now: Optional[datetime] = None) -> "PlanContext":
        return cls(
            tz=config.timezone,
            now=now,
            max_occurrences=config.max_occurrences,
            horizon_years=config.horizon_years,
            user_emails=tuple(config.user_emails),
        )

    def expand(self, master: Event, rule=None, exceptions: Iterable[Event] = ()):
        return expand(
            master,
            rule,
            exceptions,
            now=self.now,
            tz=self.tz,
            max_occurrences=self.max_occurrences,
            horizon_years=self.horizon_years,
        )


@dataclass
class SeriesState:
    """
    The stored rows an edit works on.

    Attributes:
        target: The row the edit was submitted for
        master: Its master (the target itself for masters and single
            events)
        exceptions: All exception rows of the series
    """

    target: Event
    master: Event
    exceptions: List[Event] = field(default_factory=list)


def event_fields(event: Event, names: Sequence[str]) -> Dict[str, Any]:
    """Field values of an event, deep-copied"""
    return {name: copy.deepcopy(getattr(event, name)) for name in names}


def validate_event(event: Event) -> None:
    if event.start is None:
        raise error.ValidationError(reason="event without start")
    if event.end is not None and event.end < event.start:
        raise error.ValidationError(
            reason=f"event ends before it starts: {event.start} - {event.end}"
        )
    if event.recurrence and not event.recurrence.get("FREQ"):
        raise error.ValidationError(reason="recurrence rule without FREQ")


def to_savemode(savemode: Any) -> SaveMode:
    try:
        return SaveMode(savemode or SaveMode.ALL)
    except ValueError:
        raise error.ValidationError(reason=f"unknown savemode {savemode!r}")


def _utc(ts: datetime) -> datetime:
    return ts.astimezone(timezone.utc)


def _comparable_rules(old: Optional[Dict[str, Any]], new: Optional[Dict[str, Any]]):
    def strip(rule):
        result = {}
        for key, value in (rule or {}).items():
            if key in ("EXDATE", "EXCEPTIONS"):
                continue
            if key == "INTERVAL" and str(value) == "1":
                continue
            if isinstance(value, str):
                value = value.upper()
            result[key] = value
        return result

    a, b = strip(old), strip(new)
    ## a shortened series is not a reschedule
    if a.get("COUNT") and b.get("COUNT") and b["COUNT"] < a["COUNT"]:
        a.pop("COUNT")
        b.pop("COUNT")
    elif a.get("UNTIL") and b.get("UNTIL") and b["UNTIL"] < a["UNTIL"]:
        a.pop("UNTIL")
        b.pop("UNTIL")
    return a, b


def is_rescheduled(old: Event, new: Event) -> bool:
    """Did any property relevant to attendees change?"""
    for prop in SCHEDULING_PROPS:
        a = getattr(old, prop)
        b = getattr(new, prop)
        if prop in ("start", "end") and new.all_day and a is not None and b is not None:
            a, b = _utc(a).date(), _utc(b).date()
        elif prop == "recurrence":
            a, b = _comparable_rules(a, b)
        elif prop == "location":
            a, b = a or "", b or ""
        if a != b:
            return True
    return False


def user_is_organizer(event: Event, user_emails: Iterable[str]) -> bool:
    emails = {e.lower() for e in user_emails}
    if event.organizer and (event.organizer.email or "").lower() in emails:
        return True
    return any(
        a.role == "ORGANIZER" and (a.email or "").lower() in emails
        for a in event.attendees
    )


def check_scheduling(old: Event, new: Event, user_emails: Iterable[str] = ()) -> Event:
    """
    Returns a copy of `new` with sequence (and attendee status, if the
    user organizes the event) adjusted to the changes against `old`.
    """
    new = new.copy()
    sequence = max(new.sequence or 0, old.sequence or 0)
    if new.method:
        new.sequence = sequence
        return new
    if is_rescheduled(old, new):
        sequence += 1
        if user_is_organizer(new, user_emails):
            for attendee in new.attendees:
                if attendee.role in ("ORGANIZER", "NON-PARTICIPANT"):
                    continue
                if attendee.status == "DELEGATED":
                    continue
                attendee.status = "NEEDS-ACTION"
                attendee.rsvp = True
    new.sequence = sequence
    return new


def master_instance(master: Event, ctx: PlanContext) -> str:
    return instance_key(master.start, master.all_day, ctx.tz)


def nominal_start(row: Event, master: Event, ctx: PlanContext) -> datetime:
    """The slot start a row stands for, regardless of its own start"""
    if row.id == master.id or not row.instance:
        return _utc(master.start)
    return _utc(parse_instance(row.instance, ctx.tz))


def _is_first_instance(state: SeriesState, ctx: PlanContext) -> bool:
    target = state.target
    if target.id == state.master.id or not target.instance:
        return True
    return target.instance[:8] == master_instance(state.master, ctx)[:8]


def _truncated_rule(rule: Dict[str, Any], nominal: datetime) -> Dict[str, Any]:
    truncated = copy.deepcopy(rule)
    truncated.pop("COUNT", None)
    truncated["UNTIL"] = nominal - timedelta(days=1)
    exdates = [d for d in truncated.get("EXDATE") or [] if d < nominal]
    if exdates:
        truncated["EXDATE"] = exdates
    else:
        truncated.pop("EXDATE", None)
    return truncated


def _rekey_order(exceptions: List[Event], delta: timedelta) -> List[Event]:
    ## moving later: start with the latest so no two keys ever collide
    return sorted(exceptions, key=lambda e: e.instance or "", reverse=delta > timedelta(0))


def _weekday(ts: datetime, all_day: bool, ctx: PlanContext) -> str:
    zone = timezone.utc if all_day else get_zone(ctx.tz)
    return WEEKDAYS[ts.astimezone(zone).weekday()]


def _local_parts(ts: datetime, all_day: bool, ctx: PlanContext) -> Tuple[str, str]:
    zone = timezone.utc if all_day else get_zone(ctx.tz)
    local = ts.astimezone(zone)
    return local.strftime("%Y-%m-%d"), "" if all_day else local.strftime("%H:%M")


def plan_create(event: Event, push: bool = True) -> MutationPlan:
    """
    Insert a new master, its exceptions (when it comes with some, as
    remote objects do) and its occurrences.
    """
    validate_event(event)
    if event.calendar_id is None:
        raise error.ValidationError(reason="event without calendar")
    plan = MutationPlan()
    uid = event.uid or generate_uid()
    fields = event_fields(
        event,
        CONTENT_FIELDS
        + TIMING_FIELDS
        + ("recurrence", "sequence", "calendar_id", "created", "changed", "caldav_url", "caldav_tag"),
    )
    if fields["end"] is None:
        fields["end"] = fields["start"]
    fields.update(uid=uid, recurrence_id=0, is_exception=False, instance=None)
    ref = plan.create("master", fields)
    _create_exceptions(plan, ref, event, uid, event.calendar_id)
    if event.recurrence:
        plan.regenerate(ref)
    plan.result = ref
    if push:
        plan.touch(ref)
    return plan


def _create_exceptions(plan: MutationPlan, ref: Target, event: Event, uid: str, calendar_id: int) -> None:
    seen = set()
    for num, exception in enumerate(event.exceptions):
        if not exception.instance or exception.instance in seen:
            continue
        seen.add(exception.instance)
        fields = event_fields(
            exception, CONTENT_FIELDS + TIMING_FIELDS + ("sequence", "created", "changed")
        )
        fields.update(
            uid=uid,
            calendar_id=calendar_id,
            recurrence_id=ref,
            is_exception=True,
            instance=exception.instance,
            recurrence=None,
        )
        plan.create(f"exception-{num}", fields)


def plan_overwrite(master: Event, exceptions: Iterable[Event], remote: Event) -> MutationPlan:
    """
    Replace a stored series by the version found on the server.  No
    scope resolution takes place; exceptions are replaced wholesale.
    """
    validate_event(remote)
    plan = MutationPlan()
    fields = event_fields(
        remote,
        CONTENT_FIELDS
        + TIMING_FIELDS
        + ("recurrence", "sequence", "created", "changed", "caldav_url", "caldav_tag"),
    )
    if fields["end"] is None:
        fields["end"] = fields["start"]
    fields["uid"] = remote.uid or master.uid
    plan.update(master.id, fields)
    plan.purge(master.id)
    for exception in exceptions:
        plan.delete(exception.id)
    _create_exceptions(plan, master.id, remote, fields["uid"], master.calendar_id)
    plan.regenerate(master.id)
    plan.result = master.id
    return plan


def plan_edit(state: SeriesState, submitted: Event, savemode: Any, ctx: PlanContext) -> MutationPlan:
    """
    Plan an edit of `state.target` with the values of `submitted`.

    Args:
        state: Stored rows of the series
        submitted: The complete new version of the edited row
        savemode: One of new, current, future, all
        ctx: Timezone, expansion bounds and the user's addresses

    Returns:
        The MutationPlan.  plan.result refers to the row the edit ends
        up in, plan.touched lists the series to push.
    """
    savemode = to_savemode(savemode)
    validate_event(submitted)
    master = state.master

    if savemode == SaveMode.NEW:
        return _plan_new(state, submitted)

    moving = submitted.calendar_id is not None and submitted.calendar_id != master.calendar_id
    if not master.recurrence:
        return _plan_single(state, submitted, ctx)
    if moving and savemode in (SaveMode.CURRENT, SaveMode.FUTURE):
        raise error.ValidationError(
            reason="only a whole series can be moved to another calendar"
        )
    if savemode == SaveMode.CURRENT:
        return _plan_current(state, submitted, ctx)
    if savemode == SaveMode.FUTURE and not _is_first_instance(state, ctx):
        return _plan_future(state, submitted, ctx)
    return _plan_all(state, submitted, ctx)


def _plan_new(state: SeriesState, submitted: Event) -> MutationPlan:
    detached = submitted.copy(
        id=None,
        uid=generate_uid(),
        recurrence=None,
        recurrence_id=0,
        is_exception=False,
        instance=None,
        sequence=0,
        caldav_url=None,
        caldav_tag=None,
        exceptions=[],
        calendar_id=submitted.calendar_id or state.master.calendar_id,
    )
    return plan_create(detached)


def _plan_single(state: SeriesState, submitted: Event, ctx: PlanContext) -> MutationPlan:
    master = state.master
    plan = MutationPlan()
    new = check_scheduling(master, submitted, ctx.user_emails)
    fields = event_fields(new, CONTENT_FIELDS + TIMING_FIELDS + ("recurrence", "sequence"))
    if submitted.calendar_id is not None and submitted.calendar_id != master.calendar_id:
        fields["calendar_id"] = submitted.calendar_id
    plan.update(master.id, fields, regenerate=bool(new.recurrence))
    plan.touch(master.id)
    plan.result = master.id
    return plan


def _plan_current(state: SeriesState, submitted: Event, ctx: PlanContext) -> MutationPlan:
    target, master = state.target, state.master
    plan = MutationPlan()
    ## a single occurrence does not change the rule
    new = check_scheduling(target, submitted.copy(recurrence=target.recurrence), ctx.user_emails)
    fields = event_fields(new, CONTENT_FIELDS + TIMING_FIELDS + ("sequence",))
    fields["recurrence"] = None

    if target.id != master.id:
        fields["is_exception"] = True
        plan.update(target.id, fields)
        plan.result = target.id
    else:
        key = master_instance(master, ctx)
        existing = [e for e in state.exceptions if (e.instance or "")[:8] == key[:8]]
        if existing:
            plan.update(existing[0].id, fields)
            plan.result = existing[0].id
        else:
            fields.update(
                uid=master.uid,
                calendar_id=master.calendar_id,
                recurrence_id=master.id,
                is_exception=True,
                instance=key,
            )
            plan.result = plan.create("exception", fields)
    plan.touch(master.id)
    return plan


def _plan_future(state: SeriesState, submitted: Event, ctx: PlanContext) -> MutationPlan:
    target, master = state.target, state.master
    plan = MutationPlan()
    rule = master.recurrence
    nominal = nominal_start(target, master, ctx)

    new_rule = copy.deepcopy(submitted.recurrence or rule)
    if rule.get("COUNT") and new_rule.get("COUNT") == rule.get("COUNT"):
        ## COUNT counts the slots of the rule alone, the exdates come on top
        bare = {k: v for k, v in rule.items() if k not in ("EXDATE", "RDATE")}
        new_rule["COUNT"] = count_slots_from(
            master,
            nominal,
            rule=bare,
            now=ctx.now,
            tz=ctx.tz,
            max_occurrences=ctx.max_occurrences,
            horizon_years=ctx.horizon_years,
        )
        new_rule.pop("UNTIL", None)

    delta = _utc(submitted.start) - nominal
    exdates = sorted(
        {d + delta for d in (rule.get("EXDATE") or []) + (new_rule.get("EXDATE") or []) if d >= nominal}
    )
    if exdates:
        new_rule["EXDATE"] = exdates
    else:
        new_rule.pop("EXDATE", None)

    new = check_scheduling(target, submitted.copy(recurrence=new_rule), ctx.user_emails)
    uid = generate_uid()
    fields = event_fields(new, CONTENT_FIELDS + TIMING_FIELDS + ("sequence",))
    fields.update(
        uid=uid,
        calendar_id=master.calendar_id,
        recurrence_id=0,
        is_exception=False,
        instance=None,
        recurrence=new_rule,
        caldav_url=None,
        caldav_tag=None,
    )
    ref = plan.create("future", fields)

    later = [
        e
        for e in state.exceptions
        if e.id != target.id and e.instance and nominal_start(e, master, ctx) >= nominal
    ]
    for exception in _rekey_order(later, delta):
        instance = exception.instance
        if delta:
            instance = shift_instance(instance, delta, master.all_day, ctx.tz)
        plan.update(exception.id, {"recurrence_id": ref, "uid": uid, "instance": instance})
    if target.is_exception:
        plan.delete(target.id)

    plan.update(master.id, {"recurrence": _truncated_rule(rule, nominal)}, regenerate=True)
    plan.regenerate(ref)
    plan.touch(master.id)
    plan.touch(ref)
    plan.result = ref
    return plan


def _plan_all(state: SeriesState, submitted: Event, ctx: PlanContext) -> MutationPlan:
    old, master = state.target, state.master
    plan = MutationPlan()

    old_date, old_time = _local_parts(old.start, old.all_day, ctx)
    new_date, new_time = _local_parts(submitted.start, submitted.all_day, ctx)
    old_duration = old.duration
    new_end = submitted.end if submitted.end is not None else submitted.start
    new_duration = new_end - submitted.start
    changed = old_date != new_date or old_time != new_time or old_duration != new_duration

    rule = copy.deepcopy(submitted.recurrence)
    if changed and (old_date == new_date or old_duration == new_duration):
        ## shifted or resized: move the series by the same amount
        start = master.start + (submitted.start - old.start)
        end = start + new_duration
        if rule and old_date != new_date and re.match(r"^[A-Z]{2}$", str(rule.get("BYDAY", ""))):
            rule["BYDAY"] = _weekday(start, submitted.all_day, ctx)
    elif submitted.start == old.start and new_end == old.end:
        start, end = master.start, master.end
    else:
        start, end = submitted.start, new_end

    ## saved exdates survive a rule change
    if rule and master.recurrence and master.recurrence.get("EXDATE"):
        exdates = set(master.recurrence["EXDATE"]) | set(rule.get("EXDATE") or [])
        rule["EXDATE"] = sorted(exdates)

    new = check_scheduling(
        master, submitted.copy(start=start, end=end, recurrence=rule), ctx.user_emails
    )
    fields = event_fields(new, CONTENT_FIELDS + TIMING_FIELDS + ("recurrence", "sequence"))
    moving = submitted.calendar_id is not None and submitted.calendar_id != master.calendar_id
    if moving:
        fields["calendar_id"] = submitted.calendar_id
    plan.update(master.id, fields)
    plan.purge(master.id)

    shift = start - master.start
    if rule and shift and (old_date != new_date or old_time != new_time):
        for exception in _rekey_order(state.exceptions, shift):
            plan.update(
                exception.id,
                {"instance": shift_instance(exception.instance, shift, submitted.all_day, ctx.tz)},
            )
    if moving:
        for exception in state.exceptions:
            plan.update(exception.id, {"calendar_id": submitted.calendar_id})

    plan.regenerate(master.id)
    plan.touch(master.id)
    plan.result = master.id
    return plan


def plan_remove(state: SeriesState, savemode: Any, ctx: PlanContext) -> MutationPlan:
    """
    Plan the removal of `state.target`.

    current removes one occurrence (an EXDATE, or moving the master on
    to its second slot when the first is removed), future ends the
    series before the occurrence, all removes the series.
    """
    savemode = to_savemode(savemode)
    if savemode == SaveMode.NEW:
        raise error.ValidationError(reason="savemode new does not apply to removal")
    target, master = state.target, state.master
    plan = MutationPlan()
    first = _is_first_instance(state, ctx)

    if (
        not master.recurrence
        or savemode == SaveMode.ALL
        or (savemode == SaveMode.FUTURE and first)
    ):
        return _plan_remove_series(master)

    rule = copy.deepcopy(master.recurrence)
    if savemode == SaveMode.CURRENT and first:
        slots = ctx.expand(master, rule)
        if len(slots) < 2:
            return _plan_remove_series(master)
        key = master_instance(master, ctx)
        for exception in state.exceptions:
            if (exception.instance or "")[:8] == key[:8]:
                plan.delete(exception.id)
        if rule.get("COUNT"):
            rule["COUNT"] -= 1
        plan.update(
            master.id,
            {"start": slots[1].start, "end": slots[1].end, "recurrence": rule},
            regenerate=True,
        )
    elif savemode == SaveMode.CURRENT:
        nominal = nominal_start(target, master, ctx)
        exdates = list(rule.get("EXDATE") or [])
        if nominal not in exdates:
            exdates.append(nominal)
        rule["EXDATE"] = sorted(exdates)
        plan.delete(target.id)
        plan.update(master.id, {"recurrence": rule}, regenerate=True)
    else:
        nominal = nominal_start(target, master, ctx)
        for exception in state.exceptions:
            if exception.instance and nominal_start(exception, master, ctx) >= nominal:
                plan.delete(exception.id)
        plan.update(master.id, {"recurrence": _truncated_rule(rule, nominal)}, regenerate=True)

    plan.touch(master.id)
    plan.result = master.id
    return plan


def _plan_remove_series(master: Event) -> MutationPlan:
    plan = MutationPlan()
    plan.delete(master.id, cascade=True)
    plan.removed.append(master.id)
    plan.result = master.id
    return plan
