"""
Edit scope resolution, the I/O half.

load_state() reads the rows an edit works on, apply_plan() executes a
MutationPlan from calsync.operations.savemode_ops against the store,
and update_recurring() rebuilds the materialized occurrences of a
master.
"""
import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from calsync.lib import error
from calsync.objects import Event
from calsync.operations.base import MutationPlan
from calsync.operations.base import PlanRef
from calsync.operations.calendarobject_ops import notify_at
from calsync.operations.recurrence_ops import exceptions_after
from calsync.operations.recurrence_ops import series_end
from calsync.operations.savemode_ops import CONTENT_FIELDS
from calsync.operations.savemode_ops import event_fields
from calsync.operations.savemode_ops import master_instance
from calsync.operations.savemode_ops import PlanContext
from calsync.operations.savemode_ops import SeriesState

log = logging.getLogger("calsync")

## fields an occurrence inherits from its master
INHERITED_FIELDS = CONTENT_FIELDS + (
    "uid",
    "calendar_id",
    "recurrence",
    "sequence",
    "created",
    "changed",
    "caldav_url",
    "caldav_tag",
)


@dataclass
class AppliedPlan:
    """
    Real ids of an executed plan.

    Attributes:
        result: Row the edit resolved to
        touched: Masters whose series must be pushed
        removed: Masters that were deleted
        created: Every row inserted by the plan
    """

    result: Optional[int] = None
    touched: List[int] = field(default_factory=list)
    removed: List[int] = field(default_factory=list)
    created: List[int] = field(default_factory=list)


def locate(store, event_id: Optional[int] = None, uid: Optional[str] = None,
           instance: Optional[str] = None) -> Optional[Event]:
    """
    Find a row by id, or by (uid, instance) when the id is gone, as
    happens to occurrences after a regeneration.  Without an instance
    the master of the uid is returned.
    """
    if event_id:
        row = store.get_event(event_id)
        if row is not None:
            return row
    if not uid:
        return None
    for row in store.get_events_by_uid(uid):
        if instance and row.instance == instance:
            return row
        if not instance and row.is_master:
            return row
    return None


def load_state(store, event: Event) -> Optional[SeriesState]:
    """The stored series `event` belongs to, None if it is gone"""
    target = locate(store, event.id, event.uid, event.instance)
    if target is None:
        return None
    master = target
    if target.recurrence_id:
        master = store.get_event(target.recurrence_id)
        if master is None:
            error.weirdness("occurrence without master", target.id)
            return None
    exceptions = store.children(master.id, exceptions=True) if master.recurrence else []
    return SeriesState(target=target, master=master, exceptions=exceptions)


def _resolve(value: Any, refs: Dict[str, int]) -> Any:
    if isinstance(value, PlanRef):
        try:
            return refs[value.name]
        except KeyError:
            raise error.StoreError(reason=f"plan refers to {value.name} before creating it")
    return value


def _refresh_notifyat(store, event_id: int, alarm_types: Iterable[str]) -> None:
    row = store.get_event(event_id)
    if row is not None:
        store.update_event(event_id, {"notifyat": notify_at(row, alarm_types)})


def apply_plan(
    store,
    plan: MutationPlan,
    ctx: PlanContext,
    alarm_types: Iterable[str] = ("DISPLAY",),
) -> AppliedPlan:
    """
    Execute the mutations of a plan in order, in one store transaction.
    PlanRefs are replaced by the ids of the rows created under their
    name.
    """
    now = ctx.now or datetime.now(timezone.utc)
    refs: Dict[str, int] = {}
    applied = AppliedPlan()
    with store.transaction():
        for mutation in plan.mutations:
            fields = {k: _resolve(v, refs) for k, v in mutation.fields.items()}
            if mutation.op == "create":
                for stamp in ("created", "changed"):
                    if fields.get(stamp) is None:
                        fields[stamp] = now
                new_id = store.insert_event(fields)
                refs[mutation.target.name] = new_id
                applied.created.append(new_id)
                _refresh_notifyat(store, new_id, alarm_types)
                if mutation.regenerate:
                    update_recurring(store, new_id, ctx, alarm_types)
                continue

            target = _resolve(mutation.target, refs)
            if mutation.op == "update":
                if fields.get("changed") is None:
                    fields["changed"] = now
                store.update_event(target, fields)
                if "start" in fields or "alarms" in fields:
                    _refresh_notifyat(store, target, alarm_types)
                if mutation.regenerate:
                    update_recurring(store, target, ctx, alarm_types)
            elif mutation.op == "delete":
                store.delete_event(target, cascade=mutation.cascade)
            elif mutation.op == "purge":
                store.delete_children(target, exceptions=False)
            elif mutation.op == "regenerate":
                update_recurring(store, target, ctx, alarm_types)
            else:
                raise error.StoreError(reason=f"unknown plan step {mutation.op}")

    applied.result = _resolve(plan.result, refs)
    applied.touched = [_resolve(t, refs) for t in plan.touched]
    applied.removed = [_resolve(t, refs) for t in plan.removed]
    log.debug(
        f"applied {len(plan)} changes, result {applied.result}, "
        f"{len(applied.created)} rows created"
    )
    return applied


def update_recurring(
    store,
    master_id: int,
    ctx: PlanContext,
    alarm_types: Iterable[str] = ("DISPLAY",),
) -> int:
    """
    Rebuild the generated occurrences of a master: drop them, insert one
    row per slot of the rule except the first (the master itself) and
    the ones shadowed by exceptions, then drop the exceptions past the
    end of the series.  Returns the number of occurrences inserted.
    """
    master = store.get_event(master_id)
    if master is None or not master.is_master:
        return 0
    store.delete_children(master_id, exceptions=False)
    if not master.recurrence:
        store.delete_children(master_id)
        return 0

    exceptions = store.children(master_id, exceptions=True)
    first = master_instance(master, ctx)
    base = event_fields(master, INHERITED_FIELDS)
    rows = []
    for slot in ctx.expand(master, master.recurrence, exceptions):
        if slot.instance == first:
            continue
        row = dict(
            base,
            start=slot.start,
            end=slot.end,
            all_day=master.all_day,
            recurrence_id=master_id,
            is_exception=False,
            instance=slot.instance,
        )
        row["notifyat"] = notify_at(Event(start=slot.start, alarms=master.alarms), alarm_types)
        rows.append(row)
    store.insert_events(rows)

    end = series_end(
        master,
        now=ctx.now,
        tz=ctx.tz,
        max_occurrences=ctx.max_occurrences,
        horizon_years=ctx.horizon_years,
    )
    for exception in exceptions_after(exceptions, end, ctx.tz):
        log.debug(f"series {master.uid} ends before exception {exception.instance}")
        store.delete_event(exception.id)
    return len(rows)
