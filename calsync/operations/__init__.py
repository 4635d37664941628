"""
Operations Layer - Sans-I/O business logic of the calendar store.

This package contains pure functions that implement the reconciliation
logic without touching the network or the store.  The resolver, the
sync orchestrator and the push controller feed them with rows loaded
from the store and execute what they return.

Architecture:
    ┌─────────────────────────────────────┐
    │  CalendarDriver                     │
    │  (exposed surface, request memo)    │
    ├─────────────────────────────────────┤
    │  Controller / Orchestrator /        │
    │  Resolver (handle I/O)              │
    ├─────────────────────────────────────┤
    │  Operations Layer (this package)    │
    │  - expand() -> OccurrenceSpec list  │
    │  - plan_*() -> MutationPlan         │
    │  - diff() -> DiffResult             │
    ├─────────────────────────────────────┤
    │  Store (SQLAlchemy) / DAVClient     │
    └─────────────────────────────────────┘

Modules:
    base: Mutation plans
    recurrence_ops: Recurrence expansion and rule (de)serialization
    savemode_ops: Edit scope resolution (new, current, future, all)
    diff_ops: Change detection between remote listing and local rows
    calendarobject_ops: Conversion between iCalendar data and Event rows
"""
from calsync.operations.base import Mutation
from calsync.operations.base import MutationPlan
from calsync.operations.base import PlanRef
from calsync.operations.calendarobject_ops import events_from_ical
from calsync.operations.calendarobject_ops import generate_uid
from calsync.operations.calendarobject_ops import generate_url
from calsync.operations.calendarobject_ops import notify_at
from calsync.operations.calendarobject_ops import to_ical
from calsync.operations.diff_ops import classify
from calsync.operations.diff_ops import diff
from calsync.operations.diff_ops import DiffResult
from calsync.operations.diff_ops import normalize_all_day_end
from calsync.operations.diff_ops import orphans
from calsync.operations.diff_ops import RemoteUpdate
from calsync.operations.recurrence_ops import expand
from calsync.operations.recurrence_ops import format_rule
from calsync.operations.recurrence_ops import instance_key
from calsync.operations.recurrence_ops import OccurrenceSpec
from calsync.operations.recurrence_ops import parse_instance
from calsync.operations.recurrence_ops import parse_rule
from calsync.operations.recurrence_ops import series_end
from calsync.operations.savemode_ops import check_scheduling
from calsync.operations.savemode_ops import PlanContext
from calsync.operations.savemode_ops import plan_create
from calsync.operations.savemode_ops import plan_edit
from calsync.operations.savemode_ops import plan_overwrite
from calsync.operations.savemode_ops import plan_remove
from calsync.operations.savemode_ops import SeriesState

__all__ = [
    "Mutation",
    "MutationPlan",
    "PlanRef",
    "events_from_ical",
    "generate_uid",
    "generate_url",
    "notify_at",
    "to_ical",
    "classify",
    "diff",
    "DiffResult",
    "normalize_all_day_end",
    "orphans",
    "RemoteUpdate",
    "expand",
    "format_rule",
    "instance_key",
    "OccurrenceSpec",
    "parse_instance",
    "parse_rule",
    "series_end",
    "check_scheduling",
    "PlanContext",
    "plan_create",
    "plan_edit",
    "plan_overwrite",
    "plan_remove",
    "SeriesState",
]
