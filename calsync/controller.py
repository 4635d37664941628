"""
Local edits, pushed to the server.

Every edit snapshots the rows of the series it works on, writes the
local change through the resolver, and pushes each touched series to
its collection.  If the server reports a newer version (412), the
snapshot is put back, the calendar is synced, and the edit is tried
once more against the synced state.  A second conflict puts back
what the store held before the edit.
"""
import logging
from dataclasses import dataclass
from dataclasses import field
from typing import Callable
from typing import List
from typing import Optional

from calsync.lib import error
from calsync.objects import Attachment
from calsync.objects import Event
from calsync.operations.savemode_ops import plan_create
from calsync.operations.savemode_ops import plan_edit
from calsync.operations.savemode_ops import plan_remove
from calsync.operations.savemode_ops import to_savemode
from calsync.resolver import AppliedPlan
from calsync.resolver import apply_plan
from calsync.resolver import load_state

log = logging.getLogger("calsync")

SUCCESS = "success"
CONFLICT = "conflict"
FAILURE = "failure"


@dataclass
class EditOutcome:
    status: str
    event_id: Optional[int] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS


@dataclass
class Snapshot:
    """Stored rows and attachments of one series, and the ctag of its calendar"""

    master_id: Optional[int] = None
    rows: List[Event] = field(default_factory=list)
    attachments: List[Attachment] = field(default_factory=list)
    calendar_id: Optional[int] = None
    ctag: Optional[str] = None

    def old_master(self, master_id: int) -> Optional[Event]:
        if master_id != self.master_id or not self.rows:
            return None
        return self.rows[0]


class PushController:
    """
    Args:
        store: calsync.store.Store of the current user
        orchestrator: calsync.orchestrator.SyncOrchestrator, provides the
            sync clients and the sync passes
    """

    def __init__(self, store, orchestrator) -> None:
        self.store = store
        self.orchestrator = orchestrator

    @property
    def config(self):
        return self.orchestrator.config

    def _calendar(self, calendar_id: Optional[int]):
        calendar = self.store.get_calendar(calendar_id) if calendar_id is not None else None
        if calendar is None:
            raise error.ValidationError(reason=f"no such calendar: {calendar_id}")
        if calendar.is_ical:
            raise error.ValidationError(reason=f"calendar {calendar.name} is read-only")
        return calendar

    def apply_create(self, event: Event) -> EditOutcome:
        """Store a new event and push it"""
        self._calendar(event.calendar_id)
        plan = plan_create(event)
        try:
            applied = self._attempt(plan, Snapshot())
        except error.RemoteConflictError as e:
            return EditOutcome(CONFLICT, message=f"the event exists on the server already: {e}")
        except error.RemoteTransportError as e:
            return EditOutcome(FAILURE, message=f"could not save the event: {e}")
        return EditOutcome(SUCCESS, event_id=applied.result)

    def apply_edit(self, event: Event, savemode=None) -> EditOutcome:
        savemode = to_savemode(savemode)
        return self._run(event, lambda state, ctx: plan_edit(state, event, savemode, ctx), "save")

    def apply_remove(self, event: Event, savemode=None) -> EditOutcome:
        savemode = to_savemode(savemode)
        return self._run(event, lambda state, ctx: plan_remove(state, savemode, ctx), "remove")

    def _run(self, event: Event, planner: Callable, verb: str) -> EditOutcome:
        state = load_state(self.store, event)
        if state is None:
            return EditOutcome(FAILURE, message=f"no such event: {event.id or event.uid}")
        calendar = self._calendar(state.master.calendar_id)
        if event.calendar_id is not None and event.calendar_id != calendar.id:
            self._calendar(event.calendar_id)
        ## identifies the target again after a sync replaced the rows
        ref = state.target.copy(exceptions=[])
        original = self._snapshot(state.master.id, calendar)

        plan = planner(state, self.orchestrator.context())
        try:
            applied = self._attempt(plan, original)
        except error.RemoteConflictError as e:
            log.info(f"conflict on {verb} of event {ref.uid}, syncing and trying again: {e}")
        except error.RemoteTransportError as e:
            return EditOutcome(FAILURE, message=f"could not {verb} the event: {e}")
        else:
            return EditOutcome(SUCCESS, event_id=applied.result)

        self.orchestrator.sync_calendar(calendar.id)
        state = load_state(self.store, ref)
        if state is None:
            return EditOutcome(CONFLICT, message="the event was removed on the server")
        plan = planner(state, self.orchestrator.context())
        try:
            applied = self._attempt(plan, self._snapshot(state.master.id, calendar))
        except error.RemoteConflictError as e:
            log.warning(f"second conflict on {verb} of event {ref.uid}, giving up: {e}")
            self._restore_original(original, state.master.id)
            return EditOutcome(CONFLICT, message="the event was changed on the server")
        except error.RemoteTransportError as e:
            return EditOutcome(FAILURE, message=f"could not {verb} the event: {e}")
        return EditOutcome(SUCCESS, event_id=applied.result)

    def _snapshot(self, master_id: int, calendar) -> Snapshot:
        return Snapshot(
            master_id=master_id,
            rows=self.store.series_rows(master_id),
            attachments=self.store.series_attachments(master_id),
            calendar_id=calendar.id,
            ctag=self.store.get_calendar(calendar.id).ctag,
        )

    def _attempt(self, plan, snapshot: Snapshot) -> AppliedPlan:
        """
        Apply a plan locally and push its series.  Remote errors put the
        snapshot back before they propagate.
        """
        ctx = self.orchestrator.context()
        applied = apply_plan(self.store, plan, ctx, self.config.alarm_types)
        try:
            calendars = self._push(applied, snapshot)
        except (error.RemoteConflictError, error.RemoteTransportError):
            self._restore(snapshot, applied)
            raise
        for calendar_id in calendars:
            self.orchestrator.sync_calendar(calendar_id)
        return applied

    def _restore(self, snapshot: Snapshot, applied: AppliedPlan) -> None:
        with self.store.transaction():
            for row_id in applied.created:
                if row_id != snapshot.master_id:
                    self.store.delete_event(row_id, cascade=True)
            if snapshot.master_id is not None:
                self.store.restore_series(snapshot.master_id, snapshot.rows, snapshot.attachments)
        self.orchestrator.trace(f"restored series {snapshot.master_id}")

    def _restore_original(self, original: Snapshot, master_id: int) -> None:
        """
        Back to the state at the start of the request.  The calendar gets
        its old ctag too, so that the next check syncs it again.
        """
        with self.store.transaction():
            if master_id != original.master_id:
                self.store.delete_event(master_id, cascade=True)
            self.store.restore_series(original.master_id, original.rows, original.attachments)
            self.store.set_ctag(original.calendar_id, original.ctag)
        self.orchestrator.trace(f"series {original.master_id} is back as it was")

    def _push(self, applied: AppliedPlan, snapshot: Snapshot) -> List[int]:
        """Push touched series, delete removed ones.  Returns the calendars involved."""
        calendars = []
        for master_id in applied.removed:
            old = snapshot.old_master(master_id)
            if old is None:
                continue
            calendar = self.store.get_calendar(old.calendar_id)
            if calendar is None or not calendar.caldav_url:
                continue
            self.orchestrator.client(calendar).remove_event(old)
            calendars.append(calendar.id)

        for master_id in applied.touched:
            master = self.store.get_event(master_id)
            if master is None:
                continue
            calendar = self.store.get_calendar(master.calendar_id)
            if calendar is None or not calendar.caldav_url:
                continue
            client = self.orchestrator.client(calendar)
            exceptions = self.store.children(master_id, exceptions=True)
            old = snapshot.old_master(master_id)
            if old is not None and old.calendar_id != master.calendar_id:
                url, etag = client.create_event(master.copy(caldav_url=None, caldav_tag=None), exceptions)
                old_calendar = self.store.get_calendar(old.calendar_id)
                if old.caldav_url and old_calendar is not None:
                    self.orchestrator.client(old_calendar).remove_event(old)
                    calendars.append(old_calendar.id)
            elif master.caldav_url:
                url, etag = client.update_event(master, exceptions)
            else:
                url, etag = client.create_event(master, exceptions)
            self.store.set_series_remote(master_id, url, etag)
            self.orchestrator.trace(f"pushed {master.uid} to {url}, etag {etag}")
            calendars.append(calendar.id)
        return list(dict.fromkeys(calendars))
