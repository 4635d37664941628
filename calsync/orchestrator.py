"""
Keeps the stored calendars in step with their remote collections.

A calendar is checked against the server at most once per sync period
(a conditional UPDATE on its last-check timestamp decides who gets to
check).  If the remote ctag differs from the stored one, the remote
listing is diffed against the stored masters and the differences are
written locally: creates and updates first, then the orphans go.

Remote failures never break a read.  The calendar is then taken to be
fresh and a warning is logged.
"""
import logging
from datetime import datetime
from datetime import timezone
from typing import Callable
from typing import Dict
from typing import Optional
from typing import Set

from calsync.config import SyncConfig
from calsync.lib import error
from calsync.objects import Calendar
from calsync.operations.diff_ops import CREATE
from calsync.operations.diff_ops import orphans
from calsync.operations.savemode_ops import PlanContext
from calsync.operations.savemode_ops import plan_create
from calsync.operations.savemode_ops import plan_overwrite
from calsync.resolver import apply_plan
from calsync.sync import BaseSync
from calsync.sync import get_sync_client

log = logging.getLogger("calsync")

FRESH = "fresh"
STALE = "stale"
SYNCING = "syncing"


class SyncOrchestrator:
    """
    Sync passes for the calendars of one store.

    Args:
        store: calsync.store.Store of the current user
        config: SyncConfig
        client_factory: callable(calendar) returning the sync client of a
            calendar, defaults to calsync.sync.get_sync_client
        clock: callable returning the current (aware) time
    """

    def __init__(
        self,
        store,
        config: Optional[SyncConfig] = None,
        client_factory: Optional[Callable[[Calendar], BaseSync]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.config = config or SyncConfig()
        self.client_factory = client_factory or (
            lambda calendar: get_sync_client(calendar, self.config)
        )
        self.clock = clock
        self._clients: Dict[int, BaseSync] = {}
        self._syncing: Set[int] = set()
        ## level of the sync and push messages of this instance
        self.log_level = logging.WARNING if self.config.debug else logging.DEBUG

    def trace(self, message: str) -> None:
        log.log(self.log_level, message)

    def now(self) -> datetime:
        if self.clock is not None:
            return self.clock()
        return datetime.now(timezone.utc)

    def context(self) -> PlanContext:
        return PlanContext.from_config(self.config, now=self.now())

    def client(self, calendar: Calendar) -> BaseSync:
        """The sync client of a calendar, kept for the rest of the request"""
        client = self._clients.get(calendar.id)
        if client is None:
            client = self.client_factory(calendar)
            self._clients[calendar.id] = client
        else:
            ## the stored ctag may have moved since
            client.calendar = calendar
        return client

    def end_request(self) -> None:
        self._clients.clear()
        self._syncing.clear()

    def state(self, calendar_id: int) -> str:
        if calendar_id in self._syncing:
            return SYNCING
        return FRESH if self.is_fresh(calendar_id) else STALE

    def is_fresh(self, calendar_id: int) -> bool:
        """
        Check a calendar against the server, unless it was checked less
        than sync_period seconds ago.
        """
        if calendar_id in self._syncing:
            return True
        calendar = self.store.get_calendar(calendar_id)
        if calendar is None or not calendar.caldav_url:
            return True
        if not self.store.claim_sync_slot(calendar_id, self.config.sync_period, self.now()):
            return True
        try:
            synced = self.client(calendar).is_synced()
        except error.RemoteTransportError as e:
            log.warning(f"could not check calendar {calendar.name} ({calendar.caldav_url}): {e}")
            return True
        if not synced:
            self.trace(f"calendar {calendar_id} changed on the server")
        return synced

    def ensure_fresh(self, calendar_id: int) -> bool:
        """Sync a calendar if it is stale.  Returns True if a pass ran."""
        if self.is_fresh(calendar_id):
            return False
        return self.sync_calendar(calendar_id)

    def sync_calendar(self, calendar_id: int) -> bool:
        """
        Run one sync pass, whatever the throttle says.  Returns False if
        the pass did not complete.
        """
        if calendar_id in self._syncing:
            return False
        calendar = self.store.get_calendar(calendar_id)
        if calendar is None or not calendar.caldav_url:
            return False
        self._syncing.add(calendar_id)
        try:
            return self._sync(calendar)
        except error.RemoteTransportError as e:
            log.warning(f"sync of calendar {calendar.name} ({calendar.caldav_url}) failed: {e}")
            return False
        finally:
            self._syncing.discard(calendar_id)

    def _sync(self, calendar: Calendar) -> bool:
        client = self.client(calendar)
        ctx = self.context()
        ## read before the listing, a change in between is seen next time
        ctag = client.get_ctag()
        local = self.store.masters(calendar.id)
        updates, synced_ids = client.get_updates(local)

        updated_ids = [u.local_id for u in updates if u.local_id is not None]
        for update in updates:
            try:
                remote = client.fetch_event(update)
            except error.ValidationError as e:
                log.error(f"skipping {update.href}: {e}")
                continue
            if remote is None:
                continue
            remote.calendar_id = calendar.id
            remote.caldav_url = update.href
            if update.kind == CREATE:
                plan = plan_create(remote, push=False)
            else:
                master = self.store.get_event(update.local_id)
                if master is None:
                    continue
                exceptions = self.store.children(master.id, exceptions=True)
                plan = plan_overwrite(master, exceptions, remote)
            try:
                apply_plan(self.store, plan, ctx, self.config.alarm_types)
            except error.ValidationError as e:
                log.error(f"skipping {update.href}: {e}")

        for orphan in orphans(local, synced_ids, updated_ids):
            self.trace(f"{orphan.caldav_url} is gone from the server, deleting event {orphan.id}")
            self.store.delete_event(orphan.id, cascade=True)

        self.store.set_ctag(calendar.id, ctag)
        calendar.caldav_tag = ctag
        self.trace(
            f"synced calendar {calendar.name}: {len(updates)} changes, "
            f"{len(local) - len(synced_ids) - len(updated_ids)} removed"
        )
        return True
