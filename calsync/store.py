"""
Persistent store, SQLAlchemy Core.

One Store instance serves one user.  Every calendar and source query is
filtered by the user id, every event and attachment query by the ids of
the user's calendars, so foreign ids behave like missing ones.

Datetimes are stored as naive UTC and returned as aware UTC.
"""
import json
import logging
from contextlib import contextmanager
from datetime import datetime
from datetime import timedelta
from datetime import timezone
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional

from sqlalchemy import Boolean
from sqlalchemy import Column
from sqlalchemy import create_engine
from sqlalchemy import DateTime
from sqlalchemy import delete
from sqlalchemy import event as sa_event
from sqlalchemy import exc
from sqlalchemy import ForeignKey
from sqlalchemy import insert
from sqlalchemy import Integer
from sqlalchemy import JSON
from sqlalchemy import LargeBinary
from sqlalchemy import MetaData
from sqlalchemy import or_
from sqlalchemy import select
from sqlalchemy import String
from sqlalchemy import Table
from sqlalchemy import Text
from sqlalchemy import UniqueConstraint
from sqlalchemy import update
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from calsync.lib import error
from calsync.objects import Alarm
from calsync.objects import Attachment
from calsync.objects import Attendee
from calsync.objects import Calendar
from calsync.objects import Event
from calsync.objects import FREE_BUSY_MAP
from calsync.objects import FREE_BUSY_NAMES
from calsync.objects import SENSITIVITY_MAP
from calsync.objects import SENSITIVITY_NAMES
from calsync.objects import Source
from calsync.operations.recurrence_ops import format_rule
from calsync.operations.recurrence_ops import parse_rule

log = logging.getLogger("calsync")

metadata = MetaData()

sources = Table(
    "sources",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("caldav_url", String(1024), nullable=False),
    Column("caldav_user", String(255)),
    Column("caldav_pass", String(1024)),
)

calendars = Table(
    "calendars",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("user_id", Integer, nullable=False, index=True),
    Column("source_id", Integer, ForeignKey("sources.id", ondelete="CASCADE")),
    Column("name", String(255), nullable=False, default=""),
    Column("color", String(8), nullable=False, default="cc0000"),
    Column("showalarms", Boolean, nullable=False, default=False),
    Column("active", Boolean, nullable=False, default=True),
    Column("caldav_url", String(1024)),
    Column("caldav_tag", String(255)),
    Column("caldav_last_change", DateTime),
    Column("is_ical", Boolean, nullable=False, default=False),
)

events = Table(
    "events",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "calendar_id",
        Integer,
        ForeignKey("calendars.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("recurrence_id", Integer, nullable=False, default=0, index=True),
    Column("uid", String(255), index=True),
    Column("instance", String(16)),
    Column("is_exception", Boolean, nullable=False, default=False),
    Column("start", DateTime, nullable=False),
    Column("end", DateTime, nullable=False),
    Column("all_day", Boolean, nullable=False, default=False),
    Column("recurrence", Text),
    Column("sequence", Integer, nullable=False, default=0),
    Column("title", String(255), nullable=False, default=""),
    Column("description", Text, nullable=False, default=""),
    Column("location", String(255), nullable=False, default=""),
    Column("categories", JSON),
    Column("url", String(1024), nullable=False, default=""),
    Column("free_busy", Integer, nullable=False, default=1),
    Column("priority", Integer, nullable=False, default=0),
    Column("sensitivity", Integer, nullable=False, default=0),
    Column("status", String(32), nullable=False, default=""),
    Column("attendees", JSON),
    Column("organizer", JSON),
    Column("alarms", JSON),
    Column("notifyat", DateTime),
    Column("created", DateTime),
    Column("changed", DateTime),
    Column("caldav_url", String(1024)),
    Column("caldav_tag", String(255)),
    UniqueConstraint("calendar_id", "recurrence_id", "instance", name="uq_event_instance"),
    ## ids are never reused, snapshots put rows back under their old id
    sqlite_autoincrement=True,
)

attachments = Table(
    "attachments",
    metadata,
    Column("id", Integer, primary_key=True),
    Column(
        "event_id",
        Integer,
        ForeignKey("events.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("name", String(255), nullable=False, default=""),
    Column("mimetype", String(255), nullable=False, default="application/octet-stream"),
    Column("size", Integer, nullable=False, default=0),
    Column("data", LargeBinary),
    sqlite_autoincrement=True,
)

EVENT_COLUMNS = {c.name for c in events.columns}
CALENDAR_COLUMNS = {c.name for c in calendars.columns}


def get_engine(url: str = "sqlite://", **kwargs) -> Engine:
    """
    An engine with foreign keys enforced on SQLite.  The in-memory
    database is shared by all connections of the engine.
    """
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs.setdefault("poolclass", StaticPool)
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    ## readable non-ascii in JSON columns, so that searches match
    kwargs.setdefault("json_serializer", lambda obj: json.dumps(obj, ensure_ascii=False))
    engine = create_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":

        @sa_event.listens_for(engine, "connect")
        def enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


def to_db(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc).replace(tzinfo=None)
    return ts


def from_db(ts: Optional[datetime]) -> Optional[datetime]:
    if ts is None:
        return None
    return ts.replace(tzinfo=timezone.utc)


def event_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    """Event field values to column values.  Unknown keys are dropped."""
    values = {}
    for key, value in fields.items():
        if key not in EVENT_COLUMNS:
            continue
        if key in ("start", "end", "notifyat", "created", "changed"):
            value = to_db(value)
        elif key == "recurrence":
            value = format_rule(value) or None
        elif key == "attendees":
            value = [a.to_dict() for a in value or []]
        elif key == "organizer":
            value = value.to_dict() if value else None
        elif key == "alarms":
            value = [a.to_dict() for a in value or []]
        elif key == "categories":
            value = list(value or [])
        elif key == "free_busy":
            value = FREE_BUSY_MAP.get((value or "busy").lower(), 1)
        elif key == "sensitivity":
            value = SENSITIVITY_MAP.get((value or "public").lower(), 0)
        elif key in ("title", "description", "location", "url", "status"):
            value = value or ""
        values[key] = value
    return values


def row_to_event(row) -> Event:
    m = row._mapping
    return Event(
        id=m["id"],
        calendar_id=m["calendar_id"],
        uid=m["uid"],
        recurrence_id=m["recurrence_id"] or 0,
        is_exception=bool(m["is_exception"]),
        instance=m["instance"],
        start=from_db(m["start"]),
        end=from_db(m["end"]),
        all_day=bool(m["all_day"]),
        recurrence=parse_rule(m["recurrence"]),
        sequence=m["sequence"] or 0,
        title=m["title"] or "",
        description=m["description"] or "",
        location=m["location"] or "",
        categories=list(m["categories"] or []),
        url=m["url"] or "",
        free_busy=FREE_BUSY_NAMES.get(m["free_busy"], "busy"),
        priority=m["priority"] or 0,
        sensitivity=SENSITIVITY_NAMES.get(m["sensitivity"], "public"),
        status=m["status"] or "",
        attendees=[Attendee.from_dict(a) for a in m["attendees"] or []],
        organizer=Attendee.from_dict(m["organizer"]) if m["organizer"] else None,
        alarms=[Alarm.from_dict(a) for a in m["alarms"] or []],
        notifyat=from_db(m["notifyat"]),
        created=from_db(m["created"]),
        changed=from_db(m["changed"]),
        caldav_url=m["caldav_url"],
        caldav_tag=m["caldav_tag"],
    )


def row_to_calendar(row) -> Calendar:
    m = row._mapping
    return Calendar(
        id=m["id"],
        user_id=m["user_id"],
        source_id=m["source_id"],
        name=m["name"],
        color=m["color"],
        showalarms=bool(m["showalarms"]),
        active=bool(m["active"]),
        caldav_url=m["caldav_url"],
        caldav_tag=m["caldav_tag"],
        caldav_last_change=from_db(m["caldav_last_change"]),
        is_ical=bool(m["is_ical"]),
        caldav_user=m.get("caldav_user"),
        caldav_pass=m.get("caldav_pass"),
    )


class Store:
    """
    The tables of one user.

    Every method opens its own transaction, unless called inside
    ``with store.transaction():``, in which case all of them share one.
    SQLAlchemy errors are raised as StoreError.
    """

    def __init__(self, engine: Any = "sqlite://", user_id: int = 1, create: bool = True) -> None:
        if isinstance(engine, str):
            engine = get_engine(engine)
        self.engine = engine
        self.user_id = user_id
        self._conn = None
        if create:
            metadata.create_all(self.engine)

    @contextmanager
    def _connect(self):
        try:
            if self._conn is not None:
                yield self._conn
            else:
                with self.engine.begin() as conn:
                    yield conn
        except exc.SQLAlchemyError as e:
            raise error.StoreError(reason=str(e))

    @contextmanager
    def transaction(self):
        """Run every store call in the block in one transaction"""
        if self._conn is not None:
            yield self
            return
        try:
            with self.engine.begin() as conn:
                self._conn = conn
                try:
                    yield self
                finally:
                    self._conn = None
        except exc.SQLAlchemyError as e:
            raise error.StoreError(reason=str(e))

    def _owned_calendars(self, active_only: bool = False):
        query = select(calendars.c.id).where(calendars.c.user_id == self.user_id)
        if active_only:
            query = query.where(calendars.c.active.is_(True))
        return query

    def _owned(self, column):
        return column.in_(self._owned_calendars())

    ## sources

    def insert_source(self, source: Source) -> int:
        with self._connect() as conn:
            result = conn.execute(
                insert(sources).values(
                    user_id=self.user_id,
                    caldav_url=source.caldav_url,
                    caldav_user=source.caldav_user,
                    caldav_pass=source.caldav_pass,
                )
            )
            return result.inserted_primary_key[0]

    def get_source(self, source_id: int) -> Optional[Source]:
        with self._connect() as conn:
            row = conn.execute(
                select(sources).where(
                    sources.c.id == source_id, sources.c.user_id == self.user_id
                )
            ).first()
        if row is None:
            return None
        m = row._mapping
        return Source(
            id=m["id"],
            user_id=m["user_id"],
            caldav_url=m["caldav_url"],
            caldav_user=m["caldav_user"],
            caldav_pass=m["caldav_pass"],
        )

    def list_sources(self) -> List[Source]:
        with self._connect() as conn:
            ids = conn.execute(
                select(sources.c.id).where(sources.c.user_id == self.user_id).order_by(sources.c.id)
            ).scalars().all()
        return [self.get_source(i) for i in ids]

    def delete_source(self, source_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                delete(sources).where(
                    sources.c.id == source_id, sources.c.user_id == self.user_id
                )
            )
            return result.rowcount > 0

    ## calendars

    def _calendar_query(self):
        return (
            select(calendars, sources.c.caldav_user, sources.c.caldav_pass)
            .select_from(calendars.outerjoin(sources, calendars.c.source_id == sources.c.id))
            .where(calendars.c.user_id == self.user_id)
        )

    def insert_calendar(self, calendar: Calendar) -> int:
        with self._connect() as conn:
            result = conn.execute(
                insert(calendars).values(
                    user_id=self.user_id,
                    source_id=calendar.source_id,
                    name=calendar.name,
                    color=calendar.color,
                    showalarms=calendar.showalarms,
                    active=calendar.active,
                    caldav_url=calendar.caldav_url,
                    caldav_tag=calendar.caldav_tag,
                    caldav_last_change=to_db(calendar.caldav_last_change),
                    is_ical=calendar.is_ical,
                )
            )
            return result.inserted_primary_key[0]

    def get_calendar(self, calendar_id: int) -> Optional[Calendar]:
        with self._connect() as conn:
            row = conn.execute(
                self._calendar_query().where(calendars.c.id == calendar_id)
            ).first()
        return row_to_calendar(row) if row is not None else None

    def list_calendars(self, active_only: bool = False) -> List[Calendar]:
        query = self._calendar_query().order_by(calendars.c.name, calendars.c.id)
        if active_only:
            query = query.where(calendars.c.active.is_(True))
        with self._connect() as conn:
            return [row_to_calendar(row) for row in conn.execute(query)]

    def calendar_ids(self, active_only: bool = False) -> List[int]:
        with self._connect() as conn:
            return list(conn.execute(self._owned_calendars(active_only)).scalars())

    def update_calendar(self, calendar_id: int, fields: Dict[str, Any]) -> bool:
        values = {k: v for k, v in fields.items() if k in CALENDAR_COLUMNS and k not in ("id", "user_id")}
        if "caldav_last_change" in values:
            values["caldav_last_change"] = to_db(values["caldav_last_change"])
        if not values:
            return False
        with self._connect() as conn:
            result = conn.execute(
                update(calendars)
                .where(calendars.c.id == calendar_id, calendars.c.user_id == self.user_id)
                .values(**values)
            )
            return result.rowcount > 0

    def delete_calendar(self, calendar_id: int) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                delete(calendars).where(
                    calendars.c.id == calendar_id, calendars.c.user_id == self.user_id
                )
            )
            return result.rowcount > 0

    def claim_sync_slot(self, calendar_id: int, period: int, now: datetime) -> bool:
        """
        Stamp the calendar as checked at `now`, but only if the last
        check is at least `period` seconds ago.  One conditional UPDATE,
        so of concurrent callers exactly one gets True per window.
        """
        now = to_db(now)
        with self._connect() as conn:
            result = conn.execute(
                update(calendars)
                .where(
                    calendars.c.id == calendar_id,
                    calendars.c.user_id == self.user_id,
                    or_(
                        calendars.c.caldav_last_change.is_(None),
                        calendars.c.caldav_last_change <= now - timedelta(seconds=period),
                    ),
                )
                .values(caldav_last_change=now)
            )
            return result.rowcount == 1

    def set_ctag(self, calendar_id: int, ctag: Optional[str]) -> bool:
        return self.update_calendar(calendar_id, {"caldav_tag": ctag})

    ## events

    def insert_event(self, fields: Dict[str, Any]) -> int:
        values = event_values(fields)
        if values.get("calendar_id") not in self.calendar_ids():
            raise error.StoreError(reason=f"no such calendar: {values.get('calendar_id')}")
        with self._connect() as conn:
            result = conn.execute(insert(events).values(**values))
            return result.inserted_primary_key[0]

    def insert_events(self, rows: List[Dict[str, Any]]) -> int:
        """Insert many rows of one calendar at once"""
        if not rows:
            return 0
        values = [event_values(fields) for fields in rows]
        owned = set(self.calendar_ids())
        for v in values:
            if v.get("calendar_id") not in owned:
                raise error.StoreError(reason=f"no such calendar: {v.get('calendar_id')}")
        with self._connect() as conn:
            conn.execute(insert(events), values)
        return len(values)

    def update_event(self, event_id: int, fields: Dict[str, Any]) -> bool:
        values = event_values(fields)
        values.pop("id", None)
        if not values:
            return False
        with self._connect() as conn:
            result = conn.execute(
                update(events)
                .where(events.c.id == event_id, self._owned(events.c.calendar_id))
                .values(**values)
            )
            return result.rowcount > 0

    def delete_event(self, event_id: int, cascade: bool = False) -> bool:
        """Delete one row; with cascade also every row under it"""
        condition = events.c.id == event_id
        if cascade:
            condition = or_(condition, events.c.recurrence_id == event_id)
        with self._connect() as conn:
            result = conn.execute(
                delete(events).where(condition, self._owned(events.c.calendar_id))
            )
            return result.rowcount > 0

    def delete_children(self, master_id: int, exceptions: Optional[bool] = None) -> int:
        """
        Delete the rows under a master: all of them, only the generated
        occurrences (exceptions=False) or only the exceptions (True)
        """
        query = delete(events).where(
            events.c.recurrence_id == master_id, self._owned(events.c.calendar_id)
        )
        if exceptions is not None:
            query = query.where(events.c.is_exception.is_(exceptions))
        with self._connect() as conn:
            return conn.execute(query).rowcount

    def _select_events(self):
        return select(events).where(self._owned(events.c.calendar_id))

    def get_event(self, event_id: int) -> Optional[Event]:
        with self._connect() as conn:
            row = conn.execute(self._select_events().where(events.c.id == event_id)).first()
        return row_to_event(row) if row is not None else None

    def get_event_by_instance(self, recurrence_id: int, instance: str) -> Optional[Event]:
        with self._connect() as conn:
            row = conn.execute(
                self._select_events().where(
                    events.c.recurrence_id == recurrence_id, events.c.instance == instance
                )
            ).first()
        return row_to_event(row) if row is not None else None

    def get_events_by_uid(self, uid: str, calendar_id: Optional[int] = None) -> List[Event]:
        query = self._select_events().where(events.c.uid == uid)
        if calendar_id is not None:
            query = query.where(events.c.calendar_id == calendar_id)
        with self._connect() as conn:
            rows = conn.execute(query.order_by(events.c.recurrence_id, events.c.start)).all()
        return [row_to_event(row) for row in rows]

    def get_event_by_href(self, calendar_id: int, href: str) -> Optional[Event]:
        with self._connect() as conn:
            row = conn.execute(
                self._select_events().where(
                    events.c.calendar_id == calendar_id,
                    events.c.recurrence_id == 0,
                    events.c.caldav_url == href,
                )
            ).first()
        return row_to_event(row) if row is not None else None

    def masters(self, calendar_id: int) -> List[Event]:
        with self._connect() as conn:
            rows = conn.execute(
                self._select_events()
                .where(events.c.calendar_id == calendar_id, events.c.recurrence_id == 0)
                .order_by(events.c.id)
            ).all()
        return [row_to_event(row) for row in rows]

    def children(self, master_id: int, exceptions: Optional[bool] = None) -> List[Event]:
        query = self._select_events().where(events.c.recurrence_id == master_id)
        if exceptions is not None:
            query = query.where(events.c.is_exception.is_(exceptions))
        with self._connect() as conn:
            rows = conn.execute(query.order_by(events.c.instance)).all()
        return [row_to_event(row) for row in rows]

    def series_rows(self, master_id: int) -> List[Event]:
        """The master and every row under it, master first"""
        master = self.get_event(master_id)
        if master is None:
            return []
        return [master] + self.children(master_id)

    def series_attachments(self, master_id: int) -> List[Attachment]:
        """Attachments of the master and every row under it, with data"""
        sql = (
            select(attachments)
            .join(events, attachments.c.event_id == events.c.id)
            .where(
                or_(events.c.id == master_id, events.c.recurrence_id == master_id),
                self._owned(events.c.calendar_id),
            )
            .order_by(attachments.c.id)
        )
        with self._connect() as conn:
            rows = conn.execute(sql).all()
        return [Attachment(**row._mapping) for row in rows]

    def restore_series(
        self, master_id: int, rows: Iterable[Event], saved_attachments: Iterable[Attachment] = ()
    ) -> None:
        """
        Put a series back the way series_rows() returned it, ids
        included.  Rows are updated in place and rows the series gained
        since are deleted, so attachments stay where they are.
        Attachments that went away with a deleted row are inserted again
        from saved_attachments.
        """
        rows = list(rows)
        saved_attachments = list(saved_attachments)
        ids = [row.id for row in rows]
        with self.transaction():
            with self._connect() as conn:
                conn.execute(
                    delete(events).where(
                        events.c.recurrence_id == master_id,
                        events.c.id.not_in(ids),
                        self._owned(events.c.calendar_id),
                    )
                )
                ## the restored instance keys may be taken by rows still to be restored
                conn.execute(
                    update(events)
                    .where(events.c.id.in_(ids), self._owned(events.c.calendar_id))
                    .values(instance=None)
                )
                existing = set(
                    conn.execute(select(events.c.id).where(events.c.id.in_(ids))).scalars()
                )
                for row in rows:
                    fields = {name: getattr(row, name) for name in EVENT_COLUMNS if name != "id"}
                    values = event_values(fields)
                    if row.id in existing:
                        conn.execute(update(events).where(events.c.id == row.id).values(**values))
                    else:
                        conn.execute(insert(events).values(id=row.id, **values))

                present = set(
                    conn.execute(
                        select(attachments.c.id).where(
                            attachments.c.id.in_([a.id for a in saved_attachments])
                        )
                    ).scalars()
                )
                for attachment in saved_attachments:
                    if attachment.id in present or attachment.event_id not in ids:
                        continue
                    conn.execute(
                        insert(attachments).values(
                            id=attachment.id,
                            event_id=attachment.event_id,
                            name=attachment.name,
                            mimetype=attachment.mimetype,
                            size=attachment.size,
                            data=attachment.data,
                        )
                    )

    def set_series_remote(self, master_id: int, url: Optional[str], etag: Optional[str]) -> int:
        with self._connect() as conn:
            result = conn.execute(
                update(events)
                .where(
                    or_(events.c.id == master_id, events.c.recurrence_id == master_id),
                    self._owned(events.c.calendar_id),
                )
                .values(caldav_url=url, caldav_tag=etag)
            )
            return result.rowcount

    def query_events(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        calendar_ids: Optional[Iterable[int]] = None,
        query: Optional[str] = None,
        modified_since: Optional[datetime] = None,
        masters_and_exceptions: bool = False,
    ) -> List[Event]:
        """
        Events overlapping [start, end] in the given (active, owned)
        calendars.  With masters_and_exceptions only the rows describing
        series are returned, not the generated occurrences.
        """
        allowed = set(self.calendar_ids(active_only=True))
        if calendar_ids is not None:
            allowed &= {int(i) for i in calendar_ids}
        if not allowed:
            return []
        sql = select(events).where(events.c.calendar_id.in_(sorted(allowed)))
        if start is not None:
            sql = sql.where(events.c.end >= to_db(start))
        if end is not None:
            sql = sql.where(events.c.start <= to_db(end))
        if modified_since is not None:
            sql = sql.where(events.c.changed >= to_db(modified_since))
        if masters_and_exceptions:
            sql = sql.where(or_(events.c.recurrence_id == 0, events.c.is_exception.is_(True)))
        if query:
            pattern = f"%{query}%"
            sql = sql.where(
                or_(
                    events.c.title.ilike(pattern),
                    events.c.location.ilike(pattern),
                    events.c.description.ilike(pattern),
                    events.c.categories.cast(Text).ilike(pattern),
                    events.c.attendees.cast(Text).ilike(pattern),
                )
            )
        with self._connect() as conn:
            rows = conn.execute(sql.order_by(events.c.start, events.c.id)).all()
        return [row_to_event(row) for row in rows]

    def pending_alarms(self, time: datetime, calendar_ids: Optional[Iterable[int]] = None) -> List[Event]:
        """Events of calendars showing alarms with notifyat due at `time`"""
        alarm_calendars = select(calendars.c.id).where(
            calendars.c.user_id == self.user_id,
            calendars.c.showalarms.is_(True),
            calendars.c.active.is_(True),
        )
        sql = select(events).where(
            events.c.calendar_id.in_(alarm_calendars),
            events.c.notifyat.is_not(None),
            events.c.notifyat <= to_db(time),
            events.c.end > to_db(time),
        )
        if calendar_ids is not None:
            sql = sql.where(events.c.calendar_id.in_([int(i) for i in calendar_ids]))
        with self._connect() as conn:
            rows = conn.execute(sql.order_by(events.c.notifyat)).all()
        return [row_to_event(row) for row in rows]

    def replace_category(self, name: str, new_name: Optional[str] = None) -> int:
        """
        Rename a category on every event of the user, or drop it when
        new_name is empty.  Returns the number of rows changed.
        """
        changed = 0
        with self._connect() as conn:
            rows = conn.execute(
                select(events.c.id, events.c.categories).where(
                    self._owned(events.c.calendar_id),
                    events.c.categories.cast(Text).like(f"%{name}%"),
                )
            ).all()
            for row_id, categories in rows:
                if not categories or name not in categories:
                    continue
                result = []
                for category in categories:
                    if category == name:
                        category = new_name
                    if category and category not in result:
                        result.append(category)
                conn.execute(update(events).where(events.c.id == row_id).values(categories=result))
                changed += 1
        return changed

    ## attachments

    def _owned_event_ids(self):
        return select(events.c.id).where(self._owned(events.c.calendar_id))

    def insert_attachment(self, event_id: int, attachment: Attachment) -> int:
        data = attachment.data or b""
        with self._connect() as conn:
            owned = conn.execute(
                self._owned_event_ids().where(events.c.id == event_id)
            ).first()
            if owned is None:
                raise error.StoreError(reason=f"no such event: {event_id}")
            result = conn.execute(
                insert(attachments).values(
                    event_id=event_id,
                    name=attachment.name,
                    mimetype=attachment.mimetype,
                    size=attachment.size or len(data),
                    data=data,
                )
            )
            return result.inserted_primary_key[0]

    def list_attachments(self, event_id: int, with_data: bool = False) -> List[Attachment]:
        columns = [attachments.c.id, attachments.c.event_id, attachments.c.name,
                   attachments.c.mimetype, attachments.c.size]
        if with_data:
            columns.append(attachments.c.data)
        sql = (
            select(*columns)
            .where(attachments.c.event_id == event_id)
            .where(attachments.c.event_id.in_(self._owned_event_ids()))
            .order_by(attachments.c.id)
        )
        with self._connect() as conn:
            rows = conn.execute(sql).all()
        return [Attachment(**row._mapping) for row in rows]

    def get_attachment(self, attachment_id: int, event_id: Optional[int] = None,
                       with_data: bool = False) -> Optional[Attachment]:
        columns = [attachments.c.id, attachments.c.event_id, attachments.c.name,
                   attachments.c.mimetype, attachments.c.size]
        if with_data:
            columns.append(attachments.c.data)
        sql = select(*columns).where(
            attachments.c.id == attachment_id,
            attachments.c.event_id.in_(self._owned_event_ids()),
        )
        if event_id is not None:
            sql = sql.where(attachments.c.event_id == event_id)
        with self._connect() as conn:
            row = conn.execute(sql).first()
        return Attachment(**row._mapping) if row is not None else None

    def delete_attachment(self, attachment_id: int, event_id: Optional[int] = None) -> bool:
        sql = delete(attachments).where(
            attachments.c.id == attachment_id,
            attachments.c.event_id.in_(self._owned_event_ids()),
        )
        if event_id is not None:
            sql = sql.where(attachments.c.event_id == event_id)
        with self._connect() as conn:
            return conn.execute(sql).rowcount > 0

    ## users

    def delete_user(self) -> None:
        """Remove everything the user owns"""
        with self.transaction():
            with self._connect() as conn:
                conn.execute(delete(events).where(self._owned(events.c.calendar_id)))
                conn.execute(delete(calendars).where(calendars.c.user_id == self.user_id))
                conn.execute(delete(sources).where(sources.c.user_id == self.user_id))
