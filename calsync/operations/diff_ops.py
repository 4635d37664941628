"""
Change detection - Sans-I/O.

Compares what the server lists for a collection, (href, etag) pairs,
with the (caldav_url, caldav_tag) pairs of the locally stored masters
of the same calendar.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timedelta
from typing import Any
from typing import Dict
from typing import Iterable
from typing import List
from typing import Optional
from typing import Sequence
from typing import Set
from typing import Tuple

from calsync.lib.url import canonical_href

CREATE = "create"
UPDATE = "update"

## all-day events are stored with an inclusive end, servers send an
## exclusive one
ALL_DAY_END_OFFSET = timedelta(hours=1)


@dataclass
class RemoteUpdate:
    """One remote item that has to be fetched and written locally"""

    kind: str
    href: str
    etag: Optional[str]
    ## id of the local master for updates
    local_id: Optional[int] = None


@dataclass
class DiffResult:
    updates: List[RemoteUpdate] = field(default_factory=list)
    synced_ids: List[int] = field(default_factory=list)

    @property
    def updated_ids(self) -> List[int]:
        return [u.local_id for u in self.updates if u.local_id is not None]


def _local_index(local_items: Iterable[Any]) -> Dict[str, Any]:
    index = {}
    for item in local_items:
        key = canonical_href(getattr(item, "caldav_url", None))
        if key:
            index[key] = item
    return index


def diff(local_items: Iterable[Any], remote_listing: Sequence[Tuple[str, Optional[str]]]) -> DiffResult:
    """
    Classify every remote listing entry.

    Args:
        local_items: Local masters of the calendar.  Anything with id,
            caldav_url and caldav_tag attributes will do.
        remote_listing: (href, etag) pairs from the server

    Returns:
        DiffResult.  updates holds a "create" for every href without a
        local match and an "update" for every href whose etag differs;
        synced_ids the ids of local items matching href and etag exactly.
    """
    index = _local_index(local_items)
    result = DiffResult()
    seen: Set[str] = set()
    for href, etag in remote_listing:
        key = canonical_href(href)
        if not key or key in seen:
            continue
        seen.add(key)
        local = index.get(key)
        if local is None:
            result.updates.append(RemoteUpdate(kind=CREATE, href=href, etag=etag))
        elif local.caldav_tag != etag:
            result.updates.append(
                RemoteUpdate(kind=UPDATE, href=href, etag=etag, local_id=local.id)
            )
        else:
            result.synced_ids.append(local.id)
    return result


def orphans(local_items: Iterable[Any], synced_ids: Iterable[int], updated_ids: Iterable[int]) -> List[Any]:
    """Local items the server no longer knows about"""
    keep = set(synced_ids) | set(updated_ids)
    return [item for item in local_items if item.id not in keep]


def classify(
    local_items: Iterable[Any], remote_listing: Sequence[Tuple[str, Optional[str]]]
) -> Dict[str, Set[str]]:
    """
    The href view of a diff: sets of canonical hrefs to create, update,
    delete (orphan) and leave alone (synced).  The first three never
    overlap.
    """
    local_items = list(local_items)
    index = _local_index(local_items)
    result = diff(local_items, remote_listing)
    by_id = {item.id: key for key, item in index.items()}
    created = {canonical_href(u.href) for u in result.updates if u.kind == CREATE}
    updated = {canonical_href(u.href) for u in result.updates if u.kind == UPDATE}
    synced = {by_id[i] for i in result.synced_ids if i in by_id}
    orphaned = {
        canonical_href(item.caldav_url)
        for item in orphans(local_items, result.synced_ids, result.updated_ids)
        if item.caldav_url
    }
    return {"create": created, "update": updated, "orphan": orphaned, "synced": synced}


def fake_ctag(remote_listing: Iterable[Tuple[str, Optional[str]]]) -> str:
    """
    A collection tag for sources that have none (ICS snapshots): a hash
    of all etags.
    """
    etags = sorted(str(etag if etag is not None else href) for href, etag in remote_listing)
    combined = "|".join(etags)
    return "fake-" + hashlib.md5(combined.encode()).hexdigest()


def content_etag(data: Any) -> str:
    """An etag for an item that comes without one"""
    if isinstance(data, str):
        data = data.encode("utf-8")
    return '"' + hashlib.md5(data).hexdigest() + '"'


def normalize_all_day_end(start: datetime, end: Optional[datetime], all_day: bool) -> Optional[datetime]:
    """Exclusive remote end to inclusive stored end"""
    if not all_day or end is None:
        return end
    if end > start:
        return end - ALL_DAY_END_OFFSET
    return end


def denormalize_all_day_end(start: datetime, end: Optional[datetime], all_day: bool) -> Optional[datetime]:
    """Inclusive stored end back to the exclusive end sent to servers"""
    if not all_day or end is None:
        return end
    return end + ALL_DAY_END_OFFSET
