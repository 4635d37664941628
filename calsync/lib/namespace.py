#!/usr/bin/env python
from typing import Any
from typing import Dict
from typing import Optional

nsmap: Dict[str, str] = {
    "D": "DAV:",
    "C": "urn:ietf:params:xml:ns:caldav",
}

## getctag lives in the calendarserver.org namespace, and calendar-color
## in the apple one.  Neither is described in any RFC, but practically
## every server supports them.  They are only used in the requests that
## need them.
nsmap2: Dict[str, Any] = nsmap.copy()
nsmap2["CS"] = "http://calendarserver.org/ns/"
nsmap2["I"] = "http://apple.com/ns/ical/"


def ns(prefix: str, tag: Optional[str] = None) -> str:
    name = "{%s}" % nsmap2[prefix]
    if tag is not None:
        name = "%s%s" % (name, tag)
    return name
