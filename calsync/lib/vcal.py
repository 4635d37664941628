#!/usr/bin/env python
import difflib
import logging
import re

import icalendar

from calsync.lib.python_utilities import to_normal_str

log = logging.getLogger("calsync")

PRODID = "-//calsync//calsync//EN"

## Global counter, the fixup warning is rate limited
fixup_error_loggings = 0


def fix(data):
    """Receives ical data as it comes from the server or an ICS feed,
    and fixes up known breakages of the standard before it is parsed:

    1) CREATED timestamps in year 0001 (Google Calendar) are moved to
    the epoch.

    2) Trailing white space on content lines is removed.

    3) Duplicated DTSTAMP lines (iCloud) - the first one is kept.

    4) Events carrying both DTEND and DURATION (Zimbra) - whatever
    comes last is dropped.

    5) Line endings are normalized and a final newline is added.
    """
    data = to_normal_str(data).replace("\r\n", "\n")
    if not data.endswith("\n"):
        data = data + "\n"

    fixed = re.sub("CREATED:00001231T000000Z", "CREATED:19700101T000000Z", data)
    fixed = re.sub(" +$", "", fixed, flags=re.MULTILINE)

    fixed2 = (
        "\n".join(filter(LineFilterDiscardingDuplicates(), fixed.strip().split("\n")))
        + "\n"
    )

    if fixed2 != data:
        ## Log at warning level only for the 1st, 2nd, 4th, 8th ... fixup
        global fixup_error_loggings
        fixup_error_loggings += 1
        if not (fixup_error_loggings & (fixup_error_loggings - 1)):
            logfunc = log.warning
        else:
            logfunc = log.debug
        message = [
            "Ical data was modified to avoid compatibility issues",
            f"(error count: {fixup_error_loggings} - this error is ratelimited)",
        ]
        diff = difflib.unified_diff(data.split("\n"), fixed2.split("\n"), lineterm="")
        logfunc("\n".join(message + list(diff)))

    return fixed2


class LineFilterDiscardingDuplicates:
    """Line filter keeping track of DTSTAMP and DTEND/DURATION lines
    seen within the current component.  Must be called line by line,
    in order.
    """

    def __init__(self) -> None:
        self.stamped = 0
        self.ended = 0

    def __call__(self, line):
        if line.startswith("BEGIN:V"):
            self.stamped = 0
            self.ended = 0

        elif re.match("(DURATION|DTEND)[:;]", line):
            if self.ended:
                return False
            self.ended += 1

        elif re.match("DTSTAMP[:;]", line):
            if self.stamped:
                return False
            self.stamped += 1

        return True


def parse(data):
    """Parse (fixed up) ical data into an icalendar.Calendar"""
    return icalendar.Calendar.from_ical(fix(data))


def new_calendar(method=None):
    """An empty VCALENDAR with the mandatory properties"""
    cal = icalendar.Calendar()
    cal.add("prodid", PRODID)
    cal.add("version", "2.0")
    if method:
        cal.add("method", method)
    return cal
