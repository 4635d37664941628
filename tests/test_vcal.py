#!/usr/bin/env python
from unittest import TestCase

from calsync.lib import vcal
from calsync.lib.python_utilities import to_normal_str
from calsync.lib.python_utilities import to_wire
from calsync.lib.vcal import fix

# example from http://www.rfc-editor.org/rfc/rfc5545.txt
ev = """BEGIN:VCALENDAR
VERSION:2.0
PRODID:-//Example Corp.//CalDAV Client//EN
BEGIN:VEVENT
UID:19970901T130000Z-123403@example.com
DTSTAMP:19970901T130000Z
DTSTART;VALUE=DATE:19971102
SUMMARY:Our Blissful Anniversary
TRANSP:TRANSPARENT
CLASS:CONFIDENTIAL
CATEGORIES:ANNIVERSARY,PERSONAL,SPECIAL OCCASION
RRULE:FREQ=YEARLY
END:VEVENT
END:VCALENDAR
"""


class TestVcal(TestCase):
    def test_valid_data_is_untouched(self):
        assert fix(ev) == ev

    def test_line_endings(self):
        assert fix(ev.replace("\n", "\r\n")) == ev
        assert fix(ev.rstrip("\n")) == ev

    def test_bytes(self):
        assert fix(ev.encode("utf-8")) == ev

    def test_duplicated_dtstamp(self):
        broken = ev.replace("DTSTAMP:19970901T130000Z\n", "DTSTAMP:19970901T130000Z\nDTSTAMP:19970902T130000Z\n")
        fixed = fix(broken)
        assert fixed.count("DTSTAMP") == 1
        assert "DTSTAMP:19970901T130000Z" in fixed

    def test_dtend_and_duration(self):
        broken = ev.replace("SUMMARY:", "DTEND;VALUE=DATE:19971103\nDURATION:P1D\nSUMMARY:")
        fixed = fix(broken)
        assert "DTEND;VALUE=DATE:19971103" in fixed
        assert "DURATION" not in fixed

    def test_trailing_whitespace(self):
        broken = ev.replace("SUMMARY:Our Blissful Anniversary", "SUMMARY:Our Blissful Anniversary   ")
        assert fix(broken) == ev

    def test_created_in_year_one(self):
        broken = ev.replace("DTSTART;", "CREATED:00001231T000000Z\nDTSTART;")
        assert "CREATED:19700101T000000Z" in fix(broken)

    def test_parse(self):
        cal = vcal.parse(ev)
        (event,) = cal.walk("VEVENT")
        assert str(event["SUMMARY"]) == "Our Blissful Anniversary"

    def test_new_calendar(self):
        cal = vcal.new_calendar("REQUEST")
        data = to_normal_str(cal.to_ical())
        assert "PRODID:-//calsync//calsync//EN" in data
        assert "METHOD:REQUEST" in data
        assert "METHOD" not in to_normal_str(vcal.new_calendar().to_ical())


class TestPythonUtilities(TestCase):
    def test_to_wire(self):
        assert to_wire("a\nb") == b"a\r\nb"
        assert to_wire("a\r\nb") == b"a\r\nb"
        assert to_wire(None) is None

    def test_to_normal_str(self):
        assert to_normal_str(b"a\r\nb") == "a\nb"
        assert to_normal_str(None) is None
