"""
Sans-I/O CalDAV protocol layer.

Builds request bodies and parses responses as pure data
transformations.  calsync.davclient does the I/O.

The protocol layer is organized into:
- types: Core data structures (DAVResponse, result types)
- xml_builders: Pure functions to build XML request bodies
- xml_parsers: Pure functions to parse XML response bodies
"""

from .types import (
    CalendarInfo,
    CalendarQueryResult,
    DAVResponse,
    MultistatusResponse,
    PropfindResult,
)
from .xml_builders import (
    build_calendar_query_body,
    build_mkcalendar_body,
    build_propfind_body,
    build_proppatch_body,
)
from .xml_parsers import (
    normalize_color,
    parse_calendar_list,
    parse_calendar_query_response,
    parse_multistatus,
    parse_propfind_response,
)

__all__ = [
    "CalendarInfo",
    "CalendarQueryResult",
    "DAVResponse",
    "MultistatusResponse",
    "PropfindResult",
    "build_calendar_query_body",
    "build_mkcalendar_body",
    "build_propfind_body",
    "build_proppatch_body",
    "normalize_color",
    "parse_calendar_list",
    "parse_calendar_query_response",
    "parse_multistatus",
    "parse_propfind_response",
]
