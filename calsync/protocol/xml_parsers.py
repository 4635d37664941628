"""
Pure functions for parsing CalDAV XML responses.

All functions in this module are pure - they take XML bytes in and return
structured data out, with no side effects or I/O.
"""

import logging
import re
from typing import Any
from urllib.parse import unquote
from urllib.parse import urlsplit

from lxml import etree
from lxml.etree import _Element

from calsync.lib import error
from calsync.lib.namespace import ns

from .types import CalendarInfo, CalendarQueryResult, MultistatusResponse, PropfindResult

log = logging.getLogger("calsync")

RESPONSE = ns("D", "response")
MULTISTATUS = ns("D", "multistatus")
HREF = ns("D", "href")
STATUS = ns("D", "status")
PROPSTAT = ns("D", "propstat")
PROP = ns("D", "prop")
GETETAG = ns("D", "getetag")
RESOURCETYPE = ns("D", "resourcetype")
DISPLAYNAME = ns("D", "displayname")
CURRENT_USER_PRINCIPAL = ns("D", "current-user-principal")
CALENDAR_HOME_SET = ns("C", "calendar-home-set")
CALENDAR_DATA = ns("C", "calendar-data")
CALENDAR = ns("C", "calendar")
CALENDAR_COLOR = ns("I", "calendar-color")
GETCTAG = ns("CS", "getctag")

DEFAULT_COLOR = "cc0000"


def parse_multistatus(body: bytes, huge_tree: bool = False) -> MultistatusResponse:
    """
    Parse a 207 Multi-Status response body.

    Args:
        body: Raw XML response bytes
        huge_tree: Allow parsing very large XML documents

    Returns:
        Structured MultistatusResponse with parsed results

    Raises:
        ResponseError: If the body is not valid XML, or a response
            carries an error status
    """
    tree = _parse(body, huge_tree)
    responses: list[PropfindResult] = []
    for elem in _strip_to_multistatus(tree):
        if elem.tag != RESPONSE:
            continue
        href, propstats, status = _parse_response_element(elem)
        responses.append(
            PropfindResult(
                href=href,
                properties=_extract_properties(propstats),
                status=_status_to_code(status),
            )
        )
    return MultistatusResponse(responses=responses)


def parse_propfind_response(
    body: bytes, status_code: int = 207, huge_tree: bool = False
) -> list[PropfindResult]:
    """
    Parse a PROPFIND response.

    Returns:
        List of PropfindResult with properties for each resource, empty
        for 404
    """
    if status_code == 404:
        return []
    if status_code not in (200, 207):
        raise error.PropfindError(reason=f"PROPFIND failed with status {status_code}")
    if not body:
        return []
    return parse_multistatus(body, huge_tree=huge_tree).responses


def parse_calendar_query_response(
    body: bytes, status_code: int = 207, huge_tree: bool = False
) -> list[CalendarQueryResult]:
    """
    Parse a calendar-query REPORT response.

    Returns:
        List of CalendarQueryResult with etag (and calendar data, if it
        was asked for)
    """
    if status_code not in (200, 207):
        raise error.ResponseError(reason=f"REPORT failed with status {status_code}")
    if not body:
        return []

    results: list[CalendarQueryResult] = []
    for elem in _strip_to_multistatus(_parse(body, huge_tree)):
        if elem.tag != RESPONSE:
            continue
        href, propstats, status = _parse_response_element(elem)
        calendar_data: str | None = None
        etag: str | None = None
        for propstat in propstats:
            prop = propstat.find(PROP)
            if prop is None:
                continue
            for child in prop:
                if child.tag == CALENDAR_DATA:
                    calendar_data = child.text
                elif child.tag == GETETAG:
                    etag = child.text
        results.append(
            CalendarQueryResult(
                href=href,
                etag=etag,
                calendar_data=calendar_data,
                status=_status_to_code(status),
            )
        )
    return results


def parse_calendar_list(
    results: list[PropfindResult], home: str | None = None
) -> list[CalendarInfo]:
    """
    Pick the calendar collections out of a depth 1 PROPFIND on a
    calendar home.  The home itself is skipped.
    """
    calendars = []
    home_path = _path(home) if home else None
    for result in results:
        if home_path and _path(result.href).rstrip("/") == home_path.rstrip("/"):
            continue
        resource_types = result.properties.get(RESOURCETYPE) or []
        if not isinstance(resource_types, list):
            resource_types = [resource_types]
        if CALENDAR not in resource_types:
            continue
        name = result.properties.get(DISPLAYNAME)
        if not name:
            name = unquote(result.href.rstrip("/").rsplit("/", 1)[-1])
        calendars.append(
            CalendarInfo(
                href=result.href,
                name=name,
                color=normalize_color(result.properties.get(CALENDAR_COLOR)),
            )
        )
    return calendars


def normalize_color(color: Any) -> str | None:
    """
    Servers send "#abc", "#aabbcc" or "#aabbccdd" (with alpha).  Return
    six hex digits without "#", or None for anything else.
    """
    if not color or not isinstance(color, str):
        return None
    color = color.strip().lstrip("#")
    if re.fullmatch(r"[0-9a-fA-F]{3}", color):
        return "".join(c * 2 for c in color).lower()
    if re.fullmatch(r"[0-9a-fA-F]{6}([0-9a-fA-F]{2})?", color):
        return color[:6].lower()
    return None


# Helper functions


def _parse(body: bytes, huge_tree: bool = False) -> _Element:
    parser = etree.XMLParser(huge_tree=huge_tree)
    try:
        return etree.fromstring(body, parser)
    except etree.XMLSyntaxError as e:
        raise error.ResponseError(reason=f"invalid XML in response: {e}")


def _strip_to_multistatus(tree: _Element) -> _Element | list[_Element]:
    """
    Strip outer elements to get to the multistatus content.

    The general format is:
        <xml><multistatus>
            <response>...</response>
            <response>...</response>
        </multistatus></xml>

    But sometimes multistatus and/or xml element is missing.
    Returns the element(s) containing responses.
    """
    if tree.tag == "xml" and len(tree) > 0 and tree[0].tag == MULTISTATUS:
        return tree[0]
    if tree.tag == MULTISTATUS:
        return tree
    return [tree]


def _path(href: str) -> str:
    href = href or ""
    # Fix for double-encoded URLs (e.g., Confluence)
    if "%2540" in href:
        href = href.replace("%2540", "%40")
    if "://" in href:
        href = urlsplit(href).path
    return unquote(href)


def _parse_response_element(
    response: _Element,
) -> tuple[str, list[_Element], str | None]:
    """
    Parse a single DAV:response element.

    Returns:
        Tuple of (href, propstat elements list, status string)
    """
    status: str | None = None
    href: str | None = None
    propstats: list[_Element] = []

    for elem in response:
        if elem.tag == STATUS:
            status = elem.text
            _validate_status(status)
        elif elem.tag == HREF:
            href = _path(elem.text or "")
        elif elem.tag == PROPSTAT:
            propstats.append(elem)

    return (href or "", propstats, status)


def _extract_properties(propstats: list[_Element]) -> dict[str, Any]:
    """
    Extract properties from propstat elements into a dict.

    Args:
        propstats: List of propstat elements

    Returns:
        Dict mapping property tag to value (text, or a list/str for
        known complex properties)
    """
    properties: dict[str, Any] = {}

    for propstat in propstats:
        # Check status - skip 404 properties
        status_elem = propstat.find(STATUS)
        if status_elem is not None and status_elem.text:
            if " 404 " in status_elem.text:
                continue

        prop = propstat.find(PROP)
        if prop is None:
            continue

        for child in prop:
            if child.tag == RESOURCETYPE:
                properties[child.tag] = [c.tag for c in child]
            elif len(child) == 0:
                properties[child.tag] = child.text
            else:
                properties[child.tag] = _element_to_value(child)

    return properties


def _element_to_value(elem: _Element) -> Any:
    """
    Convert an XML element with children to a Python value.  Hrefs
    (current-user-principal, calendar-home-set) become their text.
    """
    hrefs = [child.text for child in elem if child.tag == HREF and child.text]
    if hrefs:
        return hrefs[0] if len(hrefs) == 1 else hrefs

    children_texts = []
    for child in elem:
        if child.text:
            children_texts.append(child.text)
        elif child.get("name"):
            children_texts.append(child.get("name"))
        elif len(child) == 0:
            children_texts.append(child.tag)

    if len(children_texts) == 1:
        return children_texts[0]
    return children_texts


def _validate_status(status: str | None) -> None:
    """
    Validate a status string like "HTTP/1.1 404 Not Found".

    200, 201, 207, and 404 are considered acceptable statuses.

    Raises:
        ResponseError: If status indicates an error
    """
    if status is None:
        return

    acceptable = (" 200 ", " 201 ", " 207 ", " 404 ")
    if not any(code in status for code in acceptable):
        raise error.ResponseError(reason=status)


def _status_to_code(status: str | None) -> int:
    """
    Extract status code from status string like "HTTP/1.1 200 OK".

    Returns:
        Integer status code (defaults to 200 if parsing fails)
    """
    if not status:
        return 200

    parts = status.split()
    if len(parts) >= 2:
        try:
            return int(parts[1])
        except ValueError:
            pass

    return 200
