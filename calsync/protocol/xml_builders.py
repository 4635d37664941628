"""
Pure functions for building CalDAV XML request bodies.

All functions in this module are pure - they take data in and return XML out,
with no side effects or I/O.
"""
from typing import Any
from typing import Dict
from typing import List
from typing import Optional

from lxml import etree

from calsync.lib.namespace import ns
from calsync.lib.namespace import nsmap2


def _tostring(root) -> bytes:
    return etree.tostring(root, encoding="utf-8", xml_declaration=True)


def _sub(parent, tag: str, text: Optional[str] = None):
    elem = etree.SubElement(parent, tag)
    if text is not None:
        elem.text = text
    return elem


def build_propfind_body(props: Optional[List[str]] = None) -> bytes:
    """
    Build PROPFIND request body XML.

    Args:
        props: Property tags in clark notation, e.g. "{DAV:}getetag".  An
            empty propfind is built when none are given.

    Returns:
        UTF-8 encoded XML bytes
    """
    propfind = etree.Element(ns("D", "propfind"), nsmap=nsmap2)
    prop = _sub(propfind, ns("D", "prop"))
    for tag in props or []:
        _sub(prop, tag)
    return _tostring(propfind)


def _set_props(parent, set_props: Dict[str, Any]) -> None:
    prop = _sub(_sub(parent, ns("D", "set")), ns("D", "prop"))
    for tag, value in set_props.items():
        if value is None:
            continue
        if tag == ns("D", "resourcetype"):
            elem = _sub(prop, tag)
            for child in value:
                _sub(elem, child)
        elif tag == ns("C", "supported-calendar-component-set"):
            elem = _sub(prop, tag)
            for comp in value:
                _sub(elem, ns("C", "comp")).set("name", comp)
        else:
            _sub(prop, tag, str(value))


def build_proppatch_body(set_props: Optional[Dict[str, Any]] = None) -> bytes:
    """
    Build PROPPATCH request body for setting properties.

    Args:
        set_props: Properties to set (clark tag -> value)

    Returns:
        UTF-8 encoded XML bytes
    """
    update = etree.Element(ns("D", "propertyupdate"), nsmap=nsmap2)
    if set_props:
        _set_props(update, set_props)
    return _tostring(update)


def build_mkcalendar_body(
    displayname: Optional[str] = None,
    color: Optional[str] = None,
    supported_components: Optional[List[str]] = None,
) -> bytes:
    """
    Build MKCALENDAR request body.

    Args:
        displayname: Calendar display name
        color: Hex color, with or without "#"
        supported_components: List of component types (VEVENT, VTODO, ...)

    Returns:
        UTF-8 encoded XML bytes
    """
    mkcalendar = etree.Element(ns("C", "mkcalendar"), nsmap=nsmap2)
    props: Dict[str, Any] = {}
    if displayname:
        props[ns("D", "displayname")] = displayname
    if color:
        props[ns("I", "calendar-color")] = "#" + color.lstrip("#")
    if supported_components:
        props[ns("C", "supported-calendar-component-set")] = supported_components
    if props:
        _set_props(mkcalendar, props)
    return _tostring(mkcalendar)


def build_calendar_query_body(comp: str = "VEVENT", with_data: bool = False) -> bytes:
    """
    Build a calendar-query REPORT body listing every object with a
    component of the given type, with its etag.

    Args:
        comp: Component type filter
        with_data: Also ask for the calendar data

    Returns:
        UTF-8 encoded XML bytes
    """
    query = etree.Element(ns("C", "calendar-query"), nsmap=nsmap2)
    prop = _sub(query, ns("D", "prop"))
    _sub(prop, ns("D", "getetag"))
    if with_data:
        _sub(prop, ns("C", "calendar-data"))
    filter_ = _sub(query, ns("C", "filter"))
    vcalendar = _sub(filter_, ns("C", "comp-filter"))
    vcalendar.set("name", "VCALENDAR")
    _sub(vcalendar, ns("C", "comp-filter")).set("name", comp)
    return _tostring(query)
