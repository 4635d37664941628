"""
Core protocol types of the CalDAV transport.

These dataclasses represent responses and parsed results at the
protocol level, independent of the HTTP library doing the I/O.
"""

from dataclasses import dataclass, field
from typing import Any


@dataclass(frozen=True)
class DAVResponse:
    """
    Represents an HTTP response received.

    Attributes:
        status: HTTP status code
        headers: HTTP headers as dict
        body: Response body as bytes
        url: The URL the request went to
    """

    status: int
    headers: dict[str, str]
    body: bytes
    url: str = ""

    @property
    def ok(self) -> bool:
        """True if status indicates success (2xx)."""
        return 200 <= self.status < 300

    @property
    def etag(self) -> str | None:
        for key, value in self.headers.items():
            if key.lower() == "etag":
                return value
        return None

    @property
    def reason(self) -> str:
        """Return a reason phrase for the status code."""
        reasons = {
            200: "OK",
            201: "Created",
            204: "No Content",
            207: "Multi-Status",
            400: "Bad Request",
            401: "Unauthorized",
            403: "Forbidden",
            404: "Not Found",
            405: "Method Not Allowed",
            409: "Conflict",
            412: "Precondition Failed",
            500: "Internal Server Error",
            503: "Service Unavailable",
        }
        return reasons.get(self.status, "Unknown")


@dataclass
class PropfindResult:
    """
    Parsed result of a PROPFIND request for a single resource.

    Attributes:
        href: Path of the resource
        properties: Dict of property tag -> value
        status: HTTP status for this resource (default 200)
    """

    href: str
    properties: dict[str, Any] = field(default_factory=dict)
    status: int = 200


@dataclass
class CalendarQueryResult:
    """
    Parsed result of a calendar-query REPORT for a single object.

    Attributes:
        href: Path of the calendar object
        etag: ETag of the object
        calendar_data: iCalendar data, when asked for
        status: HTTP status for this resource (default 200)
    """

    href: str
    etag: str | None = None
    calendar_data: str | None = None
    status: int = 200


@dataclass
class MultistatusResponse:
    """
    Parsed multi-status response containing multiple results.

    Attributes:
        responses: List of individual response results
    """

    responses: list[PropfindResult] = field(default_factory=list)


@dataclass
class CalendarInfo:
    """
    A calendar collection found during discovery.

    Attributes:
        href: Path of the collection
        name: Display name (falls back to the last path segment)
        color: Six digit hex color without "#", None if the server has none
    """

    href: str
    name: str
    color: str | None = None
