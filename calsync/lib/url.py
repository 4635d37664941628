#!/usr/bin/env python
import re
from typing import Optional
from urllib.parse import quote
from urllib.parse import unquote
from urllib.parse import urljoin
from urllib.parse import urlsplit


def encode_url(url: str) -> str:
    """
    Percent-encode the path segments of a server URL typed in by a user,
    i.e. "https://cal.example/dav/my calendars/" becomes
    "https://cal.example/dav/my%20calendars/".

    URLs already containing a "%" are assumed to be encoded and are
    returned untouched.
    """
    if "%" in url:
        return url

    def _encode(match):
        segments = match.group(2).split("/")
        return "://" + match.group(1) + "/" + "/".join(quote(x) for x in segments)

    return re.sub(r"://([^/]+)/([^?]+)", _encode, url, count=1)


def canonical_href(href: Optional[str]) -> Optional[str]:
    """
    The matching key used when comparing remote hrefs with locally
    stored URLs.  Servers return hrefs as absolute URLs or as absolute
    paths, quoted or unquoted - this reduces all of them to an unquoted
    path with no double slashes.
    """
    if not href:
        return href
    # Fix for double-encoded URLs (e.g., Confluence)
    if "%2540" in href:
        href = href.replace("%2540", "%40")
    path = urlsplit(href).path if "://" in href else href
    path = unquote(path)
    while "//" in path:
        path = path.replace("//", "/")
    return path


def join(base: str, href: str) -> str:
    """Resolve an href returned by the server against the collection URL"""
    if "://" in href:
        return href
    if not base.endswith("/") and not href.startswith("/"):
        base += "/"
    return urljoin(base, href)


def base_uri(url: str) -> str:
    """scheme://host[:port] of an URL"""
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"
