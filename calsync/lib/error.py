#!/usr/bin/env python
import logging
import os
from typing import Optional

from calsync import __version__

## Environmental variables prepended with "PYTHON_CALSYNC" are used for
## debug purposes.  One of DEBUG_PDB, DEBUG, DEVELOPMENT, PRODUCTION
debugmode = os.environ.get("PYTHON_CALSYNC_DEBUGMODE")
if not debugmode:
    if "dev" in __version__:
        debugmode = "DEVELOPMENT"
    else:
        debugmode = "PRODUCTION"

log = logging.getLogger("calsync")
if debugmode.startswith("DEBUG"):
    log.setLevel(logging.DEBUG)
else:
    log.setLevel(logging.WARNING)


def weirdness(*reasons) -> None:
    reason = " : ".join([str(x) for x in reasons])
    log.warning(f"Deviation from expectations found: {reason}")
    if debugmode == "DEBUG_PDB":
        log.error(f"Dropping into debugger due to {reason}")
        import pdb

        pdb.set_trace()


class CalSyncError(Exception):
    url: Optional[str] = None
    reason: str = "no reason"

    def __init__(self, url: Optional[str] = None, reason: Optional[str] = None) -> None:
        if url:
            self.url = url
        if reason:
            self.reason = reason

    def __str__(self) -> str:
        return "%s at '%s', reason %s" % (
            self.__class__.__name__,
            self.url,
            self.reason,
        )


class ValidationError(CalSyncError):
    """
    The event or calendar given by the caller is malformed.  Raised
    before any store or remote communication takes place.
    """

    pass


class RemoteTransportError(CalSyncError):
    """
    The CalDAV server could not be reached, or answered with an
    unexpected HTTP status.
    """

    pass


class AuthorizationError(RemoteTransportError):
    """
    The server answered 401 or 403.  The url property will contain the
    url in question, the reason property will contain the excuse the
    server sent.
    """

    pass


class RemoteConflictError(CalSyncError):
    """
    The server refused a conditional PUT or DELETE because the ETag we
    sent is no longer current (HTTP 412).
    """

    pass


class StoreError(CalSyncError):
    pass


class NotFoundError(RemoteTransportError):
    pass


class PutError(RemoteTransportError):
    pass


class DeleteError(RemoteTransportError):
    pass


class PropfindError(RemoteTransportError):
    pass


class MkcalendarError(RemoteTransportError):
    pass


class ResponseError(RemoteTransportError):
    pass
