#!/usr/bin/env python
import logging

__version__ = "0.3.0"

## Silence notification of no default logging handler.  Applications
## embedding calsync configure handlers on the "calsync" logger themselves.
log = logging.getLogger("calsync")


class NullHandler(logging.Handler):
    def emit(self, record) -> None:
        pass


log.addHandler(NullHandler())

from .driver import CalendarDriver  # noqa: E402

__all__ = ["__version__", "CalendarDriver"]
