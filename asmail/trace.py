#!/usr/bin/env python
#
# File: $Id$
#
"""
Support for writing protocol trace records.

Every chunk of data we send to or receive from an IMAP server can be written
to the `asmail.trace` logger as a json record. Tracing is off unless it has
been turned on with `enable_tracing()` (the command line tool does this for
`--trace`.)
"""

# system imports
#
import json
import logging
import time
from typing import Any, Dict, Optional

log = logging.getLogger("asmail.trace_setup")
trace_logger = logging.getLogger("asmail.trace")
trace_enabled = False


########################################################################
########################################################################
#
class TraceFormatter(logging.Formatter):
    """
    A formatter that logs, instead of the wall clock time, the time since
    the formatter was created and the time since the last record.
    """

    ####################################################################
    #
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.start = time.time()
        self.last_time = self.start

    ####################################################################
    #
    def formatTime(self, record, datefmt=None):
        now = time.time()
        delta = now - self.start
        delta_trace = now - self.last_time
        self.last_time = now
        return "{:13.4f} {:8.4f}".format(delta, delta_trace)


####################################################################
#
def enable_tracing(handler: Optional[logging.Handler] = None):
    """
    Turn on tracing. If a handler is given trace records go to it (using the
    TraceFormatter), otherwise they go wherever the logging config sends the
    `asmail.trace` logger.
    """
    global trace_enabled
    trace_enabled = True
    trace_logger.setLevel(logging.INFO)
    if handler is not None:
        handler.setLevel(logging.INFO)
        handler.setFormatter(TraceFormatter("%(asctime)s %(message)s"))
        trace_logger.addHandler(handler)
    log.debug("Protocol tracing enabled")


####################################################################
#
def trace(msg: Dict[str, Any]):
    """
    Write a trace record. `msg` is a dict with at least `msg_type` (SEND or
    RECEIVE) and `data`.
    """
    if trace_enabled:
        msg.setdefault("time", time.time())
        trace_logger.info(json.dumps(msg))
