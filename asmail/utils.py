"""
This module contains utility functions that do not properly belong to any
class or module: logging setup, date parsing, message set compaction and
the encoding of strings and mailbox names for the wire.
"""

# system imports
#
import asyncio
import atexit
import base64
import email.utils
import json
import logging
import logging.config
import logging.handlers
import re
import sys
from datetime import datetime, timezone
from itertools import count, groupby
from pathlib import Path
from queue import SimpleQueue
from typing import TYPE_CHECKING, Any, Dict, Iterable, Iterator, List, Optional

# Project imports
#
from .exceptions import ParseError

if TYPE_CHECKING:
    from _typeshed import StrPath

DEFAULT_LOG_CONFIG_FILES = [
    Path("~/.config/asmail/asmail_log.json").expanduser(),
    Path("~/.config/asmail/asmail_log.cfg").expanduser(),
    Path("/etc/asmail_log.json"),
    Path("/etc/asmail_log.cfg"),
    Path("/usr/local/etc/asmail_log.json"),
    Path("/usr/local/etc/asmail_log.cfg"),
]

# Characters that force a string to be sent quoted instead of as an atom.
#
RE_NEEDS_QUOTING = re.compile(r'[\(\)\{\} \000-\037\177%\*"\\\]]')


############################################################################
#
class LocalQueueHandler(logging.handlers.QueueHandler):
    """
    Customise the QueueHandler class a little, but only minimally so: there
    is no need to prepare records that go into a local, in-process queue, we
    can skip that process and minimise the cost of logging further.

    This is cribbed from:
         https://www.zopatista.com/python/2019/05/11/asyncio-logging/
    """

    def emit(self, record: logging.LogRecord) -> None:
        # Removed the call to self.prepare(), handle task cancellation
        try:
            self.enqueue(record)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.handleError(record)


############################################################################
#
def setup_asyncio_logging() -> None:
    """
    Call this after you have configured all of your log handlers.

    Replace handlers on the root logger with a LocalQueueHandler, and start a
    logging.QueueListener holding the original handlers. Logging calls made
    from the event loop then never block on I/O.
    """
    queue: SimpleQueue = SimpleQueue()
    root = logging.getLogger()

    handlers: List[logging.Handler] = []

    handler = LocalQueueHandler(queue)
    root.addHandler(handler)
    for h in root.handlers[:]:
        if h is not handler:
            root.removeHandler(h)
            handlers.append(h)

    listener = logging.handlers.QueueListener(
        queue, *handlers, respect_handler_level=True
    )
    listener.start()

    # NOTE: to make sure that all queued records get logged on program exit
    #       stop the listener.
    #
    atexit.register(lambda: listener.stop())


####################################################################
#
def _load_log_config(log_config: Path) -> None:
    if log_config.suffix == ".json":
        cfg = json.loads(log_config.read_text())
        logging.config.dictConfig(cfg)
    else:
        logging.config.fileConfig(str(log_config))


####################################################################
#
def setup_logging(
    log_config: Optional["StrPath"], debug: bool, trace: bool = False
):
    """
    Set up the logger. Attempt to load the logging config passed in. If we
    are not able to load that then check a bunch of common locations. If none
    of those work, use a default config that logs to stderr.

    Arguments:
    - `log_config`: path to a json (dictConfig) or ini (fileConfig) file
    - `debug`: log the `asmail` loggers at DEBUG
    - `trace`: send the protocol trace records to stderr as json
    """
    root_logger = logging.getLogger()
    if debug:
        root_logger.setLevel(logging.DEBUG)

    if log_config is not None:
        log_config = Path(log_config)
        if log_config.exists():
            _load_log_config(log_config)
            return
        print(
            f"WARNING: Logging config '{log_config}' does not exist",
            file=sys.stderr,
        )

    for log_config in DEFAULT_LOG_CONFIG_FILES:
        if log_config.exists():
            _load_log_config(log_config)
            return

    # If no logging config file is specified then this is what will be used.
    # It is formatted as a logging config dict.
    #
    DEFAULT_LOGGING_CONFIG: Dict[str, Any] = {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "basic": {
                "format": "[{asctime}] {levelname}:{module}.{funcName}: {message}",
                "style": "{",
            },
            "trace": {
                "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                "format": "%(asctime)s %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "basic",
                "stream": "ext://sys.stderr",
            },
        },
        "loggers": {
            "asmail": {
                "handlers": ["console"],
                "level": "DEBUG" if debug else "INFO",
                "propagate": False,
            },
        },
    }

    if trace:
        DEFAULT_LOGGING_CONFIG["handlers"]["trace_console"] = {
            "class": "logging.StreamHandler",
            "formatter": "trace",
            "stream": "ext://sys.stderr",
        }
        DEFAULT_LOGGING_CONFIG["loggers"]["asmail.trace"] = {
            "handlers": ["trace_console"],
            "level": "INFO",
            "propagate": False,
        }

    logging.config.dictConfig(DEFAULT_LOGGING_CONFIG)
    logger = logging.getLogger("asmail.utils")
    logger.debug("Debug enabled")


############################################################################
#
def parsedate(datetime_str: str) -> datetime:
    """
    Parse a rfc822 formatted date time (like the one in an envelope) in to
    a timezone aware datetime. Naive results (the tz string was "-0000") are
    taken to be UTC.
    """
    dt = email.utils.parsedate_to_datetime(datetime_str)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


####################################################################
#
def envelope_timestamp(datetime_str: Optional[str]) -> Optional[float]:
    """
    The seconds since the epoch of an envelope date, or None if there is no
    date or it is not something we can make sense of.
    """
    if not datetime_str:
        return None
    try:
        return parsedate(datetime_str).timestamp()
    except (TypeError, ValueError, IndexError):
        return None


####################################################################
#
def compact_sequence(keys: Iterable[int]) -> str:
    """
    Turns a set of message numbers or uids in to an IMAP sequence set.
    Contiguous ranges are turned from 1,3,4,5,6 to '1,3:6'
    """

    def as_range(iterable: Iterator[int]) -> str:
        grouped_ints = list(iterable)
        if len(grouped_ints) > 1:
            return "{0}:{1}".format(grouped_ints[0], grouped_ints[-1])
        else:
            return "{0}".format(grouped_ints[0])

    keys = sorted(set(keys))
    return ",".join(
        as_range(g)
        for _, g in groupby(keys, key=lambda n, c=count(): n - next(c))
    )


####################################################################
#
def expand_sequence(contents: str) -> List[int]:
    """
    Turns an IMAP sequence set (as found in ESEARCH results) in to a list of
    integers. The string '1,3:6' becomes [1,3,4,5,6]. Order is preserved,
    ranges may be given high to low.
    """
    if not contents.strip():
        return []

    result: List[int] = []
    for spec in contents.split(","):
        if spec.isdigit():
            result.append(int(spec))
            continue
        try:
            start, stop = (int(x) for x in spec.split(":"))
        except ValueError:
            raise ParseError(f"'{spec}' is not a valid sequence set element")
        if start > stop:
            start, stop = stop, start
        result.extend(range(start, stop + 1))
    return result


####################################################################
#
def quote(arg: str) -> str:
    """
    Render a string argument for the wire. Atoms go out as they are,
    everything else is a quoted string with backslash escapes.
    """
    if "\r" in arg or "\n" in arg:
        raise ValueError("CR and LF can not be sent in a quoted string")
    if arg and arg.isascii() and not RE_NEEDS_QUOTING.search(arg):
        return arg
    escaped = arg.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


####################################################################
#
def _modified_base64(s: str) -> str:
    encoded = base64.b64encode(s.encode("utf-16-be")).decode("ascii")
    return encoded.rstrip("=").replace("/", ",")


####################################################################
#
def _modified_unbase64(s: str) -> str:
    b64 = s.replace(",", "/")
    b64 += "=" * (-len(b64) % 4)
    return base64.b64decode(b64).decode("utf-16-be")


####################################################################
#
def encode_mailbox_name(name: str) -> str:
    """
    Encode a mailbox name in the modified UTF-7 of RFC3501 section 5.1.3.
    """
    result: List[str] = []
    pending: List[str] = []

    def flush():
        if pending:
            result.append("&" + _modified_base64("".join(pending)) + "-")
            pending.clear()

    for c in name:
        if 0x20 <= ord(c) <= 0x7E:
            flush()
            result.append("&-" if c == "&" else c)
        else:
            pending.append(c)
    flush()
    return "".join(result)


####################################################################
#
def decode_mailbox_name(name: str) -> str:
    """
    Decode a modified UTF-7 mailbox name. Names that are not valid modified
    UTF-7 are returned as they are.
    """
    if "&" not in name:
        return name
    result: List[str] = []
    idx = 0
    while idx < len(name):
        c = name[idx]
        if c != "&":
            result.append(c)
            idx += 1
            continue
        end = name.find("-", idx)
        if end == -1:
            return name
        chunk = name[idx + 1 : end]
        if not chunk:
            result.append("&")
        else:
            try:
                result.append(_modified_unbase64(chunk))
            except (ValueError, UnicodeDecodeError):
                return name
        idx = end + 1
    return "".join(result)


####################################################################
#
def normalize_newlines(data: bytes) -> bytes:
    """
    Messages come off the wire with CRLF line endings. Our consumers want
    bare newlines.
    """
    return data.replace(b"\r\n", b"\n")
