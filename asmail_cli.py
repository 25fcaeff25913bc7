#!/usr/bin/env python
#
# File: $Id$
#
"""
A command line interface to an IMAP account using the asmail engine.

NOTE: For all command line options that can also be specified via an env. var:
      the command line option will override the env. var if set.

Usage:
  asmail [options] capability
  asmail [options] list [--refresh]
  asmail [options] status <mailbox>
  asmail [options] fetch <mailbox> [--count=<n>] [--skip-newest]
  asmail [options] message <mailbox> <uid> [--output=<file>]
  asmail [options] search <mailbox> <term>...
  asmail [options] thread <mailbox> [--count=<n>]
  asmail [options] move <mailbox> <destination> <uid>...
  asmail (-h | --help)
  asmail --version

Options:
  --version
  -h, --help          Show this text and exit
  --url=<url>         The url of the IMAP server, ie:
                      `imaps://user@mail.example.com/`. The env. var is
                      `IMAP_URL`. If the url has no password it is taken from
                      the env. var `IMAP_PASSWORD` or, failing that, from the
                      keyring service `imap://<host>:<port>`.
  --idle-timeout=<s>  Close the connection after this many seconds without
                      hearing from the server. The env. var is `IDLE_TIMEOUT`.
                      Defaults to 300.
  --count=<n>         How many of the newest messages to fetch. [default: 20]
  --skip-newest       Leave out the newest message.
  --output=<file>     Write the message to this file instead of stdout.
  --refresh           Ignore any cached mailbox list.
  --trace             Write every line sent to and received from the server
                      to stderr as json.
  --debug             Will set the default logging level to `DEBUG` thus
                      enabling all of the debug logging. The env var is `DEBUG`
  --log-config=<lc>   The log config file. This file may be either a JSON file
                      that follows the python logging configuration dictionary
                      schema or a file that conforms to the python logging
                      configuration file format. If no file is specified it
                      will check in ~/.config/asmail, /etc and /usr/local/etc
                      for a file named `asmail_log.cfg` or `asmail_log.json`.
                      The env. var is `LOG_CONFIG`

Search terms are `field:value` (from, to, cc, bcc, subject, body, text,
since, before, on, larger, smaller, keyword) or one of the flags seen,
unseen, answered, unanswered, flagged, unflagged, deleted, draft. Anything
else is searched for in the whole message. Dates are YYYY-MM-DD.
"""
# system imports
#
import asyncio
import logging
import os
import sys
from datetime import date
from typing import Any, Dict, List, Optional

# 3rd party imports
#
import aiofiles
import sentry_sdk
from docopt import docopt
from dotenv import dotenv_values
from sentry_sdk.integrations.asyncio import AsyncioIntegration

# Application imports
#
from asmail import __version__ as VERSION
from asmail.account import Account, keyring_password
from asmail.client import AccountSession, ConnectionManager
from asmail.constants import DEFAULT_IDLE_TIMEOUT
from asmail.exceptions import (
    CapabilityError,
    ConfigurationError,
    IMAPConnectionError,
    NotFound,
    ParseError,
    ProtocolError,
)
from asmail.search import FLAG_OPS, BadSearchOp, IMAPSearch
from asmail.thread import ThreadIndex, order_by_subject
from asmail.trace import enable_tracing
from asmail.utils import setup_asyncio_logging, setup_logging

logger = logging.getLogger("asmail.cli")

# The search fields that take a date, and those that take a number.
#
DATE_FIELDS = ("since", "before", "on", "sentsince", "sentbefore", "senton")
NUMBER_FIELDS = ("larger", "smaller")


####################################################################
#
def search_terms(terms: List[str]) -> List[IMAPSearch]:
    """
    Turn the search terms from the command line in to IMAPSearch keys.
    """
    result: List[IMAPSearch] = []
    for term in terms:
        field, sep, value = term.partition(":")
        field = field.lower()
        if not sep:
            if field in FLAG_OPS:
                result.append(IMAPSearch(field))
            else:
                result.append(IMAPSearch("text", string=term))
        elif field in DATE_FIELDS:
            result.append(IMAPSearch(field, date=date.fromisoformat(value)))
        elif field in NUMBER_FIELDS:
            result.append(IMAPSearch(field, n=int(value)))
        elif field in ("keyword", "unkeyword"):
            result.append(IMAPSearch(field, keyword=value))
        else:
            result.append(IMAPSearch(field, string=value))
    return result


####################################################################
#
def format_summary(record: Dict[str, Any], indent: str = "") -> str:
    envelope = record.get("envelope")
    sender = ""
    subject = ""
    when = ""
    if envelope is not None:
        if envelope.from_:
            sender = envelope.from_[0].name or envelope.from_[0].addr_spec
        subject = envelope.subject or ""
        when = envelope.date or ""
    flags = "N" if "\\Seen" not in record.get("flags", []) else " "
    return (
        f"{record.get('uid', ''):>7} {flags} {when[:31]:<31} "
        f"{(sender or '')[:24]:<24} {indent}{subject}"
    )


####################################################################
#
async def run_command(
    session: AccountSession, args: Dict[str, Any]
) -> Optional[bytes]:
    """
    Run the command given on the command line against the account. Prints
    the results. A message is returned instead of printed.
    """
    mailbox = args["<mailbox>"]

    if args["capability"]:
        for cap in sorted(
            "=".join(c) if isinstance(c, tuple) else c
            for c in await session.capability()
        ):
            print(cap)

    elif args["list"]:
        for mbox in await session.mailboxes(refresh=args["--refresh"]):
            counts = ""
            if "messages" in mbox:
                counts = f" ({mbox.get('unseen', 0)}/{mbox['messages']})"
            attrs = " ".join(mbox["attributes"])
            print(f"{mbox['name']}{counts} {attrs}")

    elif args["status"]:
        info = await session.mailbox_info(mailbox)
        for key, value in info.items():
            print(f"{key}: {value}")

    elif args["fetch"]:
        for record in await session.fetch_range(
            mailbox, int(args["--count"]), skip_newest=args["--skip-newest"]
        ):
            print(format_summary(record))

    elif args["message"]:
        return await session.fetch_message(mailbox, int(args["<uid>"]))

    elif args["search"]:
        for record in await session.search(
            mailbox, search_terms(args["<term>"])
        ):
            print(format_summary(record))

    elif args["thread"]:
        records = await session.fetch_range(mailbox, int(args["--count"]))
        by_uid = {record["uid"]: record for record in records}
        index = ThreadIndex(order_by_subject(records))
        for uid, level in index:
            print(format_summary(by_uid[uid], indent="  " * level))

    elif args["move"]:
        uids = [int(uid) for uid in args["<uid>"]]
        await session.move(mailbox, uids, args["<destination>"])
        print(f"Moved {len(uids)} messages to {args['<destination>']}")

    return None


####################################################################
#
async def run(account: Account, args: Dict[str, Any]) -> int:
    if "SENTRY_DSN" in os.environ:
        sentry_sdk.init(
            dsn=os.environ["SENTRY_DSN"],
            traces_sample_rate=1.0,
            integrations=[
                AsyncioIntegration(),
            ],
            environment="devel",
        )

    manager = ConnectionManager([account])
    session = manager.session(account.name)
    try:
        message = await run_command(session, args)
        if message is not None:
            output = args["--output"]
            if output:
                async with aiofiles.open(output, "wb") as f:
                    await f.write(message)
                logger.info("Wrote %d bytes to %s", len(message), output)
            else:
                sys.stdout.buffer.write(message)
                sys.stdout.flush()
    except (
        BadSearchOp,
        CapabilityError,
        ConfigurationError,
        NotFound,
        ValueError,
    ) as exc:
        print(f"asmail: {exc}", file=sys.stderr)
        return 1
    except (ProtocolError, IMAPConnectionError, ParseError) as exc:
        logger.error("%s failed: %s", account.server, exc)
        return 2
    finally:
        await manager.close()
    return 0


#############################################################################
#
def main():
    """
    Our main entry point. Parse the options, set up logging, build the
    account from the url and run the command.
    """
    args = docopt(__doc__, version=VERSION)
    url = args["--url"]
    idle_timeout = args["--idle-timeout"]
    debug = args["--debug"]
    log_config = args["--log-config"]
    trace = args["--trace"]

    config = dotenv_values()

    # If docopt is not, see if the option is set in the config. If it not set
    # there either, then set it to the default value.
    #
    if url is None:
        url = config["IMAP_URL"] if "IMAP_URL" in config else None
    if idle_timeout is None:
        idle_timeout = (
            config["IDLE_TIMEOUT"]
            if "IDLE_TIMEOUT" in config
            else DEFAULT_IDLE_TIMEOUT
        )
    if not debug:
        debug = config["DEBUG"] if "DEBUG" in config else False
    if log_config is None:
        log_config = config["LOG_CONFIG"] if "LOG_CONFIG" in config else None
    password = config["IMAP_PASSWORD"] if "IMAP_PASSWORD" in config else None

    setup_logging(log_config, bool(debug), trace=trace)
    setup_asyncio_logging()
    if trace:
        enable_tracing()

    if not url:
        print("asmail: no server url, use --url or IMAP_URL", file=sys.stderr)
        sys.exit(1)

    def password_resolver(user: str, host: str, port: int) -> Optional[str]:
        if password:
            return password
        return keyring_password(user, host, port)

    try:
        account = Account(
            "default",
            url,
            password_resolver=password_resolver,
            idle_timeout=float(idle_timeout),
        )
    except ConfigurationError as exc:
        print(f"asmail: {exc}", file=sys.stderr)
        sys.exit(1)

    try:
        status = asyncio.run(run(account, args))
    except KeyboardInterrupt:
        logger.warning("Keyboard interrupt, exiting")
        status = 1
    finally:
        logging.shutdown()
    sys.exit(status)


############################################################################
############################################################################
#
# Here is where it all starts
#
if __name__ == "__main__":
    main()
