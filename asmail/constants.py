#!/usr/bin/env python
#
# File: $Id$
#
"""
Various global constants.
"""

# Default ports by url scheme. `imaps` is TLS from the first byte, `imap`
# upgrades with STARTTLS.
#
DEFAULT_PORTS = {
    "imaps": 993,
    "imap": 143,
}

# Every command we send is prefixed with this followed by the tag number.
#
TAG_PREFIX = "A"

# How long (in seconds) a connection may go without hearing from the server
# before we close it.
#
DEFAULT_IDLE_TIMEOUT = 300

# The fetch attributes we ask for when getting message summaries.
#
SUMMARY_FETCH_ATTS = "(UID FLAGS INTERNALDATE RFC822.SIZE ENVELOPE)"

# The STATUS items we ask for, both with STATUS and LIST-STATUS.
#
STATUS_ITEMS = ("MESSAGES", "RECENT", "UIDNEXT", "UIDVALIDITY", "UNSEEN")
