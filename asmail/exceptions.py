#!/usr/bin/env python
#
# File: $Id$
#
"""
The exceptions raised by the asmail engine. They are kept in this module to
avoid circular dependencies between the connection, parser and request
layers.
"""

# system imports
#
from typing import Optional


#######################################################################
#
class ConfigurationError(Exception):
    """
    The account configuration is unusable: a malformed URL, an unsupported
    scheme or no way to find a password.
    """

    def __init__(self, value="configuration error"):
        self.value = value

    def __str__(self):
        return self.value


#######################################################################
#
class IMAPConnectionError(Exception):
    """
    The network connection to the IMAP server failed, was closed by the
    server or was closed because it was idle for too long. Every command
    outstanding on the connection fails with this exception.
    """

    def __init__(self, value="connection error", account: Optional[str] = None):
        self.value = value
        self.account = account

    def __str__(self):
        if self.account is None:
            return self.value
        return f"{self.account}: {self.value}"


#######################################################################
#
# The server answered a command with a tagged NO or BAD.
#
class ProtocolError(Exception):
    status = "BAD"

    def __init__(self, value="protocol error", command: Optional[str] = None):
        self.value = value
        self.command = command

    @property
    def message(self) -> str:
        return self.value

    def __str__(self):
        return f"{self.status} {self.value}"


##################################################################
##################################################################
#
class No(ProtocolError):
    status = "NO"


##################################################################
##################################################################
#
class Bad(ProtocolError):
    status = "BAD"


##################################################################
##################################################################
#
class MailboxMismatch(ProtocolError):
    """
    A command completed while a mailbox other than the one it was queued
    for was selected. The results can not be trusted so the command fails.
    """

    status = "BAD"

    def __init__(
        self,
        value="selected mailbox changed",
        command=None,
        expected=None,
        selected=None,
    ):
        self.value = value
        self.command = command
        self.expected = expected
        self.selected = selected

    def __str__(self):
        return (
            f"{self.value}: expected '{self.expected}', "
            f"selected '{self.selected}'"
        )


#######################################################################
#
class ParseError(Exception):
    def __init__(self, value="parse error", position: int = 0):
        self.value = value
        self.position = position

    def __str__(self):
        return f"ParseError: {self.value} (at position {self.position})"


#######################################################################
#
class CapabilityError(Exception):
    """
    The operation needs a protocol extension the server does not advertise.
    """

    def __init__(self, capability: str, value: Optional[str] = None):
        self.capability = capability
        self.value = (
            value
            if value
            else f"server does not support the {capability} capability"
        )

    def __str__(self):
        return self.value


#######################################################################
#
class NotFound(Exception):
    def __init__(self, value="not found"):
        self.value = value

    def __str__(self):
        return self.value
