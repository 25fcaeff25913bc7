"""
Account configuration: where an account's mail lives, who we log in as and
how we find the password.

An account is described by the url of its incoming (IMAP) server:

    scheme://[user[:password]@]host[:port][/path]

`imaps` connects with TLS from the start, `imap` connects in the clear and
upgrades with STARTTLS. The path, if any, is the prefix of the mailboxes we
list.
"""

# system imports
#
import logging
import ssl
from dataclasses import dataclass
from typing import Callable, Optional, Tuple
from urllib.parse import unquote, urlsplit

# 3rd party imports
#
import keyring
import keyring.errors

# asmail imports
#
from .constants import DEFAULT_IDLE_TIMEOUT, DEFAULT_PORTS
from .exceptions import ConfigurationError

logger = logging.getLogger("asmail.account")

# A password resolver is called with the user, host and port and returns the
# password or None if it does not know it.
#
PasswordResolver = Callable[[str, str, int], Optional[str]]


##################################################################
##################################################################
#
@dataclass(frozen=True)
class ServerURL:
    scheme: str
    host: str
    port: int
    user: str = ""
    password: Optional[str] = None
    path: str = ""

    ##################################################################
    #
    @classmethod
    def parse(cls, url: str) -> "ServerURL":
        """
        Parse and validate a server url. User and password are percent
        decoded.
        """
        try:
            parts = urlsplit(url)
            port = parts.port
        except ValueError as exc:
            raise ConfigurationError(f"Malformed server url '{url}': {exc}")

        scheme = parts.scheme.lower()
        if scheme not in DEFAULT_PORTS:
            raise ConfigurationError(
                f"Unsupported scheme '{parts.scheme}' in server url '{url}'"
            )
        if not parts.hostname:
            raise ConfigurationError(f"No host in server url '{url}'")

        return cls(
            scheme=scheme,
            host=parts.hostname,
            port=port if port is not None else DEFAULT_PORTS[scheme],
            user=unquote(parts.username) if parts.username else "",
            password=(
                unquote(parts.password) if parts.password is not None else None
            ),
            path=unquote(parts.path).strip("/"),
        )

    ##################################################################
    #
    @property
    def use_tls(self) -> bool:
        """
        True if the connection is TLS from the first byte.
        """
        return self.scheme == "imaps"

    ##################################################################
    #
    def __str__(self):
        user = f"{self.user}@" if self.user else ""
        return f"{self.scheme}://{user}{self.host}:{self.port}"


####################################################################
#
def keyring_password(user: str, host: str, port: int) -> Optional[str]:
    """
    Look up the password for `user` in the system keyring. The service name
    is the server's url, ie: `imap://mail.example.com:993`
    """
    service = f"imap://{host}:{port}"
    try:
        return keyring.get_password(service, user)
    except keyring.errors.KeyringError as exc:
        logger.warning(
            "Unable to read password for %s from keyring service %s: %s",
            user,
            service,
            exc,
        )
        return None


##################################################################
##################################################################
#
class Account:
    """
    The configuration of one mail account. The engine only needs the
    incoming server. The outgoing server and address are kept for the
    benefit of whatever composes and sends mail.
    """

    ##################################################################
    #
    def __init__(
        self,
        name: str,
        incoming: str,
        outgoing: Optional[str] = None,
        address: Optional[str] = None,
        password_resolver: Optional[PasswordResolver] = None,
        idle_timeout: float = DEFAULT_IDLE_TIMEOUT,
        ssl_context: Optional[ssl.SSLContext] = None,
    ):
        self.name = name
        self.incoming = incoming
        self.outgoing = outgoing
        self.address = address
        self.password_resolver = (
            password_resolver
            if password_resolver is not None
            else keyring_password
        )
        self.idle_timeout = idle_timeout
        self.ssl_context = ssl_context

        # Parse it now so a bad url is noticed when the account is created.
        #
        self.server = ServerURL.parse(incoming)

    ##################################################################
    #
    def __repr__(self):
        return f"<Account {self.name}: {self.server}>"

    ##################################################################
    #
    @property
    def prefix(self) -> str:
        """
        The mailbox prefix from the path of the incoming server url.
        """
        return self.server.path

    ##################################################################
    #
    @property
    def mail_address(self) -> Optional[str]:
        """
        The explicitly configured address or, failing that, the user if it
        looks like an address.
        """
        if self.address:
            return self.address
        if "@" in self.server.user:
            return self.server.user
        return None

    ##################################################################
    #
    def get_ssl_context(self) -> ssl.SSLContext:
        if self.ssl_context is None:
            self.ssl_context = ssl.create_default_context()
        return self.ssl_context

    ##################################################################
    #
    def credentials(self) -> Tuple[str, str]:
        """
        The user and password to log in with. An empty user means we log in
        anonymously (and do not need a password.)

        Raises ConfigurationError if we need a password and have no way of
        getting one.
        """
        server = self.server
        if not server.user:
            return ("", "")
        if server.password is not None:
            return (server.user, server.password)
        password = self.password_resolver(server.user, server.host, server.port)
        if password is None:
            raise ConfigurationError(
                f"No password for {server.user} on {server.host}:"
                f"{server.port}. Put it in the server url or in the keyring "
                f"under the service 'imap://{server.host}:{server.port}'"
            )
        return (server.user, password)
