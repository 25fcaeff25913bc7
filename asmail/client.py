"""
The request layer: the operations callers perform on a mail account.

A `ConnectionManager` holds an `AccountSession` for each account it has been
given. The session owns the account's connection (opened when first needed
and opened again after it has closed) and the cached results of the
operations whose results rarely change (the server's capabilities and the
list of mailboxes.)

Every operation is a coroutine. Errors the server reports are raised as
`No` or `Bad`, a lost connection as `IMAPConnectionError`.
"""

# system imports
#
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

# asmail imports
#
from .account import Account
from .connection import IMAPConnection, Response
from .constants import STATUS_ITEMS, SUMMARY_FETCH_ATTS
from .exceptions import (
    CapabilityError,
    IMAPConnectionError,
    NotFound,
    ProtocolError,
)
from .parse import (
    parse_capability,
    parse_fetch,
    parse_list,
    parse_search,
    parse_select,
    parse_status,
)
from .search import IMAPSearch, render_search
from .task import MemoSlot, concurrent, intercept, memoize, sequence
from .utils import (
    compact_sequence,
    encode_mailbox_name,
    normalize_newlines,
    quote,
)

logger = logging.getLogger("asmail.client")


####################################################################
#
def mailbox_arg(name: str) -> str:
    """
    A mailbox name as a command argument: modified UTF-7, quoted if need
    be.
    """
    return quote(encode_mailbox_name(name))


####################################################################
#
def message_summaries(records: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    The message summaries among fetch records, in mailbox order. A record
    without a uid and envelope is a flag change the server told us about
    unprompted and is left out.
    """
    return sorted(
        (r for r in records if "uid" in r and "envelope" in r),
        key=lambda r: r["seq"],
    )


##################################################################
##################################################################
#
class AccountSession:
    """
    The state we keep for one account: its connection and the cached
    capability and mailbox list.
    """

    ##################################################################
    #
    def __init__(self, account: Account):
        self.account = account
        self.name = account.name
        self.connection: Optional[IMAPConnection] = None
        self.connection_slot = MemoSlot(f"{self.name}:connection")
        self.capability_slot = MemoSlot(f"{self.name}:capability")
        self.mailboxes_slot = MemoSlot(f"{self.name}:mailboxes")

    ##################################################################
    #
    def __repr__(self):
        return f"<AccountSession {self.name}: {self.connection}>"

    ##################################################################
    #
    async def connect(self) -> IMAPConnection:
        """
        The account's connection, opening it if there is none. Everyone
        that asks while it is being opened waits for the same connection.
        """
        return await memoize(self.connection_slot, self._open_connection)

    ##################################################################
    #
    async def _open_connection(self) -> IMAPConnection:
        conn = IMAPConnection(self.account, on_close=self._connection_closed)
        self.connection = conn
        try:
            await conn.connect()
        except Exception:
            if self.connection is conn:
                self.connection = None
            raise
        return conn

    ##################################################################
    #
    def _connection_closed(self, conn: IMAPConnection):
        """
        Forget a connection that has closed. The next request opens a new
        one.
        """
        if self.connection is conn:
            logger.debug("%s: connection closed", self.name)
            self.connection = None
            self.connection_slot.invalidate()

    ##################################################################
    #
    async def execute(
        self,
        text: str,
        mailbox: Optional[str] = None,
        selects: Optional[str] = None,
        deselects: bool = False,
    ) -> Response:
        conn = await self.connect()
        return await conn.execute(
            text, mailbox=mailbox, selects=selects, deselects=deselects
        )

    ##################################################################
    #
    async def capability(self, refresh: bool = False) -> set:
        """
        The server's capabilities. Upper cased, `KEY=VALUE` capabilities
        are `(KEY, VALUE)` tuples.
        """
        if refresh:
            self.capability_slot.invalidate()
        return await memoize(
            self.capability_slot,
            lambda: sequence(
                [("response", lambda: self.execute("CAPABILITY"))],
                lambda response: parse_capability(response.data, response.text),
            ),
        )

    ##################################################################
    #
    async def has_capability(self, name: str) -> bool:
        """
        Does the server advertise `name`? For `KEY=VALUE` capabilities
        either the whole thing or just the key may be asked about.
        """
        capabilities = await self.capability()
        name = name.upper()
        if "=" in name:
            key, value = name.split("=", 1)
            return (key, value) in capabilities
        if name in capabilities:
            return True
        return any(isinstance(c, tuple) and c[0] == name for c in capabilities)

    ##################################################################
    #
    async def mailboxes(self, refresh: bool = False) -> List[Dict[str, Any]]:
        """
        The mailboxes under the account's prefix, each a dict with `name`,
        `delimiter` and `attributes` (and status counts if the server
        returns them with the listing.)
        """
        if refresh:
            self.mailboxes_slot.invalidate()
        return await memoize(self.mailboxes_slot, self._list_mailboxes)

    ##################################################################
    #
    async def _list_mailboxes(self) -> List[Dict[str, Any]]:
        capabilities = await self.capability()
        prefix = self.account.prefix
        pattern = f"{prefix}*" if prefix else "*"

        cmd = f'LIST "" {mailbox_arg(pattern)}'
        returns = []
        if "SPECIAL-USE" in capabilities:
            returns.append("SPECIAL-USE")
        if "LIST-STATUS" in capabilities:
            returns.append(f"STATUS ({' '.join(STATUS_ITEMS)})")
        if returns:
            cmd += f" RETURN ({' '.join(returns)})"

        response = await self.execute(cmd)
        mailboxes = parse_list(response.data)
        logger.debug("%s: %d mailboxes", self.name, len(mailboxes))
        return mailboxes

    ##################################################################
    #
    async def mailbox_attributes(self, name: str) -> List[str]:
        for mbox in await self.mailboxes():
            if mbox["name"] == name:
                return mbox["attributes"]
        raise NotFound(f"No mailbox named '{name}'")

    ##################################################################
    #
    async def special_use_mailbox(
        self, attribute: str, fallbacks: Sequence[str] = ()
    ) -> str:
        """
        The name of the mailbox with the special-use `attribute` (ie:
        `\\Sent`.) If no mailbox has it, the first of `fallbacks` that
        exists.

        Raises NotFound if there is no such mailbox.
        """
        return await intercept(
            self._find_special_use(attribute),
            {NotFound: lambda exc: self._find_mailbox(fallbacks, exc)},
        )

    ##################################################################
    #
    async def _find_special_use(self, attribute: str) -> str:
        attribute = attribute.lower()
        for mbox in await self.mailboxes():
            if attribute in (a.lower() for a in mbox["attributes"]):
                return mbox["name"]
        raise NotFound(f"No mailbox has the attribute '{attribute}'")

    ##################################################################
    #
    async def _find_mailbox(self, names: Sequence[str], exc: NotFound) -> str:
        existing = {mbox["name"] for mbox in await self.mailboxes()}
        for name in names:
            if name in existing:
                return name
        raise exc

    ##################################################################
    #
    async def mailbox_status(self, name: str) -> Dict[str, Any]:
        """
        The current counts of a mailbox (messages, recent, uidnext,
        uidvalidity, unseen) from STATUS.
        """
        response = await self.execute(
            f"STATUS {mailbox_arg(name)} ({' '.join(STATUS_ITEMS)})"
        )
        return parse_status(response.data)

    ##################################################################
    #
    async def mailbox_info(self, name: str) -> Dict[str, Any]:
        """
        Both the attributes of a mailbox and its current counts.
        """
        return await concurrent(
            {
                "attributes": self.mailbox_attributes(name),
                "status": self.mailbox_status(name),
            },
            lambda attributes, status: {**status, "attributes": attributes},
        )

    ##################################################################
    #
    async def examine(self, name: str) -> Dict[str, Any]:
        """
        The metadata of a mailbox from EXAMINE: flags, exists, recent,
        unseen, uidnext, uidvalidity, permanentflags.

        EXAMINE leaves the mailbox selected (read only) on the server so the
        next command that needs a mailbox selected will select it again.
        """
        response = await self.execute(
            f"EXAMINE {mailbox_arg(name)}", deselects=True
        )
        return parse_select(response.data, response.text)

    ##################################################################
    #
    async def select(self, name: str) -> Dict[str, Any]:
        response = await self.execute(
            f"SELECT {mailbox_arg(name)}", selects=name
        )
        return parse_select(response.data, response.text)

    ##################################################################
    #
    async def fetch_range(
        self, mailbox: str, count: int, skip_newest: bool = False
    ) -> List[Dict[str, Any]]:
        """
        Summaries (uid, flags, internal date, size, envelope) of the newest
        `count` messages in `mailbox`, oldest first. If `skip_newest` the
        newest message is left out.
        """
        info = await self.select(mailbox)
        high = info["exists"] - 1 if skip_newest else info["exists"]
        if high < 1 or count < 1:
            return []
        low = max(1, high - count + 1)
        response = await self.execute(
            f"FETCH {low}:{high} {SUMMARY_FETCH_ATTS}", mailbox=mailbox
        )
        return message_summaries(parse_fetch(response.data))

    ##################################################################
    #
    async def fetch_uids(
        self, mailbox: str, uids: Iterable[int]
    ) -> List[Dict[str, Any]]:
        """
        Summaries of the messages with the given uids.
        """
        uids = list(uids)
        if not uids:
            return []
        response = await self.execute(
            f"UID FETCH {compact_sequence(uids)} {SUMMARY_FETCH_ATTS}",
            mailbox=mailbox,
        )
        return message_summaries(parse_fetch(response.data))

    ##################################################################
    #
    async def fetch_message(self, mailbox: str, uid: int) -> bytes:
        """
        The whole message with the given uid, with bare newlines for line
        endings. The message is not marked as seen.
        """
        response = await self.execute(
            f"UID FETCH {uid} (BODY.PEEK[])", mailbox=mailbox
        )
        for record in parse_fetch(response.data):
            if record.get("uid") == uid and record.get("body") is not None:
                return normalize_newlines(record["body"])
        raise NotFound(f"No message with uid {uid} in '{mailbox}'")

    ##################################################################
    #
    async def search_uids(
        self, mailbox: str, query: Union[IMAPSearch, Iterable[IMAPSearch]]
    ) -> List[int]:
        """
        The uids of the messages in `mailbox` that match `query`.
        """
        keys = [query] if isinstance(query, IMAPSearch) else list(query)
        response = await self.execute(
            f"UID SEARCH CHARSET UTF-8 {render_search(keys)}", mailbox=mailbox
        )
        result = parse_search(response.data)
        if isinstance(result, dict):
            return result["all"]
        return result

    ##################################################################
    #
    async def search(
        self, mailbox: str, query: Union[IMAPSearch, Iterable[IMAPSearch]]
    ) -> List[Dict[str, Any]]:
        """
        Summaries of the messages in `mailbox` that match `query`.
        """
        return await sequence(
            [
                ("uids", lambda: self.search_uids(mailbox, query)),
                ("found", lambda uids: self.fetch_uids(mailbox, uids)),
            ],
            lambda uids, found: found,
        )

    ##################################################################
    #
    async def move(
        self, mailbox: str, uids: Iterable[int], destination: str
    ) -> Optional[Response]:
        """
        Move the messages with the given uids from `mailbox` to
        `destination`.

        Raises CapabilityError, without sending anything, if the server
        does not support MOVE.
        """
        if not await self.has_capability("MOVE"):
            raise CapabilityError("MOVE")
        uids = list(uids)
        if not uids:
            return None
        response = await self.execute(
            f"UID MOVE {compact_sequence(uids)} {mailbox_arg(destination)}",
            mailbox=mailbox,
        )
        # Any counts in the mailbox list are now wrong.
        #
        self.mailboxes_slot.invalidate()
        return response

    ##################################################################
    #
    async def noop(self) -> Response:
        return await self.execute("NOOP")

    ##################################################################
    #
    async def logout(self):
        """
        Log out and close the connection, if there is one.
        """
        conn = self.connection
        if conn is None:
            return
        await conn.logout()


##################################################################
##################################################################
#
class ConnectionManager:
    """
    The registry of account sessions, by account name.
    """

    ##################################################################
    #
    def __init__(self, accounts: Iterable[Account] = ()):
        self.sessions: Dict[str, AccountSession] = {}
        for account in accounts:
            self.add_account(account)

    ##################################################################
    #
    def add_account(self, account: Account) -> AccountSession:
        if account.name in self.sessions:
            raise ValueError(f"Account '{account.name}' already added")
        session = AccountSession(account)
        self.sessions[account.name] = session
        return session

    ##################################################################
    #
    def session(self, name: str) -> AccountSession:
        try:
            return self.sessions[name]
        except KeyError:
            raise NotFound(f"No account named '{name}'")

    __getitem__ = session

    ##################################################################
    #
    def __iter__(self):
        return iter(self.sessions.values())

    ##################################################################
    #
    async def close(self):
        """
        Log out of every account. Accounts whose connection is already
        gone or that refuse to log out are closed all the same.
        """

        def closed(exc):
            logger.info("Error while logging out: %s", exc)

        await concurrent(
            {
                name: intercept(
                    session.logout(),
                    {IMAPConnectionError: closed, ProtocolError: closed},
                )
                for name, session in self.sessions.items()
            },
            lambda **_: None,
        )
