"""
The connection to an account's IMAP server and the pipeline of commands
sent over it.

IMAP answers commands in the order they are sent, so we keep exactly one
command on the wire at a time. Callers may submit as many commands as they
like; they wait in a queue in submission order and each caller gets back
the response to its own command (matched up by tag.)

A command may say which mailbox it expects to be selected. If that is not
the mailbox that is currently selected a SELECT is sent first (under its own
tag) and only when that succeeds is the command sent.

Responses are read a line at a time. When a line ends in a literal prefix
(`{n}`) exactly `n` bytes are read before the line continues, so nothing in
a literal is ever looked at as protocol. Everything read before a tagged
completion line is the data for that command.
"""

# system imports
#
import asyncio
import base64
import logging
import re
import ssl
from collections import deque
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Callable, Deque, Dict, List, Optional, Tuple

# asmail imports
#
from .constants import TAG_PREFIX
from .exceptions import Bad, IMAPConnectionError, MailboxMismatch, No
from .trace import trace
from .utils import encode_mailbox_name, quote

if TYPE_CHECKING:
    from .account import Account

logger = logging.getLogger("asmail.connection")

LINE_TERMINATOR = b"\r\n"

# The StreamReader limit. Lines (not literals) longer than this are a
# protocol error.
#
STREAM_LIMIT = 1024 * 1024

# A literal string declaration at the end of a line:
#
#    `{` <decimal ascii digits> +? `}<crlf>`
#
RE_LITERAL_STRING_START = re.compile(rb"\{(\d+)(\+)?\}$")

# A tagged completion line. This is only ever matched against the start of a
# logical line.
#
RE_TAGGED_RESPONSE = re.compile(
    rb"(?P<tag>" + TAG_PREFIX.encode() + rb"\d+) (?P<status>OK|NO|BAD)"
    rb"(?: (?P<text>.*))?\r\n$",
    re.IGNORECASE | re.DOTALL,
)

RE_UNTAGGED_BYE = re.compile(rb"\* BYE\b", re.IGNORECASE)


########################################################################
########################################################################
#
class ConnectionState(StrEnum):
    ABSENT = "absent"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    CLOSED = "closed"


##################################################################
##################################################################
#
@dataclass
class Response:
    """
    The completion of a command: its tag, the status (OK, NO, BAD), the
    text of the tagged line and the raw bytes of all of the untagged
    responses the server sent before the tagged line.
    """

    tag: str
    status: str
    text: str
    data: bytes


##################################################################
##################################################################
#
class Command:
    """
    A command queued on, or sent over, a connection.

    - `mailbox`: the mailbox that must be selected when the command is
      sent (None if it does not care.)
    - `selects`: set on SELECT commands, the mailbox that is selected
      once the command succeeds.
    - `deselects`: the command changes the server's selected mailbox to
      one we do not track (ie: EXAMINE.)
    - `continuation`: called with a `+` continuation line from the server,
      returns the line to send back.
    - `pre_auth`: may be sent before the connection is authenticated.
    """

    ##################################################################
    #
    def __init__(
        self,
        tag: str,
        text: str,
        mailbox: Optional[str] = None,
        selects: Optional[str] = None,
        deselects: bool = False,
        continuation: Optional[Callable[[bytes], bytes]] = None,
        pre_auth: bool = False,
    ):
        self.tag = tag
        self.text = text
        self.mailbox = mailbox
        self.selects = selects
        self.deselects = deselects
        self.continuation = continuation
        self.pre_auth = pre_auth
        self.future: asyncio.Future = asyncio.get_running_loop().create_future()

        # When this is a SELECT we inserted ahead of another command, the
        # command it was inserted for.
        #
        self.select_for: Optional["Command"] = None

    ##################################################################
    #
    def __repr__(self):
        return f"<Command {self.tag} '{self.text}' mailbox: {self.mailbox}>"

    ##################################################################
    #
    def set_result(self, response: Response):
        if not self.future.done():
            self.future.set_result(response)

    ##################################################################
    #
    def set_exception(self, exc: BaseException):
        if not self.future.done():
            self.future.set_exception(exc)


##################################################################
##################################################################
#
class IMAPConnection:
    """
    One connection to the IMAP server of an account.

    `on_close` is called with this connection once it has closed, for
    whatever reason. Every command that has not completed at that point
    fails with an IMAPConnectionError (or, if authentication failed, with
    the error the server gave us.)
    """

    ##################################################################
    #
    def __init__(
        self,
        account: "Account",
        on_close: Optional[Callable[["IMAPConnection"], None]] = None,
    ):
        self.account = account
        self.name = account.name
        self.on_close = on_close
        self.state = ConnectionState.ABSENT

        self.reader: Optional[asyncio.StreamReader] = None
        self.writer: Optional[asyncio.StreamWriter] = None
        self.reader_task: Optional[asyncio.Task] = None
        self.idle_timer: Optional[asyncio.TimerHandle] = None

        self.selected: Optional[str] = None
        self.tag_num = 0
        self.queue: Deque[Command] = deque()
        self.pending: Dict[str, Command] = {}
        self.in_flight: Optional[Command] = None

    ##################################################################
    #
    def __str__(self):
        return f"IMAPConnection:{self.name}:{self.state}"

    ##################################################################
    #
    def new_tag(self) -> str:
        self.tag_num += 1
        return f"{TAG_PREFIX}{self.tag_num}"

    ##################################################################
    #
    async def connect(self):
        """
        Open the connection to the server and log in.

        Raises ConfigurationError if we can not get the credentials,
        IMAPConnectionError if we can not reach the server and No/Bad if
        the server refuses to let us log in.
        """
        if self.state != ConnectionState.ABSENT:
            raise IMAPConnectionError(
                f"Can not connect a connection that is {self.state}",
                account=self.name,
            )
        server = self.account.server
        user, password = self.account.credentials()

        self.state = ConnectionState.CONNECTING
        logger.info("%s: connecting to %s", self.name, server)
        try:
            reader, writer = await asyncio.wait_for(
                self._open_streams(), self.account.idle_timeout or None
            )
        except asyncio.TimeoutError as exc:
            logger.error("%s: timed out connecting to %s", self.name, server)
            err = IMAPConnectionError(
                f"Timed out connecting to {server}", account=self.name
            )
            self._teardown(err)
            raise err from exc
        except (No, Bad, IMAPConnectionError) as exc:
            logger.error(
                "%s: unable to connect to %s: %s", self.name, server, exc
            )
            self._teardown(exc)
            raise
        except Exception as exc:
            logger.error(
                "%s: unable to connect to %s: %s", self.name, server, exc
            )
            err = IMAPConnectionError(str(exc), account=self.name)
            self._teardown(err)
            raise err from exc

        self.attach(reader, writer)
        await self.authenticate(user, password)

    ##################################################################
    #
    async def _open_streams(
        self,
    ) -> Tuple[asyncio.StreamReader, asyncio.StreamWriter]:
        """
        Open the socket. For `imap://` read the greeting and upgrade to TLS
        with STARTTLS before handing the streams back.
        """
        server = self.account.server
        if server.use_tls:
            return await asyncio.open_connection(
                server.host,
                server.port,
                ssl=self.account.get_ssl_context(),
                limit=STREAM_LIMIT,
            )
        reader, writer = await asyncio.open_connection(
            server.host, server.port, limit=STREAM_LIMIT
        )
        self.writer = writer
        await self.starttls(reader, writer)
        return reader, writer

    ##################################################################
    #
    async def starttls(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ):
        """
        Read the greeting from the server, issue STARTTLS and upgrade the
        stream to TLS. Done before the reader task is running so we read
        the responses ourselves.
        """
        greeting = await reader.readuntil(LINE_TERMINATOR)
        self._trace_receive(greeting)
        if not greeting.upper().startswith(b"* OK"):
            raise IMAPConnectionError(
                f"Unexpected greeting: {greeting.decode('latin-1').strip()}",
                account=self.name,
            )

        tag = self.new_tag()
        self._write(f"{tag} STARTTLS")
        await writer.drain()
        while True:
            line = await reader.readuntil(LINE_TERMINATOR)
            self._trace_receive(line)
            m = RE_TAGGED_RESPONSE.match(line)
            if m and m.group("tag").decode() == tag:
                break

        status = m.group("status").decode().upper()
        text = (m.group("text") or b"").decode("latin-1")
        if status != "OK":
            exc_class = No if status == "NO" else Bad
            raise exc_class(text, command="STARTTLS")

        await writer.start_tls(self.account.get_ssl_context())
        logger.debug("%s: TLS negotiated", self.name)

    ##################################################################
    #
    def attach(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter):
        """
        Start talking to the server over the given streams. The next thing
        that must happen is authentication.
        """
        self.reader = reader
        self.writer = writer
        self.state = ConnectionState.AUTHENTICATING
        self._reset_idle_timer()
        self.reader_task = asyncio.create_task(self._read_responses())
        self.reader_task.add_done_callback(self._reader_done)

    ##################################################################
    #
    async def authenticate(self, user: str, password: str) -> Response:
        """
        AUTHENTICATE PLAIN with the user and password, or ANONYMOUS if the
        user is empty. The initial response is sent when the server asks for
        it with a `+` continuation.

        A NO/BAD closes the connection and everything queued on it fails with
        the server's error.
        """
        if user:
            mechanism = "PLAIN"
            initial = b"\0" + user.encode() + b"\0" + password.encode()
        else:
            mechanism = "ANONYMOUS"
            initial = b"asmail"
        encoded = base64.b64encode(initial)

        cmd = Command(
            self.new_tag(),
            f"AUTHENTICATE {mechanism}",
            continuation=lambda _: encoded,
            pre_auth=True,
        )
        # Authentication goes ahead of anything already waiting.
        #
        self.queue.appendleft(cmd)
        self._pump()
        try:
            response = await cmd.future
        except (No, Bad) as exc:
            logger.error(
                "%s: authentication as '%s' failed: %s", self.name, user, exc
            )
            self._teardown(exc)
            raise

        self.state = ConnectionState.READY
        logger.info("%s: authenticated as '%s'", self.name, user or "anonymous")
        self._pump()
        return response

    ##################################################################
    #
    async def execute(
        self,
        text: str,
        mailbox: Optional[str] = None,
        selects: Optional[str] = None,
        deselects: bool = False,
    ) -> Response:
        """
        Queue a command and return its response once the server has
        completed it.

        - `mailbox`: the mailbox that must be selected for the command.
        - `selects`: for a SELECT, the mailbox that it selects.
        - `deselects`: the command leaves no mailbox that we know of
          selected (ie: EXAMINE.)

        Raises No or Bad if the server did not like the command,
        MailboxMismatch if the selected mailbox changed under the command
        and IMAPConnectionError if the connection closed before the command
        completed.
        """
        if self.state in (ConnectionState.ABSENT, ConnectionState.CLOSED):
            raise IMAPConnectionError(
                f"Connection is {self.state}", account=self.name
            )
        cmd = Command(
            self.new_tag(),
            text,
            mailbox=mailbox,
            selects=selects,
            deselects=deselects,
        )
        self.queue.append(cmd)
        self._pump()
        return await cmd.future

    ##################################################################
    #
    async def select(self, mailbox: str) -> Response:
        return await self.execute(
            f"SELECT {quote(encode_mailbox_name(mailbox))}", selects=mailbox
        )

    ##################################################################
    #
    async def noop(self) -> Response:
        return await self.execute("NOOP")

    ##################################################################
    #
    async def logout(self):
        """
        Say goodbye to the server and close the connection.
        """
        try:
            await self.execute("LOGOUT")
        finally:
            await self.close()

    ##################################################################
    #
    async def close(self, reason: str = "connection closed"):
        """
        Close the connection. Commands that have not completed fail.
        """
        writer = self.writer
        self._teardown(IMAPConnectionError(reason, account=self.name))
        if writer is None:
            return
        try:
            await writer.wait_closed()
        except (OSError, ssl.SSLError):
            pass
        except Exception as exc:
            logger.error("%s: exception when closing: %s", self.name, exc)

    ##################################################################
    #
    def _pump(self):
        """
        If nothing is on the wire send the next command. If it needs a
        different mailbox selected, send a SELECT first.
        """
        if self.in_flight is not None or not self.queue:
            return
        if self.state not in (
            ConnectionState.AUTHENTICATING,
            ConnectionState.READY,
        ):
            return
        cmd = self.queue[0]
        if self.state != ConnectionState.READY and not cmd.pre_auth:
            return

        if cmd.mailbox is not None and cmd.mailbox != self.selected:
            # The command stays at the head of the queue until the SELECT
            # completes.
            #
            select = Command(
                self.new_tag(),
                f"SELECT {quote(encode_mailbox_name(cmd.mailbox))}",
                selects=cmd.mailbox,
            )
            select.select_for = cmd
            self._send(select)
            return

        self.queue.popleft()
        self._send(cmd)

    ##################################################################
    #
    def _send(self, cmd: Command):
        # While a SELECT is outstanding no mailbox is reliably selected.
        #
        if cmd.selects is not None or cmd.deselects:
            self.selected = None
        self.pending[cmd.tag] = cmd
        self.in_flight = cmd
        try:
            self._write(f"{cmd.tag} {cmd.text}")
        except (OSError, RuntimeError) as exc:
            logger.error("%s: failed to send %r: %s", self.name, cmd, exc)
            self._teardown(IMAPConnectionError(str(exc), account=self.name))

    ##################################################################
    #
    def _write(self, line: str):
        assert self.writer is not None
        data = line.encode("utf-8") + LINE_TERMINATOR
        logger.debug("%s: SEND %s", self.name, line)
        self.writer.write(data)
        trace({"msg_type": "SEND", "account": self.name, "data": line})

    ##################################################################
    #
    def _trace_receive(self, data: bytes):
        trace(
            {
                "msg_type": "RECEIVE",
                "account": self.name,
                "data": data.decode("latin-1"),
            }
        )

    ##################################################################
    #
    async def _read_responses(self):
        """
        Read the server's responses. Logical lines are assembled from
        physical lines and the literals they announce. The untagged lines
        are gathered up until the tagged line that completes a command.
        """
        data: List[bytes] = []
        line: List[bytes] = []
        reason = "connection closed by server"
        try:
            while True:
                msg = await self.reader.readuntil(LINE_TERMINATOR)
                self._reset_idle_timer()
                line.append(msg)

                m = RE_LITERAL_STRING_START.search(msg[:-2])
                if m:
                    literal = await self.reader.readexactly(int(m.group(1)))
                    self._reset_idle_timer()
                    line.append(literal)

                    # Loop back to read the rest of the line, which may
                    # announce another literal.
                    #
                    continue

                logical = b"".join(line)
                line = []
                self._trace_receive(logical)
                self._handle_line(logical, data)
        except asyncio.IncompleteReadError:
            pass
        except asyncio.LimitOverrunError as exc:
            reason = f"response line too long: {exc}"
        except (OSError, ssl.SSLError) as exc:
            reason = str(exc)
        logger.info("%s: %s", self.name, reason)
        self._teardown(IMAPConnectionError(reason, account=self.name))

    ##################################################################
    #
    def _reader_done(self, task: asyncio.Task):
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "%s: exception reading responses: %s",
                self.name,
                exc,
                exc_info=exc,
            )
            self._teardown(IMAPConnectionError(str(exc), account=self.name))

    ##################################################################
    #
    def _handle_line(self, logical: bytes, data: List[bytes]):
        """
        Deal with one complete logical line from the server.
        """
        if logical.startswith(b"+"):
            cmd = self.in_flight
            if cmd is not None and cmd.continuation is not None:
                self.writer.write(cmd.continuation(logical) + LINE_TERMINATOR)
                trace(
                    {
                        "msg_type": "SEND",
                        "account": self.name,
                        "data": "<continuation>",
                    }
                )
            else:
                logger.warning(
                    "%s: unexpected continuation request: %r",
                    self.name,
                    logical,
                )
            return

        m = RE_TAGGED_RESPONSE.match(logical)
        if m:
            tag = m.group("tag").decode().upper()
            status = m.group("status").decode().upper()
            text = (m.group("text") or b"").decode("utf-8", errors="replace")
            response = Response(tag, status, text, b"".join(data))
            data.clear()
            self._complete(response)
            return

        if RE_UNTAGGED_BYE.match(logical):
            logger.warning(
                "%s: server said: %s",
                self.name,
                logical.decode("latin-1").strip(),
            )
        data.append(logical)

    ##################################################################
    #
    def _complete(self, response: Response):
        """
        A tagged completion line arrived. Resolve the command it is for and
        send the next one.
        """
        cmd = self.pending.pop(response.tag, None)
        if cmd is None:
            logger.warning(
                "%s: completion for unknown tag %s: %s %s",
                self.name,
                response.tag,
                response.status,
                response.text,
            )
            return
        if self.in_flight is cmd:
            self.in_flight = None

        if response.status == "OK":
            if cmd.selects is not None:
                self.selected = cmd.selects
                logger.debug("%s: selected '%s'", self.name, self.selected)
            if cmd.mailbox is not None and cmd.mailbox != self.selected:
                cmd.set_exception(
                    MailboxMismatch(
                        command=cmd.text,
                        expected=cmd.mailbox,
                        selected=self.selected,
                    )
                )
            else:
                cmd.set_result(response)
        else:
            exc_class = No if response.status == "NO" else Bad
            exc = exc_class(response.text, command=cmd.text)
            if cmd.selects is not None or cmd.deselects:
                self.selected = None
            cmd.set_exception(exc)

            # The command this SELECT was for can not be sent. Nobody waits
            # on the SELECT itself.
            #
            if cmd.select_for is not None:
                try:
                    self.queue.remove(cmd.select_for)
                except ValueError:
                    pass
                cmd.select_for.set_exception(exc)
                cmd.future.exception()

        self._pump()

    ##################################################################
    #
    def _reset_idle_timer(self):
        if self.idle_timer is not None:
            self.idle_timer.cancel()
        if not self.account.idle_timeout:
            return
        loop = asyncio.get_running_loop()
        self.idle_timer = loop.call_later(
            self.account.idle_timeout, self._idle_timeout
        )

    ##################################################################
    #
    def _idle_timeout(self):
        self.idle_timer = None
        logger.info(
            "%s: no activity for %s seconds, closing",
            self.name,
            self.account.idle_timeout,
        )
        self._teardown(IMAPConnectionError("idle timeout", account=self.name))

    ##################################################################
    #
    def _teardown(self, exc: BaseException):
        """
        The connection is done. Close the streams and fail every command
        that is outstanding or queued with `exc`.
        """
        if self.state == ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED
        self.selected = None

        if self.idle_timer is not None:
            self.idle_timer.cancel()
            self.idle_timer = None
        if self.reader_task is not None:
            if self.reader_task is not asyncio.current_task():
                self.reader_task.cancel()
        if self.writer is not None and not self.writer.is_closing():
            self.writer.close()

        commands = list(self.pending.values()) + list(self.queue)
        self.pending.clear()
        self.queue.clear()
        self.in_flight = None
        if commands:
            logger.debug(
                "%s: failing %d commands: %s", self.name, len(commands), exc
            )
        for cmd in commands:
            cmd.set_exception(exc)
            # Nobody waits on an inserted SELECT.
            #
            if cmd.select_for is not None:
                cmd.future.exception()

        if self.on_close is not None:
            self.on_close(self)
