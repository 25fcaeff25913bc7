"""
A scripted IMAP server used by the tests.

The server answers the lines an IMAPConnection writes to it. When used with
mocked streams (`streams()`) every line written to the mocked writer is
answered immediately by feeding the response to the StreamReader the
connection is reading. `handle_line()` can also be used by a real server
(see the TLS test.)
"""
# system imports
#
import asyncio
import base64
import re
from typing import Dict, List, Optional, Tuple, Union

# project imports
#
from ..utils import expand_sequence

# The first argument of a command: a quoted string or an atom.
#
RE_MAILBOX_ARG = re.compile(r'^\S+ (?:"((?:[^"\\]|\\.)*)"|(\S+))')
RE_QUOTED_ESCAPE = re.compile(r"\\(.)")

DEFAULT_CAPABILITIES = (
    "IMAP4rev1 AUTH=PLAIN MOVE LIST-STATUS SPECIAL-USE ESEARCH IDLE"
)


####################################################################
#
def message_summary(seq: int, uid: int) -> str:
    """
    The FETCH response for a message summary.
    """
    return (
        f"* {seq} FETCH (UID {uid} FLAGS (\\Seen) "
        f'INTERNALDATE "17-Jul-1996 02:44:25 -0700" RFC822.SIZE 4286 '
        f'ENVELOPE ("Wed, 17 Jul 1996 02:23:25 -0700 (PDT)" "Message {uid}" '
        f'(("Terry Gray" NIL "gray" "cac.washington.edu")) NIL NIL '
        f'(("Alice" NIL "alice" "example.com")) NIL NIL NIL '
        f'"<{uid}@example.com>"))\r\n'
    )


####################################################################
#
def message_body(uid: int) -> str:
    return f"Subject: Message {uid}\r\n\r\nHello {uid}\r\n"


##################################################################
##################################################################
#
class FakeIMAPServer:
    """
    Just enough of an IMAP server to test against.

    - `mailboxes`: mailbox name to the number of messages in it. Message
      `n` has uid `n`.
    - `users`: user to password. If empty any credentials are accepted.
    - `attributes`: mailbox name to the extra attributes LIST reports.

    Every command received is recorded in `commands` as a tuple of the
    mailbox that was selected when it arrived and the command text.
    """

    ##################################################################
    #
    def __init__(
        self,
        mailboxes: Optional[Dict[str, int]] = None,
        users: Optional[Dict[str, str]] = None,
        capabilities: str = DEFAULT_CAPABILITIES,
    ):
        self.mailboxes = (
            mailboxes if mailboxes is not None else {"INBOX": 10, "Archive": 0}
        )
        self.users = users if users is not None else {}
        self.capabilities = capabilities
        self.attributes: Dict[str, str] = {}
        self.scripted: Dict[str, Tuple[bytes, str]] = {}
        self.commands: List[Tuple[Optional[str], str]] = []
        self.selected: Optional[str] = None
        self.authenticated_as: Optional[str] = None
        self.auth_tag: Optional[str] = None
        self.auth_mechanism: Optional[str] = None
        self.hold = False
        self.held: List[bytes] = []
        self.connections = 0
        self.ibuffer = b""
        self.eof = False
        self.reader: Optional[asyncio.StreamReader] = None
        self.writer = None

    ##################################################################
    #
    def script(
        self, command: str, data: Union[str, bytes] = b"", status: str = "OK"
    ):
        """
        Answer commands that begin with `command` with `data` (untagged
        responses) and a tagged `status`.
        """
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.scripted[command.upper()] = (data, status)

    ##################################################################
    #
    def greeting(self) -> bytes:
        return (
            f"* OK [CAPABILITY {self.capabilities}] fake server ready\r\n"
        ).encode()

    ##################################################################
    #
    def command_texts(self) -> List[str]:
        """
        The text of every command received after authentication.
        """
        return [
            text
            for _, text in self.commands
            if not text.upper().startswith("AUTHENTICATE")
        ]

    ##################################################################
    #
    def handle_line(self, line: bytes) -> bytes:
        """
        Answer one line from the client.
        """
        line = line.rstrip(b"\r\n")
        if self.auth_tag is not None:
            tag, self.auth_tag = self.auth_tag, None
            return self._authenticate(tag, line)

        tag, _, text = line.decode("utf-8").partition(" ")
        self.commands.append((self.selected, text))
        words = text.split(" ")
        verb = words[0].upper()
        if verb == "UID" and len(words) > 1:
            verb = f"UID {words[1].upper()}"

        for command, (data, status) in self.scripted.items():
            if text.upper().startswith(command):
                return data + f"{tag} {status} {verb} completed\r\n".encode()

        method = getattr(self, f"_cmd_{verb.lower().replace(' ', '_')}", None)
        if method is None:
            return f"{tag} BAD unknown command\r\n".encode()
        return method(tag, text)

    ##################################################################
    #
    def _mailbox_arg(self, text: str) -> str:
        m = RE_MAILBOX_ARG.match(text)
        if m.group(1) is not None:
            return RE_QUOTED_ESCAPE.sub(r"\1", m.group(1))
        return m.group(2)

    ##################################################################
    #
    def _authenticate(self, tag: str, line: bytes) -> bytes:
        decoded = base64.b64decode(line)
        if self.auth_mechanism == "ANONYMOUS":
            self.authenticated_as = ""
        else:
            _, user, password = decoded.decode().split("\0")
            if self.users and self.users.get(user) != password:
                return f"{tag} NO [AUTHENTICATIONFAILED] Invalid\r\n".encode()
            self.authenticated_as = user
        return f"{tag} OK [CAPABILITY {self.capabilities}] Logged in\r\n".encode()

    ##################################################################
    #
    def _cmd_authenticate(self, tag: str, text: str) -> bytes:
        self.auth_tag = tag
        self.auth_mechanism = text.split(" ")[1].upper()
        return b"+ \r\n"

    ##################################################################
    #
    def _cmd_capability(self, tag: str, text: str) -> bytes:
        return (
            f"* CAPABILITY {self.capabilities}\r\n"
            f"{tag} OK CAPABILITY completed\r\n"
        ).encode()

    ##################################################################
    #
    def _cmd_starttls(self, tag: str, text: str) -> bytes:
        return f"{tag} OK Begin TLS negotiation now\r\n".encode()

    ##################################################################
    #
    def _cmd_noop(self, tag: str, text: str) -> bytes:
        return f"{tag} OK NOOP completed\r\n".encode()

    ##################################################################
    #
    def _cmd_logout(self, tag: str, text: str) -> bytes:
        return (
            f"* BYE fake server logging out\r\n{tag} OK LOGOUT completed\r\n"
        ).encode()

    ##################################################################
    #
    def _cmd_select(self, tag: str, text: str, read_only: bool = False) -> bytes:
        name = self._mailbox_arg(text)
        verb = "EXAMINE" if read_only else "SELECT"
        if name not in self.mailboxes:
            self.selected = None
            return f"{tag} NO [NONEXISTENT] Mailbox doesn't exist\r\n".encode()
        self.selected = name
        exists = self.mailboxes[name]
        mode = "READ-ONLY" if read_only else "READ-WRITE"
        return (
            "* FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)\r\n"
            f"* {exists} EXISTS\r\n"
            "* 0 RECENT\r\n"
            "* OK [PERMANENTFLAGS (\\Deleted \\Seen \\*)] Limited\r\n"
            "* OK [UIDVALIDITY 3857529045] UIDs valid\r\n"
            f"* OK [UIDNEXT {exists + 1}] Predicted next UID\r\n"
            f"{tag} OK [{mode}] {verb} completed\r\n"
        ).encode()

    ##################################################################
    #
    def _cmd_examine(self, tag: str, text: str) -> bytes:
        return self._cmd_select(tag, text, read_only=True)

    ##################################################################
    #
    def _status_line(self, name: str) -> str:
        count = self.mailboxes[name]
        return (
            f'* STATUS "{name}" (MESSAGES {count} RECENT 0 '
            f"UIDNEXT {count + 1} UIDVALIDITY 1 UNSEEN 0)\r\n"
        )

    ##################################################################
    #
    def _cmd_status(self, tag: str, text: str) -> bytes:
        name = self._mailbox_arg(text)
        if name not in self.mailboxes:
            return f"{tag} NO Mailbox doesn't exist\r\n".encode()
        return (self._status_line(name) + f"{tag} OK STATUS completed\r\n").encode()

    ##################################################################
    #
    def _cmd_list(self, tag: str, text: str) -> bytes:
        result = []
        for name in self.mailboxes:
            attrs = " ".join(["\\HasNoChildren", self.attributes.get(name, "")])
            result.append(f'* LIST ({attrs.strip()}) "/" "{name}"\r\n')
            if "STATUS" in text:
                result.append(self._status_line(name))
        result.append(f"{tag} OK LIST completed\r\n")
        return "".join(result).encode()

    ##################################################################
    #
    def _cmd_fetch(self, tag: str, text: str) -> bytes:
        if self.selected is None:
            return f"{tag} BAD No mailbox selected\r\n".encode()
        msg_set = text.split(" ")[1]
        result = [message_summary(seq, seq) for seq in expand_sequence(msg_set)]
        result.append(f"{tag} OK FETCH completed\r\n")
        return "".join(result).encode()

    ##################################################################
    #
    def _cmd_uid_fetch(self, tag: str, text: str) -> bytes:
        if self.selected is None:
            return f"{tag} BAD No mailbox selected\r\n".encode()
        exists = self.mailboxes[self.selected]
        uids = [u for u in expand_sequence(text.split(" ")[2]) if u <= exists]
        result = []
        for uid in uids:
            if "BODY.PEEK[]" in text:
                body = message_body(uid)
                result.append(
                    f"* {uid} FETCH (UID {uid} BODY[] {{{len(body)}}}\r\n"
                    f"{body})\r\n"
                )
            else:
                result.append(message_summary(uid, uid))
        result.append(f"{tag} OK UID FETCH completed\r\n")
        return "".join(result).encode()

    ##################################################################
    #
    def _cmd_uid_move(self, tag: str, text: str) -> bytes:
        if self.selected is None:
            return f"{tag} BAD No mailbox selected\r\n".encode()
        return f"{tag} OK UID MOVE completed\r\n".encode()

    ##################################################################
    #
    def streams(self, mocker) -> Tuple[asyncio.StreamReader, object]:
        """
        A new StreamReader and a mocked StreamWriter connected to us. Must
        be called with an event loop running.
        """
        self.connections += 1
        self.selected = None
        self.ibuffer = b""
        self.eof = False
        reader = asyncio.StreamReader()
        reader.feed_data(self.greeting())

        writer = mocker.Mock(spec=asyncio.StreamWriter)
        writer.write.side_effect = self._received
        writer.is_closing.return_value = False
        writer.close.side_effect = self._closed
        writer.drain = mocker.AsyncMock()
        writer.wait_closed = mocker.AsyncMock()
        writer.start_tls = mocker.AsyncMock()

        self.reader = reader
        self.writer = writer
        return (reader, writer)

    ##################################################################
    #
    def _received(self, data: bytes):
        self.ibuffer += data
        while b"\r\n" in self.ibuffer:
            line, self.ibuffer = self.ibuffer.split(b"\r\n", 1)
            if self.hold:
                self.held.append(line)
                continue
            self._respond(line)

    ##################################################################
    #
    def _respond(self, line: bytes):
        response = self.handle_line(line)
        if self.reader is None or self.eof:
            return
        self.reader.feed_data(response)
        if response.startswith(b"* BYE"):
            self.disconnect()

    ##################################################################
    #
    def release(self):
        """
        Stop holding and answer everything that was held.
        """
        self.hold = False
        held, self.held = self.held, []
        for line in held:
            self._respond(line)

    ##################################################################
    #
    def disconnect(self):
        """
        The server goes away.
        """
        if self.reader is not None and not self.eof:
            self.eof = True
            self.reader.feed_eof()

    ##################################################################
    #
    def _closed(self):
        self.writer.is_closing.return_value = True
        self.disconnect()
