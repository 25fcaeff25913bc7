#!/usr/bin/env python
#
# File: $Id$
#
"""
This module contains the classes and structures that are used to parse the
responses an IMAP server sends us in to structures the rest of the engine
(and its callers) can use directly.

The parser works on the untagged responses that preceded a command's tagged
completion line. It is a recursive descent parser over an explicit cursor in
to the response data. The data is decoded as latin-1 so that every byte is
one character and the lengths of literals can be honoured exactly.
"""

# system imports
#
import datetime
import logging
import re
from dataclasses import dataclass, field
from email.header import decode_header, make_header
from email.errors import HeaderParseError
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

# 3rd party imports
#
import pytz

# asmail imports
#
from .exceptions import ParseError
from .utils import decode_mailbox_name, expand_sequence

logger = logging.getLogger("asmail.parse")


#######################################################################
#
class NoMatch(ParseError):
    def __init__(self, value="no match", position=0):
        self.value = value
        self.position = position

    def __str__(self):
        return f"NoMatch: {self.value} (at position {self.position})"


#######################################################################
#
class BadLiteral(ParseError):
    def __init__(self, value="bad literal", position=0):
        self.value = value
        self.position = position

    def __str__(self):
        return f"BadLiteral: {self.value} (at position {self.position})"


#######################################################################
#######################################################################
#
# Structures that hold the parts of a FETCH ENVELOPE
#
@dataclass
class Address:
    name: Optional[str] = None
    mailbox: Optional[str] = None
    host: Optional[str] = None
    route: Optional[str] = None

    @property
    def addr_spec(self) -> Optional[str]:
        if self.mailbox is None:
            return None
        if self.host is None:
            return self.mailbox
        return f"{self.mailbox}@{self.host}"

    def __str__(self):
        addr = self.addr_spec or ""
        if self.name:
            return f"{self.name} <{addr}>"
        return addr


@dataclass
class Envelope:
    date: Optional[str] = None
    subject: Optional[str] = None
    from_: List[Address] = field(default_factory=list)
    sender: List[Address] = field(default_factory=list)
    reply_to: List[Address] = field(default_factory=list)
    to: List[Address] = field(default_factory=list)
    cc: List[Address] = field(default_factory=list)
    bcc: List[Address] = field(default_factory=list)
    in_reply_to: Optional[str] = None
    message_id: Optional[str] = None


#######################################################################
#######################################################################
#
# Constants used by IMAPResponseParser
#

_month = {
    "jan": 1,
    "feb": 2,
    "mar": 3,
    "apr": 4,
    "may": 5,
    "jun": 6,
    "jul": 7,
    "aug": 8,
    "sep": 9,
    "oct": 10,
    "nov": 11,
    "dec": 12,
}

# Lots of regular expressions.

# a positive integer.
#
_number = r"\d+"
_number_re = re.compile(_number)

# An atom is one or more characters that is not an atom special
# ie: "(" / ")" / "{" / SPACE / CTL / list_wildcards / quoted_specials /
# resp_specials
#
_atom = r'[^\(\)\{\} \000-\037\177%\*"\\\]]+'
_atom_re = re.compile(_atom)

# An astring atom may also contain "]" (resp_specials) and, since servers
# send mailbox names this way in LIST responses, the list wildcards.
#
_astring_atom = r'[^\(\)\{\} \000-\037\177"\\]+'
_astring_atom_re = re.compile(_astring_atom)

# A quoted string is any text char except quoted specials, unless they
# are quoted (those are: " and \)
#
_quoted = r'"((?:[^\015\012\\"]|\\.)*)"'
_quoted_re = re.compile(_quoted)
_quoted_escape_re = re.compile(r"\\(.)")

# A literal string has a 'literal prefix' which is of the form {\d}CRLF
#
_lit_ref = r"\{(\d+)\+?\}\015\012"
_lit_ref_re = re.compile(_lit_ref)

# A literal prefix at the very end of a line (used when skipping lines)
#
_lit_at_eol_re = re.compile(r"\{(\d+)\+?\}$")

# A fetch att name, the optional section and the optional partial origin.
# ie: "UID", "BODY[HEADER.FIELDS (SUBJECT)]", "BODY[]<0>"
#
_fetch_att = r"([A-Za-z0-9\.\-]+)(?:\[([^\]]*)\])?(?:<(\d+)>)?"
_fetch_att_re = re.compile(_fetch_att)

# a message sequence set, as returned in ESEARCH ALL
#
_seq_set = r"[\d,:]+"
_seq_set_re = re.compile(_seq_set)

# The response code that may begin the text of an OK/NO/BAD/BYE response
#
_resp_code_name = r"[A-Za-z0-9\.\-]+"
_resp_code_name_re = re.compile(_resp_code_name)
_resp_code_rest_re = re.compile(r"[^\]]*")

# The rest of a line
#
_text = r"[^\015\012]*"
_text_re = re.compile(_text)

_date_time = (
    r'"(?P<day>[ \d]?\d)-(?P<month>(Jan)|(Feb)|(Mar)|(Apr)|(May)|'
    + r"(Jun)|(Jul)|(Aug)|(Sep)|(Oct)|(Nov)|(Dec))-"
    + r"(?P<year>\d\d\d\d) (?P<hour>\d\d):(?P<min>\d\d):"
    + r'(?P<sec>\d\d) (?P<tz_sign>[-+])(?P<tz_hr>\d\d)(?P<tz_min>\d\d)"'
)
_date_time_re = re.compile(_date_time, re.I)

#
# Done constants
#
#######################################################################
#######################################################################


####################################################################
#
def decode_text(text: Optional[str]) -> Optional[str]:
    """
    Strings come off the wire as latin-1 (one char per byte). Most servers
    send 8-bit header data as utf-8 so re-interpret them as such.
    """
    if text is None:
        return None
    return text.encode("latin-1").decode("utf-8", errors="replace")


####################################################################
#
def decode_mime_words(text: Optional[str]) -> Optional[str]:
    """
    Decode RFC2047 encoded words (=?utf-8?q?...?=) in header text like
    subjects and address display names.
    """
    if text is None:
        return None
    text = decode_text(text)
    if "=?" not in text:
        return text
    try:
        return str(make_header(decode_header(text)))
    except (HeaderParseError, LookupError, UnicodeDecodeError, ValueError):
        logger.debug("Unable to decode encoded words in: %r", text)
        return text


############################################################################
#
class IMAPResponseParser:
    """
    Parses the untagged responses from an IMAP server in to a list of
    `(kind, value)` tuples, one per response, in the order the server sent
    them. `kind` is the lower cased response name ('fetch', 'list',
    'exists', 'ok', ...). Responses we do not understand are skipped.

    The `_p_*` methods each consume one production of the grammar at the
    cursor and return what they parsed, or raise NoMatch and leave the
    cursor where it was.
    """

    #######################################################################
    #
    def __init__(self, data: Union[bytes, str]):
        if isinstance(data, bytes):
            data = data.decode("latin-1")
        self.input = data
        self.pos = 0

    #######################################################################
    #
    def __repr__(self):
        return f"<IMAPResponseParser at {self.pos} of {len(self.input)}>"

    ##################################################################
    #
    def context(self, width: int = 40) -> str:
        """
        The input around the cursor. Used when logging parse failures.
        """
        start = max(0, self.pos - width)
        return (
            f"{self.input[start:self.pos]!r} <HERE> "
            f"{self.input[self.pos:self.pos + width]!r}"
        )

    ##################################################################
    #
    def parse(self) -> List[Tuple[str, Any]]:
        """
        Parse all of the responses in our input.
        """
        try:
            return self._parse()
        except ParseError as exc:
            logger.error(
                "Parse failure at position %d of %d: %s, context: %s",
                self.pos,
                len(self.input),
                exc,
                self.context(),
            )
            raise

    #######################################################################
    #
    def parse_resp_text(self) -> Dict[str, Any]:
        """
        Parse our input as the text of an OK/NO/BAD response (for instance
        the text of a tagged completion line.)
        """
        try:
            return self._p_resp_text()
        except ParseError as exc:
            logger.error(
                "Parse failure in response text: %s, context: %s",
                exc,
                self.context(),
            )
            raise

    #######################################################################
    #######################################################################
    #
    # The following functions are internal to this class. They are all the
    # bits and pieces to parse out our input stream.
    #

    #######################################################################
    #
    def _parse(self) -> List[Tuple[str, Any]]:
        """
        response_data ::= "*" SPACE (resp_cond_state / resp_cond_bye /
                          mailbox_data / message_data / capability_data)
                          CRLF
        """
        results: List[Tuple[str, Any]] = []
        while self.pos < len(self.input):
            # Continuation requests can show up in the middle of a command's
            # responses (ie: AUTHENTICATE). They are not data.
            #
            if self._p_simple_string("+", silent=True):
                self._p_skip_line()
                continue

            self._p_simple_string(
                "* ", syntax_error="expected an untagged response"
            )
            result = self._p_response_data()
            if result is not None:
                results.append(result)
            self._p_crlf()
        return results

    #######################################################################
    #
    def _p_response_data(self) -> Optional[Tuple[str, Any]]:
        """
        Look at the response name and hand off to the method that knows how
        to parse that response. Message data starts with a number.
        """
        number = self._p_re(_number_re, silent=True)
        if number is not None:
            self._p_space()
            name = self._p_re(_atom_re).lower()
            if name == "fetch":
                self._p_space()
                return ("fetch", self._p_msg_att(int(number)))
            if name in ("exists", "recent", "expunge"):
                return (name, int(number))
            self._p_skip_line()
            return None

        name = self._p_re(
            _atom_re, syntax_error="expected an untagged response name"
        ).lower()
        func = getattr(self, f"_p_resp_{name}", None)
        if func is None:
            logger.debug("Skipping untagged '%s' response", name)
            self._p_skip_line()
            return None
        return (name, func())

    #######################################################################
    #
    def _p_resp_capability(self) -> Set[Union[str, Tuple[str, str]]]:
        """capability_data ::= "CAPABILITY" SPACE [1#capability SPACE]
                            "IMAP4rev1" [SPACE 1#capability]
        """
        result: Set[Union[str, Tuple[str, str]]] = set()
        while self._p_simple_string(" ", silent=True):
            cap = self._p_re(_atom_re, silent=True)
            if cap is None:
                break
            cap = cap.upper()
            if "=" in cap:
                key, value = cap.split("=", 1)
                result.add((key, value))
            else:
                result.add(cap)
        return result

    #######################################################################
    #
    def _p_resp_list(self) -> Dict[str, Any]:
        """list ::= "LIST" SPACE mailbox_list

        mailbox_list ::= "(" #(mbx_list_flags) ")" SPACE
                         (<"> QUOTED_CHAR <"> / nil) SPACE mailbox
                         [SPACE mbox-list-extended]
        """
        self._p_space()
        attributes = self._p_paren_list_of(self._p_flag)
        self._p_space()
        delimiter = self._p_nstring()
        self._p_space()
        name = self._p_mailbox()

        # Extended data (ie: CHILDINFO) is consumed but not kept.
        #
        if self._p_simple_string(" ", silent=True):
            self._p_skip_parens()

        return {
            "name": name,
            "delimiter": delimiter,
            "attributes": attributes,
        }

    _p_resp_lsub = _p_resp_list

    #######################################################################
    #
    def _p_resp_status(self) -> Dict[str, Any]:
        """status_response ::= "STATUS" SPACE mailbox SPACE
                               "(" [status_att SPACE number
                               *(SPACE status_att SPACE number)] ")"
        """
        self._p_space()
        result: Dict[str, Any] = {"name": self._p_mailbox()}
        self._p_space()
        for att, value in self._p_paren_list_of(self._p_status_att):
            result[att] = value
        return result

    #######################################################################
    #
    def _p_status_att(self) -> Tuple[str, Any]:
        att = self._p_re(_atom_re).lower()
        self._p_space()
        return (att, int(self._p_re(_number_re)))

    #######################################################################
    #
    def _p_resp_search(self) -> List[int]:
        """mailbox_data ::= "SEARCH" [SPACE 1#nz_number] [SPACE
                            "(" "MODSEQ" SPACE number ")"]
        """
        result: List[int] = []
        while self._p_simple_string(" ", silent=True):
            if self.input.startswith("\r\n", self.pos):
                # Some servers send "* SEARCH " when nothing matched.
                #
                break
            number = self._p_re(_number_re, silent=True)
            if number is None:
                # CONDSTORE (MODSEQ n) trailer
                #
                self._p_skip_parens()
                break
            result.append(int(number))
        return result

    #######################################################################
    #
    def _p_resp_esearch(self) -> Dict[str, Any]:
        """esearch-response ::= "ESEARCH" [search-correlator] [SP "UID"]
                                *(SP search-return-data)

        search-correlator ::= SP "(" "TAG" SP tag-string ")"
        """
        result: Dict[str, Any] = {
            "tag": None,
            "uid": False,
            "all": [],
            "min": None,
            "max": None,
            "count": None,
        }
        while self._p_simple_string(" ", silent=True):
            if self._p_simple_string("(", silent=True):
                self._p_simple_string("tag")
                self._p_space()
                result["tag"] = self._p_astring()
                self._p_simple_string(")")
                continue
            name = self._p_re(_atom_re).lower()
            if name == "uid":
                result["uid"] = True
                continue
            self._p_space()
            if name == "all":
                result["all"] = expand_sequence(self._p_re(_seq_set_re))
            elif name in ("min", "max", "count", "modseq"):
                result[name] = int(self._p_re(_number_re))
            else:
                result[name] = self._p_value()
        return result

    #######################################################################
    #
    def _p_resp_flags(self) -> List[str]:
        """mailbox_data ::= "FLAGS" SPACE flag_list"""
        self._p_space()
        return self._p_paren_list_of(self._p_flag)

    #######################################################################
    #
    def _p_resp_ok(self) -> Dict[str, Any]:
        """resp_cond_state ::= ("OK" / "NO" / "BAD") SPACE resp_text"""
        if self._p_simple_string(" ", silent=True):
            return self._p_resp_text()
        return {"code": None, "code_value": None, "text": ""}

    _p_resp_no = _p_resp_ok
    _p_resp_bad = _p_resp_ok
    _p_resp_bye = _p_resp_ok
    _p_resp_preauth = _p_resp_ok

    #######################################################################
    #
    def _p_resp_text(self) -> Dict[str, Any]:
        """resp_text ::= ["[" resp_text_code "]" SPACE] (text_mime2 / text)

        The value of the codes we care about are parsed (numbers, flag lists,
        capabilities.) Everything else is kept as a string.
        """
        code = None
        code_value: Any = None
        if self._p_simple_string("[", silent=True):
            code = self._p_re(_resp_code_name_re).upper()
            if code in ("UNSEEN", "UIDNEXT", "UIDVALIDITY", "HIGHESTMODSEQ"):
                self._p_space()
                code_value = int(self._p_re(_number_re))
            elif code == "PERMANENTFLAGS":
                self._p_space()
                code_value = self._p_paren_list_of(self._p_flag)
            elif code == "CAPABILITY":
                code_value = self._p_resp_capability()
            else:
                rest = self._p_re(_resp_code_rest_re)
                code_value = rest.strip() or None
            self._p_simple_string("]")
            self._p_simple_string(" ", silent=True)
        text = self._p_re(_text_re)
        return {"code": code, "code_value": code_value, "text": text}

    #######################################################################
    #
    def _p_msg_att(self, seq: int) -> Dict[str, Any]:
        r"""msg_att ::= "(" 1#("ENVELOPE" SPACE envelope /
                       "FLAGS" SPACE "(" #(flag / "\Recent") ")" /
                       "INTERNALDATE" SPACE date_time /
                       "RFC822" [".HEADER" / ".TEXT"] SPACE nstring /
                       "RFC822.SIZE" SPACE number /
                       "BODY" ["STRUCTURE"] SPACE body /
                       "BODY" section ["<" number ">"] SPACE nstring /
                       "UID" SPACE uniqueid) ")"
        """
        record: Dict[str, Any] = {"seq": seq}
        self._p_simple_string("(", syntax_error="expected '(' after FETCH")
        if self._p_simple_string(")", silent=True):
            return record

        while True:
            match = _fetch_att_re.match(self.input, self.pos)
            if match is None:
                raise NoMatch("expected a fetch attribute", self.pos)
            self.pos = match.end()
            att = match.group(1).lower()
            section = match.group(2)
            self._p_space()

            if section is not None:
                key = "body" if section == "" else f"{att}[{section.lower()}]"
                if att == "binary" and section == "":
                    key = "binary"
                record[key] = self._p_nstring_bytes()
            elif att == "uid":
                record["uid"] = int(self._p_re(_number_re))
            elif att == "flags":
                record["flags"] = self._p_paren_list_of(self._p_flag)
            elif att == "rfc822.size":
                record["rfc822_size"] = int(self._p_re(_number_re))
            elif att == "internaldate":
                record["internaldate"] = self._p_date_time()
            elif att == "envelope":
                record["envelope"] = self._p_envelope()
            elif att in ("body", "bodystructure"):
                # We do not decode the body structure, just get past it.
                #
                self._p_skip_parens()
            elif att in ("rfc822", "rfc822.header", "rfc822.text"):
                record[att.replace(".", "_")] = self._p_nstring_bytes()
            elif att == "modseq":
                self._p_simple_string("(")
                record["modseq"] = int(self._p_re(_number_re))
                self._p_simple_string(")")
            else:
                record[att] = self._p_value()

            if self._p_simple_string(")", silent=True):
                break
            self._p_space()
        return record

    #######################################################################
    #
    def _p_envelope(self) -> Envelope:
        """envelope ::= "(" env_date SPACE env_subject SPACE env_from
                        SPACE env_sender SPACE env_reply_to SPACE env_to
                        SPACE env_cc SPACE env_bcc SPACE env_in_reply_to
                        SPACE env_message_id ")"
        """
        self._p_simple_string("(", syntax_error="expected '(' for envelope")
        date = self._p_nstring()
        self._p_space()
        subject = decode_mime_words(self._p_nstring())
        addresses = []
        for _ in range(6):
            self._p_space()
            addresses.append(self._p_address_list())
        self._p_space()
        in_reply_to = self._p_nstring()
        self._p_space()
        message_id = self._p_nstring()
        self._p_simple_string(")", syntax_error="expected ')' after envelope")
        return Envelope(
            date=date,
            subject=subject,
            from_=addresses[0],
            sender=addresses[1],
            reply_to=addresses[2],
            to=addresses[3],
            cc=addresses[4],
            bcc=addresses[5],
            in_reply_to=decode_text(in_reply_to),
            message_id=decode_text(message_id),
        )

    #######################################################################
    #
    def _p_address_list(self) -> List[Address]:
        """env_from ::= "(" 1*address ")" / nil"""
        if self._p_nil():
            return []
        self._p_simple_string("(", syntax_error="expected an address list")
        result: List[Address] = []
        while not self._p_simple_string(")", silent=True):
            # Some servers put spaces between the addresses
            #
            self._p_simple_string(" ", silent=True)
            result.append(self._p_address())
        return result

    #######################################################################
    #
    def _p_address(self) -> Address:
        """address ::= "(" addr_name SPACE addr_adl SPACE addr_mailbox
                       SPACE addr_host ")"
        """
        self._p_simple_string("(", syntax_error="expected an address")
        name = decode_mime_words(self._p_nstring())
        self._p_space()
        route = self._p_nstring()
        self._p_space()
        mailbox = decode_text(self._p_nstring())
        self._p_space()
        host = self._p_nstring()
        self._p_simple_string(")", syntax_error="expected ')' after address")
        return Address(name=name, mailbox=mailbox, host=host, route=route)

    #######################################################################
    #
    def _p_paren_list_of(self, func: Callable[[], Any]) -> List[Any]:
        """
        We are called with a function that is used to consume tokens. We
        expect the input stream to be '('<list of tokens>')' where the list
        of tokens is separated by a single space.

        We return a list of whatever the passed in function returns to us.
        """
        result: List[Any] = []
        self._p_simple_string(
            "(", syntax_error="expected a '(' beginning a parenthesized list"
        )
        # If we hit a ')' then it was an empty list.
        #
        if self._p_simple_string(")", silent=True):
            return result

        while True:
            result.append(func())
            if self._p_simple_string(")", silent=True):
                break
            self._p_space()
        return result

    #######################################################################
    #
    def _p_skip_parens(self):
        """
        Consume a parenthesized expression, however deeply nested, without
        interpreting it. Strings are consumed as strings so a ')' inside of
        a quoted string or literal does not end the expression.
        """
        if not self._p_simple_string("(", silent=True):
            # Not a list, just a single value.
            #
            self._p_value()
            return
        depth = 1
        while depth > 0:
            if self.pos >= len(self.input):
                raise NoMatch("unbalanced parentheses", self.pos)
            c = self.input[self.pos]
            if c == "(":
                depth += 1
                self.pos += 1
            elif c == ")":
                depth -= 1
                self.pos += 1
            elif c == '"':
                self._p_quoted()
            elif c == "{":
                self._p_literal()
            elif c in "\r\n":
                raise NoMatch("line ended inside a parenthesized list", self.pos)
            else:
                self.pos += 1

    #######################################################################
    #
    def _p_value(self) -> Any:
        """
        A value of a kind we do not specifically know about: a list, a
        string, NIL, a number or an atom.
        """
        if self._p_simple_string("(", silent=True, swallow=False):
            return self._p_paren_list_of(self._p_value)
        if self._p_nil():
            return None
        number = self._p_re(_number_re, silent=True)
        if number is not None:
            return int(number)
        return self._p_astring()

    #######################################################################
    #
    def _p_skip_line(self):
        """
        Skip to just before the CRLF that ends the current logical line.
        A line that ends with a literal prefix continues after the literal,
        so the literal's contents are skipped without being looked at.
        """
        while True:
            eol = self.input.find("\r\n", self.pos)
            if eol == -1:
                raise NoMatch("expected CRLF at end of response", self.pos)
            match = _lit_at_eol_re.search(self.input, self.pos, eol)
            if match is None:
                self.pos = eol
                return
            length = int(match.group(1))
            end = eol + 2 + length
            if end > len(self.input):
                raise BadLiteral(
                    f"literal of {length} bytes runs past end of input", eol
                )
            self.pos = end

    #######################################################################
    #
    def _p_flag(self) -> str:
        r"""flag ::= "\Answered" / "\Flagged" / "\Deleted" /
                 "\Seen" / "\Draft" / flag_keyword / flag_extension

        flag_perm ::= flag / "\*"

        What that above is saying is that a flag is an atom or a "\"
        followed by an atom.
        """
        flag = ""
        if self._p_simple_string("\\", silent=True):
            flag = "\\"
            if self._p_simple_string("*", silent=True):
                return "\\*"
        flag += self._p_re(_atom_re, syntax_error="expected a flag")
        return flag

    #######################################################################
    #
    def _p_date_time(self) -> float:
        """date_time ::= <"> date_day_fixed "-" date_month "-" date_year
                         SPACE time SPACE zone <">

        Returns the seconds since the epoch.
        """
        match = _date_time_re.match(self.input, self.pos)
        if match is None:
            raise NoMatch("expected a date-time", self.pos)
        self.pos = match.end()
        offset = int(match.group("tz_hr")) * 60 + int(match.group("tz_min"))
        if match.group("tz_sign") == "-":
            offset = -offset
        dt = datetime.datetime(
            int(match.group("year")),
            _month[match.group("month").lower()],
            int(match.group("day").strip()),
            int(match.group("hour")),
            int(match.group("min")),
            int(match.group("sec")),
            0,
            pytz.FixedOffset(offset),
        )
        return dt.timestamp()

    #######################################################################
    #
    def _p_mailbox(self) -> str:
        """mailbox ::= "INBOX" / astring

        INBOX is case-insensitive. Other names are in modified UTF-7.
        """
        name = decode_text(self._p_astring())
        if name.upper() == "INBOX":
            return "INBOX"
        return decode_mailbox_name(name)

    #######################################################################
    #
    def _p_astring(self) -> str:
        """an 'astring' is an 'atom' or a 'string'"""
        if self._p_simple_string("(", silent=True, swallow=False):
            raise NoMatch("expected an atom or string", self.pos)
        atom = self._p_re(_astring_atom_re, silent=True)
        if atom is not None:
            return atom
        return self._p_string()

    #######################################################################
    #
    def _p_nstring(self) -> Optional[str]:
        """nstring ::= string / nil"""
        if self._p_nil():
            return None
        return self._p_string()

    #######################################################################
    #
    def _p_nstring_bytes(self) -> Optional[bytes]:
        """
        An nstring that is message content. We return it as the bytes the
        server sent.
        """
        value = self._p_nstring()
        if value is None:
            return None
        return value.encode("latin-1")

    #######################################################################
    #
    def _p_nil(self) -> bool:
        """
        NIL, but not the start of an atom that begins with NIL.
        """
        if not self._p_simple_string("nil", silent=True, swallow=False):
            return False
        nxt = self.input[self.pos + 3 : self.pos + 4]
        if nxt and _atom_re.match(nxt):
            return False
        self.pos += 3
        return True

    #######################################################################
    #
    def _p_string(self) -> str:
        """A string is either a 'quoted string' or a 'literal string'"""
        if self._p_simple_string('"', silent=True, swallow=False):
            return self._p_quoted()
        return self._p_literal()

    #######################################################################
    #
    def _p_quoted(self) -> str:
        quoted = self._p_re(_quoted_re, group=1, syntax_error="expected a string")
        return _quoted_escape_re.sub(r"\1", quoted)

    #######################################################################
    #
    def _p_literal(self) -> str:
        """
        literal ::= "{" number "}" CRLF *CHAR8

        The number is how many bytes of data follow the CRLF. We take exactly
        that many, no matter what they look like.
        """
        literal_length = int(
            self._p_re(_lit_ref_re, group=1, syntax_error="expected a string")
        )
        remaining = len(self.input) - self.pos
        if literal_length > remaining:
            raise BadLiteral(
                f"Remaining input {remaining} characters long, expected "
                f"at least {literal_length}",
                self.pos,
            )
        value = self.input[self.pos : self.pos + literal_length]
        self.pos += literal_length
        return value

    #######################################################################
    #
    def _p_space(self):
        self._p_simple_string(" ", syntax_error="expected ' '")

    #######################################################################
    #
    def _p_crlf(self):
        self._p_simple_string("\r\n", syntax_error="expected CRLF")

    #######################################################################
    #
    def _p_re(
        self,
        regexp: re.Pattern,
        silent: bool = False,
        swallow: bool = True,
        group: int = 0,
        syntax_error: Optional[str] = None,
    ) -> Optional[str]:
        """
        This will attempt to match the given regular expression at the
        cursor. If it matches it will return what matched. If 'silent' is
        False, and it did NOT match, then it will raise the NoMatch
        exception. If 'swallow' is True, the cursor is moved past the match.

        NOTE: If the match fails then we do NOT move the cursor even if
              swallow = True
        """
        match = regexp.match(self.input, self.pos)
        if match is None:
            if silent:
                return None
            if syntax_error:
                raise NoMatch(syntax_error, self.pos)
            raise NoMatch(f"No match for r.e. '{regexp.pattern}'", self.pos)
        if swallow:
            self.pos = match.end()
        return match.group(group)

    #######################################################################
    #
    def _p_simple_string(
        self,
        string: str,
        silent: bool = False,
        swallow: bool = True,
        case_matters: bool = False,
        syntax_error: Optional[str] = None,
    ) -> Optional[str]:
        """
        Like _p_re(), this is used to parse a bit of input. However it just
        a well defined string so there is no waste time invoking a regular
        expression. The comparison is case insensitive unless 'case_matters'
        is True.

        If we do not match, then the cursor is not moved.
        """
        candidate = self.input[self.pos : self.pos + len(string)]
        if case_matters:
            match = candidate == string
        else:
            match = candidate.lower() == string.lower()

        if not match:
            if silent:
                return None
            if syntax_error:
                raise NoMatch(syntax_error, self.pos)
            raise NoMatch(
                f"No match for simple string '{string}', input started "
                f"with: '{self.input[self.pos:self.pos + 10]}'",
                self.pos,
            )
        if swallow:
            self.pos += len(string)
        return string.lower()

    #
    # Done token parsing routines.
    #
    #######################################################################
    #######################################################################


####################################################################
#
def parse_responses(data: Union[bytes, str]) -> List[Tuple[str, Any]]:
    return IMAPResponseParser(data).parse()


####################################################################
#
def parse_resp_text(text: str) -> Dict[str, Any]:
    """
    Parse the text of a tagged completion line, ie: '[READ-WRITE] SELECT
    completed'
    """
    return IMAPResponseParser(text).parse_resp_text()


####################################################################
#
def parse_capability(
    data: Union[bytes, str], text: Optional[str] = None
) -> Set[Union[str, Tuple[str, str]]]:
    """
    The capabilities from CAPABILITY responses or from CAPABILITY response
    codes (in untagged OK responses or in the tagged completion `text`.)
    """
    result: Set[Union[str, Tuple[str, str]]] = set()
    responses = parse_responses(data)
    if text:
        responses.append(("ok", parse_resp_text(text)))
    for kind, value in responses:
        if kind == "capability":
            result |= value
        elif kind in ("ok", "preauth") and value["code"] == "CAPABILITY":
            result |= value["code_value"]
    return result


####################################################################
#
def parse_list(data: Union[bytes, str]) -> List[Dict[str, Any]]:
    """
    LIST (or LSUB) responses in to a list of mailbox records. STATUS
    responses that come along (LIST-STATUS) are merged in to the record for
    their mailbox.
    """
    mailboxes: Dict[str, Dict[str, Any]] = {}
    for kind, value in parse_responses(data):
        if kind in ("list", "lsub"):
            mailboxes[value["name"]] = value
        elif kind == "status":
            mbox = mailboxes.get(value["name"])
            if mbox is None:
                logger.debug("STATUS for unlisted mailbox: %s", value["name"])
                continue
            for att, count in value.items():
                if att != "name":
                    mbox[att] = count
    return list(mailboxes.values())


####################################################################
#
def parse_status(data: Union[bytes, str]) -> Dict[str, Any]:
    for kind, value in parse_responses(data):
        if kind == "status":
            return value
    raise ParseError("no STATUS response found")


####################################################################
#
def parse_select(
    data: Union[bytes, str], text: Optional[str] = None
) -> Dict[str, Any]:
    """
    The mailbox metadata from the responses to SELECT or EXAMINE. `text` is
    the text of the tagged OK, which carries READ-ONLY/READ-WRITE.
    """
    result: Dict[str, Any] = {
        "flags": [],
        "exists": 0,
        "recent": 0,
        "unseen": None,
        "uidnext": None,
        "uidvalidity": None,
        "permanentflags": [],
        "read_only": False,
    }
    responses = parse_responses(data)
    if text:
        responses.append(("ok", parse_resp_text(text)))
    for kind, value in responses:
        if kind in ("flags", "exists", "recent"):
            result[kind] = value
        elif kind == "ok" and value["code"] is not None:
            code = value["code"]
            if code == "READ-ONLY":
                result["read_only"] = True
            elif code == "READ-WRITE":
                result["read_only"] = False
            elif code in ("UNSEEN", "UIDNEXT", "UIDVALIDITY", "PERMANENTFLAGS"):
                result[code.lower()] = value["code_value"]
            elif code == "HIGHESTMODSEQ":
                result["highestmodseq"] = value["code_value"]
    return result


####################################################################
#
def parse_fetch(data: Union[bytes, str]) -> List[Dict[str, Any]]:
    """
    One record per message from the FETCH responses in `data`, in the order
    the messages were first mentioned. A server may split the attributes of
    a message over several FETCH responses; they are merged by sequence
    number.
    """
    records: Dict[int, Dict[str, Any]] = {}
    for kind, value in parse_responses(data):
        if kind != "fetch":
            continue
        if value["seq"] in records:
            records[value["seq"]].update(value)
        else:
            records[value["seq"]] = value
    return list(records.values())


####################################################################
#
def parse_search(
    data: Union[bytes, str],
) -> Union[List[int], Dict[str, Any]]:
    """
    The ids from a SEARCH response, or, if the server answered with
    ESEARCH, the extended result record.
    """
    ids: List[int] = []
    for kind, value in parse_responses(data):
        if kind == "esearch":
            return value
        if kind == "search":
            ids.extend(value)
    return ids
