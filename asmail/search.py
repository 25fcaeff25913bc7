"""
Classes and their supporting methods that represent an IMAP Search
structure, and render it as the search keys of an IMAP SEARCH command.
"""
# system imports
#
from datetime import date, datetime
from enum import StrEnum
from typing import Iterable, List, Union

# asmail imports
#
from .utils import compact_sequence, quote

# IMAP dates use english month names no matter what the locale is.
#
MONTHS = (
    "Jan",
    "Feb",
    "Mar",
    "Apr",
    "May",
    "Jun",
    "Jul",
    "Aug",
    "Sep",
    "Oct",
    "Nov",
    "Dec",
)


############################################################################
#
class BadSearchOp(Exception):
    def __init__(self, value="bad search operation"):
        self.value = value

    def __str__(self):
        return "BadSearchOp: %s" % self.value


########################################################################
########################################################################
#
class SearchOp(StrEnum):
    """
    Valid Search ops as an Enum
    """

    ALL = "all"
    AND = "and"
    ANSWERED = "answered"
    BCC = "bcc"
    BEFORE = "before"
    BODY = "body"
    CC = "cc"
    DELETED = "deleted"
    DRAFT = "draft"
    FLAGGED = "flagged"
    FROM = "from"
    HEADER = "header"
    KEYWORD = "keyword"
    LARGER = "larger"
    MESSAGE_SET = "message_set"
    NOT = "not"
    ON = "on"
    OR = "or"
    SEEN = "seen"
    SENTBEFORE = "sentbefore"
    SENTON = "senton"
    SENTSINCE = "sentsince"
    SINCE = "since"
    SMALLER = "smaller"
    SUBJECT = "subject"
    TEXT = "text"
    TO = "to"
    UID = "uid"
    UNANSWERED = "unanswered"
    UNDELETED = "undeleted"
    UNDRAFT = "undraft"
    UNFLAGGED = "unflagged"
    UNKEYWORD = "unkeyword"
    UNSEEN = "unseen"


STR_TO_SEARCH_OP = {op_enum.value: op_enum for op_enum in SearchOp}

# Search keys that take no arguments. They render as their upper cased name.
#
FLAG_OPS = (
    SearchOp.ALL,
    SearchOp.ANSWERED,
    SearchOp.DELETED,
    SearchOp.DRAFT,
    SearchOp.FLAGGED,
    SearchOp.SEEN,
    SearchOp.UNANSWERED,
    SearchOp.UNDELETED,
    SearchOp.UNDRAFT,
    SearchOp.UNFLAGGED,
    SearchOp.UNSEEN,
)

# Search keys that take a string.
#
STRING_OPS = (
    SearchOp.BCC,
    SearchOp.BODY,
    SearchOp.CC,
    SearchOp.FROM,
    SearchOp.SUBJECT,
    SearchOp.TEXT,
    SearchOp.TO,
)

# Search keys that take a date.
#
DATE_OPS = (
    SearchOp.BEFORE,
    SearchOp.ON,
    SearchOp.SENTBEFORE,
    SearchOp.SENTON,
    SearchOp.SENTSINCE,
    SearchOp.SINCE,
)


####################################################################
#
def imap_date(value: Union[date, datetime, str]) -> str:
    """
    Render a date as an IMAP search date, ie: 17-Jul-1996
    """
    if isinstance(value, str):
        return value
    return f"{value.day}-{MONTHS[value.month - 1]}-{value.year:04d}"


############################################################################
############################################################################
#
class IMAPSearch(object):
    """
    This is an IMAPSearch object. It holds one search key of a search and,
    for the boolean ops, the search keys it combines. The possible search
    keys are as defined in rfc3501.

    It must be given the search operation and the keyword arguments that
    operation needs:

    - and, or: `search_key`, a list of IMAPSearch
    - not: `search_key`, an IMAPSearch
    - header: `header` and `string`
    - bcc, body, cc, from, subject, text, to: `string`
    - larger, smaller: `n`
    - before, on, since, sentbefore, senton, sentsince: `date` (a date,
      datetime or an already formatted string)
    - keyword, unkeyword: `keyword`
    - uid, message_set: `msg_set`, a list of numbers or a sequence set
      string

    `to_imap()` (and `str()`) renders the search keys for the wire.
    """

    #########################################################################
    #
    def __init__(self, op, **kwargs):
        if op not in STR_TO_SEARCH_OP:
            raise BadSearchOp(f"'{op}' is not a valid search op")
        self.op = STR_TO_SEARCH_OP[op]
        self.args = kwargs

    #########################################################################
    #
    def __repr__(self):
        return f"IMAPSearch, operation: {self.op.value}"

    #########################################################################
    #
    def __str__(self):
        return self.to_imap()

    #########################################################################
    #
    def __eq__(self, other):
        if not isinstance(other, IMAPSearch):
            return NotImplemented
        return self.op == other.op and self.args == other.args

    ##################################################################
    #
    def to_imap(self) -> str:
        """
        The IMAP search keys for this search.

        Raises BadSearchOp if an argument the op needs is missing and
        ValueError if a string contains CR or LF.
        """
        if self.op in FLAG_OPS:
            return self.op.value.upper()
        try:
            if self.op in STRING_OPS:
                return f"{self.op.value.upper()} {quote(self.args['string'])}"
            if self.op in DATE_OPS:
                return f"{self.op.value.upper()} {imap_date(self.args['date'])}"
            return getattr(self, f"_render_{self.op.value}")()
        except KeyError as exc:
            raise BadSearchOp(f"'{self.op.value}' requires the argument {exc}")

    #########################################################################
    #########################################################################
    #
    #

    #########################################################################
    #
    def _render_and(self) -> str:
        """
        Search keys next to each other are and'ed. Parenthesize them so the
        result can be used as a single search key.
        """
        keys = [search.to_imap() for search in self.args["search_key"]]
        if not keys:
            return "ALL"
        if len(keys) == 1:
            return keys[0]
        return f"({' '.join(keys)})"

    #########################################################################
    #
    def _render_or(self) -> str:
        """
        OR in IMAP takes exactly two search keys. More than two are folded
        to the right: OR a OR b c
        """
        keys = [search.to_imap() for search in self.args["search_key"]]
        if not keys:
            raise BadSearchOp("'or' needs at least one search key")
        result = keys[-1]
        for key in reversed(keys[:-1]):
            result = f"OR {key} {result}"
        return result

    #########################################################################
    #
    def _render_not(self) -> str:
        return f"NOT {self.args['search_key'].to_imap()}"

    #########################################################################
    #
    def _render_header(self) -> str:
        return (
            f"HEADER {quote(self.args['header'])} "
            f"{quote(self.args['string'])}"
        )

    #########################################################################
    #
    def _render_larger(self) -> str:
        return f"LARGER {int(self.args['n'])}"

    #########################################################################
    #
    def _render_smaller(self) -> str:
        return f"SMALLER {int(self.args['n'])}"

    #########################################################################
    #
    def _render_keyword(self) -> str:
        return f"KEYWORD {self._keyword()}"

    #########################################################################
    #
    def _render_unkeyword(self) -> str:
        return f"UNKEYWORD {self._keyword()}"

    #########################################################################
    #
    def _keyword(self) -> str:
        keyword = self.args["keyword"]
        if not keyword or quote(keyword) != keyword:
            raise BadSearchOp(f"'{keyword}' is not a valid keyword")
        return keyword

    #########################################################################
    #
    def _render_uid(self) -> str:
        return f"UID {self._msg_set()}"

    #########################################################################
    #
    def _render_message_set(self) -> str:
        return self._msg_set()

    #########################################################################
    #
    def _msg_set(self) -> str:
        msg_set = self.args["msg_set"]
        if isinstance(msg_set, str):
            return msg_set
        msg_set = list(msg_set)
        if not msg_set:
            raise BadSearchOp("an empty message set matches nothing")
        return compact_sequence(msg_set)


####################################################################
#
def search_all(*keys: IMAPSearch) -> IMAPSearch:
    """
    Shorthand for the and of several search keys.
    """
    return IMAPSearch("and", search_key=list(keys))


####################################################################
#
def search_any(*keys: IMAPSearch) -> IMAPSearch:
    """
    Shorthand for the or of several search keys.
    """
    return IMAPSearch("or", search_key=list(keys))


####################################################################
#
def render_search(keys: Iterable[IMAPSearch]) -> str:
    """
    The search keys of a SEARCH command. Top level keys are and'ed by
    being next to each other.
    """
    rendered: List[str] = [key.to_imap() for key in keys]
    if not rendered:
        return "ALL"
    return " ".join(rendered)
