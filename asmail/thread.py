"""
Threading of messages by subject, the ORDEREDSUBJECT algorithm of RFC5256.

Messages are grouped by their base subject (the subject with reply and
forward decorations removed.) Within a thread messages are in date order and
threads are in the order of their earliest message. The result is a two level
forest: each thread is a root message and the list of the messages that
follow it.
"""

# system imports
#
import logging
import re
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Tuple

# asmail imports
#
from .exceptions import NotFound
from .utils import envelope_timestamp

logger = logging.getLogger("asmail.thread")

# A thread tree: a list of (root uid, [[child uid], [child uid], ...])
#
ThreadTree = List[Tuple[int, List[List[int]]]]

RE_WHITESPACE = re.compile(r"\s+")

# subj-trailer: "(fwd)" at the end of the subject.
#
RE_SUBJ_TRAILER = re.compile(r"\s*\(fwd\)\s*$", re.IGNORECASE)

# subj-refwd: "re:" "fw:" "fwd:" optionally followed by a [blob]
#
RE_SUBJ_REFWD = re.compile(
    r"^(?:re|fwd?)\s*(?:\[[^\[\]]*\])?\s*:\s*", re.IGNORECASE
)

# subj-blob: "[" anything without brackets "]" at the start of the subject.
#
RE_SUBJ_BLOB = re.compile(r"^\[[^\[\]]*\]\s*")

# subj-fwd: "[fwd: <subject>]"
#
RE_SUBJ_FWD = re.compile(r"^\[fwd:\s*(.*)\]$", re.IGNORECASE)


####################################################################
#
def base_subject(subject: str) -> str:
    """
    The base subject of RFC5256 section 2.1: the subject with `Re:`, `Fwd:`
    and `[list-name]` prefixes and `(fwd)` trailers removed, white space
    collapsed and case folded.
    """
    subject = RE_WHITESPACE.sub(" ", subject or "").strip()
    while True:
        # Trailers first, then leaders, until neither changes anything.
        #
        while True:
            stripped = RE_SUBJ_TRAILER.sub("", subject)
            if stripped == subject:
                break
            subject = stripped

        while True:
            stripped = RE_SUBJ_REFWD.sub("", subject, count=1)
            if stripped == subject:
                blob = RE_SUBJ_BLOB.sub("", subject, count=1)
                # A blob is only a leader if there is a subject after it.
                #
                if blob != subject and blob:
                    stripped = blob
            if stripped == subject:
                break
            subject = stripped

        m = RE_SUBJ_FWD.match(subject)
        if m is None:
            break
        subject = m.group(1).strip()

    return subject.casefold()


####################################################################
#
def message_timestamp(message: Mapping[str, Any]) -> float:
    """
    The time we sort a message by: the date in its envelope, failing that
    its internal date, failing that the epoch.
    """
    envelope = message.get("envelope")
    if envelope is not None:
        timestamp = envelope_timestamp(envelope.date)
        if timestamp is not None:
            return timestamp
    internaldate = message.get("internaldate")
    if internaldate is not None:
        return float(internaldate)
    return 0.0


####################################################################
#
def message_subject(message: Mapping[str, Any]) -> str:
    envelope = message.get("envelope")
    if envelope is None or envelope.subject is None:
        return ""
    return envelope.subject


####################################################################
#
def order_by_subject(messages: Iterable[Mapping[str, Any]]) -> ThreadTree:
    """
    Thread messages (records with a `uid`, an `envelope` and maybe an
    `internaldate`) by subject.

    Groups are created in the order their base subject is first seen. The
    messages in a group and the groups themselves are ordered with stable
    sorts so equal times keep that order.
    """
    groups: Dict[str, List[Tuple[float, int]]] = {}
    for message in messages:
        key = base_subject(message_subject(message))
        groups.setdefault(key, []).append(
            (message_timestamp(message), message["uid"])
        )

    threads: List[List[Tuple[float, int]]] = []
    for group in groups.values():
        threads.append(sorted(group, key=lambda m: m[0]))
    threads.sort(key=lambda thread: thread[0][0])

    logger.debug(
        "Threaded %d messages in to %d threads",
        sum(len(t) for t in threads),
        len(threads),
    )
    return [(thread[0][1], [[uid] for _, uid in thread[1:]]) for thread in threads]


##################################################################
##################################################################
#
class ThreadIndex:
    """
    Lookups on a thread tree for display code: the position of a message
    in the threaded order, its level (0 for a thread root, 1 for the messages
    that follow it) and the root of its thread.
    """

    ##################################################################
    #
    def __init__(self, tree: ThreadTree):
        self.tree = tree
        self.order: List[int] = []
        self.levels: Dict[int, int] = {}
        self.roots: Dict[int, int] = {}
        for root, children in tree:
            self._add(root, 0, root)
            for child in children:
                self._add(child[0], 1, root)
        self.positions = {uid: idx for idx, uid in enumerate(self.order)}

    ##################################################################
    #
    def _add(self, uid: int, level: int, root: int):
        self.order.append(uid)
        self.levels[uid] = level
        self.roots[uid] = root

    ##################################################################
    #
    def __len__(self):
        return len(self.order)

    ##################################################################
    #
    def __contains__(self, uid):
        return uid in self.positions

    ##################################################################
    #
    def __iter__(self) -> Iterator[Tuple[int, int]]:
        """
        (uid, level) in threaded order.
        """
        for uid in self.order:
            yield (uid, self.levels[uid])

    ##################################################################
    #
    def position(self, uid: int) -> int:
        try:
            return self.positions[uid]
        except KeyError:
            raise NotFound(f"uid {uid} is not in any thread")

    ##################################################################
    #
    def level(self, uid: int) -> int:
        try:
            return self.levels[uid]
        except KeyError:
            raise NotFound(f"uid {uid} is not in any thread")

    ##################################################################
    #
    def root(self, uid: int) -> int:
        try:
            return self.roots[uid]
        except KeyError:
            raise NotFound(f"uid {uid} is not in any thread")
