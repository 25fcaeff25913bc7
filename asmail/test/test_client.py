"""
Higher up the stack.. testing the `client` module. These are the operations
callers perform on an account.
"""
# system imports
#
import asyncio

# 3rd party imports
#
import pytest
from dirty_equals import IsPartialDict

# Project imports
#
from ..account import Account
from ..client import AccountSession, ConnectionManager
from ..constants import SUMMARY_FETCH_ATTS
from ..exceptions import (
    CapabilityError,
    ConfigurationError,
    IMAPConnectionError,
    No,
    NotFound,
)
from ..search import IMAPSearch, search_any
from ..thread import order_by_subject
from .utils import message_summary

LIST_ALL = (
    'LIST "" "*" RETURN (SPECIAL-USE STATUS '
    "(MESSAGES RECENT UIDNEXT UIDVALIDITY UNSEEN))"
)


####################################################################
#
@pytest.mark.asyncio
async def test_capability_memoized(account_session, imap_server):
    caps = await account_session.capability()
    assert "MOVE" in caps
    assert ("AUTH", "PLAIN") in caps
    assert await account_session.capability() is caps

    results = await asyncio.gather(
        *[account_session.capability() for _ in range(3)]
    )
    assert all(r is caps for r in results)
    assert imap_server.command_texts() == ["CAPABILITY"]

    await account_session.capability(refresh=True)
    assert imap_server.command_texts() == ["CAPABILITY", "CAPABILITY"]


####################################################################
#
@pytest.mark.asyncio
async def test_has_capability(account_session):
    assert await account_session.has_capability("move")
    assert await account_session.has_capability("AUTH")
    assert await account_session.has_capability("auth=plain")
    assert not await account_session.has_capability("AUTH=LOGIN")
    assert not await account_session.has_capability("CONDSTORE")


####################################################################
#
@pytest.mark.asyncio
async def test_one_connection_for_concurrent_requests(account_session, imap_server):
    await asyncio.gather(
        account_session.noop(),
        account_session.capability(),
        account_session.mailbox_status("INBOX"),
    )
    assert imap_server.connections == 1


####################################################################
#
@pytest.mark.asyncio
async def test_mailboxes(account_session, imap_server):
    mailboxes = await account_session.mailboxes()
    assert mailboxes == [
        {
            "name": "INBOX",
            "delimiter": "/",
            "attributes": ["\\HasNoChildren"],
            "messages": 10,
            "recent": 0,
            "uidnext": 11,
            "uidvalidity": 1,
            "unseen": 0,
        },
        IsPartialDict(name="Archive", messages=0),
    ]
    assert await account_session.mailboxes() is mailboxes
    assert imap_server.command_texts() == ["CAPABILITY", LIST_ALL]

    await account_session.mailboxes(refresh=True)
    assert imap_server.command_texts() == ["CAPABILITY", LIST_ALL, LIST_ALL]


####################################################################
#
@pytest.mark.asyncio
async def test_mailboxes_plain_list(account_session, imap_server):
    imap_server.capabilities = "IMAP4rev1 AUTH=PLAIN"
    mailboxes = await account_session.mailboxes()
    assert [mbox["name"] for mbox in mailboxes] == ["INBOX", "Archive"]
    assert "messages" not in mailboxes[0]
    assert imap_server.command_texts() == ["CAPABILITY", 'LIST "" "*"']


####################################################################
#
@pytest.mark.asyncio
async def test_mailboxes_with_prefix(imap_server, account_factory):
    imap_server.capabilities = "IMAP4rev1 AUTH=PLAIN"
    session = AccountSession(account_factory(path="Work"))
    try:
        await session.mailboxes()
        assert imap_server.command_texts()[-1] == 'LIST "" "Work*"'
    finally:
        await session.logout()


####################################################################
#
@pytest.mark.asyncio
async def test_special_use_mailbox(account_session, imap_server):
    imap_server.mailboxes["Sent Messages"] = 3
    imap_server.attributes = {
        "Sent Messages": "\\Sent",
        "Archive": "\\Archive",
    }
    assert await account_session.special_use_mailbox("\\Sent") == "Sent Messages"
    assert await account_session.special_use_mailbox("\\archive") == "Archive"

    drafts = await account_session.special_use_mailbox(
        "\\Drafts", ["Drafts", "Archive"]
    )
    assert drafts == "Archive"

    with pytest.raises(NotFound):
        await account_session.special_use_mailbox("\\Junk", ["Spam", "Junk"])

    # All of that from one listing.
    #
    assert imap_server.command_texts().count(LIST_ALL) == 1


####################################################################
#
@pytest.mark.asyncio
async def test_mailbox_status(account_session, imap_server):
    status = await account_session.mailbox_status("INBOX")
    assert status == {
        "name": "INBOX",
        "messages": 10,
        "recent": 0,
        "uidnext": 11,
        "uidvalidity": 1,
        "unseen": 0,
    }
    assert imap_server.command_texts() == [
        "STATUS INBOX (MESSAGES RECENT UIDNEXT UIDVALIDITY UNSEEN)"
    ]

    with pytest.raises(No):
        await account_session.mailbox_status("Nowhere")


####################################################################
#
@pytest.mark.asyncio
async def test_mailbox_info(account_session):
    # With the listing cached an unknown mailbox is noticed before the
    # server answers the STATUS.
    #
    await account_session.mailboxes()
    info = await account_session.mailbox_info("Archive")
    assert info == IsPartialDict(
        name="Archive", messages=0, attributes=["\\HasNoChildren"]
    )

    with pytest.raises(NotFound):
        await account_session.mailbox_info("Nowhere")


####################################################################
#
@pytest.mark.asyncio
async def test_fetch_range(account_session, imap_server):
    messages = await account_session.fetch_range("INBOX", 3)
    assert [m["uid"] for m in messages] == [8, 9, 10]
    assert messages[0]["envelope"].subject == "Message 8"
    assert imap_server.command_texts() == [
        "SELECT INBOX",
        f"FETCH 8:10 {SUMMARY_FETCH_ATTS}",
    ]


####################################################################
#
@pytest.mark.asyncio
async def test_fetch_range_skip_newest(account_session, imap_server):
    messages = await account_session.fetch_range("INBOX", 3, skip_newest=True)
    assert [m["uid"] for m in messages] == [7, 8, 9]

    messages = await account_session.fetch_range("INBOX", 50)
    assert len(messages) == 10
    assert imap_server.command_texts()[-1] == f"FETCH 1:10 {SUMMARY_FETCH_ATTS}"


####################################################################
#
@pytest.mark.asyncio
async def test_fetch_range_empty(account_session, imap_server):
    assert await account_session.fetch_range("Archive", 5) == []
    assert await account_session.fetch_range("INBOX", 0) == []
    imap_server.mailboxes["Single"] = 1
    assert await account_session.fetch_range("Single", 5, skip_newest=True) == []

    # Nothing but the SELECTs were sent.
    #
    assert all(t.startswith("SELECT") for t in imap_server.command_texts())


####################################################################
#
@pytest.mark.asyncio
async def test_fetch_range_flag_changes_mixed_in(account_session, imap_server):
    """
    Flag changes the server slips in to the fetch do not show up as
    messages of their own.
    """
    imap_server.script(
        "FETCH",
        "* 9 FETCH (FLAGS ())\r\n"
        + message_summary(8, 8)
        + "* 3 FETCH (FLAGS (\\Deleted))\r\n"
        + message_summary(9, 9)
        + message_summary(10, 10),
    )
    messages = await account_session.fetch_range("INBOX", 3)
    assert [m["uid"] for m in messages] == [8, 9, 10]
    assert messages[1]["flags"] == ["\\Seen"]
    assert order_by_subject(messages) == [(8, []), (9, []), (10, [])]


####################################################################
#
@pytest.mark.asyncio
async def test_fetch_message(account_session, imap_server):
    body = await account_session.fetch_message("INBOX", 3)
    assert body == b"Subject: Message 3\n\nHello 3\n"
    assert imap_server.command_texts() == [
        "SELECT INBOX",
        "UID FETCH 3 (BODY.PEEK[])",
    ]

    with pytest.raises(NotFound):
        await account_session.fetch_message("INBOX", 99)


####################################################################
#
@pytest.mark.asyncio
async def test_search(account_session, imap_server):
    imap_server.script("UID SEARCH", "* SEARCH 2 4\r\n")
    query = search_any(
        IMAPSearch("subject", string="hello there"),
        IMAPSearch("from", string="bob"),
    )
    messages = await account_session.search("INBOX", query)
    assert [m["uid"] for m in messages] == [2, 4]
    assert imap_server.command_texts() == [
        "SELECT INBOX",
        'UID SEARCH CHARSET UTF-8 OR SUBJECT "hello there" FROM bob',
        f"UID FETCH 2,4 {SUMMARY_FETCH_ATTS}",
    ]


####################################################################
#
@pytest.mark.asyncio
async def test_search_esearch(account_session, imap_server):
    imap_server.script("UID SEARCH", '* ESEARCH (TAG "A3") UID ALL 3:5\r\n')
    uids = await account_session.search_uids(
        "INBOX", [IMAPSearch("unseen"), IMAPSearch("larger", n=1024)]
    )
    assert uids == [3, 4, 5]
    assert imap_server.command_texts()[-1] == (
        "UID SEARCH CHARSET UTF-8 UNSEEN LARGER 1024"
    )


####################################################################
#
@pytest.mark.asyncio
async def test_search_nothing_found(account_session, imap_server):
    imap_server.script("UID SEARCH", "* SEARCH\r\n")
    assert await account_session.search("INBOX", IMAPSearch("all")) == []
    assert not any(
        t.startswith("UID FETCH") for t in imap_server.command_texts()
    )


####################################################################
#
@pytest.mark.asyncio
async def test_move_without_capability(account_session, imap_server):
    imap_server.capabilities = "IMAP4rev1 AUTH=PLAIN"
    with pytest.raises(CapabilityError) as exc_info:
        await account_session.move("INBOX", [1, 2], "Archive")
    assert exc_info.value.capability == "MOVE"
    assert imap_server.command_texts() == ["CAPABILITY"]


####################################################################
#
@pytest.mark.asyncio
async def test_move(account_session, imap_server):
    await account_session.mailboxes()
    response = await account_session.move("INBOX", [3, 1, 2, 7], "Archive")
    assert response.status == "OK"
    assert imap_server.command_texts()[-2:] == [
        "SELECT INBOX",
        "UID MOVE 1:3,7 Archive",
    ]
    assert await account_session.move("INBOX", [], "Archive") is None

    # The mailbox list is fetched again after a move.
    #
    await account_session.mailboxes()
    assert imap_server.command_texts().count(LIST_ALL) == 2


####################################################################
#
@pytest.mark.asyncio
async def test_examine_forces_reselect(account_session, imap_server):
    await account_session.select("INBOX")
    info = await account_session.examine("Archive")
    assert info == IsPartialDict(exists=0, read_only=True)
    await account_session.fetch_uids("INBOX", [1])
    assert imap_server.command_texts() == [
        "SELECT INBOX",
        "EXAMINE Archive",
        "SELECT INBOX",
        f"UID FETCH 1 {SUMMARY_FETCH_ATTS}",
    ]


####################################################################
#
@pytest.mark.asyncio
async def test_reconnect_after_close(account_session, imap_server):
    await account_session.noop()
    first = account_session.connection
    imap_server.disconnect()
    await asyncio.sleep(0.01)
    assert account_session.connection is None

    await account_session.noop()
    assert account_session.connection is not first
    assert imap_server.connections == 2


####################################################################
#
@pytest.mark.asyncio
async def test_failed_login_not_cached(account_session, imap_server):
    imap_server.users = {"someone@example.com": "password"}
    with pytest.raises(No):
        await account_session.noop()
    assert account_session.connection is None

    imap_server.users = {}
    response = await account_session.noop()
    assert response.status == "OK"
    assert imap_server.connections == 2


####################################################################
#
@pytest.mark.asyncio
async def test_greeting_refused_then_logout(imap_server, account_factory, mocker):
    greeting = mocker.patch.object(
        imap_server,
        "greeting",
        return_value=b"* BYE too many connections\r\n",
    )
    session = AccountSession(account_factory(scheme="imap"))
    with pytest.raises(IMAPConnectionError):
        await session.connect()
    assert session.connection is None

    # Nothing to log out of, so this returns right away.
    #
    await asyncio.wait_for(session.logout(), 1)

    greeting.return_value = (
        f"* OK [CAPABILITY {imap_server.capabilities}] ready\r\n".encode()
    )
    response = await session.noop()
    assert response.status == "OK"
    assert imap_server.connections == 2
    await session.logout()


####################################################################
#
@pytest.mark.asyncio
async def test_connect_without_password_forgets_connection(imap_server):
    account = Account(
        "nopass",
        "imaps://bob@imap.example.com",
        password_resolver=lambda user, host, port: None,
    )
    session = AccountSession(account)
    with pytest.raises(ConfigurationError):
        await session.noop()
    assert session.connection is None
    await asyncio.wait_for(session.logout(), 1)


####################################################################
#
@pytest.mark.asyncio
async def test_connection_manager(imap_server, account_factory):
    work = account_factory(name="work")
    home = account_factory(name="home")
    manager = ConnectionManager([work, home])
    with pytest.raises(ValueError):
        manager.add_account(account_factory(name="work"))
    with pytest.raises(NotFound):
        manager.session("play")

    assert manager["work"].account is work
    assert [s.name for s in manager] == ["work", "home"]

    await manager["work"].noop()
    await manager["home"].noop()
    assert imap_server.connections == 2

    await manager.close()
    assert imap_server.command_texts().count("LOGOUT") == 2
    assert all(s.connection is None for s in manager)


####################################################################
#
@pytest.mark.asyncio
async def test_connection_manager_close_lost_connection(
    imap_server, account_factory
):
    manager = ConnectionManager([account_factory(name="work")])
    await manager["work"].noop()
    imap_server.hold = True

    # The server never answers the LOGOUT and goes away.
    #
    close = asyncio.create_task(manager.close())
    await asyncio.sleep(0.01)
    imap_server.disconnect()
    await close
    assert manager["work"].connection is None
