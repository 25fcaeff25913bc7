"""
pytest fixtures for testing `asmail`
"""
# System imports
#
import logging

# 3rd party imports
#
import pytest
import pytest_asyncio
import trustme

# project imports
#
from ..client import AccountSession
from ..connection import IMAPConnection
from .factories import AccountFactory
from .utils import FakeIMAPServer


####################################################################
#
@pytest.fixture(scope="session")
def ssl_certs():
    """
    Creates certificates using `trustme`. What is returned is a tuple of a
    `trustme.CA()` instance, and the `trustme` issued server cert.
    """
    ca = trustme.CA()
    server_cert = ca.issue_cert("127.0.0.1", "localhost", "::1")
    return (ca, server_cert)


####################################################################
#
@pytest.fixture(autouse=True)
def asmail_logging(caplog):
    """
    Log everything from asmail so tests can look at what was logged.
    """
    caplog.set_level(logging.DEBUG, logger="asmail")
    yield caplog


####################################################################
#
@pytest_asyncio.fixture
async def imap_server(mocker):
    """
    A FakeIMAPServer. Every time a connection is opened to any server it
    is connected to this one through mocked streams.
    """
    server = FakeIMAPServer()

    async def open_connection(*args, **kwargs):
        return server.streams(mocker)

    server.open_connection = mocker.patch(
        "asmail.connection.asyncio.open_connection",
        side_effect=open_connection,
    )
    yield server


####################################################################
#
@pytest.fixture
def account_factory():
    def make_account(*args, **kwargs):
        return AccountFactory(*args, **kwargs)

    yield make_account


####################################################################
#
@pytest_asyncio.fixture
async def imap_connection(imap_server, account_factory, mocker):
    """
    An IMAPConnection that has connected and authenticated with the
    `imap_server`. `on_close` is a mock so tests can see when it closed.
    """
    conn = IMAPConnection(account_factory(), on_close=mocker.Mock())
    await conn.connect()
    try:
        yield conn
    finally:
        await conn.close()


####################################################################
#
@pytest_asyncio.fixture
async def account_session(imap_server, account_factory):
    """
    An AccountSession whose connections go to the `imap_server`.
    """
    session = AccountSession(account_factory())
    try:
        yield session
    finally:
        if session.connection is not None:
            await session.connection.close()
