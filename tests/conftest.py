# conftest.py - Configuration for pytest
# Fixtures shared across the test modules: an in-memory database, a client with
# imaplib.IMAP4_SSL patched out, and builders for fetch events and messages.

import asyncio
import datetime as dtmodule # Alias to avoid conflict with fixture names
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio  # Import this to use async fixtures

from credentials import AccountCredential
from db import DatabaseManager
from fetcher import (BodyChunk, FetchedMessage, MessageAttributes, MessageEnded, MessageStarted,
                     ParsedMessage, ServerAttributes)
from imap_client import ImapClient
from rendering import ParsedContent


@pytest_asyncio.fixture
async def db_manager():
    """
    Provides a DatabaseManager instance connected to an in-memory SQLite database
    with schema initialized.
    """
    manager = DatabaseManager(":memory:")
    await manager.connect()  # connect also calls setup_schema
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def account_id(db_manager):
    """A stored account with a token that is still valid for an hour."""
    return await db_manager.add_or_update_account(
        email="user@example.com",
        display_name="Test User",
        access_token="live-token",
        refresh_token="refresh-token",
        expiry=dtmodule.datetime.now(dtmodule.timezone.utc) + dtmodule.timedelta(hours=1),
    )


@pytest.fixture
def mock_imap_client():
    """Provides an ImapClient with imaplib.IMAP4_SSL mocked, already 'connected'."""
    with patch('imap_client.imaplib.IMAP4_SSL') as mock_imap_constructor:
        mock_imap_instance = MagicMock()
        mock_imap_instance.capabilities = ('IMAP4REV1', 'AUTH=XOAUTH2', 'X-GM-EXT-1')
        mock_imap_constructor.return_value = mock_imap_instance

        client = ImapClient(host="test.imap.server", port=993)
        client.imap = mock_imap_instance # Tests of connect() reset this to None

        yield client, mock_imap_instance


@pytest.fixture
def credential():
    return AccountCredential(
        account_id=1,
        email="user@example.com",
        access_token="stored-token",
        refresh_token="refresh-token",
        expiry=dtmodule.datetime(2024, 1, 1, 12, 0, tzinfo=dtmodule.timezone.utc),
    )


@pytest.fixture
def mocked_db_interface():
    """Provides a MagicMock for the DatabaseManager, mocking its interface."""
    mock = MagicMock(spec=DatabaseManager)
    mock.get_credential = AsyncMock()
    mock.save_credential = AsyncMock()
    mock.upsert_email_record = AsyncMock()
    mock.log_sync_start = AsyncMock(return_value=1)
    mock.log_sync_end = AsyncMock()
    mock.commit_with_retry = AsyncMock()
    mock.rollback = AsyncMock()
    return mock


def make_raw_message(subject="Hello", date="Mon, 01 Jan 2024 10:00:00 +0000",
                     body="Hi there", sender="Alice <alice@example.com>"):
    headers = [f"From: {sender}", "To: user@example.com", f"Subject: {subject}"]
    if date:
        headers.append(f"Date: {date}")
    headers.append("Content-Type: text/plain; charset=utf-8")
    return ("\r\n".join(headers) + "\r\n\r\n" + body).encode("utf-8")


def message_events(seq, uid, raw, flags=(), gmail_id=None, thread_id=None, chunk=None):
    """The events a server produces for one message, the body split into `chunk`-sized pieces."""
    events = [
        MessageStarted(seq),
        MessageAttributes(seq, ServerAttributes(uid=uid, flags=tuple(flags),
                                                gmail_message_id=gmail_id, gmail_thread_id=thread_id)),
    ]
    size = chunk or len(raw) or 1
    for offset in range(0, len(raw), size):
        events.append(BodyChunk(seq, raw[offset:offset + size]))
    events.append(MessageEnded(seq))
    return events


class FakeFetchClient:
    """Stands in for ImapClient.stream_fetch, replaying a fixed list of events."""

    def __init__(self, events, error=None):
        self.events = list(events)
        self.error = error
        self.requested = []

    async def stream_fetch(self, sequence_set):
        self.requested.append(sequence_set)
        for event in self.events:
            await asyncio.sleep(0)  # let parse tasks run between server events
            yield event
        if self.error is not None:
            raise self.error


def make_parsed_message(uid=1, flags=(), gmail_id=None, thread_id=None, subject="Hello",
                        body_text="Hi there", received_at=None, seq=None):
    received_at = received_at or dtmodule.datetime(2024, 1, 1, 10, 0, tzinfo=dtmodule.timezone.utc)
    return ParsedMessage(
        fetched=FetchedMessage(
            sequence_number=seq or uid,
            uid=uid,
            server_message_id=gmail_id,
            server_thread_id=thread_id,
            raw_bytes=b"",
            flags=tuple(flags),
        ),
        content=ParsedContent(
            from_addr="Alice <alice@example.com>",
            to_addr="user@example.com",
            cc=None,
            bcc=None,
            subject=subject,
            body_text=body_text,
            body_html=None,
            received_at=received_at,
        ),
    )
