# tests/test_sync.py
import asyncio
import base64
import datetime
from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock, patch

import aiosqlite
import pytest

from conftest import make_raw_message, message_events
from credentials import GoogleOAuthClient, TokenGrant
from errors import AccountNotFound, AuthRejected, FetchError, FolderNotFound, SyncTimeout
from fetcher import FetchEnded
from imap_client import FolderHandle
from sync import MailSyncer, SyncResult

UTC = datetime.timezone.utc


def _mailbox(count, seen_uids=(), gmail=True):
    """`count` messages as (uid, raw, flags, gmail_id), oldest first."""
    messages = []
    for n in range(1, count + 1):
        raw = make_raw_message(subject=f"Message {n}", date=f"Mon, {n:02d} Jan 2024 10:00:00 +0000")
        flags = ('\\Seen',) if n in seen_uids else ()
        messages.append((n * 10, raw, flags, f"17{n:04d}" if gmail else None))
    return messages


class FakeImapClient:
    """An ImapClient stand-in serving fixed folders through the real event stream."""

    def __init__(self, folders, connect_error=None, fetch_error=None, hang=False, start_after=None, failed=None):
        self.folders = folders
        self.connect_error = connect_error
        self.fetch_error = fetch_error
        self.hang = hang
        self.start_after = start_after
        self.connected_with = None
        self.closed = False
        self.hanging = asyncio.Event()
        self.failed = failed if failed is not None else asyncio.Event()

    async def connect(self, email, xoauth2_token):
        if self.connect_error is not None:
            raise self.connect_error
        self.connected_with = (email, xoauth2_token)

    async def open_folder(self, name):
        if name not in self.folders:
            raise FolderNotFound(name, "NONEXISTENT")
        return FolderHandle(name, len(self.folders[name]))

    async def list_folders(self, selectable_only=False):
        return list(self.folders)

    async def stream_fetch(self, sequence_set):
        messages = self.current_messages
        start, end = (int(n) for n in sequence_set.split(':'))
        if self.start_after is not None:
            await self.start_after.wait()
        for seq in range(start, end + 1):
            uid, raw, flags, gmail_id = messages[seq - 1]
            for event in message_events(seq, uid, raw, flags=flags, gmail_id=gmail_id):
                await asyncio.sleep(0)
                yield event
            if self.fetch_error is not None:
                self.failed.set()
                raise self.fetch_error
        if self.hang:
            self.hanging.set()
            await asyncio.Event().wait()
        yield FetchEnded()

    async def close(self):
        self.closed = True


class FakeClientFactory:
    def __init__(self, folders, **client_kwargs):
        self.folders = folders
        self.client_kwargs = client_kwargs
        self.clients = []

    def __call__(self):
        client = FakeImapClient(self.folders, **self.client_kwargs)
        original_open = client.open_folder

        async def open_folder(name):
            handle = await original_open(name)
            client.current_messages = self.folders[name]
            return handle

        client.open_folder = open_folder
        self.clients.append(client)
        return client


@pytest.fixture
def oauth_client():
    mock = MagicMock(spec=GoogleOAuthClient)
    mock.refresh = AsyncMock(return_value=TokenGrant(
        access_token="refreshed-token",
        expiry=datetime.datetime.now(UTC) + datetime.timedelta(hours=1),
    ))
    return mock


async def _stored_rows(db_manager, account_id):
    async with db_manager.db.execute(
        'SELECT folder, external_message_id, subject, is_read FROM email_metadata WHERE account_id = ? '
        'ORDER BY folder, external_message_id', (account_id,)
    ) as cursor:
        return [tuple(row) for row in await cursor.fetchall()]


@pytest.mark.asyncio
async def test_sync_saves_newest_messages(db_manager, account_id, oauth_client):
    factory = FakeClientFactory({'INBOX': _mailbox(5, seen_uids=(5,))})
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with patch('builtins.print'):
        result = await syncer.sync_mailbox(account_id, 'INBOX', limit=3, show_progress=False)

    assert result == SyncResult(folder='INBOX', fetched=3, saved=3)
    rows = await _stored_rows(db_manager, account_id)
    assert [row[2] for row in rows] == ["Message 3", "Message 4", "Message 5"]
    assert rows[-1][3] == 1
    history = await db_manager.get_sync_history(account_id)
    assert history[0]['status'] == 'COMPLETED'
    assert history[0]['message'] == "Saved 3 of 3 messages from INBOX"
    oauth_client.refresh.assert_not_awaited()


@pytest.mark.asyncio
async def test_session_uses_xoauth2_with_stored_token(db_manager, account_id, oauth_client):
    factory = FakeClientFactory({'INBOX': _mailbox(1)})
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with patch('builtins.print'):
        await syncer.sync_mailbox(account_id, 'INBOX', show_progress=False)

    email, token = factory.clients[0].connected_with
    assert email == "user@example.com"
    assert base64.b64decode(token) == b"user=user@example.com\x01auth=Bearer live-token\x01\x01"
    assert factory.clients[0].closed


@pytest.mark.asyncio
async def test_resync_updates_rows_in_place(db_manager, account_id, oauth_client):
    messages = _mailbox(4)
    factory = FakeClientFactory({'INBOX': messages})
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with patch('builtins.print'):
        await syncer.sync_mailbox(account_id, 'INBOX', show_progress=False)
        # the newest message got read in between
        uid, raw, _, gmail_id = messages[-1]
        messages[-1] = (uid, raw, ('\\Seen',), gmail_id)
        await syncer.sync_mailbox(account_id, 'INBOX', show_progress=False)

    rows = await _stored_rows(db_manager, account_id)
    assert len(rows) == 4
    assert sum(row[3] for row in rows) == 1


@pytest.mark.asyncio
async def test_same_message_in_two_folders_kept_per_folder(db_manager, account_id, oauth_client):
    messages = _mailbox(2)
    factory = FakeClientFactory({'INBOX': messages, '[Gmail]/All Mail': list(messages)})
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with patch('builtins.print'):
        await syncer.sync_mailbox(account_id, 'INBOX', show_progress=False)
        await syncer.sync_mailbox(account_id, '[Gmail]/All Mail', show_progress=False)

    rows = await _stored_rows(db_manager, account_id)
    assert len(rows) == 4
    assert {row[0] for row in rows} == {'INBOX', '[Gmail]/All Mail'}


@pytest.mark.asyncio
async def test_fallback_ids_without_gmail_extensions(db_manager, account_id, oauth_client):
    factory = FakeClientFactory({'Work': _mailbox(2, gmail=False)})
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with patch('builtins.print'):
        await syncer.sync_mailbox(account_id, 'Work', show_progress=False)

    assert [row[1] for row in await _stored_rows(db_manager, account_id)] == ['Work-10', 'Work-20']


@pytest.mark.asyncio
async def test_fetch_failure_closes_session_and_records_error(db_manager, account_id, oauth_client):
    factory = FakeClientFactory({'INBOX': _mailbox(3)}, fetch_error=FetchError("connection reset"))
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with patch('builtins.print'), pytest.raises(FetchError):
        await syncer.sync_mailbox(account_id, 'INBOX', show_progress=False)

    assert factory.clients[0].closed
    assert await _stored_rows(db_manager, account_id) == []
    history = await db_manager.get_sync_history(account_id)
    assert history[0]['status'] == 'ERROR'
    assert "connection reset" in history[0]['message']


@pytest.mark.asyncio
async def test_timeout_closes_session(db_manager, account_id, oauth_client):
    factory = FakeClientFactory({'INBOX': _mailbox(2)}, hang=True)
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with patch('builtins.print'), pytest.raises(SyncTimeout):
        await syncer.sync_mailbox(account_id, 'INBOX', timeout=0.2, show_progress=False)

    assert factory.clients[0].closed
    assert (await db_manager.get_sync_history(account_id))[0]['status'] == 'TIMEOUT'
    assert await _stored_rows(db_manager, account_id) == []


@pytest.mark.asyncio
async def test_cancellation_closes_session(db_manager, account_id, oauth_client):
    factory = FakeClientFactory({'INBOX': _mailbox(2)}, hang=True)
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with patch('builtins.print'):
        task = asyncio.create_task(syncer.sync_mailbox(account_id, 'INBOX', timeout=None, show_progress=False))
        while not (factory.clients and factory.clients[0].hanging.is_set()):
            await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert factory.clients[0].closed
    assert (await db_manager.get_sync_history(account_id))[0]['status'] == 'CANCELLED'


@pytest.mark.asyncio
async def test_rejected_login_closes_client(db_manager, account_id, oauth_client):
    factory = FakeClientFactory({'INBOX': []}, connect_error=AuthRejected("Gmail authentication failed"))
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with pytest.raises(AuthRejected):
        await syncer.sync_mailbox(account_id, 'INBOX', show_progress=False)

    assert factory.clients[0].closed
    history = await db_manager.get_sync_history(account_id)
    assert history[0]['status'] == 'ERROR'
    assert "sign in again" in history[0]['message']


@pytest.mark.asyncio
async def test_missing_folder_propagates(db_manager, account_id, oauth_client):
    factory = FakeClientFactory({'INBOX': []})
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with pytest.raises(FolderNotFound, match="Unable to open folder Nope"):
        await syncer.sync_mailbox(account_id, 'Nope', show_progress=False)
    assert factory.clients[0].closed


@pytest.mark.asyncio
async def test_expired_token_refreshed_before_connecting(db_manager, oauth_client):
    account_id = await db_manager.add_or_update_account(
        email="stale@example.com", display_name="Stale", access_token="old-token",
        refresh_token="refresh-token", expiry=datetime.datetime(2020, 1, 1, tzinfo=UTC),
    )
    factory = FakeClientFactory({'INBOX': _mailbox(1)})
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with patch('builtins.print'):
        await syncer.sync_mailbox(account_id, 'INBOX', show_progress=False)

    oauth_client.refresh.assert_awaited_once_with("refresh-token")
    assert (await db_manager.get_credential(account_id)).access_token == "refreshed-token"
    _, token = factory.clients[0].connected_with
    assert b"auth=Bearer refreshed-token" in base64.b64decode(token)


@pytest.mark.asyncio
async def test_unknown_account(db_manager, oauth_client):
    factory = FakeClientFactory({})
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with pytest.raises(AccountNotFound):
        await syncer.sync_mailbox(42, 'INBOX')
    assert factory.clients == []


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [0, -1, 501, "50"])
async def test_invalid_limit_rejected_before_connecting(db_manager, account_id, oauth_client, limit):
    factory = FakeClientFactory({'INBOX': _mailbox(1)})
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    with pytest.raises(ValueError, match="Sync limit"):
        await syncer.sync_mailbox(account_id, 'INBOX', limit=limit)
    assert factory.clients == []


@pytest.mark.asyncio
async def test_commit_failure_rolls_back(db_manager, account_id, oauth_client):
    factory = FakeClientFactory({'INBOX': _mailbox(2)})
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)
    failing_commit = AsyncMock(side_effect=aiosqlite.OperationalError("database is locked"))

    with patch.object(db_manager, 'commit_with_retry', failing_commit), patch('builtins.print'), \
            pytest.raises(aiosqlite.OperationalError):
        await syncer.sync_mailbox(account_id, 'INBOX', show_progress=False)

    failing_commit.assert_awaited_once()
    assert await _stored_rows(db_manager, account_id) == []
    history = await db_manager.get_sync_history(account_id)
    assert history[0]['status'] == 'ERROR'
    assert not db_manager.write_lock.locked()


@pytest.mark.asyncio
async def test_failing_sync_keeps_concurrent_batch(db_manager, account_id, oauth_client, monkeypatch):
    upserting = asyncio.Event()
    failed = asyncio.Event()
    original_upsert = db_manager.upsert_email_record

    async def slow_upsert(record):
        await original_upsert(record)
        upserting.set()
        await failed.wait()
        await asyncio.sleep(0.05)

    monkeypatch.setattr(db_manager, 'upsert_email_record', slow_upsert)
    inbox = MailSyncer(db_manager, oauth_client, client_factory=FakeClientFactory({'INBOX': _mailbox(3)}))
    work = MailSyncer(db_manager, oauth_client, client_factory=FakeClientFactory(
        {'Work': _mailbox(2)}, fetch_error=FetchError("boom"), start_after=upserting, failed=failed,
    ))

    with patch('builtins.print'):
        inbox_result, work_result = await asyncio.gather(
            inbox.sync_mailbox(account_id, 'INBOX', limit=3, show_progress=False),
            work.sync_mailbox(account_id, 'Work', limit=2, show_progress=False),
            return_exceptions=True,
        )

    assert inbox_result == SyncResult(folder='INBOX', fetched=3, saved=3)
    assert isinstance(work_result, FetchError)
    rows = await _stored_rows(db_manager, account_id)
    assert [(row[0], row[2]) for row in rows] == [
        ('INBOX', "Message 1"), ('INBOX', "Message 2"), ('INBOX', "Message 3"),
    ]
    history = await db_manager.get_sync_history(account_id)
    assert {entry['folder']: entry['status'] for entry in history} == {'INBOX': 'COMPLETED', 'Work': 'ERROR'}


@pytest.mark.asyncio
async def test_list_folders_closes_session(db_manager, account_id, oauth_client):
    factory = FakeClientFactory({'INBOX': [], 'Work': []})
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)

    assert await syncer.list_folders(account_id) == ['INBOX', 'Work']
    assert factory.clients[0].closed


@pytest.mark.asyncio
async def test_sync_all_folders_skips_unopenable(db_manager, account_id, oauth_client):
    folders = {'INBOX': _mailbox(2), 'Ghost': [], 'Work': _mailbox(1)}
    factory = FakeClientFactory(folders)
    syncer = MailSyncer(db_manager, oauth_client, client_factory=factory)
    original_factory_call = factory.__call__

    def factory_without_ghost():
        client = original_factory_call()
        open_folder = client.open_folder

        async def refuse_ghost(name):
            if name == 'Ghost':
                raise FolderNotFound(name, "NONEXISTENT")
            return await open_folder(name)

        client.open_folder = refuse_ghost
        return client

    syncer.client_factory = factory_without_ghost

    with patch('builtins.print') as mock_print:
        results = await syncer.sync_all_folders(account_id, show_progress=False)

    assert [r.folder for r in results] == ['INBOX', 'Work']
    assert sum(r.saved for r in results) == 3
    mock_print.assert_any_call("Found 3 folders to sync")
    mock_print.assert_any_call("[WARN] Skipping Ghost: Unable to open folder Ghost: NONEXISTENT")
    assert all(client.closed for client in factory.clients)
