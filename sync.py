import asyncio
from dataclasses import dataclass

from tqdm import tqdm

# Local imports
from config import DEFAULT_FOLDER, DEFAULT_SYNC_LIMIT, MAX_SYNC_LIMIT, SYNC_TIMEOUT_SECONDS
from credentials import ensure_live_token
from db import DatabaseManager
from errors import AccountNotFound, FolderNotFound, SyncTimeout, describe_error
from fetcher import BulkFetcher
from imap_client import ImapClient, build_xoauth2_token
from normalizer import upsert_message
from utils import debug_print


@dataclass(frozen=True)
class SyncResult:
    folder: str
    fetched: int
    saved: int


def validate_sync_limit(limit):
    if not isinstance(limit, int) or not 1 <= limit <= MAX_SYNC_LIMIT:
        raise ValueError(f"Sync limit must be between 1 and {MAX_SYNC_LIMIT}, got {limit}")
    return limit


class MailSyncer:
    def __init__(self, db_manager: DatabaseManager, oauth_client, client_factory=ImapClient):
        """
        Args:
            db_manager: Connected DatabaseManager, used as credential and metadata store.
            oauth_client: Refreshes expired access tokens (GoogleOAuthClient).
            client_factory: Builds a fresh, unconnected ImapClient per operation.
        """
        self.db_manager = db_manager
        self.oauth_client = oauth_client
        self.client_factory = client_factory

    async def _load_credential(self, account_id):
        credential = await self.db_manager.get_credential(account_id)
        if credential is None:
            raise AccountNotFound(f"No stored account with id {account_id}")
        return credential

    async def _open_session(self, credential) -> ImapClient:
        """Refresh the token if needed and return an authenticated client.

        The caller owns the returned client and must close it.
        """
        access_token = await ensure_live_token(credential, self.db_manager, self.oauth_client)
        client = self.client_factory()
        try:
            await client.connect(credential.email, build_xoauth2_token(credential.email, access_token))
        except BaseException:
            await client.close()
            raise
        return client

    async def list_folders(self, account_id: int, selectable_only=False) -> list[str]:
        """All folder paths of the account's mailbox, depth first."""
        credential = await self._load_credential(account_id)
        client = await self._open_session(credential)
        try:
            return await client.list_folders(selectable_only=selectable_only)
        finally:
            await client.close()

    async def sync_mailbox(self, account_id: int, folder=DEFAULT_FOLDER, limit=DEFAULT_SYNC_LIMIT,
                           timeout=SYNC_TIMEOUT_SECONDS, show_progress=True) -> SyncResult:
        """Fetch the newest `limit` messages of `folder` and upsert them.

        The batch is committed as one unit under the database write lock.
        On any failure it is rolled back and the failure is recorded in
        sync_status before the error propagates.
        """
        validate_sync_limit(limit)
        credential = await self._load_credential(account_id)

        status_id = await self.db_manager.log_sync_start(
            f'Starting sync of {folder} (newest {limit})', account_id=account_id, folder=folder
        )
        try:
            operation = self._sync_folder(credential, folder, limit, show_progress)
            if timeout:
                result = await asyncio.wait_for(operation, timeout)
            else:
                result = await operation
        except asyncio.TimeoutError:
            await self._record_failure(status_id, 'TIMEOUT', f'Sync of {folder} exceeded {timeout}s')
            raise SyncTimeout(f"Sync of {folder} did not finish within {timeout} seconds") from None
        except asyncio.CancelledError:
            await self._record_failure(status_id, 'CANCELLED', f'Sync of {folder} was cancelled')
            raise
        except Exception as e:
            await self._record_failure(status_id, 'ERROR', describe_error(e)[:200])
            raise

        await self.db_manager.log_sync_end(
            status_id, 'COMPLETED', f'Saved {result.saved} of {result.fetched} messages from {folder}'
        )
        return result

    async def _record_failure(self, status_id, status, message):
        await self.db_manager.log_sync_end(status_id, status, message)

    async def _sync_folder(self, credential, folder, limit, show_progress) -> SyncResult:
        client = await self._open_session(credential)
        try:
            handle = await client.open_folder(folder)
            print(f"Fetching the newest {min(limit, handle.total)} of {handle.total} messages in {folder}")
            parsed_messages = await BulkFetcher(client).fetch_newest(handle, limit)
        finally:
            await client.close()

        async with self.db_manager.write_batch():
            saved = await self._store_all(credential.account_id, folder, parsed_messages, show_progress)
        print(f"Sync of {folder} finished: {saved} messages saved")
        return SyncResult(folder=folder, fetched=len(parsed_messages), saved=saved)

    async def _store_all(self, account_id, folder, parsed_messages, show_progress) -> int:
        if not parsed_messages:
            return 0
        pbar = tqdm(total=len(parsed_messages), desc=f'Saving {folder}', disable=not show_progress)

        async def store(parsed):
            record = await upsert_message(self.db_manager, account_id, folder, parsed)
            pbar.update(1)
            return record

        try:
            records = await asyncio.gather(*(store(parsed) for parsed in parsed_messages))
        finally:
            pbar.close()
        return len(records)

    async def sync_all_folders(self, account_id: int, limit=DEFAULT_SYNC_LIMIT,
                               timeout=SYNC_TIMEOUT_SECONDS, show_progress=True) -> list[SyncResult]:
        """Sync every selectable folder in turn, one session per folder."""
        validate_sync_limit(limit)
        folders = await self.list_folders(account_id, selectable_only=True)
        print(f"Found {len(folders)} folders to sync")

        results = []
        for folder in folders:
            try:
                results.append(await self.sync_mailbox(account_id, folder, limit, timeout, show_progress))
            except FolderNotFound as e:
                # Containers the server lists but refuses to open
                print(f"[WARN] Skipping {folder}: {e}")
                debug_print(f"Folder {folder} not selectable, skipped")
        return results
