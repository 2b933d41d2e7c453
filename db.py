import asyncio
import math
from contextlib import asynccontextmanager

import aiosqlite

from config import DEFAULT_FOLDER, DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE, MIN_PAGE_SIZE
from credentials import AccountCredential
from errors import AccountNotFound
from utils import debug_print, from_iso, to_iso, utc_now

# Columns returned for mailbox listings; bodies are only loaded for a single message
LIST_COLUMNS = (
    'id', 'account_id', 'external_message_id', 'thread_id', 'folder', 'subject',
    'from_addr', 'to_addr', 'cc', 'bcc', 'snippet', 'received_at', 'is_read', 'raw_flags', 'uid',
)
DETAIL_COLUMNS = LIST_COLUMNS + ('body_text', 'body_html')


def validate_page_size(page_size):
    if not isinstance(page_size, int) or not MIN_PAGE_SIZE <= page_size <= MAX_PAGE_SIZE:
        raise ValueError(f"Page size must be between {MIN_PAGE_SIZE} and {MAX_PAGE_SIZE}, got {page_size}")
    return page_size


def _email_row_to_dict(row) -> dict:
    email = dict(row)
    email['is_read'] = bool(email['is_read'])
    return email


class DatabaseManager:
    def __init__(self, db_path):
        self.db_path = db_path
        self.db = None
        # Held by every writer that commits or rolls back the shared connection
        self.write_lock = asyncio.Lock()

    async def connect(self):
        """Connect to the database"""
        self.db = await aiosqlite.connect(self.db_path)
        self.db.row_factory = aiosqlite.Row
        await self.setup_schema()
        return self.db

    async def close(self):
        """Close the database connection"""
        if self.db:
            await self.db.commit()
            await self.db.close()
            self.db = None

    async def commit_with_retry(self, max_retries=3):
        """Commit transaction with retry logic"""
        for attempt in range(max_retries):
            try:
                await self.db.commit()
                return True
            except aiosqlite.OperationalError as e:
                # "database is locked" while another writer holds the WAL
                if attempt == max_retries - 1:
                    print(f"[ERROR] Failed to commit after {max_retries} attempts: {e}")
                    raise
                await asyncio.sleep(0.1 * (attempt + 1))  # Exponential backoff

    async def rollback(self):
        """Discard writes that have not been committed yet"""
        if self.db:
            await self.db.rollback()

    @asynccontextmanager
    async def write_batch(self):
        """Hold the write lock for a batch of writes and commit them as one unit.

        Any error, cancellation included, rolls the batch back instead.
        Only unlocked writes such as upsert_email_record may run inside.
        """
        async with self.write_lock:
            try:
                yield
                await self.commit_with_retry()
            except BaseException:
                await self.rollback()
                raise

    async def setup_schema(self):
        """Set up the database schema"""
        # Performance pragmas for better SQLite performance
        await self.db.execute("PRAGMA journal_mode=WAL;")
        await self.db.execute("PRAGMA synchronous=NORMAL;")
        await self.db.execute("PRAGMA temp_store=MEMORY;")
        await self.db.execute("PRAGMA cache_size=-50000;")  # Use about 50MB of memory for caching

        # One row per signed-in Google account, holding its delegated credentials
        await self.db.execute('''
            CREATE TABLE IF NOT EXISTS accounts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                google_id TEXT UNIQUE,
                email TEXT NOT NULL UNIQUE,
                display_name TEXT,
                avatar_url TEXT,
                access_token TEXT,
                refresh_token TEXT,
                token_expiry TEXT,
                created_at TEXT,
                updated_at TEXT
            )
        ''')

        await self.db.execute('''
            CREATE TABLE IF NOT EXISTS email_metadata (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                account_id INTEGER NOT NULL,
                external_message_id TEXT NOT NULL,
                thread_id TEXT,
                folder TEXT NOT NULL,
                subject TEXT,
                from_addr TEXT,
                to_addr TEXT,
                cc TEXT,
                bcc TEXT,
                snippet TEXT,
                body_text TEXT,
                body_html TEXT,
                received_at TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                raw_flags TEXT,
                uid INTEGER,
                created_at TEXT,
                updated_at TEXT,
                UNIQUE(account_id, external_message_id, folder)
            )
        ''')

        # Add indexes
        await self.db.execute('CREATE INDEX IF NOT EXISTS idx_email_folder_received ON email_metadata(account_id, folder, received_at)')
        await self.db.execute('CREATE INDEX IF NOT EXISTS idx_email_subject ON email_metadata(account_id, subject)')
        await self.db.execute('CREATE INDEX IF NOT EXISTS idx_email_from ON email_metadata(account_id, from_addr)')

        await self.db.execute(f'''
            CREATE TABLE IF NOT EXISTS user_preferences (
                account_id INTEGER PRIMARY KEY,
                default_folder TEXT NOT NULL DEFAULT '{DEFAULT_FOLDER}',
                page_size INTEGER NOT NULL DEFAULT {DEFAULT_PAGE_SIZE}
                    CHECK (page_size BETWEEN {MIN_PAGE_SIZE} AND {MAX_PAGE_SIZE}),
                updated_at TEXT
            )
        ''')

        # Create sync_status table
        await self.db.execute('''
            CREATE TABLE IF NOT EXISTS sync_status (
                id INTEGER PRIMARY KEY,
                account_id INTEGER,
                folder TEXT,
                start_time TEXT,
                end_time TEXT,
                status TEXT,
                message TEXT
            )
        ''')

        await self.db.commit()

    # --- Credential store ---
    async def add_or_update_account(self, email, display_name, access_token, refresh_token, expiry,
                                    google_id=None, avatar_url=None) -> int:
        """Insert an account or refresh its stored tokens, returning the account id.

        Google only hands out a refresh token on the first consent, so a missing
        one never overwrites the token already stored.
        """
        now = to_iso(utc_now())
        async with self.write_lock:
            await self.db.execute('''
                INSERT INTO accounts (google_id, email, display_name, avatar_url, access_token,
                                      refresh_token, token_expiry, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(email) DO UPDATE SET
                    google_id = COALESCE(excluded.google_id, accounts.google_id),
                    display_name = COALESCE(excluded.display_name, accounts.display_name),
                    avatar_url = COALESCE(excluded.avatar_url, accounts.avatar_url),
                    access_token = excluded.access_token,
                    refresh_token = COALESCE(excluded.refresh_token, accounts.refresh_token),
                    token_expiry = excluded.token_expiry,
                    updated_at = excluded.updated_at
            ''', (google_id, email, display_name, avatar_url, access_token,
                  refresh_token, to_iso(expiry), now, now))
            await self.db.commit()
        account = await self.get_account_by_email(email)
        return account['id']

    async def get_account(self, account_id: int) -> dict | None:
        async with self.db.execute(
            'SELECT id, google_id, email, display_name, avatar_url, created_at FROM accounts WHERE id = ?',
            (account_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def get_account_by_email(self, email: str) -> dict | None:
        async with self.db.execute(
            'SELECT id, google_id, email, display_name, avatar_url, created_at FROM accounts WHERE email = ?',
            (email,)
        ) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row else None

    async def list_accounts(self) -> list[dict]:
        async with self.db.execute('SELECT id, email, display_name, created_at FROM accounts ORDER BY id') as cursor:
            return [dict(row) for row in await cursor.fetchall()]

    async def get_credential(self, account_id: int) -> AccountCredential | None:
        async with self.db.execute(
            'SELECT id, email, access_token, refresh_token, token_expiry FROM accounts WHERE id = ?',
            (account_id,)
        ) as cursor:
            row = await cursor.fetchone()
        if not row:
            return None
        return AccountCredential(
            account_id=row['id'],
            email=row['email'],
            access_token=row['access_token'] or '',
            refresh_token=row['refresh_token'],
            expiry=from_iso(row['token_expiry']),
        )

    async def save_credential(self, credential: AccountCredential):
        """Persist a refreshed credential. Last write wins."""
        async with self.write_lock:
            await self.db.execute('''
                UPDATE accounts
                SET access_token = ?,
                    refresh_token = COALESCE(?, refresh_token),
                    token_expiry = ?,
                    updated_at = ?
                WHERE id = ?
            ''', (credential.access_token, credential.refresh_token, to_iso(credential.expiry),
                  to_iso(utc_now()), credential.account_id))
            await self.db.commit()
        debug_print(f"Stored refreshed token for {credential.email}")

    # --- Metadata store ---
    async def upsert_email_record(self, record):
        """Insert a mail record, or update the mutable fields of the existing (account, id, folder) row."""
        now = to_iso(utc_now())
        await self.db.execute('''
            INSERT INTO email_metadata (
                account_id, external_message_id, thread_id, folder, subject, from_addr, to_addr,
                cc, bcc, snippet, body_text, body_html, received_at, is_read, raw_flags, uid,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(account_id, external_message_id, folder) DO UPDATE SET
                thread_id = excluded.thread_id,
                subject = excluded.subject,
                snippet = excluded.snippet,
                body_text = excluded.body_text,
                body_html = excluded.body_html,
                is_read = excluded.is_read,
                raw_flags = excluded.raw_flags,
                uid = excluded.uid,
                updated_at = excluded.updated_at
        ''', (
            record.account_id, record.external_message_id, record.thread_id, record.folder,
            record.subject, record.from_addr, record.to_addr, record.cc, record.bcc,
            record.snippet, record.body_text, record.body_html, to_iso(record.received_at),
            int(record.is_read), record.raw_flags, record.uid, now, now,
        ))

    async def find_emails_paged(self, account_id: int, folder=None, query=None, page=1, page_size=DEFAULT_PAGE_SIZE) -> dict:
        """Newest-first page of an account's messages, optionally filtered by folder or search text."""
        validate_page_size(page_size)
        if page < 1:
            raise ValueError(f"Page must be 1 or greater, got {page}")

        where = ['account_id = ?']
        params: list = [account_id]
        if folder:
            where.append('folder = ?')
            params.append(folder)
        if query:
            pattern = f"%{query}%"
            where.append('(subject LIKE ? OR from_addr LIKE ? OR snippet LIKE ?)')
            params.extend([pattern, pattern, pattern])
        where_sql = ' AND '.join(where)

        async with self.db.execute(f'SELECT COUNT(*) FROM email_metadata WHERE {where_sql}', params) as cursor:
            row = await cursor.fetchone()
        total = row[0] if row else 0

        async with self.db.execute(
            f'''SELECT {", ".join(LIST_COLUMNS)} FROM email_metadata
                WHERE {where_sql}
                ORDER BY received_at DESC, id DESC
                LIMIT ? OFFSET ?''',
            params + [page_size, (page - 1) * page_size]
        ) as cursor:
            emails = [_email_row_to_dict(r) for r in await cursor.fetchall()]

        return {
            'emails': emails,
            'pagination': {
                'page': page,
                'limit': page_size,
                'total': total,
                'totalPages': math.ceil(total / page_size),
            },
        }

    async def get_email_by_id(self, account_id: int, email_id: int) -> dict | None:
        async with self.db.execute(
            f'SELECT {", ".join(DETAIL_COLUMNS)} FROM email_metadata WHERE id = ? AND account_id = ?',
            (email_id, account_id)
        ) as cursor:
            row = await cursor.fetchone()
        return _email_row_to_dict(row) if row else None

    async def count_emails(self, account_id: int, is_read=None) -> int:
        sql = 'SELECT COUNT(*) FROM email_metadata WHERE account_id = ?'
        params: list = [account_id]
        if is_read is not None:
            sql += ' AND is_read = ?'
            params.append(int(is_read))
        async with self.db.execute(sql, params) as cursor:
            row = await cursor.fetchone()
            return row[0] if row and row[0] is not None else 0

    async def count_emails_by_folder(self, account_id: int) -> list[dict]:
        """Per-folder message counts, folders in ascending order."""
        async with self.db.execute(
            'SELECT folder, COUNT(*) AS count FROM email_metadata WHERE account_id = ? GROUP BY folder ORDER BY folder ASC',
            (account_id,)
        ) as cursor:
            return [{'folder': r['folder'], 'count': r['count']} for r in await cursor.fetchall()]

    # --- Preferences ---
    async def get_preferences(self, account_id: int) -> dict:
        """Return the account's preferences, creating the default row on first use."""
        async with self.write_lock:
            await self.db.execute(
                'INSERT OR IGNORE INTO user_preferences (account_id, updated_at) VALUES (?, ?)',
                (account_id, to_iso(utc_now()))
            )
            await self.db.commit()
        async with self.db.execute(
            'SELECT default_folder, page_size FROM user_preferences WHERE account_id = ?', (account_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return {'default_folder': row['default_folder'], 'page_size': row['page_size']}

    async def update_preferences(self, account_id: int, default_folder=None, page_size=None) -> dict:
        if page_size is not None:
            validate_page_size(page_size)
        if default_folder is not None and not default_folder.strip():
            raise ValueError("Default folder must not be empty")

        current = await self.get_preferences(account_id)
        async with self.write_lock:
            await self.db.execute(
                'UPDATE user_preferences SET default_folder = ?, page_size = ?, updated_at = ? WHERE account_id = ?',
                (default_folder if default_folder is not None else current['default_folder'],
                 page_size if page_size is not None else current['page_size'],
                 to_iso(utc_now()), account_id)
            )
            await self.db.commit()
        return await self.get_preferences(account_id)

    # --- Sync log ---
    async def log_sync_start(self, message, account_id=None, folder=None):
        """Log the start of a sync operation"""
        async with self.write_lock:
            async with self.db.execute('''
                INSERT INTO sync_status (account_id, folder, start_time, status, message)
                VALUES (?, ?, ?, 'STARTED', ?)
            ''', (account_id, folder, to_iso(utc_now()), message)) as cursor:
                status_id = cursor.lastrowid
            await self.db.commit()
        return status_id

    async def log_sync_end(self, status_id, status, message):
        """Log the completion of a sync operation"""
        async with self.write_lock:
            await self.db.execute(
                "UPDATE sync_status SET end_time = ?, status = ?, message = ? WHERE id = ?",
                (to_iso(utc_now()), status, message, status_id)
            )
            await self.db.commit()

    async def get_sync_history(self, account_id: int, limit=10) -> list[dict]:
        async with self.db.execute(
            'SELECT id, folder, start_time, end_time, status, message FROM sync_status '
            'WHERE account_id = ? ORDER BY id DESC LIMIT ?',
            (account_id, limit)
        ) as cursor:
            return [dict(row) for row in await cursor.fetchall()]

    async def resolve_account(self, email=None) -> dict:
        """Pick the account by email, or the only stored one when no email is given."""
        if email:
            account = await self.get_account_by_email(email)
            if account is None:
                raise AccountNotFound(f"No stored account for {email}")
            return account
        accounts = await self.list_accounts()
        if not accounts:
            raise AccountNotFound("No accounts stored yet")
        if len(accounts) > 1:
            raise AccountNotFound("Several accounts are stored, choose one by email")
        return accounts[0]
