import asyncio
import base64
import imaplib
import re
import ssl
from contextlib import suppress
from dataclasses import dataclass

# Import constants from config.py
from config import CONNECT_RETRY_ATTEMPTS, FETCH_CHUNK_BYTES, IMAP_HOST, IMAP_PORT
from errors import AuthRejected, FetchError, FolderNotFound, ImapConnectionError
from fetcher import BodyChunk, FetchEnded, MessageAttributes, MessageEnded, MessageStarted, ServerAttributes
from folders import flatten_mailbox_tree, parse_list_response, unselectable_folders
from utils import async_retry, debug_print

_AUTH_REJECTION_MARKERS = ('invalid credentials', 'authentication failed', 'authenticationfailed')

_FETCH_START = re.compile(rb'^\s*(\d+)\s+\(')
_UID = re.compile(r'\bUID (\d+)')
_FLAGS = re.compile(r'\bFLAGS \(([^)]*)\)')
_GM_MSGID = re.compile(r'\bX-GM-MSGID (\d+)')
_GM_THRID = re.compile(r'\bX-GM-THRID (\d+)')


def build_xoauth2_token(email: str, access_token: str) -> str:
    """Base64 SASL XOAUTH2 initial response: user=<email>^Aauth=Bearer <token>^A^A."""
    auth_string = f"user={email}\x01auth=Bearer {access_token}\x01\x01"
    return base64.b64encode(auth_string.encode('utf-8')).decode('ascii')


def is_auth_rejection(message: str) -> bool:
    lowered = message.lower()
    return any(marker in lowered for marker in _AUTH_REJECTION_MARKERS)


def parse_fetch_attributes(text: str):
    """Extract ServerAttributes from the attribute text of one FETCH answer, or None without a UID."""
    uid_match = _UID.search(text)
    if not uid_match:
        return None
    flags_match = _FLAGS.search(text)
    msgid_match = _GM_MSGID.search(text)
    thrid_match = _GM_THRID.search(text)
    return ServerAttributes(
        uid=int(uid_match.group(1)),
        flags=tuple(flags_match.group(1).split()) if flags_match else (),
        gmail_message_id=msgid_match.group(1) if msgid_match else None,
        gmail_thread_id=thrid_match.group(1) if thrid_match else None,
    )


def split_fetch_response(data):
    """Group imaplib's FETCH data into (attribute_bytes, literal_or_None) per message.

    imaplib returns each message as a (prefix, literal) tuple, optionally followed
    by a bytes element carrying attributes the server sent after the literal.
    Messages without a literal arrive as a single bytes element.
    """
    i = 0
    while i < len(data):
        item = data[i]
        i += 1
        if isinstance(item, tuple) and len(item) >= 2:
            meta, literal = item[0], item[1]
            if i < len(data) and isinstance(data[i], bytes) and not _FETCH_START.match(data[i]):
                meta = meta + b' ' + data[i]
                i += 1
            yield meta, literal
        elif isinstance(item, bytes) and _FETCH_START.match(item):
            yield item, None


@dataclass(frozen=True)
class FolderHandle:
    name: str
    total: int


class ImapClient:
    """One authenticated, read-only IMAP session against Gmail."""

    FETCH_ITEMS = '(UID FLAGS BODY.PEEK[])'
    FETCH_ITEMS_GMAIL = '(UID FLAGS X-GM-MSGID X-GM-THRID BODY.PEEK[])'

    def __init__(self, host=IMAP_HOST, port=IMAP_PORT):
        self.host = host
        self.port = port
        self.imap = None
        self.current_mailbox = None

    async def _run(self, func):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, func)

    @property
    def supports_gmail_extensions(self) -> bool:
        capabilities = getattr(self.imap, 'capabilities', None) or ()
        return 'X-GM-EXT-1' in capabilities

    @async_retry(attempts=CONNECT_RETRY_ATTEMPTS, retry_on=(ImapConnectionError,))
    async def connect(self, email: str, xoauth2_token: str):
        """Open the TLS connection and authenticate with a prebuilt XOAUTH2 token."""
        print(f"Connecting to {self.host} as {email}...")
        self.imap = await self._run(lambda: self._login_xoauth2(xoauth2_token))
        print("Connection established successfully")
        return self.imap

    def _login_xoauth2(self, xoauth2_token: str):
        """Authenticate with IMAP server using OAuth2"""
        try:
            imap = imaplib.IMAP4_SSL(self.host, self.port, ssl_context=ssl.create_default_context())
        except (OSError, imaplib.IMAP4.error) as e:
            raise ImapConnectionError(f"Failed to connect to {self.host}:{self.port}: {e}") from e

        auth_bytes = base64.b64decode(xoauth2_token)
        try:
            imap.authenticate('XOAUTH2', lambda x: auth_bytes)
        except (OSError, imaplib.IMAP4.error) as e:
            with suppress(OSError, imaplib.IMAP4.error):
                imap.shutdown()
            if is_auth_rejection(str(e)):
                print("OAuth2 authentication failed. Token might be invalid or expired.")
                raise AuthRejected(
                    "Gmail authentication failed. Please log out and sign in again to refresh your credentials"
                ) from e
            raise ImapConnectionError(str(e)) from e
        return imap

    def _require_connection(self):
        if self.imap is None:
            raise ImapConnectionError("Not connected to the IMAP server")

    def _quote_mailbox_if_needed(self, mailbox):
        """Add double quotes around mailbox names that contain spaces or slashes"""
        if not (mailbox.startswith('"') and mailbox.endswith('"')):
            if " " in mailbox or "/" in mailbox:
                return f'"{mailbox}"'
        return mailbox

    async def open_folder(self, name: str) -> FolderHandle:
        """Select `name` read-only and report its message count."""
        self._require_connection()
        quoted_mailbox = self._quote_mailbox_if_needed(name)
        try:
            status, data = await self._run(lambda: self.imap.select(quoted_mailbox, readonly=True))
        except imaplib.IMAP4.abort as e:
            raise ImapConnectionError(str(e)) from e
        except imaplib.IMAP4.error as e:
            raise FolderNotFound(name, str(e)) from e
        except OSError as e:
            raise ImapConnectionError(str(e)) from e

        if status != 'OK':
            detail = data[0].decode('utf-8', errors='replace') if data and isinstance(data[0], bytes) else None
            print(f"Failed to select mailbox {name}: {status}")
            raise FolderNotFound(name, detail)

        self.current_mailbox = name
        try:
            total = int(data[0])
        except (TypeError, ValueError, IndexError):
            total = 0
        debug_print(f"Opened {name} read-only with {total} messages")
        return FolderHandle(name=name, total=total)

    async def _list_tree(self):
        self._require_connection()
        try:
            status, mailboxes_data = await self._run(lambda: self.imap.list())
        except (OSError, imaplib.IMAP4.error) as e:
            raise ImapConnectionError(str(e)) from e
        if status != 'OK':
            print(f"Warning: LIST failed with status {status}")
            return {}
        return parse_list_response(mailboxes_data or [])

    async def list_folders(self, selectable_only=False) -> list[str]:
        """List all mailboxes as canonical folder paths, in server order."""
        tree = await self._list_tree()
        folders = flatten_mailbox_tree(tree)
        if selectable_only:
            skipped = unselectable_folders(tree)
            folders = [folder for folder in folders if folder not in skipped]
        return folders

    async def stream_fetch(self, sequence_set: str):
        """Issue one bulk FETCH and yield its per-message events, then FetchEnded."""
        self._require_connection()
        fetch_items = self.FETCH_ITEMS_GMAIL if self.supports_gmail_extensions else self.FETCH_ITEMS
        try:
            status, data = await self._run(lambda: self.imap.fetch(sequence_set, fetch_items))
        except (OSError, imaplib.IMAP4.error) as e:
            raise FetchError(f"Bulk fetch of {sequence_set} failed: {e}") from e
        if status != 'OK':
            raise FetchError(f"Bulk fetch of {sequence_set} failed with status {status}")

        for meta, literal in split_fetch_response(data or []):
            seq = int(_FETCH_START.match(meta).group(1))
            yield MessageStarted(seq)
            attributes = parse_fetch_attributes(meta.decode('utf-8', errors='replace'))
            if attributes is not None:
                yield MessageAttributes(seq, attributes)
            if literal:
                for offset in range(0, len(literal), FETCH_CHUNK_BYTES):
                    yield BodyChunk(seq, literal[offset:offset + FETCH_CHUNK_BYTES])
            yield MessageEnded(seq)
        yield FetchEnded()

    async def close(self):
        """Close the IMAP connection. Never raises.

        A failed CLOSE or LOGOUT (an IMAP4.abort on a dropped link, say)
        still ends in the socket being shut down.
        """
        if self.imap:
            debug_print("Closing IMAP connection...")
            imap = self.imap
            clean = True
            try:
                if self.current_mailbox:
                    try:
                        await self._run(imap.close)
                    except (imaplib.IMAP4.error, OSError) as e:
                        clean = False
                        print(f"Error closing mailbox {self.current_mailbox}: {e}")
                try:
                    await self._run(imap.logout)
                except (imaplib.IMAP4.error, OSError) as e:
                    clean = False
                    print(f"Error closing IMAP connection: {e}")
                if clean:
                    debug_print("IMAP connection closed.")
                else:
                    with suppress(OSError, imaplib.IMAP4.error):
                        await self._run(imap.shutdown)
            finally:
                self.imap = None
                self.current_mailbox = None
