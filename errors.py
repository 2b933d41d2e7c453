"""Errors raised by the sync core.

Every batch-level failure derives from SyncError and carries a category telling
the caller what to do next: sign in again, retry, or fix the request.
"""

REAUTH = 'reauth'
TRANSIENT = 'transient'
CONFIGURATION = 'configuration'


class SyncError(Exception):
    """Base class for failures that abort a whole sync operation."""

    category = TRANSIENT


class AuthExpired(SyncError):
    """No usable access token and no way to refresh one."""

    category = REAUTH


class AuthRejected(SyncError):
    """The IMAP server refused the access token."""

    category = REAUTH


class ImapConnectionError(SyncError, ConnectionError):
    """Transport or TLS failure while talking to the IMAP server."""

    category = TRANSIENT


class FolderNotFound(SyncError):
    """The server rejected the requested folder name."""

    category = CONFIGURATION

    def __init__(self, folder: str, detail: str | None = None):
        self.folder = folder
        message = f"Unable to open folder {folder}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class FetchError(SyncError):
    """The bulk fetch failed mid-stream; nothing from the batch is kept."""

    category = TRANSIENT


class AccountNotFound(SyncError):
    """No stored account matches the request."""

    category = CONFIGURATION


class SyncTimeout(SyncError):
    """The sync did not finish within its deadline; the session was closed."""

    category = TRANSIENT


class ParseFailure(Exception):
    """A single fetched message could not be parsed. Never aborts a batch."""

    def __init__(self, reason: str, sequence_number: int | None = None):
        self.reason = reason
        self.sequence_number = sequence_number
        super().__init__(reason)


_CATEGORY_HINTS = {
    REAUTH: "Please sign in again (run the `login` command) to refresh your Gmail access.",
    TRANSIENT: "This looks temporary. Please try the sync again.",
    CONFIGURATION: "Please check the account and folder names and try again.",
}


def describe_error(exc: Exception) -> str:
    """Turn a sync error into a message the user can act on."""
    category = getattr(exc, 'category', None)
    hint = _CATEGORY_HINTS.get(category)
    if hint is None:
        return f"Unexpected error: {exc}"
    return f"{exc}. {hint}"
