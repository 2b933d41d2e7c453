# config.py - Centralized configuration for the application

# --- OAuth2 Configuration ---
# SCOPES: Access requested from Google. The mail scope is what IMAP XOAUTH2 needs,
# the identity scopes let `login` resolve the account email.
SCOPES = [
    'openid',
    'https://www.googleapis.com/auth/userinfo.email',
    'https://www.googleapis.com/auth/userinfo.profile',
    'https://mail.google.com/',
]

# CLIENT_SECRET_PATH: Path to the client secret JSON file downloaded from Google Cloud Console.
# This file is required for the OAuth2 flow to identify the application.
CLIENT_SECRET_PATH = 'creds.json' # Standard name, user must provide this file.

# TOKEN_URI: Google's token endpoint, used when refreshing stored tokens.
TOKEN_URI = 'https://oauth2.googleapis.com/token'

# TOKEN_REFRESH_MARGIN_SECONDS: A stored access token expiring sooner than this is refreshed first.
TOKEN_REFRESH_MARGIN_SECONDS = 60

# --- IMAP Configuration ---
# Gmail only, implicit TLS. XOAUTH2 is the only login mechanism.
IMAP_HOST = 'imap.gmail.com'
IMAP_PORT = 993

# CONNECT_RETRY_ATTEMPTS: Attempts for transient connection failures. Rejected tokens are never retried.
CONNECT_RETRY_ATTEMPTS = 3

# FETCH_CHUNK_BYTES: Size of the body chunks handed to the fetch engine per message.
FETCH_CHUNK_BYTES = 65536

# --- Sync Behavior Configuration ---
DEFAULT_FOLDER = 'INBOX'

# DEFAULT_SYNC_LIMIT / MAX_SYNC_LIMIT: How many of the newest messages one sync retrieves.
DEFAULT_SYNC_LIMIT = 50
MAX_SYNC_LIMIT = 500

# SNIPPET_LENGTH: Characters of plain-text body kept as the preview snippet.
SNIPPET_LENGTH = 200

# SYNC_TIMEOUT_SECONDS: Deadline for one sync operation. None disables it.
SYNC_TIMEOUT_SECONDS = 300

# --- Browsing Defaults ---
DEFAULT_PAGE_SIZE = 20
MIN_PAGE_SIZE = 5
MAX_PAGE_SIZE = 100

# --- Application Defaults ---
# DEFAULT_DB_PATH: Default path for the SQLite database file.
DEFAULT_DB_PATH = 'mail.sqlite3'

# DEFAULT_CREDS_JSON_PATH: Default path for the OAuth2 client secrets JSON file.
# Corresponds to the --creds argument in main.py.
DEFAULT_CREDS_JSON_PATH = CLIENT_SECRET_PATH

# --- Debugging ---
# DEBUG: Global flag to enable or disable debug print statements and behaviors.
# Can be overridden by the --debug command-line argument.
DEBUG_MODE = False # Default to False, can be set by CLI
