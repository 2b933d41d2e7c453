import datetime

import uvicorn
from mcp.server.fastmcp import FastMCP

import config
from analytics import email_stats as compute_email_stats
from credentials import GoogleOAuthClient
from db import DatabaseManager
from errors import describe_error
from rendering import extract_clean_text, render_email_to_markdown
from sync import MailSyncer

# Global FastMCP app instance
mcp = FastMCP(
    "Gmail Metadata Sync",
    instructions="Sync Gmail message metadata into a local SQLite store and browse it.",
)

# Connected lazily on the first tool call, so importing this module stays cheap
_state = {
    'db_path': config.DEFAULT_DB_PATH,
    'creds_path': config.DEFAULT_CREDS_JSON_PATH,
    'db_manager': None,
}


def configure(db_path=None, creds_path=None):
    """Point the server at a database and client secret file before it starts."""
    if db_path:
        _state['db_path'] = db_path
    if creds_path:
        _state['creds_path'] = creds_path


async def get_db_manager() -> DatabaseManager:
    if _state['db_manager'] is None:
        db_manager = DatabaseManager(_state['db_path'])
        await db_manager.connect()
        _state['db_manager'] = db_manager
        print("Database connected and ready.")
    return _state['db_manager']


async def shutdown():
    db_manager = _state['db_manager']
    if db_manager is not None:
        await db_manager.close()
        _state['db_manager'] = None
        print("Database connection closed.")


def _error_response(exc: Exception) -> dict:
    if isinstance(exc, ValueError):
        return {"status": "ERROR", "category": "invalid_request", "message": str(exc)}
    print(f"[ERROR] {type(exc).__name__}: {exc}")
    return {"status": "ERROR", "category": getattr(exc, 'category', None), "message": describe_error(exc)}


def _syncer(db_manager) -> MailSyncer:
    return MailSyncer(db_manager, GoogleOAuthClient(_state['creds_path']))


@mcp.tool()
async def health_check() -> dict:
    """
    Checks the health of the MCP server.
    Returns a dictionary with the server status and current timestamp.
    """
    return {
        "status": "healthy",
        "message": "Gmail Metadata Sync MCP Server is running.",
        "timestamp": datetime.datetime.now(datetime.timezone.utc).isoformat()
    }


@mcp.tool()
async def list_accounts() -> dict:
    """Lists the Google accounts that have signed in."""
    db_manager = await get_db_manager()
    return {"accounts": await db_manager.list_accounts()}


@mcp.tool()
async def list_folders(account_email: str = None) -> dict:
    """
    Lists the folders of the account's Gmail mailbox, as full paths
    (e.g. "[Gmail]/Sent Mail"). Needs a live IMAP connection.
    """
    try:
        db_manager = await get_db_manager()
        account = await db_manager.resolve_account(account_email)
        folders = await _syncer(db_manager).list_folders(account['id'])
        return {"account": account['email'], "folders": folders}
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def sync_mailbox(folder: str = None, limit: int = config.DEFAULT_SYNC_LIMIT, account_email: str = None) -> dict:
    """
    Fetches the newest `limit` messages (1-500) of a folder and stores their metadata.
    Without a folder, the account's default folder is synced. This is a blocking operation.
    """
    try:
        db_manager = await get_db_manager()
        account = await db_manager.resolve_account(account_email)
        if not folder:
            folder = (await db_manager.get_preferences(account['id']))['default_folder']
        result = await _syncer(db_manager).sync_mailbox(account['id'], folder, limit, show_progress=False)
        return {
            "status": "COMPLETED",
            "message": "Emails synced successfully",
            "folder": result.folder,
            "fetched": result.fetched,
            "saved": result.saved,
        }
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def list_emails(folder: str = None, page: int = 1, page_size: int = None, account_email: str = None) -> dict:
    """Lists stored emails newest first, one page at a time, optionally for a single folder."""
    try:
        db_manager = await get_db_manager()
        account = await db_manager.resolve_account(account_email)
        if page_size is None:
            page_size = (await db_manager.get_preferences(account['id']))['page_size']
        return await db_manager.find_emails_paged(account['id'], folder=folder, page=page, page_size=page_size)
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def search_emails(query: str, page: int = 1, page_size: int = None, account_email: str = None) -> dict:
    """Searches stored emails by subject, sender and snippet."""
    if not query or not query.strip():
        return {"status": "ERROR", "category": "invalid_request", "message": "Search query is required"}
    try:
        db_manager = await get_db_manager()
        account = await db_manager.resolve_account(account_email)
        if page_size is None:
            page_size = (await db_manager.get_preferences(account['id']))['page_size']
        return await db_manager.find_emails_paged(account['id'], query=query.strip(), page=page, page_size=page_size)
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def get_email(email_id: int, format: str = "markdown", account_email: str = None) -> dict:
    """
    Retrieves one stored email with its body rendered as 'markdown', 'clean_text' or 'html'.
    """
    if format not in ('markdown', 'clean_text', 'html'):
        return {"status": "ERROR", "category": "invalid_request",
                "message": f"Unsupported format: {format}. Supported formats: markdown, clean_text, html."}
    try:
        db_manager = await get_db_manager()
        account = await db_manager.resolve_account(account_email)
        email = await db_manager.get_email_by_id(account['id'], email_id)
    except Exception as e:
        return _error_response(e)

    if email is None:
        return {"status": "ERROR", "category": "not_found", "message": "Email not found"}

    body_text, body_html = email.pop('body_text'), email.pop('body_html')
    if format == 'markdown':
        email['rendered_content'] = render_email_to_markdown(body_text, body_html)
    elif format == 'clean_text':
        email['rendered_content'] = extract_clean_text(body_text, body_html)
    else:
        email['rendered_content'] = body_html or ''
    return {"email": email, "format": format}


@mcp.tool()
async def email_stats(account_email: str = None) -> dict:
    """Total, unread and per-folder counts of the stored emails."""
    try:
        db_manager = await get_db_manager()
        account = await db_manager.resolve_account(account_email)
        return {"stats": await compute_email_stats(db_manager, account['id'])}
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def get_preferences(account_email: str = None) -> dict:
    """Returns the account's default folder and page size."""
    try:
        db_manager = await get_db_manager()
        account = await db_manager.resolve_account(account_email)
        return {"preferences": await db_manager.get_preferences(account['id'])}
    except Exception as e:
        return _error_response(e)


@mcp.tool()
async def update_preferences(default_folder: str = None, page_size: int = None, account_email: str = None) -> dict:
    """Changes the default folder and/or page size (5-100)."""
    try:
        db_manager = await get_db_manager()
        account = await db_manager.resolve_account(account_email)
        preferences = await db_manager.update_preferences(
            account['id'], default_folder=default_folder, page_size=page_size
        )
        return {"preferences": preferences}
    except Exception as e:
        return _error_response(e)


def serve(host='0.0.0.0', port=8001, db_path=None, creds_path=None):
    configure(db_path, creds_path)
    print(f"Starting MCP Server on {host}:{port}")
    uvicorn.run(mcp.sse_app(), host=host, port=port, log_level="info")


if __name__ == "__main__":
    serve()
