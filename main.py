import argparse
import asyncio
import sys

from tabulate import tabulate

# Local imports
import config # Ensure config is imported to allow modification of DEBUG_MODE
from config import DEFAULT_CREDS_JSON_PATH, DEFAULT_DB_PATH, DEFAULT_SYNC_LIMIT, SYNC_TIMEOUT_SECONDS
from analytics import show_email_stats
from credentials import GoogleOAuthClient
from db import DatabaseManager
from errors import SyncError, describe_error
from queries import execute_query, list_available_queries, print_email_detail, print_email_page
from sync import MailSyncer
from utils import debug_print, to_utc


async def _open_db(args) -> DatabaseManager:
    db_manager = DatabaseManager(args.db)
    await db_manager.connect()
    return db_manager


async def handle_login_command(args):
    """Run the browser consent flow and store the account's tokens."""
    oauth_client = GoogleOAuthClient(args.creds)
    loop = asyncio.get_running_loop()
    creds = await loop.run_in_executor(None, oauth_client.authorize)
    profile = await loop.run_in_executor(None, oauth_client.fetch_profile, creds)
    email = profile.get('email')
    if not email:
        raise SyncError("Google did not return an email address for this account")
    if not creds.refresh_token:
        print("[WARN] Google did not return a refresh token; you will need to sign in again once the access token expires.")

    db_manager = await _open_db(args)
    try:
        account_id = await db_manager.add_or_update_account(
            email=email,
            display_name=profile.get('name') or email,
            access_token=creds.token,
            refresh_token=creds.refresh_token,
            expiry=to_utc(creds.expiry),
            google_id=profile.get('sub'),
            avatar_url=profile.get('picture'),
        )
        await db_manager.get_preferences(account_id)
    finally:
        await db_manager.close()
    print(f"Signed in as {email} (account {account_id}).")


async def handle_accounts_command(args):
    db_manager = await _open_db(args)
    try:
        accounts = await db_manager.list_accounts()
    finally:
        await db_manager.close()
    if not accounts:
        print("No accounts yet. Run the `login` command first.")
        return
    rows = [(a['id'], a['email'], a['display_name'], a['created_at']) for a in accounts]
    print(tabulate(rows, headers=['ID', 'Email', 'Name', 'Added'], tablefmt='psql'))


async def handle_list_folders_command(args):
    db_manager = await _open_db(args)
    try:
        account = await db_manager.resolve_account(args.user)
        syncer = MailSyncer(db_manager, GoogleOAuthClient(args.creds))
        folders = await syncer.list_folders(account['id'])
    finally:
        await db_manager.close()
    print(f"Folders for {account['email']}:")
    for folder in folders:
        print(f"  {folder}")


async def handle_sync_command(args):
    db_manager = await _open_db(args)
    try:
        account = await db_manager.resolve_account(args.user)
        syncer = MailSyncer(db_manager, GoogleOAuthClient(args.creds))
        timeout = args.timeout if args.timeout and args.timeout > 0 else None
        if args.all_folders:
            results = await syncer.sync_all_folders(account['id'], args.limit, timeout=timeout)
        else:
            folder = args.folder or (await db_manager.get_preferences(account['id']))['default_folder']
            results = [await syncer.sync_mailbox(account['id'], folder, args.limit, timeout=timeout)]
    finally:
        await db_manager.close()

    for result in results:
        print(f"  {result.folder}: {result.saved} saved ({result.fetched} fetched)")
    print("Emails synced successfully")


async def _resolve_page_size(db_manager, account_id, page_size):
    if page_size is not None:
        return page_size
    return (await db_manager.get_preferences(account_id))['page_size']


async def handle_emails_command(args):
    db_manager = await _open_db(args)
    try:
        account = await db_manager.resolve_account(args.user)
        page_size = await _resolve_page_size(db_manager, account['id'], args.page_size)
        result = await db_manager.find_emails_paged(
            account['id'], folder=args.folder, page=args.page, page_size=page_size
        )
    finally:
        await db_manager.close()
    print_email_page(result)


async def handle_search_command(args):
    if not args.text.strip():
        raise ValueError("Search query is required")
    db_manager = await _open_db(args)
    try:
        account = await db_manager.resolve_account(args.user)
        page_size = await _resolve_page_size(db_manager, account['id'], args.page_size)
        result = await db_manager.find_emails_paged(
            account['id'], query=args.text.strip(), page=args.page, page_size=page_size
        )
    finally:
        await db_manager.close()
    print_email_page(result)


async def handle_show_command(args):
    db_manager = await _open_db(args)
    try:
        account = await db_manager.resolve_account(args.user)
        email = await db_manager.get_email_by_id(account['id'], args.email_id)
    finally:
        await db_manager.close()
    if email is None:
        print(f"Email {args.email_id} not found.")
        sys.exit(1)
    print_email_detail(email, args.format)


async def handle_stats_command(args):
    db_manager = await _open_db(args)
    try:
        account = await db_manager.resolve_account(args.user)
        print(f"Statistics for {account['email']}:")
        await show_email_stats(db_manager, account['id'], chart=args.chart)
    finally:
        await db_manager.close()


async def handle_prefs_command(args):
    db_manager = await _open_db(args)
    try:
        account = await db_manager.resolve_account(args.user)
        if args.default_folder is not None or args.page_size is not None:
            preferences = await db_manager.update_preferences(
                account['id'], default_folder=args.default_folder, page_size=args.page_size
            )
            print("Preferences updated.")
        else:
            preferences = await db_manager.get_preferences(account['id'])
    finally:
        await db_manager.close()
    print(f"  Default folder: {preferences['default_folder']}")
    print(f"  Page size: {preferences['page_size']}")


async def handle_query_command(args):
    if args.list_queries:
        await list_available_queries()
        return
    if not args.query_name:
        print("Error: No query name specified. Use --list-queries to see available queries.")
        await list_available_queries()
        return

    db_manager = await _open_db(args)
    try:
        account = await db_manager.resolve_account(args.user)
        await execute_query(db_manager.db, account['id'], args.query_name,
                            limit=args.limit, thread_id=args.thread_id)
    finally:
        await db_manager.close()


def handle_serve_mcp_command(args):
    # Import the server here, uvicorn and mcp are only needed for this command
    from fastmcp_server import serve
    serve(host=args.mcp_host, port=args.mcp_port, db_path=args.db, creds_path=args.creds)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Gmail metadata sync and browsing tool')
    parser.add_argument('--db', default=DEFAULT_DB_PATH, help='Path to SQLite database file.')
    parser.add_argument('--creds', default=DEFAULT_CREDS_JSON_PATH, help='Path to OAuth2 client secrets JSON (e.g., client_secret.json).')
    parser.add_argument('--user', help='Gmail address of the stored account to use (optional with a single account).')
    parser.add_argument('--debug', action='store_true', help='Enable detailed debug output.')

    subparsers = parser.add_subparsers(title='commands', dest='command', required=True, help='Available commands')

    subparsers.add_parser('login', help='Sign in with Google and store the account.')
    subparsers.add_parser('accounts', help='List the stored accounts.')
    subparsers.add_parser('list-folders', help='List all folders of the Gmail mailbox.')

    sync_parser = subparsers.add_parser('sync', help='Fetch the newest messages of a folder into the local database.')
    sync_parser.add_argument('--folder', help='Folder to sync (default: the account preference, INBOX).')
    sync_parser.add_argument('--limit', type=int, default=DEFAULT_SYNC_LIMIT, help=f'Number of newest messages to fetch, 1-500 (default: {DEFAULT_SYNC_LIMIT}).')
    sync_parser.add_argument('--all-folders', action='store_true', help='Sync every selectable folder.')
    sync_parser.add_argument('--timeout', type=float, default=SYNC_TIMEOUT_SECONDS, help='Seconds before a folder sync is abandoned (0 disables).')

    emails_parser = subparsers.add_parser('emails', help='Browse stored emails, newest first.')
    emails_parser.add_argument('--folder', help='Only show this folder.')
    emails_parser.add_argument('--page', type=int, default=1, help='Page number (default: 1).')
    emails_parser.add_argument('--page-size', type=int, help='Emails per page, 5-100 (default: the account preference).')

    search_parser = subparsers.add_parser('search', help='Search stored emails by subject, sender and snippet.')
    search_parser.add_argument('text', help='Text to look for.')
    search_parser.add_argument('--page', type=int, default=1, help='Page number (default: 1).')
    search_parser.add_argument('--page-size', type=int, help='Emails per page, 5-100 (default: the account preference).')

    show_parser = subparsers.add_parser('show', help='Show one stored email.')
    show_parser.add_argument('email_id', type=int, help='ID of the email (see the `emails` command).')
    show_parser.add_argument('--format', choices=['text', 'markdown', 'html'], default='text', help='Body format (default: text).')

    stats_parser = subparsers.add_parser('stats', help='Show total, unread and per-folder counts.')
    stats_parser.add_argument('--chart', action='store_true', help='Also draw a per-folder bar chart (needs termgraph).')

    prefs_parser = subparsers.add_parser('prefs', help='Show or change the account preferences.')
    prefs_parser.add_argument('--default-folder', help='Folder used when none is given.')
    prefs_parser.add_argument('--page-size', type=int, help='Emails per page, 5-100.')

    query_parser = subparsers.add_parser('query', help='Execute predefined SQL queries against the email database.')
    query_parser.add_argument('--list-queries', action='store_true', help='List all available predefined queries.')
    query_parser.add_argument('query_name', nargs='?', help='Name of the query to execute (omit if using --list-queries).')
    query_parser.add_argument('--limit', type=int, help='Limit the number of results for the query.')
    query_parser.add_argument('--thread-id', help='Gmail thread id for the thread query.')

    serve_mcp_parser = subparsers.add_parser('serve-mcp', help='Start the Model Context Protocol (MCP) server.')
    serve_mcp_parser.add_argument('--mcp-host', default='0.0.0.0', help='Host for the MCP server (default: 0.0.0.0).')
    serve_mcp_parser.add_argument('--mcp-port', type=int, default=8001, help='Port for the MCP server (default: 8001).')

    return parser


COMMAND_HANDLERS = {
    'login': handle_login_command,
    'accounts': handle_accounts_command,
    'list-folders': handle_list_folders_command,
    'sync': handle_sync_command,
    'emails': handle_emails_command,
    'search': handle_search_command,
    'show': handle_show_command,
    'stats': handle_stats_command,
    'prefs': handle_prefs_command,
    'query': handle_query_command,
}


async def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.debug:
        config.DEBUG_MODE = True # Set DEBUG_MODE in the config module
        print("Debug mode enabled (via config.DEBUG_MODE).")
    debug_print(f"Parsed arguments: {args}")

    handler = COMMAND_HANDLERS.get(args.command)
    if handler is None:
        parser.print_help()
        return

    try:
        await handler(args)
    except SyncError as e:
        print(f"[ERROR] {describe_error(e)}")
        sys.exit(1)
    except ValueError as e:
        print(f"[ERROR] {e}")
        sys.exit(1)
    except FileNotFoundError as e:
        print(f"[ERROR] {e}")
        sys.exit(1)


def run():
    args = sys.argv[1:]
    parsed = build_parser().parse_args(args)
    # uvicorn runs its own event loop, so the server is started outside asyncio.run
    if parsed.command == 'serve-mcp':
        if parsed.debug:
            config.DEBUG_MODE = True
        handle_serve_mcp_command(parsed)
        return
    try:
        asyncio.run(main(args))
    except KeyboardInterrupt:
        print("\nProgram terminated by user.")
    except Exception as e:
        import traceback
        print(f"\nProgram terminated due to an unhandled error: {e}")
        print(traceback.format_exc())
        sys.exit(1)


if __name__ == '__main__':
    run()
