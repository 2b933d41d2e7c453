import os
import shutil
import subprocess
import tempfile

from tabulate import tabulate

# Local imports
from db import DatabaseManager # For type hinting


async def email_stats(db_manager: DatabaseManager, account_id: int) -> dict:
    """Totals over the stored messages of one account.

    Returns {"total", "unread", "folders": [{"folder", "count"}]}, folders in
    ascending name order. Nothing outside the account is counted.
    """
    total = await db_manager.count_emails(account_id)
    unread = await db_manager.count_emails(account_id, is_read=False)
    folders = await db_manager.count_emails_by_folder(account_id)
    return {'total': total, 'unread': unread, 'folders': folders}


def _folder_chart(folders):
    """Show per-folder counts as a termgraph bar chart."""
    if not shutil.which('termgraph'):
        print("termgraph is not installed. Please install it with 'pip install termgraph'.")
        return
    with tempfile.NamedTemporaryFile('w+', delete=False) as f:
        for entry in folders:
            # termgraph splits labels on whitespace
            label = entry['folder'].replace(' ', '_')
            f.write(f"{label} {entry['count']}\n")
        temp_path = f.name
    try:
        print("\nMessages per folder:")
        subprocess.run(['termgraph', temp_path, '--color', 'blue', '--width', '50', '--format', '{:.0f}'])
        print()
    finally:
        if os.path.exists(temp_path): # Ensure temp file is cleaned up
            os.unlink(temp_path)


async def show_email_stats(db_manager: DatabaseManager, account_id: int, chart=False):
    stats = await email_stats(db_manager, account_id)
    print(f"\nTotal messages: {stats['total']}")
    print(f"Unread messages: {stats['unread']}")
    if not stats['folders']:
        print("\nNo messages synced yet.")
        return stats
    rows = [(entry['folder'], entry['count']) for entry in stats['folders']]
    print()
    print(tabulate(rows, headers=['Folder', 'Messages'], tablefmt='psql'))
    if chart:
        _folder_chart(stats['folders'])
    return stats
