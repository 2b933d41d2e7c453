import tabulate

from rendering import extract_clean_text, render_email_to_markdown

# Predefined queries. Every query is scoped to one account: the first `?` is
# always the account id, the remaining ones follow the order of 'params'.
QUERIES = {
    'top_senders': {
        'name': 'Top Email Senders',
        'description': 'Shows the top email senders by count',
        'query': '''
            SELECT from_addr, COUNT(*) as count
            FROM email_metadata
            WHERE account_id = ?
            GROUP BY from_addr
            ORDER BY count DESC
            LIMIT ?;
        ''',
        'params': {'limit': 10},
    },
    'email_domains': {
        'name': 'Email Domains',
        'description': 'Shows the distribution of sender domains',
        'query': '''
            SELECT
                SUBSTR(from_addr, INSTR(from_addr, '@') + 1, INSTR(from_addr, '>') - INSTR(from_addr, '@') - 1) AS domain,
                COUNT(*) as count
            FROM email_metadata
            WHERE account_id = ? AND INSTR(from_addr, '@') > 0 AND INSTR(from_addr, '>') > INSTR(from_addr, '@')
            GROUP BY domain
            ORDER BY count DESC
            LIMIT ?;
        ''',
        'params': {'limit': 20},
    },
    'folder_count': {
        'name': 'Count by Folder',
        'description': 'Shows the distribution of messages across folders',
        'query': '''
            SELECT
                folder,
                COUNT(*) as email_count,
                SUM(CASE WHEN is_read = 0 THEN 1 ELSE 0 END) as unread
            FROM email_metadata
            WHERE account_id = ?
            GROUP BY folder
            ORDER BY email_count DESC;
        ''',
    },
    'unread': {
        'name': 'Unread Emails',
        'description': 'Shows the most recent unread messages',
        'query': '''
            SELECT id, from_addr, subject, received_at, folder
            FROM email_metadata
            WHERE account_id = ? AND is_read = 0
            ORDER BY received_at DESC
            LIMIT ?;
        ''',
        'params': {'limit': 20},
    },
    'thread': {
        'name': 'Email Thread',
        'description': 'Shows all stored messages of a Gmail conversation thread',
        'query': '''
            SELECT id, subject, from_addr, received_at, folder
            FROM email_metadata
            WHERE account_id = ? AND thread_id = ?
            ORDER BY received_at;
        ''',
        'params': {'thread_id': ''},
    },
    'summary': {
        'name': 'Database Summary',
        'description': 'Shows a summary of the stored messages',
        'query': '''
            SELECT
                COUNT(*) AS total_emails,
                SUM(CASE WHEN is_read = 0 THEN 1 ELSE 0 END) AS unread_emails,
                COUNT(DISTINCT folder) AS folder_count,
                COUNT(DISTINCT from_addr) AS unique_senders,
                COUNT(DISTINCT thread_id) AS threads,
                MAX(received_at) AS newest
            FROM email_metadata
            WHERE account_id = ?;
        ''',
    },
    'recent': {
        'name': 'Recent Emails',
        'description': 'Shows the most recent emails',
        'query': '''
            SELECT id, from_addr, subject, received_at, folder
            FROM email_metadata
            WHERE account_id = ?
            ORDER BY received_at DESC
            LIMIT ?;
        ''',
        'params': {'limit': 20},
    },
}


async def execute_query(db, account_id, query_name, **query_params):
    """Execute a predefined query for one account. Returns (columns, rows), or None for an unknown name."""
    if query_name not in QUERIES:
        print(f"Error: Query '{query_name}' not found. Available queries:")
        for name, details in QUERIES.items():
            print(f"  - {name}: {details['description']}")
        return None

    query_info = QUERIES[query_name]
    print(f"\n=== {query_info['name']} ===")
    print(f"{query_info['description']}")

    # Merge default params with user-provided params, keeping the definition order
    params = [account_id]
    if 'params' in query_info:
        merged_params = query_info['params'].copy()
        merged_params.update({k: v for k, v in query_params.items() if v is not None})
        params += [merged_params[name] for name in query_info['params']]

    async with db.execute(query_info['query'], params) as cursor:
        columns = [col[0] for col in cursor.description] if cursor.description else []
        rows = [tuple(row) for row in await cursor.fetchall()]

    if not rows:
        print("\nNo results found.")
        return columns, rows

    print(f"\nFound {len(rows)} results:")
    print(tabulate.tabulate(rows, headers=columns, tablefmt='psql'))
    return columns, rows


async def list_available_queries():
    """List all available queries"""
    print("\nAvailable queries:")
    print("==================")

    for name, details in QUERIES.items():
        print(f"\n{name}: {details['name']}")
        print(f"  {details['description']}")

        # Show parameters if any
        if 'params' in details:
            print("  Parameters:")
            for param_name, default_value in details['params'].items():
                print(f"    --{param_name.replace('_', '-')}: {default_value!r} (default)")


def _shorten(value, width):
    value = value or ''
    return value if len(value) <= width else value[:width - 3] + '...'


def print_email_page(result):
    """Print one page from DatabaseManager.find_emails_paged."""
    pagination = result['pagination']
    if not result['emails']:
        print("\nNo emails found.")
        return
    rows = [
        (
            email['id'],
            ' ' if email['is_read'] else '*',
            email['received_at'][:16].replace('T', ' '),
            _shorten(email['from_addr'], 30),
            _shorten(email['subject'], 50),
            email['folder'],
        )
        for email in result['emails']
    ]
    print(tabulate.tabulate(rows, headers=['ID', 'New', 'Received', 'From', 'Subject', 'Folder'], tablefmt='psql'))
    print(f"Page {pagination['page']} of {max(pagination['totalPages'], 1)} "
          f"({pagination['total']} emails, {pagination['limit']} per page)")


def print_email_detail(email, output_format='text'):
    """Print a stored message with its headers, body in the requested format."""
    headers = [
        ('From', email['from_addr']),
        ('To', email['to_addr']),
        ('Cc', email['cc']),
        ('Subject', email['subject']),
        ('Received', email['received_at']),
        ('Folder', email['folder']),
        ('Flags', email['raw_flags']),
    ]
    print(tabulate.tabulate([h for h in headers if h[1]], tablefmt='plain'))
    print('-' * 60)
    if output_format == 'html':
        print(email['body_html'] or '*(No HTML content)*')
    elif output_format == 'markdown':
        print(render_email_to_markdown(email['body_text'], email['body_html']))
    else:
        print(extract_clean_text(email['body_text'], email['body_html']))
