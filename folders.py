"""Mailbox directory: turn IMAP LIST answers into canonical folder paths.

The server's namespace is a tree. It is rebuilt from the LIST lines (keeping
the server's order at every level) and flattened depth first, each node
contributing `prefix + name` and passing `prefix + name + delimiter` down to
its children.
"""

import re
from dataclasses import dataclass, field

DEFAULT_DELIMITER = '/'

# (\HasNoChildren) "/" "INBOX"   |   () NIL Sent   |   (\HasChildren) "/" {12}
_LIST_LINE = re.compile(r'^\((?P<flags>[^)]*)\)\s+(?P<delimiter>"(?:[^"\\]|\\.)*"|NIL)\s*(?P<name>.*)$', re.IGNORECASE)


@dataclass
class MailboxNode:
    name: str
    delimiter: str | None = DEFAULT_DELIMITER
    flags: tuple[str, ...] = ()
    children: dict = field(default_factory=dict)


def _unquote(value: str) -> str:
    value = value.strip()
    if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
        return re.sub(r'\\(.)', r'\1', value[1:-1])
    return value


def _decode(value) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8', errors='replace')
    return value


def _iter_list_entries(lines):
    """Yield (flags, delimiter, full_name) for each LIST answer imaplib returned."""
    for entry in lines:
        literal_name = None
        if isinstance(entry, tuple):
            # Name sent as a literal: (b'(\\HasNoChildren) "/" {5}', b'Inbox')
            entry, literal_name = entry[0], _decode(entry[1])
        if not entry:
            continue
        match = _LIST_LINE.match(_decode(entry).strip())
        if not match:
            continue
        delimiter = match.group('delimiter')
        delimiter = None if delimiter.upper() == 'NIL' else _unquote(delimiter)
        name = literal_name if literal_name is not None else _unquote(match.group('name'))
        if not name:
            continue
        flags = tuple(match.group('flags').split())
        yield flags, delimiter, name


def parse_list_response(lines) -> dict:
    """Build the mailbox tree from LIST answers, preserving server order at each level."""
    tree: dict[str, MailboxNode] = {}
    for flags, delimiter, full_name in _iter_list_entries(lines):
        parts = full_name.split(delimiter) if delimiter else [full_name]
        level = tree
        for depth, part in enumerate(parts):
            node = level.get(part)
            if node is None:
                node = level[part] = MailboxNode(name=part, delimiter=delimiter)
            if depth == len(parts) - 1:
                node.flags = flags
            level = node.children
    return tree


def flatten_mailbox_tree(tree: dict, prefix: str = '') -> list[str]:
    folders = []
    for name, node in tree.items():
        full_name = f"{prefix}{name}"
        folders.append(full_name)
        if node.children:
            delimiter = node.delimiter or DEFAULT_DELIMITER
            folders.extend(flatten_mailbox_tree(node.children, f"{full_name}{delimiter}"))
    return folders


def list_folder_paths(lines) -> list[str]:
    return flatten_mailbox_tree(parse_list_response(lines))


def unselectable_folders(tree: dict, prefix: str = '') -> set[str]:
    """Folder paths flagged \\Noselect (pure containers such as "[Gmail]")."""
    found = set()
    for name, node in tree.items():
        full_name = f"{prefix}{name}"
        if any(flag.lower() == '\\noselect' for flag in node.flags):
            found.add(full_name)
        if node.children:
            found |= unselectable_folders(node.children, f"{full_name}{node.delimiter or DEFAULT_DELIMITER}")
    return found
