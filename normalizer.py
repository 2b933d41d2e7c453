"""Mapping of parsed messages onto stored mail records.

A record is identified by (account_id, external_message_id, folder). The
external id is Gmail's X-GM-MSGID when the server reports one and
"<folder>-<uid>" otherwise, so re-syncing the same folder updates rows in
place while the same message seen in two folders is kept once per folder.
"""

import datetime
from dataclasses import dataclass

from config import SNIPPET_LENGTH
from fetcher import FetchedMessage, ParsedMessage
from utils import to_utc, utc_now

SEEN_FLAG = '\\Seen'


@dataclass(frozen=True)
class MailRecord:
    account_id: int
    external_message_id: str
    thread_id: str | None
    folder: str
    subject: str
    from_addr: str
    to_addr: str
    cc: str | None
    bcc: str | None
    snippet: str | None
    body_text: str | None
    body_html: str | None
    received_at: datetime.datetime
    is_read: bool
    raw_flags: str | None
    uid: int | None = None


def external_message_id(folder: str, fetched: FetchedMessage) -> str:
    if fetched.server_message_id:
        return str(fetched.server_message_id)
    return f"{folder}-{fetched.uid}"


def build_mail_record(account_id: int, folder: str, parsed: ParsedMessage) -> MailRecord:
    fetched, content = parsed.fetched, parsed.content
    flags = tuple(fetched.flags or ())
    body_text = content.body_text
    return MailRecord(
        account_id=account_id,
        external_message_id=external_message_id(folder, fetched),
        thread_id=str(fetched.server_thread_id) if fetched.server_thread_id else None,
        folder=folder,
        subject=content.subject or '(No subject)',
        from_addr=content.from_addr or 'Unknown',
        to_addr=content.to_addr or '',
        cc=content.cc,
        bcc=content.bcc,
        snippet=body_text[:SNIPPET_LENGTH] if body_text else None,
        body_text=body_text,
        body_html=content.body_html,
        received_at=to_utc(content.received_at) or utc_now(),
        is_read=SEEN_FLAG in flags,
        raw_flags=','.join(flags) if flags else None,
        uid=fetched.uid,
    )


async def upsert_message(db, account_id: int, folder: str, parsed: ParsedMessage) -> MailRecord:
    """Write one parsed message, inserting or updating its (account, id, folder) row."""
    record = build_mail_record(account_id, folder, parsed)
    await db.upsert_email_record(record)
    return record
