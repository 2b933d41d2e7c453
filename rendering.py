import datetime
import email
import email.policy
from dataclasses import dataclass
from email.message import Message
from typing import Optional, Tuple

import html2text

from errors import ParseFailure
from utils import decode_field, parse_email_date, utc_now


@dataclass(frozen=True)
class ParsedContent:
    """Header and body fields extracted from one raw RFC 822 message."""

    from_addr: str
    to_addr: str
    cc: Optional[str]
    bcc: Optional[str]
    subject: str
    body_text: Optional[str]
    body_html: Optional[str]
    received_at: datetime.datetime  # aware UTC


def _decode_payload(part: Message) -> Optional[str]:
    """Decodes the payload of an email part."""
    payload = part.get_payload(decode=True)
    if payload is None:
        return None
    charset = part.get_content_charset() or 'utf-8'  # Default to utf-8
    try:
        return payload.decode(charset, errors='replace')
    except (LookupError, UnicodeDecodeError):
        # Fallback for unknown or bad charsets
        return payload.decode('latin-1', errors='replace')


def _get_best_body_part(msg: Message) -> Tuple[Optional[str], Optional[str]]:
    """
    Extracts the first inline plain-text and HTML parts of a message.
    Returns a tuple: (plain_text_content, html_content)
    """
    plain_text_content = None
    html_content = None

    if msg.is_multipart():
        for part in msg.walk():
            if part.is_multipart():
                continue
            if "attachment" in str(part.get('Content-Disposition', '')):
                continue

            content_type = part.get_content_type()
            if content_type == "text/plain" and plain_text_content is None:
                plain_text_content = _decode_payload(part)
            elif content_type == "text/html" and html_content is None:
                html_content = _decode_payload(part)
    else:
        content_type = msg.get_content_type()
        if content_type == "text/plain":
            plain_text_content = _decode_payload(msg)
        elif content_type == "text/html":
            html_content = _decode_payload(msg)

    return plain_text_content, html_content


def _address_field(msg: Message, name: str) -> Optional[str]:
    # Repeated headers (e.g. two Cc lines) are joined like a single address list
    values = msg.get_all(name) or []
    text = ", ".join(decode_field(v).strip() for v in values if v)
    return text or None


def parse_message(raw_bytes: bytes) -> ParsedContent:
    """Parse raw message bytes into ParsedContent.

    Raises ParseFailure for input that is not a message at all. The sequence
    number is unknown here, the fetch engine reports it alongside.
    """
    if not raw_bytes or not raw_bytes.strip():
        raise ParseFailure("empty message body")

    try:
        msg = email.message_from_bytes(raw_bytes, policy=email.policy.compat32)
    except (TypeError, ValueError) as e:
        raise ParseFailure(f"unreadable MIME structure: {e}") from e

    if not msg.keys():
        raise ParseFailure("no headers found")

    try:
        plain_text, html_text = _get_best_body_part(msg)
    except (AssertionError, TypeError, ValueError) as e:
        raise ParseFailure(f"unreadable body: {e}") from e

    return ParsedContent(
        from_addr=_address_field(msg, 'From') or 'Unknown',
        to_addr=_address_field(msg, 'To') or '',
        cc=_address_field(msg, 'Cc'),
        bcc=_address_field(msg, 'Bcc'),
        subject=decode_field(msg.get('Subject', '')).strip() or '(No subject)',
        body_text=plain_text or None,
        body_html=html_text or None,
        received_at=parse_email_date(msg.get('Date')) or utc_now(),
    )


def render_email_to_markdown(body_text: Optional[str], body_html: Optional[str]) -> str:
    """
    Converts a stored email body to Markdown.
    Prioritizes HTML content if available, otherwise uses plain text.
    """
    if body_html:
        h = html2text.HTML2Text()
        return h.handle(body_html).strip()
    if body_text:
        # Plain text is already close enough to markdown
        return body_text.strip()
    return "*(No renderable text content found)*"


def extract_clean_text(body_text: Optional[str], body_html: Optional[str]) -> str:
    """
    Returns the primary textual content of a stored email.
    Prefers plain text. If only HTML is available, converts it to text, stripping formatting.
    """
    if body_text:
        return body_text.strip()
    if body_html:
        h = html2text.HTML2Text()
        h.ignore_links = True
        h.ignore_images = True
        h.ignore_emphasis = True
        h.body_width = 0 # Don't wrap lines
        return h.handle(body_html).strip()
    return "*(No extractable text content found)*"
