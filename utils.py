import asyncio
import datetime
import functools
import random
from email.header import decode_header
from email.utils import parsedate_to_datetime

import config # Import the config module

def debug_print(*args, **kwargs):
    # Access DEBUG_MODE directly from the config module
    if config.DEBUG_MODE:
        print(*args, **kwargs)

def to_utc(value):
    """Normalize a datetime to an aware UTC datetime. Naive values are taken as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value.astimezone(datetime.timezone.utc)

def utc_now():
    return datetime.datetime.now(datetime.timezone.utc)

def to_iso(value):
    """Serialize a datetime for storage. All stored timestamps are UTC ISO-8601."""
    value = to_utc(value)
    return value.isoformat() if value else None

def from_iso(value):
    if not value:
        return None
    return to_utc(datetime.datetime.fromisoformat(value))

# Parse email Date header into an aware UTC datetime
def parse_email_date(date_str):
    if not date_str:
        return None

    try:
        return to_utc(parsedate_to_datetime(date_str))
    except (TypeError, ValueError, IndexError):
        debug_print(f"Unparseable Date header: {date_str!r}")
        return None

# Decode MIME headers with better error handling
def decode_field(field):
    if not field:
        return ''
    parts = decode_header(str(field))
    decoded = ''
    for part, encoding in parts:
        if isinstance(part, bytes):
            try:
                # Handle unknown encodings gracefully
                if encoding and encoding.lower() == 'unknown-8bit':
                    decoded += part.decode('utf-8', errors='replace')
                else:
                    decoded += part.decode(encoding or 'utf-8', errors='replace')
            except (LookupError, UnicodeDecodeError):
                # Fallback to utf-8 with error replacement
                decoded += part.decode('utf-8', errors='replace')
        else:
            decoded += part
    return decoded

def async_retry(attempts=3, delay_seconds=1, backoff_factor=2, jitter_range=(0, 1),
                retry_on=(asyncio.TimeoutError, ConnectionError, TimeoutError)):
    """
    A decorator for retrying an async function if it raises one of `retry_on`.

    Args:
        attempts: The maximum number of attempts.
        delay_seconds: The initial delay between retries in seconds.
        backoff_factor: The factor by which the delay increases after each retry.
        jitter_range: A tuple (min_jitter, max_jitter) to add random jitter to the delay.
                      Helps prevent thundering herd problem.
        retry_on: Exception types considered transient. Anything else propagates at once.
    """
    def decorator(func):
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            last_exception = None
            current_delay = delay_seconds
            for attempt in range(attempts):
                try:
                    return await func(*args, **kwargs)
                except retry_on as e:
                    last_exception = e
                    if attempt < attempts - 1:
                        actual_delay = current_delay
                        if jitter_range and jitter_range[0] < jitter_range[1]:
                            actual_delay += random.uniform(jitter_range[0], jitter_range[1])

                        debug_print(f"Retry {attempt + 1}/{attempts} for {func.__name__} after error: {e}. Retrying in {actual_delay:.2f}s...")
                        await asyncio.sleep(actual_delay)
                        current_delay *= backoff_factor
                    else:
                        debug_print(f"Function {func.__name__} failed after {attempts} attempts.")
            if last_exception:
                raise last_exception
        return wrapper
    return decorator
