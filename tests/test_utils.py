import datetime
from unittest.mock import AsyncMock, patch

import pytest
from hypothesis import given
from hypothesis.strategies import datetimes, integers

from utils import async_retry, decode_field, parse_email_date, to_utc


def test_decode_field_encoded_words():
    assert decode_field("=?utf-8?q?caf=C3=A9?= menu") == "café menu"
    assert decode_field(None) == ''


def test_decode_field_unknown_charset_falls_back():
    assert decode_field("=?x-bogus?q?abc?=") == "abc"


def test_parse_email_date_to_utc():
    parsed = parse_email_date("Tue, 02 Jan 2024 09:30:00 -0500")
    assert parsed == datetime.datetime(2024, 1, 2, 14, 30, tzinfo=datetime.timezone.utc)


def test_parse_email_date_invalid():
    assert parse_email_date("yesterday-ish") is None
    assert parse_email_date("") is None


@given(value=datetimes(min_value=datetime.datetime(1970, 1, 2), max_value=datetime.datetime(2100, 1, 1)), offset_minutes=integers(min_value=-720, max_value=840))
def test_property_to_utc_keeps_the_instant(value, offset_minutes):
    aware = value.replace(tzinfo=datetime.timezone(datetime.timedelta(minutes=offset_minutes)))
    converted = to_utc(aware)
    assert converted.tzinfo == datetime.timezone.utc
    assert converted == aware
    assert to_utc(value) == value.replace(tzinfo=datetime.timezone.utc)


@pytest.mark.asyncio
async def test_async_retry_retries_only_listed_errors():
    calls = AsyncMock(side_effect=[ConnectionError("reset"), "ok"])

    @async_retry(attempts=3, retry_on=(ConnectionError,))
    async def flaky():
        return await calls()

    with patch('utils.asyncio.sleep', new_callable=AsyncMock):
        assert await flaky() == "ok"
    assert calls.await_count == 2


@pytest.mark.asyncio
async def test_async_retry_propagates_other_errors_at_once():
    calls = AsyncMock(side_effect=PermissionError("denied"))

    @async_retry(attempts=3, retry_on=(ConnectionError,))
    async def rejected():
        return await calls()

    with pytest.raises(PermissionError):
        await rejected()
    assert calls.await_count == 1


@pytest.mark.asyncio
async def test_async_retry_gives_up_after_attempts():
    calls = AsyncMock(side_effect=ConnectionError("down"))

    @async_retry(attempts=3, retry_on=(ConnectionError,))
    async def down():
        return await calls()

    with patch('utils.asyncio.sleep', new_callable=AsyncMock) as mock_sleep, pytest.raises(ConnectionError):
        await down()
    assert calls.await_count == 3
    assert mock_sleep.await_count == 2
