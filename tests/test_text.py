from datetime import datetime, timezone

from harvester.core.text import (
    PLACEHOLDER_PHONE,
    is_real_phone,
    normalize_phone,
    parse_external_id,
    parse_number,
    retry_after_seconds,
)


def test_normalize_phone_converts_persian_digits_and_strips_separators() -> None:
    assert normalize_phone("۰۹۱۲-۳۴۵ ۶۷۸۹") == "09123456789"
    assert normalize_phone("") is None
    assert normalize_phone("n/a") is None


def test_placeholder_phone_is_not_a_real_phone() -> None:
    assert not is_real_phone(PLACEHOLDER_PHONE)
    assert not is_real_phone(None)
    assert is_real_phone("09123456789")


def test_parse_external_id_reads_token_from_listing_link() -> None:
    assert parse_external_id("https://divar.ir/v/AbC123?utm=1") == "AbC123"
    assert parse_external_id("https://divar.ir/s/tehran") is None
    assert parse_external_id(None) is None


def test_parse_number_handles_persian_digits_and_separators() -> None:
    assert parse_number("۱۲٬۵۰۰٬۰۰۰ تومان") == 12500000.0
    assert parse_number(42) == 42.0
    assert parse_number(True) is None
    assert parse_number("توافقی") is None


def test_retry_after_accepts_seconds_and_http_dates() -> None:
    now = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert retry_after_seconds("7") == 7.0
    assert retry_after_seconds("Mon, 01 Jan 2024 12:00:30 GMT", now=now) == 30.0
    assert retry_after_seconds("soon") is None
    assert retry_after_seconds(None) is None
