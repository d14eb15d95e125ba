from datetime import datetime, timezone

from threadchat.services.clock import ensure_date, parse_to_utc, to_epoch_ms


def test_parse_iso_with_offset_to_utc():
    parsed = parse_to_utc("2025-09-23T14:00:00+02:00")
    assert parsed == datetime(2025, 9, 23, 12, 0, tzinfo=timezone.utc)


def test_parse_epoch_millis_and_digit_strings():
    expected = datetime(2025, 1, 1, tzinfo=timezone.utc)
    ms = to_epoch_ms(expected)
    assert parse_to_utc(ms) == expected
    assert parse_to_utc(str(ms)) == expected


def test_naive_datetime_is_taken_as_utc():
    assert parse_to_utc(datetime(2025, 1, 1)).tzinfo == timezone.utc


def test_garbage_returns_none():
    assert parse_to_utc("yesterday-ish") is None
    assert parse_to_utc("") is None
    assert parse_to_utc(None) is None
    assert parse_to_utc("2025-13-45") is None


def test_ensure_date_falls_back_to_now():
    assert ensure_date("nonsense").tzinfo == timezone.utc


def test_parse_zulu_and_naive_iso_strings():
    expected = datetime(2025, 9, 23, 12, 0, 30, 500000, tzinfo=timezone.utc)
    assert parse_to_utc("2025-09-23T12:00:30.500Z") == expected
    assert parse_to_utc("2025-09-23 12:00:30.500000") == expected
