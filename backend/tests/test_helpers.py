import datetime as dt

from packverify.utils.helpers import parse_iso_datetime
from packverify.utils.sanitization import sanitize_string


def test_parse_iso_datetime_lowercase_z():
    value = "2023-05-06T12:00:00z"
    assert parse_iso_datetime(value) == dt.datetime(2023, 5, 6, 12, 0, 0)


def test_parse_iso_datetime_offset_converted_to_utc():
    assert parse_iso_datetime("2023-05-06T14:00:00+02:00") == dt.datetime(2023, 5, 6, 12, 0, 0)


def test_parse_iso_datetime_invalid_returns_none():
    assert parse_iso_datetime("not-a-date") is None
    assert parse_iso_datetime("") is None


def test_sanitize_string_strips_control_chars_and_truncates():
    assert sanitize_string("  lab\x00el<b>.png ", max_length=12) == "label&lt;b&gt;"[:12]
    assert sanitize_string(None) is None
