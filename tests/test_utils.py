import time
from datetime import datetime, timedelta, timezone

from unfurl.utils import (
    collapse_whitespace,
    extract_published_at,
    iso_z,
    parse_datetime,
    rfc2822,
    word_count,
)


def test_collapse_whitespace_and_word_count():
    assert collapse_whitespace("  a\n\t b   c ") == "a b c"
    assert collapse_whitespace(None) == ""
    assert word_count("one two  three") == 3
    assert word_count("") == 0


def test_parse_datetime_accepts_common_shapes():
    expected = datetime(2026, 10, 5, 10, 0, tzinfo=timezone.utc)
    assert parse_datetime("Mon, 05 Oct 2026 10:00:00 GMT") == expected
    assert parse_datetime("2026-10-05T10:00:00Z") == expected
    assert parse_datetime("2026-10-05T12:00:00+02:00") == expected
    assert parse_datetime(time.struct_time((2026, 10, 5, 10, 0, 0, 0, 278, 0))) == expected
    assert parse_datetime("not a date") is None
    assert parse_datetime("") is None


def test_extract_published_at_prefers_published():
    entry = {"published": "Mon, 05 Oct 2026 10:00:00 GMT", "updated": "2026-10-06T00:00:00Z"}
    assert extract_published_at(entry) == "2026-10-05T10:00:00+00:00"
    assert extract_published_at({"updated": "2026-10-06T00:00:00Z"}) == "2026-10-06T00:00:00+00:00"
    assert extract_published_at({}) is None


def test_iso_z_and_rfc2822():
    moment = datetime(2026, 10, 5, 12, 0, tzinfo=timezone(timedelta(hours=2)))
    assert iso_z(moment) == "2026-10-05T10:00:00Z"
    assert rfc2822(moment) == "Mon, 05 Oct 2026 10:00:00 GMT"
