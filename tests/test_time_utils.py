from datetime import datetime, timedelta, timezone

from envkeeper.time_utils import (
    age_in_days,
    backup_timestamp,
    parse_iso,
    to_iso,
    whole_days_since,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def test_age_rounds_partial_days_up():
    assert age_in_days(NOW, NOW) == 0
    assert age_in_days(NOW - timedelta(days=85), NOW) == 85
    assert age_in_days(NOW - timedelta(days=89, hours=1), NOW) == 90
    # Future reference dates still yield a positive age
    assert age_in_days(NOW + timedelta(days=2), NOW) == 2


def test_whole_days_since_rounds_down():
    assert whole_days_since(NOW - timedelta(days=89, hours=23), NOW) == 89
    assert whole_days_since(NOW - timedelta(days=90), NOW) == 90


def test_parse_iso_accepts_zulu_and_naive_values():
    assert parse_iso('2024-06-01T12:00:00Z') == NOW
    assert parse_iso('2024-06-01T12:00:00') == NOW
    assert parse_iso(to_iso(NOW)) == NOW
    assert parse_iso('not-a-date') is None


def test_backup_timestamp_is_filename_safe():
    moment = datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc)
    assert backup_timestamp(moment) == '2024-01-02T03-04-05-678Z'
