from datetime import date, datetime, timezone

import pytest

from rcmpay.common.errors import InvalidTimeframe
from rcmpay.services.analytics.timeframe import bucket_start, bucket_starts, parse_timeframe

NOW = datetime(2026, 3, 10, 15, 30, tzinfo=timezone.utc)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "label,start",
    [
        ("7d", utc(2026, 3, 4)),
        ("30d", utc(2026, 2, 9)),
        ("90d", utc(2025, 12, 11)),
        ("1y", utc(2025, 3, 11)),
    ],
)
def test_presets_end_at_next_utc_midnight(label, start):
    tf = parse_timeframe(label, now=NOW)

    assert tf.end == utc(2026, 3, 11)
    assert tf.start == start
    assert tf.label == label


def test_missing_timeframe_defaults_to_thirty_days():
    assert parse_timeframe(None, now=NOW) == parse_timeframe("30d", now=NOW)


def test_same_day_requests_share_a_signature():
    morning = parse_timeframe("7d", now=utc(2026, 3, 10, 0, 5))
    evening = parse_timeframe("7d", now=utc(2026, 3, 10, 23, 55))
    next_day = parse_timeframe("7d", now=utc(2026, 3, 11, 0, 5))

    assert morning.signature == evening.signature
    assert morning.signature != next_day.signature


def test_custom_date_only_end_is_inclusive():
    tf = parse_timeframe("custom:2026-01-01,2026-01-31")

    assert tf.label == "custom"
    assert tf.start == utc(2026, 1, 1)
    assert tf.end == utc(2026, 2, 1)


def test_custom_datetimes_are_normalized_to_utc():
    tf = parse_timeframe("custom:2026-01-01T10:00:00Z,2026-01-01T14:00:00+02:00")

    assert tf.start == utc(2026, 1, 1, 10)
    assert tf.end == utc(2026, 1, 1, 12)


@pytest.mark.parametrize(
    "value",
    [
        "13d",
        "yesterday",
        "custom:2026-01-01",
        "custom:,2026-01-01",
        "custom:2026-02-01,2026-01-01",
        "custom:2026-01-01T10:00:00Z,2026-01-01T12:00:00+02:00",
        "custom:not-a-date,2026-01-01",
        "custom:2000-01-01,2026-01-01",
        "custom:2020-01-01,9999-12-31",
        "custom:0001-01-01T00:00:00+05:00,2026-01-01",
    ],
)
def test_invalid_timeframes_are_rejected(value):
    with pytest.raises(InvalidTimeframe):
        parse_timeframe(value, now=NOW)


def test_unknown_granularity_is_rejected():
    with pytest.raises(InvalidTimeframe):
        parse_timeframe("7d", granularity="hour", now=NOW)


def test_bucket_start_per_granularity():
    moment = utc(2026, 3, 10, 15)

    assert bucket_start(moment, "day") == date(2026, 3, 10)
    assert bucket_start(moment, "week") == date(2026, 3, 9)
    assert bucket_start(moment, "month") == date(2026, 3, 1)


def test_bucket_starts_cover_the_window():
    assert len(bucket_starts(parse_timeframe("7d", now=NOW))) == 7

    monthly = parse_timeframe("custom:2026-01-15,2026-03-02", granularity="month")
    assert bucket_starts(monthly) == [date(2026, 1, 1), date(2026, 2, 1), date(2026, 3, 1)]

    weekly = parse_timeframe("custom:2025-12-31,2026-01-12", granularity="WEEK")
    assert weekly.granularity == "week"
    assert bucket_starts(weekly) == [date(2025, 12, 29), date(2026, 1, 5), date(2026, 1, 12)]
