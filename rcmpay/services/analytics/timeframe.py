"""Dashboard timeframe parsing.

A timeframe is normalized to a UTC window `[start, end)` plus a bucketing
granularity. Preset windows end at the next UTC midnight so every request made
on the same day shares one window (and one cache signature).
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone

from rcmpay.common.errors import InvalidTimeframe

PRESET_DAYS = {"7d": 7, "30d": 30, "90d": 90, "1y": 365}
GRANULARITIES = ("day", "week", "month")
MAX_CUSTOM_DAYS = 3660


@dataclass(frozen=True)
class Timeframe:
    label: str
    start: datetime
    end: datetime
    granularity: str = "day"

    @property
    def signature(self) -> str:
        return f"{self.start.isoformat()}/{self.end.isoformat()}/{self.granularity}"


def _midnight(day: date) -> datetime:
    return datetime.combine(day, time.min, tzinfo=timezone.utc)


def _parse_bound(raw: str, is_end: bool) -> datetime:
    raw = raw.strip()
    if not raw:
        raise InvalidTimeframe("custom timeframe needs both start and end")
    try:
        if len(raw) == 10:
            day = date.fromisoformat(raw)
            # A date-only end includes that whole day.
            return _midnight(day + timedelta(days=1) if is_end else day)
        value = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
    except (ValueError, OverflowError) as exc:
        raise InvalidTimeframe(f"unreadable timeframe bound: {raw}") from exc


def parse_timeframe(value: str | None, granularity: str | None = None, now: datetime | None = None) -> Timeframe:
    """Parse `7d|30d|90d|1y|custom:start,end` into a normalized window.

    Raises `InvalidTimeframe` without touching any data.
    """

    granularity = (granularity or "day").lower()
    if granularity not in GRANULARITIES:
        raise InvalidTimeframe(f"granularity must be one of {', '.join(GRANULARITIES)}")

    label = (value or "30d").strip()
    if label in PRESET_DAYS:
        now = now or datetime.now(timezone.utc)
        end = _midnight(now.astimezone(timezone.utc).date() + timedelta(days=1))
        return Timeframe(label=label, start=end - timedelta(days=PRESET_DAYS[label]), end=end, granularity=granularity)

    prefix, sep, bounds = label.partition(":")
    if prefix != "custom" or not sep:
        raise InvalidTimeframe()
    parts = bounds.split(",")
    if len(parts) != 2:
        raise InvalidTimeframe("custom timeframe must be custom:start,end")
    start = _parse_bound(parts[0], is_end=False)
    end = _parse_bound(parts[1], is_end=True)
    if start >= end:
        raise InvalidTimeframe("timeframe start must be before its end")
    if end - start > timedelta(days=MAX_CUSTOM_DAYS):
        raise InvalidTimeframe("custom timeframe is too long")
    return Timeframe(label="custom", start=start, end=end, granularity=granularity)


def bucket_start(moment: datetime, granularity: str) -> date:
    day = moment.astimezone(timezone.utc).date()
    if granularity == "week":
        return day - timedelta(days=day.weekday())
    if granularity == "month":
        return day.replace(day=1)
    return day


def next_bucket(start: date, granularity: str) -> date:
    if granularity == "week":
        return start + timedelta(days=7)
    if granularity == "month":
        return date(start.year + 1, 1, 1) if start.month == 12 else date(start.year, start.month + 1, 1)
    return start + timedelta(days=1)


def bucket_starts(timeframe: Timeframe) -> list[date]:
    """Every bucket overlapping the window, in order."""

    starts = []
    current = bucket_start(timeframe.start, timeframe.granularity)
    while _midnight(current) < timeframe.end:
        starts.append(current)
        current = next_bucket(current, timeframe.granularity)
    return starts
