"""Calendar-day keys and timestamp helpers.

A date key is the ISO calendar date ("2024-01-15") of an instant as seen in a
given IANA timezone. Stored timestamps are ISO-8601 strings in UTC.
"""
from datetime import date, datetime, timedelta, timezone as dt_timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from quiz_engine.errors import Unprocessable


def utcnow() -> datetime:
    return datetime.now(dt_timezone.utc)


def to_iso(moment: datetime) -> str:
    return moment.astimezone(dt_timezone.utc).isoformat()


def parse_iso(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt_timezone.utc)
    return moment


def get_zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise Unprocessable(f"Unknown timezone: {name}") from e


def date_key_for(moment: datetime, timezone: str = "UTC") -> str:
    """Calendar day of ``moment`` in ``timezone``."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt_timezone.utc)
    return moment.astimezone(get_zone(timezone)).date().isoformat()


def shift_date_key(key: str, days: int) -> str:
    return (date.fromisoformat(key) + timedelta(days=days)).isoformat()


def days_between(earlier: str, later: str) -> int:
    return (date.fromisoformat(later) - date.fromisoformat(earlier)).days


def elapsed_ms(start: datetime, end: datetime) -> int:
    return max(0, int((end - start).total_seconds() * 1000))
