from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: datetime) -> datetime:
    """SQLite hands back naive datetimes; everything we store is UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def iso(dt: datetime) -> str:
    return as_utc(dt).isoformat()


def parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def parse_time(value: Optional[str]) -> Optional[time]:
    if not value:
        return None
    try:
        return time.fromisoformat(value)
    except ValueError:
        return None


def local_datetime(day: Optional[str], at: Optional[str], tz: ZoneInfo) -> Optional[datetime]:
    """Combine a YYYY-MM-DD and HH:MM pair into an aware datetime in tz."""
    d = parse_date(day)
    t = parse_time(at)
    if d is None or t is None:
        return None
    return datetime.combine(d, t, tzinfo=tz)
