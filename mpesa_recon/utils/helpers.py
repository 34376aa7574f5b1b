"""Response and datetime helpers."""

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """Current time as naive UTC, matching how timestamps are stored."""
    return datetime.now(UTC).replace(tzinfo=None)


def format_utc_datetime(dt: datetime | None) -> str | None:
    """Format datetime to ISO string with Z suffix for UTC.

    Timestamps are stored as naive UTC; the Z suffix lets browsers parse
    them as UTC rather than local time.

    Args:
        dt: datetime object (assumed UTC) or None

    Returns:
        ISO format string with Z suffix (e.g., "2026-01-10T10:30:00Z") or None
    """
    if dt is None:
        return None
    return f"{dt.isoformat()}Z"


def local_day_bounds(day: date, tz_name: str) -> tuple[datetime, datetime]:
    """Naive UTC bounds of a local calendar day.

    The window runs from local midnight to the last microsecond before the
    next midnight, both inclusive.

    Args:
        day: Calendar date in the local timezone
        tz_name: IANA timezone name (e.g., 'Africa/Nairobi')

    Returns:
        Tuple of (start, end) as naive UTC datetimes
    """
    tz = ZoneInfo(tz_name)
    start_local = datetime.combine(day, time.min, tzinfo=tz)
    end_local = start_local + timedelta(days=1) - timedelta(microseconds=1)
    return (
        start_local.astimezone(UTC).replace(tzinfo=None),
        end_local.astimezone(UTC).replace(tzinfo=None),
    )


def local_timestamp(tz_name: str, fmt: str = "%Y%m%d%H%M%S") -> str:
    """Current local time formatted for gateway requests."""
    return datetime.now(ZoneInfo(tz_name)).strftime(fmt)


def local_today(tz_name: str) -> date:
    """Today's date in the given timezone."""
    return datetime.now(ZoneInfo(tz_name)).date()


def local_date(dt: datetime, tz_name: str) -> date:
    """Local calendar date of a naive UTC timestamp."""
    return dt.replace(tzinfo=UTC).astimezone(ZoneInfo(tz_name)).date()
