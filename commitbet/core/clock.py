"""Wall clock, time-zone conversion, and storage timestamp encoding.

Every "now" in the engine comes from utc_now(); tests replace it to freeze time.
"""

from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from commitbet.core.config import settings


# Fixed width so that lexicographic order in SQLite equals chronological order
_DB_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    """Return the current instant as an aware UTC datetime."""
    return datetime.now(UTC)


def get_zone(tz_name: str | None) -> ZoneInfo:
    """Resolve an IANA zone name, falling back to the configured default."""
    name = tz_name or settings.default_timezone
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        msg = f"Unknown time zone: {name}"
        raise ValueError(msg) from e


def local_today(tz_name: str | None) -> date:
    """Return today's calendar date in the given zone."""
    return utc_now().astimezone(get_zone(tz_name)).date()


def local_datetime(day: date, at: time, tz_name: str | None) -> datetime:
    """Combine a local date and wall time into an aware datetime in the given zone.

    Non-existent wall times (DST gap) and repeated ones (DST fold) resolve the way
    zoneinfo does for fold=0.
    """
    return datetime.combine(day, at, tzinfo=get_zone(tz_name))


def local_to_utc(day: date, at: time, tz_name: str | None) -> datetime:
    """Convert a local date and wall time to an absolute UTC instant."""
    return local_datetime(day, at, tz_name).astimezone(UTC)


def local_day_bounds(day: date, tz_name: str | None) -> tuple[datetime, datetime]:
    """Return [start, end) of a local calendar day as UTC instants."""
    start = local_to_utc(day, time(0, 0), tz_name)
    end = local_to_utc(day + timedelta(days=1), time(0, 0), tz_name)
    return start, end


def ensure_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to UTC, rejecting naive values."""
    if value.tzinfo is None:
        msg = "Naive datetime is ambiguous; an explicit time zone is required"
        raise ValueError(msg)
    return value.astimezone(UTC)


def to_db_timestamp(value: datetime) -> str:
    """Encode an aware datetime as a fixed-width UTC string for storage."""
    return ensure_utc(value).strftime(_DB_TIMESTAMP_FORMAT)


def from_db_timestamp(value: str) -> datetime:
    """Decode a stored timestamp back into an aware UTC datetime."""
    return datetime.strptime(value, _DB_TIMESTAMP_FORMAT).replace(tzinfo=UTC)
