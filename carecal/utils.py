from datetime import datetime, time, timezone


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(dt: datetime | None) -> datetime | None:
    """Normalize a datetime to aware UTC.

    SQLite hands back naive values for DATETIME columns; those are stored as
    UTC wall time, so a naive value is tagged rather than converted.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def truncate_to_minute(dt: datetime) -> datetime:
    return as_utc(dt).replace(second=0, microsecond=0)


def start_of_day(dt: datetime) -> datetime:
    d = as_utc(dt)
    return datetime.combine(d.date(), time.min, tzinfo=timezone.utc)


def end_of_day(dt: datetime) -> datetime:
    # rule instants have second precision, so the day ends at :59
    d = as_utc(dt)
    return datetime.combine(d.date(), time(23, 59, 59), tzinfo=timezone.utc)


def iso_z(dt: datetime) -> str:
    """Return canonical ISO string with a trailing Z."""
    return as_utc(dt).isoformat().replace('+00:00', 'Z')
