"""
Time rules service.
Company-local calendar days and workweeks over naive-UTC timestamps.
"""
from datetime import date, datetime, time, timedelta
from typing import Optional
import pytz
from ..config import settings


def resolve_timezone(timezone_str: Optional[str]) -> str:
    """Return a valid IANA timezone name, falling back to TZ_DEFAULT."""
    candidate = timezone_str or settings.tz_default
    try:
        pytz.timezone(candidate)
        return candidate
    except pytz.UnknownTimeZoneError:
        return settings.tz_default


def local_to_utc(local_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert a naive local datetime to naive UTC.

    Args:
        local_datetime: Local datetime (naive)
        timezone_str: Timezone string (e.g., "America/Los_Angeles")

    Returns:
        UTC datetime (naive)
    """
    tz = pytz.timezone(resolve_timezone(timezone_str))
    if local_datetime.tzinfo is None:
        local_dt = tz.localize(local_datetime)
    else:
        local_dt = local_datetime.astimezone(tz)
    return local_dt.astimezone(pytz.UTC).replace(tzinfo=None)


def utc_to_local(utc_datetime: datetime, timezone_str: str) -> datetime:
    """
    Convert UTC datetime to local timezone.

    Args:
        utc_datetime: UTC datetime (naive or timezone-aware)
        timezone_str: Timezone string

    Returns:
        Local datetime (timezone-aware)
    """
    tz = pytz.timezone(resolve_timezone(timezone_str))
    if utc_datetime.tzinfo is None:
        utc_dt = utc_datetime.replace(tzinfo=pytz.UTC)
    else:
        utc_dt = utc_datetime.astimezone(pytz.UTC)
    return utc_dt.astimezone(tz)


def local_date(utc_datetime: datetime, timezone_str: str) -> date:
    """Calendar date of a UTC instant as seen in the given timezone."""
    return utc_to_local(utc_datetime, timezone_str).date()


def start_of_day_utc(day: date, timezone_str: str) -> datetime:
    """Naive UTC instant of local midnight starting `day`."""
    return local_to_utc(datetime.combine(day, time.min), timezone_str)


def start_of_workweek(day: date, week_start_day: int) -> date:
    """
    First local date of the workweek containing `day`.

    Args:
        day: Local date
        week_start_day: 0 for Sunday, 1 for Monday ... 6 for Saturday
    """
    sunday_based = (day.weekday() + 1) % 7
    days_back = (sunday_based - week_start_day) % 7
    return day - timedelta(days=days_back)


def combine_date_time(date_val: date, time_val: time, timezone_str: str) -> datetime:
    """Combine a local date and time and convert to naive UTC."""
    return local_to_utc(datetime.combine(date_val, time_val), timezone_str)


def whole_minutes(start: datetime, end: datetime) -> int:
    """Elapsed whole minutes between two instants, rounded to the nearest minute."""
    return int(round((end - start).total_seconds() / 60))
