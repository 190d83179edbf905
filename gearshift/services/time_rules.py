"""
Time rules for the rental calendar.
Rentals are booked in whole calendar days in the marketplace timezone;
audit timestamps are stored in UTC.
"""
from datetime import date, datetime
from typing import Optional
import pytz
import structlog
from ..config import settings

logger = structlog.get_logger(__name__)


def _resolve_timezone(timezone_str: Optional[str]):
    name = timezone_str or settings.tz_default
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        logger.warning("unknown_timezone", timezone=name)
        return pytz.UTC


def utc_now() -> datetime:
    return datetime.now(pytz.UTC)


def _utc_to_local(utc_datetime: datetime, timezone_str: Optional[str] = None) -> datetime:
    """
    Convert UTC datetime to the marketplace timezone.

    Args:
        utc_datetime: UTC datetime (naive values are treated as UTC)
        timezone_str: Timezone string (defaults to TZ_DEFAULT)

    Returns:
        Local datetime (timezone-aware)
    """
    tz = _resolve_timezone(timezone_str)
    if utc_datetime.tzinfo is None:
        utc_datetime = utc_datetime.replace(tzinfo=pytz.UTC)
    return utc_datetime.astimezone(tz)


def today_local(timezone_str: Optional[str] = None) -> date:
    """
    Current calendar day in the marketplace timezone.

    Availability checks compare against this date, so a booking for "today"
    is still accepted late in the evening local time even when UTC has
    already rolled over.
    """
    return _utc_to_local(utc_now(), timezone_str).date()
