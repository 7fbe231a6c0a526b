"""Date and time utilities"""

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime"""
    return datetime.now(timezone.utc)


def local_date(moment: datetime, tz_name: str) -> date:
    """Calendar date of a moment in the given IANA timezone"""
    return moment.astimezone(ZoneInfo(tz_name)).date()
