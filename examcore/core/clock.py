import math
from datetime import date, datetime, time, timezone
from typing import Optional
from zoneinfo import ZoneInfo

from examcore.core.config import settings


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def end_of_day(day: date, tz_name: Optional[str] = None) -> datetime:
    """Last representable millisecond of ``day`` in the tenant timezone, as UTC."""
    tz = ZoneInfo(tz_name or settings.TENANT_TIMEZONE)
    local = datetime.combine(day, time(23, 59, 59, 999000), tzinfo=tz)
    return local.astimezone(timezone.utc)


def round_half_up(value: float) -> int:
    # .5 goes up, never to even
    return math.floor(value + 0.5)
