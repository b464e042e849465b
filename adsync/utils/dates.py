"""Date, timezone and hour-slot helpers shared by the sync services.

Hour slots follow the platform's advertiser-timezone hourly breakdown label,
e.g. "14:00:00 - 14:59:59". The slot preceding hour 0 is hour 23 of the prior
calendar date.
"""

from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import logging

logger = logging.getLogger(__name__)

DateLike = Union[date, datetime, str]


def parse_date(value: DateLike) -> date:
    """Coerce a date, datetime or YYYY-MM-DD string to a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def parse_platform_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse platform timestamps like '2024-03-01T10:00:00+0700'."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.strptime(value, "%Y-%m-%dT%H:%M:%S%z")
    except ValueError:
        parsed = datetime.fromisoformat(value)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def date_range(start: DateLike, end: DateLike) -> List[date]:
    """Every calendar day from start to end, inclusive. Empty if end < start."""
    current, last = parse_date(start), parse_date(end)
    days = []
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days


def get_zone(tz_name: Optional[str], default: str = "UTC") -> ZoneInfo:
    try:
        return ZoneInfo(tz_name or default)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("[DATES] Unknown timezone %r, falling back to %s", tz_name, default)
        return ZoneInfo(default)


def account_today(tz_name: Optional[str], now: Optional[datetime] = None, default: str = "UTC") -> date:
    """Today's calendar date in the account's timezone."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(get_zone(tz_name, default)).date()


def default_sync_range(
    tz_name: Optional[str], now: Optional[datetime] = None, default: str = "UTC"
) -> Tuple[date, date]:
    """Yesterday..today in the account timezone."""
    today = account_today(tz_name, now, default)
    return today - timedelta(days=1), today


def to_unix_seconds(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


# =============================================================================
# HOUR SLOTS
# =============================================================================

def hour_slot_label(hour: int) -> str:
    return f"{hour:02d}:00:00 - {hour:02d}:59:59"


def parse_hour_slot(label: Optional[str]) -> int:
    """Hour from an 'HH:00:00 - HH:59:59' label. Missing label means hour 0."""
    if not label:
        return 0
    hour = int(label.split(":", 1)[0])
    if not 0 <= hour <= 23:
        raise ValueError(f"Invalid hour slot: {label!r}")
    return hour


def previous_hour_slot(day: date, hour: int) -> Tuple[date, int]:
    """The slot immediately before (day, hour)."""
    if hour == 0:
        return day - timedelta(days=1), 23
    return day, hour - 1
